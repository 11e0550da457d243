"""Custom variable collection and slot assignment.

Page views carry at most five custom variables. They come from two sources:
values recorded on the request by the endpoint (request properties) and the
arguments the endpoint was invoked with (action arguments). Both are merged,
sorted by name and assigned to slots 1..5; anything past the fifth is dropped.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from src.models.domain.tracking import (
    MAX_CUSTOM_VARIABLES,
    AssignedCustomVariable,
    CustomVariable,
)

ID_KEY_SUFFIX = "Id"
NAME_KEY_SUFFIX = "Name"
PLACEHOLDER_SUFFIX = "Placeholder"
PLACEHOLDER_VALUE = "0"


class CustomVariableSink(Protocol):
    """Receiver of positional custom variables (usually a Tracker)."""

    def clear_custom_variables(self) -> None: ...

    def set_custom_variable(self, position: int, name: str, value: str) -> None: ...


def _to_string(value: Any) -> str:
    return "" if value is None else str(value)


def placeholders_for_missing_names(
    request_properties: Mapping[str, Any],
    action_arguments: Mapping[str, Any],
) -> list[CustomVariable]:
    """Placeholders for ``xyzName`` values missing next to an ``xyzId`` argument.

    When a response is replayed from cache the endpoint body does not run, so
    the names it would have recorded on the request are absent. A zero-valued
    ``xyzNamePlaceholder`` keeps the remaining variables in the same slots.
    Only action argument keys are inspected.
    """
    placeholders: list[CustomVariable] = []
    for key in action_arguments:
        if not key.endswith(ID_KEY_SUFFIX):
            continue
        name_key = key[: -len(ID_KEY_SUFFIX)] + NAME_KEY_SUFFIX
        if name_key not in request_properties:
            placeholders.append(
                CustomVariable(name_key + PLACEHOLDER_SUFFIX, PLACEHOLDER_VALUE)
            )
    return placeholders


def collect_custom_variables(
    request_properties: Mapping[str, Any] | None,
    action_arguments: Mapping[str, Any] | None,
    include_action_arguments: bool = True,
) -> list[CustomVariable]:
    """Merge both sources into at most five variables ordered by name.

    Args:
        request_properties: Values recorded on the request, may be None
        action_arguments: Arguments bound to the endpoint, may be None
        include_action_arguments: When False, action arguments and their
            placeholders are ignored

    Returns:
        Variables sorted by name (stable, duplicates kept), truncated to five
    """
    request_properties = request_properties or {}
    action_arguments = action_arguments or {}

    collected = [
        CustomVariable(key, _to_string(value))
        for key, value in request_properties.items()
    ]

    if include_action_arguments:
        collected.extend(
            CustomVariable(key, _to_string(value))
            for key, value in action_arguments.items()
        )
        collected.extend(
            placeholders_for_missing_names(request_properties, action_arguments)
        )

    collected.sort(key=lambda variable: variable.name)
    return collected[:MAX_CUSTOM_VARIABLES]


def assign_custom_variables(
    sink: CustomVariableSink,
    variables: list[CustomVariable],
) -> list[AssignedCustomVariable]:
    """Clear the sink, then fill slots 1..5 in order."""
    sink.clear_custom_variables()

    assigned: list[AssignedCustomVariable] = []
    for position, variable in enumerate(variables[:MAX_CUSTOM_VARIABLES], start=1):
        sink.set_custom_variable(position, variable.name, variable.value)
        assigned.append(AssignedCustomVariable(position, variable.name, variable.value))
    return assigned


def apply_custom_variables(
    sink: CustomVariableSink,
    request_properties: Mapping[str, Any] | None,
    action_arguments: Mapping[str, Any] | None,
    include_action_arguments: bool = True,
) -> list[AssignedCustomVariable]:
    """Collect variables from both sources and assign them to ``sink``."""
    variables = collect_custom_variables(
        request_properties, action_arguments, include_action_arguments
    )
    return assign_custom_variables(sink, variables)
