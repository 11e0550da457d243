"""Page view tracking for FastAPI endpoints.

Decorate an endpoint with ``ActionTracking`` and every completed call is
reported to the analytics tracker as a page view::

    @router.get("/customers/{CustomerId}")
    @ActionTracking()
    async def get_customer(request: Request, CustomerId: int) -> dict:
        set_request_custom_variable(request, "CustomerName", "Acme")
        ...

Endpoint arguments and the values recorded with
``set_request_custom_variable`` become the page view's custom variables.
"""

import functools
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from fastapi import BackgroundTasks, params
from starlette.concurrency import run_in_threadpool
from starlette.requests import HTTPConnection, Request
from starlette.responses import Response

from src.core.config import get_settings
from src.core.logging import get_request_host
from src.models.domain.tracking import TrackingResult
from src.services.custom_variables import apply_custom_variables
from src.services.tracker import Tracker, TrackingSink

logger = logging.getLogger(__name__)

REQUEST_CUSTOM_VARIABLES_KEY = "analytics_custom_variables"
_INJECTED_REQUEST_PARAM = "_action_tracking_request"
_FRAMEWORK_TYPES = (HTTPConnection, Response, BackgroundTasks)


def get_request_custom_variables(request: Request) -> dict[str, str]:
    """Custom variables recorded on the request, created on first access."""
    variables = getattr(request.state, REQUEST_CUSTOM_VARIABLES_KEY, None)
    if not isinstance(variables, dict):
        variables = {}
        setattr(request.state, REQUEST_CUSTOM_VARIABLES_KEY, variables)
    return variables


def set_request_custom_variable(request: Request, name: str, value: Any) -> None:
    """Record a custom variable for the page view of this request."""
    get_request_custom_variables(request)[name] = "" if value is None else str(value)


@dataclass
class ActionExecutedContext:
    """An endpoint call that has just completed."""

    request: Request
    response: Any
    controller_name: str
    action_name: str
    action_arguments: dict[str, Any] = field(default_factory=dict)


def _always_trackable(context: ActionExecutedContext) -> bool:  # noqa: ARG001
    return True


def _is_request_parameter(parameter: inspect.Parameter) -> bool:
    return inspect.isclass(parameter.annotation) and issubclass(
        parameter.annotation, Request
    )


def _is_dependency(parameter: inspect.Parameter) -> bool:
    if isinstance(parameter.default, params.Depends):
        return True
    metadata = getattr(parameter.annotation, "__metadata__", ())
    return any(isinstance(item, params.Depends) for item in metadata)


class ActionTracking:
    """Endpoint decorator reporting completed calls as page views.

    Args:
        tracker: Tracker to report to. When omitted, a tracker is created
            from ``tracking_account``; without an account the application's
            shared tracker (``app.state.tracker``) is used.
        tracking_account: Analytics account for a dedicated tracker
        tracking_domain: Host name for a dedicated tracker. Defaults to the
            host of the request in flight while the decorator is built.
        action_description: Fixed action name instead of "controller - action"
        action_url: Fixed URL instead of the request path and query
        is_trackable_action: Predicate deciding whether a call is tracked
        include_action_arguments: Collect endpoint arguments as custom
            variables. Defaults to settings.

    A tracker created from ``tracking_account`` belongs to the decorator;
    release it with ``aclose()`` on shutdown.
    """

    def __init__(
        self,
        tracker: TrackingSink | None = None,
        *,
        tracking_account: str | None = None,
        tracking_domain: str | None = None,
        action_description: str | None = None,
        action_url: str | None = None,
        is_trackable_action: Callable[[ActionExecutedContext], bool] | None = None,
        include_action_arguments: bool | None = None,
    ) -> None:
        self._owns_tracker = tracker is None and bool(tracking_account)
        if self._owns_tracker:
            tracker = Tracker(
                tracking_account, tracking_domain or get_request_host()
            )
        self.tracker = tracker
        self.action_description = action_description
        self.action_url = action_url
        self.is_trackable_action = is_trackable_action or _always_trackable
        if include_action_arguments is None:
            include_action_arguments = get_settings().include_action_arguments
        self.include_action_arguments = include_action_arguments

    def __call__(self, endpoint: Callable[..., Any]) -> Callable[..., Any]:
        # Postponed annotations must be resolved to recognise Request parameters
        signature = inspect.signature(endpoint, eval_str=True)
        parameters = list(signature.parameters.values())
        request_param = next((p.name for p in parameters if _is_request_parameter(p)), None)
        excluded = {p.name for p in parameters if _is_dependency(p)}
        is_async = inspect.iscoroutinefunction(endpoint)

        if request_param is None:
            injected = inspect.Parameter(
                _INJECTED_REQUEST_PARAM,
                inspect.Parameter.KEYWORD_ONLY,
                annotation=Request,
            )
            index = len(parameters)
            if parameters and parameters[-1].kind is inspect.Parameter.VAR_KEYWORD:
                index -= 1
            parameters.insert(index, injected)

        @functools.wraps(endpoint)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            if request_param is None:
                request = kwargs.pop(_INJECTED_REQUEST_PARAM)
            else:
                request = kwargs[request_param]

            if is_async:
                response = await endpoint(*args, **kwargs)
            else:
                response = await run_in_threadpool(endpoint, *args, **kwargs)

            action_arguments = {
                name: value
                for name, value in kwargs.items()
                if name not in excluded and not isinstance(value, _FRAMEWORK_TYPES)
            }
            context = ActionExecutedContext(
                request=request,
                response=response,
                controller_name=self._controller_name(request, endpoint),
                action_name=endpoint.__name__,
                action_arguments=action_arguments,
            )
            await self.on_action_executed(context)
            return response

        wrapper.__signature__ = signature.replace(parameters=parameters)  # type: ignore[attr-defined]
        return wrapper

    async def aclose(self) -> None:
        """Close the tracker created from ``tracking_account``.

        Trackers passed in, or the application's shared tracker, are left to
        their owner.
        """
        if self._owns_tracker and isinstance(self.tracker, Tracker):
            await self.tracker.close()

    @staticmethod
    def _controller_name(request: Request, endpoint: Callable[..., Any]) -> str:
        route = request.scope.get("route")
        tags = getattr(route, "tags", None)
        if tags:
            return str(tags[0])
        return endpoint.__module__.rsplit(".", 1)[-1]

    def resolve_tracker(self, request: Request) -> TrackingSink | None:
        """The tracker for this request: our own, else the application's."""
        if self.tracker is not None:
            return self.tracker
        return getattr(request.app.state, "tracker", None)

    async def on_action_executed(self, context: ActionExecutedContext) -> None:
        """Track the completed call unless the predicate rejects it.

        Tracking problems are logged, never raised to the caller.
        """
        if not self.is_trackable_action(context):
            return

        try:
            await self.on_tracking_action(context)
        except Exception:
            logger.warning(
                "Failed to track action %s",
                context.action_name,
                exc_info=True,
            )

    def build_current_action_name(self, context: ActionExecutedContext) -> str:
        if self.action_description is not None:
            return self.action_description
        return f"{context.controller_name} - {context.action_name}"

    def build_current_action_url(self, context: ActionExecutedContext) -> str:
        if self.action_url is not None:
            return self.action_url
        url = context.request.url
        return f"{url.path}?{url.query}" if url.query else url.path

    async def on_tracking_action(
        self, context: ActionExecutedContext
    ) -> TrackingResult | None:
        """Fill the tracker's custom variables and report the page view.

        Returns:
            The tracker's result, or None when no tracker is available
        """
        tracker = self.resolve_tracker(context.request)
        if tracker is None:
            logger.warning(
                "No tracker configured, action %s not tracked", context.action_name
            )
            return None

        apply_custom_variables(
            tracker,
            get_request_custom_variables(context.request),
            context.action_arguments,
            include_action_arguments=self.include_action_arguments,
        )
        return await tracker.track_page_view(
            context.request,
            self.build_current_action_name(context),
            self.build_current_action_url(context),
        )
