"""Analytics tracking value objects."""

from dataclasses import dataclass, field

# Hard limit of custom variable slots on the analytics backend
MAX_CUSTOM_VARIABLES = 5


@dataclass(frozen=True)
class CustomVariable:
    """A named value attached to a page view."""

    name: str
    value: str


@dataclass(frozen=True)
class AssignedCustomVariable:
    """A custom variable bound to a slot (1-based)."""

    position: int
    name: str
    value: str


@dataclass
class PageView:
    """Everything needed to report a single page view."""

    account: str
    domain: str
    action_name: str
    action_url: str
    client_id: str
    custom_variables: list[AssignedCustomVariable] = field(default_factory=list)
    user_agent: str | None = None
    client_ip: str | None = None
    language: str | None = None


@dataclass
class TrackingResult:
    """Outcome of sending a page view.

    ``url`` is the request that was sent (``None`` when nothing was sent).
    ``exception`` carries the transport failure when ``success`` is False.
    """

    success: bool
    url: str | None = None
    exception: Exception | None = None
