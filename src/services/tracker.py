"""Analytics tracker client for page views.

Reports page views with the legacy GIF request protocol: one GET request per
page view, custom variables packed into the ``utme`` parameter.
"""

import hashlib
import logging
import random
import time
import uuid
from typing import Protocol

import httpx
from starlette.requests import Request

from src.core.config import Settings, get_settings
from src.models.domain.tracking import (
    MAX_CUSTOM_VARIABLES,
    AssignedCustomVariable,
    PageView,
    TrackingResult,
)
from src.services.custom_variables import CustomVariableSink

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "5.4.0"
CLIENT_ID_HEADER = "X-Client-ID"
PAGE_SCOPE = 3

# utme X10 escaping, applied in order so the escape character goes first
_X10_ESCAPES = (("'", "'0"), (")", "'1"), ("*", "'2"), ("!", "'3"))


class TrackerError(Exception):
    """Error reporting a page view to the analytics backend."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TrackingSink(CustomVariableSink, Protocol):
    """What the action tracking filter needs from a tracker."""

    async def track_page_view(
        self, request: Request, action_name: str, action_url: str
    ) -> TrackingResult: ...


def _escape_x10(value: str) -> str:
    for raw, escaped in _X10_ESCAPES:
        value = value.replace(raw, escaped)
    return value


def encode_custom_variables(variables: list[AssignedCustomVariable]) -> str:
    """Encode custom variables in the X10 ``utme`` format.

    Produces ``8(names)9(values)11(scopes)``. A slot that does not directly
    follow the previous one is prefixed with ``<position>!``.

    Returns:
        The encoded string, empty when there are no variables
    """
    if not variables:
        return ""

    names: list[str] = []
    values: list[str] = []
    scopes: list[str] = []
    previous = 0
    for variable in sorted(variables, key=lambda v: v.position):
        prefix = "" if variable.position == previous + 1 else f"{variable.position}!"
        names.append(prefix + _escape_x10(variable.name))
        values.append(prefix + _escape_x10(variable.value))
        scopes.append(prefix + str(PAGE_SCOPE))
        previous = variable.position

    return f"8({'*'.join(names)})9({'*'.join(values)})11({'*'.join(scopes)})"


def _visitor_number(client_id: str) -> int:
    digest = hashlib.md5(client_id.encode("utf-8")).hexdigest()  # noqa: S324
    return int(digest[:8], 16) & 0x7FFFFFFF


class Tracker:
    """Client for the analytics page view endpoint.

    Holds the custom variables for the next page view. The action tracking
    filter clears and refills them before every ``track_page_view`` call.
    """

    def __init__(
        self,
        tracking_account: str | None = None,
        tracking_domain: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize tracker.

        Args:
            tracking_account: Analytics account id. Defaults to settings.
            tracking_domain: Reported host name. Defaults to settings, then
                to the host of each tracked request.
            settings: Application settings. If None, loads from environment.
        """
        self.settings = settings or get_settings()
        self.tracking_account = tracking_account or self.settings.tracking_account
        self.tracking_domain = tracking_domain or self.settings.tracking_domain
        self._custom_variables: dict[int, AssignedCustomVariable] = {}
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client (lazy initialization)."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.tracking_timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def custom_variables(self) -> list[AssignedCustomVariable]:
        """Custom variables for the next page view, in slot order."""
        return [self._custom_variables[p] for p in sorted(self._custom_variables)]

    def clear_custom_variables(self) -> None:
        self._custom_variables.clear()

    def set_custom_variable(self, position: int, name: str, value: str) -> None:
        """Set the custom variable for a slot, replacing any previous one.

        Raises:
            ValueError: If position is outside 1..5
        """
        if not 1 <= position <= MAX_CUSTOM_VARIABLES:
            raise ValueError(
                f"Custom variable position must be between 1 and "
                f"{MAX_CUSTOM_VARIABLES}, got {position}"
            )
        self._custom_variables[position] = AssignedCustomVariable(position, name, value)

    def build_page_view(
        self, request: Request, action_name: str, action_url: str
    ) -> PageView:
        """Snapshot the request and current custom variables into a PageView."""
        client_id = (
            request.headers.get(CLIENT_ID_HEADER)
            or request.cookies.get(self.settings.tracking_client_id_cookie)
            or uuid.uuid4().hex
        )
        return PageView(
            account=self.tracking_account,
            domain=self.tracking_domain or request.url.hostname or "",
            action_name=action_name,
            action_url=action_url,
            client_id=client_id,
            custom_variables=self.custom_variables,
            user_agent=request.headers.get("user-agent"),
            client_ip=request.client.host if request.client else None,
            language=request.headers.get("accept-language"),
        )

    def build_params(self, page_view: PageView) -> dict[str, str]:
        """Build GIF request query parameters for a page view."""
        now = int(time.time())
        visitor = _visitor_number(page_view.client_id)
        params = {
            "utmwv": PROTOCOL_VERSION,
            "utmn": str(random.randint(0, 0x7FFFFFFF)),
            "utmhn": page_view.domain,
            "utmcs": "UTF-8",
            "utmdt": page_view.action_name,
            "utmhid": str(random.randint(0, 0x7FFFFFFF)),
            "utmr": "-",
            "utmp": page_view.action_url,
            "utmac": page_view.account,
            "utmcc": f"__utma=1.{visitor}.{now}.{now}.{now}.1;",
        }
        if page_view.language:
            params["utmul"] = page_view.language.split(",")[0].strip().lower()
        if page_view.client_ip:
            params["utmip"] = page_view.client_ip
        utme = encode_custom_variables(page_view.custom_variables)
        if utme:
            params["utme"] = utme
        return params

    async def track_page_view(
        self, request: Request, action_name: str, action_url: str
    ) -> TrackingResult:
        """Report a page view.

        Failures are logged and returned, never raised.

        Args:
            request: The request being tracked
            action_name: Page title reported for the view
            action_url: Page path reported for the view

        Returns:
            TrackingResult describing what was sent
        """
        # Snapshot before the first await; custom variables belong to this call
        page_view = self.build_page_view(request, action_name, action_url)

        if not self.settings.tracking_enabled:
            logger.debug("Tracking disabled, skipping page view %s", action_name)
            return TrackingResult(success=True)

        if not page_view.account:
            error = TrackerError("No tracking account configured")
            logger.warning("Page view %s not tracked: %s", action_name, error)
            return TrackingResult(success=False, exception=error)

        params = self.build_params(page_view)
        url = str(httpx.URL(self.settings.tracking_endpoint, params=params))

        try:
            await self._send(url, page_view)
        except TrackerError as e:
            logger.warning(
                "Failed to track page view %s",
                action_name,
                extra={"status_code": e.status_code},
                exc_info=True,
            )
            return TrackingResult(success=False, url=url, exception=e)

        logger.debug(
            "Tracked page view %s",
            action_name,
            extra={
                "action_url": action_url,
                "custom_variables": len(page_view.custom_variables),
            },
        )
        return TrackingResult(success=True, url=url)

    async def _send(self, url: str, page_view: PageView) -> None:
        headers = {}
        if page_view.user_agent:
            headers["User-Agent"] = page_view.user_agent
        if page_view.language:
            headers["Accept-Language"] = page_view.language

        try:
            response = await self.client.get(url, headers=headers)
        except httpx.RequestError as e:
            raise TrackerError(f"Tracking request failed: {e}") from e

        if response.status_code >= 400:
            raise TrackerError(
                f"Tracking request rejected: {response.status_code}",
                status_code=response.status_code,
            )
