"""Tests for the analytics Tracker."""

import httpx
import pytest
from starlette.requests import Request

from src.core.config import Settings
from src.models.domain.tracking import AssignedCustomVariable
from src.services.tracker import Tracker, TrackerError, encode_custom_variables


def make_request(
    path: str = "/customers/42",
    query: str = "",
    host: str = "shop.example.com",
    headers: dict[str, str] | None = None,
) -> Request:
    """Build a Starlette request without running an app."""
    raw_headers = [(b"host", host.encode())]
    for name, value in (headers or {}).items():
        raw_headers.append((name.lower().encode(), value.encode()))
    scope = {
        "type": "http",
        "method": "GET",
        "scheme": "https",
        "path": path,
        "query_string": query.encode(),
        "headers": raw_headers,
        "server": (host, 443),
        "client": ("203.0.113.7", 52100),
    }
    return Request(scope)


@pytest.fixture
def settings() -> Settings:
    """Create settings with tracking enabled."""
    return Settings(
        _env_file=None,
        tracking_account="UA-12345-1",
        tracking_endpoint="https://collector.test/__utm.gif",
    )


@pytest.fixture
def sent() -> list[httpx.Request]:
    return []


@pytest.fixture
def tracker(settings: Settings, sent: list[httpx.Request]) -> Tracker:
    """Create a Tracker whose HTTP client records requests."""

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        return httpx.Response(200, content=b"GIF89a")

    tracker = Tracker(settings=settings)
    tracker._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return tracker


class TestEncodeCustomVariables:
    """Tests for utme X10 encoding."""

    def test_empty(self) -> None:
        """Test no variables encode to an empty string."""
        assert encode_custom_variables([]) == ""

    def test_contiguous_slots(self) -> None:
        """Test names, values and page scopes are grouped."""
        encoded = encode_custom_variables(
            [
                AssignedCustomVariable(1, "CustomerId", "42"),
                AssignedCustomVariable(2, "CustomerName", "Acme"),
            ]
        )

        assert encoded == "8(CustomerId*CustomerName)9(42*Acme)11(3*3)"

    def test_escapes_reserved_characters(self) -> None:
        """Test quote, parenthesis, star and bang are escaped."""
        encoded = encode_custom_variables(
            [AssignedCustomVariable(1, "n'ame", "a*b)c!")]
        )

        assert encoded == "8(n'0ame)9(a'2b'1c'3)11(3)"

    def test_gap_prefixes_position(self) -> None:
        """Test a skipped slot is marked with its position."""
        encoded = encode_custom_variables(
            [
                AssignedCustomVariable(3, "b", "y"),
                AssignedCustomVariable(1, "a", "x"),
            ]
        )

        assert encoded == "8(a*3!b)9(x*3!y)11(3*3!3)"


class TestCustomVariableSlots:
    """Tests for clear/set on the tracker."""

    def test_set_and_clear(self, tracker: Tracker) -> None:
        """Test variables are kept in slot order until cleared."""
        tracker.set_custom_variable(2, "b", "2")
        tracker.set_custom_variable(1, "a", "1")

        assert [v.name for v in tracker.custom_variables] == ["a", "b"]

        tracker.clear_custom_variables()

        assert tracker.custom_variables == []

    def test_same_slot_overwrites(self, tracker: Tracker) -> None:
        """Test setting a slot twice keeps the last value."""
        tracker.set_custom_variable(1, "a", "1")
        tracker.set_custom_variable(1, "b", "2")

        assert tracker.custom_variables == [AssignedCustomVariable(1, "b", "2")]

    @pytest.mark.parametrize("position", [0, 6, -1])
    def test_rejects_position_out_of_range(self, tracker: Tracker, position: int) -> None:
        """Test only slots 1..5 exist."""
        with pytest.raises(ValueError, match="between 1 and 5"):
            tracker.set_custom_variable(position, "a", "1")


class TestBuildPageView:
    """Tests for page view construction."""

    def test_domain_falls_back_to_request_host(self, tracker: Tracker) -> None:
        """Test the request host is used when no domain is configured."""
        page_view = tracker.build_page_view(make_request(), "customers - get", "/customers/42")

        assert page_view.domain == "shop.example.com"
        assert page_view.account == "UA-12345-1"
        assert page_view.client_ip == "203.0.113.7"

    def test_configured_domain_wins(self, settings: Settings) -> None:
        """Test an explicit tracking domain is reported as is."""
        tracker = Tracker(tracking_domain="www.example.org", settings=settings)

        page_view = tracker.build_page_view(make_request(), "a", "/")

        assert page_view.domain == "www.example.org"

    def test_client_id_from_header(self, tracker: Tracker) -> None:
        """Test the X-Client-ID header identifies the visitor."""
        request = make_request(headers={"X-Client-ID": "visitor-1"})

        assert tracker.build_page_view(request, "a", "/").client_id == "visitor-1"

    def test_client_id_from_cookie(self, tracker: Tracker) -> None:
        """Test the configured cookie identifies the visitor."""
        request = make_request(headers={"Cookie": "analytics_client_id=visitor-2"})

        assert tracker.build_page_view(request, "a", "/").client_id == "visitor-2"

    def test_client_id_generated(self, tracker: Tracker) -> None:
        """Test a fresh id is generated for anonymous requests."""
        first = tracker.build_page_view(make_request(), "a", "/").client_id
        second = tracker.build_page_view(make_request(), "a", "/").client_id

        assert first and second and first != second

    def test_snapshots_custom_variables(self, tracker: Tracker) -> None:
        """Test later changes do not alter a built page view."""
        tracker.set_custom_variable(1, "a", "1")
        page_view = tracker.build_page_view(make_request(), "a", "/")

        tracker.clear_custom_variables()

        assert page_view.custom_variables == [AssignedCustomVariable(1, "a", "1")]


class TestTrackPageView:
    """Tests for sending page views."""

    async def test_sends_gif_request(self, tracker: Tracker, sent: list[httpx.Request]) -> None:
        """Test a single GET with page and custom variable parameters."""
        tracker.set_custom_variable(1, "CustomerId", "42")
        request = make_request(
            query="verbose=true",
            headers={"User-Agent": "pytest", "Accept-Language": "en-GB,en;q=0.9"},
        )

        result = await tracker.track_page_view(
            request, "customers - get_customer", "/customers/42?verbose=true"
        )

        assert result.success is True
        assert result.exception is None
        assert len(sent) == 1
        params = sent[0].url.params
        assert sent[0].method == "GET"
        assert sent[0].url.host == "collector.test"
        assert params["utmac"] == "UA-12345-1"
        assert params["utmhn"] == "shop.example.com"
        assert params["utmdt"] == "customers - get_customer"
        assert params["utmp"] == "/customers/42?verbose=true"
        assert params["utme"] == "8(CustomerId)9(42)11(3)"
        assert params["utmul"] == "en-gb"
        assert params["utmip"] == "203.0.113.7"
        assert sent[0].headers["User-Agent"] == "pytest"
        assert result.url == str(sent[0].url)

    async def test_omits_utme_without_variables(
        self, tracker: Tracker, sent: list[httpx.Request]
    ) -> None:
        """Test no utme parameter when no custom variables are set."""
        await tracker.track_page_view(make_request(), "a", "/")

        assert "utme" not in sent[0].url.params

    async def test_server_error_returned_not_raised(self, settings: Settings) -> None:
        """Test a rejected request yields a failed result."""
        tracker = Tracker(settings=settings)
        tracker._client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )

        result = await tracker.track_page_view(make_request(), "a", "/")

        assert result.success is False
        assert isinstance(result.exception, TrackerError)
        assert result.exception.status_code == 503
        assert result.url is not None

    async def test_transport_error_returned_not_raised(self, settings: Settings) -> None:
        """Test connection failures yield a failed result."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        tracker = Tracker(settings=settings)
        tracker._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        result = await tracker.track_page_view(make_request(), "a", "/")

        assert result.success is False
        assert isinstance(result.exception, TrackerError)
        assert isinstance(result.exception.__cause__, httpx.ConnectError)

    async def test_disabled_sends_nothing(self, sent: list[httpx.Request]) -> None:
        """Test disabled tracking skips the request."""
        settings = Settings(_env_file=None, tracking_account="UA-1-1", tracking_enabled=False)
        tracker = Tracker(settings=settings)

        result = await tracker.track_page_view(make_request(), "a", "/")

        assert result.success is True
        assert result.url is None
        assert sent == []

    async def test_missing_account(self, sent: list[httpx.Request]) -> None:
        """Test a tracker without an account reports a failure."""
        settings = Settings(_env_file=None, tracking_account="")
        tracker = Tracker(settings=settings)

        result = await tracker.track_page_view(make_request(), "a", "/")

        assert result.success is False
        assert isinstance(result.exception, TrackerError)
        assert sent == []

    async def test_visitor_number_stable_per_client(
        self, tracker: Tracker, sent: list[httpx.Request]
    ) -> None:
        """Test the utma visitor number is derived from the client id."""
        for client_id in ("visitor-1", "visitor-1", "visitor-2"):
            request = make_request(headers={"X-Client-ID": client_id})
            await tracker.track_page_view(request, "a", "/")

        visitors = [r.url.params["utmcc"].split(".")[1] for r in sent]
        assert visitors[0] == visitors[1]
        assert visitors[0] != visitors[2]
        assert all(0 <= int(v) <= 0x7FFFFFFF for v in visitors)


class TestClientLifecycle:
    """Tests for HTTP client lifecycle."""

    async def test_close_releases_client(self, settings: Settings) -> None:
        """Test close() drops the lazily created client."""
        tracker = Tracker(settings=settings)
        assert isinstance(tracker.client, httpx.AsyncClient)

        await tracker.close()

        assert tracker._client is None

    async def test_close_without_client(self, settings: Settings) -> None:
        """Test close() before first use is a no-op."""
        tracker = Tracker(settings=settings)
        await tracker.close()
