"""
External license API connector tests.

HTTP is replaced at the get_licenses / _request / _send seams, so these run
without a network.
"""
import asyncio
import json

import pytest

from license_sync.config import Settings
from license_sync.connectors.license_api_connector import (
    AUTH_ERROR,
    RATE_LIMIT_ERROR,
    TRANSIENT_ERROR,
    ExternalLicenseApiConnector,
    LicenseApiError,
    classify_fetch_error,
)
from fakes import make_external_record


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


def _connector(**settings_overrides):
    settings = Settings(**settings_overrides)
    return ExternalLicenseApiConnector(base_url="http://licenses.test/", api_key="test-key", settings=settings)


def _serve_pages(connector, records, meta=None, fail_pages=None, reverse_completion=False):
    """Replace get_licenses with an in-memory paginated API."""
    requested = []

    async def get_licenses(page=1, limit=10, session=None, **kwargs):
        requested.append(page)
        if reverse_completion:
            await asyncio.sleep(0.001 * (10 - page))
        if fail_pages and page in fail_pages:
            raise fail_pages[page]
        start = (page - 1) * limit
        page_meta = meta if meta is not None else {"total": len(records), "page": page}
        return {"data": records[start:start + limit], "meta": page_meta}

    connector.get_licenses = get_licenses
    return requested


# ────────────────────────────────────────────
# CONSTRUCTION / CLASSIFICATION
# ────────────────────────────────────────────


def test_requires_api_key_and_url():
    with pytest.raises(ValueError):
        ExternalLicenseApiConnector(api_key=None, settings=Settings(external_license_api_key=None))
    with pytest.raises(ValueError):
        ExternalLicenseApiConnector(api_key="k", settings=Settings(external_license_api_url=""))


def test_base_url_and_retry_settings():
    connector = _connector(license_sync_retry_attempts=4, external_license_api_timeout_ms=1500)

    assert connector.base_url == "http://licenses.test"
    assert connector.RETRY_MAX_ATTEMPTS == 4
    assert connector.timeout_seconds == 1.5
    assert connector._headers()["x-api-key"] == "test-key"
    assert "Content-Type" in connector._headers(include_content_type=True)


@pytest.mark.parametrize("message, expected", [
    ("HTTP 401: Unauthorized", AUTH_ERROR),
    ("HTTP 403: Forbidden", AUTH_ERROR),
    ("HTTP 429: Too Many Requests", RATE_LIMIT_ERROR),
    ("rate limit exceeded", RATE_LIMIT_ERROR),
    ("HTTP 503: unavailable", TRANSIENT_ERROR),
    ("connection failed", TRANSIENT_ERROR),
    (None, TRANSIENT_ERROR),
])
def test_classify_fetch_error(message, expected):
    assert classify_fetch_error(message) == expected


# ────────────────────────────────────────────
# BULK FETCH
# ────────────────────────────────────────────


class TestGetAllLicenses:

    def test_pages_concatenate_in_page_order(self):
        connector = _connector()
        records = [make_external_record(i) for i in range(35)]
        _serve_pages(connector, records, reverse_completion=True)

        result = _run(connector.get_all_licenses(batch_size=10, concurrency_limit=2))

        assert result["success"]
        assert [r["appid"] for r in result["data"]] == [r["appid"] for r in records]
        assert result["total"] == 35
        assert result["meta"]["pages_fetched"] == 4
        assert connector.last_sync is not None

    def test_total_pages_meta_is_preferred(self):
        connector = _connector()
        records = [make_external_record(i) for i in range(30)]
        requested = _serve_pages(connector, records, meta={"totalPages": 2})

        result = _run(connector.get_all_licenses(batch_size=10))

        assert requested == [1, 2]
        assert len(result["data"]) == 20

    def test_unknown_total_stops_on_short_page(self):
        connector = _connector()
        records = [make_external_record(i) for i in range(25)]
        _serve_pages(connector, records, meta={})

        result = _run(connector.get_all_licenses(batch_size=10, concurrency_limit=5))

        assert result["success"]
        assert len(result["data"]) == 25
        assert result["meta"]["pages_fetched"] == 3

    def test_max_pages(self):
        connector = _connector()
        _serve_pages(connector, [make_external_record(i) for i in range(50)])

        result = _run(connector.get_all_licenses(batch_size=10, max_pages=2))

        assert result["meta"]["pages_fetched"] == 2
        assert len(result["data"]) == 20

    def test_max_records_truncates(self):
        connector = _connector()
        _serve_pages(connector, [make_external_record(i) for i in range(50)])

        result = _run(connector.get_all_licenses(batch_size=10, max_records=15))

        assert len(result["data"]) == 15

    def test_max_records_is_clamped_to_configured_maximum(self):
        connector = _connector(license_sync_max_comprehensive=100)
        requested = _serve_pages(connector, [make_external_record(i) for i in range(300)])

        result = _run(connector.get_all_licenses(batch_size=10, max_records=500))

        assert len(result["data"]) == 100
        assert max(requested) < 30

    def test_unidentifiable_records_are_dropped(self):
        connector = _connector()
        good = make_external_record(1)
        _serve_pages(connector, [good, "junk", {"dba": "no ids"}, {"countid": 0}])

        result = _run(connector.get_all_licenses(batch_size=10))

        assert result["data"] == [good, {"countid": 0}]
        validation = result["meta"]["validation"]
        assert (validation["total"], validation["valid"], validation["invalid"]) == (4, 2, 2)

    def test_page_failure_is_classified_not_raised(self):
        connector = _connector()
        _serve_pages(
            connector,
            [make_external_record(i) for i in range(30)],
            fail_pages={2: LicenseApiError(401, "Unauthorized")},
        )

        result = _run(connector.get_all_licenses(batch_size=10))

        assert result["success"] is False
        assert result["error"] == "HTTP 401: Unauthorized"
        assert result["error_type"] == AUTH_ERROR
        assert result["meta"]["pages_fetched"] == 1

    def test_first_page_rate_limited(self):
        connector = _connector()
        _serve_pages(connector, [], fail_pages={1: LicenseApiError(429, "Too Many Requests")})

        result = _run(connector.get_all_licenses(batch_size=10))

        assert result["error_type"] == RATE_LIMIT_ERROR
        assert result["meta"]["pages_fetched"] == 0

    def test_timeout_is_transient(self):
        connector = _connector()
        _serve_pages(
            connector,
            [make_external_record(i) for i in range(30)],
            fail_pages={3: TimeoutError("GET /api/v1/licenses timeout after 30.0s")},
        )

        result = _run(connector.get_all_licenses(batch_size=10))

        assert result["success"] is False
        assert result["error_type"] == TRANSIENT_ERROR
        assert "timeout" in result["error"]

    def test_malformed_first_page(self):
        connector = _connector()

        async def get_licenses(page=1, limit=10, session=None, **kwargs):
            return {"message": "maintenance"}

        connector.get_licenses = get_licenses

        result = _run(connector.get_all_licenses(batch_size=10))

        assert result == {
            "success": False,
            "error": "Failed to fetch first page",
            "error_type": TRANSIENT_ERROR,
            "meta": {"pages_fetched": 0, "licenses_fetched": 0},
        }

    def test_invalid_arguments_raise(self):
        connector = _connector()
        with pytest.raises(ValueError):
            _run(connector.get_all_licenses(batch_size=-1))


# ────────────────────────────────────────────
# SINGLE RECORD / UPDATES
# ────────────────────────────────────────────


def _capture_requests(connector, response=None, error=None):
    calls = []

    async def request(method, endpoint, params=None, payload=None, session=None):
        calls.append((method, endpoint, params, payload))
        if error is not None:
            raise error
        return response

    connector._request = request
    return calls


def test_get_license_by_app_id_unwraps_data():
    connector = _connector()
    calls = _capture_requests(connector, response={"data": {"appid": "a/b"}})

    assert _run(connector.get_license_by_app_id("a/b")) == {"appid": "a/b"}
    assert calls[0][:2] == ("GET", "/api/v1/licenses/a%2Fb")


def test_get_license_by_app_id_not_found():
    connector = _connector()
    _capture_requests(connector, error=LicenseApiError(404, "Not Found"))

    assert _run(connector.get_license_by_app_id("missing")) is None


def test_get_license_by_app_id_other_errors_propagate():
    connector = _connector()
    _capture_requests(connector, error=LicenseApiError(500, "boom"))

    with pytest.raises(LicenseApiError):
        _run(connector.get_license_by_app_id("app-1"))


def test_get_license_by_app_id_requires_id():
    with pytest.raises(ValueError):
        _run(_connector().get_license_by_app_id(""))


def test_updates_use_put_with_encoded_identifier():
    connector = _connector()
    calls = _capture_requests(connector, response={"success": True})

    _run(connector.update_license_by_app_id("app-1", {"dba": "x"}))
    _run(connector.update_license_by_email("owner+1@example.com", {"status": 0}))

    assert calls[0] == ("PUT", "/api/v1/licenses/app-1", None, {"dba": "x"})
    assert calls[1] == ("PUT", "/api/v1/licenses/email/owner%2B1%40example.com", None, {"status": 0})


def test_updates_validate_arguments():
    connector = _connector()
    with pytest.raises(ValueError):
        _run(connector.update_license_by_app_id("", {"dba": "x"}))
    with pytest.raises(ValueError):
        _run(connector.update_license_by_email("a@b.com", {}))


# ────────────────────────────────────────────
# REQUEST RETRY / HEALTH
# ────────────────────────────────────────────


def _script_send(connector, outcomes):
    calls = []

    async def send(session, method, endpoint, params=None, payload=None):
        calls.append(endpoint)
        outcome = outcomes[len(calls) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    connector._send = send
    return calls


def test_server_errors_are_retried():
    connector = _connector(license_sync_retry_delay_ms=1)
    calls = _script_send(connector, [LicenseApiError(503, "busy"), {"data": []}])

    assert _run(connector.get_licenses(page=1, limit=1)) == {"data": []}
    assert len(calls) == 2
    assert connector.retry_count == 1


def test_client_errors_are_not_retried():
    connector = _connector(license_sync_retry_delay_ms=1)
    calls = _script_send(connector, [LicenseApiError(401, "nope"), {"data": []}])

    with pytest.raises(LicenseApiError):
        _run(connector.get_licenses())
    assert len(calls) == 1
    assert connector.error_count == 1


def test_slow_request_times_out():
    connector = _connector(external_license_api_timeout_ms=10, license_sync_retry_attempts=1)

    async def send(session, method, endpoint, params=None, payload=None):
        await asyncio.sleep(1)

    connector._send = send

    with pytest.raises(TimeoutError, match="timeout"):
        _run(connector.get_licenses())


def test_health_check():
    connector = _connector()
    _capture_requests(connector, response={"data": []})
    assert _run(connector.health_check())["healthy"] is True

    _capture_requests(connector, error=ConnectionError("connection failed"))
    status = _run(connector.health_check())
    assert status["healthy"] is False
    assert status["error"] == "connection failed"
    assert status["connector"]["name"] == "ExternalLicenseAPI"
    assert connector.is_healthy is False


class _JsonResponse:
    """Minimal aiohttp response whose JSON body fails to decode."""

    status = 200
    headers = {"Content-Type": "application/json; charset=utf-8"}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self):
        return json.loads("{not json")

    async def text(self):
        return "{not json"


class _FakeSession:

    def __init__(self):
        self.calls = 0

    def request(self, method, url, **kwargs):
        self.calls += 1
        return _JsonResponse()


def test_malformed_json_body_is_a_server_error():
    connector = _connector(license_sync_retry_delay_ms=1, license_sync_retry_attempts=2)
    session = _FakeSession()

    with pytest.raises(LicenseApiError) as exc_info:
        _run(connector.get_licenses(session=session))

    assert exc_info.value.status == 502
    assert "Malformed JSON" in str(exc_info.value)
    assert session.calls == 2


def test_malformed_json_body_is_reported_by_bulk_fetch():
    connector = _connector(license_sync_retry_delay_ms=1, license_sync_retry_attempts=1)
    fake_session = _FakeSession()
    original = connector.get_licenses

    async def get_licenses(page=1, limit=10, session=None, **kwargs):
        return await original(page=page, limit=limit, session=fake_session)

    connector.get_licenses = get_licenses

    result = _run(connector.get_all_licenses(batch_size=10))

    assert result["success"] is False
    assert result["error_type"] == TRANSIENT_ERROR
    assert result["error"].startswith("HTTP 502")
