"""
External license API connector
Fetches license records from the third-party license management API

API structure:
  - GET  /api/v1/licenses?page=&limit=      paginated list ({data, meta})
  - GET  /api/v1/licenses/{appid}           single license
  - PUT  /api/v1/licenses/{appid}           update by appid
  - PUT  /api/v1/licenses/email/{email}     update by email
Authentication: x-api-key header
"""
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime
from urllib.parse import quote
import asyncio
import math
import time
import aiohttp
from license_sync.connectors.base_connector import BaseConnector
from license_sync.config import Settings, get_settings
from license_sync.utils.logger import log
from license_sync.utils.retry import with_timeout

LICENSES_ENDPOINT = "/api/v1/licenses"

# Used when the first page carries neither totalPages nor total
UNKNOWN_TOTAL_PAGE_CAP = 1000

# Fetch failure classes
AUTH_ERROR = "auth"
RATE_LIMIT_ERROR = "rate_limit"
TRANSIENT_ERROR = "transient"


class LicenseApiError(Exception):
    """Non-2xx response from the external license API"""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}: {body}")


# Failures we report in the fetch result instead of raising
EXPECTED_FETCH_ERRORS = (LicenseApiError, ConnectionError, TimeoutError, asyncio.TimeoutError, aiohttp.ClientError)


def classify_fetch_error(error: Optional[str]) -> str:
    """Bucket a fetch error message as auth, rate_limit or transient."""
    text = error or ""
    lowered = text.lower()
    if "401" in text or "403" in text or "unauthorized" in lowered or "forbidden" in lowered:
        return AUTH_ERROR
    if "429" in text or "too many requests" in lowered or "rate limit" in lowered:
        return RATE_LIMIT_ERROR
    return TRANSIENT_ERROR


class ExternalLicenseApiConnector(BaseConnector):
    """Connector for the external license management API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        monitor=None,
        settings: Optional[Settings] = None,
    ):
        super().__init__("ExternalLicenseAPI")
        self.settings = settings or get_settings()
        self.base_url = (base_url or self.settings.external_license_api_url or "").rstrip("/")
        self.api_key = api_key or self.settings.external_license_api_key

        if not self.api_key:
            raise ValueError("EXTERNAL_LICENSE_API_KEY is required")
        if not self.base_url:
            raise ValueError("EXTERNAL_LICENSE_API_URL is required")

        self.monitor = monitor
        self.timeout_seconds = self.settings.external_license_api_timeout_ms / 1000
        self.RETRY_MAX_ATTEMPTS = self.settings.license_sync_retry_attempts
        self.RETRY_BASE_DELAY = self.settings.license_sync_retry_delay_ms / 1000
        self.RETRY_BACKOFF_MULTIPLIER = self.settings.license_sync_retry_backoff_multiplier

        self.is_healthy = True
        self.last_health_check = None

    def _headers(self, include_content_type: bool = False) -> Dict[str, str]:
        headers = {
            "x-api-key": self.api_key,
            "User-Agent": self.settings.external_license_api_user_agent,
            "Accept": "application/json",
        }
        if include_content_type:
            headers["Content-Type"] = "application/json"
        return headers

    def _notify(self, method_name: str, *args):
        """Forward an API event to the monitor; monitoring never breaks a request."""
        if self.monitor is None:
            return
        try:
            getattr(self.monitor, method_name)(*args)
        except Exception as e:
            log.warning(f"Monitor {method_name} failed: {e}")

    async def _send(
        self,
        session: aiohttp.ClientSession,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        payload: Optional[Dict] = None,
    ) -> Any:
        started = time.time()
        try:
            async with session.request(
                method,
                f"{self.base_url}{endpoint}",
                headers=self._headers(payload is not None),
                params=params,
                json=payload,
            ) as response:
                self._notify("record_api_request", endpoint, method, started)

                if response.status >= 400:
                    body = await response.text()
                    error = LicenseApiError(response.status, body[:500])
                    self._notify("record_api_error", endpoint, method, error)
                    raise error

                if "application/json" in response.headers.get("Content-Type", ""):
                    try:
                        return await response.json()
                    except ValueError as e:
                        error = LicenseApiError(502, f"Malformed JSON body: {e}")
                        self._notify("record_api_error", endpoint, method, error)
                        raise error from e
                return await response.text()
        except aiohttp.ClientConnectionError as e:
            self._notify("record_api_error", endpoint, method, e)
            raise ConnectionError(f"connection failed: {method} {endpoint}: {e}") from e

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        payload: Optional[Dict] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> Any:
        """Authenticated request with timeout and retry on transient failures."""
        operation_name = f"{method} {endpoint}"
        self.request_count += 1

        async def attempt():
            if session is not None:
                return await with_timeout(
                    self._send(session, method, endpoint, params, payload),
                    self.timeout_seconds,
                    operation_name,
                )
            async with aiohttp.ClientSession() as own_session:
                return await with_timeout(
                    self._send(own_session, method, endpoint, params, payload),
                    self.timeout_seconds,
                    operation_name,
                )

        try:
            return await self._retry_operation(attempt, operation_name=operation_name)
        except Exception as e:
            self.error_count += 1
            log.error(f"External API request failed: {operation_name}: {e}")
            raise

    async def health_check(self) -> Dict[str, Any]:
        """Check the API answers a one-record page"""
        try:
            await self.get_licenses(page=1, limit=1)
            self.is_healthy = True
            self.last_health_check = datetime.utcnow()
            return {"healthy": True, "timestamp": self.last_health_check, "connector": self.get_status()}
        except Exception as e:
            self.is_healthy = False
            self.last_health_check = datetime.utcnow()
            log.error(f"External license API health check failed: {e}")
            return {
                "healthy": False,
                "timestamp": self.last_health_check,
                "error": str(e),
                "connector": self.get_status(),
            }

    async def get_licenses(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[Any] = None,
        dba: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> Dict:
        """Get one page of licenses"""
        params = {"page": str(page), "limit": str(limit)}
        if status is not None:
            params["status"] = str(status)
        if dba:
            params["dba"] = dba
        if sort_by:
            params["sortBy"] = sort_by
        if sort_order:
            params["sortOrder"] = sort_order

        return await self._request("GET", LICENSES_ENDPOINT, params=params, session=session)

    async def get_all_licenses(
        self,
        batch_size: Optional[int] = None,
        concurrency_limit: Optional[int] = None,
        max_records: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Fetch every page of licenses.

        Page 1 tells us how many pages exist; the rest are fetched
        concurrently, concurrency_limit pages at a time, and concatenated
        in page order. Any page failure turns the whole result into
        success=False with a classified error instead of raising.

        Returns:
            Dict with keys: success, data/error, error_type, meta.pages_fetched
        """
        settings = self.settings
        batch_size = batch_size or settings.license_sync_batch_size
        concurrency = min(
            concurrency_limit or settings.license_sync_concurrency,
            settings.license_sync_max_concurrent_batches,
        )
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if concurrency < 1:
            raise ValueError("concurrency_limit must be at least 1")

        record_cap = settings.license_sync_max_comprehensive
        if max_records and max_records > record_cap:
            log.warning(f"Requested license limit {max_records} exceeds maximum {record_cap}, clamping")
        record_limit = min(max_records, record_cap) if max_records else record_cap

        log.info(f"Starting bulk license fetch from external API (batch_size={batch_size}, concurrency={concurrency})")
        pages_fetched = 0

        try:
            async with aiohttp.ClientSession() as session:
                first = await self.get_licenses(page=1, limit=batch_size, session=session)
                first_data = first.get("data") if isinstance(first, dict) else None
                if not isinstance(first_data, list):
                    return {
                        "success": False,
                        "error": "Failed to fetch first page",
                        "error_type": TRANSIENT_ERROR,
                        "meta": {"pages_fetched": 0, "licenses_fetched": 0},
                    }

                records: List[Dict] = list(first_data)
                pages_fetched = 1

                meta = first.get("meta") or {}
                if meta.get("totalPages"):
                    total_pages = int(meta["totalPages"])
                elif meta.get("total") is not None:
                    total_pages = math.ceil(int(meta["total"]) / batch_size)
                else:
                    total_pages = UNKNOWN_TOTAL_PAGE_CAP
                if max_pages:
                    total_pages = min(total_pages, max_pages)

                log.info(
                    f"Bulk fetch info: first page {len(first_data)} records, "
                    f"estimated {total_pages} pages"
                )

                reached_end = len(first_data) < batch_size
                page = 2
                while not reached_end and page <= total_pages and len(records) < record_limit:
                    chunk = list(range(page, min(page + concurrency, total_pages + 1)))
                    responses = await asyncio.gather(
                        *(self.get_licenses(page=p, limit=batch_size, session=session) for p in chunk),
                        return_exceptions=True,
                    )

                    for page_num, response in zip(chunk, responses):
                        if isinstance(response, BaseException):
                            log.error(f"Error fetching page {page_num}: {response}")
                            raise response

                        data = response.get("data") if isinstance(response, dict) else None
                        if not isinstance(data, list):
                            raise LicenseApiError(502, f"Malformed response for page {page_num}")

                        pages_fetched += 1
                        records.extend(data)
                        log.debug(f"Fetched page {page_num}, total licenses: {len(records)}")

                        # A short page means we've reached the end
                        if len(data) < batch_size:
                            reached_end = True
                            break

                    page += len(chunk)

        except EXPECTED_FETCH_ERRORS as e:
            error = str(e) or type(e).__name__
            error_type = classify_fetch_error(error)
            log.error(f"Bulk license fetch failed ({error_type}): {error}")
            return {
                "success": False,
                "error": error,
                "error_type": error_type,
                "meta": {"pages_fetched": pages_fetched},
            }

        if len(records) > record_limit:
            log.info(f"Reached license limit {record_limit}, truncating {len(records)} fetched records")
            records = records[:record_limit]

        valid_records, validation = self._validate_records(records)
        self.mark_synced()

        log.info(f"Completed bulk license fetch: {len(valid_records)} licenses from {pages_fetched} pages")

        return {
            "success": True,
            "data": valid_records,
            "total": len(valid_records),
            "meta": {
                "fetched_at": datetime.utcnow(),
                "pages_fetched": pages_fetched,
                "validation": validation,
            },
        }

    def _validate_records(self, records: List[Any]) -> Tuple[List[Dict], Dict]:
        """Drop records that cannot be identified (no appid and no countid)."""
        valid = []
        errors = []
        for index, record in enumerate(records):
            if not isinstance(record, dict):
                errors.append({"index": index, "error": "Record is not an object"})
                continue
            if not record.get("appid") and record.get("countid") is None:
                errors.append({"index": index, "error": "Record has neither appid nor countid"})
                continue
            valid.append(record)

        summary = {
            "total": len(records),
            "valid": len(valid),
            "invalid": len(errors),
            "validation_errors": errors[:10],
        }
        if errors:
            log.warning(f"External license data validation dropped {len(errors)} of {len(records)} records")
        return valid, summary

    async def get_license_by_app_id(self, appid: str) -> Optional[Dict]:
        """Get single license by appid (None when the API says 404)"""
        if not appid:
            raise ValueError("App ID is required")

        try:
            response = await self._request("GET", f"{LICENSES_ENDPOINT}/{quote(str(appid), safe='')}")
        except LicenseApiError as e:
            if e.status == 404:
                return None
            raise

        if isinstance(response, dict) and isinstance(response.get("data"), dict):
            return response["data"]
        return response or None

    async def update_license_by_app_id(self, appid: str, updates: Dict) -> Any:
        """Update license by appid"""
        if not appid:
            raise ValueError("App ID is required")
        if not updates:
            raise ValueError("Update data is required")

        return await self._request("PUT", f"{LICENSES_ENDPOINT}/{quote(str(appid), safe='')}", payload=updates)

    async def update_license_by_email(self, email: str, updates: Dict) -> Any:
        """Update license by email"""
        if not email:
            raise ValueError("Email is required")
        if not updates:
            raise ValueError("Update data is required")

        return await self._request("PUT", f"{LICENSES_ENDPOINT}/email/{quote(email, safe='')}", payload=updates)
