"""
Field Sanitizer / Normalizer

Single chokepoint that turns loosely-typed external license records (as the
external API sends them, or as the mirror table hands them back) into the
internal license shape.

Every function here is total: malformed input gives a best-effort value,
never an exception. transform_robustly additionally has a minimal fallback
record for the case where the full mapping fails, so a bad record can
never stall a sync.
"""
import math
import re
import secrets
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Union

from dateutil import parser as date_parser

from license_sync.config import get_settings
from license_sync.utils.helpers import epoch_ms, payload_snapshot
from license_sync.utils.logger import log

MAX_STRING_LENGTH = 255
MAX_KEY_LENGTH = 100

DEFAULT_PLAN = "Basic"
DEFAULT_TERM = "monthly"
FALLBACK_NOTES = "Created from malformed external data"

ACTIVE_STATUSES = {"active", "1", "true", "yes"}
CANCEL_STATUSES = {"cancel", "cancelled", "inactive", "0", "false", "no"}
PASSTHROUGH_STATUSES = {"pending", "suspended", "trial"}

# External API sends ActivateDate as MM/DD/YYYY
_MMDDYYYY = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")

Number = Union[int, float]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _safe_get(record: Any, key: str) -> Any:
    try:
        return record.get(key)
    except Exception:
        return None


def _first(record: Dict, *keys: str) -> Any:
    """First non-None value among alias keys (PascalCase/camelCase/snake_case)."""
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


# ────────────────────────────────────────────
# Scalar sanitizers
# ────────────────────────────────────────────


def sanitize_string(value: Any) -> str:
    """Strip null bytes, trim, cap at 255 chars. None -> ''."""
    if value is None:
        return ""
    try:
        text = str(value)
    except Exception:
        return ""
    return text.replace("\x00", "").strip()[:MAX_STRING_LENGTH]


def sanitize_number(value: Any) -> Number:
    """
    Coerce to a non-negative number.

    None, empty strings, NaN, infinities and negatives all become 0;
    negative balances or counts carry no meaning for a license.
    """
    if value is None:
        return 0
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return 0
    try:
        num = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    if math.isnan(num) or math.isinf(num) or num < 0:
        return 0
    return int(num) if num.is_integer() else num


def _parse_date(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        if math.isnan(value) or math.isinf(value):
            return None
        # Epoch milliseconds
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        match = _MMDDYYYY.match(text)
        if match:
            month, day, year = (int(part) for part in match.groups())
            parsed = datetime(year, month, day)
        else:
            parsed = date_parser.parse(text)
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def sanitize_date(value: Any) -> str:
    """
    Parse to an ISO 8601 UTC string.

    Missing or unparsable values become the current timestamp: a bad date
    never blocks a sync.
    """
    try:
        parsed = _parse_date(value)
    except (ValueError, OverflowError, OSError, TypeError):
        parsed = None
    if parsed is None:
        return _now_iso()
    return parsed.isoformat()


def sanitize_agents_name(value: Any) -> str:
    """List -> comma-joined names; string -> trimmed; anything else -> ''."""
    if isinstance(value, (list, tuple)):
        names = [sanitize_string(item) for item in value if item is not None]
        return ", ".join(name for name in names if name)
    if isinstance(value, str):
        return value.strip()
    return ""


def normalize_status(value: Any) -> str:
    """
    Map the many external status encodings onto internal statuses.

    Unknown values become 'pending', never 'active'.
    """
    if value is None:
        return "pending"
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, float) and value.is_integer():
        text = str(int(value))
    else:
        text = sanitize_string(value).lower()

    if text in ACTIVE_STATUSES:
        return "active"
    if text in CANCEL_STATUSES:
        return "cancel"
    if text in PASSTHROUGH_STATUSES:
        return text
    return "pending"


def _coerce_countid(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    text = sanitize_string(value)
    if text.lstrip("-").isdigit():
        return int(text)
    return None


def _optional_string(value: Any) -> Optional[str]:
    text = sanitize_string(value)
    return text or None


def match_keys(external: Any) -> Dict:
    """
    appid and countid exactly as they are stored on internal licenses.

    Used both when writing identifiers and when looking a record up, so a
    created license is always found again by the same key.
    """
    return {
        "appid": _optional_string(_safe_get(external, "appid")),
        "countid": _coerce_countid(_safe_get(external, "countid")),
    }


def _identifiers(external: Any) -> Dict:
    """External identifiers in internal form; tolerant of non-dict input."""
    email = _safe_get(external, "emailLicense")
    if email is None:
        email = _safe_get(external, "Email_license")
    return {
        **match_keys(external),
        "mid": _optional_string(_safe_get(external, "mid")),
        "email_license": _optional_string(email),
    }


def _placeholder_dba() -> str:
    return f"External License {epoch_ms()}-{secrets.token_hex(2)}"


# ────────────────────────────────────────────
# Record transforms
# ────────────────────────────────────────────


def _full_transform(external: Dict) -> Dict:
    settings = get_settings()

    status = normalize_status(_first(external, "status"))
    dba = (
        sanitize_string(_first(external, "dba"))
        or sanitize_string(_first(external, "emailLicense", "Email_license"))
        or _placeholder_dba()
    )
    last_active = sanitize_date(_first(external, "lastActive", "last_active"))

    cancel_raw = _first(external, "cancelDate", "cancel_date")
    cancel_date = sanitize_date(cancel_raw) if cancel_raw not in (None, "") else None
    if status == "cancel" and not cancel_date:
        cancel_date = last_active

    coming_expired = _first(external, "comingExpired", "Coming_expired")

    record = {
        "product": sanitize_string(_first(external, "product")) or settings.license_sync_default_product,
        "dba": dba,
        "zip": sanitize_string(_first(external, "zip")),
        "status": status,
        "plan": sanitize_string(_first(external, "plan")) or DEFAULT_PLAN,
        "term": sanitize_string(_first(external, "term")) or DEFAULT_TERM,
        "last_payment": sanitize_number(_first(external, "lastPayment", "monthlyFee")),
        "sms_balance": sanitize_number(_first(external, "smsBalance", "sms_balance")),
        "seats_total": sanitize_number(_first(external, "seatsTotal")) or 1,
        "seats_used": sanitize_number(_first(external, "seatsUsed")),
        "agents": sanitize_number(_first(external, "agents")),
        "agents_name": sanitize_agents_name(_first(external, "agentsName")),
        "agents_cost": sanitize_number(_first(external, "agentsCost")),
        "notes": sanitize_string(_first(external, "notes", "Note", "note")),
        "starts_at": sanitize_date(_first(external, "startsAt", "ActivateDate", "activateDate")),
        "last_active": last_active,
        "cancel_date": cancel_date,
        "license_type": _optional_string(_first(external, "license_type", "licenseType")),
        "package_data": _first(external, "package", "Package", "package_data"),
        "sendbat_workspace": _optional_string(_first(external, "sendbatWorkspace", "Sendbat_workspace")),
        "coming_expired": sanitize_date(coming_expired) if coming_expired not in (None, "") else None,
        "external_sync_status": "synced",
        "last_external_sync": datetime.utcnow(),
    }
    record.update(_identifiers(external))
    return record


def _fallback_record(external: Any) -> Dict:
    """Minimal valid internal record: identifiers, defaults, sync metadata."""
    now_iso = _now_iso()
    record = {
        "product": get_settings().license_sync_default_product,
        "dba": _placeholder_dba(),
        "zip": "",
        "status": "pending",
        "plan": DEFAULT_PLAN,
        "term": DEFAULT_TERM,
        "last_payment": 0,
        "sms_balance": 0,
        "seats_total": 1,
        "seats_used": 0,
        "agents": 0,
        "agents_name": "",
        "agents_cost": 0,
        "notes": FALLBACK_NOTES,
        "starts_at": now_iso,
        "last_active": now_iso,
        "cancel_date": None,
        "external_sync_status": "synced",
        "last_external_sync": datetime.utcnow(),
    }
    record.update(_identifiers(external))
    return record


def transform_robustly(external: Dict) -> Dict:
    """
    Map an external record to the internal license shape with defaults.

    Falls back to a minimal record when the full mapping raises.
    """
    try:
        return _full_transform(external)
    except Exception as e:
        log.error(
            f"Failed to transform external license robustly, using minimal fallback: {e} "
            f"| data={payload_snapshot(external)}"
        )
        return _fallback_record(external)


def generate_unique_key(external: Dict) -> str:
    """
    EXT-<identifiers>-<epoch ms>-<random>, at most 100 chars.

    Only the identifier part is ever truncated, so the time and random
    suffix always survive.
    """
    identifiers = []
    for key in ("appid", "countid", "mid", "emailLicense"):
        text = sanitize_string(_safe_get(external, key))
        if text:
            identifiers.append(text)

    identifier_string = "-".join(identifiers) if identifiers else "unknown"
    suffix = f"-{epoch_ms()}-{secrets.token_hex(3)}"
    prefix = f"EXT-{identifier_string}"[:MAX_KEY_LENGTH - len(suffix)]
    return prefix + suffix


def create_external_update_data(external: Dict) -> Dict:
    """
    Selective patch for an existing internal license.

    Only fields the external record actually provides are included, so an
    update never blanks out data the external side does not know about.
    """
    update: Dict[str, Any] = {}

    def put(dest: str, value: Any, transform=None):
        if value is not None:
            update[dest] = transform(value) if transform else value

    dba = sanitize_string(_first(external, "dba"))
    if dba:
        update["dba"] = dba
    put("zip", _first(external, "zip"), sanitize_string)
    put("plan", _first(external, "plan"), sanitize_string)
    put("term", _first(external, "term"), sanitize_string)
    put("last_payment", _first(external, "lastPayment", "monthlyFee"), sanitize_number)
    put("sms_balance", _first(external, "smsBalance", "sms_balance"), sanitize_number)
    put("seats_total", _first(external, "seatsTotal"), sanitize_number)
    put("seats_used", _first(external, "seatsUsed"), sanitize_number)
    put("agents_name", _first(external, "agentsName"), sanitize_agents_name)
    put("notes", _first(external, "notes", "Note", "note"), sanitize_string)
    put("starts_at", _first(external, "startsAt", "ActivateDate", "activateDate"), sanitize_date)
    put("last_active", _first(external, "lastActive", "last_active"), sanitize_date)

    status_raw = _first(external, "status")
    if status_raw is not None:
        status = normalize_status(status_raw)
        update["status"] = status
        if status == "cancel":
            update["cancel_date"] = sanitize_date(
                _first(external, "cancelDate", "cancel_date", "lastActive")
            )

    for dest, value in _identifiers(external).items():
        if value is not None:
            update[dest] = value

    put("license_type", _first(external, "license_type", "licenseType"), sanitize_string)
    put("package_data", _first(external, "package", "Package", "package_data"))
    put("sendbat_workspace", _first(external, "sendbatWorkspace", "Sendbat_workspace"), sanitize_string)
    put("coming_expired", _first(external, "comingExpired", "Coming_expired"), sanitize_date)
    return update


def internal_to_external_format(internal: Dict) -> Dict:
    """Payload pushed back to the external API by the reverse sync."""
    return {
        "dba": internal.get("dba") or "",
        "zip": internal.get("zip") or "",
        "status": 1 if internal.get("status") == "active" else 0,
        "monthlyFee": internal.get("last_payment") or 0,
        "smsBalance": internal.get("sms_balance") or 0,
        "Note": internal.get("notes") or "",
    }
