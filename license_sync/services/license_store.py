"""
License stores

SQLAlchemy-backed stores for the two license tables:
- ExternalLicenseStore: the external mirror (external_licenses), keyed by appid.
  Rows are handed back in the external (camelCase) record shape so the field
  sanitizer stays the only place that converts external data.
- InternalLicenseStore: the internal system of record (licenses), snake_case.

Methods are async so the sync services can await them uniformly; each call
runs on its own short-lived session from the session factory.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, or_

from license_sync.config import get_settings
from license_sync.models.base import SessionLocal
from license_sync.models.license import ExternalLicense, License
from license_sync.services.field_sanitizer import sanitize_number
from license_sync.utils.helpers import chunk_list, safe_divide
from license_sync.utils.logger import log

ACTIVE_EXTERNAL_STATUSES = ("1", "active", "true", "True")


@contextmanager
def session_scope(session_factory: Callable = SessionLocal):
    """Commit on success, roll back on error, always close."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _truncate(value: Any, max_len: int) -> Optional[str]:
    if value is None:
        return None
    return str(value)[:max_len]


def _status_text(status: Any) -> Optional[str]:
    """Status as text normalize_status reads the same way as the raw value."""
    if status is None:
        return None
    if isinstance(status, bool):
        return "true" if status else "false"
    if isinstance(status, float) and status.is_integer():
        return str(int(status))
    return _truncate(status, 32)


def _first(data: Dict, *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


class ExternalLicenseStore:
    """External mirror of the third-party license API"""

    def __init__(self, session_factory: Callable = SessionLocal, settings=None):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    # ────────────────────────────────────────────
    # Row <-> record conversion
    # ────────────────────────────────────────────

    @staticmethod
    def _to_record(row: ExternalLicense) -> Dict:
        return {
            "id": row.id,
            "appid": row.appid,
            "countid": row.countid,
            "mid": row.mid,
            "emailLicense": row.email_license,
            "dba": row.dba or row.email_license or "",
            "zip": row.zip,
            "status": row.status,
            "plan": row.plan,
            "term": row.term,
            "monthlyFee": row.last_payment or 0,
            "smsBalance": row.sms_balance or 0,
            "seatsTotal": row.seats_total,
            "seatsUsed": row.seats_used,
            "agentsName": row.agents_name,
            "notes": row.notes,
            "license_type": row.license_type,
            "package": row.package_data,
            "sendbatWorkspace": row.sendbat_workspace,
            "startsAt": row.starts_at,
            "lastActive": row.last_active,
            "cancelDate": row.cancel_date,
            "comingExpired": row.coming_expired,
            "syncStatus": row.sync_status,
            "syncError": row.sync_error,
            "lastSyncedAt": row.last_synced_at,
            "createdAt": row.created_at,
            "updatedAt": row.updated_at,
        }

    @staticmethod
    def _to_columns(data: Dict) -> Dict:
        """
        Format an external record for the mirror table.

        Raises ValueError for records that cannot be stored (no appid,
        non-numeric countid).
        """
        if not isinstance(data, dict):
            raise ValueError("record is not an object")

        appid = _truncate(_first(data, "appid"), 255)
        if not appid:
            raise ValueError("missing appid")

        countid = data.get("countid")
        if countid is not None and countid != "":
            countid = int(countid)
        else:
            countid = None

        seats_total = _first(data, "seatsTotal", "seats_total")
        seats_used = _first(data, "seatsUsed", "seats_used")
        status = data.get("status")

        return {
            "appid": appid,
            "countid": countid,
            "mid": _truncate(data.get("mid"), 255),
            "email_license": _truncate(_first(data, "emailLicense", "Email_license"), 255),
            "dba": _truncate(data.get("dba"), 255),
            "zip": _truncate(data.get("zip"), 10),
            "status": _status_text(status),
            "plan": _truncate(data.get("plan"), 64),
            "term": _truncate(data.get("term"), 32),
            "last_payment": sanitize_number(_first(data, "lastPayment", "monthlyFee")),
            "sms_balance": sanitize_number(_first(data, "smsBalance", "sms_balance")),
            "seats_total": int(sanitize_number(seats_total)) if seats_total is not None else None,
            "seats_used": int(sanitize_number(seats_used)) if seats_used is not None else None,
            "agents_name": _first(data, "agentsName"),
            "notes": _first(data, "notes", "Note", "note"),
            "license_type": _truncate(_first(data, "license_type", "licenseType"), 50),
            "package_data": _first(data, "package", "Package"),
            "sendbat_workspace": _truncate(_first(data, "sendbatWorkspace", "Sendbat_workspace"), 255),
            "starts_at": _truncate(_first(data, "startsAt", "ActivateDate", "activateDate"), 64),
            "last_active": _truncate(_first(data, "lastActive", "last_active"), 64),
            "cancel_date": _truncate(_first(data, "cancelDate", "cancel_date"), 64),
            "coming_expired": _truncate(_first(data, "comingExpired", "Coming_expired"), 64),
        }

    def _apply_filters(self, query, filters: Optional[Dict]):
        filters = filters or {}
        if filters.get("sync_status"):
            query = query.filter(ExternalLicense.sync_status == filters["sync_status"])
        if filters.get("status") is not None:
            query = query.filter(ExternalLicense.status == str(filters["status"]))
        if filters.get("dba"):
            query = query.filter(ExternalLicense.dba.ilike(f"%{filters['dba']}%"))
        return query

    # ────────────────────────────────────────────
    # Lookups
    # ────────────────────────────────────────────

    async def find_by_app_id(self, appid: str) -> Optional[Dict]:
        with session_scope(self.session_factory) as db:
            row = db.query(ExternalLicense).filter(ExternalLicense.appid == str(appid)).first()
            return self._to_record(row) if row else None

    async def find_by_count_id(self, countid: int) -> Optional[Dict]:
        with session_scope(self.session_factory) as db:
            row = db.query(ExternalLicense).filter(ExternalLicense.countid == countid).first()
            return self._to_record(row) if row else None

    async def find_licenses(self, page: int = 1, limit: int = 100, filters: Optional[Dict] = None) -> Dict:
        """One page of mirror rows, ordered by id: {licenses, total}"""
        page = max(page, 1)
        with session_scope(self.session_factory) as db:
            query = self._apply_filters(db.query(ExternalLicense), filters)
            total = query.count()
            rows = (
                query.order_by(ExternalLicense.id)
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            return {"licenses": [self._to_record(row) for row in rows], "total": total}

    async def find_licenses_needing_sync(self, limit: int = 100) -> List[Dict]:
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(ExternalLicense)
                .filter(ExternalLicense.sync_status.in_(["pending", "failed"]))
                .order_by(ExternalLicense.updated_at)
                .limit(limit)
                .all()
            )
            return [self._to_record(row) for row in rows]

    # ────────────────────────────────────────────
    # Writes
    # ────────────────────────────────────────────

    async def upsert(self, data: Dict) -> Dict:
        """Insert or update a single mirror row by appid"""
        columns = self._to_columns(data)
        with session_scope(self.session_factory) as db:
            row = db.query(ExternalLicense).filter(ExternalLicense.appid == columns["appid"]).first()
            if row is None:
                row = ExternalLicense(**columns)
                db.add(row)
            else:
                for key, value in columns.items():
                    setattr(row, key, value)
                row.updated_at = datetime.utcnow()
            db.flush()
            return self._to_record(row)

    async def bulk_upsert(self, records: List[Dict]) -> Dict:
        """
        Upsert many external records keyed by appid.

        Records that cannot be formatted are reported individually; duplicate
        appids within one call keep the first occurrence. Each chunk of
        license_sync_db_bulk_batch_size rows is one transaction, and a failed
        chunk reports every one of its records as an error.

        Returns:
            Dict with keys: created, updated, errors [{data, error}],
            total_processed, success_rate
        """
        created = 0
        updated = 0
        errors: List[Dict] = []
        chunk_size = self.settings.license_sync_db_bulk_batch_size

        for chunk_number, chunk in enumerate(chunk_list(list(records), chunk_size), start=1):
            formatted = []
            seen_appids = set()
            for data in chunk:
                try:
                    columns = self._to_columns(data)
                except (ValueError, TypeError) as e:
                    errors.append({"data": data, "error": f"Data formatting error: {e}"})
                    continue
                if columns["appid"] in seen_appids:
                    log.debug(f"Dropping duplicate appid {columns['appid']} in bulk upsert chunk {chunk_number}")
                    continue
                seen_appids.add(columns["appid"])
                formatted.append((data, columns))

            if not formatted:
                log.warning(f"No valid data in bulk upsert chunk {chunk_number}, skipping")
                continue

            try:
                chunk_created, chunk_updated = self._upsert_chunk([columns for _, columns in formatted])
                created += chunk_created
                updated += chunk_updated
            except Exception as e:
                log.error(f"Bulk upsert chunk {chunk_number} failed: {e}")
                errors.extend({"data": data, "error": str(e)} for data, _ in formatted)

        total = len(records)
        summary = {
            "created": created,
            "updated": updated,
            "errors": errors,
            "total_processed": created + updated + len(errors),
            "success_rate": round(safe_divide(created + updated, total) * 100),
        }
        log.debug(f"Bulk upsert completed: {created} created, {updated} updated, {len(errors)} errors")
        return summary

    def _upsert_chunk(self, rows: List[Dict]) -> tuple:
        created = 0
        updated = 0
        now = datetime.utcnow()
        with session_scope(self.session_factory) as db:
            appids = [row["appid"] for row in rows]
            existing = {
                lic.appid: lic
                for lic in db.query(ExternalLicense).filter(ExternalLicense.appid.in_(appids)).all()
            }
            for columns in rows:
                lic = existing.get(columns["appid"])
                if lic is None:
                    db.add(ExternalLicense(**columns, sync_status="pending", created_at=now, updated_at=now))
                    created += 1
                else:
                    for key, value in columns.items():
                        setattr(lic, key, value)
                    lic.updated_at = now
                    updated += 1
        return created, updated

    async def bulk_mark_synced(self, ids: List[int], synced_at: Optional[datetime] = None):
        if not ids:
            return
        synced_at = synced_at or datetime.utcnow()
        for chunk in chunk_list(list(ids), self.settings.license_sync_db_bulk_batch_size):
            with session_scope(self.session_factory) as db:
                db.query(ExternalLicense).filter(ExternalLicense.id.in_(chunk)).update(
                    {"sync_status": "synced", "sync_error": None, "last_synced_at": synced_at},
                    synchronize_session=False,
                )

    async def mark_synced(self, license_id: int, synced_at: Optional[datetime] = None):
        await self.bulk_mark_synced([license_id], synced_at)

    async def mark_sync_failed(self, license_id: int, error: str):
        with session_scope(self.session_factory) as db:
            db.query(ExternalLicense).filter(ExternalLicense.id == license_id).update(
                {"sync_status": "failed", "sync_error": str(error)[:2000]},
                synchronize_session=False,
            )

    # ────────────────────────────────────────────
    # Stats
    # ────────────────────────────────────────────

    async def get_license_stats_with_filters(self, filters: Optional[Dict] = None) -> Dict:
        with session_scope(self.session_factory) as db:
            base = self._apply_filters(db.query(ExternalLicense), filters)
            return {
                "total": base.count(),
                "active": base.filter(ExternalLicense.status.in_(ACTIVE_EXTERNAL_STATUSES)).count(),
                "pending": base.filter(ExternalLicense.sync_status == "pending").count(),
                "synced": base.filter(ExternalLicense.sync_status == "synced").count(),
                "failed": base.filter(ExternalLicense.sync_status == "failed").count(),
            }

    async def get_sync_stats(self) -> Dict:
        stats = await self.get_license_stats_with_filters()
        stats["success_rate"] = round(safe_divide(stats["synced"], stats["total"]) * 100)
        stats.pop("active", None)
        return stats

    async def get_last_sync_timestamp(self) -> Optional[datetime]:
        with session_scope(self.session_factory) as db:
            return db.query(func.max(ExternalLicense.last_synced_at)).scalar()


class InternalLicenseStore:
    """Internal license table (system of record)"""

    COLUMNS = tuple(column.name for column in License.__table__.columns)

    def __init__(self, session_factory: Callable = SessionLocal):
        self.session_factory = session_factory

    @classmethod
    def _to_record(cls, row: License) -> Dict:
        return {name: getattr(row, name) for name in cls.COLUMNS}

    @classmethod
    def _known_columns(cls, data: Dict) -> Dict:
        return {key: value for key, value in data.items() if key in cls.COLUMNS and key != "id"}

    def _apply_filters(self, query, filters: Optional[Dict]):
        filters = filters or {}
        if filters.get("has_external_data"):
            query = query.filter(or_(License.appid.isnot(None), License.countid.isnot(None)))
        if filters.get("status"):
            query = query.filter(License.status == filters["status"])
        return query

    async def find_by_app_id(self, appid: str) -> Optional[Dict]:
        with session_scope(self.session_factory) as db:
            row = db.query(License).filter(License.appid == str(appid)).first()
            return self._to_record(row) if row else None

    async def find_by_count_id(self, countid: int) -> Optional[Dict]:
        with session_scope(self.session_factory) as db:
            row = db.query(License).filter(License.countid == countid).first()
            return self._to_record(row) if row else None

    async def find_licenses(self, page: int = 1, limit: int = 100, filters: Optional[Dict] = None) -> Dict:
        page = max(page, 1)
        with session_scope(self.session_factory) as db:
            query = self._apply_filters(db.query(License), filters)
            total = query.count()
            rows = query.order_by(License.id).offset((page - 1) * limit).limit(limit).all()
            return {"licenses": [self._to_record(row) for row in rows], "total": total}

    async def update(self, license_id: int, patch: Dict) -> Dict:
        with session_scope(self.session_factory) as db:
            row = db.query(License).filter(License.id == license_id).first()
            if row is None:
                raise LookupError(f"License {license_id} not found")
            for key, value in self._known_columns(patch).items():
                setattr(row, key, value)
            row.updated_at = datetime.utcnow()
            db.flush()
            return self._to_record(row)

    async def save(self, data: Dict) -> Dict:
        with session_scope(self.session_factory) as db:
            row = License(**self._known_columns(data))
            db.add(row)
            db.flush()
            return self._to_record(row)

    async def get_license_stats_with_filters(self, filters: Optional[Dict] = None) -> Dict:
        with session_scope(self.session_factory) as db:
            base = self._apply_filters(db.query(License), filters)
            return {
                "total": base.count(),
                "active": base.filter(License.status == "active").count(),
                "cancel": base.filter(License.status == "cancel").count(),
                "with_external_data": base.filter(
                    or_(License.appid.isnot(None), License.countid.isnot(None))
                ).count(),
            }
