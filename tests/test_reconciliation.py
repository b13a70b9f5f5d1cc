"""
Reconciliation engine tests.

Covers the per-record match/update/create decision, idempotence across runs,
the page-cap safety valve and the internal -> external push.
"""
import asyncio
import math

from license_sync.services.reconciliation import ReconciliationEngine
from fakes import (
    EndlessMirrorStore,
    FakeDataSource,
    FakeInternalStore,
    FakeMirrorStore,
    make_external_record,
)


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


class EventRecorder:
    def __init__(self):
        self.events = []

    def __call__(self, level, message, **context):
        self.events.append((level, message, context))

    def levels(self, level):
        return [e for e in self.events if e[0] == level]


def _engine(mirror=None, internal=None):
    events = EventRecorder()
    engine = ReconciliationEngine(internal or FakeInternalStore(), mirror or FakeMirrorStore(), emit=events)
    return engine, events


# ────────────────────────────────────────────
# PER-RECORD DECISIONS
# ────────────────────────────────────────────


def test_unmatched_record_is_created_with_identifiers():
    engine, _ = _engine()

    outcome = _run(engine.reconcile_record(make_external_record(1)))

    assert outcome == "created"
    row = engine.internal_store.rows[0]
    assert row["key"].startswith("EXT-app-001-1001-mid-1-")
    assert (row["appid"], row["countid"], row["mid"]) == ("app-001", 1001, "mid-1")
    assert row["status"] == "active"


def test_match_by_appid_updates():
    internal = FakeInternalStore()
    _run(internal.save({"appid": "app-001", "dba": "Old name", "status": "pending"}))
    engine, _ = _engine(internal=internal)

    outcome = _run(engine.reconcile_record(make_external_record(1, dba="New name")))

    assert outcome == "updated"
    assert len(internal.rows) == 1
    assert internal.rows[0]["dba"] == "New name"
    assert internal.rows[0]["external_sync_status"] == "synced"


def test_falls_back_to_countid_when_appid_lookup_errors():
    internal = FakeInternalStore()
    _run(internal.save({"countid": 1001, "dba": "By count"}))
    internal.fail_app_id_lookup = True
    engine, events = _engine(internal=internal)

    outcome = _run(engine.reconcile_record(make_external_record(1)))

    assert outcome == "updated"
    assert len(internal.rows) == 1
    assert events.levels("debug")


def test_update_failure_falls_through_to_create():
    internal = FakeInternalStore()
    _run(internal.save({"appid": "app-001", "dba": "Existing"}))
    internal.fail_updates = True
    engine, events = _engine(internal=internal)

    outcome = _run(engine.reconcile_record(make_external_record(1)))

    assert outcome == "created"
    assert len(internal.rows) == 2
    assert events.levels("warning")


def test_create_failure_is_skipped_with_snapshot():
    internal = FakeInternalStore()
    internal.fail_saves = True
    engine, events = _engine(internal=internal)

    outcome = _run(engine.reconcile_record(make_external_record(1, Note="x" * 1000)))

    assert outcome == "skipped"
    warning = events.levels("warning")[0]
    assert len(warning[2]["data"]) <= 203


def test_email_is_never_used_to_match():
    internal = FakeInternalStore()
    _run(internal.save({"email_license": "owner1@example.com", "dba": "Email only"}))
    engine, _ = _engine(internal=internal)

    outcome = _run(engine.reconcile_record(make_external_record(1)))

    assert outcome == "created"


# ────────────────────────────────────────────
# PAGINATED PASS
# ────────────────────────────────────────────


def test_paginated_reconciliation_scenario():
    mirror = FakeMirrorStore([make_external_record(i) for i in range(25)])
    engine, _ = _engine(mirror=mirror)

    result = _run(engine.sync_to_internal_paginated(batch_size=10))

    assert result.created == 25
    assert result.updated == 0
    assert result.synced == 25
    assert result.pages_processed == 3
    assert not result.page_cap_reached


def test_second_run_is_idempotent():
    mirror = FakeMirrorStore([make_external_record(i) for i in range(12)])
    engine, _ = _engine(mirror=mirror)

    _run(engine.sync_to_internal_paginated(batch_size=5))
    second = _run(engine.sync_to_internal_paginated(batch_size=5))

    assert second.created == 0
    assert second.updated == 12
    assert len(engine.internal_store.rows) == 12


def test_limit_caps_records_processed():
    mirror = FakeMirrorStore([make_external_record(i) for i in range(25)])
    engine, _ = _engine(mirror=mirror)

    result = _run(engine.sync_to_internal_paginated(batch_size=10, limit=13))

    assert result.created == 13
    assert result.pages_processed == 2


def test_page_cap_stops_endless_mirror_with_warning():
    page = [make_external_record(i) for i in range(10)]
    mirror = EndlessMirrorStore(total=25, page_records=page)
    engine, events = _engine(mirror=mirror)

    result = _run(engine.sync_to_internal_paginated(batch_size=10))

    max_pages = math.ceil(25 / 10) + 10
    assert mirror.pages_requested == max_pages
    assert result.pages_processed == max_pages
    assert result.page_cap_reached
    assert any("safety cap" in e[1] for e in events.levels("warning"))


def test_page_fetch_error_skips_to_next_page():
    class FlakyMirror(FakeMirrorStore):
        async def find_licenses(self, page=1, limit=100, filters=None):
            if page == 1:
                raise RuntimeError("page read failed")
            return await super().find_licenses(page, limit, filters)

    mirror = FlakyMirror([make_external_record(i) for i in range(15)])
    engine, events = _engine(mirror=mirror)

    result = _run(engine.sync_to_internal_paginated(batch_size=10))

    assert result.created == 5
    assert events.levels("error")


def test_empty_mirror():
    engine, _ = _engine()
    result = _run(engine.sync_to_internal_paginated())
    assert result.synced == 0
    assert result.pages_processed == 0


def test_legacy_pass_matches_paginated_semantics():
    mirror = FakeMirrorStore([make_external_record(i) for i in range(7)])
    internal = FakeInternalStore()
    _run(internal.save({"appid": "app-003", "dba": "Existing"}))
    internal.fail_updates = True
    engine, _ = _engine(mirror=mirror, internal=internal)

    result = _run(engine.sync_to_internal_legacy())

    assert result.created == 7
    assert result.updated == 0


# ────────────────────────────────────────────
# INTERNAL -> EXTERNAL
# ────────────────────────────────────────────


def test_sync_from_internal_pushes_with_email_fallback():
    internal = FakeInternalStore()
    _run(internal.save({"appid": "app-1", "status": "active", "dba": "A"}))
    _run(internal.save({"appid": "app-2", "email_license": "b@example.com", "status": "cancel"}))
    _run(internal.save({"appid": "app-3"}))
    _run(internal.save({"dba": "No identifiers"}))
    source = FakeDataSource()
    source.reject_app_ids = {"app-2", "app-3"}
    engine, _ = _engine(internal=internal)

    counts = _run(engine.sync_from_internal(source, page_size=2))

    assert counts["synced"] == 3
    assert counts["updated"] == 2
    assert counts["failed"] == 1
    assert source.updates_by_app_id[0] == ("app-1", {
        "dba": "A", "zip": "", "status": 1, "monthlyFee": 0, "smsBalance": 0, "Note": "",
    })
    assert source.updates_by_email[0][0] == "b@example.com"
    assert counts["errors"][0]["error"] == "No valid external identifiers for update"
