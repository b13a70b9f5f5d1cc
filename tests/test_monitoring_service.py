"""
Monitoring tests: operation lifecycle, alerts and health rollup.
"""
import time

from license_sync.config import Settings
from license_sync.services.monitoring_service import (
    LicenseSyncMonitor,
    SyncMonitor,
    SyncOperationContext,
    classify_error,
)


def _alert_types(monitor):
    return [alert["type"] for alert in monitor.alerts]


def test_noop_port_returns_context():
    context = SyncMonitor().record_sync_start("external_licenses_sync", {"dry_run": True})

    assert context.operation_id.startswith("sync_")
    assert context.operation_type == "external_licenses_sync"
    assert context.options == {"dry_run": True}


def test_successful_operation_is_counted():
    monitor = LicenseSyncMonitor()

    context = monitor.record_sync_start("external_licenses_sync")
    assert monitor.active_operations == 1
    monitor.record_data_processed(25, "external_licenses_sync")
    monitor.record_sync_end(context, {"success": True})

    metrics = monitor.get_metrics()
    assert monitor.active_operations == 0
    assert metrics["counters"]["sync_operations_total"] == {"external_licenses_sync": 1}
    assert metrics["counters"]["sync_data_processed_total"] == {"external_licenses_sync": 25}
    assert metrics["sync_operations"]["count"] == 1
    assert metrics["recent_error_rate"] == 0
    assert monitor.alerts == []


def test_failed_operation_raises_alert():
    monitor = LicenseSyncMonitor()

    context = monitor.record_sync_start("external_licenses_sync")
    monitor.record_sync_end(context, {"success": False, "error": "request timeout"})

    assert "SYNC_OPERATION_FAILED" in _alert_types(monitor)
    assert monitor.get_metrics()["counters"]["sync_operations_errors_total"] == {"timeout": 1}


def test_slow_operation_alert():
    monitor = LicenseSyncMonitor(Settings(license_sync_slow_sync_threshold_seconds=5))
    context = SyncOperationContext("sync_1", "external_licenses_sync", started_at=time.time() - 10)

    monitor.record_sync_end(context, {"success": True})

    assert _alert_types(monitor) == ["SLOW_SYNC_OPERATION"]
    assert monitor.alerts[0]["severity"] == "warning"


def test_high_error_rate_alert():
    monitor = LicenseSyncMonitor()
    for success in (True, False, False):
        monitor.record_sync_end(monitor.record_sync_start("external_licenses_sync"), {"success": success})

    assert "HIGH_ERROR_RATE" in _alert_types(monitor)
    assert monitor.get_health_status()["components"]["error_rate"] == "unhealthy"


def test_alert_filtering_and_acknowledgement():
    monitor = LicenseSyncMonitor()
    warning = monitor.create_alert("warning", "SLOW_SYNC_OPERATION", {})
    monitor.create_alert("error", "SYNC_OPERATION_FAILED", {})

    assert len(monitor.get_alerts(severity="error")) == 1
    assert monitor.acknowledge_alert(warning["id"])
    assert not monitor.acknowledge_alert("alert_missing")
    assert [a["type"] for a in monitor.get_alerts(acknowledged=False)] == ["SYNC_OPERATION_FAILED"]


def test_alerts_are_capped():
    monitor = LicenseSyncMonitor()
    for i in range(120):
        monitor.create_alert("warning", f"ALERT_{i}", {})

    assert len(monitor.alerts) == 100
    assert monitor.alerts[-1]["type"] == "ALERT_119"


def test_api_request_and_error_counters():
    monitor = LicenseSyncMonitor()
    monitor.record_api_request("/api/v1/licenses", "GET", time.time())
    monitor.record_api_error("/api/v1/licenses", "GET", "HTTP 429: Too Many Requests")

    counters = monitor.get_metrics()["counters"]
    assert counters["external_api_requests_total"] == {"GET /api/v1/licenses": 1}
    assert counters["external_api_errors_total"] == {"rate_limit": 1}


def test_health_before_any_run_is_warning():
    health = LicenseSyncMonitor().get_health_status()

    assert health["overall"] == "warning"
    assert health["components"] == {"error_rate": "healthy", "activity": "warning"}


def test_health_after_successful_run():
    monitor = LicenseSyncMonitor()
    monitor.record_sync_end(monitor.record_sync_start("external_licenses_sync"), {"success": True})

    assert monitor.get_health_status()["overall"] == "healthy"


def test_classify_error():
    assert classify_error("connection refused") == "network"
    assert classify_error("HTTP 401: Unauthorized") == "authentication"
    assert classify_error("HTTP 502: bad gateway") == "server_error"
    assert classify_error("HTTP 404: missing") == "client_error"
    assert classify_error(None) == "unknown"
