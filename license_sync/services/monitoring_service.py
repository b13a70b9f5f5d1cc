"""
License Sync Monitoring

SyncMonitor is the port the sync services report to; its methods do nothing.
LicenseSyncMonitor keeps in-process counters, duration histories and alerts
for operators (slow syncs, failed syncs, high recent error rate).

Callers construct a monitor and inject it; there is no module-level instance.
"""
import secrets
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from license_sync.config import get_settings
from license_sync.utils.helpers import epoch_ms, safe_divide
from license_sync.utils.logger import log

MAX_ALERTS = 100
MAX_HISTORY = 1000
ERROR_RATE_WINDOW = 10
ERROR_RATE_THRESHOLD = 0.5
INACTIVITY_WARNING_SECONDS = 3600


@dataclass
class SyncOperationContext:
    """Handle for one running sync operation"""
    operation_id: str
    operation_type: str
    started_at: float
    options: Dict[str, Any] = field(default_factory=dict)


def _new_operation_id() -> str:
    return f"sync_{epoch_ms()}_{secrets.token_hex(4)}"


def classify_error(error: Any) -> str:
    """Coarse error type for metrics labels"""
    message = str(error or "").lower()
    if not message:
        return "unknown"
    if "timeout" in message:
        return "timeout"
    if "network" in message or "connection" in message:
        return "network"
    if "401" in message or "403" in message:
        return "authentication"
    if "429" in message:
        return "rate_limit"
    if "http 5" in message:
        return "server_error"
    if "http 4" in message:
        return "client_error"
    return "unknown"


class SyncMonitor:
    """Monitoring port. Every hook is a no-op."""

    def record_sync_start(self, operation_type: str, options: Optional[Dict] = None) -> SyncOperationContext:
        options = dict(options or {})
        return SyncOperationContext(
            operation_id=options.get("operation_id") or _new_operation_id(),
            operation_type=operation_type,
            started_at=time.time(),
            options=options,
        )

    def record_sync_end(self, context: SyncOperationContext, outcome: Dict):
        pass

    def record_data_processed(self, count: int, operation_type: str):
        pass

    def record_api_request(self, endpoint: str, method: str, started_at: float):
        pass

    def record_api_error(self, endpoint: str, method: str, error: Any):
        pass


class LicenseSyncMonitor(SyncMonitor):
    """In-process metrics and alerts for license sync operations"""

    def __init__(self, settings=None):
        self.settings = settings or get_settings()
        self.counters: Counter = Counter()
        self.sync_durations: Deque[float] = deque(maxlen=MAX_HISTORY)
        self.api_durations: Deque[float] = deque(maxlen=MAX_HISTORY)
        self.recent_outcomes: Deque[bool] = deque(maxlen=ERROR_RATE_WINDOW)
        self.active_operations = 0
        self.last_completed_at: Optional[datetime] = None
        self.alerts: List[Dict] = []

    # ────────────────────────────────────────────
    # Hooks
    # ────────────────────────────────────────────

    def record_sync_start(self, operation_type: str, options: Optional[Dict] = None) -> SyncOperationContext:
        context = super().record_sync_start(operation_type, options)
        self.active_operations += 1
        log.info(f"Sync operation started: {context.operation_id} ({operation_type})")
        return context

    def record_sync_end(self, context: SyncOperationContext, outcome: Dict):
        duration = time.time() - context.started_at
        success = bool(outcome.get("success"))

        self.active_operations = max(self.active_operations - 1, 0)
        self.counters[("sync_operations_total", context.operation_type)] += 1
        self.sync_durations.append(duration)
        self.recent_outcomes.append(success)
        self.last_completed_at = datetime.utcnow()

        if success:
            log.debug(f"Sync operation {context.operation_id} completed in {duration:.1f}s")
        else:
            error_type = outcome.get("error_type") or classify_error(outcome.get("error"))
            self.counters[("sync_operations_errors_total", error_type)] += 1
            log.error(
                f"Sync operation {context.operation_id} failed after {duration:.1f}s: {outcome.get('error')}"
            )
            self.create_alert("error", "SYNC_OPERATION_FAILED", {
                "operation_id": context.operation_id,
                "operation_type": context.operation_type,
                "error": outcome.get("error"),
            })

        self._check_performance_alerts(context, duration)

    def record_data_processed(self, count: int, operation_type: str):
        self.counters[("sync_data_processed_total", operation_type)] += count

    def record_api_request(self, endpoint: str, method: str, started_at: float):
        duration = time.time() - started_at
        self.counters[("external_api_requests_total", f"{method} {endpoint}")] += 1
        self.api_durations.append(duration)
        log.debug(f"External API request {method} {endpoint} took {duration * 1000:.0f}ms")

    def record_api_error(self, endpoint: str, method: str, error: Any):
        self.counters[("external_api_errors_total", classify_error(error))] += 1
        log.warning(f"External API error {method} {endpoint}: {error}")

    # ────────────────────────────────────────────
    # Alerts
    # ────────────────────────────────────────────

    def _recent_error_rate(self) -> float:
        failures = sum(1 for ok in self.recent_outcomes if not ok)
        return safe_divide(failures, len(self.recent_outcomes))

    def _check_performance_alerts(self, context: SyncOperationContext, duration: float):
        threshold = self.settings.license_sync_slow_sync_threshold_seconds
        if duration > threshold:
            self.create_alert("warning", "SLOW_SYNC_OPERATION", {
                "operation_id": context.operation_id,
                "duration_seconds": round(duration, 1),
                "threshold_seconds": threshold,
            })

        error_rate = self._recent_error_rate()
        if error_rate > ERROR_RATE_THRESHOLD:
            self.create_alert("error", "HIGH_ERROR_RATE", {
                "error_rate": f"{error_rate * 100:.1f}%",
                "window": len(self.recent_outcomes),
            })

    def create_alert(self, severity: str, alert_type: str, details: Dict) -> Dict:
        alert = {
            "id": f"alert_{epoch_ms()}_{secrets.token_hex(4)}",
            "type": alert_type,
            "severity": severity,
            "details": details,
            "timestamp": datetime.utcnow(),
            "acknowledged": False,
        }
        self.alerts.append(alert)
        if len(self.alerts) > MAX_ALERTS:
            self.alerts = self.alerts[-MAX_ALERTS:]

        log.warning(f"Alert: {alert_type} [{severity}] {details}")
        return alert

    def get_alerts(self, severity: Optional[str] = None, acknowledged: Optional[bool] = None) -> List[Dict]:
        alerts = self.alerts
        if severity is not None:
            alerts = [a for a in alerts if a["severity"] == severity]
        if acknowledged is not None:
            alerts = [a for a in alerts if a["acknowledged"] == acknowledged]
        return list(alerts)

    def acknowledge_alert(self, alert_id: str) -> bool:
        for alert in self.alerts:
            if alert["id"] == alert_id:
                alert["acknowledged"] = True
                alert["acknowledged_at"] = datetime.utcnow()
                log.info(f"Alert acknowledged: {alert_id} ({alert['type']})")
                return True
        return False

    # ────────────────────────────────────────────
    # Reporting
    # ────────────────────────────────────────────

    def get_metrics(self) -> Dict:
        grouped: Dict[str, Dict[str, int]] = {}
        for (name, label), value in self.counters.items():
            grouped.setdefault(name, {})[label] = value

        durations = list(self.sync_durations)
        return {
            "counters": grouped,
            "sync_operations": {
                "count": len(durations),
                "avg_duration_seconds": safe_divide(sum(durations), len(durations)),
                "max_duration_seconds": max(durations) if durations else 0,
            },
            "api_requests": {
                "count": len(self.api_durations),
                "avg_duration_seconds": safe_divide(sum(self.api_durations), len(self.api_durations)),
            },
            "active_operations": self.active_operations,
            "recent_error_rate": self._recent_error_rate(),
            "last_completed_at": self.last_completed_at,
        }

    def get_health_status(self) -> Dict:
        components = {}

        error_rate = self._recent_error_rate()
        if error_rate < 0.05:
            components["error_rate"] = "healthy"
        elif error_rate < 0.15:
            components["error_rate"] = "warning"
        else:
            components["error_rate"] = "unhealthy"

        if self.last_completed_at is None:
            components["activity"] = "warning"
        else:
            idle = (datetime.utcnow() - self.last_completed_at).total_seconds()
            components["activity"] = "healthy" if idle < INACTIVITY_WARNING_SECONDS else "warning"

        statuses = set(components.values())
        if "unhealthy" in statuses:
            overall = "unhealthy"
        elif "warning" in statuses:
            overall = "warning"
        else:
            overall = "healthy"

        return {
            "overall": overall,
            "components": components,
            "error_rate": error_rate,
            "unacknowledged_alerts": len(self.get_alerts(acknowledged=False)),
            "last_check": datetime.utcnow(),
        }
