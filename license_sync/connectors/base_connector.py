"""
Base connector class for external data sources
"""
from abc import ABC, abstractmethod
from typing import Any, Dict
from datetime import datetime
from license_sync.utils.logger import log
from license_sync.utils.retry import is_retryable_error, calculate_backoff
import asyncio


class BaseConnector(ABC):
    """Base class for external data source connectors"""

    # Retry configuration (can be overridden by subclasses or instances)
    RETRY_MAX_ATTEMPTS = 3
    RETRY_BASE_DELAY = 2.0  # seconds
    RETRY_MAX_DELAY = 60.0  # seconds
    RETRY_BACKOFF_MULTIPLIER = 2.0

    def __init__(self, name: str):
        self.name = name
        self.last_sync = None
        self.request_count = 0
        self.error_count = 0
        self.retry_count = 0  # Total retries across all requests

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Check the data source is reachable and accepts our credentials"""
        pass

    async def _retry_operation(self, operation, operation_name: str = "operation") -> Any:
        """
        Execute an operation with retry logic.

        Only errors is_retryable_error accepts are retried; anything else,
        or the last attempt's error, is raised.

        Args:
            operation: Async callable to execute
            operation_name: Name for logging

        Returns:
            Result of the operation
        """
        last_error = None

        for attempt in range(1, self.RETRY_MAX_ATTEMPTS + 1):
            try:
                result = operation()

                # Handle coroutines (from async functions or lambdas wrapping async calls)
                if asyncio.iscoroutine(result):
                    result = await result

                if attempt > 1:
                    self.retry_count += (attempt - 1)

                return result

            except Exception as e:
                last_error = e

                if attempt >= self.RETRY_MAX_ATTEMPTS or not is_retryable_error(e):
                    raise

                delay = calculate_backoff(
                    attempt,
                    base_delay=self.RETRY_BASE_DELAY,
                    max_delay=self.RETRY_MAX_DELAY,
                    exponential_base=self.RETRY_BACKOFF_MULTIPLIER
                )

                log.warning(
                    f"{self.name} {operation_name} attempt {attempt} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )

                await asyncio.sleep(delay)

        # Should not reach here
        raise last_error if last_error else RuntimeError("Retry exhausted")

    def get_status(self) -> Dict[str, Any]:
        """Request counters and retry configuration"""
        return {
            "name": self.name,
            "last_sync": self.last_sync,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "retry_count": self.retry_count,
            "error_rate": self.error_count / max(self.request_count, 1),
            "retry_config": {
                "max_attempts": self.RETRY_MAX_ATTEMPTS,
                "base_delay": self.RETRY_BASE_DELAY,
                "max_delay": self.RETRY_MAX_DELAY
            }
        }

    def mark_synced(self):
        self.last_sync = datetime.utcnow()
