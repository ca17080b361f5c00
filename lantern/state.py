import logging
import threading
from typing import Any

import psutil

from lantern.errors import RetryLimitExceeded
from lantern.services.prometheus import NodeMetrics

logger = logging.getLogger(__name__)


class DashboardState:
    """State shared between the background tasks and the renderer.

    Each field is replaced whole by exactly one task; the renderer may read a
    value that is one cycle old. Only the failure counter is read-modify-write
    from several tasks and is kept under a lock.
    """

    def __init__(self, retries: int) -> None:
        self.retries = retries
        self._lock = threading.Lock()
        self._failures = 0
        self.metrics: NodeMetrics | None = None
        self.process: psutil.Process | None = None
        self.process_stats: dict[str, Any] | None = None
        self.public_ip: str | None = None
        self.node_version: tuple[str, str] = ("N/A", "N/A")
        self.current_epoch: int | None = None
        self.p2p = True
        self.role = "Relay"

    @property
    def failures(self) -> int:
        return self._failures

    def record_failure(self, source: str, error: BaseException) -> int:
        with self._lock:
            self._failures += 1
            failures = self._failures
        logger.warning("%s failed (%d in a row): %s", source, failures, error)
        return failures

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0

    def check_retry_limit(self) -> None:
        failures = self._failures
        if failures >= self.retries:
            logger.error("Giving up after %d consecutive failures", failures)
            raise RetryLimitExceeded(failures)
