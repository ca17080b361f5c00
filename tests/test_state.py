from __future__ import annotations

import pytest

from lantern.errors import MetricsError, RetryLimitExceeded
from lantern.state import DashboardState


def test_retry_limit_is_reached_after_consecutive_failures() -> None:
    state = DashboardState(retries=3)

    state.record_failure("Metrics fetch", MetricsError("down"))
    state.record_failure("Metrics fetch", MetricsError("down"))
    state.check_retry_limit()
    state.record_failure("Process lookup", MetricsError("down"))

    with pytest.raises(RetryLimitExceeded, match="3 FAILED ATTEMPTS IN A ROW") as excinfo:
        state.check_retry_limit()
    assert excinfo.value.failures == 3


def test_success_resets_the_failure_count() -> None:
    state = DashboardState(retries=2)

    state.record_failure("Metrics fetch", MetricsError("down"))
    state.record_success()
    state.record_failure("Metrics fetch", MetricsError("down"))

    assert state.failures == 1
    state.check_retry_limit()
