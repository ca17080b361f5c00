class LanternError(Exception):
    """Base class for errors raised by lantern."""


class ConfigError(LanternError):
    """Configuration could not be loaded or resolved. Fatal at startup."""


class MetricsError(LanternError):
    """The node metrics endpoint failed for this polling cycle."""


class ProcessLookupFailed(LanternError):
    """The monitored node process could not be found for this polling cycle."""


class RetryLimitExceeded(LanternError):
    def __init__(self, failures: int) -> None:
        super().__init__(
            f"COULD NOT CONNECT TO A RUNNING INSTANCE, {failures} FAILED ATTEMPTS IN A ROW"
        )
        self.failures = failures
