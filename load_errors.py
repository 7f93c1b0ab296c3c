"""
Error types for the auth load test toolkit.

Per-request problems (transport errors, failed checks) are never raised;
they are recorded as outcomes and samples. Only configuration mistakes and
a scheduler that cannot start its virtual users surface as exceptions.
"""


class LoadTestError(Exception):
    """Base class for load test errors."""


class ConfigError(LoadTestError, ValueError):
    """Invalid run configuration."""


class ThresholdSyntaxError(ConfigError):
    """A threshold expression could not be parsed for its metric."""

    def __init__(self, metric: str, expression: str, reason: str):
        self.metric = metric
        self.expression = expression
        self.reason = reason
        super().__init__(f"{metric}: invalid threshold {expression!r} ({reason})")


class SchedulerError(LoadTestError):
    """The scheduler could not start the requested virtual users."""
