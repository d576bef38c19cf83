"""Custom exception hierarchy for the analytics engines."""


class MicroflowError(Exception):
    """Base exception for all microflow errors."""


# --- Configuration ---
class ConfigError(MicroflowError):
    """Invalid or missing configuration."""


class InvalidTickSize(ConfigError):
    """Profile tick size is zero or negative."""

    def __init__(self, tick_size: float):
        self.tick_size = tick_size
        super().__init__(f"Tick size must be positive, got {tick_size!r}")


class InvalidGroupSize(ConfigError):
    """Price grouping size is negative."""

    def __init__(self, group_size: float):
        self.group_size = group_size
        super().__init__(f"Group size must be non-negative, got {group_size!r}")


# --- Data ---
class DataError(MicroflowError):
    """Data ingestion or quality error."""


class MalformedPayload(DataError):
    """An exchange payload could not be converted to a canonical model."""
