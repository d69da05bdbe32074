"""Custom exceptions for subagent control."""


class SubagentControlError(Exception):
    """Base exception for subagent control."""

    pass


class ConfigurationError(SubagentControlError):
    """Configuration-related errors."""

    pass


class UsageError(SubagentControlError):
    """Missing or malformed command argument."""

    def __init__(self, usage: str):
        super().__init__(usage)
        self.usage = usage


class ResolutionError(SubagentControlError):
    """A target token did not resolve to exactly one run."""

    def __init__(self, message: str, token: str = ""):
        super().__init__(message)
        self.token = token


class AlreadyFinishedError(SubagentControlError):
    """Target run has already ended (informational, not a failure)."""

    def __init__(self, label: str):
        super().__init__(f"{label} is already finished.")
        self.label = label


class BackendError(SubagentControlError):
    """Execution backend call failed."""

    def __init__(self, message: str, method: str = ""):
        super().__init__(message)
        self.method = method


class BackendTimeoutError(BackendError):
    """Execution backend call timed out; the run is presumed to continue."""

    def __init__(self, method: str, timeout_ms: int):
        super().__init__(f"{method} timed out after {timeout_ms}ms", method=method)
        self.timeout_ms = timeout_ms


class SessionStoreError(SubagentControlError):
    """Session store read or write failed."""

    def __init__(self, store_path: str, message: str):
        super().__init__(f"Session store {store_path}: {message}")
        self.store_path = store_path
