"""Error taxonomy for the updates harness.

Setup and lifecycle failures derive from `HarnessError` and abort the current
case. `WaitTimeoutError` is not a `HarnessError`: some cases
assert that a wait times out, so it must never be confused with a real failure.
"""

from __future__ import annotations


class HarnessError(RuntimeError):
    """Base class for fatal harness errors."""


class KeyLoadError(HarnessError):
    """Raised when the code signing private key cannot be read or parsed."""


class SigningError(HarnessError):
    """Raised when producing a signature fails."""


class BindError(HarnessError):
    """Raised when the update server cannot listen on the requested port."""


class ServerStoppedError(HarnessError):
    """Delivered to waits that are still pending when the server stops."""


class InstallError(HarnessError):
    """Raised when the client binary cannot be installed."""


class LifecycleError(HarnessError):
    """Raised when a device/simulator lifecycle command fails."""


class BuildError(HarnessError):
    """Raised when the native client build fails or produces no artifact."""


class ManifestValidationError(HarnessError):
    pass


class ConfigError(HarnessError):
    pass


class WaitTimeoutError(TimeoutError):
    """A bounded wait expired without a matching event."""

    def __init__(self, message: str, *, waited_for: str, timeout_ms: float) -> None:
        super().__init__(message)
        self.waited_for = waited_for
        self.timeout_ms = timeout_ms


class ScenarioFailure(AssertionError):
    """An observable protocol expectation did not hold."""
