"""
AuthScan Orchestrator - Exceptions
Error hierarchy shared by the orchestrator, the service layer and the routers.
"""
from typing import Optional


class AuthScanError(Exception):
    """Base class for errors whose message is safe to show to the scan owner."""
    pass


class ConfigurationError(AuthScanError):
    """Auth context or cookie rule could not be set up on the engine."""
    pass


class TransientNetworkError(AuthScanError):
    """A retried engine call kept failing with a transient network error."""

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} failed after {attempts} attempts (network error)")


class EngineUnavailable(AuthScanError):
    """The scanning engine did not answer the health check."""

    def __init__(self, message: str = "ZAP scanner is not available. Please try again later."):
        super().__init__(message)


class ZapApiError(Exception):
    """The engine answered with an error payload or a non-2xx status.

    Carries the engine's error code for logs; the text is never shown to users.
    """

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        self.code = code
        self.status = status
        super().__init__(message)

    @property
    def does_not_exist(self) -> bool:
        return self.code == "does_not_exist"


class ScanCancelled(Exception):
    """The scan was stopped by its owner or reached a terminal state elsewhere."""
    pass


class ScanNotFound(AuthScanError):
    def __init__(self, scan_id: str):
        self.scan_id = scan_id
        super().__init__(f"Scan not found: {scan_id}")


class SessionHandleError(AuthScanError):
    """Session cookie handle is unknown, expired or already used."""

    def __init__(self, message: str = "Session expired. Please test login again."):
        super().__init__(message)
