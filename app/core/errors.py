from typing import Optional


class PayrollSyncError(Exception):
    """Base class for every error raised by the settlement/sync subsystem."""


class ValidationError(PayrollSyncError):
    """Illegal state transition or rejected input."""


class NotFoundError(PayrollSyncError):
    """Unknown period, queue item, mapping, connection or session."""


class AuthError(PayrollSyncError):
    """Polling agent credentials or session ticket did not check out."""


class SyncError(PayrollSyncError):
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        message = super().__str__()
        if self.status_code is None:
            return message
        return f"[{self.status_code}] {message}"


class TransientSyncError(SyncError):
    """External system busy or unreachable; the queue retries it."""

    retryable = True


class TerminalSyncError(SyncError):
    """Rejected by the external system or missing local data; needs an operator."""

    retryable = False
