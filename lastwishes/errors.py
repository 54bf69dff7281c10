"""
Error types shared by the backend clients and the data-access modules.
"""

from __future__ import annotations

from typing import Optional


class BackendError(Exception):
    """A failure reported by (or while talking to) the external backend."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class NotFoundError(BackendError):
    """Single-row lookup matched nothing. Callers treat this as empty."""

    def __init__(self, message: str = "Row not found"):
        super().__init__(message, code="PGRST116")


class AuthError(BackendError):
    pass


class StorageError(BackendError):
    pass


class FunctionError(BackendError):
    pass


class OperationCancelled(Exception):
    """Raised when a cancellable fetch was aborted by its caller."""


class PledgeValidationError(ValueError):
    """Form validation failed before any network call was made."""

    def __init__(self, errors: dict[str, str]):
        super().__init__("; ".join(errors.values()))
        self.errors = errors


class PermissionDenied(Exception):
    pass


class ActionError(Exception):
    """A user action that cannot proceed; ``message`` is shown to the user as-is."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
