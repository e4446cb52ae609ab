"""Error taxonomy for the payroll backend.

Every domain error carries the HTTP status it maps to so the API layer can
render it with a single exception handler.
"""
from __future__ import annotations


class PayrollError(Exception):
    """Base class for errors surfaced to API callers."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class PayrollValidationError(PayrollError):
    """Malformed address, amount or payroll file (client fault, never retried)."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message, status_code)


class StorageError(PayrollError):
    """Ledger or secret store could not serve the request."""

    def __init__(self, message: str, status_code: int = 503) -> None:
        super().__init__(message, status_code)


class StorageUnavailable(StorageError):
    pass


class SecretNotFound(StorageError):
    pass


class SecretStoreUnavailable(StorageError):
    pass


class AuthError(PayrollError):
    """Authentication failures; all of them fail closed."""

    def __init__(self, message: str, status_code: int = 401) -> None:
        super().__init__(message, status_code)


class InvalidAddress(AuthError):
    def __init__(self, message: str = "Invalid wallet address") -> None:
        super().__init__(message, status_code=400)


class ChallengeExpired(AuthError):
    def __init__(self, message: str = "Challenge expired or already used") -> None:
        super().__init__(message)


class InvalidSignature(AuthError):
    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message)


class InvalidToken(AuthError):
    def __init__(self, message: str = "Invalid or expired session token") -> None:
        super().__init__(message)
