from typing import Optional


class FinanceError(Exception):
    status_code = 500

    def __init__(self, message: str, *, details: Optional[dict[str, object]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidInput(FinanceError, ValueError):
    status_code = 400


class NotFound(FinanceError, ValueError):
    status_code = 404


class Conflict(FinanceError):
    status_code = 409


class InsufficientBalance(FinanceError):
    status_code = 400


class StorageUnavailable(FinanceError):
    status_code = 503
