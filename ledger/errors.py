from typing import Optional


class LedgerServiceError(Exception):
    status_code = 400
    code = "LEDGER_ERROR"


class NotFoundError(LedgerServiceError):
    status_code = 404
    code = "NOT_FOUND"


class UserNotFoundError(NotFoundError):
    code = "USER_NOT_FOUND"


class RecordNotFoundError(NotFoundError):
    code = "RECORD_NOT_FOUND"


class ConflictError(LedgerServiceError):
    status_code = 409
    code = "CONFLICT"


class InvalidInputError(LedgerServiceError):
    status_code = 400
    code = "INVALID_INPUT"


class UnauthorizedError(LedgerServiceError):
    status_code = 401
    code = "UNAUTHORIZED"


class RateLimitedError(LedgerServiceError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, retry_after: int, message: Optional[str] = None):
        super().__init__(message or "too many failed login attempts, please retry later")
        self.retry_after = retry_after


class AlreadyProcessedError(LedgerServiceError):
    status_code = 409
    code = "ALREADY_PROCESSED"
