"""Error taxonomy shared by the services and the HTTP layer.

Services raise these; ``main`` maps each one onto a status code. Validation and
not-found errors are also ``ValueError`` subclasses so callers that only care
about "bad input" can keep catching ``ValueError``.
"""

from typing import Optional


class BudgetyError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(BudgetyError, ValueError):
    status_code = 400


class NotFoundError(BudgetyError, ValueError):
    status_code = 404


class ConflictError(BudgetyError, ValueError):
    status_code = 409


class AuthenticationError(BudgetyError):
    status_code = 401


class InvalidCredentialsError(AuthenticationError):
    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class AuthorizationError(BudgetyError):
    status_code = 403


class RateLimitedError(BudgetyError):
    status_code = 429

    def __init__(
        self,
        message: str = "Too many attempts. Please try again later.",
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientError(BudgetyError):
    status_code = 503

    def __init__(self, message: str = "Temporary failure, please retry") -> None:
        super().__init__(message)
