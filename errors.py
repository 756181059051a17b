"""
Error taxonomy shared by the core components.

Routes never build HTTP responses for these themselves; main.py maps every
DomainError to its status code.
"""


class DomainError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    status_code = 400


class AuthenticationError(DomainError):
    status_code = 401


class AuthorizationError(DomainError):
    status_code = 403


class NotFoundError(DomainError):
    status_code = 404


def describe_validation_error(exc) -> str:
    """First problem of a pydantic ValidationError as ``field: message``."""
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ()))
    return f"{field}: {err['msg']}" if field else err["msg"]
