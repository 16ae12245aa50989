"""HTTP helpers and exception definitions used across services."""

from .errors import (
    AuthenticationRequiredError,
    ForbiddenError,
    PersistenceError,
    ProblemDetails,
    ProblemDetailsException,
    ProviderUnavailableError,
    RequestValidationProblem,
    ResourceNotFoundError,
    register_exception_handlers,
)

__all__ = [
    "AuthenticationRequiredError",
    "ForbiddenError",
    "PersistenceError",
    "ProblemDetails",
    "ProblemDetailsException",
    "ProviderUnavailableError",
    "RequestValidationProblem",
    "ResourceNotFoundError",
    "register_exception_handlers",
]
