"""
Utilities module: Exceptions, money helpers.
"""

from shared.utils.exceptions import (
    AppException,
    ValidationError,
    ConflictError,
    ResourceError,
    ExternalFailure,
    ForbiddenError,
    NotFoundError,
)
from shared.utils.money import money, to_decimal

__all__ = [
    # exceptions
    "AppException",
    "ValidationError",
    "ConflictError",
    "ResourceError",
    "ExternalFailure",
    "ForbiddenError",
    "NotFoundError",
    # money
    "money",
    "to_decimal",
]
