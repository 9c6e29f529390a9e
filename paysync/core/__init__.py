"""Core utilities and security modules."""

from paysync.core.exceptions import (
    AmountDiscrepancy,
    AppException,
    AuthenticationError,
    AuthorityViolation,
    AuthorizationError,
    ConcurrentModification,
    DuplicateEvent,
    InvalidTransition,
    NotFoundError,
    PaymentError,
    PersistenceFailure,
    UnresolvedReference,
    ValidationError,
)
from paysync.core.security import (
    Actor,
    actor_from_token,
    create_access_token,
    verify_token,
)

__all__ = [
    "AppException",
    "AmountDiscrepancy",
    "AuthenticationError",
    "AuthorityViolation",
    "AuthorizationError",
    "ConcurrentModification",
    "DuplicateEvent",
    "InvalidTransition",
    "NotFoundError",
    "PaymentError",
    "PersistenceFailure",
    "UnresolvedReference",
    "ValidationError",
    "Actor",
    "actor_from_token",
    "create_access_token",
    "verify_token",
]
