"""Custom application exceptions.

Every error carries a ``diagnostic()`` payload. Staff tooling receives it in
full; clients get ``public_detail`` only.
"""

from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status

COARSE_MESSAGE = "This action is not available right now"


class AppException(HTTPException):
    """Base application exception."""

    code = "app_error"
    retryable = False

    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An unexpected error occurred",
        headers: dict[str, str] | None = None,
        public_detail: str | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.public_detail = public_detail or detail

    def diagnostic(self) -> dict[str, Any]:
        """Full structured payload for staff/admin callers."""
        return {"code": self.code, "detail": self.detail, "retryable": self.retryable}


class ValidationError(AppException):
    """Validation error exception."""

    code = "validation_error"

    def __init__(self, detail: str = "Validation failed", errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)

    def diagnostic(self) -> dict[str, Any]:
        payload = super().diagnostic()
        if self.errors:
            payload["errors"] = self.errors
        return payload


class NotFoundError(AppException):
    """Resource not found exception."""

    code = "not_found"

    def __init__(self, resource: str = "Resource", identifier: str | None = None) -> None:
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} with ID '{identifier}' not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class AuthenticationError(AppException):
    """Authentication failed exception."""

    code = "authentication_failed"

    def __init__(self, detail: str = "Authentication failed") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(AppException):
    """Authorization denied exception."""

    code = "forbidden"

    def __init__(self, detail: str = "You don't have permission to access this resource") -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class InvalidTransition(AppException):
    """Requested state change is not legal from the current state."""

    code = "invalid_transition"

    def __init__(
        self,
        entity_type: str,
        current_state: str,
        requested_state: str,
        allowed: list[str] | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.current_state = current_state
        self.requested_state = requested_state
        self.allowed = sorted(allowed or [])
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=(
                f"Invalid {entity_type} transition: {current_state} → {requested_state}. "
                f"Allowed transitions: [{', '.join(self.allowed)}]"
            ),
            public_detail=COARSE_MESSAGE,
        )

    def diagnostic(self) -> dict[str, Any]:
        payload = super().diagnostic()
        payload.update(
            entity_type=self.entity_type,
            current_state=self.current_state,
            requested_state=self.requested_state,
            allowed=self.allowed,
        )
        return payload


class ConcurrentModification(AppException):
    """Another unit of work changed the entity first."""

    code = "concurrent_modification"
    retryable = True

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{entity_type} {entity_id} was modified concurrently; reload and retry",
            public_detail=COARSE_MESSAGE,
        )


class AuthorityViolation(AppException):
    """Caller tried to drive a transition it does not own."""

    code = "authority_violation"

    def __init__(
        self,
        source_type: str,
        target_type: str,
        target_state: str,
        authority: str | None,
        reason: str,
    ) -> None:
        self.source_type = source_type
        self.target_type = target_type
        self.target_state = target_state
        self.authority = authority
        self.reason = reason
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=(
                f"{source_type} may not drive {target_type} → {target_state}; "
                f"authoritative entity is {authority or 'none'}: {reason}"
            ),
            public_detail=COARSE_MESSAGE,
        )

    def diagnostic(self) -> dict[str, Any]:
        payload = super().diagnostic()
        payload.update(
            source_type=self.source_type,
            target_type=self.target_type,
            target_state=self.target_state,
            authority=self.authority,
            reason=self.reason,
        )
        return payload


class AmountDiscrepancy(AppException):
    """Payment amount is outside tolerance of the locked booking amount."""

    code = "amount_discrepancy"

    def __init__(
        self,
        expected: Decimal,
        actual: Decimal,
        tolerance: Decimal,
        result: dict[str, Any] | None = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        self.tolerance = tolerance
        self.difference = abs(expected - actual)
        self.result = result
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=(
                f"Payment amount {actual} differs from booking amount {expected} "
                f"by {self.difference} (tolerance {tolerance}); routed to manual review"
            ),
            public_detail=COARSE_MESSAGE,
        )

    def diagnostic(self) -> dict[str, Any]:
        payload = super().diagnostic()
        payload.update(
            expected=str(self.expected),
            actual=str(self.actual),
            difference=str(self.difference),
            tolerance=str(self.tolerance),
        )
        return payload


class DuplicateEvent(AppException):
    """Correlation id was already processed. Carries the prior result."""

    code = "duplicate_event"

    def __init__(self, correlation_id: str, result: dict[str, Any]) -> None:
        self.correlation_id = correlation_id
        self.result = result
        super().__init__(
            status_code=status.HTTP_200_OK,
            detail=f"Event {correlation_id} was already processed",
        )


class PersistenceFailure(AppException):
    """Atomic commit failed and was rolled back."""

    code = "persistence_failure"
    retryable = True

    def __init__(self, detail: str = "The change could not be committed and was rolled back") -> None:
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            headers={"Retry-After": "5"},
            public_detail=COARSE_MESSAGE,
        )


class UnresolvedReference(AppException):
    """Callback or action refers to a booking/payment that does not exist."""

    code = "unresolved_reference"

    def __init__(self, reference_type: str, reference: str) -> None:
        self.reference_type = reference_type
        self.reference = reference
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No {reference_type} matches reference '{reference}'",
        )

    def diagnostic(self) -> dict[str, Any]:
        payload = super().diagnostic()
        payload.update(reference_type=self.reference_type, reference=self.reference)
        return payload


class PaymentError(AppException):
    """Payment gateway error."""

    code = "payment_error"

    def __init__(self, detail: str = "Payment processing failed") -> None:
        super().__init__(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=detail)
