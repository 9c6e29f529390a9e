"""Role-based access control for booking, payment and reconciliation actions."""

from enum import Enum
from typing import Any, Callable

from fastapi import Depends

from paysync.api.deps import get_current_actor
from paysync.core.exceptions import AuthorizationError
from paysync.core.security import Actor
from paysync.domain.booking_state import BookingState


class UserRole(str, Enum):
    """Roles carried in access tokens."""

    CLIENT = "client"
    PROVIDER = "provider"
    STAFF = "staff"  # Operations - can override and reconcile
    ADMIN = "admin"


class Permission(str, Enum):
    """System permissions."""

    # Booking permissions
    CREATE_BOOKING = "create_booking"
    VIEW_BOOKING = "view_booking"
    APPROVE_BOOKING = "approve_booking"
    CANCEL_BOOKING = "cancel_booking"
    MANAGE_SESSION = "manage_session"
    REPORT_VIDEO_EVENT = "report_video_event"
    CORRECT_AMOUNT = "correct_amount"

    # Payment permissions
    INITIATE_PAYMENT = "initiate_payment"
    VIEW_PAYMENT = "view_payment"
    OVERRIDE_PAYMENT = "override_payment"
    RESOLVE_REVIEW = "resolve_review"

    # Reconciliation
    RUN_RECONCILIATION = "run_reconciliation"
    REPAIR_PAIRING = "repair_pairing"


ROLE_PERMISSIONS: dict[UserRole, set[Permission]] = {
    UserRole.CLIENT: {
        Permission.CREATE_BOOKING,
        Permission.VIEW_BOOKING,
        Permission.CANCEL_BOOKING,
        Permission.INITIATE_PAYMENT,
        Permission.VIEW_PAYMENT,
    },
    UserRole.PROVIDER: {
        Permission.VIEW_BOOKING,
        Permission.APPROVE_BOOKING,
        Permission.CANCEL_BOOKING,
        Permission.MANAGE_SESSION,
        Permission.REPORT_VIDEO_EVENT,
        Permission.VIEW_PAYMENT,
    },
    UserRole.STAFF: {perm for perm in Permission},
    UserRole.ADMIN: {perm for perm in Permission},
}

# URL action -> (target state, permission required)
BOOKING_ACTIONS: dict[str, tuple[BookingState, Permission]] = {
    "approve": (BookingState.APPROVED, Permission.APPROVE_BOOKING),
    "decline": (BookingState.CANCELLED, Permission.APPROVE_BOOKING),
    "cancel": (BookingState.CANCELLED, Permission.CANCEL_BOOKING),
    "require-forms": (BookingState.FORMS_REQUIRED, Permission.MANAGE_SESSION),
    "mark-ready": (BookingState.READY, Permission.MANAGE_SESSION),
    "mark-in-progress": (BookingState.IN_PROGRESS, Permission.MANAGE_SESSION),
    "mark-completed": (BookingState.COMPLETED, Permission.MANAGE_SESSION),
    "no-show-client": (BookingState.NO_SHOW_CLIENT, Permission.MANAGE_SESSION),
    "no-show-provider": (BookingState.NO_SHOW_PROVIDER, Permission.MANAGE_SESSION),
}


def has_permission(role: str, permission: Permission) -> bool:
    """Check if a role has a specific permission."""
    try:
        return permission in ROLE_PERMISSIONS.get(UserRole(role), set())
    except ValueError:
        return False


def check_permission(actor: Actor, permission: Permission) -> None:
    if not has_permission(actor.role, permission):
        raise AuthorizationError(f"Permission '{permission.value}' is required for this action")


def require_permission(permission: Permission) -> Callable[..., Any]:
    """Dependency to require a specific permission."""

    async def permission_checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        check_permission(actor, permission)
        return actor

    return permission_checker


# Convenience dependencies
require_staff = require_permission(Permission.OVERRIDE_PAYMENT)
require_reconciliation = require_permission(Permission.RUN_RECONCILIATION)
