"""Webhook endpoints for payment gateways.

Every callback that parses is acknowledged, so the gateway does not retry
duplicates, unknown references or held payments. Only a failed commit is
answered with 503: the gateway's retry of the same correlation id is safe.
"""

import logging
from typing import Any

from fastapi import APIRouter, Header, Request, status
from fastapi.responses import JSONResponse

from paysync.core.exceptions import (
    AmountDiscrepancy,
    AuthenticationError,
    AuthorityViolation,
    ConcurrentModification,
    InvalidTransition,
    PersistenceFailure,
    UnresolvedReference,
    ValidationError,
)
from paysync.core.security import verify_callback_token
from paysync.gateways.base import GatewayCallback, GatewayType
from paysync.schemas.payment import CallbackAck
from paysync.services.transaction_manager import PaymentOutcome

logger = logging.getLogger(__name__)

router = APIRouter()

ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


async def _read_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Callback body is not valid JSON") from None
    if not isinstance(payload, dict):
        raise ValidationError("Callback body must be a JSON object")
    return payload


async def _queue_unresolved(
    request: Request,
    source: str,
    reason: str,
    callback: GatewayCallback,
    detail: str,
    payload: dict[str, Any],
) -> None:
    audit = request.app.state.manager.audit
    async with request.app.state.session_factory() as db:
        await audit.record_unresolved(
            db,
            source=source,
            reason=reason,
            correlation_id=callback.correlation_id,
            external_transaction_id=callback.external_transaction_id,
            detail=detail,
            payload=payload,
        )
        await db.commit()


async def _handle_callback(request: Request, gateway: GatewayType, source: str) -> dict[str, Any] | JSONResponse:
    payload = await _read_payload(request)
    manager = request.app.state.manager
    callback = manager.gateways.parse_callback(gateway, payload)

    try:
        result = await manager.apply_payment_outcome(PaymentOutcome.from_callback(callback))
    except UnresolvedReference as e:
        await _queue_unresolved(request, source, "unresolved_reference", callback, e.detail, payload)
        return ACK
    except InvalidTransition as e:
        logger.warning(f"Callback {callback.correlation_id} rejected: {e.detail}")
        await _queue_unresolved(request, source, "invalid_transition", callback, e.detail, payload)
        return ACK
    except AuthorityViolation as e:
        await _queue_unresolved(request, source, "authority_violation", callback, e.detail, payload)
        return ACK
    except AmountDiscrepancy as e:
        logger.warning(f"Callback {callback.correlation_id} held for review: {e.detail}")
        return ACK
    except (PersistenceFailure, ConcurrentModification) as e:
        logger.error(f"Callback {callback.correlation_id} not committed, asking gateway to retry: {e.detail}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"ResultCode": 1, "ResultDesc": "Temporarily unavailable; retry"},
            headers={"Retry-After": "5"},
        )

    logger.info(
        f"Callback {callback.correlation_id} → payment {result['payment_state']}, booking {result['booking_state']}"
    )
    return ACK


@router.post("/mpesa", response_model=CallbackAck, status_code=status.HTTP_200_OK)
async def mpesa_callback(
    request: Request,
    x_callback_token: str | None = Header(None, alias="X-Callback-Token"),
) -> dict[str, Any]:
    """Handle an M-Pesa STK push result."""
    if not verify_callback_token(x_callback_token):
        raise AuthenticationError("Invalid callback token")
    return await _handle_callback(request, GatewayType.MPESA, "mpesa")


@router.post("/callback", response_model=CallbackAck, status_code=status.HTTP_200_OK)
async def generic_callback(
    request: Request,
    x_callback_token: str | None = Header(None, alias="X-Callback-Token"),
) -> dict[str, Any]:
    """Handle a payment outcome in the flat shape (manual / till verification)."""
    if not verify_callback_token(x_callback_token):
        raise AuthenticationError("Invalid callback token")
    return await _handle_callback(request, GatewayType.MANUAL, "callback")

