"""Reconciliation endpoints (staff only)."""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse

from paysync.api.deps import Reconciliation
from paysync.core.exceptions import ValidationError
from paysync.core.permissions import Permission, require_permission, require_reconciliation
from paysync.core.security import Actor
from paysync.schemas.booking import BookingResponse
from paysync.schemas.reconciliation import (
    PairingSchema,
    ReconciliationRunResponse,
    RepairProposal,
    VerificationResponse,
)

router = APIRouter()


def _window(start: datetime | None, end: datetime | None) -> tuple[datetime, datetime]:
    """Default window is the last 24 hours."""
    end = end or datetime.now(UTC)
    start = start or end - timedelta(days=1)
    if start.tzinfo is None:
        start = start.replace(tzinfo=UTC)
    if end.tzinfo is None:
        end = end.replace(tzinfo=UTC)
    if start >= end:
        raise ValidationError("start must be before end")
    return start, end


@router.get("/run", response_model=ReconciliationRunResponse)
async def run_reconciliation(
    engine: Reconciliation,
    _: Actor = Depends(require_reconciliation),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> dict[str, Any]:
    """Classify every pairing in the window."""
    start, end = _window(start, end)
    report = await engine.run(start, end)
    return report.to_dict()


@router.get("/report")
async def export_report(
    engine: Reconciliation,
    _: Actor = Depends(require_reconciliation),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> PlainTextResponse:
    """Export the reconciliation report as CSV."""
    start, end = _window(start, end)
    csv_data = await engine.report(start, end)
    return PlainTextResponse(
        content=csv_data,
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename=reconciliation_{start.date()}_{end.date()}.csv"
        },
    )


@router.get("/orphaned", response_model=list[PairingSchema])
async def list_orphaned(
    engine: Reconciliation,
    _: Actor = Depends(require_reconciliation),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> list[dict[str, Any]]:
    """Pairings whose booking or payment reference does not resolve."""
    return [r.to_dict() for r in await engine.orphaned(start, end)]


@router.get("/repairs", response_model=list[RepairProposal])
async def propose_repairs(
    engine: Reconciliation,
    _: Actor = Depends(require_reconciliation),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> list[dict[str, Any]]:
    """Proposed fixes for state mismatches; nothing is changed."""
    start, end = _window(start, end)
    return await engine.propose_repairs(start, end)


@router.get("/bookings/{booking_id}")
async def pairing_detail(
    booking_id: UUID,
    engine: Reconciliation,
    _: Actor = Depends(require_reconciliation),
    verify: bool = Query(default=False),
) -> dict[str, Any]:
    """Pairing detail with issues, payment attempts and audit trail."""
    return await engine.detail(booking_id, verify=verify)


@router.post("/bookings/{booking_id}/verify", response_model=VerificationResponse)
async def verify_pairing(
    booking_id: UUID,
    engine: Reconciliation,
    _: Actor = Depends(require_reconciliation),
) -> dict[str, Any]:
    """Check the latest payment against what its gateway reports now."""
    return await engine.verify(booking_id)


@router.post("/bookings/{booking_id}/repair", response_model=BookingResponse)
async def repair_pairing(
    booking_id: UUID,
    engine: Reconciliation,
    actor: Actor = Depends(require_permission(Permission.REPAIR_PAIRING)),
):
    """Bring the booking in line with its payment through the transaction manager."""
    return await engine.repair(booking_id, actor)
