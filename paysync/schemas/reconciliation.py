"""Reconciliation report schemas."""

from pydantic import BaseModel


class IssueSchema(BaseModel):
    field: str
    expected: str | None
    actual: str | None
    severity: str
    message: str


class PairingSchema(BaseModel):
    classification: str
    booking_id: str | None
    booking_number: str | None
    booking_state: str | None
    payment_id: str | None
    correlation_id: str | None
    payment_state: str | None
    expected_amount: str | None
    actual_amount: str | None
    external_transaction_id: str | None
    issues: list[IssueSchema]


class SummarySchema(BaseModel):
    total: int
    counts: dict[str, int]
    amounts: dict[str, str]


class ReconciliationRunResponse(BaseModel):
    start: str
    end: str
    generated_at: str
    summary: SummarySchema
    results: list[PairingSchema]


class RepairProposal(BaseModel):
    booking_id: str
    booking_number: str | None
    payment_id: str
    from_state: str | None
    to_state: str | None
    action: str
    reason: str


class VerificationResponse(BaseModel):
    booking_id: str
    payment_id: str
    correlation_id: str
    gateway: str
    stored_state: str
    stored_result_code: int | None
    gateway_settled: bool
    gateway_result_code: int | None
    gateway_result_description: str | None
    match: bool | None
    verified_at: str
