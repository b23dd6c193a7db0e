"""
Bond Escrow — FastAPI Server
=============================

HTTP surface over the escrow core. The server never signs and never talks
to the ledger: it hands out unsigned templates and records outcomes that
callers report back.

Endpoints:
    POST /leases                              Create a lease (landlord)
    GET  /leases?address=r...                 Leases where an address is a party
    GET  /leases/{lease_id}                   Single lease with evidence
    GET  /leases/{lease_id}/lock-payloads     Unsigned EscrowCreate per branch
    POST /leases/{lease_id}/deposit           Record confirmed locks (payer)
    POST /leases/{lease_id}/evidence          Submit move-out evidence (occupant)
    POST /leases/{lease_id}/release-payload   Unsigned EscrowFinish for a verdict (settler)
    POST /leases/{lease_id}/verdict           Record a confirmed release (settler)
    POST /leases/{lease_id}/reclaim-payload   Unsigned EscrowCancel (payer)
    GET  /health                              Health check / readiness

Run:
    uvicorn api:app --reload              # Dev (http://localhost:8000)
    uvicorn api:app --host 0.0.0.0        # Production
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from bond_escrow import __version__
from bond_escrow.config import load_settings
from bond_escrow.exceptions import (
    AuthorizationError,
    BondEscrowError,
    IntegrityError,
    LeaseNotFoundError,
    StateConflictError,
    ValidationError,
)
from bond_escrow.ledger import SubmissionResult
from bond_escrow.models import EscrowRecord, Evidence, Lease, LeaseDraft, LeaseStatus, Outcome
from bond_escrow.payloads import drops_to_xrp, parse_drops
from bond_escrow.settlement import SettlementCoordinator
from bond_escrow.store import InMemoryLeaseStore

# ─── Application Lifespan ───────────────────────────────────────────

_coordinator: SettlementCoordinator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load settings and open the lease store on startup."""
    global _coordinator  # noqa: PLW0603
    _coordinator = SettlementCoordinator(InMemoryLeaseStore(), load_settings())
    yield
    _coordinator = None


# ─── FastAPI App ─────────────────────────────────────────────────────

app = FastAPI(
    title="Bond Escrow API",
    description=(
        "Notary-gated rental bond escrow on the XRP Ledger. "
        "Crypto-condition locks, one-shot lease transitions, and a verdict "
        "protocol that discloses exactly one fulfillment."
    ),
    version=__version__,
    lifespan=lifespan,
)

_STATUS_CODES: list[tuple[type[BondEscrowError], int]] = [
    (ValidationError, 422),
    (AuthorizationError, 403),
    (LeaseNotFoundError, 404),
    (StateConflictError, 409),
    (IntegrityError, 500),
]


@app.exception_handler(BondEscrowError)
async def bond_escrow_error_handler(request: Request, exc: BondEscrowError) -> JSONResponse:
    """Translate core rejections into structured JSON errors."""
    status_code = next((code for kind, code in _STATUS_CODES if isinstance(exc, kind)), 400)
    return JSONResponse(
        status_code=status_code,
        content={"code": exc.code, "message": exc.message, "details": exc.details},
    )


# ─── Request / Response Schemas ─────────────────────────────────────


class CreateLeaseRequest(BaseModel):
    """Request body for POST /leases."""

    payer: str = Field(description="Account that locks the bond (usually the tenant).")
    primary_recipient: str = Field(description="The occupant; receives the refund.")
    alternate_recipient: str = Field(description="The landlord; receives the penalty.")
    settler: str = Field(description="The notary who decides the verdict.")
    bond_amount_drops: str = Field(
        ...,
        description="Bond in drops, as a decimal string.",
        json_schema_extra={"example": "5000000"},
    )
    property_address: Optional[str] = None
    baseline_narrative: str = Field(default="", max_length=2000)
    baseline_attachment_urls: list[str] = Field(default_factory=list)


class ConfirmDepositRequest(BaseModel):
    caller_address: Optional[str] = None
    sequences: dict[Outcome, int] = Field(
        description="EscrowCreate sequence per outcome branch, all branches at once."
    )


class EvidenceRequest(BaseModel):
    caller_address: Optional[str] = None
    exit_narrative: str = Field(..., min_length=1, max_length=2000)
    attachment_urls: list[str] = Field(default_factory=list)


class VerdictChoiceRequest(BaseModel):
    caller_address: Optional[str] = None
    outcome: Outcome


class VerdictRequest(VerdictChoiceRequest):
    result: Optional[SubmissionResult] = Field(
        default=None,
        description="Outcome of the submitted release. Omitted only for an outcome with no lock.",
    )


class EscrowOut(BaseModel):
    """Public view of an escrow — the fulfillment is never included."""

    outcome: Outcome
    destination: str
    condition: str
    sequence: Optional[int] = None
    owner: Optional[str] = None
    settled: bool


class LeaseOut(BaseModel):
    id: str
    status: LeaseStatus
    payer: str
    primary_recipient: str
    alternate_recipient: str
    settler: str
    bond_amount_drops: str
    bond_amount_xrp: str
    property_address: Optional[str] = None
    baseline_narrative: str
    baseline_attachment_urls: list[str]
    escrows: list[EscrowOut]
    verdict: Optional[Outcome] = None
    evidence: Optional[Evidence] = None


class LockPayloadsResponse(BaseModel):
    lease: LeaseOut
    transactions: list[dict[str, Any]]


class ReleasePayloadResponse(BaseModel):
    transaction: dict[str, Any]
    fee_drops: str = Field(description="Minimum fee for this conditional release.")


class ReclaimPayloadResponse(BaseModel):
    transaction: dict[str, Any]


class HealthResponse(BaseModel):
    status: str
    version: str
    outcome_branches: int


# ─── Helpers ─────────────────────────────────────────────────────────


def _get_coordinator() -> SettlementCoordinator:
    if _coordinator is None:
        raise HTTPException(status_code=503, detail="Coordinator not initialised")
    return _coordinator


def _escrow_out(escrow: EscrowRecord) -> EscrowOut:
    return EscrowOut.model_validate(escrow.model_dump(exclude={"fulfillment"}))


def _lease_out(lease: Lease) -> LeaseOut:
    """Convert the internal Lease to the API response schema."""
    return LeaseOut(
        id=lease.id,
        status=lease.status,
        payer=lease.payer,
        primary_recipient=lease.primary_recipient,
        alternate_recipient=lease.alternate_recipient,
        settler=lease.settler,
        bond_amount_drops=str(lease.bond_amount_drops),
        bond_amount_xrp=str(drops_to_xrp(lease.bond_amount_drops)),
        property_address=lease.property_address,
        baseline_narrative=lease.baseline_narrative,
        baseline_attachment_urls=lease.baseline_attachment_urls,
        escrows=[_escrow_out(e) for e in lease.escrows],
        verdict=lease.verdict,
        evidence=lease.evidence,
    )


# ─── Endpoints ───────────────────────────────────────────────────────


@app.post("/leases", status_code=201, summary="Create a lease", tags=["Leases"])
def create_lease(request: CreateLeaseRequest) -> LeaseOut:
    """Create a lease with one fresh condition pair per escrow branch.

    The fulfillments are generated and kept server-side; only conditions
    are ever returned.
    """
    coordinator = _get_coordinator()
    draft = LeaseDraft(
        **request.model_dump(exclude={"bond_amount_drops"}),
        bond_amount_drops=parse_drops(request.bond_amount_drops),
    )
    return _lease_out(coordinator.create_lease(draft))


@app.get("/leases", summary="List leases for an address", tags=["Leases"])
def list_leases(address: str = "") -> list[LeaseOut]:
    if not address:
        return []
    return [_lease_out(lease) for lease in _get_coordinator().leases_for(address)]


@app.get("/leases/{lease_id}", summary="Get a lease", tags=["Leases"])
def get_lease(lease_id: str) -> LeaseOut:
    return _lease_out(_get_coordinator().get_lease(lease_id))


@app.get(
    "/leases/{lease_id}/lock-payloads",
    summary="Unsigned EscrowCreate transactions",
    tags=["Escrow"],
)
def lock_payloads(lease_id: str) -> LockPayloadsResponse:
    """Templates the payer signs to lock the bond, one per outcome branch."""
    coordinator = _get_coordinator()
    templates = coordinator.lock_payloads(lease_id)
    return LockPayloadsResponse(
        lease=_lease_out(coordinator.get_lease(lease_id)),
        transactions=[t.to_ledger_json() for t in templates],
    )


@app.post("/leases/{lease_id}/deposit", summary="Confirm on-ledger locks", tags=["Escrow"])
def confirm_deposit(lease_id: str, request: ConfirmDepositRequest) -> LeaseOut:
    lease = _get_coordinator().confirm_deposit(lease_id, request.caller_address, request.sequences)
    return _lease_out(lease)


@app.post("/leases/{lease_id}/evidence", summary="Submit move-out evidence", tags=["Leases"])
def submit_evidence(lease_id: str, request: EvidenceRequest) -> LeaseOut:
    lease = _get_coordinator().report_exit(
        lease_id, request.caller_address, request.exit_narrative, request.attachment_urls
    )
    return _lease_out(lease)


@app.post(
    "/leases/{lease_id}/release-payload",
    summary="Unsigned EscrowFinish for the chosen verdict",
    tags=["Verdict"],
)
def release_payload(lease_id: str, request: VerdictChoiceRequest) -> ReleasePayloadResponse:
    """Only the settler, only after exit is reported, only for the named outcome."""
    coordinator = _get_coordinator()
    template = coordinator.release_payload(lease_id, request.caller_address, request.outcome)
    return ReleasePayloadResponse(
        transaction=template.to_ledger_json(),
        fee_drops=str(coordinator.release_fee(template)),
    )


@app.post("/leases/{lease_id}/verdict", summary="Record a confirmed release", tags=["Verdict"])
def record_verdict(lease_id: str, request: VerdictRequest) -> LeaseOut:
    lease = _get_coordinator().confirm_release(
        lease_id, request.caller_address, request.outcome, request.result
    )
    return _lease_out(lease)


@app.post(
    "/leases/{lease_id}/reclaim-payload",
    summary="Unsigned EscrowCancel for an unreleased lock",
    tags=["Escrow"],
)
def reclaim_payload(lease_id: str, request: VerdictChoiceRequest) -> ReclaimPayloadResponse:
    template = _get_coordinator().reclaim_payload(lease_id, request.caller_address, request.outcome)
    return ReclaimPayloadResponse(transaction=template.to_ledger_json())


@app.get(
    "/health",
    summary="Health check",
    tags=["System"],
    responses={503: {"description": "Coordinator not yet initialised"}},
)
def health_check() -> HealthResponse:
    coordinator = _get_coordinator()
    return HealthResponse(
        status="healthy",
        version=__version__,
        outcome_branches=coordinator.settings.outcome_branches,
    )
