"""Encounter API: the front-desk workflow.

Sessions are held server-side, keyed by encounter id. A request for an
encounter with no held session resumes it from the repository.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from labcare.billing.models import BillableItem, PaymentMethod
from labcare.billing.reconciliation import Reconciliation, reconcile
from labcare.billing.worksheet import BillingWorksheet
from labcare.encounter.machine import EncounterStateMachine, Settlement
from labcare.encounter.session import EncounterSession
from labcare.encounter.state import Encounter, EncounterKind, EncounterPhase

router = APIRouter(prefix="/encounters")
logger = logging.getLogger(__name__)


# ── Request / Response Models ─────────────────────────────────────────────────


class OpenRequest(BaseModel):
    kind: EncounterKind = EncounterKind.WALK_IN
    patient_ref: Optional[str] = None
    practitioner_ref: Optional[str] = None
    coverage_ref: Optional[str] = None
    urgent: bool = False


class GeneralDataRequest(BaseModel):
    patient_ref: Optional[str] = None
    practitioner_ref: Optional[str] = None
    coverage_ref: Optional[str] = None
    indications: Optional[str] = None


class AnalysesRequest(BaseModel):
    items: list[BillableItem] = Field(default_factory=list)
    urgent: bool = False
    authorization_number: Optional[str] = None


class PaymentRequestBody(BaseModel):
    method: PaymentMethod
    amount: Decimal
    receipt_number: Optional[str] = None


class ItemSelectionRequest(BaseModel):
    selected: bool = True


class IvaRequest(BaseModel):
    percentage: Decimal


class CoinsuranceRequest(BaseModel):
    amount: Optional[Decimal] = None


class BillingReferenceRequest(BaseModel):
    billing_ref: str


class ConfirmRequest(BaseModel):
    requires_extraction: bool = False


class CancelRequest(BaseModel):
    reason: str


class NavigateRequest(BaseModel):
    phase: EncounterPhase


class EncounterView(BaseModel):
    """Encounter snapshot plus the desk session's state."""

    encounter: Encounter
    session_open: bool
    view_phase: Optional[EncounterPhase] = None
    needs_resync: bool = False
    billing_ref: Optional[str] = None


class WorksheetView(BaseModel):
    worksheet: BillingWorksheet
    reconciliation: Reconciliation
    can_leave_collection: bool
    notice: Optional[str] = None


# ── Helpers ───────────────────────────────────────────────────────────────────


def _machine(request: Request) -> EncounterStateMachine:
    return request.app.state.machine


async def _session(request: Request, encounter_id: str) -> EncounterSession:
    sessions: dict[str, EncounterSession] = request.app.state.sessions
    session = sessions.get(encounter_id)
    if session is None:
        session = EncounterSession(encounter_id=encounter_id)
        await _machine(request).open(session)
        sessions[encounter_id] = session
    return session


def _view(request: Request, encounter_id: str, session: EncounterSession, encounter: Encounter) -> EncounterView:
    """Build the response and forget sessions that have ended."""
    if not session.is_open:
        request.app.state.sessions.pop(encounter_id, None)
        request.app.state.worksheets.pop(encounter_id, None)
    return EncounterView(
        encounter=encounter,
        session_open=session.is_open,
        view_phase=session.view_phase,
        needs_resync=session.needs_resync,
        billing_ref=session.billing_ref,
    )


def _worksheet(request: Request, encounter_id: str, session: EncounterSession) -> BillingWorksheet:
    worksheets: dict[str, BillingWorksheet] = request.app.state.worksheets
    worksheet = worksheets.get(encounter_id)
    if worksheet is None:
        worksheet = worksheets[encounter_id] = _machine(request).worksheet(session)
    return worksheet


def _worksheet_view(worksheet: BillingWorksheet, notice: Optional[str] = None) -> WorksheetView:
    summary = reconcile(worksheet)
    return WorksheetView(
        worksheet=worksheet,
        reconciliation=summary,
        can_leave_collection=summary.can_leave_collection,
        notice=notice,
    )


def _drop_worksheet(request: Request, encounter_id: str) -> None:
    request.app.state.worksheets.pop(encounter_id, None)


# ── Lifecycle ─────────────────────────────────────────────────────────────────


@router.post("", response_model=EncounterView, status_code=201)
async def open_encounter(req: OpenRequest, request: Request):
    """Create a new encounter and hold a desk session for it."""
    session = EncounterSession()
    seed = req.model_dump(exclude={"kind"}, exclude_none=True)
    encounter = await _machine(request).open(session, req.kind, seed)
    request.app.state.sessions[encounter.id] = session
    return _view(request, encounter.id, session, encounter)


@router.get("/{encounter_id}", response_model=EncounterView)
async def get_encounter(encounter_id: str, request: Request):
    session = await _session(request, encounter_id)
    return _view(request, encounter_id, session, session.encounter)


@router.post("/{encounter_id}/resync", response_model=EncounterView)
async def resync_encounter(encounter_id: str, request: Request):
    session = await _session(request, encounter_id)
    encounter = await _machine(request).resync(session)
    _drop_worksheet(request, encounter_id)
    return _view(request, encounter_id, session, encounter)


@router.delete("/{encounter_id}/session", status_code=204)
async def abandon_session(encounter_id: str, request: Request):
    """Stop working on the encounter without changing it."""
    session = request.app.state.sessions.pop(encounter_id, None)
    if session is not None:
        _machine(request).abandon(session)
    _drop_worksheet(request, encounter_id)


# ── Desk path ─────────────────────────────────────────────────────────────────


@router.post("/{encounter_id}/general-data", response_model=EncounterView)
async def assign_general_data(encounter_id: str, req: GeneralDataRequest, request: Request):
    session = await _session(request, encounter_id)
    encounter = await _machine(request).assign_general_data(
        session, req.patient_ref, req.practitioner_ref, req.coverage_ref, req.indications
    )
    return _view(request, encounter_id, session, encounter)


@router.post("/{encounter_id}/analyses", response_model=EncounterView)
async def commit_analyses(encounter_id: str, req: AnalysesRequest, request: Request):
    session = await _session(request, encounter_id)
    encounter = await _machine(request).commit_analyses(
        session, req.items, req.urgent, req.authorization_number
    )
    _drop_worksheet(request, encounter_id)
    return _view(request, encounter_id, session, encounter)


@router.post("/{encounter_id}/payment", response_model=Settlement)
async def settle_payment(encounter_id: str, request: Request):
    """Submit the worksheet to the billing gateway and leave collection."""
    session = await _session(request, encounter_id)
    worksheet = _worksheet(request, encounter_id, session)
    settlement = await _machine(request).settle_payment(session, worksheet)
    _drop_worksheet(request, encounter_id)
    return settlement


@router.post("/{encounter_id}/billing-reference", response_model=EncounterView)
async def record_billing_reference(encounter_id: str, req: BillingReferenceRequest, request: Request):
    session = await _session(request, encounter_id)
    _machine(request).record_billing_reference(session, req.billing_ref)
    return _view(request, encounter_id, session, session.encounter)


@router.post("/{encounter_id}/end-billing", response_model=EncounterView)
async def end_billing_phase(encounter_id: str, request: Request):
    session = await _session(request, encounter_id)
    encounter = await _machine(request).end_billing_phase(session)
    return _view(request, encounter_id, session, encounter)


@router.post("/{encounter_id}/confirm", response_model=EncounterView)
async def confirm_encounter(encounter_id: str, req: ConfirmRequest, request: Request):
    session = await _session(request, encounter_id)
    encounter = await _machine(request).confirm(session, req.requires_extraction)
    return _view(request, encounter_id, session, encounter)


@router.post("/{encounter_id}/cancel", response_model=EncounterView)
async def cancel_encounter(encounter_id: str, req: CancelRequest, request: Request):
    session = await _session(request, encounter_id)
    encounter = await _machine(request).cancel(session, req.reason)
    return _view(request, encounter_id, session, encounter)


@router.post("/{encounter_id}/reverse", response_model=EncounterView)
async def reverse_encounter(encounter_id: str, request: Request):
    session = await _session(request, encounter_id)
    encounter = await _machine(request).reverse(session)
    _drop_worksheet(request, encounter_id)
    return _view(request, encounter_id, session, encounter)


@router.post("/{encounter_id}/navigate", response_model=EncounterView)
async def navigate(encounter_id: str, req: NavigateRequest, request: Request):
    session = await _session(request, encounter_id)
    _machine(request).resume_navigation(session, req.phase)
    return _view(request, encounter_id, session, session.encounter)


# ── Collection worksheet ──────────────────────────────────────────────────────


@router.get("/{encounter_id}/worksheet", response_model=WorksheetView)
async def get_worksheet(encounter_id: str, request: Request):
    session = await _session(request, encounter_id)
    return _worksheet_view(_worksheet(request, encounter_id, session))


@router.post("/{encounter_id}/worksheet/payments", response_model=WorksheetView)
async def add_payment(encounter_id: str, req: PaymentRequestBody, request: Request):
    session = await _session(request, encounter_id)
    worksheet = _worksheet(request, encounter_id, session)
    notice = worksheet.add_payment(req.method, req.amount, req.receipt_number)
    return _worksheet_view(worksheet, notice)


@router.delete("/{encounter_id}/worksheet/payments/{entry_id}", response_model=WorksheetView)
async def remove_payment(encounter_id: str, entry_id: str, request: Request):
    session = await _session(request, encounter_id)
    worksheet = _worksheet(request, encounter_id, session)
    worksheet.remove_payment(entry_id)
    return _worksheet_view(worksheet)


@router.put("/{encounter_id}/worksheet/items/{item_id}", response_model=WorksheetView)
async def select_item(encounter_id: str, item_id: str, req: ItemSelectionRequest, request: Request):
    session = await _session(request, encounter_id)
    worksheet = _worksheet(request, encounter_id, session)
    worksheet.select_item(item_id, req.selected)
    return _worksheet_view(worksheet)


@router.put("/{encounter_id}/worksheet/iva", response_model=WorksheetView)
async def choose_iva(encounter_id: str, req: IvaRequest, request: Request):
    session = await _session(request, encounter_id)
    worksheet = _worksheet(request, encounter_id, session)
    worksheet.choose_iva(req.percentage, request.app.state.settings.iva_options)
    return _worksheet_view(worksheet)


@router.put("/{encounter_id}/worksheet/coinsurance", response_model=WorksheetView)
async def set_coinsurance(encounter_id: str, req: CoinsuranceRequest, request: Request):
    session = await _session(request, encounter_id)
    worksheet = _worksheet(request, encounter_id, session)
    worksheet.set_coinsurance(req.amount)
    return _worksheet_view(worksheet)
