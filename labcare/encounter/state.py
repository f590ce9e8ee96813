"""Encounter State: phases and the encounter snapshot model.

The snapshot mirrors what the encounter repository returns. The analysis and
billable-item lists are raw: the repository appends on every analysis commit
and never removes superseded rows, so readers go through ``deduplicated()``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

from labcare.billing.models import BillableItem, PaymentEntry

if TYPE_CHECKING:
    from labcare.billing.worksheet import BillingWorksheet


class EncounterPhase(str, Enum):
    REGISTERING_GENERAL_DATA = "REGISTERING_GENERAL_DATA"
    REGISTERING_ANALYSES = "REGISTERING_ANALYSES"
    ON_COLLECTION_PROCESS = "ON_COLLECTION_PROCESS"
    ON_BILLING_PROCESS = "ON_BILLING_PROCESS"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    AWAITING_EXTRACTION = "AWAITING_EXTRACTION"
    IN_EXTRACTION = "IN_EXTRACTION"
    FINISHED = "FINISHED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"


class EncounterKind(str, Enum):
    """How the encounter was started at the desk."""

    WALK_IN = "new"
    APPOINTMENT = "prefilled"


# ── Phase ordering ───────────────────────────────────────────────────────────

# Front-desk path, walked forward by commits and backward by reverse().
DESK_PATH: tuple[EncounterPhase, ...] = (
    EncounterPhase.REGISTERING_GENERAL_DATA,
    EncounterPhase.REGISTERING_ANALYSES,
    EncounterPhase.ON_COLLECTION_PROCESS,
    EncounterPhase.ON_BILLING_PROCESS,
    EncounterPhase.AWAITING_CONFIRMATION,
)

PHASE_RANK: dict[EncounterPhase, int] = {
    EncounterPhase.REGISTERING_GENERAL_DATA: 0,
    EncounterPhase.REGISTERING_ANALYSES: 1,
    EncounterPhase.ON_COLLECTION_PROCESS: 2,
    EncounterPhase.ON_BILLING_PROCESS: 3,
    EncounterPhase.AWAITING_CONFIRMATION: 4,
    EncounterPhase.AWAITING_EXTRACTION: 5,
    EncounterPhase.IN_EXTRACTION: 6,
    EncounterPhase.FINISHED: 7,
}

TERMINAL_PHASES = frozenset(
    {EncounterPhase.FINISHED, EncounterPhase.CANCELED, EncounterPhase.FAILED}
)


def phase_rank(phase: EncounterPhase) -> int:
    """Position of a phase on the forward path. Absorbing failures rank -1."""
    return PHASE_RANK.get(phase, -1)


def previous_desk_phase(phase: EncounterPhase) -> Optional[EncounterPhase]:
    """The phase one step back on the desk path, or None at the start."""
    if phase not in DESK_PATH:
        return None
    index = DESK_PATH.index(phase)
    return DESK_PATH[index - 1] if index > 0 else None


# ── Encounter snapshot ───────────────────────────────────────────────────────


class AnalysisAuthorization(BaseModel):
    analysis_id: str
    authorized: bool = False


def _dedupe(rows: list, key) -> list:
    """Keep one row per natural key, at its first position, with its latest value."""
    latest: dict[str, object] = {}
    for row in rows:
        latest[key(row)] = row
    return list(latest.values())


class Encounter(BaseModel):
    """Authoritative encounter snapshot as returned by the repository."""

    id: str
    phase: EncounterPhase = EncounterPhase.REGISTERING_GENERAL_DATA
    encounter_number: Optional[str] = None
    branch_id: Optional[str] = None

    patient_ref: Optional[str] = None
    practitioner_ref: Optional[str] = None
    coverage_ref: Optional[str] = None
    indications: Optional[str] = None

    urgent: bool = False
    authorization_number: Optional[str] = None
    analyses: list[AnalysisAuthorization] = Field(default_factory=list)
    billable_items: list[BillableItem] = Field(default_factory=list)

    payment_entries: list[PaymentEntry] = Field(default_factory=list)
    iva_percentage: Optional[Decimal] = None
    coinsurance: Decimal = Decimal("0")
    payment_ref: Optional[str] = None

    assigned_resource_id: Optional[str] = None
    operator_id: Optional[str] = None
    observations: Optional[str] = None
    cancellation_reason: Optional[str] = None

    most_advanced_phase: EncounterPhase = EncounterPhase.REGISTERING_GENERAL_DATA
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # ── State helpers ─────────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def has_general_data(self) -> bool:
        return bool(self.patient_ref and self.practitioner_ref and self.coverage_ref)

    def deduplicated(
        self,
        analysis_watermark: int = 0,
        items_watermark: int = 0,
    ) -> "Encounter":
        """Copy with one analysis and one billable item per analysis id.

        Rows before the watermarks were superseded by a reversal and are
        ignored.
        """
        return self.model_copy(
            update={
                "analyses": _dedupe(
                    self.analyses[analysis_watermark:], lambda a: a.analysis_id
                ),
                "billable_items": _dedupe(
                    self.billable_items[items_watermark:], lambda i: i.natural_key
                ),
            }
        )

    def derived_most_advanced_phase(self, billing_ref: Optional[str] = None) -> EncounterPhase:
        """Furthest desk phase the present data supports.

        Computed from the data itself rather than the stored ``phase`` so a
        stale cached phase cannot unlock or hide a step.
        """
        if not self.has_general_data:
            return EncounterPhase.REGISTERING_GENERAL_DATA
        if not self.analyses:
            return EncounterPhase.REGISTERING_ANALYSES
        if not self.payment_ref:
            return EncounterPhase.ON_COLLECTION_PROCESS
        if not billing_ref:
            return EncounterPhase.ON_BILLING_PROCESS
        return EncounterPhase.AWAITING_CONFIRMATION

    def worksheet(self) -> "BillingWorksheet":
        from labcare.billing.worksheet import BillingWorksheet

        return BillingWorksheet.from_encounter(self)
