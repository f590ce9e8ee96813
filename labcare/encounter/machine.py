"""Encounter State Machine: gates every phase transition of an encounter.

The repository is the only authority on phase. Every mutation is a repository
call; the local snapshot is replaced with what the repository returns and is
never advanced on assumption. A conflict or transport failure flags the session
for resync, and no further mutation is accepted until ``resync()`` succeeds.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from labcare.billing.models import BillableItem
from labcare.billing.reconciliation import reconcile
from labcare.billing.submission import build_payment_request
from labcare.billing.worksheet import BillingWorksheet
from labcare.config import Settings, get_settings
from labcare.core.errors import (
    ConflictError,
    NetworkError,
    TerminalStateError,
    ValidationError,
)
from labcare.core.gateway import BillingGateway, PaymentRef, Receipt
from labcare.core.repository import EncounterRepository
from labcare.encounter.session import EncounterSession, TransitionGuard
from labcare.encounter.state import (
    DESK_PATH,
    AnalysisAuthorization,
    Encounter,
    EncounterKind,
    EncounterPhase,
    phase_rank,
    previous_desk_phase,
)
from labcare.extraction.allocator import ResourceAllocator
from labcare.observability import get_observability_logger

logger = logging.getLogger(__name__)


class Settlement(BaseModel):
    """Outcome of settling the collection desk's payment."""

    encounter: Encounter
    payment_ref: PaymentRef
    receipt: Receipt


class EncounterStateMachine:
    """Coordinates the desk path, billing gate and extraction hand-off."""

    def __init__(
        self,
        repository: EncounterRepository,
        gateway: Optional[BillingGateway] = None,
        allocator: Optional[ResourceAllocator] = None,
        guard: Optional[TransitionGuard] = None,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.gateway = gateway
        self.allocator = allocator
        self.guard = guard or TransitionGuard()
        self.settings = settings or get_settings()

    # ── Session plumbing ─────────────────────────────────────────────────

    def _current(self, session: EncounterSession) -> Encounter:
        """The session's snapshot, checked for being open, synced and mutable."""
        if not session.is_open or session.encounter is None:
            raise ValidationError("No encounter is open in this session")
        if session.needs_resync:
            raise ConflictError(
                "Encounter state is unknown after a failed call; resync first",
                encounter_id=session.encounter_id,
            )
        if session.encounter.is_terminal:
            raise TerminalStateError(
                f"Encounter is {session.encounter.phase.value}",
                encounter_id=session.encounter_id,
            )
        return session.encounter

    def _require_phase(self, encounter: Encounter, *phases: EncounterPhase) -> None:
        if encounter.phase not in phases:
            allowed = ", ".join(p.value for p in phases)
            raise ValidationError(
                f"Encounter is {encounter.phase.value}; expected {allowed}",
                encounter_id=encounter.id,
            )

    def _apply(self, session: EncounterSession, raw: Encounter) -> Encounter:
        """Replace the session's view with a fresh authoritative snapshot."""
        view = raw.deduplicated(session.analysis_watermark, session.items_watermark)
        session.encounter_id = raw.id
        session.encounter = view
        if raw.phase != EncounterPhase.ON_COLLECTION_PROCESS:
            # A pending payment is only committable from the collection phase.
            session.forget_payment()
        if raw.is_terminal:
            logger.info("Encounter %s reached %s; closing session", raw.id, raw.phase.value)
            session.clear()
        return view

    async def _run(
        self,
        session: EncounterSession,
        operation: str,
        target: Optional[EncounterPhase],
        call: Callable[[Encounter], Awaitable[Encounter]],
        check: Optional[Callable[[Encounter], None]] = None,
        held: bool = False,
    ) -> Encounter:
        """Run one repository mutation under the per-encounter guard.

        ``held`` means the caller already holds the guard for this encounter.
        """
        encounter = self._current(session)
        if held:
            return await self._transition(session, operation, target, call, check)
        async with self.guard.hold(encounter.id):
            return await self._transition(session, operation, target, call, check)

    async def _transition(
        self,
        session: EncounterSession,
        operation: str,
        target: Optional[EncounterPhase],
        call: Callable[[Encounter], Awaitable[Encounter]],
        check: Optional[Callable[[Encounter], None]],
    ) -> Encounter:
        # Re-read after waiting: a transition queued behind this one may
        # have moved the session on.
        encounter = self._current(session)
        if check is not None:
            check(encounter)

        with get_observability_logger().transition(
            operation,
            encounter_id=encounter.id,
            from_phase=encounter.phase.value,
            to_phase=target.value if target else None,
        ) as event:
            try:
                raw = await call(encounter)
            except (ConflictError, NetworkError) as e:
                session.needs_resync = True
                logger.warning(f"{operation} on {encounter.id} failed, resync required: {e}")
                raise
            except TerminalStateError:
                session.clear()
                raise
            event.resulting_phase = raw.phase.value

        return self._apply(session, raw)

    async def _commit(
        self,
        session: EncounterSession,
        operation: str,
        target: EncounterPhase,
        payload: dict[str, Any],
        allowed_from: tuple[EncounterPhase, ...],
        check: Optional[Callable[[Encounter], None]] = None,
        held: bool = False,
    ) -> Encounter:
        def gate(encounter: Encounter) -> None:
            self._require_phase(encounter, *allowed_from)
            if check is not None:
                check(encounter)

        async def call(encounter: Encounter) -> Encounter:
            body = {"expected_phase": encounter.phase.value, **payload}
            return await self.repository.commit_phase(encounter.id, target, body)

        return await self._run(session, operation, target, call, gate, held=held)

    # ── Opening and resuming ─────────────────────────────────────────────

    async def open(
        self,
        session: EncounterSession,
        kind: EncounterKind = EncounterKind.WALK_IN,
        seed: Optional[dict[str, Any]] = None,
    ) -> Encounter:
        """Create the session's encounter, or resume it if one is already held.

        Raises:
            TerminalStateError: The held encounter already ended; the token
                is cleared so the next call creates a new encounter.
        """
        if session.is_open:
            raw = await self._fetch(session)
            if raw.is_terminal:
                ended = raw.phase.value
                session.clear()
                raise TerminalStateError(f"Encounter {raw.id} is {ended}", encounter_id=raw.id)
            session.needs_resync = False
            view = self._apply(session, raw)
            session.view_phase = self.landing_phase(session)
            return view

        body = dict(seed or {})
        body.setdefault("branch_id", self.settings.branch_id)
        with get_observability_logger().transition(
            "open", to_phase=EncounterPhase.REGISTERING_GENERAL_DATA.value
        ) as event:
            raw = await self.repository.create_encounter(kind.value, body)
            event.encounter_id = raw.id
            event.resulting_phase = raw.phase.value

        session.from_appointment = kind == EncounterKind.APPOINTMENT
        view = self._apply(session, raw)
        session.view_phase = self.landing_phase(session)
        logger.info("Opened encounter %s (%s)", raw.id, kind.value)
        return view

    async def _fetch(self, session: EncounterSession) -> Encounter:
        try:
            return await self.repository.get_encounter(session.encounter_id)
        except (ConflictError, NetworkError):
            session.needs_resync = True
            raise

    async def resync(self, session: EncounterSession) -> Encounter:
        """Re-fetch the authoritative snapshot and accept mutations again."""
        if not session.is_open:
            raise ValidationError("No encounter is open in this session")
        raw = await self._fetch(session)
        session.needs_resync = False
        if session.encounter is not None and session.encounter.phase != raw.phase:
            logger.info(
                "Resync of %s: local %s, authoritative %s",
                raw.id, session.encounter.phase.value, raw.phase.value,
            )
        return self._apply(session, raw)

    def abandon(self, session: EncounterSession) -> None:
        """Drop the session's token without touching the encounter."""
        if session.is_open:
            logger.info("Session abandoned encounter %s", session.encounter_id)
        session.clear()

    # ── Desk path ────────────────────────────────────────────────────────

    async def assign_general_data(
        self,
        session: EncounterSession,
        patient_ref: Optional[str],
        practitioner_ref: Optional[str],
        coverage_ref: Optional[str],
        indications: Optional[str] = None,
    ) -> Encounter:
        missing = [
            name
            for name, value in (
                ("patient", patient_ref),
                ("practitioner", practitioner_ref),
                ("coverage", coverage_ref),
            )
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing general data: {', '.join(missing)}")

        return await self._commit(
            session,
            "assign_general_data",
            EncounterPhase.REGISTERING_ANALYSES,
            {
                "patient_ref": patient_ref,
                "practitioner_ref": practitioner_ref,
                "coverage_ref": coverage_ref,
                "indications": indications,
            },
            allowed_from=(EncounterPhase.REGISTERING_GENERAL_DATA,),
        )

    async def commit_analyses(
        self,
        session: EncounterSession,
        items: list[BillableItem],
        urgent: bool = False,
        authorization_number: Optional[str] = None,
    ) -> Encounter:
        """Commit the selected analyses and their priced lines.

        The repository appends rather than replaces, so duplicates in the
        request are collapsed here and every read de-duplicates again.
        """
        unique: dict[str, BillableItem] = {}
        for item in items:
            unique[item.natural_key] = item
        if not unique:
            raise ValidationError("At least one analysis must be selected")

        return await self._commit(
            session,
            "commit_analyses",
            EncounterPhase.ON_COLLECTION_PROCESS,
            {
                "analyses": [
                    AnalysisAuthorization(
                        analysis_id=key, authorized=item.authorized
                    ).model_dump(mode="json")
                    for key, item in unique.items()
                ],
                "billable_items": [item.model_dump(mode="json") for item in unique.values()],
                "urgent": urgent,
                "authorization_number": authorization_number,
            },
            allowed_from=(EncounterPhase.REGISTERING_ANALYSES,),
        )

    async def commit_payment(
        self,
        session: EncounterSession,
        worksheet: BillingWorksheet,
        payment_ref: str,
    ) -> Encounter:
        """Leave the collection phase once the worksheet reconciles."""
        return await self._commit_payment(session, worksheet, payment_ref)

    async def _commit_payment(
        self,
        session: EncounterSession,
        worksheet: BillingWorksheet,
        payment_ref: str,
        held: bool = False,
    ) -> Encounter:
        summary = reconcile(worksheet)
        if not summary.can_leave_collection:
            raise ValidationError(
                "; ".join(summary.gate_failures), encounter_id=session.encounter_id
            )
        if not payment_ref:
            raise ValidationError("A payment reference is required")

        return await self._commit(
            session,
            "commit_payment",
            EncounterPhase.ON_BILLING_PROCESS,
            {
                "payment_entries": [e.model_dump(mode="json") for e in worksheet.payments],
                "iva_percentage": str(worksheet.iva_percentage),
                "coinsurance": str(worksheet.coinsurance),
                "payment_ref": payment_ref,
            },
            allowed_from=(EncounterPhase.ON_COLLECTION_PROCESS,),
            held=held,
        )

    async def settle_payment(
        self,
        session: EncounterSession,
        worksheet: BillingWorksheet,
    ) -> Settlement:
        """Submit the worksheet to the gateway, confirm it, then commit.

        A failure at any step leaves the outcome unknown, so the session is
        flagged for resync. A payment the gateway already accepted is kept on
        the session; settling again after the resync commits that payment
        instead of submitting a new one.
        """
        if self.gateway is None:
            raise ValidationError("No billing gateway is configured")
        encounter = self._current(session)
        self._require_phase(encounter, EncounterPhase.ON_COLLECTION_PROCESS)

        async with self.guard.hold(encounter.id):
            encounter = self._current(session)
            self._require_phase(encounter, EncounterPhase.ON_COLLECTION_PROCESS)
            try:
                if session.pending_payment is None:
                    request = build_payment_request(
                        encounter.id, worksheet, strict=self.settings.strict_payment_methods
                    )
                    session.pending_payment = await self.gateway.submit_payment(request)
                else:
                    logger.info(
                        "Reusing accepted payment %s for encounter %s",
                        session.pending_payment.payment_id, encounter.id,
                    )
                if session.pending_receipt is None:
                    session.pending_receipt = await self.gateway.complete_collection(
                        session.pending_payment
                    )
            except (ConflictError, NetworkError) as e:
                session.needs_resync = True
                logger.warning(f"Payment for {encounter.id} failed, resync required: {e}")
                raise

            payment_ref = session.pending_payment
            receipt = session.pending_receipt
            logger.info(
                "Payment %s for encounter %s collected (receipt %s)",
                payment_ref.payment_id, encounter.id, receipt.receipt_number,
            )
            updated = await self._commit_payment(
                session, worksheet, payment_ref.payment_id, held=True
            )
        return Settlement(encounter=updated, payment_ref=payment_ref, receipt=receipt)

    def record_billing_reference(self, session: EncounterSession, billing_ref: str) -> None:
        """Remember the invoice reference for ending the billing phase."""
        encounter = self._current(session)
        self._require_phase(
            encounter, EncounterPhase.ON_BILLING_PROCESS, EncounterPhase.AWAITING_CONFIRMATION
        )
        if not billing_ref or not billing_ref.strip():
            raise ValidationError("Billing reference must not be empty")
        session.billing_ref = billing_ref.strip()

    async def end_billing_phase(self, session: EncounterSession) -> Encounter:
        encounter = self._current(session)
        if encounter.phase == EncounterPhase.AWAITING_CONFIRMATION:
            return encounter

        def has_billing_ref(_: Encounter) -> None:
            if not session.billing_ref:
                raise ValidationError("No billing reference has been recorded")

        return await self._commit(
            session,
            "end_billing_phase",
            EncounterPhase.AWAITING_CONFIRMATION,
            {"billing_ref": session.billing_ref},
            allowed_from=(EncounterPhase.ON_BILLING_PROCESS,),
            check=has_billing_ref,
        )

    async def confirm(self, session: EncounterSession, requires_extraction: bool = False) -> Encounter:
        """Close the desk's work on the encounter.

        With ``requires_extraction`` the encounter joins the extraction queue
        instead of finishing. Either way the desk session ends.
        """
        target = (
            EncounterPhase.AWAITING_EXTRACTION if requires_extraction else EncounterPhase.FINISHED
        )
        view = await self._commit(
            session,
            "confirm",
            target,
            {},
            allowed_from=(EncounterPhase.AWAITING_CONFIRMATION,),
        )
        if session.is_open:
            session.clear()
        return view

    async def cancel(self, session: EncounterSession, reason: str) -> Encounter:
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required")

        async def call(encounter: Encounter) -> Encounter:
            return await self.repository.cancel_encounter(encounter.id, reason.strip())

        return await self._run(session, "cancel", EncounterPhase.CANCELED, call)

    async def reverse(self, session: EncounterSession) -> Encounter:
        """Go back one desk phase, purging what the phase being left derived."""

        def can_go_back(encounter: Encounter) -> None:
            if previous_desk_phase(encounter.phase) is None:
                raise ValidationError(
                    f"Cannot go back from {encounter.phase.value}", encounter_id=encounter.id
                )

        left: dict[str, EncounterPhase] = {}

        async def call(encounter: Encounter) -> Encounter:
            left["phase"] = encounter.phase
            raw = await self.repository.reverse_phase(encounter.id)
            session.forget_payment()
            if encounter.phase == EncounterPhase.ON_COLLECTION_PROCESS:
                # Superseded analyses stay in the repository; hide them.
                session.analysis_watermark = len(raw.analyses)
                session.items_watermark = len(raw.billable_items)
            if encounter.phase in (
                EncounterPhase.ON_BILLING_PROCESS,
                EncounterPhase.AWAITING_CONFIRMATION,
            ):
                session.billing_ref = None
            return raw

        view = await self._run(
            session, "reverse", previous_desk_phase(session.phase) if session.phase else None,
            call, can_go_back,
        )
        session.view_phase = view.phase
        logger.info("Encounter %s reversed from %s to %s", view.id, left["phase"].value, view.phase.value)
        return view

    # ── Navigation ───────────────────────────────────────────────────────

    def resume_navigation(self, session: EncounterSession, target_phase: EncounterPhase) -> EncounterPhase:
        """Move the desk view to an already-reachable phase.

        Reachability comes from the data present on the encounter, not its
        stored phase, so a stale cached phase neither blocks nor unlocks steps.
        """
        if not session.is_open or session.encounter is None:
            raise ValidationError("No encounter is open in this session")
        if target_phase not in DESK_PATH:
            raise ValidationError(f"{target_phase.value} is not a desk phase")

        reachable = session.encounter.derived_most_advanced_phase(session.billing_ref)
        if phase_rank(target_phase) > phase_rank(reachable):
            raise ValidationError(
                f"{target_phase.value} is not reachable yet (furthest is {reachable.value})",
                encounter_id=session.encounter_id,
            )
        session.view_phase = target_phase
        return target_phase

    def landing_phase(self, session: EncounterSession) -> EncounterPhase:
        """The phase a reloaded desk should show."""
        if session.encounter is None:
            return EncounterPhase.REGISTERING_GENERAL_DATA
        if session.encounter.phase not in DESK_PATH:
            return session.encounter.phase

        reachable = session.encounter.derived_most_advanced_phase(session.billing_ref)
        if session.view_phase is not None and phase_rank(session.view_phase) <= phase_rank(reachable):
            return session.view_phase
        return reachable

    def worksheet(self, session: EncounterSession) -> BillingWorksheet:
        """Load a collection worksheet from the session's snapshot."""
        if session.encounter is None:
            raise ValidationError("No encounter is open in this session")
        return session.encounter.worksheet()

    # ── Extraction ───────────────────────────────────────────────────────

    async def _extraction(
        self,
        operation: str,
        encounter_id: str,
        expected: EncounterPhase,
        target: EncounterPhase,
        action: Callable[[ResourceAllocator, Encounter], Awaitable[Encounter]],
    ) -> Encounter:
        if self.allocator is None:
            raise ValidationError("No extraction allocator is configured")

        async with self.guard.hold(encounter_id):
            with get_observability_logger().transition(
                operation, encounter_id=encounter_id, to_phase=target.value
            ) as event:
                encounter = await self.repository.get_encounter(encounter_id)
                event.from_phase = encounter.phase.value
                if encounter.is_terminal:
                    raise TerminalStateError(
                        f"Encounter is {encounter.phase.value}", encounter_id=encounter_id
                    )
                if encounter.phase != expected:
                    raise ConflictError(
                        f"Encounter is {encounter.phase.value}, not {expected.value}",
                        encounter_id=encounter_id,
                    )
                updated = await action(self.allocator, encounter)
                event.resulting_phase = updated.phase.value
                return updated.deduplicated()

    async def start_extraction(self, encounter_id: str, resource_id: str) -> Encounter:
        return await self._extraction(
            "start_extraction",
            encounter_id,
            EncounterPhase.AWAITING_EXTRACTION,
            EncounterPhase.IN_EXTRACTION,
            lambda allocator, encounter: allocator.start_extraction(encounter, resource_id),
        )

    async def end_extraction(
        self,
        encounter_id: str,
        resource_id: str,
        observations: Optional[str] = None,
    ) -> Encounter:
        return await self._extraction(
            "end_extraction",
            encounter_id,
            EncounterPhase.IN_EXTRACTION,
            EncounterPhase.FINISHED,
            lambda allocator, encounter: allocator.end_extraction(
                encounter, resource_id, observations
            ),
        )

    async def return_to_queue(self, encounter_id: str) -> Encounter:
        return await self._extraction(
            "return_to_queue",
            encounter_id,
            EncounterPhase.IN_EXTRACTION,
            EncounterPhase.AWAITING_EXTRACTION,
            lambda allocator, encounter: allocator.release(encounter),
        )
