"""Tests for the encounter state machine."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from labcare.billing.models import BillableItem, PaymentMethod
from labcare.core.errors import (
    ConflictError,
    NetworkError,
    TerminalStateError,
    ValidationError,
)
from labcare.encounter.session import EncounterSession
from labcare.encounter.state import EncounterKind, EncounterPhase


class TestOpen:
    @pytest.mark.asyncio
    async def test_creates_encounter_and_holds_token(self, machine, session):
        encounter = await machine.open(session)

        assert encounter.phase == EncounterPhase.REGISTERING_GENERAL_DATA
        assert session.encounter_id == encounter.id
        assert encounter.branch_id == "1"

    @pytest.mark.asyncio
    async def test_reopening_does_not_create_a_duplicate(self, machine, repository, session):
        first = await machine.open(session)
        second = await machine.open(session)

        assert first.id == second.id
        assert len(repository._records) == 1

    @pytest.mark.asyncio
    async def test_resume_after_failed_create_is_safe(self, machine, repository, session):
        """A token survives a failure later in the workflow."""
        encounter = await machine.open(session)
        resumed = EncounterSession(encounter_id=encounter.id)

        again = await machine.open(resumed)

        assert again.id == encounter.id
        assert len(repository._records) == 1

    @pytest.mark.asyncio
    async def test_resuming_terminal_encounter_clears_token(self, machine, session):
        encounter = await machine.open(session)
        await machine.cancel(session, "patient left")
        stale = EncounterSession(encounter_id=encounter.id)

        with pytest.raises(TerminalStateError):
            await machine.open(stale)

        assert stale.encounter_id is None

    @pytest.mark.asyncio
    async def test_appointment_seed(self, machine, session):
        encounter = await machine.open(
            session, EncounterKind.APPOINTMENT, {"patient_ref": "p-1", "urgent": True}
        )

        assert encounter.patient_ref == "p-1"
        assert encounter.urgent is True
        assert session.from_appointment is True


class TestDeskPath:
    @pytest.mark.asyncio
    async def test_general_data_requires_all_refs(self, machine, session, repository):
        await machine.open(session)
        repository.commit_phase = AsyncMock()

        with pytest.raises(ValidationError, match="coverage"):
            await machine.assign_general_data(session, "p", "d", None)

        repository.commit_phase.assert_not_called()

    @pytest.mark.asyncio
    async def test_full_desk_path(self, machine, session, drive):
        encounter = await drive(session, EncounterPhase.AWAITING_CONFIRMATION)
        assert encounter.phase == EncounterPhase.AWAITING_CONFIRMATION

        finished = await machine.confirm(session)

        assert finished.phase == EncounterPhase.FINISHED
        assert session.encounter_id is None

    @pytest.mark.asyncio
    async def test_confirm_hands_off_to_extraction_queue(self, machine, session, drive, repository):
        encounter = await drive(session, EncounterPhase.AWAITING_CONFIRMATION)

        queued = await machine.confirm(session, requires_extraction=True)

        assert queued.phase == EncounterPhase.AWAITING_EXTRACTION
        assert session.encounter_id is None
        waiting = await repository.list_in_phase(EncounterPhase.AWAITING_EXTRACTION)
        assert [e.id for e in waiting] == [encounter.id]

    @pytest.mark.asyncio
    async def test_commit_analyses_requires_an_item(self, machine, session, drive):
        await drive(session, EncounterPhase.REGISTERING_ANALYSES)

        with pytest.raises(ValidationError):
            await machine.commit_analyses(session, [])

    @pytest.mark.asyncio
    async def test_commit_analyses_collapses_duplicates(self, machine, session, drive, sample_items):
        await drive(session, EncounterPhase.REGISTERING_ANALYSES)

        encounter = await machine.commit_analyses(session, sample_items + sample_items[:1])

        assert [a.analysis_id for a in encounter.analyses] == ["GLU", "LIP"]

    @pytest.mark.asyncio
    async def test_commit_payment_requires_reconciled_worksheet(self, machine, session, drive, repository):
        await drive(session, EncounterPhase.ON_COLLECTION_PROCESS)
        worksheet = machine.worksheet(session)
        worksheet.choose_iva("21")
        worksheet.add_payment(PaymentMethod.CASH, Decimal("1000"))
        repository.commit_phase = AsyncMock()

        with pytest.raises(ValidationError, match="remaining"):
            await machine.commit_payment(session, worksheet, "pay-1")

        repository.commit_phase.assert_not_called()
        assert session.encounter.phase == EncounterPhase.ON_COLLECTION_PROCESS

    @pytest.mark.asyncio
    async def test_settle_payment_submits_and_commits(self, machine, session, drive, gateway):
        await drive(session, EncounterPhase.ON_COLLECTION_PROCESS)
        worksheet = machine.worksheet(session)
        worksheet.choose_iva("0")
        worksheet.add_payment(PaymentMethod.TRANSFER, Decimal("1500"))

        settlement = await machine.settle_payment(session, worksheet)

        assert settlement.encounter.phase == EncounterPhase.ON_BILLING_PROCESS
        assert settlement.encounter.payment_ref == settlement.payment_ref.payment_id
        assert settlement.receipt.receipt_number.startswith("R-")
        assert len(gateway.submissions) == 1
        assert gateway.submissions[0].collections[0].account_id == 1

    @pytest.mark.asyncio
    async def test_gateway_failure_forces_resync(self, machine, session, drive, gateway):
        await drive(session, EncounterPhase.ON_COLLECTION_PROCESS)
        worksheet = machine.worksheet(session)
        worksheet.choose_iva("0")
        worksheet.add_payment(PaymentMethod.CASH, Decimal("1500"))
        gateway.submit_payment = AsyncMock(side_effect=NetworkError("timeout"))

        with pytest.raises(NetworkError):
            await machine.settle_payment(session, worksheet)

        assert session.needs_resync is True

    @pytest.mark.asyncio
    async def test_settle_retry_after_failed_commit_does_not_charge_twice(
        self, machine, session, drive, gateway, repository
    ):
        await drive(session, EncounterPhase.ON_COLLECTION_PROCESS)
        worksheet = machine.worksheet(session)
        worksheet.choose_iva("0")
        worksheet.add_payment(PaymentMethod.CASH, Decimal("1500"))
        real_commit = repository.commit_phase
        repository.commit_phase = AsyncMock(side_effect=NetworkError("connection reset"))

        with pytest.raises(NetworkError):
            await machine.settle_payment(session, worksheet)

        first = session.pending_payment
        assert first is not None
        repository.commit_phase = real_commit
        synced = await machine.resync(session)
        assert synced.phase == EncounterPhase.ON_COLLECTION_PROCESS

        settlement = await machine.settle_payment(session, worksheet)

        assert len(gateway.submissions) == 1
        assert len(gateway.completed) == 1
        assert settlement.payment_ref.payment_id == first.payment_id
        assert settlement.encounter.payment_ref == first.payment_id
        assert settlement.encounter.phase == EncounterPhase.ON_BILLING_PROCESS
        assert session.pending_payment is None
        assert session.pending_receipt is None

    @pytest.mark.asyncio
    async def test_settle_retry_after_failed_completion_completes_once(
        self, machine, session, drive, gateway
    ):
        await drive(session, EncounterPhase.ON_COLLECTION_PROCESS)
        worksheet = machine.worksheet(session)
        worksheet.choose_iva("0")
        worksheet.add_payment(PaymentMethod.QR, Decimal("1500"))
        real_complete = gateway.complete_collection
        gateway.complete_collection = AsyncMock(side_effect=NetworkError("timed out"))

        with pytest.raises(NetworkError):
            await machine.settle_payment(session, worksheet)

        gateway.complete_collection = real_complete
        await machine.resync(session)
        settlement = await machine.settle_payment(session, worksheet)

        assert len(gateway.submissions) == 1
        assert list(gateway.completed) == [settlement.payment_ref.payment_id]

    @pytest.mark.asyncio
    async def test_reverse_forgets_pending_payment(self, machine, session, drive, repository):
        await drive(session, EncounterPhase.ON_COLLECTION_PROCESS)
        worksheet = machine.worksheet(session)
        worksheet.choose_iva("0")
        worksheet.add_payment(PaymentMethod.CASH, Decimal("1500"))
        real_commit = repository.commit_phase
        repository.commit_phase = AsyncMock(side_effect=NetworkError("connection reset"))
        with pytest.raises(NetworkError):
            await machine.settle_payment(session, worksheet)
        repository.commit_phase = real_commit
        await machine.resync(session)

        await machine.reverse(session)

        assert session.pending_payment is None
        assert session.pending_receipt is None

    @pytest.mark.asyncio
    async def test_settle_holds_guard_through_commit(self, machine, session, drive, repository):
        await drive(session, EncounterPhase.ON_COLLECTION_PROCESS)
        worksheet = machine.worksheet(session)
        worksheet.choose_iva("0")
        worksheet.add_payment(PaymentMethod.CASH, Decimal("1500"))
        real_commit = repository.commit_phase
        held = []

        async def observing_commit(encounter_id, *args, **kwargs):
            held.append(machine.guard.in_flight(encounter_id))
            return await real_commit(encounter_id, *args, **kwargs)

        repository.commit_phase = observing_commit

        await machine.settle_payment(session, worksheet)

        assert held == [True]

    @pytest.mark.asyncio
    async def test_end_billing_requires_billing_reference(self, machine, session, drive):
        await drive(session, EncounterPhase.ON_BILLING_PROCESS)

        with pytest.raises(ValidationError, match="billing reference"):
            await machine.end_billing_phase(session)

    @pytest.mark.asyncio
    async def test_end_billing_is_a_no_op_when_already_done(self, machine, session, drive, repository):
        await drive(session, EncounterPhase.AWAITING_CONFIRMATION)
        repository.commit_phase = AsyncMock()

        encounter = await machine.end_billing_phase(session)

        assert encounter.phase == EncounterPhase.AWAITING_CONFIRMATION
        repository.commit_phase.assert_not_called()

    @pytest.mark.asyncio
    async def test_operation_in_wrong_phase(self, machine, session, drive, sample_items):
        await drive(session, EncounterPhase.REGISTERING_GENERAL_DATA)

        with pytest.raises(ValidationError, match="REGISTERING_ANALYSES"):
            await machine.commit_analyses(session, sample_items)


class TestCancel:
    @pytest.mark.asyncio
    async def test_requires_reason(self, machine, session):
        await machine.open(session)

        with pytest.raises(ValidationError):
            await machine.cancel(session, "   ")

    @pytest.mark.asyncio
    async def test_cancel_is_terminal(self, machine, session, drive, repository):
        encounter = await drive(session, EncounterPhase.ON_COLLECTION_PROCESS)

        canceled = await machine.cancel(session, "duplicate visit")

        assert canceled.phase == EncounterPhase.CANCELED
        assert canceled.cancellation_reason == "duplicate visit"
        assert session.encounter_id is None
        with pytest.raises(TerminalStateError):
            await repository.commit_phase(encounter.id, EncounterPhase.ON_BILLING_PROCESS, {})

    @pytest.mark.asyncio
    async def test_terminal_session_refuses_mutation(self, machine, session):
        await machine.open(session)
        session.encounter = session.encounter.model_copy(update={"phase": EncounterPhase.FAILED})

        with pytest.raises(TerminalStateError):
            await machine.assign_general_data(session, "p", "d", "c")


class TestReverse:
    @pytest.mark.asyncio
    async def test_reverse_from_collection_empties_analyses(self, machine, session, drive):
        await drive(session, EncounterPhase.ON_COLLECTION_PROCESS)

        encounter = await machine.reverse(session)

        assert encounter.phase == EncounterPhase.REGISTERING_ANALYSES
        assert encounter.analyses == []
        assert encounter.billable_items == []

    @pytest.mark.asyncio
    async def test_reentry_after_reverse_has_no_duplicates(self, machine, session, drive, repository):
        await drive(session, EncounterPhase.ON_COLLECTION_PROCESS)
        await machine.reverse(session)

        encounter = await machine.commit_analyses(
            session,
            [BillableItem(id="item-urea", analysis_id="URE", total_amount=Decimal("300"))],
        )

        assert [a.analysis_id for a in encounter.analyses] == ["URE"]
        assert sum(i.patient_amount for i in encounter.billable_items) == Decimal("300")
        raw = await repository.get_encounter(encounter.id)
        assert len(raw.analyses) == 3

    @pytest.mark.asyncio
    async def test_purged_view_survives_resync(self, machine, session, drive):
        await drive(session, EncounterPhase.ON_COLLECTION_PROCESS)
        await machine.reverse(session)

        encounter = await machine.resync(session)

        assert encounter.analyses == []

    @pytest.mark.asyncio
    async def test_reverse_from_billing_clears_payment(self, machine, session, drive):
        await drive(session, EncounterPhase.ON_BILLING_PROCESS)
        machine.record_billing_reference(session, "INV-1")

        encounter = await machine.reverse(session)

        assert encounter.phase == EncounterPhase.ON_COLLECTION_PROCESS
        assert encounter.payment_entries == []
        assert encounter.payment_ref is None
        assert session.billing_ref is None
        assert machine.worksheet(session).payments == []

    @pytest.mark.asyncio
    async def test_cannot_reverse_from_first_phase(self, machine, session):
        await machine.open(session)

        with pytest.raises(ValidationError):
            await machine.reverse(session)


class TestNavigation:
    @pytest.mark.asyncio
    async def test_resume_uses_present_data(self, machine, session, drive):
        await drive(session, EncounterPhase.ON_COLLECTION_PROCESS)

        assert machine.resume_navigation(session, EncounterPhase.REGISTERING_GENERAL_DATA) == (
            EncounterPhase.REGISTERING_GENERAL_DATA
        )
        assert machine.resume_navigation(session, EncounterPhase.ON_COLLECTION_PROCESS) == (
            EncounterPhase.ON_COLLECTION_PROCESS
        )
        with pytest.raises(ValidationError):
            machine.resume_navigation(session, EncounterPhase.ON_BILLING_PROCESS)

    @pytest.mark.asyncio
    async def test_stale_cached_phase_does_not_unlock_steps(self, machine, session, drive):
        await drive(session, EncounterPhase.REGISTERING_ANALYSES)
        session.encounter = session.encounter.model_copy(
            update={"phase": EncounterPhase.AWAITING_CONFIRMATION}
        )

        with pytest.raises(ValidationError):
            machine.resume_navigation(session, EncounterPhase.ON_COLLECTION_PROCESS)

    @pytest.mark.asyncio
    async def test_landing_phase_on_reload(self, machine, session, drive):
        encounter = await drive(session, EncounterPhase.ON_BILLING_PROCESS)
        reloaded = EncounterSession(encounter_id=encounter.id)

        await machine.open(reloaded)

        assert reloaded.view_phase == EncounterPhase.ON_BILLING_PROCESS

    @pytest.mark.asyncio
    async def test_abandon_clears_token(self, machine, session):
        await machine.open(session)

        machine.abandon(session)

        assert session.encounter_id is None
        assert session.encounter is None


class TestResync:
    @pytest.mark.asyncio
    async def test_conflict_blocks_until_resync(self, machine, session, drive, repository):
        encounter = await drive(session, EncounterPhase.REGISTERING_ANALYSES)
        other = EncounterSession(encounter_id=encounter.id)
        await machine.open(other)
        await machine.reverse(other)

        with pytest.raises(ConflictError):
            await machine.commit_analyses(session, [BillableItem(id="1", analysis_id="GLU")])
        assert session.needs_resync is True

        with pytest.raises(ConflictError, match="resync"):
            await machine.reverse(session)

        synced = await machine.resync(session)
        assert synced.phase == EncounterPhase.REGISTERING_GENERAL_DATA
        assert session.needs_resync is False

    @pytest.mark.asyncio
    async def test_network_failure_leaves_phase_unassumed(self, machine, session, repository):
        await machine.open(session)
        repository.commit_phase = AsyncMock(side_effect=NetworkError("timed out"))

        with pytest.raises(NetworkError):
            await machine.assign_general_data(session, "p", "d", "c")

        assert session.encounter.phase == EncounterPhase.REGISTERING_GENERAL_DATA
        assert session.needs_resync is True

    @pytest.mark.asyncio
    async def test_resync_after_applied_but_unacknowledged_commit(self, machine, session, repository):
        """The commit landed but the response was lost; resync finds the new phase."""
        await machine.open(session)
        real_commit = repository.commit_phase

        async def commit_then_drop(*args, **kwargs):
            await real_commit(*args, **kwargs)
            raise NetworkError("connection reset")

        repository.commit_phase = commit_then_drop

        with pytest.raises(NetworkError):
            await machine.assign_general_data(session, "p", "d", "c")

        encounter = await machine.resync(session)
        assert encounter.phase == EncounterPhase.REGISTERING_ANALYSES


class TestGuard:
    @pytest.mark.asyncio
    async def test_concurrent_transitions_on_one_encounter_are_serialized(self, machine, session, drive, repository):
        await drive(session, EncounterPhase.REGISTERING_GENERAL_DATA)
        real_commit = repository.commit_phase
        active = 0
        peak = 0

        async def slow_commit(*args, **kwargs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            try:
                return await real_commit(*args, **kwargs)
            finally:
                active -= 1

        repository.commit_phase = slow_commit

        results = await asyncio.gather(
            machine.assign_general_data(session, "p", "d", "c"),
            machine.assign_general_data(session, "p", "d", "c"),
            return_exceptions=True,
        )

        assert peak == 1
        assert sum(1 for r in results if isinstance(r, Exception)) == 1
        assert isinstance([r for r in results if isinstance(r, Exception)][0], ValidationError)
