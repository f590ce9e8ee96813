"""Encounter repository interface and the in-memory reference store."""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Optional

from labcare.core.errors import ConflictError, EncounterNotFoundError, TerminalStateError
from labcare.encounter.state import (
    Encounter,
    EncounterPhase,
    phase_rank,
    previous_desk_phase,
)

logger = logging.getLogger(__name__)

# Fields a phase commit appends to instead of replacing.
APPEND_ONLY_FIELDS = ("analyses", "billable_items")


class EncounterRepository(ABC):
    """Authoritative store for encounters and their phase transitions."""

    @abstractmethod
    async def create_encounter(self, kind: str, seed: dict[str, Any]) -> Encounter:
        """Create an encounter in the initial phase."""
        pass

    @abstractmethod
    async def get_encounter(self, encounter_id: str) -> Encounter:
        """Fetch the current snapshot.

        Raises:
            EncounterNotFoundError: No encounter with this id.
        """
        pass

    @abstractmethod
    async def commit_phase(
        self,
        encounter_id: str,
        phase: EncounterPhase,
        payload: dict[str, Any],
    ) -> Encounter:
        """Durably move the encounter to ``phase`` with the phase's data.

        ``payload["expected_phase"]``, when present, is the phase the caller
        believes the encounter is in.

        Raises:
            ConflictError: The stored phase differs from the expected one, or
                the requested extraction box is taken.
            TerminalStateError: The encounter is already terminal.
        """
        pass

    @abstractmethod
    async def reverse_phase(self, encounter_id: str) -> Encounter:
        """Move one phase back on the desk path."""
        pass

    @abstractmethod
    async def cancel_encounter(self, encounter_id: str, reason: str) -> Encounter:
        pass

    @abstractmethod
    async def list_in_phase(self, phase: EncounterPhase) -> list[Encounter]:
        pass

    async def close(self) -> None:
        """Release any held connections."""
        pass


class InMemoryEncounterRepository(EncounterRepository):
    """Process-local repository reproducing the remote store's behavior.

    The analysis commit is append-only, like the remote one: re-submitting
    analyses after a reversal adds rows next to the old ones.
    """

    def __init__(self, branch_id: Optional[str] = None):
        self.branch_id = branch_id
        self._records: dict[str, Encounter] = {}
        self._numbers = itertools.count(1)
        self._lock = asyncio.Lock()

    def put(self, encounter: Encounter) -> Encounter:
        """Store a snapshot as-is. Used to seed queues."""
        self._records[encounter.id] = encounter.model_copy(deep=True)
        return encounter

    def _get(self, encounter_id: str) -> Encounter:
        record = self._records.get(encounter_id)
        if record is None:
            raise EncounterNotFoundError(
                f"Encounter {encounter_id} not found", encounter_id=encounter_id
            )
        return record

    def _check_mutable(self, record: Encounter) -> None:
        if record.is_terminal:
            raise TerminalStateError(
                f"Encounter {record.id} is {record.phase.value}", encounter_id=record.id
            )

    async def create_encounter(self, kind: str, seed: dict[str, Any]) -> Encounter:
        async with self._lock:
            encounter = Encounter.model_validate(
                {
                    **seed,
                    "id": uuid.uuid4().hex,
                    "phase": EncounterPhase.REGISTERING_GENERAL_DATA,
                    "encounter_number": f"{next(self._numbers):06d}",
                    "branch_id": seed.get("branch_id", self.branch_id),
                }
            )
            self._records[encounter.id] = encounter
            logger.info("Created %s encounter %s", kind, encounter.id)
            return encounter.model_copy(deep=True)

    async def get_encounter(self, encounter_id: str) -> Encounter:
        return self._get(encounter_id).model_copy(deep=True)

    async def commit_phase(
        self,
        encounter_id: str,
        phase: EncounterPhase,
        payload: dict[str, Any],
    ) -> Encounter:
        async with self._lock:
            record = self._get(encounter_id)
            self._check_mutable(record)

            data = dict(payload)
            expected = data.pop("expected_phase", None)
            if expected is not None and EncounterPhase(expected) != record.phase:
                raise ConflictError(
                    f"Encounter {encounter_id} is {record.phase.value}, expected {expected}",
                    encounter_id=encounter_id,
                )

            if phase == EncounterPhase.IN_EXTRACTION:
                resource_id = data.get("assigned_resource_id")
                for other in self._records.values():
                    if (
                        other.id != encounter_id
                        and other.phase == EncounterPhase.IN_EXTRACTION
                        and other.assigned_resource_id == resource_id
                    ):
                        raise ConflictError(
                            f"Box {resource_id} is busy with encounter {other.id}",
                            encounter_id=encounter_id,
                        )

            merged = record.model_dump()
            for key, value in data.items():
                if key in APPEND_ONLY_FIELDS:
                    merged[key] = merged[key] + list(value)
                elif key in Encounter.model_fields:
                    merged[key] = value

            if (
                phase == EncounterPhase.AWAITING_EXTRACTION
                and record.phase == EncounterPhase.IN_EXTRACTION
            ):
                merged["assigned_resource_id"] = None
                merged["operator_id"] = None

            merged["phase"] = phase
            if phase_rank(phase) > phase_rank(record.most_advanced_phase):
                merged["most_advanced_phase"] = phase

            updated = Encounter.model_validate(merged)
            self._records[encounter_id] = updated
            logger.debug("Encounter %s: %s -> %s", encounter_id, record.phase.value, phase.value)
            return updated.model_copy(deep=True)

    async def reverse_phase(self, encounter_id: str) -> Encounter:
        async with self._lock:
            record = self._get(encounter_id)
            self._check_mutable(record)
            target = previous_desk_phase(record.phase)
            if target is None:
                raise ConflictError(
                    f"Encounter {encounter_id} cannot go back from {record.phase.value}",
                    encounter_id=encounter_id,
                )

            update: dict[str, Any] = {"phase": target}
            if record.phase == EncounterPhase.ON_BILLING_PROCESS:
                update.update(
                    payment_entries=[],
                    payment_ref=None,
                    iva_percentage=None,
                    coinsurance=Decimal("0"),
                )
            updated = record.model_copy(update=update, deep=True)
            self._records[encounter_id] = updated
            return updated.model_copy(deep=True)

    async def cancel_encounter(self, encounter_id: str, reason: str) -> Encounter:
        async with self._lock:
            record = self._get(encounter_id)
            self._check_mutable(record)
            updated = record.model_copy(
                update={
                    "phase": EncounterPhase.CANCELED,
                    "cancellation_reason": reason,
                    "assigned_resource_id": None,
                },
                deep=True,
            )
            self._records[encounter_id] = updated
            logger.info("Canceled encounter %s: %s", encounter_id, reason)
            return updated.model_copy(deep=True)

    async def list_in_phase(self, phase: EncounterPhase) -> list[Encounter]:
        return [
            record.model_copy(deep=True)
            for record in self._records.values()
            if record.phase == phase
        ]
