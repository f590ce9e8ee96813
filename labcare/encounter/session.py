"""Desk session: the caller-held handle on the encounter being worked on."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from pydantic import BaseModel

from labcare.core.gateway import PaymentRef, Receipt
from labcare.encounter.state import Encounter, EncounterPhase


class EncounterSession(BaseModel):
    """Resumable workflow session.

    ``encounter_id`` is the creation token: while it is set, opening the
    session again re-fetches instead of creating a second encounter. It is
    cleared only on a terminal transition or an explicit abandon.

    ``encounter`` is the de-duplicated view of the last authoritative
    snapshot. The watermarks mark how many raw analysis and item rows were
    superseded by a reversal.

    ``pending_payment`` and ``pending_receipt`` hold a gateway payment that was
    accepted but not yet committed to the encounter, so a retry commits it
    instead of charging again.
    """

    encounter_id: Optional[str] = None
    encounter: Optional[Encounter] = None
    billing_ref: Optional[str] = None
    from_appointment: bool = False
    needs_resync: bool = False
    view_phase: Optional[EncounterPhase] = None
    analysis_watermark: int = 0
    items_watermark: int = 0
    pending_payment: Optional[PaymentRef] = None
    pending_receipt: Optional[Receipt] = None

    @property
    def is_open(self) -> bool:
        return self.encounter_id is not None

    @property
    def phase(self) -> Optional[EncounterPhase]:
        return self.encounter.phase if self.encounter else None

    def clear(self) -> None:
        """Drop the token and everything derived from it."""
        self.encounter_id = None
        self.encounter = None
        self.billing_ref = None
        self.from_appointment = False
        self.needs_resync = False
        self.view_phase = None
        self.analysis_watermark = 0
        self.items_watermark = 0
        self.forget_payment()

    def forget_payment(self) -> None:
        self.pending_payment = None
        self.pending_receipt = None


class TransitionGuard:
    """Serializes transitions on the same encounter id.

    Different encounters proceed independently.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, encounter_id: str) -> asyncio.Lock:
        lock = self._locks.get(encounter_id)
        if lock is None:
            lock = self._locks[encounter_id] = asyncio.Lock()
        return lock

    def in_flight(self, encounter_id: str) -> bool:
        lock = self._locks.get(encounter_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, encounter_id: str) -> AsyncIterator[None]:
        lock = self._lock_for(encounter_id)
        async with lock:
            yield
