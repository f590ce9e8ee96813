"""Extraction box allocation.

Boxes are selected locally without a network call. Every commit re-reads the
repository's in-extraction list and recomputes busy state from it; a box found
busy refuses the commit with ConflictError and nothing is substituted.
"""

from __future__ import annotations

import logging
from typing import Optional

from labcare.core.errors import ConflictError, ValidationError
from labcare.core.repository import EncounterRepository
from labcare.encounter.state import Encounter, EncounterPhase
from labcare.extraction.models import Resource, ResourceStatus
from labcare.observability import EventType, get_observability_logger

logger = logging.getLogger(__name__)


def waiting_order(encounter: Encounter) -> tuple:
    """Sort key: urgent first, then earliest admission."""
    return (not encounter.urgent, encounter.created_at, encounter.id)


class ResourcePool:
    """The fixed set of extraction boxes at one site."""

    def __init__(self, resources: list[Resource]):
        self._resources: dict[str, Resource] = {r.id: r for r in resources}

    @classmethod
    def from_count(cls, count: int) -> "ResourcePool":
        return cls(
            [Resource(id=str(i), display_name=f"Box {i}") for i in range(1, count + 1)]
        )

    def __len__(self) -> int:
        return len(self._resources)

    @property
    def resources(self) -> list[Resource]:
        return list(self._resources.values())

    def get(self, resource_id: str) -> Resource:
        resource = self._resources.get(str(resource_id))
        if resource is None:
            raise ValidationError(f"Unknown extraction box: {resource_id}")
        return resource

    def assign_operator(self, resource_id: str, operator_id: Optional[str]) -> Resource:
        """Put an extractor in charge of a box, or clear it with None."""
        resource = self.get(resource_id)
        resource.assigned_operator_id = operator_id or None
        logger.info("Box %s operator set to %s", resource.id, resource.assigned_operator_id)
        return resource


class ResourceAllocator:
    """Binds boxes to encounters, revalidating against the repository."""

    def __init__(self, repository: EncounterRepository, pool: ResourcePool):
        self.repository = repository
        self.pool = pool

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def select(self, resource_id: str) -> Resource:
        """Tentative, local selection. Busy state is checked at commit."""
        return self.pool.get(resource_id)

    async def in_extraction(self) -> list[Encounter]:
        return await self.repository.list_in_phase(EncounterPhase.IN_EXTRACTION)

    async def waiting_list(self) -> list[Encounter]:
        waiting = await self.repository.list_in_phase(EncounterPhase.AWAITING_EXTRACTION)
        return sorted(waiting, key=waiting_order)

    def statuses_from(self, in_extraction: list[Encounter]) -> list[ResourceStatus]:
        """Derive each box's busy state from an in-extraction list."""
        holders = {
            e.assigned_resource_id: e.id
            for e in in_extraction
            if e.assigned_resource_id is not None
        }
        return [
            ResourceStatus(
                resource=resource.model_copy(),
                busy=resource.id in holders,
                encounter_id=holders.get(resource.id),
            )
            for resource in self.pool.resources
        ]

    async def statuses(self) -> list[ResourceStatus]:
        return self.statuses_from(await self.in_extraction())

    async def _holder_of(self, resource_id: str) -> Optional[Encounter]:
        for encounter in await self.in_extraction():
            if encounter.assigned_resource_id == resource_id:
                return encounter
        return None

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    async def start_extraction(self, encounter: Encounter, resource_id: str) -> Encounter:
        """Bind a waiting encounter to a box and move it to IN_EXTRACTION.

        Raises:
            ValidationError: The box has no assigned extractor.
            ConflictError: The box is busy according to a fresh read.
        """
        obs = get_observability_logger()
        resource = self.pool.get(resource_id)
        if not resource.assigned_operator_id:
            raise ValidationError(
                f"{resource.display_name} has no assigned extractor",
                encounter_id=encounter.id,
            )

        holder = await self._holder_of(resource.id)
        if holder is not None and holder.id != encounter.id:
            obs.log_allocation(
                EventType.ALLOCATION_REFUSED,
                encounter_id=encounter.id,
                resource_id=resource.id,
                reason=f"busy with {holder.id}",
            )
            raise ConflictError(
                f"{resource.display_name} is busy; select another box",
                encounter_id=encounter.id,
            )

        updated = await self.repository.commit_phase(
            encounter.id,
            EncounterPhase.IN_EXTRACTION,
            {
                "expected_phase": EncounterPhase.AWAITING_EXTRACTION.value,
                "assigned_resource_id": resource.id,
                "operator_id": resource.assigned_operator_id,
            },
        )
        obs.log_allocation(
            EventType.ALLOCATION_GRANTED,
            encounter_id=encounter.id,
            resource_id=resource.id,
            operator_id=resource.assigned_operator_id,
        )
        logger.info("Encounter %s started extraction in %s", encounter.id, resource.display_name)
        return updated

    async def end_extraction(
        self,
        encounter: Encounter,
        resource_id: str,
        observations: Optional[str] = None,
    ) -> Encounter:
        """Finish the extraction running in a box.

        Raises:
            ValidationError: The box's extractor is not the one who started it.
            ConflictError: The encounter no longer holds the box.
        """
        resource = self.pool.get(resource_id)
        holder = await self._holder_of(resource.id)
        if holder is None or holder.id != encounter.id:
            raise ConflictError(
                f"Encounter {encounter.id} is not in extraction in {resource.display_name}",
                encounter_id=encounter.id,
            )
        if not resource.assigned_operator_id or resource.assigned_operator_id != holder.operator_id:
            raise ValidationError(
                "Only the extractor who started this extraction can end it",
                encounter_id=encounter.id,
            )

        payload = {"expected_phase": EncounterPhase.IN_EXTRACTION.value}
        if observations:
            payload["observations"] = observations
        updated = await self.repository.commit_phase(
            encounter.id, EncounterPhase.FINISHED, payload
        )
        get_observability_logger().log_allocation(
            EventType.ALLOCATION_RELEASED,
            encounter_id=encounter.id,
            resource_id=resource.id,
            operator_id=holder.operator_id,
            reason="finished",
        )
        return updated

    async def release(self, encounter: Encounter) -> Encounter:
        """Return an in-extraction encounter to the waiting queue."""
        if encounter.phase != EncounterPhase.IN_EXTRACTION:
            raise ValidationError(
                f"Encounter {encounter.id} is not in extraction",
                encounter_id=encounter.id,
            )
        updated = await self.repository.commit_phase(
            encounter.id,
            EncounterPhase.AWAITING_EXTRACTION,
            {"expected_phase": EncounterPhase.IN_EXTRACTION.value},
        )
        get_observability_logger().log_allocation(
            EventType.ALLOCATION_RELEASED,
            encounter_id=encounter.id,
            resource_id=encounter.assigned_resource_id or "",
            operator_id=encounter.operator_id,
            reason="returned to queue",
        )
        logger.info("Encounter %s returned to the extraction queue", encounter.id)
        return updated
