"""Encounter repository backed by the remote encounter REST API."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from labcare.core.http_client import RestClient
from labcare.core.repository import EncounterRepository
from labcare.encounter.state import Encounter, EncounterPhase

logger = logging.getLogger(__name__)


class HttpEncounterRepository(EncounterRepository):
    """Remote encounter store.

    Endpoints:
        POST /v1/encounters/{kind}            create (kind: new | prefilled)
        GET  /v1/encounters/{id}              fetch
        POST /v1/encounters/{id}/phase        commit {"phase", "payload"}
        POST /v1/encounters/{id}/return       reverse one phase
        POST /v1/encounters/{id}/cancel       cancel {"reason"}
        GET  /v1/encounters?phase=...         list by phase
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        api_key: str = "",
    ):
        headers = {"X-API-Key": api_key} if api_key else None
        self._rest = RestClient(
            base_url,
            timeout=timeout,
            max_retries=max_retries,
            backoff=backoff,
            transport=transport,
            headers=headers,
        )

    async def create_encounter(self, kind: str, seed: dict[str, Any]) -> Encounter:
        data = await self._rest.post(f"/v1/encounters/{kind}", json=seed)
        return Encounter.model_validate(data)

    async def get_encounter(self, encounter_id: str) -> Encounter:
        data = await self._rest.get(f"/v1/encounters/{encounter_id}")
        return Encounter.model_validate(data)

    async def commit_phase(
        self,
        encounter_id: str,
        phase: EncounterPhase,
        payload: dict[str, Any],
    ) -> Encounter:
        data = await self._rest.post(
            f"/v1/encounters/{encounter_id}/phase",
            json={"phase": phase.value, "payload": payload},
        )
        return Encounter.model_validate(data)

    async def reverse_phase(self, encounter_id: str) -> Encounter:
        data = await self._rest.post(f"/v1/encounters/{encounter_id}/return")
        return Encounter.model_validate(data)

    async def cancel_encounter(self, encounter_id: str, reason: str) -> Encounter:
        data = await self._rest.post(
            f"/v1/encounters/{encounter_id}/cancel", json={"reason": reason}
        )
        return Encounter.model_validate(data)

    async def list_in_phase(self, phase: EncounterPhase) -> list[Encounter]:
        data = await self._rest.get("/v1/encounters", params={"phase": phase.value})
        return [Encounter.model_validate(row) for row in data or []]

    async def close(self) -> None:
        await self._rest.close()
