"""Extraction API: box assignment and the waiting queue."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from labcare.encounter.state import Encounter
from labcare.extraction.models import QueueSnapshot, Resource, ResourceStatus

router = APIRouter(prefix="/extraction")
logger = logging.getLogger(__name__)


class OperatorRequest(BaseModel):
    operator_id: Optional[str] = None


class StartRequest(BaseModel):
    resource_id: str


class EndRequest(BaseModel):
    resource_id: str
    observations: Optional[str] = None


@router.get("/queue", response_model=QueueSnapshot)
async def get_queue(request: Request):
    """Refresh and return the waiting and in-extraction lists."""
    poller = request.app.state.poller
    snapshot = await poller.poll_once()
    return snapshot or poller.latest


@router.get("/boxes", response_model=list[ResourceStatus])
async def list_boxes(request: Request):
    return await request.app.state.allocator.statuses()


@router.put("/boxes/{resource_id}/operator", response_model=Resource)
async def assign_operator(resource_id: str, req: OperatorRequest, request: Request):
    return request.app.state.allocator.pool.assign_operator(resource_id, req.operator_id)


@router.post("/{encounter_id}/start", response_model=Encounter)
async def start_extraction(encounter_id: str, req: StartRequest, request: Request):
    return await request.app.state.machine.start_extraction(encounter_id, req.resource_id)


@router.post("/{encounter_id}/end", response_model=Encounter)
async def end_extraction(encounter_id: str, req: EndRequest, request: Request):
    return await request.app.state.machine.end_extraction(
        encounter_id, req.resource_id, req.observations
    )


@router.post("/{encounter_id}/return", response_model=Encounter)
async def return_to_queue(encounter_id: str, request: Request):
    return await request.app.state.machine.return_to_queue(encounter_id)
