"""Pydantic models for extraction boxes and queue snapshots."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from labcare.encounter.state import Encounter


class Resource(BaseModel):
    """A physical extraction box.

    Whether the box is busy is never stored here; see ResourceStatus.
    """

    id: str
    display_name: str
    assigned_operator_id: Optional[str] = None


class ResourceStatus(BaseModel):
    """A box together with its busy state derived from a fresh read."""

    resource: Resource
    busy: bool = False
    encounter_id: Optional[str] = None


class QueueSnapshot(BaseModel):
    """One refresh of the waiting and in-extraction lists."""

    sequence: int
    waiting: list[Encounter] = Field(default_factory=list)
    in_extraction: list[Encounter] = Field(default_factory=list)
    boxes: list[ResourceStatus] = Field(default_factory=list)
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
