"""Structured observability events for encounter workflow telemetry."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of observability events."""

    TRANSITION_START = "transition_start"
    TRANSITION_SUCCESS = "transition_success"
    TRANSITION_ERROR = "transition_error"
    ALLOCATION_GRANTED = "allocation_granted"
    ALLOCATION_REFUSED = "allocation_refused"
    ALLOCATION_RELEASED = "allocation_released"
    QUEUE_POLL = "queue_poll"
    QUEUE_POLL_DISCARDED = "queue_poll_discarded"


class ObservabilityEvent(BaseModel):
    """Base class for all observability events."""

    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: Optional[str] = None
    duration_ms: Optional[float] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TransitionEvent(ObservabilityEvent):
    """Event for an encounter phase transition attempt."""

    encounter_id: Optional[str] = None
    operation: str
    from_phase: Optional[str] = None
    to_phase: Optional[str] = None

    # Populated on success
    resulting_phase: Optional[str] = None

    # Error fields (populated on error)
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    requires_resync: bool = False


class AllocationEvent(ObservabilityEvent):
    """Event for an extraction box decision."""

    encounter_id: str
    resource_id: str
    operator_id: Optional[str] = None
    reason: Optional[str] = None


class PollEvent(ObservabilityEvent):
    """Event for a queue refresh."""

    event_type: EventType = EventType.QUEUE_POLL
    sequence: int
    waiting_count: int = 0
    in_extraction_count: int = 0
