"""Observability module for encounter workflow telemetry."""

from labcare.observability.events import (
    AllocationEvent,
    EventType,
    ObservabilityEvent,
    PollEvent,
    TransitionEvent,
)
from labcare.observability.logger import ObservabilityLogger, get_observability_logger

__all__ = [
    "AllocationEvent",
    "EventType",
    "ObservabilityEvent",
    "ObservabilityLogger",
    "PollEvent",
    "TransitionEvent",
    "get_observability_logger",
]
