"""Extraction box allocation and queue polling."""

from labcare.extraction.allocator import ResourceAllocator, ResourcePool, waiting_order
from labcare.extraction.models import QueueSnapshot, Resource, ResourceStatus
from labcare.extraction.poller import QueuePoller

__all__ = [
    "QueuePoller",
    "QueueSnapshot",
    "Resource",
    "ResourceAllocator",
    "ResourcePool",
    "ResourceStatus",
    "waiting_order",
]
