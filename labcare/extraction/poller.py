"""Periodic refresh of the extraction queue.

Ticks fire on a fixed timer whether or not the previous refresh finished.
Each refresh carries a sequence number taken when it was issued, and a
result older than the last applied one is dropped.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Callable, Optional

from labcare.core.errors import WorkflowError
from labcare.extraction.allocator import ResourceAllocator
from labcare.extraction.models import QueueSnapshot
from labcare.observability import get_observability_logger

logger = logging.getLogger(__name__)


class QueuePoller:
    """Keeps the latest waiting/in-extraction snapshot for a site."""

    def __init__(
        self,
        allocator: ResourceAllocator,
        interval: float = 30.0,
        on_update: Optional[Callable[[QueueSnapshot], None]] = None,
    ):
        self.allocator = allocator
        self.interval = interval
        self.on_update = on_update
        self.latest: Optional[QueueSnapshot] = None
        self._sequence = itertools.count(1)
        self._applied = 0
        self._runner: Optional[asyncio.Task] = None
        self._ticks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def next_sequence(self) -> int:
        return next(self._sequence)

    def apply(self, snapshot: QueueSnapshot) -> bool:
        """Apply a refresh result unless a newer one is already applied."""
        if snapshot.sequence <= self._applied:
            logger.debug(
                "Dropping queue snapshot %d (already at %d)", snapshot.sequence, self._applied
            )
            get_observability_logger().log_poll(
                sequence=snapshot.sequence,
                waiting_count=len(snapshot.waiting),
                in_extraction_count=len(snapshot.in_extraction),
                discarded=True,
            )
            return False

        self._applied = snapshot.sequence
        self.latest = snapshot
        if self.on_update is not None:
            self.on_update(snapshot)
        return True

    async def poll_once(self) -> Optional[QueueSnapshot]:
        """Fetch both lists and apply them. Returns the snapshot if applied."""
        sequence = self.next_sequence()
        start_time = time.time()
        waiting, in_extraction = await asyncio.gather(
            self.allocator.waiting_list(),
            self.allocator.in_extraction(),
        )
        snapshot = QueueSnapshot(
            sequence=sequence,
            waiting=waiting,
            in_extraction=in_extraction,
            boxes=self.allocator.statuses_from(in_extraction),
        )
        if not self.apply(snapshot):
            return None

        get_observability_logger().log_poll(
            sequence=sequence,
            waiting_count=len(waiting),
            in_extraction_count=len(in_extraction),
            duration_ms=(time.time() - start_time) * 1000,
        )
        return snapshot

    async def _tick(self) -> None:
        try:
            await self.poll_once()
        except WorkflowError as e:
            logger.warning(f"Queue refresh failed: {e}")
        except Exception:
            logger.exception("Queue refresh failed unexpectedly")

    async def run(self) -> None:
        """Issue a refresh every ``interval`` seconds until stopped."""
        logger.info("Queue polling every %.1fs", self.interval)
        while True:
            task = asyncio.create_task(self._tick())
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if not self.running:
            self._runner = asyncio.create_task(self.run())

    async def stop(self) -> None:
        tasks = list(self._ticks)
        if self._runner is not None:
            tasks.append(self._runner)
            self._runner = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
