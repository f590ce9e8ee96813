"""Observability logger for structured workflow telemetry."""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Optional

from labcare.observability.events import (
    AllocationEvent,
    EventType,
    ObservabilityEvent,
    PollEvent,
    TransitionEvent,
)

logger = logging.getLogger(__name__)


class ObservabilityLogger:
    """Central logger for encounter workflow events.

    Writes structured events to JSON Lines files for later analysis.
    """

    _instance: Optional["ObservabilityLogger"] = None

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        enabled: bool = True,
    ):
        """Initialize observability logger.

        Args:
            log_dir: Directory for log files (default: data/logs)
            enabled: Whether logging is enabled
        """
        self.enabled = enabled

        if log_dir is None:
            log_dir = Path("data/logs")
        self.log_dir = Path(log_dir)
        if self.enabled:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self._log_files: dict[str, Path] = {
            "transitions": self.log_dir / "transitions.jsonl",
            "allocations": self.log_dir / "allocations.jsonl",
            "polls": self.log_dir / "polls.jsonl",
        }

        # Event callbacks for real-time monitoring
        self._callbacks: list[Callable[[ObservabilityEvent], None]] = []

    @classmethod
    def get_instance(cls) -> "ObservabilityLogger":
        """Get or create singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def configure(cls, log_dir: Optional[Path] = None, enabled: bool = True) -> "ObservabilityLogger":
        """Replace the singleton, e.g. from application settings."""
        cls._instance = cls(log_dir=log_dir, enabled=enabled)
        return cls._instance

    def generate_request_id(self) -> str:
        """Generate a unique request ID."""
        return str(uuid.uuid4())[:8]

    def add_callback(self, callback: Callable[[ObservabilityEvent], None]) -> None:
        """Add callback for real-time event monitoring."""
        self._callbacks.append(callback)

    def _write_event(self, event: ObservabilityEvent, log_type: str) -> None:
        """Write event to appropriate log file."""
        if not self.enabled:
            return

        try:
            log_file = self._log_files.get(log_type)
            if log_file:
                with open(log_file, "a") as f:
                    f.write(event.model_dump_json() + "\n")

            for callback in self._callbacks:
                try:
                    callback(event)
                except Exception as e:
                    logger.warning(f"Observability callback failed: {e}")

        except OSError as e:
            logger.warning(f"Failed to write observability event: {e}")

    # Transition Logging

    @contextmanager
    def transition(
        self,
        operation: str,
        encounter_id: Optional[str] = None,
        from_phase: Optional[str] = None,
        to_phase: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        """Context manager for logging phase transitions.

        Usage:
            with obs.transition("commit_payment", encounter.id, from_phase, to_phase) as event:
                updated = await repository.commit_phase(...)
                event.resulting_phase = updated.phase.value
        """
        start_time = time.time()
        request_id = request_id or self.generate_request_id()

        event = TransitionEvent(
            event_type=EventType.TRANSITION_START,
            operation=operation,
            encounter_id=encounter_id,
            from_phase=from_phase,
            to_phase=to_phase,
            request_id=request_id,
        )

        try:
            yield event
            event.event_type = EventType.TRANSITION_SUCCESS

        except Exception as e:
            event.event_type = EventType.TRANSITION_ERROR
            event.error_type = type(e).__name__
            event.error_message = str(e)[:200]
            event.requires_resync = bool(getattr(e, "requires_resync", False))
            raise

        finally:
            event.duration_ms = (time.time() - start_time) * 1000
            self._write_event(event, "transitions")

    # Allocation Logging

    def log_allocation(
        self,
        event_type: EventType,
        encounter_id: str,
        resource_id: str,
        operator_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Log an extraction box grant, refusal or release."""
        event = AllocationEvent(
            event_type=event_type,
            encounter_id=encounter_id,
            resource_id=resource_id,
            operator_id=operator_id,
            reason=reason,
        )
        self._write_event(event, "allocations")

    # Poll Logging

    def log_poll(
        self,
        sequence: int,
        waiting_count: int,
        in_extraction_count: int,
        discarded: bool = False,
        duration_ms: Optional[float] = None,
    ) -> None:
        """Log a queue refresh."""
        event = PollEvent(
            event_type=EventType.QUEUE_POLL_DISCARDED if discarded else EventType.QUEUE_POLL,
            sequence=sequence,
            waiting_count=waiting_count,
            in_extraction_count=in_extraction_count,
            duration_ms=duration_ms,
        )
        self._write_event(event, "polls")

    # Utility methods

    def get_recent_events(
        self,
        log_type: str,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Read recent events from a log file."""
        log_file = self._log_files.get(log_type)
        if not log_file or not log_file.exists():
            return []

        events = []
        with open(log_file) as f:
            for line in f:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

        return events[-limit:]

    def get_stats(self, log_type: str) -> dict[str, Any]:
        """Get basic statistics for a log type."""
        events = self.get_recent_events(log_type, limit=1000)
        if not events:
            return {"total": 0}

        total = len(events)
        errors = sum(1 for e in events if "error" in e.get("event_type", ""))
        avg_duration = sum(e.get("duration_ms") or 0 for e in events) / total

        return {
            "total": total,
            "errors": errors,
            "error_rate": errors / total if total > 0 else 0,
            "avg_duration_ms": avg_duration,
        }


def get_observability_logger() -> ObservabilityLogger:
    """Get the global observability logger instance."""
    return ObservabilityLogger.get_instance()
