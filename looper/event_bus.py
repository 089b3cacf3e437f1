import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class LooperEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    source: str
    unit: str | None = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """A lightweight, synchronous event bus for decoupling Looper observability."""

    def __init__(self):
        self._subscribers: List[Callable[[LooperEvent], None]] = []

    def subscribe(self, callback: Callable[[LooperEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(
        self,
        event_type: str,
        source: str,
        payload: Dict[str, Any] | None = None,
        unit: str | None = None,
    ) -> LooperEvent:
        """Construct and broadcast a LooperEvent to all subscribers."""
        event = LooperEvent(
            event_type=event_type,
            source=source,
            unit=unit,
            payload=payload or {},
        )

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                # a broken subscriber must not take a worker down with it
                logger.warning(f"[EVENTS] Subscriber failed on {event_type}: {e}")
        return event
