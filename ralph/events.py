import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class LoopEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    source: str
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus that keeps console output out of the loop."""

    def __init__(self):
        self._subscribers: List[Callable[[LoopEvent], None]] = []

    def subscribe(self, callback: Callable[[LoopEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(self, event_type: str, source: str, payload: Dict[str, Any]) -> None:
        """Construct and broadcast a LoopEvent to all subscribers."""
        event = LoopEvent(
            event_type=event_type,
            source=source,
            payload=payload
        )

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception:
                # A broken renderer must not stop the loop
                logger.exception(f"[EVENTS] Subscriber failed on {event_type}")
