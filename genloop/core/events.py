"""
Structured pipeline events.

Components report what they do through a single sink instead of appending
strings to shared state. Every event is also forwarded to the standard
logging hierarchy so a CLI or service only has to configure logging.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class EventLevel(Enum):
    """Severity of a pipeline event, mapped onto logging levels."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR


@dataclass(frozen=True)
class PipelineEvent:
    """Typed log record consumable by any UI."""
    timestamp: datetime
    level: EventLevel
    component: str
    message: str
    fields: Dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[PipelineEvent], None]


class CollectingSink:
    """Sink that keeps every event in memory, in arrival order."""

    def __init__(self) -> None:
        self.events: List[PipelineEvent] = []

    def __call__(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def for_component(self, component: str) -> List[PipelineEvent]:
        return [e for e in self.events if e.component == component]

    def messages(self) -> List[str]:
        return [e.message for e in self.events]


def emit(
    sink: Optional[EventSink],
    level: EventLevel,
    component: str,
    message: str,
    **fields: Any
) -> PipelineEvent:
    """Build an event, forward it to logging and hand it to ``sink``.

    Args:
        sink: Event consumer, or None to only log
        level: Event severity
        component: Emitting component name (also the logger name suffix)
        message: Human readable message
        **fields: Structured context (attempt index, wait duration, ...)

    Returns:
        The emitted event
    """
    event = PipelineEvent(
        timestamp=datetime.now(),
        level=level,
        component=component,
        message=message,
        fields=dict(fields),
    )
    logger = logging.getLogger(f"genloop.{component}")
    if fields:
        logger.log(level.value, "%s %s", message, fields)
    else:
        logger.log(level.value, "%s", message)
    if sink is not None:
        sink(event)
    return event


class CancellationToken:
    """Cooperative cancellation flag checked between units of work."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
