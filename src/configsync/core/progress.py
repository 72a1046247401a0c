#!/usr/bin/env python3
"""
Progress reporting for configsync.

Long operations report to a single append-only ProgressSink that is passed
down the call chain. Consumers either listen to every event or ask for
``summarize()``, which keeps the latest outcome per step.
"""

import time
from enum import Enum
from dataclasses import dataclass
from typing import Callable, List, Optional

from ..utils.logger import get_logger


class StepStatus(Enum):
    """Progress step status."""
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ProgressEvent:
    step: str
    status: StepStatus
    details: Optional[str] = None
    timestamp: float = 0.0

    def to_dict(self):
        return {
            'step': self.step,
            'status': self.status.value,
            'details': self.details,
            'timestamp': self.timestamp,
        }


Listener = Callable[[ProgressEvent, List[ProgressEvent]], None]


def summarize(events: List[ProgressEvent]) -> List[ProgressEvent]:
    """Latest event per step, in first-seen order.

    A step that is re-entered shows its newest status, so a finished step
    reported again as running is running until it finishes again.
    """
    grouped = {}
    for event in events:
        grouped[event.step] = event
    return list(grouped.values())


class ProgressSink:
    """Append-only event log with an optional listener."""

    def __init__(self, listener: Optional[Listener] = None):
        self.logger = get_logger(f"{__name__}.ProgressSink")
        self.listener = listener
        self.events: List[ProgressEvent] = []

    def report(self, step: str, status: StepStatus = StepStatus.RUNNING, details: Optional[str] = None):
        event = ProgressEvent(step=step, status=StepStatus(status), details=details, timestamp=time.time())
        self.events.append(event)
        self.logger.debug(f"[{event.status.value}] {step}{': ' + details if details else ''}")
        if self.listener is not None:
            self.listener(event, self.summarize())

    def success(self, step: str, details: Optional[str] = None):
        self.report(step, StepStatus.SUCCESS, details)

    def error(self, step: str, details: Optional[str] = None):
        self.report(step, StepStatus.ERROR, details)

    def warning(self, step: str, details: Optional[str] = None):
        self.report(step, StepStatus.WARNING, details)

    def last_error(self) -> Optional[ProgressEvent]:
        for event in reversed(self.events):
            if event.status == StepStatus.ERROR:
                return event
        return None

    def summarize(self) -> List[ProgressEvent]:
        return summarize(self.events)
