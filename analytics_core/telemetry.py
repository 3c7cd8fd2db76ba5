"""
Side-channel notifications emitted by the engine.

The engine receives a sink at construction instead of publishing on a global
emitter. ``LoggingEventSink`` is the default; ``RecordingEventSink`` keeps
notifications in memory for tests and diagnostics.
"""

import logging
import threading
from typing import Any, Protocol

FUNNEL_COMPUTED = "funnel.computed"
COHORT_COMPUTED = "cohort.computed"
ANALYSIS_FALLBACK = "analysis.fallback"
ANALYSIS_FAILED = "analysis.failed"


class AnalyticsEventSink(Protocol):
    def emit(self, name: str, payload: dict[str, Any]) -> None: ...


class LoggingEventSink:
    """Writes every notification to the analytics logger"""

    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger(__name__)

    def emit(self, name: str, payload: dict[str, Any]) -> None:
        level = logging.WARNING if name in (ANALYSIS_FALLBACK, ANALYSIS_FAILED) else logging.DEBUG
        self.logger.log(level, f"{name}: {payload}")


class RecordingEventSink:
    """Keeps notifications in memory"""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, name: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.events.append((name, dict(payload)))

    def names(self) -> list[str]:
        with self._lock:
            return [name for name, _ in self.events]

    def count(self, name: str) -> int:
        return self.names().count(name)
