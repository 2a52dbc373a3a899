"""cyber_governor.telemetry

Structured event emission for the governor.

The engine emits named events with flat fields; a sink decides where they go.
Events carry tool names, counts and reason codes, never raw tool input.

Usage:
    from cyber_governor.telemetry import LoggingTelemetry, Telemetry

    telemetry = Telemetry(sink=LoggingTelemetry())
    governor = Governor(config=cfg, telemetry=telemetry)
"""

from __future__ import annotations

import json
import logging
import time as _time
from typing import Any, Dict, List, Optional


class TelemetrySink:
    """Receives one event dict per emission."""

    def emit(self, event: Dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingTelemetry(TelemetrySink):
    """Writes each event as one JSON log line."""

    def __init__(self, logger: Optional[logging.Logger] = None, level: int = logging.DEBUG):
        self.logger = logger or logging.getLogger("cyber_governor.telemetry")
        self.level = level

    def emit(self, event: Dict[str, Any]) -> None:
        if self.logger.isEnabledFor(self.level):
            self.logger.log(self.level, json.dumps(event, sort_keys=True, default=str))


class InMemoryTelemetry(TelemetrySink):
    """Collects events in a list. Intended for tests."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def emit(self, event: Dict[str, Any]) -> None:
        self.events.append(event)

    def find(self, name: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e.get("event") == name]


class Telemetry:
    """Front end used by the engine: ``emit(name, **fields)``.

    Sink failures are logged and dropped so that telemetry can never change a
    decision.
    """

    def __init__(self, sink: Optional[TelemetrySink] = None):
        self.sink = sink or LoggingTelemetry()

    def emit(self, event: str, **fields: Any) -> None:
        payload = {"event": event, "ts_ms": int(_time.time() * 1000)}
        payload.update(fields)
        try:
            self.sink.emit(payload)
        except Exception:
            logging.getLogger("cyber_governor.telemetry").exception(
                "Telemetry sink failed for event %s", event
            )
