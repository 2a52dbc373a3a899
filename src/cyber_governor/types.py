"""cyber_governor.types

Data model shared by the detectors, the controller and the hooks.

Wire forms (``to_dict``) use the key names of the hook protocol, so they can
be dropped straight into a hook response or a history file.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def tool_label(tool: Any) -> Any:
    """Hashable, JSON-safe form of a tool name.

    Strings and None pass through; anything else (lists, objects, numbers
    from a bad payload) becomes its canonical JSON text.
    """
    if tool is None or isinstance(tool, str):
        return tool
    return json.dumps(tool, sort_keys=True, default=str)


@dataclass
class ToolCall:
    """A single tool invocation as seen by the governor."""

    name: Any
    args: Any = field(default_factory=dict)


# ================================
# History
# ================================

@dataclass
class HistoryEntry:
    """One recorded call in a session history.

    ``input`` holds the summarised call arguments (see
    :func:`cyber_governor.history.summarize_input`), never the full payload.
    """

    tool: Any
    input: Any
    timestamp: int
    failed: bool = False
    failure_reason: Optional[str] = None

    def __post_init__(self) -> None:
        self.tool = tool_label(self.tool)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool": self.tool,
            "input": self.input,
            "timestamp": self.timestamp,
            "failed": self.failed,
            "failureReason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        timestamp = data.get("timestamp")
        return cls(
            tool=data.get("tool"),
            input=data.get("input"),
            timestamp=int(timestamp) if isinstance(timestamp, (int, float)) else 0,
            failed=bool(data.get("failed", False)),
            failure_reason=data.get("failureReason"),
        )


@dataclass
class HistoryStats:
    total_calls: int
    recent_calls: int
    tool_counts: Dict[str, int]
    failure_counts: Dict[str, int]
    window_ms: int


# ================================
# Findings
# ================================

@dataclass
class InvalidValue:
    """A field that failed validation.

    Type mismatches carry ``expected``/``got``; forbidden fields and
    structural problems carry ``reason``.
    """

    field: str
    expected: Optional[str] = None
    got: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"field": self.field}
        if self.expected is not None:
            out["expected"] = self.expected
        if self.got is not None:
            out["got"] = self.got
        if self.reason is not None:
            out["reason"] = self.reason
        return out


@dataclass
class ErrorVector:
    """Aggregated structural and safety findings for one call."""

    missing_fields: List[str] = field(default_factory=list)
    invalid_values: List[InvalidValue] = field(default_factory=list)
    forbidden_actions: List[str] = field(default_factory=list)
    loop_detected: bool = False
    contradiction: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "missing_fields": list(self.missing_fields),
            "invalid_values": [v.to_dict() for v in self.invalid_values],
            "forbidden_actions": list(self.forbidden_actions),
            "loop_detected": self.loop_detected,
            "contradiction": self.contradiction,
        }


@dataclass
class LoopInfo:
    loop_detected: bool = False
    consecutive_failures: int = 0
    similar_calls_count: int = 0
    pattern: Optional[str] = None
    pattern_tools: List[str] = field(default_factory=list)
    current_continues_pattern: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loop_detected": self.loop_detected,
            "consecutive_failures": self.consecutive_failures,
            "similar_calls_count": self.similar_calls_count,
            "pattern": self.pattern,
            "pattern_tools": list(self.pattern_tools),
            "current_continues_pattern": self.current_continues_pattern,
        }


@dataclass
class FailureInfo:
    failed: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"failed": self.failed, "reason": self.reason}


# ================================
# Decisions
# ================================

class DecisionAction(Enum):
    ALLOW = "allow"
    DENY = "deny"
    CORRECT = "correct"
    ESCALATE = "escalate"


@dataclass
class Correction:
    field: str
    correction: Any = None


@dataclass
class ControlDecision:
    """Controller output. Pure value, never persisted."""

    action: DecisionAction = DecisionAction.ALLOW
    reason: Optional[str] = None
    corrections: Optional[List[Correction]] = None
    system_message: Optional[str] = None

    @property
    def blocks(self) -> bool:
        """Whether the call must not run (DENY and ESCALATE both deny permission)."""
        return self.action in (DecisionAction.DENY, DecisionAction.ESCALATE)
