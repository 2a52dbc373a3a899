"""Cyber Governor: policy-and-control hooks for tool-using agents (validation, safety rules, loop detection, damping).

Quick start:
    from cyber_governor import Governor, GovernorConfig

    governor = Governor(config=GovernorConfig.from_env())
    outcome = governor.pre_tool_use("Read", {"file_path": "/tmp/x.py"}, session_id="s-1")
    if outcome.decision.blocks:
        print(outcome.decision.system_message)
"""

from .config import GovernorConfig
from .controller import CorrectionStrategy, apply_corrections, calculate_backoff, make_decision, should_apply_damping
from .detectors import (
    detect_contradiction,
    detect_hallucinated_tool,
    detect_loop,
    detect_malformed_input,
    detect_tool_failure,
)
from .governor import Governor, PostToolUseOutcome, PreToolUseOutcome
from .history import FileSessionStore, InMemorySessionStore, SessionStateStore, history_stats
from .hooks import run_post_hook, run_pre_hook
from .invariants import check_safety_constraints, is_tool_allowed
from .schema import validate_schema
from .telemetry import InMemoryTelemetry, LoggingTelemetry, Telemetry
from .types import (
    ControlDecision,
    Correction,
    DecisionAction,
    ErrorVector,
    FailureInfo,
    HistoryEntry,
    HistoryStats,
    InvalidValue,
    LoopInfo,
    ToolCall,
)

__version__ = "0.1.0"

__all__ = [
    # Core engine
    "Governor",
    "GovernorConfig",
    "PreToolUseOutcome",
    "PostToolUseOutcome",
    # Hooks
    "run_pre_hook",
    "run_post_hook",
    # Detectors & checks
    "validate_schema",
    "check_safety_constraints",
    "is_tool_allowed",
    "detect_hallucinated_tool",
    "detect_malformed_input",
    "detect_loop",
    "detect_contradiction",
    "detect_tool_failure",
    # Control
    "make_decision",
    "CorrectionStrategy",
    "apply_corrections",
    "calculate_backoff",
    "should_apply_damping",
    # State
    "SessionStateStore",
    "FileSessionStore",
    "InMemorySessionStore",
    "history_stats",
    # Types
    "ControlDecision",
    "Correction",
    "DecisionAction",
    "ErrorVector",
    "FailureInfo",
    "HistoryEntry",
    "HistoryStats",
    "InvalidValue",
    "LoopInfo",
    "ToolCall",
    # Telemetry
    "Telemetry",
    "LoggingTelemetry",
    "InMemoryTelemetry",
]
