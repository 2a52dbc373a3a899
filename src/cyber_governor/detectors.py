"""cyber_governor.detectors

Pattern detectors: hallucinated tools, malformed input, loops/oscillation,
plan/action contradictions, and tool failures reported after execution.

All detectors are pure functions of their arguments (plus the current time
for the windowed loop checks).
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from .config import GovernorConfig
from .history import now_ms, summarize_input, windowed
from .invariants import MCP_SEPARATOR, is_mcp_tool, is_tool_allowed
from .schema import type_name
from .types import FailureInfo, HistoryEntry, LoopInfo, ToolCall


# ================================
# Hallucinated tools & malformed input
# ================================

def detect_hallucinated_tool(tool_name: Any) -> bool:
    """Whether a tool name looks invented.

    MCP tools must have at least three segments (``mcp__server__tool``).
    """
    if not tool_name or not isinstance(tool_name, str):
        return True

    if is_mcp_tool(tool_name):
        return len(tool_name.split(MCP_SEPARATOR)) < 3

    return not is_tool_allowed(tool_name)


def detect_malformed_input(value: Any) -> List[str]:
    """Structural issues with a raw call payload. Empty list means well-formed."""
    if value is None:
        return ["Input is null or undefined"]
    if isinstance(value, (list, tuple)):
        return ["Input is an array, expected object"]
    if not isinstance(value, dict):
        return [f"Input is not an object (got {type_name(value)})"]
    return []


# ================================
# Loop / oscillation
# ================================

# Input fields that identify "the same call" per tool.
FINGERPRINT_FIELDS: Dict[str, Tuple[str, ...]] = {
    "Read": ("file_path",),
    "Write": ("file_path",),
    "Edit": ("file_path", "old_string"),
    "Bash": ("command",),
    "Glob": ("pattern", "path"),
    "Grep": ("pattern", "path"),
}


def _fingerprint_value(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def fingerprint_call(tool: Any, tool_input: Any) -> str:
    """Reduced representation of a call used to spot repeats.

    Unknown tools fall back to their first three input keys.
    """
    fields: Sequence[str] = FINGERPRINT_FIELDS.get(tool, ()) if isinstance(tool, str) else ()
    if not fields:
        fields = list(tool_input)[:3] if isinstance(tool_input, dict) else []
    get = tool_input.get if isinstance(tool_input, dict) else (lambda _key: None)
    return f"{tool}:" + "|".join(_fingerprint_value(get(f)) for f in fields)


def detect_loop(
    history: List[HistoryEntry],
    current_call: ToolCall,
    *,
    config: Optional[GovernorConfig] = None,
    at_ms: Optional[int] = None,
) -> LoopInfo:
    """Detect repeated or oscillating calls in the trailing window.

    Checks run in a fixed order and each may overwrite ``pattern``:
    1. oscillation A,B,A,B in the last four entries
    2. the same call repeated ``max_retries`` times
    3. ``max_consecutive_failures`` trailing failures of the current tool
    """
    cfg = config or GovernorConfig()
    result = LoopInfo()

    if not history:
        return result

    recent = windowed(history, cfg.oscillation_window_ms, now_ms() if at_ms is None else at_ms)
    tool = current_call.name

    consecutive_failures = 0
    for entry in reversed(recent):
        if entry.tool == tool and entry.failed:
            consecutive_failures += 1
        else:
            break
    result.consecutive_failures = consecutive_failures

    # Stored entries hold summarised input; compare like with like.
    current_fp = fingerprint_call(tool, summarize_input(current_call.args))
    result.similar_calls_count = sum(
        1 for h in recent if fingerprint_call(h.tool, h.input) == current_fp
    )

    if len(recent) >= 4:
        a, b, a2, b2 = recent[-4:]
        if a.tool == a2.tool and b.tool == b2.tool and a.tool != b.tool:
            result.loop_detected = True
            result.pattern = f"Oscillation: {a.tool} <-> {b.tool}"
            result.pattern_tools = [a.tool, b.tool]
            result.current_continues_pattern = tool in result.pattern_tools

    if result.similar_calls_count >= cfg.max_retries:
        result.loop_detected = True
        result.pattern = f"Repeated call: {tool} ({result.similar_calls_count} times)"
        result.pattern_tools = [tool]
        result.current_continues_pattern = True

    if consecutive_failures >= cfg.max_consecutive_failures:
        result.loop_detected = True
        result.pattern = f"Consecutive failures: {tool} ({consecutive_failures} times)"
        result.pattern_tools = [tool]
        result.current_continues_pattern = True

    return result


# ================================
# Contradiction (plan vs. action)
# ================================

READ_ONLY_INDICATORS = ("just read", "only read", "examine", "look at", "check the")
WRITE_TOOLS = frozenset({"Write", "Edit", "Bash"})

_PLANNED_FILE_RE = re.compile(r"(?:file|read|edit|write)\s+[`\"']?([^\s`\"']+\.\w+)[`\"']?", re.I)


def detect_contradiction(plan: Optional[str], tool_name: Any, tool_input: Any) -> Optional[str]:
    """Describe a mismatch between a stated plan and the call, or return None.

    Nothing in the hook pipeline produces plan text yet; callers supply it
    through :class:`cyber_governor.governor.Governor`'s ``plan_source``.
    """
    if not plan or not isinstance(plan, str):
        return None

    plan_lower = plan.lower()

    if tool_name in WRITE_TOOLS:
        for indicator in READ_ONLY_INDICATORS:
            if indicator in plan_lower:
                return f'Plan indicates read-only operation ("{indicator}") but attempting {tool_name}'

    match = _PLANNED_FILE_RE.search(plan)
    file_path = tool_input.get("file_path") if isinstance(tool_input, dict) else None
    if match and isinstance(file_path, str) and file_path:
        planned_file = match.group(1)
        actual_file = file_path.split("/")[-1]
        if planned_file != actual_file and planned_file not in file_path:
            return f'Plan mentions "{planned_file}" but accessing "{actual_file}"'

    return None


# ================================
# Tool failure (post-execution)
# ================================

ERROR_PATTERNS: Tuple[Tuple[str, Pattern[str]], ...] = tuple(
    (label, re.compile(regex, re.I))
    for label, regex in (
        ("error_prefix", r"error:"),
        ("failed_prefix", r"failed:"),
        ("exception_prefix", r"exception:"),
        ("not_found", r"not found"),
        ("permission_denied", r"permission denied"),
        ("no_such_file", r"no such file"),
        ("eperm", r"eperm"),
        ("eacces", r"eacces"),
        ("enoent", r"enoent"),
        ("operation_not_permitted", r"operation not permitted"),
    )
)

ERROR_PATTERN_REASON = "Error pattern detected in output"


def find_error_pattern(text: Any) -> Optional[str]:
    """Label of the first error pattern found in ``text``, or None."""
    if not isinstance(text, str):
        return None
    for label, pattern in ERROR_PATTERNS:
        if pattern.search(text):
            return label
    return None


def _nested(payload: Dict[str, Any], outer: str, inner: str) -> Any:
    value = payload.get(outer)
    return value.get(inner) if isinstance(value, dict) else None


def detect_tool_failure(tool_result: Any, payload: Optional[Dict[str, Any]] = None) -> FailureInfo:
    """Decide whether an executed tool call failed.

    Looks at the tool result first, then at the other places hosts put
    errors in the hook payload.
    """
    payload = payload if isinstance(payload, dict) else {}

    if isinstance(tool_result, str):
        if find_error_pattern(tool_result):
            return FailureInfo(failed=True, reason=ERROR_PATTERN_REASON)
    elif isinstance(tool_result, dict):
        error = tool_result.get("error")
        if error:
            return FailureInfo(
                failed=True,
                reason=error if isinstance(error, str) else "Error field present in result",
            )
        if tool_result.get("success") is False:
            return FailureInfo(failed=True, reason=tool_result.get("message") or "Success field is false")

    alternative_locations = (
        payload.get("error"),
        _nested(payload, "tool_response", "error"),
        _nested(payload, "tool_response", "stderr"),
        _nested(payload, "tool_response", "stdout"),
        _nested(payload, "result", "error"),
    )
    for location in alternative_locations:
        if not location:
            continue
        text = location.get("message") if isinstance(location, dict) else location
        if find_error_pattern(text):
            return FailureInfo(failed=True, reason=ERROR_PATTERN_REASON)

    top_level_error = payload.get("error")
    if tool_result is None and top_level_error:
        return FailureInfo(
            failed=True,
            reason=top_level_error if isinstance(top_level_error, str) else "Tool returned error",
        )

    return FailureInfo()
