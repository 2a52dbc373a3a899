"""cyber_governor.governor

The governor: a small control loop around an agent's tool calls.

Design goals:
- Host-agnostic: the engine takes plain values; ``hooks`` adapts the JSON
  hook protocol.
- Deterministic: heuristics are data tables, decisions are a pure function.
- Fail-open: storage faults degrade detection, never the current decision.

Per call:
1. pre_tool_use()  - observe & compare: build the error vector, check the
   session history for loops, decide, record the call.
2. post_tool_use() - correct: detect failure, annotate history, re-check
   loops, recommend damping/backoff.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .config import GovernorConfig
from .controller import (
    MESSAGE_PREFIX,
    CorrectionStrategy,
    apply_corrections,
    calculate_backoff,
    decision_summary,
    make_decision,
    should_apply_damping,
)
from .detectors import (
    detect_contradiction,
    detect_hallucinated_tool,
    detect_loop,
    detect_malformed_input,
    detect_tool_failure,
)
from .history import (
    FileSessionStore,
    SessionStateStore,
    create_history_entry,
    history_stats,
    now_ms,
)
from .invariants import check_safety_constraints, is_tool_allowed
from .schema import validate_schema
from .telemetry import Telemetry
from .types import (
    ControlDecision,
    DecisionAction,
    ErrorVector,
    FailureInfo,
    HistoryStats,
    InvalidValue,
    LoopInfo,
    ToolCall,
    tool_label,
)

logger = logging.getLogger("cyber_governor")

FAILURE_EVENT = "PostToolUseFailure"
POST_EVENT = "PostToolUse"

# (tool_name, tool_input, session_id) -> plan text or None
PlanSource = Callable[[Any, Any, Any], Optional[str]]


def no_plan(tool_name: Any, tool_input: Any, session_id: Any) -> Optional[str]:
    """Default plan source: no plan text is available."""
    return None


@dataclass
class PreToolUseOutcome:
    tool_name: Any
    tool_input: Any
    error_vector: ErrorVector
    loop_info: LoopInfo
    decision: ControlDecision
    updated_input: Any = None


@dataclass
class PostToolUseOutcome:
    tool_name: Any
    hook_event: str
    failure: FailureInfo
    loop_info: LoopInfo
    stats: HistoryStats
    damping_applied: bool = False
    backoff_ms: Optional[float] = None
    system_message: Optional[str] = None


# ================================
# Governor Engine
# ================================

class Governor:
    """Policy-and-control engine for a stream of tool calls.

    Call pre_tool_use() before each tool execution and post_tool_use() after
    it. State lives in the session store, so a fresh Governor per process is
    the normal way to use it.
    """

    def __init__(
        self,
        config: Optional[GovernorConfig] = None,
        store: Optional[SessionStateStore] = None,
        telemetry: Optional[Telemetry] = None,
        plan_source: Optional[PlanSource] = None,
        correction_strategy: Optional[CorrectionStrategy] = None,
        clock: Optional[Callable[[], int]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.cfg = config or GovernorConfig()
        self.store = store if store is not None else FileSessionStore.from_config(self.cfg)
        self.telemetry = telemetry
        self.plan_source = plan_source or no_plan
        self.correction_strategy = correction_strategy or CorrectionStrategy()
        self.clock = clock or now_ms
        self.rng = rng

    # -------------------------
    # Internal helpers
    # -------------------------

    def _emit(self, event: str, **fields: Any) -> None:
        if not self.telemetry:
            return
        self.telemetry.emit(event, **fields)

    def build_error_vector(self, tool_name: Any, tool_input: Any, plan: Optional[str] = None) -> ErrorVector:
        """Structural, allow-list, schema and safety findings for one call."""
        ev = ErrorVector()

        malformed = detect_malformed_input(tool_input)
        if malformed:
            ev.invalid_values.append(InvalidValue(field="tool_input", reason="; ".join(malformed)))

        if detect_hallucinated_tool(tool_name):
            ev.forbidden_actions.append(f"Unknown tool: {tool_name}")

        if not is_tool_allowed(tool_name):
            ev.forbidden_actions.append(f"Tool not in allowed list: {tool_name}")

        schema_result = validate_schema(tool_name, tool_input)
        ev.missing_fields.extend(schema_result.missing_fields)
        ev.invalid_values.extend(schema_result.invalid_values)

        ev.forbidden_actions.extend(check_safety_constraints(tool_name, tool_input, self.cfg))

        ev.contradiction = detect_contradiction(plan, tool_name, tool_input)
        return ev

    # -------------------------
    # Public API
    # -------------------------

    def pre_tool_use(self, tool_name: Any, tool_input: Any, session_id: Any) -> PreToolUseOutcome:
        """Evaluate a tool call before it runs, then record it in the session history.

        The call is recorded whatever the decision, so denied calls still
        count towards repetition and oscillation.
        """
        if tool_input is None:
            tool_input = {}
        at = self.clock()

        plan = self.plan_source(tool_name, tool_input, session_id)
        error_vector = self.build_error_vector(tool_name, tool_input, plan)

        history = self.store.load(session_id)
        current = ToolCall(name=tool_label(tool_name), args=tool_input)
        loop_info = detect_loop(history, current, config=self.cfg, at_ms=at)
        error_vector.loop_detected = loop_info.loop_detected

        logger.debug("Error vector: %s", error_vector.to_dict())
        logger.debug("Loop info: %s", loop_info.to_dict())

        decision = make_decision(error_vector, loop_info, self.correction_strategy)
        logger.debug("Decision: %s %s", decision.action.value, decision.reason or "(no reason)")

        entry = create_history_entry(tool_name, tool_input, at)
        if session_id and not self.store.append_and_trim(session_id, entry, history=history):
            self._emit("history_write_failed", tool=tool_name)

        updated_input = None
        if decision.action == DecisionAction.CORRECT:
            updated_input = apply_corrections(tool_input, decision.corrections)

        self._emit(
            "pre_tool_decision",
            tool=tool_name,
            action=decision.action.value,
            reason=decision.reason,
            loop_detected=loop_info.loop_detected,
            forbidden=len(error_vector.forbidden_actions),
            missing=len(error_vector.missing_fields),
            invalid=len(error_vector.invalid_values),
        )

        return PreToolUseOutcome(
            tool_name=tool_name,
            tool_input=tool_input,
            error_vector=error_vector,
            loop_info=loop_info,
            decision=decision,
            updated_input=updated_input,
        )

    def post_tool_use(
        self,
        tool_name: Any,
        tool_input: Any,
        session_id: Any,
        *,
        tool_result: Any = None,
        hook_event: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> PostToolUseOutcome:
        """Record a tool call's outcome and decide whether to damp further retries."""
        if tool_input is None:
            tool_input = {}
        hook_event = hook_event or POST_EVENT
        payload = payload or {}
        at = self.clock()
        # History stores tool names as labels.
        tool_key = tool_label(tool_name)

        if hook_event == FAILURE_EVENT:
            failure = FailureInfo(failed=True, reason=_failure_event_reason(payload.get("error")))
        else:
            failure = detect_tool_failure(tool_result, payload)
        logger.debug("Failure detection: %s", failure.to_dict())

        if failure.failed:
            history = self.store.mark_last_failed(session_id, tool_key, failure.reason)
            self._emit("tool_failure_recorded", tool=tool_name, hook_event=hook_event)
        else:
            history = self.store.load(session_id)

        loop_info = detect_loop(history, ToolCall(name=tool_key, args=tool_input), config=self.cfg, at_ms=at)
        stats = history_stats(history, self.cfg, at_ms=at)
        damping = should_apply_damping(loop_info, self.cfg)
        logger.debug("Loop info: %s (damping=%s)", loop_info.to_dict(), damping)

        outcome = PostToolUseOutcome(
            tool_name=tool_name,
            hook_event=hook_event,
            failure=failure,
            loop_info=loop_info,
            stats=stats,
            damping_applied=damping,
        )

        if damping:
            # Advisory only: the hook reports the delay, the host decides.
            outcome.backoff_ms = calculate_backoff(
                max(loop_info.consecutive_failures, 1), self.cfg, self.rng
            )
            outcome.system_message = format_damping_message(loop_info, stats, outcome.backoff_ms)
            self._emit(
                "damping_applied",
                tool=tool_name,
                pattern=loop_info.pattern,
                consecutive_failures=loop_info.consecutive_failures,
                similar_calls=loop_info.similar_calls_count,
                backoff_ms=round(outcome.backoff_ms),
            )
        elif failure.failed:
            outcome.system_message = format_failure_feedback(tool_key, failure, stats)

        return outcome

    def debug_info(self, outcome: Any) -> Dict[str, Any]:
        """Diagnostics attached to hook responses when debug is on."""
        if isinstance(outcome, PreToolUseOutcome):
            return {
                "hook": "pre",
                "toolName": outcome.tool_name,
                "errorVector": outcome.error_vector.to_dict(),
                "loopInfo": outcome.loop_info.to_dict(),
                "decision": decision_summary(outcome.decision),
            }
        return {
            "hook": "post",
            "toolName": outcome.tool_name,
            "hookEvent": outcome.hook_event,
            "failureInfo": outcome.failure.to_dict(),
            "loopInfo": outcome.loop_info.to_dict(),
            "dampingApplied": outcome.damping_applied,
            "backoffMs": outcome.backoff_ms,
        }


# ================================
# Post-call messages
# ================================

def _failure_event_reason(error: Any) -> str:
    if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"]:
        return error["message"]
    if isinstance(error, str) and error:
        return error
    return "Tool execution failed"


def format_damping_message(loop_info: LoopInfo, stats: HistoryStats, backoff_ms: float) -> str:
    return "\n".join([
        f"{MESSAGE_PREFIX} Damping applied due to repeated issues.",
        "",
        f"Pattern: {loop_info.pattern or 'Multiple failures detected'}",
        f"Consecutive failures: {loop_info.consecutive_failures}",
        f"Recommended backoff: {round(backoff_ms)} ms",
        "",
        "Recommendation: Take a different approach before retrying.",
        "",
        "History stats:",
        f"  - Recent calls: {stats.recent_calls}",
        f"  - Total this session: {stats.total_calls}",
    ])


def format_failure_feedback(tool_name: Any, failure: FailureInfo, stats: HistoryStats) -> str:
    lines = [f"{MESSAGE_PREFIX} Tool execution feedback.", ""]

    if failure.reason:
        lines.append(f"ISSUE: {failure.reason}")
        lines.append("")

    # The current failure is already counted.
    tool_failures = stats.failure_counts.get(tool_name, 0)
    if tool_failures >= 2:
        lines.append(f"WARNING: {tool_name} has failed {tool_failures} times recently.")
        lines.append("")
        lines.append("Consider:")
        lines.append("1. Checking if the inputs are correct")
        lines.append("2. Verifying prerequisites are met")
        lines.append("3. Trying an alternative approach")

    return "\n".join(lines)
