"""cyber_governor.controller

Control decisions, auto-correction hooks, and damping/backoff.

``make_decision`` is a pure function with a fixed priority order (first match
wins):

1. forbidden actions                      -> DENY
2. loop that the current call continues   -> ESCALATE
   (a loop the current call breaks only adds a note and falls through)
3. missing required fields                -> DENY
4. invalid values                         -> DENY, or CORRECT if every one is correctable
5. plan/action contradiction              -> DENY
6. otherwise                              -> ALLOW
"""

from __future__ import annotations

import json
import random
from typing import Any, Dict, List, Optional

from .config import GovernorConfig
from .types import (
    ControlDecision,
    Correction,
    DecisionAction,
    ErrorVector,
    InvalidValue,
    LoopInfo,
)

MESSAGE_PREFIX = "[CYBER-GOVERNOR]"

# Exponents past this already exceed any backoff cap.
MAX_BACKOFF_EXPONENT = 64


# ================================
# Auto-correction
# ================================

class CorrectionStrategy:
    """Decides which invalid values can be fixed without the agent.

    The default strategy corrects nothing: every invalid value goes back to
    the agent. Subclass and override both methods to add corrections.
    """

    def can_correct(self, invalid: InvalidValue) -> bool:
        return False

    def suggest(self, invalid: InvalidValue) -> Any:
        return None


def apply_corrections(tool_input: Any, corrections: Optional[List[Correction]]) -> Any:
    """Copy of ``tool_input`` with every non-None correction merged in."""
    if not corrections or not isinstance(tool_input, dict):
        return tool_input

    corrected = dict(tool_input)
    for c in corrections:
        if c.correction is not None:
            corrected[c.field] = c.correction
    return corrected


# ================================
# Decision
# ================================

def make_decision(
    error_vector: ErrorVector,
    loop_info: Optional[LoopInfo],
    strategy: Optional[CorrectionStrategy] = None,
) -> ControlDecision:
    strategy = strategy or CorrectionStrategy()
    decision = ControlDecision()

    if error_vector.forbidden_actions:
        return ControlDecision(
            action=DecisionAction.DENY,
            reason=f"Forbidden action detected: {', '.join(error_vector.forbidden_actions)}",
            system_message=format_denial_message(error_vector, "forbidden_action"),
        )

    if loop_info is not None and loop_info.loop_detected:
        if loop_info.current_continues_pattern:
            return ControlDecision(
                action=DecisionAction.ESCALATE,
                reason=loop_info.pattern,
                system_message=format_escalation_message(loop_info),
            )
        # The current call breaks the pattern: note it and keep checking.
        decision.system_message = format_breakout_message(loop_info)

    if error_vector.missing_fields:
        return ControlDecision(
            action=DecisionAction.DENY,
            reason=f"Missing required fields: {', '.join(error_vector.missing_fields)}",
            system_message=format_denial_message(error_vector, "missing_fields"),
        )

    if error_vector.invalid_values:
        correctable = [v for v in error_vector.invalid_values if strategy.can_correct(v)]
        uncorrectable = [v for v in error_vector.invalid_values if not strategy.can_correct(v)]

        if uncorrectable:
            return ControlDecision(
                action=DecisionAction.DENY,
                reason=f"Invalid values: {', '.join(v.field for v in uncorrectable)}",
                system_message=format_denial_message(error_vector, "invalid_values"),
            )

        corrections = [Correction(field=v.field, correction=strategy.suggest(v)) for v in correctable]
        return ControlDecision(
            action=DecisionAction.CORRECT,
            reason=f"Auto-corrected: {', '.join(c.field for c in corrections)}",
            corrections=corrections,
            system_message=format_correction_message(corrections),
        )

    if error_vector.contradiction:
        return ControlDecision(
            action=DecisionAction.DENY,
            reason=error_vector.contradiction,
            system_message=format_contradiction_message(error_vector.contradiction),
        )

    return decision


# ================================
# Messages
# ================================

def format_denial_message(error_vector: ErrorVector, primary_reason: str) -> str:
    lines = [f"{MESSAGE_PREFIX} Tool call validation failed.", ""]

    if primary_reason == "forbidden_action":
        lines.append("FORBIDDEN ACTION DETECTED:")
        lines.extend(f"  - {action}" for action in error_vector.forbidden_actions)
        lines.append("")
        lines.append("This action violates safety constraints. Please use a different approach.")

    elif primary_reason == "missing_fields":
        lines.append("MISSING REQUIRED FIELDS:")
        lines.extend(f"  - {name}" for name in error_vector.missing_fields)
        lines.append("")
        lines.append("Please provide all required fields and retry.")

    elif primary_reason == "invalid_values":
        lines.append("INVALID VALUES:")
        for v in error_vector.invalid_values:
            if v.reason == "forbidden":
                lines.append(f"  - {v.field}: forbidden field")
            elif v.reason:
                lines.append(f"  - {v.field}: {v.reason}")
            else:
                lines.append(f"  - {v.field}: expected {v.expected}, got {v.got}")
        lines.append("")
        lines.append("Please correct the field types and retry.")

    return "\n".join(lines)


def format_escalation_message(loop_info: LoopInfo) -> str:
    return "\n".join([
        f"{MESSAGE_PREFIX} Oscillation/loop pattern detected.",
        "",
        f"PATTERN: {loop_info.pattern}",
        "",
        "The system has detected a repeated failure pattern. To break this cycle:",
        "1. Step back and reconsider the approach",
        "2. Try a fundamentally different strategy",
        "3. Ask the user for clarification if needed",
        "",
        f"Consecutive failures: {loop_info.consecutive_failures}",
        f"Similar calls in window: {loop_info.similar_calls_count}",
    ])


def format_breakout_message(loop_info: LoopInfo) -> str:
    tools = ", ".join(str(t) for t in loop_info.pattern_tools) or "unknown"
    return "\n".join([
        f"{MESSAGE_PREFIX} Pattern detected but current action allowed.",
        "",
        f"DETECTED PATTERN: {loop_info.pattern}",
        f"PATTERN TOOLS: {tools}",
        "",
        "Your current action uses a different tool, which breaks the loop.",
        "Proceeding with this approach.",
    ])


def format_contradiction_message(contradiction: str) -> str:
    return "\n".join([
        f"{MESSAGE_PREFIX} Contradiction detected between plan and action.",
        "",
        f"CONTRADICTION: {contradiction}",
        "",
        "The current action does not match the stated plan. Please either:",
        "1. Update your plan to reflect the intended action",
        "2. Modify the action to match your plan",
    ])


def format_correction_message(corrections: List[Correction]) -> str:
    lines = [
        f"{MESSAGE_PREFIX} Auto-corrections applied.",
        "",
        "The following fields were automatically corrected:",
    ]
    lines.extend(f"  - {c.field}: {json.dumps(c.correction, default=str)}" for c in corrections)
    return "\n".join(lines)


# ================================
# Damping / backoff
# ================================

def calculate_backoff(
    failure_count: int,
    config: Optional[GovernorConfig] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """Advisory retry delay in milliseconds.

    Exponential in ``failure_count`` with up to ``backoff_jitter`` positive
    jitter, capped at ``backoff_max_ms``.
    """
    cfg = config or GovernorConfig()
    rand = (rng or random).random()
    exponent = min(failure_count - 1, MAX_BACKOFF_EXPONENT)
    exponential = min(cfg.backoff_base_ms * (2 ** exponent), cfg.backoff_max_ms)
    jitter = rand * cfg.backoff_jitter * exponential
    return min(exponential + jitter, float(cfg.backoff_max_ms))


def should_apply_damping(loop_info: Optional[LoopInfo], config: Optional[GovernorConfig] = None) -> bool:
    if loop_info is None:
        return False
    cfg = config or GovernorConfig()
    return (
        loop_info.consecutive_failures >= cfg.max_consecutive_failures
        or loop_info.similar_calls_count >= cfg.max_retries
        or loop_info.loop_detected
    )


def decision_summary(decision: ControlDecision) -> Dict[str, Any]:
    return {"action": decision.action.value, "reason": decision.reason}
