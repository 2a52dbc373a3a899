"""cyber_governor.hooks

JSON hook adapters around :class:`~cyber_governor.governor.Governor`.

Each hook reads one JSON request from stdin and writes one JSON response to
stdout, and always exits 0. Any internal fault becomes a permissive response
with a diagnostic ``systemMessage``: the governor must never block the agent
because of its own bugs.

Pre request:   {"tool_name", "tool_input", "session_id"}
Post request:  {"tool_name", "tool_input", "tool_result", "session_id",
                "hook_event_name"}
"""

from __future__ import annotations

import json
import logging
import sys
from typing import IO, Any, Dict, Optional

from .config import GovernorConfig
from .controller import MESSAGE_PREFIX
from .governor import Governor, PostToolUseOutcome, PreToolUseOutcome
from .telemetry import Telemetry
from .types import DecisionAction

logger = logging.getLogger("cyber_governor.hooks")

PRE_EVENT_NAME = "PreToolUse"


def read_payload(stream: IO[str]) -> Dict[str, Any]:
    raw = stream.read()
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError(f"Hook payload must be a JSON object, got {type(payload).__name__}")
    return payload


def write_response(stream: IO[str], response: Dict[str, Any]) -> None:
    stream.write(json.dumps(response, default=str))
    stream.write("\n")
    stream.flush()


# ================================
# Rendering
# ================================

def _permission(decision: str) -> Dict[str, Any]:
    return {"hookEventName": PRE_EVENT_NAME, "permissionDecision": decision}


def render_pre_response(outcome: PreToolUseOutcome) -> Dict[str, Any]:
    """Map a decision onto the PreToolUse response shape.

    DENY and ESCALATE both deny permission and carry the error vector;
    CORRECT allows with ``updatedInput``.
    """
    decision = outcome.decision

    if decision.blocks:
        return {
            "hookSpecificOutput": _permission("deny"),
            "systemMessage": decision.system_message,
            "errorVector": outcome.error_vector.to_dict(),
        }

    response: Dict[str, Any] = {"hookSpecificOutput": _permission("allow")}
    if decision.action == DecisionAction.CORRECT:
        response["hookSpecificOutput"]["updatedInput"] = outcome.updated_input
    if decision.system_message:
        response["systemMessage"] = decision.system_message
    return response


def render_post_response(outcome: PostToolUseOutcome) -> Dict[str, Any]:
    if outcome.system_message:
        return {"systemMessage": outcome.system_message}
    return {}


def pre_error_response(exc: BaseException) -> Dict[str, Any]:
    return {
        "hookSpecificOutput": _permission("allow"),
        "systemMessage": f"{MESSAGE_PREFIX} Hook error (allowing call): {exc}",
    }


def post_error_response(exc: BaseException) -> Dict[str, Any]:
    return {"systemMessage": f"{MESSAGE_PREFIX} PostToolUse hook error: {exc}"}


# ================================
# Entry points
# ================================

def _governor(config: Optional[GovernorConfig], governor: Optional[Governor]) -> Governor:
    if governor is not None:
        return governor
    return Governor(config=config or GovernorConfig.from_env(), telemetry=Telemetry())


def run_pre_hook(
    stdin: Optional[IO[str]] = None,
    stdout: Optional[IO[str]] = None,
    config: Optional[GovernorConfig] = None,
    governor: Optional[Governor] = None,
) -> int:
    """Handle one PreToolUse request. Always returns exit code 0."""
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout

    try:
        gov = _governor(config, governor)
        payload = read_payload(stdin)
        outcome = gov.pre_tool_use(
            payload.get("tool_name"),
            payload.get("tool_input"),
            payload.get("session_id"),
        )
        response = render_pre_response(outcome)
        if gov.cfg.debug:
            response["_debug"] = gov.debug_info(outcome)
    except Exception as exc:
        logger.exception("PreToolUse hook failed; allowing call")
        response = pre_error_response(exc)

    write_response(stdout, response)
    return 0


def run_post_hook(
    stdin: Optional[IO[str]] = None,
    stdout: Optional[IO[str]] = None,
    config: Optional[GovernorConfig] = None,
    governor: Optional[Governor] = None,
) -> int:
    """Handle one PostToolUse / PostToolUseFailure request. Always returns exit code 0."""
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout

    try:
        gov = _governor(config, governor)
        payload = read_payload(stdin)
        outcome = gov.post_tool_use(
            payload.get("tool_name"),
            payload.get("tool_input"),
            payload.get("session_id"),
            tool_result=payload.get("tool_result"),
            hook_event=payload.get("hook_event_name"),
            payload=payload,
        )
        response = render_post_response(outcome)
        if gov.cfg.debug:
            response["_debug"] = gov.debug_info(outcome)
    except Exception as exc:
        logger.exception("PostToolUse hook failed")
        response = post_error_response(exc)

    write_response(stdout, response)
    return 0
