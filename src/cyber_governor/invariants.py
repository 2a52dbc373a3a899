"""cyber_governor.invariants

Global invariants: which tools exist, and which inputs are never acceptable.

Safety rules are plain data (ordered tuples of labelled patterns) so each rule
can be tested on its own and new rules can be added without touching the
checking code.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Pattern, Tuple

from .config import GovernorConfig


MCP_PREFIX = "mcp__"
MCP_SEPARATOR = "__"


# ================================
# Allowed tools
# ================================

ALLOWED_TOOLS: FrozenSet[str] = frozenset({
    # File operations
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    # Execution
    "Bash",
    "Task",
    "TaskOutput",
    "TaskStop",
    # Web
    "WebFetch",
    "WebSearch",
    # Interaction
    "AskUserQuestion",
    "Skill",
    # Code intelligence
    "LSP",
    # Notebooks
    "NotebookEdit",
    # MCP resources
    "ToolSearch",
    "ListMcpResourcesTool",
    "ReadMcpResourceTool",
    # Planning
    "EnterPlanMode",
    "ExitPlanMode",
    # Tasks
    "TaskCreate",
    "TaskGet",
    "TaskUpdate",
    "TaskList",
})


def is_mcp_tool(tool_name: Any) -> bool:
    return isinstance(tool_name, str) and tool_name.startswith(MCP_PREFIX)


def is_tool_allowed(tool_name: Any) -> bool:
    """MCP tools (``mcp__*``) are allowed by default; everything else must be listed."""
    if not isinstance(tool_name, str):
        return False
    if is_mcp_tool(tool_name):
        return True
    return tool_name in ALLOWED_TOOLS


# ================================
# Safety rules
# ================================

@dataclass(frozen=True)
class SafetyRule:
    label: str
    pattern: Pattern[str]

    def matches(self, value: str) -> bool:
        return bool(self.pattern.search(value))


def _rule(label: str, regex: str, flags: int = re.IGNORECASE) -> SafetyRule:
    return SafetyRule(label=label, pattern=re.compile(regex, flags))


# Write: files that usually hold secrets.
SENSITIVE_FILE_RULES: Tuple[SafetyRule, ...] = (
    _rule("env_file", r"\.env$"),
    _rule("env_variant", r"\.env\."),
    _rule("credentials", r"credentials"),
    _rule("secrets", r"secrets?\."),
    _rule("pem_certificate", r"\.pem$"),
    _rule("private_key", r"\.key$"),
    _rule("password", r"password"),
)

# Bash: destructive commands (Unix and PowerShell/cmd).
DANGEROUS_COMMAND_RULES: Tuple[SafetyRule, ...] = (
    _rule("rm_rf_root_or_home", r"rm\s+-rf\s+[/~]"),
    _rule("block_device_write", r">\s*/dev/sd"),
    _rule("mkfs", r"mkfs\."),
    _rule("dd_raw_disk", r"dd\s+if="),
    _rule("fork_bomb", r":\(\)\s*\{", 0),
    _rule("remove_item_recurse_drive", r"Remove-Item\s+.*-Recurse.*[A-Z]:\\"),
    _rule("remove_item_drive_recurse", r"Remove-Item\s+.*[A-Z]:\\.*-Recurse"),
    _rule("rd_s_drive", r"rd\s+/s\s+[A-Z]:\\"),
    _rule("rmdir_s_drive", r"rmdir\s+/s\s+[A-Z]:\\"),
    _rule("format_volume", r"Format-Volume"),
    _rule("clear_disk", r"Clear-Disk"),
    _rule("initialize_disk", r"Initialize-Disk"),
)


def first_matching_rule(rules: Tuple[SafetyRule, ...], value: str) -> Optional[SafetyRule]:
    for rule in rules:
        if rule.matches(value):
            return rule
    return None


def _check_write(tool_input: Dict[str, Any], cfg: GovernorConfig) -> List[str]:
    file_path = tool_input.get("file_path")
    if not file_path or not isinstance(file_path, str):
        return []
    if first_matching_rule(SENSITIVE_FILE_RULES, file_path) is not None:
        return [f"Sensitive file pattern detected: {file_path}"]
    return []


def _check_bash(tool_input: Dict[str, Any], cfg: GovernorConfig) -> List[str]:
    command = tool_input.get("command")
    if not command or not isinstance(command, str):
        return []
    if first_matching_rule(DANGEROUS_COMMAND_RULES, command) is not None:
        return ["Dangerous command pattern detected"]
    return []


def _check_edit(tool_input: Dict[str, Any], cfg: GovernorConfig) -> List[str]:
    old_string = tool_input.get("old_string")
    if not old_string or not isinstance(old_string, str):
        return []
    if len(old_string) > cfg.max_old_string_length:
        return [f"old_string exceeds maximum length ({cfg.max_old_string_length})"]
    return []


# Tool name -> safety profile. Tools without a profile never report violations.
SAFETY_PROFILES = {
    "Write": _check_write,
    "Bash": _check_bash,
    "Edit": _check_edit,
}


def check_safety_constraints(
    tool_name: Any,
    tool_input: Any,
    config: Optional[GovernorConfig] = None,
) -> List[str]:
    """Return the safety violations for a call (empty list when safe)."""
    check = SAFETY_PROFILES.get(tool_name) if isinstance(tool_name, str) else None
    if check is None or not isinstance(tool_input, dict):
        return []
    return check(tool_input, config or GovernorConfig())
