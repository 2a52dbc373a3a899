"""cyber_governor.schema

Tool schema definitions and validation.

Each schema declares:
- required: fields that must be present (and not None)
- types: expected type name per field (string|number|boolean|array|object)
- defaults: default values for optional fields (informational only)
- forbidden: fields that must never be present

MCP tools and unknown tools get an empty, fully permissive schema. Unknown
tools are flagged by the hallucination detector, not here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .invariants import is_mcp_tool
from .types import InvalidValue


@dataclass(frozen=True)
class ToolSchema:
    required: List[str] = field(default_factory=list)
    types: Dict[str, str] = field(default_factory=dict)
    defaults: Dict[str, Any] = field(default_factory=dict)
    forbidden: List[str] = field(default_factory=list)


@dataclass
class SchemaResult:
    missing_fields: List[str] = field(default_factory=list)
    invalid_values: List[InvalidValue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_fields and not self.invalid_values


EMPTY_SCHEMA = ToolSchema()

TOOL_SCHEMAS: Dict[str, ToolSchema] = {
    "Read": ToolSchema(
        required=["file_path"],
        types={"file_path": "string", "offset": "number", "limit": "number"},
    ),
    "Write": ToolSchema(
        required=["file_path", "content"],
        types={"file_path": "string", "content": "string"},
    ),
    "Edit": ToolSchema(
        required=["file_path", "old_string", "new_string"],
        types={
            "file_path": "string",
            "old_string": "string",
            "new_string": "string",
            "replace_all": "boolean",
        },
        defaults={"replace_all": False},
    ),
    "Bash": ToolSchema(
        required=["command"],
        types={"command": "string", "timeout": "number", "run_in_background": "boolean"},
    ),
    "Glob": ToolSchema(
        required=["pattern"],
        types={"pattern": "string", "path": "string"},
    ),
    "Grep": ToolSchema(
        required=["pattern"],
        types={
            "pattern": "string",
            "path": "string",
            "glob": "string",
            "type": "string",
            "output_mode": "string",
        },
    ),
    "Task": ToolSchema(
        required=["description", "prompt", "subagent_type"],
        types={
            "description": "string",
            "prompt": "string",
            "subagent_type": "string",
            "model": "string",
            "run_in_background": "boolean",
        },
    ),
    "WebFetch": ToolSchema(
        required=["url", "prompt"],
        types={"url": "string", "prompt": "string"},
    ),
    "WebSearch": ToolSchema(
        required=["query"],
        types={"query": "string", "allowed_domains": "array", "blocked_domains": "array"},
    ),
    "AskUserQuestion": ToolSchema(
        required=["questions"],
        types={"questions": "array"},
    ),
    "LSP": ToolSchema(
        required=["operation", "filePath", "line", "character"],
        types={"operation": "string", "filePath": "string", "line": "number", "character": "number"},
    ),
}


def get_schema(tool_name: Any) -> ToolSchema:
    if is_mcp_tool(tool_name):
        return EMPTY_SCHEMA
    if not isinstance(tool_name, str):
        return EMPTY_SCHEMA
    return TOOL_SCHEMAS.get(tool_name, EMPTY_SCHEMA)


def type_name(value: Any) -> str:
    """JSON-level type name of a value."""
    # bool is an int subclass: check it first.
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def validate_schema(tool_name: Any, tool_input: Any) -> SchemaResult:
    """Validate tool input against its schema. No side effects."""
    schema = get_schema(tool_name)
    fields = tool_input if isinstance(tool_input, dict) else {}
    result = SchemaResult()

    for name in schema.required:
        if fields.get(name) is None:
            result.missing_fields.append(name)

    for name, expected in schema.types.items():
        value = fields.get(name)
        if value is None:
            continue
        got = type_name(value)
        if got != expected:
            result.invalid_values.append(InvalidValue(field=name, expected=expected, got=got))

    for name in schema.forbidden:
        if name in fields:
            result.invalid_values.append(InvalidValue(field=name, reason="forbidden"))

    return result
