"""Event types published by the confirmation gateway.

Each event is a dataclass with an ``event_type`` tag so UI consumers can
dispatch on it; ``event_to_dict`` / ``dict_to_event`` convert to and from
the plain dicts sent over process boundaries.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class GateEvent:
    """Base event from the confirmation gateway."""
    event_type: str = ""
    conversation_id: str | None = None


@dataclass
class ToolConfirmationRequested(GateEvent):
    event_type: str = "tool_confirmation_requested"
    request_id: str | int = ""
    turn_id: str = ""
    round_id: int = 0
    tool_call_id: str = ""
    tool_name: str = ""
    title: str = ""
    message: str = ""
    command: str = ""
    # "mcp", "sensitive_file", "terminal" or "tool"
    category: str = "tool"
    mcp_server: str | None = None
    file_key: str | None = None


@dataclass
class ToolConfirmationResolved(GateEvent):
    event_type: str = "tool_confirmation_resolved"
    request_id: str | int = ""
    tool_call_id: str = ""
    accepted: bool = False
    # "auto", "accept", "reject", "cancel" or "timeout"
    decision: str = ""


@dataclass
class ApprovalRulesChanged(GateEvent):
    event_type: str = "approval_rules_changed"
    rule_kind: str = ""
    scope: str = ""


@dataclass
class HistoryChanged(GateEvent):
    event_type: str = "history_changed"
    turn_count: int = 0


_EVENT_MAP: dict[str, type[GateEvent]] = {
    "tool_confirmation_requested": ToolConfirmationRequested,
    "tool_confirmation_resolved": ToolConfirmationResolved,
    "approval_rules_changed": ApprovalRulesChanged,
    "history_changed": HistoryChanged,
}


def event_to_dict(event: GateEvent) -> dict[str, Any]:
    """Convert a typed event to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for name in event.__dataclass_fields__:
        val = getattr(event, name)
        if val is not None:
            d[name] = val
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> GateEvent:
    """Convert a plain event dict back into its typed dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, GateEvent)
    valid_fields = set(cls.__dataclass_fields__)
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
