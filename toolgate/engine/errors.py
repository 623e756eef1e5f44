"""Exception hierarchy for the confirmation gateway.

One exception per failure mode. Malformed requests and rule read
failures are handled inside the engine; the others reach the caller.
"""
from __future__ import annotations


class ToolGateError(Exception):
    """Base exception for all toolgate errors."""


class MalformedRequestError(ToolGateError):
    """Inbound confirmation request is missing required params."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Malformed tool confirmation request: {reason}")


class ToolCallNotFoundError(ToolGateError):
    """No tool call with the given id exists in the conversation history."""
    def __init__(self, tool_call_id: str, turn_id: str | None = None):
        self.tool_call_id = tool_call_id
        self.turn_id = turn_id
        where = f" in turn {turn_id}" if turn_id else ""
        super().__init__(f"Tool call {tool_call_id} not found{where}")


class RuleStoreReadError(ToolGateError):
    """Persisted approval rules could not be read."""
    def __init__(self, rule_kind: str, path: str, reason: str):
        self.rule_kind = rule_kind
        self.path = path
        self.reason = reason
        super().__init__(
            f"Cannot read {rule_kind} rules from {path}: {reason}"
        )


class RulePersistenceError(ToolGateError):
    """Persisted approval rules could not be written."""
    def __init__(self, rule_kind: str, path: str, reason: str):
        self.rule_kind = rule_kind
        self.path = path
        self.reason = reason
        super().__init__(
            f"Cannot save {rule_kind} rules to {path}: {reason}"
        )


class ConfigError(ToolGateError):
    """Configuration file is missing or invalid."""
