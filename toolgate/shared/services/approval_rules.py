"""Approval rule schemas, scopes and approval actions.

The three rule sets are persisted independently as JSON documents with
camelCase keys::

    terminal_commands.json  {"commands": {"git": true, "git status": true}}
    sensitive_files.json    {"rules": {"env files": {"description": "...",
                                                     "autoApprove": true}}}
    mcp_servers.json        {"servers": {"github": {"isServerAllowed": false,
                                                    "allowedTools": ["search"]}}}

Parsing is lenient: unknown keys are ignored and entries of the wrong
shape are skipped, so a hand-edited file never takes the others down.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RuleKind(Enum):
    TERMINAL = "terminal"
    SENSITIVE_FILE = "sensitive_file"
    MCP = "mcp"


@dataclass(frozen=True)
class ApprovalScope:
    """Where an approval applies: one conversation, or everywhere."""
    kind: str
    conversation_id: str | None = None

    @classmethod
    def session(cls, conversation_id: str) -> ApprovalScope:
        return cls(kind="session", conversation_id=conversation_id)

    @classmethod
    def global_scope(cls) -> ApprovalScope:
        return cls(kind="global")

    @property
    def is_session(self) -> bool:
        return self.kind == "session"

    @property
    def is_global(self) -> bool:
        return self.kind == "global"


GLOBAL_SCOPE = ApprovalScope.global_scope()


@dataclass
class TerminalCommandsRules:
    commands: dict[str, bool] = field(default_factory=dict)

    def copy(self) -> TerminalCommandsRules:
        return TerminalCommandsRules(commands=dict(self.commands))

    def to_dict(self) -> dict[str, Any]:
        return {"commands": dict(self.commands)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TerminalCommandsRules:
        raw = data.get("commands") if isinstance(data, dict) else None
        commands: dict[str, bool] = {}
        if isinstance(raw, dict):
            for key, value in raw.items():
                if isinstance(key, str) and isinstance(value, bool):
                    commands[key] = value
        return cls(commands=commands)


@dataclass
class SensitiveFileRule:
    description: str = ""
    auto_approve: bool = False


@dataclass
class SensitiveFilesRules:
    rules: dict[str, SensitiveFileRule] = field(default_factory=dict)

    def copy(self) -> SensitiveFilesRules:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rules": {
                key: {"description": rule.description, "autoApprove": rule.auto_approve}
                for key, rule in self.rules.items()
            }
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SensitiveFilesRules:
        raw = data.get("rules") if isinstance(data, dict) else None
        rules: dict[str, SensitiveFileRule] = {}
        if isinstance(raw, dict):
            for key, value in raw.items():
                if not isinstance(value, dict):
                    continue
                rules[key] = SensitiveFileRule(
                    description=str(value.get("description", "")),
                    auto_approve=value.get("autoApprove") is True,
                )
        return cls(rules=rules)


@dataclass
class MCPServerApprovalState:
    is_server_allowed: bool = False
    allowed_tools: set[str] = field(default_factory=set)

    def allows(self, tool_name: str) -> bool:
        return self.is_server_allowed or tool_name in self.allowed_tools


@dataclass
class AutoApprovedMCPServers:
    servers: dict[str, MCPServerApprovalState] = field(default_factory=dict)

    def copy(self) -> AutoApprovedMCPServers:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "servers": {
                name: {
                    "isServerAllowed": state.is_server_allowed,
                    "allowedTools": sorted(state.allowed_tools),
                }
                for name, state in self.servers.items()
            }
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AutoApprovedMCPServers:
        raw = data.get("servers") if isinstance(data, dict) else None
        servers: dict[str, MCPServerApprovalState] = {}
        if isinstance(raw, dict):
            for name, value in raw.items():
                if not isinstance(value, dict):
                    continue
                tools = value.get("allowedTools") or []
                servers[name] = MCPServerApprovalState(
                    is_server_allowed=value.get("isServerAllowed") is True,
                    allowed_tools={t for t in tools if isinstance(t, str)},
                )
        return cls(servers=servers)


class AutoApprovalKind(Enum):
    MCP_TOOL = "mcp_tool"
    MCP_SERVER = "mcp_server"
    SENSITIVE_FILE = "sensitive_file"
    TERMINAL_COMMANDS = "terminal_commands"
    ALL_TERMINAL_COMMANDS = "all_terminal_commands"


@dataclass(frozen=True)
class AutoApproval:
    """A rule the user asked to remember when confirming a tool call."""

    kind: AutoApprovalKind
    scope: ApprovalScope
    server_name: str = ""
    tool_name: str = ""
    file_key: str = ""
    description: str = ""
    commands: tuple[str, ...] = ()

    @classmethod
    def mcp_tool(cls, scope: ApprovalScope, server_name: str, tool_name: str) -> AutoApproval:
        return cls(
            kind=AutoApprovalKind.MCP_TOOL,
            scope=scope,
            server_name=server_name,
            tool_name=tool_name,
        )

    @classmethod
    def mcp_server(cls, scope: ApprovalScope, server_name: str) -> AutoApproval:
        return cls(kind=AutoApprovalKind.MCP_SERVER, scope=scope, server_name=server_name)

    @classmethod
    def sensitive_file(
        cls,
        scope: ApprovalScope,
        tool_name: str,
        file_key: str,
        description: str = "",
    ) -> AutoApproval:
        return cls(
            kind=AutoApprovalKind.SENSITIVE_FILE,
            scope=scope,
            tool_name=tool_name,
            file_key=file_key,
            description=description,
        )

    @classmethod
    def terminal_commands(cls, scope: ApprovalScope, commands: list[str]) -> AutoApproval:
        return cls(
            kind=AutoApprovalKind.TERMINAL_COMMANDS,
            scope=scope,
            commands=tuple(commands),
        )

    @classmethod
    def all_terminal_commands(cls, conversation_id: str) -> AutoApproval:
        return cls(
            kind=AutoApprovalKind.ALL_TERMINAL_COMMANDS,
            scope=ApprovalScope.session(conversation_id),
        )
