"""Session and global storage for auto-approval rules.

Session approvals live in memory, keyed by conversation id, and vanish
with the process. Global approvals are persisted as JSON files in a rules
directory (default ``~/.toolgate/auto_approval``):

- terminal_commands.json
- sensitive_files.json
- mcp_servers.json

Each global rule set is held as a snapshot object that is never mutated
after publication. Writers build a new snapshot, persist it, and only
then swap the reference, so a policy evaluation running concurrently
always sees a complete rule set and a failed write leaves memory as it
was. The three files are written independently.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from toolgate.engine.errors import RulePersistenceError, RuleStoreReadError
from toolgate.shared.services.approval_rules import (
    GLOBAL_SCOPE,
    ApprovalScope,
    AutoApproval,
    AutoApprovalKind,
    AutoApprovedMCPServers,
    MCPServerApprovalState,
    RuleKind,
    SensitiveFileRule,
    SensitiveFilesRules,
    TerminalCommandsRules,
)
from toolgate.shared.services.command_classifier import extract_terminal_command_names

logger = logging.getLogger(__name__)

DEFAULT_RULES_DIR = Path.home() / ".toolgate" / "auto_approval"

_FILENAMES: dict[RuleKind, str] = {
    RuleKind.TERMINAL: "terminal_commands.json",
    RuleKind.SENSITIVE_FILE: "sensitive_files.json",
    RuleKind.MCP: "mcp_servers.json",
}

RuleChangeCallback = Callable[[RuleKind, ApprovalScope], None]


@dataclass
class _SessionApprovals:
    all_commands_allowed: bool = False
    # Command names ("git") and exact command lines ("git status").
    allowed_commands: set[str] = field(default_factory=set)
    mcp_servers: dict[str, MCPServerApprovalState] = field(default_factory=dict)
    # tool name -> allowed sensitive file keys
    sensitive_files: dict[str, set[str]] = field(default_factory=dict)


def _normalize(value: str) -> str:
    return value.strip()


def _write_json_atomically(path: Path, payload: dict[str, Any]) -> None:
    """Replace *path* with *payload*, never leaving a half-written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class ApprovalRuleStore:
    """Reads, writes and evaluates approval rules at both scopes."""

    def __init__(self, rules_dir: Path | str | None = None) -> None:
        self._rules_dir = Path(rules_dir) if rules_dir is not None else DEFAULT_RULES_DIR
        self._lock = threading.RLock()
        self._sessions: dict[str, _SessionApprovals] = {}
        self._terminal = TerminalCommandsRules()
        self._sensitive = SensitiveFilesRules()
        self._mcp = AutoApprovedMCPServers()
        self._read_errors: dict[RuleKind, RuleStoreReadError] = {}
        self._subscribers: list[RuleChangeCallback] = []
        self._loaded = False

    @property
    def rules_dir(self) -> Path:
        return self._rules_dir

    def path_for(self, kind: RuleKind) -> Path:
        return self._rules_dir / _FILENAMES[kind]

    # ── Change notification ──

    def subscribe(self, callback: RuleChangeCallback) -> Callable[[], None]:
        """Register *callback* for rule changes. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, kind: RuleKind, scope: ApprovalScope) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(kind, scope)
            except Exception:
                logger.exception("Rule change subscriber failed for %s", kind.value)

    # ── Loading ──

    def load(self) -> None:
        """Load all global rule files."""
        for kind in RuleKind:
            self.reload(kind)
        self._loaded = True

    def reload(self, kind: RuleKind) -> None:
        """Re-read one global rule file and publish the change.

        A file that cannot be read or parsed is recorded as a read error;
        evaluations against that rule set fail closed until a reload
        succeeds or the set is rewritten.
        """
        path = self.path_for(kind)
        try:
            data = self._read_json(path)
        except RuleStoreReadError as exc:
            logger.warning("%s", exc)
            with self._lock:
                self._read_errors[kind] = exc
            self._publish(kind, ApprovalScope.global_scope())
            return

        with self._lock:
            self._read_errors.pop(kind, None)
            if kind is RuleKind.TERMINAL:
                self._terminal = TerminalCommandsRules.from_dict(data)
            elif kind is RuleKind.SENSITIVE_FILE:
                self._sensitive = SensitiveFilesRules.from_dict(data)
            else:
                self._mcp = AutoApprovedMCPServers.from_dict(data)
        logger.debug("Loaded %s rules from %s", kind.value, path)
        self._publish(kind, ApprovalScope.global_scope())

    @staticmethod
    def _read_json(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise RuleStoreReadError(path.stem, str(path), str(exc)) from exc
        if not isinstance(data, dict):
            raise RuleStoreReadError(path.stem, str(path), "top level is not an object")
        return data

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _check_readable(self, kind: RuleKind) -> None:
        error = self._read_errors.get(kind)
        if error is not None:
            raise error

    # ── Global snapshots ──

    def terminal_rules(self) -> TerminalCommandsRules:
        """Current global terminal rules. Do not mutate the returned object."""
        self._ensure_loaded()
        self._check_readable(RuleKind.TERMINAL)
        return self._terminal

    def sensitive_file_rules(self) -> SensitiveFilesRules:
        """Current global sensitive-file rules. Do not mutate the returned object."""
        self._ensure_loaded()
        self._check_readable(RuleKind.SENSITIVE_FILE)
        return self._sensitive

    def mcp_servers(self) -> AutoApprovedMCPServers:
        """Current global MCP approvals. Do not mutate the returned object."""
        self._ensure_loaded()
        self._check_readable(RuleKind.MCP)
        return self._mcp

    def _persist(self, kind: RuleKind, snapshot: Any) -> None:
        path = self.path_for(kind)
        try:
            _write_json_atomically(path, snapshot.to_dict())
        except OSError as exc:
            raise RulePersistenceError(kind.value, str(path), str(exc)) from exc

    def _replace_terminal(self, mutate: Callable[[TerminalCommandsRules], None]) -> None:
        with self._lock:
            self._ensure_loaded()
            updated = (
                TerminalCommandsRules()
                if RuleKind.TERMINAL in self._read_errors
                else self._terminal.copy()
            )
            mutate(updated)
            self._persist(RuleKind.TERMINAL, updated)
            self._terminal = updated
            self._read_errors.pop(RuleKind.TERMINAL, None)
        self._publish(RuleKind.TERMINAL, ApprovalScope.global_scope())

    def _replace_sensitive(self, mutate: Callable[[SensitiveFilesRules], None]) -> None:
        with self._lock:
            self._ensure_loaded()
            updated = (
                SensitiveFilesRules()
                if RuleKind.SENSITIVE_FILE in self._read_errors
                else self._sensitive.copy()
            )
            mutate(updated)
            self._persist(RuleKind.SENSITIVE_FILE, updated)
            self._sensitive = updated
            self._read_errors.pop(RuleKind.SENSITIVE_FILE, None)
        self._publish(RuleKind.SENSITIVE_FILE, ApprovalScope.global_scope())

    def _replace_mcp(self, mutate: Callable[[AutoApprovedMCPServers], None]) -> None:
        with self._lock:
            self._ensure_loaded()
            updated = (
                AutoApprovedMCPServers()
                if RuleKind.MCP in self._read_errors
                else self._mcp.copy()
            )
            mutate(updated)
            self._persist(RuleKind.MCP, updated)
            self._mcp = updated
            self._read_errors.pop(RuleKind.MCP, None)
        self._publish(RuleKind.MCP, ApprovalScope.global_scope())

    def _session(self, conversation_id: str) -> _SessionApprovals:
        return self._sessions.setdefault(conversation_id, _SessionApprovals())

    # ── Terminal commands ──

    def allow_commands(self, scope: ApprovalScope, commands: list[str]) -> None:
        """Grant command names or exact command lines at *scope*.

        Entries containing whitespace are exact command lines; anything
        else is a command name matching every invocation of that command.
        """
        keys = [_normalize(c) for c in commands]
        keys = [k for k in keys if k]
        if not keys:
            return
        if scope.is_global:
            def grant(rules: TerminalCommandsRules) -> None:
                for key in keys:
                    rules.commands[key] = True
            self._replace_terminal(grant)
            return
        if not scope.conversation_id:
            return
        with self._lock:
            self._session(scope.conversation_id).allowed_commands.update(keys)
        self._publish(RuleKind.TERMINAL, scope)

    def allow_all_commands(self, conversation_id: str) -> None:
        if not conversation_id:
            return
        with self._lock:
            self._session(conversation_id).all_commands_allowed = True
        self._publish(RuleKind.TERMINAL, ApprovalScope.session(conversation_id))

    def seed_commands(self, commands: list[str]) -> list[str]:
        """Allow globally each command that has no global rule yet.

        Existing entries, ``false`` ones included, are left alone. Returns
        the commands that were added.
        """
        known = self.terminal_rules().commands
        missing = []
        for command in commands:
            key = _normalize(command)
            if key and key not in known and key not in missing:
                missing.append(key)
        if missing:
            self.allow_commands(GLOBAL_SCOPE, missing)
        return missing

    def set_command_rule(self, command: str, auto_approve: bool) -> None:
        """Set one global terminal rule (the settings table's toggle)."""
        key = _normalize(command)
        if not key:
            return

        def update(rules: TerminalCommandsRules) -> None:
            rules.commands[key] = auto_approve

        self._replace_terminal(update)

    def remove_command_rule(self, command: str) -> bool:
        """Delete one global terminal rule. Returns True if it existed."""
        key = _normalize(command)
        if key not in self.terminal_rules().commands:
            return False

        def update(rules: TerminalCommandsRules) -> None:
            rules.commands.pop(key, None)

        self._replace_terminal(update)
        return True

    def is_terminal_command_allowed(self, conversation_id: str, command_line: str) -> bool:
        """Return True if every command in *command_line* is granted.

        Precedence: session allow-all, then an exact command-line entry at
        either scope, then all extracted command names granted by the
        session set or a global ``true`` entry.

        Raises RuleStoreReadError if the global rules could not be read.
        """
        line = _normalize(command_line)
        if not conversation_id or not line:
            return False
        global_commands = self.terminal_rules().commands
        with self._lock:
            session = self._sessions.get(conversation_id)
            session_commands = set(session.allowed_commands) if session else set()
            all_allowed = session.all_commands_allowed if session else False

        if all_allowed:
            return True
        if line in session_commands or global_commands.get(line) is True:
            return True

        names = [_normalize(n) for n in extract_terminal_command_names(line)]
        names = [n for n in names if n]
        if not names:
            return False
        return all(
            name in session_commands or global_commands.get(name) is True
            for name in names
        )

    # ── Sensitive files ──

    def allow_sensitive_file(
        self,
        scope: ApprovalScope,
        tool_name: str,
        file_key: str,
        description: str = "",
    ) -> None:
        tool = _normalize(tool_name)
        key = _normalize(file_key)
        if not key:
            return
        if scope.is_global:
            def grant(rules: SensitiveFilesRules) -> None:
                existing = rules.rules.get(key)
                rules.rules[key] = SensitiveFileRule(
                    description=description or (existing.description if existing else ""),
                    auto_approve=True,
                )
            self._replace_sensitive(grant)
            return
        if not scope.conversation_id or not tool:
            return
        with self._lock:
            self._session(scope.conversation_id).sensitive_files.setdefault(tool, set()).add(key)
        self._publish(RuleKind.SENSITIVE_FILE, scope)

    def set_sensitive_file_rule(self, file_key: str, description: str, auto_approve: bool) -> None:
        key = _normalize(file_key)
        if not key:
            return

        def update(rules: SensitiveFilesRules) -> None:
            rules.rules[key] = SensitiveFileRule(description=description, auto_approve=auto_approve)

        self._replace_sensitive(update)

    def is_sensitive_file_allowed(self, conversation_id: str, tool_name: str, file_key: str) -> bool:
        """Raises RuleStoreReadError if the global rules could not be read."""
        tool = _normalize(tool_name)
        key = _normalize(file_key)
        if not conversation_id or not key:
            return False
        rule = self.sensitive_file_rules().rules.get(key)
        if rule is not None and rule.auto_approve:
            return True
        with self._lock:
            session = self._sessions.get(conversation_id)
            return bool(session and key in session.sensitive_files.get(tool, set()))

    # ── MCP servers and tools ──

    def allow_mcp_tool(self, scope: ApprovalScope, server_name: str, tool_name: str) -> None:
        server = _normalize(server_name)
        tool = _normalize(tool_name)
        if not server or not tool:
            return
        if scope.is_global:
            self.set_mcp_tool_allowed(server, tool, True)
            return
        if not scope.conversation_id:
            return
        with self._lock:
            state = self._session(scope.conversation_id).mcp_servers.setdefault(
                server, MCPServerApprovalState(),
            )
            state.allowed_tools.add(tool)
        self._publish(RuleKind.MCP, scope)

    def allow_mcp_server(self, scope: ApprovalScope, server_name: str) -> None:
        server = _normalize(server_name)
        if not server:
            return
        if scope.is_global:
            self.set_mcp_server_allowed(server, True)
            return
        if not scope.conversation_id:
            return
        with self._lock:
            state = self._session(scope.conversation_id).mcp_servers.setdefault(
                server, MCPServerApprovalState(),
            )
            state.is_server_allowed = True
        self._publish(RuleKind.MCP, scope)

    def set_mcp_server_allowed(self, server_name: str, allowed: bool) -> None:
        server = _normalize(server_name)
        if not server:
            return

        def update(approvals: AutoApprovedMCPServers) -> None:
            approvals.servers.setdefault(server, MCPServerApprovalState()).is_server_allowed = allowed

        self._replace_mcp(update)

    def set_mcp_tool_allowed(self, server_name: str, tool_name: str, allowed: bool) -> None:
        server = _normalize(server_name)
        tool = _normalize(tool_name)
        if not server or not tool:
            return

        def update(approvals: AutoApprovedMCPServers) -> None:
            state = approvals.servers.setdefault(server, MCPServerApprovalState())
            if allowed:
                state.allowed_tools.add(tool)
            else:
                state.allowed_tools.discard(tool)

        self._replace_mcp(update)

    def is_mcp_allowed(self, conversation_id: str, server_name: str, tool_name: str) -> bool:
        """Server-level approval wins over tool-level, at either scope.

        Raises RuleStoreReadError if the global rules could not be read.
        """
        server = _normalize(server_name)
        tool = _normalize(tool_name)
        if not conversation_id or not server or not tool:
            return False
        global_state = self.mcp_servers().servers.get(server)
        if global_state is not None and global_state.allows(tool):
            return True
        with self._lock:
            session = self._sessions.get(conversation_id)
            state = session.mcp_servers.get(server) if session else None
            return bool(state and state.allows(tool))

    # ── Approvals chosen at confirmation time ──

    def approve(self, approval: AutoApproval) -> None:
        """Store a remembered approval. Raises RulePersistenceError for global scope failures."""
        scope = approval.scope
        if approval.kind is AutoApprovalKind.MCP_TOOL:
            self.allow_mcp_tool(scope, approval.server_name, approval.tool_name)
        elif approval.kind is AutoApprovalKind.MCP_SERVER:
            self.allow_mcp_server(scope, approval.server_name)
        elif approval.kind is AutoApprovalKind.SENSITIVE_FILE:
            self.allow_sensitive_file(
                scope, approval.tool_name, approval.file_key, approval.description,
            )
        elif approval.kind is AutoApprovalKind.TERMINAL_COMMANDS:
            self.allow_commands(scope, list(approval.commands))
        elif approval.kind is AutoApprovalKind.ALL_TERMINAL_COMMANDS:
            if scope.conversation_id:
                self.allow_all_commands(scope.conversation_id)

    # ── Cleanup ──

    def clear(self, scope: ApprovalScope, kind: RuleKind | None = None) -> None:
        """Drop rules at *scope*; all kinds unless *kind* is given."""
        if scope.is_session:
            if not scope.conversation_id:
                return
            with self._lock:
                session = self._sessions.get(scope.conversation_id)
                if session is None:
                    return
                if kind is None:
                    del self._sessions[scope.conversation_id]
                elif kind is RuleKind.TERMINAL:
                    session.all_commands_allowed = False
                    session.allowed_commands.clear()
                elif kind is RuleKind.SENSITIVE_FILE:
                    session.sensitive_files.clear()
                else:
                    session.mcp_servers.clear()
            for changed in ([kind] if kind else list(RuleKind)):
                self._publish(changed, scope)
            return

        kinds = [kind] if kind else list(RuleKind)
        for changed in kinds:
            if changed is RuleKind.TERMINAL:
                self._replace_terminal(lambda rules: rules.commands.clear())
            elif changed is RuleKind.SENSITIVE_FILE:
                self._replace_sensitive(lambda rules: rules.rules.clear())
            else:
                self._replace_mcp(lambda approvals: approvals.servers.clear())

    def clear_conversation(self, conversation_id: str | None) -> None:
        """Forget every session approval for *conversation_id*."""
        if not conversation_id:
            return
        self.clear(ApprovalScope.session(conversation_id))
