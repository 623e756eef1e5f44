"""Auto-approval policy for tool confirmation requests.

Decides whether a tool call may run without asking the user. The checks
run in a fixed order and the first one that applies decides:

1. MCP tools, recognised by their confirmation title
   (``Confirm MCP Tool: <tool> - <server>(MCP Server)``).
2. Sensitive file operations, recognised by their confirmation message.
3. Terminal commands: every command name in the command line must be
   granted for the conversation.

Anything that cannot be evaluated is denied.
"""
from __future__ import annotations

import logging
import re

from toolgate.engine.errors import ToolGateError
from toolgate.shared.models.invocation import InvokeToolConfirmationParams
from toolgate.shared.services.rule_store import ApprovalRuleStore

logger = logging.getLogger(__name__)

_MCP_TOOL_TITLE_RE = re.compile(r"Confirm MCP Tool: .+ - (.+)\(MCP Server\)")
_SENSITIVE_DESCRIPTION_RE = re.compile(r"^(.*?)\s*needs confirmation\.", re.IGNORECASE)
_SENSITIVE_MARKER = "sensitive files"
DEFAULT_SENSITIVE_FILE_KEY = "sensitive files"


def extract_mcp_server_name(title: str) -> str | None:
    """Return the MCP server named in a confirmation title, if any."""
    match = _MCP_TOOL_TITLE_RE.search(title or "")
    if not match:
        return None
    name = match.group(1).strip()
    return name or None


def is_sensitive_file_operation(message: str) -> bool:
    return _SENSITIVE_MARKER in (message or "").casefold()


def sensitive_file_key(message: str) -> str:
    """Derive the rule key for a sensitive file confirmation message.

    The key is the lowercased description that precedes
    "needs confirmation."; messages without one share a default key.
    """
    match = _SENSITIVE_DESCRIPTION_RE.search(message or "")
    if match:
        description = match.group(1).strip()
        if description:
            return description.lower()
    return DEFAULT_SENSITIVE_FILE_KEY


class AutoApprovalPolicy:
    """Evaluates confirmation requests against an ApprovalRuleStore."""

    def __init__(self, rule_store: ApprovalRuleStore) -> None:
        self._rules = rule_store

    @property
    def rule_store(self) -> ApprovalRuleStore:
        return self._rules

    async def should_auto_approve(self, params: InvokeToolConfirmationParams) -> bool:
        """Return True if the call may proceed without user confirmation."""
        try:
            return self._evaluate(params)
        except ToolGateError as exc:
            logger.warning(
                "Auto-approval check failed for tool=%s call=%s, asking user: %s",
                params.name,
                params.tool_call_id[:8],
                exc,
            )
            return False
        except Exception:
            logger.exception(
                "Unexpected auto-approval failure for tool=%s, asking user",
                params.name,
            )
            return False

    def _evaluate(self, params: InvokeToolConfirmationParams) -> bool:
        conversation_id = params.conversation_id
        server_name = extract_mcp_server_name(params.title or "")
        if server_name:
            allowed = self._rules.is_mcp_allowed(conversation_id, server_name, params.name)
            logger.debug(
                "MCP approval server=%s tool=%s allowed=%s",
                server_name, params.name, allowed,
            )
            return allowed

        message = params.message or ""
        if is_sensitive_file_operation(message):
            file_key = sensitive_file_key(message)
            allowed = self._rules.is_sensitive_file_allowed(
                conversation_id, params.name, file_key,
            )
            logger.debug(
                "Sensitive file approval tool=%s key=%s allowed=%s",
                params.name, file_key, allowed,
            )
            return allowed

        command = params.command_text
        if not command.strip():
            return False
        allowed = self._rules.is_terminal_command_allowed(conversation_id, command)
        logger.debug("Terminal approval cmd=%s allowed=%s", command.strip()[:80], allowed)
        return allowed
