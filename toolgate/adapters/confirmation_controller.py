"""Bridge between confirmation dialogs and the gateway.

The UI shows a ToolConfirmationScreen for every ToolConfirmationRequested
event and hands the dismissed result string back here. "Always" answers
become an AutoApproval that the gateway stores before releasing the call.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from toolgate.adapters.event_bus import EventBus
from toolgate.adapters.events import ToolConfirmationRequested
from toolgate.engine.errors import RulePersistenceError, ToolCallNotFoundError
from toolgate.engine.gateway import ConfirmationGateway
from toolgate.shared.services.approval_rules import ApprovalScope, AutoApproval
from toolgate.shared.services.command_classifier import extract_terminal_command_names

logger = logging.getLogger(__name__)

DecisionPrompt = Callable[[ToolConfirmationRequested], Awaitable[str | None]]

_SCOPED_DECISIONS = {
    "accept_session": False,
    "accept_global": True,
    "allow_server_session": False,
    "allow_server_global": True,
}


def approval_for(event: ToolConfirmationRequested, decision: str) -> AutoApproval | None:
    """The rule to remember for *decision*, or None for a one-off answer."""
    if decision not in _SCOPED_DECISIONS:
        return None
    conversation_id = event.conversation_id or ""
    scope = (
        ApprovalScope.global_scope()
        if _SCOPED_DECISIONS[decision]
        else ApprovalScope.session(conversation_id)
    )

    if event.category == "mcp" and event.mcp_server:
        if decision.startswith("allow_server"):
            return AutoApproval.mcp_server(scope, event.mcp_server)
        return AutoApproval.mcp_tool(scope, event.mcp_server, event.tool_name)

    if decision.startswith("allow_server"):
        return None

    if event.category == "sensitive_file" and event.file_key:
        return AutoApproval.sensitive_file(
            scope, event.tool_name, event.file_key, description=event.message,
        )

    if event.category == "terminal" and event.command:
        names = extract_terminal_command_names(event.command)
        if names:
            return AutoApproval.terminal_commands(scope, names)
    return None


class ConfirmationController:
    """Applies dialog results to a ConfirmationGateway."""

    def __init__(self, gateway: ConfirmationGateway) -> None:
        self._gateway = gateway

    async def resolve(self, event: ToolConfirmationRequested, decision: str | None) -> bool:
        """Apply *decision* to the parked call of *event*.

        Unknown or missing decisions reject. If remembering the approval
        fails the call is accepted once anyway and the failure is logged.
        Returns False if the call was no longer pending. Raises
        ToolCallNotFoundError if the call was answered but its history
        entry is gone.
        """
        tool_call_id = event.tool_call_id
        if decision == "accept":
            return await self._gateway.accept(tool_call_id)

        if decision in _SCOPED_DECISIONS:
            remember = approval_for(event, decision)
            if remember is None:
                logger.debug(
                    "Nothing to remember for %s call=%s, accepting once",
                    decision, tool_call_id[:8],
                )
                return await self._gateway.accept(tool_call_id)
            try:
                return await self._gateway.accept(tool_call_id, remember=remember)
            except RulePersistenceError as exc:
                logger.error("Could not save approval rule, accepting once: %s", exc)
                return await self._gateway.accept(tool_call_id)

        if decision not in (None, "reject"):
            logger.warning("Unknown confirmation decision %r, rejecting", decision)
        return await self._gateway.reject(tool_call_id)

    async def run(self, event_bus: EventBus, prompt: DecisionPrompt) -> None:
        """Consume *event_bus*, asking *prompt* for every parked call.

        Other events are ignored. Returns when the bus is closed.
        """
        async for event in event_bus.consume():
            if not isinstance(event, ToolConfirmationRequested):
                continue
            logger.info(
                "Asking user about call=%s tool=%s",
                event.tool_call_id[:8], event.tool_name,
            )
            decision = await prompt(event)
            try:
                await self.resolve(event, decision)
            except ToolCallNotFoundError as exc:
                logger.warning("Decision applied but history not updated: %s", exc)


def screen_for(event: ToolConfirmationRequested):
    """Build the modal dialog for *event*."""
    from toolgate.tui.screens.tool_confirmation import ToolConfirmationScreen

    return ToolConfirmationScreen(
        tool_name=event.tool_name,
        title=event.title,
        message=event.message,
        command=event.command,
        category=event.category,
        mcp_server=event.mcp_server,
        file_key=event.file_key,
    )
