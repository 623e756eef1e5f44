"""Confirmation gateway: the entry point for tool confirmation requests.

For each request the gateway asks the auto-approval policy, records the
tool call in the conversation history, and either answers at once or
parks the call until the user accepts, rejects or cancels it.

    gateway = build_gateway(GateConfig.from_env())
    reply = await gateway.handle_invocation(request)   # may wait for the user
    ...
    await gateway.accept(tool_call_id)                 # from the UI side
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from toolgate.adapters.event_bus import EventBus
from toolgate.adapters.events import (
    GateEvent,
    HistoryChanged,
    ToolConfirmationRequested,
    ToolConfirmationResolved,
)
from toolgate.engine.auto_approval import (
    AutoApprovalPolicy,
    extract_mcp_server_name,
    is_sensitive_file_operation,
    sensitive_file_key,
)
from toolgate.engine.config import GateConfig
from toolgate.engine.errors import MalformedRequestError, ToolCallNotFoundError
from toolgate.engine.history_store import ConversationHistoryStore
from toolgate.engine.pending_registry import PendingConfirmationRegistry, PendingToolCall
from toolgate.engine.tool_call_status import (
    find_turn_containing_tool_call,
    locate_and_patch,
    make_status_update,
)
from toolgate.engine.turn_tracking import ConversationTurnTracking
from toolgate.engine.yaml_config import ToolGateSettings, load_yaml_config
from toolgate.shared.models.conversation import (
    AgentRound,
    AgentToolCall,
    ChatTurn,
    ToolCallStatus,
    TurnRole,
)
from toolgate.shared.models.invocation import (
    InvokeToolConfirmationParams,
    InvokeToolConfirmationRequest,
    ToolConfirmationReply,
)
from toolgate.shared.services.approval_rules import AutoApproval
from toolgate.shared.services.rule_store import ApprovalRuleStore

logger = logging.getLogger(__name__)


def make_edit_agent_rounds(
    params: InvokeToolConfirmationParams,
    status: ToolCallStatus,
) -> list[AgentRound]:
    """The single-round, single-tool-call patch recorded for a request."""
    return [
        AgentRound(
            round_id=params.round_id,
            reply="",
            tool_calls=[
                AgentToolCall(
                    id=params.tool_call_id,
                    name=params.name,
                    status=status,
                    input=dict(params.input) or None,
                    input_message=params.message,
                    invoke_params=params.to_dict(),
                    title=params.title,
                )
            ],
        )
    ]


def _describe_request(params: InvokeToolConfirmationParams) -> ToolConfirmationRequested:
    server = extract_mcp_server_name(params.title or "")
    message = params.message or ""
    event = ToolConfirmationRequested(
        conversation_id=params.conversation_id,
        turn_id=params.turn_id,
        round_id=params.round_id,
        tool_call_id=params.tool_call_id,
        tool_name=params.name,
        title=params.title or "",
        message=message,
        command=params.command_text,
    )
    if server:
        event.category = "mcp"
        event.mcp_server = server
    elif is_sensitive_file_operation(message):
        event.category = "sensitive_file"
        event.file_key = sensitive_file_key(message)
    elif event.command:
        event.category = "terminal"
    return event


class ConfirmationGateway:
    """Routes tool confirmation requests through policy, history and the user."""

    def __init__(
        self,
        history: ConversationHistoryStore,
        policy: AutoApprovalPolicy,
        registry: PendingConfirmationRegistry,
        tracking: ConversationTurnTracking | None = None,
        config: GateConfig | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._history = history
        self._policy = policy
        self._registry = registry
        self._tracking = tracking or ConversationTurnTracking()
        self._config = config or GateConfig()
        self._event_bus = event_bus

    @property
    def history(self) -> ConversationHistoryStore:
        return self._history

    @property
    def registry(self) -> PendingConfirmationRegistry:
        return self._registry

    @property
    def tracking(self) -> ConversationTurnTracking:
        return self._tracking

    @property
    def rule_store(self) -> ApprovalRuleStore:
        return self._policy.rule_store

    @property
    def event_bus(self) -> EventBus | None:
        return self._event_bus

    # ── Inbound requests ──

    async def handle_invocation(
        self, request: InvokeToolConfirmationRequest,
    ) -> ToolConfirmationReply | None:
        """Decide on one tool call and return the reply for its caller.

        Returns at once for auto-approved calls; otherwise waits for the
        user's decision. Requests without a conversation id or params are
        dropped and get no reply (None); callers need their own timeout.
        """
        params = request.params
        if params is None or not params.conversation_id:
            logger.warning(
                "Dropping tool confirmation request %s without params/conversation",
                request.id,
            )
            return None

        approved = (
            self._config.auto_approval_enabled
            and await self._policy.should_auto_approve(params)
        )
        parent_turn_id = self._tracking.parent_of(params.turn_id)
        status = ToolCallStatus.ACCEPTED if approved else ToolCallStatus.WAIT_FOR_CONFIRMATION

        await self._history.append(
            ChatTurn(
                id=params.turn_id,
                role=TurnRole.ASSISTANT,
                parent_turn_id=parent_turn_id,
                edit_agent_rounds=make_edit_agent_rounds(params, status),
            ),
            self._tracking,
        )

        if approved:
            logger.info(
                "Tool call auto-approved call=%s tool=%s",
                params.tool_call_id[:8], params.name,
            )
            await self._emit(ToolConfirmationResolved(
                conversation_id=params.conversation_id,
                request_id=request.id,
                tool_call_id=params.tool_call_id,
                accepted=True,
                decision="auto",
            ))
            return ToolConfirmationReply(request_id=request.id, accepted=True)

        pending = PendingToolCall(
            request_id=request.id,
            conversation_id=params.conversation_id,
            turn_id=params.turn_id,
            round_id=params.round_id,
            tool_call_id=params.tool_call_id,
            name=params.name,
        )
        future = await self._registry.park(pending)
        event = _describe_request(params)
        event.request_id = request.id
        try:
            await self._emit(event)
            return await self._await_decision(pending, future)
        except asyncio.CancelledError:
            # The caller is gone; release the call so it cannot linger.
            logger.info(
                "Caller cancelled while call=%s was parked, cancelling call",
                pending.tool_call_id[:8],
            )
            await asyncio.shield(self._abandon(pending.tool_call_id, "cancel"))
            raise

    async def handle_message(self, data: dict) -> dict | None:
        """Handle one raw JSON-RPC request dict; returns the reply dict.

        Malformed requests are logged and dropped (None).
        """
        try:
            request = InvokeToolConfirmationRequest.from_dict(data)
        except MalformedRequestError as exc:
            logger.warning("Dropping tool confirmation request %s: %s", data.get("id"), exc.reason)
            return None
        reply = await self.handle_invocation(request)
        return reply.to_dict() if reply is not None else None

    async def _await_decision(
        self,
        pending: PendingToolCall,
        future: asyncio.Future[ToolConfirmationReply],
    ) -> ToolConfirmationReply:
        timeout = self._config.confirmation_timeout
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Confirmation timed out after %ss call=%s, cancelling",
                timeout, pending.tool_call_id[:8],
            )
            await self._abandon(pending.tool_call_id, "timeout")
            return await future

    # ── User decisions ──

    async def accept(
        self,
        tool_call_id: str,
        remember: AutoApproval | None = None,
    ) -> bool:
        """Approve a parked tool call.

        If *remember* is given the rule is stored first; a storage failure
        raises RulePersistenceError and leaves the call pending. Returns
        False if nothing was pending for *tool_call_id*. Raises
        ToolCallNotFoundError if the call was answered but its history
        entry could not be patched.
        """
        if remember is not None:
            if tool_call_id not in self._registry:
                logger.debug("Ignoring accept for call=%s: not pending", tool_call_id[:8])
                return False
            # Rule files are written with fsync; keep that off the event loop.
            await asyncio.to_thread(self.rule_store.approve, remember)
        return await self._decide(tool_call_id, accepted=True, decision="accept")

    async def reject(self, tool_call_id: str) -> bool:
        """Deny a parked tool call. Returns False if nothing was pending."""
        return await self._decide(tool_call_id, accepted=False, decision="reject")

    async def cancel(self, tool_call_id: str) -> bool:
        return await self._decide(tool_call_id, accepted=False, decision="cancel")

    async def cancel_conversation(self, conversation_id: str) -> int:
        """Cancel every parked call of one conversation. Returns how many."""
        released = await self._registry.release_conversation(conversation_id)
        await self._finish_all(released)
        return len(released)

    async def close_conversation(self, conversation_id: str) -> int:
        """Cancel the conversation's parked calls and drop its session rules."""
        cancelled = await self.cancel_conversation(conversation_id)
        self.rule_store.clear_conversation(conversation_id)
        logger.info(
            "Conversation %s closed, %d pending call(s) cancelled",
            conversation_id[:8], cancelled,
        )
        return cancelled

    async def cancel_all(self) -> int:
        """Cancel every parked call (process shutdown)."""
        released = await self._registry.release_all()
        await self._finish_all(released)
        return len(released)

    async def _finish_all(self, released: list[PendingToolCall]) -> None:
        for pending in released:
            try:
                await self._finish(pending, accepted=False, decision="cancel")
            except ToolCallNotFoundError as exc:
                logger.warning("%s; caller answered anyway", exc)

    async def _abandon(self, tool_call_id: str, decision: str) -> None:
        """Cancel a call nobody can decide on any more (timeout, caller gone)."""
        try:
            await self._decide(tool_call_id, accepted=False, decision=decision)
        except ToolCallNotFoundError as exc:
            logger.warning("%s; caller answered anyway", exc)

    async def _decide(self, tool_call_id: str, *, accepted: bool, decision: str) -> bool:
        pending = await self._registry.release(tool_call_id)
        if pending is None:
            logger.debug("No pending confirmation for call=%s, %s ignored", tool_call_id[:8], decision)
            return False
        await self._finish(pending, accepted=accepted, decision=decision)
        return True

    async def _finish(self, pending: PendingToolCall, *, accepted: bool, decision: str) -> None:
        """Patch the history, then answer the caller.

        The caller always gets its reply; a history miss is raised only
        after the reply and the event have gone out.
        """
        new_status = ToolCallStatus.ACCEPTED if accepted else ToolCallStatus.CANCELLED
        not_found: ToolCallNotFoundError | None = None
        try:
            await self.update_tool_call_status(pending.turn_id, pending.tool_call_id, new_status)
        except ToolCallNotFoundError as exc:
            not_found = exc
        pending.resolve(accepted)
        logger.info(
            "Tool call %s call=%s tool=%s",
            decision, pending.tool_call_id[:8], pending.name,
        )
        await self._emit(ToolConfirmationResolved(
            conversation_id=pending.conversation_id,
            request_id=pending.request_id,
            tool_call_id=pending.tool_call_id,
            accepted=accepted,
            decision=decision,
        ))
        if not_found is not None:
            raise not_found

    # ── Status updates ──

    async def update_tool_call_status(
        self,
        turn_id: str,
        tool_call_id: str,
        status: ToolCallStatus,
    ) -> None:
        """Patch one tool call's status wherever it sits in the history.

        Raises ToolCallNotFoundError if the turn or the tool call is unknown.
        """
        history = await self._history.read()
        target = find_turn_containing_tool_call(turn_id, self._tracking, history)
        if target is None:
            raise ToolCallNotFoundError(tool_call_id, turn_id)
        patch = locate_and_patch(tool_call_id, status, target.edit_agent_rounds)
        if patch is None:
            raise ToolCallNotFoundError(tool_call_id, turn_id)
        await self._history.append(make_status_update(target, patch), self._tracking)

    async def _emit(self, event: GateEvent) -> None:
        if self._event_bus is not None:
            await self._event_bus.emit(event)


@dataclass
class GatewayServices:
    """Everything build_gateway wires together."""
    gateway: ConfirmationGateway
    rule_store: ApprovalRuleStore
    history: ConversationHistoryStore
    registry: PendingConfirmationRegistry
    tracking: ConversationTurnTracking
    event_bus: EventBus


def build_gateway(
    config: GateConfig | None = None,
    seed_terminal_commands: list[str] | None = None,
) -> GatewayServices:
    """Construct the gateway and its collaborators once, at startup.

    Without *config* the settings come from ``~/.toolgate/config.yaml``
    (and TOOLGATE_* variables), including its ``terminal.allow`` seed.
    """
    if config is None:
        return build_gateway_from_settings(load_yaml_config())
    rule_store = ApprovalRuleStore(config.rules_path)
    rule_store.load()
    if seed_terminal_commands:
        seeded = rule_store.seed_commands(seed_terminal_commands)
        if seeded:
            logger.info("Seeded global terminal rules: %s", ", ".join(seeded))
    history = ConversationHistoryStore()
    registry = PendingConfirmationRegistry()
    tracking = ConversationTurnTracking()
    event_bus = EventBus(maxsize=config.event_queue_size)
    history.subscribe(
        lambda turns: event_bus.emit_nowait(HistoryChanged(turn_count=len(turns)))
    )
    gateway = ConfirmationGateway(
        history=history,
        policy=AutoApprovalPolicy(rule_store),
        registry=registry,
        tracking=tracking,
        config=config,
        event_bus=event_bus,
    )
    return GatewayServices(
        gateway=gateway,
        rule_store=rule_store,
        history=history,
        registry=registry,
        tracking=tracking,
        event_bus=event_bus,
    )


def build_gateway_from_settings(settings: ToolGateSettings) -> GatewayServices:
    """build_gateway for parsed YAML settings, seeding ``terminal.allow``."""
    return build_gateway(
        settings.gate,
        seed_terminal_commands=settings.seed_terminal_commands,
    )
