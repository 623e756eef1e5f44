"""Locate a tool call in the history and build a status patch for it.

Patches are shaped so that the history store's ordinary upsert-by-id
merge applies them: a tool call nested in a sub-agent round is patched
through its parent round, never addressed directly.
"""
from __future__ import annotations

from toolgate.engine.turn_tracking import ConversationTurnTracking
from toolgate.shared.models.conversation import (
    AgentRound,
    AgentToolCall,
    ChatTurn,
    ToolCallStatus,
    TurnRole,
    TurnStatus,
)


def find_turn_containing_tool_call(
    turn_id: str,
    tracking: ConversationTurnTracking,
    history: list[ChatTurn],
) -> ChatTurn | None:
    """Return the top-level assistant turn that owns *turn_id*.

    For a sub-agent turn this is its parent turn.
    """
    target_id = tracking.resolve_root(turn_id)
    for turn in history:
        if turn.id == target_id and turn.role is TurnRole.ASSISTANT:
            return turn
    return None


def _status_only(tool_call: AgentToolCall, new_status: ToolCallStatus) -> AgentToolCall:
    return AgentToolCall(id=tool_call.id, name=tool_call.name, status=new_status)


def locate_and_patch(
    tool_call_id: str,
    new_status: ToolCallStatus,
    rounds: list[AgentRound],
) -> AgentRound | None:
    """Build a round patch that sets *tool_call_id* to *new_status*.

    Main rounds are searched first. A match inside a sub-agent round gives
    a patch at the parent round id with no main tool calls and a single
    sub-agent round. Returns None if the tool call is not in *rounds*.
    """
    for round_ in rounds:
        for tool_call in round_.tool_calls or []:
            if tool_call.id == tool_call_id:
                return AgentRound(
                    round_id=round_.round_id,
                    tool_calls=[_status_only(tool_call, new_status)],
                )

    for round_ in rounds:
        for sub_round in round_.sub_agent_rounds or []:
            for tool_call in sub_round.tool_calls or []:
                if tool_call.id == tool_call_id:
                    return AgentRound(
                        round_id=round_.round_id,
                        tool_calls=[],
                        sub_agent_rounds=[
                            AgentRound(
                                round_id=sub_round.round_id,
                                tool_calls=[_status_only(tool_call, new_status)],
                            )
                        ],
                    )
    return None


def make_status_update(target: ChatTurn, patch: AgentRound) -> ChatTurn:
    """Wrap a round patch in a turn update addressed to *target*."""
    return ChatTurn(
        id=target.id,
        role=TurnRole.ASSISTANT,
        content="",
        edit_agent_rounds=[patch],
        turn_status=TurnStatus.IN_PROGRESS,
    )
