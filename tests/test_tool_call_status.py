from __future__ import annotations

from toolgate.engine.history_merge import merge_turn
from toolgate.engine.tool_call_status import (
    find_turn_containing_tool_call,
    locate_and_patch,
    make_status_update,
)
from toolgate.engine.turn_tracking import ConversationTurnTracking
from toolgate.shared.models.conversation import (
    AgentRound,
    AgentToolCall,
    ChatTurn,
    ToolCallStatus,
    TurnRole,
    TurnStatus,
)


def _rounds() -> list[AgentRound]:
    return [
        AgentRound(
            round_id=1,
            reply="first",
            tool_calls=[
                AgentToolCall(
                    id="main-call",
                    name="run_in_terminal",
                    status=ToolCallStatus.WAIT_FOR_CONFIRMATION,
                    input={"command": "ls"},
                ),
            ],
        ),
        AgentRound(
            round_id=2,
            sub_agent_rounds=[
                AgentRound(
                    round_id=20,
                    tool_calls=[
                        AgentToolCall(
                            id="nested-call",
                            name="grep_search",
                            status=ToolCallStatus.RUNNING,
                            progress_message="Searching",
                        ),
                    ],
                ),
            ],
        ),
    ]


def test_patch_for_main_round_tool_call():
    patch = locate_and_patch("main-call", ToolCallStatus.ACCEPTED, _rounds())
    assert patch is not None
    assert patch.round_id == 1
    assert patch.reply == ""
    assert [(tc.id, tc.status) for tc in patch.tool_calls] == [("main-call", ToolCallStatus.ACCEPTED)]
    assert patch.tool_calls[0].input is None
    assert patch.sub_agent_rounds == []


def test_patch_for_nested_tool_call_is_shaped_at_parent_round():
    patch = locate_and_patch("nested-call", ToolCallStatus.COMPLETED, _rounds())
    assert patch is not None
    assert patch.round_id == 2
    assert patch.tool_calls == []
    assert len(patch.sub_agent_rounds) == 1
    sub = patch.sub_agent_rounds[0]
    assert sub.round_id == 20
    assert [(tc.id, tc.status) for tc in sub.tool_calls] == [("nested-call", ToolCallStatus.COMPLETED)]


def test_unknown_tool_call_returns_none():
    assert locate_and_patch("missing", ToolCallStatus.ACCEPTED, _rounds()) is None
    assert locate_and_patch("missing", ToolCallStatus.ACCEPTED, []) is None


def test_status_update_merges_through_ordinary_turn_merge():
    turn = ChatTurn(id="turn-1", content="Hi", edit_agent_rounds=_rounds())
    patch = locate_and_patch("nested-call", ToolCallStatus.COMPLETED, turn.edit_agent_rounds)
    update = make_status_update(turn, patch)

    assert update.content == ""
    assert update.turn_status is TurnStatus.IN_PROGRESS

    merge_turn(turn, update)
    nested = turn.find_tool_call("nested-call")
    assert nested.status is ToolCallStatus.COMPLETED
    assert nested.progress_message == "Searching"
    assert turn.content == "Hi"
    assert len(turn.edit_agent_rounds[1].sub_agent_rounds) == 1
    assert turn.find_tool_call("main-call").status is ToolCallStatus.WAIT_FOR_CONFIRMATION


def test_find_turn_resolves_sub_turn_to_parent():
    tracking = ConversationTurnTracking()
    tracking.register("sub-1", "turn-1")
    history = [
        ChatTurn(id="turn-0", role=TurnRole.USER),
        ChatTurn(id="turn-1", role=TurnRole.ASSISTANT),
    ]
    assert find_turn_containing_tool_call("sub-1", tracking, history).id == "turn-1"
    assert find_turn_containing_tool_call("turn-1", tracking, history).id == "turn-1"
    assert find_turn_containing_tool_call("turn-0", tracking, history) is None
    assert find_turn_containing_tool_call("unknown", tracking, history) is None


def test_tracking_resolve_root_survives_cycles():
    tracking = ConversationTurnTracking()
    tracking.register("a", "b")
    tracking.register("b", "a")
    assert tracking.resolve_root("a") in {"a", "b"}
    tracking.register("c", "c")
    assert tracking.parent_of("c") is None
