"""Merge rules for streamed conversation updates.

The host streams the same turn, round and tool call many times as text
grows and statuses change. Every function here folds an incoming partial
update into existing state in place:

- text fields that stream (turn content, round reply, error and panel
  messages) concatenate;
- keyed collections upsert: steps by id, rounds by round id, tool calls
  by id, file edits by (file URL, tool name);
- scalar fields are replaced only by values the update actually carries,
  so a field known earlier is never lost to a later update that omits it.

Replaying a delta without streamed text is therefore a no-op.
"""
from __future__ import annotations

import copy

from toolgate.shared.models.conversation import (
    AgentRound,
    AgentToolCall,
    ChatTurn,
    ConversationReference,
    ConversationStep,
    FileEdit,
    merge_status,
)


def merge_tool_call(existing: AgentToolCall, update: AgentToolCall) -> None:
    """Apply the fields present in *update* to *existing*."""
    existing.status = merge_status(existing.status, update.status)
    if update.progress_message:
        existing.progress_message = update.progress_message
    if update.result:
        existing.result = update.result
    if update.result_details:
        existing.result_details = update.result_details
    if update.error:
        existing.error = update.error
    if update.input:
        existing.input = update.input
    if update.input_message:
        existing.input_message = update.input_message
    if update.invoke_params is not None:
        existing.invoke_params = update.invoke_params
    if update.title is not None:
        existing.title = update.title


def merge_tool_calls(
    existing: list[AgentToolCall] | None,
    updates: list[AgentToolCall] | None,
) -> list[AgentToolCall] | None:
    """Upsert *updates* into *existing* by tool call id."""
    if not updates:
        return existing
    merged = existing if existing is not None else []
    for update in updates:
        for tool_call in merged:
            if tool_call.id == update.id:
                merge_tool_call(tool_call, update)
                break
        else:
            merged.append(copy.deepcopy(update))
    return merged


def merge_round(existing: AgentRound, update: AgentRound, *, depth: int = 0) -> None:
    """Fold *update* into *existing*, which has the same round id.

    Sub-agent rounds are merged one level down only; sub-agents do not
    nest further.
    """
    existing.reply += update.reply
    existing.tool_calls = merge_tool_calls(existing.tool_calls, update.tool_calls)
    if depth == 0 and update.sub_agent_rounds:
        existing.sub_agent_rounds = merge_rounds(
            existing.sub_agent_rounds, update.sub_agent_rounds, depth=1,
        )


def merge_rounds(
    existing: list[AgentRound] | None,
    updates: list[AgentRound],
    *,
    depth: int = 0,
) -> list[AgentRound]:
    """Upsert *updates* into *existing* by round id."""
    merged = existing if existing is not None else []
    for update in updates:
        for round_ in merged:
            if round_.round_id == update.round_id:
                merge_round(round_, update, depth=depth)
                break
        else:
            merged.append(copy.deepcopy(update))
    return merged


def merge_steps(existing: list[ConversationStep], updates: list[ConversationStep]) -> None:
    for update in updates:
        for index, step in enumerate(existing):
            if step.id == update.id:
                existing[index] = copy.deepcopy(update)
                break
        else:
            existing.append(copy.deepcopy(update))


def merge_references(
    existing: list[ConversationReference],
    updates: list[ConversationReference],
) -> list[ConversationReference]:
    """Union of both lists, first occurrence wins, order preserved."""
    seen: set[ConversationReference] = set()
    merged: list[ConversationReference] = []
    for reference in [*existing, *updates]:
        if reference in seen:
            continue
        seen.add(reference)
        merged.append(reference)
    return merged


def merge_file_edits(existing: list[FileEdit], updates: list[FileEdit]) -> None:
    for update in updates:
        for edit in existing:
            if edit.file_url == update.file_url and edit.tool_name == update.tool_name:
                edit.modified_content = update.modified_content
                edit.status = update.status
                break
        else:
            existing.append(copy.deepcopy(update))


def merge_turn(existing: ChatTurn, update: ChatTurn) -> None:
    """Fold a top-level turn update into the stored turn with the same id."""
    existing.content += update.content
    existing.references = merge_references(existing.references, update.references)
    if update.follow_up is not None:
        existing.follow_up = update.follow_up
    if update.suggested_title is not None:
        existing.suggested_title = update.suggested_title
    existing.error_messages.extend(update.error_messages)
    existing.panel_messages.extend(update.panel_messages)
    merge_steps(existing.steps, update.steps)
    if update.edit_agent_rounds:
        existing.edit_agent_rounds = merge_rounds(
            existing.edit_agent_rounds, update.edit_agent_rounds,
        )
    if update.parent_turn_id is not None:
        existing.parent_turn_id = update.parent_turn_id
    merge_file_edits(existing.file_edits, update.file_edits)
    if update.turn_status is not None:
        existing.turn_status = update.turn_status
    if update.model_name is not None:
        existing.model_name = update.model_name
    if update.billing_multiplier is not None:
        existing.billing_multiplier = update.billing_multiplier


def merge_sub_turn(parent: ChatTurn, sub_turn: ChatTurn) -> bool:
    """Fold a sub-agent turn into the last round of *parent*.

    Sub-agent turns run one after another, never concurrently, so the
    parent's last round is always the one that delegated. Returns False
    when the parent has no round to attach to.
    """
    if not sub_turn.edit_agent_rounds:
        return True
    if not parent.edit_agent_rounds:
        return False
    last_round = parent.edit_agent_rounds[-1]
    last_round.sub_agent_rounds = merge_rounds(
        last_round.sub_agent_rounds, sub_turn.edit_agent_rounds, depth=1,
    )
    return True
