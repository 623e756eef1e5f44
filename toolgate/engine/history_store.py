"""Authoritative conversation history with serialized mutation.

Every change goes through ``mutate``, which holds one asyncio.Lock for
the duration of the transform. Merges are order dependent (sub-agent
rounds attach to the parent's *last* round), so they are never applied
concurrently.
"""
from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from toolgate.engine.history_merge import merge_sub_turn, merge_turn
from toolgate.engine.turn_tracking import ConversationTurnTracking
from toolgate.shared.models.conversation import ChatTurn, TurnRole

logger = logging.getLogger(__name__)

HistoryTransform = Callable[[list[ChatTurn]], Any]
HistoryListener = Callable[[list[ChatTurn]], Awaitable[None] | None]


class ConversationHistoryStore:
    """Ordered list of top-level turns for one conversation."""

    def __init__(self, turns: list[ChatTurn] | None = None) -> None:
        self._turns: list[ChatTurn] = list(turns or [])
        self._lock = asyncio.Lock()
        self._listeners: list[HistoryListener] = []

    async def read(self) -> list[ChatTurn]:
        """Return a deep copy of the current history."""
        async with self._lock:
            return copy.deepcopy(self._turns)

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        """Call *listener* with a snapshot after every mutation."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def mutate(self, transform: HistoryTransform) -> Any:
        """Apply *transform* to the live turn list under exclusive access.

        Returns whatever *transform* returns. Listeners are notified in
        mutation order before the lock is released.
        """
        async with self._lock:
            result = transform(self._turns)
            if self._listeners:
                await self._notify(copy.deepcopy(self._turns))
            return result

    async def _notify(self, snapshot: list[ChatTurn]) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(snapshot)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("History listener failed")

    async def append(
        self,
        turn: ChatTurn,
        tracking: ConversationTurnTracking | None = None,
    ) -> None:
        """Merge a streamed turn update into the history.

        Updates for sub-agent turns (``parent_turn_id`` set) are folded into
        the parent's last round and never appear as top-level turns. An
        update whose parent is unknown is dropped.
        """
        incoming = copy.deepcopy(turn)

        def apply(turns: list[ChatTurn]) -> None:
            if incoming.parent_turn_id:
                _append_sub_turn(turns, incoming, tracking)
                return
            for existing in turns:
                if existing.id == incoming.id:
                    merge_turn(existing, incoming)
                    return
            turns.append(incoming)

        await self.mutate(apply)

    async def remove(self, turn_id: str) -> None:
        await self.mutate(lambda turns: _remove_where(turns, lambda t: t.id == turn_id))

    async def remove_all(self, turn_ids: list[str]) -> None:
        ids = set(turn_ids)
        await self.mutate(lambda turns: _remove_where(turns, lambda t: t.id in ids))

    async def clear(self) -> None:
        await self.mutate(lambda turns: turns.clear())


def _remove_where(turns: list[ChatTurn], predicate: Callable[[ChatTurn], bool]) -> None:
    turns[:] = [t for t in turns if not predicate(t)]


def _append_sub_turn(
    turns: list[ChatTurn],
    sub_turn: ChatTurn,
    tracking: ConversationTurnTracking | None,
) -> None:
    declared_parent = sub_turn.parent_turn_id or sub_turn.id
    parent_id = tracking.resolve_root(declared_parent) if tracking else declared_parent

    _remove_where(turns, lambda t: t.id == sub_turn.id)

    for parent in turns:
        if parent.id == parent_id and parent.role is TurnRole.ASSISTANT:
            if not merge_sub_turn(parent, sub_turn):
                logger.debug(
                    "Parent turn %s has no rounds yet, dropping sub-turn %s update",
                    parent_id[:8], sub_turn.id[:8],
                )
            return

    logger.debug(
        "Parent turn %s not found, dropping sub-turn %s update",
        parent_id[:8], sub_turn.id[:8],
    )
