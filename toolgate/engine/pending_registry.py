"""Tool calls parked until the user decides on them.

Each entry carries the future its caller is awaiting. An entry is
released exactly once; releasing an id that is not (or no longer)
pending returns None and changes nothing.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from toolgate.shared.models.invocation import RequestId, ToolConfirmationReply

logger = logging.getLogger(__name__)


@dataclass
class PendingToolCall:
    request_id: RequestId
    conversation_id: str
    turn_id: str
    round_id: int
    tool_call_id: str
    name: str = ""
    future: asyncio.Future[ToolConfirmationReply] | None = field(default=None, repr=False)

    def resolve(self, accepted: bool) -> bool:
        """Deliver the reply to the waiting caller. Returns False if already done."""
        if self.future is None or self.future.done():
            return False
        self.future.set_result(
            ToolConfirmationReply(request_id=self.request_id, accepted=accepted)
        )
        return True


class PendingConfirmationRegistry:
    """Pending confirmations keyed by tool call id."""

    def __init__(self) -> None:
        self._pending: dict[str, PendingToolCall] = {}
        self._lock = asyncio.Lock()

    async def park(self, pending: PendingToolCall) -> asyncio.Future[ToolConfirmationReply]:
        """Register *pending* and return the future its reply arrives on."""
        async with self._lock:
            if pending.future is None:
                pending.future = asyncio.get_running_loop().create_future()
            previous = self._pending.get(pending.tool_call_id)
            if previous is not None and previous.future is not pending.future:
                logger.warning(
                    "Tool call %s parked twice, rejecting the earlier request",
                    pending.tool_call_id[:8],
                )
                previous.resolve(False)
            self._pending[pending.tool_call_id] = pending
            logger.info(
                "Tool call parked for confirmation call=%s tool=%s request=%s",
                pending.tool_call_id[:8], pending.name, pending.request_id,
            )
            return pending.future

    async def release(self, tool_call_id: str) -> PendingToolCall | None:
        """Remove and return the entry for *tool_call_id*, if any."""
        async with self._lock:
            pending = self._pending.pop(tool_call_id, None)
        if pending is None:
            logger.debug("No pending confirmation for call=%s", tool_call_id[:8])
        return pending

    async def release_conversation(self, conversation_id: str) -> list[PendingToolCall]:
        async with self._lock:
            ids = [
                tool_call_id
                for tool_call_id, pending in self._pending.items()
                if pending.conversation_id == conversation_id
            ]
            return [self._pending.pop(tool_call_id) for tool_call_id in ids]

    async def release_all(self) -> list[PendingToolCall]:
        async with self._lock:
            released = list(self._pending.values())
            self._pending.clear()
            return released

    def get(self, tool_call_id: str) -> PendingToolCall | None:
        return self._pending.get(tool_call_id)

    def __contains__(self, tool_call_id: object) -> bool:
        return tool_call_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
