"""Child turn → parent turn routing for sub-agent updates."""
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ConversationTurnTracking:
    """Maps sub-agent turn ids to the turn that spawned them.

    Maintained by whoever receives the "sub-turn started" notifications;
    the history store and the gateway only read it.
    """

    turn_parent_map: dict[str, str] = field(default_factory=dict)

    def register(self, child_turn_id: str, parent_turn_id: str) -> None:
        if child_turn_id and parent_turn_id and child_turn_id != parent_turn_id:
            self.turn_parent_map[child_turn_id] = parent_turn_id

    def forget(self, child_turn_id: str) -> None:
        self.turn_parent_map.pop(child_turn_id, None)

    def parent_of(self, turn_id: str) -> str | None:
        return self.turn_parent_map.get(turn_id)

    def resolve_root(self, turn_id: str) -> str:
        """Follow parent links from *turn_id* up to a top-level turn id."""
        seen = {turn_id}
        current = turn_id
        while True:
            parent = self.turn_parent_map.get(current)
            if parent is None or parent in seen:
                return current
            seen.add(parent)
            current = parent

    def clear(self) -> None:
        self.turn_parent_map.clear()
