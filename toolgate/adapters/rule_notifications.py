"""Out-of-process "approval rules changed" notifications.

Another process (a settings window, a second agent host) rewrites the
rule files and then signals by name. The adapter reloads the affected
rule set and republishes rule changes on the event bus. Signals may
arrive on any thread; bus delivery hops onto the event loop.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from toolgate.adapters.event_bus import EventBus
from toolgate.adapters.events import ApprovalRulesChanged
from toolgate.shared.services.approval_rules import ApprovalScope, RuleKind
from toolgate.shared.services.rule_store import ApprovalRuleStore

logger = logging.getLogger(__name__)

NOTIFICATION_NAMES: dict[str, RuleKind] = {
    "toolgate.rules.terminal_commands.changed": RuleKind.TERMINAL,
    "toolgate.rules.sensitive_files.changed": RuleKind.SENSITIVE_FILE,
    "toolgate.rules.mcp_servers.changed": RuleKind.MCP,
}


def notification_name(kind: RuleKind) -> str:
    for name, mapped in NOTIFICATION_NAMES.items():
        if mapped is kind:
            return name
    raise KeyError(kind)


class RuleChangeNotifier:
    """Connects an ApprovalRuleStore to external signals and the event bus."""

    def __init__(
        self,
        store: ApprovalRuleStore,
        event_bus: EventBus | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._store = store
        self._event_bus = event_bus
        self._loop = loop
        self._unsubscribe: Callable[[], None] | None = None

    def attach(self) -> None:
        """Start forwarding store changes to the event bus."""
        if self._unsubscribe is not None:
            return
        if self._event_bus is not None and self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._unsubscribe = self._store.subscribe(self._forward)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _forward(self, kind: RuleKind, scope: ApprovalScope) -> None:
        if self._event_bus is None or self._loop is None or self._loop.is_closed():
            return
        event = ApprovalRulesChanged(
            conversation_id=scope.conversation_id,
            rule_kind=kind.value,
            scope=scope.kind,
        )
        self._loop.call_soon_threadsafe(self._event_bus.emit_nowait, event)

    def handle_notification(self, name: str) -> bool:
        """Reload the rule set a notification refers to.

        Returns False for names this adapter does not know.
        """
        kind = NOTIFICATION_NAMES.get(name)
        if kind is None:
            logger.debug("Ignoring unknown rule notification %s", name)
            return False
        logger.info("External %s rule change, reloading", kind.value)
        self._store.reload(kind)
        return True

    def reload_all(self) -> None:
        for kind in RuleKind:
            self._store.reload(kind)
