"""Tests for gateway events, the event bus and rule change notifications."""
from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from toolgate.adapters.event_bus import EventBus
from toolgate.adapters.events import (
    ApprovalRulesChanged,
    GateEvent,
    HistoryChanged,
    ToolConfirmationRequested,
    dict_to_event,
    event_to_dict,
)
from toolgate.adapters.rule_notifications import (
    NOTIFICATION_NAMES,
    RuleChangeNotifier,
    notification_name,
)
from toolgate.shared.services.approval_rules import ApprovalScope, RuleKind
from toolgate.shared.services.rule_store import ApprovalRuleStore


# ── Event dicts ──


def test_event_to_dict_renames_tag_and_drops_none():
    event = ToolConfirmationRequested(
        conversation_id="conv-1",
        tool_call_id="call-1",
        category="terminal",
        command="ls",
    )
    data = event_to_dict(event)
    assert data["event"] == "tool_confirmation_requested"
    assert "event_type" not in data
    assert "mcp_server" not in data
    assert data["command"] == "ls"
    assert dict_to_event(data) == event


def test_dict_to_event_ignores_unknown_fields():
    event = dict_to_event({"event": "history_changed", "turn_count": 3, "extra": True})
    assert event == HistoryChanged(turn_count=3)


def test_unknown_event_type_falls_back_to_base():
    event = dict_to_event({"event": "something_else", "conversation_id": "c"})
    assert type(event) is GateEvent
    assert event.event_type == "something_else"


# ── EventBus ──


@pytest.mark.asyncio
async def test_emit_and_pending_preserve_order():
    bus = EventBus()
    await bus.emit(HistoryChanged(turn_count=1))
    bus.emit_nowait(HistoryChanged(turn_count=2))
    await bus.emit_dict({"event": "history_changed", "turn_count": 3})

    assert [e.turn_count for e in bus.pending()] == [1, 2, 3]
    assert bus.pending() == []


@pytest.mark.asyncio
async def test_emit_nowait_drops_when_full():
    bus = EventBus(maxsize=1)
    bus.emit_nowait(HistoryChanged(turn_count=1))
    bus.emit_nowait(HistoryChanged(turn_count=2))
    assert [e.turn_count for e in bus.pending()] == [1]


@pytest.mark.asyncio
async def test_emit_times_out_instead_of_blocking_forever():
    bus = EventBus(maxsize=1, put_timeout=0.01)
    await bus.emit(HistoryChanged(turn_count=1))
    await bus.emit(HistoryChanged(turn_count=2))
    assert len(bus.pending()) == 1


@pytest.mark.asyncio
async def test_closed_bus_ignores_events_until_reset():
    bus = EventBus()
    bus.close()
    await bus.emit(HistoryChanged())
    bus.emit_nowait(HistoryChanged())
    assert bus.closed
    assert bus.pending() == []

    bus.reset()
    bus.emit_nowait(HistoryChanged(turn_count=5))
    assert [e.turn_count for e in bus.pending()] == [5]


@pytest.mark.asyncio
async def test_consume_yields_until_closed():
    bus = EventBus()
    received = []

    async def consumer():
        async for event in bus.consume(poll_interval=0.01):
            received.append(event.turn_count)
            if len(received) == 2:
                bus.close()

    task = asyncio.create_task(consumer())
    await bus.emit(HistoryChanged(turn_count=1))
    await bus.emit(HistoryChanged(turn_count=2))
    await asyncio.wait_for(task, timeout=1.0)
    assert received == [1, 2]


# ── Rule change notifications ──


def test_notification_names_cover_every_rule_kind():
    assert set(NOTIFICATION_NAMES.values()) == set(RuleKind)
    for kind in RuleKind:
        assert NOTIFICATION_NAMES[notification_name(kind)] is kind


@pytest.mark.asyncio
async def test_store_changes_reach_the_bus(tmp_path: Path):
    store = ApprovalRuleStore(tmp_path / "rules")
    store.load()
    bus = EventBus()
    notifier = RuleChangeNotifier(store, bus)
    notifier.attach()

    store.allow_commands(ApprovalScope.session("conv-1"), ["git"])
    await asyncio.sleep(0)

    events = bus.pending()
    assert events == [
        ApprovalRulesChanged(conversation_id="conv-1", rule_kind="terminal", scope="session"),
    ]

    notifier.detach()
    store.allow_commands(ApprovalScope.session("conv-1"), ["ls"])
    await asyncio.sleep(0)
    assert bus.pending() == []


@pytest.mark.asyncio
async def test_external_notification_reloads_rules(tmp_path: Path):
    rules_dir = tmp_path / "rules"
    store = ApprovalRuleStore(rules_dir)
    store.load()
    bus = EventBus()
    notifier = RuleChangeNotifier(store, bus)
    notifier.attach()

    rules_dir.mkdir(parents=True, exist_ok=True)
    store.path_for(RuleKind.TERMINAL).write_text(json.dumps({"commands": {"make": True}}))
    assert not store.is_terminal_command_allowed("conv-1", "make test")

    assert notifier.handle_notification("toolgate.rules.terminal_commands.changed")
    assert store.is_terminal_command_allowed("conv-1", "make test")

    await asyncio.sleep(0)
    events = bus.pending()
    assert events == [ApprovalRulesChanged(rule_kind="terminal", scope="global")]


def test_unknown_notification_is_ignored(tmp_path: Path):
    store = ApprovalRuleStore(tmp_path / "rules")
    notifier = RuleChangeNotifier(store)
    assert notifier.handle_notification("com.example.unrelated") is False


def test_notifier_without_bus_only_reloads(tmp_path: Path):
    store = ApprovalRuleStore(tmp_path / "rules")
    store.load()
    notifier = RuleChangeNotifier(store)
    notifier.attach()
    notifier.reload_all()
    notifier.detach()
