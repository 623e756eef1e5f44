"""Adapters package - Bridge between the gateway and UI frontends.

Holds the event bus and its event types, the dialog controller, and the
adapter for out-of-process rule change notifications.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "ConfirmationController",
    "RuleChangeNotifier",
]

from toolgate.adapters.event_bus import EventBus


def __getattr__(name: str):
    # The controller imports the gateway, which imports this package.
    if name == "ConfirmationController":
        from toolgate.adapters.confirmation_controller import ConfirmationController
        return ConfirmationController
    if name == "RuleChangeNotifier":
        from toolgate.adapters.rule_notifications import RuleChangeNotifier
        return RuleChangeNotifier
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
