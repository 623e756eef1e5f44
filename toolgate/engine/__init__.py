"""toolgate engine: tool-call confirmation gateway and conversation history."""
from .config import GateConfig
from .errors import (
    ConfigError,
    MalformedRequestError,
    RulePersistenceError,
    RuleStoreReadError,
    ToolCallNotFoundError,
    ToolGateError,
)

__all__ = [
    # Gateway (lazy import to avoid circular deps)
    "ConfirmationGateway",
    "GatewayServices",
    "build_gateway",
    "build_gateway_from_settings",
    # Policy and history (lazy import)
    "AutoApprovalPolicy",
    "ConversationHistoryStore",
    "ConversationTurnTracking",
    "PendingConfirmationRegistry",
    # Config
    "GateConfig",
    "ToolGateSettings",
    "load_yaml_config",
    # Errors
    "ConfigError",
    "MalformedRequestError",
    "RulePersistenceError",
    "RuleStoreReadError",
    "ToolCallNotFoundError",
    "ToolGateError",
]


def __getattr__(name: str):
    if name in (
        "ConfirmationGateway", "GatewayServices", "build_gateway", "build_gateway_from_settings",
    ):
        from . import gateway
        return getattr(gateway, name)
    if name == "AutoApprovalPolicy":
        from .auto_approval import AutoApprovalPolicy
        return AutoApprovalPolicy
    if name == "ConversationHistoryStore":
        from .history_store import ConversationHistoryStore
        return ConversationHistoryStore
    if name == "ConversationTurnTracking":
        from .turn_tracking import ConversationTurnTracking
        return ConversationTurnTracking
    if name == "PendingConfirmationRegistry":
        from .pending_registry import PendingConfirmationRegistry
        return PendingConfirmationRegistry
    if name in ("ToolGateSettings", "load_yaml_config"):
        from . import yaml_config
        return getattr(yaml_config, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
