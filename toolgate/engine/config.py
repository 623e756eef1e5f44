"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TOOLGATE_* env vars,
or a YAML file (see yaml_config).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass
class GateConfig:
    """Confirmation gateway configuration."""

    # Directory holding the persisted global approval rules.
    # None means ~/.toolgate/auto_approval.
    rules_dir: str | None = None

    # When False every tool call waits for the user, whatever the rules
    # say (e.g. disabled by organization policy).
    auto_approval_enabled: bool = True

    # Max wait for a user decision on a parked tool call. Expired calls
    # are cancelled and answered "not accepted".
    # Set to 0 (or a negative value) to wait indefinitely.
    confirmation_timeout_seconds: float = 0.0

    # Event bus sizing
    event_queue_size: int = 1000

    # Logging
    log_level: str = "INFO"

    @property
    def rules_path(self) -> Path | None:
        return Path(self.rules_dir).expanduser() if self.rules_dir else None

    @property
    def confirmation_timeout(self) -> float | None:
        """Timeout in seconds for asyncio.wait_for, or None to wait forever."""
        if self.confirmation_timeout_seconds > 0:
            return self.confirmation_timeout_seconds
        return None

    @classmethod
    def from_env(cls) -> GateConfig:
        """Load configuration from TOOLGATE_* environment variables."""
        gate_vars = {k: v for k, v in os.environ.items() if k.startswith("TOOLGATE_")}
        if gate_vars:
            logger.info(
                "GateConfig.from_env: TOOLGATE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(gate_vars.items())),
            )
        else:
            logger.debug("GateConfig.from_env: no TOOLGATE_* env vars set, using defaults")

        config = cls(
            rules_dir=os.getenv("TOOLGATE_RULES_DIR") or None,
            auto_approval_enabled=_env_bool(
                "TOOLGATE_AUTO_APPROVAL", cls.auto_approval_enabled,
            ),
            confirmation_timeout_seconds=float(os.getenv(
                "TOOLGATE_CONFIRMATION_TIMEOUT",
                str(cls.confirmation_timeout_seconds),
            )),
            event_queue_size=int(os.getenv(
                "TOOLGATE_EVENT_QUEUE_SIZE", str(cls.event_queue_size),
            )),
            log_level=os.getenv("TOOLGATE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "GateConfig.from_env: rules_dir=%s auto_approval=%s timeout=%s log_level=%s",
            config.rules_dir or "<default>",
            config.auto_approval_enabled,
            config.confirmation_timeout_seconds,
            config.log_level,
        )
        return config
