"""YAML configuration loader.

Values in the YAML file override the environment-derived defaults.

Example YAML:
    gate:
      rules_dir: ~/.toolgate/auto_approval
      auto_approval_enabled: true
      confirmation_timeout_seconds: 600
      event_queue_size: 1000
      log_level: DEBUG

    terminal:
      # Seeded into the global terminal rules by build_gateway if absent.
      allow: [git, ls, cat]
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from .config import GateConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class ToolGateSettings:
    """Complete parsed YAML configuration."""
    gate: GateConfig
    seed_terminal_commands: list[str] = field(default_factory=list)


def _global_config_path() -> Path:
    return Path.home() / ".toolgate" / "config.yaml"


def _apply_gate_section(config: GateConfig, section: dict) -> None:
    known = {f.name: f for f in fields(GateConfig)}
    for key, value in section.items():
        if key not in known:
            logger.warning("Unknown gate setting ignored: %s", key)
            continue
        current = getattr(config, key)
        try:
            if isinstance(current, bool):
                if not isinstance(value, bool):
                    raise TypeError("expected true/false")
            elif isinstance(current, float):
                value = float(value)
            elif isinstance(current, int):
                value = int(value)
            elif value is not None:
                value = str(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for gate.{key}: {value!r} ({exc})") from exc
        setattr(config, key, value)


def load_yaml_config(path: Path | str | None = None) -> ToolGateSettings:
    """Load settings from *path* (default ``~/.toolgate/config.yaml``).

    A missing default file yields env-derived defaults; a missing
    explicit file is an error.
    """
    explicit = path is not None
    config_path = Path(path).expanduser() if explicit else _global_config_path()
    config = GateConfig.from_env()

    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {config_path}")
        logger.debug("No config file at %s; using defaults", config_path)
        return ToolGateSettings(gate=config)

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot load config {config_path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {config_path} must be a mapping")

    gate_section = raw.get("gate") or {}
    if not isinstance(gate_section, dict):
        raise ConfigError("'gate' section must be a mapping")
    _apply_gate_section(config, gate_section)

    terminal_section = raw.get("terminal") or {}
    seed = terminal_section.get("allow", []) if isinstance(terminal_section, dict) else []
    if not isinstance(seed, list):
        raise ConfigError("'terminal.allow' must be a list")

    logger.info("Loaded config from %s", config_path)
    return ToolGateSettings(
        gate=config,
        seed_terminal_commands=[str(c).strip() for c in seed if str(c).strip()],
    )
