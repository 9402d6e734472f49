"""
pulse.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for infrastructure settings (Discord identity,
API port, tracking intervals, admin role).  Secrets (``DISCORD_TOKEN``,
``DATABASE_URL``, ``JWT_SECRET``) come from the environment / ``.env``.

Usage::

    from pulse.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.grace)             # timedelta(minutes=10)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PulseConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Discord
    guild_id: int  # Guild whose members are tracked

    # Admin / Hardened Access
    admin_role_id: int

    # In-process API; 0 disables it
    api_port: int = 0

    # Tracking
    grace_minutes: int = 10               # silence before the sweeper closes a session
    sweep_interval_minutes: int = 5
    heartbeat_interval_seconds: int = 60
    flush_interval_minutes: int = 0       # 0 = no periodic flush

    @property
    def grace(self) -> timedelta:
        return timedelta(minutes=self.grace_minutes)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> PulseConfig:
    """Read *path* and return a :class:`PulseConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If an interval is not positive.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    cfg = PulseConfig(
        community_name=raw["community_name"],
        guild_id=int(raw["guild_id"]),
        admin_role_id=int(raw["admin_role_id"]),
        api_port=int(raw.get("api_port", 0)),
        grace_minutes=int(raw.get("grace_minutes", 10)),
        sweep_interval_minutes=int(raw.get("sweep_interval_minutes", 5)),
        heartbeat_interval_seconds=int(raw.get("heartbeat_interval_seconds", 60)),
        flush_interval_minutes=int(raw.get("flush_interval_minutes", 0)),
    )
    for name in ("grace_minutes", "sweep_interval_minutes", "heartbeat_interval_seconds"):
        if getattr(cfg, name) <= 0:
            raise ValueError(f"{name} must be positive, got {getattr(cfg, name)}")
    if cfg.flush_interval_minutes < 0:
        raise ValueError("flush_interval_minutes must be >= 0")
    return cfg
