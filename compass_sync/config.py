"""Global configuration for the Compass news/message synchroniser.

All tunables can be overridden via environment variables.  This is the
only module that reads the environment; everything else receives a
``Config`` (or the individual values) through its constructor.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_float(key: str, default: float) -> float:
    """Read an env var as float, returning *default* on parse failure."""
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


@dataclass(frozen=True)
class Config:
    """Central configuration – one instance per process.

    Environment variables are read at **instantiation** time (not module
    import time) so callers can set them programmatically before
    creating a ``Config``.
    """

    # ── Compass account (password repr=False to prevent accidental logging)
    hostname: str = field(default_factory=lambda: os.getenv("COMPASS_HOSTNAME", ""))
    username: str = field(default_factory=lambda: os.getenv("COMPASS_USERNAME", ""))
    password: str = field(default_factory=lambda: os.getenv("COMPASS_PASSWORD", ""), repr=False)

    # ── HTTP ────────────────────────────────────────────────────
    http_timeout_s: float = field(default_factory=lambda: _env_float("COMPASS_HTTP_TIMEOUT_S", 20.0))

    # ── State ───────────────────────────────────────────────────
    # "json" → one file per record under state_dir; "sqlite" → sqlite_path
    storage: str = field(default_factory=lambda: os.getenv("COMPASS_STORAGE", "json").strip().lower())
    state_dir: str = field(default_factory=lambda: os.getenv("COMPASS_STATE_DIR", "state"))
    sqlite_path: str = field(default_factory=lambda: os.getenv("COMPASS_SQLITE_PATH", "state/compass.db"))

    # ── Notifications ───────────────────────────────────────────
    # Comma-separated addresses.
    notify_recipients: str = field(default_factory=lambda: os.getenv("COMPASS_NOTIFY_RECIPIENTS", ""))
    notify_sender: str = field(default_factory=lambda: os.getenv("COMPASS_NOTIFY_SENDER", ""))
    outbox_path: str = field(default_factory=lambda: os.getenv("COMPASS_OUTBOX_PATH", "state/outbox.json"))

    # ── Polling cadence (0 = run a single pass and exit) ────────
    poll_interval_s: float = field(default_factory=lambda: _env_float("POLL_INTERVAL_S", 0.0))

    # ── Derived helpers ─────────────────────────────────────────

    @property
    def recipients(self) -> list[str]:
        return [r.strip() for r in self.notify_recipients.split(",") if r.strip()]
