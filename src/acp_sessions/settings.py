"""Runtime settings, read from ``ACP_SESSIONS_*`` environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

ENV_PREFIX = "ACP_SESSIONS_"


@dataclass
class Settings:
    max_cached_sessions: int = 20
    drain_timeout: float = 2.0
    cancel_timeout: float = 5.0
    permission_timeout: float = 300.0
    event_queue_size: int = 1024
    # Default StreamReader limit is 64KB, session restores can be much larger
    stdout_limit: int = 10 * 1024 * 1024
    client_name: str = "acp-sessions"
    client_title: str = "ACP Sessions"
    client_version: str = "0.1.0"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        """Build settings from the environment, ignoring unparsable values."""
        env = os.environ if environ is None else environ
        settings = cls()
        for name, caster in (
            ("max_cached_sessions", int),
            ("drain_timeout", float),
            ("cancel_timeout", float),
            ("permission_timeout", float),
            ("event_queue_size", int),
            ("stdout_limit", int),
        ):
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            try:
                setattr(settings, name, caster(raw))
            except ValueError:
                log.warning(f"Ignoring invalid {ENV_PREFIX}{name.upper()}={raw!r}")
        return settings


def configure_logging(log_file: str | Path = "acp_sessions.log") -> bool:
    """Enable file logging when ``ACP_SESSIONS_LOGGING_LEVEL`` is set.

    Returns True if logging was configured.
    """
    lvl = os.environ.get(ENV_PREFIX + "LOGGING_LEVEL")
    if not lvl:
        return False
    logging.basicConfig(
        filename=str(log_file),
        level=getattr(logging, lvl.upper(), logging.DEBUG),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return True
