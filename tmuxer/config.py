from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .ids import POLICIES

TRANSPORTS = ("stdio", "http")

# Default port for the streamable HTTP transport
DEFAULT_PORT = 8902


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Config:
    session: str | None = None
    keep_alive: bool = False
    socket_name: str | None = None
    id_policy: str = "sequential"
    default_prefix: str = "job"
    shell: str = "bash"
    width: int = 250
    height: int = 80
    startup_timeout: float = 5.0
    settle_delay: float = 1.0
    transport: str = "stdio"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.id_policy not in POLICIES:
            raise ValueError(
                f"id_policy must be one of {', '.join(POLICIES)}, got {self.id_policy!r}"
            )
        if self.transport not in TRANSPORTS:
            raise ValueError(
                f"transport must be one of {', '.join(TRANSPORTS)}, got {self.transport!r}"
            )
        if self.startup_timeout < 0 or self.settle_delay < 0:
            raise ValueError("startup_timeout and settle_delay must not be negative")

    @classmethod
    def from_env(cls, env_path: str | Path | None = None) -> Config:
        """Build a config from ``TMUXER_*`` variables (and an optional .env).

        TMUXER_SESSION          fixed session name (default: per-cwd hash)
        TMUXER_KEEP_ALIVE       leave jobs running when tmuxer exits
        TMUXER_SOCKET           tmux -L socket name
        TMUXER_ID_POLICY        "sequential" (job1, job2) or "random"
        TMUXER_SHELL            shell that runs job commands (default bash)
        TMUXER_STARTUP_TIMEOUT  seconds to wait for a job's first output
        TMUXER_SETTLE_DELAY     seconds to wait after send_input
        TMUXER_TRANSPORT        "stdio" or "http"
        TMUXER_PORT             HTTP port
        TMUXER_LOG_LEVEL        logging level name
        """
        load_dotenv(env_path)

        port_raw = os.getenv("TMUXER_PORT", "").strip()
        return cls(
            session=os.getenv("TMUXER_SESSION") or None,
            keep_alive=_env_bool("TMUXER_KEEP_ALIVE"),
            socket_name=os.getenv("TMUXER_SOCKET") or None,
            id_policy=os.getenv("TMUXER_ID_POLICY", "sequential").strip().lower(),
            shell=os.getenv("TMUXER_SHELL", "").strip() or "bash",
            startup_timeout=_env_float("TMUXER_STARTUP_TIMEOUT", 5.0),
            settle_delay=_env_float("TMUXER_SETTLE_DELAY", 1.0),
            transport=os.getenv("TMUXER_TRANSPORT", "stdio").strip().lower(),
            port=int(port_raw) if port_raw else DEFAULT_PORT,
            log_level=os.getenv("TMUXER_LOG_LEVEL", "INFO").strip().upper(),
        )
