from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Job:
    """Snapshot of one job window, as last read from tmux."""

    job_id: str
    pid: int | None
    running: bool
    current_command: str
    lines: int
    last_activity_ms: int
    exit_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "job_id": self.job_id,
            "pid": self.pid,
            "running": self.running,
            "current_command": self.current_command,
            "lines": self.lines,
            "last_activity_ms": self.last_activity_ms,
        }
        # exit_code only makes sense once the pane is dead
        if not self.running:
            data["exit_code"] = self.exit_code
        return data


# ---------------------------------------------------------------------------
# Input token stream: "Hello{Enter}" -> TEXT("Hello"), KEY("Enter")
# ---------------------------------------------------------------------------

class SegmentKind(enum.Enum):
    TEXT = "text"  # literal keystrokes (send-keys -l)
    KEY = "key"    # tmux key name (Enter, Up, C-c, ...)


@dataclass(frozen=True)
class InputSegment:
    kind: SegmentKind
    value: str
