"""Error taxonomy for job operations."""

from __future__ import annotations

from collections.abc import Sequence


class TmuxerError(Exception):
    """Base class for every error raised by tmuxer."""


class JobNotFoundError(TmuxerError, KeyError):
    """The referenced job id has no corresponding window."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job '{job_id}' not found")
        self.job_id = job_id

    # KeyError.__str__ would repr() the message
    def __str__(self) -> str:
        return self.args[0]


class JobExistsError(TmuxerError):
    """An explicit job id collides with an existing job."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job '{job_id}' already exists")
        self.job_id = job_id


class TmuxCommandError(TmuxerError):
    """A tmux invocation failed unexpectedly."""

    def __init__(
        self,
        argv: Sequence[str],
        returncode: int | None,
        stderr: str = "",
    ) -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = self.stderr or f"exit status {returncode}"
        super().__init__(f"{' '.join(self.argv)}: {detail}")


class JobLaunchError(TmuxCommandError):
    """A window was created but the job could not be bound to it."""


class SessionSetupError(TmuxerError):
    """The tmux session or its sentinel window could not be established."""
