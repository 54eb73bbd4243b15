"""Job manager: maps job ids onto tmux windows.

tmux is the only source of truth: every call re-reads the window list
instead of trusting in-process state.  The only things kept in memory are
the id policy's advisory counters and the set of jobs that should be
terminated when the manager shuts down.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable, Iterable
from contextlib import AsyncExitStack
from typing import Any

from .config import Config
from .errors import JobExistsError, JobLaunchError, JobNotFoundError, TmuxCommandError, TmuxerError
from .ids import IdPolicy, SequentialIds, make_policy
from .keys import parse_input, raw_keys, send_keys_args
from .models import Job
from .session import SENTINEL_WINDOW, SessionRegistrar
from .tmux import Tmux, format_fields, quote, session_target, window_target

log = logging.getLogger(__name__)

# window_name goes last: it is the only free-form field and may contain tabs
WINDOW_FIELDS = (
    "window_index",
    "window_id",
    "window_activity",
    "pane_current_command",
    "history_size",
    "cursor_y",
    "pane_pid",
    "pane_dead",
    "pane_dead_status",
    "window_name",
)
WINDOW_FORMAT = format_fields(WINDOW_FIELDS)
NEW_WINDOW_FORMAT = format_fields(["window_id", "pane_pid"])

STARTUP_POLL_INTERVAL = 0.1  # seconds


def _to_int(raw: str) -> int | None:
    try:
        return int(raw)
    except ValueError:
        return None


def _window_number(window_id: str) -> int:
    """``@12`` -> 12; tmux hands out window ids in increasing order."""
    return _to_int(window_id.lstrip("@")) or 0


def launch_command(command: str, shell: str = "bash") -> str:
    """Shell command tmux runs for a job.

    The leading ``echo`` gives the pane a first line of its own, so tmux's
    "Pane is dead" banner never covers the command's first line of output.
    """
    return f"echo && exec {shell} -c {quote(command)}"


class JobManager:
    """Creates, lists, drives and removes jobs in one tmux session.

    Use as an async context manager; leaving the context runs the shutdown
    callbacks, which by default terminate every job started without
    ``keep_alive``.
    """

    def __init__(
        self,
        tmux: Tmux | None = None,
        registrar: SessionRegistrar | None = None,
        id_policy: IdPolicy | None = None,
        *,
        keep_alive: bool = False,
        default_prefix: str = "job",
        shell: str = "bash",
        startup_timeout: float = 5.0,
        settle_delay: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.tmux = tmux or Tmux()
        self.registrar = registrar or SessionRegistrar(self.tmux)
        self.id_policy = id_policy or SequentialIds()
        self.keep_alive = keep_alive
        self.default_prefix = default_prefix
        self.shell = shell
        self.startup_timeout = startup_timeout
        self.settle_delay = settle_delay
        self._clock = clock
        # job_id -> pid of jobs to terminate on shutdown
        self._owned: dict[str, int] = {}
        self._shutdown = AsyncExitStack()
        self.on_shutdown(self.terminate_jobs)

    @classmethod
    def from_config(cls, config: Config) -> JobManager:
        tmux = Tmux(socket_name=config.socket_name)
        registrar = SessionRegistrar(
            tmux, config.session, width=config.width, height=config.height,
        )
        return cls(
            tmux,
            registrar,
            make_policy(config.id_policy),
            keep_alive=config.keep_alive,
            default_prefix=config.default_prefix,
            shell=config.shell,
            startup_timeout=config.startup_timeout,
            settle_delay=config.settle_delay,
        )

    @property
    def session(self) -> str:
        return self.registrar.name

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> JobManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def on_shutdown(
        self, callback: Callable[..., Awaitable[Any]], *args: Any,
    ) -> None:
        """Register a coroutine function to run when the manager closes.

        Callbacks run last-registered first, like any exit stack.
        """
        self._shutdown.push_async_callback(callback, *args)

    async def aclose(self) -> None:
        await self._shutdown.aclose()

    async def ensure_session(self) -> str:
        return await self.registrar.ensure_session()

    # ------------------------------------------------------------------
    # Job directory
    # ------------------------------------------------------------------

    async def list_jobs(self) -> list[Job]:
        """All jobs in the session, running or dead. Empty if no session."""
        return [job for _, job in await self._list_windows()]

    async def get_job_status(self, job_id: str) -> Job:
        return await self._find(job_id)

    # ------------------------------------------------------------------
    # Launcher
    # ------------------------------------------------------------------

    async def create_job(
        self,
        command: str,
        prefix: str | None = None,
        job_id: str | None = None,
        env: dict[str, str] | None = None,
        keep_alive: bool | None = None,
    ) -> dict[str, Any]:
        """Start *command* in a new window and return its id, pid and
        whatever it printed during the first few seconds."""
        await self.ensure_session()

        existing = [job.job_id for job in await self.list_jobs()]
        new_id = self.id_policy.allocate(
            existing,
            prefix=prefix or self.default_prefix,
            explicit_id=job_id,
            reserved=(SENTINEL_WINDOW,),
        )

        # Clear TMUX so jobs can start their own (nested) tmux sessions
        spawn_env = {"TMUX": ""}
        if env:
            spawn_env.update(env)

        argv = [
            "new-window", "-d", "-P",
            "-F", NEW_WINDOW_FORMAT,
            "-t", window_target(self.session),
            "-n", new_id,
        ]
        for key, value in spawn_env.items():
            argv += ["-e", f"{key}={value}"]
        argv.append(launch_command(command, self.shell))

        out = await self.tmux.run(*argv)
        window_id, _, pid_raw = out.strip().partition("\t")
        pid = _to_int(pid_raw)
        if not window_id or pid is None:
            if window_id:
                await self._discard_window(window_id)
            raise JobLaunchError(self.tmux.argv(*argv), 0, "failed to get pid")

        await self._check_unique(new_id, window_id)

        if not (self.keep_alive if keep_alive is None else keep_alive):
            self._owned[new_id] = pid

        output = await self._wait_for_output(window_id)
        await self.registrar.show_jobs(window_id)
        log.info("Started job '%s' (pid=%s): %s", new_id, pid, command)
        return {"job_id": new_id, "pid": pid, "output": output}

    # ------------------------------------------------------------------
    # Output capture / input
    # ------------------------------------------------------------------

    async def get_job_output(
        self, job_id: str, last_lines: int | None = None,
    ) -> dict[str, Any]:
        """Full scrollback of a job (or its last *last_lines* lines)."""
        window_id, job = await self._locate(job_id)
        try:
            output = await self._capture(window_id, history=True)
        except TmuxCommandError as exc:
            await self._raise_if_gone(job_id, exc)
            raise
        if last_lines and last_lines > 0:
            output = "\n".join(output.split("\n")[-last_lines:])
        return {"output": output, **job.to_dict()}

    async def send_input(
        self, job_id: str, input: str, raw_mode: bool = False,
    ) -> dict[str, Any]:
        """Type *input* into a job's pane and return the screen afterwards.

        ``{Key}`` tokens are tmux key names (see :mod:`tmuxer.keys`).  With
        *raw_mode* the whole string is handed to a single ``send-keys`` as
        whitespace-separated key names.
        """
        target, _ = await self._locate(job_id)

        # Quit copy/choose mode if someone left it on; keys would go there
        try:
            await self.tmux.run("copy-mode", "-q", "-t", target)
        except TmuxCommandError as exc:
            log.debug("copy-mode -q on '%s' failed: %s", job_id, exc)

        try:
            if raw_mode:
                keys = raw_keys(input)
                if keys:
                    await self.tmux.run("send-keys", "-t", target, *keys)
            else:
                for segment in parse_input(input):
                    await self.tmux.run(
                        "send-keys", "-t", target, *send_keys_args(segment),
                    )
        except TmuxCommandError as exc:
            await self._raise_if_gone(job_id, exc)
            raise
        await self.registrar.show_jobs()

        await asyncio.sleep(self.settle_delay)
        output = await self._capture(target)
        return {"output": output}

    # ------------------------------------------------------------------
    # Reaper
    # ------------------------------------------------------------------

    async def kill_job(self, job_id: str) -> dict[str, Any]:
        """Destroy a job's window whether or not it is still running."""
        window_id, _ = await self._locate(job_id)
        try:
            await self.tmux.run("kill-window", "-t", window_id)
        except TmuxCommandError as exc:
            await self._raise_if_gone(job_id, exc)
            raise
        self._owned.pop(job_id, None)
        log.info("Killed job '%s'", job_id)
        return {"job_id": job_id, "success": True}

    async def cleanup_jobs(self, job_ids: Iterable[str]) -> dict[str, Any]:
        """Remove the windows of finished jobs. Running jobs are never touched."""
        windows = {job.job_id: (window_id, job) for window_id, job in await self._list_windows()}
        cleaned: list[str] = []

        for job_id in dict.fromkeys(job_ids):
            if job_id not in windows:
                continue
            window_id, job = windows[job_id]
            if job.running:
                continue
            try:
                await self.tmux.run("kill-window", "-t", window_id)
            except TmuxCommandError as exc:
                log.warning("Could not clean up job '%s': %s", job_id, exc)
                continue
            self._owned.pop(job_id, None)
            cleaned.append(job_id)

        if cleaned:
            log.info("Cleaned up %d job(s): %s", len(cleaned), ", ".join(cleaned))
        return {"cleaned": cleaned}

    async def terminate_jobs(self) -> None:
        """SIGTERM the process group of every job not started with keep_alive.

        Only jobs that are still running with the pid they were started with
        are signalled, so a recycled pid is never hit.
        """
        if not self._owned:
            return

        try:
            running = {
                job.job_id: job.pid
                for job in await self.list_jobs()
                if job.running
            }
        except TmuxerError as exc:
            log.warning("Could not list jobs for shutdown: %s", exc)
            running = {}

        for job_id, pid in list(self._owned.items()):
            if running.get(job_id) != pid:
                continue
            try:
                pgid = os.getpgid(pid)
                os.killpg(pgid, signal.SIGTERM)
                log.info("Terminated job '%s' (pid=%s)", job_id, pid)
            except (ProcessLookupError, OSError) as exc:
                log.warning("Could not terminate job '%s' (pid=%s): %s", job_id, pid, exc)
        self._owned.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _list_windows(self) -> list[tuple[str, Job]]:
        """(window_id, Job) pairs for every job window."""
        if not await self.registrar.exists():
            return []

        try:
            out = await self.tmux.run(
                "list-windows", "-t", session_target(self.session),
                "-F", WINDOW_FORMAT,
            )
        except TmuxCommandError as exc:
            # Session went away between the two calls
            log.debug("list-windows failed: %s", exc)
            return []

        now = self._clock()
        windows: list[tuple[str, Job]] = []
        for row in filter(None, out.split("\n")):
            values = row.split("\t", len(WINDOW_FIELDS) - 1)
            if len(values) != len(WINDOW_FIELDS):
                log.debug("Skipping malformed list-windows row: %r", row)
                continue
            fields = dict(zip(WINDOW_FIELDS, values))
            if fields["window_name"] == SENTINEL_WINDOW:
                continue
            windows.append((fields["window_id"], self._parse_job(fields, now)))
        return windows

    @staticmethod
    def _parse_job(fields: dict[str, str], now: float) -> Job:
        running = fields["pane_dead"] != "1"
        activity = _to_int(fields["window_activity"]) or 0
        history = _to_int(fields["history_size"]) or 0
        cursor_y = _to_int(fields["cursor_y"]) or 0
        return Job(
            job_id=fields["window_name"],
            pid=_to_int(fields["pane_pid"]),
            running=running,
            current_command=fields["pane_current_command"],
            lines=history + cursor_y + 1,
            last_activity_ms=max(0, int(now * 1000) - activity * 1000),
            exit_code=None if running else _to_int(fields["pane_dead_status"]),
        )

    async def _locate(self, job_id: str) -> tuple[str, Job]:
        """Window id and state of a job.

        Jobs are addressed by window id: a name like ``build.v2`` would be
        split at the dot by tmux target parsing.
        """
        for window_id, job in await self._list_windows():
            if job.job_id == job_id:
                return window_id, job
        raise JobNotFoundError(job_id)

    async def _find(self, job_id: str) -> Job:
        return (await self._locate(job_id))[1]

    async def _discard_window(self, window_id: str) -> None:
        try:
            await self.tmux.run("kill-window", "-t", window_id)
        except TmuxCommandError as exc:
            log.warning("Could not remove window %s: %s", window_id, exc)

    async def _raise_if_gone(self, job_id: str, exc: TmuxCommandError) -> None:
        """Turn a failed command into JobNotFoundError if the job vanished."""
        if not any(job.job_id == job_id for job in await self.list_jobs()):
            raise JobNotFoundError(job_id) from exc

    async def _check_unique(self, job_id: str, window_id: str) -> None:
        """Resolve a create race: the window with the lowest id keeps the name."""
        rivals = [
            wid for wid, job in await self._list_windows()
            if job.job_id == job_id and wid != window_id
        ]
        if any(_window_number(wid) < _window_number(window_id) for wid in rivals):
            log.warning("Lost creation race for job '%s'; removing %s", job_id, window_id)
            await self.tmux.run("kill-window", "-t", window_id)
            raise JobExistsError(job_id)

    async def _capture(self, target: str, history: bool = False) -> str:
        """Pane contents as plain text, without the blank rows of the
        unused part of the screen."""
        args = ["capture-pane", "-p", "-t", target]
        if history:
            args += ["-S", "-"]
        return (await self.tmux.run(*args)).rstrip()

    async def _wait_for_output(self, target: str) -> str:
        attempts = int(self.startup_timeout / STARTUP_POLL_INTERVAL)
        output = ""
        for attempt in range(attempts + 1):
            try:
                output = await self._capture(target)
            except TmuxCommandError as exc:
                log.debug("Startup capture of %s failed: %s", target, exc)
                return output
            if output.strip() or attempt == attempts:
                break
            await asyncio.sleep(STARTUP_POLL_INTERVAL)
        return output
