"""Session Registrar: makes sure tmuxer's tmux session exists.

Layout of a tmuxer session:

    index 0   "main"   dead placeholder pane (keeps the session alive)
    index 1+  <job>    one window per job, remain-on-exit on

The session may be created, attached to or damaged by someone else at any
time, so ``ensure_session`` re-checks the layout on every call and repairs
what is missing.  A foreign window found at index 0 is removed.
"""

from __future__ import annotations

import hashlib
import logging
import os

from .errors import SessionSetupError, TmuxCommandError
from .tmux import Tmux, format_fields, index_target, session_target, window_target

log = logging.getLogger(__name__)

SENTINEL_WINDOW = "main"
SESSION_PREFIX = "tmuxer"

# Applied to every window created after the hook is installed
REMAIN_ON_EXIT_HOOK = "set-option remain-on-exit on"
DETACH_HINT = "Press 'Ctrl+b then d' to disconnect"
# Window picker shown to clients attached to a fixed session
PICKER_COMMAND = "choose-tree -w"


def default_session_name(cwd: str | None = None) -> str:
    """``tmuxer-<4 hex chars>``, stable per working directory."""
    key = cwd if cwd is not None else os.getcwd()
    digest = hashlib.md5(key.encode("utf-8")).hexdigest()[:4]
    return f"{SESSION_PREFIX}-{digest}"


class SessionRegistrar:
    """Creates or repairs one tmux session.

    ``fixed`` marks a caller-chosen, well-known session name (``--session``).
    Such sessions are more likely to be created by hand, so they also get a
    status-line hint and a window picker for humans who attach to them.
    """

    def __init__(
        self,
        tmux: Tmux,
        name: str | None = None,
        *,
        width: int = 250,
        height: int = 80,
    ) -> None:
        self.tmux = tmux
        self.fixed = name is not None
        self.name = name or default_session_name()
        self.width = width
        self.height = height

    async def exists(self) -> bool:
        return await self.tmux.succeeds("has-session", "-t", session_target(self.name))

    async def ensure_session(self) -> str:
        """Create the session if missing, then repair the sentinel window.

        Idempotent: on a healthy session this only issues read-only checks
        plus re-applying the same options.  Returns the session name.
        """
        try:
            if not await self.exists():
                await self._create()
            elif not await self._has_sentinel():
                await self._restore_sentinel()
            await self._apply_options()
        except TmuxCommandError as exc:
            raise SessionSetupError(
                f"Could not set up tmux session '{self.name}': {exc}"
            ) from exc
        return self.name

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _create(self) -> None:
        log.info("Creating tmux session '%s'", self.name)
        await self.tmux.run(
            "new-session", "-d",
            "-s", self.name,
            "-n", SENTINEL_WINDOW,
            "-x", str(self.width),
            "-y", str(self.height),
        )
        await self.tmux.run(
            "set-option", "-t", window_target(self.name), "base-index", "0",
        )
        await self._kill_sentinel_process()
        await self._claim_slot_zero()

    async def _has_sentinel(self) -> bool:
        return SENTINEL_WINDOW in (await self._windows()).values()

    async def _windows(self) -> dict[int, str]:
        """Map of window index -> window name."""
        out = await self.tmux.run(
            "list-windows", "-t", session_target(self.name),
            "-F", format_fields(["window_index", "window_name"]),
        )
        windows: dict[int, str] = {}
        for row in filter(None, out.split("\n")):
            index, _, name = row.partition("\t")
            windows[int(index)] = name
        return windows

    async def _restore_sentinel(self) -> None:
        log.warning(
            "Session '%s' has no '%s' window, recreating it",
            self.name, SENTINEL_WINDOW,
        )
        await self.tmux.run(
            "new-window", "-d",
            "-t", window_target(self.name),
            "-n", SENTINEL_WINDOW,
        )
        await self._kill_sentinel_process()
        await self._claim_slot_zero()

    async def _claim_slot_zero(self) -> None:
        """Move the sentinel to index 0, removing whatever sits there."""
        slot0 = (await self._windows()).get(0)
        if slot0 == SENTINEL_WINDOW:
            return
        sentinel = window_target(self.name, SENTINEL_WINDOW)
        if slot0 is not None:
            # Switch attached clients away before the window goes
            log.warning("Removing foreign window '%s' at %s:0", slot0, self.name)
            await self.tmux.run("select-window", "-t", sentinel)
            await self.tmux.run("kill-window", "-t", index_target(self.name, 0))
        await self.tmux.run(
            "move-window", "-s", sentinel, "-t", index_target(self.name, 0),
        )

    async def _kill_sentinel_process(self) -> None:
        """Turn the sentinel into a permanently dead pane."""
        target = window_target(self.name, SENTINEL_WINDOW)
        await self.tmux.run("set-option", "-w", "-t", target, "remain-on-exit", "on")
        await self.tmux.run("respawn-pane", "-k", "-t", target, "exit 0")

    async def _apply_options(self) -> None:
        # set-option and set-hook resolve -t as a pane, so "=NAME" alone fails
        target = window_target(self.name)
        await self.tmux.run("set-hook", "-t", target, "after-new-window", REMAIN_ON_EXIT_HOOK)
        if self.fixed:
            await self.tmux.run("set-hook", "-t", target, "client-attached", PICKER_COMMAND)
            await self.tmux.run("set-option", "-t", target, "status-right", DETACH_HINT)

    # ------------------------------------------------------------------
    # Attached clients
    # ------------------------------------------------------------------

    async def show_jobs(self, window_id: str | None = None) -> None:
        """Bring *window_id* forward and open the window picker.

        Only fixed sessions are meant to be watched by a human, so this is a
        no-op for hashed ones.  Failures are logged and otherwise ignored.
        """
        if not self.fixed:
            return
        try:
            if window_id is not None:
                await self.tmux.run("select-window", "-t", window_id)
            await self.tmux.run(*PICKER_COMMAND.split(), "-t", window_target(self.name))
        except TmuxCommandError as exc:
            log.debug("Could not refresh window picker: %s", exc)
