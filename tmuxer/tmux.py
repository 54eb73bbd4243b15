"""Thin async wrapper around the tmux binary.

Every tmux call goes through :class:`Tmux`, which runs the binary as an
argv list (no shell involved).  The only strings that are ever interpreted
by a shell are the *shell-command* arguments tmux itself hands to
``/bin/sh -c`` (``new-window``, ``respawn-pane``, hooks); those are built
with :func:`quote` and nowhere else.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence

from tmuxer.errors import TmuxCommandError

log = logging.getLogger(__name__)


def quote(value: str) -> str:
    """Quote *value* as a single POSIX shell word.

    The result is always wrapped in single quotes; an embedded single quote
    closes the quoted run, emits an escaped quote and reopens it
    (``it's`` -> ``'it'\\''s'``).  Unlike :func:`shlex.quote` the output is
    quoted even when the input is already shell-safe, so callers can rely on
    the shape.
    """
    return "'" + value.replace("'", "'\\''") + "'"


def session_target(session: str) -> str:
    """Exact-match target for a session (``=name``)."""
    return f"={session}"


def window_target(session: str, name: str = "") -> str:
    """Exact-match target for a window by name inside *session*.

    Names get a ``=`` prefix so that a window called ``1`` is never mistaken
    for the window at index 1.  tmux still splits the name at ``.`` (pane),
    so job windows are addressed by window id instead.  An empty *name*
    targets the session's current pane, which is also what ``new-window -t``
    wants for "next free index" and what ``set-option``/``set-hook`` need.
    """
    if not name:
        return f"={session}:"
    return f"={session}:={name}"


def index_target(session: str, index: int) -> str:
    return f"={session}:{index}"


def format_fields(fields: Iterable[str]) -> str:
    """Build a tab-separated ``-F`` format string from bare field names."""
    return "\t".join(f"#{{{name}}}" for name in fields)


class Tmux:
    """Runs tmux commands against one tmux server.

    ``socket_name`` maps to ``tmux -L`` and selects a private server, which
    keeps tests (or parallel installs) away from the user's own sessions.
    """

    def __init__(
        self,
        socket_name: str | None = None,
        binary: str = "tmux",
    ) -> None:
        self.socket_name = socket_name
        self.binary = binary

    def argv(self, *args: str) -> list[str]:
        prefix = [self.binary]
        if self.socket_name:
            prefix += ["-L", self.socket_name]
        return prefix + list(args)

    async def run(self, *args: str) -> str:
        """Run a tmux command and return its stdout without the final newline.

        Raises :class:`TmuxCommandError` on a non-zero exit status or when
        the binary cannot be started at all.
        """
        argv = self.argv(*args)
        returncode, stdout, stderr = await self._exec(argv)
        if returncode != 0:
            log.debug("tmux failed (%s): %s", returncode, " ".join(argv))
            raise TmuxCommandError(argv, returncode, stderr)
        return stdout.removesuffix("\n")

    async def succeeds(self, *args: str) -> bool:
        """Run a tmux command whose failure is an expected answer."""
        argv = self.argv(*args)
        returncode, _, _ = await self._exec(argv)
        return returncode == 0

    async def _exec(self, argv: Sequence[str]) -> tuple[int, str, str]:
        log.debug("tmux: %s", " ".join(argv))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TmuxCommandError(argv, None, str(exc)) from exc
        stdout, stderr = await process.communicate()
        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
