"""In-memory stand-in for the tmux binary.

FakeTmux subclasses the real runner and only replaces ``_exec``, so the
argv building and error handling in tmuxer.tmux.Tmux are exercised as-is.
It understands the subset of tmux that tmuxer uses and keeps enough state
(sessions, windows, pane output, liveness) for the job manager to be
tested end to end without a tmux server.  Targets are parsed the way tmux
parses them: the window part is split at ``.``, and commands that resolve
``-t`` as a pane (set-option, set-hook, choose-tree) reject a bare ``=NAME``.

Job commands are "run" by a tiny interpreter:
  exit N                                   pane dies with status N
  echo TEXT                                prints TEXT, exits 0
  printf 'a\\nb\\n'                        prints the lines, exits 0
  read -p "PROMPT" VAR && echo "..$VAR.."  prompts, answers on Enter, exits 0
  anything else                            keeps running
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from tmuxer.tmux import Tmux

_FIELD = re.compile(r"#\{(\w+)\}")
_READ = re.compile(r'read -p "(?P<prompt>[^"]*)" (?P<var>\w+) && echo "(?P<reply>[^"]*)"')

VALUE_FLAGS = {"-t", "-s", "-n", "-x", "-y", "-F", "-S", "-e", "-L"}
WINDOW_OPTIONS = {"remain-on-exit"}


class FakeTmuxError(Exception):
    pass


@dataclass
class FakeWindow:
    window_id: int
    index: int
    name: str
    pid: int
    activity: int
    command: str = "bash"
    output: list[str] = field(default_factory=list)
    dead: bool = False
    status: int | None = None
    remain_on_exit: bool = False
    env: dict[str, str] = field(default_factory=dict)
    keys: list[tuple[str, str]] = field(default_factory=list)
    typed: str = ""
    on_line: Callable[[str], list[str]] | None = None
    shell_command: str | None = None


@dataclass
class FakeSession:
    name: str
    width: int = 80
    height: int = 24
    windows: dict[int, FakeWindow] = field(default_factory=dict)
    options: dict[str, str] = field(default_factory=dict)
    hooks: dict[str, str] = field(default_factory=dict)
    active: int | None = None
    picker_shown: int = 0

    def by_name(self, name: str) -> FakeWindow | None:
        for index in sorted(self.windows):
            if self.windows[index].name == name:
                return self.windows[index]
        return None


def parse_args(args: Sequence[str]) -> tuple[dict[str, list[str]], set[str], list[str]]:
    """Split tmux command args into value options, bare flags and positionals."""
    values: dict[str, list[str]] = {}
    flags: set[str] = set()
    positional: list[str] = []
    items = list(args)
    i = 0
    while i < len(items):
        item = items[i]
        if positional or not item.startswith("-") or item == "-":
            positional.append(item)
        elif item == "--":
            positional.extend(items[i + 1:])
            break
        elif item in VALUE_FLAGS:
            values.setdefault(item, []).append(items[i + 1])
            i += 1
        else:
            flags.add(item)
        i += 1
    return values, flags, positional


class FakeTmux(Tmux):
    def __init__(self, socket_name: str | None = None, base_index: int = 0) -> None:
        super().__init__(socket_name=socket_name)
        self.sessions: dict[str, FakeSession] = {}
        self.calls: list[list[str]] = []
        self.fail: dict[str, str] = {}
        self.global_base_index = base_index
        self.now = 1_700_000_000
        self._next_window_id = 0
        self._next_pid = 4000
        # windows whose process exits once the current send-keys is done
        self._die_later: list[FakeWindow] = []

    # ------------------------------------------------------------------
    # Introspection helpers for tests
    # ------------------------------------------------------------------

    def commands(self, name: str) -> list[list[str]]:
        return [call for call in self.calls if call[0] == name]

    def window(self, session: str, name: str) -> FakeWindow:
        window = self.sessions[session].by_name(name)
        assert window is not None, f"no window {name!r} in {session!r}"
        return window

    def add_window(self, session: str, name: str, **attrs: object) -> FakeWindow:
        """Create a window behind tmuxer's back (like another client would)."""
        sess = self.sessions[session]
        window = self._new_window(sess, name)
        for key, value in attrs.items():
            setattr(window, key, value)
        return window

    # ------------------------------------------------------------------
    # Tmux override
    # ------------------------------------------------------------------

    async def _exec(self, argv: Sequence[str]) -> tuple[int, str, str]:
        args = list(argv[1:])
        if args[:1] == ["-L"]:
            args = args[2:]
        self.calls.append(args)
        if args[0] in self.fail:
            return 1, "", self.fail[args[0]]
        handler = getattr(self, "_cmd_" + args[0].replace("-", "_"), None)
        if handler is None:
            return 1, "", f"unknown command: {args[0]}"
        try:
            return 0, handler(*parse_args(args[1:])), ""
        except FakeTmuxError as exc:
            return 1, "", str(exc)

    # ------------------------------------------------------------------
    # Target resolution
    # ------------------------------------------------------------------

    def _resolve(
        self, target: str, pane_scope: bool = False,
    ) -> tuple[FakeSession, FakeWindow | None, str]:
        if target.startswith("@"):
            for sess in self.sessions.values():
                for window in sess.windows.values():
                    if f"@{window.window_id}" == target:
                        return sess, window, target
            raise FakeTmuxError(f"can't find window: {target}")

        sess_part, colon, win_part = target.partition(":")
        if pane_scope and not colon and sess_part.startswith("="):
            # set-option/set-hook parse -t as a pane, so "=NAME" matches nothing
            raise FakeTmuxError(f"no such session: {sess_part}")
        # tmux splits the window part at "." to find the pane
        win_part = win_part.partition(".")[0]
        name = sess_part[1:] if sess_part.startswith("=") else sess_part
        sess = self.sessions.get(name)
        if sess is None:
            raise FakeTmuxError(f"can't find session: {name}")
        if not win_part:
            return sess, None, win_part
        if win_part.startswith("="):
            window = sess.by_name(win_part[1:])
        elif win_part.isdigit():
            window = sess.windows.get(int(win_part))
        else:
            window = sess.by_name(win_part)
        return sess, window, win_part

    def _window(self, target: str) -> tuple[FakeSession, FakeWindow]:
        sess, window, _ = self._resolve(target)
        if window is None:
            raise FakeTmuxError(f"can't find window: {target}")
        return sess, window

    def _free_index(self, sess: FakeSession) -> int:
        index = int(sess.options.get("base-index", self.global_base_index))
        while index in sess.windows:
            index += 1
        return index

    # ------------------------------------------------------------------
    # Process simulation
    # ------------------------------------------------------------------

    def _new_window(self, sess: FakeSession, name: str, index: int | None = None) -> FakeWindow:
        self._next_window_id += 1
        self._next_pid += 1
        if index is None:
            index = self._free_index(sess)
        window = FakeWindow(
            window_id=self._next_window_id,
            index=index,
            name=name,
            pid=self._next_pid,
            activity=self.now,
        )
        sess.windows[index] = window
        return window

    def _spawn(self, sess: FakeSession, window: FakeWindow, shell_command: str | None) -> None:
        window.shell_command = shell_command
        window.dead = False
        window.status = None
        if shell_command is None:
            window.command = "bash"
            return

        tokens = shlex.split(shell_command)
        if tokens[:3] == ["echo", "&&", "exec"] and tokens[4:5] == ["-c"]:
            window.output.append("")
            command = tokens[5]
        else:
            command = shell_command

        window.command = command.split()[0] if command.split() else "bash"
        window.activity = self.now
        self._run(sess, window, command)

    def _run(self, sess: FakeSession, window: FakeWindow, command: str) -> None:
        exit_match = re.fullmatch(r"exit (\d+)", command.strip())
        read_match = _READ.fullmatch(command.strip())
        if exit_match:
            self._die(sess, window, int(exit_match.group(1)))
        elif command.startswith("echo "):
            window.output.append(" ".join(shlex.split(command)[1:]))
            self._die(sess, window, 0)
        elif command.startswith("printf "):
            text = shlex.split(command)[1].replace("\\n", "\n")
            window.output.extend(text.rstrip("\n").split("\n"))
            self._die(sess, window, 0)
        elif read_match:
            window.output.append(read_match.group("prompt"))
            var, reply = read_match.group("var"), read_match.group("reply")

            def answer(line: str) -> list[str]:
                self._die_later.append(window)
                return [reply.replace(f"${var}", line)]

            window.on_line = answer

    def _die(self, sess: FakeSession, window: FakeWindow, status: int) -> None:
        window.dead = True
        window.status = status
        window.command = "bash"
        if not window.remain_on_exit:
            self._remove(sess, window)
            return
        window.output.append(f"Pane is dead (status {status}, Tue Nov 14 22:13:20 2023)")

    def _remove(self, sess: FakeSession, window: FakeWindow) -> None:
        sess.windows.pop(window.index, None)
        if not sess.windows:
            self.sessions.pop(sess.name, None)

    def _render(self, fmt: str, sess: FakeSession, window: FakeWindow) -> str:
        visible = min(len(window.output), sess.height)
        values = {
            "window_index": str(window.index),
            "window_id": f"@{window.window_id}",
            "window_name": window.name,
            "window_activity": str(window.activity),
            "pane_current_command": window.command,
            "history_size": str(max(0, len(window.output) - sess.height)),
            "cursor_y": str(max(0, visible - 1)),
            "pane_pid": str(window.pid),
            "pane_dead": "1" if window.dead else "0",
            "pane_dead_status": "" if window.status is None else str(window.status),
        }
        return _FIELD.sub(lambda m: values[m.group(1)], fmt)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _cmd_has_session(self, values, flags, positional) -> str:
        self._resolve(values["-t"][0])
        return ""

    def _cmd_new_session(self, values, flags, positional) -> str:
        name = values["-s"][0]
        if name in self.sessions:
            raise FakeTmuxError(f"duplicate session: {name}")
        sess = FakeSession(
            name=name,
            width=int(values.get("-x", ["80"])[0]),
            height=int(values.get("-y", ["24"])[0]),
        )
        self.sessions[name] = sess
        window = self._new_window(sess, values.get("-n", ["bash"])[0])
        self._spawn(sess, window, positional[0] if positional else None)
        return ""

    def _cmd_set_option(self, values, flags, positional) -> str:
        name, value = positional[0], positional[1]
        if "-w" in flags or name in WINDOW_OPTIONS:
            _, window = self._window(values["-t"][0])
            if name == "remain-on-exit":
                window.remain_on_exit = value == "on"
        else:
            sess, _, _ = self._resolve(values["-t"][0], pane_scope=True)
            sess.options[name] = value
        return ""

    def _cmd_set_hook(self, values, flags, positional) -> str:
        sess, _, _ = self._resolve(values["-t"][0], pane_scope=True)
        sess.hooks[positional[0]] = positional[1]
        return ""

    def _cmd_respawn_pane(self, values, flags, positional) -> str:
        sess, window = self._window(values["-t"][0])
        if not window.dead and "-k" not in flags:
            raise FakeTmuxError("pane still active")
        self._spawn(sess, window, positional[0] if positional else None)
        return ""

    def _cmd_list_windows(self, values, flags, positional) -> str:
        sess, _, _ = self._resolve(values["-t"][0])
        fmt = values.get("-F", ["#{window_index}: #{window_name}"])[0]
        return "".join(
            self._render(fmt, sess, sess.windows[index]) + "\n"
            for index in sorted(sess.windows)
        )

    def _cmd_new_window(self, values, flags, positional) -> str:
        sess, window, win_part = self._resolve(values["-t"][0])
        index = int(win_part) if win_part.isdigit() else None
        if index is not None and index in sess.windows:
            raise FakeTmuxError(f"index {index} in use")
        window = self._new_window(sess, values.get("-n", ["bash"])[0], index)
        for item in values.get("-e", []):
            key, _, value = item.partition("=")
            window.env[key] = value
        if "remain-on-exit on" in sess.hooks.get("after-new-window", ""):
            window.remain_on_exit = True
        self._spawn(sess, window, positional[0] if positional else None)
        if "-P" in flags:
            fmt = values.get("-F", ["#{session_name}:#{window_index}.0"])[0]
            return self._render(fmt, sess, window) + "\n"
        return ""

    def _cmd_move_window(self, values, flags, positional) -> str:
        src_sess, window = self._window(values["-s"][0])
        dst_sess, existing, win_part = self._resolve(values["-t"][0])
        if existing is not None:
            raise FakeTmuxError(f"index {win_part} in use")
        index = int(win_part) if win_part.isdigit() else self._free_index(dst_sess)
        src_sess.windows.pop(window.index)
        window.index = index
        dst_sess.windows[index] = window
        return ""

    def _cmd_capture_pane(self, values, flags, positional) -> str:
        sess, window = self._window(values["-t"][0])
        lines = list(window.output)
        if "-S" not in values:
            lines = lines[-sess.height:]
        lines += [""] * (sess.height - len(lines))
        return "\n".join(lines) + "\n"

    def _cmd_copy_mode(self, values, flags, positional) -> str:
        self._window(values["-t"][0])
        return ""

    def _cmd_send_keys(self, values, flags, positional) -> str:
        sess, window = self._window(values["-t"][0])
        if "-l" in flags:
            for text in positional:
                window.keys.append(("literal", text))
                window.typed += text
                if not window.output:
                    window.output.append("")
                window.output[-1] += text
            return ""
        for key in positional:
            window.keys.append(("key", key))
            if window.dead:
                continue
            if key == "Enter":
                line, window.typed = window.typed, ""
                if window.on_line is not None:
                    window.output.extend(window.on_line(line))
                else:
                    window.output.append("")
            elif key == "C-c":
                window.output[-1:] = [(window.output[-1] if window.output else "") + "^C"]
                self._die(sess, window, 130)
        while self._die_later:
            doomed = self._die_later.pop()
            self._die(sess, doomed, 0)
        return ""

    def _cmd_kill_window(self, values, flags, positional) -> str:
        sess, window = self._window(values["-t"][0])
        self._remove(sess, window)
        return ""

    def _cmd_select_window(self, values, flags, positional) -> str:
        sess, window = self._window(values["-t"][0])
        sess.active = window.index
        return ""

    def _cmd_choose_tree(self, values, flags, positional) -> str:
        sess, _, _ = self._resolve(values["-t"][0], pane_scope=True)
        sess.picker_shown += 1
        return ""
