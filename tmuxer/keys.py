"""Translate the ``text{Key}`` input language into tmux send-keys segments.

Syntax:
  - ``{Name}`` is a tmux key name when ``Name`` starts with a word
    character: ``{Enter}``, ``{Up}``, ``{C-c}``, ``{F5}``.
  - ``{{`` and ``}}`` are a literal ``{`` and ``}``.
  - Any other brace (``{}``, ``{ x}``, a lone ``}``) is literal text.

Examples:
    "Hello world{Enter}"  -> TEXT("Hello world"), KEY("Enter")
    "{Up}{Up}{Enter}"     -> KEY("Up"), KEY("Up"), KEY("Enter")
    "echo {{a,b}}{Enter}" -> TEXT("echo {a,b}"), KEY("Enter")
"""

from __future__ import annotations

import re
import shlex

from .models import InputSegment, SegmentKind

_TOKEN = re.compile(r"\{\{|\}\}|\{(\w[^{}]*)\}")


def parse_input(text: str) -> list[InputSegment]:
    segments: list[InputSegment] = []
    literal: list[str] = []

    def flush() -> None:
        if literal:
            segments.append(InputSegment(SegmentKind.TEXT, "".join(literal)))
            literal.clear()

    pos = 0
    for match in _TOKEN.finditer(text):
        literal.append(text[pos:match.start()])
        token = match.group(0)
        if token == "{{":
            literal.append("{")
        elif token == "}}":
            literal.append("}")
        else:
            flush()
            segments.append(InputSegment(SegmentKind.KEY, match.group(1)))
        pos = match.end()
    literal.append(text[pos:])
    flush()

    return [s for s in segments if s.value]


def send_keys_args(segment: InputSegment) -> list[str]:
    """Arguments following ``send-keys -t TARGET`` for one segment."""
    if segment.kind is SegmentKind.TEXT:
        return ["-l", "--", segment.value]
    return [segment.value]


def raw_keys(text: str) -> list[str]:
    """Split raw-mode input into key arguments (``"Down Down"`` -> two keys).

    Quoting follows the shell, so ``"'hello world' Enter"`` types the quoted
    words as one argument.
    """
    return shlex.split(text)
