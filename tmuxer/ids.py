"""Job id allocation policies.

Two interchangeable policies decide the id of a job created without an
explicit ``job_id``:

  - SequentialIds: ``job1``, ``job2``, ... derived from the ids tmux already
    knows about, so numbering survives a manager restart.
  - RandomIds: ``job-3f9a12bc``; never scans existing jobs.

Explicit ids are checked the same way by both policies.
"""

from __future__ import annotations

import random
import re
from abc import ABC, abstractmethod
from collections.abc import Collection

from .errors import JobExistsError

DEFAULT_PREFIX = "job"

_DIGITS = re.compile(r"[0-9]+")


class IdPolicy(ABC):
    """Decides job ids. ``existing`` holds every known id, live or dead."""

    def allocate(
        self,
        existing: Collection[str],
        prefix: str | None = None,
        explicit_id: str | None = None,
        reserved: Collection[str] = (),
    ) -> str:
        if explicit_id is not None:
            if explicit_id in existing or explicit_id in reserved:
                raise JobExistsError(explicit_id)
            return explicit_id
        return self.generate(prefix or DEFAULT_PREFIX, existing)

    @abstractmethod
    def generate(self, prefix: str, existing: Collection[str]) -> str:
        ...


class SequentialIds(IdPolicy):
    """``prefix`` + (largest numeric suffix in use + 1).

    An in-memory counter per prefix is kept as well so ids are not handed
    out twice when a job is created and cleaned up between two calls.  The
    counter is advisory; tmux's window list stays the source of truth.
    """

    def __init__(self) -> None:
        self._next: dict[str, int] = {}

    def generate(self, prefix: str, existing: Collection[str]) -> str:
        highest = 0
        for job_id in existing:
            if not job_id.startswith(prefix):
                continue
            suffix = job_id[len(prefix):]
            if _DIGITS.fullmatch(suffix):
                highest = max(highest, int(suffix))

        number = max(highest + 1, self._next.get(prefix, 1))
        self._next[prefix] = number + 1
        return f"{prefix}{number}"


class RandomIds(IdPolicy):
    """``prefix-XXXXXXXX`` with 8 hex characters; collisions are ignored."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.SystemRandom()

    def generate(self, prefix: str, existing: Collection[str]) -> str:
        return f"{prefix}-{self._rng.getrandbits(32):08x}"


POLICIES: dict[str, type[IdPolicy]] = {
    "sequential": SequentialIds,
    "random": RandomIds,
}


def make_policy(name: str) -> IdPolicy:
    try:
        return POLICIES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown id policy '{name}' (choose from {', '.join(POLICIES)})"
        ) from None
