"""Pytest fixtures for tmuxer tests."""

from __future__ import annotations

import pytest

from tests.helpers import FakeTmux
from tmuxer.ids import SequentialIds
from tmuxer.manager import JobManager
from tmuxer.session import SessionRegistrar

SESSION = "tmuxer-test"
NOW = 1_700_000_000


@pytest.fixture
def fake_tmux() -> FakeTmux:
    return FakeTmux()


@pytest.fixture
def registrar(fake_tmux: FakeTmux) -> SessionRegistrar:
    return SessionRegistrar(fake_tmux, SESSION, width=120, height=20)


@pytest.fixture
def manager(fake_tmux: FakeTmux, registrar: SessionRegistrar) -> JobManager:
    """A JobManager on the fake server with no startup or settle waits."""
    return JobManager(
        fake_tmux,
        registrar,
        SequentialIds(),
        startup_timeout=0,
        settle_delay=0,
        clock=lambda: NOW + 2.5,
    )
