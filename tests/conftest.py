"""
Pytest Configuration and Fixtures
==================================

Shared fixtures for all test modules. Every test gets its own teams and
archive directories under ``tmp_path`` and a clean configuration singleton.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Iterator

import pytest

from agent_teams.config import AppConfig, reset_config
from agent_teams.team.executor import Executor, HandleResult, SubmissionRequest, TaskHandle
from agent_teams.team.mailbox import Mailbox
from agent_teams.team.poller import CompletionPoller
from agent_teams.team.protocol import CompletionPayload, FailurePayload, MessageType
from agent_teams.team.registry import TeamRegistry
from agent_teams.team.storage import TeamStorage


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Keep the developer's environment and .env out of the tests."""
    for key in list(os.environ):
        if key.startswith("AGENT_TEAMS_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def teams_dir(tmp_path: Path) -> Path:
    return tmp_path / "teams"


@pytest.fixture
def archive_dir(tmp_path: Path) -> Path:
    return tmp_path / "teams-archive"


@pytest.fixture
def config(teams_dir: Path, archive_dir: Path) -> AppConfig:
    """Enabled configuration with fast polling."""
    return AppConfig(
        enabled=True,
        teams_dir=teams_dir,
        archive_dir=archive_dir,
        poll_interval=0.01,
        wait_timeout=2.0,
        shutdown_timeout=0.2,
        worker_command="true",
    )


@pytest.fixture
def storage(teams_dir: Path, archive_dir: Path) -> TeamStorage:
    return TeamStorage(teams_dir, archive_dir)


@pytest.fixture
def registry(storage: TeamStorage) -> TeamRegistry:
    return TeamRegistry(storage)


@pytest.fixture
def mailbox(storage: TeamStorage) -> Mailbox:
    return Mailbox(storage)


@pytest.fixture
def poller(registry: TeamRegistry, mailbox: Mailbox) -> CompletionPoller:
    return CompletionPoller(registry, mailbox)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeHandle(TaskHandle):
    """Handle for work that never runs; teammates are simulated by tests."""

    def __init__(self, pid: int | None = None) -> None:
        self.pid = pid
        self.cancelled = False

    def done(self) -> bool:
        return self.cancelled

    async def result(self) -> HandleResult:
        return HandleResult(ok=not self.cancelled)

    async def cancel(self) -> None:
        self.cancelled = True


class RecordingExecutor(Executor):
    """Accepts every submission (or rejects the named members)."""

    name = "recording"

    def __init__(self, reject: set[str] | None = None) -> None:
        self.requests: list[SubmissionRequest] = []
        self.reject = reject or set()

    async def submit(self, request: SubmissionRequest) -> FakeHandle:
        from agent_teams.team.errors import SpawnError

        self.requests.append(request)
        if request.member in self.reject:
            raise SpawnError(f"executor unavailable for {request.member}")
        return FakeHandle(pid=1000 + len(self.requests))


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


def make_team(registry: TeamRegistry, mailbox: Mailbox, team: str, *members: str) -> None:
    """Create *team* with active *members* and empty mailboxes."""
    from agent_teams.team.protocol import MemberStatus

    registry.ensure_team(team)
    for name in members:
        registry.add_member(team, name, "unit-tester")
        mailbox.create(team, name)
        registry.update_member(team, name, MemberStatus.ACTIVE)


def post_completed(mailbox: Mailbox, team: str, member: str, count: int = 0, **extra: Any) -> bool:
    payload = CompletionPayload(processed_count=count, **extra).to_dict()
    return mailbox.writer(team, member).post(MessageType.TASK_COMPLETED, payload)


def post_failed(mailbox: Mailbox, team: str, member: str, message: str = "boom", artifacts=()) -> bool:
    payload = FailurePayload(message=message, artifacts=list(artifacts)).to_dict()
    return mailbox.writer(team, member).post(MessageType.TASK_FAILED, payload)
