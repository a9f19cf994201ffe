"""Executor boundary - how a teammate's work actually gets started.

The coordination logic only depends on :class:`Executor` and
:class:`TaskHandle`: ``submit(request) -> handle``, ``await handle.result()``.
What runs behind a handle (a detached process, an asyncio task, a remote
job) is up to the executor.

:class:`SubprocessExecutor` is the production executor: it starts the
configured worker command as a detached process group so that teammates
outlive the CLI invocation that spawned them.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from agent_teams.team.errors import SpawnError
from agent_teams.team.partition import Target

logger = logging.getLogger("agent_teams.team.executor")

STOP_TIMEOUT = 10.0  # seconds between terminate and kill


@dataclass(frozen=True)
class SubmissionRequest:
    """Everything a teammate needs to start working."""
    team: str
    member: str
    role: str
    instructions: str
    mailbox_path: Path
    teams_dir: Path
    targets: tuple[Target, ...] = ()
    instructions_path: Path | None = None
    targets_path: Path | None = None
    log_path: Path | None = None
    reference_paths: tuple[Path, ...] = ()

    @property
    def agent_id(self) -> str:
        return f"{self.member}@{self.team}"

    def environment(self) -> dict[str, str]:
        """Variables through which a subprocess teammate finds its mailbox."""
        env = {
            "AGENT_TEAMS_ENABLED": "1",
            "AGENT_TEAMS_TEAM": self.team,
            "AGENT_TEAMS_MEMBER": self.member,
            "AGENT_TEAMS_ROLE": self.role,
            "AGENT_TEAMS_AGENT_ID": self.agent_id,
            "AGENT_TEAMS_MAILBOX": str(self.mailbox_path),
            "AGENT_TEAMS_TEAMS_DIR": str(self.teams_dir),
        }
        if self.instructions_path is not None:
            env["AGENT_TEAMS_INSTRUCTIONS"] = str(self.instructions_path)
        if self.targets_path is not None:
            env["AGENT_TEAMS_TARGETS"] = str(self.targets_path)
        if self.reference_paths:
            env["AGENT_TEAMS_REFERENCES"] = os.pathsep.join(str(p) for p in self.reference_paths)
        return env


@dataclass(frozen=True)
class HandleResult:
    """How the underlying execution ended (not what the teammate reported)."""
    ok: bool
    exit_code: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class TaskHandle(ABC):
    """A running teammate execution."""

    pid: int | None = None

    @abstractmethod
    def done(self) -> bool: ...

    @abstractmethod
    async def result(self) -> HandleResult: ...

    @abstractmethod
    async def cancel(self) -> None: ...


class Executor(ABC):
    """Starts teammate executions."""

    name: str = "executor"

    @abstractmethod
    async def submit(self, request: SubmissionRequest) -> TaskHandle:
        """Start the teammate; raise :class:`SpawnError` if it cannot start."""


# ---------------------------------------------------------------------------
# Subprocess executor
# ---------------------------------------------------------------------------

class SubprocessHandle(TaskHandle):
    """Wraps a ``subprocess.Popen`` for a single teammate."""

    def __init__(self, process: subprocess.Popen, member: str, poll_interval: float = 0.5) -> None:
        self.process = process
        self.member = member
        self.pid = process.pid
        self._poll_interval = poll_interval

    def done(self) -> bool:
        return self.process.poll() is not None

    async def result(self) -> HandleResult:
        while self.process.poll() is None:
            await asyncio.sleep(self._poll_interval)
        code = self.process.returncode
        if code == 0:
            return HandleResult(ok=True, exit_code=code)
        return HandleResult(ok=False, exit_code=code, error=f"exited with code {code}")

    async def cancel(self) -> None:
        """Terminate the teammate process, killing it if it does not stop."""
        if self.done():
            return
        logger.info("Stopping teammate %s (pid=%d)", self.member, self.pid)
        try:
            self.process.terminate()
            try:
                await asyncio.wait_for(asyncio.to_thread(self.process.wait), timeout=STOP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Teammate %s did not stop in time, killing", self.member)
                self.process.kill()
                await asyncio.to_thread(self.process.wait)
        except ProcessLookupError:
            pass  # Already exited


class SubprocessExecutor(Executor):
    """Runs ``command`` once per teammate as a detached process."""

    name = "subprocess"

    def __init__(
        self,
        command: str | Sequence[str],
        *,
        cwd: Path | None = None,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            raise SpawnError("No worker command configured (set AGENT_TEAMS_WORKER_COMMAND)")
        self.argv = argv
        self.cwd = cwd
        self.extra_env = dict(extra_env or {})

    async def submit(self, request: SubmissionRequest) -> SubprocessHandle:
        env = {**os.environ, **self.extra_env, **request.environment()}
        log_path = request.log_path or Path(os.devnull)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Starting teammate %s: %s", request.agent_id, " ".join(self.argv))
        try:
            with open(log_path, "ab") as log:
                process = subprocess.Popen(
                    self.argv,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    env=env,
                    cwd=str(self.cwd) if self.cwd else None,
                    start_new_session=True,
                )
        except OSError as e:
            raise SpawnError(f"Failed to start teammate {request.member}: {e}") from e
        return SubprocessHandle(process, request.member)
