"""Teammate side of the protocol.

A teammate reports through its own mailbox only: zero or more ``progress``
messages, then exactly one terminal message (``task_completed`` or
``task_failed``). :func:`run_teammate` wraps an async work function so that
the terminal message is always posted, whatever the function does.

Subprocess teammates can use the module directly as a wrapper around any
command::

    python -m agent_teams.team.worker -- my-tool --flag

The command runs with the teammate environment set by the spawner. Exit code
0 posts ``task_completed`` (the last stdout line is used as the payload when
it is a JSON object), anything else posts ``task_failed``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Union

from agent_teams.team.errors import MemberNotFoundError, StorageError, TeamNotFoundError
from agent_teams.team.executor import Executor, HandleResult, SubmissionRequest, TaskHandle
from agent_teams.team.mailbox import Mailbox, MailboxWriter
from agent_teams.team.protocol import (
    CompletionPayload,
    FailurePayload,
    MemberStatus,
    MessageType,
)
from agent_teams.team.registry import TeamRegistry
from agent_teams.team.storage import TeamStorage

logger = logging.getLogger("agent_teams.team.worker")

WorkResult = Union[CompletionPayload, Mapping[str, Any], None]
WorkFunction = Callable[[SubmissionRequest], Awaitable[WorkResult]]


class TeammateFailure(Exception):
    """Raised by work functions to fail with partial artifacts."""

    def __init__(self, message: str, artifacts: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.artifacts = list(artifacts)


# ---------------------------------------------------------------------------
# Teammate handle
# ---------------------------------------------------------------------------

class Teammate:
    """A teammate's view of its team: its own mailbox plus the registry."""

    def __init__(self, writer: MailboxWriter, registry: TeamRegistry | None = None) -> None:
        self.writer = writer
        self.registry = registry

    @property
    def team(self) -> str:
        return self.writer.team

    @property
    def name(self) -> str:
        return self.writer.member

    @classmethod
    def from_environment(cls, env: Mapping[str, str] | None = None) -> "Teammate":
        """Build a teammate from the variables the spawner exported.

        Raises:
            KeyError: if the process was not started as a teammate.
        """
        env = os.environ if env is None else env
        teams_dir = Path(env["AGENT_TEAMS_TEAMS_DIR"])
        storage = TeamStorage(teams_dir)
        mailbox = Mailbox(storage)
        return cls(
            mailbox.writer(env["AGENT_TEAMS_TEAM"], env["AGENT_TEAMS_MEMBER"]),
            TeamRegistry(storage),
        )

    def progress(self, message: str = "", **data: Any) -> bool:
        payload = dict(data)
        if message:
            payload["message"] = message
        return self.writer.post(MessageType.PROGRESS, payload)

    def complete(
        self,
        processed_count: int = 0,
        artifacts: Iterable[str] = (),
        metrics: Mapping[str, int | float] | None = None,
        errors: Iterable[str] = (),
        status: str = "completed",
    ) -> bool:
        payload = CompletionPayload(
            processed_count=processed_count,
            artifacts=list(artifacts),
            metrics=dict(metrics or {}),
            errors=list(errors),
            status=status,
        )
        return self.writer.post(MessageType.TASK_COMPLETED, payload.to_dict())

    def fail(self, message: str, artifacts: Iterable[str] = ()) -> bool:
        payload = FailurePayload(message=message, artifacts=list(artifacts))
        return self.writer.post(MessageType.TASK_FAILED, payload.to_dict())

    def acknowledge_shutdown(self) -> bool:
        return self.writer.post(MessageType.SHUTDOWN_ACK)

    def shutdown_requested(self) -> bool:
        """True once the lead has asked this teammate to stop.

        A team that no longer exists counts as a request.
        """
        if self.registry is None:
            return False
        try:
            member = self.registry.get_member(self.team, self.name)
        except (TeamNotFoundError, MemberNotFoundError):
            return True
        except StorageError as e:
            logger.warning("Could not read registry for %s: %s", self.team, e)
            return False
        return member.status.rank >= MemberStatus.SHUTDOWN_REQUESTED.rank


# ---------------------------------------------------------------------------
# Running work functions
# ---------------------------------------------------------------------------

def _completion_from(outcome: WorkResult, request: SubmissionRequest) -> CompletionPayload:
    if isinstance(outcome, CompletionPayload):
        return outcome
    if outcome is None:
        return CompletionPayload(processed_count=len(request.targets))
    return CompletionPayload.from_dict(dict(outcome))


async def run_teammate(
    work: WorkFunction,
    request: SubmissionRequest,
    teammate: Teammate,
) -> HandleResult:
    """Run *work* for one teammate and post its terminal message.

    Returning ``None`` reports every assigned target as processed. Raising
    posts ``task_failed``; :class:`TeammateFailure` carries partial artifacts.
    """
    teammate.progress(f"Starting {len(request.targets)} targets", role=request.role)
    try:
        outcome = await work(request)
    except asyncio.CancelledError:
        teammate.fail("Cancelled by team lead")
        raise
    except TeammateFailure as exc:
        logger.warning("Teammate %s failed: %s", request.agent_id, exc)
        teammate.fail(str(exc), exc.artifacts)
        return HandleResult(ok=False, error=str(exc))
    except Exception as exc:
        message = str(exc) or type(exc).__name__
        logger.error("Teammate %s crashed: %s", request.agent_id, message)
        teammate.fail(message)
        return HandleResult(ok=False, error=message)

    payload = _completion_from(outcome, request)
    posted = teammate.writer.post(MessageType.TASK_COMPLETED, payload.to_dict())
    if not posted:
        logger.info("Completion of %s was not recorded", request.agent_id)
    return HandleResult(ok=True, payload=payload.to_dict())


class InProcessHandle(TaskHandle):
    """Wraps the asyncio task running one teammate."""

    def __init__(self, task: asyncio.Task) -> None:
        self.task = task

    def done(self) -> bool:
        return self.task.done()

    async def result(self) -> HandleResult:
        try:
            return await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if self.task.cancelled():
                return HandleResult(ok=False, error="cancelled")
            raise

    async def cancel(self) -> None:
        if self.task.done():
            return
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass


class InProcessExecutor(Executor):
    """Runs teammates as asyncio tasks in the lead's event loop."""

    name = "in-process"

    def __init__(self, work: WorkFunction, mailbox: Mailbox) -> None:
        self.work = work
        self.mailbox = mailbox
        self.handles: dict[str, InProcessHandle] = {}

    async def submit(self, request: SubmissionRequest) -> InProcessHandle:
        teammate = Teammate(
            self.mailbox.writer(request.team, request.member),
            TeamRegistry(self.mailbox.storage),
        )
        task = asyncio.create_task(
            run_teammate(self.work, request, teammate),
            name=f"teammate-{request.agent_id}",
        )
        handle = InProcessHandle(task)
        self.handles[request.member] = handle
        return handle


# ---------------------------------------------------------------------------
# Subprocess entry point
# ---------------------------------------------------------------------------

def _payload_from_output(output: str, target_count: int) -> dict[str, Any]:
    """Use the last stdout line as the payload if it is a JSON object."""
    for line in reversed(output.splitlines()):
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            break
        if isinstance(data, dict):
            return CompletionPayload.from_dict(data).to_dict()
        break
    return CompletionPayload(processed_count=target_count).to_dict()


def _count_targets(env: Mapping[str, str]) -> int:
    path = env.get("AGENT_TEAMS_TARGETS")
    if not path:
        return 0
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return 0
    return len(data) if isinstance(data, list) else 0


async def wrap_command(
    argv: list[str],
    teammate: Teammate,
    *,
    target_count: int = 0,
    poll_interval: float = 2.0,
) -> int:
    """Run *argv* as this teammate's work and report its outcome."""
    teammate.progress(f"Running {argv[0]}")
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        teammate.fail(f"Failed to start {argv[0]}: {exc}")
        return 1

    communicate = asyncio.ensure_future(process.communicate())
    while not communicate.done():
        done, _ = await asyncio.wait({communicate}, timeout=poll_interval)
        if done:
            break
        if teammate.shutdown_requested():
            logger.info("Shutdown requested for %s, stopping %s", teammate.name, argv[0])
            process.terminate()
            try:
                await asyncio.wait_for(communicate, timeout=10.0)
            except asyncio.TimeoutError:
                process.kill()
                await communicate
            teammate.acknowledge_shutdown()
            return 130

    stdout, _ = communicate.result()
    output = (stdout or b"").decode("utf-8", errors="replace")
    sys.stdout.write(output)
    sys.stdout.flush()

    if process.returncode == 0:
        payload = _payload_from_output(output, target_count)
        teammate.writer.post(MessageType.TASK_COMPLETED, payload)
        return 0
    teammate.fail(f"{argv[0]} exited with code {process.returncode}")
    return process.returncode or 1


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``python -m agent_teams.team.worker -- COMMAND...``."""
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [teammate] %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    parser = argparse.ArgumentParser(description="Run a command as an agent-teams teammate")
    parser.add_argument("--poll-interval", type=float, default=2.0)
    parser.add_argument("command", nargs=argparse.REMAINDER)
    args = parser.parse_args(argv)

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        parser.error("no command given")

    try:
        teammate = Teammate.from_environment()
    except KeyError as exc:
        logger.error("Not started as a teammate (missing %s)", exc)
        return 1

    try:
        return asyncio.run(wrap_command(
            command,
            teammate,
            target_count=_count_targets(os.environ),
            poll_interval=args.poll_interval,
        ))
    except KeyboardInterrupt:
        teammate.fail("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
