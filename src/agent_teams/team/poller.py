"""Completion poller - observe teammates through their mailboxes.

:meth:`CompletionPoller.snapshot` is a single non-blocking read;
:meth:`CompletionPoller.wait` repeats it until every member completed, any
member failed, or the timeout passed. Neither touches the mailboxes or the
registry, and a timed-out wait leaves the teammates running.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from agent_teams.team.errors import TeamNotFoundError
from agent_teams.team.mailbox import Mailbox
from agent_teams.team.protocol import (
    Classification,
    FailurePayload,
    Member,
    MemberStatus,
    Message,
    WaitOutcome,
)
from agent_teams.team.registry import TeamRegistry

logger = logging.getLogger("agent_teams.team.poller")


@dataclass
class MemberSnapshot:
    name: str
    agent_id: str
    role: str
    status: MemberStatus
    classification: Classification
    messages: list[Message] = field(default_factory=list)
    terminal: Message | None = None
    error: str | None = None

    @property
    def failure_reason(self) -> str:
        if self.terminal is not None and self.terminal.type.is_failure:
            return FailurePayload.from_dict(self.terminal.payload).message
        return self.error or "Unknown error"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "agent_id": self.agent_id,
            "role": self.role,
            "status": self.status.value,
            "classification": self.classification.value,
            "message_count": len(self.messages),
        }
        if self.terminal is not None:
            data["last_message"] = self.terminal.to_dict()
        elif self.messages:
            data["last_message"] = self.messages[-1].to_dict()
        if self.classification == Classification.FAILED:
            data["error"] = self.failure_reason
        return data


@dataclass
class PollSnapshot:
    team: str
    members: list[MemberSnapshot] = field(default_factory=list)

    def _names(self, classification: Classification) -> list[str]:
        return [m.name for m in self.members if m.classification == classification]

    @property
    def completed(self) -> list[str]:
        return self._names(Classification.COMPLETED)

    @property
    def pending(self) -> list[str]:
        return self._names(Classification.PENDING)

    @property
    def failed(self) -> list[str]:
        return self._names(Classification.FAILED)

    @property
    def all_completed(self) -> bool:
        return len(self.completed) == len(self.members)

    def get(self, name: str) -> MemberSnapshot | None:
        for member in self.members:
            if member.name == name:
                return member
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "team": self.team,
            "members": [m.to_dict() for m in self.members],
            "completed": self.completed,
            "pending": self.pending,
            "failed": self.failed,
        }


@dataclass
class WaitResult:
    """Outcome of :meth:`CompletionPoller.wait`."""
    outcome: WaitOutcome
    team: str
    elapsed_seconds: float
    completed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    results: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    @property
    def ok(self) -> bool:
        return self.outcome == WaitOutcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.outcome.value,
            "team": self.team,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
            "completed": list(self.completed),
            "pending": list(self.pending),
            "failed": list(self.failed),
        }
        if self.failures:
            data["failures"] = dict(self.failures)
        if self.results:
            data["results"] = dict(self.results)
        return data


def classify(member: Member, terminal: Message | None) -> Classification:
    """Derive a member's classification.

    The first terminal message decides. Without one, a member whose
    submission was rejected counts as failed; everything else is pending.
    """
    if terminal is not None:
        return Classification.FAILED if terminal.type.is_failure else Classification.COMPLETED
    if member.status == MemberStatus.FAILED:
        return Classification.FAILED
    return Classification.PENDING


class CompletionPoller:
    def __init__(self, registry: TeamRegistry, mailbox: Mailbox) -> None:
        self.registry = registry
        self.mailbox = mailbox

    def snapshot(self, team: str, member: str | None = None) -> PollSnapshot:
        """Classify every member (or only *member*) of *team*.

        Raises:
            TeamNotFoundError: if the team does not exist.
            MemberNotFoundError: if *member* is not part of the team.
        """
        record = self.registry.load(team)
        members = record.members
        if member is not None:
            members = [self.registry.get_member(team, member)]

        snapshot = PollSnapshot(team=record.name)
        for entry in members:
            messages = self.mailbox.read_all(team, entry.name)
            terminal = next((m for m in messages if m.is_terminal), None)
            snapshot.members.append(MemberSnapshot(
                name=entry.name,
                agent_id=entry.agent_id,
                role=entry.role,
                status=entry.status,
                classification=classify(entry, terminal),
                messages=messages,
                terminal=terminal,
                error=entry.error,
            ))
        if not self.registry.exists(team):
            # Removed while the mailboxes were being read.
            raise TeamNotFoundError(team)
        return snapshot

    async def wait(
        self,
        team: str,
        timeout: float,
        interval: float,
        member: str | None = None,
    ) -> WaitResult:
        """Block until success, the first failure, or *timeout* seconds.

        A failure wins over success when both are visible in the same
        snapshot. An empty team succeeds immediately.

        Raises:
            ValueError: if *interval* is not positive.
        """
        if not interval > 0:
            raise ValueError(f"Poll interval must be positive, got {interval}")
        start = time.monotonic()
        logger.info("Waiting for team %s (timeout: %ss)", team, timeout)

        while True:
            snap = self.snapshot(team, member)
            elapsed = time.monotonic() - start

            if snap.failed:
                failures = {
                    name: snap.get(name).failure_reason  # type: ignore[union-attr]
                    for name in snap.failed
                }
                for name, reason in failures.items():
                    logger.error("Teammate failed: %s (%s)", name, reason)
                return self._result(WaitOutcome.FAILURE, snap, elapsed, failures=failures)

            if snap.all_completed:
                logger.info("All teammates of %s completed", team)
                results = {
                    m.name: dict(m.terminal.payload)
                    for m in snap.members
                    if m.terminal is not None
                }
                return self._result(WaitOutcome.SUCCESS, snap, elapsed, results=results)

            remaining = timeout - elapsed
            if remaining <= 0:
                logger.error("Timeout waiting for teammates of %s: %s", team, ", ".join(snap.pending))
                return self._result(WaitOutcome.TIMEOUT, snap, elapsed)

            logger.debug(
                "%s: %d/%d completed, %d pending",
                team, len(snap.completed), len(snap.members), len(snap.pending),
            )
            await asyncio.sleep(min(interval, remaining))

    @staticmethod
    def _result(
        outcome: WaitOutcome,
        snap: PollSnapshot,
        elapsed: float,
        *,
        failures: dict[str, str] | None = None,
        results: dict[str, dict[str, Any]] | None = None,
    ) -> WaitResult:
        return WaitResult(
            outcome=outcome,
            team=snap.team,
            elapsed_seconds=elapsed,
            completed=snap.completed,
            pending=snap.pending,
            failed=snap.failed,
            failures=failures or {},
            results=results or {},
        )
