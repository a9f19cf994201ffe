"""Shutdown coordinator - stop a team and remove its state.

Graceful mode publishes a shutdown request through the registry (members
move to ``shutdown_requested``, which teammates can read), then waits a
bounded time for each teammate to acknowledge or finish. Forced mode skips
the exchange. Both modes always finish with cleanup.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from agent_teams.team.aggregator import AggregateReport, aggregate
from agent_teams.team.errors import LifecycleError, StorageError, TeamNotFoundError
from agent_teams.team.mailbox import Mailbox
from agent_teams.team.protocol import MemberStatus, MessageType, TeamStatus, utc_now_iso
from agent_teams.team.registry import TeamRegistry
from agent_teams.team.storage import write_json_atomic

logger = logging.getLogger("agent_teams.team.shutdown")

GRACEFUL = "graceful"
FORCED = "forced"


@dataclass
class ShutdownResult:
    team: str
    mode: str
    removed: bool = False
    already_removed: bool = False
    acknowledged: list[str] = field(default_factory=list)
    unresponsive: list[str] = field(default_factory=list)
    archive_path: Path | None = None
    report: AggregateReport | None = None

    @property
    def exit_code(self) -> int:
        return 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "team": self.team,
            "mode": self.mode,
            "removed": self.removed,
        }
        if self.already_removed:
            data["already_removed"] = True
            return data
        data["acknowledged"] = list(self.acknowledged)
        data["unresponsive"] = list(self.unresponsive)
        if self.archive_path is not None:
            data["archive_path"] = str(self.archive_path)
        if self.report is not None:
            data["results"] = self.report.to_dict()
        return data


class ShutdownCoordinator:
    def __init__(
        self,
        registry: TeamRegistry,
        mailbox: Mailbox,
        *,
        timeout: float = 30.0,
        interval: float = 1.0,
    ) -> None:
        self.registry = registry
        self.mailbox = mailbox
        self.storage = registry.storage
        self.timeout = timeout
        self.interval = interval

    async def shutdown(
        self,
        team: str,
        *,
        force: bool = False,
        keep_results: bool = False,
    ) -> ShutdownResult:
        """Shut *team* down and remove it; an unknown team is a no-op."""
        mode = FORCED if force else GRACEFUL
        if not self.registry.exists(team):
            logger.info("Team not found: %s (already cleaned up?)", team)
            self._purge()
            return ShutdownResult(team=team, mode=mode, already_removed=True)

        logger.info("%s shutdown initiated for team %s", mode.capitalize(), team)
        result = ShutdownResult(team=team, mode=mode)
        try:
            self._begin(team)
            if not force:
                await self._request_and_wait(team, result)
        except TeamNotFoundError:
            logger.info("Team %s disappeared during shutdown", team)
            result.already_removed = True
            self._purge()
            return result
        except (StorageError, LifecycleError) as e:
            logger.warning("Shutdown request for %s abandoned, cleaning up anyway: %s", team, e)

        result.report = self._collect(team)
        if keep_results:
            result.archive_path = self.archive(team, mode, result.report)
        result.removed = self.storage.remove(team)
        if result.removed:
            logger.info("Team %s removed", team)
        self._purge()
        return result

    def _purge(self) -> None:
        purged = self.storage.purge_tombstones()
        if purged:
            logger.info("Purged %d leftover team tombstone(s)", purged)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _begin(self, team: str) -> None:
        try:
            self.registry.refresh_from_mailboxes(team, self.mailbox)
            self.registry.set_team_status(team, TeamStatus.SHUTTING_DOWN)
        except LifecycleError as e:
            logger.debug("Team %s already past shutting_down: %s", team, e)
        except StorageError as e:
            logger.warning("Registry of %s unreadable during shutdown: %s", team, e)

    def _has_responded(self, team: str, member: str) -> bool:
        for message in self.mailbox.read_all(team, member):
            if message.type == MessageType.SHUTDOWN_ACK or message.is_terminal:
                return True
        return False

    async def _request_and_wait(self, team: str, result: ShutdownResult) -> None:
        record = self.registry.load(team)
        waiting: list[str] = []
        for member in record.members:
            if member.status == MemberStatus.SHUT_DOWN:
                continue
            if member.status == MemberStatus.FAILED and member.error:
                # Submission was rejected; nothing is running to answer.
                self.registry.update_member(team, member.name, MemberStatus.SHUT_DOWN)
                logger.debug("Skipping never-started member %s", member.agent_id)
                continue
            if member.status.rank < MemberStatus.SHUTDOWN_REQUESTED.rank:
                self.registry.update_member(team, member.name, MemberStatus.SHUTDOWN_REQUESTED)
            logger.info("Requested shutdown of %s", member.agent_id)
            waiting.append(member.name)

        deadline = time.monotonic() + self.timeout
        while waiting:
            for name in list(waiting):
                if self._has_responded(team, name):
                    self.registry.update_member(team, name, MemberStatus.SHUT_DOWN)
                    result.acknowledged.append(name)
                    waiting.remove(name)
            remaining = deadline - time.monotonic()
            if not waiting or remaining <= 0:
                break
            await asyncio.sleep(min(self.interval, remaining))

        if waiting:
            logger.warning(
                "No shutdown acknowledgement from %s within %ss; cleaning up anyway",
                ", ".join(waiting), self.timeout,
            )
        result.unresponsive = waiting

    def _collect(self, team: str) -> AggregateReport | None:
        try:
            return aggregate(self.registry, self.mailbox, team)
        except (StorageError, TeamNotFoundError, ValueError, TypeError) as e:
            logger.warning("Could not collect final results of %s: %s", team, e)
            return None

    def archive(self, team: str, mode: str, report: AggregateReport | None) -> Path | None:
        """Persist the final snapshot outside the team directory."""
        try:
            self.registry.set_team_status(team, TeamStatus.ARCHIVED)
            record = self.registry.load(team)
        except (StorageError, TeamNotFoundError, LifecycleError) as e:
            logger.warning("Could not mark %s archived: %s", team, e)
            return None

        snapshot = {
            "team": team,
            "shutdown_at": utc_now_iso(),
            "mode": mode,
            "registry": record.to_dict(),
            "teammates": {
                m.name: [msg.to_dict() for msg in self.mailbox.read_all(team, m.name)]
                for m in record.members
            },
            "results": report.to_dict() if report is not None else None,
        }

        archive_dir = self.storage.archive_dir
        archive_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        path = archive_dir / f"{team}-{stamp}.json"
        suffix = 1
        while path.exists():
            path = archive_dir / f"{team}-{stamp}-{suffix}.json"
            suffix += 1
        write_json_atomic(path, snapshot)
        logger.info("Results archived to: %s", path)
        return path
