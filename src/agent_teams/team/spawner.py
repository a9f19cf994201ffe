"""Teammate spawner - register a member and hand its work to an executor."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from agent_teams.team.errors import LifecycleError, SpawnError
from agent_teams.team.executor import Executor, SubmissionRequest, TaskHandle
from agent_teams.team.mailbox import Mailbox
from agent_teams.team.partition import Target
from agent_teams.team.protocol import Member, MemberStatus, TeamStatus
from agent_teams.team.registry import TeamRegistry
from agent_teams.team.storage import validate_name, write_json_atomic

logger = logging.getLogger("agent_teams.team.spawner")


@dataclass
class MemberHandle:
    """A spawned member together with its running execution."""
    team: str
    member: Member
    request: SubmissionRequest
    handle: TaskHandle

    @property
    def name(self) -> str:
        return self.member.name

    @property
    def agent_id(self) -> str:
        return self.member.agent_id


class TeammateSpawner:
    def __init__(self, registry: TeamRegistry, mailbox: Mailbox, executor: Executor) -> None:
        self.registry = registry
        self.mailbox = mailbox
        self.executor = executor

    async def spawn(
        self,
        team: str,
        role: str,
        instructions: str,
        *,
        name: str | None = None,
        targets: Iterable[Target] = (),
        references: Iterable[Path] = (),
    ) -> MemberHandle:
        """Start one teammate.

        The member is registered as ``spawning`` with an empty mailbox before
        the executor sees it, so a fast teammate can post immediately.

        Raises:
            InvalidNameError: if *team* or *name* is not a safe name.
            DuplicateMemberError: if the name is taken.
            LifecycleError: if the team is already shutting down.
            SpawnError: if the executor rejected the submission; the member
                is left ``failed`` with the reason recorded.
        """
        team = validate_name(team, "team")
        member_name = validate_name(name or role, "member")
        targets = tuple(targets)

        record = self.registry.ensure_team(team)
        if record.status.rank >= TeamStatus.SHUTTING_DOWN.rank:
            raise LifecycleError(f"Team {team} is {record.status.value}; cannot add members")
        member = self.registry.add_member(team, member_name, role, target_count=len(targets))
        mailbox_path = self.mailbox.create(team, member_name)

        paths = self.registry.storage.paths(team)
        prompt_path = paths.prompt(member_name)
        prompt_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_path.write_text(instructions, encoding="utf-8")
        targets_path = paths.targets(member_name)
        targets_path.parent.mkdir(parents=True, exist_ok=True)
        write_json_atomic(targets_path, [t.to_dict() for t in targets])

        request = SubmissionRequest(
            team=team,
            member=member_name,
            role=role,
            instructions=instructions,
            mailbox_path=mailbox_path,
            teams_dir=self.registry.storage.teams_dir,
            targets=targets,
            instructions_path=prompt_path,
            targets_path=targets_path,
            log_path=paths.log(member_name),
            reference_paths=tuple(Path(p).expanduser().resolve() for p in references),
        )

        try:
            handle = await self.executor.submit(request)
        except SpawnError as exc:
            logger.error("Executor rejected %s: %s", member.agent_id, exc)
            self.registry.update_member(team, member_name, MemberStatus.FAILED, error=str(exc))
            raise
        except asyncio.CancelledError:
            logger.error("Submission of %s was cancelled", member.agent_id)
            self.registry.update_member(
                team, member_name, MemberStatus.FAILED, error="submission cancelled",
            )
            raise
        except Exception as exc:
            reason = f"{self.executor.name} executor failed: {str(exc) or type(exc).__name__}"
            logger.error("Could not start %s: %s", member.agent_id, reason)
            self.registry.update_member(team, member_name, MemberStatus.FAILED, error=reason)
            raise SpawnError(reason) from exc

        try:
            member = self.registry.update_member(
                team, member_name, MemberStatus.ACTIVE, pid=handle.pid,
            )
        except LifecycleError:
            # Already finished and picked up by a concurrent poll.
            member = self.registry.get_member(team, member_name)
        record = self.registry.load(team)
        if record.status == TeamStatus.FORMING:
            self.registry.set_team_status(team, TeamStatus.ACTIVE)

        logger.info(
            "Spawned %s (%s, %d targets) via %s executor",
            member.agent_id, role, len(targets), self.executor.name,
        )
        return MemberHandle(team=team, member=member, request=request, handle=handle)
