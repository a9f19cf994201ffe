"""TeamRegistry - durable record of a team, its members and their states.

Only the team lead mutates the registry. Every mutation is a
read-modify-write under the team's exclusive lock, so concurrent spawns
cannot lose each other's member additions.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from agent_teams.team.errors import (
    DuplicateMemberError,
    LifecycleError,
    MemberNotFoundError,
    StorageError,
    TeamNotFoundError,
)
from agent_teams.team.mailbox import Mailbox
from agent_teams.team.protocol import (
    Member,
    MemberStatus,
    Team,
    TeamStatus,
    make_agent_id,
    utc_now_iso,
)
from agent_teams.team.storage import TeamStorage, read_json, validate_name, write_json_atomic

logger = logging.getLogger("agent_teams.team.registry")


class TeamRegistry:
    def __init__(self, storage: TeamStorage) -> None:
        self.storage = storage

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def exists(self, team: str) -> bool:
        return self.storage.exists(team)

    def load(self, team: str) -> Team:
        """Read the registry record.

        Raises:
            TeamNotFoundError: if the team has no registry.
        """
        data = read_json(self.storage.paths(team).config)
        if data is None:
            raise TeamNotFoundError(team)
        try:
            return Team.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Invalid registry for team {team}: {e}") from e

    def get_member(self, team: str, member: str) -> Member:
        found = self.load(team).get_member(member)
        if found is None:
            raise MemberNotFoundError(team, member)
        return found

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @contextmanager
    def _update(self, team: str) -> Iterator[Team]:
        with self.storage.locked(team) as paths:
            record = self.load(team)
            yield record
            write_json_atomic(paths.config, record.to_dict())

    def ensure_team(self, team: str) -> Team:
        """Create the team's storage and registry if they do not exist yet."""
        name = validate_name(team, "team")
        paths = self.storage.ensure_dirs(name)
        with self.storage.locked(name):
            if not paths.config.is_file():
                write_json_atomic(paths.config, Team(name=name).to_dict())
                logger.info("Created team %s at %s", name, paths.root)
        return self.load(name)

    def add_member(self, team: str, name: str, role: str, *, target_count: int = 0) -> Member:
        """Register a new member in ``spawning`` state.

        Raises:
            DuplicateMemberError: if *name* is already a member.
        """
        name = validate_name(name, "member")
        with self._update(team) as record:
            if record.get_member(name) is not None:
                raise DuplicateMemberError(team, name)
            member = Member(
                agent_id=make_agent_id(name, record.name),
                name=name,
                role=role,
                target_count=target_count,
            )
            record.members.append(member)
        logger.info("Registered member %s (%s) in team %s", name, role, team)
        return member

    def update_member(
        self,
        team: str,
        name: str,
        status: MemberStatus,
        *,
        pid: int | None = None,
        error: str | None = None,
    ) -> Member:
        """Advance a member's lifecycle status.

        Raises:
            MemberNotFoundError: if *name* is not a member.
            LifecycleError: if the change would move the member backwards.
        """
        with self._update(team) as record:
            member = record.get_member(name)
            if member is None:
                raise MemberNotFoundError(team, name)
            if member.status != status:
                if not member.status.can_transition_to(status):
                    raise LifecycleError(
                        f"Member {name} cannot move from {member.status.value} to {status.value}"
                    )
                member.status = status
                member.updated_at = utc_now_iso()
            if pid is not None:
                member.pid = pid
            if error is not None:
                member.error = error
        return member

    def set_team_status(self, team: str, status: TeamStatus) -> Team:
        """Advance the team status; setting the current status is a no-op."""
        with self._update(team) as record:
            if record.status != status:
                if status.rank < record.status.rank:
                    raise LifecycleError(
                        f"Team {team} cannot move from {record.status.value} to {status.value}"
                    )
                record.status = status
        return record

    def refresh_from_mailboxes(self, team: str, mailbox: Mailbox) -> Team:
        """Copy terminal-message outcomes into member statuses.

        Only statuses change; payloads stay in the mailboxes. A member that
        has already moved past the derived status keeps its own.
        """
        with self._update(team) as record:
            for member in record.members:
                terminal = mailbox.terminal_message(team, member.name)
                if terminal is None:
                    continue
                derived = (
                    MemberStatus.FAILED if terminal.type.is_failure else MemberStatus.COMPLETED
                )
                if member.status == derived:
                    continue
                if member.status.can_transition_to(derived):
                    member.status = derived
                    member.updated_at = utc_now_iso()
                else:
                    logger.debug(
                        "Keeping %s for %s (mailbox says %s)",
                        member.status.value, member.name, derived.value,
                    )
        return record
