"""Exceptions raised by the team subsystem."""

from __future__ import annotations


class TeamError(Exception):
    """Base class for all team coordination errors."""


class FeatureDisabledError(TeamError):
    """Agent teams are switched off by configuration."""

    def __init__(self) -> None:
        super().__init__("agent teams not enabled (set AGENT_TEAMS_ENABLED=1)")


class InvalidNameError(TeamError, ValueError):
    """A team or member name contains characters unsafe for storage."""


class TeamNotFoundError(TeamError):
    def __init__(self, team: str) -> None:
        super().__init__(f"Team not found: {team}")
        self.team = team


class MemberNotFoundError(TeamError):
    def __init__(self, team: str, member: str) -> None:
        super().__init__(f"Member {member!r} not found in team {team!r}")
        self.team = team
        self.member = member


class DuplicateMemberError(TeamError):
    def __init__(self, team: str, member: str) -> None:
        super().__init__(f"Member {member!r} already exists in team {team!r}")
        self.team = team
        self.member = member


class LifecycleError(TeamError):
    """A status change would move a team or member backwards."""


class SpawnError(TeamError):
    """The executor rejected a teammate submission."""


class StorageError(TeamError):
    """Team storage could not be read or written."""
