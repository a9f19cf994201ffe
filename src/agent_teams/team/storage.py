"""On-disk layout of team state.

Each team lives in its own directory under ``teams_dir``::

    <team>/config.json           registry (team record + member list)
    <team>/.lock                 exclusive lock for registry updates
    <team>/inboxes/<member>.jsonl   one append-only mailbox per member
    <team>/prompts/<member>.md   instructions handed to the teammate
    <team>/targets/<member>.json targets assigned to the teammate
    <team>/logs/<member>.log     executor output

Registry files are always written atomically (temp file + ``os.replace``), so
readers never need the lock.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import shutil
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from agent_teams.team.errors import InvalidNameError, StorageError, TeamNotFoundError

logger = logging.getLogger("agent_teams.team.storage")

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_TOMBSTONE_PREFIX = ".removing-"


def validate_name(name: str, kind: str = "team") -> str:
    """Return *name* stripped, or raise if it is unsafe as a file name."""
    value = str(name or "").strip()
    if not _NAME_RE.match(value):
        raise InvalidNameError(
            f"Invalid {kind} name {name!r}: use letters, digits, '.', '_' or '-'"
        )
    return value


@dataclass(frozen=True)
class TeamPaths:
    """Paths inside one team directory."""
    root: Path

    @property
    def config(self) -> Path:
        return self.root / "config.json"

    @property
    def lock(self) -> Path:
        return self.root / ".lock"

    @property
    def inboxes(self) -> Path:
        return self.root / "inboxes"

    def inbox(self, member: str) -> Path:
        return self.inboxes / f"{member}.jsonl"

    def prompt(self, member: str) -> Path:
        return self.root / "prompts" / f"{member}.md"

    def targets(self, member: str) -> Path:
        return self.root / "targets" / f"{member}.json"

    def log(self, member: str) -> Path:
        return self.root / "logs" / f"{member}.log"


def read_json(path: Path, default: Any = None) -> Any:
    """Load JSON from *path*, returning *default* if the file is missing."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return default
    except json.JSONDecodeError as e:
        raise StorageError(f"Corrupt JSON in {path}: {e}") from e


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON to *path* via a temp file in the same directory."""
    fd, tmp_path = tempfile.mkstemp(
        suffix=".tmp",
        prefix=f".{path.stem}_",
        dir=str(path.parent),
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class TeamStorage:
    """Locates team directories and performs whole-team file operations."""

    def __init__(self, teams_dir: Path, archive_dir: Path | None = None) -> None:
        self.teams_dir = Path(teams_dir).expanduser()
        if archive_dir is None:
            archive_dir = self.teams_dir.parent / "teams-archive"
        self.archive_dir = Path(archive_dir).expanduser()

    def paths(self, team: str) -> TeamPaths:
        return TeamPaths(self.teams_dir / validate_name(team, "team"))

    def exists(self, team: str) -> bool:
        return self.paths(team).config.is_file()

    def list_teams(self) -> list[str]:
        if not self.teams_dir.is_dir():
            return []
        return sorted(
            child.name
            for child in self.teams_dir.iterdir()
            if child.is_dir()
            and not child.name.startswith(".")
            and (child / "config.json").is_file()
        )

    def ensure_dirs(self, team: str) -> TeamPaths:
        """Create the team directory tree if absent (idempotent)."""
        paths = self.paths(team)
        for directory in (paths.root, paths.inboxes, paths.root / "prompts",
                          paths.root / "targets", paths.root / "logs"):
            directory.mkdir(parents=True, exist_ok=True)
        return paths

    @contextmanager
    def locked(self, team: str) -> Iterator[TeamPaths]:
        """Hold the team's exclusive registry lock.

        Raises:
            TeamNotFoundError: if the team directory does not exist.
        """
        paths = self.paths(team)
        if not paths.root.is_dir():
            raise TeamNotFoundError(team)
        try:
            handle = open(paths.lock, "a", encoding="utf-8")
        except FileNotFoundError:
            raise TeamNotFoundError(team) from None
        with handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                if not paths.root.is_dir():
                    # Removed while we were waiting for the lock.
                    raise TeamNotFoundError(team)
                yield paths
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def remove(self, team: str) -> bool:
        """Delete a team directory so that it disappears in one step.

        The directory is first renamed to a hidden tombstone (atomic on the
        same file system) and only then deleted, so concurrent readers see
        either the complete team or no team at all.

        Returns:
            False if the team did not exist.
        """
        paths = self.paths(team)
        if not paths.root.is_dir():
            return False
        tombstone = self.teams_dir / f"{_TOMBSTONE_PREFIX}{paths.root.name}-{uuid.uuid4().hex[:8]}"
        try:
            with self.locked(team):
                os.rename(paths.root, tombstone)
        except TeamNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to remove team {team}: {e}") from e

        shutil.rmtree(tombstone, ignore_errors=True)
        if tombstone.exists():
            logger.warning("Team %s removed but tombstone %s could not be deleted", team, tombstone)
        return True

    def purge_tombstones(self) -> int:
        """Delete tombstones left behind by interrupted removals."""
        if not self.teams_dir.is_dir():
            return 0
        count = 0
        for child in self.teams_dir.iterdir():
            if child.name.startswith(_TOMBSTONE_PREFIX) and child.is_dir():
                shutil.rmtree(child, ignore_errors=True)
                count += 1
        return count
