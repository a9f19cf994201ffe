"""Team lead - the coordinating side of a team.

:class:`TeamLead` bundles storage, registry, mailboxes, spawner, poller,
aggregator and shutdown coordinator behind one object and checks the feature
flag before every operation. :func:`run_team` is the whole workflow in one
call::

    lead = TeamLead(get_config(), executor)
    result = await run_team(lead, targets, instructions)

partition -> spawn one teammate per non-empty bucket -> wait -> aggregate ->
shutdown.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, TextIO, Union

from agent_teams.config import AppConfig, ensure_enabled
from agent_teams.team.aggregator import AggregateReport, aggregate
from agent_teams.team.errors import SpawnError, TeamError
from agent_teams.team.executor import Executor, SubprocessExecutor
from agent_teams.team.mailbox import Mailbox
from agent_teams.team.partition import (
    ROLES,
    Partition,
    PartitionMode,
    Target,
    partition,
)
from agent_teams.team.poller import CompletionPoller, PollSnapshot, WaitResult
from agent_teams.team.protocol import MessageType, Team, WaitOutcome
from agent_teams.team.registry import TeamRegistry
from agent_teams.team.shutdown import ShutdownCoordinator, ShutdownResult
from agent_teams.team.spawner import MemberHandle, TeammateSpawner
from agent_teams.team.storage import TeamStorage

logger = logging.getLogger("agent_teams.team.coordinator")

Instructions = Union[Mapping[str, str], Callable[[str, str], str]]


# ---------------------------------------------------------------------------
# Team lead
# ---------------------------------------------------------------------------

class TeamLead:
    """Coordinates teams stored under ``config.teams_dir``."""

    def __init__(self, config: AppConfig, executor: Executor | None = None) -> None:
        self.config = config
        self.storage = TeamStorage(config.teams_dir, config.archive_dir)
        self.registry = TeamRegistry(self.storage)
        self.mailbox = Mailbox(self.storage)
        self.poller = CompletionPoller(self.registry, self.mailbox)
        self._executor = executor

    @property
    def executor(self) -> Executor:
        """The configured executor, defaulting to the worker command."""
        if self._executor is None:
            self._executor = SubprocessExecutor(self.config.worker_command)
        return self._executor

    def _check(self) -> None:
        ensure_enabled(self.config)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

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
        self._check()
        spawner = TeammateSpawner(self.registry, self.mailbox, self.executor)
        return await spawner.spawn(
            team, role, instructions,
            name=name, targets=targets, references=tuple(references),
        )

    def snapshot(self, team: str, member: str | None = None) -> PollSnapshot:
        self._check()
        return self.poller.snapshot(team, member)

    async def wait(
        self,
        team: str,
        *,
        timeout: float | None = None,
        interval: float | None = None,
        member: str | None = None,
    ) -> WaitResult:
        self._check()
        result = await self.poller.wait(
            team,
            timeout=self.config.wait_timeout if timeout is None else timeout,
            interval=self.config.poll_interval if interval is None else interval,
            member=member,
        )
        self._refresh(team)
        return result

    def status(self, team: str) -> Team:
        """Registry record with statuses refreshed from the mailboxes."""
        self._check()
        self.registry.load(team)
        return self._refresh(team) or self.registry.load(team)

    def aggregate(self, team: str) -> AggregateReport:
        self._check()
        return aggregate(self.registry, self.mailbox, team)

    async def shutdown(
        self,
        team: str,
        *,
        force: bool = False,
        keep_results: bool = False,
        timeout: float | None = None,
    ) -> ShutdownResult:
        self._check()
        coordinator = ShutdownCoordinator(
            self.registry,
            self.mailbox,
            timeout=self.config.shutdown_timeout if timeout is None else timeout,
            interval=min(self.config.poll_interval, 1.0),
        )
        return await coordinator.shutdown(team, force=force, keep_results=keep_results)

    def post(
        self,
        team: str,
        member: str,
        msg_type: MessageType,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """Append a message on behalf of *member* (teammate side)."""
        self._check()
        self.registry.get_member(team, member)
        return self.mailbox.writer(team, member).post(msg_type, payload)

    def list_teams(self) -> list[str]:
        self._check()
        return self.storage.list_teams()

    def _refresh(self, team: str) -> Team | None:
        try:
            return self.registry.refresh_from_mailboxes(team, self.mailbox)
        except TeamError as e:
            logger.debug("Status refresh of %s skipped: %s", team, e)
            return None


# ---------------------------------------------------------------------------
# Whole-team workflow
# ---------------------------------------------------------------------------

@dataclass
class TeamRunResult:
    team: str
    partition: Partition
    members: list[MemberHandle] = field(default_factory=list)
    spawn_errors: dict[str, str] = field(default_factory=dict)
    wait: WaitResult | None = None
    report: AggregateReport | None = None
    shutdown: ShutdownResult | None = None

    @property
    def outcome(self) -> WaitOutcome:
        if self.wait is not None:
            return self.wait.outcome
        return WaitOutcome.FAILURE if self.spawn_errors else WaitOutcome.SUCCESS

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    def to_dict(self) -> dict[str, Any]:
        return {
            "team": self.team,
            "status": self.outcome.value,
            "partition": self.partition.to_dict(),
            "spawn_errors": dict(self.spawn_errors),
            "wait": self.wait.to_dict() if self.wait else None,
            "results": self.report.to_dict() if self.report else None,
            "shutdown": self.shutdown.to_dict() if self.shutdown else None,
        }


def default_team_name() -> str:
    return f"team-{datetime.now().strftime('%Y%m%d-%H%M%S')}"


def _role_for_bucket(bucket: str, default_role: str) -> str:
    return bucket if bucket in ROLES else default_role


def _instructions_for(instructions: Instructions, bucket: str, role: str) -> str:
    if callable(instructions):
        return instructions(bucket, role)
    for key in (bucket, role, "default"):
        if key in instructions:
            return instructions[key]
    raise ValueError(f"No instructions for teammate {bucket!r} (role {role})")


def compose_prompt(instructions: str, targets: Iterable[Target]) -> str:
    """Append the assigned targets to a teammate's instructions."""
    lines = [instructions.rstrip(), "", "## Assigned Targets", ""]
    for target in targets:
        hint = f" ({target.hint})" if target.hint else ""
        lines.append(f"- {target.identifier}{hint}")
    return "\n".join(lines) + "\n"


async def run_team(
    lead: TeamLead,
    targets: Iterable[Target],
    instructions: Instructions,
    *,
    team: str | None = None,
    mode: PartitionMode = PartitionMode.BY_ROLE,
    modules: Iterable[str] | None = None,
    timeout: float | None = None,
    force_shutdown: bool = False,
    keep_results: bool = False,
    cleanup: bool = True,
    references: Iterable[Path] = (),
) -> TeamRunResult:
    """Partition *targets*, run one teammate per bucket and collect results.

    A bucket whose spawn is rejected leaves a ``failed`` member behind, so
    the wait ends immediately with ``failure`` while the other teammates'
    results are still aggregated. If the run is aborted by an error the
    teammates already started are cancelled and the team is force-removed
    before the error propagates.

    Raises:
        FeatureDisabledError: if agent teams are disabled.
        ValueError: if a non-empty bucket has no instructions.
    """
    ensure_enabled(lead.config)
    team = team or default_team_name()
    references = tuple(references)
    parts = partition(targets, mode, modules, default_role=lead.config.default_role)
    buckets = parts.non_empty()
    logger.info(
        "Team %s: %d targets in %d buckets (%s)",
        team, parts.total_targets, len(buckets), parts.mode.value,
    )

    prompts = {}
    for bucket, bucket_targets in buckets.items():
        role = _role_for_bucket(bucket, lead.config.default_role)
        prompts[bucket] = (role, compose_prompt(_instructions_for(instructions, bucket, role), bucket_targets))

    result = TeamRunResult(team=team, partition=parts)
    try:
        for bucket, (role, prompt) in prompts.items():
            try:
                handle = await lead.spawn(
                    team, role, prompt,
                    name=bucket, targets=buckets[bucket], references=references,
                )
            except SpawnError as e:
                result.spawn_errors[bucket] = str(e)
                continue
            result.members.append(handle)

        if buckets:
            result.wait = await lead.wait(team, timeout=timeout)
            result.report = lead.aggregate(team)
        else:
            logger.info("Nothing to do for team %s", team)
    except BaseException:
        if cleanup and result.members:
            logger.error("Team %s run aborted; stopping %d teammate(s)", team, len(result.members))
            await _abandon(lead, team, result, keep_results)
        raise

    if cleanup and buckets:
        result.shutdown = await lead.shutdown(
            team, force=force_shutdown, keep_results=keep_results,
        )
    return result


async def _abandon(lead: TeamLead, team: str, result: TeamRunResult, keep_results: bool) -> None:
    for handle in result.members:
        if not handle.handle.done():
            await handle.handle.cancel()
    try:
        result.shutdown = await lead.shutdown(team, force=True, keep_results=keep_results)
    except TeamError as e:
        logger.error("Cleanup of team %s failed: %s", team, e)


def print_summary(result: TeamRunResult, stream: TextIO | None = None) -> None:
    """Print the final team run summary."""
    out = stream or sys.stderr
    wait = result.wait
    report = result.report

    print(file=out)
    print("=" * 70, file=out)
    print(f"  TEAM RUN COMPLETE: {result.team}", file=out)
    print("=" * 70, file=out)
    print(f"  Outcome:    {result.outcome.value}", file=out)
    print(f"  Partition:  {result.partition.mode.value}"
          f" ({result.partition.total_targets} targets)", file=out)
    if wait is not None:
        print(f"  Completed:  {len(wait.completed)}", file=out)
        print(f"  Failed:     {len(wait.failed)}", file=out)
        print(f"  Pending:    {len(wait.pending)}", file=out)
        print(f"  Duration:   {wait.elapsed_seconds:.1f}s", file=out)
    if report is not None:
        print(f"  Processed:  {report.total_processed}", file=out)
        print(f"  Artifacts:  {len(report.artifacts)}", file=out)
    for bucket, error in result.spawn_errors.items():
        print(f"  ! {bucket}: {error}", file=out)
    if result.shutdown is not None and result.shutdown.archive_path:
        print(f"  Archive:    {result.shutdown.archive_path}", file=out)
    print("=" * 70, file=out)


def load_instructions(directory: Path) -> dict[str, str]:
    """Read ``<name>.md`` files from *directory* keyed by file stem."""
    directory = Path(directory)
    if not directory.is_dir():
        raise ValueError(f"Instructions directory not found: {directory}")
    return {
        path.stem: path.read_text(encoding="utf-8")
        for path in sorted(directory.glob("*.md"))
    }
