"""
CLI interface for Agent Teams.

Uses Click for command-line parsing with subcommands. Results are written to
stdout (JSON unless a format says otherwise), diagnostics to stderr.

Usage:
    agent-teams check
    agent-teams partition strategy.md --by-role
    agent-teams spawn my-team unit-tester prompt.md --target "src/a.py | unit test"
    agent-teams poll my-team --wait --timeout 300
    agent-teams aggregate my-team --format markdown
    agent-teams shutdown my-team --keep-results
    agent-teams run strategy.md --instructions-dir prompts/

Exit codes: 0 success, 1 error, 2 timeout, 3 teammate failure.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable

import click
from dotenv import load_dotenv
from pydantic import ValidationError

from agent_teams import __version__

# ---------------------------------------------------------------------------
# Load .env early so all config reads pick up the values
# ---------------------------------------------------------------------------
load_dotenv()

logger = logging.getLogger("agent_teams.cli")


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _load_config():
    """Return the configuration, exiting with code 1 if it is invalid."""
    from agent_teams.config import get_config

    try:
        return get_config()
    except ValidationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)


def _lead():
    from agent_teams.team.coordinator import TeamLead

    return TeamLead(_load_config())


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Report team errors on stderr and exit with code 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        from agent_teams.team.errors import FeatureDisabledError, TeamError

        try:
            return func(*args, **kwargs)
        except FeatureDisabledError as e:
            click.echo(str(e), err=True)
            raise SystemExit(1)
        except (TeamError, ValueError) as e:
            click.echo(f"ERROR: {e}", err=True)
            raise SystemExit(1)

    return wrapper


def _read_text(source: str) -> str:
    with click.open_file(source, "r", encoding="utf-8") as f:
        return f.read()


def _parse_target_options(targets: tuple[str, ...], targets_file: str | None):
    from agent_teams.team.partition import parse_targets

    items = []
    if targets_file:
        items.extend(parse_targets(_read_text(targets_file)))
    if targets:
        items.extend(parse_targets("\n".join(targets)))
    return items


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    if not verbose:
        from agent_teams.config import get_config

        try:
            level = get_config().log_level_value
        except ValidationError:
            pass  # reported by the command itself
    logging.basicConfig(
        level=level,
        format="%(asctime)s [agent-teams] %(levelname)s %(message)s",
        stream=sys.stderr,
    )


# ---------------------------------------------------------------------------
# Click group
# ---------------------------------------------------------------------------

@click.group(
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(__version__, "-V", "--version", prog_name="agent-teams")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Debug logging on stderr.")
def cli(verbose: bool) -> None:
    """Agent Teams -- run teammates in parallel and collect their results."""
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# agent-teams check / config
# ---------------------------------------------------------------------------

@cli.command()
def check() -> None:
    """Report whether agent teams are enabled and usable."""
    cfg = _load_config()
    if not cfg.enabled:
        click.echo("agent teams: disabled (set AGENT_TEAMS_ENABLED=1)")
        raise SystemExit(1)

    click.echo("agent teams: enabled")
    click.echo(f"  teams dir:      {cfg.teams_dir}")
    click.echo(f"  archive dir:    {cfg.archive_dir}")
    if not cfg.worker_command:
        click.echo("  worker command: (not set) -- spawn needs AGENT_TEAMS_WORKER_COMMAND")
        raise SystemExit(2)
    click.echo(f"  worker command: {cfg.worker_command}")


@cli.command("config")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
def config_cmd(as_json: bool) -> None:
    """Dump current configuration."""
    cfg = _load_config()
    if as_json:
        click.echo(cfg.dump_json())
    else:
        click.echo(cfg.dump())


# ---------------------------------------------------------------------------
# agent-teams partition
# ---------------------------------------------------------------------------

@cli.command("partition")
@click.argument("targets_file", type=click.Path(allow_dash=True))
@click.option("--by-role", "mode", flag_value="by-role", default=True, help="Group by technique (default).")
@click.option("--by-module", "mode", flag_value="by-module", help="Group by inferred module.")
@click.option("--module", "modules", multiple=True, help="Known module path (repeatable).")
@click.option(
    "--format", "fmt",
    type=click.Choice(["json", "text"]),
    default="json",
    show_default=True,
)
@_handle_errors
def partition_cmd(targets_file: str, mode: str, modules: tuple[str, ...], fmt: str) -> None:
    """Split TARGETS_FILE (strategy table, JSON or lines; - for stdin) into buckets."""
    from agent_teams.config import ensure_enabled
    from agent_teams.team.partition import PartitionMode, parse_targets, partition

    cfg = _load_config()
    ensure_enabled(cfg)
    targets = parse_targets(_read_text(targets_file))
    result = partition(targets, PartitionMode(mode), modules or None, default_role=cfg.default_role)
    if fmt == "text":
        click.echo(result.render_text())
    else:
        _echo_json(result.to_dict())


# ---------------------------------------------------------------------------
# agent-teams spawn
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("team")
@click.argument("role")
@click.argument("instructions", type=click.Path(allow_dash=True))
@click.option("--name", default=None, help="Member name (default: the role).")
@click.option("--target", "targets", multiple=True, help='Target, optionally "id | hint" (repeatable).')
@click.option("--targets-file", type=click.Path(exists=True), default=None, help="File of targets.")
@click.option(
    "--reference", "references", multiple=True, type=click.Path(exists=True),
    help="Reference file or directory handed to the teammate (repeatable).",
)
@_handle_errors
def spawn(
    team: str,
    role: str,
    instructions: str,
    name: str | None,
    targets: tuple[str, ...],
    targets_file: str | None,
    references: tuple[str, ...],
) -> None:
    """Start a ROLE teammate in TEAM with the INSTRUCTIONS file."""
    lead = _lead()
    text = _read_text(instructions)
    items = _parse_target_options(targets, targets_file)
    handle = asyncio.run(lead.spawn(
        team, role, text,
        name=name, targets=items, references=[Path(p) for p in references],
    ))
    _echo_json({
        "team": handle.team,
        "member": handle.member.to_dict(),
        "mailbox": str(handle.request.mailbox_path),
        "log": str(handle.request.log_path),
    })


# ---------------------------------------------------------------------------
# agent-teams poll / status
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("team")
@click.option("--wait", "wait_", is_flag=True, default=False, help="Block until done, failed or timed out.")
@click.option("--timeout", type=click.FloatRange(min=0), default=None, help="Seconds to wait [default from config].")
@click.option(
    "--interval", type=click.FloatRange(min=0, min_open=True), default=None,
    help="Seconds between checks [default from config].",
)
@click.option("--member", default=None, help="Only observe this member.")
@_handle_errors
def poll(team: str, wait_: bool, timeout: float | None, interval: float | None, member: str | None) -> None:
    """Show (or wait for) the completion state of TEAM."""
    lead = _lead()
    if not wait_:
        _echo_json(lead.snapshot(team, member).to_dict())
        return

    result = asyncio.run(lead.wait(team, timeout=timeout, interval=interval, member=member))
    _echo_json(result.to_dict())
    if result.exit_code:
        raise SystemExit(result.exit_code)


@cli.command()
@click.argument("team")
@_handle_errors
def status(team: str) -> None:
    """Show the registry record of TEAM."""
    lead = _lead()
    record = lead.status(team)
    snap = lead.snapshot(team)
    data = record.to_dict()
    data["summary"] = {
        "completed": snap.completed,
        "pending": snap.pending,
        "failed": snap.failed,
    }
    _echo_json(data)


# ---------------------------------------------------------------------------
# agent-teams aggregate
# ---------------------------------------------------------------------------

@cli.command("aggregate")
@click.argument("team")
@click.option(
    "--format", "fmt",
    type=click.Choice(["json", "text", "markdown"]),
    default="json",
    show_default=True,
)
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Write to a file.")
@_handle_errors
def aggregate_cmd(team: str, fmt: str, output: str | None) -> None:
    """Merge the results reported by TEAM's teammates."""
    report = _lead().aggregate(team)
    text = report.render(fmt)
    if output:
        Path(output).write_text(text if text.endswith("\n") else text + "\n", encoding="utf-8")
        click.echo(f"Results written to: {output}", err=True)
    else:
        click.echo(text.rstrip("\n"))


# ---------------------------------------------------------------------------
# agent-teams shutdown
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("team")
@click.option("--force", is_flag=True, default=False, help="Skip the request/acknowledge exchange.")
@click.option("--keep-results", is_flag=True, default=False, help="Archive a final snapshot first.")
@click.option("--timeout", type=click.FloatRange(min=0), default=None, help="Acknowledgement timeout [default from config].")
@_handle_errors
def shutdown(team: str, force: bool, keep_results: bool, timeout: float | None) -> None:
    """Stop TEAM and remove its state."""
    lead = _lead()
    result = asyncio.run(lead.shutdown(team, force=force, keep_results=keep_results, timeout=timeout))
    if result.already_removed:
        click.echo(f"Team not found: {team} (already cleaned up?)", err=True)
    _echo_json(result.to_dict())


# ---------------------------------------------------------------------------
# agent-teams post  (teammate side)
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("team")
@click.argument("member")
@click.argument("msg_type", metavar="TYPE", type=click.Choice([
    "progress", "task_completed", "task_failed", "error", "shutdown_ack",
]))
@click.option("--payload", default="{}", help="JSON object payload.")
@_handle_errors
def post(team: str, member: str, msg_type: str, payload: str) -> None:
    """Append a TYPE message to MEMBER's mailbox."""
    from agent_teams.team.protocol import MessageType

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid payload JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Payload must be a JSON object")

    if not _lead().post(team, member, MessageType(msg_type), data):
        click.echo(f"Message not recorded for {member}", err=True)
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# agent-teams run
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("targets_file", type=click.Path(allow_dash=True))
@click.option(
    "--instructions-dir",
    type=click.Path(exists=True, file_okay=False),
    required=True,
    help="Directory of <bucket>.md, <role>.md or default.md prompts.",
)
@click.option("--team", default=None, help="Team name [default: team-<timestamp>].")
@click.option("--by-module", is_flag=True, default=False, help="Partition by module.")
@click.option("--module", "modules", multiple=True, help="Known module path (repeatable).")
@click.option("--timeout", type=click.FloatRange(min=0), default=None, help="Wait timeout [default from config].")
@click.option(
    "--reference", "references", multiple=True, type=click.Path(exists=True),
    help="Reference file or directory handed to every teammate (repeatable).",
)
@click.option("--force-shutdown", is_flag=True, default=False, help="Skip the graceful shutdown.")
@click.option("--keep-results", is_flag=True, default=False, help="Archive a final snapshot.")
@_handle_errors
def run(
    targets_file: str,
    instructions_dir: str,
    team: str | None,
    by_module: bool,
    modules: tuple[str, ...],
    timeout: float | None,
    references: tuple[str, ...],
    force_shutdown: bool,
    keep_results: bool,
) -> None:
    """Partition, spawn, wait, aggregate and shut down in one go."""
    from agent_teams.team.coordinator import load_instructions, print_summary, run_team
    from agent_teams.team.partition import PartitionMode, parse_targets

    lead = _lead()
    targets = parse_targets(_read_text(targets_file))
    instructions = load_instructions(Path(instructions_dir))
    mode = PartitionMode.BY_MODULE if by_module else PartitionMode.BY_ROLE

    try:
        result = asyncio.run(run_team(
            lead,
            targets,
            instructions,
            team=team,
            mode=mode,
            modules=modules or None,
            timeout=timeout,
            force_shutdown=force_shutdown,
            keep_results=keep_results,
            references=[Path(p) for p in references],
        ))
    except KeyboardInterrupt:
        click.echo("\n\nInterrupted. Run 'agent-teams shutdown' if the team is still listed.", err=True)
        raise SystemExit(130)

    print_summary(result)
    _echo_json(result.to_dict())
    if result.exit_code:
        raise SystemExit(result.exit_code)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """Package entry point (called by ``agent-teams`` console script and ``__main__``)."""
    cli()
