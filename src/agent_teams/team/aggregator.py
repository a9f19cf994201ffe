"""Result aggregator - merge teammate payloads into one report.

The report is rebuilt from the mailboxes on every call and never stored as
the source of truth. Every rendering (JSON, text, markdown) is produced from
the same :class:`AggregateReport` object.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from agent_teams.team.errors import TeamNotFoundError
from agent_teams.team.mailbox import Mailbox
from agent_teams.team.poller import classify
from agent_teams.team.protocol import (
    Classification,
    CompletionPayload,
    FailurePayload,
    utc_now_iso,
)
from agent_teams.team.registry import TeamRegistry

logger = logging.getLogger("agent_teams.team.aggregator")

COMPILE_SUCCESS = "compile_success"
COMPILE_FAILURE = "compile_failure"


@dataclass
class MemberResult:
    """One member's contribution to the report."""
    name: str
    role: str
    status: Classification
    processed_count: int = 0
    artifacts: list[str] = field(default_factory=list)
    metrics: dict[str, int | float] = field(default_factory=dict)
    reported_status: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "role": self.role,
            "status": self.status.value,
            "processed_count": self.processed_count,
            "artifact_count": len(self.artifacts),
            "metrics": dict(self.metrics),
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class AggregateReport:
    team: str
    aggregated_at: str = field(default_factory=utc_now_iso)
    members: list[MemberResult] = field(default_factory=list)
    total_processed: int = 0
    artifacts: list[str] = field(default_factory=list)
    metrics: dict[str, int | float] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def _names(self, status: Classification) -> list[str]:
        return [m.name for m in self.members if m.status == status]

    @property
    def completed(self) -> list[str]:
        return self._names(Classification.COMPLETED)

    @property
    def failed(self) -> list[str]:
        return self._names(Classification.FAILED)

    @property
    def pending(self) -> list[str]:
        return self._names(Classification.PENDING)

    @property
    def compile_success_rate(self) -> int | None:
        """Integer percentage of successful compilations, if any were reported."""
        success = self.metrics.get(COMPILE_SUCCESS, 0)
        failure = self.metrics.get(COMPILE_FAILURE, 0)
        total = success + failure
        if total <= 0:
            return None
        return int(100 * success // total)

    def summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "total_processed": self.total_processed,
            "total_artifacts": len(self.artifacts),
            "completed": len(self.completed),
            "failed": len(self.failed),
            "pending": len(self.pending),
            "total_errors": len(self.errors),
        }
        summary.update(self.metrics)
        rate = self.compile_success_rate
        if rate is not None:
            summary["compile_success_rate"] = rate
        return summary

    def to_dict(self) -> dict[str, Any]:
        return {
            "team": self.team,
            "aggregated_at": self.aggregated_at,
            "summary": self.summary(),
            "artifacts": list(self.artifacts),
            "errors": list(self.errors),
            "teammates": [m.to_dict() for m in self.members],
        }

    def render_text(self) -> str:
        lines = [f"Team {self.team} results (aggregated at {self.aggregated_at})", ""]
        for key, value in self.summary().items():
            label = key.replace("_", " ").capitalize()
            lines.append(f"  {label + ':':<24}{value}")
        lines += ["", "Teammates:"]
        for m in self.members:
            line = f"  - {m.name} [{m.status.value}] {m.processed_count} processed"
            if m.error:
                line += f" ({m.error})"
            lines.append(line)
        if self.errors:
            lines += ["", "Errors:"]
            lines.extend(f"  - {e}" for e in self.errors)
        return "\n".join(lines)

    def render_markdown(self) -> str:
        lines = [
            f"# Agent Teams Results: {self.team}",
            "",
            f"**Aggregated at:** {self.aggregated_at}",
            "",
            "## Summary",
            "",
            "| Metric | Value |",
            "|--------|-------|",
        ]
        for key, value in self.summary().items():
            label = key.replace("_", " ").title()
            if key == "compile_success_rate":
                lines.append(f"| **{label}** | **{value}%** |")
            else:
                lines.append(f"| {label} | {value} |")

        metric_keys = sorted({k for m in self.members for k in m.metrics})
        header = ["Teammate", "Status", "Processed", *(k.replace("_", " ").title() for k in metric_keys)]
        lines += [
            "",
            "## Teammate Breakdown",
            "",
            "| " + " | ".join(header) + " |",
            "|" + "|".join("-" * (len(h) + 2) for h in header) + "|",
        ]
        for m in self.members:
            row = [m.name, m.status.value, str(m.processed_count)]
            row += [str(m.metrics.get(k, 0)) for k in metric_keys]
            lines.append("| " + " | ".join(row) + " |")

        if self.artifacts:
            lines += ["", "## Artifacts", ""]
            lines.extend(f"- `{a}`" for a in self.artifacts)
        if self.errors:
            lines += ["", "## Errors", ""]
            lines.extend(f"- {e}" for e in self.errors)
        return "\n".join(lines) + "\n"

    def render(self, fmt: str) -> str:
        if fmt == "markdown":
            return self.render_markdown()
        if fmt == "text":
            return self.render_text()
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)


def _add_error(errors: list[str], entry: str) -> None:
    if entry and entry not in errors:
        errors.append(entry)


def aggregate(registry: TeamRegistry, mailbox: Mailbox, team: str) -> AggregateReport:
    """Merge every member's terminal payload into a fresh report.

    Completed members add their counts, artifacts, metrics and errors.
    Failed members add partial artifacts and one ``"<name>: <message>"``
    error. Members without a terminal message stay pending and add nothing.

    Raises:
        TeamNotFoundError: if the team does not exist.
    """
    record = registry.load(team)
    report = AggregateReport(team=record.name)

    for member in record.members:
        terminal = mailbox.terminal_message(team, member.name)
        result = MemberResult(name=member.name, role=member.role, status=Classification.PENDING)

        classification = classify(member, terminal)
        if classification == Classification.COMPLETED:
            payload = CompletionPayload.from_dict(terminal.payload)
            result.status = Classification.COMPLETED
            result.processed_count = payload.processed_count
            result.artifacts = list(payload.artifacts)
            result.metrics = dict(payload.metrics)
            result.reported_status = payload.status
            report.total_processed += payload.processed_count
            for key, value in payload.metrics.items():
                report.metrics[key] = report.metrics.get(key, 0) + value
            for error in payload.errors:
                _add_error(report.errors, error)
        elif classification == Classification.FAILED:
            failure = (
                FailurePayload.from_dict(terminal.payload)
                if terminal is not None
                else FailurePayload(message=member.error or "Unknown error")
            )
            result.status = Classification.FAILED
            result.artifacts = list(failure.artifacts)
            result.error = failure.message
            _add_error(report.errors, f"{member.name}: {failure.message}")

        report.artifacts.extend(result.artifacts)
        report.members.append(result)

    if not registry.exists(team):
        raise TeamNotFoundError(team)

    logger.info(
        "Aggregated %s: %d processed, %d completed, %d failed, %d pending",
        team, report.total_processed,
        len(report.completed), len(report.failed), len(report.pending),
    )
    return report
