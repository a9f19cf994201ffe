"""Target partitioning - split work items into one bucket per teammate.

Two modes:

* ``by-role`` (default): each target's hint (its testing technique) is matched
  against a priority-ordered keyword table. Anything unmatched goes to the
  default role, so every target lands in exactly one bucket.
* ``by-module``: targets are grouped by the module inferred from their
  identifier. When no target reveals a module the partition falls back to
  ``by-role``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Iterable

logger = logging.getLogger("agent_teams.team.partition")

UNIT_ROLE = "unit-tester"
INTEGRATION_ROLE = "integration-tester"
PROPERTY_ROLE = "property-tester"
ROLES = (UNIT_ROLE, INTEGRATION_ROLE, PROPERTY_ROLE)

ROOT_MODULE = "root"

# First match wins; more specific techniques come first.
KEYWORD_TABLE: tuple[tuple[str, str], ...] = (
    ("property-based", PROPERTY_ROLE),
    ("property test", PROPERTY_ROLE),
    ("kotest property", PROPERTY_ROLE),
    ("pbt", PROPERTY_ROLE),
    ("jqwik", PROPERTY_ROLE),
    ("fast-check", PROPERTY_ROLE),
    ("quickcheck", PROPERTY_ROLE),
    ("hypothesis", PROPERTY_ROLE),
    ("integration test", INTEGRATION_ROLE),
    ("integration-test", INTEGRATION_ROLE),
    ("repository test", INTEGRATION_ROLE),
    ("testcontainers", INTEGRATION_ROLE),
    ("contract test", INTEGRATION_ROLE),
    ("contract-test", INTEGRATION_ROLE),
    ("pact", INTEGRATION_ROLE),
    ("wiremock", INTEGRATION_ROLE),
    ("@springboottest", INTEGRATION_ROLE),
    ("@datajpatest", INTEGRATION_ROLE),
    ("unit test", UNIT_ROLE),
    ("unit-test", UNIT_ROLE),
    ("mock-based", UNIT_ROLE),
    ("bdd unit", UNIT_ROLE),
    ("mockk", UNIT_ROLE),
    ("mockito", UNIT_ROLE),
    ("jest.mock", UNIT_ROLE),
)

# Keywords must start at a word boundary ("pact" must not match "impact").
_KEYWORD_PATTERNS = tuple(
    (re.compile(r"(?<![a-z0-9])" + re.escape(keyword)), role) for keyword, role in KEYWORD_TABLE
)

# Path segments that never name a module on their own.
_GENERIC_SEGMENTS = frozenset({
    "src", "main", "test", "tests", "java", "kotlin", "scala", "python",
    "lib", "libs", "app", "apps", "packages", "modules", "com", "org", "net", "io",
})


class PartitionMode(str, Enum):
    BY_ROLE = "by-role"
    BY_MODULE = "by-module"


@dataclass(frozen=True)
class Target:
    """A unit of work and its category hint."""
    identifier: str
    hint: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"target": self.identifier, "technique": self.hint}


@dataclass
class Partition:
    """Disjoint assignment of targets to buckets (one bucket per teammate)."""
    requested_mode: PartitionMode
    mode: PartitionMode
    buckets: dict[str, list[Target]] = field(default_factory=dict)
    module_paths: dict[str, str] = field(default_factory=dict)

    @property
    def total_targets(self) -> int:
        return sum(len(targets) for targets in self.buckets.values())

    @property
    def degraded(self) -> bool:
        return self.mode != self.requested_mode

    def non_empty(self) -> dict[str, list[Target]]:
        return {name: targets for name, targets in self.buckets.items() if targets}

    def to_dict(self) -> dict[str, Any]:
        teammates: dict[str, Any] = {}
        for name, targets in self.buckets.items():
            entry: dict[str, Any] = {
                "target_count": len(targets),
                "targets": [t.identifier for t in targets],
            }
            if name in self.module_paths:
                entry["module_path"] = self.module_paths[name]
            teammates[name] = entry
        return {
            "partition_mode": self.mode.value,
            "requested_mode": self.requested_mode.value,
            "teammates": teammates,
            "total_targets": self.total_targets,
        }

    def render_text(self) -> str:
        title = "Partition by Module" if self.mode == PartitionMode.BY_MODULE else "Partition by Role"
        lines = [title, "=" * len(title), ""]
        if self.degraded:
            lines += ["(no modules detected, fell back to role-based partitioning)", ""]
        for name, targets in self.buckets.items():
            lines.append(f"{name} ({len(targets)} targets):")
            lines.extend(f"  - {t.identifier}" for t in targets)
            lines.append("")
        lines.append(f"Total: {self.total_targets} targets")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def role_for_hint(hint: str, default: str = UNIT_ROLE) -> str:
    """Map a technique hint to a teammate role via the keyword table."""
    text = (hint or "").lower()
    for pattern, role in _KEYWORD_PATTERNS:
        if pattern.search(text):
            return role
    return default


def infer_module(identifier: str, modules: Iterable[str] | None = None) -> str | None:
    """Guess which module a target belongs to, or None.

    With a known module list, the first module whose name or dotted path
    appears among the identifier's segments wins. Otherwise the module is
    the directory before ``src`` (or the first non-generic directory) of a
    path, or the last package segment of a dotted name.
    """
    ident = (identifier or "").strip()
    if not ident:
        return None
    segments = [s for s in re.split(r"[/\\.:]", ident) if s]

    if modules:
        dotted = ".".join(segments)
        for module in modules:
            module = module.strip().strip("/")
            if not module:
                continue
            name = PurePosixPath(module).name
            if name in segments or module.replace("/", ".") in dotted:
                return module
        return None

    if "/" in ident or "\\" in ident:
        dirs = [p for p in re.split(r"[/\\]", ident) if p][:-1]
        if "src" in dirs and dirs.index("src") > 0:
            return dirs[dirs.index("src") - 1]
        for part in dirs:
            if part.lower() not in _GENERIC_SEGMENTS and part not in (".", ".."):
                return part
        return None

    parts = ident.split(".")
    if len(parts) >= 3:
        return parts[-2]
    return None


def _bucket_for_module(module: str) -> str:
    return f"module-{PurePosixPath(module).name}"


def partition(
    targets: Iterable[Target],
    mode: PartitionMode = PartitionMode.BY_ROLE,
    modules: Iterable[str] | None = None,
    default_role: str = UNIT_ROLE,
) -> Partition:
    """Assign every target to exactly one bucket."""
    targets = list(targets)
    known = [m for m in (modules or []) if m and m.strip()]

    if mode == PartitionMode.BY_MODULE:
        assigned = [(t, infer_module(t.identifier, known or None)) for t in targets]
        if any(module for _, module in assigned):
            result = Partition(requested_mode=mode, mode=PartitionMode.BY_MODULE)
            for target, module in assigned:
                module = module or ROOT_MODULE
                bucket = _bucket_for_module(module)
                result.buckets.setdefault(bucket, []).append(target)
                result.module_paths.setdefault(bucket, module)
            return result
        logger.info("No modules detected. Falling back to role-based partitioning.")

    result = Partition(requested_mode=mode, mode=PartitionMode.BY_ROLE)
    for role in ROLES:
        result.buckets[role] = []
    for target in targets:
        role = role_for_hint(target.hint, default_role)
        result.buckets.setdefault(role, []).append(target)
    return result


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_HEADER_RE = re.compile(r"^\|.*target.*\|.*(technique|hint|category)", re.IGNORECASE)
_SEPARATOR_RE = re.compile(r"^\|[\s:|-]+\|?\s*$")


def _split_row(line: str) -> list[str]:
    return [cell.strip() for cell in line.strip().strip("|").split("|")]


def _parse_table(lines: list[str]) -> list[Target]:
    targets: list[Target] = []
    in_table = header_seen = False
    for line in lines:
        stripped = line.strip()
        if _HEADER_RE.match(stripped):
            in_table, header_seen = True, False
            continue
        if not stripped.startswith("|"):
            in_table = False
            continue
        if not in_table:
            continue
        if _SEPARATOR_RE.match(stripped):
            header_seen = True
            continue
        if header_seen:
            cells = _split_row(stripped)
            if len(cells) >= 2 and cells[0] and cells[1]:
                targets.append(Target(cells[0], cells[1]))
    return targets


def _target_from_json(item: Any) -> Target | None:
    if isinstance(item, str):
        return Target(item) if item.strip() else None
    if isinstance(item, (list, tuple)) and item:
        hint = str(item[1]) if len(item) > 1 else ""
        return Target(str(item[0]), hint)
    if isinstance(item, dict):
        ident = item.get("target") or item.get("identifier") or item.get("name")
        if not ident:
            return None
        hint = item.get("technique") or item.get("hint") or item.get("category") or ""
        return Target(str(ident), str(hint))
    return None


def parse_targets(text: str) -> list[Target]:
    """Read targets from a strategy table, a JSON list or plain lines.

    Raises:
        ValueError: if JSON input is malformed.
    """
    stripped = (text or "").strip()
    if not stripped:
        return []

    if stripped[0] in "[{":
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid targets JSON: {e}") from e
        if isinstance(data, dict):
            data = data.get("targets", [])
        if not isinstance(data, list):
            raise ValueError("Targets JSON must be a list")
        return [t for t in (_target_from_json(item) for item in data) if t is not None]

    lines = stripped.splitlines()
    if any(_HEADER_RE.match(line.strip()) for line in lines):
        return _parse_table(lines)

    targets: list[Target] = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "\t" in line:
            ident, _, hint = line.partition("\t")
        elif " | " in line:
            ident, _, hint = line.partition(" | ")
        else:
            ident, hint = line, ""
        targets.append(Target(ident.strip(), hint.strip()))
    return targets
