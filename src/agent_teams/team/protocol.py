"""Team coordination protocol - shared data types.

Everything that crosses the storage boundary (registry entries, mailbox
messages and their payloads) is defined here together with its JSON shape.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

LEAD_NAME = "team-lead"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def make_agent_id(name: str, team: str) -> str:
    return f"{name}@{team}"


# ---------------------------------------------------------------------------
# Lifecycle states
# ---------------------------------------------------------------------------

class TeamStatus(str, Enum):
    """Team lifecycle states, in the only order they may advance."""
    FORMING = "forming"
    ACTIVE = "active"
    SHUTTING_DOWN = "shutting_down"
    ARCHIVED = "archived"

    @property
    def rank(self) -> int:
        return _TEAM_RANK[self]


_TEAM_RANK = {status: index for index, status in enumerate(TeamStatus)}


class MemberStatus(str, Enum):
    """Member lifecycle states.

    ``completed`` and ``failed`` share a rank: a member reaches exactly one
    of them and can never switch to the other.
    """
    SPAWNING = "spawning"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    SHUTDOWN_REQUESTED = "shutdown_requested"
    SHUT_DOWN = "shut_down"

    @property
    def rank(self) -> int:
        return _MEMBER_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (MemberStatus.COMPLETED, MemberStatus.FAILED)

    def can_transition_to(self, target: "MemberStatus") -> bool:
        """True if moving to *target* goes strictly forward."""
        return target.rank > self.rank


_MEMBER_RANK = {
    MemberStatus.SPAWNING: 0,
    MemberStatus.ACTIVE: 1,
    MemberStatus.COMPLETED: 2,
    MemberStatus.FAILED: 2,
    MemberStatus.SHUTDOWN_REQUESTED: 3,
    MemberStatus.SHUT_DOWN: 4,
}


class MessageType(str, Enum):
    """Mailbox message kinds.

    ``error`` is the older spelling of ``task_failed`` and is treated
    identically everywhere.
    """
    PROGRESS = "progress"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    ERROR = "error"
    SHUTDOWN_ACK = "shutdown_ack"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageType.TASK_COMPLETED, MessageType.TASK_FAILED, MessageType.ERROR)

    @property
    def is_failure(self) -> bool:
        return self in (MessageType.TASK_FAILED, MessageType.ERROR)


class Classification(str, Enum):
    """Progress of a member as observed by the poller."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WaitOutcome(str, Enum):
    """Result category of a wait (and of CLI commands in general)."""
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    FAILURE = "failure"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    WaitOutcome.SUCCESS: 0,
    WaitOutcome.ERROR: 1,
    WaitOutcome.TIMEOUT: 2,
    WaitOutcome.FAILURE: 3,
}


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Message:
    """One mailbox entry: ``{type, from, timestamp, payload}``."""
    type: MessageType
    sender: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def is_terminal(self) -> bool:
        return self.type.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "from": self.sender,
            "timestamp": self.timestamp,
            "payload": dict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        """Build a message from its JSON form.

        Raises:
            ValueError: if *data* is not a well-formed message.
        """
        if not isinstance(data, dict):
            raise ValueError(f"message must be an object, got {type(data).__name__}")
        try:
            msg_type = MessageType(data.get("type"))
        except ValueError:
            raise ValueError(f"unknown message type: {data.get('type')!r}") from None
        payload = data.get("payload", {})
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValueError("message payload must be an object")
        return cls(
            type=msg_type,
            sender=str(data.get("from", "")),
            payload=payload,
            timestamp=str(data.get("timestamp") or ""),
        )


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return 0


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None and str(v) != ""]


def _numeric_items(data: Any) -> dict[str, int | float]:
    if not isinstance(data, dict):
        return {}
    out: dict[str, int | float] = {}
    for key, value in data.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if isinstance(value, float) and not math.isfinite(value):
            continue
        out[str(key)] = value
    return out


@dataclass(frozen=True)
class CompletionPayload:
    """Payload of a ``task_completed`` message."""
    processed_count: int = 0
    artifacts: list[str] = field(default_factory=list)
    metrics: dict[str, int | float] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    status: str = "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "processed_count": self.processed_count,
            "artifacts": list(self.artifacts),
            "metrics": dict(self.metrics),
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CompletionPayload":
        """Read a completion payload, accepting the older key names too."""
        if "processed_count" in payload:
            processed = _as_int(payload["processed_count"])
        else:
            processed = _as_int(payload.get("targets_processed", 0))

        artifacts = _as_str_list(payload.get("artifacts", payload.get("generated_files")))

        metrics = _numeric_items(payload.get("metrics"))
        compile_results = payload.get("compile_results")
        if isinstance(compile_results, dict):
            for src, dst in (("success", "compile_success"), ("failure", "compile_failure")):
                if src in compile_results:
                    metrics.setdefault(dst, _as_int(compile_results[src]))
        for key in ("properties_defined", "generators_created"):
            if key in payload:
                metrics.setdefault(key, _as_int(payload[key]))

        return cls(
            processed_count=processed,
            artifacts=artifacts,
            metrics=metrics,
            errors=_as_str_list(payload.get("errors")),
            status=str(payload.get("status") or "completed"),
        )


@dataclass(frozen=True)
class FailurePayload:
    """Payload of a ``task_failed`` (or legacy ``error``) message."""
    message: str = "Unknown error"
    artifacts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "artifacts": list(self.artifacts)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FailurePayload":
        message = payload.get("message") or payload.get("error_message") or "Unknown error"
        artifacts = payload.get("artifacts")
        if artifacts is None:
            artifacts = payload.get("partial_artifacts", payload.get("generated_files"))
        return cls(message=str(message), artifacts=_as_str_list(artifacts))


# ---------------------------------------------------------------------------
# Registry entities
# ---------------------------------------------------------------------------

@dataclass
class Member:
    """Registry entry for one teammate."""
    agent_id: str
    name: str
    role: str
    status: MemberStatus = MemberStatus.SPAWNING
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    target_count: int = 0
    pid: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "agent_type": self.role,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "target_count": self.target_count,
            "pid": self.pid,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Member":
        name = str(data["name"])
        return cls(
            agent_id=str(data.get("agent_id") or name),
            name=name,
            role=str(data.get("agent_type") or data.get("role") or ""),
            status=MemberStatus(data.get("status", MemberStatus.SPAWNING.value)),
            created_at=str(data.get("created_at") or ""),
            updated_at=str(data.get("updated_at") or ""),
            target_count=_as_int(data.get("target_count", 0)),
            pid=data.get("pid"),
            error=data.get("error"),
        )


@dataclass
class Team:
    """Registry record of a team and its members (lead excluded)."""
    name: str
    created_at: str = field(default_factory=utc_now_iso)
    status: TeamStatus = TeamStatus.FORMING
    lead_agent_id: str = ""
    members: list[Member] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.lead_agent_id:
            self.lead_agent_id = make_agent_id(LEAD_NAME, self.name)

    @property
    def member_names(self) -> list[str]:
        return [m.name for m in self.members]

    def get_member(self, ident: str) -> Member | None:
        for member in self.members:
            if member.name == ident or member.agent_id == ident:
                return member
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "created_at": self.created_at,
            "status": self.status.value,
            "lead_agent_id": self.lead_agent_id,
            "members": [m.to_dict() for m in self.members],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Team":
        members = [
            Member.from_dict(m)
            for m in data.get("members", [])
            if isinstance(m, dict) and m.get("name") and m.get("name") != LEAD_NAME
        ]
        return cls(
            name=str(data["name"]),
            created_at=str(data.get("created_at") or ""),
            status=TeamStatus(data.get("status", TeamStatus.FORMING.value)),
            lead_agent_id=str(data.get("lead_agent_id") or ""),
            members=members,
        )
