"""Team coordination: registry, mailboxes, spawning, polling and teardown.

The team lead facade lives in :mod:`agent_teams.team.coordinator`.
"""

from agent_teams.team.aggregator import AggregateReport, aggregate
from agent_teams.team.errors import (
    DuplicateMemberError,
    FeatureDisabledError,
    InvalidNameError,
    LifecycleError,
    MemberNotFoundError,
    SpawnError,
    StorageError,
    TeamError,
    TeamNotFoundError,
)
from agent_teams.team.executor import Executor, HandleResult, SubmissionRequest, TaskHandle
from agent_teams.team.mailbox import Mailbox
from agent_teams.team.partition import Partition, PartitionMode, Target, parse_targets, partition
from agent_teams.team.poller import CompletionPoller, PollSnapshot, WaitResult
from agent_teams.team.protocol import (
    Classification,
    Member,
    MemberStatus,
    Message,
    MessageType,
    Team,
    TeamStatus,
    WaitOutcome,
)
from agent_teams.team.registry import TeamRegistry
from agent_teams.team.shutdown import ShutdownCoordinator, ShutdownResult
from agent_teams.team.spawner import MemberHandle, TeammateSpawner
from agent_teams.team.storage import TeamStorage

__all__ = [
    "AggregateReport",
    "Classification",
    "CompletionPoller",
    "DuplicateMemberError",
    "Executor",
    "FeatureDisabledError",
    "HandleResult",
    "InvalidNameError",
    "LifecycleError",
    "Mailbox",
    "Member",
    "MemberHandle",
    "MemberNotFoundError",
    "MemberStatus",
    "Message",
    "MessageType",
    "Partition",
    "PartitionMode",
    "PollSnapshot",
    "ShutdownCoordinator",
    "ShutdownResult",
    "SpawnError",
    "StorageError",
    "SubmissionRequest",
    "Target",
    "TaskHandle",
    "Team",
    "TeamError",
    "TeamNotFoundError",
    "TeamRegistry",
    "TeamStatus",
    "TeamStorage",
    "TeammateSpawner",
    "WaitOutcome",
    "WaitResult",
    "aggregate",
    "parse_targets",
    "partition",
]
