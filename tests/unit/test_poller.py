"""
Completion Poller Tests
=======================

Snapshot classification and the wait loop (fail-fast, success, timeout).
Run with: pytest tests/unit/test_poller.py -v
"""

import asyncio
import time

import pytest

from agent_teams.team.errors import MemberNotFoundError, TeamNotFoundError
from agent_teams.team.mailbox import Mailbox
from agent_teams.team.poller import CompletionPoller
from agent_teams.team.protocol import Classification, MemberStatus, MessageType, WaitOutcome
from agent_teams.team.registry import TeamRegistry

from conftest import make_team, post_completed, post_failed


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

class TestSnapshot:
    """Tests for CompletionPoller.snapshot."""

    def test_classification(self, poller: CompletionPoller, registry: TeamRegistry, mailbox: Mailbox) -> None:
        make_team(registry, mailbox, "alpha", "a", "b", "c")
        post_completed(mailbox, "alpha", "a", 5)
        mailbox.writer("alpha", "b").post(MessageType.ERROR, {"error_message": "bad"})
        mailbox.writer("alpha", "c").post(MessageType.PROGRESS, {"message": "half way"})

        snap = poller.snapshot("alpha")

        assert snap.completed == ["a"]
        assert snap.failed == ["b"]
        assert snap.pending == ["c"]
        assert snap.get("b").failure_reason == "bad"
        assert snap.get("c").to_dict()["last_message"]["type"] == "progress"

    def test_rejected_submission_counts_as_failed(
        self, poller: CompletionPoller, registry: TeamRegistry,
    ) -> None:
        registry.ensure_team("alpha")
        registry.add_member("alpha", "a", "unit-tester")
        registry.update_member("alpha", "a", MemberStatus.FAILED, error="no executor")

        snap = poller.snapshot("alpha")

        assert snap.members[0].classification == Classification.FAILED
        assert snap.members[0].failure_reason == "no executor"

    def test_member_filter(self, poller: CompletionPoller, registry: TeamRegistry, mailbox: Mailbox) -> None:
        make_team(registry, mailbox, "alpha", "a", "b")
        assert [m.name for m in poller.snapshot("alpha", "b").members] == ["b"]

        with pytest.raises(MemberNotFoundError):
            poller.snapshot("alpha", "zzz")

    def test_unknown_team(self, poller: CompletionPoller) -> None:
        with pytest.raises(TeamNotFoundError):
            poller.snapshot("ghost")

    def test_snapshot_does_not_touch_registry(
        self, poller: CompletionPoller, registry: TeamRegistry, mailbox: Mailbox, storage,
    ) -> None:
        make_team(registry, mailbox, "alpha", "a")
        post_completed(mailbox, "alpha", "a", 1)
        before = storage.paths("alpha").config.read_bytes()

        poller.snapshot("alpha")

        assert storage.paths("alpha").config.read_bytes() == before

    def test_team_removed_while_reading(
        self, poller: CompletionPoller, registry: TeamRegistry, mailbox: Mailbox, storage,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        make_team(registry, mailbox, "alpha", "a", "b")
        post_completed(mailbox, "alpha", "a", 1)
        load = registry.load

        def load_then_remove(team):
            record = load(team)
            storage.remove(team)
            return record

        monkeypatch.setattr(registry, "load", load_then_remove)

        with pytest.raises(TeamNotFoundError):
            poller.snapshot("alpha")


# ---------------------------------------------------------------------------
# Wait
# ---------------------------------------------------------------------------

class TestWait:
    """Tests for CompletionPoller.wait."""

    @pytest.mark.asyncio
    async def test_empty_team_succeeds(self, poller: CompletionPoller, registry: TeamRegistry) -> None:
        registry.ensure_team("alpha")
        result = await poller.wait("alpha", timeout=5, interval=0.01)
        assert result.outcome == WaitOutcome.SUCCESS
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_success_carries_results(
        self, poller: CompletionPoller, registry: TeamRegistry, mailbox: Mailbox,
    ) -> None:
        make_team(registry, mailbox, "alpha", "a", "b")
        post_completed(mailbox, "alpha", "a", 2)
        post_completed(mailbox, "alpha", "b", 3)

        result = await poller.wait("alpha", timeout=5, interval=0.01)

        assert result.ok
        assert result.completed == ["a", "b"]
        assert result.results["b"]["processed_count"] == 3

    @pytest.mark.asyncio
    async def test_timeout_is_a_result(
        self, poller: CompletionPoller, registry: TeamRegistry, mailbox: Mailbox,
    ) -> None:
        make_team(registry, mailbox, "alpha", "a", "b")
        post_completed(mailbox, "alpha", "a", 1)

        result = await poller.wait("alpha", timeout=0.05, interval=0.01)

        assert result.outcome == WaitOutcome.TIMEOUT
        assert result.exit_code == 2
        assert result.completed == ["a"]
        assert result.pending == ["b"]
        assert result.elapsed_seconds >= 0.05

    @pytest.mark.asyncio
    async def test_zero_timeout_checks_once(
        self, poller: CompletionPoller, registry: TeamRegistry, mailbox: Mailbox,
    ) -> None:
        make_team(registry, mailbox, "alpha", "a")
        result = await poller.wait("alpha", timeout=0, interval=10)
        assert result.outcome == WaitOutcome.TIMEOUT

    @pytest.mark.asyncio
    @pytest.mark.parametrize("interval", [0, -1.0, float("nan")])
    async def test_non_positive_interval_rejected(
        self, poller: CompletionPoller, registry: TeamRegistry, interval: float,
    ) -> None:
        registry.ensure_team("alpha")
        with pytest.raises(ValueError, match="interval"):
            await poller.wait("alpha", timeout=1, interval=interval)

    @pytest.mark.asyncio
    async def test_failure_wins_over_success(
        self, poller: CompletionPoller, registry: TeamRegistry, mailbox: Mailbox,
    ) -> None:
        make_team(registry, mailbox, "alpha", "a", "b")
        post_completed(mailbox, "alpha", "a", 1)
        post_failed(mailbox, "alpha", "b", "crashed")

        result = await poller.wait("alpha", timeout=5, interval=0.01)

        assert result.outcome == WaitOutcome.FAILURE
        assert result.exit_code == 3
        assert result.failures == {"b": "crashed"}
        assert result.to_dict()["failed"] == ["b"]

    @pytest.mark.asyncio
    async def test_member_filter_ignores_others(
        self, poller: CompletionPoller, registry: TeamRegistry, mailbox: Mailbox,
    ) -> None:
        make_team(registry, mailbox, "alpha", "a", "b")
        post_completed(mailbox, "alpha", "a", 1)
        post_failed(mailbox, "alpha", "b")

        result = await poller.wait("alpha", timeout=5, interval=0.01, member="a")

        assert result.ok
        assert result.failed == []

    @pytest.mark.asyncio
    async def test_fail_fast_scenario(
        self, poller: CompletionPoller, registry: TeamRegistry, mailbox: Mailbox,
    ) -> None:
        """B fails before A completes; the wait returns failure long before its timeout."""
        make_team(registry, mailbox, "alpha", "unit-tester", "integration-tester", "property-tester")

        async def member_a() -> None:
            await asyncio.sleep(1.0)
            post_completed(mailbox, "alpha", "unit-tester", 5)

        async def member_b() -> None:
            await asyncio.sleep(0.2)
            post_failed(mailbox, "alpha", "integration-tester", "compile error")

        start = time.monotonic()
        teammates = [asyncio.create_task(member_a()), asyncio.create_task(member_b())]
        result = await poller.wait("alpha", timeout=3.0, interval=0.02)
        elapsed = time.monotonic() - start
        await asyncio.gather(*teammates)

        assert result.outcome == WaitOutcome.FAILURE
        assert result.failed == ["integration-tester"]
        assert sorted(result.pending) == ["property-tester", "unit-tester"]
        assert result.completed == []
        assert elapsed < 0.9
