"""
CLI Tests
=========

Command parsing, feature gating, output streams and exit codes.
Run with: pytest tests/unit/test_cli.py -v
"""

import json
import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from agent_teams.cli import cli
from agent_teams.team.mailbox import Mailbox
from agent_teams.team.registry import TeamRegistry

from conftest import make_team, post_completed, post_failed


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def enabled(monkeypatch: pytest.MonkeyPatch, teams_dir: Path, archive_dir: Path) -> None:
    monkeypatch.setenv("AGENT_TEAMS_ENABLED", "1")
    monkeypatch.setenv("AGENT_TEAMS_TEAMS_DIR", str(teams_dir))
    monkeypatch.setenv("AGENT_TEAMS_ARCHIVE_DIR", str(archive_dir))
    monkeypatch.setenv("AGENT_TEAMS_POLL_INTERVAL", "0.01")
    monkeypatch.setenv("AGENT_TEAMS_SHUTDOWN_TIMEOUT", "0.1")


@pytest.fixture
def strategy(tmp_path: Path) -> Path:
    path = tmp_path / "strategy.md"
    path.write_text(
        "| Target | Technique |\n"
        "|--------|-----------|\n"
        "| OrderService | Unit test |\n"
        "| OrderRepo | Testcontainers |\n"
        "| Money | Property-based |\n",
        encoding="utf-8",
    )
    return path


# ---------------------------------------------------------------------------
# Gating and diagnostics
# ---------------------------------------------------------------------------

class TestFeatureFlag:
    @pytest.mark.parametrize("args", [
        ["poll", "alpha"],
        ["status", "alpha"],
        ["aggregate", "alpha"],
        ["shutdown", "alpha"],
        ["post", "alpha", "a", "progress"],
    ])
    def test_disabled_fails_fast(self, runner: CliRunner, args: list[str]) -> None:
        result = runner.invoke(cli, args)

        assert result.exit_code == 1
        assert "agent teams not enabled" in result.stderr

    def test_partition_is_gated(self, runner: CliRunner, strategy: Path) -> None:
        result = runner.invoke(cli, ["partition", str(strategy)])
        assert result.exit_code == 1


class TestCheck:
    def test_disabled(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["check"])
        assert result.exit_code == 1
        assert "disabled" in result.output

    def test_enabled_without_worker(self, runner: CliRunner, enabled: None) -> None:
        result = runner.invoke(cli, ["check"])
        assert result.exit_code == 2
        assert "(not set)" in result.output

    def test_ready(self, runner: CliRunner, enabled: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AGENT_TEAMS_WORKER_COMMAND", "my-worker --fast")
        result = runner.invoke(cli, ["check"])
        assert result.exit_code == 0
        assert "my-worker --fast" in result.output


def test_config_json(runner: CliRunner, enabled: None, teams_dir: Path) -> None:
    result = runner.invoke(cli, ["config", "--json"])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["teams_dir"] == str(teams_dir)


def test_invalid_config_exits_1(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_TEAMS_POLL_INTERVAL", "-5")
    result = runner.invoke(cli, ["config"])
    assert result.exit_code == 1
    assert "Configuration error" in result.stderr


# ---------------------------------------------------------------------------
# Partition and spawn
# ---------------------------------------------------------------------------

class TestPartitionCommand:
    def test_json(self, runner: CliRunner, enabled: None, strategy: Path) -> None:
        result = runner.invoke(cli, ["partition", str(strategy)])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["total_targets"] == 3
        assert data["teammates"]["integration-tester"]["targets"] == ["OrderRepo"]

    def test_text_from_stdin(self, runner: CliRunner, enabled: None) -> None:
        result = runner.invoke(cli, ["partition", "-", "--format", "text"], input="Foo\tunit test\n")

        assert result.exit_code == 0
        assert "unit-tester" in result.stdout


class TestSpawnCommand:
    def test_spawn(
        self, runner: CliRunner, enabled: None, tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch, registry: TeamRegistry,
    ) -> None:
        monkeypatch.setenv("AGENT_TEAMS_WORKER_COMMAND", "true")
        prompt = tmp_path / "prompt.md"
        prompt.write_text("Write unit tests.", encoding="utf-8")

        result = runner.invoke(cli, [
            "spawn", "alpha", "unit-tester", str(prompt),
            "--target", "OrderService | unit test",
            "--target", "Mapper",
        ])

        assert result.exit_code == 0, result.stderr
        data = json.loads(result.stdout)
        assert data["member"]["agent_id"] == "unit-tester@alpha"
        assert data["member"]["target_count"] == 2
        assert registry.get_member("alpha", "unit-tester").pid is not None

    def test_spawn_without_worker_command(
        self, runner: CliRunner, enabled: None, tmp_path: Path,
    ) -> None:
        prompt = tmp_path / "prompt.md"
        prompt.write_text("x", encoding="utf-8")

        result = runner.invoke(cli, ["spawn", "alpha", "unit-tester", str(prompt)])

        assert result.exit_code == 1
        assert "ERROR:" in result.stderr

    def test_bad_team_name(self, runner: CliRunner, enabled: None, tmp_path: Path) -> None:
        prompt = tmp_path / "prompt.md"
        prompt.write_text("x", encoding="utf-8")
        result = runner.invoke(cli, ["spawn", "../evil", "unit-tester", str(prompt)])
        assert result.exit_code == 1

    def test_references_exported_to_worker(
        self, runner: CliRunner, enabled: None, tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("AGENT_TEAMS_WORKER_COMMAND", "my-worker")
        prompt = tmp_path / "prompt.md"
        prompt.write_text("x", encoding="utf-8")
        guide = tmp_path / "TESTING.md"
        guide.write_text("Use JUnit 5.", encoding="utf-8")
        fixtures = tmp_path / "fixtures"
        fixtures.mkdir()

        with patch("agent_teams.team.executor.subprocess.Popen", return_value=MagicMock(pid=77)) as popen:
            result = runner.invoke(cli, [
                "spawn", "alpha", "unit-tester", str(prompt),
                "--reference", str(guide), "--reference", str(fixtures),
            ])

        assert result.exit_code == 0, result.stderr
        env = popen.call_args.kwargs["env"]
        assert env["AGENT_TEAMS_REFERENCES"] == os.pathsep.join(
            [str(guide.resolve()), str(fixtures.resolve())],
        )

    def test_missing_reference_is_usage_error(self, runner: CliRunner, enabled: None, tmp_path: Path) -> None:
        prompt = tmp_path / "prompt.md"
        prompt.write_text("x", encoding="utf-8")

        result = runner.invoke(cli, [
            "spawn", "alpha", "unit-tester", str(prompt), "--reference", str(tmp_path / "nope.md"),
        ])

        assert result.exit_code == 2


# ---------------------------------------------------------------------------
# Poll and status
# ---------------------------------------------------------------------------

class TestPollCommand:
    def test_snapshot(self, runner: CliRunner, enabled: None, registry: TeamRegistry, mailbox: Mailbox) -> None:
        make_team(registry, mailbox, "alpha", "a", "b")
        post_completed(mailbox, "alpha", "a", 1)

        result = runner.invoke(cli, ["poll", "alpha"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["completed"] == ["a"]
        assert data["pending"] == ["b"]

    def test_wait_success(self, runner: CliRunner, enabled: None, registry: TeamRegistry, mailbox: Mailbox) -> None:
        make_team(registry, mailbox, "alpha", "a")
        post_completed(mailbox, "alpha", "a", 4)

        result = runner.invoke(cli, ["poll", "alpha", "--wait", "--timeout", "2"])

        assert result.exit_code == 0
        assert json.loads(result.stdout)["status"] == "success"

    def test_wait_timeout(self, runner: CliRunner, enabled: None, registry: TeamRegistry, mailbox: Mailbox) -> None:
        make_team(registry, mailbox, "alpha", "a")

        result = runner.invoke(cli, ["poll", "alpha", "--wait", "--timeout", "0.05"])

        assert result.exit_code == 2
        assert json.loads(result.stdout)["pending"] == ["a"]

    def test_wait_failure(self, runner: CliRunner, enabled: None, registry: TeamRegistry, mailbox: Mailbox) -> None:
        make_team(registry, mailbox, "alpha", "a", "b")
        post_failed(mailbox, "alpha", "b", "compile error")

        result = runner.invoke(cli, ["poll", "alpha", "--wait", "--timeout", "2"])

        assert result.exit_code == 3
        data = json.loads(result.stdout)
        assert data["failed"] == ["b"]
        assert registry.get_member("alpha", "b").status.value == "failed"

    def test_unknown_team(self, runner: CliRunner, enabled: None) -> None:
        result = runner.invoke(cli, ["poll", "ghost"])
        assert result.exit_code == 1
        assert "ghost" in result.stderr

    @pytest.mark.parametrize("args", [
        ["--wait", "--interval", "0"],
        ["--wait", "--interval", "-1"],
        ["--wait", "--timeout", "-5"],
    ])
    def test_bad_timing_is_usage_error(
        self, runner: CliRunner, enabled: None, registry: TeamRegistry, mailbox: Mailbox, args: list[str],
    ) -> None:
        make_team(registry, mailbox, "alpha", "a")

        result = runner.invoke(cli, ["poll", "alpha", *args])

        assert result.exit_code == 2
        assert "Invalid value" in result.stderr


def test_status(runner: CliRunner, enabled: None, registry: TeamRegistry, mailbox: Mailbox) -> None:
    make_team(registry, mailbox, "alpha", "a")
    post_completed(mailbox, "alpha", "a", 1)

    result = runner.invoke(cli, ["status", "alpha"])

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["members"][0]["status"] == "completed"
    assert data["summary"]["completed"] == ["a"]


# ---------------------------------------------------------------------------
# Post, aggregate, shutdown
# ---------------------------------------------------------------------------

class TestPostCommand:
    def test_post_then_reject_after_terminal(
        self, runner: CliRunner, enabled: None, registry: TeamRegistry, mailbox: Mailbox,
    ) -> None:
        make_team(registry, mailbox, "alpha", "a")

        first = runner.invoke(cli, ["post", "alpha", "a", "task_completed", "--payload", '{"processed_count": 3}'])
        second = runner.invoke(cli, ["post", "alpha", "a", "progress"])

        assert first.exit_code == 0
        assert second.exit_code == 1
        assert [m.type.value for m in mailbox.read_all("alpha", "a")] == ["task_completed"]

    def test_payload_must_be_object(self, runner: CliRunner, enabled: None, registry: TeamRegistry, mailbox: Mailbox) -> None:
        make_team(registry, mailbox, "alpha", "a")
        result = runner.invoke(cli, ["post", "alpha", "a", "progress", "--payload", "[1]"])
        assert result.exit_code == 1
        assert "JSON object" in result.stderr

    def test_unknown_member(self, runner: CliRunner, enabled: None, registry: TeamRegistry) -> None:
        registry.ensure_team("alpha")
        result = runner.invoke(cli, ["post", "alpha", "nobody", "progress"])
        assert result.exit_code == 1


class TestAggregateCommand:
    def test_markdown_to_file(
        self, runner: CliRunner, enabled: None, registry: TeamRegistry, mailbox: Mailbox, tmp_path: Path,
    ) -> None:
        make_team(registry, mailbox, "alpha", "a")
        post_completed(mailbox, "alpha", "a", 3, artifacts=["ATest.kt"])
        output = tmp_path / "report.md"

        result = runner.invoke(cli, ["aggregate", "alpha", "--format", "markdown", "-o", str(output)])

        assert result.exit_code == 0
        assert result.stdout == ""
        text = output.read_text(encoding="utf-8")
        assert text.startswith("# Agent Teams Results: alpha")
        assert "- `ATest.kt`" in text

    def test_json(self, runner: CliRunner, enabled: None, registry: TeamRegistry, mailbox: Mailbox) -> None:
        make_team(registry, mailbox, "alpha", "a")
        post_completed(mailbox, "alpha", "a", 3)

        result = runner.invoke(cli, ["aggregate", "alpha"])

        assert json.loads(result.stdout)["summary"]["total_processed"] == 3


class TestShutdownCommand:
    def test_unknown_team_is_success(self, runner: CliRunner, enabled: None) -> None:
        result = runner.invoke(cli, ["shutdown", "ghost"])

        assert result.exit_code == 0
        assert json.loads(result.stdout)["already_removed"] is True
        assert "already cleaned up" in result.stderr

    def test_force_with_archive(
        self, runner: CliRunner, enabled: None, registry: TeamRegistry, mailbox: Mailbox, archive_dir: Path,
    ) -> None:
        make_team(registry, mailbox, "alpha", "a")
        post_completed(mailbox, "alpha", "a", 1)

        result = runner.invoke(cli, ["shutdown", "alpha", "--force", "--keep-results"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["removed"] is True
        assert Path(data["archive_path"]).parent == archive_dir
        assert not registry.exists("alpha")
