"""Tests for the command line interface."""

import json
import pytest
from click.testing import CliRunner
from unittest.mock import AsyncMock, patch

from autonomous_dev_pipeline.cli import main
from autonomous_dev_pipeline.errors import IterationCapExceeded, LockConflict, WorkflowBlocked
from autonomous_dev_pipeline.models import LoopKind, StageName, TaskRecord, TaskStatus, WorkflowState
from autonomous_dev_pipeline.status_store import StatusStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def driver_cls():
    with patch("autonomous_dev_pipeline.cli.WorkflowDriver") as mock_driver, \
            patch("autonomous_dev_pipeline.cli.GitHubTracker"):
        yield mock_driver


def completed_state() -> WorkflowState:
    return WorkflowState(issue_ref="42", base_branch="main", log_dir="/tmp/logs", state="completed")


class TestRunCommand:
    def test_success_exit_zero(self, runner, driver_cls, tmp_path):
        driver_cls.return_value.start = AsyncMock(return_value=completed_state())

        result = runner.invoke(main, ["run", "42", "--project", str(tmp_path)])

        assert result.exit_code == 0, result.output
        args = driver_cls.return_value.start.await_args.args
        assert args[0] == "42"
        assert args[1] == "main"

    def test_iteration_cap_exit_two(self, runner, driver_cls, tmp_path):
        driver_cls.return_value.start = AsyncMock(side_effect=IterationCapExceeded(LoopKind.TEST, 5))
        result = runner.invoke(main, ["run", "42", "--project", str(tmp_path)])
        assert result.exit_code == 2

    def test_blocked_exit_one(self, runner, driver_cls, tmp_path):
        driver_cls.return_value.start = AsyncMock(side_effect=WorkflowBlocked(["unclear"]))
        result = runner.invoke(main, ["run", "42", "--project", str(tmp_path)])
        assert result.exit_code == 1

    def test_lock_conflict_exit_three(self, runner, driver_cls, tmp_path):
        driver_cls.return_value.start = AsyncMock(side_effect=LockConflict("x.lock", 123))
        result = runner.invoke(main, ["run", "42", "--project", str(tmp_path)])
        assert result.exit_code == 3

    def test_resume_flags_are_exclusive(self, runner, driver_cls, tmp_path):
        result = runner.invoke(main, [
            "run", "--resume", "--resume-from", str(tmp_path), "--project", str(tmp_path),
        ])
        assert result.exit_code == 3
        assert "mutually exclusive" in result.output

    def test_issue_required_without_resume(self, runner, driver_cls, tmp_path):
        result = runner.invoke(main, ["run", "--project", str(tmp_path)])
        assert result.exit_code == 3

    def test_bad_tier_is_configuration_error(self, runner, driver_cls, tmp_path):
        result = runner.invoke(main, ["run", "42", "--tier", "huge", "--project", str(tmp_path)])
        assert result.exit_code == 3

    def test_invalid_config_file(self, runner, driver_cls, tmp_path):
        (tmp_path / ".adp").mkdir()
        (tmp_path / ".adp" / "config.json").write_text(json.dumps({"stage_timeout_seconds": -1}))
        result = runner.invoke(main, ["run", "42", "--project", str(tmp_path)])
        assert result.exit_code == 3

    def test_resume_without_status_file(self, runner, driver_cls, tmp_path):
        result = runner.invoke(main, ["run", "--resume", "--project", str(tmp_path)])
        assert result.exit_code == 3
        assert "No status file" in result.output

    def test_tier_override_passed_to_config(self, runner, driver_cls, tmp_path):
        driver_cls.return_value.start = AsyncMock(return_value=completed_state())
        runner.invoke(main, ["run", "42", "--tier", "light", "--project", str(tmp_path)])
        config = driver_cls.call_args.args[1]
        assert config.tier_override.value == "light"


class TestStatusCommand:
    def test_no_status_file(self, runner, tmp_path):
        result = runner.invoke(main, ["status", "--project", str(tmp_path)])
        assert result.exit_code == 0
        assert "No status file" in result.output

    def test_renders_tables(self, runner, tmp_path):
        store = StatusStore.create(tmp_path / ".adp" / "status.json", "42", "main", tmp_path / "logs")
        store.set_tasks([TaskRecord(id=1, description="Add widget model")])
        store.set_task_status(1, TaskStatus.FAILED)
        store.start_stage(StageName.SETUP)

        result = runner.invoke(main, ["status", "--project", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert "Add widget model" in result.output
        assert "setup" in result.output


class TestTierCommand:
    def test_explains_resolution(self, runner):
        result = runner.invoke(main, ["tier", "spec-review-iter-1"])
        assert result.exit_code == 0
        assert "advanced" in result.output
        assert "spec-review" in result.output

    def test_hint(self, runner):
        result = runner.invoke(main, ["tier", "implement", "--hint", "S"])
        assert "light" in result.output
