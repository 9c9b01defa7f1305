"""Tests for resume validation."""

import pytest
from unittest.mock import patch

from autonomous_dev_pipeline.errors import EXIT_CONFIGURATION, ResumeValidationError
from autonomous_dev_pipeline.models import StageName, WorkflowStatus
from autonomous_dev_pipeline.orchestration.resume import ResumeManager
from autonomous_dev_pipeline.run_logs import RunLogs
from autonomous_dev_pipeline.status_store import StatusStore, load_state


@pytest.fixture
def worktree(tmp_path):
    path = tmp_path / "worktrees" / "issue-42"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def store(tmp_path, worktree):
    logs = RunLogs(tmp_path / "logs" / "run-1")
    logs.ensure_structure()
    store = StatusStore.create(tmp_path / "status.json", "42", "main", logs.log_dir)
    store.start_stage(StageName.SETUP)
    store.set_setup("adp/issue-42", worktree)
    store.complete_stage(StageName.SETUP)
    store.start_stage(StageName.RESEARCH)
    store.set_state(WorkflowStatus.RUNNING)
    return store


@pytest.fixture
def git_ok():
    with patch("autonomous_dev_pipeline.orchestration.resume.GitManager") as mock_git:
        mock_git.return_value.is_git_repo.return_value = True
        yield mock_git


class TestPrepareResume:
    def test_valid(self, store, git_ok):
        context = ResumeManager().prepare_resume(store.path)

        assert context.state.issue_ref == "42"
        assert context.completed_stages == {"setup"}
        assert context.log_dir == store.path.parent / "logs" / "run-1"
        assert context.status_path == store.path

    def test_missing_file(self, tmp_path):
        with pytest.raises(ResumeValidationError) as exc_info:
            ResumeManager().prepare_resume(tmp_path / "missing.json")
        assert exc_info.value.exit_code == EXIT_CONFIGURATION

    def test_unparseable_file(self, tmp_path):
        path = tmp_path / "status.json"
        path.write_text("{truncated")
        with pytest.raises(ResumeValidationError):
            ResumeManager().prepare_resume(path)

    def test_missing_required_fields(self, tmp_path, git_ok):
        store = StatusStore.create(tmp_path / "fresh.json", "42", "main", tmp_path / "logs")
        with pytest.raises(ResumeValidationError, match="branch"):
            ResumeManager().prepare_resume(store.path)

    def test_completed_run(self, store, git_ok):
        store.set_state(WorkflowStatus.COMPLETED)
        with pytest.raises(ResumeValidationError, match="already completed"):
            ResumeManager().prepare_resume(store.path)

    def test_missing_worktree(self, store, worktree, git_ok):
        worktree.rmdir()
        with pytest.raises(ResumeValidationError, match="no longer exists"):
            ResumeManager().prepare_resume(store.path)

    def test_worktree_not_a_checkout(self, store):
        with patch("autonomous_dev_pipeline.orchestration.resume.GitManager") as mock_git:
            mock_git.return_value.is_git_repo.return_value = False
            with pytest.raises(ResumeValidationError, match="not a git checkout"):
                ResumeManager().prepare_resume(store.path)

    def test_error_state_is_resumable(self, store, git_ok):
        store.set_state(WorkflowStatus.MAX_ITERATIONS_TEST)
        context = ResumeManager().prepare_resume(store.path)
        assert context.state.state == WorkflowStatus.MAX_ITERATIONS_TEST


class TestResumeFromLogDir:
    def test_missing_primary_is_left_for_the_driver(self, store, git_ok):
        log_dir = store.path.parent / "logs" / "run-1"
        store.path.unlink()

        context = ResumeManager().prepare_resume_from_log_dir(log_dir, store.path)

        assert not store.path.exists()
        assert context.status_path == store.path
        assert context.log_dir == log_dir
        assert context.state.issue_ref == "42"

    def test_primary_of_same_run_is_kept(self, store, git_ok):
        log_dir = store.path.parent / "logs" / "run-1"
        before = store.path.read_text()

        context = ResumeManager().prepare_resume_from_log_dir(log_dir, store.path)

        assert context.status_path == store.path
        assert store.path.read_text() == before

    def test_primary_of_another_run_is_untouched(self, store, git_ok, tmp_path):
        log_dir = tmp_path / "logs" / "run-1"
        other = store.state.model_copy(update={
            "issue_ref": "7",
            "log_dir": str(tmp_path / "logs" / "run-2"),
        })
        store.path.write_text(other.model_dump_json())

        with pytest.raises(ResumeValidationError, match="another run"):
            ResumeManager().prepare_resume_from_log_dir(log_dir, store.path)
        assert load_state(store.path).issue_ref == "7"

    def test_invalid_mirror_leaves_primary_untouched(self, store, git_ok):
        logs = RunLogs(store.path.parent / "logs" / "run-1")
        logs.status_mirror.write_text("{truncated")
        before = store.path.read_text()

        with pytest.raises(ResumeValidationError):
            ResumeManager().prepare_resume_from_log_dir(logs.log_dir, store.path)
        assert store.path.read_text() == before

    def test_completed_mirror_leaves_primary_untouched(self, store, git_ok):
        logs = RunLogs(store.path.parent / "logs" / "run-1")
        finished = store.state.model_copy(update={"state": WorkflowStatus.COMPLETED})
        logs.status_mirror.write_text(finished.model_dump_json())
        store.path.unlink()

        with pytest.raises(ResumeValidationError, match="already completed"):
            ResumeManager().prepare_resume_from_log_dir(logs.log_dir, store.path)
        assert not store.path.exists()

    def test_without_primary_path_uses_mirror(self, store, git_ok):
        log_dir = store.path.parent / "logs" / "run-1"
        context = ResumeManager().prepare_resume_from_log_dir(log_dir)
        assert context.status_path == log_dir / "status.json"

    def test_missing_mirror(self, tmp_path):
        with pytest.raises(ResumeValidationError, match="No mirrored status"):
            ResumeManager().prepare_resume_from_log_dir(tmp_path / "empty")
