"""Tests for the external task runner."""

import asyncio
import json
import pytest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from autonomous_dev_pipeline.executor import (
    ClaudeCLIBackend, ExecutorBackend, RawResponse, StageRequest, TaskRunner,
    compute_rate_limit_wait, detect_rate_limit, extract_structured_output, parse_envelope,
)
from autonomous_dev_pipeline.models import PipelineConfig, RateLimitConfig, StageResultStatus, Tier
from autonomous_dev_pipeline.run_logs import RunLogs
from autonomous_dev_pipeline.schemas import ReviewVerdict

from conftest import envelope_response, error_response


class SequenceBackend(ExecutorBackend):
    """Returns queued responses in order."""

    def __init__(self, *responses: RawResponse):
        self.responses = list(responses)
        self.calls = 0

    async def execute(self, prompt, schema, model, cwd):
        self.calls += 1
        return self.responses.pop(0)


class SlowBackend(ExecutorBackend):
    """Never answers within the timeout."""

    def __init__(self):
        self.cancelled = False

    async def execute(self, prompt, schema, model, cwd):
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return envelope_response({"approved": True})


def make_request(tmp_path: Path, stage_id: str = "task-review-task-1-attempt-1") -> StageRequest:
    return StageRequest(
        stage_id=stage_id,
        prompt="Review task 1",
        result_model=ReviewVerdict,
        tier=Tier.STANDARD,
        cwd=tmp_path,
    )


@pytest.fixture
def logs(tmp_path):
    run_logs = RunLogs(tmp_path / "logs")
    run_logs.ensure_structure()
    return run_logs


class TestRateLimitWait:
    def test_retry_after_seconds(self):
        assert compute_rate_limit_wait("Rate limited. Retry after 45 seconds") == 45 + 30

    def test_wait_minutes(self):
        assert compute_rate_limit_wait("Usage limit reached, please wait 10 minutes") == 600 + 30

    def test_retry_after_beats_wait_minutes(self):
        assert compute_rate_limit_wait("wait 10 minutes or retry-after: 5") == 5 + 30

    def test_default(self):
        assert compute_rate_limit_wait("429 Too Many Requests") == 300 + 30

    def test_custom_config(self):
        config = RateLimitConfig(default_wait_seconds=10, buffer_seconds=1)
        assert compute_rate_limit_wait("", config) == 11


class TestRateLimitDetection:
    def test_explicit_status_field(self):
        response = envelope_response(None, error="rate_limit")
        assert detect_rate_limit(response)

    def test_explicit_status_field_wins_over_text(self):
        response = error_response("rate limit exceeded", api_error_status="invalid_request")
        assert not detect_rate_limit(response)

    def test_error_text_phrases(self):
        for text in ("Rate limit exceeded", "HTTP 429", "Too Many Requests",
                     "You've hit your limit", "request throttled"):
            assert detect_rate_limit(error_response(text)), text

    def test_successful_output_mentioning_rate_limit(self):
        response = envelope_response({"approved": True}, result="Added rate limit handling")
        assert not detect_rate_limit(response)

    def test_plain_failure(self):
        assert not detect_rate_limit(error_response("syntax error in file"))


class TestEnvelope:
    def test_single_object(self):
        assert parse_envelope('{"type": "result", "result": "ok"}')["result"] == "ok"

    def test_json_lines_last_result_wins(self):
        stdout = "\n".join([
            json.dumps({"type": "system"}),
            json.dumps({"type": "result", "result": "first"}),
            "noise",
            json.dumps({"type": "result", "result": "last"}),
        ])
        assert parse_envelope(stdout)["result"] == "last"

    def test_empty(self):
        assert parse_envelope("") is None

    def test_structured_output_preferred(self):
        response = envelope_response({"approved": True}, result='{"approved": false}')
        assert extract_structured_output(response) == {"approved": True}

    def test_fenced_json_in_result(self):
        response = envelope_response(None, result='Done.\n```json\n{"approved": false}\n```')
        assert extract_structured_output(response) == {"approved": False}

    def test_no_structured_output(self):
        assert extract_structured_output(envelope_response(None, result="just prose")) is None


class TestTaskRunner:
    @pytest.mark.asyncio
    async def test_success(self, tmp_path, logs):
        backend = SequenceBackend(envelope_response({"approved": True, "feedback": "nice"}))
        runner = TaskRunner(PipelineConfig(), backend, logs)

        result = await runner.run(make_request(tmp_path))

        assert result.success
        assert result.payload["approved"] is True
        entries = logs.stage_log("task-review-task-1-attempt-1").entries()
        assert [e["type"] for e in entries][:2] == ["request", "response"]

    @pytest.mark.asyncio
    async def test_rate_limit_sleeps_then_retries_once(self, tmp_path, logs):
        backend = SequenceBackend(
            error_response("Rate limited, retry after 45"),
            envelope_response({"approved": True}),
        )
        sleep = AsyncMock()
        runner = TaskRunner(PipelineConfig(), backend, logs, sleep=sleep)

        result = await runner.run(make_request(tmp_path))

        assert result.success
        assert backend.calls == 2
        sleep.assert_awaited_once_with(75.0)

    @pytest.mark.asyncio
    async def test_second_rate_limit_is_error(self, tmp_path, logs):
        backend = SequenceBackend(
            error_response("429 Too Many Requests"),
            error_response("429 Too Many Requests"),
        )
        sleep = AsyncMock()
        runner = TaskRunner(PipelineConfig(), backend, logs, sleep=sleep)

        result = await runner.run(make_request(tmp_path))

        assert result.status == StageResultStatus.ERROR
        assert result.error_message == "rate limited again after retry"
        assert backend.calls == 2
        sleep.assert_awaited_once_with(330.0)

    @pytest.mark.asyncio
    async def test_timeout_is_not_rate_limit(self, tmp_path, logs):
        backend = SlowBackend()
        sleep = AsyncMock()
        runner = TaskRunner(PipelineConfig(stage_timeout_seconds=1), backend, logs, sleep=sleep)

        result = await runner.run(make_request(tmp_path))

        assert result.timed_out
        assert result.error_message == "timeout"
        assert backend.cancelled
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_structured_output(self, tmp_path, logs):
        backend = SequenceBackend(envelope_response(None, result="I reviewed it, looks fine"))
        runner = TaskRunner(PipelineConfig(), backend, logs)

        result = await runner.run(make_request(tmp_path))

        assert not result.success
        assert result.error_message == "no structured output"

    @pytest.mark.asyncio
    async def test_schema_mismatch(self, tmp_path, logs):
        backend = SequenceBackend(envelope_response({"feedback": "missing approved"}))
        runner = TaskRunner(PipelineConfig(), backend, logs)

        result = await runner.run(make_request(tmp_path))

        assert not result.success
        assert result.error_message.startswith("structured output failed validation")

    @pytest.mark.asyncio
    async def test_executor_error(self, tmp_path, logs):
        backend = SequenceBackend(error_response("tool crashed"))
        runner = TaskRunner(PipelineConfig(), backend, logs)

        result = await runner.run(make_request(tmp_path))

        assert result.status == StageResultStatus.ERROR
        assert "tool crashed" in result.error_message

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path, logs):
        backend = SequenceBackend()
        backend.execute = AsyncMock(side_effect=FileNotFoundError("claude not found"))
        runner = TaskRunner(PipelineConfig(), backend, logs)

        result = await runner.run(make_request(tmp_path))

        assert not result.success
        assert "claude not found" in result.error_message

    @pytest.mark.asyncio
    async def test_model_follows_tier(self, tmp_path, logs):
        backend = SequenceBackend(envelope_response({"approved": True}))
        backend.execute = AsyncMock(return_value=envelope_response({"approved": True}))
        config = PipelineConfig()
        runner = TaskRunner(config, backend, logs)

        await runner.run(make_request(tmp_path))

        args = backend.execute.await_args.args
        assert args[2] == config.model_for(Tier.STANDARD)
        assert args[1]["title"] == "ReviewVerdict"


class TestClaudeCLIBackend:
    def test_build_command(self):
        backend = ClaudeCLIBackend(command="claude")
        with patch("autonomous_dev_pipeline.executor.shutil.which", return_value="/usr/bin/claude"):
            cmd = backend.build_command({"type": "object"}, "some-model")

        assert cmd[0] == "/usr/bin/claude"
        assert "-p" in cmd
        assert cmd[cmd.index("--output-format") + 1] == "json"
        assert json.loads(cmd[cmd.index("--json-schema") + 1]) == {"type": "object"}
        assert cmd[cmd.index("--model") + 1] == "some-model"

    def test_missing_executable(self):
        backend = ClaudeCLIBackend(command="definitely-not-installed")
        with patch("autonomous_dev_pipeline.executor.shutil.which", return_value=None):
            with pytest.raises(FileNotFoundError):
                backend.build_command({}, "model")
