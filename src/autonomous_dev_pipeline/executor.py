"""External task runner.

Invokes the external executor once per stage with a hard timeout, waits out
rate limiting (retrying exactly once), and extracts the structured result
the stage declared.

Architecture:
- ExecutorBackend: Abstract boundary to the executor process
- ClaudeCLIBackend: Runs the claude CLI in print mode with a JSON schema
- TaskRunner: Timeout, rate-limit backoff, logging and result extraction
"""

import asyncio
import json
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Type

from pydantic import BaseModel, ValidationError
from rich.console import Console

from .models import PipelineConfig, RateLimitConfig, StageResult, StageResultStatus, Tier
from .run_logs import RunLogs


console = Console()


# =============================================================================
# Raw Response
# =============================================================================

@dataclass
class RawResponse:
    """Unparsed output of one executor call."""
    stdout: str = ""
    stderr: str = ""
    returncode: Optional[int] = 0
    envelope: Optional[dict[str, Any]] = None

    @property
    def is_error(self) -> bool:
        if self.envelope is not None and "is_error" in self.envelope:
            return bool(self.envelope["is_error"]) or self.returncode not in (0, None)
        return self.returncode not in (0, None)

    @property
    def text(self) -> str:
        parts = [self.stdout, self.stderr]
        if self.envelope and isinstance(self.envelope.get("result"), str):
            parts.append(self.envelope["result"])
        return "\n".join(p for p in parts if p)

    @property
    def status_field(self) -> Optional[str]:
        """Explicit structured error/status value, if the envelope has one."""
        if not self.envelope:
            return None
        for key in ("error", "api_error_status", "error_type"):
            value = self.envelope.get(key)
            if value not in (None, ""):
                return str(value)
        return None


def parse_envelope(stdout: str) -> Optional[dict[str, Any]]:
    """Parse the executor's JSON envelope.

    Accepts a single JSON object, or a stream of JSON lines in which case the
    last ``result`` object wins.
    """
    text = stdout.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
        if isinstance(data, list):
            results = [d for d in data if isinstance(d, dict) and d.get("type") == "result"]
            return results[-1] if results else None
    except json.JSONDecodeError:
        pass

    envelope = None
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(item, dict) and item.get("type") == "result":
            envelope = item
    return envelope


# =============================================================================
# Rate Limit Handling
# =============================================================================

RATE_LIMIT_PHRASES = [
    "rate limit",
    "rate_limit",
    "429",
    "too many requests",
    "usage limit reached",
    "you've hit your limit",
    "throttl",
]

RETRY_AFTER_PATTERN = re.compile(r"retry[\s_-]*after\D{0,10}?(\d+)", re.IGNORECASE)
WAIT_MINUTES_PATTERN = re.compile(r"wait\s+(\d+)\s*(?:minutes?|mins?)\b", re.IGNORECASE)


def detect_rate_limit(response: RawResponse) -> bool:
    """Decide whether a response signals rate limiting.

    An explicit structured status field wins. Free-text matching is only
    used when the response is an error, so output that merely discusses
    rate limiting is not mistaken for it.
    """
    status = response.status_field
    if status is not None:
        lowered = status.lower()
        return "rate" in lowered or "429" in lowered or "throttl" in lowered

    if not response.is_error:
        return False

    text = response.text.lower()
    return any(phrase in text for phrase in RATE_LIMIT_PHRASES)


def compute_rate_limit_wait(text: str, config: Optional[RateLimitConfig] = None) -> float:
    """Compute how long to sleep before retrying a rate-limited call.

    Tries, in order, "retry after N" (seconds), "wait N minutes", then the
    configured default; the safety buffer is always added.
    """
    config = config or RateLimitConfig()

    match = RETRY_AFTER_PATTERN.search(text or "")
    if match:
        return float(match.group(1)) + config.buffer_seconds

    match = WAIT_MINUTES_PATTERN.search(text or "")
    if match:
        return float(match.group(1)) * 60 + config.buffer_seconds

    return config.default_wait_seconds + config.buffer_seconds


def extract_structured_output(response: RawResponse) -> Optional[dict[str, Any]]:
    """Pull the structured result out of a response.

    Prefers the envelope's ``structured_output``; falls back to a JSON object
    in the ``result`` text (optionally inside a fenced code block).
    """
    envelope = response.envelope
    if envelope is None:
        return None

    structured = envelope.get("structured_output")
    if isinstance(structured, dict):
        return structured

    result_text = envelope.get("result")
    if not isinstance(result_text, str) or not result_text.strip():
        return None

    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", result_text)
    candidate = fenced.group(1).strip() if fenced else result_text.strip()
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


# =============================================================================
# Executor Backends
# =============================================================================

class ExecutorBackend(ABC):
    """Boundary to the external executor process."""

    @abstractmethod
    async def execute(
        self,
        prompt: str,
        schema: dict[str, Any],
        model: str,
        cwd: Path,
    ) -> RawResponse:
        """Run one executor call and return its raw output.

        Cancelling the awaiting task must stop the underlying call.
        """


class ClaudeCLIBackend(ExecutorBackend):
    """Runs the claude CLI in non-interactive print mode.

    The prompt is passed on stdin; the CLI is asked for a JSON envelope whose
    ``structured_output`` conforms to the stage schema.
    """

    def __init__(self, command: str = "claude", permission_mode: str = "acceptEdits"):
        self.command = command
        self.permission_mode = permission_mode

    def _resolve_executable(self) -> str:
        exe = shutil.which(self.command)
        if exe is None:
            raise FileNotFoundError(
                f"Executor CLI '{self.command}' not found in PATH. "
                "Install it or set executor_command in .adp/config.json"
            )
        return exe

    def build_command(self, schema: dict[str, Any], model: str) -> list[str]:
        return [
            self._resolve_executable(),
            "-p",
            "--output-format", "json",
            "--json-schema", json.dumps(schema),
            "--model", model,
            "--permission-mode", self.permission_mode,
        ]

    async def execute(
        self,
        prompt: str,
        schema: dict[str, Any],
        model: str,
        cwd: Path,
    ) -> RawResponse:
        proc = await asyncio.create_subprocess_exec(
            *self.build_command(schema, model),
            cwd=str(cwd),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate(prompt.encode("utf-8"))
        except asyncio.CancelledError:
            # Timed out or cancelled - don't leave the executor running
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        out = stdout.decode("utf-8", errors="replace")
        return RawResponse(
            stdout=out,
            stderr=stderr.decode("utf-8", errors="replace"),
            returncode=proc.returncode,
            envelope=parse_envelope(out),
        )


# =============================================================================
# Task Runner
# =============================================================================

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class StageRequest:
    """What a stage asks of the executor."""
    stage_id: str
    prompt: str
    result_model: Type[BaseModel]
    tier: Tier
    cwd: Path


class TaskRunner:
    """Runs one stage against the external executor.

    Responsibilities:
    - Enforce the per-call wall-clock timeout
    - Detect rate limiting, sleep, retry exactly once
    - Log raw input/output before any parsing
    - Validate the structured payload against the stage's result model
    """

    def __init__(
        self,
        config: PipelineConfig,
        backend: ExecutorBackend,
        logs: RunLogs,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.config = config
        self.backend = backend
        self.logs = logs
        self._sleep = sleep

    async def _invoke(self, request: StageRequest, model: str, schema: dict, attempt: int) -> RawResponse:
        stage_log = self.logs.stage_log(request.stage_id)
        stage_log.log_request(request.prompt, model, schema, attempt=attempt)

        response = await asyncio.wait_for(
            self.backend.execute(request.prompt, schema, model, request.cwd),
            timeout=self.config.stage_timeout_seconds,
        )

        stage_log.log_response(response.stdout, response.stderr, response.returncode, attempt=attempt)
        return response

    async def run(self, request: StageRequest) -> StageResult:
        """Run a stage and return its StageResult.

        Never raises for executor failures; timeouts, errors and unparseable
        output are all reported through the result.
        """
        model = self.config.model_for(request.tier)
        schema = request.result_model.model_json_schema()
        stage_log = self.logs.stage_log(request.stage_id)

        console.print(
            f"[blue]>[/blue] {request.stage_id} "
            f"[dim]({request.tier.value}: {model})[/dim]"
        )

        response: Optional[RawResponse] = None
        for attempt in (1, 2):
            try:
                response = await self._invoke(request, model, schema, attempt)
            except asyncio.TimeoutError:
                timeout = self.config.stage_timeout_seconds
                console.print(f"[red]Stage {request.stage_id} timed out after {timeout}s[/red]")
                stage_log.log_event("timeout", timeout_seconds=timeout, attempt=attempt)
                return StageResult(
                    status=StageResultStatus.ERROR,
                    error_message="timeout",
                    timed_out=True,
                )
            except OSError as e:
                stage_log.log_event("invoke_error", error=str(e), attempt=attempt)
                return StageResult(status=StageResultStatus.ERROR, error_message=str(e))

            if not detect_rate_limit(response):
                break

            if attempt == 2:
                stage_log.log_event("rate_limit_persisted", attempt=attempt)
                return StageResult(
                    status=StageResultStatus.ERROR,
                    error_message="rate limited again after retry",
                    raw_output=response.text,
                )

            wait_seconds = compute_rate_limit_wait(response.text, self.config.rate_limit)
            stage_log.log_event("rate_limit", wait_seconds=wait_seconds, attempt=attempt)
            console.print(
                f"[yellow][RATE LIMIT] {request.stage_id}: sleeping {wait_seconds:.0f}s "
                f"({wait_seconds / 60:.1f} minutes) before retrying[/yellow]"
            )
            await self._sleep(wait_seconds)

        return self._interpret(request, response)

    def _interpret(self, request: StageRequest, response: RawResponse) -> StageResult:
        stage_log = self.logs.stage_log(request.stage_id)

        if response.is_error:
            message = (response.envelope or {}).get("result") or response.stderr.strip() \
                or f"executor exited with code {response.returncode}"
            stage_log.log_event("result", status="error", error=str(message)[:500])
            return StageResult(
                status=StageResultStatus.ERROR,
                error_message=str(message)[:2000],
                raw_output=response.text,
            )

        payload = extract_structured_output(response)
        if payload is None:
            stage_log.log_event("result", status="error", error="no structured output")
            return StageResult(
                status=StageResultStatus.ERROR,
                error_message="no structured output",
                raw_output=response.text,
            )

        try:
            validated = request.result_model.model_validate(payload)
        except ValidationError as e:
            stage_log.log_event("result", status="error", error=str(e)[:500])
            return StageResult(
                status=StageResultStatus.ERROR,
                error_message=f"structured output failed validation: {e}",
                raw_output=response.text,
            )

        stage_log.log_event("result", status="success")
        return StageResult(
            status=StageResultStatus.SUCCESS,
            payload=validated.model_dump(mode="json"),
            raw_output=response.text,
        )
