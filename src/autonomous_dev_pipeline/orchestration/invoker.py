"""Typed stage calls on top of the TaskRunner.

Turns a StageResult into either a validated result model or a StageError,
so the driver and the loop strategies can work with plain exceptions.
"""

from pathlib import Path
from typing import Any, Callable, Optional, Type, TypeVar

from pydantic import BaseModel

from ..errors import StageError, StageTimeout
from ..executor import StageRequest, TaskRunner
from ..models import Tier
from ..prompts import PromptLibrary
from ..tier_resolver import TierResolver


ResultT = TypeVar("ResultT", bound=BaseModel)


class StageInvoker:
    """Builds stage requests and interprets their results."""

    def __init__(
        self,
        runner: TaskRunner,
        resolver: TierResolver,
        prompts: PromptLibrary,
        cwd: Callable[[], Path],
    ):
        self.runner = runner
        self.resolver = resolver
        self.prompts = prompts
        self._cwd = cwd

    async def call(
        self,
        stage_id: str,
        prompt_name: str,
        result_model: Type[ResultT],
        complexity_hint: Optional[str] = None,
        tier: Optional[Tier] = None,
        **variables: Any,
    ) -> ResultT:
        """Run one stage call.

        Args:
            stage_id: Unique stage id, also used for tier resolution and the log file
            prompt_name: Prompt template to render
            result_model: Pydantic model the structured output must satisfy
            complexity_hint: Optional S/M/L hint for tier resolution
            tier: Explicit tier (e.g. a task's planned tier); skips resolution
            **variables: Prompt template variables

        Raises:
            StageTimeout: If the call exceeded its wall-clock budget
            StageError: For any other failure
        """
        if tier is None or self.resolver.override is not None:
            tier = self.resolver.resolve(stage_id, complexity_hint)

        request = StageRequest(
            stage_id=stage_id,
            prompt=self.prompts.render(prompt_name, **variables),
            result_model=result_model,
            tier=tier,
            cwd=self._cwd(),
        )
        result = await self.runner.run(request)

        if result.timed_out:
            raise StageTimeout(stage_id, self.runner.config.stage_timeout_seconds)
        if not result.success:
            raise StageError(stage_id, result.error_message or "unknown error")
        return result_model.model_validate(result.payload)
