"""
Minimal saga runner.

A saga is an ordered list of steps, each with an ``apply`` coroutine and an optional
``compensate`` coroutine. Steps run in order; when one fails, the already-applied steps
are compensated in reverse order. Step results are shared through ``context``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

StepFn = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class SagaStep:
    name: str
    apply: StepFn
    compensate: Optional[StepFn] = None


@dataclass
class SagaResult:
    success: bool
    context: Dict[str, Any]
    completed_steps: List[str] = field(default_factory=list)
    compensated_steps: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[BaseException] = None
    compensation_errors: List[str] = field(default_factory=list)


class Saga:
    def __init__(self, name: str, steps: Optional[List[SagaStep]] = None):
        self.name = name
        self.steps: List[SagaStep] = list(steps or [])

    def add_step(self, name: str, apply: StepFn, compensate: Optional[StepFn] = None) -> "Saga":
        self.steps.append(SagaStep(name=name, apply=apply, compensate=compensate))
        return self

    async def execute(self, context: Optional[Dict[str, Any]] = None) -> SagaResult:
        ctx: Dict[str, Any] = dict(context or {})
        done: List[SagaStep] = []

        for step in self.steps:
            try:
                ctx[step.name] = await step.apply(ctx)
                done.append(step)
            except Exception as e:
                logger.warning(f"[{self.name}] step '{step.name}' failed: {e!r}; compensating {len(done)} step(s)")
                result = SagaResult(
                    success=False,
                    context=ctx,
                    completed_steps=[s.name for s in done],
                    failed_step=step.name,
                    error=e,
                )
                await self._compensate(done, ctx, result)
                return result

        return SagaResult(success=True, context=ctx, completed_steps=[s.name for s in done])

    async def _compensate(self, done: List[SagaStep], ctx: Dict[str, Any], result: SagaResult) -> None:
        for step in reversed(done):
            if step.compensate is None:
                continue
            try:
                await step.compensate(ctx)
                result.compensated_steps.append(step.name)
            except Exception as e:
                # Keep unwinding the remaining steps; the failure is reported, not raised.
                logger.exception(f"[{self.name}] compensation of '{step.name}' failed")
                result.compensation_errors.append(f"{step.name}: {e}")
