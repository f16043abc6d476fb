"""Multi-step workflow orchestration across stateless agents.

A workflow is an ordered list of steps, each invoking a registered agent
with input selected from a shared context. Step outputs are merged into the
context as the run progresses.

Execution states:
- running -> completed (all steps succeeded, or a step condition stopped early)
- running -> failed (a step exhausted its retries)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from hazwaste.core.aiops.errors import (
    AgentNotFoundError,
    WorkflowNotFoundError,
    WorkflowStepError,
)
from hazwaste.core.aiops.types import Settled

logger = logging.getLogger(__name__)

AgentHandler = Callable[[Any, dict[str, Any]], Any]


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Agent:
    """A named unit of work and its invocation counters."""

    name: str
    handler: AgentHandler
    execution_count: int = 0
    total_latency_ms: float = 0.0


@dataclass
class WorkflowStep:
    """One stage of a workflow."""

    name: str
    agent: str
    input_selector: Callable[[dict[str, Any]], Any] | None = None
    # Evaluated after the step succeeds; False stops the workflow early
    condition: Callable[[dict[str, Any]], bool] | None = None
    retry_on_failure: bool = False
    max_retries: int = 3

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")


@dataclass
class WorkflowDefinition:
    name: str
    steps: list[WorkflowStep]
    execution_count: int = 0


@dataclass
class StepResult:
    step_name: str
    agent: str
    success: bool
    attempts: int
    output: Any = None
    error: str | None = None
    latency_ms: float = 0.0
    cause: BaseException | None = field(default=None, repr=False)


@dataclass
class WorkflowExecution:
    """Record of a single workflow run.

    Step results only grow while running and are frozen once the
    execution is finalized.
    """

    workflow_name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None
    final_output: dict[str, Any] | None = None
    error: str | None = None
    _steps: list[StepResult] = field(default_factory=list, repr=False)

    @property
    def steps(self) -> tuple[StepResult, ...]:
        return tuple(self._steps)

    def add_step(self, result: StepResult) -> None:
        if self.status != ExecutionStatus.RUNNING:
            raise RuntimeError(f"Execution {self.id} is {self.status.value}; steps are frozen")
        self._steps.append(result)

    def finalize(
        self,
        status: ExecutionStatus,
        final_output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        if self.status != ExecutionStatus.RUNNING:
            return
        self.status = status
        self.final_output = final_output
        self.error = error
        self.completed_at = datetime.utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_name": self.workflow_name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "steps": [
                {
                    "step_name": s.step_name,
                    "agent": s.agent,
                    "success": s.success,
                    "attempts": s.attempts,
                    "error": s.error,
                    "latency_ms": s.latency_ms,
                }
                for s in self._steps
            ],
            "error": self.error,
        }


def merge_context(context: dict[str, Any], output: Any) -> dict[str, Any]:
    """Shallow-merge dict outputs; place anything else under ``output``."""
    if isinstance(output, dict):
        return {**context, **output}
    return {**context, "output": output}


class WorkflowOrchestrator:
    """Registers agents and runs declarative workflows over them."""

    def __init__(
        self,
        step_base_delay_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._agents: dict[str, Agent] = {}
        self._workflows: dict[str, WorkflowDefinition] = {}
        self._executions: dict[str, WorkflowExecution] = {}
        self.step_base_delay = step_base_delay_seconds
        self._sleep = sleep

    # =========================================================================
    # Registration
    # =========================================================================

    def register_agent(self, name: str, handler: AgentHandler) -> None:
        """Register an agent. Handlers take ``(input, context)`` and may be async."""
        self._agents[name] = Agent(name=name, handler=handler)
        logger.info("Registered agent: %s", name)

    def define_workflow(self, name: str, steps: Sequence[WorkflowStep]) -> WorkflowDefinition:
        workflow = WorkflowDefinition(name=name, steps=list(steps))
        self._workflows[name] = workflow
        logger.info("Defined workflow: %s (%d steps)", name, len(workflow.steps))
        return workflow

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute_workflow(self, name: str, initial_input: Any) -> WorkflowExecution:
        """Run a workflow to completion.

        Returns the completed execution, whose ``final_output`` is the merged
        context. Raises ``WorkflowStepError`` when a step exhausts its
        retries; the failed execution stays available through
        ``get_execution_status``.
        """
        workflow = self._workflows.get(name)
        if workflow is None:
            raise WorkflowNotFoundError(name)

        execution = WorkflowExecution(workflow_name=name)
        self._executions[execution.id] = execution
        logger.info("Starting workflow execution: %s (workflow=%s)", execution.id, name)

        context: dict[str, Any] = {"input": initial_input}

        try:
            for index, step in enumerate(workflow.steps):
                result = await self._execute_step(execution.id, step, context, index)
                execution.add_step(result)

                if not result.success:
                    raise WorkflowStepError(execution.id, step.name, result.cause)

                context = merge_context(context, result.output)

                if step.condition is not None and not step.condition(context):
                    logger.info(
                        "Step condition not met, skipping remaining steps: %s (step=%s)",
                        execution.id, step.name,
                    )
                    break
        except Exception as e:
            execution.finalize(ExecutionStatus.FAILED, error=str(e))
            logger.error(
                "Workflow execution failed: %s (workflow=%s) error=%s", execution.id, name, e,
            )
            raise

        execution.finalize(ExecutionStatus.COMPLETED, final_output=context)
        workflow.execution_count += 1
        logger.info("Workflow completed successfully: %s (workflow=%s)", execution.id, name)
        return execution

    async def _execute_step(
        self,
        execution_id: str,
        step: WorkflowStep,
        context: dict[str, Any],
        index: int,
    ) -> StepResult:
        agent = self._agents.get(step.agent)
        if agent is None:
            raise AgentNotFoundError(step.agent)

        logger.info(
            "Executing step: %s (execution=%s index=%d agent=%s)",
            step.name, execution_id, index, step.agent,
        )

        max_attempts = step.max_retries if step.retry_on_failure else 1
        last_error: BaseException | None = None

        for attempt in range(max_attempts):
            start = time.perf_counter()
            try:
                step_input = (
                    step.input_selector(context) if step.input_selector else context.get("input")
                )
                output = await self._invoke(agent, step_input, context)
            except Exception as e:
                last_error = e
                logger.warning(
                    "Step execution failed: %s (execution=%s attempt=%d/%d) error=%s",
                    step.name, execution_id, attempt + 1, max_attempts, e,
                )
                if attempt < max_attempts - 1:
                    await self._sleep(self.step_base_delay * (2 ** attempt))
                continue

            latency_ms = (time.perf_counter() - start) * 1000
            logger.info(
                "Step completed successfully: %s (execution=%s attempt=%d latency_ms=%.0f)",
                step.name, execution_id, attempt + 1, latency_ms,
            )
            return StepResult(
                step_name=step.name,
                agent=step.agent,
                success=True,
                attempts=attempt + 1,
                output=output,
                latency_ms=latency_ms,
            )

        return StepResult(
            step_name=step.name,
            agent=step.agent,
            success=False,
            attempts=max_attempts,
            error=str(last_error),
            cause=last_error,
        )

    async def _invoke(self, agent: Agent, agent_input: Any, context: dict[str, Any]) -> Any:
        start = time.perf_counter()
        result = agent.handler(agent_input, context)
        if inspect.isawaitable(result):
            result = await result
        agent.execution_count += 1
        agent.total_latency_ms += (time.perf_counter() - start) * 1000
        return result

    async def execute_parallel(
        self,
        agent_names: Sequence[str],
        inputs: Sequence[Any],
        timeout: float = 30.0,
    ) -> list[Settled]:
        """Invoke several agents concurrently, each bounded by ``timeout``.

        Agent ``i`` receives ``inputs[i]`` (or ``inputs[0]`` when fewer
        inputs are given). Failures and timeouts never cancel siblings.
        """
        logger.info("Starting parallel execution: agents=%d timeout=%.1fs", len(agent_names), timeout)

        async def run(index: int, name: str) -> Any:
            agent = self._agents.get(name)
            if agent is None:
                raise AgentNotFoundError(name)
            agent_input = inputs[index] if index < len(inputs) else (inputs[0] if inputs else None)
            try:
                return await asyncio.wait_for(self._invoke(agent, agent_input, {}), timeout)
            except asyncio.TimeoutError:
                raise TimeoutError(f"Execution timeout: {name}") from None

        results = await asyncio.gather(
            *(run(i, name) for i, name in enumerate(agent_names)),
            return_exceptions=True,
        )
        settled = [Settled.from_result(r) for r in results]

        logger.info(
            "Parallel execution completed: agents=%d succeeded=%d",
            len(agent_names), sum(1 for s in settled if s.ok),
        )
        return settled

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_execution_status(self, execution_id: str) -> WorkflowExecution | None:
        return self._executions.get(execution_id)

    def get_workflow_stats(self, name: str) -> dict[str, Any]:
        workflow = self._workflows.get(name)
        if workflow is None:
            raise WorkflowNotFoundError(name)

        executions = [e for e in self._executions.values() if e.workflow_name == name]
        return {
            "name": name,
            "total_executions": workflow.execution_count,
            "successful": sum(1 for e in executions if e.status == ExecutionStatus.COMPLETED),
            "failed": sum(1 for e in executions if e.status == ExecutionStatus.FAILED),
            "running": sum(1 for e in executions if e.status == ExecutionStatus.RUNNING),
        }

    def get_agent_stats(self, name: str) -> dict[str, Any]:
        agent = self._agents.get(name)
        if agent is None:
            raise AgentNotFoundError(name)
        return {
            "name": name,
            "execution_count": agent.execution_count,
            "avg_latency_ms": (
                agent.total_latency_ms / agent.execution_count if agent.execution_count > 0 else 0.0
            ),
        }
