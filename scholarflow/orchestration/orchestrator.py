from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import uuid4

from pydantic import ValidationError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from ..agents.base import BaseAgent
from ..agents.registry import AgentRegistry
from ..core import metrics
from ..core.config import SchedulingSettings
from ..core.exceptions import (
    AgentError,
    InvalidUsageRecordError,
    ProviderError,
    RateLimitExceededError,
    ScholarFlowError,
)
from ..core.logging import get_logger, workflow_log_context
from ..schemas.agents import AgentDescriptor, AgentInput, AgentOutput, TokenUsage
from ..schemas.tasks import TaskFailure, TaskStatus, WorkflowResult, WorkflowStatus
from ..schemas.usage import RunningTotal, UsageFilter
from ..services.rate_limit import ProviderRateLimiter
from ..services.usage import UsageAccountant
from .graph import Task, TaskGraph, TaskOutcome
from .workflows import WorkflowCatalog

logger = get_logger(name=__name__)

DEADLINE_REASON = "workflow deadline exceeded"


@dataclass(frozen=True, slots=True)
class _TaskEvent:
    kind: str  # started | retrying | fallback | finished | abandoned
    task_id: str
    attempt: int
    outcome: TaskOutcome | None = None


@dataclass(slots=True)
class _WorkflowRun:
    correlation_id: str
    workflow: str
    graph: TaskGraph
    user_id: str | None
    deadline: float
    dispatch_slots: asyncio.Semaphore
    events: asyncio.Queue[_TaskEvent] = field(default_factory=asyncio.Queue)
    timed_out: bool = False
    # Set right before the loop cancels its in-flight tasks.
    closing: bool = False

    def deadline_passed(self) -> bool:
        return time.monotonic() >= self.deadline

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())


class _AttemptAbandoned(Exception):
    """Internal signal: a retry would start after the workflow deadline."""


class Orchestrator:
    """Runs named workflows against the agent fleet.

    ``execute`` builds the task graph, then loops: every ready task is
    dispatched as its own ``asyncio.Task``; each dispatch retries in place
    with tenacity and reports every attempt through a completion queue. Only
    the loop mutates the graph. Task-local errors never escape; the caller
    always receives a ``WorkflowResult``.
    """

    def __init__(
        self,
        *,
        registry: AgentRegistry,
        catalog: WorkflowCatalog,
        limiter: ProviderRateLimiter,
        accountant: UsageAccountant,
        settings: SchedulingSettings | None = None,
    ) -> None:
        self._registry = registry
        self._catalog = catalog
        self._limiter = limiter
        self._accountant = accountant
        self._settings = settings or SchedulingSettings()
        self._agent_slots: dict[str, asyncio.Semaphore] = {}

    @property
    def catalog(self) -> WorkflowCatalog:
        return self._catalog

    async def execute(
        self,
        workflow_name: str,
        params: Mapping[str, Any] | None = None,
        *,
        user_id: str | None = None,
        timeout: float | None = None,
    ) -> WorkflowResult:
        correlation_id = uuid4().hex
        started_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        log = logger.bind(correlation_id=correlation_id, workflow=workflow_name)
        metrics.mark_workflow_started(workflow=workflow_name)

        try:
            graph = self._catalog.build(workflow_name, params)
            graph.correlation_id = correlation_id
            graph.apply_retry_default(self._settings.max_retries)
            graph.build()
        except ScholarFlowError as exc:
            log.warning("workflow_rejected", error=str(exc), error_type=type(exc).__name__)
            result = WorkflowResult(
                correlation_id=correlation_id,
                workflow=workflow_name,
                status=WorkflowStatus.FAILED,
                error=str(exc),
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
            )
            metrics.mark_workflow_completed(
                workflow=workflow_name,
                status=result.status.value,
                latency=time.perf_counter() - started,
            )
            return result

        budget = self._settings.workflow_timeout_seconds if timeout is None else timeout
        run = _WorkflowRun(
            correlation_id=correlation_id,
            workflow=workflow_name,
            graph=graph,
            user_id=user_id,
            deadline=time.monotonic() + max(0.0, budget),
            dispatch_slots=asyncio.Semaphore(self._settings.max_concurrency),
        )
        log.info("workflow_started", tasks=len(graph), user_id=user_id, timeout=budget)
        with workflow_log_context(correlation_id=correlation_id, workflow=workflow_name, user_id=user_id):
            await self._run_graph(run)

        result = self._assemble(run, started_at)
        latency = time.perf_counter() - started
        metrics.mark_workflow_completed(workflow=workflow_name, status=result.status.value, latency=latency)
        log.info(
            "workflow_finished",
            status=result.status.value,
            timed_out=result.timed_out,
            failures=len(result.failures),
            total_tokens=result.usage.total_tokens,
            cost=str(result.usage.cost),
            latency=round(latency, 4),
        )
        return result

    async def _run_graph(self, run: _WorkflowRun) -> None:
        graph = run.graph
        in_flight: dict[str, asyncio.Task[None]] = {}
        try:
            while not graph.is_terminal:
                if run.deadline_passed():
                    if not run.timed_out:
                        run.timed_out = True
                        logger.warning(
                            "workflow_deadline_exceeded",
                            correlation_id=run.correlation_id,
                            in_flight=sorted(in_flight),
                        )
                else:
                    for task in graph.ready_tasks():
                        graph.mark_running(task.task_id)
                        metrics.increment_task_event(capability=task.capability, event="dispatched")
                        in_flight[task.task_id] = asyncio.create_task(
                            self._drive_task(run, task, self._upstream(graph, task)),
                            name=f"{run.correlation_id}:{task.task_id}",
                        )
                if not in_flight:
                    break
                # Past the deadline in-flight calls get one call timeout to report back.
                wait = self._settings.call_timeout_seconds if run.timed_out else run.remaining()
                try:
                    event = await asyncio.wait_for(run.events.get(), timeout=wait)
                except asyncio.TimeoutError:
                    if run.timed_out:
                        logger.warning(
                            "workflow_drain_abandoned",
                            correlation_id=run.correlation_id,
                            in_flight=sorted(in_flight),
                        )
                        break
                    continue
                self._apply(run, event, in_flight)
        finally:
            run.closing = True
            for pending in in_flight.values():
                pending.cancel()

        for task_id in sorted(in_flight):
            if graph.get(task_id).status is TaskStatus.RUNNING:
                graph.advance(task_id, TaskOutcome.failure(DEADLINE_REASON))
                metrics.increment_task_event(capability=graph.get(task_id).capability, event="failed")

        if not graph.is_terminal:
            reason = DEADLINE_REASON if run.timed_out else "task could not be scheduled"
            skipped = graph.skip_remaining(reason)
            for task_id in skipped:
                metrics.increment_task_event(capability=graph.get(task_id).capability, event="skipped")
            if skipped:
                logger.warning(
                    "workflow_tasks_skipped",
                    correlation_id=run.correlation_id,
                    reason=reason,
                    task_ids=skipped,
                )

    def _apply(self, run: _WorkflowRun, event: _TaskEvent, in_flight: dict[str, asyncio.Task[None]]) -> None:
        graph = run.graph
        task = graph.get(event.task_id)
        if event.kind == "started":
            graph.mark_running(event.task_id)
            return
        if event.kind == "abandoned":
            in_flight.pop(event.task_id, None)
            return
        assert event.outcome is not None
        if event.kind == "fallback":
            graph.begin_fallback(event.task_id, event.outcome.reason or "preferred provider failed")
            metrics.increment_task_event(capability=task.capability, event="fallback")
            return
        status = graph.advance(event.task_id, event.outcome)
        metrics.increment_task_event(capability=task.capability, event=status.value)
        if event.kind == "finished":
            in_flight.pop(event.task_id, None)
        if status is TaskStatus.FAILED:
            logger.warning(
                "task_failed",
                correlation_id=run.correlation_id,
                task_id=event.task_id,
                capability=task.capability,
                attempts=task.attempts,
                reason=task.error,
                skipped=[other.task_id for other in graph.tasks.values() if other.status is TaskStatus.SKIPPED],
            )
        elif status is TaskStatus.RETRYING:
            logger.info(
                "task_retrying",
                correlation_id=run.correlation_id,
                task_id=event.task_id,
                attempt=event.attempt,
                reason=task.error,
            )

    @staticmethod
    def _upstream(graph: TaskGraph, task: Task) -> dict[str, Any]:
        return {dep: graph.get(dep).result for dep in task.depends_on}

    def _is_retryable(self, run: _WorkflowRun, exc: BaseException) -> bool:
        return not run.deadline_passed() and _is_transient(exc)

    def _fallback_for(self, run: _WorkflowRun, task: Task, exc: BaseException) -> str | None:
        """Provider for one last attempt after the preferred provider gave up, if any."""
        if task.provider is not None or run.deadline_passed() or not _is_transient(exc):
            return None
        try:
            agent = self._registry.resolve(task.capability, user_id=run.user_id)
        except ScholarFlowError:
            return None
        return agent.descriptor.fallback_provider

    async def _drive_task(self, run: _WorkflowRun, task: Task, upstream: dict[str, Any]) -> None:
        settings = self._settings
        events = run.events

        def report_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome is not None else None
            events.put_nowait(
                _TaskEvent(
                    kind="retrying",
                    task_id=task.task_id,
                    attempt=state.attempt_number,
                    outcome=TaskOutcome.failure(_describe(exc), retryable=True),
                )
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(task.max_retries + 1),
            wait=wait_exponential(
                multiplier=settings.base_backoff_seconds,
                exp_base=settings.backoff_multiplier,
                max=settings.max_backoff_seconds,
            ),
            retry=retry_if_exception(lambda exc: self._is_retryable(run, exc)),
            before_sleep=report_retry,
            reraise=True,
        )
        attempt_number = 0
        try:
            try:
                async for attempt in retrying:
                    with attempt:
                        attempt_number = attempt.retry_state.attempt_number
                        if attempt_number > 1:
                            if run.deadline_passed():
                                raise _AttemptAbandoned()
                            events.put_nowait(
                                _TaskEvent(kind="started", task_id=task.task_id, attempt=attempt_number)
                            )
                        output = await self._attempt(run, task, upstream, attempt_number)
            except _AttemptAbandoned:
                raise
            except Exception as exc:
                fallback = self._fallback_for(run, task, exc)
                if fallback is None:
                    raise
                attempt_number += 1
                logger.warning(
                    "task_falling_back",
                    correlation_id=run.correlation_id,
                    task_id=task.task_id,
                    provider=fallback,
                    reason=_describe(exc),
                )
                events.put_nowait(
                    _TaskEvent(
                        kind="fallback",
                        task_id=task.task_id,
                        attempt=attempt_number,
                        outcome=TaskOutcome.failure(_describe(exc), retryable=True),
                    )
                )
                output = await self._attempt(run, task, upstream, attempt_number, provider=fallback)
        except _AttemptAbandoned:
            events.put_nowait(_TaskEvent(kind="abandoned", task_id=task.task_id, attempt=attempt_number))
            return
        except asyncio.CancelledError:
            if run.closing:
                raise
            # Cancelled from inside the call rather than by the loop: report it as a failure.
            events.put_nowait(
                _TaskEvent(
                    kind="finished",
                    task_id=task.task_id,
                    attempt=attempt_number,
                    outcome=TaskOutcome.failure("agent call cancelled", retryable=False),
                )
            )
            return
        except Exception as exc:
            events.put_nowait(
                _TaskEvent(
                    kind="finished",
                    task_id=task.task_id,
                    attempt=attempt_number,
                    outcome=TaskOutcome.failure(_describe(exc), retryable=False),
                )
            )
            return
        events.put_nowait(
            _TaskEvent(
                kind="finished",
                task_id=task.task_id,
                attempt=attempt_number,
                outcome=TaskOutcome.success(output.payload),
            )
        )

    async def _attempt(
        self,
        run: _WorkflowRun,
        task: Task,
        upstream: dict[str, Any],
        attempt_number: int,
        *,
        provider: str | None = None,
    ) -> AgentOutput:
        agent = self._registry.resolve(task.capability, user_id=run.user_id)
        descriptor = agent.descriptor
        provider = provider or task.provider or descriptor.provider
        if provider != descriptor.provider and not descriptor.supports(provider):
            raise AgentError.permanent_error(f"Agent '{descriptor.name}' cannot call provider '{provider}'")
        agent_input = AgentInput(
            task_id=task.task_id,
            correlation_id=run.correlation_id,
            capability=task.capability,
            user_id=run.user_id,
            payload=task.input,
            upstream=upstream,
            attempt=attempt_number,
            provider=provider,
        )
        async with run.dispatch_slots, self._slots_for(descriptor):
            if provider is not None:
                await self._limiter.acquire(provider, timeout=self._settings.rate_limit_wait_seconds)
            return await self._invoke(run, task, agent, agent_input, provider)

    async def _invoke(
        self,
        run: _WorkflowRun,
        task: Task,
        agent: BaseAgent,
        agent_input: AgentInput,
        provider: str | None,
    ) -> AgentOutput:
        started = time.perf_counter()
        try:
            output = await asyncio.wait_for(agent.invoke(agent_input), timeout=self._settings.call_timeout_seconds)
        except Exception as exc:
            usage = exc.usage if isinstance(exc, AgentError) else None
            self._record_call(run, task, provider, usage, started, success=False)
            raise
        self._record_call(run, task, provider, output.usage, started, success=True)
        return output

    def _record_call(
        self,
        run: _WorkflowRun,
        task: Task,
        provider: str | None,
        usage: TokenUsage | None,
        started: float,
        *,
        success: bool,
    ) -> None:
        if provider is None:
            return
        try:
            record = self._accountant.build_record(
                provider=usage.provider if usage is not None else provider,
                agent_type=task.capability,
                input_tokens=usage.input_tokens if usage is not None else 0,
                output_tokens=usage.output_tokens if usage is not None else 0,
                latency_ms=(time.perf_counter() - started) * 1000.0,
                success=success,
                user_id=run.user_id,
                task_id=task.task_id,
                correlation_id=run.correlation_id,
                model=usage.model if usage is not None else None,
            )
            self._accountant.record(record)
        except (InvalidUsageRecordError, ValidationError) as exc:
            logger.error(
                "usage_record_dropped",
                correlation_id=run.correlation_id,
                task_id=task.task_id,
                provider=provider,
                error=str(exc),
            )

    def _slots_for(self, descriptor: AgentDescriptor) -> asyncio.Semaphore:
        slots = self._agent_slots.get(descriptor.name)
        if slots is None:
            slots = asyncio.Semaphore(descriptor.concurrency_limit)
            self._agent_slots[descriptor.name] = slots
        return slots

    def _assemble(self, run: _WorkflowRun, started_at: datetime) -> WorkflowResult:
        graph = run.graph
        failures = [
            TaskFailure(
                task_id=task.task_id,
                capability=task.capability,
                status=task.status,
                reason=task.error,
                attempts=task.attempts,
                required=task.required,
            )
            for task in graph
            if task.status in (TaskStatus.FAILED, TaskStatus.SKIPPED)
        ]
        if any(failure.required for failure in failures):
            status = WorkflowStatus.FAILED
        elif failures or run.timed_out:
            status = WorkflowStatus.PARTIALLY_FAILED
        else:
            status = WorkflowStatus.COMPLETED
        usage: RunningTotal = self._accountant.aggregate(UsageFilter(correlation_id=run.correlation_id))
        return WorkflowResult(
            correlation_id=run.correlation_id,
            workflow=run.workflow,
            status=status,
            outputs=graph.outputs(),
            failures=failures,
            timed_out=run.timed_out,
            usage=usage,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (AgentError, ProviderError)):
        return exc.transient
    return isinstance(exc, (RateLimitExceededError, asyncio.TimeoutError))


def _describe(exc: BaseException | None) -> str:
    if exc is None:
        return "unknown failure"
    if isinstance(exc, asyncio.TimeoutError):
        return "agent call timed out"
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


__all__ = ["DEADLINE_REASON", "Orchestrator"]
