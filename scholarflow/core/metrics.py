from __future__ import annotations

from decimal import Decimal

from prometheus_client import Counter, Gauge, Histogram

PROVIDER_CALLS_TOTAL = Counter(
    "scholarflow_provider_calls_total",
    "Provider calls recorded by the usage accountant",
    labelnames=("provider", "agent", "outcome"),
)

PROVIDER_TOKENS_TOTAL = Counter(
    "scholarflow_provider_tokens_total",
    "Tokens consumed per provider, split by direction",
    labelnames=("provider", "direction"),
)

PROVIDER_COST_USD_TOTAL = Counter(
    "scholarflow_provider_cost_usd_total",
    "Accumulated provider spend in USD",
    labelnames=("provider",),
)

PROVIDER_CALL_LATENCY_SECONDS = Histogram(
    "scholarflow_provider_call_latency_seconds",
    "Latency of agent invocations that reach a provider",
    labelnames=("provider",),
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

USAGE_RECORDS_REJECTED_TOTAL = Counter(
    "scholarflow_usage_records_rejected_total",
    "Malformed usage records dropped before aggregation",
    labelnames=("provider",),
)

RATE_LIMIT_WAIT_SECONDS = Histogram(
    "scholarflow_rate_limit_wait_seconds",
    "Time spent waiting for a provider permit",
    labelnames=("provider",),
    buckets=(0.0, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
)

RATE_LIMIT_REJECTIONS_TOTAL = Counter(
    "scholarflow_rate_limit_rejections_total",
    "Permit requests rejected by the rate limiter",
    labelnames=("provider", "reason"),
)

CACHE_HITS_TOTAL = Counter(
    "scholarflow_cache_hits_total",
    "Discovery cache hits",
    labelnames=("cache",),
)

CACHE_MISSES_TOTAL = Counter(
    "scholarflow_cache_misses_total",
    "Discovery cache misses that triggered a fetch",
    labelnames=("cache",),
)

CACHE_COALESCED_TOTAL = Counter(
    "scholarflow_cache_coalesced_total",
    "Callers that awaited an in-flight fetch instead of issuing their own",
    labelnames=("cache",),
)

TASK_EVENTS_TOTAL = Counter(
    "scholarflow_task_events_total",
    "Task lifecycle events grouped by capability",
    labelnames=("capability", "event"),
)

WORKFLOW_RUNS_TOTAL = Counter(
    "scholarflow_workflow_runs_total",
    "Workflow executions by terminal status",
    labelnames=("workflow", "status"),
)

WORKFLOW_LATENCY_SECONDS = Histogram(
    "scholarflow_workflow_latency_seconds",
    "End-to-end workflow runtime",
    labelnames=("workflow",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, 900, float("inf")),
)

WORKFLOWS_ACTIVE_GAUGE = Gauge(
    "scholarflow_workflows_active",
    "Workflows currently executing",
    labelnames=("workflow",),
)


def record_provider_call(
    *,
    provider: str,
    agent: str,
    success: bool,
    input_tokens: int,
    output_tokens: int,
    cost: Decimal,
) -> None:
    PROVIDER_CALLS_TOTAL.labels(provider=provider, agent=agent, outcome="success" if success else "failure").inc()
    if input_tokens:
        PROVIDER_TOKENS_TOTAL.labels(provider=provider, direction="input").inc(input_tokens)
    if output_tokens:
        PROVIDER_TOKENS_TOTAL.labels(provider=provider, direction="output").inc(output_tokens)
    if cost > 0:
        PROVIDER_COST_USD_TOTAL.labels(provider=provider).inc(float(cost))


def observe_provider_latency(*, provider: str, latency: float) -> None:
    PROVIDER_CALL_LATENCY_SECONDS.labels(provider=provider).observe(max(0.0, latency))


def increment_rejected_usage_record(*, provider: str) -> None:
    USAGE_RECORDS_REJECTED_TOTAL.labels(provider=provider).inc()


def observe_rate_limit_wait(*, provider: str, seconds: float) -> None:
    RATE_LIMIT_WAIT_SECONDS.labels(provider=provider).observe(max(0.0, seconds))


def increment_rate_limit_rejection(*, provider: str, reason: str) -> None:
    RATE_LIMIT_REJECTIONS_TOTAL.labels(provider=provider, reason=reason).inc()


def increment_cache_hit(*, cache: str) -> None:
    CACHE_HITS_TOTAL.labels(cache=cache).inc()


def increment_cache_miss(*, cache: str) -> None:
    CACHE_MISSES_TOTAL.labels(cache=cache).inc()


def increment_cache_coalesced(*, cache: str) -> None:
    CACHE_COALESCED_TOTAL.labels(cache=cache).inc()


def increment_task_event(*, capability: str, event: str) -> None:
    TASK_EVENTS_TOTAL.labels(capability=capability, event=event).inc()


def mark_workflow_started(*, workflow: str) -> None:
    WORKFLOWS_ACTIVE_GAUGE.labels(workflow=workflow).inc()


def mark_workflow_completed(*, workflow: str, status: str, latency: float) -> None:
    WORKFLOWS_ACTIVE_GAUGE.labels(workflow=workflow).dec()
    WORKFLOW_RUNS_TOTAL.labels(workflow=workflow, status=status).inc()
    WORKFLOW_LATENCY_SECONDS.labels(workflow=workflow).observe(max(0.0, latency))
