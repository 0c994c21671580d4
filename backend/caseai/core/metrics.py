"""
Prometheus metrics collection module.

Metrics Categories:
- RED Metrics for the HTTP surface: Rate, Errors, Duration
- LLM Metrics: requests by outcome, latency, retries, fallbacks, tokens, cost
- Orchestration Metrics: generated artifacts by operation
- Evaluation Metrics: judge verdicts, parse failures, dataset examples

All metrics follow Prometheus naming conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for duration
"""
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

from caseai.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# RED METRICS - Rate, Errors, Duration
# ============================================================================

http_requests_total = Counter(
    "caseai_http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "caseai_http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "caseai_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry,
)

# ============================================================================
# LLM METRICS
# ============================================================================

llm_requests_total = Counter(
    "caseai_llm_requests_total",
    "Total number of model invocations by final outcome",
    ["operation", "model", "outcome"],
    registry=registry,
)

llm_request_duration_seconds = Histogram(
    "caseai_llm_request_duration_seconds",
    "Wall-clock duration of a model invocation including retries",
    ["operation", "model"],
    buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0],
    registry=registry,
)

llm_retries_total = Counter(
    "caseai_llm_retries_total",
    "Total number of retried model attempts",
    ["model", "reason"],
    registry=registry,
)

llm_fallbacks_total = Counter(
    "caseai_llm_fallbacks_total",
    "Total number of fallback-model attempts",
    ["model"],
    registry=registry,
)

llm_tokens_total = Counter(
    "caseai_llm_tokens_total",
    "Total tokens consumed",
    ["model", "direction"],
    registry=registry,
)

llm_cost_usd_total = Counter(
    "caseai_llm_cost_usd_total",
    "Total estimated model cost in USD",
    ["model"],
    registry=registry,
)

# ============================================================================
# ORCHESTRATION & EVALUATION METRICS
# ============================================================================

ai_artifacts_generated_total = Counter(
    "caseai_ai_artifacts_generated_total",
    "AI artifacts persisted by operation",
    ["operation"],
    registry=registry,
)

ai_generation_failures_total = Counter(
    "caseai_ai_generation_failures_total",
    "Orchestration operations that failed",
    ["operation", "reason"],
    registry=registry,
)

judge_verdicts_total = Counter(
    "caseai_judge_verdicts_total",
    "Judge verdicts by operation",
    ["operation", "verdict"],
    registry=registry,
)

judge_parse_failures_total = Counter(
    "caseai_judge_parse_failures_total",
    "Judge responses that did not decode into the rubric shape",
    ["operation"],
    registry=registry,
)

dataset_examples_added_total = Counter(
    "caseai_dataset_examples_added_total",
    "Examples appended to evaluation datasets",
    ["operation"],
    registry=registry,
)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metrics.

    Replaces identifier segments with placeholders to keep label cardinality low.

    Examples:
        /api/ai/cases/case-1/summary -> /api/ai/cases/{case_id}/summary
        /api/evaluation/datasets/ds-1/examples -> /api/evaluation/datasets/{dataset_id}/examples
        /health?x=1 -> /health
    """
    if "?" in path:
        path = path.split("?")[0]

    parts = path.split("/")
    for index, part in enumerate(parts[:-1]):
        if part == "cases" and index + 1 < len(parts) and parts[index + 1]:
            parts[index + 1] = "{case_id}"
        elif part == "datasets" and index + 1 < len(parts) and parts[index + 1]:
            parts[index + 1] = "{dataset_id}"
        elif part == "steps" and index + 1 < len(parts) and parts[index + 1]:
            parts[index + 1] = "{step}"
    return "/".join(parts)


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """Record HTTP request metrics (RED metrics)."""
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_llm_request(operation: str, model: str, outcome: str, duration_seconds: float) -> None:
    llm_requests_total.labels(operation=operation, model=model, outcome=outcome).inc()
    llm_request_duration_seconds.labels(operation=operation, model=model).observe(duration_seconds)


def record_llm_retry(model: str, reason: str) -> None:
    llm_retries_total.labels(model=model, reason=reason).inc()


def record_llm_fallback(model: str) -> None:
    llm_fallbacks_total.labels(model=model).inc()


def record_llm_tokens_and_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    cost_usd: float,
) -> None:
    """Record token usage and estimated cost for one successful call."""
    if input_tokens:
        llm_tokens_total.labels(model=model, direction="input").inc(input_tokens)
    if output_tokens:
        llm_tokens_total.labels(model=model, direction="output").inc(output_tokens)
    if cost_usd > 0:
        llm_cost_usd_total.labels(model=model).inc(cost_usd)


def record_artifact_generated(operation: str) -> None:
    ai_artifacts_generated_total.labels(operation=operation).inc()


def record_generation_failure(operation: str, reason: str) -> None:
    ai_generation_failures_total.labels(operation=operation, reason=reason).inc()


def record_judge_verdict(operation: str, verdict: str) -> None:
    judge_verdicts_total.labels(operation=operation, verdict=verdict).inc()


def record_judge_parse_failure(operation: str) -> None:
    judge_parse_failures_total.labels(operation=operation).inc()


def record_dataset_example_added(operation: str) -> None:
    dataset_examples_added_total.labels(operation=operation).inc()


def get_metrics() -> bytes:
    """Prometheus metrics in text exposition format."""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
