"""Prometheus metrics for the API and the processing pipeline.

Exposes key metrics for monitoring:
- Request counts by endpoint and status
- Request duration histograms
- Job admissions by result
- Pipeline stage durations and outcomes
- Invoice end states

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Admission metrics
jobs_enqueued_total = Counter(
    "jobs_enqueued_total",
    "Processing job admissions",
    ["result"],  # queued, conflict, quota_exceeded, rate_limited, invalid
)

# Pipeline metrics
pipeline_stage_duration_seconds = Histogram(
    "pipeline_stage_duration_seconds",
    "Pipeline stage duration in seconds",
    ["step"],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

pipeline_stage_total = Counter(
    "pipeline_stage_total",
    "Pipeline stage executions",
    ["step", "outcome"],  # completed, failed
)

external_call_failures_total = Counter(
    "external_call_failures_total",
    "Failed calls to OCR, AI, registry, storage or gateway",
    ["provider"],
)

invoice_outcomes_total = Counter(
    "invoice_outcomes_total",
    "Invoice status at the end of a processing job",
    ["status"],
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
