"""
Shared Prometheus metrics registry.

The engine and the definitions API import and increment these.
Use prometheus_client.generate_latest() in /metrics handlers.
"""

from prometheus_client import Counter, Gauge, Histogram

# Ingestion
ingest_samples_total = Counter(
    "dtlab_ingest_samples_total",
    "Total normalized samples handed to the engine",
    ["kind", "result"],  # accepted | rejected
)

# Evaluation
definitions_evaluated_total = Counter(
    "dtlab_definitions_evaluated_total",
    "Total definition evaluations",
    ["family"],  # alert | rule
)

alert_events_fired_total = Counter(
    "dtlab_alert_events_fired_total",
    "Total alert events fired",
    ["severity"],
)

rule_fires_total = Counter(
    "dtlab_rule_fires_total",
    "Total rule fires with at least one applied action",
)

actuator_commands_total = Counter(
    "dtlab_actuator_commands_total",
    "Actuator commands by outcome",
    ["action_type", "result"],  # published | skipped | failed
)

side_effect_failures_total = Counter(
    "dtlab_side_effect_failures_total",
    "Side effects that failed or timed out",
    ["operation", "reason"],  # error | timeout
)

tick_errors_total = Counter(
    "dtlab_tick_errors_total",
    "Tick loop iterations that raised",
    ["scheduler"],
)

tick_duration_seconds = Histogram(
    "dtlab_tick_duration_seconds",
    "Duration of the synchronous decide phase of a tick",
    ["scheduler"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

# Badge
open_alert_events = Gauge(
    "dtlab_open_alert_events",
    "Current count of unacknowledged alert events",
)

# HTTP
http_requests_total = Counter(
    "dtlab_http_requests_total",
    "Total definitions API requests",
    ["method", "path_template", "status_code"],
)

http_request_duration_seconds = Histogram(
    "dtlab_http_request_duration_seconds",
    "Definitions API request latency",
    ["method", "path_template", "status_code"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)
