"""Application metrics using the Prometheus client library.

All metrics are defined here so there is one inventory of what the
service measures; the modules that own a behaviour import the metric
and increment/observe it at the point of action.

HTTP metrics are the usual RED trio (rate, errors, duration) fed by
MetricsMiddleware.  The rest describe the entitlement core itself:

  authz_decisions_total      every authorize() outcome, labelled with the
                             deny reason.  A spike of "unknown_entity" after a
                             deploy usually means a policy path changed.
  policy_rules               size of the in-memory rule index (gauge),
                             updated on every write and reload.
  usage_limit_rejections     quota checks that said no, by metric.
  payment_provider_calls     provider round-trips by operation/outcome;
                             "timeout" outcomes leave work for the
                             reconciliation queue.
  webhook_events_total       provider events consumed, including replays
                             that were skipped as duplicates.
  task_queue_depth           backlog per background queue.

Label values are always drawn from small closed sets (never user ids or
paths with ids in them) to keep series cardinality bounded.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Entitlement core metrics
# ---------------------------------------------------------------------------

AUTHZ_DECISIONS = Counter(
    "authz_decisions_total",
    "Authorization decisions by outcome and reason",
    ["outcome", "reason"],  # outcome: allow|deny
)

POLICY_RULES = Gauge(
    "policy_rules",
    "Rules currently held in the in-memory policy index",
    ["kind"],  # "policy" or "grouping"
)

USAGE_LIMIT_REJECTIONS = Counter(
    "usage_limit_rejections_total",
    "Usage checks or increments rejected because a cap was reached",
    ["metric"],
)

PAYMENT_PROVIDER_CALLS = Counter(
    "payment_provider_calls_total",
    "Payment provider calls by operation and outcome",
    ["operation", "outcome"],  # outcome: ok|error|not_found|timeout
)

WEBHOOK_EVENTS = Counter(
    "webhook_events_total",
    "Payment provider events consumed",
    ["event_type", "outcome"],  # outcome: processed|unmatched|duplicate|ignored|error
)

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],  # "terminal_provisioning", "subscription_reconciliation"
)
