"""Prometheus metrics definitions."""

from prometheus_client import Counter, Gauge, Histogram

# Event metrics
EVENTS_RECEIVED = Counter(
    "mailflow_events_received_total",
    "Total number of trigger events received",
    ["trigger_type"],
)

EVENTS_PROCESSED = Counter(
    "mailflow_events_processed_total",
    "Total number of trigger events processed",
    ["trigger_type", "status"],
)

# Trigger metrics
TRIGGER_EVALUATIONS = Counter(
    "mailflow_trigger_evaluations_total",
    "Total number of trigger evaluations",
    ["trigger_type", "result"],
)

# Execution metrics
EXECUTIONS_STARTED = Counter(
    "mailflow_executions_started_total",
    "Total executions created",
    ["trigger_type"],
)

EXECUTIONS_FINISHED = Counter(
    "mailflow_executions_finished_total",
    "Total executions reaching a terminal status",
    ["status"],
)

EXECUTIONS_SUSPENDED = Counter(
    "mailflow_executions_suspended_total",
    "Total times an execution suspended until a later tick",
)

STEPS_EXECUTED = Counter(
    "mailflow_steps_executed_total",
    "Total automation steps executed",
    ["action_kind", "success"],
)

CLAIM_CONFLICTS = Counter(
    "mailflow_claim_conflicts_total",
    "Resume claims lost to a concurrent worker",
    ["record"],
)

DUE_RECORDS = Gauge(
    "mailflow_due_records",
    "Records collected by the last tick",
    ["record"],
)

TICK_DURATION = Histogram(
    "mailflow_tick_duration_seconds",
    "Scheduler tick duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Segmentation metrics
SEGMENT_CONDITIONS_DROPPED = Counter(
    "mailflow_segment_conditions_dropped_total",
    "Invalid conditions dropped during compilation",
)

# Delivery metrics
MESSAGES_SENT = Counter(
    "mailflow_messages_sent_total",
    "Messages handed to the delivery collaborator",
    ["source", "status"],
)
