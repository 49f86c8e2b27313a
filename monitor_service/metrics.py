"""Métricas Prometheus del monitor."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

MQTT_MESSAGES_RECEIVED = Counter(
    'monitor_mqtt_messages_received_total',
    'Total MQTT messages received',
    ['kind']  # data, register, presence, presence_response, unknown
)
MQTT_MESSAGES_MALFORMED = Counter(
    'monitor_mqtt_messages_malformed_total',
    'MQTT messages dropped because the payload was not valid JSON',
)
MQTT_CONNECTED = Gauge(
    'monitor_mqtt_connected',
    'MQTT broker connection status (1=connected)',
)
COMMANDS_SENT = Counter(
    'monitor_commands_total',
    'Device commands by outcome',
    ['command', 'outcome']  # sent, queued, failed
)

INGEST_JOBS = Counter(
    'monitor_ingest_jobs_total',
    'Sensor ingestion jobs by outcome',
    ['outcome']  # processed, rejected, retried, dead_lettered, inline
)
INGEST_QUEUE_DEPTH = Gauge(
    'monitor_ingest_queue_depth',
    'Pending sensor ingestion jobs',
)
INGEST_LATENCY = Histogram(
    'monitor_ingest_processing_seconds',
    'Sensor ingestion processing latency',
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
)

ALERTS_RAISED = Counter(
    'monitor_alerts_total',
    'Alerts by parameter and action',
    ['parameter', 'action']  # created, updated
)

PRESENCE_POLLS = Counter(
    'monitor_presence_polls_total',
    'Presence poll cycles by outcome',
    ['outcome']  # success, failure, skipped
)
PRESENCE_ONLINE = Gauge(
    'monitor_presence_online_devices',
    'Registered devices that answered the last presence query',
)
PRESENCE_CONSECUTIVE_FAILURES = Gauge(
    'monitor_presence_consecutive_failures',
    'Consecutive failed presence poll cycles',
)
