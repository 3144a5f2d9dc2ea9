"""Prometheus metrics shared across the audit pipeline."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

EVENTS_COMMITTED = Counter(
    "auditchain_events_committed_total",
    "Audit events durably committed to the chain",
    ["event_type"],
)
CHAIN_CONTENTION = Counter(
    "auditchain_chain_contention_total",
    "Append attempts that lost the race for the chain tail",
)
DOWNSTREAM_DEGRADED = Counter(
    "auditchain_downstream_degraded_total",
    "Cache or streaming failures swallowed at the boundary",
    ["component", "operation"],
)
CACHE_REQUESTS = Counter(
    "auditchain_cache_requests_total",
    "Cache lookups by kind and outcome",
    ["kind", "result"],
)
STREAM_EMITS = Counter(
    "auditchain_stream_emits_total",
    "Streaming emit outcomes",
    ["result"],
)
EVENTS_ANONYMIZED = Counter(
    "auditchain_events_anonymized_total",
    "Events whose personal data was scrubbed",
)
EVENTS_EXPIRED = Counter(
    "auditchain_events_expired_total",
    "Events moved to EXPIRED by retention sweeps",
)
SUBMIT_DURATION = Histogram(
    "auditchain_submit_duration_seconds",
    "Latency of the ingestion critical path (validate, chain, persist)",
)
