"""Prometheus metrics, kept in an isolated registry."""

from prometheus_client import CollectorRegistry, Counter

CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests by endpoint", ["path"], registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total errors by endpoint", ["path"], registry=CUSTOM_REGISTRY)
EXCHANGES = Counter(
    "exchanges_total", "Exchanges by terminal outcome", ["outcome"], registry=CUSTOM_REGISTRY
)
TRANSCRIPTION_JOBS = Counter(
    "transcription_jobs_total", "Transcription jobs by terminal state", ["state"], registry=CUSTOM_REGISTRY
)
STREAM_CHUNKS = Counter("stream_chunks_total", "Chunks published to live listeners", registry=CUSTOM_REGISTRY)
