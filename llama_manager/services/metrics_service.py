"""
Prometheus Metrics Service

Collects proxy and engine lifecycle metrics with prometheus-client and
exposes them at /metrics.

Every MetricsService owns its own CollectorRegistry, so several application
instances (tests, for example) never collide on metric names.

Metrics:
    - llama_manager_requests_total{endpoint, model, status}
    - llama_manager_request_duration_seconds{endpoint, model}
    - llama_manager_prompt_tokens_total{model}
    - llama_manager_completion_tokens_total{model}
    - llama_manager_tokens_per_second{model}
    - llama_manager_engine_restarts_total{outcome}
    - llama_manager_proxy_recoveries_total{kind}
    - llama_manager_connection_retries_total{endpoint}
    - llama_manager_process_memory_bytes / llama_manager_process_cpu_percent
"""

import logging
from typing import Optional

import psutil
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    CONTENT_TYPE_LATEST,
    generate_latest,
)


logger = logging.getLogger(__name__)


LATENCY_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0)


class MetricsService:
    """
    Prometheus metrics for the control plane.

    Attributes:
        registry: Registry all metrics of this instance are registered in
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._process = psutil.Process()

        self.requests = Counter(
            "llama_manager_requests_total",
            "Total proxied inference requests",
            ["endpoint", "model", "status"],
            registry=self.registry
        )
        self.latency = Histogram(
            "llama_manager_request_duration_seconds",
            "Proxied request duration in seconds",
            ["endpoint", "model"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry
        )
        self.prompt_tokens = Counter(
            "llama_manager_prompt_tokens_total",
            "Total prompt tokens processed",
            ["model"],
            registry=self.registry
        )
        self.completion_tokens = Counter(
            "llama_manager_completion_tokens_total",
            "Total tokens generated",
            ["model"],
            registry=self.registry
        )
        self.tokens_per_second = Gauge(
            "llama_manager_tokens_per_second",
            "Generation throughput of the last request",
            ["model"],
            registry=self.registry
        )
        self.restarts = Counter(
            "llama_manager_engine_restarts_total",
            "Engine restart attempts by outcome",
            ["outcome"],
            registry=self.registry
        )
        self.recoveries = Counter(
            "llama_manager_proxy_recoveries_total",
            "Proxy recovery attempts by kind (eviction, sanitize)",
            ["kind"],
            registry=self.registry
        )
        self.connection_retries = Counter(
            "llama_manager_connection_retries_total",
            "Connection-level retries to the engine",
            ["endpoint"],
            registry=self.registry
        )
        self.process_memory = Gauge(
            "llama_manager_process_memory_bytes",
            "Resident memory of the manager process",
            registry=self.registry
        )
        self.process_cpu = Gauge(
            "llama_manager_process_cpu_percent",
            "CPU usage of the manager process",
            registry=self.registry
        )

    def record_request(
        self,
        endpoint: str,
        model: str,
        status: int,
        duration_sec: float,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        tokens_per_second: float = 0.0
    ) -> None:
        model = model or "unknown"
        self.requests.labels(endpoint=endpoint, model=model, status=str(status)).inc()
        self.latency.labels(endpoint=endpoint, model=model).observe(max(duration_sec, 0.0))
        if prompt_tokens:
            self.prompt_tokens.labels(model=model).inc(prompt_tokens)
        if completion_tokens:
            self.completion_tokens.labels(model=model).inc(completion_tokens)
            self.tokens_per_second.labels(model=model).set(tokens_per_second)

    def record_restart(self, outcome: str) -> None:
        self.restarts.labels(outcome=outcome).inc()

    def record_recovery(self, kind: str) -> None:
        self.recoveries.labels(kind=kind).inc()

    def record_connection_retry(self, endpoint: str) -> None:
        self.connection_retries.labels(endpoint=endpoint).inc()

    def _update_process_metrics(self) -> None:
        try:
            self.process_memory.set(self._process.memory_info().rss)
            self.process_cpu.set(self._process.cpu_percent(interval=None))
        except psutil.Error as e:
            logger.debug(f"Failed to read process metrics: {e}")

    def get_prometheus_metrics(self) -> bytes:
        """Render all metrics in Prometheus text format."""
        self._update_process_metrics()
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST
