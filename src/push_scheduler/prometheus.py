# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the dispatcher.

All metrics use the ``psh_`` prefix (push-scheduler).

Metrics exposed:
    - ``psh_sent_total``: Counter of delivered tasks per tenant.
    - ``psh_errors_total``: Counter of permanently failed tasks per tenant.
    - ``psh_retried_total``: Counter of requeued tasks per tenant.
    - ``psh_post_send_failures_total``: Counter of delivered tasks whose
      state update failed, per tenant.
    - ``psh_dispatch_runs_total``: Counter of dispatch runs.
    - ``psh_last_batch_size``: Gauge of due tasks fetched by the last run.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SchedulerMetrics:
    """Prometheus metrics collector for the dispatcher.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A new one is
                created when omitted, so several instances can coexist.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "psh_sent_total",
            "Total delivered tasks",
            ["tenant_id"],
            registry=self.registry,
        )
        self.errors = Counter(
            "psh_errors_total",
            "Total permanently failed tasks",
            ["tenant_id"],
            registry=self.registry,
        )
        self.retried = Counter(
            "psh_retried_total",
            "Total requeued tasks",
            ["tenant_id"],
            registry=self.registry,
        )
        self.post_send_failures = Counter(
            "psh_post_send_failures_total",
            "Delivered tasks whose state update failed",
            ["tenant_id"],
            registry=self.registry,
        )
        self.dispatch_runs = Counter(
            "psh_dispatch_runs_total",
            "Total dispatch runs",
            registry=self.registry,
        )
        self.last_batch_size = Gauge(
            "psh_last_batch_size",
            "Due tasks fetched by the last dispatch run",
            registry=self.registry,
        )

    def inc_sent(self, tenant_id: str) -> None:
        self.sent.labels(tenant_id=tenant_id).inc()

    def inc_error(self, tenant_id: str) -> None:
        self.errors.labels(tenant_id=tenant_id).inc()

    def inc_retried(self, tenant_id: str) -> None:
        self.retried.labels(tenant_id=tenant_id).inc()

    def inc_post_send_failure(self, tenant_id: str) -> None:
        self.post_send_failures.labels(tenant_id=tenant_id).inc()

    def observe_run(self, batch_size: int) -> None:
        self.dispatch_runs.inc()
        self.last_batch_size.set(batch_size)

    def generate_latest(self) -> bytes:
        """Return the metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
