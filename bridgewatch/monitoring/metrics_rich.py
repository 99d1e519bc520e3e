"""
Prometheus metrics for reconciliation observability.

Organized into: lifecycle, polling, bridging.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class ReconMetrics:
    """Metrics for transfer reconciliation."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Lifecycle Metrics ===
        self.transfers_created = Counter(
            'transfers_created_total',
            'Transfers submitted for reconciliation',
            registry=reg
        )
        self.transfers_terminal = Counter(
            'transfers_terminal_total',
            'Transfers reaching a terminal status',
            labelnames=['status', 'phase'],
            registry=reg
        )
        self.transfers_active = Gauge(
            'transfers_active',
            'Transfers currently being reconciled',
            registry=reg
        )

        # === Polling Metrics ===
        self.polls = Counter(
            'polls_total',
            'Poll attempts',
            labelnames=['phase'],
            registry=reg
        )
        self.poll_errors = Counter(
            'poll_errors_total',
            'Transient poll errors (retried next tick)',
            labelnames=['phase'],
            registry=reg
        )

        # === Bridging Metrics ===
        self.bridging_duration = Histogram(
            'bridging_duration_seconds',
            'Source settlement to destination arrival (seconds)',
            buckets=[5, 10, 20, 30, 60, 120, 300, 600, 1200],
            registry=reg
        )

    def record_poll(self, phase: str) -> None:
        self.polls.labels(phase=phase).inc()

    def record_poll_error(self, phase: str) -> None:
        self.poll_errors.labels(phase=phase).inc()

    def record_terminal(self, status: str, phase: str) -> None:
        self.transfers_terminal.labels(status=status, phase=phase).inc()

    def record_arrival(self, bridging_duration_ms: int) -> None:
        self.bridging_duration.observe(bridging_duration_ms / 1000.0)
