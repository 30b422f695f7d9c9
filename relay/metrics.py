"""
Métricas Prometheus do relay.

Expostas em GET /metrics no mesmo listener do WebSocket.
"""

from typing import Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, REGISTRY, generate_latest

logger = structlog.get_logger(__name__)


class RelayMetrics:
    """Contadores do relay (um registry Prometheus por instância)."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else REGISTRY

        self.active_sessions = Gauge(
            'relay_sessions_active', 'Active client sessions',
            registry=self.registry,
        )
        self.sessions_total = Counter(
            'relay_sessions_total', 'Finished client sessions', ['outcome'],
            registry=self.registry,
        )
        self.client_messages = Counter(
            'relay_client_messages_total', 'Client messages by type', ['type'],
            registry=self.registry,
        )
        self.upstream_connections = Counter(
            'relay_upstream_connections_total', 'Upstream connection attempts', ['result'],
            registry=self.registry,
        )
        self.audio_chunks = Counter(
            'relay_audio_chunks_total', 'Audio chunks relayed', ['direction'],
            registry=self.registry,
        )
        self.audio_bytes = Counter(
            'relay_audio_bytes_total', 'Audio bytes relayed', ['direction'],
            registry=self.registry,
        )

    def session_started(self) -> None:
        self.active_sessions.inc()

    def session_ended(self, outcome: str) -> None:
        self.active_sessions.dec()
        self.sessions_total.labels(outcome=outcome).inc()

    def client_message(self, message_type: str) -> None:
        self.client_messages.labels(type=message_type).inc()

    def upstream_connection(self, result: str) -> None:
        self.upstream_connections.labels(result=result).inc()

    def record_audio(self, direction: str, size: int) -> None:
        """direction: "in" (cliente → upstream) ou "out" (upstream → cliente)."""
        self.audio_chunks.labels(direction=direction).inc()
        self.audio_bytes.labels(direction=direction).inc(size)

    def render(self) -> bytes:
        return generate_latest(self.registry)


_metrics: Optional[RelayMetrics] = None


def get_metrics() -> RelayMetrics:
    """Instância global (registry padrão do prometheus_client)."""
    global _metrics
    if _metrics is None:
        _metrics = RelayMetrics()
    return _metrics
