"""
Lifecycle Manager - teardown de sessões e varredura de sessões ociosas.

Toda remoção de sessão passa por ``teardown``: fim de conversa, cliente
desconectado, sessão ociosa ou shutdown do servidor.

A ociosidade considera apenas mensagens do cliente (last_activity);
tráfego do upstream não mantém a sessão viva.
"""

import asyncio
import time
from typing import List, Optional

import structlog

from .metrics import RelayMetrics, get_metrics
from .session_registry import SessionRegistry
from .upstream import UpstreamConnector

logger = structlog.get_logger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0
DEFAULT_IDLE_TIMEOUT = 300.0


class SessionLifecycle:
    """
    Encerramento de sessões + idle sweep em background.

    Args:
        registry: registro de sessões
        connector: upstream connector (para fechar o socket upstream)
        sweep_interval: intervalo entre varreduras (segundos)
        idle_timeout: inatividade máxima do cliente (segundos)
        metrics: contadores Prometheus
    """

    def __init__(
        self,
        registry: SessionRegistry,
        connector: UpstreamConnector,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        metrics: Optional[RelayMetrics] = None,
    ):
        self.registry = registry
        self.connector = connector
        self.sweep_interval = sweep_interval
        self.idle_timeout = idle_timeout
        self.metrics = metrics or get_metrics()

        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ========================================
    # TEARDOWN
    # ========================================

    async def teardown(
        self,
        session_id: str,
        reason: str,
        close_client: bool = True,
        close_code: int = 1000,
    ) -> bool:
        """
        Remove a sessão do registro e libera seus sockets.

        A remoção acontece antes de qualquer await, então chamadas
        concorrentes para o mesmo ID encerram a sessão uma única vez.

        Returns:
            True se a sessão existia
        """
        session = self.registry.remove(session_id)
        if session is None:
            return False

        session.closed = True

        await self.connector.shutdown(session)

        if close_client and session.client_open:
            await session.client.close(close_code, reason)

        self.metrics.session_ended(reason)
        logger.info(
            "session_closed",
            session_id=session_id,
            reason=reason,
            duration_seconds=round(time.time() - session.created_at, 3),
            buffered_audio_frames=len(session.recent_audio),
        )
        return True

    async def teardown_all(self, reason: str) -> int:
        count = 0
        for session in self.registry.all():
            if await self.teardown(session.session_id, reason):
                count += 1
        return count

    # ========================================
    # IDLE SWEEP
    # ========================================

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        """
        Encerra sessões cujo cliente está inativo há mais de idle_timeout.

        O cliente não é notificado: presume-se que já não está lá.

        Returns:
            IDs das sessões removidas
        """
        now = time.time() if now is None else now
        removed: List[str] = []

        for session in self.registry.all():
            idle = session.idle_for(now)
            if idle <= self.idle_timeout:
                continue

            logger.info(
                "session_idle_timeout",
                session_id=session.session_id,
                idle_seconds=round(idle, 1),
                idle_timeout=self.idle_timeout,
            )
            if await self.teardown(session.session_id, "idle_timeout"):
                removed.append(session.session_id)

        return removed

    async def start(self) -> None:
        """Inicia a varredura periódica em background."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="idle-sweep")

        logger.info(
            "idle_sweep_started",
            sweep_interval=self.sweep_interval,
            idle_timeout=self.idle_timeout,
        )

    async def stop(self) -> None:
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("idle_sweep_stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                removed = await self.sweep()
                if removed:
                    logger.info("idle_sweep_completed", removed=len(removed), active=len(self.registry))
            except Exception as e:
                logger.error("idle_sweep_error", error=str(e), exc_info=True)
