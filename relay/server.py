"""
Relay WebSocket Server - cliente ↔ ElevenLabs Conversational AI.

Um único listener atende:
- ws://host:port/           conexões WebSocket de clientes (qualquer path)
- GET /  ou  GET /health    status JSON (requisições HTTP sem upgrade)
- GET /metrics              métricas Prometheus
"""

import asyncio
import json
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Optional

import structlog
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosedError
from websockets.http11 import Request, Response

from .config import RelayConfig
from .lifecycle import SessionLifecycle
from .logging_config import SERVICE_NAME, bind_session, clear_session
from .metrics import RelayMetrics, get_metrics
from .protocol import ServerMessageType, client_event
from .router import MessageRouter
from .session_registry import SessionRegistry
from .upstream import UpstreamConnector

logger = structlog.get_logger(__name__)

HEALTH_PATHS = ("/", "/health")
METRICS_PATH = "/metrics"


class RelayServer:
    """
    Servidor do relay.

    Os colaboradores podem ser injetados (testes); por padrão são criados
    a partir da configuração.
    """

    def __init__(
        self,
        config: RelayConfig,
        registry: Optional[SessionRegistry] = None,
        connector: Optional[UpstreamConnector] = None,
        lifecycle: Optional[SessionLifecycle] = None,
        metrics: Optional[RelayMetrics] = None,
    ):
        self.config = config
        self.metrics = metrics if metrics is not None else get_metrics()
        self.registry = registry if registry is not None else SessionRegistry()
        self.connector = connector if connector is not None else UpstreamConnector(
            api_key=config.elevenlabs_api_key,
            base_url=config.elevenlabs_ws_url,
            ping_interval=config.upstream_ping_interval,
            metrics=self.metrics,
        )
        self.lifecycle = lifecycle if lifecycle is not None else SessionLifecycle(
            self.registry,
            self.connector,
            sweep_interval=config.sweep_interval_seconds,
            idle_timeout=config.idle_timeout_seconds,
            metrics=self.metrics,
        )
        self.router = MessageRouter(self.registry, self.connector, self.lifecycle, metrics=self.metrics)

        self._server: Optional[Server] = None

    async def start(self) -> None:
        """Inicia o servidor WebSocket e o idle sweep."""
        if not self.config.elevenlabs_api_key:
            logger.warning("elevenlabs_api_key_missing", **self.config.api_key_summary())
        else:
            logger.info("elevenlabs_api_key_loaded", **self.config.api_key_summary())

        self._server = await serve(
            self._handle_connection,
            self.config.host,
            self.config.port,
            process_request=self._process_request,
            ping_interval=20,
            ping_timeout=20,
            max_size=None,
        )
        await self.lifecycle.start()

        logger.info("relay_server_started", url=f"ws://{self.config.host}:{self.config.port}")

    async def stop(self) -> None:
        """Para o servidor encerrando todas as sessões."""
        await self.lifecycle.stop()
        closed = await self.lifecycle.teardown_all("server_shutdown")

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("relay_server_stopped", sessions_closed=closed)

    async def serve_forever(self) -> None:
        await self.start()

        try:
            await asyncio.Future()  # Run forever
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    # ========================================
    # HTTP
    # ========================================

    def health_payload(self) -> dict:
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "connections": len(self.registry),
        }

    def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        """Responde requisições HTTP simples; upgrades seguem para o handshake."""
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None

        path = request.path.split("?", 1)[0]

        if path in HEALTH_PATHS:
            return self._respond(connection, HTTPStatus.OK, json.dumps(self.health_payload()), "application/json")

        if path == METRICS_PATH:
            return self._respond(
                connection,
                HTTPStatus.OK,
                self.metrics.render().decode("utf-8"),
                "text/plain; version=0.0.4; charset=utf-8",
            )

        return self._respond(connection, HTTPStatus.NOT_FOUND, json.dumps({"error": "Not found"}), "application/json")

    @staticmethod
    def _respond(connection: ServerConnection, status: HTTPStatus, body: str, content_type: str) -> Response:
        response = connection.respond(status, body)
        del response.headers["Content-Type"]
        response.headers["Content-Type"] = content_type
        return response

    # ========================================
    # WEBSOCKET
    # ========================================

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Uma sessão por conexão; mensagens processadas em ordem de chegada."""
        session = self.registry.create(websocket)
        self.metrics.session_started()
        bind_session(session.session_id)

        logger.info("client_connected", remote_address=str(websocket.remote_address))

        outcome = "client_disconnected"
        try:
            await session.send(client_event(
                ServerMessageType.CONNECTED,
                clientId=session.session_id,
                message="Connected to ElevenLabs proxy server",
            ))

            async for message in websocket:
                await self.router.dispatch(session.session_id, message)

        except ConnectionClosedError as e:
            outcome = "client_error"
            logger.warning("client_connection_error", code=e.rcvd.code if e.rcvd else None, error=str(e))

        except Exception as e:
            outcome = "client_error"
            logger.exception("session_error", error=str(e))

        finally:
            if await self.lifecycle.teardown(session.session_id, outcome):
                logger.info("client_disconnected", reason=outcome)
            clear_session()


async def run_server(config: Optional[RelayConfig] = None) -> None:
    """Função helper para rodar o servidor."""
    server = RelayServer(config or RelayConfig.from_env())
    await server.serve_forever()
