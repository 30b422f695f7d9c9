"""
Upstream Connector - conexão com o ElevenLabs Conversational AI.

Cada sessão tem no máximo um socket upstream. O handshake e o loop de
recebimento rodam numa task própria; ``open`` não aguarda o handshake e o
cliente é notificado de forma assíncrona (elevenlabs_connected,
elevenlabs_message, audio_chunk, elevenlabs_disconnected, error).

Não há reconexão nem retry: um erro é reportado ao cliente e a sessão fica
desconectada até um novo init_conversation.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

import structlog
from websockets.asyncio.client import connect
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    InvalidURI,
    WebSocketException,
)

from .metrics import RelayMetrics, get_metrics
from .protocol import (
    API_KEY_HEADER,
    CONV_API_URL,
    DEFAULT_VOICE_SETTINGS,
    FrameKind,
    ServerMessageType,
    audio_envelope,
    build_upstream_url,
    classify_upstream_frame,
    client_event,
    decode_client_audio,
    encode_audio,
    error_event,
    text_envelope,
)
from .session import RelaySession

logger = structlog.get_logger(__name__)

NOT_CONNECTED = "Not connected to ElevenLabs"
SEND_TEXT_FAILED = "Failed to send text"
SEND_AUDIO_FAILED = "Failed to send audio"
CONNECT_FAILED = "Failed to connect to ElevenLabs"
CONNECTION_ERROR = "ElevenLabs connection error"


@dataclass(frozen=True)
class SendResult:
    """Resultado de um envio para o upstream (consumido pelo router)."""

    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "SendResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> "SendResult":
        return cls(ok=False, error=error)


class UpstreamConnector:
    """
    Gerencia o socket upstream de cada sessão.

    Args:
        api_key: credencial enviada no header xi-api-key
        base_url: endpoint do Conversational AI
        connect_fn: factory de conexão (websockets.asyncio.client.connect)
        ping_interval: keepalive do websockets (segundos)
        metrics: contadores Prometheus
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = CONV_API_URL,
        connect_fn: Callable[..., Any] = connect,
        ping_interval: Optional[float] = 20,
        metrics: Optional[RelayMetrics] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self._connect = connect_fn
        self.ping_interval = ping_interval
        self.metrics = metrics or get_metrics()

    @staticmethod
    def is_connected(session: RelaySession) -> bool:
        return session.upstream is not None and session.connected

    # ========================================
    # ABERTURA
    # ========================================

    async def open(
        self,
        session: RelaySession,
        agent_id: str,
        voice_settings: Optional[Dict[str, Any]] = None,
    ) -> Optional[asyncio.Task]:
        """
        Inicia a conexão upstream sem aguardar o handshake.

        Um upstream anterior da mesma sessão é encerrado antes (handshake
        pendente é cancelado; socket aberto é fechado), então upstream_task
        sempre pertence ao socket atual.

        Returns:
            Task do handshake + loop de recebimento, ou None se a sessão
            foi encerrada enquanto o upstream anterior fechava
        """
        previous = session.upstream_task
        replaces_previous = previous is not None and not previous.done()
        if replaces_previous:
            await self._stop(session, previous)
            if session.closed:
                return None

        session.agent_id = agent_id
        session.voice_settings = dict(voice_settings or DEFAULT_VOICE_SETTINGS)

        logger.info(
            "upstream_opening",
            session_id=session.session_id,
            agent_id=agent_id,
            voice_settings=session.voice_settings,
            replaces_previous=replaces_previous,
        )

        task = asyncio.create_task(
            self._run(session, agent_id),
            name=f"upstream-{session.session_id}",
        )
        session.upstream_task = task
        return task

    async def _run(self, session: RelaySession, agent_id: str) -> None:
        """Handshake + loop de recebimento de uma conexão upstream."""
        try:
            url = build_upstream_url(agent_id, self.base_url)
            ws = await self._connect(
                url,
                additional_headers={API_KEY_HEADER: self.api_key or ""},
                max_size=None,
                ping_interval=self.ping_interval,
                open_timeout=None,
            )
        except InvalidURI as e:
            logger.error("upstream_invalid_target", session_id=session.session_id, error=str(e))
            self.metrics.upstream_connection("failed")
            await session.send(error_event(CONNECT_FAILED))
            return
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error(
                "upstream_handshake_failed",
                session_id=session.session_id,
                agent_id=agent_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            self.metrics.upstream_connection("failed")
            await session.send(error_event(CONNECTION_ERROR))
            await self._notify_disconnected(session)
            return
        except Exception as e:
            logger.exception("upstream_handshake_error", session_id=session.session_id, error=str(e))
            self.metrics.upstream_connection("failed")
            await session.send(error_event(CONNECTION_ERROR))
            await self._notify_disconnected(session)
            return

        session.upstream = ws
        session.connected = True
        self.metrics.upstream_connection("connected")

        logger.info("upstream_connected", session_id=session.session_id, agent_id=agent_id)
        await session.send(client_event(
            ServerMessageType.ELEVENLABS_CONNECTED,
            message="Connected to ElevenLabs",
        ))

        try:
            async for frame in ws:
                await self._relay_frame(session, frame)
        except ConnectionClosedError as e:
            logger.warning(
                "upstream_closed_abnormally",
                session_id=session.session_id,
                code=e.rcvd.code if e.rcvd else None,
            )
            await session.send(error_event(CONNECTION_ERROR))
        except Exception as e:
            logger.exception("upstream_receive_error", session_id=session.session_id, error=str(e))
            await session.send(error_event(CONNECTION_ERROR))
        finally:
            session.connected = False

        await self._notify_disconnected(session)

    async def _notify_disconnected(self, session: RelaySession) -> None:
        logger.info("upstream_disconnected", session_id=session.session_id)
        await session.send(client_event(
            ServerMessageType.ELEVENLABS_DISCONNECTED,
            message="ElevenLabs connection closed",
        ))

    async def _relay_frame(self, session: RelaySession, frame: Union[str, bytes]) -> None:
        parsed = classify_upstream_frame(frame)

        if parsed.kind is FrameKind.CONTROL:
            await session.send(client_event(ServerMessageType.ELEVENLABS_MESSAGE, data=parsed.data))
            return

        session.push_audio(parsed.audio)
        self.metrics.record_audio("out", len(parsed.audio))
        await session.send(client_event(ServerMessageType.AUDIO_CHUNK, audio=encode_audio(parsed.audio)))

    # ========================================
    # ENVIO
    # ========================================

    async def send_text(self, session: RelaySession, text: Any) -> SendResult:
        """Envia texto do usuário: {user_audio_chunk: null, user_message: text}."""
        if not self.is_connected(session):
            return SendResult.failure(NOT_CONNECTED)

        try:
            await session.upstream.send(text_envelope(text))
        except ConnectionClosed as e:
            logger.error("upstream_send_text_failed", session_id=session.session_id, error=str(e))
            return SendResult.failure(SEND_TEXT_FAILED)

        return SendResult.success()

    async def send_audio(self, session: RelaySession, audio_b64: Any) -> SendResult:
        """Envia áudio do usuário: {user_audio_chunk: base64, user_message: null}."""
        if not self.is_connected(session):
            return SendResult.failure(NOT_CONNECTED)

        try:
            audio_bytes = decode_client_audio(audio_b64)
            await session.upstream.send(audio_envelope(audio_bytes))
        except (ValueError, ConnectionClosed) as e:
            logger.error(
                "upstream_send_audio_failed",
                session_id=session.session_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return SendResult.failure(SEND_AUDIO_FAILED)

        self.metrics.record_audio("in", len(audio_bytes))
        return SendResult.success()

    # ========================================
    # ENCERRAMENTO
    # ========================================

    async def close(self, session: RelaySession) -> bool:
        """
        Fecha o upstream conectado e aguarda o fim do loop de recebimento.

        Returns:
            True se havia um upstream conectado
        """
        if not self.is_connected(session):
            return False

        await session.upstream.close()

        task = session.upstream_task
        if task is not None and task is not asyncio.current_task():
            await _wait_finished(task)

        logger.info("upstream_closed", session_id=session.session_id)
        return True

    async def shutdown(self, session: RelaySession) -> None:
        """Encerra upstream no teardown: cancela a task, sem notificar o cliente."""
        task = session.upstream_task
        if task is not None:
            await self._stop(session, task, cancel=True)

        if session.upstream is not None:
            await session.upstream.close()

        session.connected = False

    async def _stop(self, session: RelaySession, task: asyncio.Task, cancel: bool = False) -> None:
        if task is asyncio.current_task():
            return

        if cancel or not self.is_connected(session):
            # Ainda em handshake (ou teardown): não há socket para fechar
            task.cancel()
        else:
            await session.upstream.close()

        await _wait_finished(task)


async def _wait_finished(task: asyncio.Task) -> None:
    """
    Aguarda o fim de uma task upstream.

    asyncio.wait não propaga o resultado da task: o cancelamento dela não
    vaza para quem espera, e o cancelamento de quem espera continua
    propagando normalmente.
    """
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        logger.error("upstream_task_failed", error=str(task.exception()))
