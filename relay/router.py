"""
Message Router - despacha mensagens do cliente pelo campo ``type``.

    init_conversation → UpstreamConnector.open
    send_text         → UpstreamConnector.send_text
    send_audio        → UpstreamConnector.send_audio
    end_conversation  → UpstreamConnector.close + teardown da sessão
    outros            → ignorados (apenas log)
"""

from typing import Any, Dict, Optional, Union

import structlog

from .lifecycle import SessionLifecycle
from .metrics import RelayMetrics, get_metrics
from .protocol import (
    ClientMessageType,
    MessageParseError,
    ServerMessageType,
    client_event,
    error_event,
    parse_client_message,
)
from .session import RelaySession
from .session_registry import SessionRegistry
from .upstream import UpstreamConnector

logger = structlog.get_logger(__name__)

PROCESSING_ERROR = "Failed to process message"


class MessageRouter:
    """Máquina de estados por mensagem recebida do cliente."""

    def __init__(
        self,
        registry: SessionRegistry,
        connector: UpstreamConnector,
        lifecycle: SessionLifecycle,
        metrics: Optional[RelayMetrics] = None,
    ):
        self.registry = registry
        self.connector = connector
        self.lifecycle = lifecycle
        self.metrics = metrics or get_metrics()

        self._handlers = {
            ClientMessageType.INIT_CONVERSATION.value: self._init_conversation,
            ClientMessageType.SEND_TEXT.value: self._send_text,
            ClientMessageType.SEND_AUDIO.value: self._send_audio,
            ClientMessageType.END_CONVERSATION.value: self._end_conversation,
        }

    async def dispatch(self, session_id: str, raw: Union[str, bytes]) -> None:
        """
        Processa um frame do cliente.

        Erros de parsing são reportados ao cliente; a sessão continua viva.
        """
        session = self.registry.get(session_id)
        if session is None:
            return

        session.touch()

        try:
            data = parse_client_message(raw)
        except MessageParseError as e:
            logger.warning("client_message_invalid", session_id=session_id, error=str(e))
            self.metrics.client_message("invalid")
            await session.send(error_event(PROCESSING_ERROR))
            return

        msg_type = data.get("type")
        handler = self._handlers.get(msg_type) if isinstance(msg_type, str) else None
        if handler is None:
            logger.info("client_message_unknown", session_id=session_id, message_type=msg_type)
            self.metrics.client_message("unknown")
            return

        self.metrics.client_message(msg_type)
        await handler(session, data)

    async def _init_conversation(self, session: RelaySession, data: Dict[str, Any]) -> None:
        agent_id = data.get("agent_id")
        if not agent_id or not isinstance(agent_id, str):
            await session.send(error_event("agent_id is required"))
            return

        voice_settings = data.get("voice_settings")
        if not isinstance(voice_settings, dict):
            voice_settings = None

        await self.connector.open(session, agent_id, voice_settings)

    async def _send_text(self, session: RelaySession, data: Dict[str, Any]) -> None:
        result = await self.connector.send_text(session, data.get("text"))
        if not result.ok:
            await session.send(error_event(result.error))
            return

        await session.send(client_event(ServerMessageType.TEXT_SENT, message="Text sent to ElevenLabs"))

    async def _send_audio(self, session: RelaySession, data: Dict[str, Any]) -> None:
        result = await self.connector.send_audio(session, data.get("audio"))
        if not result.ok:
            await session.send(error_event(result.error))
            return

        await session.send(client_event(ServerMessageType.AUDIO_SENT, message="Audio sent to ElevenLabs"))

    async def _end_conversation(self, session: RelaySession, data: Dict[str, Any]) -> None:
        await self.connector.close(session)
        await session.send(client_event(ServerMessageType.CONVERSATION_ENDED, message="Conversation ended"))
        await self.lifecycle.teardown(session.session_id, "end_conversation")
