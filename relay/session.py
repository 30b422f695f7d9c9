"""
RelaySession - estado de uma conexão de cliente.

Cada cliente conectado tem exatamente uma sessão, que guarda o socket do
cliente, no máximo um socket upstream (ElevenLabs) e um buffer curto com os
últimos frames de áudio recebidos.
"""

import asyncio
import json
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional

import structlog
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

logger = structlog.get_logger(__name__)

# Quantidade de frames de áudio mantidos para diagnóstico
AUDIO_BUFFER_SIZE = 10


def generate_session_id() -> str:
    """Gera identificador opaco para a sessão (também enviado ao cliente)."""
    return uuid.uuid4().hex


@dataclass
class RelaySession:
    """
    Estado de relay de um cliente.

    Invariantes:
    - upstream só é preenchido depois de um handshake bem-sucedido
    - recent_audio nunca passa de AUDIO_BUFFER_SIZE (FIFO)
    - closed é marcado uma única vez, no teardown
    """

    session_id: str
    client: Any
    upstream: Optional[Any] = None
    upstream_task: Optional[asyncio.Task] = None
    connected: bool = False
    recent_audio: Deque[bytes] = field(
        default_factory=lambda: deque(maxlen=AUDIO_BUFFER_SIZE)
    )
    last_activity: float = field(default_factory=time.time)
    created_at: float = field(default_factory=time.time)
    agent_id: Optional[str] = None
    voice_settings: Dict[str, Any] = field(default_factory=dict)
    closed: bool = False

    def touch(self, now: Optional[float] = None) -> None:
        """Registra atividade do cliente (usado pelo idle sweep)."""
        self.last_activity = time.time() if now is None else now

    def push_audio(self, frame: bytes) -> None:
        # deque(maxlen) descarta o frame mais antigo
        self.recent_audio.append(frame)

    def idle_for(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.last_activity

    @property
    def client_open(self) -> bool:
        return getattr(self.client, "state", None) is State.OPEN

    async def send(self, message: Dict[str, Any]) -> bool:
        """
        Envia mensagem JSON para o cliente.

        Não enfileira: se o socket do cliente não estiver aberto (ou a sessão
        já foi encerrada) a mensagem é descartada silenciosamente.

        Returns:
            True se a mensagem foi entregue ao socket
        """
        if self.closed or not self.client_open:
            return False

        try:
            await self.client.send(json.dumps(message))
        except ConnectionClosed:
            logger.debug(
                "client_send_skipped",
                session_id=self.session_id,
                message_type=message.get("type"),
            )
            return False

        return True
