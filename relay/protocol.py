"""
Protocolo do relay.

Define o vocabulário trocado com o cliente (mensagens JSON com campo
``type``) e com o ElevenLabs Conversational AI (envelope
``user_audio_chunk`` / ``user_message``).

Endpoint upstream: wss://api.elevenlabs.io/v1/convai/conversation?agent_id=...
"""

import base64
import binascii
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union
from urllib.parse import urlencode

CONV_API_URL = "wss://api.elevenlabs.io/v1/convai/conversation"
API_KEY_HEADER = "xi-api-key"

DEFAULT_VOICE_SETTINGS: Dict[str, Any] = {
    "stability": 0.5,
    "similarity_boost": 0.8,
    "style": 0.0,
    "use_speaker_boost": True,
}


class MessageParseError(ValueError):
    """Mensagem do cliente não é um objeto JSON válido."""


class ClientMessageType(str, Enum):
    """Mensagens recebidas do cliente."""

    INIT_CONVERSATION = "init_conversation"
    SEND_TEXT = "send_text"
    SEND_AUDIO = "send_audio"
    END_CONVERSATION = "end_conversation"


class ServerMessageType(str, Enum):
    """Mensagens enviadas ao cliente."""

    # ========================================
    # CONEXÃO
    # ========================================
    CONNECTED = "connected"
    ELEVENLABS_CONNECTED = "elevenlabs_connected"
    ELEVENLABS_DISCONNECTED = "elevenlabs_disconnected"

    # ========================================
    # RELAY (upstream → cliente)
    # ========================================
    ELEVENLABS_MESSAGE = "elevenlabs_message"
    AUDIO_CHUNK = "audio_chunk"

    # ========================================
    # CONFIRMAÇÕES
    # ========================================
    TEXT_SENT = "text_sent"
    AUDIO_SENT = "audio_sent"
    CONVERSATION_ENDED = "conversation_ended"

    ERROR = "error"


def client_event(event_type: ServerMessageType, **fields: Any) -> Dict[str, Any]:
    """Monta mensagem para o cliente; ``type`` é sempre o primeiro campo."""
    message: Dict[str, Any] = {"type": event_type.value}
    message.update(fields)
    return message


def error_event(message: str) -> Dict[str, Any]:
    return client_event(ServerMessageType.ERROR, message=message)


def parse_client_message(raw: Union[str, bytes]) -> Dict[str, Any]:
    """
    Decodifica um frame do cliente.

    Raises:
        MessageParseError: JSON inválido ou valor que não é objeto
    """
    try:
        data = json.loads(raw)
    except ValueError as e:
        # JSONDecodeError e UnicodeDecodeError (frames binários)
        raise MessageParseError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MessageParseError(f"Expected JSON object, got {type(data).__name__}")

    return data


def build_upstream_url(agent_id: str, base_url: str = CONV_API_URL) -> str:
    return f"{base_url}?{urlencode({'agent_id': agent_id})}"


# ========================================
# UPSTREAM - envelopes enviados
# ========================================

def text_envelope(text: Optional[str]) -> str:
    return json.dumps({"user_audio_chunk": None, "user_message": text})


def decode_client_audio(audio_b64: Any) -> bytes:
    """
    Decodifica o áudio base64 enviado pelo cliente.

    Validação estrita: base64 inválido falha aqui e não no ElevenLabs.

    Raises:
        ValueError: base64 inválido ou ausente
    """
    if not isinstance(audio_b64, str):
        raise ValueError("audio must be a base64 string")

    try:
        return base64.b64decode(audio_b64, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 audio: {e}") from e


def audio_envelope(audio_bytes: bytes) -> str:
    return json.dumps({
        "user_audio_chunk": encode_audio(audio_bytes),
        "user_message": None,
    })


def encode_audio(audio_bytes: bytes) -> str:
    return base64.b64encode(audio_bytes).decode("ascii")


# ========================================
# UPSTREAM - frames recebidos
# ========================================

class FrameKind(Enum):
    CONTROL = "control"
    AUDIO = "audio"


@dataclass(frozen=True)
class UpstreamFrame:
    """Frame do ElevenLabs já classificado."""

    kind: FrameKind
    data: Any = None
    audio: bytes = b""


def classify_upstream_frame(frame: Union[str, bytes]) -> UpstreamFrame:
    """
    Separa eventos de controle de áudio bruto.

    Não existe byte de tipo: tudo que decodifica como JSON é evento de
    controle (encaminhado como está); o resto é tratado como áudio.
    """
    try:
        return UpstreamFrame(kind=FrameKind.CONTROL, data=json.loads(frame))
    except ValueError:
        audio = frame.encode("utf-8") if isinstance(frame, str) else bytes(frame)
        return UpstreamFrame(kind=FrameKind.AUDIO, audio=audio)
