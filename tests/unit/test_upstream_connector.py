"""
Tests for UpstreamConnector.

O socket upstream é substituído por FakeConnect/FakeUpstreamSocket
(conftest), então nenhum teste abre conexão real.
"""

import asyncio
import base64
import json

import pytest
from websockets.exceptions import ConnectionClosedError, InvalidURI

from conftest import FakeConnect, wait_until
from relay.protocol import DEFAULT_VOICE_SETTINGS
from relay.upstream import (
    CONNECT_FAILED,
    CONNECTION_ERROR,
    NOT_CONNECTED,
    SEND_AUDIO_FAILED,
    SendResult,
    UpstreamConnector,
)


async def _open_connected(connector, session, agent_id="a1"):
    await connector.open(session, agent_id)
    await wait_until(lambda: session.connected)


class TestOpen:
    """Handshake e eventos assíncronos do upstream."""

    @pytest.mark.asyncio
    async def test_open_returns_before_handshake(self, connector, session, fake_connect):
        task = await connector.open(session, "a1")

        assert isinstance(task, asyncio.Task)
        assert session.upstream_task is task
        assert session.connected is False
        assert session.upstream is None

        await wait_until(lambda: session.connected)
        await connector.shutdown(session)

    @pytest.mark.asyncio
    async def test_handshake_success_notifies_client(self, connector, session, fake_connect, client):
        await _open_connected(connector, session)

        assert session.upstream is fake_connect.socket
        assert client.messages[-1] == {"type": "elevenlabs_connected", "message": "Connected to ElevenLabs"}

        url, kwargs = fake_connect.calls[0]
        assert url == "wss://upstream.test/v1/convai/conversation?agent_id=a1"
        assert kwargs["additional_headers"] == {"xi-api-key": "test-api-key"}

        await connector.shutdown(session)

    @pytest.mark.asyncio
    async def test_voice_settings_default(self, connector, session):
        await connector.open(session, "a1")
        assert session.voice_settings == DEFAULT_VOICE_SETTINGS
        assert session.agent_id == "a1"

        custom = {"stability": 0.1}
        await connector.open(session, "a2", custom)
        assert session.voice_settings == custom

        await connector.shutdown(session)

    @pytest.mark.asyncio
    async def test_handshake_failure_reports_error(self, session, client, metrics):
        connector = UpstreamConnector(
            api_key="k",
            connect_fn=FakeConnect(error=OSError("connection refused")),
            metrics=metrics,
        )

        await (await connector.open(session, "a1"))

        assert session.connected is False
        assert session.upstream is None
        assert client.messages == [
            {"type": "error", "message": CONNECTION_ERROR},
            {"type": "elevenlabs_disconnected", "message": "ElevenLabs connection closed"},
        ]

    @pytest.mark.asyncio
    async def test_unexpected_handshake_error_reports_error(self, session, client, metrics):
        """Erro fora dos tipos de rede também chega ao cliente."""
        connector = UpstreamConnector(
            api_key="k",
            connect_fn=FakeConnect(error=RuntimeError("boom")),
            metrics=metrics,
        )

        task = await connector.open(session, "a1")
        await task

        assert task.exception() is None
        assert client.types == ["error", "elevenlabs_disconnected"]
        assert client.messages[0]["message"] == CONNECTION_ERROR

    @pytest.mark.asyncio
    async def test_invalid_target_reports_connect_failure(self, session, client, metrics):
        connector = UpstreamConnector(
            api_key="k",
            connect_fn=FakeConnect(error=InvalidURI("bad://", "scheme isn't ws or wss")),
            metrics=metrics,
        )

        await (await connector.open(session, "a1"))

        assert client.messages == [{"type": "error", "message": CONNECT_FAILED}]

    @pytest.mark.asyncio
    async def test_reopen_replaces_previous_upstream(self, connector, session, fake_connect):
        """Uma sessão nunca mantém dois sockets upstream."""
        await _open_connected(connector, session)
        first = fake_connect.socket

        await connector.open(session, "a2")
        assert first.closed is True
        await wait_until(lambda: len(fake_connect.sockets) == 2 and session.connected)

        assert first.closed is True
        assert session.upstream is fake_connect.sockets[1]
        assert fake_connect.calls[1][0].endswith("agent_id=a2")

        await connector.shutdown(session)


class TestUpstreamFrames:
    """Relay upstream → cliente."""

    @pytest.mark.asyncio
    async def test_control_message_forwarded_verbatim(self, connector, session, fake_connect, client):
        await _open_connected(connector, session)
        event = {"type": "agent_response", "agent_response_event": {"agent_response": "Olá"}}

        fake_connect.socket.feed(json.dumps(event))
        await wait_until(lambda: client.types[-1] == "elevenlabs_message")

        assert client.messages[-1] == {"type": "elevenlabs_message", "data": event}
        assert len(session.recent_audio) == 0

        await connector.shutdown(session)

    @pytest.mark.asyncio
    async def test_binary_frame_relayed_as_base64(self, connector, session, fake_connect, client):
        await _open_connected(connector, session)
        pcm = b"\x00\x10\xff\x7f" * 160

        fake_connect.socket.feed(pcm)
        await wait_until(lambda: client.types[-1] == "audio_chunk")

        assert client.messages[-1] == {"type": "audio_chunk", "audio": base64.b64encode(pcm).decode()}
        assert list(session.recent_audio) == [pcm]

        await connector.shutdown(session)

    @pytest.mark.asyncio
    async def test_audio_buffer_keeps_last_ten(self, connector, session, fake_connect, client):
        await _open_connected(connector, session)
        frames = [bytes([0xff, i]) for i in range(12)]

        for frame in frames:
            fake_connect.socket.feed(frame)
        await wait_until(lambda: client.types.count("audio_chunk") == 12)

        assert list(session.recent_audio) == frames[2:]

        await connector.shutdown(session)

    @pytest.mark.asyncio
    async def test_upstream_close_notifies_client(self, connector, session, fake_connect, client):
        await _open_connected(connector, session)

        await fake_connect.socket.close()
        await session.upstream_task

        assert session.connected is False
        assert client.messages[-1] == {"type": "elevenlabs_disconnected", "message": "ElevenLabs connection closed"}

    @pytest.mark.asyncio
    async def test_upstream_error_notifies_client_without_reconnect(self, connector, session, fake_connect, client):
        await _open_connected(connector, session)

        fake_connect.socket.fail(ConnectionClosedError(None, None))
        await session.upstream_task

        assert session.connected is False
        assert client.types[-2:] == ["error", "elevenlabs_disconnected"]
        assert client.messages[-2]["message"] == CONNECTION_ERROR
        assert len(fake_connect.calls) == 1


class TestSend:
    """Envio cliente → upstream."""

    @pytest.mark.asyncio
    async def test_send_text_before_connect_fails_without_transmission(self, connector, session, fake_connect):
        result = await connector.send_text(session, "hi")

        assert result == SendResult.failure(NOT_CONNECTED)
        assert fake_connect.calls == []

    @pytest.mark.asyncio
    async def test_send_audio_during_handshake_fails(self, connector, session):
        await connector.open(session, "a1")

        result = await connector.send_audio(session, base64.b64encode(b"pcm").decode())

        assert result.ok is False
        assert result.error == NOT_CONNECTED
        await connector.shutdown(session)

    @pytest.mark.asyncio
    async def test_send_text_envelope(self, connector, session, fake_connect):
        await _open_connected(connector, session)

        result = await connector.send_text(session, "hi")

        assert result.ok is True
        assert fake_connect.socket.sent == ['{"user_audio_chunk": null, "user_message": "hi"}']
        await connector.shutdown(session)

    @pytest.mark.asyncio
    async def test_send_audio_envelope(self, connector, session, fake_connect):
        await _open_connected(connector, session)
        audio_b64 = base64.b64encode(b"\x01\x02\x03\x04").decode()

        result = await connector.send_audio(session, audio_b64)

        assert result.ok is True
        assert json.loads(fake_connect.socket.sent[0]) == {"user_audio_chunk": audio_b64, "user_message": None}
        await connector.shutdown(session)

    @pytest.mark.asyncio
    async def test_send_audio_invalid_base64(self, connector, session, fake_connect):
        """Base64 inválido vira falha de envio, não exceção."""
        await _open_connected(connector, session)

        result = await connector.send_audio(session, "%%%not-base64%%%")

        assert result == SendResult.failure(SEND_AUDIO_FAILED)
        assert fake_connect.socket.sent == []
        await connector.shutdown(session)


class TestClose:

    @pytest.mark.asyncio
    async def test_close_without_upstream(self, connector, session):
        assert await connector.close(session) is False

    @pytest.mark.asyncio
    async def test_close_connected_upstream(self, connector, session, fake_connect, client):
        await _open_connected(connector, session)

        assert await connector.close(session) is True

        assert fake_connect.socket.closed is True
        assert session.upstream_task.done()
        assert client.types[-1] == "elevenlabs_disconnected"

    @pytest.mark.asyncio
    async def test_shutdown_is_silent(self, connector, session, fake_connect, client):
        await _open_connected(connector, session)
        session.closed = True
        sent_before = len(client.sent)

        await connector.shutdown(session)

        assert fake_connect.socket.closed is True
        assert session.connected is False
        assert len(client.sent) == sent_before

    @pytest.mark.asyncio
    async def test_shutdown_during_handshake_cancels(self, session, metrics):
        gate = asyncio.Event()

        async def hanging_connect(url, **kwargs):
            await gate.wait()

        connector = UpstreamConnector(api_key="k", connect_fn=hanging_connect, metrics=metrics)
        task = await connector.open(session, "a1")
        await asyncio.sleep(0)

        await connector.shutdown(session)

        assert task.cancelled()
        assert session.upstream is None

    @pytest.mark.asyncio
    async def test_close_does_not_swallow_caller_cancellation(self, connector, session, fake_connect):
        await _open_connected(connector, session)
        receive_task = session.upstream_task
        gate = asyncio.Event()
        # Loop de recebimento que não termina sozinho
        session.upstream_task = asyncio.create_task(gate.wait())

        caller = asyncio.create_task(connector.close(session))
        await asyncio.sleep(0.01)
        caller.cancel()

        with pytest.raises(asyncio.CancelledError):
            await caller
        assert caller.cancelled()
        assert not session.upstream_task.done()

        gate.set()
        await session.upstream_task
        await receive_task
