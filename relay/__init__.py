# ElevenLabs Conversational Relay
# WebSocket bridge cliente ↔ ElevenLabs Conversational AI
#
# Lazy imports: `python -m relay` carrega este __init__ antes do
# __main__, e o server puxa websockets/prometheus_client.

__all__ = [
    "RelayConfig",
    "RelayServer",
    "RelaySession",
    "SessionRegistry",
    "run_server",
]


def __getattr__(name: str):
    if name == "RelayServer":
        from .server import RelayServer
        return RelayServer
    elif name == "run_server":
        from .server import run_server
        return run_server
    elif name == "RelayConfig":
        from .config import RelayConfig
        return RelayConfig
    elif name == "RelaySession":
        from .session import RelaySession
        return RelaySession
    elif name == "SessionRegistry":
        from .session_registry import SessionRegistry
        return SessionRegistry
    raise AttributeError(f"module 'relay' has no attribute {name!r}")
