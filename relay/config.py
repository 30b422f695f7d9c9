"""
Configuração do relay via variáveis de ambiente.

    RELAY_HOST                    (0.0.0.0)
    PORT                          (3000)
    ELEVENLABS_API_KEY            credencial do upstream
    ELEVENLABS_WS_URL             endpoint do Conversational AI
    RELAY_IDLE_TIMEOUT_SECONDS    (300)
    RELAY_SWEEP_INTERVAL_SECONDS  (60)
    RELAY_UPSTREAM_PING_INTERVAL  (20, 0 desliga)
    LOG_LEVEL                     (INFO)
    LOG_JSON                      (true)
    LOG_DIR                       (stdout apenas)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .lifecycle import DEFAULT_IDLE_TIMEOUT, DEFAULT_SWEEP_INTERVAL
from .protocol import CONV_API_URL


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("true", "1", "yes", "t")


def _parse_float(name: str, value: Optional[str], default: float, positive: bool = False) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        parsed = float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None
    if positive and parsed <= 0:
        raise ValueError(f"{name} must be > 0, got {value!r}")
    if parsed < 0:
        raise ValueError(f"{name} must be >= 0, got {value!r}")
    return parsed


@dataclass(frozen=True)
class RelayConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    elevenlabs_api_key: Optional[str] = None
    elevenlabs_ws_url: str = CONV_API_URL
    idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL
    upstream_ping_interval: Optional[float] = 20.0
    log_level: str = "INFO"
    log_json: bool = True
    log_dir: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        """
        Lê a configuração do ambiente.

        Raises:
            ValueError: valor numérico inválido
        """
        env = os.environ if environ is None else environ

        port_raw = env.get("PORT", "3000")
        try:
            port = int(port_raw)
        except ValueError:
            raise ValueError(f"PORT must be an integer, got {port_raw!r}") from None

        ping = _parse_float("RELAY_UPSTREAM_PING_INTERVAL", env.get("RELAY_UPSTREAM_PING_INTERVAL"), 20.0)

        return cls(
            host=env.get("RELAY_HOST", "0.0.0.0"),
            port=port,
            elevenlabs_api_key=env.get("ELEVENLABS_API_KEY") or None,
            elevenlabs_ws_url=env.get("ELEVENLABS_WS_URL") or CONV_API_URL,
            idle_timeout_seconds=_parse_float(
                "RELAY_IDLE_TIMEOUT_SECONDS", env.get("RELAY_IDLE_TIMEOUT_SECONDS"), DEFAULT_IDLE_TIMEOUT
            ),
            sweep_interval_seconds=_parse_float(
                "RELAY_SWEEP_INTERVAL_SECONDS", env.get("RELAY_SWEEP_INTERVAL_SECONDS"), DEFAULT_SWEEP_INTERVAL,
                positive=True,
            ),
            upstream_ping_interval=ping or None,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            log_json=_parse_bool(env.get("LOG_JSON"), default=True),
            log_dir=env.get("LOG_DIR") or None,
        )

    def api_key_summary(self) -> dict:
        """Diagnóstico da credencial sem expor o valor."""
        key = self.elevenlabs_api_key
        return {
            "api_key_configured": bool(key),
            "api_key_length": len(key) if key else 0,
        }
