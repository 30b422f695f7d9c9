"""
Relay package entrypoint.

    python -m relay
"""

import asyncio

from .config import RelayConfig
from .logging_config import configure_logging
from .server import run_server


def main() -> None:
    config = RelayConfig.from_env()

    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        json_format=config.log_json,
    )

    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
