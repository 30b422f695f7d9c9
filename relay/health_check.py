"""
Health Check para o container do relay.

Usado pelo Docker healthcheck para verificar se o serviço está funcionando.

Uso:
    python -m relay.health_check

Exit codes:
    0 - Healthy
    1 - Unhealthy
"""

import asyncio
import os
import sys

import aiohttp


def health_url() -> str:
    port = int(os.getenv("PORT", "3000"))
    return os.getenv("RELAY_HEALTH_URL", f"http://localhost:{port}/health")


async def check_health(url: str, timeout: float = 5) -> bool:
    """Consulta GET /health; saudável se HTTP 200 com status "healthy"."""
    try:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url) as response:
                if response.status == 200:
                    data = await response.json()
                    if data.get("status") == "healthy":
                        return True
                return False
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        print(f"Health check failed: {e}", file=sys.stderr)
        return False


def main():
    """Entry point para Docker healthcheck."""
    is_healthy = asyncio.run(check_health(health_url()))

    if is_healthy:
        print("OK")
        sys.exit(0)
    else:
        print("UNHEALTHY")
        sys.exit(1)


if __name__ == "__main__":
    main()
