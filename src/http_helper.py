# HTTP Helper for DisperSync device connections
# Local devices only speak plain HTTP on the hotspot network

import asyncio
import aiohttp
import logging
from typing import Optional

logger = logging.getLogger(__name__)

def create_device_session(timeout_seconds: float = 2) -> aiohttp.ClientSession:
    """
    Create properly configured aiohttp session for local device connections (always HTTP)
    Prevents connection leaks with proper cleanup and limits
    """
    connector = aiohttp.TCPConnector(
        limit_per_host=2,           # ESP32 web server handles very few sockets
        ssl=False,                  # Local devices use HTTP only
        force_close=True,           # Force connection cleanup
        enable_cleanup_closed=True  # Additional cleanup
    )

    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout_seconds)
    )

async def fetch_text(url: str, timeout_seconds: float) -> str:
    """
    GET a URL and return the body as text
    Raises on transport errors, timeouts and HTTP error statuses
    """
    async with create_device_session(timeout_seconds) as session:
        async with session.get(url) as response:
            response.raise_for_status()
            return await response.text(errors="replace")

async def http_get_text(url: str, timeout_seconds: float) -> Optional[str]:
    """Best-effort GET returning stripped text, or None on any failure"""
    try:
        return (await fetch_text(url, timeout_seconds)).strip()
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        logger.debug(f"HTTP GET failed for {url}: {e}")
        return None
