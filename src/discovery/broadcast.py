"""
UDP broadcast discovery for DisperSync devices

The client sends a fixed token to a list of broadcast addresses and takes the
first valid reply. A single global broadcast is not reliably delivered on
mobile hotspot stacks, so common hotspot subnet broadcasts are probed too.

Reply formats accepted from the device:
    192.168.43.27                       -> that IP, default port
    {"ip": "192.168.43.27", "port": 80} -> declared IP/port
    anything else                       -> packet source address, default port
"""

import asyncio
import json
import logging
import time
from typing import Dict, List, Optional, Tuple

from link_errors import TransportSetupFailure
from .models import DeviceEndpoint, DiscoveryReply, DEFAULT_DEVICE_PORT, is_ipv4

logger = logging.getLogger(__name__)

DISCOVERY_PORT = 40000
DISCOVERY_MESSAGE = b"DISPERSYNC_DISCOVER"

DEFAULT_BROADCAST_ADDRESSES = [
    "255.255.255.255",
    "192.168.43.255",   # Android hotspot
    "172.20.10.15",     # iOS personal hotspot (/28)
    "192.168.137.255",  # Windows mobile hotspot
    "192.168.0.255",
    "192.168.1.255",
    "10.0.0.255",
]

DEFAULT_TIMEOUT_MS = 8000
DEFAULT_ATTEMPTS = 4
DEFAULT_INTERVAL_MS = 1500

MIN_TIMEOUT_MS = 1200
MIN_INTERVAL_MS = 100


def _coerce_port(value) -> Optional[int]:
    """Return a valid TCP port from an int or digit string, else None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and 0 < value < 65536:
        return value
    return None


def parse_discovery_reply(data: bytes, addr: Tuple[str, int]) -> Optional[DiscoveryReply]:
    """
    Parse one datagram into a DiscoveryReply
    Returns None for payloads that must be discarded (bad UTF-8, bad JSON,
    invalid declared ip or port)
    """
    try:
        payload = data.decode("utf-8").strip()
    except UnicodeDecodeError:
        return None

    source_ip, source_port = addr[0], addr[1]

    if payload.startswith("{"):
        try:
            message = json.loads(payload)
        except json.JSONDecodeError:
            return None
        if not isinstance(message, dict):
            return None

        declared_ip = message.get("ip")
        if declared_ip in (None, ""):
            declared_ip = None
        elif is_ipv4(declared_ip):
            declared_ip = str(declared_ip).strip()
        else:
            return None

        declared_port = message.get("port")
        if declared_port is not None:
            declared_port = _coerce_port(declared_port)
            if declared_port is None:
                return None

        return DiscoveryReply(source_ip, source_port, declared_ip, declared_port)

    if is_ipv4(payload):
        return DiscoveryReply(source_ip, source_port, declared_ip=payload)

    return DiscoveryReply(source_ip, source_port)


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    """Resolves a future with the first valid reply"""

    def __init__(self, found: asyncio.Future):
        self.found = found
        self.transport = None
        self.discarded = 0

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        if self.found.done():
            return

        reply = parse_discovery_reply(data, addr)
        if reply is None:
            self.discarded += 1
            logger.debug(f"Discarding malformed discovery reply from {addr[0]}:{addr[1]}")
            return

        self.found.set_result(reply)

    def error_received(self, exc: Exception) -> None:
        # Sends to unroutable hotspot subnets land here; the attempt goes on
        logger.debug(f"Discovery socket error: {exc}")

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            logger.warning(f"Discovery socket lost: {exc}")
        if not self.found.done():
            self.found.set_result(None)


class BroadcastDiscoveryClient:
    """Locates a device with a best-effort UDP broadcast handshake"""

    def __init__(
        self,
        port: int = DISCOVERY_PORT,
        message: bytes = DISCOVERY_MESSAGE,
        broadcast_addresses: Optional[List[str]] = None,
        default_device_port: int = DEFAULT_DEVICE_PORT,
        bind_address: str = "0.0.0.0",
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        attempts: int = DEFAULT_ATTEMPTS,
        interval_ms: int = DEFAULT_INTERVAL_MS,
    ):
        self.port = port
        self.message = message.encode("ascii") if isinstance(message, str) else message
        self.broadcast_addresses = list(broadcast_addresses or DEFAULT_BROADCAST_ADDRESSES)
        self.default_device_port = default_device_port
        self.bind_address = bind_address
        self.timeout_ms = timeout_ms
        self.attempts = attempts
        self.interval_ms = interval_ms

    @classmethod
    def from_config(cls, config: Dict) -> "BroadcastDiscoveryClient":
        """Build from the 'discovery' config section"""
        return cls(
            port=config.get('port', DISCOVERY_PORT),
            message=config.get('message', DISCOVERY_MESSAGE),
            broadcast_addresses=config.get('broadcast_addresses'),
            default_device_port=config.get('default_device_port', DEFAULT_DEVICE_PORT),
            timeout_ms=config.get('timeout_ms', DEFAULT_TIMEOUT_MS),
            attempts=config.get('attempts', DEFAULT_ATTEMPTS),
            interval_ms=config.get('interval_ms', DEFAULT_INTERVAL_MS),
        )

    async def discover(
        self,
        timeout_ms: Optional[int] = None,
        attempts: Optional[int] = None,
        interval_ms: Optional[int] = None,
    ) -> Optional[DeviceEndpoint]:
        """
        Broadcast the discovery token and wait for the first valid reply

        Returns:
            DeviceEndpoint of the first responder, or None if nothing valid
            arrived before the overall deadline

        Raises:
            TransportSetupFailure: the UDP socket could not be created/bound
        """
        timeout = max(MIN_TIMEOUT_MS, self.timeout_ms if timeout_ms is None else timeout_ms) / 1000
        interval = max(MIN_INTERVAL_MS, self.interval_ms if interval_ms is None else interval_ms) / 1000
        attempts = max(1, self.attempts if attempts is None else attempts)

        loop = asyncio.get_running_loop()
        found = loop.create_future()

        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _DiscoveryProtocol(found),
                local_addr=(self.bind_address, 0),
                allow_broadcast=True,
            )
        except OSError as e:
            raise TransportSetupFailure(f"Could not open discovery socket: {e}") from e

        logger.info(
            f"Broadcasting discovery on UDP port {self.port} to {len(self.broadcast_addresses)} targets "
            f"({attempts} attempts, {timeout:.1f}s timeout)"
        )
        start_time = time.monotonic()
        sender = asyncio.create_task(self._send_bursts(transport, found, attempts, interval))

        try:
            reply = await asyncio.wait_for(found, timeout)
        except asyncio.TimeoutError:
            reply = None
        finally:
            sender.cancel()
            transport.close()
            await asyncio.gather(sender, return_exceptions=True)

        elapsed = time.monotonic() - start_time
        if reply is None:
            logger.info(f"No device answered discovery after {elapsed:.1f}s")
            return None

        endpoint = reply.to_endpoint(self.default_device_port)
        logger.info(f"Device found via broadcast: {endpoint.base_url} (reply from {reply.source_address}, {elapsed:.1f}s)")
        return endpoint

    async def _send_bursts(self, transport, found: asyncio.Future, attempts: int, interval: float):
        """Send the token to every target, repeating until resolved or out of attempts"""
        for attempt in range(attempts):
            if found.done():
                return

            for address in self.broadcast_addresses:
                try:
                    transport.sendto(self.message, (address, self.port))
                except (OSError, ValueError) as e:
                    logger.debug(f"Discovery send to {address} failed: {e}")

            logger.debug(f"Discovery burst {attempt + 1}/{attempts} sent")

            if attempt < attempts - 1:
                await asyncio.sleep(interval)
