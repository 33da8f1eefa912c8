"""
Subnet scan fallback for device discovery
Probes every host of the local /24 for the device's /ping endpoint
"""

import asyncio
import ipaddress
import json
import logging
import socket
import time
from typing import Dict, List, Optional

from http_helper import http_get_text
from .models import DeviceEndpoint, DEFAULT_DEVICE_PORT

logger = logging.getLogger(__name__)

PING_PATH = "/ping"
WHOAMI_PATH = "/whoami"

def detect_local_ip() -> Optional[str]:
    """
    Address of the interface that routes outward
    UDP connect() sends nothing, it only selects a source address
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError as e:
        logger.debug(f"Could not determine local IP: {e}")
        return None
    finally:
        sock.close()

def generate_subnet_ips(local_ip: str) -> List[str]:
    """Hosts .2 - .254 of the local /24, excluding the local address"""
    try:
        local = ipaddress.IPv4Address(local_ip)
    except ValueError:
        logger.warning(f"Invalid local IP for subnet scan: {local_ip}")
        return []

    network = ipaddress.IPv4Network(f"{local}/24", strict=False)
    base = int(network.network_address)
    return [
        str(ipaddress.IPv4Address(base + d))
        for d in range(2, 255)
        if ipaddress.IPv4Address(base + d) != local
    ]

class SubnetScanner:
    """Finds a device by sweeping the local subnet over HTTP"""

    def __init__(self, port: int = DEFAULT_DEVICE_PORT, ping_path: str = PING_PATH,
                 timeout_per_host_ms: int = 700, max_concurrent: int = 16):
        self.port = port
        self.ping_path = ping_path if ping_path.startswith("/") else f"/{ping_path}"
        self.timeout_per_host = max(100, timeout_per_host_ms) / 1000
        self.max_concurrent = max(1, max_concurrent)

    @classmethod
    def from_config(cls, config: Dict) -> "SubnetScanner":
        """Build from the 'discovery.subnet_scan' config section"""
        return cls(
            port=config.get('port', DEFAULT_DEVICE_PORT),
            ping_path=config.get('ping_path', PING_PATH),
            timeout_per_host_ms=config.get('timeout_per_host_ms', 700),
            max_concurrent=config.get('max_concurrent', 16),
        )

    async def probe(self, ip: str) -> bool:
        """True if the host answers /ping with OK"""
        text = await http_get_text(f"http://{ip}:{self.port}{self.ping_path}", self.timeout_per_host)
        return bool(text) and text.upper() == "OK"

    async def find_on_subnet(self, local_ip: Optional[str] = None) -> Optional[DeviceEndpoint]:
        """
        Probe the local /24 with bounded concurrency
        Returns the first responding device, or None
        """
        local_ip = local_ip or detect_local_ip()
        if not local_ip:
            logger.warning("Subnet scan skipped: no local IP address")
            return None

        candidates = generate_subnet_ips(local_ip)
        if not candidates:
            return None

        logger.info(f"Scanning {len(candidates)} hosts around {local_ip} for {self.ping_path}...")
        start_time = time.time()

        pending = iter(candidates)
        found: List[str] = []

        async def worker():
            for ip in pending:
                if found:
                    return
                if await self.probe(ip):
                    found.append(ip)
                    return

        workers = min(self.max_concurrent, len(candidates))
        await asyncio.gather(*(worker() for _ in range(workers)))

        duration = time.time() - start_time
        if not found:
            logger.info(f"Subnet scan found no device in {duration:.1f}s")
            return None

        endpoint = DeviceEndpoint(ip=found[0], port=self.port)
        logger.info(f"Device found via subnet scan: {endpoint.base_url} ({duration:.1f}s)")
        return endpoint

    async def who_am_i(self, base_url: str, timeout_ms: int = 900) -> Optional[Dict]:
        """Best-effort identity document from the device's /whoami endpoint"""
        text = await http_get_text(f"{base_url.rstrip('/')}{WHOAMI_PATH}", max(100, timeout_ms) / 1000)
        if not text:
            return None
        try:
            info = json.loads(text)
        except json.JSONDecodeError:
            return None
        return info if isinstance(info, dict) else None
