"""
Discovery data structures and models
"""

import ipaddress
from typing import Optional
from dataclasses import dataclass
from urllib.parse import urlsplit

DEFAULT_DEVICE_PORT = 80

def is_ipv4(value) -> bool:
    """True if value is a dotted-quad IPv4 address"""
    try:
        ipaddress.IPv4Address(str(value).strip())
        return True
    except ValueError:
        return False

@dataclass(frozen=True)
class DeviceEndpoint:
    """Resolved address of a device; base_url is always scheme://ip:port"""
    ip: str
    port: int = DEFAULT_DEVICE_PORT
    scheme: str = "http"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.ip}:{self.port}"

    @classmethod
    def from_base_url(cls, value: str, default_port: int = DEFAULT_DEVICE_PORT) -> "DeviceEndpoint":
        """
        Parse a base URL or bare host ("192.168.43.27", "http://10.0.0.5:8080/")
        Raises ValueError when no host can be extracted
        """
        text = str(value or "").strip()
        if not text:
            raise ValueError("Host is required (e.g. http://172.20.10.2)")
        if "://" not in text:
            text = "http://" + text

        parts = urlsplit(text)
        if parts.scheme.lower() not in ("http", "https"):
            raise ValueError(f"Unsupported scheme in {value!r}")
        if not parts.hostname:
            raise ValueError(f"No host in {value!r}")

        # urlsplit raises ValueError itself for out-of-range ports
        port = parts.port or default_port
        return cls(ip=parts.hostname, port=port, scheme=parts.scheme.lower())

    def __str__(self) -> str:
        return self.base_url

@dataclass(frozen=True)
class DiscoveryReply:
    """One inbound datagram answering a discovery probe"""
    source_address: str
    source_port: int
    declared_ip: Optional[str] = None
    declared_port: Optional[int] = None

    def to_endpoint(self, default_port: int = DEFAULT_DEVICE_PORT) -> DeviceEndpoint:
        return DeviceEndpoint(
            ip=self.declared_ip or self.source_address,
            port=self.declared_port or default_port
        )
