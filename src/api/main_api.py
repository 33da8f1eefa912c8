"""
Main FastAPI application setup

Local HTTP API for the DisperSync device link
Exposes the bound device, discovery and the live card-scan feed
"""

from fastapi import FastAPI
from typing import Dict
import logging

from .device_routes import create_device_routes
from .system_routes import create_system_routes

logger = logging.getLogger(__name__)


class DeviceLinkAPI:
    """Local HTTP API over one device session"""

    def __init__(self, session, config: Dict, locate_device):
        self.session = session
        self.config = config
        self.app = FastAPI(
            title="DisperSync Device Link",
            description="Local API for device discovery and NFC card scan readings",
            version="1.0.0"
        )
        self._setup_routes(locate_device)

    def _setup_routes(self, locate_device):
        """Setup FastAPI routes using modular approach"""
        self.app.include_router(create_device_routes(self.session, locate_device))
        self.app.include_router(create_system_routes(self.session, self.config))
