"""
Device Link Server - Main orchestrator for discovery, polling and the local API
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional
import uvicorn

# Local imports
from config_loader import load_config, setup_logging
from discovery import BroadcastDiscoveryClient, DeviceEndpoint, SubnetScanner
from polling.models import UIDEvent
from session import DeviceSessionContext, JsonFileStore, MemoryStore
from api.main_api import DeviceLinkAPI

logger = logging.getLogger(__name__)

class DeviceLinkServer:
    """Keeps one DisperSync device located and its card scans flowing"""

    def __init__(self, config_path: str = "config/config.yaml", config: Optional[Dict] = None):
        self.config = config if config is not None else load_config(config_path)
        setup_logging(self.config)

        discovery_config = self.config['discovery']
        self.discovery = BroadcastDiscoveryClient.from_config(discovery_config)
        self.scanner = (
            SubnetScanner.from_config(discovery_config['subnet_scan'])
            if discovery_config['subnet_scan'].get('enabled', False) else None
        )

        state_file = self.config['session'].get('state_file')
        store = JsonFileStore(state_file) if state_file else MemoryStore()
        self.session = DeviceSessionContext.from_config(self.config, store=store)

        self.api = DeviceLinkAPI(self.session, self.config, self.locate_device)

        self.running = False
        self.tasks: List[asyncio.Task] = []
        self._stopped = asyncio.Event()
        self._unsubscribe = None
        self.scan_count = 0
        self.last_scan: Optional[UIDEvent] = None
        self._health_snapshot: Optional[Dict] = None

    async def start(self):
        """Restore or discover the device, then run background services"""
        logger.info("Starting DisperSync device link...")

        try:
            self._unsubscribe = self.session.subscribe(self._on_card_scanned)

            # Phase 1: last known endpoint
            endpoint = await self.session.restore()

            # Phase 2: discovery when nothing was persisted
            if endpoint is None:
                endpoint = await self.locate_device()
                if endpoint:
                    self.session.set_endpoint(endpoint)
                else:
                    logger.warning("No device found at startup - will keep retrying discovery")

            self.running = True
            self.tasks = [
                asyncio.create_task(self._discovery_service()),
                asyncio.create_task(self._monitoring_service())
            ]
            logger.info(f"All services started successfully ({len(self.tasks)} background tasks)")

            if self.config['api'].get('enabled', True):
                await self._start_api_server()
            else:
                await self._stopped.wait()

        except Exception as e:
            logger.error(f"Device link startup failed: {e}")
            await self.stop()
            raise

    async def stop(self):
        """Stop all services gracefully"""
        logger.info("Stopping device link...")
        self.running = False
        self._stopped.set()

        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        for task in self.tasks:
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

        await self.session.close()
        logger.info(f"Device link stopped ({self.scan_count} card scans this run)")

    # ================== DISCOVERY ==================

    async def locate_device(self) -> Optional[DeviceEndpoint]:
        """
        Progressive discovery: UDP broadcast first, subnet scan as fallback
        Raises TransportSetupFailure only when the UDP socket cannot be opened
        """
        start_time = time.time()

        endpoint = await self.discovery.discover()
        if endpoint is None and self.scanner is not None:
            logger.info("Broadcast discovery found nothing - falling back to subnet scan")
            endpoint = await self.scanner.find_on_subnet()
            if endpoint:
                identity = await self.scanner.who_am_i(endpoint.base_url)
                if identity:
                    logger.info(f"Device identity: {identity}")

        duration = time.time() - start_time
        if endpoint:
            logger.info(f"[PASS] Device located at {endpoint.base_url} in {duration:.1f}s")
        else:
            logger.info(f"Device not found ({duration:.1f}s)")
        return endpoint

    async def _discovery_service(self):
        """Background service: re-run discovery while no device is bound"""
        retry_seconds = self.config['discovery']['retry_seconds']
        logger.info(f"Discovery service started (retry every {retry_seconds}s while unbound)")

        while self.running:
            try:
                await asyncio.sleep(retry_seconds)
                if not self.running or self.session.is_ready:
                    continue

                logger.info("[REFRESH] No device bound - running discovery...")
                endpoint = await self.locate_device()
                if endpoint and not self.session.is_ready:
                    self.session.set_endpoint(endpoint)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Discovery service error: {e}")

    # ================== MONITORING ==================

    def _on_card_scanned(self, event: UIDEvent):
        self.scan_count += 1
        self.last_scan = event
        logger.info(f"[CARD] Scanned {event.uid} on {event.host}")

    def _check_device_health(self, status: Dict) -> None:
        """Log poll counters and warn when the device stopped answering since the previous check"""
        poller = status['poller']
        base_url = status['base_url']
        logger.info(f"Health check: {base_url} polling={poller['running']}, "
                    f"polls={poller['poll_count']}, errors={poller['error_count']}, "
                    f"scans={self.scan_count}")

        previous = self._health_snapshot
        self._health_snapshot = {
            'base_url': base_url,
            'poll_count': poller['poll_count'],
            'error_count': poller['error_count']
        }
        # Counters restart with every new poller
        if not previous or previous['base_url'] != base_url:
            previous = {'poll_count': 0, 'error_count': 0}

        answered = poller['poll_count'] - previous['poll_count']
        failed = poller['error_count'] - previous['error_count']
        if answered == 0 and failed > 0:
            logger.warning(f"Device at {base_url} answered none of the last {failed} polls")

    async def _monitoring_service(self):
        """Background service for periodic health logging"""
        check_interval = self.config['monitoring']['health_check_interval_minutes'] * 60
        stale_seconds = self.config['monitoring']['reading_stale_seconds']

        logger.info(f"Monitoring service started (every {check_interval/60} minutes)")

        while self.running:
            try:
                await asyncio.sleep(check_interval)
                if not self.running:
                    break

                status = self.session.get_status()
                poller = status['poller']
                if not poller:
                    logger.info("Health check: no device bound")
                    continue

                self._check_device_health(status)

                if self.last_scan:
                    age = time.time() - self.last_scan.observed_at.timestamp()
                    if age > stale_seconds:
                        logger.debug(f"Last card scan was {age:.0f}s ago")

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Monitoring service error: {e}")

    async def _start_api_server(self):
        """Start the FastAPI server"""
        config = uvicorn.Config(
            self.api.app,
            host=self.config['api']['host'],
            port=self.config['api']['port'],
            log_level="info",
            access_log=False  # We handle our own logging
        )

        server = uvicorn.Server(config)

        logger.info(f"Starting API server on {self.config['api']['host']}:{self.config['api']['port']}")
        logger.info(f"API documentation: http://localhost:{self.config['api']['port']}/docs")

        await server.serve()
