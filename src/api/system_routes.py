"""
System health and monitoring API routes
"""

from fastapi import APIRouter
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)

def create_system_routes(session, config):
    """Create system monitoring routes"""
    router = APIRouter(prefix="/api/system", tags=["system"])

    @router.get("/health")
    async def system_health():
        """System health check"""
        try:
            status = session.get_status()
            poller = status['poller']

            return {
                "status": "healthy" if status['ready'] else "waiting_for_device",
                "device": {
                    "base_url": status['base_url'],
                    "polling": poller['running'] if poller else False,
                    "poll_count": poller['poll_count'] if poller else 0,
                    "error_count": poller['error_count'] if poller else 0,
                    "event_count": poller['event_count'] if poller else 0,
                    "last_reading": poller['last_reading'] if poller else None
                },
                "discovery": {
                    "port": config['discovery']['port'],
                    "targets": len(config['discovery']['broadcast_addresses']),
                    "subnet_scan": config['discovery']['subnet_scan']['enabled']
                },
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

        except Exception as e:
            logger.error(f"Error building health status: {e}")
            return {
                "status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

    return router
