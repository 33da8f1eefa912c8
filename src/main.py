"""
DisperSync Device Link - Main Entry Point
"""

import asyncio
import signal
import sys
import logging
from pathlib import Path
import os

from services.device_link_server import DeviceLinkServer

logger = logging.getLogger(__name__)

async def main():
    """Main entry point"""

    # Handle graceful shutdown
    server = None
    loop = asyncio.get_running_loop()

    def signal_handler(signum):
        logger.info(f"Received signal {signum}, shutting down...")
        if server:
            asyncio.create_task(server.stop())

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, signal_handler, signum)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    try:
        # Get config file path from environment variable or use default
        config_path = os.environ.get('CONFIG_FILE', 'config/config.yaml')
        logger.info(f"Using configuration file name from environment: {config_path}")

        server = DeviceLinkServer(config_path=config_path)
        await server.start()

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Device link failed: {e}")
        return 1
    finally:
        if server and server.running:
            await server.stop()

    return 0

def run():
    """Console script entry point"""
    # Ensure logs directory exists
    Path("logs").mkdir(exist_ok=True)

    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nDevice link stopped by user")
        sys.exit(0)

if __name__ == "__main__":
    run()
