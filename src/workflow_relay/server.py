"""
Server entry point for workflow-relay.

Loads configuration, builds the relay and runs it under uvicorn.
"""

import asyncio
import logging

from workflow_relay.config import config_manager
from workflow_relay.progress import ProgressRelay, RelayServer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def run_server():
    """Run the relay until a shutdown signal."""
    config = config_manager.load()
    relay = ProgressRelay(completion_grace=config.stream.completion_grace_seconds)
    server = RelayServer(relay, config)

    logger.info(f"Starting progress relay on http://{config.server.host}:{config.server.port}")
    await server.serve()


def main():
    """Main entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
