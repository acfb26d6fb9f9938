# provisioning_engine/run_status_updater.py
"""Run the status updater sweep."""

import logging
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from provisioning_engine.config import settings

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    from provisioning_engine.container import server_orchestrator, server_repository
    from provisioning_engine.status_updater.updater import StatusUpdater

    logger.info("Starting Status Updater")

    updater = StatusUpdater(
        servers=server_repository,
        orchestrator=server_orchestrator,
        poll_interval=settings.status_poll_interval,
    )

    try:
        updater.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
