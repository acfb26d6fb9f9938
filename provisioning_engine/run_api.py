# provisioning_engine/run_api.py
"""Run the panel-facing API."""

import logging
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import uvicorn

from provisioning_engine.config import settings

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    host = os.environ.get("API_HOST", "0.0.0.0")
    port = int(os.environ.get("API_PORT", "3000"))

    # no migrations; create missing tables on boot
    import provisioning_engine.infrastructure.postgres.models  # noqa: F401
    from provisioning_engine.infrastructure.postgres.database import init_db
    init_db()

    logger.info(f"Starting Provisioning Engine API on {host}:{port}")

    uvicorn.run(
        "provisioning_engine.api.main:app",
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
