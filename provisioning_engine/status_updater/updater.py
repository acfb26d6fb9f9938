# provisioning_engine/status_updater/updater.py
"""
Status Updater - optional background sweep that refreshes the observed
state of every server from its daemon.

Reads still refresh on access; this only keeps idle servers from going
stale. Runs as a separate process.
"""

import time
import logging
import signal

from provisioning_engine.core.models import UNKNOWN_STATE
from provisioning_engine.core.repository import ServerRepository
from provisioning_engine.orchestrator.server_orchestrator import ServerOrchestrator

logger = logging.getLogger(__name__)


class StatusUpdater:
    """
    Polls every server's daemon on a fixed interval.

    - No in-memory state (crash-safe)
    - Per-server failures are logged and skipped
    """

    def __init__(
        self,
        servers: ServerRepository,
        orchestrator: ServerOrchestrator,
        poll_interval: int = 30,
    ):
        self._servers = servers
        self._orchestrator = orchestrator
        self.poll_interval = poll_interval
        self._stop_requested = False

        logger.info(f"Status Updater initialized (poll interval: {poll_interval}s)")

    def start(self):
        """Run until SIGINT/SIGTERM."""
        logger.info("=" * 80)
        logger.info("STATUS UPDATER STARTED")
        logger.info("=" * 80)

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        while not self._stop_requested:
            try:
                self.update_cycle()
            except Exception as e:
                logger.error(f"Error in update cycle: {e}", exc_info=True)

            if not self._stop_requested:
                time.sleep(self.poll_interval)

        logger.info("Status Updater stopped")

    def stop(self):
        self._stop_requested = True

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        self.stop()

    def update_cycle(self) -> int:
        """
        Single sweep over all servers.

        Returns:
            Number of servers whose state could be read from the daemon
        """
        servers = self._servers.list_all()
        if not servers:
            logger.debug("No servers to refresh")
            return 0

        refreshed = 0
        for server in servers:
            try:
                state = self._orchestrator.refresh_status(server)
            except Exception as e:
                logger.error(f"Error refreshing server {server.server_id}: {e}")
                continue

            if state != UNKNOWN_STATE:
                refreshed += 1
            logger.debug(f"[{server.server_id}] state -> {state}")

        logger.info(f"Refreshed {refreshed}/{len(servers)} server(s)")
        return refreshed
