# provisioning_engine/orchestrator/locks.py

import logging
from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator
from uuid import UUID

from provisioning_engine.core.errors import ServerBusy

logger = logging.getLogger(__name__)


class ServerLockRegistry:
    """
    One lock per server id so lifecycle operations on the same
    server never interleave. Process-local.
    """

    def __init__(self, timeout: float = 30.0):
        self._timeout = timeout
        self._guard = Lock()
        self._locks: Dict[UUID, Lock] = {}

    def _lock_for(self, server_id: UUID) -> Lock:
        with self._guard:
            lock = self._locks.get(server_id)
            if lock is None:
                lock = Lock()
                self._locks[server_id] = lock
            return lock

    @contextmanager
    def hold(self, server_id: UUID) -> Iterator[None]:
        lock = self._lock_for(server_id)
        if not lock.acquire(timeout=self._timeout):
            logger.warning(f"Timed out waiting for lock on server {server_id}")
            raise ServerBusy(f"Server {server_id} is busy with another operation")
        try:
            yield
        finally:
            lock.release()

    def forget(self, server_id: UUID) -> None:
        """Drop the lock of a deleted server."""
        with self._guard:
            self._locks.pop(server_id, None)
