# provisioning_engine/cargo/service.py
"""Resolves the files a server needs into URLs the daemon can fetch."""

import logging
import time
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import urlencode
from uuid import UUID

from provisioning_engine.cargo import signing
from provisioning_engine.core.errors import CargoNotFound
from provisioning_engine.core.models import Cargo, CargoFile, CargoType, Server, Unit
from provisioning_engine.core.repository import CargoRepository

logger = logging.getLogger(__name__)


def storage_path(storage_dir: Path, content_hash: str) -> Path:
    """Local cargo lives at {storage}/cargo/{hash[:2]}/{hash}."""
    return Path(storage_dir) / "cargo" / content_hash[:2] / content_hash


class CargoDistributionService:
    """
    Local cargo is served through a signed, expiring panel URL;
    remote cargo is handed to the daemon as-is.
    """

    def __init__(
        self,
        cargo_repo: CargoRepository,
        app_url: str,
        app_key: str,
        link_ttl_seconds: int = 900,
        storage_dir: str = "storage",
        clock: Callable[[], float] = time.time,
    ):
        if not app_key:
            raise ValueError("app_key must be set to sign cargo download links")

        self._cargo_repo = cargo_repo
        self._app_url = app_url.rstrip("/")
        self._app_key = app_key
        self._link_ttl_seconds = link_ttl_seconds
        self._storage_dir = Path(storage_dir)
        self._clock = clock

    # -------------------------
    # RESOLVE
    # -------------------------

    def resolve_cargo_files(self, server: Server, unit: Unit) -> List[CargoFile]:
        """
        Every item of every container attached to the unit, in stored order.
        Duplicate target paths are passed through unchanged.
        """
        files: List[CargoFile] = []

        for container_id in unit.cargo_container_ids:
            container = self._cargo_repo.get_container(container_id)
            if container is None:
                logger.warning(f"Unit {unit.short_name} references missing cargo container {container_id}")
                continue

            for item in container.items:
                cargo = self._cargo_repo.get_cargo(item.cargo_id)
                if cargo is None:
                    logger.warning(f"Cargo container {container.name} references missing cargo {item.cargo_id}")
                    continue

                url = self.url_for(cargo, server.server_id)
                if not url:
                    logger.warning(f"Remote cargo {cargo.cargo_id} has no URL, skipping")
                    continue

                files.append(
                    CargoFile(
                        cargo_id=cargo.cargo_id,
                        url=url,
                        target_path=item.target_path,
                        properties=cargo.properties,
                    )
                )

        logger.debug(f"Resolved {len(files)} cargo files for server {server.server_id}")
        return files

    def url_for(self, cargo: Cargo, server_id: UUID) -> Optional[str]:
        if cargo.cargo_type == CargoType.REMOTE:
            return cargo.remote_url

        expires = int(self._clock()) + self._link_ttl_seconds
        query = urlencode({
            "serverId": str(server_id),
            "expires": expires,
            "signature": signing.sign(cargo.cargo_id, server_id, expires, self._app_key),
        })
        return f"{self._app_url}/api/cargo/{cargo.cargo_id}/download?{query}"

    # -------------------------
    # DOWNLOAD
    # -------------------------

    def verify_download(self, cargo_id: UUID, server_id: UUID, expires: int, signature: str) -> Cargo:
        """Check the link, then return the cargo it points at."""
        signing.verify(cargo_id, server_id, expires, signature, self._app_key, now=self._clock())

        cargo = self._cargo_repo.get_cargo(cargo_id)
        if cargo is None:
            raise CargoNotFound(f"Cargo {cargo_id} not found")
        return cargo

    def local_path(self, cargo: Cargo) -> Path:
        if not cargo.hash:
            raise CargoNotFound(f"Cargo {cargo.cargo_id} has no stored content")
        return storage_path(self._storage_dir, cargo.hash)
