# provisioning_engine/cargo/catalog.py
"""Cargo administration: uploads, remote registration, containers and unit attachment."""

import hashlib
import logging
from pathlib import Path
from typing import List, Optional
from uuid import UUID, uuid4

import requests

from provisioning_engine.cargo.service import storage_path
from provisioning_engine.core.errors import (
    CargoContainerNotFound,
    CargoNotFound,
    DuplicateCargo,
    InvalidCargoContainer,
    InvalidRemoteCargo,
    UnitNotFound,
)
from provisioning_engine.core.models import (
    Cargo,
    CargoContainer,
    CargoContainerItem,
    CargoProperties,
    CargoType,
)
from provisioning_engine.core.repository import CargoRepository, UnitRepository

logger = logging.getLogger(__name__)


class CargoCatalogService:
    """
    Write side of cargo.

    Local uploads are content-addressed: the sha256 of the bytes is both
    the storage path and the duplicate check.
    """

    def __init__(
        self,
        cargo_repo: CargoRepository,
        units: UnitRepository,
        storage_dir: str = "storage",
        remote_timeout: float = 10.0,
    ):
        self._cargo_repo = cargo_repo
        self._units = units
        self._storage_dir = Path(storage_dir)
        self._remote_timeout = remote_timeout

    # ============================================
    # CARGO
    # ============================================

    def store_local(
        self,
        name: str,
        content: bytes,
        mime_type: Optional[str] = None,
        description: str = "",
        properties: Optional[CargoProperties] = None,
    ) -> Cargo:
        content_hash = hashlib.sha256(content).hexdigest()

        existing = self._cargo_repo.find_by_hash(content_hash)
        if existing is not None:
            raise DuplicateCargo(f"Content of {name} is already stored as cargo {existing.cargo_id}")

        path = storage_path(self._storage_dir, content_hash)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

        cargo = Cargo(
            cargo_id=uuid4(),
            name=name,
            cargo_type=CargoType.LOCAL,
            description=description,
            hash=content_hash,
            size=len(content),
            mime_type=mime_type or "application/octet-stream",
            properties=properties or CargoProperties(),
        )

        try:
            self._cargo_repo.create_cargo(cargo)
        except Exception:
            logger.error(f"Failed to record cargo {name}, removing {path}")
            path.unlink(missing_ok=True)
            raise

        logger.info(f"Stored local cargo {name} ({cargo.size} bytes, {content_hash[:12]})")
        return cargo

    def register_remote(
        self,
        name: str,
        remote_url: str,
        description: str = "",
        properties: Optional[CargoProperties] = None,
    ) -> Cargo:
        """The URL must answer a HEAD request with a non-zero Content-Length."""
        try:
            response = requests.head(remote_url, allow_redirects=True, timeout=self._remote_timeout)
        except requests.RequestException as e:
            raise InvalidRemoteCargo(f"Failed to validate remote URL {remote_url}: {e}") from e

        if response.status_code >= 400:
            raise InvalidRemoteCargo(f"Remote URL {remote_url} returned HTTP {response.status_code}")

        try:
            size = int(response.headers.get("content-length") or 0)
        except ValueError:
            size = 0
        if size <= 0:
            raise InvalidRemoteCargo(f"Could not determine file size of {remote_url}")

        cargo = Cargo(
            cargo_id=uuid4(),
            name=name,
            cargo_type=CargoType.REMOTE,
            description=description,
            size=size,
            mime_type=response.headers.get("content-type") or "application/octet-stream",
            remote_url=remote_url,
            properties=properties or CargoProperties(),
        )
        self._cargo_repo.create_cargo(cargo)

        logger.info(f"Registered remote cargo {name} -> {remote_url}")
        return cargo

    def get_cargo(self, cargo_id: UUID) -> Cargo:
        cargo = self._cargo_repo.get_cargo(cargo_id)
        if cargo is None:
            raise CargoNotFound(f"Cargo {cargo_id} not found")
        return cargo

    def list_cargo(self) -> List[Cargo]:
        return self._cargo_repo.list_cargo()

    # ============================================
    # CONTAINERS
    # ============================================

    def create_container(
        self,
        name: str,
        items: List[CargoContainerItem],
        description: str = "",
    ) -> CargoContainer:
        for item in items:
            if self._cargo_repo.get_cargo(item.cargo_id) is None:
                raise InvalidCargoContainer(f"Cargo {item.cargo_id} not found")

        container = CargoContainer(
            container_id=uuid4(),
            name=name,
            description=description,
            items=list(items),
        )
        self._cargo_repo.create_container(container)

        logger.info(f"Created cargo container {name} with {len(items)} item(s)")
        return container

    def get_container(self, container_id: UUID) -> CargoContainer:
        container = self._cargo_repo.get_container(container_id)
        if container is None:
            raise CargoContainerNotFound(f"Cargo container {container_id} not found")
        return container

    def list_containers(self) -> List[CargoContainer]:
        return self._cargo_repo.list_containers()

    # ============================================
    # UNIT ATTACHMENT
    # ============================================

    def attach_to_unit(self, container_id: UUID, unit_id: UUID) -> None:
        """Append to the unit's ship order; attaching twice is a no-op."""
        self.get_container(container_id)
        unit = self._units.get(unit_id)
        if unit is None:
            raise UnitNotFound(f"Unit {unit_id} not found")

        if container_id in unit.cargo_container_ids:
            return

        self._units.set_cargo_containers(unit_id, unit.cargo_container_ids + [container_id])
        logger.info(f"Attached cargo container {container_id} to unit {unit.short_name}")

    def detach_from_unit(self, container_id: UUID, unit_id: UUID) -> None:
        unit = self._units.get(unit_id)
        if unit is None:
            raise UnitNotFound(f"Unit {unit_id} not found")

        remaining = [value for value in unit.cargo_container_ids if value != container_id]
        if len(remaining) == len(unit.cargo_container_ids):
            return

        self._units.set_cargo_containers(unit_id, remaining)
        logger.info(f"Detached cargo container {container_id} from unit {unit.short_name}")
