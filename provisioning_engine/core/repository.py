# provisioning_engine/core/repository.py

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import UUID

from provisioning_engine.core.models import (
    Allocation,
    Cargo,
    CargoContainer,
    Node,
    Region,
    Server,
    ServerPhase,
    Unit,
)


class RegionRepository(ABC):
    """Persistence contract for regions."""

    @abstractmethod
    def create(self, region: Region) -> None:
        """
        Persist a new region.
        Must fail if the identifier is already taken.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, region_id: UUID) -> Optional[Region]:
        raise NotImplementedError

    @abstractmethod
    def get_by_identifier(self, identifier: str) -> Optional[Region]:
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> List[Region]:
        raise NotImplementedError

    @abstractmethod
    def update(self, region: Region) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, region_id: UUID) -> None:
        raise NotImplementedError

    @abstractmethod
    def count_fallback_references(self, region_id: UUID) -> int:
        """Number of regions that use this region as their fallback."""
        raise NotImplementedError


class NodeRepository(ABC):
    """Persistence contract for nodes."""

    @abstractmethod
    def create(self, node: Node) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, node_id: UUID) -> Optional[Node]:
        raise NotImplementedError

    @abstractmethod
    def list_by_region(self, region_id: UUID) -> List[Node]:
        """All nodes of a region, online or not."""
        raise NotImplementedError

    @abstractmethod
    def update(self, node: Node) -> None:
        raise NotImplementedError


class AllocationRepository(ABC):
    """Persistence contract for allocations."""

    @abstractmethod
    def create(self, allocation: Allocation) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, allocation_id: UUID) -> Optional[Allocation]:
        raise NotImplementedError

    @abstractmethod
    def find_free(self, node_id: UUID) -> Optional[Allocation]:
        """First unassigned allocation on a node, or None."""
        raise NotImplementedError

    @abstractmethod
    def try_reserve(self, allocation_id: UUID) -> bool:
        """
        Atomically flip assigned false -> true.
        Returns True only for the caller that performed the flip.
        """
        raise NotImplementedError

    @abstractmethod
    def release(self, allocation_id: UUID) -> None:
        raise NotImplementedError


class UnitRepository(ABC):
    """Persistence contract for units."""

    @abstractmethod
    def create(self, unit: Unit) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, unit_id: UUID) -> Optional[Unit]:
        raise NotImplementedError

    @abstractmethod
    def set_cargo_containers(self, unit_id: UUID, container_ids: List[UUID]) -> None:
        """Replace the ordered container list. Raises UnitNotFound."""
        raise NotImplementedError


class ServerRepository(ABC):
    """Persistence contract for servers."""

    @abstractmethod
    def create(self, server: Server) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, server_id: UUID) -> Optional[Server]:
        raise NotImplementedError

    @abstractmethod
    def get_by_internal_id(self, internal_id: str) -> Optional[Server]:
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> List[Server]:
        raise NotImplementedError

    @abstractmethod
    def list_by_user(self, user_id: UUID) -> List[Server]:
        raise NotImplementedError

    @abstractmethod
    def update(self, server: Server) -> None:
        """Persist every mutable server field."""
        raise NotImplementedError

    @abstractmethod
    def set_phase(self, server_id: UUID, phase: ServerPhase, changed_at: datetime) -> None:
        raise NotImplementedError

    @abstractmethod
    def record_observation(self, server_id: UUID, state: str, observed_at: datetime) -> None:
        """Write only the observed-state cache columns."""
        raise NotImplementedError

    @abstractmethod
    def count_by_nodes(self, node_ids: Iterable[UUID]) -> int:
        raise NotImplementedError

    @abstractmethod
    def delete_and_release(self, server_id: UUID, allocation_id: UUID) -> None:
        """
        Remove the server row and unassign its allocation
        in a single transaction.
        """
        raise NotImplementedError


class CargoRepository(ABC):
    """Persistence contract for cargo and cargo containers."""

    @abstractmethod
    def create_cargo(self, cargo: Cargo) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_cargo(self, cargo_id: UUID) -> Optional[Cargo]:
        raise NotImplementedError

    @abstractmethod
    def find_by_hash(self, content_hash: str) -> Optional[Cargo]:
        raise NotImplementedError

    @abstractmethod
    def list_cargo(self) -> List[Cargo]:
        raise NotImplementedError

    @abstractmethod
    def create_container(self, container: CargoContainer) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_container(self, container_id: UUID) -> Optional[CargoContainer]:
        raise NotImplementedError

    @abstractmethod
    def list_containers(self) -> List[CargoContainer]:
        raise NotImplementedError
