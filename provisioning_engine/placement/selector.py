"""Node and allocation selection."""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Set
from uuid import UUID

from provisioning_engine.core.errors import (
    AllocationAlreadyAssigned,
    AllocationNodeMismatch,
    AllocationNotFound,
    ConflictError,
    FallbackRegionCycle,
    InvalidPlacementTarget,
    NoAvailableAllocations,
    NoAvailableNodes,
    NodeNotFound,
    NodeOffline,
    RegionAtCapacity,
    RegionNotFound,
)
from provisioning_engine.core.models import Allocation, Node, Region
from provisioning_engine.core.repository import (
    AllocationRepository,
    NodeRepository,
    RegionRepository,
    ServerRepository,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlacementTarget:
    """
    Where a new server should go.

    Either an explicit node (optionally with a specific allocation)
    or a region whose fallback chain may be followed.
    """

    node_id: Optional[UUID] = None
    allocation_id: Optional[UUID] = None
    region_id: Optional[UUID] = None

    def __post_init__(self):
        if self.node_id is None and self.region_id is None:
            raise InvalidPlacementTarget("Either node_id or region_id is required")
        if self.node_id is not None and self.region_id is not None:
            raise InvalidPlacementTarget("node_id and region_id are mutually exclusive")
        if self.allocation_id is not None and self.node_id is None:
            raise InvalidPlacementTarget("allocation_id requires node_id")

    @property
    def pins_allocation(self) -> bool:
        return self.allocation_id is not None


@dataclass(frozen=True)
class Placement:
    node: Node
    allocation: Allocation
    region_id: Optional[UUID] = None


class LeastLoadedPolicy:
    """
    Order candidate nodes by how many servers they already host.

    Ties keep input order (sorted() is stable).
    """

    def order(self, nodes: List[Node], load: Callable[[Node], int]) -> List[Node]:
        return sorted(nodes, key=load)


class PlacementSelector:
    """Picks a node and a free allocation for a new server. Read-only."""

    def __init__(
        self,
        regions: RegionRepository,
        nodes: NodeRepository,
        allocations: AllocationRepository,
        servers: ServerRepository,
        policy: Optional[LeastLoadedPolicy] = None,
    ):
        self._regions = regions
        self._nodes = nodes
        self._allocations = allocations
        self._servers = servers
        self._policy = policy or LeastLoadedPolicy()

    def select(self, target: PlacementTarget) -> Placement:
        if target.node_id is not None:
            return self._select_on_node(target.node_id, target.allocation_id)
        return self._select_in_region(target.region_id)

    # ============================================
    # EXPLICIT NODE
    # ============================================

    def _select_on_node(self, node_id: UUID, allocation_id: Optional[UUID]) -> Placement:
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFound(f"Node {node_id} not found")
        if not node.is_online:
            raise NodeOffline(f"Node {node.name} is offline")

        if allocation_id is not None:
            allocation = self._allocations.get(allocation_id)
            if allocation is None:
                raise AllocationNotFound(f"Allocation {allocation_id} not found")
            if allocation.node_id != node.node_id:
                raise AllocationNodeMismatch(
                    f"Allocation {allocation_id} does not belong to node {node.name}"
                )
            if allocation.assigned:
                raise AllocationAlreadyAssigned(f"Allocation {allocation_id} is already assigned")
        else:
            allocation = self._allocations.find_free(node.node_id)
            if allocation is None:
                raise NoAvailableAllocations(f"Node {node.name} has no free allocations")

        logger.info(
            f"Selected node {node.name} allocation {allocation.bind_address}:{allocation.port}"
        )
        return Placement(node=node, allocation=allocation, region_id=node.region_id)

    # ============================================
    # REGION + FALLBACK CHAIN
    # ============================================

    def _select_in_region(self, region_id: UUID) -> Placement:
        region = self._regions.get(region_id)
        if region is None:
            raise RegionNotFound(f"Region {region_id} not found")

        visited: Set[UUID] = set()
        first_error: Optional[ConflictError] = None

        while region is not None:
            if region.region_id in visited:
                raise FallbackRegionCycle(
                    f"Fallback chain starting at region {region_id} revisits {region.identifier}"
                )
            visited.add(region.region_id)

            placement, error = self._try_region(region)
            if placement is not None:
                return placement

            logger.info(f"Region {region.identifier} unavailable: {error}")
            if first_error is None:
                first_error = error

            if region.fallback_region_id is None:
                break

            fallback = self._regions.get(region.fallback_region_id)
            if fallback is None:
                logger.warning(
                    f"Region {region.identifier} points at missing fallback {region.fallback_region_id}"
                )
            region = fallback

        raise first_error

    def _try_region(self, region: Region):
        """Returns (placement, None) on success or (None, error) when exhausted."""
        nodes = self._nodes.list_by_region(region.region_id)

        if region.server_limit is not None:
            placed = self._servers.count_by_nodes(node.node_id for node in nodes)
            if placed >= region.server_limit:
                return None, RegionAtCapacity(
                    f"Region {region.identifier} is at capacity ({placed}/{region.server_limit})"
                )

        online = [node for node in nodes if node.is_online]
        if not online:
            return None, NoAvailableNodes(f"Region {region.identifier} has no online nodes")

        load = lambda node: self._servers.count_by_nodes([node.node_id])
        for node in self._policy.order(online, load):
            allocation = self._allocations.find_free(node.node_id)
            if allocation is not None:
                logger.info(
                    f"Selected node {node.name} in region {region.identifier} "
                    f"allocation {allocation.bind_address}:{allocation.port}"
                )
                return Placement(node=node, allocation=allocation, region_id=region.region_id), None

        return None, NoAvailableAllocations(
            f"No free allocations on any node in region {region.identifier}"
        )
