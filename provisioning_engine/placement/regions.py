"""Region administration."""

import logging
from typing import List, Optional, Set
from uuid import UUID, uuid4

from provisioning_engine.core.errors import (
    DuplicateRegionIdentifier,
    FallbackRegionCycle,
    RegionInUse,
    RegionNotFound,
)
from provisioning_engine.core.models import Region, utcnow
from provisioning_engine.core.repository import NodeRepository, RegionRepository

logger = logging.getLogger(__name__)


_UNSET = object()


class RegionService:
    """
    Create, update and delete regions.

    Fallback chains are checked for cycles whenever a region is
    written, so the selector only meets a cycle if data was edited
    behind the service's back.
    """

    def __init__(self, regions: RegionRepository, nodes: NodeRepository):
        self._regions = regions
        self._nodes = nodes

    def get_region(self, region_id: UUID) -> Region:
        region = self._regions.get(region_id)
        if region is None:
            raise RegionNotFound(f"Region {region_id} not found")
        return region

    def list_regions(self) -> List[Region]:
        return self._regions.list_all()

    # ============================================
    # WRITE
    # ============================================

    def create_region(
        self,
        name: str,
        identifier: str,
        country_id: Optional[str] = None,
        fallback_region_id: Optional[UUID] = None,
        server_limit: Optional[int] = None,
    ) -> Region:
        if self._regions.get_by_identifier(identifier) is not None:
            raise DuplicateRegionIdentifier(f"Region identifier '{identifier}' is already in use")

        region = Region(
            region_id=uuid4(),
            name=name,
            identifier=identifier,
            country_id=country_id,
            fallback_region_id=fallback_region_id,
            server_limit=server_limit,
        )

        if fallback_region_id is not None:
            self._check_fallback(region.region_id, fallback_region_id)

        self._regions.create(region)
        logger.info(f"Created region {identifier} ({region.region_id})")
        return region

    def update_region(
        self,
        region_id: UUID,
        name: Optional[str] = None,
        identifier: Optional[str] = None,
        country_id=_UNSET,
        fallback_region_id=_UNSET,
        server_limit=_UNSET,
    ) -> Region:
        """
        Apply a partial update.

        country_id, fallback_region_id and server_limit accept None to
        clear the field; leave them out to keep the current value.
        """
        region = self.get_region(region_id)

        if identifier is not None and identifier != region.identifier:
            existing = self._regions.get_by_identifier(identifier)
            if existing is not None and existing.region_id != region_id:
                raise DuplicateRegionIdentifier(f"Region identifier '{identifier}' is already in use")
            region.identifier = identifier

        if name is not None:
            region.name = name
        if country_id is not _UNSET:
            region.country_id = country_id
        if server_limit is not _UNSET:
            region.server_limit = server_limit
        if fallback_region_id is not _UNSET:
            if fallback_region_id is not None:
                self._check_fallback(region_id, fallback_region_id)
            region.fallback_region_id = fallback_region_id

        region.updated_at = utcnow()
        self._regions.update(region)
        logger.info(f"Updated region {region.identifier} ({region_id})")
        return region

    def delete_region(self, region_id: UUID) -> None:
        region = self.get_region(region_id)

        if self._nodes.list_by_region(region_id):
            raise RegionInUse(f"Region {region.identifier} still has nodes")
        if self._regions.count_fallback_references(region_id) > 0:
            raise RegionInUse(f"Region {region.identifier} is another region's fallback")

        self._regions.delete(region_id)
        logger.info(f"Deleted region {region.identifier} ({region_id})")

    # ============================================
    # FALLBACK CHECKS
    # ============================================

    def _check_fallback(self, region_id: UUID, fallback_region_id: UUID) -> None:
        """Walk the proposed chain; it must exist and never lead back to region_id."""
        if fallback_region_id == region_id:
            raise FallbackRegionCycle("A region cannot be its own fallback")

        visited: Set[UUID] = {region_id}
        current_id: Optional[UUID] = fallback_region_id
        first = True

        while current_id is not None:
            if current_id in visited:
                raise FallbackRegionCycle(
                    f"Fallback {fallback_region_id} would create a cycle through region {current_id}"
                )
            visited.add(current_id)

            current = self._regions.get(current_id)
            if current is None:
                if first:
                    raise RegionNotFound(f"Fallback region {fallback_region_id} not found")
                break

            first = False
            current_id = current.fallback_region_id
