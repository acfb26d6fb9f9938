#provisioning_engine/infrastructure/postgres/node_repository.py
"""Region, node and allocation repositories."""

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from provisioning_engine.core.errors import (
    AllocationNotFound,
    DuplicateRegionIdentifier,
    NodeNotFound,
    RegionNotFound,
    RepositoryError,
)
from provisioning_engine.core.models import Allocation, Node, Region, utcnow
from provisioning_engine.core.repository import (
    AllocationRepository,
    NodeRepository,
    RegionRepository,
)
from provisioning_engine.infrastructure.postgres.database import SessionLocal
from provisioning_engine.infrastructure.postgres.models import AllocationORM, NodeORM, RegionORM


logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

def orm_to_region(orm: RegionORM) -> Region:
    return Region(
        region_id=orm.region_id,
        name=orm.name,
        identifier=orm.identifier,
        country_id=orm.country_id,
        fallback_region_id=orm.fallback_region_id,
        server_limit=orm.server_limit,
        created_at=orm.created_at,
        updated_at=orm.updated_at,
    )


def region_to_orm(region: Region) -> RegionORM:
    return RegionORM(
        region_id=region.region_id,
        name=region.name,
        identifier=region.identifier,
        country_id=region.country_id,
        fallback_region_id=region.fallback_region_id,
        server_limit=region.server_limit,
        created_at=region.created_at,
        updated_at=region.updated_at,
    )


def orm_to_node(orm: NodeORM) -> Node:
    return Node(
        node_id=orm.node_id,
        name=orm.name,
        fqdn=orm.fqdn,
        port=orm.port,
        connection_key=orm.connection_key,
        is_online=orm.is_online,
        last_checked=orm.last_checked,
        region_id=orm.region_id,
        created_at=orm.created_at,
        updated_at=orm.updated_at,
    )


def node_to_orm(node: Node) -> NodeORM:
    return NodeORM(
        node_id=node.node_id,
        name=node.name,
        fqdn=node.fqdn,
        port=node.port,
        connection_key=node.connection_key,
        is_online=node.is_online,
        last_checked=node.last_checked,
        region_id=node.region_id,
        created_at=node.created_at,
        updated_at=node.updated_at,
    )


def orm_to_allocation(orm: AllocationORM) -> Allocation:
    return Allocation(
        allocation_id=orm.allocation_id,
        node_id=orm.node_id,
        bind_address=orm.bind_address,
        port=orm.port,
        alias=orm.alias,
        notes=orm.notes,
        assigned=orm.assigned,
    )


def allocation_to_orm(allocation: Allocation) -> AllocationORM:
    return AllocationORM(
        allocation_id=allocation.allocation_id,
        node_id=allocation.node_id,
        bind_address=allocation.bind_address,
        port=allocation.port,
        alias=allocation.alias,
        notes=allocation.notes,
        assigned=allocation.assigned,
    )


class _SessionMixin:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    def _get_session(self) -> Session:
        return self._session_factory()


# ============================================
# Regions
# ============================================

class PostgresRegionRepository(_SessionMixin, RegionRepository):
    """Regions and their fallback links."""

    def create(self, region: Region) -> None:
        session = self._get_session()
        try:
            session.add(region_to_orm(region))
            session.commit()
            logger.debug(f"[region_repo] created region {region.region_id} ({region.identifier})")
        except IntegrityError as e:
            session.rollback()
            raise DuplicateRegionIdentifier(
                f"Region identifier '{region.identifier}' is already in use"
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to create region: {e}") from e
        finally:
            session.close()

    def get(self, region_id: UUID) -> Optional[Region]:
        session = self._get_session()
        try:
            orm = session.get(RegionORM, region_id)
            return orm_to_region(orm) if orm else None
        finally:
            session.close()

    def get_by_identifier(self, identifier: str) -> Optional[Region]:
        session = self._get_session()
        try:
            orm = session.query(RegionORM).filter(
                RegionORM.identifier == identifier
            ).first()
            return orm_to_region(orm) if orm else None
        finally:
            session.close()

    def list_all(self) -> List[Region]:
        session = self._get_session()
        try:
            orms = session.query(RegionORM).order_by(RegionORM.name.asc()).all()
            return [orm_to_region(orm) for orm in orms]
        finally:
            session.close()

    def update(self, region: Region) -> None:
        session = self._get_session()
        try:
            orm = session.get(RegionORM, region.region_id)
            if not orm:
                raise RegionNotFound(f"Region {region.region_id} not found")

            orm.name = region.name
            orm.identifier = region.identifier
            orm.country_id = region.country_id
            orm.fallback_region_id = region.fallback_region_id
            orm.server_limit = region.server_limit
            orm.updated_at = utcnow()

            session.commit()
            logger.debug(f"[region_repo] updated region {region.region_id}")
        except IntegrityError as e:
            session.rollback()
            raise DuplicateRegionIdentifier(
                f"Region identifier '{region.identifier}' is already in use"
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to update region: {e}") from e
        finally:
            session.close()

    def delete(self, region_id: UUID) -> None:
        session = self._get_session()
        try:
            orm = session.get(RegionORM, region_id)
            if not orm:
                raise RegionNotFound(f"Region {region_id} not found")
            session.delete(orm)
            session.commit()
            logger.debug(f"[region_repo] deleted region {region_id}")
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to delete region: {e}") from e
        finally:
            session.close()

    def count_fallback_references(self, region_id: UUID) -> int:
        session = self._get_session()
        try:
            return session.query(RegionORM).filter(
                RegionORM.fallback_region_id == region_id
            ).count()
        finally:
            session.close()


# ============================================
# Nodes
# ============================================

class PostgresNodeRepository(_SessionMixin, NodeRepository):
    """Daemon hosts."""

    def create(self, node: Node) -> None:
        session = self._get_session()
        try:
            session.add(node_to_orm(node))
            session.commit()
            logger.debug(f"[node_repo] registered node {node.node_id} ({node.name})")
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to create node: {e}") from e
        finally:
            session.close()

    def get(self, node_id: UUID) -> Optional[Node]:
        session = self._get_session()
        try:
            orm = session.get(NodeORM, node_id)
            return orm_to_node(orm) if orm else None
        finally:
            session.close()

    def list_by_region(self, region_id: UUID) -> List[Node]:
        session = self._get_session()
        try:
            orms = session.query(NodeORM).filter(
                NodeORM.region_id == region_id
            ).order_by(NodeORM.created_at.asc()).all()
            return [orm_to_node(orm) for orm in orms]
        finally:
            session.close()

    def update(self, node: Node) -> None:
        session = self._get_session()
        try:
            orm = session.get(NodeORM, node.node_id)
            if not orm:
                raise NodeNotFound(f"Node {node.node_id} not found")

            orm.name = node.name
            orm.fqdn = node.fqdn
            orm.port = node.port
            orm.connection_key = node.connection_key
            orm.is_online = node.is_online
            orm.last_checked = node.last_checked
            orm.region_id = node.region_id
            orm.updated_at = utcnow()

            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to update node: {e}") from e
        finally:
            session.close()


# ============================================
# Allocations
# ============================================

class PostgresAllocationRepository(_SessionMixin, AllocationRepository):
    """Bind address/port pairs and their assignment flag."""

    def create(self, allocation: Allocation) -> None:
        session = self._get_session()
        try:
            session.add(allocation_to_orm(allocation))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to create allocation: {e}") from e
        finally:
            session.close()

    def get(self, allocation_id: UUID) -> Optional[Allocation]:
        session = self._get_session()
        try:
            orm = session.get(AllocationORM, allocation_id)
            return orm_to_allocation(orm) if orm else None
        finally:
            session.close()

    def find_free(self, node_id: UUID) -> Optional[Allocation]:
        session = self._get_session()
        try:
            orm = session.query(AllocationORM).filter(
                AllocationORM.node_id == node_id,
                AllocationORM.assigned.is_(False),
            ).order_by(
                AllocationORM.port.asc()
            ).first()
            return orm_to_allocation(orm) if orm else None
        finally:
            session.close()

    # -------------------------
    # RESERVE (compare-and-swap)
    # -------------------------

    def try_reserve(self, allocation_id: UUID) -> bool:
        """
        Flip assigned false -> true with a single conditional UPDATE.

        Two concurrent callers can both see the allocation as free;
        only the one whose UPDATE matches a row wins.
        """
        session = self._get_session()
        try:
            updated = session.query(AllocationORM).filter(
                AllocationORM.allocation_id == allocation_id,
                AllocationORM.assigned.is_(False),
            ).update({AllocationORM.assigned: True}, synchronize_session=False)

            session.commit()
            won = updated == 1
            logger.debug(f"[allocation_repo] try_reserve {allocation_id} -> {won}")
            return won
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to reserve allocation: {e}") from e
        finally:
            session.close()

    def release(self, allocation_id: UUID) -> None:
        session = self._get_session()
        try:
            updated = session.query(AllocationORM).filter(
                AllocationORM.allocation_id == allocation_id
            ).update({AllocationORM.assigned: False}, synchronize_session=False)

            if updated == 0:
                raise AllocationNotFound(f"Allocation {allocation_id} not found")

            session.commit()
            logger.debug(f"[allocation_repo] released {allocation_id}")
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to release allocation: {e}") from e
        finally:
            session.close()
