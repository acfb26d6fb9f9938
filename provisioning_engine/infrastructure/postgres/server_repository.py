#provisioning_engine/infrastructure/postgres/server_repository.py
"""PostgreSQL server repository."""

import logging
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from provisioning_engine.core.errors import (
    AllocationAlreadyAssigned,
    RepositoryError,
    ServerNotFound,
)
from provisioning_engine.core.models import Server, ServerPhase, utcnow
from provisioning_engine.core.repository import ServerRepository
from provisioning_engine.infrastructure.postgres.database import SessionLocal
from provisioning_engine.infrastructure.postgres.models import (
    SERVER_ALLOCATION_CONSTRAINT,
    AllocationORM,
    ServerORM,
)


logger = logging.getLogger(__name__)


def _is_allocation_conflict(error: IntegrityError) -> bool:
    """PostgreSQL names the constraint, SQLite names the column."""
    message = str(error.orig)
    return SERVER_ALLOCATION_CONSTRAINT in message or "servers.allocation_id" in message


# ============================================
# Mapping Functions
# ============================================

def orm_to_server(orm: ServerORM) -> Server:
    """Convert ORM model to domain model."""
    return Server(
        server_id=orm.server_id,
        internal_id=orm.internal_id,
        name=orm.name,
        node_id=orm.node_id,
        allocation_id=orm.allocation_id,
        unit_id=orm.unit_id,
        user_id=orm.user_id,
        project_id=orm.project_id,
        memory_mib=orm.memory_mib,
        disk_mib=orm.disk_mib,
        cpu_percent=orm.cpu_percent,
        docker_image=orm.docker_image,
        startup_command=orm.startup_command,
        feature_selections=dict(orm.feature_selections or {}),
        validation_token=orm.validation_token,
        phase=orm.phase,
        phase_changed_at=orm.phase_changed_at,
        observed_state=orm.observed_state,
        observed_at=orm.observed_at,
        created_at=orm.created_at,
        updated_at=orm.updated_at,
    )


def server_to_orm(server: Server) -> ServerORM:
    """Convert domain model to ORM model."""
    return ServerORM(
        server_id=server.server_id,
        internal_id=server.internal_id,
        name=server.name,
        node_id=server.node_id,
        allocation_id=server.allocation_id,
        unit_id=server.unit_id,
        user_id=server.user_id,
        project_id=server.project_id,
        memory_mib=server.memory_mib,
        disk_mib=server.disk_mib,
        cpu_percent=server.cpu_percent,
        docker_image=server.docker_image,
        startup_command=server.startup_command,
        feature_selections=dict(server.feature_selections),
        validation_token=server.validation_token,
        phase=server.phase,
        phase_changed_at=server.phase_changed_at,
        observed_state=server.observed_state,
        observed_at=server.observed_at,
        created_at=server.created_at,
        updated_at=server.updated_at,
    )


# ============================================
# Repository Implementation
# ============================================

class PostgresServerRepository(ServerRepository):
    """PostgreSQL implementation using SQLAlchemy with dependency injection."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Args:
            session_factory: SQLAlchemy session factory. If None, uses default production factory.
        """
        self._session_factory = session_factory or SessionLocal

    def _get_session(self) -> Session:
        return self._session_factory()

    # -------------------------
    # CREATE
    # -------------------------

    def create(self, server: Server) -> None:
        session = self._get_session()
        try:
            session.add(server_to_orm(server))
            session.commit()
            logger.debug(f"[server_repo] create {server.server_id} -> done")
        except IntegrityError as e:
            session.rollback()
            if _is_allocation_conflict(e):
                raise AllocationAlreadyAssigned(
                    f"Allocation {server.allocation_id} is already held by another server"
                ) from e
            raise RepositoryError(f"Failed to create server {server.server_id}: {e.orig}") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to create server: {e}") from e
        finally:
            session.close()

    # -------------------------
    # READ
    # -------------------------

    def get(self, server_id: UUID) -> Optional[Server]:
        session = self._get_session()
        try:
            orm = session.get(ServerORM, server_id)
            return orm_to_server(orm) if orm else None
        finally:
            session.close()

    def get_by_internal_id(self, internal_id: str) -> Optional[Server]:
        session = self._get_session()
        try:
            orm = session.query(ServerORM).filter(
                ServerORM.internal_id == internal_id
            ).first()
            return orm_to_server(orm) if orm else None
        finally:
            session.close()

    def list_all(self) -> List[Server]:
        session = self._get_session()
        try:
            orms = session.query(ServerORM).order_by(ServerORM.created_at.asc()).all()
            return [orm_to_server(orm) for orm in orms]
        finally:
            session.close()

    def list_by_user(self, user_id: UUID) -> List[Server]:
        session = self._get_session()
        try:
            orms = session.query(ServerORM).filter(
                ServerORM.user_id == user_id
            ).order_by(ServerORM.created_at.asc()).all()
            return [orm_to_server(orm) for orm in orms]
        finally:
            session.close()

    def count_by_nodes(self, node_ids: Iterable[UUID]) -> int:
        node_ids = list(node_ids)
        if not node_ids:
            return 0

        session = self._get_session()
        try:
            return session.query(ServerORM).filter(
                ServerORM.node_id.in_(node_ids)
            ).count()
        finally:
            session.close()

    # -------------------------
    # UPDATE
    # -------------------------

    def update(self, server: Server) -> None:
        session = self._get_session()
        try:
            orm = session.query(ServerORM).filter(
                ServerORM.server_id == server.server_id
            ).with_for_update().first()

            if not orm:
                raise ServerNotFound(f"Server {server.server_id} not found")

            orm.name = server.name
            orm.unit_id = server.unit_id
            orm.memory_mib = server.memory_mib
            orm.disk_mib = server.disk_mib
            orm.cpu_percent = server.cpu_percent
            orm.docker_image = server.docker_image
            orm.startup_command = server.startup_command
            orm.feature_selections = dict(server.feature_selections)
            orm.phase = server.phase
            orm.phase_changed_at = server.phase_changed_at
            orm.updated_at = server.updated_at or utcnow()

            session.commit()
            logger.debug(f"[server_repo] update {server.server_id} -> phase={server.phase.value}")
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to update server: {e}") from e
        finally:
            session.close()

    def set_phase(self, server_id: UUID, phase: ServerPhase, changed_at: datetime) -> None:
        session = self._get_session()
        try:
            updated = session.query(ServerORM).filter(
                ServerORM.server_id == server_id
            ).update(
                {
                    ServerORM.phase: phase,
                    ServerORM.phase_changed_at: changed_at,
                    ServerORM.updated_at: changed_at,
                },
                synchronize_session=False,
            )

            if updated == 0:
                raise ServerNotFound(f"Server {server_id} not found")

            session.commit()
            logger.debug(f"[server_repo] set_phase {server_id} -> {phase.value}")
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to set server phase: {e}") from e
        finally:
            session.close()

    def record_observation(self, server_id: UUID, state: str, observed_at: datetime) -> None:
        """Last writer wins; a vanished server is ignored."""
        session = self._get_session()
        try:
            session.query(ServerORM).filter(
                ServerORM.server_id == server_id
            ).update(
                {
                    ServerORM.observed_state: state,
                    ServerORM.observed_at: observed_at,
                },
                synchronize_session=False,
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to record observed state: {e}") from e
        finally:
            session.close()

    # -------------------------
    # DELETE
    # -------------------------

    def delete_and_release(self, server_id: UUID, allocation_id: UUID) -> None:
        session = self._get_session()
        try:
            orm = session.get(ServerORM, server_id)
            if orm is not None:
                session.delete(orm)
                # server row must go before the allocation is freed
                session.flush()

            session.query(AllocationORM).filter(
                AllocationORM.allocation_id == allocation_id
            ).update({AllocationORM.assigned: False}, synchronize_session=False)

            session.commit()
            logger.debug(f"[server_repo] delete {server_id} and release {allocation_id} -> done")
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to delete server: {e}") from e
        finally:
            session.close()
