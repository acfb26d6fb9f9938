#provisioning_engine/infrastructure/postgres/unit_repository.py
"""Unit and cargo repositories."""

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from provisioning_engine.core.errors import RepositoryError, UnitNotFound
from provisioning_engine.core.models import (
    Cargo,
    CargoContainer,
    CargoContainerItem,
    CargoProperties,
    ConfigFile,
    DockerImage,
    EnvironmentVariable,
    InstallScript,
    ResourceRequirements,
    StartupConfig,
    Unit,
)
from provisioning_engine.core.repository import CargoRepository, UnitRepository
from provisioning_engine.infrastructure.postgres.database import SessionLocal
from provisioning_engine.infrastructure.postgres.models import CargoContainerORM, CargoORM, UnitORM


logger = logging.getLogger(__name__)


# ============================================
# Unit mapping
# ============================================

def orm_to_unit(orm: UnitORM) -> Unit:
    """JSON columns are turned into typed sections here and nowhere else."""
    requirements = orm.recommended_requirements
    return Unit(
        unit_id=orm.unit_id,
        name=orm.name,
        short_name=orm.short_name,
        description=orm.description or "",
        docker_images=[DockerImage(**item) for item in orm.docker_images or []],
        default_docker_image=orm.default_docker_image,
        default_startup_command=orm.default_startup_command,
        environment_variables=[
            EnvironmentVariable(**item) for item in orm.environment_variables or []
        ],
        config_files=[ConfigFile(**item) for item in orm.config_files or []],
        install_script=InstallScript(**orm.install_script),
        startup=StartupConfig(**(orm.startup or {})),
        features=list(orm.features or []),
        recommended_requirements=ResourceRequirements(**requirements) if requirements else None,
        cargo_container_ids=[UUID(value) for value in orm.cargo_container_ids or []],
    )


def unit_to_orm(unit: Unit) -> UnitORM:
    return UnitORM(
        unit_id=unit.unit_id,
        name=unit.name,
        short_name=unit.short_name,
        description=unit.description,
        docker_images=[asdict(image) for image in unit.docker_images],
        default_docker_image=unit.default_docker_image,
        default_startup_command=unit.default_startup_command,
        environment_variables=[asdict(variable) for variable in unit.environment_variables],
        config_files=[asdict(config) for config in unit.config_files],
        install_script=asdict(unit.install_script),
        startup=asdict(unit.startup),
        features=list(unit.features),
        recommended_requirements=(
            asdict(unit.recommended_requirements) if unit.recommended_requirements else None
        ),
        cargo_container_ids=[str(value) for value in unit.cargo_container_ids],
    )


# ============================================
# Cargo mapping
# ============================================

def _properties_from_json(data: Optional[Dict[str, Any]]) -> CargoProperties:
    data = data or {}
    return CargoProperties(
        hidden=bool(data.get("hidden", False)),
        readonly=bool(data.get("readonly", False)),
        no_delete=bool(data.get("no_delete", False)),
        custom_properties=dict(data.get("custom_properties") or {}),
    )


def orm_to_cargo(orm: CargoORM) -> Cargo:
    return Cargo(
        cargo_id=orm.cargo_id,
        name=orm.name,
        cargo_type=orm.cargo_type,
        description=orm.description or "",
        hash=orm.hash,
        size=orm.size or 0,
        mime_type=orm.mime_type,
        remote_url=orm.remote_url,
        properties=_properties_from_json(orm.properties),
    )


def cargo_to_orm(cargo: Cargo) -> CargoORM:
    return CargoORM(
        cargo_id=cargo.cargo_id,
        name=cargo.name,
        description=cargo.description,
        cargo_type=cargo.cargo_type,
        hash=cargo.hash,
        size=cargo.size,
        mime_type=cargo.mime_type,
        remote_url=cargo.remote_url,
        properties=asdict(cargo.properties),
    )


def orm_to_container(orm: CargoContainerORM) -> CargoContainer:
    return CargoContainer(
        container_id=orm.container_id,
        name=orm.name,
        description=orm.description or "",
        items=[
            CargoContainerItem(cargo_id=UUID(item["cargo_id"]), target_path=item["target_path"])
            for item in orm.items or []
        ],
    )


def container_to_orm(container: CargoContainer) -> CargoContainerORM:
    return CargoContainerORM(
        container_id=container.container_id,
        name=container.name,
        description=container.description,
        items=[
            {"cargo_id": str(item.cargo_id), "target_path": item.target_path}
            for item in container.items
        ],
    )


# ============================================
# Repositories
# ============================================

class PostgresUnitRepository(UnitRepository):

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    def _get_session(self) -> Session:
        return self._session_factory()

    def create(self, unit: Unit) -> None:
        session = self._get_session()
        try:
            session.add(unit_to_orm(unit))
            session.commit()
            logger.debug(f"[unit_repo] created unit {unit.unit_id} ({unit.short_name})")
        except IntegrityError as e:
            session.rollback()
            raise RepositoryError(f"Unit short name '{unit.short_name}' already exists") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to create unit: {e}") from e
        finally:
            session.close()

    def get(self, unit_id: UUID) -> Optional[Unit]:
        session = self._get_session()
        try:
            orm = session.get(UnitORM, unit_id)
            return orm_to_unit(orm) if orm else None
        finally:
            session.close()

    def set_cargo_containers(self, unit_id: UUID, container_ids: List[UUID]) -> None:
        session = self._get_session()
        try:
            orm = session.query(UnitORM).filter(
                UnitORM.unit_id == unit_id
            ).with_for_update().first()

            if orm is None:
                raise UnitNotFound(f"Unit {unit_id} not found")

            orm.cargo_container_ids = [str(value) for value in container_ids]
            session.commit()
            logger.debug(f"[unit_repo] unit {unit_id} now ships {len(container_ids)} container(s)")
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to update cargo containers of unit {unit_id}: {e}") from e
        finally:
            session.close()


class PostgresCargoRepository(CargoRepository):

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    def _get_session(self) -> Session:
        return self._session_factory()

    def create_cargo(self, cargo: Cargo) -> None:
        session = self._get_session()
        try:
            session.add(cargo_to_orm(cargo))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to create cargo: {e}") from e
        finally:
            session.close()

    def get_cargo(self, cargo_id: UUID) -> Optional[Cargo]:
        session = self._get_session()
        try:
            orm = session.get(CargoORM, cargo_id)
            return orm_to_cargo(orm) if orm else None
        finally:
            session.close()

    def find_by_hash(self, content_hash: str) -> Optional[Cargo]:
        session = self._get_session()
        try:
            orm = session.query(CargoORM).filter(CargoORM.hash == content_hash).first()
            return orm_to_cargo(orm) if orm else None
        finally:
            session.close()

    def list_cargo(self) -> List[Cargo]:
        session = self._get_session()
        try:
            rows = session.query(CargoORM).order_by(CargoORM.created_at).all()
            return [orm_to_cargo(orm) for orm in rows]
        finally:
            session.close()

    def create_container(self, container: CargoContainer) -> None:
        session = self._get_session()
        try:
            session.add(container_to_orm(container))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to create cargo container: {e}") from e
        finally:
            session.close()

    def get_container(self, container_id: UUID) -> Optional[CargoContainer]:
        session = self._get_session()
        try:
            orm = session.get(CargoContainerORM, container_id)
            return orm_to_container(orm) if orm else None
        finally:
            session.close()

    def list_containers(self) -> List[CargoContainer]:
        session = self._get_session()
        try:
            rows = session.query(CargoContainerORM).order_by(CargoContainerORM.created_at).all()
            return [orm_to_container(orm) for orm in rows]
        finally:
            session.close()
