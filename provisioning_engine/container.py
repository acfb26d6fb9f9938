#provisioning_engine/container.py

"""Dependency injection container - wires all services together."""

from provisioning_engine.config import settings
from provisioning_engine.infrastructure.postgres.node_repository import (
    PostgresAllocationRepository,
    PostgresNodeRepository,
    PostgresRegionRepository,
)
from provisioning_engine.infrastructure.postgres.server_repository import PostgresServerRepository
from provisioning_engine.infrastructure.postgres.unit_repository import (
    PostgresCargoRepository,
    PostgresUnitRepository,
)

from provisioning_engine.cargo.catalog import CargoCatalogService
from provisioning_engine.cargo.service import CargoDistributionService
from provisioning_engine.daemon.client import DaemonClient
from provisioning_engine.orchestrator.locks import ServerLockRegistry
from provisioning_engine.orchestrator.server_orchestrator import ServerOrchestrator
from provisioning_engine.placement.regions import RegionService
from provisioning_engine.placement.selector import LeastLoadedPolicy, PlacementSelector


# ============================================
# REPOSITORIES
# ============================================

region_repository = PostgresRegionRepository()
node_repository = PostgresNodeRepository()
allocation_repository = PostgresAllocationRepository()
unit_repository = PostgresUnitRepository()
server_repository = PostgresServerRepository()
cargo_repository = PostgresCargoRepository()


# ============================================
# CLIENTS
# ============================================

daemon_client = DaemonClient(timeout=settings.daemon_timeout_seconds)


# ============================================
# SERVICES
# ============================================

placement_selector = PlacementSelector(
    regions=region_repository,
    nodes=node_repository,
    allocations=allocation_repository,
    servers=server_repository,
    policy=LeastLoadedPolicy(),
)

region_service = RegionService(
    regions=region_repository,
    nodes=node_repository,
)

cargo_service = CargoDistributionService(
    cargo_repo=cargo_repository,
    app_url=settings.app_url,
    app_key=settings.app_key,
    link_ttl_seconds=settings.cargo_link_ttl_seconds,
    storage_dir=settings.cargo_storage_dir,
)

cargo_catalog = CargoCatalogService(
    cargo_repo=cargo_repository,
    units=unit_repository,
    storage_dir=settings.cargo_storage_dir,
    remote_timeout=settings.cargo_remote_timeout_seconds,
)

server_orchestrator = ServerOrchestrator(
    servers=server_repository,
    nodes=node_repository,
    allocations=allocation_repository,
    units=unit_repository,
    selector=placement_selector,
    cargo=cargo_service,
    daemon=daemon_client,
    locks=ServerLockRegistry(timeout=settings.server_lock_timeout),
    placement_attempts=settings.placement_attempts,
)
