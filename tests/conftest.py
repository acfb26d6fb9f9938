#tests/conftest.py

"""Pytest configuration and fixtures."""

import pytest
from uuid import uuid4

from provisioning_engine.infrastructure.postgres.database import (
    create_db_engine,
    drop_db,
    get_session_factory,
    init_db,
)
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
from provisioning_engine.core.errors import DaemonRequestFailed, DaemonUnreachable
from provisioning_engine.core.models import (
    Allocation,
    DockerImage,
    EnvironmentVariable,
    InstallScript,
    Node,
    Region,
    StartupConfig,
    Unit,
)
from provisioning_engine.core.permissions import ADMIN, USER, Caller
from provisioning_engine.orchestrator.locks import ServerLockRegistry
from provisioning_engine.orchestrator.server_orchestrator import ServerOrchestrator
from provisioning_engine.placement.regions import RegionService
from provisioning_engine.placement.selector import PlacementSelector


APP_KEY = "test-app-key"
APP_URL = "http://panel.test"
NOW = 1_700_000_000.0


# ============================================
# Database
# ============================================

@pytest.fixture(scope="function")
def test_engine():
    """Fresh in-memory database per test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)

    yield engine

    drop_db(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_session_factory(test_engine):
    return get_session_factory(test_engine)


# ============================================
# Repositories
# ============================================

@pytest.fixture
def region_repo(test_session_factory):
    return PostgresRegionRepository(session_factory=test_session_factory)


@pytest.fixture
def node_repo(test_session_factory):
    return PostgresNodeRepository(session_factory=test_session_factory)


@pytest.fixture
def allocation_repo(test_session_factory):
    return PostgresAllocationRepository(session_factory=test_session_factory)


@pytest.fixture
def unit_repo(test_session_factory):
    return PostgresUnitRepository(session_factory=test_session_factory)


@pytest.fixture
def server_repo(test_session_factory):
    return PostgresServerRepository(session_factory=test_session_factory)


@pytest.fixture
def cargo_repo(test_session_factory):
    return PostgresCargoRepository(session_factory=test_session_factory)


# ============================================
# Seed data factories
# ============================================

@pytest.fixture
def make_region(region_repo):
    def _make(identifier="eu-west", fallback_region_id=None, server_limit=None):
        region = Region(
            region_id=uuid4(),
            name=identifier.upper(),
            identifier=identifier,
            fallback_region_id=fallback_region_id,
            server_limit=server_limit,
        )
        region_repo.create(region)
        return region
    return _make


@pytest.fixture
def make_node(node_repo):
    def _make(name="node-1", region_id=None, online=True, fqdn=None):
        node = Node(
            node_id=uuid4(),
            name=name,
            fqdn=f"{name}.nodes.test" if fqdn is None else fqdn,
            port=8080,
            connection_key=f"key-{name}",
            is_online=online,
            region_id=region_id,
        )
        node_repo.create(node)
        return node
    return _make


@pytest.fixture
def make_allocation(allocation_repo):
    def _make(node_id, port=25565, assigned=False):
        allocation = Allocation(
            allocation_id=uuid4(),
            node_id=node_id,
            bind_address="0.0.0.0",
            port=port,
            assigned=assigned,
        )
        allocation_repo.create(allocation)
        return allocation
    return _make


@pytest.fixture
def unit(unit_repo):
    unit = Unit(
        unit_id=uuid4(),
        name="Minecraft Java",
        short_name="minecraft-java",
        install_script=InstallScript(docker_image="alpine:3.19", script="apk add curl"),
        default_startup_command="java -Xmx{{SERVER_MEMORY}}M -jar server.jar",
        docker_images=[
            DockerImage(image="ghcr.io/games/java:17", display_name="Java 17"),
            DockerImage(image="ghcr.io/games/java:21", display_name="Java 21"),
        ],
        default_docker_image="ghcr.io/games/java:17",
        environment_variables=[
            EnvironmentVariable(name="SERVER_JARFILE", default_value="server.jar", rules="required|string"),
        ],
        startup=StartupConfig(ready_regex="Done \\(", stop_command="stop"),
    )
    unit_repo.create(unit)
    return unit


# ============================================
# Callers
# ============================================

@pytest.fixture
def admin():
    return Caller(user_id=uuid4(), permissions=frozenset({ADMIN}))


@pytest.fixture
def owner():
    return Caller(user_id=uuid4(), permissions=frozenset({USER}))


@pytest.fixture
def stranger():
    return Caller(user_id=uuid4(), permissions=frozenset({USER}))


# ============================================
# Daemon fake
# ============================================

class FakeDaemonClient:
    """
    Records calls instead of doing HTTP.

    fail: operation name -> exception to raise
    echo_token: False makes create answer with a different token
    """

    def __init__(self):
        self.calls = []
        self.fail = {}
        self.echo_token = True
        self.state = "running"

    def _record(self, operation, credential, *args):
        self.calls.append((operation, credential, args))
        if operation in self.fail:
            raise self.fail[operation]

    def operations(self):
        return [operation for operation, _, _ in self.calls]

    def create_server(self, credential, payload):
        self._record("create", credential, payload)
        token = payload["validationToken"] if self.echo_token else "not-the-token"
        return {"validationToken": token}

    def update_server(self, credential, internal_id, payload):
        self._record("update", credential, internal_id, payload)
        return {}

    def delete_server(self, credential, internal_id):
        self._record("delete", credential, internal_id)
        return {}

    def get_status(self, credential, internal_id):
        self._record("status", credential, internal_id)
        return self.state

    def power(self, credential, internal_id, action):
        self._record("power", credential, internal_id, action)
        return {}

    def reinstall(self, credential, internal_id):
        self._record("reinstall", credential, internal_id)
        return {}

    def ship_cargo(self, credential, internal_id, cargo):
        self._record("ship", credential, internal_id, cargo)
        return {}


@pytest.fixture
def daemon():
    return FakeDaemonClient()


@pytest.fixture
def unreachable():
    return DaemonUnreachable("connection refused")


@pytest.fixture
def daemon_error():
    return DaemonRequestFailed("image pull failed", status_code=500)


# ============================================
# Services
# ============================================

@pytest.fixture
def cargo_service(cargo_repo, tmp_path):
    return CargoDistributionService(
        cargo_repo=cargo_repo,
        app_url=APP_URL,
        app_key=APP_KEY,
        link_ttl_seconds=900,
        storage_dir=str(tmp_path),
        clock=lambda: NOW,
    )


@pytest.fixture
def catalog_service(cargo_repo, unit_repo, tmp_path):
    return CargoCatalogService(cargo_repo=cargo_repo, units=unit_repo, storage_dir=str(tmp_path))


@pytest.fixture
def selector(region_repo, node_repo, allocation_repo, server_repo):
    return PlacementSelector(
        regions=region_repo,
        nodes=node_repo,
        allocations=allocation_repo,
        servers=server_repo,
    )


@pytest.fixture
def region_service(region_repo, node_repo):
    return RegionService(regions=region_repo, nodes=node_repo)


@pytest.fixture
def orchestrator(server_repo, node_repo, allocation_repo, unit_repo, selector, cargo_service, daemon):
    return ServerOrchestrator(
        servers=server_repo,
        nodes=node_repo,
        allocations=allocation_repo,
        units=unit_repo,
        selector=selector,
        cargo=cargo_service,
        daemon=daemon,
        locks=ServerLockRegistry(timeout=0.1),
        placement_attempts=3,
    )
