"""Test the server lifecycle orchestrator against a fake daemon."""

import pytest
from uuid import uuid4

from provisioning_engine.core.errors import (
    AccessDeniedError,
    AllocationAlreadyAssigned,
    AuthenticationRequired,
    DaemonRequestFailed,
    DaemonUnreachable,
    InvalidAction,
    InvalidDockerImage,
    NoAvailableAllocations,
    ServerBusy,
    ServerNodeNotFound,
    ServerNotFound,
    UnitNotFound,
    ValidationTokenMismatch,
)
from provisioning_engine.core.models import (
    DockerImage,
    InstallScript,
    Server,
    ServerPhase,
    Unit,
)
from provisioning_engine.orchestrator.server_orchestrator import (
    CreateServerRequest,
    UpdateServerRequest,
)
from provisioning_engine.placement.selector import PlacementTarget


@pytest.fixture
def node(make_node):
    return make_node()


@pytest.fixture
def allocation(make_allocation, node):
    return make_allocation(node.node_id)


@pytest.fixture
def create_request(unit, owner, node, allocation):
    def _build(**overrides):
        fields = dict(
            name="survival",
            unit_id=unit.unit_id,
            user_id=owner.user_id,
            memory_mib=2048,
            disk_mib=10240,
            cpu_percent=150,
            target=PlacementTarget(node_id=node.node_id),
        )
        fields.update(overrides)
        return CreateServerRequest(**fields)
    return _build


@pytest.fixture
def server(orchestrator, create_request, admin, daemon):
    server = orchestrator.create(create_request(), admin)
    daemon.calls.clear()
    return server


class TestCreate:

    def test_create_success(self, orchestrator, create_request, admin, daemon, server_repo, allocation_repo, allocation):
        server = orchestrator.create(create_request(), admin)

        assert server.phase == ServerPhase.INSTALLING
        assert server_repo.get(server.server_id).phase == ServerPhase.INSTALLING
        assert allocation_repo.get(allocation.allocation_id).assigned is True

        [(operation, credential, (payload,))] = daemon.calls
        assert operation == "create"
        assert credential.base_url == "http://node-1.nodes.test:8080"
        assert payload["serverId"] == server.internal_id
        assert payload["validationToken"] == server.validation_token
        assert payload["memoryLimit"] == 2048 * 1024 * 1024
        assert payload["cpuLimit"] == 1536
        assert payload["allocation"] == {"bindAddress": "0.0.0.0", "port": 25565}
        assert payload["dockerImage"] == "ghcr.io/games/java:17"
        assert payload["startupCommand"] == "java -Xmx{{SERVER_MEMORY}}M -jar server.jar"
        assert payload["cargo"] == []

    def test_daemon_failure_rolls_back(
        self, orchestrator, create_request, admin, daemon, daemon_error, server_repo, allocation_repo, allocation
    ):
        daemon.fail["create"] = daemon_error

        with pytest.raises(DaemonRequestFailed):
            orchestrator.create(create_request(), admin)

        assert server_repo.list_all() == []
        assert allocation_repo.get(allocation.allocation_id).assigned is False

    def test_token_mismatch_rolls_back(
        self, orchestrator, create_request, admin, daemon, server_repo, allocation_repo, allocation
    ):
        daemon.echo_token = False

        with pytest.raises(ValidationTokenMismatch):
            orchestrator.create(create_request(), admin)

        assert server_repo.list_all() == []
        assert allocation_repo.get(allocation.allocation_id).assigned is False

    def test_requires_admin(self, orchestrator, create_request, owner, allocation_repo, allocation, daemon):
        with pytest.raises(AccessDeniedError):
            orchestrator.create(create_request(), owner)

        assert allocation_repo.get(allocation.allocation_id).assigned is False
        assert daemon.calls == []

    def test_unknown_unit(self, orchestrator, create_request, admin):
        with pytest.raises(UnitNotFound):
            orchestrator.create(create_request(unit_id=uuid4()), admin)

    def test_image_must_be_offered(self, orchestrator, create_request, admin, allocation_repo, allocation):
        with pytest.raises(InvalidDockerImage):
            orchestrator.create(create_request(docker_image="evil/miner:latest"), admin)

        assert allocation_repo.get(allocation.allocation_id).assigned is False

    def test_image_and_startup_overrides(self, orchestrator, create_request, admin, daemon):
        orchestrator.create(
            create_request(docker_image="ghcr.io/games/java:21", startup_command="./start.sh"),
            admin,
        )

        payload = daemon.calls[0][2][0]
        assert payload["dockerImage"] == "ghcr.io/games/java:21"
        assert payload["startupCommand"] == "./start.sh"

    def test_lost_race_reselects(
        self, orchestrator, create_request, admin, allocation_repo, make_allocation, node, monkeypatch
    ):
        make_allocation(node.node_id, port=25566)
        real_reserve = allocation_repo.try_reserve
        attempts = []

        def flaky_reserve(allocation_id):
            attempts.append(allocation_id)
            if len(attempts) == 1:
                # another request took it between select and reserve
                real_reserve(allocation_id)
                return False
            return real_reserve(allocation_id)

        monkeypatch.setattr(allocation_repo, "try_reserve", flaky_reserve)

        server = orchestrator.create(create_request(), admin)

        assert len(attempts) == 2
        assert attempts[0] != attempts[1]
        assert server.allocation_id == attempts[1]

    def test_one_free_allocation_serves_exactly_one_request(
        self, orchestrator, create_request, admin, selector, server_repo, allocation_repo, allocation, monkeypatch
    ):
        # both requests saw the same free allocation; the second reserves after the first
        stale = selector.select(create_request().target)
        first = orchestrator.create(create_request(name="first"), admin)

        real_select = selector.select
        selections = []

        def stale_then_real(target):
            selections.append(target)
            if len(selections) == 1:
                return stale
            return real_select(target)

        monkeypatch.setattr(selector, "select", stale_then_real)

        with pytest.raises(NoAvailableAllocations):
            orchestrator.create(create_request(name="second"), admin)

        assert len(selections) == 2
        assert [server.server_id for server in server_repo.list_all()] == [first.server_id]
        assert first.allocation_id == allocation.allocation_id
        assert allocation_repo.get(allocation.allocation_id).assigned is True

    def test_lost_race_on_pinned_allocation(
        self, orchestrator, create_request, admin, allocation_repo, node, allocation, monkeypatch
    ):
        monkeypatch.setattr(allocation_repo, "try_reserve", lambda allocation_id: False)
        target = PlacementTarget(node_id=node.node_id, allocation_id=allocation.allocation_id)

        with pytest.raises(AllocationAlreadyAssigned):
            orchestrator.create(create_request(target=target), admin)


class TestDelete:

    def test_delete(self, orchestrator, server, admin, daemon, server_repo, allocation_repo):
        orchestrator.delete(server.server_id, admin)

        assert daemon.operations() == ["delete"]
        assert server_repo.get(server.server_id) is None
        assert allocation_repo.get(server.allocation_id).assigned is False

    def test_delete_with_offline_node(
        self, orchestrator, server, admin, daemon, unreachable, server_repo, allocation_repo
    ):
        daemon.fail["delete"] = unreachable

        orchestrator.delete(server.server_id, admin)

        assert server_repo.get(server.server_id) is None
        assert allocation_repo.get(server.allocation_id).assigned is False

    def test_delete_missing_server(self, orchestrator, admin):
        with pytest.raises(ServerNotFound):
            orchestrator.delete(uuid4(), admin)

    def test_delete_requires_admin(self, orchestrator, server, owner):
        with pytest.raises(AccessDeniedError):
            orchestrator.delete(server.server_id, owner)


class TestPowerAndReinstall:

    def test_invalid_action(self, orchestrator, server, owner, daemon):
        with pytest.raises(InvalidAction):
            orchestrator.power(server.server_id, "explode", owner)

        assert daemon.calls == []

    def test_power_refreshes_status(self, orchestrator, server, owner, daemon, server_repo):
        daemon.state = "running"

        snapshot = orchestrator.power(server.server_id, "start", owner)

        assert daemon.operations() == ["power", "status"]
        assert daemon.calls[0][2] == (server.internal_id, "start")
        assert snapshot.status == "running"
        stored = server_repo.get(server.server_id)
        assert stored.phase == ServerPhase.STARTING
        assert stored.observed_state == "running"

    def test_power_keeps_phase_when_status_fails(self, orchestrator, server, owner, daemon, server_repo):
        daemon.fail["status"] = DaemonUnreachable("timeout")

        snapshot = orchestrator.power(server.server_id, "stop", owner)

        assert snapshot.status == "unknown"
        assert server_repo.get(server.server_id).state == "stopping"

    def test_power_by_stranger(self, orchestrator, server, stranger):
        with pytest.raises(AccessDeniedError):
            orchestrator.power(server.server_id, "start", stranger)

    def test_reinstall(self, orchestrator, server, owner, daemon, server_repo):
        orchestrator.reinstall(server.server_id, owner)

        assert daemon.operations() == ["reinstall", "status"]
        assert server_repo.get(server.server_id).phase == ServerPhase.REINSTALLING

    def test_concurrent_operation_is_rejected(self, orchestrator, server, owner):
        with orchestrator._locks.hold(server.server_id):
            with pytest.raises(ServerBusy):
                orchestrator.power(server.server_id, "restart", owner)


class TestUpdate:

    @pytest.fixture
    def other_unit(self, unit_repo):
        unit = Unit(
            unit_id=uuid4(),
            name="Bedrock",
            short_name="bedrock",
            install_script=InstallScript(docker_image="alpine"),
            default_startup_command="./bedrock_server",
            docker_images=[DockerImage(image="ghcr.io/games/bedrock:latest")],
        )
        unit_repo.create(unit)
        return unit

    def test_update_resources(self, orchestrator, server, admin, daemon, server_repo):
        updated = orchestrator.update(
            server.server_id,
            UpdateServerRequest(name="creative", memory_mib=4096, cpu_percent=200),
            admin,
        )

        [(operation, _, (internal_id, payload))] = daemon.calls
        assert operation == "update"
        assert internal_id == server.internal_id
        assert payload["name"] == "creative"
        assert payload["memoryLimit"] == 4096 * 1024 * 1024
        assert payload["cpuLimit"] == 2048
        assert payload["unitChanged"] is False
        assert payload["dockerImageChanged"] is False

        assert updated.phase == ServerPhase.RUNNING
        stored = server_repo.get(server.server_id)
        assert stored.name == "creative"
        assert stored.memory_mib == 4096
        assert stored.phase == ServerPhase.RUNNING

    def test_unit_change_resolves_new_image(self, orchestrator, server, admin, daemon, other_unit, server_repo):
        orchestrator.update(server.server_id, UpdateServerRequest(unit_id=other_unit.unit_id), admin)

        payload = daemon.calls[0][2][1]
        assert payload["unitChanged"] is True
        assert payload["dockerImage"] == "ghcr.io/games/bedrock:latest"
        assert payload["startupCommand"] == "./bedrock_server"
        assert server_repo.get(server.server_id).unit_id == other_unit.unit_id

    def test_unknown_new_unit(self, orchestrator, server, admin, daemon):
        with pytest.raises(UnitNotFound):
            orchestrator.update(server.server_id, UpdateServerRequest(unit_id=uuid4()), admin)

        assert daemon.calls == []

    def test_daemon_failure_leaves_fields_untouched(self, orchestrator, server, admin, daemon, server_repo):
        daemon.fail["update"] = DaemonUnreachable("down")

        with pytest.raises(DaemonUnreachable):
            orchestrator.update(server.server_id, UpdateServerRequest(name="renamed"), admin)

        stored = server_repo.get(server.server_id)
        assert stored.name == "survival"
        assert stored.phase == ServerPhase.UPDATING

    def test_change_docker_image(self, orchestrator, server, owner, daemon, server_repo):
        orchestrator.change_docker_image(server.server_id, "ghcr.io/games/java:21", owner)

        payload = daemon.calls[0][2][1]
        assert payload["dockerImage"] == "ghcr.io/games/java:21"
        assert payload["dockerImageChanged"] is True
        assert server_repo.get(server.server_id).docker_image == "ghcr.io/games/java:21"

    def test_change_to_unknown_image(self, orchestrator, server, owner, daemon):
        with pytest.raises(InvalidDockerImage):
            orchestrator.change_docker_image(server.server_id, "ghcr.io/games/java:8", owner)

        assert daemon.calls == []

    def test_list_docker_images(self, orchestrator, server, owner):
        images, current = orchestrator.list_docker_images(server.server_id, owner)

        assert [image.image for image in images] == ["ghcr.io/games/java:17", "ghcr.io/games/java:21"]
        assert current == "ghcr.io/games/java:17"


class TestAccess:

    def test_owner_gets_fresh_status(self, orchestrator, server, owner, daemon):
        daemon.state = "offline"

        snapshot = orchestrator.check_access(server.server_id, owner)

        assert snapshot.status == "offline"
        assert snapshot.allocation.port == 25565
        assert snapshot.node.node_id == server.node_id

    def test_stranger_is_denied(self, orchestrator, server, stranger, daemon):
        with pytest.raises(AccessDeniedError):
            orchestrator.check_access(server.server_id, stranger)

        assert daemon.calls == []

    def test_daemon_failure_reports_unknown(self, orchestrator, server, owner, daemon, server_repo):
        daemon.fail["status"] = DaemonUnreachable("timeout")

        snapshot = orchestrator.check_access(server.server_id, owner)

        assert snapshot.status == "unknown"
        assert server_repo.get(server.server_id).observed_state is None

    def test_missing_server(self, orchestrator, admin):
        with pytest.raises(ServerNotFound):
            orchestrator.check_access(uuid4(), admin)

    def test_missing_node(self, orchestrator, server_repo, make_allocation, make_node, unit, admin):
        allocation = make_allocation(make_node().node_id)
        orphan = Server(
            server_id=uuid4(),
            internal_id="orphan",
            name="orphan",
            node_id=uuid4(),
            allocation_id=allocation.allocation_id,
            unit_id=unit.unit_id,
            user_id=uuid4(),
            memory_mib=512,
            disk_mib=512,
            cpu_percent=50,
            validation_token="t",
        )
        server_repo.create(orphan)

        with pytest.raises(ServerNodeNotFound):
            orchestrator.check_access(orphan.server_id, admin)

    def test_list_servers(self, orchestrator, server, admin, owner, stranger):
        assert [s.server.server_id for s in orchestrator.list_servers(admin)] == [server.server_id]
        assert [s.server.server_id for s in orchestrator.list_servers(owner)] == [server.server_id]
        assert orchestrator.list_servers(stranger) == []


class TestDaemonFacing:

    def test_validate_token(self, orchestrator, server, node):
        routing = orchestrator.validate_server_token(server.internal_id, server.validation_token)

        assert routing.server_id == server.server_id
        assert routing.fqdn == node.fqdn
        assert not hasattr(routing, "connection_key")

    def test_validate_wrong_token(self, orchestrator, server):
        with pytest.raises(ValidationTokenMismatch):
            orchestrator.validate_server_token(server.internal_id, "guess")

    def test_validate_unknown_server(self, orchestrator):
        with pytest.raises(ServerNotFound):
            orchestrator.validate_server_token("nope", "token")

    def test_daemon_config(self, orchestrator, server):
        config = orchestrator.get_daemon_config(server.internal_id, server.validation_token).to_payload()

        assert config["dockerImage"] == "ghcr.io/games/java:17"
        assert config["install"] == {
            "dockerImage": "alpine:3.19",
            "entrypoint": "bash",
            "script": "apk add curl",
        }
        assert config["variables"][0]["name"] == "SERVER_JARFILE"
        assert config["serverControl"] == {"readyRegex": "Done \\(", "stopCommand": "stop"}
        assert config["cargo"] == []

    def test_daemon_config_token_is_optional(self, orchestrator, server):
        assert orchestrator.get_daemon_config(server.internal_id).docker_image == "ghcr.io/games/java:17"

        with pytest.raises(ValidationTokenMismatch):
            orchestrator.get_daemon_config(server.internal_id, "wrong")

    def test_cargo_files_by_token_or_owner(self, orchestrator, server, owner, stranger):
        assert orchestrator.get_cargo_files(server.server_id, token=server.validation_token) == []
        assert orchestrator.get_cargo_files(server.server_id, caller=owner) == []

        with pytest.raises(AccessDeniedError):
            orchestrator.get_cargo_files(server.server_id, caller=stranger)
        with pytest.raises(AuthenticationRequired):
            orchestrator.get_cargo_files(server.server_id)
        with pytest.raises(ValidationTokenMismatch):
            orchestrator.get_cargo_files(server.server_id, token="wrong")

    def test_ship_cargo(self, orchestrator, server, owner, daemon):
        shipped = orchestrator.ship_cargo(server.server_id, owner)

        assert shipped == []
        assert daemon.operations() == ["ship"]
