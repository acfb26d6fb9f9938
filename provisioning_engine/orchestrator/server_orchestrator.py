# provisioning_engine/orchestrator/server_orchestrator.py
"""Server lifecycle orchestrator - ties placement, daemon calls and persisted state together."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from provisioning_engine.cargo.service import CargoDistributionService
from provisioning_engine.core.errors import (
    AccessDeniedError,
    AllocationAlreadyAssigned,
    AuthenticationRequired,
    AllocationNotFound,
    InvalidAction,
    InvalidDockerImage,
    NoAvailableAllocations,
    ServerNodeNotFound,
    ServerNotFound,
    UnitNotFound,
    UpstreamUnavailableError,
)
from provisioning_engine.core.models import (
    Allocation,
    CargoFile,
    DockerImage,
    Node,
    POWER_ACTIONS,
    Server,
    ServerPhase,
    UNKNOWN_STATE,
    Unit,
    utcnow,
)
from provisioning_engine.core.permissions import Caller
from provisioning_engine.core.repository import (
    AllocationRepository,
    NodeRepository,
    ServerRepository,
    UnitRepository,
)
from provisioning_engine.core.state_machine import ServerStateMachine
from provisioning_engine.daemon.client import DaemonClient, DaemonCredential, cpu_shares, memory_bytes
from provisioning_engine.orchestrator import tokens
from provisioning_engine.orchestrator.locks import ServerLockRegistry
from provisioning_engine.placement.selector import Placement, PlacementSelector, PlacementTarget

logger = logging.getLogger(__name__)


DEFAULT_INSTALL_SCRIPT = "# No installation script provided"


# ============================================
# Requests and views
# ============================================

@dataclass
class CreateServerRequest:
    name: str
    unit_id: UUID
    user_id: UUID
    memory_mib: int
    disk_mib: int
    cpu_percent: float
    target: PlacementTarget
    project_id: Optional[UUID] = None
    docker_image: Optional[str] = None
    startup_command: Optional[str] = None
    feature_selections: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UpdateServerRequest:
    """Fields left as None keep their current value."""

    name: Optional[str] = None
    memory_mib: Optional[int] = None
    disk_mib: Optional[int] = None
    cpu_percent: Optional[float] = None
    unit_id: Optional[UUID] = None
    docker_image: Optional[str] = None
    startup_command: Optional[str] = None


@dataclass
class ServerSnapshot:
    """A server as shown to a caller, with the freshest status we could get."""

    server: Server
    status: str
    node: Optional[Node] = None
    allocation: Optional[Allocation] = None


@dataclass(frozen=True)
class ServerRouting:
    """What a daemon learns from a successful token validation. No credentials."""

    server_id: UUID
    internal_id: str
    name: str
    node_id: UUID
    node_name: str
    fqdn: str
    port: int


@dataclass
class DaemonServerConfig:
    docker_image: str
    docker_images: List[DockerImage]
    variables: List[Dict[str, Any]]
    startup_command: str
    config_files: List[Dict[str, str]]
    install: Dict[str, str]
    cargo: List[CargoFile]
    server_control: Dict[str, Optional[str]]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "dockerImage": self.docker_image,
            "dockerImages": [
                {"image": image.image, "displayName": image.display_name}
                for image in self.docker_images
            ],
            "variables": self.variables,
            "startupCommand": self.startup_command,
            "configFiles": self.config_files,
            "install": self.install,
            "cargo": [item.to_payload() for item in self.cargo],
            "serverControl": self.server_control,
        }


# ============================================
# Orchestrator
# ============================================

class ServerOrchestrator:
    """
    Drives the server lifecycle.

    Create flow:
    1. Select node + allocation
    2. Reserve the allocation (compare-and-swap)
    3. Persist the server in `creating`
    4. Call the daemon with a fresh validation token and the cargo list
    5. Check the echoed token, move to `installing`

    Any failure after step 2 frees the allocation and removes the row.
    """

    def __init__(
        self,
        servers: ServerRepository,
        nodes: NodeRepository,
        allocations: AllocationRepository,
        units: UnitRepository,
        selector: PlacementSelector,
        cargo: CargoDistributionService,
        daemon: DaemonClient,
        locks: Optional[ServerLockRegistry] = None,
        placement_attempts: int = 3,
    ):
        self._servers = servers
        self._nodes = nodes
        self._allocations = allocations
        self._units = units
        self._selector = selector
        self._cargo = cargo
        self._daemon = daemon
        self._locks = locks or ServerLockRegistry()
        self._placement_attempts = max(1, placement_attempts)

    # ============================================
    # CREATE
    # ============================================

    def create(self, request: CreateServerRequest, caller: Caller) -> Server:
        self._require_admin(caller)

        unit = self._get_unit(request.unit_id)
        docker_image = self._resolve_image(unit, request.docker_image)
        startup_command = request.startup_command or unit.default_startup_command

        placement = self._reserve(request.target)

        server = Server(
            server_id=uuid4(),
            internal_id=tokens.generate_internal_id(),
            name=request.name,
            node_id=placement.node.node_id,
            allocation_id=placement.allocation.allocation_id,
            unit_id=unit.unit_id,
            user_id=request.user_id,
            project_id=request.project_id,
            memory_mib=request.memory_mib,
            disk_mib=request.disk_mib,
            cpu_percent=request.cpu_percent,
            docker_image=docker_image,
            startup_command=startup_command,
            feature_selections=dict(request.feature_selections),
            validation_token=tokens.generate_token(),
            phase=ServerPhase.CREATING,
        )

        try:
            self._servers.create(server)
        except Exception:
            logger.error(f"Failed to persist server {server.name}, releasing allocation")
            self._allocations.release(placement.allocation.allocation_id)
            raise

        logger.info(f"Server {server.server_id} persisted on node {placement.node.name}, calling daemon")

        try:
            cargo = self._cargo.resolve_cargo_files(server, unit)
            credential = DaemonCredential.for_node(placement.node)

            response = self._daemon.create_server(
                credential,
                {
                    "serverId": server.internal_id,
                    "validationToken": server.validation_token,
                    "name": server.name,
                    "memoryLimit": memory_bytes(server.memory_mib),
                    "cpuLimit": cpu_shares(server.cpu_percent),
                    "allocation": {
                        "bindAddress": placement.allocation.bind_address,
                        "port": placement.allocation.port,
                    },
                    "dockerImage": docker_image,
                    "startupCommand": startup_command,
                    "cargo": [item.to_payload() for item in cargo],
                },
            )

            tokens.ensure_matches(server, response.get("validationToken"))

            ServerStateMachine.transition(server, ServerPhase.INSTALLING)
            self._servers.set_phase(server.server_id, server.phase, server.phase_changed_at)

        except Exception as e:
            logger.error(f"Create of server {server.server_id} failed, rolling back: {e}")
            self._rollback_create(server)
            raise

        logger.info(f"Server {server.server_id} created, now {server.phase.value}")
        return server

    def _reserve(self, target: PlacementTarget) -> Placement:
        """Select and reserve; a lost race re-selects unless the allocation was pinned."""
        for attempt in range(1, self._placement_attempts + 1):
            placement = self._selector.select(target)
            allocation_id = placement.allocation.allocation_id

            if self._allocations.try_reserve(allocation_id):
                return placement

            if target.pins_allocation:
                raise AllocationAlreadyAssigned(f"Allocation {allocation_id} is already assigned")

            logger.info(
                f"Allocation {allocation_id} taken concurrently "
                f"(attempt {attempt}/{self._placement_attempts}), re-selecting"
            )

        raise NoAvailableAllocations(
            f"Could not reserve an allocation after {self._placement_attempts} attempts"
        )

    def _rollback_create(self, server: Server) -> None:
        try:
            self._servers.delete_and_release(server.server_id, server.allocation_id)
            logger.info(f"Rolled back server {server.server_id}")
        except Exception as rollback_error:
            # the create error is re-raised by the caller
            logger.error(f"Rollback of server {server.server_id} failed: {rollback_error}")

    # ============================================
    # UPDATE
    # ============================================

    def update(self, server_id: UUID, request: UpdateServerRequest, caller: Caller) -> Server:
        self._require_admin(caller)

        with self._locks.hold(server_id):
            server = self._get_server(server_id)
            node = self._get_node(server)
            allocation = self._get_allocation(server)

            unit_changed = request.unit_id is not None and request.unit_id != server.unit_id
            unit = self._get_unit(request.unit_id if unit_changed else server.unit_id)

            if unit_changed:
                docker_image = self._resolve_image(unit, request.docker_image)
            elif request.docker_image is not None:
                docker_image = self._resolve_image(unit, request.docker_image)
            else:
                docker_image = server.docker_image

            if request.startup_command is not None:
                startup_command = request.startup_command
            elif unit_changed:
                startup_command = unit.default_startup_command
            else:
                startup_command = server.startup_command

            name = request.name if request.name is not None else server.name
            memory_mib = request.memory_mib if request.memory_mib is not None else server.memory_mib
            cpu_percent = request.cpu_percent if request.cpu_percent is not None else server.cpu_percent

            self._enter_phase(server, ServerPhase.UPDATING)

            payload = self._patch_payload(server, allocation, name, memory_mib, cpu_percent)
            payload.update({
                "unitChanged": unit_changed,
                "dockerImage": docker_image,
                "dockerImageChanged": docker_image != server.docker_image,
                "startupCommand": startup_command,
            })
            self._daemon.update_server(DaemonCredential.for_node(node), server.internal_id, payload)

            server.name = name
            server.memory_mib = memory_mib
            server.cpu_percent = cpu_percent
            if request.disk_mib is not None:
                server.disk_mib = request.disk_mib
            server.unit_id = unit.unit_id
            server.docker_image = docker_image
            server.startup_command = startup_command

            # optimistic; the next status poll corrects it
            ServerStateMachine.transition(server, ServerPhase.RUNNING)
            self._servers.update(server)

        logger.info(f"Server {server_id} updated (unit_changed={unit_changed})")
        return server

    def list_docker_images(self, server_id: UUID, caller: Caller):
        """Images offered by the server's unit and the one currently in use."""
        server = self._get_server(server_id)
        self._authorize(server, caller)
        unit = self._get_unit(server.unit_id)
        return unit.docker_images, server.docker_image or unit.default_image()

    def change_docker_image(self, server_id: UUID, docker_image: str, caller: Caller) -> Server:
        with self._locks.hold(server_id):
            server = self._get_server(server_id)
            self._authorize(server, caller)
            node = self._get_node(server)
            allocation = self._get_allocation(server)
            unit = self._get_unit(server.unit_id)

            if not unit.offers_image(docker_image):
                raise InvalidDockerImage(f"Image {docker_image} is not offered by unit {unit.short_name}")

            self._enter_phase(server, ServerPhase.UPDATING)

            payload = self._patch_payload(server, allocation, server.name, server.memory_mib, server.cpu_percent)
            payload.update({
                "unitChanged": False,
                "dockerImage": docker_image,
                "dockerImageChanged": True,
            })
            self._daemon.update_server(DaemonCredential.for_node(node), server.internal_id, payload)

            server.docker_image = docker_image
            ServerStateMachine.transition(server, ServerPhase.RUNNING)
            self._servers.update(server)

        logger.info(f"Server {server_id} switched to image {docker_image}")
        return server

    @staticmethod
    def _patch_payload(
        server: Server,
        allocation: Allocation,
        name: str,
        memory_mib: int,
        cpu_percent: float,
    ) -> Dict[str, Any]:
        return {
            "serverId": server.internal_id,
            "name": name,
            "memoryLimit": memory_bytes(memory_mib),
            "cpuLimit": cpu_shares(cpu_percent),
            "allocation": {
                "bindAddress": allocation.bind_address,
                "port": allocation.port,
            },
        }

    # ============================================
    # DELETE
    # ============================================

    def delete(self, server_id: UUID, caller: Caller) -> None:
        """
        Tear down on the daemon if possible, then always remove locally.

        An unreachable node never blocks cleanup; the leftover container
        is logged for out-of-band reconciliation.
        """
        self._require_admin(caller)

        with self._locks.hold(server_id):
            server = self._get_server(server_id)
            self._enter_phase(server, ServerPhase.DELETING)

            node = self._nodes.get(server.node_id) if server.node_id else None
            if node is None:
                logger.warning(f"Server {server_id} has no node record, skipping daemon delete")
            else:
                try:
                    self._daemon.delete_server(DaemonCredential.for_node(node), server.internal_id)
                except UpstreamUnavailableError as e:
                    logger.warning(
                        f"Daemon delete for server {server_id} on node {node.name} failed, "
                        f"removing locally anyway: {e}"
                    )

            self._servers.delete_and_release(server.server_id, server.allocation_id)

        self._locks.forget(server_id)
        logger.info(f"Server {server_id} deleted and allocation {server.allocation_id} released")

    # ============================================
    # POWER / REINSTALL / CARGO
    # ============================================

    def power(self, server_id: UUID, action: str, caller: Caller) -> ServerSnapshot:
        phase = POWER_ACTIONS.get(action)
        if phase is None:
            raise InvalidAction(f"Invalid power action '{action}', expected one of {sorted(POWER_ACTIONS)}")

        with self._locks.hold(server_id):
            server = self._get_server(server_id)
            self._authorize(server, caller)
            node = self._get_node(server)

            self._enter_phase(server, phase)
            self._daemon.power(DaemonCredential.for_node(node), server.internal_id, action)
            logger.info(f"Power action {action} sent for server {server_id}")

            status = self._refresh_status(server, node)

        return ServerSnapshot(server=server, status=status, node=node)

    def reinstall(self, server_id: UUID, caller: Caller) -> ServerSnapshot:
        with self._locks.hold(server_id):
            server = self._get_server(server_id)
            self._authorize(server, caller)
            node = self._get_node(server)

            self._enter_phase(server, ServerPhase.REINSTALLING)
            self._daemon.reinstall(DaemonCredential.for_node(node), server.internal_id)
            logger.info(f"Reinstall sent for server {server_id}")

            status = self._refresh_status(server, node)

        return ServerSnapshot(server=server, status=status, node=node)

    def ship_cargo(self, server_id: UUID, caller: Caller) -> List[CargoFile]:
        server = self._get_server(server_id)
        self._authorize(server, caller)
        node = self._get_node(server)
        unit = self._get_unit(server.unit_id)

        cargo = self._cargo.resolve_cargo_files(server, unit)
        self._daemon.ship_cargo(DaemonCredential.for_node(node), server.internal_id, cargo)

        logger.info(f"Shipped {len(cargo)} cargo files to server {server_id}")
        return cargo

    # ============================================
    # READ PATHS
    # ============================================

    def check_access(self, server_id: UUID, caller: Caller) -> ServerSnapshot:
        server = self._get_server(server_id)
        node = self._get_node(server)
        self._authorize(server, caller)

        allocation = self._allocations.get(server.allocation_id)
        status = self._refresh_status(server, node)
        return ServerSnapshot(server=server, status=status, node=node, allocation=allocation)

    def list_servers(self, caller: Caller) -> List[ServerSnapshot]:
        if caller.is_admin:
            servers = self._servers.list_all()
        else:
            servers = self._servers.list_by_user(caller.user_id)

        snapshots = []
        for server in servers:
            node = self._nodes.get(server.node_id) if server.node_id else None
            status = self._refresh_status(server, node) if node else UNKNOWN_STATE
            snapshots.append(ServerSnapshot(server=server, status=status, node=node))
        return snapshots

    def refresh_status(self, server: Server) -> str:
        """Status sweep entry point; never raises on daemon failure."""
        node = self._nodes.get(server.node_id) if server.node_id else None
        if node is None:
            return UNKNOWN_STATE
        return self._refresh_status(server, node)

    def _refresh_status(self, server: Server, node: Node) -> str:
        try:
            state = self._daemon.get_status(DaemonCredential.for_node(node), server.internal_id)
        except UpstreamUnavailableError as e:
            logger.warning(f"Status refresh for server {server.server_id} failed: {e}")
            return UNKNOWN_STATE

        if state == UNKNOWN_STATE:
            return UNKNOWN_STATE

        now = utcnow()
        server.observe(state, now)
        self._servers.record_observation(server.server_id, state, now)
        return server.state

    # ============================================
    # DAEMON-FACING
    # ============================================

    def validate_server_token(self, internal_id: str, token: str) -> ServerRouting:
        server = self._get_server_by_internal_id(internal_id)
        tokens.ensure_matches(server, token)
        node = self._get_node(server)

        return ServerRouting(
            server_id=server.server_id,
            internal_id=server.internal_id,
            name=server.name,
            node_id=node.node_id,
            node_name=node.name,
            fqdn=node.fqdn,
            port=node.port,
        )

    def get_daemon_config(self, internal_id: str, token: Optional[str] = None) -> DaemonServerConfig:
        """A token, when the daemon sends one, must match."""
        server = self._get_server_by_internal_id(internal_id)
        if token is not None:
            tokens.ensure_matches(server, token)
        unit = self._get_unit(server.unit_id)

        install = unit.install_script
        return DaemonServerConfig(
            docker_image=server.docker_image or unit.default_image(),
            docker_images=list(unit.docker_images),
            variables=[
                {
                    "name": variable.name,
                    "description": variable.description,
                    "defaultValue": variable.default_value,
                    "rules": variable.rules,
                }
                for variable in unit.environment_variables
            ],
            startup_command=server.startup_command or unit.default_startup_command,
            config_files=[{"path": cf.path, "content": cf.content} for cf in unit.config_files],
            install={
                "dockerImage": install.docker_image,
                "entrypoint": install.entrypoint or "bash",
                "script": install.script or DEFAULT_INSTALL_SCRIPT,
            },
            cargo=self._cargo.resolve_cargo_files(server, unit),
            server_control={
                "readyRegex": unit.startup.ready_regex,
                "stopCommand": unit.startup.stop_command,
            },
        )

    def get_cargo_files(
        self,
        server_id: UUID,
        caller: Optional[Caller] = None,
        token: Optional[str] = None,
    ) -> List[CargoFile]:
        """Either the validation token (daemon) or ownership (panel) authorizes."""
        server = self._get_server(server_id)

        if token is not None:
            tokens.ensure_matches(server, token)
        elif caller is not None:
            self._authorize(server, caller)
        else:
            raise AuthenticationRequired("Validation token or authenticated caller required")

        unit = self._get_unit(server.unit_id)
        return self._cargo.resolve_cargo_files(server, unit)

    # ============================================
    # Helpers
    # ============================================

    def _enter_phase(self, server: Server, phase: ServerPhase) -> None:
        ServerStateMachine.transition(server, phase)
        self._servers.set_phase(server.server_id, server.phase, server.phase_changed_at)

    @staticmethod
    def _require_admin(caller: Caller) -> None:
        if not caller.is_admin:
            raise AccessDeniedError("Admin permission required")

    @staticmethod
    def _authorize(server: Server, caller: Caller) -> None:
        if caller.is_admin or server.is_owned_by(caller.user_id):
            return
        raise AccessDeniedError(f"Access to server {server.server_id} denied")

    @staticmethod
    def _resolve_image(unit: Unit, requested: Optional[str]) -> str:
        if requested:
            if not unit.offers_image(requested):
                raise InvalidDockerImage(f"Image {requested} is not offered by unit {unit.short_name}")
            return requested
        return unit.default_image()

    def _get_server(self, server_id: UUID) -> Server:
        server = self._servers.get(server_id)
        if server is None:
            raise ServerNotFound(f"Server {server_id} not found")
        return server

    def _get_server_by_internal_id(self, internal_id: str) -> Server:
        server = self._servers.get_by_internal_id(internal_id)
        if server is None:
            raise ServerNotFound(f"Server {internal_id} not found")
        return server

    def _get_node(self, server: Server) -> Node:
        node = self._nodes.get(server.node_id) if server.node_id else None
        if node is None:
            raise ServerNodeNotFound(f"Node of server {server.server_id} not found")
        return node

    def _get_allocation(self, server: Server) -> Allocation:
        allocation = self._allocations.get(server.allocation_id)
        if allocation is None:
            raise AllocationNotFound(f"Allocation {server.allocation_id} not found")
        return allocation

    def _get_unit(self, unit_id: UUID) -> Unit:
        unit = self._units.get(unit_id)
        if unit is None:
            raise UnitNotFound(f"Unit {unit_id} not found")
        return unit
