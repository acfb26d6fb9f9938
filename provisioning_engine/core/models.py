"""Core domain models (placement, lifecycle, cargo)."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID


def utcnow() -> datetime:
    """Naive UTC timestamp (matches the DateTime columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ServerPhase(Enum):
    """Locally assigned lifecycle phase."""

    CREATING = "creating"
    INSTALLING = "installing"
    RUNNING = "running"
    STARTING = "starting"
    STOPPING = "stopping"
    RESTARTING = "restarting"
    UPDATING = "updating"
    REINSTALLING = "reinstalling"
    DELETING = "deleting"


# Reported when the daemon could not be asked
UNKNOWN_STATE = "unknown"

POWER_ACTIONS = {
    "start": ServerPhase.STARTING,
    "stop": ServerPhase.STOPPING,
    "restart": ServerPhase.RESTARTING,
}


class CargoType(Enum):
    LOCAL = "local"
    REMOTE = "remote"


# -------------------------
# PLACEMENT
# -------------------------

@dataclass
class Region:
    region_id: UUID
    name: str
    identifier: str
    country_id: Optional[str] = None
    fallback_region_id: Optional[UUID] = None
    server_limit: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Node:
    """A host running the daemon."""

    node_id: UUID
    name: str
    fqdn: str
    port: int
    connection_key: str = field(repr=False)
    is_online: bool = False
    last_checked: Optional[datetime] = None
    region_id: Optional[UUID] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Allocation:
    """Reservable (bind address, port) pair on a node."""

    allocation_id: UUID
    node_id: UUID
    bind_address: str
    port: int
    alias: Optional[str] = None
    notes: Optional[str] = None
    assigned: bool = False


# -------------------------
# UNITS
# -------------------------

@dataclass
class DockerImage:
    image: str
    display_name: str = "Default Image"


@dataclass
class EnvironmentVariable:
    name: str
    default_value: str = ""
    description: Optional[str] = None
    required: bool = False
    user_viewable: bool = True
    user_editable: bool = False
    rules: str = ""


@dataclass
class ConfigFile:
    path: str
    content: str


@dataclass
class InstallScript:
    docker_image: str
    entrypoint: str = "bash"
    script: str = ""


@dataclass
class StartupConfig:
    user_editable: bool = False
    ready_regex: Optional[str] = None
    stop_command: Optional[str] = None


@dataclass
class ResourceRequirements:
    memory_mib: Optional[int] = None
    disk_mib: Optional[int] = None
    cpu_percent: Optional[float] = None


@dataclass
class Unit:
    """Deployment template servers are instantiated from."""

    unit_id: UUID
    name: str
    short_name: str
    install_script: InstallScript
    default_startup_command: str
    description: str = ""
    docker_images: List[DockerImage] = field(default_factory=list)
    default_docker_image: Optional[str] = None
    environment_variables: List[EnvironmentVariable] = field(default_factory=list)
    config_files: List[ConfigFile] = field(default_factory=list)
    startup: StartupConfig = field(default_factory=StartupConfig)
    features: List[Dict[str, Any]] = field(default_factory=list)
    recommended_requirements: Optional[ResourceRequirements] = None
    cargo_container_ids: List[UUID] = field(default_factory=list)

    def default_image(self) -> str:
        if self.default_docker_image:
            return self.default_docker_image
        if self.docker_images:
            return self.docker_images[0].image
        return ""

    def offers_image(self, image: str) -> bool:
        return any(candidate.image == image for candidate in self.docker_images)


# -------------------------
# SERVERS
# -------------------------

@dataclass
class Server:
    """
    One provisioned game-server instance.

    The lifecycle is split into two fields:
    - phase: set locally by lifecycle operations
    - observed_state: last state reported by the daemon

    `state` returns whichever of the two was written last.
    """

    server_id: UUID
    internal_id: str
    name: str
    node_id: Optional[UUID]
    allocation_id: UUID
    unit_id: UUID
    user_id: UUID
    memory_mib: int
    disk_mib: int
    cpu_percent: float
    validation_token: str = field(repr=False)

    project_id: Optional[UUID] = None
    docker_image: Optional[str] = None
    startup_command: Optional[str] = None
    feature_selections: Dict[str, Any] = field(default_factory=dict)

    phase: ServerPhase = ServerPhase.CREATING
    phase_changed_at: datetime = field(default_factory=utcnow)
    observed_state: Optional[str] = None
    observed_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def state(self) -> str:
        if self.observed_state and self.observed_at:
            if self.phase_changed_at is None or self.observed_at >= self.phase_changed_at:
                return self.observed_state
        return self.phase.value

    def observe(self, daemon_state: str, now: Optional[datetime] = None) -> None:
        """Record a state reported by the daemon."""
        self.observed_state = daemon_state
        self.observed_at = now or utcnow()

    def is_owned_by(self, user_id: UUID) -> bool:
        return self.user_id == user_id


# -------------------------
# CARGO
# -------------------------

@dataclass
class CargoProperties:
    hidden: bool = False
    readonly: bool = False
    no_delete: bool = False
    custom_properties: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "hidden": self.hidden,
            "readonly": self.readonly,
            "noDelete": self.no_delete,
            "customProperties": dict(self.custom_properties),
        }


@dataclass
class Cargo:
    cargo_id: UUID
    name: str
    cargo_type: CargoType
    description: str = ""
    hash: Optional[str] = None
    size: int = 0
    mime_type: str = "application/octet-stream"
    remote_url: Optional[str] = None
    properties: CargoProperties = field(default_factory=CargoProperties)


@dataclass
class CargoContainerItem:
    cargo_id: UUID
    target_path: str


@dataclass
class CargoContainer:
    container_id: UUID
    name: str
    description: str = ""
    items: List[CargoContainerItem] = field(default_factory=list)


@dataclass(frozen=True)
class CargoFile:
    """One resolved file handed to the daemon."""

    cargo_id: UUID
    url: str
    target_path: str
    properties: CargoProperties

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": str(self.cargo_id),
            "url": self.url,
            "targetPath": self.target_path,
            "properties": self.properties.to_payload(),
        }
