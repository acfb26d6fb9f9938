from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from provisioning_engine.core.models import Allocation, DockerImage, Node, Server


class ServerCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    unit_id: UUID
    user_id: UUID
    memory_mib: int = Field(gt=0)
    disk_mib: int = Field(gt=0)
    cpu_percent: float = Field(gt=0)

    # placement: node_id (+ allocation_id) or region_id
    node_id: Optional[UUID] = None
    allocation_id: Optional[UUID] = None
    region_id: Optional[UUID] = None

    project_id: Optional[UUID] = None
    docker_image: Optional[str] = None
    startup_command: Optional[str] = None
    feature_selections: Dict[str, Any] = Field(default_factory=dict)


class ServerUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    memory_mib: Optional[int] = Field(default=None, gt=0)
    disk_mib: Optional[int] = Field(default=None, gt=0)
    cpu_percent: Optional[float] = Field(default=None, gt=0)
    unit_id: Optional[UUID] = None
    docker_image: Optional[str] = None
    startup_command: Optional[str] = None


class DockerImageChangeRequest(BaseModel):
    docker_image: str = Field(min_length=1)


class NodeSummary(BaseModel):
    """Public node fields. The connection key is never part of a response."""

    node_id: UUID
    name: str
    fqdn: str
    port: int
    is_online: bool

    @classmethod
    def from_node(cls, node: Node) -> "NodeSummary":
        return cls(
            node_id=node.node_id,
            name=node.name,
            fqdn=node.fqdn,
            port=node.port,
            is_online=node.is_online,
        )


class AllocationSummary(BaseModel):
    allocation_id: UUID
    bind_address: str
    port: int
    alias: Optional[str] = None

    @classmethod
    def from_allocation(cls, allocation: Allocation) -> "AllocationSummary":
        return cls(
            allocation_id=allocation.allocation_id,
            bind_address=allocation.bind_address,
            port=allocation.port,
            alias=allocation.alias,
        )


class ServerResponse(BaseModel):
    server_id: UUID
    internal_id: str
    name: str
    node_id: Optional[UUID]
    allocation_id: UUID
    unit_id: UUID
    user_id: UUID
    project_id: Optional[UUID]
    memory_mib: int
    disk_mib: int
    cpu_percent: float
    docker_image: Optional[str]
    startup_command: Optional[str]
    feature_selections: Dict[str, Any]
    phase: str
    status: str
    created_at: datetime
    node: Optional[NodeSummary] = None
    allocation: Optional[AllocationSummary] = None

    @classmethod
    def from_server(
        cls,
        server: Server,
        status: Optional[str] = None,
        node: Optional[Node] = None,
        allocation: Optional[Allocation] = None,
    ) -> "ServerResponse":
        return cls(
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
            feature_selections=server.feature_selections,
            phase=server.phase.value,
            status=status or server.state,
            created_at=server.created_at,
            node=NodeSummary.from_node(node) if node else None,
            allocation=AllocationSummary.from_allocation(allocation) if allocation else None,
        )

    @classmethod
    def from_snapshot(cls, snapshot) -> "ServerResponse":
        return cls.from_server(
            snapshot.server,
            status=snapshot.status,
            node=snapshot.node,
            allocation=snapshot.allocation,
        )


class DockerImageResponse(BaseModel):
    image: str
    display_name: str

    @classmethod
    def from_image(cls, image: DockerImage) -> "DockerImageResponse":
        return cls(image=image.image, display_name=image.display_name)


class DockerImagesResponse(BaseModel):
    current: str
    images: List[DockerImageResponse]


# -------------------------
# Daemon-facing (camelCase on the wire)
# -------------------------

class RoutingNodeResponse(BaseModel):
    id: UUID
    name: str
    fqdn: str
    port: int


class RoutingServerResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: UUID
    name: str
    internal_id: str = Field(alias="internalId")
    node: RoutingNodeResponse


class ServerRoutingResponse(BaseModel):
    validated: bool = True
    server: RoutingServerResponse

    @classmethod
    def from_routing(cls, routing) -> "ServerRoutingResponse":
        return cls(
            server=RoutingServerResponse(
                id=routing.server_id,
                name=routing.name,
                internal_id=routing.internal_id,
                node=RoutingNodeResponse(
                    id=routing.node_id,
                    name=routing.node_name,
                    fqdn=routing.fqdn,
                    port=routing.port,
                ),
            )
        )


class CargoFilesResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cargo_files: List[Dict[str, Any]] = Field(alias="cargoFiles")

    @classmethod
    def from_files(cls, files) -> "CargoFilesResponse":
        return cls(cargo_files=[item.to_payload() for item in files])
