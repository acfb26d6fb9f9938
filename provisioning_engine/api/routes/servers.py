from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Response

from provisioning_engine.api.dependencies import (
    get_caller,
    get_optional_caller,
    get_server_orchestrator,
    require_admin,
)
from provisioning_engine.api.schemas.server import (
    CargoFilesResponse,
    DockerImageChangeRequest,
    DockerImageResponse,
    DockerImagesResponse,
    ServerCreateRequest,
    ServerResponse,
    ServerRoutingResponse,
    ServerUpdateRequest,
)
from provisioning_engine.core.permissions import Caller
from provisioning_engine.orchestrator.server_orchestrator import (
    CreateServerRequest,
    UpdateServerRequest,
)
from provisioning_engine.placement.selector import PlacementTarget

router = APIRouter(prefix="/servers", tags=["servers"])


# ============================================
# Panel-facing
# ============================================

@router.post("", response_model=ServerResponse, status_code=201)
def create_server(
    request: ServerCreateRequest,
    caller: Caller = Depends(require_admin),
    orchestrator=Depends(get_server_orchestrator),
):
    target = PlacementTarget(
        node_id=request.node_id,
        allocation_id=request.allocation_id,
        region_id=request.region_id,
    )

    server = orchestrator.create(
        CreateServerRequest(
            name=request.name,
            unit_id=request.unit_id,
            user_id=request.user_id,
            memory_mib=request.memory_mib,
            disk_mib=request.disk_mib,
            cpu_percent=request.cpu_percent,
            target=target,
            project_id=request.project_id,
            docker_image=request.docker_image,
            startup_command=request.startup_command,
            feature_selections=request.feature_selections,
        ),
        caller,
    )

    return ServerResponse.from_server(server)


@router.get("", response_model=List[ServerResponse])
def list_servers(
    caller: Caller = Depends(get_caller),
    orchestrator=Depends(get_server_orchestrator),
):
    return [ServerResponse.from_snapshot(snapshot) for snapshot in orchestrator.list_servers(caller)]


@router.get("/{server_id}", response_model=ServerResponse)
def get_server(
    server_id: UUID,
    caller: Caller = Depends(get_caller),
    orchestrator=Depends(get_server_orchestrator),
):
    return ServerResponse.from_snapshot(orchestrator.check_access(server_id, caller))


@router.patch("/{server_id}", response_model=ServerResponse)
def update_server(
    server_id: UUID,
    request: ServerUpdateRequest,
    caller: Caller = Depends(require_admin),
    orchestrator=Depends(get_server_orchestrator),
):
    server = orchestrator.update(
        server_id,
        UpdateServerRequest(**request.model_dump()),
        caller,
    )
    return ServerResponse.from_server(server)


@router.delete("/{server_id}", status_code=204)
def delete_server(
    server_id: UUID,
    caller: Caller = Depends(require_admin),
    orchestrator=Depends(get_server_orchestrator),
):
    orchestrator.delete(server_id, caller)
    return Response(status_code=204)


@router.post("/{server_id}/power/{action}", response_model=ServerResponse)
def power_server(
    server_id: UUID,
    action: str,
    caller: Caller = Depends(get_caller),
    orchestrator=Depends(get_server_orchestrator),
):
    return ServerResponse.from_snapshot(orchestrator.power(server_id, action, caller))


@router.post("/{server_id}/reinstall", response_model=ServerResponse)
def reinstall_server(
    server_id: UUID,
    caller: Caller = Depends(get_caller),
    orchestrator=Depends(get_server_orchestrator),
):
    return ServerResponse.from_snapshot(orchestrator.reinstall(server_id, caller))


@router.post("/{server_id}/cargo/ship", response_model=CargoFilesResponse)
def ship_cargo(
    server_id: UUID,
    caller: Caller = Depends(get_caller),
    orchestrator=Depends(get_server_orchestrator),
):
    return CargoFilesResponse.from_files(orchestrator.ship_cargo(server_id, caller))


@router.get("/{server_id}/docker-images", response_model=DockerImagesResponse)
def list_docker_images(
    server_id: UUID,
    caller: Caller = Depends(get_caller),
    orchestrator=Depends(get_server_orchestrator),
):
    images, current = orchestrator.list_docker_images(server_id, caller)
    return DockerImagesResponse(
        current=current,
        images=[DockerImageResponse.from_image(image) for image in images],
    )


@router.patch("/{server_id}/docker-image", response_model=ServerResponse)
def change_docker_image(
    server_id: UUID,
    request: DockerImageChangeRequest,
    caller: Caller = Depends(get_caller),
    orchestrator=Depends(get_server_orchestrator),
):
    server = orchestrator.change_docker_image(server_id, request.docker_image, caller)
    return ServerResponse.from_server(server)


# ============================================
# Daemon-facing
# ============================================

@router.get("/{internal_id}/config")
def get_daemon_config(
    internal_id: str,
    x_validation_token: Optional[str] = Header(None),
    orchestrator=Depends(get_server_orchestrator),
):
    return orchestrator.get_daemon_config(internal_id, x_validation_token).to_payload()


@router.get("/{internal_id}/validate/{token}", response_model=ServerRoutingResponse)
def validate_server_token(
    internal_id: str,
    token: str,
    orchestrator=Depends(get_server_orchestrator),
):
    routing = orchestrator.validate_server_token(internal_id, token)
    return ServerRoutingResponse.from_routing(routing)


@router.get("/{server_id}/cargo-files", response_model=CargoFilesResponse)
def get_cargo_files(
    server_id: UUID,
    token: Optional[str] = Query(None),
    caller: Optional[Caller] = Depends(get_optional_caller),
    orchestrator=Depends(get_server_orchestrator),
):
    cargo = orchestrator.get_cargo_files(server_id, caller=caller, token=token)
    return CargoFilesResponse.from_files(cargo)
