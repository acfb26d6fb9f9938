import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import FileResponse, RedirectResponse, Response

from provisioning_engine.api.dependencies import get_cargo_catalog, get_cargo_service, require_admin
from provisioning_engine.api.schemas.cargo import (
    CargoContainerRequest,
    CargoContainerResponse,
    CargoResponse,
    RemoteCargoRequest,
)
from provisioning_engine.core.errors import CargoNotFound
from provisioning_engine.core.models import CargoProperties, CargoType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cargo", tags=["cargo"])

admin_only = [Depends(require_admin)]


# ============================================
# CARGO (admin)
# ============================================

@router.post("/upload", response_model=CargoResponse, status_code=201, dependencies=admin_only)
def upload_cargo(
    file: UploadFile = File(...),
    name: Optional[str] = Form(None),
    description: str = Form(""),
    hidden: bool = Form(False),
    readonly: bool = Form(False),
    no_delete: bool = Form(False),
    catalog=Depends(get_cargo_catalog),
):
    content = file.file.read()
    cargo = catalog.store_local(
        name=name or file.filename or "upload",
        content=content,
        mime_type=file.content_type,
        description=description,
        properties=CargoProperties(hidden=hidden, readonly=readonly, no_delete=no_delete),
    )
    return CargoResponse.from_cargo(cargo)


@router.post("/remote", response_model=CargoResponse, status_code=201, dependencies=admin_only)
def register_remote_cargo(request: RemoteCargoRequest, catalog=Depends(get_cargo_catalog)):
    cargo = catalog.register_remote(
        name=request.name,
        remote_url=request.remote_url,
        description=request.description,
        properties=request.properties.to_domain(),
    )
    return CargoResponse.from_cargo(cargo)


@router.get("", response_model=List[CargoResponse], dependencies=admin_only)
def list_cargo(catalog=Depends(get_cargo_catalog)):
    return [CargoResponse.from_cargo(cargo) for cargo in catalog.list_cargo()]


# ============================================
# CONTAINERS (admin)
# ============================================

@router.post("/containers", response_model=CargoContainerResponse, status_code=201, dependencies=admin_only)
def create_container(request: CargoContainerRequest, catalog=Depends(get_cargo_catalog)):
    container = catalog.create_container(
        name=request.name,
        items=[item.to_domain() for item in request.items],
        description=request.description,
    )
    return CargoContainerResponse.from_container(container)


@router.get("/containers", response_model=List[CargoContainerResponse], dependencies=admin_only)
def list_containers(catalog=Depends(get_cargo_catalog)):
    return [CargoContainerResponse.from_container(container) for container in catalog.list_containers()]


@router.get("/containers/{container_id}", response_model=CargoContainerResponse, dependencies=admin_only)
def get_container(container_id: UUID, catalog=Depends(get_cargo_catalog)):
    return CargoContainerResponse.from_container(catalog.get_container(container_id))


@router.post("/containers/{container_id}/units/{unit_id}", status_code=204, dependencies=admin_only)
def attach_container(container_id: UUID, unit_id: UUID, catalog=Depends(get_cargo_catalog)):
    catalog.attach_to_unit(container_id, unit_id)
    return Response(status_code=204)


@router.delete("/containers/{container_id}/units/{unit_id}", status_code=204, dependencies=admin_only)
def detach_container(container_id: UUID, unit_id: UUID, catalog=Depends(get_cargo_catalog)):
    catalog.detach_from_unit(container_id, unit_id)
    return Response(status_code=204)


# ============================================
# BY ID (declared after the container routes)
# ============================================

@router.get("/{cargo_id}", response_model=CargoResponse, dependencies=admin_only)
def get_cargo(cargo_id: UUID, catalog=Depends(get_cargo_catalog)):
    return CargoResponse.from_cargo(catalog.get_cargo(cargo_id))


@router.get("/{cargo_id}/download")
def download_cargo(
    cargo_id: UUID,
    server_id: UUID = Query(..., alias="serverId"),
    expires: int = Query(...),
    signature: str = Query(...),
    service=Depends(get_cargo_service),
):
    """Signature-gated download, no caller identity; remote cargo redirects to its source."""
    cargo = service.verify_download(cargo_id, server_id, expires, signature)

    if cargo.cargo_type == CargoType.REMOTE:
        if not cargo.remote_url:
            raise CargoNotFound(f"Remote cargo {cargo_id} has no URL")
        return RedirectResponse(cargo.remote_url, status_code=302)

    path = service.local_path(cargo)
    if not path.is_file():
        logger.error(f"Cargo {cargo_id} content missing at {path}")
        raise CargoNotFound(f"Cargo {cargo_id} content is missing")

    logger.info(f"Serving cargo {cargo_id} to server {server_id}")
    return FileResponse(path, media_type=cargo.mime_type, filename=cargo.name)
