from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Response

from provisioning_engine.api.dependencies import get_region_service, require_admin
from provisioning_engine.api.schemas.region import (
    RegionCreateRequest,
    RegionResponse,
    RegionUpdateRequest,
)

router = APIRouter(prefix="/regions", tags=["regions"], dependencies=[Depends(require_admin)])


@router.post("", response_model=RegionResponse, status_code=201)
def create_region(
    request: RegionCreateRequest,
    service=Depends(get_region_service),
):
    region = service.create_region(
        name=request.name,
        identifier=request.identifier,
        country_id=request.country_id,
        fallback_region_id=request.fallback_region_id,
        server_limit=request.server_limit,
    )
    return RegionResponse.from_region(region)


@router.get("", response_model=List[RegionResponse])
def list_regions(service=Depends(get_region_service)):
    return [RegionResponse.from_region(region) for region in service.list_regions()]


@router.get("/{region_id}", response_model=RegionResponse)
def get_region(region_id: UUID, service=Depends(get_region_service)):
    return RegionResponse.from_region(service.get_region(region_id))


@router.patch("/{region_id}", response_model=RegionResponse)
def update_region(
    region_id: UUID,
    request: RegionUpdateRequest,
    service=Depends(get_region_service),
):
    # only fields present in the body are applied
    changes = request.model_dump(exclude_unset=True)
    region = service.update_region(region_id, **changes)
    return RegionResponse.from_region(region)


@router.delete("/{region_id}", status_code=204)
def delete_region(region_id: UUID, service=Depends(get_region_service)):
    service.delete_region(region_id)
    return Response(status_code=204)
