import logging
from uuid import UUID

from fastapi import APIRouter, Depends

from provisioning_engine.api.dependencies import get_unit_repository, require_admin
from provisioning_engine.api.schemas.unit import UnitDefinition, UnitResponse
from provisioning_engine.core.errors import UnitNotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/units", tags=["units"], dependencies=[Depends(require_admin)])


@router.post("", response_model=UnitResponse, status_code=201)
def create_unit(definition: UnitDefinition, repository=Depends(get_unit_repository)):
    unit = definition.to_domain()
    repository.create(unit)
    logger.info(f"Registered unit {unit.short_name} ({unit.unit_id})")
    return UnitResponse.from_unit(unit)


@router.get("/{unit_id}", response_model=UnitResponse)
def get_unit(unit_id: UUID, repository=Depends(get_unit_repository)):
    unit = repository.get(unit_id)
    if unit is None:
        raise UnitNotFound(f"Unit {unit_id} not found")
    return UnitResponse.from_unit(unit)
