from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from provisioning_engine.core.models import Region


class RegionCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    identifier: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9-]*$")
    country_id: Optional[str] = Field(default=None, max_length=10)
    fallback_region_id: Optional[UUID] = None
    server_limit: Optional[int] = Field(default=None, ge=0)


class RegionUpdateRequest(BaseModel):
    """Send a field as null to clear it; omit it to keep it."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    identifier: Optional[str] = Field(default=None, min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9-]*$")
    country_id: Optional[str] = Field(default=None, max_length=10)
    fallback_region_id: Optional[UUID] = None
    server_limit: Optional[int] = Field(default=None, ge=0)


class RegionResponse(BaseModel):
    region_id: UUID
    name: str
    identifier: str
    country_id: Optional[str]
    fallback_region_id: Optional[UUID]
    server_limit: Optional[int]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_region(cls, region: Region) -> "RegionResponse":
        return cls(
            region_id=region.region_id,
            name=region.name,
            identifier=region.identifier,
            country_id=region.country_id,
            fallback_region_id=region.fallback_region_id,
            server_limit=region.server_limit,
            created_at=region.created_at,
            updated_at=region.updated_at,
        )
