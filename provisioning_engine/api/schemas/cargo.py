from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from provisioning_engine.core.models import (
    Cargo,
    CargoContainer,
    CargoContainerItem,
    CargoProperties,
)


class CargoPropertiesSchema(BaseModel):
    hidden: bool = False
    readonly: bool = False
    no_delete: bool = False
    custom_properties: Dict[str, Any] = Field(default_factory=dict)

    def to_domain(self) -> CargoProperties:
        return CargoProperties(**self.model_dump())


class RemoteCargoRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    remote_url: str = Field(pattern=r"^https?://")
    description: str = ""
    properties: CargoPropertiesSchema = Field(default_factory=CargoPropertiesSchema)


class CargoResponse(BaseModel):
    cargo_id: UUID
    name: str
    cargo_type: str
    description: str
    hash: Optional[str] = None
    size: int
    mime_type: str
    remote_url: Optional[str] = None
    properties: CargoPropertiesSchema

    @classmethod
    def from_cargo(cls, cargo: Cargo) -> "CargoResponse":
        return cls(
            cargo_id=cargo.cargo_id,
            name=cargo.name,
            cargo_type=cargo.cargo_type.value,
            description=cargo.description,
            hash=cargo.hash,
            size=cargo.size,
            mime_type=cargo.mime_type,
            remote_url=cargo.remote_url,
            properties=CargoPropertiesSchema(
                hidden=cargo.properties.hidden,
                readonly=cargo.properties.readonly,
                no_delete=cargo.properties.no_delete,
                custom_properties=dict(cargo.properties.custom_properties),
            ),
        )


# Containers

class ContainerItemSchema(BaseModel):
    cargo_id: UUID
    target_path: str = Field(min_length=1)

    def to_domain(self) -> CargoContainerItem:
        return CargoContainerItem(cargo_id=self.cargo_id, target_path=self.target_path)


class CargoContainerRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    items: List[ContainerItemSchema] = Field(default_factory=list)


class CargoContainerResponse(BaseModel):
    container_id: UUID
    name: str
    description: str
    items: List[ContainerItemSchema]

    @classmethod
    def from_container(cls, container: CargoContainer) -> "CargoContainerResponse":
        return cls(
            container_id=container.container_id,
            name=container.name,
            description=container.description,
            items=[
                ContainerItemSchema(cargo_id=item.cargo_id, target_path=item.target_path)
                for item in container.items
            ],
        )
