"""Unit definitions are validated here once; everything past this point works on dataclasses."""

from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, model_validator

from provisioning_engine.core.models import (
    ConfigFile,
    DockerImage,
    EnvironmentVariable,
    InstallScript,
    ResourceRequirements,
    StartupConfig,
    Unit,
)


class DockerImageSchema(BaseModel):
    image: str = Field(min_length=1)
    display_name: str = "Default Image"


class EnvironmentVariableSchema(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    default_value: str = ""
    required: bool = False
    user_viewable: bool = True
    user_editable: bool = False
    rules: str = ""


class ConfigFileSchema(BaseModel):
    path: str = Field(min_length=1)
    content: str


class InstallScriptSchema(BaseModel):
    docker_image: str = Field(min_length=1)
    entrypoint: str = "bash"
    script: str = ""


class StartupSchema(BaseModel):
    user_editable: bool = False
    ready_regex: Optional[str] = None
    stop_command: Optional[str] = None


class RequirementsSchema(BaseModel):
    memory_mib: Optional[int] = Field(default=None, gt=0)
    disk_mib: Optional[int] = Field(default=None, gt=0)
    cpu_percent: Optional[float] = Field(default=None, gt=0)


class UnitDefinition(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    short_name: str = Field(min_length=1, max_length=100)
    description: str = ""
    docker_images: List[DockerImageSchema] = Field(min_length=1)
    default_docker_image: Optional[str] = None
    default_startup_command: str = Field(min_length=1)
    environment_variables: List[EnvironmentVariableSchema] = Field(default_factory=list)
    config_files: List[ConfigFileSchema] = Field(default_factory=list)
    install_script: InstallScriptSchema
    startup: StartupSchema = Field(default_factory=StartupSchema)
    features: List[Dict[str, Any]] = Field(default_factory=list)
    recommended_requirements: Optional[RequirementsSchema] = None
    cargo_container_ids: List[UUID] = Field(default_factory=list)

    @model_validator(mode="after")
    def default_image_is_offered(self):
        if self.default_docker_image is not None:
            if self.default_docker_image not in {image.image for image in self.docker_images}:
                raise ValueError("default_docker_image must be one of docker_images")
        return self

    def to_domain(self, unit_id: Optional[UUID] = None) -> Unit:
        requirements = self.recommended_requirements
        return Unit(
            unit_id=unit_id or uuid4(),
            name=self.name,
            short_name=self.short_name,
            description=self.description,
            docker_images=[DockerImage(**image.model_dump()) for image in self.docker_images],
            default_docker_image=self.default_docker_image,
            default_startup_command=self.default_startup_command,
            environment_variables=[
                EnvironmentVariable(**variable.model_dump()) for variable in self.environment_variables
            ],
            config_files=[ConfigFile(**config.model_dump()) for config in self.config_files],
            install_script=InstallScript(**self.install_script.model_dump()),
            startup=StartupConfig(**self.startup.model_dump()),
            features=list(self.features),
            recommended_requirements=(
                ResourceRequirements(**requirements.model_dump()) if requirements else None
            ),
            cargo_container_ids=list(self.cargo_container_ids),
        )


class UnitResponse(BaseModel):
    unit_id: UUID
    name: str
    short_name: str
    description: str
    docker_images: List[DockerImageSchema]
    default_docker_image: str
    default_startup_command: str

    @classmethod
    def from_unit(cls, unit: Unit) -> "UnitResponse":
        return cls(
            unit_id=unit.unit_id,
            name=unit.name,
            short_name=unit.short_name,
            description=unit.description,
            docker_images=[
                DockerImageSchema(image=image.image, display_name=image.display_name)
                for image in unit.docker_images
            ],
            default_docker_image=unit.default_image(),
            default_startup_command=unit.default_startup_command,
        )
