#provisioning_engine/infrastructure/postgres/models.py
"""SQLAlchemy ORM models for database tables."""

from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, BigInteger, DateTime, JSON, Enum as SQLEnum, Index, Text, Boolean, Float,
    ForeignKey, UniqueConstraint, Uuid
)

from provisioning_engine.core.models import CargoType, ServerPhase, utcnow
from provisioning_engine.infrastructure.postgres.database import Base


SERVER_ALLOCATION_CONSTRAINT = "uq_servers_allocation_id"


# ============================================
# REGIONS
# ============================================

class RegionORM(Base):
    """Region table."""

    __tablename__ = "regions"

    region_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    identifier = Column(String(100), nullable=False, unique=True, index=True)
    country_id = Column(String(10), nullable=True)

    fallback_region_id = Column(Uuid(as_uuid=True), ForeignKey("regions.region_id"), nullable=True)
    server_limit = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ============================================
# NODES
# ============================================

class NodeORM(Base):
    """Daemon host table."""

    __tablename__ = "nodes"

    node_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    fqdn = Column(String(255), nullable=False)
    port = Column(Integer, nullable=False)
    connection_key = Column(String(255), nullable=False)

    is_online = Column(Boolean, nullable=False, default=False)
    last_checked = Column(DateTime, nullable=True)

    region_id = Column(Uuid(as_uuid=True), ForeignKey("regions.region_id"), nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_nodes_region_online", "region_id", "is_online"),
    )


# ============================================
# ALLOCATIONS
# ============================================

class AllocationORM(Base):
    """Allocation table (bind address + port on a node)."""

    __tablename__ = "allocations"

    allocation_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    node_id = Column(Uuid(as_uuid=True), ForeignKey("nodes.node_id", ondelete="CASCADE"), nullable=False)

    bind_address = Column(String(100), nullable=False)
    port = Column(Integer, nullable=False)
    alias = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    assigned = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("node_id", "bind_address", "port", name="uq_allocations_node_address_port"),
        Index("ix_allocations_node_assigned", "node_id", "assigned"),
    )


# ============================================
# UNITS
# ============================================

class UnitORM(Base):
    """
    Unit (deployment template) table.

    The structured sections are JSON columns; the repository maps
    them to typed dataclasses so read sites never parse them.
    """

    __tablename__ = "units"

    unit_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    short_name = Column(String(100), nullable=False, unique=True)
    description = Column(Text, nullable=False, default="")

    docker_images = Column(JSON, nullable=False, default=list)
    default_docker_image = Column(String(500), nullable=True)
    default_startup_command = Column(Text, nullable=False)

    environment_variables = Column(JSON, nullable=False, default=list)
    config_files = Column(JSON, nullable=False, default=list)
    install_script = Column(JSON, nullable=False)
    startup = Column(JSON, nullable=False, default=dict)
    features = Column(JSON, nullable=False, default=list)
    recommended_requirements = Column(JSON, nullable=True)

    cargo_container_ids = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ============================================
# SERVERS
# ============================================

class ServerORM(Base):
    """
    Server table.

    allocation_id is unique so a second server can never hold the
    same allocation even if the assigned flag drifts.
    """

    __tablename__ = "servers"

    server_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    internal_id = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(100), nullable=False)

    node_id = Column(Uuid(as_uuid=True), ForeignKey("nodes.node_id", ondelete="SET NULL"), nullable=True, index=True)
    allocation_id = Column(Uuid(as_uuid=True), ForeignKey("allocations.allocation_id"), nullable=False)
    unit_id = Column(Uuid(as_uuid=True), ForeignKey("units.unit_id"), nullable=False)

    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    project_id = Column(Uuid(as_uuid=True), nullable=True)

    memory_mib = Column(Integer, nullable=False)
    disk_mib = Column(Integer, nullable=False)
    cpu_percent = Column(Float, nullable=False)

    docker_image = Column(String(500), nullable=True)
    startup_command = Column(Text, nullable=True)
    feature_selections = Column(JSON, nullable=False, default=dict)

    validation_token = Column(String(100), nullable=False)

    phase = Column(SQLEnum(ServerPhase, name="server_phase"), nullable=False, default=ServerPhase.CREATING)
    phase_changed_at = Column(DateTime, nullable=False, default=utcnow)
    observed_state = Column(String(50), nullable=True)
    observed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("allocation_id", name=SERVER_ALLOCATION_CONSTRAINT),
        Index("ix_servers_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ServerORM(server_id={self.server_id}, "
            f"phase={self.phase.value}, "
            f"node_id={self.node_id})>"
        )


# ============================================
# CARGO
# ============================================

class CargoORM(Base):
    """Cargo (shippable file) table."""

    __tablename__ = "cargo"

    cargo_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")

    cargo_type = Column(SQLEnum(CargoType, name="cargo_type"), nullable=False)
    hash = Column(String(64), nullable=True, index=True)
    size = Column(BigInteger, nullable=False, default=0)
    mime_type = Column(String(255), nullable=False, default="application/octet-stream")
    remote_url = Column(String(2000), nullable=True)

    properties = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class CargoContainerORM(Base):
    """Ordered bundle of cargo items."""

    __tablename__ = "cargo_containers"

    container_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")

    # [{"cargo_id": "...", "target_path": "..."}] in ship order
    items = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
