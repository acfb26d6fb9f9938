#provisioning_engine/api/dependencies.py
"""FastAPI dependencies. Services resolve from the container on first use."""

from typing import Optional
from uuid import UUID

from fastapi import Depends, Header

from provisioning_engine.core.errors import AccessDeniedError, AuthenticationRequired
from provisioning_engine.core.permissions import Caller


def get_server_orchestrator():
    from provisioning_engine.container import server_orchestrator
    return server_orchestrator


def get_region_service():
    from provisioning_engine.container import region_service
    return region_service


def get_cargo_service():
    from provisioning_engine.container import cargo_service
    return cargo_service


def get_cargo_catalog():
    from provisioning_engine.container import cargo_catalog
    return cargo_catalog


def get_unit_repository():
    from provisioning_engine.container import unit_repository
    return unit_repository


# ============================================
# Caller identity
# ============================================

def _parse_caller(user_id: Optional[str], permissions: Optional[str]) -> Optional[Caller]:
    """
    The auth layer in front of the API forwards the verified identity
    as X-User-Id and a comma separated X-User-Permissions header.
    """
    if not user_id:
        return None
    try:
        parsed_id = UUID(user_id)
    except ValueError:
        raise AuthenticationRequired("Invalid X-User-Id header")

    granted = frozenset(p.strip() for p in (permissions or "").split(",") if p.strip())
    return Caller(user_id=parsed_id, permissions=granted)


def get_optional_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_permissions: Optional[str] = Header(None),
) -> Optional[Caller]:
    return _parse_caller(x_user_id, x_user_permissions)


def get_caller(caller: Optional[Caller] = Depends(get_optional_caller)) -> Caller:
    if caller is None:
        raise AuthenticationRequired("Authentication required")
    return caller


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise AccessDeniedError("Admin permission required")
    return caller
