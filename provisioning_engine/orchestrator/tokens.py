# provisioning_engine/orchestrator/tokens.py
"""Per-server validation tokens shared with the daemon."""

from typing import Optional
from uuid import uuid4

from provisioning_engine.core.errors import ValidationTokenMismatch
from provisioning_engine.core.models import Server


def generate_token() -> str:
    return str(uuid4())


def generate_internal_id() -> str:
    return str(uuid4())


def matches(server: Server, token: Optional[str]) -> bool:
    """Exact, case-sensitive match; empty never matches."""
    return bool(token) and token == server.validation_token


def ensure_matches(server: Server, token: Optional[str]) -> None:
    if not matches(server, token):
        raise ValidationTokenMismatch(f"Validation token mismatch for server {server.internal_id}")
