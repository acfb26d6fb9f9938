# provisioning_engine/cargo/signing.py

import hashlib
import hmac
import time
from typing import Optional
from uuid import UUID

from provisioning_engine.core.errors import CargoLinkExpired, InvalidCargoSignature


def sign(cargo_id: UUID, server_id: UUID, expires: int, app_key: str) -> str:
    payload = f"{cargo_id}:{server_id}:{expires}:{app_key}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def verify(
    cargo_id: UUID,
    server_id: UUID,
    expires: int,
    signature: str,
    app_key: str,
    now: Optional[float] = None,
) -> None:
    """
    Check a download link.

    The signature is compared before the expiry so a forged link
    never learns whether its timestamp was acceptable.
    """
    expected = sign(cargo_id, server_id, expires, app_key)
    if not hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8")):
        raise InvalidCargoSignature("Invalid cargo download signature")

    now = time.time() if now is None else now
    if now > expires:
        raise CargoLinkExpired("Cargo download link has expired")
