#provisioning_engine/api/errors.py
"""Maps the engine's exception families to HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from provisioning_engine.core.errors import (
    AccessDeniedError,
    AuthenticationRequired,
    CargoLinkExpired,
    ConflictError,
    InternalError,
    InvalidCargoSignature,
    NotFoundError,
    ProvisioningError,
    UpstreamUnavailableError,
    ValidationFailedError,
    ValidationTokenMismatch,
)

logger = logging.getLogger(__name__)


# First match wins, so specific classes come before their families
STATUS_CODES = [
    (AuthenticationRequired, 401),
    (ValidationTokenMismatch, 403),
    (InvalidCargoSignature, 403),
    (CargoLinkExpired, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (AccessDeniedError, 403),
    (UpstreamUnavailableError, 502),
    (ValidationFailedError, 400),
    (InternalError, 500),
]


def status_code_for(error: ProvisioningError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


async def provisioning_error_handler(request: Request, exc: ProvisioningError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc}")
    return JSONResponse(status_code=status_code, content={"error": str(exc)})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ProvisioningError, provisioning_error_handler)
