# provisioning_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class ProvisioningError(Exception):
    """Base class for all provisioning engine errors."""
    pass


# -----------------------------
# Not Found
# -----------------------------

class NotFoundError(ProvisioningError):
    pass


class RegionNotFound(NotFoundError):
    pass


class NodeNotFound(NotFoundError):
    pass


class AllocationNotFound(NotFoundError):
    pass


class UnitNotFound(NotFoundError):
    pass


class ServerNotFound(NotFoundError):
    pass


class ServerNodeNotFound(NotFoundError):
    """Server exists but its node record is gone."""
    pass


class CargoNotFound(NotFoundError):
    pass


class CargoContainerNotFound(NotFoundError):
    pass


# -----------------------------
# Conflict / Capacity
# -----------------------------

class ConflictError(ProvisioningError):
    pass


class NodeOffline(ConflictError):
    pass


class AllocationAlreadyAssigned(ConflictError):
    pass


class NoAvailableAllocations(ConflictError):
    pass


class NoAvailableNodes(ConflictError):
    pass


class RegionAtCapacity(ConflictError):
    pass


class FallbackRegionCycle(ConflictError):
    pass


class DuplicateRegionIdentifier(ConflictError):
    pass


class RegionInUse(ConflictError):
    """Region still has nodes or is another region's fallback."""
    pass


class ServerBusy(ConflictError):
    """Another lifecycle operation holds the server lock."""
    pass


class DuplicateCargo(ConflictError):
    """Uploaded content already stored under the same hash."""
    pass


# -----------------------------
# Access
# -----------------------------

class AccessDeniedError(ProvisioningError):
    pass


class AuthenticationRequired(ProvisioningError):
    """No caller identity and no validation token."""
    pass


# -----------------------------
# Upstream (daemon)
# -----------------------------

class UpstreamUnavailableError(ProvisioningError):
    pass


class NodeInfoUnavailable(UpstreamUnavailableError):
    pass


class DaemonUnreachable(UpstreamUnavailableError):
    pass


class DaemonRequestFailed(UpstreamUnavailableError):
    """Daemon answered with an error body."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


# -----------------------------
# Validation
# -----------------------------

class ValidationFailedError(ProvisioningError):
    pass


class InvalidAction(ValidationFailedError):
    pass


class InvalidPlacementTarget(ValidationFailedError):
    pass


class AllocationNodeMismatch(ValidationFailedError):
    pass


class InvalidDockerImage(ValidationFailedError):
    pass


class InvalidStateTransition(ValidationFailedError):
    pass


class ValidationTokenMismatch(ValidationFailedError):
    pass


class InvalidCargoSignature(ValidationFailedError):
    pass


class CargoLinkExpired(ValidationFailedError):
    pass


class InvalidRemoteCargo(ValidationFailedError):
    pass


class InvalidCargoContainer(ValidationFailedError):
    pass


# -----------------------------
# Internal / Persistence
# -----------------------------

class InternalError(ProvisioningError):
    pass


class RepositoryError(InternalError):
    pass
