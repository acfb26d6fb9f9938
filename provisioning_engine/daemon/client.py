# provisioning_engine/daemon/client.py
"""HTTP client for the per-node daemon."""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

import requests

from provisioning_engine.core.errors import (
    DaemonRequestFailed,
    DaemonUnreachable,
    NodeInfoUnavailable,
)
from provisioning_engine.core.models import CargoFile, Node, UNKNOWN_STATE

logger = logging.getLogger(__name__)


SERVERS_PATH = "/api/v1/servers"


def memory_bytes(memory_mib: int) -> int:
    """MiB -> bytes."""
    return int(memory_mib) * 1024 * 1024


def cpu_shares(cpu_percent: float) -> int:
    """Percent of one core -> Docker CPU shares (1024 per core)."""
    return int(math.floor(cpu_percent * 1024 / 100))


@dataclass(frozen=True)
class DaemonCredential:
    """
    Everything needed to talk to one node's daemon.

    Built right before a call and dropped afterwards. The connection key
    never appears in repr, logs or anything handed back to callers.
    """

    node_id: UUID
    base_url: str
    connection_key: str = field(repr=False)

    @classmethod
    def for_node(cls, node: Node) -> "DaemonCredential":
        if not node.fqdn:
            raise NodeInfoUnavailable(f"Node {node.node_id} has no fqdn configured")
        return cls(
            node_id=node.node_id,
            base_url=f"http://{node.fqdn}:{node.port}",
            connection_key=node.connection_key,
        )

    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.connection_key}",
            "Accept": "application/json",
        }

    def __repr__(self) -> str:
        return f"DaemonCredential(node_id={self.node_id}, base_url={self.base_url!r}, connection_key='***')"


class DaemonClient:
    """Client for the daemon's /api/v1/servers API."""

    def __init__(self, timeout: float = 10.0):
        """
        Args:
            timeout: Request timeout in seconds, applied to every call
        """
        self.timeout = timeout

    # -------------------------
    # Transport
    # -------------------------

    def call(
        self,
        method: str,
        credential: DaemonCredential,
        path: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Perform one request against a daemon.

        Returns:
            Decoded JSON body ({} when the daemon sends no body)

        Raises:
            DaemonRequestFailed: daemon answered with a JSON error message
            DaemonUnreachable: transport failure, timeout or an unreadable error
        """
        url = f"{credential.base_url}{path}"

        try:
            response = requests.request(
                method,
                url,
                json=body,
                headers=credential.headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Daemon call {method} {url} failed: {e}")
            raise DaemonUnreachable(f"Daemon at {credential.base_url} is unreachable: {e}") from e

        if response.status_code >= 400:
            message = _extract_error(response)
            logger.warning(f"Daemon call {method} {url} returned {response.status_code}: {message}")
            if message:
                raise DaemonRequestFailed(message, status_code=response.status_code)
            raise DaemonUnreachable(
                f"Daemon at {credential.base_url} returned HTTP {response.status_code}"
            )

        if not response.content:
            return {}

        try:
            data = response.json()
        except ValueError:
            return {}

        return data if isinstance(data, dict) else {"data": data}

    # -------------------------
    # Server operations
    # -------------------------

    def create_server(self, credential: DaemonCredential, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.call("POST", credential, SERVERS_PATH, payload)

    def update_server(
        self,
        credential: DaemonCredential,
        internal_id: str,
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        return self.call("PATCH", credential, f"{SERVERS_PATH}/{internal_id}", payload)

    def delete_server(self, credential: DaemonCredential, internal_id: str) -> Dict[str, Any]:
        return self.call("DELETE", credential, f"{SERVERS_PATH}/{internal_id}")

    def get_status(self, credential: DaemonCredential, internal_id: str) -> str:
        data = self.call("GET", credential, f"{SERVERS_PATH}/{internal_id}")
        state = data.get("state")
        return str(state) if state else UNKNOWN_STATE

    def power(self, credential: DaemonCredential, internal_id: str, action: str) -> Dict[str, Any]:
        return self.call("POST", credential, f"{SERVERS_PATH}/{internal_id}/power/{action}")

    def reinstall(self, credential: DaemonCredential, internal_id: str) -> Dict[str, Any]:
        return self.call("POST", credential, f"{SERVERS_PATH}/{internal_id}/reinstall")

    def ship_cargo(
        self,
        credential: DaemonCredential,
        internal_id: str,
        cargo: List[CargoFile],
    ) -> Dict[str, Any]:
        return self.call(
            "POST",
            credential,
            f"{SERVERS_PATH}/{internal_id}/cargo/ship",
            {"cargo": [item.to_payload() for item in cargo]},
        )


def _extract_error(response: requests.Response) -> Optional[str]:
    """Pull the daemon's error message out of a JSON error body."""
    try:
        data = response.json()
    except ValueError:
        return None

    if not isinstance(data, dict):
        return None

    error = data.get("error")
    if isinstance(error, dict):
        error = error.get("message")
    if not error:
        error = data.get("message")

    return str(error) if error else None
