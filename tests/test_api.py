"""HTTP surface: routing, identity headers and error mapping."""

import hashlib
import pytest
from unittest.mock import MagicMock, patch
from uuid import uuid4

from fastapi.testclient import TestClient

from provisioning_engine.api.dependencies import (
    get_cargo_catalog,
    get_cargo_service,
    get_region_service,
    get_server_orchestrator,
    get_unit_repository,
)
from provisioning_engine.api.main import app
from provisioning_engine.cargo import signing
from provisioning_engine.core.errors import DaemonUnreachable
from provisioning_engine.core.models import Cargo, CargoType
from provisioning_engine.orchestrator.server_orchestrator import CreateServerRequest
from provisioning_engine.placement.selector import PlacementTarget

# must match the cargo_service fixture
APP_KEY = "test-app-key"
NOW = 1_700_000_000.0


def auth(caller, permissions="user"):
    return {"X-User-Id": str(caller.user_id), "X-User-Permissions": permissions}


@pytest.fixture
def client(orchestrator, region_service, cargo_service, unit_repo, catalog_service):
    app.dependency_overrides[get_server_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_region_service] = lambda: region_service
    app.dependency_overrides[get_cargo_service] = lambda: cargo_service
    app.dependency_overrides[get_cargo_catalog] = lambda: catalog_service
    app.dependency_overrides[get_unit_repository] = lambda: unit_repo

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(admin):
    return auth(admin, "admin")


@pytest.fixture
def node(make_node, make_allocation):
    node = make_node()
    make_allocation(node.node_id)
    return node


@pytest.fixture
def server(orchestrator, admin, owner, unit, node, daemon):
    server = orchestrator.create(
        CreateServerRequest(
            name="survival",
            unit_id=unit.unit_id,
            user_id=owner.user_id,
            memory_mib=1024,
            disk_mib=4096,
            cpu_percent=100,
            target=PlacementTarget(node_id=node.node_id),
        ),
        admin,
    )
    daemon.calls.clear()
    return server


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestServerRoutes:

    def test_identity_required(self, client):
        response = client.get("/api/servers")

        assert response.status_code == 401
        assert response.json() == {"error": "Authentication required"}

    def test_malformed_user_id(self, client):
        response = client.get("/api/servers", headers={"X-User-Id": "not-a-uuid"})

        assert response.status_code == 401

    def test_create_server(self, client, admin_headers, unit, owner, node):
        response = client.post(
            "/api/servers",
            json={
                "name": "survival",
                "unit_id": str(unit.unit_id),
                "user_id": str(owner.user_id),
                "memory_mib": 1024,
                "disk_mib": 4096,
                "cpu_percent": 100,
                "node_id": str(node.node_id),
            },
            headers=admin_headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["phase"] == "installing"
        assert body["docker_image"] == "ghcr.io/games/java:17"
        assert "validation_token" not in body
        assert "connection_key" not in response.text

    def test_create_requires_admin(self, client, owner, unit, node):
        response = client.post(
            "/api/servers",
            json={
                "name": "survival",
                "unit_id": str(unit.unit_id),
                "user_id": str(owner.user_id),
                "memory_mib": 1024,
                "disk_mib": 4096,
                "cpu_percent": 100,
                "node_id": str(node.node_id),
            },
            headers=auth(owner),
        )

        assert response.status_code == 403

    def test_create_without_placement(self, client, admin_headers, unit, owner):
        response = client.post(
            "/api/servers",
            json={
                "name": "survival",
                "unit_id": str(unit.unit_id),
                "user_id": str(owner.user_id),
                "memory_mib": 1024,
                "disk_mib": 4096,
                "cpu_percent": 100,
            },
            headers=admin_headers,
        )

        assert response.status_code == 400
        assert "error" in response.json()

    def test_create_on_missing_node(self, client, admin_headers, unit, owner):
        response = client.post(
            "/api/servers",
            json={
                "name": "survival",
                "unit_id": str(unit.unit_id),
                "user_id": str(owner.user_id),
                "memory_mib": 1024,
                "disk_mib": 4096,
                "cpu_percent": 100,
                "node_id": str(uuid4()),
            },
            headers=admin_headers,
        )

        assert response.status_code == 404

    def test_create_with_unreachable_daemon(self, client, admin_headers, unit, owner, node, daemon):
        daemon.fail["create"] = DaemonUnreachable("connection refused")

        response = client.post(
            "/api/servers",
            json={
                "name": "survival",
                "unit_id": str(unit.unit_id),
                "user_id": str(owner.user_id),
                "memory_mib": 1024,
                "disk_mib": 4096,
                "cpu_percent": 100,
                "node_id": str(node.node_id),
            },
            headers=admin_headers,
        )

        assert response.status_code == 502

    def test_get_server(self, client, server, owner, stranger):
        response = client.get(f"/api/servers/{server.server_id}", headers=auth(owner))

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "running"
        assert body["node"]["fqdn"] == "node-1.nodes.test"
        assert body["allocation"]["port"] == 25565

        denied = client.get(f"/api/servers/{server.server_id}", headers=auth(stranger))
        assert denied.status_code == 403

    def test_list_servers(self, client, server, owner, stranger):
        assert len(client.get("/api/servers", headers=auth(owner)).json()) == 1
        assert client.get("/api/servers", headers=auth(stranger)).json() == []

    def test_invalid_power_action(self, client, server, owner):
        response = client.post(f"/api/servers/{server.server_id}/power/explode", headers=auth(owner))

        assert response.status_code == 400

    def test_power(self, client, server, owner, daemon):
        response = client.post(f"/api/servers/{server.server_id}/power/restart", headers=auth(owner))

        assert response.status_code == 200
        assert response.json()["phase"] == "restarting"
        assert daemon.operations() == ["power", "status"]

    def test_update_server(self, client, server, admin_headers):
        response = client.patch(
            f"/api/servers/{server.server_id}",
            json={"memory_mib": 2048},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["memory_mib"] == 2048

    def test_docker_images(self, client, server, owner):
        response = client.get(f"/api/servers/{server.server_id}/docker-images", headers=auth(owner))

        assert response.status_code == 200
        body = response.json()
        assert body["current"] == "ghcr.io/games/java:17"
        assert [image["image"] for image in body["images"]] == ["ghcr.io/games/java:17", "ghcr.io/games/java:21"]

        rejected = client.patch(
            f"/api/servers/{server.server_id}/docker-image",
            json={"docker_image": "evil/miner"},
            headers=auth(owner),
        )
        assert rejected.status_code == 400

    def test_delete_server(self, client, server, admin_headers):
        response = client.delete(f"/api/servers/{server.server_id}", headers=admin_headers)

        assert response.status_code == 204
        assert client.get(f"/api/servers/{server.server_id}", headers=admin_headers).status_code == 404


class TestDaemonRoutes:

    def test_config_token_is_optional_but_checked(self, client, server):
        url = f"/api/servers/{server.internal_id}/config"

        anonymous = client.get(url)
        assert anonymous.status_code == 200
        assert anonymous.json()["dockerImage"] == "ghcr.io/games/java:17"

        assert client.get(url, headers={"X-Validation-Token": "guess"}).status_code == 403

        response = client.get(url, headers={"X-Validation-Token": server.validation_token})
        assert response.status_code == 200
        assert response.json()["dockerImage"] == "ghcr.io/games/java:17"

    def test_validate_token(self, client, server, node):
        response = client.get(f"/api/servers/{server.internal_id}/validate/{server.validation_token}")

        assert response.status_code == 200
        body = response.json()
        assert body["validated"] is True
        assert body["server"]["id"] == str(server.server_id)
        assert body["server"]["name"] == "survival"
        assert body["server"]["internalId"] == server.internal_id
        assert body["server"]["node"] == {
            "id": str(node.node_id),
            "name": node.name,
            "fqdn": node.fqdn,
            "port": node.port,
        }
        assert "connection_key" not in response.text
        assert "connectionKey" not in response.text

        wrong = client.get(f"/api/servers/{server.internal_id}/validate/guess")
        assert wrong.status_code == 403

    def test_cargo_files(self, client, server, owner, stranger):
        url = f"/api/servers/{server.server_id}/cargo-files"

        assert client.get(url, params={"token": server.validation_token}).json() == {"cargoFiles": []}
        assert client.get(url, headers=auth(owner)).json() == {"cargoFiles": []}
        assert client.get(url, headers=auth(stranger)).status_code == 403
        assert client.get(url, params={"token": "guess"}).status_code == 403

    def test_cargo_files_without_credentials(self, client, server):
        response = client.get(f"/api/servers/{server.server_id}/cargo-files")

        assert response.status_code == 401
        assert "error" in response.json()

    def test_ship_cargo(self, client, server, owner, daemon):
        response = client.post(f"/api/servers/{server.server_id}/cargo/ship", headers=auth(owner))

        assert response.status_code == 200
        assert response.json() == {"cargoFiles": []}


class TestRegionRoutes:

    def test_region_crud(self, client, admin_headers):
        created = client.post(
            "/api/regions",
            json={"name": "EU West", "identifier": "eu-west", "server_limit": 50},
            headers=admin_headers,
        )
        assert created.status_code == 201
        region_id = created.json()["region_id"]

        duplicate = client.post(
            "/api/regions",
            json={"name": "Again", "identifier": "eu-west"},
            headers=admin_headers,
        )
        assert duplicate.status_code == 409

        updated = client.patch(
            f"/api/regions/{region_id}",
            json={"server_limit": None},
            headers=admin_headers,
        )
        assert updated.status_code == 200
        assert updated.json()["server_limit"] is None
        assert updated.json()["name"] == "EU West"

        assert client.delete(f"/api/regions/{region_id}", headers=admin_headers).status_code == 204
        assert client.get(f"/api/regions/{region_id}", headers=admin_headers).status_code == 404

    def test_identifier_format(self, client, admin_headers):
        response = client.post(
            "/api/regions",
            json={"name": "Bad", "identifier": "EU West"},
            headers=admin_headers,
        )

        assert response.status_code == 422

    def test_regions_are_admin_only(self, client, owner):
        assert client.get("/api/regions", headers=auth(owner)).status_code == 403


class TestUnitRoutes:

    def test_register_unit(self, client, admin_headers):
        response = client.post(
            "/api/units",
            json={
                "name": "Bedrock",
                "short_name": "bedrock",
                "docker_images": [{"image": "ghcr.io/games/bedrock:latest"}],
                "default_startup_command": "./bedrock_server",
                "install_script": {"docker_image": "alpine"},
            },
            headers=admin_headers,
        )

        assert response.status_code == 201
        unit_id = response.json()["unit_id"]

        fetched = client.get(f"/api/units/{unit_id}", headers=admin_headers)
        assert fetched.json()["default_docker_image"] == "ghcr.io/games/bedrock:latest"

    def test_default_image_must_be_listed(self, client, admin_headers):
        response = client.post(
            "/api/units",
            json={
                "name": "Bedrock",
                "short_name": "bedrock",
                "docker_images": [{"image": "ghcr.io/games/bedrock:latest"}],
                "default_docker_image": "something/else",
                "default_startup_command": "./bedrock_server",
                "install_script": {"docker_image": "alpine"},
            },
            headers=admin_headers,
        )

        assert response.status_code == 422

    def test_missing_unit(self, client, admin_headers):
        assert client.get(f"/api/units/{uuid4()}", headers=admin_headers).status_code == 404


class TestCargoDownload:

    @pytest.fixture
    def remote(self, cargo_repo):
        cargo = Cargo(
            cargo_id=uuid4(),
            name="plugin.jar",
            cargo_type=CargoType.REMOTE,
            remote_url="https://cdn.test/plugin.jar",
        )
        cargo_repo.create_cargo(cargo)
        return cargo

    @pytest.fixture
    def local(self, cargo_repo):
        cargo = Cargo(
            cargo_id=uuid4(),
            name="server.properties",
            cargo_type=CargoType.LOCAL,
            hash="ab" + "0" * 62,
            mime_type="text/plain",
        )
        cargo_repo.create_cargo(cargo)
        return cargo

    def _params(self, cargo, server_id, expires):
        return {
            "serverId": str(server_id),
            "expires": expires,
            "signature": signing.sign(cargo.cargo_id, server_id, expires, APP_KEY),
        }

    def test_remote_redirects(self, client, remote):
        response = client.get(
            f"/api/cargo/{remote.cargo_id}/download",
            params=self._params(remote, uuid4(), int(NOW) + 60),
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == "https://cdn.test/plugin.jar"

    def test_local_file_is_served(self, client, cargo_service, local):
        path = cargo_service.local_path(local)
        path.parent.mkdir(parents=True)
        path.write_text("motd=hello\n")

        response = client.get(
            f"/api/cargo/{local.cargo_id}/download",
            params=self._params(local, uuid4(), int(NOW) + 60),
        )

        assert response.status_code == 200
        assert response.text == "motd=hello\n"

    def test_local_file_missing(self, client, local):
        response = client.get(
            f"/api/cargo/{local.cargo_id}/download",
            params=self._params(local, uuid4(), int(NOW) + 60),
        )

        assert response.status_code == 404

    def test_bad_signature(self, client, remote):
        params = self._params(remote, uuid4(), int(NOW) + 60)
        params["signature"] = "0" * 64

        response = client.get(f"/api/cargo/{remote.cargo_id}/download", params=params)

        assert response.status_code == 403

    def test_expired_link(self, client, remote):
        response = client.get(
            f"/api/cargo/{remote.cargo_id}/download",
            params=self._params(remote, uuid4(), int(NOW) - 1),
        )

        assert response.status_code == 403


class TestCargoAdminRoutes:

    CONTENT = b"motd: welcome\n"

    def _upload(self, client, headers, content=None, **fields):
        return client.post(
            "/api/cargo/upload",
            files={"file": ("config.yml", content or self.CONTENT, "text/yaml")},
            data=fields,
            headers=headers,
        )

    def test_upload(self, client, admin_headers, tmp_path):
        response = self._upload(client, admin_headers, description="base config", readonly="true")

        assert response.status_code == 201
        body = response.json()
        content_hash = hashlib.sha256(self.CONTENT).hexdigest()
        assert body["name"] == "config.yml"
        assert body["cargo_type"] == "local"
        assert body["hash"] == content_hash
        assert body["size"] == len(self.CONTENT)
        assert body["mime_type"] == "text/yaml"
        assert body["properties"]["readonly"] is True
        assert (tmp_path / "cargo" / content_hash[:2] / content_hash).read_bytes() == self.CONTENT

    def test_duplicate_upload_conflicts(self, client, admin_headers):
        assert self._upload(client, admin_headers).status_code == 201

        response = self._upload(client, admin_headers, name="again.yml")

        assert response.status_code == 409
        assert len(client.get("/api/cargo", headers=admin_headers).json()) == 1

    def test_upload_requires_admin(self, client, owner):
        assert self._upload(client, auth(owner)).status_code == 403
        assert self._upload(client, {}).status_code == 401

    @patch("provisioning_engine.cargo.catalog.requests.head")
    def test_register_remote(self, mock_head, client, admin_headers):
        mock_head.return_value = MagicMock(
            status_code=200,
            headers={"content-length": "2048", "content-type": "application/java-archive"},
        )

        response = client.post(
            "/api/cargo/remote",
            json={"name": "plugin.jar", "remote_url": "https://cdn.test/plugin.jar"},
            headers=admin_headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["cargo_type"] == "remote"
        assert body["size"] == 2048

        fetched = client.get(f"/api/cargo/{body['cargo_id']}", headers=admin_headers)
        assert fetched.json()["remote_url"] == "https://cdn.test/plugin.jar"

    @patch("provisioning_engine.cargo.catalog.requests.head")
    def test_remote_without_size(self, mock_head, client, admin_headers):
        mock_head.return_value = MagicMock(status_code=200, headers={})

        response = client.post(
            "/api/cargo/remote",
            json={"name": "plugin.jar", "remote_url": "https://cdn.test/plugin.jar"},
            headers=admin_headers,
        )

        assert response.status_code == 400

    def test_missing_cargo(self, client, admin_headers):
        assert client.get(f"/api/cargo/{uuid4()}", headers=admin_headers).status_code == 404

    def test_container_and_unit_attachment(self, client, admin_headers, unit, unit_repo):
        cargo_id = self._upload(client, admin_headers).json()["cargo_id"]

        created = client.post(
            "/api/cargo/containers",
            json={"name": "base", "items": [{"cargo_id": cargo_id, "target_path": "config.yml"}]},
            headers=admin_headers,
        )
        assert created.status_code == 201
        container_id = created.json()["container_id"]

        fetched = client.get(f"/api/cargo/containers/{container_id}", headers=admin_headers)
        assert fetched.json()["items"] == [{"cargo_id": cargo_id, "target_path": "config.yml"}]
        assert len(client.get("/api/cargo/containers", headers=admin_headers).json()) == 1

        url = f"/api/cargo/containers/{container_id}/units/{unit.unit_id}"
        assert client.post(url, headers=admin_headers).status_code == 204
        assert [str(value) for value in unit_repo.get(unit.unit_id).cargo_container_ids] == [container_id]

        assert client.delete(url, headers=admin_headers).status_code == 204
        assert unit_repo.get(unit.unit_id).cargo_container_ids == []

    def test_container_with_unknown_cargo(self, client, admin_headers):
        response = client.post(
            "/api/cargo/containers",
            json={"name": "broken", "items": [{"cargo_id": str(uuid4()), "target_path": "a"}]},
            headers=admin_headers,
        )

        assert response.status_code == 400

    def test_attach_to_unknown_unit(self, client, admin_headers):
        container_id = client.post(
            "/api/cargo/containers", json={"name": "empty"}, headers=admin_headers
        ).json()["container_id"]

        response = client.post(
            f"/api/cargo/containers/{container_id}/units/{uuid4()}", headers=admin_headers
        )

        assert response.status_code == 404
