import json
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from fastapi.testclient import TestClient

from console.auth import TokenService

from tests.conftest import TEST_SECRET, build_gateway


class TestSession:
    def test_login_scenarios(self, gateway):
        gateway.ledger.add_user("admin", "rightpass", True, "", True)
        gateway.ledger.add_user("viewer", "rightpass", True, "", False)
        client = gateway.client

        res = client.post("/api/v1/login", json={"username": "admin", "password": "wrongpass"})
        assert res.status_code == 401
        assert res.json() == {"error": "invalid credentials"}

        res = client.post("/api/v1/login", json={"username": "viewer", "password": "rightpass"})
        assert res.status_code == 403

        res = client.post("/api/v1/login", json={"username": "admin", "password": "rightpass"})
        assert res.status_code == 200
        body = res.json()
        assert body["access_token"] and body["refresh_token"]

    def test_login_with_missing_fields_is_400(self, gateway):
        res = gateway.client.post("/api/v1/login", json={"username": "admin"})
        assert res.status_code == 400
        assert "error" in res.json()

    def test_refresh(self, gateway):
        pair = gateway.tokens.generate_token_pair("admin")
        res = gateway.client.post("/api/v1/refresh", json={"refresh_token": pair.refresh_token})
        assert res.status_code == 200
        new_access = res.json()["access_token"]
        assert gateway.tokens.validate_token(new_access).username == "admin"

        res = gateway.client.post("/api/v1/refresh", json={"refresh_token": "junk"})
        assert res.status_code == 401

    def test_protected_routes_need_bearer_token(self, gateway):
        client = gateway.client
        assert client.get("/api/v1/listeners").status_code == 401
        res = client.get("/api/v1/users", headers={"Authorization": "Bearer nope"})
        assert res.status_code == 401
        assert res.json() == {"error": "invalid token"}

    def test_expired_access_token_is_401(self, gateway):
        stale = TokenService(TEST_SECRET, gateway.ledger, access_ttl=timedelta(seconds=-5))
        token = stale.generate_token_pair("admin").access_token
        res = gateway.client.get("/api/v1/stats", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401
        assert res.json() == {"error": "token expired"}


class TestInstall:
    def test_first_run_flow(self, gateway):
        client = gateway.client
        assert client.get("/api/v1/install/check").json() == {"installed": False}

        res = client.post("/api/v1/install", json={"username": "root", "password": "pw"})
        assert res.status_code == 200
        assert client.get("/api/v1/install/check").json() == {"installed": True}

        res = client.post("/api/v1/install", json={"username": "other", "password": "pw"})
        assert res.status_code == 403

        res = client.post("/api/v1/login", json={"username": "root", "password": "pw"})
        assert res.status_code == 200

    def test_install_requires_credentials(self, gateway):
        res = gateway.client.post("/api/v1/install", json={"username": "", "password": ""})
        assert res.status_code == 400
        assert not os.path.exists(os.path.join(gateway.data_dir, "install.lock"))

    def test_concurrent_installs_create_one_admin(self, gateway):
        def install(n):
            return gateway.client.post(
                "/api/v1/install", json={"username": f"admin{n}", "password": "pw"}
            ).status_code

        with ThreadPoolExecutor(max_workers=4) as pool:
            statuses = list(pool.map(install, range(4)))

        assert sorted(statuses) == [200, 403, 403, 403]
        assert len([u for u in gateway.ledger.get_users() if u.is_admin]) == 1
        assert os.path.exists(os.path.join(gateway.data_dir, "install.lock"))


class TestListeners:
    def test_create_list_delete(self, gateway, admin_headers):
        client = gateway.client
        res = client.post(
            "/api/v1/listeners",
            json={"type": "tcp", "id": "t2", "address": "127.0.0.1:0"},
            headers=admin_headers,
        )
        assert res.status_code == 201

        listed = client.get("/api/v1/listeners", headers=admin_headers).json()
        assert {"id": "t2", "type": "tcp", "address": "127.0.0.1:0", "protocol": "tcp"} in listed

        res = client.post(
            "/api/v1/listeners",
            json={"type": "tcp", "id": "t2", "address": "127.0.0.1:0"},
            headers=admin_headers,
        )
        assert res.status_code == 409

        assert client.delete("/api/v1/listeners/t2", headers=admin_headers).status_code == 200
        assert client.delete("/api/v1/listeners/t2", headers=admin_headers).status_code == 200
        assert client.get("/api/v1/listeners", headers=admin_headers).json() == []

    def test_unsupported_type(self, gateway, admin_headers):
        res = gateway.client.post(
            "/api/v1/listeners",
            json={"type": "udp", "id": "u1", "address": "127.0.0.1:0"},
            headers=admin_headers,
        )
        assert res.status_code == 400
        assert res.json() == {"error": "unsupported listener type"}


class TestUsers:
    def test_user_crud_hides_secrets(self, gateway, admin_headers):
        client = gateway.client
        res = client.post(
            "/api/v1/users",
            json={"username": "sensor", "password": "pw", "allow": True, "remarks": "edge"},
            headers=admin_headers,
        )
        assert res.status_code == 201

        users = client.get("/api/v1/users", headers=admin_headers).json()
        sensor = next(u for u in users if u["username"] == "sensor")
        assert sensor == {"username": "sensor", "disallowed": False, "is_admin": False, "remarks": "edge"}
        assert all("secret" not in u for u in users)

        res = client.put(
            "/api/v1/users",
            json={"username": "sensor", "allow": False, "remarks": "blocked"},
            headers=admin_headers,
        )
        assert res.status_code == 201
        assert gateway.ledger.get_user("sensor").check_password("pw")
        assert gateway.ledger.get_user("sensor").disallowed

        assert client.delete("/api/v1/users/sensor", headers=admin_headers).status_code == 200
        assert client.delete("/api/v1/users/sensor", headers=admin_headers).status_code == 404

    def test_new_user_without_password(self, gateway, admin_headers):
        res = gateway.client.post("/api/v1/users", json={"username": "x"}, headers=admin_headers)
        assert res.status_code == 400


class TestStatsAndStorage:
    def test_stats_snapshot(self, gateway, admin_headers):
        body = gateway.client.get("/api/v1/stats", headers=admin_headers).json()
        assert body["clients_connected"] == 0
        assert body["listeners"] == 0
        assert body["uptime"] >= 0

    def test_storage_list_and_delete(self, gateway, admin_headers):
        client = gateway.client
        gateway.storage.save_client("c1", username="sensor")
        gateway.storage.save_subscription("c1", "a/b/#", qos=1)
        gateway.storage.save_retained("a/b", "on")

        assert client.get("/api/v1/storage/clients", headers=admin_headers).json()[0]["id"] == "c1"
        assert len(client.get("/api/v1/storage/subscriptions", headers=admin_headers).json()) == 1
        assert len(client.get("/api/v1/storage/retained", headers=admin_headers).json()) == 1

        assert client.delete("/api/v1/storage/clients/c1", headers=admin_headers).status_code == 200
        res = client.delete(
            "/api/v1/storage/subscriptions",
            params={"client": "c1", "filter": "a/b/#"},
            headers=admin_headers,
        )
        assert res.status_code == 200
        res = client.delete("/api/v1/storage/retained", params={"topic": "a/b"}, headers=admin_headers)
        assert res.status_code == 200

        assert gateway.storage.stored_clients() == []
        assert gateway.storage.stored_subscriptions() == []
        assert gateway.storage.stored_retained_messages() == []

    def test_storage_delete_requires_parameters(self, gateway, admin_headers):
        res = gateway.client.delete("/api/v1/storage/retained", headers=admin_headers)
        assert res.status_code == 400
        res = gateway.client.delete(
            "/api/v1/storage/subscriptions", params={"client": "c1"}, headers=admin_headers
        )
        assert res.status_code == 400

    def test_storage_unavailable(self, tmp_path, zeroconf_factory):
        gw = build_gateway(tmp_path, zeroconf_factory, storage=False)
        token = gw.tokens.generate_token_pair("admin").access_token
        with TestClient(gw.app) as client:
            res = client.get("/api/v1/storage/clients", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 503
        assert res.json() == {"error": "storage not initialized"}


class TestSettings:
    def test_discovery_update_persists_and_reconfigures(self, gateway, admin_headers, zeroconf_factory):
        res = gateway.client.put(
            "/api/v1/settings/discovery",
            json={"enabled": True, "name": "edge", "port": 1884},
            headers=admin_headers,
        )
        assert res.status_code == 200
        assert gateway.advertiser.state.name == "edge"
        assert len(zeroconf_factory.active) == 1

        body = gateway.client.get("/api/v1/settings", headers=admin_headers).json()
        assert body["discovery"] == {"enabled": True, "name": "edge", "port": 1884}

    def test_discovery_start_failure_is_500(self, gateway, admin_headers, zeroconf_factory):
        zeroconf_factory.fail = True
        res = gateway.client.put(
            "/api/v1/settings/discovery",
            json={"enabled": True, "name": "edge", "port": 1884},
            headers=admin_headers,
        )
        assert res.status_code == 500
        assert gateway.advertiser.state is None
        assert gateway.settings.get_discovery().enabled is False
        with open(gateway.settings.path, encoding="utf-8") as f:
            assert json.load(f)["mdns"]["enabled"] is False

    def test_concurrent_discovery_updates_agree_with_broadcast(self, gateway, admin_headers):
        def put(n):
            return gateway.client.put(
                "/api/v1/settings/discovery",
                json={"enabled": True, "name": f"node{n}", "port": 1900 + n},
                headers=admin_headers,
            ).status_code

        with ThreadPoolExecutor(max_workers=4) as pool:
            assert list(pool.map(put, range(8))) == [200] * 8

        stored = gateway.settings.get_discovery()
        running = gateway.advertiser.state
        assert (running.name, running.port) == (stored.name, stored.port)

    def test_tls_enabled_needs_cert_and_key(self, gateway, admin_headers):
        res = gateway.client.put(
            "/api/v1/settings/tls",
            json={"enabled": True, "port": ":8883", "cert": "", "key": ""},
            headers=admin_headers,
        )
        assert res.status_code == 400

    def test_tls_rejects_unloadable_pair(self, gateway, admin_headers):
        res = gateway.client.put(
            "/api/v1/settings/tls",
            json={"enabled": True, "port": ":8883", "cert": "not a cert", "key": "not a key"},
            headers=admin_headers,
        )
        assert res.status_code == 400

    def test_tls_disabled_is_saved(self, gateway, admin_headers):
        res = gateway.client.put(
            "/api/v1/settings/tls",
            json={"enabled": False, "port": ":8884", "cert": "", "key": ""},
            headers=admin_headers,
        )
        assert res.status_code == 200
        assert gateway.settings.get_tls().port == ":8884"


class TestStaticAssets:
    def test_root_serves_index(self, gateway):
        res = gateway.client.get("/")
        assert res.status_code == 200
        assert "<div id=\"app\">" in res.text

    def test_existing_asset(self, gateway):
        res = gateway.client.get("/assets/app.js")
        assert res.status_code == 200
        assert "install/check" in res.text

    def test_client_route_falls_back_to_index(self, gateway):
        res = gateway.client.get("/dashboard/listeners")
        assert res.status_code == 200
        assert "<div id=\"app\">" in res.text

    def test_unknown_api_path_is_404(self, gateway):
        res = gateway.client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.json() == {"error": "not found"}

    def test_wrong_method_on_api_route_is_405(self, gateway, admin_headers):
        res = gateway.client.patch("/api/v1/listeners", headers=admin_headers)
        assert res.status_code == 405
        assert res.json() == {"error": "method not allowed"}
        assert set(res.headers["allow"].split(", ")) == {"GET", "POST"}

        res = gateway.client.patch("/api/v1/listeners/t1", headers=admin_headers)
        assert res.status_code == 405
        assert res.headers["allow"] == "DELETE"

    def test_unknown_api_path_with_any_method_is_404(self, gateway):
        assert gateway.client.patch("/api/v1/nothing-here").status_code == 404
        assert gateway.client.post("/api/v1/nothing-here").status_code == 404

    def test_app_keeps_no_component_state(self, gateway):
        assert not hasattr(gateway.app.state, "registry")
        assert not hasattr(gateway.app.state, "token_service")
