"""Tests for the HTTP API, with nginx commands answered by FakeRunner."""

import json

import pytest
from fastapi.testclient import TestClient

import main
import nginx_config
from main import app, Settings
from nginx_ctl import NginxControl, ReloadCoordinator, StatusInspector

from conftest import FakeRunner, make_group

OFFICE = {
    "id": "grp-office",
    "name": "Office",
    "description": "Office workstations",
    "clients": [{"value": "192.168.1.10"}, {"value": "10.0.0.0/24"}],
    "destinations": [{"value": "example.com"}, {"value": "*.github.com"}],
    "enabled": True,
}
LAB = {
    "id": "grp-lab",
    "name": "Lab",
    "clients": [{"value": "172.16.5.0/24"}],
    "destinations": [{"value": "updates.lab.local"}],
    "enabled": False,
}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        config_path=tmp_path / "nginx" / "nginx.conf",
        template_path=tmp_path / "nginx" / "nginx.conf.template",
        groups_file=tmp_path / "proxyguard" / "whitelist.json",
    )


@pytest.fixture
def api(settings):
    """Client wired to tmp paths; yields (client, runner) so tests can script nginx"""
    runner = FakeRunner()
    nginx = NginxControl("nginx", runner=runner, timeout=5)
    coordinator = ReloadCoordinator(nginx, backup_retention=3)
    inspector = StatusInspector(nginx)
    app.dependency_overrides[main.get_settings] = lambda: settings
    app.dependency_overrides[main.get_coordinator] = lambda: coordinator
    app.dependency_overrides[main.get_inspector] = lambda: inspector
    yield TestClient(app), runner
    app.dependency_overrides.clear()


@pytest.fixture
def client(api):
    return api[0]


def write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


class TestConfigEndpoints:
    def test_health(self, client, settings):
        data = client.get("/api/health").json()
        assert data["status"] == "ok"
        assert data["scheme"] == "geo_map"
        assert data["configPath"] == str(settings.config_path)

    def test_status_without_config(self, client):
        data = client.get("/api/status").json()
        assert data["running"] is True
        assert data["configExists"] is False
        assert data["configValid"]["message"] == "Configuration not tested"

    def test_config_missing(self, client):
        assert client.get("/api/config").status_code == 404

    def test_config_falls_back_to_template(self, client, settings):
        write(settings.template_path, "# template\n")
        assert client.get("/api/config").json() == {"config": "# template\n", "isTemplate": True}

    def test_config_prefers_live_file(self, client, settings):
        write(settings.template_path, "# template\n")
        write(settings.config_path, "# live\n")
        assert client.get("/api/config").json() == {"config": "# live\n", "isTemplate": False}

    def test_validate(self, api):
        client, runner = api
        assert client.post("/api/validate", json={"config": "events {}"}).json() == {"success": True}

        runner.test_ok = False
        response = client.post("/api/validate", json={"config": "events {"})
        assert response.status_code == 400
        assert response.json()["success"] is False
        assert "test failed" in response.json()["error"]

    def test_save_does_not_reload(self, api, settings):
        client, runner = api
        response = client.post("/api/save", json={"config": "# saved\n"})

        assert response.status_code == 200
        assert response.json()["outcome"] == "saved"
        assert response.json()["reloaded"] is False
        assert settings.config_path.read_text() == "# saved\n"
        assert "reload" not in runner.commands()

    def test_save_to_explicit_path(self, client, tmp_path):
        target = tmp_path / "other" / "proxy.conf"
        response = client.post("/api/save", json={"config": "# other\n", "path": str(target)})
        assert response.status_code == 200
        assert target.read_text() == "# other\n"

    def test_save_rejected(self, api, settings):
        client, runner = api
        write(settings.config_path, "# old\n")
        runner.test_ok = False

        response = client.post("/api/save", json={"config": "broken {"})

        assert response.status_code == 400
        assert response.json()["errorKind"] == "validation"
        assert settings.config_path.read_text() == "# old\n"

    def test_save_write_failure(self, client, tmp_path):
        write(tmp_path / "blocker", "file")
        response = client.post("/api/save", json={"config": "# x\n", "path": str(tmp_path / "blocker" / "a.conf")})
        assert response.status_code == 500
        assert response.json()["errorKind"] == "write"

    def test_reload(self, api):
        client, runner = api
        assert client.post("/api/reload").json() == {"success": True}

        runner.reload_ok = False
        response = client.post("/api/reload")
        assert response.status_code == 500
        assert "invalid PID" in response.json()["error"]

    def test_writable(self, client, tmp_path):
        assert client.post("/api/test-writable", json={"path": str(tmp_path / "x.conf")}).json() == {"writable": True}

        data = client.post("/api/test-writable", json={"path": str(tmp_path / "missing" / "x.conf")}).json()
        assert data["writable"] is False
        assert "does not exist" in data["error"]

    def test_backups_listed_after_apply(self, client, settings):
        write(settings.config_path, "# first\n")
        client.post("/api/save", json={"config": "# second\n"})

        backups = client.get("/api/backups").json()["backups"]
        assert len(backups) == 1
        assert backups[0]["path"].startswith(str(settings.config_path) + ".bak-")


class TestGroupsEndpoints:
    def test_no_source(self, client):
        assert client.get("/api/groups").json() == {"groups": [], "source": "none", "isTemplate": False}

    def test_unknown_source(self, client):
        assert client.get("/api/groups", params={"source": "cache"}).status_code == 400

    def test_groups_from_template(self, client, settings):
        write(settings.template_path, nginx_config.default_template())
        data = client.get("/api/groups").json()
        assert data == {"groups": [], "source": "template", "isTemplate": True}

    def test_groups_recovered_from_config(self, client, settings):
        group = make_group("Legacy", ["10.1.1.1"], ["legacy.example.com"])
        write(settings.config_path, nginx_config.generate([group], nginx_config.default_template()))

        data = client.get("/api/groups").json()

        assert data["source"] == "config"
        assert data["isTemplate"] is False
        assert [g["name"] for g in data["groups"]] == ["Legacy"]
        assert data["groups"][0]["clients"][0]["value"] == "10.1.1.1"

    def test_apply_groups(self, api, settings):
        client, runner = api
        response = client.post("/api/groups", json={"groups": [OFFICE, LAB]})

        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"
        assert runner.commands() == ["test", "reload"]

        config = settings.config_path.read_text()
        assert "# Group: Office" in config
        assert "Lab" not in config
        assert "$client_grp_office" in config
        assert config.count("set $allow_access 1;") == 1

        stored = json.loads(settings.groups_file.read_text())
        assert [g["id"] for g in stored] == ["grp-office", "grp-lab"]

        data = client.get("/api/groups").json()
        assert data["source"] == "store"
        assert data["groups"][1]["enabled"] is False

    def test_config_source_reconciles_ids(self, client):
        client.post("/api/groups", json={"groups": [OFFICE]})

        data = client.get("/api/groups", params={"source": "config"}).json()

        assert data["source"] == "config"
        assert data["groups"][0]["id"] == "grp-office"

    def test_rejected_apply_leaves_store(self, api, settings):
        client, runner = api
        runner.test_ok = False

        response = client.post("/api/groups", json={"groups": [OFFICE]})

        assert response.status_code == 400
        assert response.json()["outcome"] == "rejected"
        assert not settings.groups_file.exists()
        assert not settings.config_path.exists()

    def test_reload_failure_still_stores(self, api, settings):
        client, runner = api
        runner.reload_ok = False

        response = client.post("/api/groups", json={"groups": [OFFICE]})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["reloaded"] is False
        assert response.json()["errorKind"] == "reload"
        assert settings.groups_file.exists()

    def test_id_collision(self, client):
        twin = dict(OFFICE, id="grp.office", name="Twin")
        response = client.post("/api/groups", json={"groups": [OFFICE, twin]})
        assert response.status_code == 400
        assert "grp_office" in response.json()["detail"]

    def test_template_without_placeholder(self, client, settings):
        write(settings.template_path, "events {}\nhttp {}\n")
        response = client.post("/api/groups", json={"groups": [OFFICE]})
        assert response.status_code == 400
        assert "PLACEHOLDER" in response.json()["detail"]

    def test_invalid_group_body(self, client):
        bad = dict(OFFICE, clients=[{"value": "not-an-ip"}])
        assert client.post("/api/groups", json={"groups": [bad]}).status_code == 422


class TestGroupMutations:
    @pytest.fixture
    def stored(self, client):
        client.post("/api/groups", json={"groups": [OFFICE, LAB]})
        return client

    def test_toggle(self, stored):
        assert stored.post("/api/groups/grp-lab/toggle").json() == {"status": "ok", "enabled": True}
        assert stored.post("/api/groups/grp-lab/toggle").json()["enabled"] is False

    def test_missing_group(self, stored):
        assert stored.post("/api/groups/nope/toggle").status_code == 404
        assert stored.delete("/api/groups/nope").status_code == 404

    def test_delete(self, stored):
        assert stored.delete("/api/groups/grp-lab").json() == {"status": "ok"}
        assert [g["id"] for g in stored.get("/api/groups").json()["groups"]] == ["grp-office"]

    def test_rename(self, stored):
        data = stored.put("/api/groups/grp-office", json={"name": "  HQ  "}).json()
        assert data["group"]["name"] == "HQ"
        assert data["group"]["description"] == "Office workstations"
        assert stored.put("/api/groups/grp-office", json={"name": ""}).status_code == 400

    def test_add_and_remove_client(self, stored):
        entry = stored.post("/api/groups/grp-lab/clients", json={"value": "172.16.6.1"}).json()["client"]
        group = stored.get("/api/groups").json()["groups"][1]
        assert [c["value"] for c in group["clients"]] == ["172.16.5.0/24", "172.16.6.1"]

        assert stored.delete(f"/api/groups/grp-lab/clients/{entry['id']}").json() == {"status": "ok"}
        assert stored.delete(f"/api/groups/grp-lab/clients/{entry['id']}").status_code == 404

    def test_invalid_client_rejected(self, stored):
        response = stored.post("/api/groups/grp-lab/clients", json={"value": "999.1.1.1"})
        assert response.status_code == 400
        assert len(stored.get("/api/groups").json()["groups"][1]["clients"]) == 1

    def test_add_and_remove_destination(self, stored):
        entry = stored.post("/api/groups/grp-lab/destinations", json={"value": "Mirror.Lab.Local"}).json()
        assert entry["destination"]["value"] == "mirror.lab.local"

        dest_id = entry["destination"]["id"]
        assert stored.delete(f"/api/groups/grp-lab/destinations/{dest_id}").status_code == 200

    def test_invalid_destination_rejected(self, stored):
        response = stored.post("/api/groups/grp-lab/destinations", json={"value": "https://x.com/path"})
        assert response.status_code == 400

    def test_check_access(self, stored):
        def check(source, host):
            return stored.post("/api/check", json={"source": source, "host": host}).json()["allowed"]

        assert check("10.0.0.7", "api.github.com:443") is True
        assert check("192.168.1.10", "example.com") is True
        assert check("192.168.1.11", "example.com") is False
        # Lab is disabled
        assert check("172.16.5.9", "updates.lab.local") is False


class TestNonUtf8Config:
    RAW = b"# caf\xe9\n# Group: A\nif ($remote_addr = 10.0.0.1 && $http_host ~* \"^a\\.com(:[0-9]+)?$\") {\n}\n"

    @pytest.fixture
    def latin1_config(self, settings):
        settings.config_path.parent.mkdir(parents=True, exist_ok=True)
        settings.config_path.write_bytes(self.RAW)

    def test_config_readable(self, client, latin1_config):
        response = client.get("/api/config")
        assert response.status_code == 200
        assert response.json()["config"].startswith("# caf\ufffd\n")

    def test_groups_recovered(self, client, latin1_config):
        response = client.get("/api/groups")
        assert response.status_code == 200
        groups = response.json()["groups"]
        assert [g["name"] for g in groups] == ["A"]
        assert groups[0]["destinations"][0]["value"] == "a.com"


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("NGINX_CONFIG_PATH", "PROXYGUARD_RULE_SCHEME", "PROXYGUARD_BACKUP_RETENTION"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.scheme == nginx_config.RuleScheme.GEO_MAP
        assert str(settings.config_path) == "/etc/nginx/nginx.conf"
        assert settings.backup_retention == 10

    def test_scheme_from_env(self, monkeypatch):
        monkeypatch.setenv("PROXYGUARD_RULE_SCHEME", "if_block")
        assert Settings.from_env().scheme == nginx_config.RuleScheme.IF_BLOCK

    def test_default_scheme_matches_networks(self, client, settings):
        client.post("/api/groups", json={"groups": [OFFICE]})
        config = settings.config_path.read_text()

        assert "&&" not in config
        assert "    10.0.0.0/24 1;" in config
