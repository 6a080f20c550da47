import json

import pytest
from fastapi.testclient import TestClient

from katanos import main
from katanos.config import Settings


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def client(tmp_path, backup_dir, monkeypatch):
    config = Settings(
        storage_backend="memory",
        data_dir=str(tmp_path / "data"),
        backup_dir=str(backup_dir),
        secret_key_file=str(tmp_path / "secret.key"),
        snapshots_enabled=False,
    )
    monkeypatch.setattr(main, "services", main.build_services(config))
    with TestClient(main.app) as test_client:
        yield test_client


def _register(client, username="alice", password="pw-123", **extra):
    res = client.post("/api/v1/auth/register", json={"username": username, "password": password, **extra})
    assert res.status_code == 201
    return res.json()["user"]


def test_health(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok", "storageBackend": "memory"}


def test_register_login_me(client):
    user = _register(client)
    assert "password" not in user
    assert user["hasPassword"] is True

    assert client.get("/api/v1/auth/me").json()["user"]["id"] == user["id"]
    assert client.post("/api/v1/auth/logout").json() == {"ok": True}
    assert client.get("/api/v1/auth/me").status_code == 401

    assert client.post("/api/v1/auth/login", json={"username": "alice", "password": "bad"}).status_code == 401
    assert client.post("/api/v1/auth/login", json={"username": "ghost"}).status_code == 404
    res = client.post("/api/v1/auth/login", json={"username": "ALICE", "password": "pw-123"})
    assert res.status_code == 200
    assert res.json()["user"]["id"] == user["id"]


def test_duplicate_register(client):
    _register(client)
    res = client.post("/api/v1/auth/register", json={"username": "Alice", "password": "x"})
    assert res.status_code == 409
    assert res.json()["detail"] == "AlreadyExists"


def test_validation_error_envelope(client):
    res = client.post("/api/v1/auth/register", json={"username": "   "})
    assert res.status_code == 422
    body = res.json()
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert body["error"]["details"][0]["field"] == "username"


def test_password_reset_flow(client):
    _register(client, securityQuestionId="pet", securityAnswer="Rex")
    assert client.get("/api/v1/auth/security-question", params={"username": "alice"}).json() == {"questionId": "pet"}
    bad = client.post("/api/v1/auth/reset-password", json={"username": "alice", "answer": "Max", "newPassword": "n"})
    assert bad.status_code == 401
    ok = client.post("/api/v1/auth/reset-password", json={"username": "alice", "answer": " rex ", "newPassword": "n"})
    assert ok.json() == {"ok": True}
    assert client.post("/api/v1/auth/login", json={"username": "alice", "password": "n"}).status_code == 200


def test_collections_require_a_user(client):
    assert client.get("/api/v1/collections/events").status_code == 401


def test_collection_crud(client):
    _register(client)
    created = client.post("/api/v1/collections/events", json={"title": "Dentist"})
    assert created.status_code == 201
    item = created.json()

    assert [e["title"] for e in client.get("/api/v1/collections/events").json()] == ["Dentist"]
    updated = client.put(f"/api/v1/collections/events/{item['id']}", json={"title": "Dentist 2pm"})
    assert updated.json()["title"] == "Dentist 2pm"
    assert client.post(f"/api/v1/collections/events/{item['id']}/favorite").json()["isFavorite"] is True
    assert client.delete(f"/api/v1/collections/events/{item['id']}").status_code == 204
    assert client.get(f"/api/v1/collections/events/{item['id']}").status_code == 404

    assert client.get("/api/v1/collections/users").status_code == 404
    assert client.get("/api/v1/collections/bogus").status_code == 404


def test_items_of_other_users_are_hidden(client):
    _register(client, "alice")
    item = client.post("/api/v1/collections/todos", json={"text": "mine"}).json()
    _register(client, "bob")
    assert client.get("/api/v1/collections/todos").json() == []
    assert client.get(f"/api/v1/collections/todos/{item['id']}").status_code == 404


def test_habit_toggles(client):
    _register(client)
    habit = client.post("/api/v1/collections/habits", json={"name": "Run"}).json()
    client.post(f"/api/v1/habits/{habit['id']}/skips/2024-05-01")
    res = client.post(f"/api/v1/habits/{habit['id']}/logs/2024-05-01")
    assert res.json()["logs"] == ["2024-05-01"]
    assert res.json()["skips"] == []


def test_vault_endpoints(client):
    _register(client)
    assert client.get("/api/v1/vault").status_code == 404
    client.put("/api/v1/vault", json={"blob": "cipher"})
    assert client.get("/api/v1/vault").json()["blob"] == "cipher"
    assert client.delete("/api/v1/vault").status_code == 204
    assert client.get("/api/v1/vault").status_code == 404


def test_settings_api_key_and_lock(client):
    _register(client)
    res = client.put("/api/v1/users/me/settings", json={"apiKey": " sk-abc ", "lockPin": "1234", "lockEnabled": True})
    user = res.json()["user"]
    assert user["apiKey"].startswith("enc$")
    assert user["hasLockPin"] is True
    assert client.get("/api/v1/users/me/api-key").json() == {"apiKey": "sk-abc"}
    assert client.post("/api/v1/users/me/lock/verify", json={"pin": "12-34"}).json() == {"valid": True}
    assert client.post("/api/v1/users/me/lock/verify", json={"pin": "0000"}).json() == {"valid": False}


def test_backup_run_history_and_retention(client, backup_dir):
    _register(client)
    client.post("/api/v1/collections/events", json={"title": "Dentist"})
    settings = {"enabled": False, "folderPath": str(backup_dir), "retentionMode": "count", "retentionValue": 5}
    client.put("/api/v1/users/me/settings", json={"backupSettings": settings})

    res = client.post("/api/v1/backup/run-now")
    assert res.status_code == 200
    result = res.json()
    assert result["success"] is True
    written = json.loads((backup_dir / result["fileName"]).read_text(encoding="utf-8"))
    assert written["data"]["events"][0]["title"] == "Dentist"

    history = client.get("/api/v1/backup/history").json()
    assert [entry["name"] for entry in history] == [result["fileName"]]

    me = client.get("/api/v1/auth/me").json()["user"]
    assert me["backupSettings"]["lastBackupStatus"] == "success"

    assert client.post("/api/v1/backup/retention").json() == {"deleted": []}
    notifications = client.get("/api/v1/notifications").json()
    assert notifications[-1]["title"] == "Backup exported successfully!"


def test_run_now_without_folder(client):
    _register(client)
    result = client.post("/api/v1/backup/run-now").json()
    assert result["success"] is False
    assert result["errorCode"] == "NoFolder"


def test_select_folder(client, backup_dir):
    _register(client)
    assert client.post("/api/v1/backup/select-folder").json() == {"folderPath": str(backup_dir)}


def test_export_import_roundtrip(client):
    _register(client)
    client.post("/api/v1/collections/books", json={"title": "Dune"})
    exported = client.get("/api/v1/backup/export").json()
    assert exported["scope"] == "user"
    assert exported["schemaVersion"] == "2.0"

    client.post("/api/v1/collections/books", json={"title": "Emma"})
    assert len(client.get("/api/v1/collections/books").json()) == 2

    restored = client.post("/api/v1/backup/import", json=exported)
    assert restored.status_code == 200
    assert restored.json()["scope"] == "user"
    assert [b["title"] for b in client.get("/api/v1/collections/books").json()] == ["Dune"]

    everything = client.get("/api/v1/backup/export", params={"scope": "all"}).json()
    assert everything["scope"] == "all"


def test_import_file(client):
    _register(client)
    exported = client.get("/api/v1/backup/export").json()
    files = {"file": ("backup.json", json.dumps(exported).encode("utf-8"), "application/json")}
    assert client.post("/api/v1/backup/import-file", files=files).status_code == 200

    bad = {"file": ("backup.txt", b"{}", "text/plain")}
    assert client.post("/api/v1/backup/import-file", files=bad).status_code == 400
    broken = {"file": ("backup.json", b"{not json", "application/json")}
    assert client.post("/api/v1/backup/import-file", files=broken).status_code == 400


def test_download(client):
    user = _register(client)
    res = client.get("/api/v1/backup/download")
    assert res.status_code == 200
    assert "attachment" in res.headers["content-disposition"]
    assert res.json()["userId"] == user["id"]


def test_delete_account(client):
    _register(client, "alice")
    client.post("/api/v1/collections/events", json={"title": "x"})
    assert client.delete("/api/v1/users/me").json() == {"deleted": True}
    assert client.get("/api/v1/auth/me").status_code == 401
    state = client.get("/api/v1/debug/state").json()
    assert state["counts"]["users"] == 0
    assert state["counts"]["events"] == 0
    assert state["currentUserId"] is None


def test_bulk_replace_and_save(client):
    _register(client)
    created = client.post("/api/v1/collections/todos/bulk", json=[{"text": "a"}, {"text": "b"}])
    assert created.status_code == 201
    assert len({item["id"] for item in created.json()}) == 2

    replaced = client.put("/api/v1/collections/todos", json=[{"text": "only"}])
    assert [item["text"] for item in replaced.json()] == ["only"]

    entry = client.post("/api/v1/collections/journal/save", json={"text": "draft"}).json()
    again = client.post("/api/v1/collections/journal/save", json={**entry, "text": "final"}).json()
    assert again["id"] == entry["id"]
    assert [row["text"] for row in client.get("/api/v1/collections/journal").json()] == ["final"]


def test_save_cannot_take_over_other_users_item(client):
    _register(client, "alice")
    entry = client.post("/api/v1/collections/journal", json={"text": "mine"}).json()
    _register(client, "bob")
    assert client.post("/api/v1/collections/journal/save", json={"id": entry["id"], "text": "x"}).status_code == 404


def test_extras_are_exported_with_the_user(client):
    user = _register(client)
    key = f"katanos_weather_loc_{user['id']}"
    assert client.put(f"/api/v1/extras/weatherLocations/{key}", json={"value": ["Rome"]}).status_code == 200
    client.put("/api/v1/extras/appLocalStorage/katanos_last_login_theme", json={"value": "dark"})

    extras = client.get("/api/v1/extras").json()
    assert extras["weatherLocations"] == {key: ["Rome"]}
    exported = client.get("/api/v1/backup/export").json()
    assert exported["extras"]["weatherLocations"] == {key: ["Rome"]}
    assert exported["extras"]["appLocalStorage"] == {"katanos_last_login_theme": "dark"}

    assert client.delete(f"/api/v1/extras/weatherLocations/{key}").status_code == 204
    assert client.delete(f"/api/v1/extras/weatherLocations/{key}").status_code == 404
    assert client.put("/api/v1/extras/bogus/k", json={"value": 1}).status_code == 404


def test_extras_of_other_users_are_protected(client):
    _register(client, "alice")
    client.put("/api/v1/extras/cloudBackups/chronos_cloud_backup_a", json={"value": {"p": 1}})
    _register(client, "bob")
    assert client.get("/api/v1/extras").json()["cloudBackups"] == {}
    assert client.put("/api/v1/extras/cloudBackups/chronos_cloud_backup_a", json={"value": {}}).status_code == 404
    assert client.delete("/api/v1/extras/cloudBackups/chronos_cloud_backup_a").status_code == 404
