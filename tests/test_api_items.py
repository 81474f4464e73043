"""条目、文件夹、存储用量与对象直链接口的集成测试用例。"""

import uuid
from urllib.parse import unquote

from fastapi.testclient import TestClient

from app.packages.drive.models.user import User
from app.packages.drive.services.storage_backends import get_storage_backend

API = "/api/v1"


def _headers(auth_headers) -> dict:
    return auth_headers(f"user-{uuid.uuid4().hex}")


def _upload(client: TestClient, headers: dict, name: str, body: bytes, parent_id=None) -> dict:
    init = client.post(
        f"{API}/uploads", headers=headers, json={"fileName": name, "fileSize": len(body), "parentId": parent_id}
    ).json()["data"]
    client.put(
        f"{API}/uploads/{init['upload_id']}/parts/0",
        headers=headers,
        data={"storageKey": init["storage_key"], "totalParts": "1"},
        files={"chunk": ("blob", body, "application/octet-stream")},
    )
    response = client.post(
        f"{API}/uploads/{init['upload_id']}/complete",
        headers=headers,
        json={"storageKey": init["storage_key"], "fileName": name, "fileSize": len(body), "totalParts": 1},
    )
    assert response.status_code == 200
    return response.json()["data"]


def test_health_echoes_request_id(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "healthy"
    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


def test_resolve_path_navigates_and_creates(client: TestClient, auth_headers):
    headers = _headers(auth_headers)
    missing = client.get(f"{API}/folders/resolve-path", headers=headers, params={"path": "a/b"})
    assert missing.status_code == 404

    created = client.get(f"{API}/folders/resolve-path", headers=headers, params={"path": "a//b/", "create": "true"})
    assert created.status_code == 200
    data = created.json()["data"]
    assert data["path"] == "a/b"

    found = client.get(f"{API}/folders/resolve-path", headers=headers, params={"path": "a/b"}).json()["data"]
    assert found["folder_id"] == data["folder_id"]

    root = client.get(f"{API}/folders/resolve-path", headers=headers, params={"path": ""}).json()["data"]
    assert root["folder_id"] is None


def test_folder_create_rename_and_move(client: TestClient, auth_headers):
    headers = _headers(auth_headers)
    work = client.post(f"{API}/folders", headers=headers, json={"name": "work"}).json()["data"]
    assert work["kind"] == "folder"
    assert work["category"] == "folder"
    duplicate = client.post(f"{API}/folders", headers=headers, json={"name": "work"})
    assert duplicate.status_code == 409

    plan = _upload(client, headers, "plan.txt", b"step one\nstep two\n")
    moved = client.patch(f"{API}/items/{plan['id']}", headers=headers, json={"parentId": work["id"], "name": "plan-v2.txt"})
    assert moved.status_code == 200
    assert moved.json()["data"]["parent_id"] == work["id"]
    assert moved.json()["data"]["name"] == "plan-v2.txt"

    listed = client.get(f"{API}/items", headers=headers, params={"parentId": work["id"]}).json()["data"]
    assert [i["name"] for i in listed] == ["plan-v2.txt"]

    back = client.patch(f"{API}/items/{plan['id']}", headers=headers, json={"parentId": None})
    assert back.json()["data"]["parent_id"] is None

    into_self = client.patch(f"{API}/items/{work['id']}", headers=headers, json={"parentId": work["id"]})
    assert into_self.status_code == 400

    hits = client.get(f"{API}/items/search", headers=headers, params={"q": "plan"}).json()["data"]
    assert [i["id"] for i in hits] == [plan["id"]]


def test_trash_restore_and_permanent_delete(client: TestClient, auth_headers):
    headers = _headers(auth_headers)
    folder = client.post(f"{API}/folders", headers=headers, json={"name": "old"}).json()["data"]
    doc = _upload(client, headers, "memo.txt", b"x" * 40, parent_id=folder["id"])

    trashed = client.delete(f"{API}/items/{folder['id']}", headers=headers)
    assert trashed.json()["data"] == {"bytes_freed": 40}
    assert client.get(f"{API}/items", headers=headers).json()["data"] == []
    trash = client.get(f"{API}/items", headers=headers, params={"trashed": "true"}).json()["data"]
    assert {i["id"] for i in trash} == {folder["id"], doc["id"]}
    assert client.get(f"{API}/items/{doc['id']}", headers=headers).json()["data"]["is_deleted"] is True

    restored = client.post(f"{API}/items/{folder['id']}/restore", headers=headers)
    assert restored.status_code == 200
    assert client.get(f"{API}/user/storage", headers=headers).json()["data"]["storage_used"] == 40

    purged = client.delete(f"{API}/items/{folder['id']}", headers=headers, params={"permanent": "true"})
    assert purged.json()["data"] == {"bytes_freed": 40}
    assert client.get(f"{API}/items/{doc['id']}", headers=headers).status_code == 404
    usage = client.get(f"{API}/user/storage", headers=headers).json()["data"]
    assert usage["storage_used"] == 0
    assert usage["file_count"] == 0


def test_items_are_private_to_their_owner(client: TestClient, auth_headers):
    owner = _headers(auth_headers)
    other = _headers(auth_headers)
    doc = _upload(client, owner, "private.txt", b"secret")
    assert client.get(f"{API}/items/{doc['id']}", headers=other).status_code == 404
    assert client.delete(f"{API}/items/{doc['id']}", headers=other).status_code == 404
    assert client.get(f"{API}/items/{doc['id']}/download", headers=other).status_code == 404


def test_download_and_signed_url(client: TestClient, auth_headers):
    headers = _headers(auth_headers)
    body = "第一行\nsecond line\n".encode("utf-8")
    doc = _upload(client, headers, "季度 报告.txt", body)

    download = client.get(f"{API}/items/{doc['id']}/download", headers=headers)
    assert download.status_code == 200
    assert download.content == body
    disposition = download.headers["Content-Disposition"]
    assert unquote(disposition.split("''", 1)[1]) == "季度 报告.txt"

    link = client.get(f"{API}/items/{doc['id']}/url", headers=headers).json()["data"]
    assert link["name"] == "季度 报告.txt"
    assert link["expires_in"] > 0
    signed = client.get(link["url"])
    assert signed.status_code == 200
    assert signed.content == body

    tampered = client.get(f"{API}/objects/signed", params={"t": "broken"})
    assert tampered.status_code == 401

    folder = client.post(f"{API}/folders", headers=headers, json={"name": "dir"}).json()["data"]
    assert client.get(f"{API}/items/{folder['id']}/url", headers=headers).status_code == 400


def test_signed_put_writes_object(client: TestClient):
    backend = get_storage_backend()
    url = backend.presign_put("files/direct/upload.bin", "application/octet-stream", 60)
    response = client.put(url, content=b"direct-bytes")
    assert response.status_code == 200
    assert response.json()["data"] == {"key": "files/direct/upload.bin", "size": 12}
    assert backend.get_object("files/direct/upload.bin") == b"direct-bytes"

    download_token = backend.presign_get("files/direct/upload.bin", 60)
    # 下载令牌不能用于写入
    assert client.put(download_token, content=b"x").status_code == 401


def test_storage_reconcile_fixes_drift(client: TestClient, auth_headers, db_session_fixture):
    subject = f"user-{uuid.uuid4().hex}"
    headers = auth_headers(subject)
    _upload(client, headers, "a.txt", b"a" * 25)

    clean = client.post(f"{API}/user/storage/reconcile", headers=headers).json()["data"]
    assert clean["drift"] == 0

    user = db_session_fixture.query(User).filter(User.external_id == subject).one()
    user.storage_used = 999
    db_session_fixture.commit()

    fixed = client.post(f"{API}/user/storage/reconcile", headers=headers).json()["data"]
    assert fixed == {"previous": 999, "actual": 25, "drift": -974}
    usage = client.get(f"{API}/user/storage", headers=headers).json()["data"]
    assert usage["storage_used"] == 25
    assert usage["available_bytes"] == usage["storage_limit"] - 25
