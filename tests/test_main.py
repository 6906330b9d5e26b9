"""Tests for app/main.py – FastAPI routes, auth, and error mapping."""

from __future__ import annotations

import dataclasses
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

import app.main as main_module
from app.archive_rewriter import read_entry
from app.engine import GenerationEngine
from app.errors import LedgerWriteError, MalformedContainer, PersistenceFailure
from app.main import APK_MEDIA_TYPE, _http_error

HTML = "<!doctype html><html><body>hello from the form</body></html>"


def _upload(client: TestClient, headers: dict[str, str], data: bytes):
    return client.post(
        "/api/admin/upload-template",
        headers=headers,
        files={"template": ("app.apk", data, "application/octet-stream")},
    )


@pytest.fixture()
def loaded_client(
    client: TestClient, admin_headers: dict[str, str], template_bytes: bytes
) -> TestClient:
    """Client whose engine already has a current template."""
    assert _upload(client, admin_headers, template_bytes).status_code == 200
    return client


# ── Helpers ──────────────────────────────────────────────────────────────────


class TestHttpError:
    def test_known_status(self) -> None:
        exc = _http_error(MalformedContainer("broken"))
        assert exc.status_code == 422
        assert exc.detail == "MalformedContainer: broken"

    def test_subclass_inherits_parent_status(self) -> None:
        assert _http_error(LedgerWriteError("x")).status_code == 500
        assert _http_error(PersistenceFailure("x")).status_code == 500


# ── Health ───────────────────────────────────────────────────────────────────


class TestHealth:
    def test_ok(self, client: TestClient) -> None:
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}


# ── Admin auth ───────────────────────────────────────────────────────────────


class TestAdminAuth:
    @pytest.mark.parametrize(
        "path", ["/api/admin/templates", "/api/admin/db", "/api/admin/artifacts"]
    )
    def test_missing_password_401(self, client: TestClient, path: str) -> None:
        resp = client.get(path)
        assert resp.status_code == 401
        assert resp.json()["detail"] == "unauthorized"

    def test_wrong_password_401(self, client: TestClient) -> None:
        resp = client.get("/api/admin/templates", headers={"x-admin-pass": "nope"})
        assert resp.status_code == 401

    def test_query_password_accepted(self, client: TestClient, admin_headers: dict) -> None:
        resp = client.get("/api/admin/templates", params={"pass": admin_headers["x-admin-pass"]})
        assert resp.status_code == 200

    def test_upload_requires_password(self, client: TestClient, template_bytes: bytes) -> None:
        resp = _upload(client, {}, template_bytes)
        assert resp.status_code == 401


# ── Template upload / listing ────────────────────────────────────────────────


class TestUploadTemplate:
    def test_upload_becomes_current(
        self, client: TestClient, admin_headers: dict, template_bytes: bytes
    ) -> None:
        resp = _upload(client, admin_headers, template_bytes)
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["filename"].startswith("template_")

        listing = client.get("/api/admin/templates", headers=admin_headers).json()
        assert listing["templates"] == [body["filename"]]
        assert listing["current"] == body["filename"]

    def test_listing_most_recent_first(
        self, client: TestClient, admin_headers: dict, template_bytes: bytes
    ) -> None:
        first = _upload(client, admin_headers, template_bytes).json()["filename"]
        second = _upload(client, admin_headers, template_bytes).json()["filename"]
        listing = client.get("/api/admin/templates", headers=admin_headers).json()
        assert listing["templates"] == [second, first]
        assert listing["current"] == second

    def test_no_file_400(self, client: TestClient, admin_headers: dict) -> None:
        resp = client.post("/api/admin/upload-template", headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "no file uploaded"

    def test_unreadable_archive_422(self, client: TestClient, admin_headers: dict) -> None:
        resp = _upload(client, admin_headers, b"not a zip at all")
        assert resp.status_code == 422
        assert resp.json()["detail"].startswith("MalformedContainer:")

    def test_oversized_upload_413(
        self, client: TestClient, admin_headers: dict, template_bytes: bytes
    ) -> None:
        small = dataclasses.replace(main_module.settings, max_upload_size=10)
        with patch.object(main_module, "settings", small):
            resp = _upload(client, admin_headers, template_bytes)
        assert resp.status_code == 413


# ── POST /api/create-apk ─────────────────────────────────────────────────────


class TestCreateApk:
    def test_pasted_text(self, loaded_client: TestClient) -> None:
        resp = loaded_client.post(
            "/api/create-apk",
            data={"username": "bob", "projectName": "Demo App", "text": HTML},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["message"] == "APK generated"
        name = body["artifact"]["name"]
        assert name.startswith("Demo-App_")
        assert body["download_url"] == f"/generated/{name}"

        download = loaded_client.get(body["download_url"])
        assert download.status_code == 200
        assert download.headers["content-type"] == APK_MEDIA_TYPE
        assert name in download.headers["content-disposition"]
        assert read_entry(download.content, "assets/www/index.html") == HTML.encode()

    def test_uploaded_file_with_replace_path(self, loaded_client: TestClient) -> None:
        resp = loaded_client.post(
            "/api/create-apk",
            data={"replacePath": "assets/web/page.html"},
            files={"file": ("page.html", HTML.encode(), "text/html")},
        )
        assert resp.status_code == 200
        data = loaded_client.get(resp.json()["download_url"]).content
        assert read_entry(data, "assets/web/page.html") == HTML.encode()
        assert read_entry(data, "assets/www/index.html") == b"old"

    def test_file_wins_over_text(self, loaded_client: TestClient) -> None:
        resp = loaded_client.post(
            "/api/create-apk",
            data={"text": "<html>pasted</html>"},
            files={"file": ("page.htm", b"<html>uploaded</html>", "text/html")},
        )
        assert resp.status_code == 200
        data = loaded_client.get(resp.json()["download_url"]).content
        assert read_entry(data, "assets/www/index.html") == b"<html>uploaded</html>"

    def test_no_content_400(self, loaded_client: TestClient) -> None:
        resp = loaded_client.post("/api/create-apk", data={"username": "bob"})
        assert resp.status_code == 400
        assert "No HTML provided" in resp.json()["detail"]

    def test_non_html_text_400(self, loaded_client: TestClient) -> None:
        resp = loaded_client.post("/api/create-apk", data={"text": "plain words"})
        assert resp.status_code == 400
        assert resp.json()["detail"].startswith("InvalidPayload:")

    def test_wrong_file_type_400(self, loaded_client: TestClient) -> None:
        resp = loaded_client.post(
            "/api/create-apk",
            files={"file": ("notes.txt", HTML.encode(), "text/plain")},
        )
        assert resp.status_code == 400
        assert "not supported" in resp.json()["detail"]

    def test_unsafe_path_400(self, loaded_client: TestClient) -> None:
        resp = loaded_client.post(
            "/api/create-apk", data={"text": HTML, "replacePath": "../../etc/passwd"}
        )
        assert resp.status_code == 400
        assert resp.json()["detail"].startswith("InvalidPath:")

    def test_oversized_payload_413_and_recorded(
        self, loaded_client: TestClient, admin_headers: dict, engine: GenerationEngine
    ) -> None:
        engine.max_payload_bytes = 16
        resp = loaded_client.post("/api/create-apk", data={"text": HTML})
        assert resp.status_code == 413
        assert resp.json()["detail"].startswith("PayloadTooLarge:")

        body = loaded_client.get("/api/admin/db", headers=admin_headers).json()
        assert body["counts"] == {"success": 0, "failure": 1}

    def test_no_template_503(self, client: TestClient) -> None:
        resp = client.post("/api/create-apk", data={"text": HTML})
        assert resp.status_code == 503
        assert "No APK template found" in resp.json()["detail"]

    def test_failures_appear_in_ledger(
        self, loaded_client: TestClient, admin_headers: dict
    ) -> None:
        loaded_client.post("/api/create-apk", data={"text": HTML, "username": "ok"})
        loaded_client.post("/api/create-apk", data={"text": "nope", "username": "bad"})

        body = loaded_client.get("/api/admin/db", headers=admin_headers).json()
        assert body["counts"] == {"success": 1, "failure": 1}
        assert [e["requester_label"] for e in body["entries"]] == ["bad", "ok"]
        assert body["entries"][0]["outcome"] == "failure"


# ── Artifacts ────────────────────────────────────────────────────────────────


class TestArtifacts:
    def _create(self, client: TestClient) -> str:
        return client.post("/api/create-apk", data={"text": HTML}).json()["artifact"]["name"]

    def test_listing(self, loaded_client: TestClient, admin_headers: dict) -> None:
        name = self._create(loaded_client)
        body = loaded_client.get("/api/admin/artifacts", headers=admin_headers).json()
        assert [a["name"] for a in body["artifacts"]] == [name]

    def test_delete_then_download_404(
        self, loaded_client: TestClient, admin_headers: dict
    ) -> None:
        name = self._create(loaded_client)
        resp = loaded_client.delete(f"/api/admin/artifacts/{name}", headers=admin_headers)
        assert resp.json() == {"ok": True, "removed": True}

        again = loaded_client.delete(f"/api/admin/artifacts/{name}", headers=admin_headers)
        assert again.json() == {"ok": True, "removed": False}

        assert loaded_client.get(f"/generated/{name}").status_code == 404

    def test_expired_download_404(self, loaded_client: TestClient, clock) -> None:
        name = self._create(loaded_client)
        clock.advance(3600)
        resp = loaded_client.get(f"/generated/{name}")
        assert resp.status_code == 404
        assert resp.json()["detail"].startswith("ArtifactNotFound:")

    def test_unknown_download_404(self, client: TestClient) -> None:
        assert client.get("/generated/nothing-here.apk").status_code == 404
