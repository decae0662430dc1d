import asyncio
import json

import httpx
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.pool import NullPool

from fakes import CSV_BYTES, PDF_BYTES, DenyPermissionChecker, FakeInvalidator, FakeNotifier, FakePurger
from upload_review.db.database import create_engine, create_session_factory, init_models
from upload_review.db.db_utils import AuditLogStore, BackupStore, UploadRecordStore
from upload_review.main import build_upload_service, create_app
from upload_review.middleware import RemotePermissionChecker
from upload_review.service.cloudflare import CloudflarePurger
from upload_review.service.cloudfront import CloudFrontInvalidator
from upload_review.service.s3_utils import S3Storage
from upload_review.service.temp_storage import InMemoryTempStorage
from upload_review.service.upload_service import UploadService
from upload_review.service.validation import FileValidator

TOKEN = "secret-token"
HEADERS = {"Authorization": f"Bearer {TOKEN}", "X-User-Email": "alice@example.com"}


@pytest.fixture
def app(tmp_path, settings, object_store):
    settings.service_auth_token = TOKEN
    # no pooling: connections must not outlive the event loop that opened them
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/api.db", poolclass=NullPool)
    asyncio.run(init_models(engine))
    session_factory = create_session_factory(engine)

    service = UploadService(
        settings=settings,
        records=UploadRecordStore(session_factory),
        audit=AuditLogStore(session_factory),
        backups=BackupStore(session_factory),
        temp_storage=InMemoryTempStorage(),
        object_store=object_store,
        notifier=FakeNotifier(),
        invalidator=FakeInvalidator(),
        purger=FakePurger(),
        validator=FileValidator(settings.max_upload_size, settings.allowed_extensions, settings.allowed_mime_types),
    )
    yield create_app(settings, service=service)
    asyncio.run(engine.dispose())


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def _submit(client, name="report.pdf", data=PDF_BYTES, content_type="application/pdf"):
    return client.post("/api/v1/uploads", headers=HEADERS, files={"file": (name, data, content_type)})


def test_health_is_public(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["version"] == "1.0.0"
    assert body["dependencies"] == {"database": "healthy", "temp_storage": "healthy"}


def test_missing_bearer_token(client):
    resp = client.get("/api/v1/uploads", headers={"X-User-Email": "alice@example.com"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "unauthorized"


def test_wrong_bearer_token(client):
    resp = client.get("/api/v1/uploads", headers={**HEADERS, "Authorization": "Bearer nope"})
    assert resp.status_code == 401


def test_missing_user_header(client):
    resp = client.get("/api/v1/uploads", headers={"Authorization": f"Bearer {TOKEN}"})
    assert resp.status_code == 400


def test_upload_review_and_approve(client, object_store):
    resp = _submit(client)
    assert resp.status_code == 202
    created = resp.json()
    assert created["status"] == "pending"
    assert created["message"] == "File pending review"
    upload_id = created["id"]

    status = client.get(f"/api/v1/uploads/{upload_id}", headers=HEADERS).json()
    assert status["status"] == "pending"
    assert status["uploaded_by"] == "alice@example.com"

    resp = client.post(f"/api/v1/uploads/{upload_id}/approve", headers=HEADERS)
    assert resp.status_code == 200
    approved = resp.json()
    assert approved == {
        "id": upload_id,
        "status": "approved",
        "s3_key": "report.pdf",
        "backup_key": None,
        "cloudfront_inv_id": "INV1",
        "cloudflare_ready": True,
    }
    assert object_store.objects["report.pdf"] == PDF_BYTES

    status = client.get(f"/api/v1/uploads/{upload_id}", headers=HEADERS).json()
    assert status["status"] == "approved"
    assert status["temp_storage_key"] is None

    logs = client.get("/api/v1/audit-logs", headers=HEADERS, params={"upload_id": upload_id}).json()
    assert logs["total"] == 2
    assert {entry["action"] for entry in logs["logs"]} == {"upload", "approve"}


def test_reject_then_reject_again(client):
    upload_id = _submit(client, "data.csv", CSV_BYTES, "text/csv").json()["id"]

    resp = client.post(f"/api/v1/uploads/{upload_id}/reject", headers=HEADERS, json={"reason": "wrong file"})
    assert resp.status_code == 200
    assert resp.json() == {"status": "rejected", "reason": "wrong file"}

    resp = client.post(f"/api/v1/uploads/{upload_id}/reject", headers=HEADERS, json={"reason": "again"})
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_state"


def test_reject_requires_reason_field(client):
    upload_id = _submit(client).json()["id"]
    resp = client.post(f"/api/v1/uploads/{upload_id}/reject", headers=HEADERS, json={})
    assert resp.status_code == 422


def test_blank_rejection_reason(client):
    upload_id = _submit(client).json()["id"]
    resp = client.post(f"/api/v1/uploads/{upload_id}/reject", headers=HEADERS, json={"reason": "  "})
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"


def test_unknown_upload(client):
    resp = client.get("/api/v1/uploads/nope", headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json() == {"error": "not_found", "message": "upload not found: nope", "code": 404}


def test_invalid_file_is_rejected_at_submit(client):
    resp = _submit(client, "setup.exe", b"MZ\x90\x00", "application/octet-stream")
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"


def test_dependency_failure_names_the_step(client, object_store):
    upload_id = _submit(client).json()["id"]
    object_store.fail_on.add("put")

    resp = client.post(f"/api/v1/uploads/{upload_id}/approve", headers=HEADERS)
    assert resp.status_code == 502
    body = resp.json()
    assert body["error"] == "dependency_failure"
    assert body["operation"] == "approve"
    assert body["step"] == "upload_to_store"


def test_missing_permission(app, client):
    app.state.permission_checker = DenyPermissionChecker("imf:approve")
    upload_id = _submit(client).json()["id"]

    resp = client.post(f"/api/v1/uploads/{upload_id}/approve", headers=HEADERS)
    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"


def test_list_uploads(client):
    _submit(client)
    rejected_id = _submit(client, "data.csv", CSV_BYTES, "text/csv").json()["id"]
    client.post(f"/api/v1/uploads/{rejected_id}/reject", headers=HEADERS, json={"reason": "no"})

    body = client.get("/api/v1/uploads", headers=HEADERS, params={"status": "pending"}).json()
    assert body["total"] == 1
    assert body["uploads"][0]["file_name"] == "report.pdf"
    assert body["total_pages"] == 1

    resp = client.get("/api/v1/uploads", headers=HEADERS, params={"status": "lost"})
    assert resp.status_code == 400


def test_purge_cache(client):
    upload_id = _submit(client).json()["id"]
    assert client.post(f"/api/v1/uploads/{upload_id}/purge-cache", headers=HEADERS).status_code == 409

    client.post(f"/api/v1/uploads/{upload_id}/approve", headers=HEADERS)
    resp = client.post(f"/api/v1/uploads/{upload_id}/purge-cache", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json() == {"message": "Cache purged successfully"}


# -- permission checks -------------------------------------------------------


async def test_remote_permission_checker():
    seen = []

    def handler(request):
        body = json.loads(request.content)
        seen.append(body)
        return httpx.Response(200, json={"allowed": body["permission"] == "imf:read"})

    checker = RemotePermissionChecker("https://auth.test/check", transport=httpx.MockTransport(handler))

    assert await checker.has_permission("alice@example.com", "imf:read") is True
    assert await checker.has_permission("alice@example.com", "imf:approve") is False
    assert seen[0] == {"user": "alice@example.com", "permission": "imf:read"}


async def test_remote_permission_checker_denies_on_error_status():
    checker = RemotePermissionChecker(
        "https://auth.test/check", transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )
    assert await checker.has_permission("alice@example.com", "imf:read") is False


async def test_remote_permission_checker_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused")

    checker = RemotePermissionChecker("https://auth.test/check", transport=httpx.MockTransport(handler))
    with pytest.raises(HTTPException) as exc_info:
        await checker.has_permission("alice@example.com", "imf:read")
    assert exc_info.value.status_code == 503


async def test_build_upload_service_from_settings(tmp_path, settings):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/wired.db")
    try:
        service = await build_upload_service(settings, engine)

        assert isinstance(service.temp_storage, InMemoryTempStorage)
        assert isinstance(service.object_store, S3Storage)
        assert service.object_store.prefix == "imf/"
        assert isinstance(service.invalidator, CloudFrontInvalidator)
        assert isinstance(service.purger, CloudflarePurger)
        assert (await service.health_check()).healthy
    finally:
        await engine.dispose()
