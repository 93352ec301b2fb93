import asyncio
import io
import time
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from mediaopt.bulk import BulkScheduler, get_scheduler
from mediaopt.config import get_settings
from mediaopt.conversion.capabilities import get_detector
from mediaopt.conversion.service import ConversionService, get_conversion_service
from mediaopt.external import ExternalJobClient, get_external_client
from mediaopt.library import get_library
from mediaopt.main import app
from mediaopt.quota import QuotaGate, get_quota_gate
from mediaopt.tracker import get_tracker


@pytest.fixture
def client(settings, detector, pipeline, tracker, library):
    quota = QuotaGate(images_limit=2, videos_limit=1)
    service = ConversionService(pipeline, tracker, library, max_workers=1)
    external = ExternalJobClient(settings, library)
    scheduler = BulkScheduler(settings, library, tracker, quota, service, external)
    app.dependency_overrides.update(
        {
            get_settings: lambda: settings,
            get_detector: lambda: detector,
            get_quota_gate: lambda: quota,
            get_tracker: lambda: tracker,
            get_library: lambda: library,
            get_conversion_service: lambda: service,
            get_external_client: lambda: external,
            get_scheduler: lambda: scheduler,
        }
    )
    yield TestClient(app)
    app.dependency_overrides.clear()
    service.shutdown()


def _png_bytes(size=(32, 32)):
    buf = io.BytesIO()
    Image.new("RGB", size, "blue").save(buf, format="PNG")
    return buf.getvalue()


def _wait_for_task(client, task_id):
    for _ in range(200):
        body = client.get(f"/api/task/{task_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.05)
    raise AssertionError("task did not finish")


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_status_snapshot(client):
    body = client.get("/api/status").json()
    assert body["capabilities"]["formats"]["webp"]["supported"] is True
    assert body["quota"]["images_limit"] == 2
    assert body["stats"]["total_conversions"] == 0
    assert body["settings"]["external_configured"] is True


def test_formats_and_quota(client):
    formats = client.get("/api/formats").json()
    assert formats["output_image"] == ["webp", "avif"]
    assert formats["output_video"] == []

    quota = client.get("/api/quota").json()
    assert quota["images"]["limit"] == 2


def test_upload_converts_and_tracks(client):
    response = client.post("/api/upload", files={"file": ("photo.png", _png_bytes(), "image/png")})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "processing"
    assert body["mimetype"] == "image/png"

    task = _wait_for_task(client, body["task_ids"][0])
    assert task["status"] == "completed"
    assert task["format"] == "webp"

    detail = client.get(f"/api/conversions/{body['attachment_id']}").json()
    assert detail["stats"]["total_conversions"] == 1
    assert detail["job"] is None
    assert client.get("/api/conversions/stats").json()["total_conversions"] == 1


def test_upload_rejects_unknown_extension(client):
    response = client.post("/api/upload", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert response.status_code == 400


def test_upload_deferred_when_quota_exhausted(client):
    for _ in range(2):
        client.post("/api/upload", files={"file": ("photo.png", _png_bytes(), "image/png")})
    response = client.post("/api/upload", files={"file": ("photo.png", _png_bytes(), "image/png")})
    assert response.json()["status"] == "deferred"


def test_bulk_run(client, library, make_image):
    for i in range(1, 4):
        library.register("image/png", make_image(f"b{i}.png"), attachment_id=i)

    started = client.post("/api/bulk", json={"attachment_ids": [1, 2, 3]}).json()
    assert started["status"] == "processing"

    run = client.get(f"/api/bulk/{started['run_id']}").json()
    assert run["status"] == "completed"
    assert run["dispatched"] == 2
    assert run["deferred"]["image"] == 1


def test_bulk_unknown_run(client):
    assert client.get("/api/bulk/nope").status_code == 404


def test_delete_asset(client, library, make_image, monkeypatch):
    monkeypatch.setattr("mediaopt.external.urlopen", MagicMock(side_effect=OSError("offline")))
    library.register("image/png", make_image("d.png"), attachment_id=8)

    assert client.delete("/api/assets/8").json() == {"ok": True}
    assert client.get("/api/conversions/8").status_code == 404
    assert client.delete("/api/assets/8").status_code == 404


def test_retry_failed_without_jobs(client):
    assert client.post("/api/external/retry-failed").json() == {"retried": [], "failed": []}


def test_unknown_task(client):
    assert client.get("/api/task/missing").status_code == 404


def test_upload_registers_and_dispatches_off_the_event_loop(client, library, monkeypatch):
    seen = []
    register = library.register

    def recording_register(*args, **kwargs):
        try:
            asyncio.get_running_loop()
            seen.append("event-loop")
        except RuntimeError:
            seen.append("worker-thread")
        return register(*args, **kwargs)

    monkeypatch.setattr(library, "register", recording_register)

    response = client.post("/api/upload", files={"file": ("photo.png", _png_bytes(), "image/png")})

    assert response.status_code == 200
    assert seen == ["worker-thread"]


def test_webp_upload_is_skipped_without_using_quota(client):
    buf = io.BytesIO()
    Image.new("RGB", (16, 16), "green").save(buf, format="PNG")
    response = client.post("/api/upload", files={"file": ("pic.webp", buf.getvalue(), "image/webp")})

    body = response.json()
    assert body["status"] == "skipped"
    assert body["task_ids"] == []
    assert client.get("/api/quota").json()["images"]["used"] == 0
