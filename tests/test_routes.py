from __future__ import annotations

import io
import zipfile

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image

from app.api import routes
from app.core.config import Settings
from app.main import create_app
from bulkgen.exceptions import CredentialError
from bulkgen.mock import MockGenerationClient
from bulkgen.utils import decode_media


@pytest.fixture
def app(settings: Settings):
    return create_app(settings)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    await app.state.job_store.stop()


@pytest.mark.asyncio
async def test_validate_mock_cookie(client: AsyncClient) -> None:
    response = await client.post("/api/validate-cookie", json={"cookie": "MOCK"})

    assert response.status_code == 200
    assert response.json() == {"valid": True, "message": "Mock Mode Active", "email": "mock@example.com"}


@pytest.mark.asyncio
async def test_validate_requires_cookie(client: AsyncClient) -> None:
    response = await client.post("/api/validate-cookie", json={})

    assert response.status_code == 400
    assert response.json()["valid"] is False


@pytest.mark.asyncio
async def test_validate_real_cookie_without_client_configured(client: AsyncClient) -> None:
    response = await client.post("/api/validate-cookie", json={"cookie": "session=abc"})

    assert response.status_code == 500
    assert "not available" in response.json()["message"]


@pytest.mark.asyncio
async def test_generate_with_mock_cookie(client: AsyncClient) -> None:
    response = await client.post(
        "/api/generate",
        json={"cookie": "MOCK", "prompt": "a red fox", "aspectRatio": "16:9"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["prompt"] == "a red fox"
    assert body["mediaId"].startswith("mock_")
    assert body["image"].startswith("data:image/png;base64,")
    with Image.open(io.BytesIO(decode_media(body["image"]))) as image:
        assert image.size == (16, 9)


@pytest.mark.asyncio
async def test_generate_validation_errors(client: AsyncClient) -> None:
    missing = await client.post("/api/generate", json={"cookie": "MOCK"})
    assert missing.status_code == 400
    assert missing.json() == {"success": False, "error": "Cookie and prompt are required"}

    references = [{"category": "SUBJECT", "image": "aGk="}] * 4
    too_many = await client.post("/api/generate", json={"cookie": "MOCK", "prompt": "x", "references": references})
    assert too_many.status_code == 400
    assert "At most 3" in too_many.json()["error"]


@pytest.mark.asyncio
async def test_generate_is_rate_limited(tmp_path) -> None:
    app = create_app(Settings(storage_root=tmp_path / "data", mock_delay=0, rate_limit_requests=2))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        payload = {"cookie": "MOCK", "prompt": "cat"}
        statuses = [(await client.post("/api/generate", json=payload)).status_code for _ in range(3)]

    assert statuses == [200, 200, 429]


@pytest.mark.asyncio
async def test_animate_with_mock_cookie(client: AsyncClient) -> None:
    response = await client.post(
        "/api/animate",
        json={"cookie": "MOCK", "imageBase64": "data:image/png;base64,aGk=", "videoScript": "pan left", "model": "VEO_3_1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["video"].startswith("data:video/mp4;base64,")
    assert b"VEO_3_1_I2V_12STEP" in decode_media(body["video"])


@pytest.mark.asyncio
async def test_animate_requires_script(client: AsyncClient) -> None:
    response = await client.post("/api/animate", json={"cookie": "MOCK", "imageBase64": "aGk="})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_upload_prompts_csv(client: AsyncClient) -> None:
    content = b"prompt,notes\na cat,fluffy\na dog,\n"
    response = await client.post("/api/upload-prompts", files={"file": ("prompts.csv", content, "text/csv")})

    assert response.status_code == 200
    assert response.json() == {"success": True, "prompts": ["a cat", "a dog"], "count": 2}


@pytest.mark.asyncio
async def test_upload_prompts_rejects_large_files(tmp_path) -> None:
    app = create_app(Settings(storage_root=tmp_path / "data", uploads_max_bytes=10))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/upload-prompts", files={"file": ("p.txt", b"x" * 11, "text/plain")})

    assert response.status_code == 400
    assert response.json()["error"] == "File too large"


@pytest.mark.asyncio
async def test_job_lifecycle_over_http(app, client: AsyncClient) -> None:
    created = await client.post("/api/jobs", json={"cookie": "MOCK", "prompts": ["cat", "dog"], "aspectRatio": "SQUARE"})
    assert created.status_code == 201
    job = created.json()
    assert job["status"] == "pending"
    assert job["totalCount"] == 2
    assert "cookie" not in job

    await app.state.worker.process_next()

    fetched = (await client.get(f"/api/jobs/{job['id']}")).json()
    assert fetched["status"] == "completed"
    assert fetched["completedCount"] == 2
    image_url = fetched["prompts"][0]["imageUrl"]
    served = await client.get(image_url)
    assert served.status_code == 200
    assert served.content.startswith(b"\x89PNG")

    listing = (await client.get("/api/jobs")).json()
    assert [item["id"] for item in listing["jobs"]] == [job["id"]]

    download = await client.get(f"/api/jobs/{job['id']}/download")
    assert download.status_code == 200
    with zipfile.ZipFile(io.BytesIO(download.content)) as archive:
        assert sorted(archive.namelist()) == ["1.png", "2.png"]

    stats = (await client.get("/api/stats")).json()
    assert stats["completed"] == 1
    assert stats["maxConcurrent"] == 5
    assert stats["workerPaused"] is False


@pytest.mark.asyncio
async def test_job_endpoints_report_missing_jobs(client: AsyncClient) -> None:
    assert (await client.get("/api/jobs/job_nope")).status_code == 404
    assert (await client.post("/api/jobs/job_nope/cancel")).status_code == 404
    assert (await client.post("/api/jobs/job_nope/retry")).status_code == 404
    assert (await client.get("/api/jobs/job_nope/download")).status_code == 404


@pytest.mark.asyncio
async def test_create_job_validation(client: AsyncClient) -> None:
    response = await client.post("/api/jobs", json={"cookie": "MOCK", "prompts": []})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_cancel_and_download_without_images(client: AsyncClient) -> None:
    job = (await client.post("/api/jobs", json={"cookie": "MOCK", "prompts": ["cat"]})).json()

    cancelled = await client.post(f"/api/jobs/{job['id']}/cancel")
    assert cancelled.json()["status"] == "cancelled"

    download = await client.get(f"/api/jobs/{job['id']}/download")
    assert download.status_code == 409


@pytest.mark.asyncio
async def test_retry_endpoint_resets_worker_streak(app, client: AsyncClient) -> None:
    job = (await client.post("/api/jobs", json={"cookie": "MOCK", "prompts": ["cat"]})).json()
    store = app.state.job_store
    record = await store.get_job(job["id"])
    await store.update_prompt(job["id"], record.prompts[0].prompt_id, status="error", error="boom")
    await store.update_job(job["id"], status="failed")
    for _ in range(5):
        app.state.worker.backoff.record_failure()

    paused = (await client.get("/api/stats")).json()
    assert paused["workerPaused"] is True

    retried = (await client.post(f"/api/jobs/{job['id']}/retry")).json()
    assert retried["status"] == "pending"
    assert retried["failedCount"] == 0
    assert retried["prompts"][0]["status"] == "pending"
    assert app.state.worker.backoff.streak == 0


@pytest.mark.asyncio
async def test_worker_resume_endpoint(app, client: AsyncClient) -> None:
    app.state.worker.backoff.record_failure()

    response = await client.post("/api/worker/resume")

    assert response.status_code == 200
    assert response.json()["failureStreak"] == 0


@pytest.mark.asyncio
async def test_health_and_security_headers(client: AsyncClient) -> None:
    response = await client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["apiAvailable"] is False
    assert body["workerRunning"] is False
    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["x-frame-options"] == "DENY"
    assert response.headers["referrer-policy"] == "strict-origin-when-cross-origin"


class ExpiredSessionClient(MockGenerationClient):
    """Adapter whose session the remote service no longer accepts."""

    async def generate(self, context, prompt, aspect_ratio):
        raise CredentialError("Session expired, sign in again")

    async def animate(self, media, script, video_model):
        raise CredentialError("Session expired, sign in again")


@pytest.mark.asyncio
async def test_credential_errors_map_to_unauthorized(client: AsyncClient, monkeypatch) -> None:
    monkeypatch.setattr(routes, "build_client", lambda cookie, *args, **kwargs: ExpiredSessionClient(cookie, delay=0))

    generated = await client.post("/api/generate", json={"cookie": "session=abc", "prompt": "a red fox"})
    animated = await client.post(
        "/api/animate",
        json={"cookie": "session=abc", "imageBase64": "aGk=", "videoScript": "slow pan"},
    )

    assert generated.status_code == 401
    assert generated.json() == {"success": False, "error": "Session expired, sign in again"}
    assert animated.status_code == 401


@pytest.mark.asyncio
async def test_generate_discards_request_context(app, client: AsyncClient) -> None:
    response = await client.post("/api/generate", json={"cookie": "MOCK", "prompt": "a red fox"})
    await app.state.reaper.wait()

    assert response.status_code == 200
    assert len(app.state.reaper) == 0
    assert app.state.worker.pool.reaper is app.state.reaper


@pytest.mark.asyncio
async def test_malformed_bodies_are_bad_requests(client: AsyncClient) -> None:
    bad_category = await client.post(
        "/api/generate",
        json={"cookie": "MOCK", "prompt": "x", "references": [{"category": "COLOR", "image": "aGk="}]},
    )
    prompts_as_text = await client.post("/api/jobs", json={"cookie": "MOCK", "prompts": "cat"})

    for response in (bad_category, prompts_as_text):
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]
    assert "references" in bad_category.json()["error"]
