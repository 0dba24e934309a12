import pytest

from src.core.config import settings
from src.core.exceptions import SubprocessFailureError

OWNER = {"X-Owner-Id": "user-1"}


async def _upload(client, data, filename="shirt.jpg", content_type="image/jpeg", headers=OWNER):
    return await client.post(
        "/api/v1/images",
        files={"file": (filename, data, content_type)},
        headers=headers,
    )


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_upload_returns_pending_record(client, launcher, image_bytes):
    response = await _upload(client, image_bytes())

    assert response.status_code == 201
    data = response.json()
    assert data["processing_status"] == "pending"
    assert data["original_url"] == f"/uploads/clothing/user-1/original_{data['image_id']}.jpg"
    assert launcher.launches == [(data["image_id"], False)]


@pytest.mark.asyncio
async def test_upload_rejects_unsupported_type(client, launcher):
    response = await _upload(client, b"GIF89a", filename="anim.gif", content_type="image/gif")

    assert response.status_code == 400
    assert "Unsupported file type" in response.json()["error"]
    assert launcher.launches == []


@pytest.mark.asyncio
async def test_upload_rejects_undecodable_bytes(client):
    response = await _upload(client, b"not an image at all")

    assert response.status_code == 400
    assert response.json()["code"] == 400


@pytest.mark.asyncio
async def test_upload_rejects_oversized_file(client, image_bytes, monkeypatch):
    data = image_bytes()
    monkeypatch.setattr(settings, "MAX_UPLOAD_SIZE_BYTES", len(data) - 1)

    response = await _upload(client, data)

    assert response.status_code == 413


@pytest.mark.asyncio
async def test_upload_requires_owner_header(client, image_bytes):
    response = await _upload(client, image_bytes(), headers={})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_status_polling_through_completion(client, runner, image_bytes):
    image_id = (await _upload(client, image_bytes())).json()["image_id"]

    pending = (await client.get(f"/api/v1/images/{image_id}/status", headers=OWNER)).json()
    assert (pending["status"], pending["progress"], pending["current_step"]) == ("pending", 10, "pending")
    assert pending["urls"]["optimized"] is None

    runner.run(image_id)

    response = await client.get(f"/api/v1/images/{image_id}/status", headers=OWNER)
    assert response.status_code == 200
    done = response.json()
    assert done["status"] == "completed"
    assert done["progress"] == 100
    assert done["urls"]["optimized"].endswith(f"optimized_{image_id}.png")
    assert done["urls"]["thumbnail"].endswith(f"thumbnail_{image_id}.webp")
    assert done["dominant_color"] == done["colors"][0]
    assert done["error"] is None


@pytest.mark.asyncio
async def test_status_is_private_to_owner(client, image_bytes):
    image_id = (await _upload(client, image_bytes())).json()["image_id"]

    response = await client.get(f"/api/v1/images/{image_id}/status", headers={"X-Owner-Id": "intruder"})

    assert response.status_code == 404
    assert response.json()["image_id"] == image_id


@pytest.mark.asyncio
async def test_retry_endpoint(client, launcher, make_runner, failing_remover, image_bytes):
    image_id = (await _upload(client, image_bytes())).json()["image_id"]

    # Not failed yet
    response = await client.post(f"/api/v1/images/{image_id}/retry", headers=OWNER)
    assert response.status_code == 409

    make_runner(failing_remover(SubprocessFailureError("Background removal failed: boom"))).run(image_id)
    failed = (await client.get(f"/api/v1/images/{image_id}/status", headers=OWNER)).json()
    assert failed["status"] == "failed"
    assert failed["progress"] == 0
    assert failed["error"] == "Background removal failed: boom [Attempt: 1]"
    assert failed["attempt_count"] == 1

    response = await client.post(f"/api/v1/images/{image_id}/retry", headers=OWNER)
    assert response.status_code == 202
    assert response.json()["processing_status"] == "processing"
    assert launcher.launches[-1] == (image_id, True)


@pytest.mark.asyncio
async def test_list_and_stats(client, runner, image_bytes):
    first = (await _upload(client, image_bytes())).json()["image_id"]
    await _upload(client, image_bytes())
    await _upload(client, image_bytes(), headers={"X-Owner-Id": "user-2"})
    runner.run(first)

    listing = (await client.get("/api/v1/images", headers=OWNER)).json()
    assert listing["total"] == 2

    stats = (await client.get("/api/v1/images/stats", headers=OWNER)).json()
    assert stats == {"total": 2, "pending": 1, "processing": 0, "completed": 1, "failed": 0}


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    await client.get("/health")

    response = await client.get("/api/v1/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text


@pytest.mark.asyncio
async def test_request_metrics_are_labelled_by_route(client, image_bytes):
    image_id = (await _upload(client, image_bytes())).json()["image_id"]
    await client.get(f"/api/v1/images/{image_id}/status", headers=OWNER)
    await client.get(f"/no-such-page/{image_id}")

    text = (await client.get("/api/v1/metrics")).text

    assert 'endpoint="/api/v1/images/{image_id}/status"' in text
    assert 'endpoint="unmatched"' in text
    assert image_id not in text
