import asyncio
import hashlib
import os

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from wildspot.config import settings
from wildspot.models.image import StoredImage

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"heron" * 100


async def upload(client: AsyncClient, headers: dict, data: bytes = PNG_BYTES, name: str = "heron.png"):
	return await client.post("/images", files={"image": (name, data, "image/png")}, headers=headers)


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
	response = await client.get("/health")
	assert response.status_code == 200
	assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_detailed_health(client: AsyncClient):
	response = await client.get("/health/detailed")
	assert response.status_code == 200
	data = response.json()
	assert data["services"]["database"]["healthy"] is True
	assert data["services"]["database"]["images"] == {"count": 0, "bytes": 0}
	assert data["services"]["storage"]["type"] == "local"
	assert data["overall_health"] == "healthy"


@pytest.mark.asyncio
async def test_upload_returns_content_id(client: AsyncClient, auth_headers: dict):
	"""Test a successful upload"""
	response = await upload(client, auth_headers)

	assert response.status_code == 201
	assert response.json() == {"id": hashlib.sha256(PNG_BYTES).hexdigest()}
	assert response.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_upload_then_fetch(client: AsyncClient, auth_headers: dict):
	"""Stored bytes come back unchanged with their MIME type"""
	image_id = (await upload(client, auth_headers)).json()["id"]

	response = await client.get(f"/images/{image_id}")

	assert response.status_code == 200
	assert response.content == PNG_BYTES
	assert response.headers["content-type"] == "image/png"
	assert response.headers["cache-control"] == "public, max-age=31536000, immutable"


@pytest.mark.asyncio
async def test_upload_is_idempotent(client: AsyncClient, auth_headers: dict, session_factory, blob_storage):
	first = await upload(client, auth_headers)
	second = await upload(client, auth_headers, name="renamed.png")

	assert first.status_code == second.status_code == 201
	assert first.json()["id"] == second.json()["id"]
	assert os.listdir(blob_storage.root) == [f"{first.json()['id']}.png"]

	async with session_factory() as session:
		result = await session.execute(select(func.count()).select_from(StoredImage))
		assert result.scalar_one() == 1


@pytest.mark.asyncio
async def test_upload_without_image_field(client: AsyncClient, auth_headers: dict):
	"""Test upload with the wrong multipart field name"""
	response = await client.post(
		"/images",
		files={"photo": ("heron.png", PNG_BYTES, "image/png")},
		headers=auth_headers,
	)

	assert response.status_code == 400
	assert response.json()["error"] == "missing_image"


@pytest.mark.asyncio
async def test_upload_with_text_image_field(client: AsyncClient, auth_headers: dict):
	"""A form value named image that is not a file counts as missing"""
	for request in (
		{"data": {"image": "notafile"}},
		{"data": {"image": "notafile"}, "files": {"photo": ("heron.png", PNG_BYTES, "image/png")}},
	):
		response = await client.post("/images", headers=auth_headers, **request)

		assert response.status_code == 400
		assert response.json()["error"] == "missing_image"


@pytest.mark.asyncio
async def test_upload_too_large(client: AsyncClient, auth_headers: dict, blob_storage, monkeypatch):
	monkeypatch.setattr(settings, "MAX_UPLOAD_SIZE", 16)

	response = await upload(client, auth_headers, data=b"x" * 17)

	assert response.status_code == 413
	assert response.json()["error"] == "payload_too_large"
	assert not os.path.exists(blob_storage.root)


@pytest.mark.asyncio
async def test_upload_storage_failure(client: AsyncClient, auth_headers: dict, blob_storage, monkeypatch):
	"""Disk errors surface as a generic 500"""
	def broken_write(filename, data, content_type=None):
		raise OSError("read-only file system")

	monkeypatch.setattr(blob_storage, "write", broken_write)

	response = await upload(client, auth_headers)

	assert response.status_code == 500
	assert response.json() == {"error": "storage_failure", "message": "Failed to store image"}


@pytest.mark.asyncio
async def test_fetch_unknown_image(client: AsyncClient):
	response = await client.get(f"/images/{hashlib.sha256(b'nothing').hexdigest()}")
	assert response.status_code == 404
	assert response.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_fetch_with_missing_file_is_not_found(client: AsyncClient, auth_headers: dict, blob_storage):
	"""An index row without its file is reported as 404, not 500"""
	image_id = (await upload(client, auth_headers)).json()["id"]
	os.remove(blob_storage.path_for(f"{image_id}.png"))

	response = await client.get(f"/images/{image_id}")

	assert response.status_code == 404


@pytest.mark.asyncio
async def test_concurrent_identical_uploads(client: AsyncClient, auth_headers: dict, session_factory, blob_storage):
	"""Two simultaneous uploads of the same bytes both succeed with the same id"""
	first, second = await asyncio.gather(upload(client, auth_headers), upload(client, auth_headers))

	assert first.status_code == 201
	assert second.status_code == 201
	assert first.json()["id"] == second.json()["id"]

	files = [name for name in os.listdir(blob_storage.root) if not name.startswith(".")]
	assert files == [f"{first.json()['id']}.png"]
	async with session_factory() as session:
		result = await session.execute(select(func.count()).select_from(StoredImage))
		assert result.scalar_one() == 1


@pytest.mark.asyncio
async def test_delete_image(client: AsyncClient, auth_headers: dict):
	image_id = (await upload(client, auth_headers)).json()["id"]

	response = await client.delete(f"/images/{image_id}", headers=auth_headers)
	assert response.status_code == 204

	assert (await client.get(f"/images/{image_id}")).status_code == 404
	assert (await client.delete(f"/images/{image_id}", headers=auth_headers)).status_code == 404


@pytest.mark.asyncio
async def test_identify_image(client: AsyncClient, auth_headers: dict, detector):
	"""The detector's JSON is passed through and the country hint forwarded"""
	image_id = (await upload(client, auth_headers)).json()["id"]

	response = await client.get(f"/images/{image_id}/identify", params={"country": "ITA"}, headers=auth_headers)

	assert response.status_code == 200
	assert response.json()["annotations"][0]["label"] == "red fox"
	sent = detector.requests[0]
	assert sent.headers["Authorization"] == "Bearer test-detector-key"
	body = sent.content
	assert b'name="country"' in body
	assert b"ITA" in body
	assert PNG_BYTES in body


@pytest.mark.asyncio
async def test_identify_upstream_error(client: AsyncClient, auth_headers: dict, detector):
	image_id = (await upload(client, auth_headers)).json()["id"]
	detector.status_code = 429
	detector.payload = {"message": "quota exceeded"}

	response = await client.get(f"/images/{image_id}/identify", headers=auth_headers)

	assert response.status_code == 429
	data = response.json()
	assert data["error"] == "identification_failed"
	assert data["message"] == "Detect failed"
	assert "quota exceeded" in data["details"]


@pytest.mark.asyncio
async def test_identify_upstream_unreachable(client: AsyncClient, auth_headers: dict, detector):
	image_id = (await upload(client, auth_headers)).json()["id"]
	detector.fail_with = httpx.ConnectError("connection refused")

	response = await client.get(f"/images/{image_id}/identify", headers=auth_headers)

	assert response.status_code == 502
	assert response.json()["message"] == "Identification service unreachable"


@pytest.mark.asyncio
async def test_identify_invalid_upstream_json(client: AsyncClient, auth_headers: dict, detector):
	image_id = (await upload(client, auth_headers)).json()["id"]
	detector.raw_body = b"<html>oops</html>"

	response = await client.get(f"/images/{image_id}/identify", headers=auth_headers)

	assert response.status_code == 502
	assert response.json()["message"] == "Invalid response"


@pytest.mark.asyncio
async def test_identify_not_configured(client: AsyncClient, auth_headers: dict, identification_service, monkeypatch):
	image_id = (await upload(client, auth_headers)).json()["id"]
	monkeypatch.setattr(identification_service, "api_key", None)

	response = await client.get(f"/images/{image_id}/identify", headers=auth_headers)

	assert response.status_code == 500
	assert response.json()["error"] == "identification_not_configured"


@pytest.mark.asyncio
async def test_identify_unknown_image(client: AsyncClient, auth_headers: dict, detector):
	response = await client.get(f"/images/{hashlib.sha256(b'x').hexdigest()}/identify", headers=auth_headers)

	assert response.status_code == 404
	assert detector.requests == []


@pytest.mark.asyncio
async def test_metrics_endpoint(client: AsyncClient, auth_headers: dict):
	await upload(client, auth_headers)

	response = await client.get("/internal/metrics")

	assert response.status_code == 200
	assert "image_uploads_total" in response.text
	assert "http_requests_total" in response.text
