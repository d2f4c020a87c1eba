import httpx
import pytest

from skinscan.client.api_client import ResilientApiClient, TerminalFailure
from skinscan.client.identity import ClientIdentity
from skinscan.core.exceptions import ValidationError
from skinscan.main import app
from skinscan.services.storage_service import StorageService, get_storage


class _FakeStorage:
    upload_ttl = 900

    def __init__(self, fail=False):
        self.fail = fail
        self.signed = []

    async def presigned_upload_url(self, key, content_type):
        if self.fail:
            raise RuntimeError("credentials expired")
        self.signed.append((key, content_type))
        return f"https://bucket.test/{key}?X-Amz-Signature=abc"

    async def read_url(self, key):
        return f"https://cdn.test/{key}"

    async def ping(self):
        return True


@pytest.fixture
def storage():
    fake = _FakeStorage()
    app.dependency_overrides[get_storage] = lambda: fake
    return fake


@pytest.mark.asyncio
async def test_issues_fresh_upload_target(http, storage):
    body = {"mimeType": "image/jpeg", "metadata": {"userId": "user_1_abc", "source": "web"}}

    first = await http.post("/api/upload-url", json=body, headers={"X-User-Id": "user_1_abc"})
    second = await http.post("/api/upload-url", json=body, headers={"X-User-Id": "user_1_abc"})

    assert first.status_code == 200
    data = first.json()
    assert data["blobName"].startswith("uploads/")
    assert data["blobName"].endswith(".jpeg")
    assert data["uploadUrl"].startswith(f"https://bucket.test/{data['blobName']}")
    assert data["publicUrl"] == f"https://cdn.test/{data['blobName']}"
    assert data["blobUrl"] == data["publicUrl"]
    assert "expiresAt" in data
    assert first.headers["X-RateLimit-Limit"] == "20"
    assert first.headers["X-RateLimit-Remaining"] == "19"
    assert second.json()["uploadUrl"] != data["uploadUrl"]
    assert storage.signed[0][1] == "image/jpeg"


@pytest.mark.asyncio
async def test_rejects_unsupported_mime(http, storage):
    response = await http.post("/api/upload-url", json={"mimeType": "image/gif"})

    assert response.status_code == 400
    assert "JPEG, PNG or WebP" in response.json()["detail"]["message"]
    assert storage.signed == []


@pytest.mark.asyncio
async def test_jpg_alias_is_accepted(http, storage):
    response = await http.post("/api/upload-url", json={"mimeType": "image/jpg"})

    assert response.status_code == 200
    assert response.json()["blobName"].endswith(".jpg")


@pytest.mark.asyncio
async def test_rejects_declared_oversize(http, storage):
    response = await http.post(
        "/api/upload-url",
        json={"mimeType": "image/png", "sizeBytes": 11 * 1024 * 1024},
    )
    assert response.status_code == 413


@pytest.mark.asyncio
async def test_rate_limit_per_identity(http, storage, monkeypatch):
    from skinscan.core import rate_limiter

    monkeypatch.setattr(rate_limiter.settings, "RATE_LIMIT_UPLOAD_PER_HOUR", 2)
    headers = {"X-User-Id": "user_2_xyz"}
    body = {"mimeType": "image/webp"}

    for _ in range(2):
        assert (await http.post("/api/upload-url", json=body, headers=headers)).status_code == 200
    limited = await http.post("/api/upload-url", json=body, headers=headers)
    other = await http.post("/api/upload-url", json=body, headers={"X-User-Id": "someone-else"})

    assert limited.status_code == 429
    assert limited.headers["X-RateLimit-Remaining"] == "0"
    assert "X-RateLimit-Reset" in limited.headers
    assert limited.json()["detail"]["error"] == "Too Many Requests"
    assert other.status_code == 200


@pytest.mark.asyncio
async def test_storage_failure_is_503(http):
    app.dependency_overrides[get_storage] = lambda: _FakeStorage(fail=True)

    response = await http.post("/api/upload-url", json={"mimeType": "image/png"})

    assert response.status_code == 503
    assert response.json()["detail"]["retryAfter"] == 30


def test_capture_keys_are_unique_and_dated():
    first = StorageService.key_for_capture("image/png")
    second = StorageService.key_for_capture("image/png")
    assert first != second
    assert first.endswith(".png")


@pytest.mark.asyncio
async def test_health_and_ping(http, storage):
    health = (await http.get("/api/health")).json()
    assert health["status"] == "healthy"
    assert health["redis"] == "connected"
    assert (await http.get("/api/ping")).json() == {"ping": "pong"}


@pytest.mark.asyncio
async def test_client_does_not_retry_rejected_payload(fake_redis, tmp_path):
    sleeps = []

    async def _sleep(seconds):
        sleeps.append(seconds)

    client = ResilientApiClient(
        "http://test",
        ClientIdentity(tmp_path / "identity"),
        max_attempts=3,
        base_delay_ms=1000,
        transport=httpx.ASGITransport(app=app),
        sleep=_sleep,
    )
    async with client:
        outcome = await client.execute("POST", "/api/upload-url", json={"metadata": {}})

    assert isinstance(outcome, TerminalFailure)
    assert isinstance(outcome.error, ValidationError)
    assert outcome.error.status == 400
    assert outcome.error.attempts == 1
    assert "mimeType" in outcome.error.message
    assert sleeps == []
