import re
from datetime import datetime, timezone

import httpx
import pytest

from skinscan.capture.messages import describe_failure
from skinscan.client.api_client import (
    ResilientApiClient,
    Success,
    TerminalFailure,
    parse_rate_limit_reset,
    server_message,
)
from skinscan.client.identity import ClientIdentity, generate_identity
from skinscan.core.exceptions import (
    AuthError,
    RateLimitedError,
    ServerError,
    TransientNetworkError,
    ValidationError,
)

NOW = 1_700_000_000.0


def _client(handler, tmp_path, sleeps, **kwargs):
    async def _sleep(seconds):
        sleeps.append(seconds)

    return ResilientApiClient(
        "http://api.test",
        ClientIdentity(tmp_path / "identity"),
        max_attempts=3,
        base_delay_ms=1000,
        transport=httpx.MockTransport(handler),
        sleep=_sleep,
        clock=lambda: NOW,
        **kwargs,
    )


def _sequence(*responses):
    requests = []
    pending = list(responses)

    def handler(request):
        requests.append(request)
        item = pending.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return handler, requests


@pytest.mark.asyncio
async def test_retries_server_errors_with_exponential_backoff(tmp_path):
    handler, requests = _sequence(
        httpx.Response(500, json={"message": "boom"}),
        httpx.Response(503),
        httpx.Response(200, json={"ok": True}),
    )
    sleeps = []
    async with _client(handler, tmp_path, sleeps) as client:
        response = await client.call("GET", "/thing")

    assert response.json() == {"ok": True}
    assert len(requests) == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_rate_limit_is_terminal_and_reports_wait(tmp_path):
    reset = datetime.fromtimestamp(NOW + 90, tz=timezone.utc).isoformat()
    handler, requests = _sequence(
        httpx.Response(429, headers={"X-RateLimit-Reset": reset}, json={"detail": {"message": "slow down"}}),
    )
    sleeps = []
    async with _client(handler, tmp_path, sleeps) as client:
        with pytest.raises(RateLimitedError) as exc:
            await client.call("POST", "/infer", json={})

    assert len(requests) == 1
    assert sleeps == []
    assert exc.value.wait_ms == 90_000
    assert exc.value.message == "slow down"
    assert describe_failure(exc.value) == "Too many attempts. Try again in 2 minutes."


@pytest.mark.asyncio
@pytest.mark.parametrize("status,error_type", [(400, ValidationError), (401, AuthError)])
async def test_client_errors_are_not_retried(tmp_path, status, error_type):
    handler, requests = _sequence(httpx.Response(status, json={"message": "nope"}))
    sleeps = []
    async with _client(handler, tmp_path, sleeps) as client:
        outcome = await client.execute("POST", "/upload-url", json={})

    assert isinstance(outcome, TerminalFailure)
    assert isinstance(outcome.error, error_type)
    assert outcome.error.attempts == 1
    assert outcome.error.exhausted is False
    assert len(requests) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_network_errors_exhaust_retries(tmp_path):
    request = httpx.Request("GET", "http://api.test/health")
    handler, requests = _sequence(
        httpx.ConnectError("refused", request=request),
        httpx.ConnectError("refused", request=request),
        httpx.ConnectError("refused", request=request),
    )
    sleeps = []
    async with _client(handler, tmp_path, sleeps) as client:
        outcome = await client.execute("GET", "/health")

    assert isinstance(outcome, TerminalFailure)
    assert isinstance(outcome.error, TransientNetworkError)
    assert outcome.error.exhausted is True
    assert outcome.error.attempts == 3
    assert len(requests) == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_hook_runs_before_each_sleep(tmp_path):
    handler, _ = _sequence(httpx.Response(502), httpx.Response(200))
    events = []

    async def _sleep(seconds):
        events.append(("sleep", seconds))

    def _on_retry(attempt, max_attempts, error, delay_ms):
        events.append(("retry", attempt, max_attempts, type(error), delay_ms))

    client = ResilientApiClient(
        "http://api.test",
        ClientIdentity(tmp_path / "identity"),
        max_attempts=3,
        base_delay_ms=250,
        transport=httpx.MockTransport(handler),
        sleep=_sleep,
    )
    outcome = await client.execute("GET", "/x", on_retry=_on_retry)
    await client.aclose()

    assert isinstance(outcome, Success)
    assert events == [("retry", 2, 3, ServerError, 250), ("sleep", 0.25)]


@pytest.mark.asyncio
async def test_identity_header_is_stable_and_optional(tmp_path):
    handler, requests = _sequence(httpx.Response(200), httpx.Response(200), httpx.Response(200))
    sleeps = []
    async with _client(handler, tmp_path, sleeps) as client:
        await client.call("GET", "/a")
        await client.call("GET", "/b")
        await client.call("PUT", "https://blob.test/upload", content=b"x", identify=False)

    first, second, upload = requests
    token = first.headers["X-User-Id"]
    assert re.fullmatch(r"user_\d+_[a-z0-9]{9}", token)
    assert second.headers["X-User-Id"] == token
    assert "X-User-Id" not in upload.headers
    assert first.headers["X-Client-Version"]
    assert (tmp_path / "identity").read_text() == token


def test_identity_survives_restart(tmp_path):
    path = tmp_path / "nested" / "identity"
    token = ClientIdentity(path).token
    assert ClientIdentity(path).token == token
    assert generate_identity() != token


@pytest.mark.parametrize(
    "header,expected",
    [
        (None, 60_000),
        ("garbage", 60_000),
        (str(int(NOW + 30)), 30_000),
        (str(int((NOW + 45) * 1000)), 45_000),
        (datetime.fromtimestamp(NOW + 120, tz=timezone.utc).isoformat(), 120_000),
        (datetime.fromtimestamp(NOW - 10, tz=timezone.utc).isoformat(), 0),
    ],
)
def test_parse_rate_limit_reset(header, expected):
    assert parse_rate_limit_reset(header, NOW) == expected


def test_server_message_prefers_structured_detail():
    assert server_message(httpx.Response(400, json={"detail": {"message": "Bad type"}})) == "Bad type"
    assert server_message(httpx.Response(400, json={"detail": "Plain"})) == "Plain"
    assert server_message(httpx.Response(503, json={"error": "Down"})) == "Down"
    assert server_message(httpx.Response(502, text="<html>")) == "Error 502"


def test_unreadable_identity_path_falls_back_to_session_token(tmp_path):
    path = tmp_path / "identity"
    path.mkdir()

    identity = ClientIdentity(path)
    token = identity.token

    assert re.fullmatch(r"user_\d+_[a-z0-9]{9}", token)
    assert identity.token == token
    assert path.is_dir()
