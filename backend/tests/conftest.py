import httpx
import pytest
import pytest_asyncio

from skinscan.core import rate_limiter
from skinscan.core import redis as redis_core
from skinscan.main import app
from skinscan.services import cache_service, cart_relay_service


class _FakePipeline:
    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def incr(self, key):
        self._ops.append(("incr", key))
        return self

    def expire(self, key, seconds, nx=False):
        self._ops.append(("expire", key, seconds, nx))
        return self

    def ttl(self, key):
        self._ops.append(("ttl", key))
        return self

    async def execute(self):
        results = []
        for op in self._ops:
            if op[0] == "incr":
                value = int(self._redis.store.get(op[1], 0)) + 1
                self._redis.store[op[1]] = value
                results.append(value)
            elif op[0] == "expire":
                _, key, seconds, nx = op
                if nx and key in self._redis.ttls:
                    results.append(False)
                else:
                    self._redis.ttls[key] = seconds
                    results.append(True)
            else:
                results.append(self._redis.ttls.get(op[1], -1))
        self._ops = []
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the services under test."""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    def pipeline(self):
        return _FakePipeline(self)

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, px=None):
        self.store[key] = value
        if px is not None:
            self.ttls[key] = px / 1000
        return True

    async def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def getdel(self, key):
        self.ttls.pop(key, None)
        return self.store.pop(key, None)

    async def delete(self, key):
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0

    async def ping(self):
        return True


@pytest.fixture
def fake_redis(monkeypatch):
    redis = FakeRedis()

    async def _get_redis():
        return redis

    for module in (redis_core, rate_limiter, cache_service, cart_relay_service):
        monkeypatch.setattr(module, "get_redis", _get_redis)
    return redis


@pytest_asyncio.fixture
async def http(fake_redis):
    """HTTP client bound to the ASGI app; dependency overrides are cleared afterwards."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
