"""
Shared fixtures for Gatekeeper tests.
"""

import asyncio
import time
from collections import Counter
from typing import Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from mocks.issuer.server import MockIssuerServer
from shared.config import get_config
from shared.metrics import get_metrics_collector
from shared.test_helpers import certificate_pem, generate_client_certificate
from service_gatekeeper.app.idp.client import IssuerClient
from service_gatekeeper.app.install.registry import ServiceRegistry
from service_gatekeeper.app.install.token_store import InstallTokenStore
from service_gatekeeper.app.jwks.client import KeySetCache
from service_gatekeeper.app.main import GatekeeperService
from service_gatekeeper.app.validation.token_validator import TokenValidator

ISSUER_BASE_URL = "http://issuer.test"
CLIENT_SECRET = "gatekeeper-secret"


class FakePipeline:
    """Buffers commands and applies them without yielding, like MULTI/EXEC."""

    def __init__(self, store: "FakeRedis"):
        self._store = store
        self._ops: List[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self._ops = []

    def set(self, name, value, **kwargs):
        self._ops.append(("_set", (name, value), kwargs))
        return self

    def sadd(self, name, *values):
        self._ops.append(("_sadd", (name, *values), {}))
        return self

    async def execute(self):
        self._store.calls["exec"] += 1
        results = [getattr(self._store, op)(*args, **kwargs) for op, args, kwargs in self._ops]
        self._ops = []
        return results


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis with decode_responses=True.

    Every command yields to the event loop once before touching state, so
    concurrent callers interleave the way they would against a server.
    """

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.sets: Dict[str, set] = {}
        self.expiry: Dict[str, float] = {}
        self.calls: Counter = Counter()
        self.fail_with: Optional[Exception] = None

    async def _enter(self, command: str):
        self.calls[command] += 1
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.data

    def _set(self, name, value, ex=None, nx=False):
        if nx and self._alive(name):
            return None
        self.data[name] = value
        if ex is not None:
            self.expiry[name] = time.monotonic() + ex
        else:
            self.expiry.pop(name, None)
        return True

    def _sadd(self, name, *values):
        members = self.sets.setdefault(name, set())
        added = len(set(values) - members)
        members.update(values)
        return added

    async def ping(self):
        await self._enter("ping")
        return True

    async def get(self, name):
        await self._enter("get")
        return self.data.get(name) if self._alive(name) else None

    async def set(self, name, value, ex=None, nx=False):
        await self._enter("set")
        return self._set(name, value, ex=ex, nx=nx)

    async def getdel(self, name):
        await self._enter("getdel")
        if not self._alive(name):
            return None
        self.expiry.pop(name, None)
        return self.data.pop(name)

    async def delete(self, *names):
        await self._enter("delete")
        removed = 0
        for name in names:
            if self._alive(name):
                del self.data[name]
                self.expiry.pop(name, None)
                removed += 1
        return removed

    async def sadd(self, name, *values):
        await self._enter("sadd")
        return self._sadd(name, *values)

    async def smembers(self, name):
        await self._enter("smembers")
        return set(self.sets.get(name, set()))

    async def mget(self, keys):
        await self._enter("mget")
        return [self.data.get(k) if self._alive(k) else None for k in keys]

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def ttl(self, name) -> int:
        if not self._alive(name):
            return -2
        deadline = self.expiry.get(name)
        return -1 if deadline is None else int(deadline - time.monotonic())

    async def aclose(self):
        self.calls["aclose"] += 1


@pytest.fixture
def config():
    return get_config(
        "gatekeeper",
        3001,
        env="test",
        issuer_base_url=ISSUER_BASE_URL,
        issuer_realm="cluster",
        client_id="gatekeeper-backend",
        client_secret=CLIENT_SECRET,
        run_startup_checks=False,
        readiness_max_wait_seconds=0,
        readiness_retry_delay_seconds=0,
        bootstrap_max_attempts=3,
    )


@pytest.fixture
def issuer_server():
    return MockIssuerServer(base_url=ISSUER_BASE_URL, client_secret=CLIENT_SECRET)


@pytest.fixture
def http_client(issuer_server):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=issuer_server.app), timeout=5.0)


@pytest.fixture
def metrics():
    return get_metrics_collector("gatekeeper", registry=CollectorRegistry())


@pytest.fixture
def issuer_client(config, http_client):
    return IssuerClient(config, http_client)


@pytest.fixture
def key_cache(issuer_client, metrics):
    return KeySetCache(issuer_client, metrics)


@pytest.fixture
def validator(config, issuer_client, key_cache, metrics):
    return TokenValidator(config, issuer_client, key_cache, metrics)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def token_store(fake_redis, metrics):
    return InstallTokenStore(fake_redis, metrics)


@pytest.fixture
def registry(fake_redis, token_store, metrics):
    return ServiceRegistry(fake_redis, token_store, metrics)


@pytest.fixture
def agent_certificate():
    return generate_client_certificate("agent-1", serial_number=1234567890123)


@pytest.fixture
def agent_certificate_pem(agent_certificate):
    return certificate_pem(agent_certificate)


@pytest.fixture
def service(config, http_client, fake_redis):
    return GatekeeperService(config, http_client, fake_redis)


@pytest.fixture
def client(service):
    with TestClient(service.app) as test_client:
        yield test_client
