"""
Tests for the startup sequence.
"""

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from service_gatekeeper.app.bootstrap import StartupCoordinator
from service_gatekeeper.app.main import GatekeeperService


@pytest.fixture
def coordinator(config, issuer_client, fake_redis, key_cache):
    return StartupCoordinator(config, issuer_client, fake_redis, key_cache)


def steps_by_name(report):
    return {step.name: step for step in report.steps}


class TestStartupCoordinator:

    @pytest.mark.asyncio
    async def test_ready(self, coordinator, issuer_server):
        report = await coordinator.run()

        assert report.status == "ready"
        assert report.ready
        assert report.completed_at is not None
        steps = steps_by_name(report)
        assert list(steps) == ["issuer", "store", "admin_bootstrap", "key_cache"]
        assert steps["admin_bootstrap"].detail == "not configured"
        assert coordinator.key_cache.snapshot()["kids"] == [issuer_server.tokens.key.kid]
        assert issuer_server.calls["token.client_credentials"] == 1

    @pytest.mark.asyncio
    async def test_issuer_down_is_degraded_not_fatal(self, coordinator, issuer_server):
        issuer_server.certs_status = 503

        report = await coordinator.run()

        assert report.status == "degraded"
        steps = steps_by_name(report)
        assert steps["issuer"].ok is False
        assert steps["issuer"].attempts == 1
        assert steps["issuer"].detail
        assert steps["key_cache"].ok is False
        assert steps["store"].ok is True

    @pytest.mark.asyncio
    async def test_issuer_recovers_within_wait(self, config, issuer_client, fake_redis, key_cache, issuer_server):
        config.readiness_max_wait_seconds = 1.0
        config.readiness_retry_delay_seconds = 0.01
        coordinator = StartupCoordinator(config, issuer_client, fake_redis, key_cache)
        issuer_server.certs_status = 503

        real_probe = issuer_client.probe_ready
        attempts = []

        async def probe():
            attempts.append(1)
            if len(attempts) == 3:
                issuer_server.certs_status = 200
            return await real_probe()

        issuer_client.probe_ready = probe

        report = await coordinator.run()

        assert steps_by_name(report)["issuer"].ok is True
        assert steps_by_name(report)["issuer"].attempts == 3

    @pytest.mark.asyncio
    async def test_store_down_is_degraded(self, coordinator, fake_redis, monkeypatch):
        fake_redis.fail_with = RedisConnectionError("refused")
        monkeypatch.setattr("shared.retry._calculate_delay", lambda attempt, config: 0.0)

        report = await coordinator.run()

        assert report.status == "degraded"
        store = steps_by_name(report)["store"]
        assert store.ok is False
        assert store.attempts == 3
        assert "refused" in store.detail


class TestAdminBootstrap:

    @pytest.mark.asyncio
    async def test_creates_user_and_grants_admin(self, config, issuer_client, fake_redis, key_cache, issuer_server):
        config.bootstrap_admin_username = "root-admin"
        config.bootstrap_admin_password = "s3cret"
        coordinator = StartupCoordinator(config, issuer_client, fake_redis, key_cache)

        report = await coordinator.run()

        assert report.ready
        [user] = issuer_server.admin_users.values()
        assert user["username"] == "root-admin"
        assert user["enabled"] is True
        assert issuer_server.role_mappings[user["id"]] == ["admin"]
        assert issuer_server.calls["admin.users.create"] == 1
        assert issuer_server.calls["admin.users.reset_password"] == 1

    @pytest.mark.asyncio
    async def test_existing_user_only_gets_role(self, config, issuer_client, fake_redis, key_cache, issuer_server):
        issuer_server.admin_users["existing-id"] = {"id": "existing-id", "username": "root-admin"}
        config.bootstrap_admin_username = "root-admin"
        config.bootstrap_admin_password = "s3cret"
        coordinator = StartupCoordinator(config, issuer_client, fake_redis, key_cache)

        report = await coordinator.run()

        assert report.ready
        assert issuer_server.calls["admin.users.create"] == 0
        assert issuer_server.role_mappings["existing-id"] == ["admin"]

    @pytest.mark.asyncio
    async def test_bootstrap_gives_up_after_max_attempts(self, config, issuer_client, fake_redis, key_cache,
                                                         issuer_server):
        config.bootstrap_admin_username = "root-admin"
        config.bootstrap_admin_password = "s3cret"
        issuer_server.client_secret = "rotated"
        coordinator = StartupCoordinator(config, issuer_client, fake_redis, key_cache)

        report = await coordinator.run()

        assert report.status == "degraded"
        step = steps_by_name(report)["admin_bootstrap"]
        assert step.ok is False
        assert step.attempts == 3
        assert issuer_server.admin_users == {}


class TestServiceStartup:

    def test_startup_runs_on_lifespan(self, config, http_client, fake_redis):
        config.run_startup_checks = True
        service = GatekeeperService(config, http_client, fake_redis)

        with TestClient(service.app) as client:
            health = client.get("/health").json()

        assert health["startup"] == "ready"
        assert health["status"] == "ok"
        assert fake_redis.calls["aclose"] == 0

    def test_degraded_startup_is_reported_on_health(self, config, http_client, fake_redis, issuer_server):
        config.run_startup_checks = True
        issuer_server.certs_status = 503
        service = GatekeeperService(config, http_client, fake_redis)

        with TestClient(service.app) as client:
            issuer_server.certs_status = 200
            health = client.get("/health").json()

        assert health["startup"] == "degraded"
        assert health["status"] == "degraded"
