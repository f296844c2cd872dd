"""
Tests for KeySetCache.
"""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from shared.errors import KeySetUnavailableError
from service_gatekeeper.app.idp.client import IssuerClient
from service_gatekeeper.app.jwks.client import KeySetCache


class TestKeySetCache:

    @pytest.mark.asyncio
    async def test_miss_triggers_single_refresh(self, key_cache, issuer_server):
        kid = issuer_server.tokens.key.kid

        entry = await key_cache.get(kid)

        assert entry is not None
        assert entry.kid == kid
        assert entry.alg == "RS256"
        assert entry.jwk["kty"] == "RSA"
        assert issuer_server.calls["certs"] == 1

    @pytest.mark.asyncio
    async def test_hit_does_not_refetch(self, key_cache, issuer_server):
        kid = issuer_server.tokens.key.kid
        await key_cache.get(kid)
        await key_cache.get(kid)
        await key_cache.get(kid)

        assert issuer_server.calls["certs"] == 1

    @pytest.mark.asyncio
    async def test_unknown_kid_after_refresh_is_none(self, key_cache, issuer_server):
        assert await key_cache.get("nope") is None
        assert issuer_server.calls["certs"] == 1

        assert await key_cache.get("nope") is None
        assert issuer_server.calls["certs"] == 2

    @pytest.mark.asyncio
    async def test_rotation_replaces_whole_map(self, key_cache, issuer_server):
        old_kid = issuer_server.tokens.key.kid
        assert await key_cache.get(old_kid) is not None

        new_kid = issuer_server.rotate_key("rotated").kid
        assert await key_cache.get(new_kid) is not None

        assert key_cache.snapshot()["kids"] == [new_kid]
        # the old key is gone from the latest fetch, so it is unknown again
        assert await key_cache.get(old_kid) is None

    @pytest.mark.asyncio
    async def test_skips_keys_without_kid_and_encryption_keys(self, key_cache, issuer_server):
        signing = issuer_server.tokens.key.public_jwk()
        issuer_server.certs_body = {
            "keys": [
                {k: v for k, v in signing.items() if k != "kid"},
                {**signing, "kid": "enc-key", "use": "enc"},
                {**signing, "kid": "sig-key"},
                "not-a-key",
            ]
        }

        assert await key_cache.refresh() == 1
        assert key_cache.snapshot()["kids"] == ["sig-key"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [404, 500, 503])
    async def test_non_success_status_is_unavailable(self, key_cache, issuer_server, status_code, metrics):
        issuer_server.certs_status = status_code

        with pytest.raises(KeySetUnavailableError):
            await key_cache.get("any")
        assert metrics.registry.get_sample_value("jwks_refresh_total", {"status": "error"}) == 1.0

    @pytest.mark.asyncio
    async def test_body_without_keys_is_unavailable(self, key_cache, issuer_server):
        issuer_server.certs_body = {"not_keys": []}

        with pytest.raises(KeySetUnavailableError):
            await key_cache.get("any")

    @pytest.mark.asyncio
    async def test_transport_error_is_unavailable(self, config):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        issuer = IssuerClient(config, httpx.AsyncClient(transport=httpx.MockTransport(refuse)))
        cache = KeySetCache(issuer)

        with pytest.raises(KeySetUnavailableError):
            await cache.get("any")

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_map(self, key_cache, issuer_server):
        kid = issuer_server.tokens.key.kid
        await key_cache.get(kid)

        issuer_server.certs_status = 503
        with pytest.raises(KeySetUnavailableError):
            await key_cache.get("other")

        assert await key_cache.get(kid) is not None

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_fetch(self, issuer_client, issuer_server):
        cache = KeySetCache(issuer_client)
        kid = issuer_server.tokens.key.kid
        real_fetch = issuer_client.fetch_key_set

        async def slow_fetch():
            await asyncio.sleep(0.01)
            return await real_fetch()

        issuer_client.fetch_key_set = AsyncMock(side_effect=slow_fetch)

        entries = await asyncio.gather(*(cache.get(kid) for _ in range(20)))

        assert all(e is not None and e.kid == kid for e in entries)
        assert issuer_client.fetch_key_set.await_count == 1

    @pytest.mark.asyncio
    async def test_warmup_is_best_effort(self, key_cache, issuer_server):
        issuer_server.certs_status = 500
        assert await key_cache.warmup() is False

        issuer_server.certs_status = 200
        assert await key_cache.warmup() is True
        assert key_cache.snapshot()["kids"] == [issuer_server.tokens.key.kid]

    @pytest.mark.asyncio
    async def test_clear(self, key_cache, issuer_server):
        await key_cache.refresh()
        key_cache.clear()

        assert key_cache.snapshot()["kids"] == []
        await key_cache.get(issuer_server.tokens.key.kid)
        assert issuer_server.calls["certs"] == 2

    @pytest.mark.asyncio
    async def test_skips_keys_with_unusable_material(self, key_cache, issuer_server):
        signing = issuer_server.tokens.key.public_jwk()
        issuer_server.certs_body = {
            "keys": [
                {k: v for k, v in {**signing, "kid": "no-modulus"}.items() if k != "n"},
                {"kid": "symmetric", "kty": "oct", "k": "c2VjcmV0"},
                signing,
            ]
        }

        assert await key_cache.refresh() == 1
        assert key_cache.snapshot()["kids"] == [signing["kid"]]
