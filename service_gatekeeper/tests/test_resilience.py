"""
Tests for the circuit breaker and the polling helpers.
"""

from unittest.mock import AsyncMock

import httpx
import pytest

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import ExternalServiceError, UpstreamRejectedError
from shared.retry import RetryConfig, RetryError, poll_until, retry_on_exception
from service_gatekeeper.app.idp.client import IssuerClient


def no_wait(max_attempts=3, timeout=None):
    return RetryConfig(max_attempts=max_attempts, base_delay=0, jitter=False,
                       backoff_strategy="fixed", timeout=timeout)


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60, expected_exception=ValueError)
        failing = AsyncMock(side_effect=ValueError("boom"))

        for _ in range(2):
            with pytest.raises(ValueError):
                await breaker.call(failing)

        assert breaker.is_open()
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(failing)
        assert failing.await_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_exceptions_do_not_count(self):
        breaker = CircuitBreaker(failure_threshold=1, expected_exception=ValueError)

        with pytest.raises(KeyError):
            await breaker.call(AsyncMock(side_effect=KeyError("x")))

        assert breaker.get_state()["state"] == "closed"
        assert breaker.get_state()["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0, expected_exception=ValueError)
        with pytest.raises(ValueError):
            await breaker.call(AsyncMock(side_effect=ValueError()))

        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.get_state()["state"] == "closed"

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=0, expected_exception=ValueError)
        for _ in range(3):
            with pytest.raises(ValueError):
                await breaker.call(AsyncMock(side_effect=ValueError()))

        with pytest.raises(ValueError):
            await breaker.call(AsyncMock(side_effect=ValueError()))
        assert breaker.is_open()

        breaker.reset()
        assert not breaker.is_open()

    @pytest.mark.asyncio
    async def test_issuer_rejections_do_not_open_breaker(self, issuer_client):
        for _ in range(10):
            with pytest.raises(UpstreamRejectedError):
                await issuer_client.userinfo("bogus")

        assert issuer_client.circuit_breaker.get_state()["state"] == "closed"

    @pytest.mark.asyncio
    async def test_issuer_transport_errors_open_breaker(self, config):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        issuer = IssuerClient(config, httpx.AsyncClient(transport=httpx.MockTransport(refuse)))

        for _ in range(issuer.circuit_breaker.failure_threshold):
            assert await issuer.health_check() == "error"

        assert issuer.circuit_breaker.is_open()
        with pytest.raises(ExternalServiceError) as exc_info:
            await issuer.userinfo("any")
        assert "circuit breaker open" in exc_info.value.message


class TestPollUntil:

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        operation = AsyncMock(side_effect=[RuntimeError("down"), RuntimeError("still down"), "up"])

        outcome = await poll_until(operation, no_wait(max_attempts=5))

        assert outcome.succeeded
        assert outcome.attempts == 3
        assert outcome.result == "up"
        assert outcome.errors == ["down", "still down"]

    @pytest.mark.asyncio
    async def test_gives_up_at_max_attempts(self):
        operation = AsyncMock(side_effect=RuntimeError("down"))

        outcome = await poll_until(operation, no_wait(max_attempts=4))

        assert not outcome.succeeded
        assert outcome.attempts == 4
        assert outcome.last_error == "down"

    @pytest.mark.asyncio
    async def test_stops_at_deadline(self):
        operation = AsyncMock(side_effect=RuntimeError("down"))
        config = RetryConfig(max_attempts=100, base_delay=5, jitter=False, backoff_strategy="fixed", timeout=1)

        outcome = await poll_until(operation, config)

        assert not outcome.succeeded
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_unlisted_exceptions_propagate(self):
        operation = AsyncMock(side_effect=KeyError("x"))

        with pytest.raises(KeyError):
            await poll_until(operation, no_wait(), exceptions=(RuntimeError,))


class TestRetryOnException:

    @pytest.mark.asyncio
    async def test_retries_then_raises(self):
        calls = []

        @retry_on_exception((ConnectionError,), no_wait(max_attempts=3))
        async def flaky():
            calls.append(1)
            raise ConnectionError("refused")

        with pytest.raises(RetryError) as exc_info:
            await flaky()

        assert len(calls) == 3
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_exception, ConnectionError)

    @pytest.mark.asyncio
    async def test_returns_on_success(self):
        results = iter([ConnectionError("refused"), "ok"])

        @retry_on_exception((ConnectionError,), no_wait())
        async def flaky():
            value = next(results)
            if isinstance(value, Exception):
                raise value
            return value

        assert await flaky() == "ok"
