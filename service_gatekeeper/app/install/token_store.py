"""
Redis-backed store for single-use install tokens.
"""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError, ResponseError

from shared.errors import (
    DuplicateConsumptionError,
    InvalidOrExpiredInstallTokenError,
    StoreUnavailableError,
    ValidationError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import trace_function

from .models import CreateInstallTokenRequest, CreateInstallTokenResponse, InstallTokenRecord

TOKEN_PREFIX = "install_token:"
CONSUMED_PREFIX = "install_token_consumed:"

# GET+DEL in one step for servers without GETDEL (Redis < 6.2)
GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def create_redis(redis_url: str, timeout_seconds: float = 5.0) -> redis.Redis:
    """Build the shared async Redis client. No connection is made until first use."""
    return redis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=timeout_seconds,
        socket_timeout=timeout_seconds,
        retry_on_timeout=True,
        health_check_interval=30,
    )


def _fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class InstallTokenStore:
    """Issues and atomically consumes install tokens."""

    def __init__(self, redis_client: redis.Redis, metrics: Optional[MetricsCollector] = None,
                 max_ttl_hours: int = 720):
        self.redis = redis_client
        self.metrics = metrics
        self.max_ttl_hours = max_ttl_hours
        self.logger = get_logger("gatekeeper.install.tokens")
        self._getdel_script = None

    async def issue(self, record: InstallTokenRecord, ttl_seconds: int) -> str:
        """Store ``record`` under a fresh 256-bit token.

        A non-positive TTL writes nothing, so the returned token can never
        be consumed.
        """
        token = secrets.token_urlsafe(32)
        if ttl_seconds <= 0:
            self.logger.warning("Install token issued with zero TTL; not stored",
                                service_name=record.service_name)
            return token

        try:
            await self.redis.set(f"{TOKEN_PREFIX}{token}", record.model_dump_json(), ex=ttl_seconds)
        except RedisError as exc:
            self.logger.error("Failed to store install token", error=str(exc))
            raise StoreUnavailableError() from exc

        self._count("install_tokens_issued_total", service_type=record.service_type.value)
        self.logger.info(
            "Install token issued",
            service_name=record.service_name,
            service_type=record.service_type.value,
            created_by=record.created_by,
            ttl_seconds=ttl_seconds,
        )
        return token

    async def create_install_token(self, request: CreateInstallTokenRequest,
                                   created_by: str) -> CreateInstallTokenResponse:
        if request.expires_in_hours > self.max_ttl_hours:
            raise ValidationError(
                "expires_in_hours exceeds the allowed maximum",
                details={"max_hours": self.max_ttl_hours},
            )

        created_at = datetime.now(timezone.utc)
        expires_at = created_at + timedelta(hours=request.expires_in_hours)
        record = InstallTokenRecord(
            service_name=request.service_name,
            service_type=request.service_type,
            controller_name=request.controller_name,
            created_by=created_by,
            created_at=created_at,
            expires_at=expires_at,
        )
        token = await self.issue(record, request.expires_in_hours * 3600)
        return CreateInstallTokenResponse(install_token=token, expires_at=expires_at)

    @trace_function("install_token.consume")
    async def consume(self, token: str) -> InstallTokenRecord:
        """Remove ``token`` and return its record. At most one caller ever succeeds."""
        key = f"{TOKEN_PREFIX}{token}"
        try:
            raw = await self._take(key)
        except RedisError as exc:
            self.logger.error("Failed to consume install token", error=str(exc))
            raise StoreUnavailableError() from exc

        if raw is None:
            self._count("install_token_consumptions_total", outcome="invalid")
            raise InvalidOrExpiredInstallTokenError()

        try:
            record = InstallTokenRecord.model_validate_json(raw)
        except PydanticValidationError:
            self.logger.error("Stored install token record is unreadable")
            self._count("install_token_consumptions_total", outcome="invalid")
            raise InvalidOrExpiredInstallTokenError()

        now = datetime.now(timezone.utc)
        if record.expires_at <= now:
            self._count("install_token_consumptions_total", outcome="expired")
            raise InvalidOrExpiredInstallTokenError()

        await self._trip(token, record, now)
        self._count("install_token_consumptions_total", outcome="consumed")
        self.logger.info("Install token consumed", service_name=record.service_name,
                         service_type=record.service_type.value)
        return record

    async def _take(self, key: str) -> Optional[str]:
        if self._getdel_script is None:
            try:
                return await self.redis.getdel(key)
            except ResponseError as exc:
                if "unknown command" not in str(exc).lower():
                    raise
                self.logger.warning("GETDEL not supported by server, using script")
                self._getdel_script = self.redis.register_script(GETDEL_SCRIPT)
        return await self._getdel_script(keys=[key])

    async def _trip(self, token: str, record: InstallTokenRecord, now: datetime) -> None:
        """Mark the token as consumed; finding the mark already set means a second consumer got through."""
        ttl = max(1, int((record.expires_at - now).total_seconds()) + 1)
        try:
            first = await self.redis.set(f"{CONSUMED_PREFIX}{_fingerprint(token)}", "1", nx=True, ex=ttl)
        except RedisError as exc:
            self.logger.error("Failed to mark install token consumed", error=str(exc))
            raise StoreUnavailableError() from exc

        if not first:
            self._count("install_token_consumptions_total", outcome="duplicate")
            self.logger.error("Install token consumed twice", service_name=record.service_name)
            raise DuplicateConsumptionError()

    def _count(self, metric: str, **labels) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(metric, **labels)
