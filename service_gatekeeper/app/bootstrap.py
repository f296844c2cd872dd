"""
Startup checks for the Gatekeeper: wait for the issuer, check the store,
make sure the bootstrap admin exists and warm the key cache.

None of these stop the process. The outcome is kept as a StartupReport
and summarised on /health; /diagnostics shows the detail.
"""

from datetime import datetime, timezone
from typing import List, Optional

import redis.asyncio as redis
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from shared.config import BaseConfig
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, poll_until, retry_on_exception

from .idp.client import IssuerClient
from .jwks.client import KeySetCache


class StepResult(BaseModel):
    name: str
    ok: bool
    attempts: int = 0
    detail: Optional[str] = None


class StartupReport(BaseModel):
    status: str = "pending"
    steps: List[StepResult] = Field(default_factory=list)
    completed_at: Optional[datetime] = None

    @property
    def ready(self) -> bool:
        return self.status == "ready"


class StartupCoordinator:
    """Runs the startup sequence once and records what happened."""

    def __init__(self, config: BaseConfig, issuer: IssuerClient, redis_client: redis.Redis,
                 key_cache: KeySetCache):
        self.config = config
        self.issuer = issuer
        self.redis = redis_client
        self.key_cache = key_cache
        self.logger = get_logger("gatekeeper.startup")
        self.report = StartupReport()

    async def run(self) -> StartupReport:
        steps = [
            await self._wait_for_issuer(),
            await self._check_store(),
            await self._bootstrap_admin(),
            await self._warm_key_cache(),
        ]
        status = "ready" if all(step.ok for step in steps) else "degraded"
        self.report = StartupReport(status=status, steps=steps, completed_at=datetime.now(timezone.utc))

        if status == "ready":
            self.logger.info("Startup checks passed")
        else:
            self.logger.warning(
                "Starting in degraded state",
                failed_steps=[step.name for step in steps if not step.ok],
            )
        return self.report

    def _poll_config(self, max_attempts: int, timeout: Optional[float] = None) -> RetryConfig:
        return RetryConfig(
            max_attempts=max_attempts,
            base_delay=self.config.readiness_retry_delay_seconds,
            backoff_strategy="fixed",
            jitter=False,
            timeout=timeout,
        )

    async def _wait_for_issuer(self) -> StepResult:
        delay = self.config.readiness_retry_delay_seconds
        max_wait = self.config.readiness_max_wait_seconds
        max_attempts = int(max_wait // delay) + 1 if delay > 0 else 1

        outcome = await poll_until(
            self.issuer.probe_ready,
            self._poll_config(max_attempts, timeout=max_wait),
            name="issuer_ready",
        )
        if not outcome.succeeded:
            self.logger.error("Issuer not ready", attempts=outcome.attempts, error=outcome.last_error)
        return StepResult(name="issuer", ok=outcome.succeeded, attempts=outcome.attempts,
                          detail=outcome.last_error if not outcome.succeeded else None)

    async def _check_store(self) -> StepResult:
        @retry_on_exception((RedisError,), RetryConfig(max_attempts=3, base_delay=0.5, backoff_strategy="fixed"))
        async def ping():
            return await self.redis.ping()

        try:
            await ping()
        except RetryError as exc:
            self.logger.error("Store not reachable", error=str(exc.last_exception))
            return StepResult(name="store", ok=False, attempts=exc.attempts, detail=str(exc.last_exception))
        return StepResult(name="store", ok=True, attempts=1)

    async def _bootstrap_admin(self) -> StepResult:
        username = self.config.bootstrap_admin_username
        password = self.config.bootstrap_admin_password
        if not username or not password:
            return StepResult(name="admin_bootstrap", ok=True, detail="not configured")

        async def ensure():
            return await self.issuer.ensure_admin_user(username, password)

        outcome = await poll_until(ensure, self._poll_config(self.config.bootstrap_max_attempts),
                                   name="admin_bootstrap")
        if not outcome.succeeded:
            self.logger.error("Admin bootstrap failed", username=username, error=outcome.last_error)
        return StepResult(name="admin_bootstrap", ok=outcome.succeeded, attempts=outcome.attempts,
                          detail=outcome.last_error if not outcome.succeeded else None)

    async def _warm_key_cache(self) -> StepResult:
        ok = await self.key_cache.warmup()
        return StepResult(name="key_cache", ok=ok, attempts=1,
                          detail=None if ok else "key set unavailable")
