"""
Signing-key cache for the upstream issuer.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

from jose import jwk as jose_jwk
from jose.exceptions import JOSEError
from pydantic import BaseModel, ConfigDict

from shared.errors import KeySetUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..idp.client import IssuerClient

# Algorithm assumed for a published key that does not name one
DEFAULT_ALGORITHMS = {"RSA": "RS256", "EC": "ES256"}


class KeySetEntry(BaseModel):
    """One published signing key."""

    model_config = ConfigDict(frozen=True)

    kid: str
    alg: Optional[str] = None
    jwk: Dict[str, Any]


class KeySetCache:
    """kid -> KeySetEntry map, refreshed lazily when a token names an unknown kid.

    A refresh builds a new map and swaps the reference; readers never see a
    half-updated map. Concurrent misses share one fetch: a caller that waited
    on the lock while another caller refreshed reuses that result.
    """

    def __init__(self, issuer: IssuerClient, metrics: Optional[MetricsCollector] = None):
        self._issuer = issuer
        self.metrics = metrics
        self.logger = get_logger("gatekeeper.jwks")

        self._keys: Dict[str, KeySetEntry] = {}
        self._generation = 0
        self._last_refresh: float = 0.0
        self._lock = asyncio.Lock()

    async def get(self, kid: str) -> Optional[KeySetEntry]:
        """Return the entry for ``kid``, refreshing at most once on a miss.

        Raises KeySetUnavailableError when that refresh fails.
        """
        entry = self._keys.get(kid)
        if entry is not None:
            return entry

        seen_generation = self._generation
        async with self._lock:
            if self._generation == seen_generation:
                await self._refresh_locked()

        entry = self._keys.get(kid)
        if entry is None:
            self.logger.warning("Signing key not found after refresh", kid=kid)
        return entry

    async def refresh(self) -> int:
        """Force a refresh; returns the number of usable keys."""
        async with self._lock:
            await self._refresh_locked()
        return len(self._keys)

    async def warmup(self) -> bool:
        """Best-effort initial load."""
        try:
            count = await self.refresh()
        except KeySetUnavailableError as exc:
            self.logger.warning("JWKS warmup failed", error=exc.message, details=exc.details)
            return False
        self.logger.info("JWKS warmed up", keys_count=count)
        return True

    def clear(self) -> None:
        self._keys = {}
        self._last_refresh = 0.0
        self.logger.info("JWKS cache cleared")

    def snapshot(self) -> Dict[str, Any]:
        return {
            "kids": sorted(self._keys),
            "generation": self._generation,
            "last_refresh": self._last_refresh or None,
        }

    async def _refresh_locked(self) -> None:
        started = time.time()
        try:
            raw_keys = await self._issuer.fetch_key_set()
        except KeySetUnavailableError:
            self._record_refresh("error", started)
            self.logger.error("Failed to fetch JWKS", url=self._issuer.config.jwks_url)
            raise

        self._keys = self._parse(raw_keys)
        self._generation += 1
        self._last_refresh = time.time()
        self._record_refresh("success", started)
        self.logger.info("JWKS refreshed", keys_count=len(self._keys), generation=self._generation)

    def _parse(self, raw_keys: List[Any]) -> Dict[str, KeySetEntry]:
        entries: Dict[str, KeySetEntry] = {}
        for jwk in raw_keys:
            if not isinstance(jwk, dict):
                continue
            kid = jwk.get("kid")
            if not isinstance(kid, str) or not kid:
                continue
            if jwk.get("use") == "enc":
                continue
            alg = jwk.get("alg")
            alg = alg if isinstance(alg, str) else None
            if not self._usable(jwk, alg):
                continue
            entries[kid] = KeySetEntry(kid=kid, alg=alg, jwk=jwk)
        return entries

    def _usable(self, jwk: Dict[str, Any], alg: Optional[str]) -> bool:
        """Whether jose can build a public key from the published material."""
        algorithm = alg or DEFAULT_ALGORITHMS.get(jwk.get("kty"))
        if algorithm is None:
            self.logger.warning("Skipping key with unsupported type", kid=jwk.get("kid"), kty=jwk.get("kty"))
            return False
        try:
            jose_jwk.construct(jwk, algorithm)
        except (JOSEError, TypeError, ValueError) as exc:
            self.logger.warning("Skipping malformed key", kid=jwk.get("kid"), error=str(exc))
            return False
        return True

    def _record_refresh(self, status: str, started: float) -> None:
        if self.metrics is None:
            return
        self.metrics.increment_counter("jwks_refresh_total", status=status)
        self.metrics.observe_histogram("jwks_refresh_duration_seconds", time.time() - started)
