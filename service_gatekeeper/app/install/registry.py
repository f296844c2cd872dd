"""
Registry of connected agents and controllers.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from shared.errors import ServiceNotFoundError, StoreUnavailableError
from shared.logging import bind_gatekeeper_context, get_logger
from shared.metrics import MetricsCollector
from shared.tracing import add_span_attributes, trace_function

from .certificates import certificate_fingerprint, certificate_serial, load_certificate
from .models import ConnectedServiceRecord, ServiceType
from .token_store import InstallTokenStore

SERVICES_KEY = "services"
SERVICE_PREFIX = "service:"


class RegistrationResult(BaseModel):
    service_id: uuid.UUID
    message: str
    service: ConnectedServiceRecord


class ServiceRegistry:
    """Registers services that present a valid install token and keeps their heartbeat."""

    def __init__(self, redis_client: redis.Redis, token_store: InstallTokenStore,
                 metrics: Optional[MetricsCollector] = None):
        self.redis = redis_client
        self.token_store = token_store
        self.metrics = metrics
        self.logger = get_logger("gatekeeper.install.registry")

    @trace_function("service.register")
    async def register(self, install_token: str, certificate_pem: str,
                       metadata: Optional[Dict[str, Any]] = None) -> RegistrationResult:
        # The token is spent before the certificate is looked at.
        token_record = await self.token_store.consume(install_token)
        bind_gatekeeper_context(service_name=token_record.service_name,
                                service_type=token_record.service_type.value)

        certificate = load_certificate(certificate_pem)
        now = datetime.now(timezone.utc)
        service = ConnectedServiceRecord(
            service_type=token_record.service_type,
            service_name=token_record.service_name,
            controller_name=token_record.controller_name,
            client_cert_serial=certificate_serial(certificate),
            client_cert_fingerprint=certificate_fingerprint(certificate),
            connected_at=now,
            last_seen=now,
            metadata=metadata or {},
            status="active",
        )

        if service.service_type == ServiceType.AGENT and service.controller_name:
            await self._check_controller(service.controller_name, service.service_name)

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(f"{SERVICE_PREFIX}{service.id}", service.model_dump_json())
                pipe.sadd(SERVICES_KEY, str(service.id))
                await pipe.execute()
        except RedisError as exc:
            self.logger.error("Failed to persist service", service_name=service.service_name, error=str(exc))
            raise StoreUnavailableError() from exc

        if self.metrics is not None:
            self.metrics.increment_counter("services_registered_total", service_type=service.service_type.value)
        add_span_attributes(**{"service.id": str(service.id), "service.type": service.service_type.value})
        self.logger.info(
            "Service registered",
            service_id=str(service.id),
            service_name=service.service_name,
            service_type=service.service_type.value,
            cert_serial=service.client_cert_serial,
        )

        return RegistrationResult(
            service_id=service.id,
            message=f"{service.service_type.value} '{service.service_name}' successfully registered",
            service=service,
        )

    async def heartbeat(self, certificate_serial_number: str) -> ConnectedServiceRecord:
        """Mark the service holding this certificate serial as seen now."""
        for service in await self._load_all():
            if service.client_cert_serial != certificate_serial_number:
                continue

            service.last_seen = datetime.now(timezone.utc)
            service.status = "active"
            try:
                await self.redis.set(f"{SERVICE_PREFIX}{service.id}", service.model_dump_json())
            except RedisError as exc:
                raise StoreUnavailableError() from exc

            self.logger.debug("Heartbeat recorded", service_id=str(service.id))
            return service

        raise ServiceNotFoundError(details={"client_cert_serial": certificate_serial_number})

    async def heartbeat_certificate(self, certificate_pem: str) -> ConnectedServiceRecord:
        return await self.heartbeat(certificate_serial(load_certificate(certificate_pem)))

    async def list(self, service_type: Optional[ServiceType] = None) -> List[ConnectedServiceRecord]:
        """All services, optionally of one kind, newest registration first."""
        services = await self._load_all()
        if service_type is not None:
            services = [s for s in services if s.service_type == service_type]
        services.sort(key=lambda s: s.connected_at, reverse=True)
        return services

    async def get(self, service_id: uuid.UUID) -> ConnectedServiceRecord:
        try:
            raw = await self.redis.get(f"{SERVICE_PREFIX}{service_id}")
        except RedisError as exc:
            raise StoreUnavailableError() from exc
        if raw is None:
            raise ServiceNotFoundError(details={"service_id": str(service_id)})
        return ConnectedServiceRecord.model_validate_json(raw)

    async def _load_all(self) -> List[ConnectedServiceRecord]:
        try:
            service_ids = sorted(await self.redis.smembers(SERVICES_KEY))
            if not service_ids:
                return []
            raw_records = await self.redis.mget([f"{SERVICE_PREFIX}{sid}" for sid in service_ids])
        except RedisError as exc:
            self.logger.error("Failed to load services", error=str(exc))
            raise StoreUnavailableError() from exc

        services = []
        for service_id, raw in zip(service_ids, raw_records):
            if raw is None:
                continue
            try:
                services.append(ConnectedServiceRecord.model_validate_json(raw))
            except PydanticValidationError as exc:
                self.logger.warning("Skipping unreadable service record", service_id=service_id,
                                    error=str(exc))
        return services

    async def _check_controller(self, controller_name: str, agent_name: str) -> None:
        try:
            controllers = await self.list(ServiceType.CONTROLLER)
        except StoreUnavailableError:
            self.logger.warning(
                "Could not check controller, store unavailable",
                agent=agent_name,
                controller_name=controller_name,
            )
            return
        if not any(c.service_name == controller_name for c in controllers):
            self.logger.warning(
                "Agent references a controller that is not registered",
                agent=agent_name,
                controller_name=controller_name,
            )
