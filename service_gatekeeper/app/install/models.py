"""
Data contracts for install tokens and connected services.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ServiceType(str, Enum):
    CONTROLLER = "controller"
    AGENT = "agent"


class CreateInstallTokenRequest(BaseModel):
    """Admin request for a new install token."""
    service_name: str = Field(..., min_length=1, max_length=255)
    service_type: ServiceType
    controller_name: Optional[str] = Field(default=None, max_length=255)
    expires_in_hours: int = Field(default=24, ge=0, le=720)


class CreateInstallTokenResponse(BaseModel):
    install_token: str
    expires_at: datetime


class InstallTokenRecord(BaseModel):
    """What an install token stands for. The token value itself is only the store key."""
    service_name: str
    service_type: ServiceType
    controller_name: Optional[str] = None
    created_by: str
    created_at: datetime
    expires_at: datetime


class ConnectedServiceRecord(BaseModel):
    """A registered agent or controller."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    service_type: ServiceType
    service_name: str
    controller_name: Optional[str] = None
    client_cert_serial: str
    client_cert_fingerprint: str
    connected_at: datetime
    last_seen: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: str = "active"


class ServiceRegistrationRequest(BaseModel):
    install_token: str = Field(..., min_length=1)
    client_cert_pem: str = Field(..., min_length=1)
    metadata: Optional[Dict[str, Any]] = None


class ServiceRegistrationResponse(BaseModel):
    service_id: uuid.UUID
    message: str


class HeartbeatRequest(BaseModel):
    client_cert_pem: str = Field(..., min_length=1)
