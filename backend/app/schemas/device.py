"""
Device Schemas
Pydantic models for the trusted devices API
"""

from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


def device_key(host: str, port: int) -> str:
    """Natural key of a trusted device"""
    return f"{host}:{port}"


class DeclaredDevice(BaseModel):
    """Desired trust target supplied by a caller"""
    target_host: str = Field(alias="targetHost")
    target_port: int = Field(443, alias="targetPort")
    target_username: Optional[str] = Field(None, alias="targetUsername")
    target_passphrase: Optional[str] = Field(None, alias="targetPassphrase")
    target_uuid: Optional[str] = Field(None, alias="targetUUID")

    class Config:
        populate_by_name = True

    @property
    def key(self) -> str:
        return device_key(self.target_host, self.target_port)

    @property
    def has_credentials(self) -> bool:
        return self.target_username is not None and self.target_passphrase is not None


class DeviceDeclaration(BaseModel):
    """Body of a declaration request"""
    devices: Optional[List[DeclaredDevice]] = None


class TrustedDevice(BaseModel):
    """
    Projected view of a trusted device

    machine_id, url and is_managed are only used internally and are
    excluded from every serialization.
    """
    target_host: str = Field(alias="targetHost")
    target_port: int = Field(alias="targetPort")
    target_uuid: Optional[str] = Field(None, alias="targetUUID")
    state: str

    # Managed device attributes
    target_hostname: Optional[str] = Field(None, alias="targetHostname")
    target_version: Optional[str] = Field(None, alias="targetVersion")
    target_rest_version: Optional[str] = Field(None, alias="targetRESTVersion")

    # Health
    available: Optional[bool] = None
    last_validated: Optional[datetime] = Field(None, alias="lastValidated")
    failed_since: Optional[datetime] = Field(None, alias="failedSince")
    failed_reason: Optional[str] = Field(None, alias="failedReason")

    # Hidden
    machine_id: Optional[str] = Field(None, exclude=True)
    url: Optional[str] = Field(None, exclude=True)
    is_managed: bool = Field(False, exclude=True)

    class Config:
        populate_by_name = True

    @property
    def key(self) -> str:
        return device_key(self.target_host, self.target_port)


class TrustedDeviceList(BaseModel):
    """Schema for device listing response"""
    devices: List[TrustedDevice]
