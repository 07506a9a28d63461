"""
Proxy Schemas
Records read from the proxy device-group API
"""

from pydantic import BaseModel, Field
from typing import Optional


class DeviceRecord(BaseModel):
    """A device entry inside a proxy device group"""
    machine_id: Optional[str] = Field(None, alias="machineId")
    address: str
    https_port: int = Field(443, alias="httpsPort")
    state: str = ""
    group_name: Optional[str] = Field(None, alias="groupName")
    uuid: Optional[str] = None

    # Present only on managed device entries
    mcp_device_name: Optional[str] = Field(None, alias="mcpDeviceName")
    hostname: Optional[str] = None
    version: Optional[str] = None
    rest_framework_version: Optional[str] = Field(None, alias="restFrameworkVersion")

    class Config:
        populate_by_name = True
        extra = "ignore"

    @property
    def is_managed(self) -> bool:
        return self.mcp_device_name is not None
