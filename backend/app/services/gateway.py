"""
Device Gateway
HTTP client for the local proxy management API and remote device endpoints
"""

import re
import httpx
import pydantic
import structlog
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.exceptions import GatewayError, RemoteDeviceError
from app.schemas.device import device_key
from app.schemas.proxy import DeviceRecord
from app.services.health_table import DeviceHealthTable
from app.settings import Settings

logger = structlog.get_logger()

CERTIFICATES_PATH = "/mgmt/shared/device-certificates"
DEVICE_GROUPS_PATH = "/mgmt/shared/resolver/device-groups"
DEVICE_INFO_PATH = "/mgmt/shared/identified-devices/config/device-info"
ECHO_PATH = "/mgmt/shared/echo"

GROUP_DISPLAY_NAME = "Trusted Proxy Device Group"
GROUP_DESCRIPTION = "Group to establish trust for control plane request proxying"

_NON_PRINTABLE = re.compile(r"[^ -~]+")


def device_entry_path(group_name: str, uuid: str) -> str:
    """Container-scoped path of a device entry"""
    return f"{DEVICE_GROUPS_PATH}/{group_name}/devices/{uuid}"


class DeviceGateway:
    """
    Pure I/O against the proxy and remote devices, no policy.

    Local requests go through ``local_client`` (base URL of the proxy, basic
    auth). Remote requests go through ``remote_client`` using absolute
    https URLs built from the device address.
    """

    def __init__(
        self,
        local_client: httpx.AsyncClient,
        remote_client: httpx.AsyncClient,
        settings: Settings,
        health: Optional[DeviceHealthTable] = None,
    ):
        self.local = local_client
        self.remote = remote_client
        self.settings = settings
        self.health = health
        self.group_prefix = settings.device_group_prefix

    @classmethod
    def from_settings(cls, settings: Settings, health: Optional[DeviceHealthTable] = None) -> "DeviceGateway":
        """Build a gateway with clients configured from settings"""
        cert = None
        if settings.remote_client_cert:
            cert = (settings.remote_client_cert, settings.remote_client_key) \
                if settings.remote_client_key else settings.remote_client_cert

        local_client = httpx.AsyncClient(
            base_url=settings.proxy_base_url,
            auth=(settings.proxy_username, settings.proxy_password),
            timeout=settings.local_request_timeout,
        )
        remote_client = httpx.AsyncClient(
            verify=settings.remote_verify_tls,
            cert=cert,
            timeout=settings.remote_request_timeout,
        )
        return cls(local_client, remote_client, settings, health)

    async def aclose(self):
        await self.local.aclose()
        await self.remote.aclose()

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _body(response: httpx.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        return response.json()

    async def _local_request(self, method: str, path: str, action: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.local.request(method, path, **kwargs)
            response.raise_for_status()
            return self._body(response)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error {action}", path=path, error=str(e))
            raise GatewayError(f"Error {action}: {e}", detail=str(e)) from e

    def _remote_url(self, host: str, port: int, path: str) -> str:
        return f"https://{host}:{port}{path}"

    # ------------------------------------------------------------------
    # Proxy identity
    # ------------------------------------------------------------------

    async def get_proxy_machine_id(self) -> str:
        """
        Resolve the proxy's own machine identity

        Falls back to the local identity file when the management API
        does not report one.

        Returns:
            Machine identity string

        Raises:
            GatewayError: If neither source yields an identity
        """
        body = await self._local_request("GET", DEVICE_INFO_PATH, "getting machineId on the proxy")
        machine_id = body.get("machineId")
        if machine_id:
            return machine_id

        id_file = Path(self.settings.machine_id_path)
        if id_file.exists():
            machine_id = _NON_PRINTABLE.sub("", id_file.read_text(encoding="utf-8"))
            if machine_id:
                return machine_id

        logger.error("Can not resolve proxy machineId", path=str(id_file))
        raise GatewayError("can not resolve proxy machineId")

    # ------------------------------------------------------------------
    # Device groups
    # ------------------------------------------------------------------

    async def query_group_containers(self) -> List[str]:
        """Names of the device groups carrying the managed prefix"""
        body = await self._local_request("GET", DEVICE_GROUPS_PATH, "querying device groups")
        return [
            group["groupName"]
            for group in body.get("items", [])
            if group.get("groupName", "").startswith(self.group_prefix)
        ]

    async def create_group_container(self, name: str) -> str:
        """
        Create a named device group on the proxy

        Args:
            name: Group name

        Returns:
            Name of the created group
        """
        logger.info("Creating proxy device group", group=name)
        body = await self._local_request(
            "POST",
            DEVICE_GROUPS_PATH,
            "creating device group",
            json={
                "groupName": name,
                "display": GROUP_DISPLAY_NAME,
                "description": GROUP_DESCRIPTION,
            },
        )
        return body.get("groupName", name)

    async def query_devices(self, group_name: str) -> List[DeviceRecord]:
        """
        Raw device records inside one device group

        Items without a usable address or port are logged and skipped.
        """
        body = await self._local_request(
            "GET", f"{DEVICE_GROUPS_PATH}/{group_name}/devices", "querying devices"
        )
        records = []
        for item in body.get("items", []):
            try:
                records.append(DeviceRecord.model_validate(item))
            except pydantic.ValidationError as e:
                logger.warning(
                    "Skipping unparsable device record",
                    group=group_name,
                    uuid=item.get("uuid") if isinstance(item, dict) else None,
                    error=str(e),
                )
        return records

    async def add_device(
        self, group_name: str, host: str, port: int, username: str, passphrase: str
    ) -> DeviceRecord:
        """
        Add a device to a device group, starting discovery on the proxy

        The returned record is not in a terminal state yet.
        """
        body = await self._local_request(
            "POST",
            f"{DEVICE_GROUPS_PATH}/{group_name}/devices",
            "adding device",
            json={
                "userName": username,
                "password": passphrase,
                "address": host,
                "httpsPort": port,
            },
        )
        logger.info("Added device to proxy device group", device=device_key(host, port), group=group_name)
        body.setdefault("address", host)
        body.setdefault("httpsPort", port)
        body.setdefault("groupName", group_name)
        try:
            return DeviceRecord.model_validate(body)
        except pydantic.ValidationError as e:
            raise GatewayError(f"Error adding device: unexpected response from proxy: {e}", detail=str(e)) from e

    async def remove_device_entry(self, entry_url: str) -> None:
        """
        Delete one device entry by its container-scoped path

        An entry that is already gone counts as removed.
        """
        try:
            response = await self.local.delete(entry_url)
            if response.status_code == 404:
                logger.info("Device entry already removed", url=entry_url)
                return
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Error removing device from device group", url=entry_url, error=str(e))
            raise GatewayError(f"Error removing device from device group: {e}", detail=str(e)) from e

    # ------------------------------------------------------------------
    # Proxy certificates
    # ------------------------------------------------------------------

    async def query_proxy_certificates(self) -> List[Dict[str, Any]]:
        body = await self._local_request("GET", CERTIFICATES_PATH, "querying certificates from proxy")
        return body.get("items", [])

    async def delete_proxy_certificate(self, certificate_id: str) -> None:
        await self._local_request(
            "DELETE", f"{CERTIFICATES_PATH}/{certificate_id}", "deleting certificate on proxy"
        )

    # ------------------------------------------------------------------
    # Remote devices
    # ------------------------------------------------------------------

    async def query_remote_certificates(
        self, host: str, port: int, soft_fail: bool = True
    ) -> List[Dict[str, Any]]:
        """
        Certificates trusted by a remote device

        Args:
            host: Remote device address
            port: Remote device HTTPS port
            soft_fail: Return an empty list instead of raising on failure

        Raises:
            RemoteDeviceError: On failure when soft_fail is False
        """
        try:
            response = await self.remote.get(self._remote_url(host, port, CERTIFICATES_PATH))
            response.raise_for_status()
            return self._body(response).get("items", [])
        except (httpx.HTTPError, ValueError) as e:
            if not soft_fail:
                raise RemoteDeviceError(f"Error querying certificates on {device_key(host, port)}: {e}", detail=str(e)) from e
            logger.warning(
                "Error querying certificates on the device, assuming offline or untrusted",
                device=device_key(host, port),
                error=str(e),
            )
            return []

    async def delete_remote_certificate(
        self, host: str, port: int, certificate_id: str, soft_fail: bool = True
    ) -> None:
        """Delete a certificate on a remote device; see query_remote_certificates for soft_fail"""
        url = self._remote_url(host, port, f"{CERTIFICATES_PATH}/{certificate_id}")
        try:
            response = await self.remote.delete(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            if not soft_fail:
                raise RemoteDeviceError(f"Error deleting certificate on {device_key(host, port)}: {e}", detail=str(e)) from e
            logger.warning(
                "Error deleting certificate from device, assuming offline or untrusted",
                device=device_key(host, port),
                certificate_id=certificate_id,
                error=str(e),
            )

    async def ping_remote(self, host: str, port: int) -> bool:
        """
        Check that a remote device still answers with the proxy's identity

        Failure reasons are recorded in the health table.
        """
        key = device_key(host, port)
        try:
            response = await self.remote.get(self._remote_url(host, port, ECHO_PATH))
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            reason = str(e) or type(e).__name__
            if self.health is not None:
                self.health.record_failure_reason(key, reason)
            logger.error("Error validating trust", device=key, error=reason)
            return False
