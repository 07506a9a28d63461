"""
Teardown Orchestrator
Removes trust: certificate cleanup followed by device entry removal
"""

import asyncio
import structlog
from typing import List

from app.exceptions import GatewayError, TeardownError
from app.schemas.device import TrustedDevice
from app.services.gateway import DeviceGateway

logger = structlog.get_logger()


def rest_major_version(version: str) -> int:
    """Major number of a REST framework version string, 0 if unparsable"""
    try:
        return int(str(version).split(".")[0])
    except (TypeError, ValueError):
        return 0


class TeardownOrchestrator:
    """Tears down trust for a batch of devices, each device independently"""

    def __init__(self, gateway: DeviceGateway, min_certificate_delete_version: int = 13):
        self.gateway = gateway
        self.min_certificate_delete_version = min_certificate_delete_version

    async def teardown(self, devices: List[TrustedDevice]) -> None:
        """
        Remove trust for every device concurrently

        Certificate cleanup is best effort. Entry removal failures are
        aggregated after every device has been processed.

        Raises:
            TeardownError: If any device entry could not be removed
        """
        if not devices:
            return

        results = await asyncio.gather(
            *(self._teardown_device(device) for device in devices),
            return_exceptions=True,
        )

        failed = []
        for device, result in zip(devices, results):
            if isinstance(result, GatewayError):
                logger.error("Could not remove trusted device", device=device.key, error=result.message)
                failed.append((device.key, result.message))
            elif isinstance(result, BaseException):
                raise result

        if failed:
            summary = "; ".join(f"{key}: {message}" for key, message in failed)
            raise TeardownError(
                f"could not remove trusted device from the proxy - {summary}",
                devices=[key for key, _ in failed],
            )

    async def _teardown_device(self, device: TrustedDevice) -> None:
        if device.is_managed:
            try:
                await self.remove_certificate_from_device(device)
            except GatewayError as e:
                logger.warning("Certificate cleanup on device failed", device=device.key, error=e.message)

        if device.machine_id:
            try:
                await self.remove_certificate_from_proxy(device.machine_id)
            except GatewayError as e:
                logger.warning("Certificate cleanup on proxy failed", device=device.key, error=e.message)

        if not device.url:
            raise GatewayError(f"device {device.key} has no device group entry")

        logger.info("Removing device from device group on proxy", device=device.key)
        await self.gateway.remove_device_entry(device.url)

    async def remove_certificate_from_device(self, device: TrustedDevice) -> None:
        """Delete the proxy's certificate from a remote device that supports it"""
        if rest_major_version(device.target_rest_version) < self.min_certificate_delete_version:
            logger.info(
                "Device can not delete certificates, leaving proxy certificate in place",
                device=device.key,
                rest_version=device.target_rest_version,
            )
            return

        machine_id = await self.gateway.get_proxy_machine_id()
        logger.info("Removing proxy certificate from device", device=device.key, machine_id=machine_id)
        certificates = await self.gateway.query_remote_certificates(device.target_host, device.target_port)
        await asyncio.gather(*(
            self.gateway.delete_remote_certificate(device.target_host, device.target_port, cert["certificateId"])
            for cert in certificates
            if cert.get("machineId") == machine_id
        ))

    async def remove_certificate_from_proxy(self, machine_id: str) -> None:
        """Delete every proxy certificate issued to a machine identity"""
        logger.info("Removing device certificate from proxy", machine_id=machine_id)
        certificates = await self.gateway.query_proxy_certificates()
        await asyncio.gather(*(
            self.gateway.delete_proxy_certificate(cert["certificateId"])
            for cert in certificates
            if cert.get("machineId") == machine_id
        ))
