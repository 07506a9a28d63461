"""
Trust Reconciler
Diffs declared devices against trusted devices and applies the difference
"""

import asyncio
import structlog
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from app.exceptions import GatewayError, ValidationError
from app.schemas.device import DeclaredDevice, TrustedDevice
from app.schemas.proxy import DeviceRecord
from app.services.gateway import DeviceGateway, device_entry_path
from app.services.group_resolver import GroupCapacityResolver
from app.services.health_table import DeviceHealthTable
from app.services.teardown import TeardownOrchestrator
from app.settings import Settings

logger = structlog.get_logger()

MISSING_CREDENTIALS = "declared device missing targetUsername or targetPassphrase"


def is_failed_state(state: str) -> bool:
    return "FAIL" in state or "ERROR" in state


@dataclass
class ReconcilePlan:
    """Outcome of classifying declared devices against trusted devices"""
    removals: List[TrustedDevice] = field(default_factory=list)
    additions: List[DeclaredDevice] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)


def normalize(declared: Iterable[DeclaredDevice]) -> Dict[str, DeclaredDevice]:
    """Key declared devices by host:port, later duplicates win"""
    return {device.key: device for device in declared}


def classify(
    desired: Dict[str, DeclaredDevice],
    existing: Dict[str, TrustedDevice],
    active_state: str,
    in_progress_states: Set[str],
) -> ReconcilePlan:
    """
    Decide which devices to remove and which to add

    A desired device that is already active or in progress is left alone
    unless fresh credentials were declared, in which case its trust is reset.
    Any other desired device needs credentials.

    Raises:
        ValidationError: If a device needing new or reset trust has no credentials
    """
    plan = ReconcilePlan()
    retained = set()

    for key, declared in desired.items():
        current = existing.get(key)
        if current is not None and (current.state == active_state or current.state in in_progress_states):
            if declared.has_credentials:
                logger.info("Resetting trust because credentials were supplied", device=key, state=current.state)
            else:
                retained.add(key)
                continue
        elif not declared.has_credentials:
            raise ValidationError(f"{MISSING_CREDENTIALS}: {key}")
        elif current is not None:
            logger.info("Resetting trust because of device state", device=key, state=current.state)

        plan.additions.append(declared)

    plan.removals = [device for key, device in existing.items() if key not in retained]
    plan.unchanged = sorted(retained)
    return plan


class TrustReconciler:
    """Lists and declares the set of devices trusted by the proxy"""

    def __init__(
        self,
        gateway: DeviceGateway,
        resolver: GroupCapacityResolver,
        teardown: TeardownOrchestrator,
        health: DeviceHealthTable,
        settings: Settings,
    ):
        self.gateway = gateway
        self.resolver = resolver
        self.teardown = teardown
        self.health = health
        self.active_state = settings.active_state
        self.in_progress_states = set(settings.in_progress_states)
        self._add_slots = asyncio.Semaphore(max(1, settings.trust_add_concurrency))
        self._cleanups: Set[asyncio.Task] = set()

    def in_progress(self, state: str) -> bool:
        return state in self.in_progress_states

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def project(self, record: DeviceRecord) -> TrustedDevice:
        """Merge a proxy device record with health facts"""
        device = TrustedDevice(
            target_uuid=record.machine_id,
            target_host=record.address,
            target_port=record.https_port,
            state=record.state,
            machine_id=record.machine_id,
            url=device_entry_path(record.group_name, record.uuid),
            is_managed=record.is_managed or self.in_progress(record.state),
        )
        if record.is_managed:
            device.target_hostname = record.hostname
            device.target_version = record.version
            device.target_rest_version = record.rest_framework_version
            device.available = False

        key = device.key
        reachable_since = self.health.reachable_since(key)
        if reachable_since:
            device.last_validated = reachable_since
            device.available = True
        failed_since = self.health.failed_since(key)
        if failed_since:
            device.failed_since = failed_since
            device.failed_reason = self.health.failure_reason(key)
            device.available = False
        return device

    async def collect(self, include_hidden: bool) -> Tuple[List[TrustedDevice], List[TrustedDevice]]:
        """
        Project every device in the managed groups

        Returns:
            Tuple of (devices, devices in a failed state)
        """
        proxy_machine_id, groups = await asyncio.gather(
            self.gateway.get_proxy_machine_id(),
            self.gateway.query_group_containers(),
        )
        group_records = await asyncio.gather(*(self.gateway.query_devices(group) for group in groups))

        devices, failed = [], []
        for records in group_records:
            for record in records:
                if record.machine_id is not None and record.machine_id == proxy_machine_id:
                    continue
                if not (record.is_managed or self.in_progress(record.state) or include_hidden):
                    continue
                device = self.project(record)
                if is_failed_state(record.state):
                    failed.append(device)
                else:
                    devices.append(device)
        return devices, failed

    async def list_devices(self, include_hidden: bool = False, target: Optional[str] = None) -> List[TrustedDevice]:
        """
        Trusted devices, or the single device matching a host or UUID

        Devices in a failed state are never returned; their removal is
        started in the background. A host trusted on several ports
        resolves to the first match in group order.
        """
        devices, failed = await self.collect(include_hidden)
        if failed:
            self.schedule_cleanup(failed)
        if target:
            match = next((d for d in devices if target in (d.target_host, d.target_uuid)), None)
            return [match] if match else []
        return devices

    def schedule_cleanup(self, devices: List[TrustedDevice]) -> None:
        for device in devices:
            logger.error("Removing device in failed state", device=device.key, machine_id=device.machine_id, state=device.state)
        task = asyncio.create_task(self.teardown.teardown(devices))
        self._cleanups.add(task)
        task.add_done_callback(self._cleanup_done)

    def _cleanup_done(self, task: asyncio.Task) -> None:
        self._cleanups.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Failed device cleanup did not complete", error=str(task.exception()))

    async def wait_for_cleanup(self) -> None:
        """Wait for background removals of failed devices"""
        if self._cleanups:
            await asyncio.gather(*self._cleanups, return_exceptions=True)

    # ------------------------------------------------------------------
    # Declaration
    # ------------------------------------------------------------------

    async def reconcile(self, declared: List[DeclaredDevice]) -> List[TrustedDevice]:
        """
        Make the trusted device set match the declared one

        All removals complete before any addition is attempted.

        Returns:
            Refreshed client listing
        """
        desired = normalize(declared)
        devices, failed = await self.collect(include_hidden=True)
        existing = {device.key: device for device in devices + failed}

        plan = classify(desired, existing, self.active_state, self.in_progress_states)
        logger.info(
            "Reconciling trusted devices",
            desired=len(desired),
            existing=len(existing),
            removals=len(plan.removals),
            additions=len(plan.additions),
            unchanged=len(plan.unchanged),
        )

        await self.teardown.teardown(plan.removals)
        await self.add_devices(plan.additions)
        return await self.list_devices()

    async def add_devices(self, devices: List[DeclaredDevice]) -> None:
        """
        Place and add devices, failing the batch if any addition failed

        Raises:
            GatewayError: After every failed addition has been logged
        """
        if not devices:
            return

        results = await asyncio.gather(*(self._add_device(d) for d in devices), return_exceptions=True)

        failures = []
        for device, result in zip(devices, results):
            if isinstance(result, GatewayError):
                logger.error("Could not add trusted device", device=device.key, error=result.message)
                failures.append(f"{device.key}: {result.message}")
            elif isinstance(result, BaseException):
                raise result

        if failures:
            raise GatewayError("could not add trusted device to proxy - " + "; ".join(failures))

        await asyncio.gather(*(self._verify_added(record) for record in results))

    async def _add_device(self, device: DeclaredDevice) -> DeviceRecord:
        async with self._add_slots:
            group_name = await self.resolver.resolve_target_container()
            record = await self.gateway.add_device(
                group_name,
                device.target_host,
                device.target_port,
                device.target_username,
                device.target_passphrase,
            )
        logger.info("Added device", device=device.key, group=group_name, uuid=record.uuid)
        return record

    async def _verify_added(self, record: DeviceRecord) -> None:
        records = await self.gateway.query_devices(record.group_name)
        if not any(r.uuid == record.uuid for r in records):
            logger.error("Could not find added device", uuid=record.uuid, group=record.group_name)
