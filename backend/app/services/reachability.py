"""
Reachability Monitor
Periodically validates trusted devices and removes ones unreachable past a grace period
"""

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Callable, List, Optional

from app.exceptions import TrustError
from app.schemas.device import TrustedDevice
from app.services.gateway import DeviceGateway
from app.services.health_table import DeviceHealthTable
from app.services.journal import JobJournal
from app.services.reconciler import TrustReconciler
from app.services.teardown import TeardownOrchestrator
from app.settings import Settings

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReachabilityMonitor:
    """
    Pings every active managed device on a fixed interval.

    Per device: Unknown -> Reachable -> Unreachable(since) -> Removed.
    The monitor is the only writer of the health table.
    """

    def __init__(
        self,
        reconciler: TrustReconciler,
        gateway: DeviceGateway,
        teardown: TeardownOrchestrator,
        health: DeviceHealthTable,
        settings: Settings,
        journal: Optional[JobJournal] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.reconciler = reconciler
        self.gateway = gateway
        self.teardown = teardown
        self.health = health
        self.journal = journal
        self.clock = clock
        self.active_state = settings.active_state
        self.interval = settings.device_query_interval / 1000
        self.grace_period_ms = settings.failed_device_removal_milliseconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Validate immediately, then on every interval"""
        if self.running:
            return
        logger.info(
            "Starting reachability monitor",
            interval_ms=int(self.interval * 1000),
            removal_grace_ms=self.grace_period_ms,
        )
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reachability monitor stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error("Reachability check failed", error=str(e), exc_info=e)
            await asyncio.sleep(self.interval)

    async def tick(self) -> None:
        """One validation pass over every active managed device"""
        try:
            devices = await self.reconciler.list_devices(include_hidden=True)
        except TrustError as e:
            logger.error("Could not validate devices", error=e.message)
            return

        candidates: List[TrustedDevice] = [
            d for d in devices if d.state == self.active_state and d.is_managed
        ]
        results = await asyncio.gather(
            *(self.validate_device(device) for device in candidates),
            return_exceptions=True,
        )
        for device, result in zip(candidates, results):
            if isinstance(result, Exception):
                logger.error("Could not validate device", device=device.key, error=str(result))

    async def validate_device(self, device: TrustedDevice) -> None:
        key = device.key
        reachable = await self.gateway.ping_remote(device.target_host, device.target_port)
        now = self.clock()

        if reachable:
            self.health.mark_reachable(key, now)
            return

        self.health.clear_reachable(key)
        failed_since = self.health.failed_since(key)
        if failed_since is None:
            self.health.mark_failed(key, now)
            logger.warning("Device became unreachable", device=key)
            return

        if self.grace_period_ms <= 0:
            return

        elapsed_ms = (now - failed_since).total_seconds() * 1000
        if elapsed_ms > self.grace_period_ms:
            logger.error(
                "Could not reach active device, removing trust",
                device=key,
                unreachable_seconds=round(elapsed_ms / 1000, 1),
            )
            await self.remove_device(device)
        else:
            logger.error(
                "Could not reach active device",
                device=key,
                seconds_until_removal=round((self.grace_period_ms - elapsed_ms) / 1000, 1),
            )

    async def remove_device(self, device: TrustedDevice) -> None:
        job_id = await self.journal.start("auto_remove", [device.key]) if self.journal else None
        try:
            await self.teardown.teardown([device])
        except TrustError as e:
            if job_id is not None:
                await self.journal.finish(job_id, "failed", error=e.message)
            raise
        self.health.forget(device.key)
        if job_id is not None:
            await self.journal.finish(job_id, "success", result={"removed": device.key})
