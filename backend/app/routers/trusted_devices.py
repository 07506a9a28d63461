"""
Trusted Devices API Router
Endpoints for listing and declaring trusted devices
"""

import structlog
from fastapi import APIRouter, Body, Depends
from typing import Optional

from app.dependencies import get_journal, get_reconciler
from app.exceptions import NotFoundError, TrustError, ValidationError
from app.schemas.device import DeviceDeclaration, TrustedDeviceList
from app.services import JobJournal, TrustReconciler

logger = structlog.get_logger()

router = APIRouter()


async def _list(reconciler: TrustReconciler, target: Optional[str]) -> dict:
    devices = await reconciler.list_devices(include_hidden=False, target=target)
    if target and not devices:
        raise NotFoundError(f"device {target} not found")
    return {"devices": devices}


@router.get("", response_model=TrustedDeviceList, response_model_exclude_none=True)
async def list_trusted_devices(
    targetHost: Optional[str] = None,
    targetUUID: Optional[str] = None,
    reconciler: TrustReconciler = Depends(get_reconciler),
):
    """List trusted devices, optionally a single one by host or UUID"""
    return await _list(reconciler, targetHost or targetUUID)


@router.get("/{target}", response_model=TrustedDeviceList, response_model_exclude_none=True)
async def get_trusted_device(target: str, reconciler: TrustReconciler = Depends(get_reconciler)):
    """Get a trusted device by host or UUID"""
    return await _list(reconciler, target)


@router.post("", response_model=TrustedDeviceList, response_model_exclude_none=True)
async def declare_trusted_devices(
    declaration: Optional[DeviceDeclaration] = Body(None),
    reconciler: TrustReconciler = Depends(get_reconciler),
    journal: JobJournal = Depends(get_journal),
):
    """Declare the complete set of devices the proxy should trust"""
    if declaration is None or declaration.devices is None:
        logger.error("Trusted devices declaration failed: declaration missing")
        raise ValidationError("declaration missing")

    job_id = await journal.start("declare", [device.key for device in declaration.devices])
    try:
        devices = await reconciler.reconcile(declaration.devices)
    except TrustError as e:
        logger.error("Trusted devices declaration failed", error=e.message)
        await journal.finish(job_id, "failed", error=e.message)
        raise

    await journal.finish(job_id, "success", result={"devices": [d.key for d in devices]})
    return {"devices": devices}
