"""Device listing and manual control."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.device import Device
from app.models.user import User
from app.services.auth import require_home_id, require_user
from app.services.automation_engine import publish_safely
from app.services.automation_errors import NotFoundError
from app.services.automation_stores import SqlActivityRecorder, SqlDeviceRegistry
from app.services.realtime import DEVICE_UPDATE_EVENT, Broadcaster, get_broadcaster

router = APIRouter()


def _device_to_dict(device: Device) -> dict:
    """Convert device to response dict."""
    return {
        "id": device.id,
        "name": device.name,
        "category": device.category,
        "room": device.room,
        "rated_power": device.rated_power,
        "current_power": device.current_power or 0.0,
        "status": device.snapshot()["status"],
        "is_active": bool(device.is_active),
        "mode": device.mode,
        "priority": device.priority,
        "is_essential": device.is_essential,
        "last_manual_control": device.last_manual_control.isoformat() if device.last_manual_control else None,
    }


@router.get("/")
async def list_devices(
    home_id: int = Depends(require_home_id),
    db: AsyncSession = Depends(get_db),
):
    """List the home's devices."""
    devices = await SqlDeviceRegistry(db).find(home_id)
    return [_device_to_dict(d) for d in devices]


@router.post("/{device_id}/toggle")
async def toggle_device(
    device_id: int,
    current_user: User = Depends(require_user),
    home_id: int = Depends(require_home_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Flip a device on or off by hand.

    Manual control holds off automation for the device for the manual
    override window.
    """
    registry = SqlDeviceRegistry(db)
    found = await registry.find_by_ids([device_id])
    device = found[0] if found else None
    if device is None or device.home_id != home_id:
        raise HTTPException(status_code=404, detail="Device not found")

    if device.is_active:
        device.switch_off()
    else:
        device.switch_on()
    device.last_manual_control = datetime.utcnow()

    try:
        await registry.save(device)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")

    await publish_safely(broadcaster, home_id, DEVICE_UPDATE_EVENT, device.to_update_payload())

    state = "on" if device.is_active else "off"
    await SqlActivityRecorder(db).record(
        home_id,
        current_user.id,
        "DEVICE_TOGGLE",
        f"Turned {state} {device.name}",
        {"device_id": device.id, "is_active": bool(device.is_active)},
    )

    return _device_to_dict(device)
