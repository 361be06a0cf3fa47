# dashboard_api.py
from __future__ import annotations

from fastapi import APIRouter, HTTPException, UploadFile, File, Query
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from typing import Any, Dict, List
from datetime import datetime, timezone
import ipaddress
import logging

import config
from dashboard import DashboardController
from device_client import (
    ConfigUpdateError,
    DeviceServerError,
    InvalidDeviceURLError,
    InvalidOtaFilenameError,
    SettingsEncodingError,
    StatisticsFormatError,
    to_chart_series,
)
from models import OtaUpdateType, SystemSettings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

# Single owner of the live device list; app.py starts/stops its timer.
controller = DashboardController()


class SettingsUpdate(BaseModel):
    settings: Dict[str, Any]


class IpCreate(BaseModel):
    ip: str = Field(..., description="IPv4 address of a device")


class IpListReplace(BaseModel):
    ips: List[str]


def _validate_ip(ip: str) -> str:
    try:
        return str(ipaddress.IPv4Address(ip.strip()))
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Invalid IP: {ip}") from e


def _config_error_status(e: ConfigUpdateError) -> int:
    if isinstance(e, (InvalidDeviceURLError, SettingsEncodingError, InvalidOtaFilenameError)):
        return 400
    return 502


def _config_error_detail(e: ConfigUpdateError) -> Any:
    if isinstance(e, DeviceServerError):
        return {"error": str(e), "device_status": e.status_code, "device_message": e.message}
    return str(e)


@router.get("/devices")
def api_list_devices():
    return controller.snapshot().to_dict()


@router.post("/refresh")
def api_refresh():
    """Run one scan -> merge -> sort round now (waits for any round already running)."""
    snap = controller.refresh()
    return snap.to_dict()


@router.post("/devices/{ip}/refresh")
def api_refresh_device(ip: str):
    ip = _validate_ip(ip)
    device = controller.refresh_device(ip)
    if device is None:
        raise HTTPException(status_code=404, detail=f"Device {ip} not in list or not answering")
    return {"device": device.model_dump()}


@router.get("/devices/{ip}/asic")
def api_device_asic(ip: str):
    ip = _validate_ip(ip)
    info = controller.client.fetch_asic_info(ip)
    if info is None:
        raise HTTPException(status_code=502, detail=f"No ASIC info from {ip}")
    return info.model_dump()


@router.get("/devices/{ip}/statistics")
def api_device_statistics(ip: str):
    ip = _validate_ip(ip)
    fetched_at = datetime.now(timezone.utc)
    stats = controller.client.fetch_statistics(ip)
    if stats is None:
        raise HTTPException(status_code=502, detail=f"Failed to load statistics from {ip}")
    try:
        series = to_chart_series(stats, fetched_at)
    except StatisticsFormatError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return series.model_dump(mode="json")


@router.post("/devices/{ip}/restart")
def api_restart_device(ip: str):
    ip = _validate_ip(ip)
    if not controller.restart_device(ip):
        raise HTTPException(status_code=502, detail=f"Failed to send restart to {ip}")
    return {"status": "ok"}


@router.patch("/devices/{ip}/settings")
def api_patch_device_settings(ip: str, payload: SystemSettings):
    ip = _validate_ip(ip)
    try:
        controller.update_device_settings(ip, payload)
    except ConfigUpdateError as e:
        logger.warning("Settings update for %s failed: %s", ip, e)
        raise HTTPException(status_code=_config_error_status(e), detail=_config_error_detail(e))
    return {"status": "ok", "applied": payload.to_payload()}


@router.post("/devices/{ip}/ota")
async def api_ota_upload(
    ip: str,
    kind: OtaUpdateType = Query(OtaUpdateType.FIRMWARE),
    file: UploadFile = File(...),
):
    ip = _validate_ip(ip)
    filename = file.filename or ""
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty upload")
    try:
        # the upload can take a while; keep it off the event loop
        await run_in_threadpool(controller.client.upload_ota, ip, filename, content, kind)
    except ConfigUpdateError as e:
        logger.warning("OTA %s upload to %s failed: %s", kind.value, ip, e)
        raise HTTPException(status_code=_config_error_status(e), detail=_config_error_detail(e))
    return {"status": "ok", "kind": kind.value, "bytes": len(content)}


@router.get("/settings")
def api_get_settings():
    return {"settings": config.get_settings()}


@router.post("/settings")
def api_update_settings(payload: SettingsUpdate):
    try:
        merged = config.update_settings(payload.settings or {})
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    controller.apply_settings()
    return {"status": "ok", "settings": merged}


@router.get("/ips")
def api_list_ips():
    return {"ips": controller.list_ips()}


@router.post("/ips")
def api_add_ip(payload: IpCreate):
    ip = _validate_ip(payload.ip)
    if not controller.add_ip(ip):
        raise HTTPException(status_code=409, detail="IP already in list")
    return {"status": "ok", "ip": ip}


@router.put("/ips")
def api_replace_ips(payload: IpListReplace):
    ips = [_validate_ip(ip) for ip in payload.ips]
    return {"status": "ok", "ips": controller.replace_ips(ips)}


@router.delete("/ips/{ip}")
def api_remove_ip(ip: str):
    ip = _validate_ip(ip)
    if not controller.remove_ip(ip):
        raise HTTPException(status_code=404, detail="IP not in list")
    return {"status": "deleted", "ip": ip}
