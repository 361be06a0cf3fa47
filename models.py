# models.py
"""Wire models for the AxeOS device API (/api/system/*).

Field names mirror the firmware's JSON keys. Firmware builds add, drop and
retype fields freely, so every read model decodes permissively: unknown keys
are ignored and a field with an unexpected type decodes as None instead of
failing the whole record.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


class SortKey(str, Enum):
    HOSTNAME = "hostname"
    HASHRATE = "hashrate"
    POWER = "power"
    BEST_SESSION_DIFF = "best_session_diff"
    BEST_DIFF = "best_diff"
    UPTIME = "uptime"
    ACCEPTED_SHARES = "accepted_shares"
    REJECTED_SHARES = "rejected_shares"
    TEMPERATURE = "temperature"

    @classmethod
    def parse(cls, value: Any) -> "SortKey":
        try:
            return cls(value)
        except ValueError:
            return cls.HOSTNAME


class SortDirection(str, Enum):
    ASCENDING = "ascending"
    DESCENDING = "descending"

    @classmethod
    def parse(cls, value: Any) -> "SortDirection":
        try:
            return cls(value)
        except ValueError:
            return cls.ASCENDING


class ScanMode(str, Enum):
    IP_LIST = "ip_list"
    SUBNET_SCAN = "subnet_scan"


class OtaUpdateType(str, Enum):
    FIRMWARE = "firmware"
    WWW = "www"

    @property
    def endpoint(self) -> str:
        if self is OtaUpdateType.FIRMWARE:
            return "/api/system/OTA"
        return "/api/system/OTAWWW"

    def is_valid_filename(self, filename: str) -> bool:
        name = (filename or "").strip().lower()
        if self is OtaUpdateType.FIRMWARE:
            return name.endswith(".bin")
        return name == "www.bin"


def _flexible_bool(value: Any) -> Optional[bool]:
    # Firmware sends either 0/1 or true/false for the same logical field.
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("1", "true"):
            return True
        if v in ("0", "false"):
            return False
    return None


class _PermissiveModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("*", mode="wrap")
    @classmethod
    def _absent_on_mismatch(cls, value: Any, handler: Any) -> Any:
        try:
            return handler(value)
        except ValidationError:
            return None


class RejectedReason(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    message: str
    count: int


class Device(_PermissiveModel):
    """One miner as reported by /api/system/info, keyed by the IP it was reached on."""

    ip: str = "0.0.0.0"
    hostname: Optional[str] = None

    # power / electrical
    power: Optional[float] = None
    voltage: Optional[float] = None
    current: Optional[float] = None
    maxPower: Optional[float] = None
    minPower: Optional[float] = None
    nominalVoltage: Optional[float] = None
    maxVoltage: Optional[float] = None
    minVoltage: Optional[float] = None

    # thermal
    temp: Optional[float] = None
    vrTemp: Optional[float] = None
    temptarget: Optional[int] = None
    overheat_mode: Optional[int] = None
    overheat_temp: Optional[int] = None
    autofanspeed: Optional[int] = None
    fanspeed: Optional[int] = None
    fanrpm: Optional[int] = None
    invertfanpolarity: Optional[int] = None
    autofanpolarity: Optional[int] = None
    pidTargetTemp: Optional[int] = None
    pidP: Optional[float] = None
    pidI: Optional[float] = None
    pidD: Optional[float] = None

    # hashing
    hashRate: Optional[float] = None
    hashRate_10m: Optional[float] = None
    hashRate_1h: Optional[float] = None
    hashRate_1d: Optional[float] = None
    hashRateTimestamp: Optional[float] = None
    bestDiff: Optional[str] = None
    bestSessionDiff: Optional[str] = None
    stratumDiff: Optional[int] = None
    sharesAccepted: Optional[int] = None
    sharesRejected: Optional[int] = None
    sharesRejectedReasons: Optional[List[RejectedReason]] = None
    uptimeSeconds: Optional[int] = None
    jobInterval: Optional[int] = None

    # ASIC
    ASICModel: Optional[str] = None
    asicCount: Optional[int] = None
    smallCoreCount: Optional[int] = None
    coreVoltage: Optional[int] = None
    coreVoltageActual: Optional[int] = None
    defaultCoreVoltage: Optional[int] = None
    frequency: Optional[int] = None
    defaultFrequency: Optional[int] = None
    overclockEnabled: Optional[int] = None

    # pool
    stratumURL: Optional[str] = None
    stratumPort: Optional[int] = None
    stratumUser: Optional[str] = None
    fallbackStratumURL: Optional[str] = None
    fallbackStratumPort: Optional[int] = None
    fallbackStratumUser: Optional[str] = None
    isUsingFallbackStratum: Optional[bool] = None
    isStratumConnected: Optional[bool] = None

    # firmware / board / network
    version: Optional[str] = None
    idfVersion: Optional[str] = None
    boardVersion: Optional[str] = None
    deviceModel: Optional[str] = None
    runningPartition: Optional[str] = None
    lastResetReason: Optional[str] = None
    isPSRAMAvailable: Optional[int] = None
    freeHeap: Optional[int] = None
    ssid: Optional[str] = None
    macAddr: Optional[str] = None
    hostip: Optional[str] = None
    wifiStatus: Optional[str] = None
    wifiRSSI: Optional[int] = None
    apEnabled: Optional[int] = None

    # display / stats
    flipscreen: Optional[int] = None
    invertscreen: Optional[int] = None
    displayTimeout: Optional[int] = None
    autoscreenoff: Optional[int] = None
    statsLimit: Optional[int] = None
    statsDuration: Optional[int] = None

    # NerdQaxe
    nerdqaxe_version: Optional[str] = None
    autoTune: Optional[bool] = None
    powerTune: Optional[int] = None

    @field_validator("isUsingFallbackStratum", "isStratumConnected", "autoTune", mode="before")
    @classmethod
    def _parse_flexible_bool(cls, value: Any) -> Optional[bool]:
        return _flexible_bool(value)

    @field_validator("bestDiff", "bestSessionDiff", mode="before")
    @classmethod
    def _difficulty_as_text(cls, value: Any) -> Any:
        # newer firmware reports raw numbers instead of "12.5K"-style strings
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            return str(int(value)) if value.is_integer() else str(value)
        return value

    @property
    def formatted_uptime(self) -> str:
        total = self.uptimeSeconds
        if total is None or total < 0:
            return "N/A"
        days = total // 86400
        hours = (total % 86400) // 3600
        minutes = (total % 3600) // 60
        return f"{days}d {hours}h {minutes}m"

    @property
    def hashrate_ghs(self) -> Optional[float]:
        if self.hashRate is None:
            return None
        return self.hashRate / 1000.0


class AsicInfo(_PermissiveModel):
    ASICModel: Optional[str] = None
    boardFamily: Optional[str] = None
    defaultFrequency: Optional[int] = None
    frequencyOptions: Optional[List[int]] = None
    defaultVoltage: Optional[int] = None
    voltageOptions: Optional[List[int]] = None


class DeviceStatistics(_PermissiveModel):
    """Raw /api/system/statistics payload; timestamps are ms since device boot."""

    currentTimestamp: Optional[float] = None
    labels: Optional[List[str]] = None
    statistics: Optional[List[List[float]]] = None


class ChartPoint(BaseModel):
    date: datetime
    value: float


class ChartSeries(BaseModel):
    hashrate: List[ChartPoint] = []
    temperature: List[ChartPoint] = []


class SystemSettings(BaseModel):
    """PATCH /api/system body. Only fields that are set get sent."""

    model_config = ConfigDict(extra="forbid")

    hostname: Optional[str] = None

    stratumURL: Optional[str] = None
    stratumPort: Optional[int] = None
    stratumUser: Optional[str] = None
    stratumPassword: Optional[str] = None

    fallbackStratumURL: Optional[str] = None
    fallbackStratumPort: Optional[int] = None
    fallbackStratumUser: Optional[str] = None
    fallbackStratumPassword: Optional[str] = None

    autofanspeed: Optional[bool] = None
    fanspeed: Optional[int] = None
    temptarget: Optional[int] = None
    overheat_mode: Optional[int] = None

    frequency: Optional[int] = None
    coreVoltage: Optional[int] = None

    statsLimit: Optional[int] = None

    autoTune: Optional[bool] = None
    powerTune: Optional[int] = None

    def to_payload(self) -> dict:
        return self.model_dump(exclude_none=True)
