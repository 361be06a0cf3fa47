# device_client.py
from __future__ import annotations

import io
import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import requests
from pydantic import ValidationError

from models import (
    AsicInfo,
    ChartPoint,
    ChartSeries,
    Device,
    DeviceStatistics,
    OtaUpdateType,
    SystemSettings,
)

logger = logging.getLogger(__name__)

INFO_ENDPOINT = "/api/system/info"
ASIC_ENDPOINT = "/api/system/asic"
STATISTICS_ENDPOINT = "/api/system/statistics"
RESTART_ENDPOINT = "/api/system/restart"
SETTINGS_ENDPOINT = "/api/system"

# Short for the liveness probe, longer for full payloads.
PROBE_TIMEOUT_S = 5.0
FETCH_TIMEOUT_S = 10.0
OTA_TIMEOUT_S = 120.0


class ConfigUpdateError(Exception):
    """Base class for failed writes to a device (settings PATCH, OTA upload)."""


class InvalidDeviceURLError(ConfigUpdateError):
    def __init__(self, ip: str):
        super().__init__(f"The device URL is invalid: {ip!r}")
        self.ip = ip


class SettingsEncodingError(ConfigUpdateError):
    def __init__(self, cause: Exception):
        super().__init__(f"Failed to encode the configuration data: {cause}")
        self.cause = cause


class RequestFailedError(ConfigUpdateError):
    def __init__(self, cause: Exception):
        super().__init__(f"The network request failed: {cause}")
        self.cause = cause


class InvalidResponseError(ConfigUpdateError):
    def __init__(self, cause: Optional[Exception] = None):
        super().__init__("Received an invalid response from the device.")
        self.cause = cause


class DeviceServerError(ConfigUpdateError):
    def __init__(self, status_code: int, message: Optional[str] = None):
        detail = f"Device returned status {status_code}."
        if message:
            detail += f" {message}"
        super().__init__(detail)
        self.status_code = status_code
        self.message = message


class OtaUpdateError(ConfigUpdateError):
    pass


class InvalidOtaFilenameError(OtaUpdateError):
    def __init__(self, filename: str, update_type: OtaUpdateType):
        super().__init__(f"The filename {filename!r} is not valid for a {update_type.value} update.")
        self.filename = filename
        self.update_type = update_type


class StatisticsFormatError(ValueError):
    pass


class _ProgressReader(io.BytesIO):
    """BytesIO that reports the fraction read so far (urllib3 reads the body in blocks)."""

    def __init__(self, payload: bytes, progress: Optional[Callable[[float], None]]):
        super().__init__(payload)
        self._total = len(payload)
        self._progress = progress

    def read(self, size: Optional[int] = -1) -> bytes:
        chunk = super().read(size)
        if self._progress and self._total:
            self._progress(min(1.0, self.tell() / self._total))
        return chunk


def _base_url(ip: str) -> str:
    raw = (ip or "").strip()
    if raw.startswith("http://") or raw.startswith("https://"):
        base = raw.rstrip("/")
    else:
        base = f"http://{raw}"
    host = base.split("://", 1)[1]
    if not host or any(c.isspace() for c in host) or "/" in host:
        raise InvalidDeviceURLError(ip)
    return base


class DeviceClient:
    """Stateless per-device operations against the AxeOS HTTP API.

    Read operations model every failure (offline, timeout, non-200, bad JSON)
    as None/False and never raise. Writes raise ConfigUpdateError subclasses.
    """

    def __init__(
        self,
        probe_timeout: float = PROBE_TIMEOUT_S,
        fetch_timeout: float = FETCH_TIMEOUT_S,
        session: Optional[requests.Session] = None,
    ):
        self.probe_timeout = probe_timeout
        self.fetch_timeout = fetch_timeout
        self._session = session
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        # Session is not thread-safe; scanner workers each get their own
        if self._session is not None:
            return self._session
        s = getattr(self._local, "session", None)
        if s is None:
            s = requests.Session()
            self._local.session = s
        return s

    # --- reads ---

    def is_online(self, ip: str) -> bool:
        try:
            r = self.session.get(f"{_base_url(ip)}{INFO_ENDPOINT}", timeout=self.probe_timeout)
        except (requests.exceptions.RequestException, InvalidDeviceURLError) as e:
            logger.debug("probe %s failed: %s", ip, e)
            return False
        return r.status_code == 200

    def _get_json(self, ip: str, path: str) -> Optional[Dict[str, Any]]:
        try:
            r = self.session.get(f"{_base_url(ip)}{path}", timeout=self.fetch_timeout)
        except (requests.exceptions.RequestException, InvalidDeviceURLError) as e:
            logger.debug("GET %s%s failed: %s", ip, path, e)
            return None
        if r.status_code != 200:
            logger.debug("GET %s%s returned %s", ip, path, r.status_code)
            return None
        try:
            data = r.json()
        except ValueError as e:
            logger.debug("GET %s%s returned a non-JSON body: %s", ip, path, e)
            return None
        if not isinstance(data, dict):
            logger.debug("GET %s%s returned %s, expected an object", ip, path, type(data).__name__)
            return None
        return data

    def fetch_info(self, ip: str) -> Optional[Device]:
        data = self._get_json(ip, INFO_ENDPOINT)
        if data is None:
            return None
        try:
            device = Device.model_validate(data)
        except ValidationError as e:
            logger.debug("undecodable info payload from %s: %s", ip, e)
            return None
        # the payload does not carry the address it was fetched from
        return device.model_copy(update={"ip": ip.strip()})

    def fetch_asic_info(self, ip: str) -> Optional[AsicInfo]:
        data = self._get_json(ip, ASIC_ENDPOINT)
        if data is None:
            return None
        try:
            return AsicInfo.model_validate(data)
        except ValidationError as e:
            logger.debug("undecodable ASIC payload from %s: %s", ip, e)
            return None

    def fetch_statistics(self, ip: str) -> Optional[DeviceStatistics]:
        data = self._get_json(ip, STATISTICS_ENDPOINT)
        if data is None:
            return None
        try:
            return DeviceStatistics.model_validate(data)
        except ValidationError as e:
            logger.debug("undecodable statistics payload from %s: %s", ip, e)
            return None

    # --- writes ---

    def restart(self, ip: str) -> bool:
        try:
            r = self.session.post(
                f"{_base_url(ip)}{RESTART_ENDPOINT}", json={}, timeout=self.fetch_timeout
            )
        except (requests.exceptions.RequestException, InvalidDeviceURLError) as e:
            logger.warning("restart %s failed: %s", ip, e)
            return False
        if r.status_code != 200:
            logger.warning("restart %s returned %s", ip, r.status_code)
        return r.status_code == 200

    def _send(self, method: str, url: str, ip: str, **kwargs: Any) -> requests.Response:
        try:
            return self.session.request(method, url, **kwargs)
        except (
            requests.exceptions.InvalidURL,
            requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema,
        ) as e:
            raise InvalidDeviceURLError(ip) from e
        except (
            requests.exceptions.InvalidHeader,
            requests.exceptions.ChunkedEncodingError,
            requests.exceptions.ContentDecodingError,
        ) as e:
            raise InvalidResponseError(e) from e
        except requests.exceptions.RequestException as e:
            raise RequestFailedError(e) from e

    def patch_settings(self, ip: str, settings: Union[SystemSettings, Dict[str, Any]]) -> bool:
        """PATCH only the fields that are set. Returns True or raises ConfigUpdateError."""
        url = f"{_base_url(ip)}{SETTINGS_ENDPOINT}"

        if isinstance(settings, SystemSettings):
            payload = settings.to_payload()
        else:
            payload = {k: v for k, v in (settings or {}).items() if v is not None}
        try:
            body = json.dumps(payload, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise SettingsEncodingError(e) from e

        logger.info("PATCH %s fields=%s", ip, sorted(payload.keys()))
        r = self._send(
            "PATCH",
            url,
            ip,
            data=body,
            headers={"Content-Type": "application/json"},
            timeout=self.fetch_timeout,
        )
        if r.status_code != 200:
            raise DeviceServerError(r.status_code, r.text or None)
        return True

    def upload_ota(
        self,
        ip: str,
        filename: str,
        payload: bytes,
        update_type: OtaUpdateType = OtaUpdateType.FIRMWARE,
        progress: Optional[Callable[[float], None]] = None,
    ) -> bool:
        if not update_type.is_valid_filename(filename):
            raise InvalidOtaFilenameError(filename, update_type)
        url = f"{_base_url(ip)}{update_type.endpoint}"

        logger.info("OTA %s upload to %s (%d bytes)", update_type.value, ip, len(payload))
        r = self._send(
            "POST",
            url,
            ip,
            data=_ProgressReader(payload, progress),
            headers={"Content-Type": "application/octet-stream"},
            timeout=OTA_TIMEOUT_S,
        )
        if r.status_code != 200:
            raise DeviceServerError(r.status_code, r.text or None)
        if progress:
            progress(1.0)
        return True


def _column(labels: List[str], *names: str) -> Optional[int]:
    for name in names:
        if name in labels:
            return labels.index(name)
    return None


def to_chart_series(stats: DeviceStatistics, fetched_at: Optional[datetime] = None) -> ChartSeries:
    """Convert device-uptime-relative samples into wall-clock chart points.

    Boot instant is estimated as fetched_at - currentTimestamp; each row's
    timestamp column (ms since boot) is added to it. Hashrate is GH/s.
    """
    if stats.currentTimestamp is None:
        raise StatisticsFormatError("Statistics payload has no currentTimestamp")
    if stats.labels is None or stats.statistics is None:
        raise StatisticsFormatError("Statistics data is missing or malformed")

    ts_idx = _column(stats.labels, "timestamp")
    if ts_idx is None:
        raise StatisticsFormatError("Timestamp column not found in statistics labels")
    hr_idx = _column(stats.labels, "hashrate", "hashRate")
    temp_idx = _column(stats.labels, "chipTemperature", "temp")

    now = fetched_at or datetime.now(timezone.utc)
    boot = now - timedelta(seconds=stats.currentTimestamp / 1000.0)

    series = ChartSeries()
    for row in stats.statistics:
        if len(row) <= ts_idx:
            continue
        when = boot + timedelta(seconds=row[ts_idx] / 1000.0)
        if hr_idx is not None and len(row) > hr_idx:
            series.hashrate.append(ChartPoint(date=when, value=row[hr_idx] / 1000.0))
        if temp_idx is not None and len(row) > temp_idx:
            series.temperature.append(ChartPoint(date=when, value=row[temp_idx]))
    return series
