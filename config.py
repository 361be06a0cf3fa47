# config.py
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Dict

import db
from models import ScanMode, SortDirection, SortKey


DEFAULT_SETTINGS: Dict[str, Any] = {
    "scan_mode": ScanMode.SUBNET_SCAN.value,  # ip_list|subnet_scan
    "auto_add_devices": True,
    "refresh_interval_s": 30.0,  # <= 0 disables periodic refresh
    "subnet_prefix": "192.168.1.",
    "subnet_range_start": 1,
    "subnet_range_end": 254,
    "sort_key": SortKey.HOSTNAME.value,
    "sort_direction": SortDirection.ASCENDING.value,
    "scan_parallel": 256,  # covers a whole /24, so every address is probed at once
}


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """Merge b into a (copy), recursively for dicts."""
    out = json.loads(json.dumps(a))
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def get_settings() -> Dict[str, Any]:
    stored = db.get_settings_json() or {}
    return _deep_merge(DEFAULT_SETTINGS, stored)


def save_settings(settings: Dict[str, Any]) -> None:
    db.save_settings_json(settings)


def update_settings(partial: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a partial update into the stored settings, validate, then persist.

    Raises ValueError (leaving storage untouched) if the merged result is invalid.
    """
    merged = _deep_merge(get_settings(), partial or {})
    ScanConfig.from_settings(merged)
    save_settings(merged)
    return merged


@dataclass(frozen=True)
class ScanConfig:
    """Typed, validated view of the scan/sort/refresh settings."""

    scan_mode: ScanMode
    auto_add_devices: bool
    refresh_interval_s: float
    subnet_prefix: str
    subnet_range_start: int
    subnet_range_end: int
    sort_key: SortKey
    sort_direction: SortDirection
    scan_parallel: int

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "ScanConfig":
        s = _deep_merge(DEFAULT_SETTINGS, settings or {})

        try:
            mode = ScanMode(s["scan_mode"])
        except ValueError:
            raise ValueError(f"Unknown scan_mode: {s['scan_mode']!r}")

        try:
            interval = float(s["refresh_interval_s"])
            start = int(s["subnet_range_start"])
            end = int(s["subnet_range_end"])
            parallel = int(s["scan_parallel"])
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid numeric setting: {e}") from e

        if not math.isfinite(interval):
            raise ValueError("refresh_interval_s must be a finite number")
        if not isinstance(s["auto_add_devices"], bool):
            raise ValueError("auto_add_devices must be true or false")
        if not (0 <= start <= 255 and 0 <= end <= 255):
            raise ValueError("Subnet range bounds must be between 0 and 255")
        if start > end:
            raise ValueError("subnet_range_start must not exceed subnet_range_end")
        if not (1 <= parallel <= 256):
            raise ValueError("scan_parallel must be between 1 and 256")

        # Unknown sort values fall back instead of failing (older stored blobs).
        return cls(
            scan_mode=mode,
            auto_add_devices=s["auto_add_devices"],
            refresh_interval_s=interval,
            subnet_prefix=str(s["subnet_prefix"] or ""),
            subnet_range_start=start,
            subnet_range_end=end,
            sort_key=SortKey.parse(s["sort_key"]),
            sort_direction=SortDirection.parse(s["sort_direction"]),
            scan_parallel=parallel,
        )


def load_scan_config() -> ScanConfig:
    return ScanConfig.from_settings(get_settings())
