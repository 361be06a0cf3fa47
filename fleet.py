# fleet.py
"""Pure functions over the device collection: merge, sort, aggregate."""
from __future__ import annotations

import math
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from models import Device, SortDirection, SortKey

# Largest first, so a value can only match one suffix.
DIFFICULTY_SUFFIXES: Tuple[Tuple[str, float], ...] = (
    ("P", 1e15),
    ("T", 1e12),
    ("G", 1e9),
    ("M", 1e6),
    ("K", 1e3),
)


def parse_difficulty(text: Optional[str]) -> Optional[float]:
    """
    "1.5M" -> 1500000.0, "2G" -> 2e9, "512" -> 512.0.
    None, "", "abc" or non-finite values -> None (never raises).
    """
    if text is None:
        return None
    value = str(text).strip().upper()
    if not value:
        return None

    multiplier = 1.0
    for suffix, factor in DIFFICULTY_SUFFIXES:
        if value.endswith(suffix):
            multiplier = factor
            value = value[: -len(suffix)]
            break

    try:
        number = float(value)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return number * multiplier


# --- reconciliation ---

def merge_scan_results(
    previous: Sequence[Device],
    targeted: Iterable[str],
    discovered: Iterable[Device],
) -> List[Device]:
    """
    Merge one scan round into the known device list.

    - previous devices that were targeted but did not answer are dropped
    - previous devices that were not targeted are kept untouched
    - discovered devices replace the entry with the same IP, or are appended
    """
    targeted_set = set(targeted)
    latest: Dict[str, Device] = {}
    for d in discovered:
        latest[d.ip] = d

    merged: List[Device] = []
    placed = set()
    for d in previous:
        if d.ip in placed:
            continue
        if d.ip in latest:
            merged.append(latest[d.ip])
            placed.add(d.ip)
        elif d.ip not in targeted_set:
            merged.append(d)
            placed.add(d.ip)

    for ip, d in latest.items():
        if ip not in placed:
            merged.append(d)
            placed.add(ip)
    return merged


def auto_add_ips(persisted: Sequence[str], discovered: Iterable[Device]) -> Tuple[List[str], List[str]]:
    """Return (updated list, newly added IPs); each new IP is appended once, in discovery order."""
    known = set(persisted)
    added: List[str] = []
    for d in discovered:
        if d.ip not in known:
            known.add(d.ip)
            added.append(d.ip)
    return list(persisted) + added, added


# --- sorting ---

_NUMERIC_FIELDS: Dict[SortKey, Callable[[Device], Optional[float]]] = {
    SortKey.HASHRATE: lambda d: d.hashRate,
    SortKey.POWER: lambda d: d.power,
    SortKey.UPTIME: lambda d: d.uptimeSeconds,
    SortKey.ACCEPTED_SHARES: lambda d: d.sharesAccepted,
    SortKey.REJECTED_SHARES: lambda d: d.sharesRejected,
    SortKey.TEMPERATURE: lambda d: d.temp,
    SortKey.BEST_SESSION_DIFF: lambda d: parse_difficulty(d.bestSessionDiff),
    SortKey.BEST_DIFF: lambda d: parse_difficulty(d.bestDiff),
}


def _sort_key(key: SortKey) -> Callable[[Device], Tuple[Any, ...]]:
    if key is SortKey.HOSTNAME:
        return lambda d: ((d.hostname if d.hostname is not None else d.ip).casefold(), d.ip)

    getter = _NUMERIC_FIELDS[key]

    def numeric(d: Device) -> Tuple[Any, ...]:
        value = getter(d)
        # missing ranks below every present value; IP keeps the order total
        if value is None or (isinstance(value, float) and math.isnan(value)):
            return (0, 0.0, d.ip)
        return (1, float(value), d.ip)

    return numeric


def sort_devices(
    devices: Iterable[Device],
    key: SortKey = SortKey.HOSTNAME,
    direction: SortDirection = SortDirection.ASCENDING,
) -> List[Device]:
    """Return a new list; descending is the exact reverse of ascending."""
    return sorted(
        devices,
        key=_sort_key(key),
        reverse=direction is SortDirection.DESCENDING,
    )


# --- aggregates ---

@dataclass(frozen=True)
class FleetTotals:
    total_hashrate: float = 0.0
    total_power: float = 0.0
    best_session_diff: str = "N/A"
    best_diff: str = "N/A"
    device_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_totals(devices: Sequence[Device]) -> FleetTotals:
    total_hashrate = sum(d.hashRate or 0.0 for d in devices)
    total_power = sum(d.power or 0.0 for d in devices)

    best_session_value, best_session_text = -1.0, "N/A"
    best_value, best_text = -1.0, "N/A"
    for d in devices:
        sv = parse_difficulty(d.bestSessionDiff)
        if sv is not None and sv > best_session_value:
            best_session_value, best_session_text = sv, d.bestSessionDiff
        ov = parse_difficulty(d.bestDiff)
        if ov is not None and ov > best_value:
            best_value, best_text = ov, d.bestDiff

    return FleetTotals(
        total_hashrate=total_hashrate,
        total_power=total_power,
        best_session_diff=best_session_text,
        best_diff=best_text,
        device_count=len(devices),
    )
