# dashboard.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import db
from config import ScanConfig, load_scan_config
from device_client import DeviceClient
from fleet import (
    FleetTotals,
    auto_add_ips,
    compute_totals,
    merge_scan_results,
    sort_devices,
)
from models import Device, ScanMode, SortDirection, SortKey, SystemSettings
from scanner import generate_subnet_ips, scan_for_devices

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DashboardEvent(str, Enum):
    DEVICES_UPDATED = "devices_updated"
    IP_LIST_CHANGED = "ip_list_changed"
    SORT_CHANGED = "sort_changed"


Listener = Callable[[DashboardEvent], None]


@dataclass(frozen=True)
class DashboardSnapshot:
    devices: Tuple[Device, ...] = ()
    totals: FleetTotals = field(default_factory=FleetTotals)
    last_updated: Optional[str] = None
    loading: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "devices": [d.model_dump() for d in self.devices],
            "totals": self.totals.to_dict(),
            "last_updated": self.last_updated,
            "loading": self.loading,
        }


class DashboardController:
    """
    Owns the durable device list and runs scan -> merge -> sort -> totals rounds,
    on demand and on a background timer.

    Rounds are serialized; readers always get a complete immutable snapshot.
    """

    def __init__(self, client: Optional[DeviceClient] = None):
        self.client = client or DeviceClient()

        self._snapshot = DashboardSnapshot()
        self._sort: Tuple[SortKey, SortDirection] = (SortKey.HOSTNAME, SortDirection.ASCENDING)
        self._state_lock = threading.Lock()
        self._round_lock = threading.Lock()

        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()

        self._thread: Optional[threading.Thread] = None
        self._stop: Optional[threading.Event] = None
        self._interval: Optional[float] = None
        self._started = False

    # --- public API ---

    def snapshot(self) -> DashboardSnapshot:
        with self._state_lock:
            return self._snapshot

    @property
    def devices(self) -> Tuple[Device, ...]:
        return self.snapshot().devices

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def refresh(self, wait: bool = True) -> Optional[DashboardSnapshot]:
        """Run one full round. With wait=False, returns None if a round is already running."""
        if not self._round_lock.acquire(blocking=wait):
            return None
        try:
            return self._run_round()
        finally:
            self._round_lock.release()

    def refresh_device(self, ip: str) -> Optional[Device]:
        """Re-fetch one known device without rescanning the rest of the list."""
        if not any(d.ip == ip for d in self.devices):
            logger.info("Could not find device with IP %s to refresh.", ip)
            return None

        device = self.client.fetch_info(ip)
        if device is None:
            logger.info("Failed to refresh device at IP %s. It might be offline.", ip)
            return None

        with self._state_lock:
            devices = list(self._snapshot.devices)
            idx = next((i for i, d in enumerate(devices) if d.ip == ip), None)
            if idx is None:
                # removed while we were fetching
                return None
            devices[idx] = device
            self._publish(sort_devices(devices, *self._sort), loading=self._snapshot.loading)

        self._emit(DashboardEvent.DEVICES_UPDATED)
        return device

    def list_ips(self) -> List[str]:
        return db.list_target_ips()

    def add_ip(self, ip: str) -> bool:
        added = db.add_target_ip(ip)
        if added:
            logger.info("%s added to IP list.", ip)
            self._emit(DashboardEvent.IP_LIST_CHANGED)
        return added

    def remove_ip(self, ip: str) -> bool:
        removed = db.remove_target_ip(ip)
        if not removed:
            return False
        logger.info("%s removed from IP list.", ip)
        self._after_ip_list_edit({ip})
        return True

    def replace_ips(self, ips: List[str]) -> List[str]:
        """Overwrite the persisted list (order kept, duplicates dropped)."""
        before = set(db.list_target_ips())
        db.replace_target_ips(ips)
        current = db.list_target_ips()
        logger.info("IP list replaced: %d entr%s.", len(current), "y" if len(current) == 1 else "ies")
        self._after_ip_list_edit(before - set(current))
        return current

    def _after_ip_list_edit(self, removed_ips: set) -> None:
        with self._state_lock:
            devices = [d for d in self._snapshot.devices if d.ip not in removed_ips]
            dropped = len(devices) != len(self._snapshot.devices)
            if dropped:
                self._publish(devices, loading=self._snapshot.loading)

        self._emit(DashboardEvent.IP_LIST_CHANGED)
        if dropped:
            self._emit(DashboardEvent.DEVICES_UPDATED)

    def restart_device(self, ip: str) -> bool:
        ok = self.client.restart(ip)
        logger.info("Restart command to %s %s.", ip, "sent" if ok else "failed")
        return ok

    def update_device_settings(self, ip: str, settings: Union[SystemSettings, Dict[str, Any]]) -> bool:
        """Patch the device (raises ConfigUpdateError on failure), then refresh its entry."""
        self.client.patch_settings(ip, settings)
        self.refresh_device(ip)
        return True

    def apply_settings(self) -> ScanConfig:
        """Pick up changed settings: restart the timer and/or re-sort as needed."""
        cfg = load_scan_config()

        if self._started and cfg.refresh_interval_s != self._interval:
            logger.info("Refresh interval changed to %ss", cfg.refresh_interval_s)
            self.stop()
            self.start()

        sort_changed = False
        with self._state_lock:
            new_sort = (cfg.sort_key, cfg.sort_direction)
            if new_sort != self._sort:
                self._sort = new_sort
                sort_changed = True
                if self._snapshot.devices:
                    self._publish(
                        sort_devices(self._snapshot.devices, *new_sort),
                        loading=self._snapshot.loading,
                    )

        if sort_changed:
            self._emit(DashboardEvent.SORT_CHANGED)
            self._emit(DashboardEvent.DEVICES_UPDATED)
        return cfg

    # --- scheduler lifecycle ---

    def start(self, initial_refresh: bool = False) -> None:
        if self.running:
            return
        interval = load_scan_config().refresh_interval_s
        self._interval = interval
        self._started = True
        if interval <= 0 and not initial_refresh:
            logger.info("Periodic refresh is off")
            return

        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            args=(interval, self._stop, initial_refresh),
            name="dashboard-refresh",
            daemon=True,
        )
        self._thread.start()
        logger.info("Started periodic refresh (interval=%ss)", interval)

    def stop(self, timeout: float = 5.0) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
        self._stop = None
        self._started = False

    # --- internals ---

    def _loop(self, interval: float, stop: threading.Event, initial_refresh: bool) -> None:
        if initial_refresh:
            self._scheduled_round()
        if interval <= 0:
            return
        while not stop.wait(interval):
            self._scheduled_round()

    def _scheduled_round(self) -> None:
        try:
            if self.refresh(wait=False) is None:
                logger.debug("Skipping scheduled refresh; a round is already running")
        except Exception:
            logger.exception("Scheduled refresh failed")

    def _targets(self, cfg: ScanConfig, persisted: List[str]) -> List[str]:
        if cfg.scan_mode is ScanMode.IP_LIST:
            return list(persisted)
        return generate_subnet_ips(cfg.subnet_prefix, cfg.subnet_range_start, cfg.subnet_range_end)

    def _run_round(self) -> DashboardSnapshot:
        cfg = load_scan_config()
        persisted = db.list_target_ips()
        targets = self._targets(cfg, persisted)

        self._set_loading(True)
        try:
            discovered = scan_for_devices(targets, self.client, cfg.scan_parallel)

            ip_list_changed = False
            if cfg.scan_mode is ScanMode.SUBNET_SCAN and cfg.auto_add_devices:
                _, new_ips = auto_add_ips(persisted, discovered)
                if new_ips:
                    inserted = db.add_target_ips(new_ips)
                    if inserted:
                        persisted = persisted + inserted
                        ip_list_changed = True
                        logger.info("Auto-added %d new device(s): %s", len(inserted), ", ".join(inserted))

            with self._state_lock:
                merged = merge_scan_results(self._snapshot.devices, targets, discovered)
                if cfg.scan_mode is ScanMode.IP_LIST and not persisted:
                    # nothing left to watch
                    merged = []
                self._sort = (cfg.sort_key, cfg.sort_direction)
                snap = self._publish(sort_devices(merged, *self._sort), loading=False)
        finally:
            self._set_loading(False)

        logger.info(
            "Refresh round: %d targeted, %d answered, %d in list",
            len(targets),
            len(discovered),
            len(snap.devices),
        )
        if ip_list_changed:
            self._emit(DashboardEvent.IP_LIST_CHANGED)
        self._emit(DashboardEvent.DEVICES_UPDATED)
        return snap

    def _publish(self, devices: List[Device], loading: bool) -> DashboardSnapshot:
        # caller holds _state_lock
        self._snapshot = DashboardSnapshot(
            devices=tuple(devices),
            totals=compute_totals(devices),
            last_updated=_utcnow_iso(),
            loading=loading,
        )
        return self._snapshot

    def _set_loading(self, loading: bool) -> None:
        with self._state_lock:
            if self._snapshot.loading != loading:
                self._snapshot = replace(self._snapshot, loading=loading)

    def _emit(self, event: DashboardEvent) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Dashboard listener failed on %s", event.value)
