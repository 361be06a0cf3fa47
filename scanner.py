# scanner.py
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Iterable, List, Optional

from device_client import DeviceClient
from models import Device

logger = logging.getLogger(__name__)

DEFAULT_PARALLEL = 256


def _unique_ips(ips: Iterable[str]) -> List[str]:
    out: List[str] = []
    seen = set()
    for ip in ips:
        ip = (ip or "").strip()
        if not ip or ip in seen:
            continue
        seen.add(ip)
        out.append(ip)
    return out


def scan_for_devices(
    ips: Iterable[str],
    client: Optional[DeviceClient] = None,
    parallel: int = DEFAULT_PARALLEL,
) -> List[Device]:
    """
    Probe every address concurrently and return the devices that answered.
    Offline/slow/malformed addresses are simply absent from the result;
    the scan as a whole never fails. No ordering guarantee.
    """
    targets = _unique_ips(ips)
    if not targets:
        logger.info("No IPs provided to scan.")
        return []

    client = client or DeviceClient()
    started = time.monotonic()

    def probe(ip: str) -> Optional[Device]:
        # only fetch the full payload once the device answers the probe
        if not client.is_online(ip):
            return None
        return client.fetch_info(ip)

    found: List[Device] = []
    with ThreadPoolExecutor(max_workers=max(1, min(int(parallel), len(targets)))) as ex:
        futures = {ex.submit(probe, ip): ip for ip in targets}
        for f in as_completed(futures):
            try:
                device = f.result()
            except Exception:
                logger.exception("Unexpected error scanning %s", futures[f])
                continue
            if device is not None:
                found.append(device)

    logger.info(
        "Scan of %d IP(s) finished in %.1fs: %d device(s) found",
        len(targets),
        time.monotonic() - started,
        len(found),
    )
    return found


def generate_subnet_ips(prefix: str, start: int, end: int) -> List[str]:
    """Expand a /24-style prefix ("192.168.1." or "192.168.1") over [start, end]."""
    p = (prefix or "").strip()
    if not p:
        return []
    if not p.endswith("."):
        p += "."
    if start > end:
        return []
    return [f"{p}{n}" for n in range(start, end + 1)]
