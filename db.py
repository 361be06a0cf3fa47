# db.py
from __future__ import annotations

import os
import json
import sqlite3
from typing import Any, Dict, Iterable, List, Optional
from datetime import datetime, timezone

# Resolve the default DB next to this file (not the process CWD).
_BASE_DIR = os.path.dirname(os.path.abspath(__file__))

DB_PATH = os.environ.get("AXE_DASHBOARD_DB") or os.path.join(_BASE_DIR, "data", "dashboard.db")


def _get_conn() -> sqlite3.Connection:
    parent = os.path.dirname(DB_PATH)
    if parent:
        os.makedirs(parent, exist_ok=True)
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    conn = _get_conn()
    cur = conn.cursor()

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS dashboard_settings (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            settings_json TEXT NOT NULL
        );
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS target_ips (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ip TEXT NOT NULL UNIQUE,
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );
        """
    )

    conn.commit()
    conn.close()


def get_settings_json() -> Optional[Dict[str, Any]]:
    conn = _get_conn()
    cur = conn.cursor()
    cur.execute("SELECT settings_json FROM dashboard_settings WHERE id = 1;")
    row = cur.fetchone()
    conn.close()
    if not row:
        return None
    try:
        stored = json.loads(row["settings_json"])
    except ValueError:
        return None
    return stored if isinstance(stored, dict) else None


def save_settings_json(settings: Dict[str, Any]) -> None:
    conn = _get_conn()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO dashboard_settings (id, settings_json)
        VALUES (1, ?)
        ON CONFLICT(id) DO UPDATE SET settings_json=excluded.settings_json;
        """,
        (json.dumps(settings),),
    )
    conn.commit()
    conn.close()


def list_target_ips() -> List[str]:
    conn = _get_conn()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT ip FROM target_ips
        ORDER BY sort_order ASC, id ASC;
        """
    )
    rows = cur.fetchall()
    conn.close()
    return [r["ip"] for r in rows]


def add_target_ips(ips: Iterable[str]) -> List[str]:
    """Append IPs to the end of the persisted list; returns the ones actually inserted."""
    conn = _get_conn()
    cur = conn.cursor()
    cur.execute("SELECT COALESCE(MAX(sort_order), 0) AS max_order FROM target_ips;")
    next_order = int(cur.fetchone()["max_order"]) + 1
    now = datetime.now(timezone.utc).isoformat()

    inserted: List[str] = []
    for ip in ips:
        try:
            cur.execute(
                "INSERT INTO target_ips (ip, sort_order, created_at) VALUES (?, ?, ?);",
                (ip, next_order, now),
            )
        except sqlite3.IntegrityError:
            continue
        inserted.append(ip)
        next_order += 1

    conn.commit()
    conn.close()
    return inserted


def add_target_ip(ip: str) -> bool:
    return bool(add_target_ips([ip]))


def remove_target_ip(ip: str) -> bool:
    conn = _get_conn()
    cur = conn.cursor()
    cur.execute("DELETE FROM target_ips WHERE ip = ?;", (ip,))
    removed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return removed


def replace_target_ips(ips: Iterable[str]) -> None:
    conn = _get_conn()
    cur = conn.cursor()
    now = datetime.now(timezone.utc).isoformat()
    cur.execute("DELETE FROM target_ips;")
    seen = set()
    for idx, ip in enumerate(ips):
        if ip in seen:
            continue
        seen.add(ip)
        cur.execute(
            "INSERT INTO target_ips (ip, sort_order, created_at) VALUES (?, ?, ?);",
            (ip, idx, now),
        )
    conn.commit()
    conn.close()
