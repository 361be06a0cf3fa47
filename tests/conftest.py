import threading
from typing import Any, Dict, List, Optional, Tuple

import pytest
import requests

import db
from device_client import DeviceClient
from models import Device

_NO_JSON = object()


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = _NO_JSON, text: str = ""):
        self.status_code = status_code
        self._json = json_data
        self.text = text

    def json(self):
        if self._json is _NO_JSON:
            raise ValueError("No JSON object could be decoded")
        return self._json


class FakeSession:
    """Stands in for requests.Session; routes are keyed by (METHOD, url)."""

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Any]] = None):
        self.routes = dict(routes or {})
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def request(self, method: str, url: str, **kwargs):
        with self._lock:
            self.calls.append((method, url, kwargs))
        outcome = self.routes.get((method, url))
        if outcome is None:
            raise requests.exceptions.ConnectionError(f"no route to {url}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def urls(self, method: Optional[str] = None) -> List[str]:
        return [u for m, u, _ in self.calls if method is None or m == method]


def info_route(ip: str, payload: Dict[str, Any], status: int = 200):
    return ("GET", f"http://{ip}/api/system/info"), FakeResponse(status, payload)


class FakeClient:
    """Device-level fake for scanner/controller tests."""

    def __init__(self, payloads: Optional[Dict[str, Dict[str, Any]]] = None):
        self.payloads = dict(payloads or {})
        self.probed: List[str] = []
        self.fetched: List[str] = []
        self.restarted: List[str] = []
        self.patched: List[Tuple[str, Any]] = []
        self._lock = threading.Lock()

    def is_online(self, ip: str) -> bool:
        with self._lock:
            self.probed.append(ip)
        return ip in self.payloads

    def fetch_info(self, ip: str) -> Optional[Device]:
        with self._lock:
            self.fetched.append(ip)
        payload = self.payloads.get(ip)
        if payload is None:
            return None
        return Device.model_validate(payload).model_copy(update={"ip": ip})

    def restart(self, ip: str) -> bool:
        self.restarted.append(ip)
        return ip in self.payloads

    def patch_settings(self, ip: str, settings: Any) -> bool:
        self.patched.append((ip, settings))
        return True


@pytest.fixture
def tmp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "dashboard.db"))
    db.init_db()
    return db.DB_PATH


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def client(fake_session):
    return DeviceClient(session=fake_session)
