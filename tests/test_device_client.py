import json
import threading
from datetime import datetime, timedelta, timezone

import pytest
import requests

from device_client import (
    DeviceClient,
    DeviceServerError,
    InvalidDeviceURLError,
    InvalidOtaFilenameError,
    InvalidResponseError,
    RequestFailedError,
    SettingsEncodingError,
    StatisticsFormatError,
    to_chart_series,
)
from models import DeviceStatistics, OtaUpdateType, SystemSettings
from tests.conftest import FakeResponse, FakeSession, info_route

IP = "10.0.0.7"
INFO_URL = f"http://{IP}/api/system/info"
SETTINGS_URL = f"http://{IP}/api/system"


def _client(routes):
    session = FakeSession(dict(routes))
    return DeviceClient(session=session), session


# --- reads ---

def test_is_online_only_for_http_200():
    client, _ = _client([(("GET", INFO_URL), FakeResponse(200, {}))])
    assert client.is_online(IP) is True

    client, _ = _client([(("GET", INFO_URL), FakeResponse(503, {}))])
    assert client.is_online(IP) is False


@pytest.mark.parametrize("exc", [requests.exceptions.Timeout(), requests.exceptions.ConnectionError()])
def test_is_online_false_on_transport_errors(exc):
    client, _ = _client([(("GET", INFO_URL), exc)])
    assert client.is_online(IP) is False


def test_is_online_false_for_malformed_address(client, fake_session):
    assert client.is_online("not an ip") is False
    assert fake_session.calls == []


def test_is_online_uses_probe_timeout():
    session = FakeSession(dict([(("GET", INFO_URL), FakeResponse(200, {}))]))
    client = DeviceClient(probe_timeout=1.5, fetch_timeout=9.0, session=session)
    client.is_online(IP)
    assert session.calls[0][2]["timeout"] == 1.5


def test_fetch_info_stamps_requested_ip():
    client, session = _client([info_route(IP, {"hostname": "bitaxe", "hashRate": 600, "temp": 60})])
    device = client.fetch_info(f" {IP} ")
    assert device is not None
    assert device.ip == IP
    assert device.hostname == "bitaxe"
    assert device.hashRate == 600
    assert session.calls[0][2]["timeout"] == client.fetch_timeout


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse(404, {"hostname": "x"}),
        FakeResponse(200),  # body is not JSON
        FakeResponse(200, ["not", "an", "object"]),
        requests.exceptions.Timeout(),
    ],
)
def test_fetch_info_absent_on_failure(response):
    client, _ = _client([(("GET", INFO_URL), response)])
    assert client.fetch_info(IP) is None


def test_fetch_asic_info():
    url = f"http://{IP}/api/system/asic"
    client, _ = _client(
        [(("GET", url), FakeResponse(200, {"ASICModel": "BM1366", "frequencyOptions": [400, 485], "bogus": 1}))]
    )
    info = client.fetch_asic_info(IP)
    assert info.ASICModel == "BM1366"
    assert info.frequencyOptions == [400, 485]

    client, _ = _client([])
    assert client.fetch_asic_info(IP) is None


def test_fetch_statistics():
    url = f"http://{IP}/api/system/statistics"
    payload = {"currentTimestamp": 5000, "labels": ["hashrate", "timestamp"], "statistics": [[500, 1000]]}
    client, _ = _client([(("GET", url), FakeResponse(200, payload))])
    stats = client.fetch_statistics(IP)
    assert stats.currentTimestamp == 5000
    assert stats.labels == ["hashrate", "timestamp"]


# --- restart ---

def test_restart_posts_empty_object():
    url = f"http://{IP}/api/system/restart"
    client, session = _client([(("POST", url), FakeResponse(200))])
    assert client.restart(IP) is True
    method, called, kwargs = session.calls[0]
    assert (method, called) == ("POST", url)
    assert kwargs["json"] == {}


def test_restart_reports_failure():
    url = f"http://{IP}/api/system/restart"
    client, _ = _client([(("POST", url), FakeResponse(500))])
    assert client.restart(IP) is False

    client, _ = _client([(("POST", url), requests.exceptions.ConnectionError())])
    assert client.restart(IP) is False


# --- settings PATCH ---

def test_patch_settings_sends_only_set_fields():
    client, session = _client([(("PATCH", SETTINGS_URL), FakeResponse(200))])
    assert client.patch_settings(IP, SystemSettings(fanspeed=75, autofanspeed=False)) is True

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("PATCH", SETTINGS_URL)
    assert json.loads(kwargs["data"]) == {"fanspeed": 75, "autofanspeed": False}
    assert kwargs["headers"]["Content-Type"] == "application/json"


def test_patch_settings_accepts_plain_dict():
    client, session = _client([(("PATCH", SETTINGS_URL), FakeResponse(200))])
    client.patch_settings(IP, {"hostname": "gamma-2", "stratumPort": None})
    assert json.loads(session.calls[0][2]["data"]) == {"hostname": "gamma-2"}


def test_patch_settings_server_error_carries_status_and_message():
    client, _ = _client([(("PATCH", SETTINGS_URL), FakeResponse(500, text="frequency out of range"))])
    with pytest.raises(DeviceServerError) as ei:
        client.patch_settings(IP, SystemSettings(frequency=9999))
    assert ei.value.status_code == 500
    assert ei.value.message == "frequency out of range"


def test_patch_settings_server_error_without_body():
    client, _ = _client([(("PATCH", SETTINGS_URL), FakeResponse(400))])
    with pytest.raises(DeviceServerError) as ei:
        client.patch_settings(IP, SystemSettings(fanspeed=10))
    assert ei.value.status_code == 400
    assert ei.value.message is None


def test_patch_settings_invalid_url_makes_no_request(client, fake_session):
    with pytest.raises(InvalidDeviceURLError):
        client.patch_settings("bad host", SystemSettings(fanspeed=10))
    assert fake_session.calls == []


def test_patch_settings_encoding_failure(client, fake_session):
    with pytest.raises(SettingsEncodingError):
        client.patch_settings(IP, {"fanspeed": float("nan")})
    assert fake_session.calls == []


@pytest.mark.parametrize(
    "exc, expected",
    [
        (requests.exceptions.ConnectionError("refused"), RequestFailedError),
        (requests.exceptions.Timeout("slow"), RequestFailedError),
        (requests.exceptions.InvalidHeader("bad header"), InvalidResponseError),
        (requests.exceptions.InvalidURL("bad"), InvalidDeviceURLError),
    ],
)
def test_patch_settings_transport_errors_are_classified(exc, expected):
    client, _ = _client([(("PATCH", SETTINGS_URL), exc)])
    with pytest.raises(expected):
        client.patch_settings(IP, SystemSettings(fanspeed=10))


# --- OTA ---

def test_upload_ota_rejects_wrong_filename(client, fake_session):
    with pytest.raises(InvalidOtaFilenameError):
        client.upload_ota(IP, "esp-miner.bin", b"\x00" * 4, OtaUpdateType.WWW)
    with pytest.raises(InvalidOtaFilenameError):
        client.upload_ota(IP, "firmware.zip", b"\x00" * 4, OtaUpdateType.FIRMWARE)
    assert fake_session.calls == []


def test_upload_ota_posts_binary_to_matching_endpoint():
    url = f"http://{IP}/api/system/OTAWWW"
    client, session = _client([(("POST", url), FakeResponse(200))])
    seen = []
    assert client.upload_ota(IP, "www.bin", b"abcdef", OtaUpdateType.WWW, progress=seen.append) is True

    method, called, kwargs = session.calls[0]
    assert (method, called) == ("POST", url)
    assert kwargs["headers"]["Content-Type"] == "application/octet-stream"
    assert kwargs["data"].read() == b"abcdef"
    assert seen[-1] == 1.0


def test_upload_ota_device_error():
    url = f"http://{IP}/api/system/OTA"
    client, _ = _client([(("POST", url), FakeResponse(500, text="Write Error"))])
    with pytest.raises(DeviceServerError) as ei:
        client.upload_ota(IP, "esp-miner.bin", b"\x01\x02")
    assert ei.value.message == "Write Error"


# --- statistics -> chart series ---

FETCHED_AT = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_chart_series_wall_clock_and_units():
    stats = DeviceStatistics.model_validate(
        {
            "currentTimestamp": 100000,
            "labels": ["hashrate", "temp", "timestamp"],
            "statistics": [[500.0, 55.0, 40000], [1500.0, 57.5, 70000]],
        }
    )
    series = to_chart_series(stats, FETCHED_AT)
    assert [p.value for p in series.hashrate] == [0.5, 1.5]
    assert [p.value for p in series.temperature] == [55.0, 57.5]
    assert series.hashrate[0].date == FETCHED_AT - timedelta(seconds=60)
    assert series.hashrate[1].date == FETCHED_AT - timedelta(seconds=30)


def test_chart_series_prefers_chip_temperature_and_skips_short_rows():
    stats = DeviceStatistics.model_validate(
        {
            "currentTimestamp": 10000,
            "labels": ["timestamp", "temp", "chipTemperature", "hashRate"],
            "statistics": [[1000, 40.0, 61.0, 700.0], []],
        }
    )
    series = to_chart_series(stats, FETCHED_AT)
    assert [p.value for p in series.temperature] == [61.0]
    assert [p.value for p in series.hashrate] == [0.7]


def test_chart_series_requires_timestamp_column():
    stats = DeviceStatistics.model_validate(
        {"currentTimestamp": 1000, "labels": ["hashrate"], "statistics": [[1.0]]}
    )
    with pytest.raises(StatisticsFormatError):
        to_chart_series(stats, FETCHED_AT)


def test_chart_series_requires_payload_parts():
    with pytest.raises(StatisticsFormatError):
        to_chart_series(DeviceStatistics.model_validate({"labels": ["timestamp"], "statistics": []}))
    with pytest.raises(StatisticsFormatError):
        to_chart_series(DeviceStatistics.model_validate({"currentTimestamp": 5}))


# --- sessions ---

def test_default_client_uses_one_session_per_thread():
    client = DeviceClient()
    main_session = client.session
    assert client.session is main_session

    seen = []
    worker = threading.Thread(target=lambda: seen.append(client.session))
    worker.start()
    worker.join()
    assert seen[0] is not main_session
    assert isinstance(seen[0], requests.Session)


def test_injected_session_is_shared(fake_session):
    client = DeviceClient(session=fake_session)
    seen = []
    worker = threading.Thread(target=lambda: seen.append(client.session))
    worker.start()
    worker.join()
    assert seen == [fake_session]
    assert client.session is fake_session
