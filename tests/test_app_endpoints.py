import asyncio
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import app as app_module  # noqa: E402
from geo import METERS_PER_DEG_LAT  # noqa: E402
from road_snapper import SnapResult  # noqa: E402
from stop_catalog import Stop  # noqa: E402
from trace_ingestor import TraceIngestor  # noqa: E402
from trace_store import JsonFileTraceStore, MemoryTraceStore, TraceStoreError, VehicleTrace  # noqa: E402

BASE = (47.64, 26.25)


def _north(meters: float):
    return (BASE[0] + meters / METERS_PER_DEG_LAT, BASE[1])


class FakeSnapper:
    def __init__(self, snapped: bool = True):
        self.snapped = snapped
        self.calls = []

    async def snap(self, coords):
        self.calls.append(list(coords))
        if not self.snapped:
            return SnapResult(snapped=False, coords=list(coords))
        return SnapResult(snapped=True, coords=[(lat, lng + 0.5) for lat, lng in coords])

    async def aclose(self):
        return None


class BrokenStore(MemoryTraceStore):
    def load(self):
        raise TraceStoreError("unreadable")


@pytest.fixture
def client(monkeypatch):
    store = MemoryTraceStore(
        {"bus-1": VehicleTrace("bus-1", "5", [_north(i * 20) for i in range(101)])}
    )
    monkeypatch.setattr(app_module, "ingestor", TraceIngestor(store), raising=False)
    monkeypatch.setattr(
        app_module,
        "stop_catalog",
        [
            Stop("board", "Board", _north(100), ("5",)),
            Stop("dest", "Dest", _north(1800), ("5",)),
        ],
        raising=False,
    )
    monkeypatch.setattr(app_module, "road_snapper", FakeSnapper(), raising=False)
    return TestClient(app_module.app)


def test_ingest_raw_feed_mapping(client):
    response = client.post(
        "/api/buses",
        json={
            "900": {"1": "on", "2": "47.7", "3": "26.3", "4": "22"},
            "901": {"1": "off", "2": "47.7", "3": "26.3", "4": "22"},
        },
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["appended"] == 1
    assert payload["rejected"] == 1
    assert payload["reasons"] == {"accepted": 1, "inactive": 1}

    traces = client.get("/api/traces").json()
    assert traces["900"] == {"line": "22", "coord": [[47.7, 26.3]]}


def test_ingest_rejects_scalar_body(client):
    response = client.post("/api/buses", json="nope")
    assert response.status_code == 400


def test_ingest_store_failure_is_500(client, monkeypatch):
    monkeypatch.setattr(app_module, "ingestor", TraceIngestor(BrokenStore()), raising=False)
    response = client.post("/api/buses", json=[{"id": "1", "status": "on", "latitude": 1, "longitude": 2, "line": "3"}])
    assert response.status_code == 500
    assert response.json() == {"error": "Failed to append bus routes"}


def test_routes_are_derived_from_traces(client):
    response = client.get("/api/routes")
    assert response.status_code == 200
    routes = response.json()
    assert list(routes) == ["5"]
    assert routes["5"]["sourceBusId"] == "bus-1"
    assert len(routes["5"]["coord"]) >= 2


def test_routes_snap_replaces_polyline(client):
    plain = client.get("/api/routes").json()["5"]["coord"]
    snapped = client.get("/api/routes", params={"snap": 1}).json()["5"]["coord"]
    assert len(snapped) == len(plain)
    assert abs(snapped[0][1] - (plain[0][1] + 0.5)) < 1e-9


def test_routes_snap_failure_keeps_clean_polyline(client, monkeypatch):
    monkeypatch.setattr(app_module, "road_snapper", FakeSnapper(snapped=False), raising=False)
    plain = client.get("/api/routes").json()
    snapped = client.get("/api/routes", params={"snap": 1}).json()
    assert snapped == plain


def test_plan_direct(client):
    response = client.post("/api/plan", json={"me": [BASE[0], BASE[1]], "destStopId": "dest"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert payload["kind"] == "direct"
    assert payload["lineA"] == "5"
    assert payload["boardStopId"] == "board"
    assert payload["walk"][0] == [BASE[0], BASE[1]]
    assert len(payload["rideA"]) >= 2


def test_plan_unknown_destination(client):
    response = client.post("/api/plan", json={"me": [BASE[0], BASE[1]], "destStopId": "missing"})
    assert response.status_code == 200
    assert response.json() == {"ok": False, "error": "Destination stop not found."}


@pytest.mark.parametrize(
    "body,error",
    [
        ({"destStopId": "dest"}, "Missing/invalid `me` (LatLng)."),
        ({"me": [1.0], "destStopId": "dest"}, "Missing/invalid `me` (LatLng)."),
        ({"me": ["x", 2.0], "destStopId": "dest"}, "Missing/invalid `me` (LatLng)."),
        ({"me": [1.0, 2.0]}, "Missing `destStopId`."),
    ],
)
def test_plan_bad_request(client, body, error):
    response = client.post("/api/plan", json=body)
    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": error}


def test_osrm_match_endpoint(client):
    response = client.post("/api/osrm-match", json={"coords": [[47.0, 26.0], [47.001, 26.0]]})
    assert response.json() == {"snapped": True, "coords": [[47.0, 26.5], [47.001, 26.5]]}
    short = client.post("/api/osrm-match", json={"coords": [[47.0, 26.0]]})
    assert short.json() == {"snapped": False}


def test_stops_listing(client):
    stops = client.get("/api/stops").json()
    assert [s["id"] for s in stops] == ["board", "dest"]
    assert stops[0]["lines"] == ["5"]


def test_poll_once_ingests_feed(client, monkeypatch):
    async def fake_fetch(_client):
        return {"77": {"1": "on", "2": "47.5", "3": "26.5", "4": "3"}}

    monkeypatch.setattr(app_module, "fetch_feed", fake_fetch)
    monkeypatch.setattr(app_module, "_get_http_client", lambda: None)
    monkeypatch.setattr(app_module, "feed_cache", app_module.FeedCache(0))

    asyncio.run(app_module.poll_once())

    assert client.get("/api/traces").json()["77"]["line"] == "3"
    health = client.get("/v1/health").json()
    assert health["ok"] is True
    assert health["last_cycle_appended"] == 1


def test_poll_tick_survives_unexpected_errors(client, monkeypatch):
    async def broken_poll():
        raise TypeError("'int' object is not iterable")

    monkeypatch.setattr(app_module, "poll_once", broken_poll)

    asyncio.run(app_module.poll_tick())

    health = client.get("/v1/health").json()
    assert health["ok"] is False
    assert "TypeError" in health["last_error"]


def test_poll_tick_records_bad_store_shape(client, monkeypatch, tmp_path):
    path = tmp_path / "traces.json"
    path.write_text('{"V1": {"line": "5", "coord": 5}}')

    async def fake_fetch(_client):
        return {"77": {"1": "on", "2": "47.5", "3": "26.5", "4": "3"}}

    monkeypatch.setattr(app_module, "ingestor", TraceIngestor(JsonFileTraceStore(path)), raising=False)
    monkeypatch.setattr(app_module, "fetch_feed", fake_fetch)
    monkeypatch.setattr(app_module, "_get_http_client", lambda: None)
    monkeypatch.setattr(app_module, "feed_cache", app_module.FeedCache(0))

    asyncio.run(app_module.poll_tick())

    health = client.get("/v1/health").json()
    assert health["ok"] is False
    assert "unexpected trace store shape" in health["last_error"]
