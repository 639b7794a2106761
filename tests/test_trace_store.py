import json
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from trace_store import JsonFileTraceStore, MemoryTraceStore, TraceStoreError, VehicleTrace


def _trace(vid: str = "bus-1", line: str = "5") -> VehicleTrace:
    return VehicleTrace(vehicle_id=vid, line=line, points=[(47.0, 26.0), (47.0005, 26.0)])


def test_replace_then_load_round_trips_file_shape(tmp_path):
    path = tmp_path / "traces.json"
    store = JsonFileTraceStore(path)

    store.replace({"bus-1": _trace()})

    raw = json.loads(path.read_text())
    assert raw == {"bus-1": {"line": "5", "coord": [[47.0, 26.0], [47.0005, 26.0]]}}
    loaded = store.load()
    assert loaded["bus-1"].points == [(47.0, 26.0), (47.0005, 26.0)]
    assert loaded["bus-1"].line == "5"


def test_missing_file_loads_empty(tmp_path):
    store = JsonFileTraceStore(tmp_path / "nope.json")
    assert store.load() == {}


def test_replace_leaves_no_temp_files(tmp_path):
    store = JsonFileTraceStore(tmp_path / "traces.json")
    store.replace({"bus-1": _trace()})
    store.replace({"bus-2": _trace("bus-2")})
    assert sorted(p.name for p in tmp_path.iterdir()) == ["traces.json"]
    assert list(store.load().keys()) == ["bus-2"]


def test_failed_write_keeps_previous_snapshot(tmp_path, monkeypatch):
    path = tmp_path / "traces.json"
    store = JsonFileTraceStore(path)
    store.replace({"bus-1": _trace()})
    before = path.read_text()

    def boom(self, *args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(Path, "write_text", boom)
    with pytest.raises(TraceStoreError):
        store.replace({"bus-2": _trace("bus-2")})
    monkeypatch.undo()

    assert path.read_text() == before


def test_corrupt_file_raises_instead_of_wiping(tmp_path):
    path = tmp_path / "traces.json"
    path.write_text("{not json")
    store = JsonFileTraceStore(path)
    with pytest.raises(TraceStoreError):
        store.load()
    assert path.read_text() == "{not json"


def test_from_dict_skips_malformed_points():
    trace = VehicleTrace.from_dict("7", {"line": "3", "coord": [[1, 2], ["x", 3], [4], None, [5.0, 6.0]]})
    assert trace.points == [(1.0, 2.0), (5.0, 6.0)]


def test_memory_store_hands_out_copies():
    store = MemoryTraceStore({"bus-1": _trace()})
    snapshot = store.load()
    snapshot["bus-1"].points.append((48.0, 27.0))
    assert len(store.load()["bus-1"].points) == 2

    store.put(VehicleTrace("bus-9", "9", [(1.0, 1.0)]))
    assert store.get("bus-9").line == "9"
    assert store.writes == 1


@pytest.mark.parametrize("coord", [5, "47.0,26.0", {"lat": 47.0}])
def test_wrong_shaped_coord_is_store_error(tmp_path, coord):
    path = tmp_path / "traces.json"
    path.write_text(json.dumps({"V1": {"line": "5", "coord": coord}}))
    with pytest.raises(TraceStoreError):
        JsonFileTraceStore(path).load()
    assert json.loads(path.read_text())["V1"]["coord"] == coord
