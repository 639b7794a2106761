"""
Bus Route Tracer: live vehicle traces, learned routes, trip planning (FastAPI)

Purpose
=======
Poll the live bus position feed, accumulate a GPS trace per vehicle, derive a
clean route polyline per line and answer direct / one-transfer trip queries
against a static stop catalog.

Key features
------------
- Background poller: feed -> validation/jump/jitter filters -> trace store.
- Routes derived on demand from the longest trace of each line.
- Optional OSRM map matching of route polylines (falls back silently).
- REST endpoints for buses, traces, routes, stops and the planner.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx pydantic
"""

from __future__ import annotations
from typing import List, Dict, Optional, Tuple, Any
import asyncio, time, math, os
from pathlib import Path
import httpx

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from line_aggregator import LineRoute, build_line_routes
from road_snapper import RoadSnapper
from stop_catalog import Stop, load_stop_catalog
from trace_ingestor import InvalidInput, TraceIngestor, parse_feed_payload
from trace_store import JsonFileTraceStore, TraceStoreError
from trip_planner import plan_trip

# ---------------------------
# Config
# ---------------------------
FEED_URL = os.getenv("FEED_URL", "https://ro-suceava.thoreb.com/thoreb-map/xhr_update.php")
FEED_POLL_INTERVAL_S = float(os.getenv("FEED_POLL_INTERVAL_S", "2.5"))
FEED_POLL_ENABLED = os.getenv("FEED_POLL_ENABLED", "1").lower() in {"1", "true", "yes"}
FEED_CACHE_TTL_S = float(os.getenv("FEED_CACHE_TTL_S", "2"))
FEED_HTTP_TIMEOUT = httpx.Timeout(float(os.getenv("FEED_HTTP_TIMEOUT_S", "10")), connect=5.0)

DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
TRACE_STORE_PATH = Path(os.getenv("TRACE_STORE_PATH", str(DATA_DIR / "bus_traces.json")))
STOP_CATALOG_PATH = Path(os.getenv("STOP_CATALOG_PATH", "config/stops.json"))


class FeedCache:
    """Last live-feed payload, kept for ``ttl_s`` seconds.

    Callers arriving while a fetch is running wait on that same fetch, so the
    poller and ``GET /api/buses`` never hit the feed twice at once. A failed
    fetch is not cached.
    """

    def __init__(self, ttl_s: float):
        self.ttl_s = ttl_s
        self._payload: Any = None
        self._fetched_at: float = 0.0
        self._pending: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    def age_s(self) -> Optional[float]:
        if self._payload is None:
            return None
        return time.monotonic() - self._fetched_at

    async def get(self, fetch):
        async with self._lock:
            age = self.age_s()
            if age is not None and age < self.ttl_s:
                return self._payload
            task = self._pending
            if task is None:
                task = asyncio.create_task(fetch())
                self._pending = task

        try:
            payload = await task
        except Exception:
            async with self._lock:
                if self._pending is task:
                    self._pending = None
            raise

        async with self._lock:
            if self._pending is task:
                self._payload = payload
                self._fetched_at = time.monotonic()
                self._pending = None
        return payload


class State:
    def __init__(self):
        self.lock = asyncio.Lock()
        self.last_error: str = ""
        self.last_error_ts: float = 0.0
        self.last_cycle_ts: float = 0.0
        self.last_cycle_appended: int = 0
        self.last_cycle_rejected: int = 0


state = State()
feed_cache = FeedCache(FEED_CACHE_TTL_S)
trace_store = JsonFileTraceStore(TRACE_STORE_PATH)
ingestor = TraceIngestor(trace_store)
stop_catalog: List[Stop] = load_stop_catalog(STOP_CATALOG_PATH)
road_snapper = RoadSnapper()

# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Bus Route Tracer")

_http_client: Optional[httpx.AsyncClient] = None


def _get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(timeout=FEED_HTTP_TIMEOUT)
    return _http_client


async def fetch_feed(client: httpx.AsyncClient) -> Any:
    r = await client.get(FEED_URL)
    r.raise_for_status()
    return r.json()


async def get_feed() -> Any:
    return await feed_cache.get(lambda: fetch_feed(_get_http_client()))


async def _record_error(message: str) -> None:
    async with state.lock:
        state.last_error = message
        state.last_error_ts = time.time()


async def poll_once() -> None:
    """One feed -> trace store cycle. Errors propagate to the caller."""
    payload = await get_feed()
    records = parse_feed_payload(payload)
    summary = await ingestor.run_cycle(records)
    async with state.lock:
        state.last_error = ""
        state.last_cycle_ts = time.time()
        state.last_cycle_appended = summary.appended
        state.last_cycle_rejected = summary.rejected
    if summary.appended:
        print(f"[feed_poller] cycle appended={summary.appended} rejected={summary.rejected}")


async def poll_tick() -> None:
    """Run one poll and record any failure; the poller loop must never die."""
    try:
        await poll_once()
    except (httpx.HTTPError, ValueError, TraceStoreError) as e:
        await _record_error(str(e))
        print("[feed_poller] error:", e)
    except Exception as e:
        await _record_error(f"{type(e).__name__}: {e}")
        print("[feed_poller] unexpected error:", repr(e))


@app.on_event("startup")
async def start_feed_poller() -> None:
    if not FEED_POLL_ENABLED:
        print("[feed_poller] disabled")
        return

    async def feed_poller():
        await asyncio.sleep(0.1)
        while True:
            start = time.time()
            await poll_tick()
            dt = max(0.5, FEED_POLL_INTERVAL_S - (time.time() - start))
            await asyncio.sleep(dt)

    app.state.feed_poller = asyncio.create_task(feed_poller())


@app.on_event("shutdown")
async def shutdown_clients() -> None:
    task = getattr(app.state, "feed_poller", None)
    if task is not None:
        task.cancel()
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
    await road_snapper.aclose()


# ---------------------------
# Health
# ---------------------------
@app.get("/v1/health")
async def health():
    async with state.lock:
        ok = not bool(state.last_error)
        return {
            "ok": ok,
            "last_error": (state.last_error or None),
            "last_error_ts": (state.last_error_ts or None),
            "last_cycle_ts": (state.last_cycle_ts or None),
            "last_cycle_appended": state.last_cycle_appended,
            "last_cycle_rejected": state.last_cycle_rejected,
            "feed_age_s": feed_cache.age_s(),
        }


# ---------------------------
# Buses & traces
# ---------------------------
@app.get("/api/buses")
async def buses():
    try:
        return await get_feed()
    except (httpx.HTTPError, ValueError) as exc:
        print(f"[buses] feed fetch failed: {exc}")
        return JSONResponse({"error": "Failed to fetch bus data"}, status_code=502)


@app.post("/api/buses")
async def ingest_buses(payload: Any = Body(...)):
    try:
        records = parse_feed_payload(payload)
    except InvalidInput as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    try:
        summary = await ingestor.run_cycle(records)
    except TraceStoreError as exc:
        print(f"[buses] ingest failed: {exc}")
        return JSONResponse({"error": "Failed to append bus routes"}, status_code=500)
    return {
        "success": True,
        "appended": summary.appended,
        "rejected": summary.rejected,
        "reasons": summary.reasons(),
    }


@app.get("/api/traces")
async def traces():
    try:
        snapshot = ingestor.store.load()
    except TraceStoreError as exc:
        print(f"[traces] read failed: {exc}")
        return JSONResponse({"error": "Failed to read routes"}, status_code=500)
    return {vid: trace.to_dict() for vid, trace in snapshot.items()}


# ---------------------------
# Routes, stops & planner
# ---------------------------
def current_routes() -> Dict[str, LineRoute]:
    return build_line_routes(ingestor.store.load())


@app.get("/api/routes")
async def routes(snap: int = Query(0)):
    try:
        line_routes = current_routes()
    except TraceStoreError as exc:
        print(f"[routes] read failed: {exc}")
        return JSONResponse({"error": "Failed to read routes"}, status_code=500)
    if snap:
        lines = list(line_routes.keys())
        results = await asyncio.gather(*(road_snapper.snap(line_routes[line].polyline) for line in lines))
        for line, result in zip(lines, results):
            if result.snapped:
                line_routes[line].polyline = result.coords
    return {line: route.to_dict() for line, route in line_routes.items()}


@app.get("/api/stops")
async def stops():
    return [stop.to_dict() for stop in stop_catalog]


def _parse_latlng(value: Any) -> Optional[Tuple[float, float]]:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return None
    try:
        lat = float(value[0])
        lng = float(value[1])
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    return (lat, lng)


@app.post("/api/plan")
async def plan(payload: Dict[str, Any] = Body(...)):
    me = _parse_latlng(payload.get("me"))
    if me is None:
        return JSONResponse({"ok": False, "error": "Missing/invalid `me` (LatLng)."}, status_code=400)
    dest_stop_id = payload.get("destStopId")
    if dest_stop_id is None or str(dest_stop_id).strip() == "":
        return JSONResponse({"ok": False, "error": "Missing `destStopId`."}, status_code=400)
    try:
        line_routes = current_routes()
    except TraceStoreError as exc:
        print(f"[plan] route load failed: {exc}")
        return JSONResponse({"ok": False, "error": "Failed to load routes."}, status_code=500)
    result = plan_trip(me, str(dest_stop_id).strip(), line_routes, stop_catalog)
    return result.to_dict()


@app.post("/api/osrm-match")
async def osrm_match(payload: Dict[str, Any] = Body(...)):
    raw = payload.get("coords")
    coords: List[Tuple[float, float]] = []
    if isinstance(raw, list):
        for pair in raw:
            parsed = _parse_latlng(pair)
            if parsed is None:
                return {"snapped": False}
            coords.append(parsed)
    if len(coords) < 2:
        return {"snapped": False}
    result = await road_snapper.snap(coords)
    return result.to_dict()
