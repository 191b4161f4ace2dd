"""
BARRY Alert Service: traffic disruption API for Go North East (FastAPI)

Purpose
=======
Aggregate live road-traffic incidents from several providers, work out which
Go North East bus routes each one affects, and serve a single deduplicated
alert list to the control-room dashboards.

Key features
------------
- Fan out to TomTom, HERE, MapQuest, National Highways and RSS feeds
  concurrently; a failing provider only shows up in ``metadata.sources``.
- Resolve a readable location for every incident (provider text, reverse
  geocode, nearest stop, region) and match routes against static GTFS data.
- Cache the assembled alert set for a few minutes with single-flight refresh.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- GTFS_DIR must contain routes.txt, stops.txt, trips.txt and shapes.txt
- Provider keys: TOMTOM_API_KEY, HERE_API_KEY, MAPQUEST_API_KEY,
  NATIONAL_HIGHWAYS_API_KEY, TRAFFIC_RSS_URLS (all optional)
"""

from __future__ import annotations
from typing import Any, Dict, Optional, Sequence
import math, os, time
from datetime import datetime, timezone

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from aggregator import AlertAggregator
from alert_models import (
    AggregationCacheEntry,
    CriticalPipelineFailure,
    LatLon,
    ReferenceIndexNotLoaded,
    isoformat_utc,
)
from alert_sources import IncidentSource, build_configured_sources
from caching import TTLCache
from location_resolver import GEOCODE_TIMEOUT_S, LocationResolver, NominatimReverseGeocoder, ReverseGeocoder
from route_matcher import RouteMatcher
from route_policy import DEFAULT_POLICY, POLICY_VERSION, RoutePolicy
from transit_index import GTFSPaths, TransitReferenceIndex, load_transit_index

# ---------------------------
# Config
# ---------------------------
GTFS_DIR = os.getenv("GTFS_DIR", "data/gtfs")
ALERT_CACHE_TTL_S = int(os.getenv("ALERT_CACHE_TTL_S", "300"))


# ---------------------------
# Pipeline state
# ---------------------------
class PipelineState:
    def __init__(
        self,
        index: TransitReferenceIndex,
        aggregator: AlertAggregator,
        matcher: RouteMatcher,
        cache_ttl_s: float = ALERT_CACHE_TTL_S,
    ):
        self.index = index
        self.aggregator = aggregator
        self.matcher = matcher
        self.alert_cache = TTLCache(cache_ttl_s)
        self.last_error: str = ""
        self.last_error_ts: float = 0.0


def build_pipeline(
    index: TransitReferenceIndex,
    sources: Sequence[IncidentSource],
    geocoder: Optional[ReverseGeocoder] = None,
    policy: RoutePolicy = DEFAULT_POLICY,
    cache_ttl_s: float = ALERT_CACHE_TTL_S,
    geocode_timeout_s: float = GEOCODE_TIMEOUT_S,
    **aggregator_kwargs: Any,
) -> PipelineState:
    matcher = RouteMatcher(index, policy)
    resolver = LocationResolver(index, geocoder, policy, geocode_timeout_s)
    aggregator = AlertAggregator(sources, resolver, matcher, policy, **aggregator_kwargs)
    return PipelineState(index, aggregator, matcher, cache_ttl_s)


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="BARRY Alert Service")


@app.on_event("startup")
async def init_pipeline() -> None:
    try:
        index = load_transit_index(GTFSPaths.from_dir(GTFS_DIR))
    except ReferenceIndexNotLoaded as exc:
        print(f"[startup] cannot serve without GTFS reference data: {exc}")
        raise
    sources = build_configured_sources()
    if not sources:
        print("[startup] no incident sources configured; alerts will be empty")
    else:
        print(f"[startup] incident sources: {', '.join(s.name for s in sources)}")
    app.state.pipeline = build_pipeline(index, sources, NominatimReverseGeocoder())


def _get_pipeline() -> Optional[PipelineState]:
    return getattr(app.state, "pipeline", None)


def _not_ready_response() -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": "transit reference data not loaded"},
        status_code=503,
    )


# ---------------------------
# Alerts
# ---------------------------
def _alerts_envelope(entry: AggregationCacheEntry, cached: bool) -> Dict[str, Any]:
    return {
        "success": True,
        "alerts": [a.to_dict() for a in entry.alerts],
        "metadata": {
            "totalAlerts": len(entry.alerts),
            "sources": entry.sources_dict(),
            "statistics": entry.statistics,
            "lastUpdated": isoformat_utc(entry.generated_at),
            "cached": cached,
            "stale": entry.stale,
            "policyVersion": POLICY_VERSION,
        },
    }


def _failure_envelope(message: str) -> JSONResponse:
    body = {
        "success": False,
        "alerts": [],
        "metadata": {
            "error": message,
            "sources": {"error": "All data sources failed"},
            "lastUpdated": isoformat_utc(datetime.now(timezone.utc)),
        },
    }
    return JSONResponse(body, status_code=500)


async def _serve_alerts(pipeline: PipelineState, force: bool) -> JSONResponse:
    cache = pipeline.alert_cache
    cached = (not force) and cache.is_fresh()
    previous: Optional[AggregationCacheEntry] = cache.peek()

    async def fetch() -> AggregationCacheEntry:
        return await pipeline.aggregator.refresh(previous)

    try:
        entry = await cache.get(fetch, force=force)
    except CriticalPipelineFailure as exc:
        print(f"[alert_cache] refresh failed: {exc}")
        pipeline.last_error = str(exc)
        pipeline.last_error_ts = time.time()
        return _failure_envelope(str(exc))
    except Exception as exc:
        print(f"[alert_cache] unexpected error: {exc!r}")
        pipeline.last_error = f"{exc.__class__.__name__}: {exc}"
        pipeline.last_error_ts = time.time()
        return _failure_envelope("alert pipeline error")

    if not entry.stale:
        pipeline.last_error = ""
    return JSONResponse(_alerts_envelope(entry, cached))


@app.get("/api/alerts-enhanced")
async def alerts_enhanced(refresh: bool = Query(False)):
    pipeline = _get_pipeline()
    if pipeline is None:
        return _not_ready_response()
    return await _serve_alerts(pipeline, force=refresh)


@app.get("/api/alerts")
async def alerts():
    pipeline = _get_pipeline()
    if pipeline is None:
        return _not_ready_response()
    return await _serve_alerts(pipeline, force=False)


# ---------------------------
# Reference data
# ---------------------------
@app.get("/api/gtfs-status")
async def gtfs_status():
    pipeline = _get_pipeline()
    if pipeline is None:
        return {
            "success": False,
            "gtfs": {"initialized": False, "stops": 0, "routes": 0, "shapes": 0, "lastUpdated": None},
        }
    stats = pipeline.index.stats()
    loaded_at = pipeline.index.loaded_at
    return {
        "success": True,
        "gtfs": {
            "initialized": True,
            "stops": stats["stops"],
            "routes": stats["routes"],
            "shapes": stats["shapes"],
            "lastUpdated": isoformat_utc(datetime.fromtimestamp(loaded_at, tz=timezone.utc)) if loaded_at else None,
        },
    }


def _coerce_float(value: Any) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


@app.get("/api/routes/find-near-coordinate")
async def find_routes_near_coordinate(
    lat: Optional[str] = Query(None),
    lng: Optional[str] = Query(None),
    location: Optional[str] = Query(None),
):
    pipeline = _get_pipeline()
    if pipeline is None:
        return _not_ready_response()
    lat_f = _coerce_float(lat)
    lng_f = _coerce_float(lng)
    if lat_f is None or lng_f is None:
        return JSONResponse({"success": False, "error": "lat and lng must be numbers"}, status_code=400)
    if not (-90.0 <= lat_f <= 90.0) or not (-180.0 <= lng_f <= 180.0):
        return JSONResponse({"success": False, "error": "lat/lng out of range"}, status_code=400)
    match = pipeline.matcher.match(LatLon(lat_f, lng_f), location or "")
    body = {"success": True}
    body.update(match.to_dict())
    return body


# ---------------------------
# Health
# ---------------------------
@app.get("/api/health")
async def health():
    pipeline = _get_pipeline()
    if pipeline is None:
        return {"ok": False, "index_loaded": False, "cache_age_s": None, "last_error": "not initialised"}
    age = pipeline.alert_cache.age()
    return {
        "ok": not bool(pipeline.last_error),
        "index_loaded": True,
        "cache_age_s": round(age, 1) if age is not None else None,
        "last_error": pipeline.last_error or None,
        "last_error_ts": pipeline.last_error_ts or None,
    }
