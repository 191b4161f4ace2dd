"""
Static GTFS reference index for the Go North East network.

Loads ``routes.txt``, ``stops.txt``, ``trips.txt`` and ``shapes.txt`` once at
startup and answers radius queries through a uniform lat/lon grid. The index
is never mutated after ``load_transit_index`` returns, so any number of
concurrent readers can share it without locking.
"""

from __future__ import annotations

import csv
import math
import time
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from alert_models import ReferenceIndexNotLoaded

R_EARTH = 6371000.0

# Grid cell edge in metres
CELL_SIZE_M = 300.0
_M_PER_DEG_LAT = 111320.0

# Every stop is tagged with the routes whose shapes pass this close to it.
STOP_ROUTE_ASSOCIATION_M = 200.0


def to_rad(d: float) -> float: return d * math.pi / 180.0

def haversine(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    lat1, lon1 = a; lat2, lon2 = b
    dlat = to_rad(lat2-lat1); dlon = to_rad(lon2-lon1)
    s = math.sin(dlat/2)**2 + math.cos(to_rad(lat1))*math.cos(to_rad(lat2))*math.sin(dlon/2)**2
    return 2 * R_EARTH * math.asin(math.sqrt(s))


@dataclass(frozen=True)
class BoundingBox:
    south: float
    north: float
    west: float
    east: float

    def contains(self, lat: float, lon: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lon <= self.east


# Everything outside this box is dropped at load time.
NETWORK_MACRO_BBOX = BoundingBox(south=54.75, north=55.05, west=-2.10, east=-1.35)

_LAT_CELL_DEG = CELL_SIZE_M / _M_PER_DEG_LAT
# Measured at the northern edge where longitude degrees are narrowest, so a
# cell is never smaller than CELL_SIZE_M anywhere in the box.
_LON_CELL_DEG = CELL_SIZE_M / (_M_PER_DEG_LAT * math.cos(to_rad(NETWORK_MACRO_BBOX.north)))


def _cell_for(lat: float, lon: float) -> Tuple[int, int]:
    return (int(math.floor(lat / _LAT_CELL_DEG)), int(math.floor(lon / _LON_CELL_DEG)))


def _parse_float(value: Optional[object]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_int(value: Optional[object]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


@dataclass
class GTFSPaths:
    routes: Path
    stops: Path
    trips: Path
    shapes: Path

    @classmethod
    def from_dir(cls, directory: Union[str, Path]) -> "GTFSPaths":
        base = Path(directory)
        return cls(
            routes=base / "routes.txt",
            stops=base / "stops.txt",
            trips=base / "trips.txt",
            shapes=base / "shapes.txt",
        )

    def all(self) -> List[Path]:
        return [self.routes, self.stops, self.trips, self.shapes]


@dataclass(frozen=True)
class Stop:
    stop_id: str
    name: str
    lat: float
    lon: float


@dataclass(frozen=True)
class StopMatch:
    stop: Stop
    distance_m: float


@dataclass(frozen=True)
class RoutePointMatch:
    """Nearest point of one shape that lies inside the query radius."""
    shape_id: str
    lat: float
    lon: float
    distance_m: float


class _Grid:
    def __init__(self) -> None:
        self._cells: Dict[Tuple[int, int], List[Tuple[float, float, str]]] = defaultdict(list)
        self.size = 0

    def add(self, lat: float, lon: float, key: str) -> None:
        self._cells[_cell_for(lat, lon)].append((lat, lon, key))
        self.size += 1

    def near(self, lat: float, lon: float, radius_m: float) -> Iterator[Tuple[float, float, str, float]]:
        span = max(1, int(math.ceil(radius_m / CELL_SIZE_M)))
        c_lat, c_lon = _cell_for(lat, lon)
        for d_lat in range(-span, span + 1):
            for d_lon in range(-span, span + 1):
                bucket = self._cells.get((c_lat + d_lat, c_lon + d_lon))
                if not bucket:
                    continue
                for p_lat, p_lon, key in bucket:
                    dist = haversine((lat, lon), (p_lat, p_lon))
                    if dist <= radius_m:
                        yield p_lat, p_lon, key, dist


@dataclass
class TransitReferenceIndex:
    route_short_names: Dict[str, str] = field(default_factory=dict)
    stops: Dict[str, Stop] = field(default_factory=dict)
    shapes: Dict[str, List[Tuple[float, float]]] = field(default_factory=dict)
    shape_routes: Dict[str, Set[str]] = field(default_factory=dict)
    trip_count: int = 0
    loaded_at: float = 0.0
    _shape_grid: _Grid = field(default_factory=_Grid, repr=False)
    _stop_grid: _Grid = field(default_factory=_Grid, repr=False)
    _stop_routes: Dict[str, Tuple[str, ...]] = field(default_factory=dict, repr=False)

    # ---- build -------------------------------------------------------

    def _index(self) -> None:
        for shape_id, points in self.shapes.items():
            for lat, lon in points:
                self._shape_grid.add(lat, lon, shape_id)
        for stop in self.stops.values():
            self._stop_grid.add(stop.lat, stop.lon, stop.stop_id)
        for stop in self.stops.values():
            names: Set[str] = set()
            for match in self.shape_points_within(stop.lat, stop.lon, STOP_ROUTE_ASSOCIATION_M):
                names.update(self.routes_for_shape(match.shape_id))
            self._stop_routes[stop.stop_id] = tuple(sorted(names))

    # ---- queries -----------------------------------------------------

    def shape_points_within(self, lat: float, lon: float, radius_m: float) -> List[RoutePointMatch]:
        best: Dict[str, RoutePointMatch] = {}
        for p_lat, p_lon, shape_id, dist in self._shape_grid.near(lat, lon, radius_m):
            current = best.get(shape_id)
            if current is None or dist < current.distance_m:
                best[shape_id] = RoutePointMatch(shape_id, p_lat, p_lon, dist)
        return sorted(best.values(), key=lambda m: (m.distance_m, m.shape_id))

    def stops_within(self, lat: float, lon: float, radius_m: float) -> List[StopMatch]:
        matches = [
            StopMatch(self.stops[stop_id], dist)
            for _, _, stop_id, dist in self._stop_grid.near(lat, lon, radius_m)
        ]
        matches.sort(key=lambda m: (m.distance_m, m.stop.stop_id))
        return matches

    def nearest_stop(self, lat: float, lon: float, max_radius_m: float) -> Optional[StopMatch]:
        matches = self.stops_within(lat, lon, max_radius_m)
        return matches[0] if matches else None

    def routes_for_shape(self, shape_id: str) -> List[str]:
        route_ids = self.shape_routes.get(shape_id, set())
        return sorted({self.route_short_names.get(rid, rid) for rid in route_ids})

    def stop_routes(self, stop_id: str) -> List[str]:
        return list(self._stop_routes.get(stop_id, ()))

    def stats(self) -> Dict[str, int]:
        return {
            "routes": len(self.route_short_names),
            "stops": len(self.stops),
            "shapes": len(self.shapes),
            "shape_points": self._shape_grid.size,
            "trips": self.trip_count,
        }


def _read_rows(path: Path) -> Iterable[Dict[str, str]]:
    try:
        with path.open("r", encoding="utf-8-sig", newline="") as f:
            return list(csv.DictReader(f))
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise ReferenceIndexNotLoaded(f"cannot read {path}: {exc}") from exc


def load_transit_index(paths: GTFSPaths) -> TransitReferenceIndex:
    """Build the read-only reference index from GTFS text files.

    Raises ``ReferenceIndexNotLoaded`` if any of the four files is missing or
    unreadable. Individual rows with bad coordinates are skipped, and stops
    or shape points outside the network box are discarded.
    """
    missing = [str(p) for p in paths.all() if not p.is_file()]
    if missing:
        raise ReferenceIndexNotLoaded(f"missing GTFS files: {', '.join(missing)}")

    index = TransitReferenceIndex()

    for row in _read_rows(paths.routes):
        route_id = (row.get("route_id") or "").strip()
        if not route_id:
            continue
        short = (row.get("route_short_name") or "").strip() or route_id
        index.route_short_names[route_id] = short

    for row in _read_rows(paths.stops):
        stop_id = (row.get("stop_id") or "").strip()
        lat = _parse_float(row.get("stop_lat"))
        lon = _parse_float(row.get("stop_lon"))
        if not stop_id or lat is None or lon is None:
            continue
        if not NETWORK_MACRO_BBOX.contains(lat, lon):
            continue
        name = (row.get("stop_name") or "").strip() or stop_id
        index.stops[stop_id] = Stop(stop_id, name, lat, lon)

    shape_routes: Dict[str, Set[str]] = defaultdict(set)
    for row in _read_rows(paths.trips):
        route_id = (row.get("route_id") or "").strip()
        shape_id = (row.get("shape_id") or "").strip()
        index.trip_count += 1
        if route_id and shape_id:
            shape_routes[shape_id].add(route_id)
    index.shape_routes = dict(shape_routes)

    raw_points: Dict[str, List[Tuple[int, float, float]]] = defaultdict(list)
    for row in _read_rows(paths.shapes):
        shape_id = (row.get("shape_id") or "").strip()
        lat = _parse_float(row.get("shape_pt_lat"))
        lon = _parse_float(row.get("shape_pt_lon"))
        seq = _parse_int(row.get("shape_pt_sequence"))
        if not shape_id or lat is None or lon is None:
            continue
        if not NETWORK_MACRO_BBOX.contains(lat, lon):
            continue
        raw_points[shape_id].append((seq if seq is not None else 0, lat, lon))
    for shape_id, pts in raw_points.items():
        pts.sort(key=lambda p: p[0])
        index.shapes[shape_id] = [(lat, lon) for _, lat, lon in pts]

    index._index()
    index.loaded_at = time.time()
    stats = index.stats()
    print(
        f"[transit_index] loaded {stats['routes']} routes, {stats['stops']} stops, "
        f"{stats['shapes']} shapes ({stats['shape_points']} points)"
    )
    return index
