import sys
from pathlib import Path
from typing import Dict, List, Tuple

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from transit_index import GTFSPaths, load_transit_index  # noqa: E402


# Newcastle centre, east-west through the Monument area
CENTRAL_LAT = 54.9783
# Gateshead, parallel to the Tyne
SOUTH_LAT = 54.9500
# Sunderland city centre
SUNDERLAND_LAT = 54.9050


def _line(lat: float, lon_start: float, lon_end: float, step: float = 0.0005) -> List[Tuple[float, float]]:
    pts = []
    lon = lon_start
    while lon <= lon_end + 1e-9:
        pts.append((lat, round(lon, 6)))
        lon += step
    return pts


SHAPES: Dict[str, List[Tuple[float, float]]] = {
    "S_CENTRAL": _line(CENTRAL_LAT, -1.6250, -1.6100),
    "S_SOUTH": _line(SOUTH_LAT, -1.6300, -1.6250),
    # Deliberately shared by a Newcastle-only route to exercise exclusion
    "S_SUND": _line(SUNDERLAND_LAT, -1.3850, -1.3800),
    # Leeds; outside the network box and dropped at load
    "S_FAR": _line(53.8000, -1.5500, -1.5450),
}

ROUTES = [
    ("R_Q3", "Q3"),
    ("R_10", "10"),
    ("R_21", "21"),
    ("R_22", "22"),
    ("R_16", "16"),
    ("R_99", "99"),
]

TRIPS = [
    ("R_Q3", "T1", "S_CENTRAL"),
    ("R_10", "T2", "S_CENTRAL"),
    ("R_21", "T3", "S_SOUTH"),
    ("R_22", "T4", "S_SOUTH"),
    ("R_16", "T5", "S_SUND"),
    ("R_Q3", "T6", "S_SUND"),
    ("R_99", "T7", "S_FAR"),
]

STOPS = [
    ("ST_MON", "Monument", 54.9740, -1.6132),
    ("ST_GATE", "Gateshead Interchange", 54.9515, -1.6275),
    ("ST_DUR", "Durham Bus Station", 54.7790, -1.5790),
    ("ST_FAR", "Leeds City Bus Station", 53.7960, -1.5370),
]


def write_gtfs(directory: Path, *, stops=STOPS, routes=ROUTES, trips=TRIPS, shapes=SHAPES) -> GTFSPaths:
    directory.mkdir(parents=True, exist_ok=True)
    lines = ["route_id,route_short_name,route_long_name,route_type"]
    lines += [f"{rid},{short},{short} service,3" for rid, short in routes]
    (directory / "routes.txt").write_text("\n".join(lines) + "\n", encoding="utf-8")

    lines = ["stop_id,stop_name,stop_lat,stop_lon"]
    lines += [f"{sid},{name},{lat},{lon}" for sid, name, lat, lon in stops]
    (directory / "stops.txt").write_text("\n".join(lines) + "\n", encoding="utf-8")

    lines = ["route_id,service_id,trip_id,shape_id"]
    lines += [f"{rid},WK,{tid},{shp}" for rid, tid, shp in trips]
    (directory / "trips.txt").write_text("\n".join(lines) + "\n", encoding="utf-8")

    lines = ["shape_id,shape_pt_lat,shape_pt_lon,shape_pt_sequence"]
    for shape_id, pts in shapes.items():
        lines += [f"{shape_id},{lat},{lon},{seq}" for seq, (lat, lon) in enumerate(pts, start=1)]
    (directory / "shapes.txt").write_text("\n".join(lines) + "\n", encoding="utf-8")
    return GTFSPaths.from_dir(directory)


@pytest.fixture
def gtfs_paths(tmp_path):
    return write_gtfs(tmp_path / "gtfs")


@pytest.fixture
def transit_index(gtfs_paths):
    return load_transit_index(gtfs_paths)
