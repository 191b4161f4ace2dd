"""
Route matching policy for the Go North East network.

Data-only tables consulted by ``route_matcher`` and ``location_resolver``:
the region fallback table, the road/place keyword table used for text-only
incidents, and the cross-region exclusion table. Bump ``POLICY_VERSION``
whenever any table changes so matches can be traced to the rules that
produced them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Sequence, Tuple

from transit_index import BoundingBox, haversine, NETWORK_MACRO_BBOX

POLICY_VERSION = "2025.06-1"

NETWORK_NAME = "North East England"

# Incident coordinates outside this box are not kept on the emitted alert.
OPERATING_BBOX = NETWORK_MACRO_BBOX


def _kw(*words: str) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(rf"\b{re.escape(w)}\b") for w in words)


@dataclass(frozen=True)
class Region:
    name: str
    bbox: BoundingBox
    routes: Tuple[str, ...]
    keywords: Tuple[Pattern[str], ...] = ()

    def matches_text(self, text: str) -> bool:
        return any(p.search(text) for p in self.keywords)


@dataclass(frozen=True)
class MacroRegion:
    """Coarse area used for location naming and route exclusion."""
    key: str
    name: str
    bbox: BoundingBox
    center: Tuple[float, float]
    keywords: Tuple[Pattern[str], ...] = ()
    excluded_routes: Tuple[str, ...] = ()
    exclusion_bbox: Optional[BoundingBox] = None

    def matches_text(self, text: str) -> bool:
        return any(p.search(text) for p in self.keywords)


# Ordered: when boxes overlap the earlier entry wins. Newcastle Centre
# therefore shadows the top of the A1 corridor, and Gateshead shadows the
# Newcastle/Gateshead seam south of 54.96.
REGIONS: Tuple[Region, ...] = (
    Region(
        "Newcastle Centre",
        BoundingBox(south=54.96, north=55.0, west=-1.64, east=-1.58),
        ("Q3", "Q3X", "10", "10A", "10B", "12", "21", "22", "27", "28", "29", "47", "53", "54", "56", "57", "58"),
        _kw("newcastle", "city centre", "haymarket", "eldon square"),
    ),
    Region(
        "Gateshead",
        BoundingBox(south=54.93, north=54.97, west=-1.7, east=-1.6),
        ("10", "10A", "10B", "27", "28", "28B", "Q3", "Q3X", "53", "54"),
        _kw("gateshead", "metro centre", "team valley"),
    ),
    Region(
        "North Tyneside",
        BoundingBox(south=55.0, north=55.05, west=-1.5, east=-1.4),
        ("1", "2", "307", "309", "317", "327", "352", "354", "355", "356"),
        _kw("north tyneside", "north shields", "whitley bay", "wallsend", "tynemouth"),
    ),
    Region(
        "Sunderland",
        BoundingBox(south=54.88, north=54.93, west=-1.42, east=-1.35),
        ("16", "20", "24", "35", "36", "56", "61", "62", "63", "700", "701", "9"),
        _kw("sunderland"),
    ),
    Region(
        "Durham",
        BoundingBox(south=54.75, north=54.88, west=-1.6, east=-1.5),
        ("21", "22", "X21", "6", "50", "28"),
        (re.compile(r"\bdurham\b(?!\s+road)"), re.compile(r"\bchester[- ]le[- ]street\b")),
    ),
    Region(
        "Consett",
        BoundingBox(south=54.82, north=54.87, west=-1.9, east=-1.8),
        ("X30", "X31", "X70", "X71", "X71A", "74", "84", "85"),
        _kw("consett", "stanley"),
    ),
    Region(
        "A1 Corridor",
        BoundingBox(south=54.8, north=55.0, west=-1.65, east=-1.55),
        ("21", "X21", "25", "28", "28B"),
        _kw("a1", "western bypass"),
    ),
    Region(
        "A19 Corridor",
        BoundingBox(south=54.9, north=55.1, west=-1.55, east=-1.35),
        ("1", "2", "9", "307", "309", "56"),
        _kw("a19", "tyne tunnel"),
    ),
)


# Specific roads and places, searched only when an incident has no
# coordinates. Every matching entry contributes its routes.
ROAD_KEYWORDS: Tuple[Tuple[Pattern[str], Tuple[str, ...]], ...] = tuple(
    (re.compile(rf"\b{re.escape(word)}\b"), tuple(routes))
    for word, routes in (
        ("a1", ("21", "X21", "25", "28", "28B", "X25")),
        ("a19", ("1", "2", "307", "309", "317", "56", "9")),
        ("a167", ("21", "22", "X21", "6", "50")),
        ("a184", ("1", "2", "307", "309", "327")),
        ("a693", ("X30", "X31", "74", "84")),
        ("a696", ("74", "43", "44")),
        ("central motorway", ("Q3", "Q3X", "10", "12", "21")),
        ("newgate street", ("Q3", "Q3X", "10", "12")),
        ("grainger street", ("Q3", "Q3X", "10", "12")),
        ("collingwood street", ("Q3", "Q3X", "10", "12")),
        ("grey street", ("Q3", "Q3X", "10", "12")),
        ("northumberland street", ("Q3", "Q3X", "10", "12")),
        ("durham road", ("21", "22", "X21", "6")),
        ("west road", ("X82", "X84", "X85")),
        ("gosforth high street", ("1", "2")),
        ("coast road", ("1", "2", "307", "309")),
        ("shields road", ("27", "28")),
        ("saltwell road", ("53", "54")),
        ("chester road", ("20", "24", "35")),
        ("fawcett street", ("16", "20", "61")),
        ("park lane", ("16", "20", "24", "35", "36")),
        ("tyne bridge", ("Q3", "Q3X", "10", "21")),
        ("king edward bridge", ("21", "22")),
        ("swing bridge", ("Q3", "Q3X")),
        ("millennium bridge", ("Q3", "Q3X")),
        ("redheugh bridge", ("21", "27", "28")),
        ("metro centre", ("10", "10A", "10B", "27", "28")),
        ("angel of the north", ("21", "X21", "25")),
        ("newcastle", ("Q3", "Q3X", "10", "10A", "10B", "12", "21", "22", "27", "28", "29")),
        ("gateshead", ("10", "10A", "10B", "21", "27", "28", "28B", "Q3", "Q3X", "53", "54")),
        ("sunderland", ("16", "18", "20", "24", "35", "36", "56", "61", "62", "63")),
        ("durham", ("21", "22", "X21", "6", "7", "50")),
        ("consett", ("X30", "X31", "X70", "X71", "X71A", "74", "84", "85")),
        ("stanley", ("X30", "X31", "8", "78")),
        ("chester le street", ("21", "22", "X21", "25", "28")),
        ("washington", ("2A", "2B", "4", "85", "86", "X1")),
        ("hebburn", ("27", "28", "28B")),
        ("jarrow", ("27", "28", "526")),
        ("south shields", ("1", "2", "11", "17")),
        ("whitley bay", ("308", "309", "311")),
        ("cramlington", ("43", "44", "45")),
        ("blyth", ("1", "2", "308")),
    )
)


# Macro-regions used for naming a location and for dropping routes that do
# not run there. Naming uses ``bbox``; exclusion uses the tighter
# ``exclusion_bbox`` observed from the network.
MACRO_REGIONS: Tuple[MacroRegion, ...] = (
    MacroRegion(
        "newcastle",
        "Newcastle/Gateshead",
        BoundingBox(south=54.90, north=55.00, west=-1.75, east=-1.55),
        (54.9783, -1.6178),
        _kw("newcastle", "gateshead"),
    ),
    MacroRegion(
        "sunderland",
        "Sunderland/Washington",
        BoundingBox(south=54.85, north=54.95, west=-1.55, east=-1.35),
        (54.9069, -1.3838),
        _kw("sunderland"),
        ("Q3", "Q3X", "10", "10A", "10B", "12"),
        BoundingBox(south=54.88, north=54.95, west=-1.42, east=-1.35),
    ),
    MacroRegion(
        "northTyneside",
        "North Tyneside/Coast",
        BoundingBox(south=54.95, north=55.05, west=-1.55, east=-1.40),
        (55.0174, -1.4234),
        _kw("north tyneside", "north shields", "whitley bay", "tynemouth"),
    ),
    MacroRegion(
        "durham",
        "Durham/Chester-le-Street",
        BoundingBox(south=54.75, north=54.85, west=-1.65, east=-1.55),
        (54.7761, -1.5756),
        (re.compile(r"\bdurham\b(?!\s+road)"),),
        ("1", "2", "307", "309", "43", "44"),
        BoundingBox(south=54.75, north=54.85, west=-1.6, east=-1.5),
    ),
    MacroRegion(
        "consett",
        "Consett/Stanley",
        BoundingBox(south=54.85, north=54.90, west=-1.85, east=-1.75),
        (54.8691, -1.8316),
        _kw("consett"),
        ("1", "2", "307", "309"),
        BoundingBox(south=54.82, north=54.87, west=-1.9, east=-1.8),
    ),
    MacroRegion(
        "hexham",
        "Hexham/West Northumberland",
        BoundingBox(south=54.95, north=55.00, west=-2.15, east=-1.95),
        (54.9722, -2.1000),
        _kw("hexham"),
    ),
)


@dataclass
class RoutePolicy:
    """Bundles the tables so tests can inject smaller ones."""
    regions: Sequence[Region] = REGIONS
    road_keywords: Sequence[Tuple[Pattern[str], Tuple[str, ...]]] = ROAD_KEYWORDS
    macro_regions: Sequence[MacroRegion] = MACRO_REGIONS
    operating_bbox: BoundingBox = OPERATING_BBOX
    version: str = POLICY_VERSION

    def region_for_point(self, lat: float, lon: float) -> Optional[Region]:
        for region in self.regions:
            if region.bbox.contains(lat, lon):
                return region
        return None

    def region_for_text(self, text: str) -> Optional[Region]:
        lowered = (text or "").lower()
        if not lowered:
            return None
        for region in self.regions:
            if region.matches_text(lowered):
                return region
        return None

    def keyword_routes(self, text: str) -> List[str]:
        lowered = (text or "").lower()
        found: set = set()
        for pattern, routes in self.road_keywords:
            if pattern.search(lowered):
                found.update(routes)
        return sorted(found)

    def excluded_routes(self, lat: Optional[float], lon: Optional[float], text: str) -> set:
        lowered = (text or "").lower()
        excluded: set = set()
        for macro in self.macro_regions:
            if not macro.excluded_routes:
                continue
            box = macro.exclusion_bbox or macro.bbox
            in_box = lat is not None and lon is not None and box.contains(lat, lon)
            if in_box or macro.matches_text(lowered):
                excluded.update(macro.excluded_routes)
        return excluded

    def macro_region_name(self, lat: Optional[float], lon: Optional[float], text: str = "") -> Optional[str]:
        """Name the coarse area: bbox first, then nearest centre, then hint keywords."""
        if lat is not None and lon is not None:
            for macro in self.macro_regions:
                if macro.bbox.contains(lat, lon):
                    return macro.name
            if self.operating_bbox.contains(lat, lon):
                nearest = min(self.macro_regions, key=lambda m: haversine((lat, lon), m.center))
                return nearest.name
            return None
        lowered = (text or "").lower()
        for macro in self.macro_regions:
            if macro.matches_text(lowered):
                return macro.name
        return None


DEFAULT_POLICY = RoutePolicy()
