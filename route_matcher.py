"""
Tiered incident-to-route matching.

Each tier is a pure function of (coords, hint, index, policy). Tiers are
tried in order and the first one whose result survives the geographic
exclusion filter wins, so the reported ``MatchMethod`` always names the
tier that actually produced the routes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from alert_models import LatLon, MatchMethod, RouteAccuracy, accuracy_for_method
from route_policy import DEFAULT_POLICY, RoutePolicy
from transit_index import TransitReferenceIndex

SHAPE_RADIUS_M = 250.0
STOP_RADIUS_M = 150.0


@dataclass(frozen=True)
class RouteMatch:
    routes: Tuple[str, ...]
    method: MatchMethod

    @property
    def accuracy(self) -> RouteAccuracy:
        return accuracy_for_method(self.method)

    def to_dict(self) -> dict:
        return {
            "routes": list(self.routes),
            "method": self.method.value,
            "accuracy": self.accuracy.value,
        }


NO_MATCH = RouteMatch((), MatchMethod.NONE)

Strategy = Callable[[Optional[LatLon], str, TransitReferenceIndex, RoutePolicy], Optional[List[str]]]


def match_shape_geometry(coords, hint, index, policy) -> Optional[List[str]]:
    if coords is None:
        return None
    routes: set = set()
    for hit in index.shape_points_within(coords.lat, coords.lon, SHAPE_RADIUS_M):
        routes.update(index.routes_for_shape(hit.shape_id))
    return sorted(routes) or None


def match_stop_proximity(coords, hint, index, policy) -> Optional[List[str]]:
    if coords is None:
        return None
    routes: set = set()
    for hit in index.stops_within(coords.lat, coords.lon, STOP_RADIUS_M):
        routes.update(index.stop_routes(hit.stop.stop_id))
    return sorted(routes) or None


def match_region_fallback(coords, hint, index, policy) -> Optional[List[str]]:
    if coords is not None:
        region = policy.region_for_point(coords.lat, coords.lon)
    else:
        region = policy.region_for_text(hint)
    if region is None:
        return None
    return sorted(set(region.routes))


def match_text_pattern(coords, hint, index, policy) -> Optional[List[str]]:
    # Only for feeds that never carry coordinates.
    if coords is not None:
        return None
    return policy.keyword_routes(hint) or None


DEFAULT_STRATEGIES: Tuple[Tuple[MatchMethod, Strategy], ...] = (
    (MatchMethod.SHAPE_GEOMETRY, match_shape_geometry),
    (MatchMethod.STOP_PROXIMITY, match_stop_proximity),
    (MatchMethod.REGION_FALLBACK, match_region_fallback),
    (MatchMethod.TEXT_PATTERN, match_text_pattern),
)


class RouteMatcher:
    def __init__(
        self,
        index: TransitReferenceIndex,
        policy: RoutePolicy = DEFAULT_POLICY,
        strategies: Sequence[Tuple[MatchMethod, Strategy]] = DEFAULT_STRATEGIES,
    ):
        self.index = index
        self.policy = policy
        self.strategies = tuple(strategies)

    def match(self, coords: Optional[LatLon], location_hint: str = "") -> RouteMatch:
        hint = location_hint or ""
        lat = coords.lat if coords is not None else None
        lon = coords.lon if coords is not None else None
        excluded = self.policy.excluded_routes(lat, lon, hint)
        for method, strategy in self.strategies:
            routes = strategy(coords, hint, self.index, self.policy)
            if not routes:
                continue
            kept = sorted({r for r in routes if r not in excluded})
            if kept:
                return RouteMatch(tuple(kept), method)
        return NO_MATCH
