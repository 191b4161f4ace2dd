"""
Canonical alert model shared by the sources, matcher and aggregator.

Every provider feed is normalised into ``RawIncidentRecord`` by its adapter,
then enhanced (location, routes), classified and deduplicated into
``CanonicalAlert`` values that the HTTP layer serialises with camelCase keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Severity(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class MatchMethod(str, Enum):
    SHAPE_GEOMETRY = "ShapeGeometry"
    STOP_PROXIMITY = "StopProximity"
    REGION_FALLBACK = "RegionFallback"
    TEXT_PATTERN = "TextPattern"
    NONE = "None"


class RouteAccuracy(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


# Accuracy is derived from the tier that fired, never set independently.
_ACCURACY_BY_METHOD: Dict[MatchMethod, RouteAccuracy] = {
    MatchMethod.SHAPE_GEOMETRY: RouteAccuracy.HIGH,
    MatchMethod.STOP_PROXIMITY: RouteAccuracy.MEDIUM,
    MatchMethod.REGION_FALLBACK: RouteAccuracy.LOW,
    MatchMethod.TEXT_PATTERN: RouteAccuracy.LOW,
    MatchMethod.NONE: RouteAccuracy.LOW,
}

# Lower is better; used when merging duplicates.
_METHOD_PRIORITY: Dict[MatchMethod, int] = {
    MatchMethod.SHAPE_GEOMETRY: 0,
    MatchMethod.STOP_PROXIMITY: 1,
    MatchMethod.REGION_FALLBACK: 2,
    MatchMethod.TEXT_PATTERN: 3,
    MatchMethod.NONE: 4,
}


def accuracy_for_method(method: MatchMethod) -> RouteAccuracy:
    return _ACCURACY_BY_METHOD[method]


def best_method(methods: List[MatchMethod]) -> MatchMethod:
    if not methods:
        return MatchMethod.NONE
    return min(methods, key=lambda m: _METHOD_PRIORITY[m])


KIND_INCIDENT = "incident"
KIND_ROADWORK = "roadwork"
KIND_CONGESTION = "congestion"
ALERT_KINDS = (KIND_INCIDENT, KIND_ROADWORK, KIND_CONGESTION)

STATUS_ACTIVE = "active"
STATUS_CLEARED = "cleared"


class ErrorKind(str, Enum):
    """Structured failure categories recorded in source/enhancement status."""
    SOURCE_UNAVAILABLE = "SourceUnavailable"
    SOURCE_TIMEOUT = "SourceTimeout"
    LOCATION_LOOKUP_FAILED = "LocationLookupFailed"


class ReferenceIndexNotLoaded(RuntimeError):
    """Static GTFS reference data could not be read; the service must not start."""


class CriticalPipelineFailure(RuntimeError):
    """Every source failed and there is no earlier alert set to fall back on."""


@dataclass(frozen=True)
class LatLon:
    lat: float
    lon: float

    def as_tuple(self) -> Tuple[float, float]:
        return (self.lat, self.lon)


@dataclass
class RawIncidentRecord:
    """One provider incident before enhancement. Discarded after normalisation."""
    provider: str
    provider_id: str
    kind: str = KIND_INCIDENT
    category: str = ""
    severity_hint: str = ""
    lat: Optional[float] = None
    lon: Optional[float] = None
    title: str = ""
    description: str = ""
    location_hint: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status_hint: Optional[str] = None

    @property
    def coords(self) -> Optional[LatLon]:
        if self.lat is None or self.lon is None:
            return None
        return LatLon(self.lat, self.lon)

    @property
    def alert_id(self) -> str:
        return f"{self.provider}_{self.provider_id}"


@dataclass
class FetchResult:
    """Uniform adapter output; a failed provider is data, not an exception."""
    success: bool
    data: List[RawIncidentRecord] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    duration_ms: int = 0

    @classmethod
    def failed(cls, error: str, kind: ErrorKind = ErrorKind.SOURCE_UNAVAILABLE, duration_ms: int = 0) -> "FetchResult":
        return cls(success=False, data=[], error=error, error_kind=kind, duration_ms=duration_ms)


@dataclass
class SourceStatus:
    success: bool
    count: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "count": self.count,
            "duration": self.duration_ms,
        }
        if self.error is not None:
            result["error"] = self.error
        if self.error_kind is not None:
            result["errorKind"] = self.error_kind.value
        return result


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class CanonicalAlert:
    id: str
    kind: str
    title: str
    description: str
    location: str
    severity: Severity
    status: str
    sources: Tuple[str, ...]
    affects_routes: Tuple[str, ...]
    route_match_method: MatchMethod
    first_reported: datetime
    last_updated: datetime
    coordinates: Optional[LatLon] = None
    location_source: str = ""

    @property
    def route_accuracy(self) -> RouteAccuracy:
        return accuracy_for_method(self.route_match_method)

    @property
    def display_location(self) -> str:
        if not self.affects_routes:
            return self.location
        return f"{self.location} - Routes: {', '.join(self.affects_routes)}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase JSON shape consumed by the dashboards."""
        coords = None
        if self.coordinates is not None:
            coords = {"lat": self.coordinates.lat, "lng": self.coordinates.lon}
        return {
            "id": self.id,
            "type": self.kind,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "displayLocation": self.display_location,
            "locationSource": self.location_source,
            "coordinates": coords,
            "severity": self.severity.value,
            "status": self.status,
            "sources": list(self.sources),
            "affectsRoutes": list(self.affects_routes),
            "routeMatchMethod": self.route_match_method.value,
            "routeAccuracy": self.route_accuracy.value,
            "firstReported": isoformat_utc(self.first_reported),
            "lastUpdated": isoformat_utc(self.last_updated),
        }


@dataclass
class AggregationCacheEntry:
    """One completed refresh: the alert set plus how each provider fared."""
    alerts: List[CanonicalAlert]
    source_status: Dict[str, SourceStatus]
    generated_at: datetime
    statistics: Dict[str, Any] = field(default_factory=dict)
    stale: bool = False

    def sources_dict(self) -> Dict[str, Dict[str, Any]]:
        return {name: status.to_dict() for name, status in sorted(self.source_status.items())}


__all__ = [
    "AggregationCacheEntry",
    "Severity",
    "MatchMethod",
    "RouteAccuracy",
    "ErrorKind",
    "ReferenceIndexNotLoaded",
    "CriticalPipelineFailure",
    "LatLon",
    "RawIncidentRecord",
    "FetchResult",
    "SourceStatus",
    "CanonicalAlert",
    "accuracy_for_method",
    "best_method",
    "isoformat_utc",
    "ALERT_KINDS",
    "KIND_INCIDENT",
    "KIND_ROADWORK",
    "KIND_CONGESTION",
    "STATUS_ACTIVE",
    "STATUS_CLEARED",
]
