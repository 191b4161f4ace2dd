"""
Severity and status classification, expiry, and cross-provider deduplication.
"""

from __future__ import annotations

import re
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from alert_models import (
    STATUS_ACTIVE,
    STATUS_CLEARED,
    CanonicalAlert,
    RawIncidentRecord,
    Severity,
    best_method,
)

DEDUP_BUCKET_S = 600

# Provider vocabulary -> severity. Unknown values fall back to Medium.
SEVERITY_TABLES: Dict[str, Dict[str, Severity]] = {
    # iconCategory
    "tomtom": {
        "0": Severity.MEDIUM,
        "1": Severity.HIGH,
        "2": Severity.LOW,
        "3": Severity.MEDIUM,
        "4": Severity.LOW,
        "5": Severity.MEDIUM,
        "6": Severity.MEDIUM,
        "7": Severity.MEDIUM,
        "8": Severity.HIGH,
        "9": Severity.MEDIUM,
        "10": Severity.LOW,
        "11": Severity.HIGH,
        "14": Severity.MEDIUM,
    },
    # criticality, numeric in older payloads and named in v7
    "here": {
        "0": Severity.LOW,
        "1": Severity.MEDIUM,
        "2": Severity.HIGH,
        "3": Severity.HIGH,
        "lowimpact": Severity.LOW,
        "minor": Severity.MEDIUM,
        "major": Severity.HIGH,
        "critical": Severity.HIGH,
    },
    "mapquest": {
        "0": Severity.LOW,
        "1": Severity.LOW,
        "2": Severity.MEDIUM,
        "3": Severity.HIGH,
        "4": Severity.HIGH,
    },
}

# Free-text vocabularies: first keyword found in the hint decides.
SEVERITY_KEYWORDS: Dict[str, Tuple[Tuple[str, Severity], ...]] = {
    "national_highways": (("closure", Severity.HIGH),),
    "traffic_rss": (("closure", Severity.HIGH),),
}

# Incidents with no end time are dropped once they are this old.
MAX_AGE_BY_SEVERITY: Dict[Severity, timedelta] = {
    Severity.LOW: timedelta(hours=2),
    Severity.MEDIUM: timedelta(hours=4),
    Severity.HIGH: timedelta(hours=8),
}

# Higher wins when picking the title/description/id of a merged alert.
SOURCE_PREFERENCE: Dict[str, int] = {
    "tomtom": 5,
    "here": 4,
    "national_highways": 3,
    "mapquest": 2,
    "traffic_rss": 1,
}


def classify_severity(provider: str, hint: Optional[str]) -> Severity:
    key = (hint or "").strip().lower()
    table = SEVERITY_TABLES.get(provider)
    if table is not None and key in table:
        return table[key]
    for keyword, severity in SEVERITY_KEYWORDS.get(provider, ()):
        if keyword in key:
            return severity
    return Severity.MEDIUM


def classify_status(record: RawIncidentRecord, now: datetime) -> str:
    if (record.status_hint or "").lower() == STATUS_CLEARED:
        return STATUS_CLEARED
    if record.end_time is not None and record.end_time <= now:
        return STATUS_CLEARED
    return STATUS_ACTIVE


def is_expired(record: RawIncidentRecord, severity: Severity, now: datetime) -> bool:
    if record.end_time is not None or record.start_time is None:
        return False
    return now - record.start_time > MAX_AGE_BY_SEVERITY[severity]


_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


def normalise_location(location: str) -> str:
    text = _PUNCT_RE.sub(" ", (location or "").lower())
    return _SPACE_RE.sub(" ", text).strip()


def dedup_key(alert: CanonicalAlert) -> Tuple[str, str, int]:
    ts = alert.first_reported
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return (normalise_location(alert.location), alert.kind, int(ts.timestamp()) // DEDUP_BUCKET_S)


def _preference(alert: CanonicalAlert) -> Tuple[int, str]:
    best = max((SOURCE_PREFERENCE.get(s, 0) for s in alert.sources), default=0)
    return (best, alert.id)


def merge_alerts(group: List[CanonicalAlert]) -> CanonicalAlert:
    if len(group) == 1:
        return group[0]
    preferred = max(group, key=_preference)
    coords = preferred.coordinates
    if coords is None:
        coords = next((a.coordinates for a in group if a.coordinates is not None), None)
    sources = sorted({s for a in group for s in a.sources})
    routes = sorted({r for a in group for r in a.affects_routes})
    severity = max((a.severity for a in group), key=lambda s: s.rank)
    status = STATUS_ACTIVE if any(a.status == STATUS_ACTIVE for a in group) else STATUS_CLEARED
    return replace(
        preferred,
        coordinates=coords,
        sources=tuple(sources),
        affects_routes=tuple(routes),
        route_match_method=best_method([a.route_match_method for a in group]),
        severity=severity,
        status=status,
        first_reported=min(a.first_reported for a in group),
        last_updated=max(a.last_updated for a in group),
    )


def deduplicate(alerts: Iterable[CanonicalAlert]) -> List[CanonicalAlert]:
    """Collapse alerts describing the same incident into one.

    Two alerts are the same incident when their normalised location, kind
    and 10-minute reporting bucket agree. Running this twice gives the same
    result as running it once.
    """
    groups: Dict[Tuple[str, str, int], List[CanonicalAlert]] = {}
    for alert in alerts:
        groups.setdefault(dedup_key(alert), []).append(alert)
    merged = [merge_alerts(group) for group in groups.values()]
    merged.sort(key=lambda a: (-a.severity.rank, -a.last_updated.timestamp(), a.id))
    return merged
