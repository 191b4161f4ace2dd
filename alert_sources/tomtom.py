"""TomTom Traffic API v5 incident details."""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Tuple

import httpx

from alert_models import KIND_CONGESTION, KIND_INCIDENT, KIND_ROADWORK, RawIncidentRecord

from . import USER_AGENT, IncidentSource, as_float, clean_text, parse_timestamp

TOMTOM_INCIDENTS_URL = "https://api.tomtom.com/traffic/services/5/incidentDetails"

# minLon,minLat,maxLon,maxLat over the whole network, well under the 10,000 km2 cap
TOMTOM_BBOX = "-2.10,54.75,-1.35,55.05"

TOMTOM_FIELDS = (
    "{incidents{type,geometry{type,coordinates},properties{id,iconCategory,"
    "magnitudeOfDelay,events{description,code},startTime,endTime,from,to,"
    "roadNumbers,timeValidity}}}"
)

# iconCategory -> (kind, label)
ICON_CATEGORIES: Dict[int, Tuple[str, str]] = {
    0: (KIND_INCIDENT, "Traffic Incident"),
    1: (KIND_INCIDENT, "Accident"),
    2: (KIND_INCIDENT, "Fog"),
    3: (KIND_INCIDENT, "Dangerous Conditions"),
    4: (KIND_INCIDENT, "Rain"),
    5: (KIND_INCIDENT, "Ice"),
    6: (KIND_CONGESTION, "Queuing Traffic"),
    7: (KIND_ROADWORK, "Lane Closed"),
    8: (KIND_ROADWORK, "Road Closed"),
    9: (KIND_ROADWORK, "Road Works"),
    10: (KIND_INCIDENT, "Wind"),
    11: (KIND_INCIDENT, "Flooding"),
    14: (KIND_INCIDENT, "Broken Down Vehicle"),
}


def _first_point(geometry: Dict[str, Any]) -> Tuple[Optional[float], Optional[float]]:
    coords = geometry.get("coordinates") or []
    if geometry.get("type") == "LineString" and coords:
        coords = coords[0]
    if isinstance(coords, (list, tuple)) and len(coords) >= 2:
        # GeoJSON order is lon, lat
        return as_float(coords[1]), as_float(coords[0])
    return None, None


def parse_tomtom_incident(feature: Dict[str, Any]) -> Optional[RawIncidentRecord]:
    props = feature.get("properties") or {}
    incident_id = props.get("id")
    if not incident_id:
        return None
    lat, lon = _first_point(feature.get("geometry") or {})
    icon = props.get("iconCategory")
    try:
        icon = int(icon)
    except (TypeError, ValueError):
        icon = 0
    kind, label = ICON_CATEGORIES.get(icon, (KIND_INCIDENT, "Traffic Incident"))

    events = props.get("events") or []
    description = "; ".join(clean_text(e.get("description")) for e in events if e.get("description"))
    road_numbers = [str(r) for r in props.get("roadNumbers") or [] if r]
    place_from = clean_text(props.get("from"))
    place_to = clean_text(props.get("to"))
    hint_parts = []
    if road_numbers:
        hint_parts.append("/".join(road_numbers))
    if place_from and place_to and place_from != place_to:
        hint_parts.append(f"{place_from} to {place_to}")
    elif place_from:
        hint_parts.append(place_from)

    status_hint = None
    if props.get("timeValidity") == "past":
        status_hint = "cleared"

    return RawIncidentRecord(
        provider=TomTomSource.name,
        provider_id=str(incident_id),
        kind=kind,
        category=label,
        severity_hint=str(icon),
        lat=lat,
        lon=lon,
        title=label if not road_numbers else f"{label} on {road_numbers[0]}",
        description=description or label,
        location_hint=", ".join(hint_parts),
        start_time=parse_timestamp(props.get("startTime")),
        end_time=parse_timestamp(props.get("endTime")),
        status_hint=status_hint,
    )


class TomTomSource(IncidentSource):
    name = "tomtom"

    def __init__(self, api_key: str, base_url: str = TOMTOM_INCIDENTS_URL, bbox: str = TOMTOM_BBOX, **kwargs):
        super().__init__(**kwargs)
        self._api_key = api_key
        self.base_url = base_url
        self.bbox = bbox

    @classmethod
    def from_env(cls) -> "TomTomSource":
        api_key = os.getenv("TOMTOM_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("Missing TOMTOM_API_KEY environment variable")
        return cls(api_key=api_key)

    async def fetch_records(self, client: httpx.AsyncClient) -> List[RawIncidentRecord]:
        resp = await client.get(
            self.base_url,
            params={
                "key": self._api_key,
                "bbox": self.bbox,
                "fields": TOMTOM_FIELDS,
                "language": "en-GB",
                "timeValidityFilter": "present",
            },
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        )
        resp.raise_for_status()
        payload = resp.json()
        records: List[RawIncidentRecord] = []
        for feature in payload.get("incidents") or []:
            record = parse_tomtom_incident(feature)
            if record is not None:
                records.append(record)
        return records
