"""HERE Traffic API v7 incidents."""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Tuple

import httpx

from alert_models import KIND_CONGESTION, KIND_INCIDENT, KIND_ROADWORK, RawIncidentRecord

from . import USER_AGENT, IncidentSource, as_float, clean_text, parse_timestamp

HERE_INCIDENTS_URL = "https://data.traffic.hereapi.com/v7/incidents"

# Newcastle city centre, 25 km covers the core network
HERE_AREA = "circle:54.9783,-1.6178;r=25000"

_ROADWORK_TYPES = {"construction", "plannedEvent", "laneRestriction", "roadClosure"}
_CONGESTION_TYPES = {"congestion", "slowTraffic", "massTransit"}


def _first_point(location: Dict[str, Any]) -> Tuple[Optional[float], Optional[float]]:
    links = (location.get("shape") or {}).get("links") or []
    for link in links:
        points = link.get("points") or []
        if points:
            return as_float(points[0].get("lat")), as_float(points[0].get("lng"))
    coords = (location.get("geometry") or {}).get("coordinates")
    if isinstance(coords, (list, tuple)) and len(coords) >= 2:
        return as_float(coords[1]), as_float(coords[0])
    return None, None


def parse_here_incident(result: Dict[str, Any]) -> Optional[RawIncidentRecord]:
    details = result.get("incidentDetails") or result
    incident_id = details.get("id") or result.get("id")
    if not incident_id:
        return None
    location = result.get("location") or {}
    lat, lon = _first_point(location)

    incident_type = str(details.get("type") or "")
    if incident_type in _ROADWORK_TYPES:
        kind = KIND_ROADWORK
    elif incident_type in _CONGESTION_TYPES:
        kind = KIND_CONGESTION
    else:
        kind = KIND_INCIDENT

    description = clean_text(details.get("description")) or clean_text(details.get("summary"))
    summary = clean_text(details.get("summary")) or description
    hint = clean_text(location.get("description"))
    if not hint:
        links = (location.get("shape") or {}).get("links") or []
        if links:
            hint = clean_text(links[0].get("roadName"))

    criticality = details.get("criticality")
    return RawIncidentRecord(
        provider=HereSource.name,
        provider_id=str(incident_id),
        kind=kind,
        category=incident_type or "incident",
        severity_hint="" if criticality is None else str(criticality),
        lat=lat,
        lon=lon,
        title=summary or "Traffic Incident",
        description=description or summary or "Traffic Incident",
        location_hint=hint,
        start_time=parse_timestamp(details.get("startTime")),
        end_time=parse_timestamp(details.get("endTime")),
    )


class HereSource(IncidentSource):
    name = "here"

    def __init__(self, api_key: str, base_url: str = HERE_INCIDENTS_URL, area: str = HERE_AREA, **kwargs):
        super().__init__(**kwargs)
        self._api_key = api_key
        self.base_url = base_url
        self.area = area

    @classmethod
    def from_env(cls) -> "HereSource":
        api_key = os.getenv("HERE_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("Missing HERE_API_KEY environment variable")
        return cls(api_key=api_key)

    async def fetch_records(self, client: httpx.AsyncClient) -> List[RawIncidentRecord]:
        resp = await client.get(
            self.base_url,
            params={
                "apiKey": self._api_key,
                "in": self.area,
                "locationReferencing": "shape",
            },
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        )
        resp.raise_for_status()
        payload = resp.json()
        records: List[RawIncidentRecord] = []
        for result in payload.get("results") or []:
            record = parse_here_incident(result)
            if record is not None:
                records.append(record)
        return records
