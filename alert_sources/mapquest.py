"""MapQuest Traffic API v2 incidents."""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import httpx

from alert_models import KIND_CONGESTION, KIND_INCIDENT, KIND_ROADWORK, RawIncidentRecord

from . import USER_AGENT, IncidentSource, as_float, clean_text, parse_timestamp

MAPQUEST_INCIDENTS_URL = "https://www.mapquestapi.com/traffic/v2/incidents"

# north,west,south,east
MAPQUEST_BOUNDING_BOX = "55.05,-2.10,54.75,-1.35"

# MapQuest incident type codes
TYPE_CONSTRUCTION = 1
TYPE_EVENT = 2
TYPE_CONGESTION = 3
TYPE_INCIDENT = 4


def parse_mapquest_incident(incident: Dict[str, Any]) -> Optional[RawIncidentRecord]:
    incident_id = incident.get("id")
    if incident_id in (None, ""):
        return None
    try:
        incident_type = int(incident.get("type"))
    except (TypeError, ValueError):
        incident_type = TYPE_INCIDENT
    if incident_type == TYPE_CONSTRUCTION:
        kind = KIND_ROADWORK
    elif incident_type == TYPE_CONGESTION:
        kind = KIND_CONGESTION
    else:
        kind = KIND_INCIDENT

    short_desc = clean_text(incident.get("shortDesc"))
    full_desc = clean_text(incident.get("fullDesc"))
    severity = incident.get("severity")
    return RawIncidentRecord(
        provider=MapQuestSource.name,
        provider_id=str(incident_id),
        kind=kind,
        category=str(incident_type),
        severity_hint="" if severity is None else str(severity),
        lat=as_float(incident.get("lat")),
        lon=as_float(incident.get("lng")),
        title=short_desc or "Traffic Incident",
        description=full_desc or short_desc or "Traffic incident reported",
        location_hint=clean_text(incident.get("street")) or short_desc,
        start_time=parse_timestamp(incident.get("startTime")),
        end_time=parse_timestamp(incident.get("endTime")),
    )


class MapQuestSource(IncidentSource):
    name = "mapquest"

    def __init__(
        self,
        api_key: str,
        base_url: str = MAPQUEST_INCIDENTS_URL,
        bounding_box: str = MAPQUEST_BOUNDING_BOX,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._api_key = api_key
        self.base_url = base_url
        self.bounding_box = bounding_box

    @classmethod
    def from_env(cls) -> "MapQuestSource":
        api_key = os.getenv("MAPQUEST_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("Missing MAPQUEST_API_KEY environment variable")
        return cls(api_key=api_key)

    async def fetch_records(self, client: httpx.AsyncClient) -> List[RawIncidentRecord]:
        resp = await client.get(
            self.base_url,
            params={
                "key": self._api_key,
                "boundingBox": self.bounding_box,
                "filters": "incidents,construction,congestion,event",
                "outFormat": "json",
            },
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        )
        resp.raise_for_status()
        payload = resp.json()
        info = payload.get("info") or {}
        status_code = info.get("statuscode")
        if status_code not in (None, 0):
            messages = info.get("messages") or []
            raise ValueError(f"MapQuest status {status_code}: {'; '.join(map(str, messages))}")
        records: List[RawIncidentRecord] = []
        for incident in payload.get("incidents") or []:
            record = parse_mapquest_incident(incident)
            if record is not None:
                records.append(record)
        return records
