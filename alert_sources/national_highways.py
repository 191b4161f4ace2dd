"""National Highways road closures (text only, no coordinates)."""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import httpx

from alert_models import KIND_INCIDENT, KIND_ROADWORK, RawIncidentRecord

from . import USER_AGENT, IncidentSource, clean_text, parse_timestamp

NATIONAL_HIGHWAYS_CLOSURES_URL = "https://api.data.nationalhighways.co.uk/roads/v2.0/closures"


def parse_closure(feature: Dict[str, Any]) -> Optional[RawIncidentRecord]:
    props = feature.get("properties") or feature
    closure_id = props.get("id") or feature.get("id")
    if not closure_id:
        return None
    category = clean_text(props.get("category"))
    lowered = category.lower()
    kind = KIND_INCIDENT if "incident" in lowered else KIND_ROADWORK
    title = clean_text(props.get("title")) or clean_text(props.get("description")) or "National Highways Closure"
    description = (
        clean_text(props.get("description"))
        or clean_text(props.get("comment"))
        or "Planned closure or roadworks"
    )
    status = clean_text(props.get("status")).lower()
    return RawIncidentRecord(
        provider=NationalHighwaysSource.name,
        provider_id=str(closure_id),
        kind=kind,
        category=category,
        severity_hint=category,
        title=title,
        description=description,
        location_hint=clean_text(props.get("location")) or clean_text(props.get("road")),
        start_time=parse_timestamp(props.get("startDate")),
        end_time=parse_timestamp(props.get("endDate")),
        status_hint="cleared" if status in ("closed", "cleared", "cancelled", "completed") else None,
    )


class NationalHighwaysSource(IncidentSource):
    name = "national_highways"

    def __init__(self, api_key: str, base_url: str = NATIONAL_HIGHWAYS_CLOSURES_URL, **kwargs):
        super().__init__(**kwargs)
        self._api_key = api_key
        self.base_url = base_url

    @classmethod
    def from_env(cls) -> "NationalHighwaysSource":
        api_key = os.getenv("NATIONAL_HIGHWAYS_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("Missing NATIONAL_HIGHWAYS_API_KEY environment variable")
        return cls(api_key=api_key)

    async def fetch_records(self, client: httpx.AsyncClient) -> List[RawIncidentRecord]:
        resp = await client.get(
            self.base_url,
            headers={
                "Ocp-Apim-Subscription-Key": self._api_key,
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            },
        )
        resp.raise_for_status()
        payload = resp.json()
        if not isinstance(payload, dict) or "features" not in payload:
            raise ValueError("no features in National Highways response")
        records: List[RawIncidentRecord] = []
        for feature in payload.get("features") or []:
            record = parse_closure(feature)
            if record is not None:
                records.append(record)
        return records
