"""Generic RSS 2.0 traffic feeds, optionally carrying ``georss:point``."""

from __future__ import annotations

import hashlib
import os
from typing import List, Optional, Sequence

import httpx
from bs4 import BeautifulSoup

from alert_models import KIND_CONGESTION, KIND_INCIDENT, KIND_ROADWORK, RawIncidentRecord

from . import USER_AGENT, IncidentSource, as_float, clean_text, parse_timestamp

_ROADWORK_WORDS = ("roadworks", "road works", "resurfacing", "works", "maintenance")
_CONGESTION_WORDS = ("congestion", "queueing", "queuing", "slow traffic", "delays")
_CLEARED_WORDS = ("cleared", "reopened", "re-opened")


def _text(node) -> str:
    if node is None:
        return ""
    # Descriptions often embed HTML
    raw = node.get_text(" ", strip=True)
    if "<" in raw:
        raw = BeautifulSoup(raw, "lxml").get_text(" ", strip=True)
    return clean_text(raw)


def classify_text(text: str) -> str:
    lowered = text.lower()
    if any(w in lowered for w in _ROADWORK_WORDS):
        return KIND_ROADWORK
    if any(w in lowered for w in _CONGESTION_WORDS):
        return KIND_CONGESTION
    return KIND_INCIDENT


def parse_rss_items(xml_text: str, provider: str = "traffic_rss") -> List[RawIncidentRecord]:
    soup = BeautifulSoup(xml_text, "xml")
    records: List[RawIncidentRecord] = []
    for item in soup.find_all("item"):
        title = _text(item.find("title"))
        description = _text(item.find("description"))
        if not title and not description:
            continue
        guid = _text(item.find("guid")) or _text(item.find("link"))
        if not guid:
            guid = hashlib.sha1(f"{title}|{description}".encode("utf-8")).hexdigest()[:16]

        lat = lon = None
        point = item.find("georss:point") or item.find("point")
        if point is not None:
            parts = _text(point).split()
            if len(parts) == 2:
                lat, lon = as_float(parts[0]), as_float(parts[1])

        combined = f"{title} {description}"
        lowered = combined.lower()
        severity_hint = "closure" if ("closed" in lowered or "closure" in lowered) else ""
        status_hint = "cleared" if any(w in lowered for w in _CLEARED_WORDS) else None
        # "A19 southbound - Silverlink: lane closed" -> location before the colon
        hint = title.split(":", 1)[0].strip() if ":" in title else title

        records.append(
            RawIncidentRecord(
                provider=provider,
                provider_id=guid,
                kind=classify_text(combined),
                category=_text(item.find("category")),
                severity_hint=severity_hint,
                lat=lat,
                lon=lon,
                title=title or description[:80],
                description=description or title,
                location_hint=hint,
                start_time=parse_timestamp(_text(item.find("pubDate")) or None),
                status_hint=status_hint,
            )
        )
    return records


class TrafficRSSSource(IncidentSource):
    name = "traffic_rss"

    def __init__(self, urls: Sequence[str], **kwargs):
        super().__init__(**kwargs)
        self.urls = list(urls)

    @classmethod
    def from_env(cls) -> "TrafficRSSSource":
        raw = os.getenv("TRAFFIC_RSS_URLS", "")
        urls = [u.strip() for u in raw.split(",") if u.strip()]
        if not urls:
            raise RuntimeError("Missing TRAFFIC_RSS_URLS environment variable")
        return cls(urls=urls)

    async def fetch_records(self, client: httpx.AsyncClient) -> List[RawIncidentRecord]:
        records: List[RawIncidentRecord] = []
        seen: set = set()
        for url in self.urls:
            resp = await client.get(url, headers={"User-Agent": USER_AGENT})
            resp.raise_for_status()
            for record in parse_rss_items(resp.text, provider=self.name):
                if record.provider_id in seen:
                    continue
                seen.add(record.provider_id)
                records.append(record)
        return records
