import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from alert_models import ErrorKind  # noqa: E402
from alert_sources import (  # noqa: E402
    IncidentSource,
    build_configured_sources,
    clean_text,
    parse_timestamp,
)
from alert_sources.here import HereSource, parse_here_incident  # noqa: E402
from alert_sources.mapquest import MapQuestSource  # noqa: E402
from alert_sources.national_highways import NationalHighwaysSource  # noqa: E402
from alert_sources.tomtom import TomTomSource, parse_tomtom_incident  # noqa: E402
from alert_sources.traffic_rss import TrafficRSSSource, parse_rss_items  # noqa: E402


def fetch_with(source: IncidentSource, handler):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await source.fetch(client)

    return asyncio.run(run())


TOMTOM_PAYLOAD = {
    "incidents": [
        {
            "type": "Feature",
            "geometry": {"type": "LineString", "coordinates": [[-1.6178, 54.9783], [-1.6170, 54.9790]]},
            "properties": {
                "id": "tt-1",
                "iconCategory": 1,
                "events": [{"description": "Accident", "code": 401}],
                "startTime": "2025-06-14T08:55:00Z",
                "from": "Gateshead",
                "to": "Newcastle",
                "roadNumbers": ["A167"],
                "timeValidity": "present",
            },
        },
        {"type": "Feature", "geometry": {}, "properties": {}},
    ]
}


def test_parse_tomtom_incident():
    record = parse_tomtom_incident(TOMTOM_PAYLOAD["incidents"][0])
    assert record.alert_id == "tomtom_tt-1"
    assert (record.lat, record.lon) == (54.9783, -1.6178)
    assert record.severity_hint == "1"
    assert record.kind == "incident"
    assert record.title == "Accident on A167"
    assert record.location_hint == "A167, Gateshead to Newcastle"
    assert record.start_time == datetime(2025, 6, 14, 8, 55, tzinfo=timezone.utc)


def test_tomtom_roadworks_and_past_validity():
    feature = {
        "geometry": {"type": "Point", "coordinates": [-1.60, 54.95]},
        "properties": {"id": "tt-2", "iconCategory": 9, "timeValidity": "past"},
    }
    record = parse_tomtom_incident(feature)
    assert record.kind == "roadwork"
    assert record.status_hint == "cleared"


def test_tomtom_fetch_sends_bbox_and_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=TOMTOM_PAYLOAD)

    result = fetch_with(TomTomSource(api_key="k123", base_url="https://tomtom.test/incidents"), handler)
    assert result.success
    assert [r.provider_id for r in result.data] == ["tt-1"]
    assert seen[0].url.params["key"] == "k123"
    assert seen[0].url.params["bbox"] == "-2.10,54.75,-1.35,55.05"


def test_http_error_becomes_failed_result():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    result = fetch_with(TomTomSource(api_key="k", base_url="https://tomtom.test/incidents"), handler)
    assert not result.success
    assert result.error == "HTTP 500"
    assert result.error_kind == ErrorKind.SOURCE_UNAVAILABLE
    assert result.data == []


def test_malformed_json_becomes_failed_result():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>not json</html>")

    result = fetch_with(HereSource(api_key="k", base_url="https://here.test/incidents"), handler)
    assert not result.success
    assert result.error_kind == ErrorKind.SOURCE_UNAVAILABLE


def test_slow_source_times_out():
    class Sleepy(IncidentSource):
        name = "sleepy"

        async def fetch_records(self, client):
            await asyncio.sleep(1.0)
            return []

    result = fetch_with(Sleepy(timeout_s=0.05), lambda request: httpx.Response(200))
    assert not result.success
    assert result.error_kind == ErrorKind.SOURCE_TIMEOUT
    assert result.duration_ms >= 40


def test_parse_here_incident():
    result = {
        "location": {
            "description": "Tyne Bridge",
            "shape": {"links": [{"points": [{"lat": 54.968, "lng": -1.606}], "roadName": "A167"}]},
        },
        "incidentDetails": {
            "id": "h-9",
            "type": "roadClosure",
            "criticality": "major",
            "summary": {"value": "Road closed"},
            "description": {"value": "Bridge closed for maintenance"},
            "startTime": "2025-06-14T07:00:00Z",
            "endTime": "2025-06-14T18:00:00Z",
        },
    }
    record = parse_here_incident(result)
    assert record.alert_id == "here_h-9"
    assert record.kind == "roadwork"
    assert record.severity_hint == "major"
    assert (record.lat, record.lon) == (54.968, -1.606)
    assert record.title == "Road closed"
    assert record.location_hint == "Tyne Bridge"
    assert record.end_time == datetime(2025, 6, 14, 18, 0, tzinfo=timezone.utc)


def test_mapquest_fetch_and_status_code():
    def ok(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "info": {"statuscode": 0},
                "incidents": [
                    {
                        "id": 4401,
                        "type": 1,
                        "severity": 3,
                        "lat": 54.90,
                        "lng": -1.38,
                        "shortDesc": "Roadworks on Park Lane",
                        "fullDesc": "Lane closures in place",
                        "street": "Park Lane",
                    }
                ],
            },
        )

    result = fetch_with(MapQuestSource(api_key="k", base_url="https://mapquest.test/incidents"), ok)
    assert result.success
    record = result.data[0]
    assert record.provider_id == "4401"
    assert record.kind == "roadwork"
    assert record.severity_hint == "3"
    assert record.location_hint == "Park Lane"

    def rejected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"info": {"statuscode": 403, "messages": ["bad key"]}})

    result = fetch_with(MapQuestSource(api_key="k", base_url="https://mapquest.test/incidents"), rejected)
    assert not result.success
    assert "403" in result.error


def test_national_highways_closures():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "features": [
                    {
                        "properties": {
                            "id": "NH-77",
                            "category": "Planned Closure",
                            "title": "A1 Gateshead Western Bypass",
                            "description": "Carriageway closure for resurfacing",
                            "location": "A1 northbound J67 to J68",
                            "startDate": "2025-06-14T20:00:00Z",
                            "endDate": "2025-06-15T06:00:00Z",
                        }
                    }
                ]
            },
        )

    source = NationalHighwaysSource(api_key="sub-key", base_url="https://nh.test/closures")
    result = fetch_with(source, handler)
    assert result.success
    record = result.data[0]
    assert record.lat is None and record.lon is None
    assert record.kind == "roadwork"
    assert record.location_hint == "A1 northbound J67 to J68"
    assert seen[0].headers["Ocp-Apim-Subscription-Key"] == "sub-key"


def test_national_highways_without_features_fails():
    source = NationalHighwaysSource(api_key="k", base_url="https://nh.test/closures")
    result = fetch_with(source, lambda request: httpx.Response(200, json={"message": "quota"}))
    assert not result.success


RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:georss="http://www.georss.org/georss">
  <channel>
    <title>Traffic</title>
    <item>
      <title>A19 southbound Silverlink: lane closed</title>
      <description><![CDATA[<p>One lane <b>closed</b> after a collision.</p>]]></description>
      <guid>rss-1</guid>
      <pubDate>Sat, 14 Jun 2025 08:40:00 GMT</pubDate>
      <georss:point>55.0175 -1.5120</georss:point>
    </item>
    <item>
      <title>Coast Road: roadworks</title>
      <description>Overnight resurfacing works</description>
      <guid>rss-2</guid>
    </item>
  </channel>
</rss>
"""


def test_parse_rss_items():
    records = parse_rss_items(RSS)
    assert [r.provider_id for r in records] == ["rss-1", "rss-2"]
    first, second = records
    assert first.description == "One lane closed after a collision."
    assert first.location_hint == "A19 southbound Silverlink"
    assert first.severity_hint == "closure"
    assert (first.lat, first.lon) == (55.0175, -1.512)
    assert first.start_time == datetime(2025, 6, 14, 8, 40, tzinfo=timezone.utc)
    assert second.kind == "roadwork"
    assert second.lat is None


def test_rss_source_deduplicates_across_feeds():
    source = TrafficRSSSource(urls=["https://a.test/rss", "https://b.test/rss"])
    result = fetch_with(source, lambda request: httpx.Response(200, text=RSS))
    assert result.success
    assert len(result.data) == 2


def test_from_env_requires_credentials(monkeypatch):
    monkeypatch.delenv("TOMTOM_API_KEY", raising=False)
    with pytest.raises(RuntimeError):
        TomTomSource.from_env()
    monkeypatch.setenv("TOMTOM_API_KEY", "abc")
    assert TomTomSource.from_env()._api_key == "abc"


def test_build_configured_sources_skips_missing(monkeypatch):
    for var in ("TOMTOM_API_KEY", "HERE_API_KEY", "MAPQUEST_API_KEY", "NATIONAL_HIGHWAYS_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("TRAFFIC_RSS_URLS", "https://a.test/rss, https://b.test/rss")
    monkeypatch.setenv("HERE_API_KEY", "h")
    sources = build_configured_sources()
    assert [s.name for s in sources] == ["here", "traffic_rss"]
    assert sources[1].urls == ["https://a.test/rss", "https://b.test/rss"]


def test_parse_timestamp_formats():
    expected = datetime(2025, 6, 14, 8, 40, tzinfo=timezone.utc)
    assert parse_timestamp("2025-06-14T08:40:00Z") == expected
    assert parse_timestamp("2025-06-14T09:40:00+01:00") == expected
    assert parse_timestamp("Sat, 14 Jun 2025 08:40:00 GMT") == expected
    assert parse_timestamp(int(expected.timestamp() * 1000)) == expected
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None


def test_parse_timestamp_out_of_range_epoch():
    assert parse_timestamp(10**20) is None
    assert parse_timestamp(-(10**20)) is None
    assert parse_timestamp(float("nan")) is None


def test_clean_text():
    assert clean_text({"value": "  Road   closed "}) == "Road closed"
    assert clean_text(None) == ""
