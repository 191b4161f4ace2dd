import asyncio
import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from aggregator import AlertAggregator, compute_statistics, is_sample_record  # noqa: E402
from alert_models import (  # noqa: E402
    CriticalPipelineFailure,
    ErrorKind,
    MatchMethod,
    RawIncidentRecord,
    Severity,
)
from alert_sources import IncidentSource  # noqa: E402
from location_resolver import LocationResolver  # noqa: E402
from route_matcher import RouteMatcher  # noqa: E402

from conftest import SUNDERLAND_LAT  # noqa: E402


_now = datetime.now(timezone.utc)
# Start of the current 10-minute bucket, shared by every record in this module
STARTED = _now.replace(minute=(_now.minute // 10) * 10, second=0, microsecond=0)


class StaticSource(IncidentSource):
    def __init__(self, name, records, delay=0.0, **kwargs):
        super().__init__(**kwargs)
        self.name = name
        self.records = records
        self.delay = delay

    async def fetch_records(self, client):
        if self.delay:
            await asyncio.sleep(self.delay)
        return list(self.records)


class CancelTrackingSource(StaticSource):
    cancelled = False

    async def fetch_records(self, client):
        try:
            return await super().fetch_records(client)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class FailingSource(IncidentSource):
    def __init__(self, name, **kwargs):
        super().__init__(**kwargs)
        self.name = name

    async def fetch_records(self, client):
        raise httpx.ConnectError("connection refused")


def mock_client():
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))


def make_aggregator(index, sources, **kwargs):
    return AlertAggregator(
        sources,
        LocationResolver(index),
        RouteMatcher(index),
        client_factory=mock_client,
        **kwargs,
    )


def gateshead_record(provider, provider_id, **overrides):
    fields = dict(
        provider=provider,
        provider_id=provider_id,
        kind="incident",
        severity_hint="1",
        lat=54.9515,
        lon=-1.6275,
        title="Accident",
        description="Collision near the interchange",
        location_hint="Durham Road, Low Fell",
        start_time=STARTED,
    )
    fields.update(overrides)
    return RawIncidentRecord(**fields)


def test_partial_failure_is_reported_in_source_status(transit_index):
    sources = [
        StaticSource("tomtom", [gateshead_record("tomtom", "1")]),
        FailingSource("here"),
    ]
    entry = asyncio.run(make_aggregator(transit_index, sources).refresh())
    assert len(entry.alerts) == 1
    assert entry.source_status["tomtom"].success
    assert entry.source_status["tomtom"].count == 1
    here = entry.sources_dict()["here"]
    assert here["success"] is False
    assert here["errorKind"] == "SourceUnavailable"
    assert not entry.stale


def test_slow_source_times_out_without_blocking_others(transit_index):
    sources = [
        StaticSource("tomtom", [gateshead_record("tomtom", "1")]),
        StaticSource("mapquest", [gateshead_record("mapquest", "2")], delay=1.0, timeout_s=0.05),
    ]
    entry = asyncio.run(make_aggregator(transit_index, sources).refresh())
    assert entry.source_status["mapquest"].error_kind == ErrorKind.SOURCE_TIMEOUT
    assert [a.id for a in entry.alerts] == ["tomtom_1"]


def test_refresh_deadline_cancels_stragglers(transit_index):
    sources = [
        StaticSource("tomtom", [gateshead_record("tomtom", "1")]),
        StaticSource("here", [gateshead_record("here", "2")], delay=5.0),
    ]
    aggregator = make_aggregator(transit_index, sources, deadline_s=0.1)
    entry = asyncio.run(aggregator.refresh())
    status = entry.source_status["here"]
    assert not status.success
    assert status.error_kind == ErrorKind.SOURCE_TIMEOUT
    assert status.error == "refresh deadline exceeded"
    assert len(entry.alerts) == 1


def test_cancelled_refresh_keeps_completed_sources(transit_index):
    slow = CancelTrackingSource("here", [gateshead_record("here", "2")], delay=5.0)
    sources = [StaticSource("tomtom", [gateshead_record("tomtom", "1")]), slow]
    aggregator = make_aggregator(transit_index, sources)

    async def run():
        task = asyncio.create_task(aggregator.refresh())
        await asyncio.sleep(0.1)
        task.cancel()
        return await task

    entry = asyncio.run(run())
    assert slow.cancelled
    assert [a.id for a in entry.alerts] == ["tomtom_1"]
    status = entry.source_status["here"]
    assert not status.success
    assert status.error_kind == ErrorKind.SOURCE_TIMEOUT
    assert status.error == "refresh cancelled"
    assert entry.source_status["tomtom"].success


def test_total_failure_without_previous_raises(transit_index):
    aggregator = make_aggregator(transit_index, [FailingSource("tomtom"), FailingSource("here")])
    with pytest.raises(CriticalPipelineFailure):
        asyncio.run(aggregator.refresh())


def test_total_failure_with_previous_serves_stale(transit_index):
    good = make_aggregator(transit_index, [StaticSource("tomtom", [gateshead_record("tomtom", "1")])])
    previous = asyncio.run(good.refresh())
    bad = make_aggregator(transit_index, [FailingSource("tomtom")])
    entry = asyncio.run(bad.refresh(previous))
    assert entry.stale
    assert entry.alerts == previous.alerts
    assert not entry.source_status["tomtom"].success


def test_no_sources_configured_is_empty_success(transit_index):
    entry = asyncio.run(make_aggregator(transit_index, []).refresh())
    assert entry.alerts == []
    assert entry.source_status == {}
    assert entry.statistics["totalAlerts"] == 0


def test_sample_records_are_filtered(transit_index):
    records = [
        gateshead_record("tomtom", "sample_1"),
        gateshead_record("tomtom", "2", description="Recovery vehicle en route"),
        gateshead_record("tomtom", "3"),
    ]
    entry = asyncio.run(make_aggregator(transit_index, [StaticSource("tomtom", records)]).refresh())
    assert [a.id for a in entry.alerts] == ["tomtom_3"]
    assert entry.statistics["sampleFiltered"] == 2


def test_is_sample_record():
    assert is_sample_record(RawIncidentRecord(provider="tomtom", provider_id="barry_v3_001"))
    assert is_sample_record(RawIncidentRecord(provider="here", provider_id="demo-4"))
    assert is_sample_record(
        RawIncidentRecord(provider="here", provider_id="9", location_hint="Tyne Tunnel, North Shields")
    )
    assert is_sample_record(RawIncidentRecord(provider="demo", provider_id="7"))
    assert not is_sample_record(RawIncidentRecord(provider="here", provider_id="latest-99"))
    assert not is_sample_record(
        RawIncidentRecord(provider="tomtom", provider_id="5", description="Recovery vehicle en route to A19 collision")
    )
    assert not is_sample_record(
        RawIncidentRecord(provider="tomtom", provider_id="6", location_hint="Tyne Tunnel approach, Howdon")
    )


def test_real_incident_at_junction_65_survives_sample_filter(transit_index):
    record = gateshead_record(
        "national_highways",
        "nh-4471",
        title="A1(M) J65 temporary traffic lights in operation",
        description="Temporary traffic lights in operation",
        location_hint="A1(M) Junction 65, Birtley",
    )
    entry = asyncio.run(make_aggregator(transit_index, [StaticSource("national_highways", [record])]).refresh())
    assert [a.id for a in entry.alerts] == ["national_highways_nh-4471"]
    assert entry.statistics["sampleFiltered"] == 0


def test_cross_provider_incident_is_merged(transit_index):
    sources = [
        StaticSource("tomtom", [gateshead_record("tomtom", "tt1", title="Accident on A167")]),
        StaticSource("here", [gateshead_record("here", "h1", severity_hint="critical", title="Crash")]),
    ]
    entry = asyncio.run(make_aggregator(transit_index, sources).refresh())
    assert len(entry.alerts) == 1
    alert = entry.alerts[0]
    assert alert.sources == ("here", "tomtom")
    assert alert.title == "Accident on A167"
    assert alert.severity == Severity.HIGH
    assert alert.route_match_method == MatchMethod.SHAPE_GEOMETRY
    assert alert.affects_routes == ("21", "22")
    assert alert.location == "Durham Road, Low Fell"
    assert entry.statistics["duplicatesMerged"] == 1


def test_sunderland_incident_excludes_newcastle_routes(transit_index):
    record = gateshead_record("tomtom", "sun1", lat=SUNDERLAND_LAT, lon=-1.3825, location_hint="Park Lane")
    entry = asyncio.run(make_aggregator(transit_index, [StaticSource("tomtom", [record])]).refresh())
    alert = entry.alerts[0]
    assert alert.affects_routes == ("16",)
    assert "Q3" not in alert.display_location


def test_out_of_network_coordinates_are_dropped(transit_index):
    record = gateshead_record("here", "far1", lat=53.8, lon=-1.55, location_hint="Grey Street lane closure")
    entry = asyncio.run(make_aggregator(transit_index, [StaticSource("here", [record])]).refresh())
    alert = entry.alerts[0]
    assert alert.coordinates is None
    assert alert.route_match_method == MatchMethod.TEXT_PATTERN
    assert alert.affects_routes == ("10", "12", "Q3", "Q3X")


def test_expired_incidents_are_dropped(transit_index):
    old = gateshead_record(
        "mapquest", "old", severity_hint="1", start_time=datetime.now(timezone.utc) - timedelta(hours=5)
    )
    entry = asyncio.run(make_aggregator(transit_index, [StaticSource("mapquest", [old])]).refresh())
    assert entry.alerts == []
    assert entry.statistics["expiredFiltered"] == 1


def test_every_alert_has_a_location(transit_index):
    records = [
        gateshead_record("national_highways", "nh1", lat=None, lon=None, location_hint=""),
        gateshead_record("tomtom", "t2", location_hint="", lat=54.99, lon=-1.60, start_time=None),
    ]
    entry = asyncio.run(make_aggregator(transit_index, [StaticSource("mixed", records)]).refresh())
    assert len(entry.alerts) == 2
    assert all(a.location for a in entry.alerts)


def test_compute_statistics(transit_index):
    records = [
        gateshead_record("tomtom", "a"),
        gateshead_record("tomtom", "b", lat=None, lon=None, location_hint="Somewhere quiet", kind="roadwork"),
    ]
    entry = asyncio.run(make_aggregator(transit_index, [StaticSource("tomtom", records)]).refresh())
    stats = entry.statistics
    assert stats["totalAlerts"] == 2
    assert stats["alertsWithRoutes"] == 1
    assert stats["byMatchMethod"]["ShapeGeometry"] == 1
    assert stats["byMatchMethod"]["None"] == 1
    assert stats["rawIncidents"] == 2
    assert stats["policyVersion"]
    assert compute_statistics([])["averageRoutesPerAlert"] == 0.0


def test_refresh_output_is_stable(transit_index):
    records = [gateshead_record("tomtom", str(i), location_hint=f"Place number {i}") for i in range(4)]
    aggregator = make_aggregator(transit_index, [StaticSource("tomtom", records)])
    first = asyncio.run(aggregator.refresh())
    second = asyncio.run(aggregator.refresh())
    strip = lambda alerts: [replace(a, last_updated=None) for a in alerts]  # noqa: E731
    assert strip(first.alerts) == strip(second.alerts)
