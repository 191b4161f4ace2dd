"""
Alert aggregation pipeline.

``AlertAggregator.refresh`` fans out to every configured incident source,
keeps whatever finished before the refresh deadline (or before the refresh
was cancelled), enhances each incident
with a location and affected routes, classifies and deduplicates the result,
and returns a fresh ``AggregationCacheEntry``.
"""

from __future__ import annotations

import asyncio
import os
import re
import time
from collections import Counter
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from alert_dedup import classify_severity, classify_status, deduplicate, is_expired
from alert_models import (
    STATUS_ACTIVE,
    AggregationCacheEntry,
    CanonicalAlert,
    CriticalPipelineFailure,
    ErrorKind,
    FetchResult,
    MatchMethod,
    RawIncidentRecord,
    Severity,
    SourceStatus,
)
from alert_sources import IncidentSource
from location_resolver import LocationResolver
from route_matcher import RouteMatcher
from route_policy import DEFAULT_POLICY, RoutePolicy

REFRESH_DEADLINE_S = float(os.getenv("REFRESH_DEADLINE_S", "20"))
ENHANCE_CONCURRENCY = int(os.getenv("ENHANCE_CONCURRENCY", "8"))

HTTP_TIMEOUT = httpx.Timeout(15.0, connect=5.0, read=15.0, write=15.0, pool=15.0)
HTTP_LIMITS = httpx.Limits(max_keepalive_connections=10, max_connections=50)

# Leftover demo/sample incidents that have leaked into provider feeds before.
# Text and location checks are exact so real incidents at the same places pass.
_SAMPLE_ID_RE = re.compile(r"barry_v3|(^|[_\-])(sample|test|demo)([_\-]|$)", re.IGNORECASE)
SAMPLE_PROVIDERS = frozenset({"go_barry_v3", "sample", "test", "demo"})
SAMPLE_DESCRIPTIONS = frozenset({"Recovery vehicle en route"})
SAMPLE_LOCATIONS = frozenset({
    "Central Station, Newcastle upon Tyne",
    "Tyne Tunnel, North Shields",
    "A1 Northbound, Junction 65",
})


def is_sample_record(record: RawIncidentRecord) -> bool:
    if _SAMPLE_ID_RE.search(record.provider_id) or record.provider.lower() in SAMPLE_PROVIDERS:
        return True
    if (record.description or "").strip() in SAMPLE_DESCRIPTIONS:
        return True
    return (record.location_hint or "").strip() in SAMPLE_LOCATIONS


def _default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=HTTP_TIMEOUT, limits=HTTP_LIMITS, follow_redirects=True)


def compute_statistics(alerts: Sequence[CanonicalAlert]) -> Dict[str, Any]:
    total = len(alerts)
    with_routes = sum(1 for a in alerts if a.affects_routes)
    route_total = sum(len(a.affects_routes) for a in alerts)
    by_method = Counter(a.route_match_method.value for a in alerts)
    by_severity = Counter(a.severity.value for a in alerts)
    return {
        "totalAlerts": total,
        "activeAlerts": sum(1 for a in alerts if a.status == STATUS_ACTIVE),
        "alertsWithRoutes": with_routes,
        "averageRoutesPerAlert": round(route_total / total, 2) if total else 0.0,
        "byMatchMethod": {m.value: by_method.get(m.value, 0) for m in MatchMethod},
        "bySeverity": {s.value: by_severity.get(s.value, 0) for s in Severity},
    }


class AlertAggregator:
    def __init__(
        self,
        sources: Sequence[IncidentSource],
        resolver: LocationResolver,
        matcher: RouteMatcher,
        policy: RoutePolicy = DEFAULT_POLICY,
        deadline_s: float = REFRESH_DEADLINE_S,
        concurrency: int = ENHANCE_CONCURRENCY,
        client_factory: Callable[[], httpx.AsyncClient] = _default_client,
    ):
        self.sources = list(sources)
        self.resolver = resolver
        self.matcher = matcher
        self.policy = policy
        self.deadline_s = deadline_s
        self.concurrency = max(1, concurrency)
        self.client_factory = client_factory

    async def _fan_out(self, client: httpx.AsyncClient) -> List[Tuple[IncidentSource, FetchResult]]:
        if not self.sources:
            return []
        started = time.perf_counter()
        tasks = {asyncio.create_task(src.fetch(client)): src for src in self.sources}
        reason = "refresh deadline exceeded"
        try:
            _, pending = await asyncio.wait(tasks.keys(), timeout=self.deadline_s)
        except asyncio.CancelledError:
            # Completed sources are still used
            print("[aggregator] refresh cancelled, keeping completed sources")
            pending = {task for task in tasks if not task.done()}
            reason = "refresh cancelled"
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        waited_ms = int((time.perf_counter() - started) * 1000)

        results: List[Tuple[IncidentSource, FetchResult]] = []
        for task, src in tasks.items():
            if task in pending:
                print(f"[aggregator] {src.name} still running after {waited_ms}ms, cancelled ({reason})")
                results.append((src, FetchResult.failed(reason, ErrorKind.SOURCE_TIMEOUT, waited_ms)))
                continue
            exc = task.exception()
            if exc is not None:
                print(f"[aggregator] {src.name} raised {exc!r}")
                results.append((src, FetchResult.failed(str(exc) or exc.__class__.__name__)))
                continue
            results.append((src, task.result()))
        return results

    async def _enhance(
        self,
        record: RawIncidentRecord,
        client: httpx.AsyncClient,
        now: datetime,
    ) -> Tuple[Optional[CanonicalAlert], List[ErrorKind]]:
        coords = record.coords
        if coords is not None and not self.policy.operating_bbox.contains(coords.lat, coords.lon):
            coords = None

        resolved = await self.resolver.resolve_detailed(coords, record.location_hint, client)
        hint_text = resolved.text
        if record.location_hint and record.location_hint not in hint_text:
            hint_text = f"{hint_text} {record.location_hint}"
        match = self.matcher.match(coords, hint_text)

        severity = classify_severity(record.provider, record.severity_hint)
        if is_expired(record, severity, now):
            return None, resolved.errors

        alert = CanonicalAlert(
            id=record.alert_id,
            kind=record.kind,
            title=record.title or record.category or "Traffic Incident",
            description=record.description or record.title,
            location=resolved.text,
            severity=severity,
            status=classify_status(record, now),
            sources=(record.provider,),
            affects_routes=match.routes,
            route_match_method=match.method,
            first_reported=record.start_time or now,
            last_updated=now,
            coordinates=coords,
            location_source=resolved.source,
        )
        return alert, resolved.errors

    async def refresh(self, previous: Optional[AggregationCacheEntry] = None) -> AggregationCacheEntry:
        started = time.perf_counter()
        now = datetime.now(timezone.utc)

        async with self.client_factory() as client:
            results = await self._fan_out(client)

            source_status: Dict[str, SourceStatus] = {}
            records: List[RawIncidentRecord] = []
            for src, result in results:
                source_status[src.name] = SourceStatus(
                    success=result.success,
                    count=len(result.data),
                    duration_ms=result.duration_ms,
                    error=result.error,
                    error_kind=result.error_kind,
                )
                if result.success:
                    records.extend(result.data)

            if results and not any(r.success for _, r in results):
                if previous is not None:
                    print("[aggregator] all sources failed, serving previous alerts")
                    return replace(previous, source_status=source_status, stale=True)
                raise CriticalPipelineFailure("all incident sources failed and no cached alerts exist")

            kept = [r for r in records if not is_sample_record(r)]
            sample_count = len(records) - len(kept)

            sem = asyncio.Semaphore(self.concurrency)

            async def enhance_one(record: RawIncidentRecord):
                async with sem:
                    return await self._enhance(record, client, now)

            enhanced = await asyncio.gather(*(enhance_one(r) for r in kept))

        alerts: List[CanonicalAlert] = []
        lookup_failures = 0
        for alert, errors in enhanced:
            lookup_failures += sum(1 for e in errors if e == ErrorKind.LOCATION_LOOKUP_FAILED)
            if alert is not None:
                alerts.append(alert)
        expired_count = len(enhanced) - len(alerts)

        merged = deduplicate(alerts)
        statistics = compute_statistics(merged)
        statistics.update(
            {
                "rawIncidents": len(records),
                "sampleFiltered": sample_count,
                "expiredFiltered": expired_count,
                "duplicatesMerged": len(alerts) - len(merged),
                "locationLookupFailures": lookup_failures,
                "policyVersion": self.policy.version,
            }
        )
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        ok_count = sum(1 for s in source_status.values() if s.success)
        print(
            f"[aggregator] {len(merged)} alerts from {ok_count}/{len(source_status)} sources "
            f"in {elapsed_ms}ms"
        )
        return AggregationCacheEntry(
            alerts=merged,
            source_status=source_status,
            generated_at=now,
            statistics=statistics,
        )
