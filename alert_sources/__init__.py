"""
Incident Sources Module

Each traffic data provider is wrapped in an ``IncidentSource`` subclass that
turns the provider's wire format into ``RawIncidentRecord`` values. The base
class owns the boundary behaviour shared by every provider: a per-source
timeout, timing, and converting transport or parse failures into a failed
``FetchResult`` instead of an exception.

Example usage:
    from alert_sources import build_configured_sources

    sources = build_configured_sources()
    async with httpx.AsyncClient() as client:
        result = await sources[0].fetch(client)
        # result.success, result.data, result.error, result.duration_ms
"""

from __future__ import annotations

import asyncio
import os
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, List, Optional, Sequence

import httpx

from alert_models import ErrorKind, FetchResult, RawIncidentRecord

SOURCE_TIMEOUT_S = float(os.getenv("SOURCE_TIMEOUT_S", "15"))
USER_AGENT = "BARRY-TrafficWatch/3.0"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO 8601 or RFC 2822 timestamps into aware UTC datetimes."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        # Epoch milliseconds
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if not text:
        return None
    dt: Optional[datetime] = None
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            dt = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        value = value.get("value") or ""
    return " ".join(str(value).split())


class IncidentSource(ABC):
    """
    Abstract base class for traffic incident providers.

    Subclasses implement ``fetch_records`` and raise freely inside it;
    ``fetch`` is the only entry point the aggregator uses and never raises
    except on task cancellation.
    """

    name: str = "unknown"

    def __init__(self, timeout_s: float = SOURCE_TIMEOUT_S):
        self.timeout_s = timeout_s

    @abstractmethod
    async def fetch_records(self, client: httpx.AsyncClient) -> List[RawIncidentRecord]:
        """Call the provider and normalise its incidents."""
        pass

    async def fetch(self, client: httpx.AsyncClient) -> FetchResult:
        start = time.perf_counter()
        try:
            records = await asyncio.wait_for(self.fetch_records(client), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            duration_ms = int((time.perf_counter() - start) * 1000)
            print(f"[{self.name}] timed out after {self.timeout_s:.1f}s")
            return FetchResult.failed(
                f"timed out after {self.timeout_s:.0f}s", ErrorKind.SOURCE_TIMEOUT, duration_ms
            )
        except httpx.HTTPStatusError as exc:
            duration_ms = int((time.perf_counter() - start) * 1000)
            print(f"[{self.name}] HTTP {exc.response.status_code}")
            return FetchResult.failed(f"HTTP {exc.response.status_code}", duration_ms=duration_ms)
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as exc:
            duration_ms = int((time.perf_counter() - start) * 1000)
            print(f"[{self.name}] fetch failed: {exc}")
            return FetchResult.failed(str(exc) or exc.__class__.__name__, duration_ms=duration_ms)
        duration_ms = int((time.perf_counter() - start) * 1000)
        print(f"[{self.name}] {len(records)} incidents in {duration_ms}ms")
        return FetchResult(success=True, data=records, duration_ms=duration_ms)


def build_configured_sources(
    factories: Optional[Sequence[Callable[[], IncidentSource]]] = None,
) -> List[IncidentSource]:
    """Instantiate every provider whose credentials are present."""
    if factories is None:
        from alert_sources.here import HereSource
        from alert_sources.mapquest import MapQuestSource
        from alert_sources.national_highways import NationalHighwaysSource
        from alert_sources.tomtom import TomTomSource
        from alert_sources.traffic_rss import TrafficRSSSource

        factories = (
            TomTomSource.from_env,
            HereSource.from_env,
            MapQuestSource.from_env,
            NationalHighwaysSource.from_env,
            TrafficRSSSource.from_env,
        )
    sources: List[IncidentSource] = []
    for factory in factories:
        try:
            sources.append(factory())
        except RuntimeError as exc:
            print(f"[alert_sources] not configured: {exc}")
    return sources


__all__ = [
    "IncidentSource",
    "build_configured_sources",
    "parse_timestamp",
    "as_float",
    "clean_text",
    "SOURCE_TIMEOUT_S",
    "USER_AGENT",
]
