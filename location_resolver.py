"""
Human-readable location naming for incidents.

``LocationResolver.resolve`` always returns a non-empty string. It walks a
fixed chain: a specific provider description, then a reverse geocode with a
hard timeout, then the nearest known bus stop, then the macro-region, then
the network-wide name.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import httpx

from alert_models import ErrorKind, LatLon
from caching import PerKeyTTLCache
from route_policy import DEFAULT_POLICY, NETWORK_NAME, RoutePolicy
from transit_index import TransitReferenceIndex

NOMINATIM_URL = os.getenv("NOMINATIM_URL", "https://nominatim.openstreetmap.org/reverse")
GEOCODER_USER_AGENT = os.getenv(
    "GEOCODER_USER_AGENT", "Go-BARRY-Traffic-System/3.0 (+https://gobarry.co.uk/contact)"
)
GEOCODE_TIMEOUT_S = float(os.getenv("GEOCODE_TIMEOUT_S", "3"))
GEOCODE_CACHE_TTL_S = float(os.getenv("GEOCODE_CACHE_TTL_S", "86400"))
NEAREST_STOP_MAX_M = 1000.0

MIN_SPECIFIC_HINT_LEN = 5

# Placeholders providers emit when they have nothing better to say.
GENERIC_HINTS = frozenset(
    {
        "reported location",
        "unverified",
        "unknown",
        "unknown location",
        "location unknown",
        "traffic location",
        "location being determined",
        "location not specified",
        "various locations",
        "north east england",
        "uk",
        "united kingdom",
        "england",
    }
)

SOURCE_PROVIDER = "provider"
SOURCE_GEOCODER = "geocoder"
SOURCE_NEAREST_STOP = "nearest_stop"
SOURCE_REGION = "region"
SOURCE_NETWORK = "network"


def is_specific_hint(hint: Optional[str]) -> bool:
    text = (hint or "").strip()
    if len(text) < MIN_SPECIFIC_HINT_LEN:
        return False
    lowered = text.lower()
    if lowered in GENERIC_HINTS:
        return False
    # "Reported location (unverified)" and similar compound placeholders
    return not ("reported location" in lowered or "unverified" in lowered)


class ReverseGeocoder(Protocol):
    async def reverse(self, lat: float, lon: float, client: Optional[httpx.AsyncClient] = None) -> str:
        ...


def compose_nominatim_address(payload: dict) -> str:
    """Road, then neighbourhood, then town, at most three parts."""
    address = payload.get("address") or {}
    parts: List[str] = []
    for keys in (
        ("road", "highway", "path"),
        ("neighbourhood", "suburb", "village"),
        ("town", "city", "county"),
    ):
        for key in keys:
            value = address.get(key)
            if value:
                parts.append(str(value).strip())
                break
    if parts:
        return ", ".join(parts[:3])
    display = (payload.get("display_name") or "").strip()
    if display:
        return ", ".join(p.strip() for p in display.split(",")[:3])
    return ""


class NominatimReverseGeocoder:
    """OpenStreetMap Nominatim reverse lookups, cached per rounded coordinate."""

    def __init__(
        self,
        base_url: str = NOMINATIM_URL,
        user_agent: str = GEOCODER_USER_AGENT,
        cache_ttl_s: float = GEOCODE_CACHE_TTL_S,
        max_keys: int = 2000,
    ):
        self.base_url = base_url
        self.user_agent = user_agent
        self._cache = PerKeyTTLCache(cache_ttl_s, max_keys=max_keys)

    async def _lookup(self, lat: float, lon: float, client: httpx.AsyncClient) -> str:
        resp = await client.get(
            self.base_url,
            params={
                "lat": f"{lat:.5f}",
                "lon": f"{lon:.5f}",
                "format": "json",
                "zoom": 16,
                "addressdetails": 1,
            },
            headers={"User-Agent": self.user_agent},
        )
        resp.raise_for_status()
        return compose_nominatim_address(resp.json())

    async def reverse(self, lat: float, lon: float, client: Optional[httpx.AsyncClient] = None) -> str:
        # ~10 m buckets
        key = (round(lat, 4), round(lon, 4))

        async def fetch() -> str:
            if client is not None:
                return await self._lookup(lat, lon, client)
            async with httpx.AsyncClient() as own_client:
                return await self._lookup(lat, lon, own_client)

        return await self._cache.get(key, fetch)


@dataclass
class ResolvedLocation:
    text: str
    source: str
    errors: List[ErrorKind] = field(default_factory=list)


class LocationResolver:
    def __init__(
        self,
        index: Optional[TransitReferenceIndex],
        geocoder: Optional[ReverseGeocoder] = None,
        policy: RoutePolicy = DEFAULT_POLICY,
        geocode_timeout_s: float = GEOCODE_TIMEOUT_S,
    ):
        self.index = index
        self.geocoder = geocoder
        self.policy = policy
        self.geocode_timeout_s = geocode_timeout_s

    async def resolve(
        self,
        coords: Optional[LatLon],
        provider_hint: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> str:
        return (await self.resolve_detailed(coords, provider_hint, client)).text

    async def resolve_detailed(
        self,
        coords: Optional[LatLon],
        provider_hint: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> ResolvedLocation:
        errors: List[ErrorKind] = []
        hint = (provider_hint or "").strip()

        if is_specific_hint(hint):
            return ResolvedLocation(hint, SOURCE_PROVIDER)

        if coords is not None and self.geocoder is not None:
            name = await self._reverse_geocode(coords, client)
            if name:
                return ResolvedLocation(name, SOURCE_GEOCODER)
            if name is None:
                errors.append(ErrorKind.LOCATION_LOOKUP_FAILED)

        if coords is not None and self.index is not None:
            nearest = self.index.nearest_stop(coords.lat, coords.lon, NEAREST_STOP_MAX_M)
            if nearest is not None:
                return ResolvedLocation(f"near {nearest.stop.name}", SOURCE_NEAREST_STOP, errors)

        lat = coords.lat if coords is not None else None
        lon = coords.lon if coords is not None else None
        region = self.policy.macro_region_name(lat, lon, hint)
        if region:
            return ResolvedLocation(region, SOURCE_REGION, errors)

        return ResolvedLocation(NETWORK_NAME, SOURCE_NETWORK, errors)

    async def _reverse_geocode(self, coords: LatLon, client: Optional[httpx.AsyncClient]) -> Optional[str]:
        """Returns the name, "" when the geocoder had nothing, None on failure."""
        try:
            name = await asyncio.wait_for(
                self.geocoder.reverse(coords.lat, coords.lon, client),
                timeout=self.geocode_timeout_s,
            )
        except asyncio.TimeoutError:
            print(f"[geocode] timeout after {self.geocode_timeout_s:.1f}s for {coords.lat:.4f},{coords.lon:.4f}")
            return None
        # RuntimeError: a shared lookup outlived the refresh whose client it used
        except (httpx.HTTPError, ValueError, KeyError, RuntimeError) as exc:
            print(f"[geocode] lookup failed for {coords.lat:.4f},{coords.lon:.4f}: {exc}")
            return None
        return (name or "").strip()
