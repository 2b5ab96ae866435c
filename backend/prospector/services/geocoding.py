"""
Coordinate enrichment for discovered prospects.

Lookups go to the Mapbox Geocoding v5 API in small fixed-size batches to
respect its rate limit. Anything the geocoder cannot place gets a jittered
point near its state's centre so every prospect can still be drawn on a map.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from urllib.parse import quote

import httpx
from tenacity import retry, wait_exponential, stop_after_attempt, retry_if_exception_type

from .caching import cache_key, cached_get
from ..core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

# Geographic centre of each state as (lat, lng)
STATE_CENTERS: Dict[str, tuple[float, float]] = {
    "Alabama": (32.3182, -86.9023),
    "Alaska": (63.3469, -154.4931),
    "Arizona": (34.0489, -111.0937),
    "Arkansas": (35.2010, -92.3731),
    "California": (36.7783, -119.4179),
    "Colorado": (39.5501, -105.7821),
    "Connecticut": (41.6032, -72.7554),
    "Delaware": (38.9108, -75.5277),
    "Florida": (27.6648, -81.5158),
    "Georgia": (32.1656, -83.6431),
    "Hawaii": (19.8968, -155.5828),
    "Idaho": (44.0682, -114.7420),
    "Illinois": (40.6331, -89.3985),
    "Indiana": (40.2672, -86.1349),
    "Iowa": (41.8780, -93.0977),
    "Kansas": (39.0119, -98.4842),
    "Kentucky": (37.8393, -84.2700),
    "Louisiana": (30.9843, -91.9623),
    "Maine": (45.2538, -69.4455),
    "Maryland": (39.0458, -76.6413),
    "Massachusetts": (42.4072, -71.3824),
    "Michigan": (44.3148, -85.6024),
    "Minnesota": (46.7296, -94.6859),
    "Mississippi": (32.3547, -89.3985),
    "Missouri": (37.9643, -91.8318),
    "Montana": (46.8797, -110.3626),
    "Nebraska": (41.4925, -99.9018),
    "Nevada": (38.8026, -116.4194),
    "New Hampshire": (43.1939, -71.5724),
    "New Jersey": (40.0583, -74.4057),
    "New Mexico": (34.5199, -105.8701),
    "New York": (43.2994, -75.4999),
    "North Carolina": (35.7596, -79.0193),
    "North Dakota": (47.5515, -101.0020),
    "Ohio": (40.4173, -82.9071),
    "Oklahoma": (35.0078, -97.5164),
    "Oregon": (43.8041, -120.5542),
    "Pennsylvania": (41.2033, -77.1945),
    "Rhode Island": (41.5801, -71.4774),
    "South Carolina": (33.8361, -81.1637),
    "South Dakota": (43.9695, -99.9018),
    "Tennessee": (35.5175, -86.5804),
    "Texas": (31.9686, -99.9018),
    "Utah": (39.3200, -111.0937),
    "Vermont": (44.5588, -72.5778),
    "Virginia": (37.4316, -78.6569),
    "Washington": (47.7511, -120.7401),
    "West Virginia": (38.5976, -80.4549),
    "Wisconsin": (43.7844, -89.6165),
    "Wyoming": (43.0760, -107.2903),
}
_STATE_CENTERS_LOWER = {k.lower(): v for k, v in STATE_CENTERS.items()}

# Contiguous-US centroid for states we don't recognise
US_CENTER = (39.8283, -98.5795)

CITY_JITTER_DEG = 0.15
STATE_JITTER_LAT_DEG = 0.5
STATE_JITTER_LNG_DEG = 0.75


@dataclass(frozen=True)
class GeocodeTarget:
    key: str
    name: str
    state: str
    city: Optional[str] = None


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float
    source: str  # "geocoder" | "fallback"


def build_geocode_queries(target: GeocodeTarget) -> List[str]:
    """Most specific query first."""
    if target.city:
        return [
            f"{target.name}, {target.city}, {target.state}, USA",
            f"{target.city}, {target.state}, USA",
        ]
    return [f"{target.name}, {target.state}, USA"]


def state_center(state: str) -> tuple[float, float]:
    return _STATE_CENTERS_LOWER.get((state or "").strip().lower(), US_CENTER)


def fallback_coordinates(
    state: str,
    city: Optional[str] = None,
    rng: random.Random | None = None,
) -> Coordinates:
    """
    State centre plus uniform jitter so fallback markers don't stack.

    ±0.15° when the city is known, ±0.5° lat / ±0.75° lng otherwise.
    """
    rng = rng or random
    lat, lng = state_center(state)
    if city:
        lat_spread = lng_spread = CITY_JITTER_DEG
    else:
        lat_spread, lng_spread = STATE_JITTER_LAT_DEG, STATE_JITTER_LNG_DEG
    return Coordinates(
        lat=lat + rng.uniform(-lat_spread, lat_spread),
        lng=lng + rng.uniform(-lng_spread, lng_spread),
        source="fallback",
    )


class MapboxGeocoder:
    name = "mapbox"

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.access_token = access_token if access_token is not None else settings.MAPBOX_ACCESS_TOKEN
        self.base_url = (base_url or settings.MAPBOX_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.GEOCODER_TIMEOUT_SECONDS

    def is_configured(self) -> bool:
        return bool(self.access_token)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout)

    @retry(
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        stop=stop_after_attempt(2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, client: httpx.AsyncClient, query: str) -> httpx.Response:
        url = f"{self.base_url}/{quote(query, safe='')}.json"
        return await client.get(url, params={"access_token": self.access_token, "limit": 1})

    async def lookup(self, client: httpx.AsyncClient, query: str) -> Coordinates | None:
        """
        Resolve one free-text query. Returns None when there is no match.

        Transport errors are retried once and then propagate.
        """
        key = cache_key("geocode", query)
        cached = await cached_get(key)
        if cached:
            return Coordinates(lat=cached["lat"], lng=cached["lng"], source="geocoder")

        resp = await self._request(client, query)
        if resp.status_code != 200:
            logger.warning(
                "Geocoder returned HTTP %s",
                resp.status_code,
                extra={"step": "geocode"},
            )
            return None

        features = (resp.json() or {}).get("features") or []
        center = features[0].get("center") if features else None
        if not center or len(center) < 2:
            return None

        # Mapbox centres are [lng, lat]
        coords = Coordinates(lat=float(center[1]), lng=float(center[0]), source="geocoder")
        await cached_get(
            key,
            set_value={"lat": coords.lat, "lng": coords.lng},
            ttl=settings.GEOCODE_CACHE_TTL_SECONDS,
        )
        return coords


class GeocodingEnricher:
    """
    Attach coordinates to a list of targets, batch by batch.

    A batch is awaited in full before the next one starts, so at most
    ``batch_size`` geocoder requests are ever in flight.
    """

    def __init__(
        self,
        geocoder: MapboxGeocoder | None = None,
        batch_size: int | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.geocoder = geocoder or MapboxGeocoder()
        self.batch_size = max(1, batch_size or settings.GEOCODE_BATCH_SIZE)
        self.rng = rng or random.Random()

    async def _locate(self, client: httpx.AsyncClient, target: GeocodeTarget) -> Coordinates:
        for query in build_geocode_queries(target):
            try:
                coords = await self.geocoder.lookup(client, query)
            except Exception as e:  # noqa: BLE001
                logger.warning(
                    "Geocoding query failed: %s",
                    e,
                    extra={"prospect_key": target.key, "step": "geocode"},
                )
                continue
            if coords is not None:
                return coords
        return fallback_coordinates(target.state, target.city, rng=self.rng)

    async def enrich(self, targets: Iterable[GeocodeTarget]) -> Dict[str, Coordinates]:
        """Return ``{target.key: Coordinates}`` for every target. Never raises."""
        targets = list(targets)
        results: Dict[str, Coordinates] = {}
        if not targets:
            return results

        if not self.geocoder.is_configured():
            logger.info("Geocoder not configured; using state fallbacks", extra={"step": "geocode"})
            for t in targets:
                results[t.key] = fallback_coordinates(t.state, t.city, rng=self.rng)
            return results

        async with self.geocoder.client() as client:
            for start in range(0, len(targets), self.batch_size):
                batch = targets[start : start + self.batch_size]
                located = await asyncio.gather(*(self._locate(client, t) for t in batch))
                for target, coords in zip(batch, located):
                    results[target.key] = coords

        misses = sum(1 for c in results.values() if c.source == "fallback")
        logger.info(
            "Geocoded %d targets (%d fallbacks)",
            len(results),
            misses,
            extra={"step": "geocode"},
        )
        return results
