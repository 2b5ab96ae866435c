"""
Tests for geocoding.py - batched lookups, query cascade and fallbacks.
"""
import asyncio
import random

import httpx
import pytest

from prospector.services.geocoding import (
    CITY_JITTER_DEG,
    STATE_CENTERS,
    STATE_JITTER_LAT_DEG,
    STATE_JITTER_LNG_DEG,
    US_CENTER,
    Coordinates,
    GeocodeTarget,
    GeocodingEnricher,
    MapboxGeocoder,
    build_geocode_queries,
    fallback_coordinates,
)

from tests.fixtures.fakes import FakeGeocoder


def _targets(n, city="Austin"):
    return [GeocodeTarget(key=f"org_{i}_texas", name=f"Org {i}", state="Texas", city=city) for i in range(n)]


class TestQueries:
    def test_with_city_tries_name_then_city(self):
        target = GeocodeTarget(key="k", name="Austin ISD", state="Texas", city="Austin")
        assert build_geocode_queries(target) == [
            "Austin ISD, Austin, Texas, USA",
            "Austin, Texas, USA",
        ]

    def test_without_city(self):
        target = GeocodeTarget(key="k", name="Texas DPS", state="Texas")
        assert build_geocode_queries(target) == ["Texas DPS, Texas, USA"]


class TestFallback:
    def test_city_known_within_small_jitter(self):
        rng = random.Random(7)
        lat0, lng0 = STATE_CENTERS["Texas"]
        for _ in range(200):
            c = fallback_coordinates("Texas", "Austin", rng=rng)
            assert abs(c.lat - lat0) <= CITY_JITTER_DEG
            assert abs(c.lng - lng0) <= CITY_JITTER_DEG
            assert c.source == "fallback"

    def test_state_only_within_wide_jitter(self):
        rng = random.Random(11)
        lat0, lng0 = STATE_CENTERS["Ohio"]
        for _ in range(200):
            c = fallback_coordinates("Ohio", None, rng=rng)
            assert abs(c.lat - lat0) <= STATE_JITTER_LAT_DEG
            assert abs(c.lng - lng0) <= STATE_JITTER_LNG_DEG

    def test_state_lookup_is_case_insensitive(self):
        c = fallback_coordinates("new york", "Albany", rng=random.Random(1))
        lat0, lng0 = STATE_CENTERS["New York"]
        assert abs(c.lat - lat0) <= CITY_JITTER_DEG

    def test_unknown_state_uses_us_center(self):
        c = fallback_coordinates("Atlantis", None, rng=random.Random(3))
        assert abs(c.lat - US_CENTER[0]) <= STATE_JITTER_LAT_DEG
        assert abs(c.lng - US_CENTER[1]) <= STATE_JITTER_LNG_DEG

    def test_all_fifty_states_present(self):
        assert len(STATE_CENTERS) == 50


class TestEnricher:
    def test_at_most_three_lookups_in_flight(self):
        geocoder = FakeGeocoder(default=Coordinates(30.0, -97.0, "geocoder"))
        enricher = GeocodingEnricher(geocoder=geocoder, batch_size=3)
        result = asyncio.run(enricher.enrich(_targets(10)))

        assert len(result) == 10
        assert geocoder.max_in_flight == 3
        assert all(c.source == "geocoder" for c in result.values())

    def test_cascade_uses_city_query_when_name_misses(self):
        city_hit = Coordinates(30.27, -97.74, "geocoder")
        geocoder = FakeGeocoder(hits={"Austin, Texas, USA": city_hit})
        enricher = GeocodingEnricher(geocoder=geocoder)
        target = GeocodeTarget(key="austin_isd_texas", name="Austin ISD", state="Texas", city="Austin")

        result = asyncio.run(enricher.enrich([target]))

        assert result["austin_isd_texas"] == city_hit
        assert geocoder.queries == ["Austin ISD, Austin, Texas, USA", "Austin, Texas, USA"]

    def test_errors_fall_back_without_raising(self):
        geocoder = FakeGeocoder(default=httpx.ConnectError("boom"))
        enricher = GeocodingEnricher(geocoder=geocoder, rng=random.Random(5))
        result = asyncio.run(enricher.enrich(_targets(4)))

        lat0, lng0 = STATE_CENTERS["Texas"]
        assert len(result) == 4
        for c in result.values():
            assert c.source == "fallback"
            assert abs(c.lat - lat0) <= CITY_JITTER_DEG
            assert abs(c.lng - lng0) <= CITY_JITTER_DEG

    def test_unconfigured_geocoder_skips_lookups(self):
        geocoder = MapboxGeocoder(access_token="")
        enricher = GeocodingEnricher(geocoder=geocoder)
        result = asyncio.run(enricher.enrich(_targets(2, city=None)))
        assert {c.source for c in result.values()} == {"fallback"}

    def test_empty_input(self):
        assert asyncio.run(GeocodingEnricher(geocoder=FakeGeocoder()).enrich([])) == {}


class TestMapboxGeocoder:
    def _run(self, handler, query="Austin ISD, Austin, Texas, USA"):
        geocoder = MapboxGeocoder(access_token="pk.test", base_url="https://geo.test/mapbox.places")

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await geocoder.lookup(client, query)

        return asyncio.run(go())

    def test_parses_center_as_lng_lat(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200, json={"features": [{"center": [-97.7431, 30.2672]}]})

        coords = self._run(handler)

        assert coords == Coordinates(lat=30.2672, lng=-97.7431, source="geocoder")
        assert seen["url"].params["access_token"] == "pk.test"
        assert seen["url"].params["limit"] == "1"
        assert seen["url"].path.endswith(".json")

    def test_no_features_is_a_miss(self):
        assert self._run(lambda r: httpx.Response(200, json={"features": []})) is None

    def test_http_error_status_is_a_miss(self):
        assert self._run(lambda r: httpx.Response(401, json={"message": "Not Authorized"})) is None

    def test_transport_error_retried_once(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("reset", request=request)
            return httpx.Response(200, json={"features": [{"center": [-96.8, 32.78]}]})

        coords = self._run(handler)
        assert calls["n"] == 2
        assert coords.lat == pytest.approx(32.78)

    def test_cached_result_skips_http(self, no_redis):
        no_redis.return_value = {"lat": 29.76, "lng": -95.37}

        def handler(request):
            raise AssertionError("HTTP should not be called on a cache hit")

        coords = self._run(handler)
        assert (coords.lat, coords.lng) == (29.76, -95.37)
