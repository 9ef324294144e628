"""Unit tests for camp_etl.geocoding with fake clients (no network)."""

import threading
import time

import pytest
import requests

from camp_etl.geocoding import (
    GeocodePool,
    GeocodeRequest,
    GeocodeResult,
    GeocoderError,
    GeocoderQuotaExceeded,
    OpenCageGeocoder,
    RetryPolicy,
    TransientGeocoderError,
    as_pool,
    build_geocode_query,
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append(params)
        if self.exc is not None:
            raise self.exc
        return self.response


class ScriptedGeocoder:
    """Returns or raises per query from a script of outcomes."""

    def __init__(self, script, delay=0.0):
        self._script = {k: list(v) for k, v in script.items()}
        self._delay = delay
        self._lock = threading.Lock()
        self.calls = []

    def lookup(self, query, near_city=None):
        with self._lock:
            self.calls.append(query)
            outcome = self._script[query].pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        time.sleep(self._delay)
        return outcome


HIT = GeocodeResult(latitude=45.5, longitude=-122.6)

OPENCAGE_PAYLOAD = {
    "results": [{
        "geometry": {"lat": 45.52, "lng": -122.68},
        "components": {
            "house_number": "123",
            "road": "Main Street",
            "city": "Portland",
            "state_code": "OR",
            "postcode": "97201",
        },
    }]
}


# ---------------------------------------------------------------------------
# build_geocode_query
# ---------------------------------------------------------------------------

class TestBuildGeocodeQuery:
    def test_all_parts(self):
        assert build_geocode_query("123 Main St", "Portland", "OR", "97201") == \
            "123 Main St, Portland, OR 97201"

    def test_partial(self):
        assert build_geocode_query(city="Portland", state="OR") == "Portland, OR"

    def test_fallback(self):
        assert build_geocode_query(fallback="Laurelhurst Park") == "Laurelhurst Park"


# ---------------------------------------------------------------------------
# OpenCageGeocoder
# ---------------------------------------------------------------------------

class TestOpenCageGeocoder:
    def test_maps_components(self):
        session = FakeSession(FakeResponse(200, OPENCAGE_PAYLOAD))
        result = OpenCageGeocoder(api_key="k", session=session).lookup("123 Main St")
        assert result == GeocodeResult(45.52, -122.68, "123 Main Street", "Portland", "OR", "97201")

    def test_near_city_appended(self):
        session = FakeSession(FakeResponse(200, {"results": []}))
        OpenCageGeocoder(api_key="k", session=session).lookup("Laurelhurst Park", "Portland")
        assert session.calls[0]["q"] == "Laurelhurst Park, Portland"

    def test_near_city_not_duplicated(self):
        session = FakeSession(FakeResponse(200, {"results": []}))
        OpenCageGeocoder(api_key="k", session=session).lookup("1 A St, Portland", "Portland")
        assert session.calls[0]["q"] == "1 A St, Portland"

    def test_no_results(self):
        session = FakeSession(FakeResponse(200, {"results": []}))
        assert OpenCageGeocoder(api_key="k", session=session).lookup("x") is None

    def test_missing_key_returns_none_without_calling(self, monkeypatch):
        monkeypatch.delenv("OPENCAGE_API_KEY", raising=False)
        session = FakeSession(FakeResponse(200, OPENCAGE_PAYLOAD))
        assert OpenCageGeocoder(session=session).lookup("x") is None
        assert session.calls == []

    @pytest.mark.parametrize("status", [402, 403])
    def test_quota(self, status):
        session = FakeSession(FakeResponse(status))
        with pytest.raises(GeocoderQuotaExceeded):
            OpenCageGeocoder(api_key="k", session=session).lookup("x")

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_transient(self, status):
        session = FakeSession(FakeResponse(status))
        with pytest.raises(TransientGeocoderError):
            OpenCageGeocoder(api_key="k", session=session).lookup("x")

    def test_network_error_is_transient(self):
        session = FakeSession(exc=requests.ConnectionError("down"))
        with pytest.raises(TransientGeocoderError):
            OpenCageGeocoder(api_key="k", session=session).lookup("x")

    def test_bad_request(self):
        session = FakeSession(FakeResponse(400))
        with pytest.raises(GeocoderError):
            OpenCageGeocoder(api_key="k", session=session).lookup("x")


# ---------------------------------------------------------------------------
# RetryPolicy / GeocodePool
# ---------------------------------------------------------------------------

class TestRetryPolicy:
    def test_exponential(self):
        p = RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=30.0)
        assert [p.delay_for(n) for n in (1, 2, 3, 4, 5)] == [2.0, 4.0, 8.0, 16.0, 30.0]


class TestGeocodePool:
    def test_all_hits(self):
        geo = ScriptedGeocoder({"a": [HIT], "b": [None]})
        out = GeocodePool(geo, sleep=lambda s: None).run([
            GeocodeRequest("1", "a"), GeocodeRequest("2", "b"),
        ])
        assert out.results == {"1": HIT, "2": None}
        assert out.failures == {}
        assert out.stop_reason is None

    def test_transient_retried_then_succeeds(self):
        delays = []
        geo = ScriptedGeocoder({"a": [TransientGeocoderError("503"), TransientGeocoderError("503"), HIT]})
        out = GeocodePool(geo, sleep=delays.append).run([GeocodeRequest("1", "a")])
        assert out.results == {"1": HIT}
        assert delays == [2.0, 4.0]

    def test_transient_gives_up_after_max_attempts(self):
        geo = ScriptedGeocoder({"a": [TransientGeocoderError("503")] * 3})
        out = GeocodePool(geo, retry=RetryPolicy(max_attempts=3), sleep=lambda s: None).run(
            [GeocodeRequest("1", "a")]
        )
        assert "1" in out.failures
        assert len(geo.calls) == 3

    def test_quota_stops_queue(self):
        script = {"q0": [GeocoderQuotaExceeded("HTTP 402")]}
        script.update({f"q{i}": [HIT] for i in range(1, 20)})
        geo = ScriptedGeocoder(script, delay=0.05)
        reqs = [GeocodeRequest(str(i), f"q{i}") for i in range(20)]
        out = GeocodePool(geo, max_workers=1, sleep=lambda s: None).run(reqs)
        assert out.stop_reason == "HTTP 402"
        assert out.failures == {"0": "HTTP 402"}
        assert len(out.skipped) + len(out.results) == 19
        assert len(out.skipped) > 0

    def test_non_transient_error_not_retried(self):
        geo = ScriptedGeocoder({"a": [GeocoderError("HTTP 400")]})
        out = GeocodePool(geo, sleep=lambda s: None).run([GeocodeRequest("1", "a")])
        assert out.failures == {"1": "HTTP 400"}
        assert len(geo.calls) == 1


class CountingGeocoder:
    """Records the highest number of lookups in flight at once."""

    def __init__(self, delay=0.02):
        self._delay = delay
        self._lock = threading.Lock()
        self._in_flight = 0
        self.peak = 0

    def lookup(self, query, near_city=None):
        with self._lock:
            self._in_flight += 1
            self.peak = max(self.peak, self._in_flight)
        time.sleep(self._delay)
        with self._lock:
            self._in_flight -= 1
        return HIT


class TestPoolLookup:
    def test_transient_retried(self):
        delays = []
        geo = ScriptedGeocoder({"a": [TransientGeocoderError("429"), HIT]})
        assert GeocodePool(geo, sleep=delays.append).lookup("a", "Portland") == HIT
        assert geo.calls == ["a", "a"]
        assert delays == [2.0]

    def test_final_transient_error_raised(self):
        geo = ScriptedGeocoder({"a": [TransientGeocoderError("timeout")] * 2})
        pool = GeocodePool(geo, retry=RetryPolicy(max_attempts=2), sleep=lambda s: None)
        with pytest.raises(TransientGeocoderError):
            pool.lookup("a")

    def test_quota_fails_fast_afterwards(self):
        geo = ScriptedGeocoder({"a": [GeocoderQuotaExceeded("HTTP 402")], "b": [HIT]})
        pool = GeocodePool(geo, sleep=lambda s: None)
        with pytest.raises(GeocoderQuotaExceeded):
            pool.lookup("a")
        with pytest.raises(GeocoderQuotaExceeded, match="HTTP 402"):
            pool.lookup("b")
        assert geo.calls == ["a"]

    def test_concurrent_lookups_capped(self):
        geo = CountingGeocoder()
        pool = GeocodePool(geo, max_workers=2, sleep=lambda s: None)
        threads = [threading.Thread(target=pool.lookup, args=(f"q{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert geo.peak <= 2


class TestAsPool:
    def test_wraps_bare_geocoder_once(self):
        pool = as_pool(ScriptedGeocoder({}))
        assert isinstance(pool, GeocodePool)
        assert as_pool(pool) is pool
