from datetime import datetime, timezone

import httpx

import timekeeper.services.geocoding as geocoding
from timekeeper.config import settings
from timekeeper.services.geocoding import UNKNOWN_LOCATION, resolve_local_context

NOW_UTC = datetime(2026, 3, 2, 3, 35, tzinfo=timezone.utc)


def _fake_google(responses):
    def fake_get(url, params):
        payload = responses[url]
        if isinstance(payload, Exception):
            raise payload
        return payload
    return fake_get


def test_without_api_key_falls_back(monkeypatch):
    monkeypatch.setattr(settings, "google_maps_api_key", "")
    context = resolve_local_context(12.97, 77.59, now_utc=NOW_UTC, fallback_tz="Asia/Kolkata")
    assert context.address == UNKNOWN_LOCATION
    assert context.timezone == "Asia/Kolkata"
    assert context.local_time == datetime(2026, 3, 2, 9, 5)
    assert context.local_time.tzinfo is None


def test_google_lookup(monkeypatch):
    monkeypatch.setattr(settings, "google_maps_api_key", "test-key")
    monkeypatch.setattr(geocoding, "_get", _fake_google({
        geocoding.TIMEZONE_URL: {"status": "OK", "timeZoneId": "Asia/Kolkata"},
        geocoding.GEOCODE_URL: {"status": "OK", "results": [{"formatted_address": "MG Road, Bengaluru"}]},
    }))
    context = resolve_local_context(12.97, 77.59, now_utc=NOW_UTC)
    assert context.timezone == "Asia/Kolkata"
    assert context.address == "MG Road, Bengaluru"
    assert context.local_time == datetime(2026, 3, 2, 9, 5)


def test_google_failures_degrade(monkeypatch):
    monkeypatch.setattr(settings, "google_maps_api_key", "test-key")
    monkeypatch.setattr(geocoding, "_get", _fake_google({
        geocoding.TIMEZONE_URL: {"status": "OK", "timeZoneId": "Not/AZone"},
        geocoding.GEOCODE_URL: httpx.ConnectError("no route to host"),
    }))
    context = resolve_local_context(12.97, 77.59, now_utc=NOW_UTC)
    assert context.timezone == "UTC"
    assert context.address == UNKNOWN_LOCATION
    assert context.local_time == datetime(2026, 3, 2, 3, 35)


def test_missing_coordinates_skip_lookup(monkeypatch):
    monkeypatch.setattr(settings, "google_maps_api_key", "test-key")

    def unexpected(url, params):
        raise AssertionError("Google should not be called")

    monkeypatch.setattr(geocoding, "_get", unexpected)
    context = resolve_local_context(None, None, now_utc=NOW_UTC, fallback_tz="Simulated Timezone")
    assert context.timezone == "UTC"
    assert context.address == UNKNOWN_LOCATION
