from __future__ import annotations

import json

import pytest
import requests

from lantern.services import geolocation
from lantern.services.geolocation import GeoCache


class FakeResponse:
    def __init__(self, payload: object, status_code: int = 200) -> None:
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self) -> object:
        return self.payload


@pytest.fixture
def cache(tmp_path) -> GeoCache:
    return GeoCache(cache_path=tmp_path / "geo_cache.json")


def _no_network(*args, **kwargs):
    raise AssertionError("unexpected network call")


@pytest.mark.parametrize("ip", ["10.0.0.5", "192.168.1.1", "127.0.0.1", "::1", "not-an-ip", ""])
def test_private_addresses_are_not_looked_up(monkeypatch, cache, ip: str) -> None:
    monkeypatch.setattr(geolocation.requests, "get", _no_network)

    assert cache.locate(ip) == "---"


def test_lookup_is_cached_on_disk(monkeypatch, cache) -> None:
    calls: list[str] = []

    def fake_get(url, timeout):
        calls.append(url)
        return FakeResponse({"city": "Berlin", "country_code": "de"})

    monkeypatch.setattr(geolocation.requests, "get", fake_get)

    assert cache.locate("8.8.8.8") == "Berlin, DE"
    assert cache.locate("8.8.8.8") == "Berlin, DE"
    assert len(calls) == 1
    assert json.loads(cache.cache_path.read_text())["8.8.8.8"]["location"] == "Berlin, DE"

    monkeypatch.setattr(geolocation.requests, "get", _no_network)
    assert GeoCache(cache_path=cache.cache_path).locate("8.8.8.8") == "Berlin, DE"


def test_falls_back_to_second_provider(monkeypatch, cache) -> None:
    def fake_get(url, timeout):
        if "geojs" in url:
            raise requests.ConnectionError("down")
        return FakeResponse({"city": "", "countryCode": "US"})

    monkeypatch.setattr(geolocation.requests, "get", fake_get)

    assert cache.locate("1.1.1.1") == "US"


def test_failed_lookup_is_not_cached(monkeypatch, cache) -> None:
    monkeypatch.setattr(geolocation.requests, "get", lambda url, timeout: FakeResponse({}, 500))

    assert cache.locate("1.1.1.1") == "---"
    assert not cache.cache_path.exists()


def test_public_ip(monkeypatch) -> None:
    monkeypatch.setattr(geolocation.requests, "get", lambda url, timeout: FakeResponse({"ip": "203.0.113.7"}))

    assert GeoCache.public_ip() == "203.0.113.7"


def test_public_ip_unavailable(monkeypatch) -> None:
    monkeypatch.setattr(geolocation.requests, "get", lambda url, timeout: FakeResponse({"ip": "garbage"}))

    assert GeoCache.public_ip() is None


def test_non_object_payload_is_skipped(monkeypatch, cache) -> None:
    monkeypatch.setattr(geolocation.requests, "get", lambda url, timeout: FakeResponse([]))

    assert cache.locate("8.8.4.1") == "---"
    assert not cache.cache_path.exists()


def test_non_object_payload_falls_through_to_next_provider(monkeypatch, cache) -> None:
    def fake_get(url, timeout):
        if "geojs" in url:
            return FakeResponse(["Berlin"])
        return FakeResponse({"city": "Paris", "countryCode": "FR"})

    monkeypatch.setattr(geolocation.requests, "get", fake_get)

    assert cache.locate("8.8.4.2") == "Paris, FR"


def test_public_ip_non_object_payload(monkeypatch) -> None:
    monkeypatch.setattr(geolocation.requests, "get", lambda url, timeout: FakeResponse(["203.0.113.7"]))

    assert GeoCache.public_ip() is None
