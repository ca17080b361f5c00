"""IP geolocation with a disk cache, used for the peer table's location column."""

import ipaddress
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any

import requests

from lantern.peers import UNKNOWN_LOCATION

logger = logging.getLogger(__name__)

# Cache path: ~/.config/lantern/geo_cache.json
CACHE_PATH = Path(Path.home() / ".config" / "lantern" / "geo_cache.json")

PUBLIC_IP_URL = "https://get.geojs.io/v1/ip.json"
LOOKUP_TIMEOUT = 5


def _is_private_or_local(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return True
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_unspecified


def _format_location(city: Any, country: Any) -> str | None:
    city = str(city or "").strip()
    country = str(country or "").strip()[:2].upper()
    if city and country:
        return f"{city}, {country}"
    if country:
        return country
    return None


class GeoCache:
    """Best-effort "City, CC" lookups. Only successful lookups are cached."""

    def __init__(self, cache_path: Path = CACHE_PATH) -> None:
        self.cache_path = cache_path
        self._cache: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._load_cache()

    def _load_cache(self) -> None:
        try:
            if self.cache_path.exists():
                self._cache = json.loads(self.cache_path.read_text())
        except (OSError, ValueError) as exc:
            logger.debug("Ignoring unreadable geo cache %s: %s", self.cache_path, exc)
            self._cache = {}

    def _save_cache(self) -> None:
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_text(json.dumps(self._cache, indent=2))
        except OSError as exc:
            logger.debug("Unable to write geo cache %s: %s", self.cache_path, exc)

    def _fetch_from_api(self, ip: str) -> str | None:
        """Try GeoJS, then ip-api.com. Returns "City, CC" or None."""
        sources = [
            (f"https://get.geojs.io/v1/ip/geo/{ip}.json", "city", "country_code"),
            (f"http://ip-api.com/json/{ip}?fields=city,countryCode", "city", "countryCode"),
        ]
        for url, city_key, country_key in sources:
            try:
                r = requests.get(url, timeout=LOOKUP_TIMEOUT)
                r.raise_for_status()
                data = r.json()
            except (requests.RequestException, ValueError) as exc:
                logger.debug("Geo lookup for %s via %s failed: %s", ip, url, exc)
                continue
            if not isinstance(data, dict):
                logger.debug("Geo lookup for %s via %s returned %s", ip, url, type(data).__name__)
                continue
            location = _format_location(data.get(city_key), data.get(country_key))
            if location:
                return location
        return None

    def locate(self, ip: str) -> str:
        ip_clean = ip.strip().replace("[", "").replace("]", "")
        if not ip_clean or _is_private_or_local(ip_clean):
            return UNKNOWN_LOCATION
        with self._lock:
            cached = self._cache.get(ip_clean)
        if cached and cached.get("location"):
            return cached["location"]
        location = self._fetch_from_api(ip_clean)
        if location is None:
            return UNKNOWN_LOCATION
        with self._lock:
            self._cache[ip_clean] = {"location": location, "ts": int(time.time())}
            self._save_cache()
        return location

    @staticmethod
    def public_ip() -> str | None:
        """The address the outside world sees us as, or None when it can't be determined."""
        try:
            r = requests.get(PUBLIC_IP_URL, timeout=LOOKUP_TIMEOUT)
            r.raise_for_status()
            data = r.json()
            ip = str(data.get("ip", "") if isinstance(data, dict) else "").strip()
            ipaddress.ip_address(ip)
        except (requests.RequestException, ValueError) as exc:
            logger.debug("Public IP lookup failed: %s", exc)
            return None
        return ip
