"""
Address geocoding through the US Census Bureau geocoder.

Any object with a `geocode(address, city, state, zip)` method returning a
GeocodeResult or None can stand in for CensusGeocoder.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

CENSUS_GEOCODER_URL = os.getenv(
    "CENSUS_GEOCODER_URL",
    "https://geocoding.geo.census.gov/geocoder/locations/address",
)


@dataclass(frozen=True)
class GeocodeResult:
    lat: float
    lng: float
    source: str = "census"


class CensusGeocoder:
    def __init__(self, base_url: str = CENSUS_GEOCODER_URL, timeout: float = 10.0,
                 client: Optional[httpx.Client] = None):
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    def geocode(self, address: str, city: str, state: str, zip: str) -> Optional[GeocodeResult]:
        """First Census match for the address, or None when there is none.

        Transport errors (timeouts, connection failures) propagate so the
        calling job is retried.
        """
        params = {
            "street": address,
            "city": city,
            "state": state,
            "zip": zip,
            "benchmark": "Public_AR_Current",
            "format": "json",
        }
        if self._client is not None:
            resp = self._client.get(self.base_url, params=params, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.get(self.base_url, params=params)

        if resp.status_code >= 400:
            logger.warning(f"Census geocoder error {resp.status_code}: {resp.text[:200]}")
            return None

        matches = (resp.json().get("result") or {}).get("addressMatches") or []
        if not matches:
            return None
        coords = matches[0]["coordinates"]
        return GeocodeResult(lat=coords["y"], lng=coords["x"])
