import logging
from dataclasses import dataclass
from typing import Optional

import requests

GEO_LOOKUP_URL = "https://ipinfo.io/json"
GEO_TIMEOUT = 5
UNKNOWN = "Unknown"

logger = logging.getLogger("uptime-geo")


@dataclass
class GeoInfo:
    ip: str = UNKNOWN
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None

    @property
    def location(self) -> str:
        return ", ".join(part or UNKNOWN for part in (self.city, self.region, self.country))

    @property
    def short_location(self) -> str:
        return ", ".join(part or UNKNOWN for part in (self.city, self.region))


def lookup_geo(url: str = GEO_LOOKUP_URL, timeout: float = GEO_TIMEOUT) -> GeoInfo:
    """
    Public ip and location of this host. Raises requests.RequestException or ValueError.
    """
    res = requests.get(url, timeout=timeout)
    res.raise_for_status()
    data = res.json()
    if not isinstance(data, dict):
        raise ValueError("geo lookup returned a non-object")
    return GeoInfo(
        ip=data.get("ip") or UNKNOWN,
        city=data.get("city"),
        region=data.get("region"),
        country=data.get("country"),
    )


class GeoLookup:
    """
    Callable geo capability bound to one lookup url.
    """

    def __init__(self, url: str = GEO_LOOKUP_URL, timeout: float = GEO_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def __call__(self) -> GeoInfo:
        return lookup_geo(self.url, self.timeout)
