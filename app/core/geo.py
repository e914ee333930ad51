"""
IP → coarse location.

`GeoResolver` is the capability the session layer depends on; swap in a
real GeoIP-backed implementation through `app.state.geo_resolver`.
The bundled `StaticGeoResolver` only distinguishes local addresses from
everything else.
"""

import ipaddress
from dataclasses import asdict, dataclass
from typing import Protocol

from fastapi import Request

LOCAL = "Local"
UNKNOWN = "Unknown"


@dataclass(frozen=True)
class GeoLocation:
    country: str
    city: str
    ip: str

    def as_dict(self) -> dict[str, str]:
        return asdict(self)


class GeoResolver(Protocol):
    def resolve(self, ip: str) -> GeoLocation: ...


class StaticGeoResolver:
    """Loopback / private ranges → "Local", anything else → "Unknown".  Never raises."""

    def resolve(self, ip: str) -> GeoLocation:
        try:
            address = ipaddress.ip_address((ip or "").strip())
        except ValueError:
            return GeoLocation(country=UNKNOWN, city=UNKNOWN, ip=ip or "")

        if address.is_loopback or address.is_private or address.is_link_local:
            return GeoLocation(country=LOCAL, city=LOCAL, ip=ip)
        return GeoLocation(country=UNKNOWN, city=UNKNOWN, ip=ip)


def get_geo_resolver(request: Request) -> GeoResolver:
    return request.app.state.geo_resolver
