"""
Client identification helpers.

The device fingerprint is a SHA-256 digest over a canonical JSON of a
few request headers.  It is a heuristic signal for spotting a token
replayed from another client, not a security boundary on its own.
"""

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass

from fastapi import Request

from app.models.session import SessionType

FINGERPRINT_HEADERS: dict[str, str] = {
    "user_agent": "user-agent",
    "accept_language": "accept-language",
    "accept_encoding": "accept-encoding",
    "platform": "sec-ch-ua-platform",
    "screen_resolution": "x-screen-resolution",
}


def generate_device_fingerprint(headers: Mapping[str, str]) -> str:
    """Deterministic hex digest of the fingerprint headers.

    Header lookup is case-insensitive; a missing header counts as "".
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    material = {field: lowered.get(header, "") for field, header in FINGERPRINT_HEADERS.items()}
    canonical = json.dumps(material, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        # May hold a proxy chain; the first hop is the client
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _session_type(raw: str | None) -> SessionType:
    try:
        return SessionType((raw or "").strip().lower())
    except ValueError:
        return SessionType.WEB


@dataclass(frozen=True)
class ClientInfo:
    """Request-derived metadata attached to a new session."""

    ip_address: str
    user_agent: str | None
    fingerprint: str
    session_type: SessionType = SessionType.WEB

    @classmethod
    def from_request(cls, request: Request) -> "ClientInfo":
        return cls(
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            fingerprint=generate_device_fingerprint(request.headers),
            session_type=_session_type(request.headers.get("x-client-type")),
        )
