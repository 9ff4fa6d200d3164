"""Client IP resolution and allow/deny lists."""

from __future__ import annotations

import ipaddress
from typing import Iterable, Mapping

PROXY_HEADERS = (
    "cf-connecting-ip",
    "client-ip",
    "x-forwarded-for",
    "x-forwarded",
    "x-cluster-client-ip",
    "forwarded-for",
    "forwarded",
)


def _parse_public_ip(raw: str) -> str | None:
    candidate = raw.strip()
    if candidate.lower().startswith("for="):
        candidate = candidate[4:].strip('"[]')
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    if not address.is_global:
        return None
    return str(address)


def resolve_client_ip(
    headers: Mapping[str, str],
    remote_addr: str | None,
    *,
    trust_proxy_headers: bool = True,
) -> str:
    """Return the first public address from the proxy headers, else the socket peer."""
    if trust_proxy_headers:
        lowered = {key.lower(): value for key, value in headers.items()}
        for header in PROXY_HEADERS:
            value = lowered.get(header)
            if not value:
                continue
            first = value.split(",")[0]
            if header == "forwarded":
                first = first.split(";")[0]
            resolved = _parse_public_ip(first)
            if resolved:
                return resolved
    return (remote_addr or "").strip() or "unknown"


class IpAccessList:
    """Exact-address and CIDR allow/deny lists; an empty allow-list admits everyone."""

    def __init__(self, allow: Iterable[str] = (), deny: Iterable[str] = ()) -> None:
        self._allow = [self._parse_network(entry) for entry in allow if entry.strip()]
        self._deny = [self._parse_network(entry) for entry in deny if entry.strip()]

    @staticmethod
    def _parse_network(entry: str) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
        return ipaddress.ip_network(entry.strip(), strict=False)

    @staticmethod
    def _contains(
        networks: list[ipaddress.IPv4Network | ipaddress.IPv6Network], ip: str
    ) -> bool:
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return any(address in network for network in networks)

    def is_denied(self, ip: str) -> bool:
        return self._contains(self._deny, ip)

    def is_allowed(self, ip: str) -> bool:
        if self.is_denied(ip):
            return False
        if not self._allow:
            return True
        return self._contains(self._allow, ip)
