from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterator, Mapping

IpAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IpNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


class ClientAddressError(RuntimeError):
    pass


@dataclass(frozen=True)
class Topic:
    name: str
    recipients: tuple[str, ...]
    allow_list: tuple[IpNetwork, ...]

    def is_allowed(self, address: IpAddress) -> bool:
        # Membership is False across IP families, so mixed lists are fine.
        return any(address in network for network in self.allow_list)


class TopicRegistry(Mapping[str, Topic]):
    # Built once at startup; to reload, swap in a new registry.

    def __init__(self, topics: Mapping[str, Topic] | None = None) -> None:
        self._topics: Mapping[str, Topic] = MappingProxyType(dict(topics or {}))

    def __getitem__(self, name: str) -> Topic:
        return self._topics[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._topics)

    def __len__(self) -> int:
        return len(self._topics)

    def resolve(self, name: str) -> Topic | None:
        return self._topics.get(name)


def is_authorized(topic: Topic, address: IpAddress) -> bool:
    return topic.is_allowed(address)


def _strip_host(raw: str) -> str:
    value = raw.strip().strip('"')
    if value.startswith("["):
        # "[2001:db8::1]:4711"
        end = value.find("]")
        return value[1:end] if end != -1 else value
    if value.count(":") == 1:
        # "192.0.2.1:8080"
        return value.split(":", 1)[0]
    return value


def _forwarded_for(header_value: str) -> str | None:
    first_hop = header_value.split(",", 1)[0]
    for pair in first_hop.split(";"):
        key, _, value = pair.partition("=")
        if key.strip().lower() == "for" and value.strip():
            return _strip_host(value)
    return None


def extract_client_address(headers: Mapping[str, str], peer_host: str | None) -> IpAddress:
    # Forwarded: for=, then the first X-Forwarded-For hop, then the socket peer.
    candidate: str | None = None

    forwarded = headers.get("forwarded")
    if forwarded:
        candidate = _forwarded_for(forwarded)

    if candidate is None:
        x_forwarded_for = headers.get("x-forwarded-for")
        if x_forwarded_for and x_forwarded_for.split(",", 1)[0].strip():
            candidate = _strip_host(x_forwarded_for.split(",", 1)[0])

    if candidate is None:
        candidate = peer_host

    if not candidate:
        raise ClientAddressError("Cannot get ip address string from request")

    try:
        return ipaddress.ip_address(candidate)
    except ValueError as exc:
        raise ClientAddressError("Cannot parse ip address from string") from exc
