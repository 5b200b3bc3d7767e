"""
Topic registry, authorization and client address tests.
"""

import ipaddress

import pytest

from gateway.topics import (
    ClientAddressError,
    Topic,
    TopicRegistry,
    extract_client_address,
    is_authorized,
)


def _topic(*cidrs: str, recipients=("111",)) -> Topic:
    return Topic(
        name="ops",
        recipients=tuple(recipients),
        allow_list=tuple(ipaddress.ip_network(c) for c in cidrs),
    )


def _ip(value: str):
    return ipaddress.ip_address(value)


class TestIsAuthorized:
    def test_ipv4_inside_block(self):
        assert is_authorized(_topic("10.0.0.0/8"), _ip("10.1.2.3"))

    def test_ipv4_outside_block(self):
        assert not is_authorized(_topic("10.0.0.0/8"), _ip("11.0.0.1"))

    def test_ipv6_inside_block(self):
        assert is_authorized(_topic("fd00::/8"), _ip("fd12:3456::1"))

    def test_ipv6_outside_block(self):
        assert not is_authorized(_topic("fd00::/8"), _ip("2001:db8::1"))

    def test_family_mismatch_is_not_a_match(self):
        assert not is_authorized(_topic("0.0.0.0/0"), _ip("::1"))
        assert not is_authorized(_topic("::/0"), _ip("127.0.0.1"))

    def test_any_matching_block_authorizes(self):
        topic = _topic("192.168.0.0/16", "10.0.0.0/8", "fd00::/8")
        assert is_authorized(topic, _ip("10.9.9.9"))
        assert is_authorized(topic, _ip("fd00::5"))

    def test_empty_allow_list_authorizes_nobody(self):
        assert not is_authorized(_topic(), _ip("10.1.2.3"))

    def test_single_host_block(self):
        topic = _topic("192.168.10.5/32")
        assert is_authorized(topic, _ip("192.168.10.5"))
        assert not is_authorized(topic, _ip("192.168.10.6"))


class TestTopicRegistry:
    def test_resolve_known_and_unknown(self):
        ops = _topic("10.0.0.0/8")
        registry = TopicRegistry({"ops": ops})

        assert registry.resolve("ops") is ops
        assert registry.resolve("missing") is None
        assert len(registry) == 1
        assert list(registry) == ["ops"]

    def test_registry_is_read_only(self):
        registry = TopicRegistry({"ops": _topic()})
        with pytest.raises(TypeError):
            registry["new"] = _topic()  # type: ignore[index]

    def test_source_mapping_changes_do_not_leak_in(self):
        source = {"ops": _topic()}
        registry = TopicRegistry(source)
        source["late"] = _topic()

        assert registry.resolve("late") is None

    def test_empty_recipients_allowed(self):
        registry = TopicRegistry({"quiet": _topic("10.0.0.0/8", recipients=())})
        assert registry["quiet"].recipients == ()


class TestExtractClientAddress:
    def test_peer_address_used_without_proxy_headers(self):
        assert extract_client_address({}, "10.1.2.3") == _ip("10.1.2.3")

    def test_x_forwarded_for_first_hop_wins(self):
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1"}
        assert extract_client_address(headers, "127.0.0.1") == _ip("203.0.113.7")

    def test_forwarded_header_wins_over_x_forwarded_for(self):
        headers = {
            "forwarded": "for=198.51.100.17;proto=https, for=10.0.0.1",
            "x-forwarded-for": "203.0.113.7",
        }
        assert extract_client_address(headers, "127.0.0.1") == _ip("198.51.100.17")

    def test_forwarded_ipv6_with_port(self):
        headers = {"forwarded": 'for="[2001:db8:cafe::17]:4711"'}
        assert extract_client_address(headers, None) == _ip("2001:db8:cafe::17")

    def test_ipv4_with_port(self):
        headers = {"x-forwarded-for": "203.0.113.7:5555"}
        assert extract_client_address(headers, None) == _ip("203.0.113.7")

    def test_missing_address_raises(self):
        with pytest.raises(ClientAddressError):
            extract_client_address({}, None)

    def test_unparsable_address_raises(self):
        with pytest.raises(ClientAddressError):
            extract_client_address({}, "testclient")

    def test_unparsable_proxy_header_raises(self):
        """A bad proxy header is a local error, not a fallback to the peer."""
        with pytest.raises(ClientAddressError):
            extract_client_address({"x-forwarded-for": "not-an-ip"}, "10.1.2.3")
