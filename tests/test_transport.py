import ipaddress

import pytest

from sipwire.transport import (
    DEFAULT_TCP_PORT,
    DEFAULT_TLS_PORT,
    DEFAULT_UDP_PORT,
    DEFAULT_WS_PORT,
    DEFAULT_WSS_PORT,
    Addr,
    default_port,
    is_reliable,
    network_to_lower,
    network_to_upper,
    parse_addr,
)


@pytest.mark.parametrize(
    "transport, expected",
    [
        ("TLS", DEFAULT_TLS_PORT),
        ("tcp", DEFAULT_TCP_PORT),
        ("UDP", DEFAULT_UDP_PORT),
        ("ws", DEFAULT_WS_PORT),
        ("WSS", DEFAULT_WSS_PORT),
        ("sctp", DEFAULT_TCP_PORT),
    ],
)
def test_default_port(transport, expected):
    assert default_port(transport) == expected


def test_default_port_values_fixed_by_source():
    assert default_port("udp") == 5060
    assert default_port("tls") == 5061
    assert default_port("wss") == 443


def test_parse_addr_ipv4():
    assert parse_addr("127.0.0.1:5060") == ("127.0.0.1", 5060)


def test_parse_addr_ipv6():
    assert parse_addr("[::1]:5061") == ("::1", 5061)


def test_parse_addr_hostname():
    assert parse_addr("localhost:5066") == ("localhost", 5066)


@pytest.mark.parametrize(
    "bad",
    ["127.0.0.1", "127.0.0.1:", "::1:5060", "[::1]", "host:abc", "[::1:5060"],
)
def test_parse_addr_errors(bad):
    with pytest.raises(ValueError):
        parse_addr(bad)


def test_addr_str_uses_ip_then_hostname():
    with_ip = Addr(ip=ipaddress.ip_address("127.0.0.99"), port=5060, hostname="example.com")
    assert parse_addr(str(with_ip)) == ("127.0.0.99", 5060)
    without_ip = Addr(port=5060, hostname="example.com")
    assert parse_addr(str(without_ip)) == ("example.com", 5060)


def test_addr_str_ipv6_round_trip():
    addr = Addr(ip=ipaddress.ip_address("::1"), port=5060)
    assert str(addr).startswith("[")
    assert parse_addr(str(addr)) == ("::1", 5060)


def test_is_reliable():
    assert not is_reliable("udp")
    assert not is_reliable("UDP")
    assert is_reliable("tcp")
    assert is_reliable("TLS")


@pytest.mark.parametrize("name", ["udp", "tcp", "tls", "ws", "wss"])
def test_network_case_round_trip(name):
    assert network_to_lower(network_to_upper(name)) == name
    assert network_to_upper(name) == name.upper()


def test_network_to_lower_other():
    assert network_to_lower("UDP") == "udp"
    assert network_to_lower("Udp6") == "udp6"
    assert network_to_upper("udp4") == "UDP4"