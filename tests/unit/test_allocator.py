import ipaddress

import pytest

from miniternet.errors import AddressExhaustedError, ConfigurationError, ExitCode
from miniternet.net.allocator import AddressAllocator, AddressPair


def test_allocation_is_stable_and_deterministic():
    a = AddressAllocator("172.16.238.0/24", "2001:3984:3989::/64")
    b = AddressAllocator("172.16.238.0/24", "2001:3984:3989::/64")
    for name in ("root", "master", "submaster"):
        assert a.allocate(name) == b.allocate(name)
    assert a.allocate("root") == a.allocate("root")
    assert a.get("master").ipv4 == "172.16.238.3"
    assert a.get("master").ipv6 == "2001:3984:3989::3"


def test_addresses_are_inside_the_subnets_and_unique():
    allocator = AddressAllocator("172.16.238.0/24", "2001:3984:3989::/64")
    pairs = [allocator.allocate(f"svc{i}") for i in range(30)]
    v4 = [p.ipv4 for p in pairs]
    assert len(set(v4)) == len(v4)
    for pair in pairs:
        assert ipaddress.ip_address(pair.ipv4) in ipaddress.ip_network("172.16.238.0/24")
        assert ipaddress.ip_address(pair.ipv6) in ipaddress.ip_network("2001:3984:3989::/64")


def test_single_family_allocation():
    allocator = AddressAllocator("172.16.238.0/24", "2001:3984:3989::/64")
    pair = allocator.allocate("targettls13onlyipv4only", families=(4,))
    assert pair.ipv4 is not None
    assert pair.ipv6 is None
    assert list(pair) == [pair.ipv4]


def test_divergent_pair_has_different_host_parts():
    allocator = AddressAllocator("172.16.238.0/24", "2001:3984:3989::/64")
    allocator.allocate("app")
    pair = allocator.allocate_divergent("targettls13onlydiffipv4ipv6")
    v4_host = int(ipaddress.ip_address(pair.ipv4)) & 0xFF
    v6_host = int(ipaddress.ip_address(pair.ipv6)) & 0xFFFF
    assert v4_host != v6_host
    assert allocator.get("targettls13onlydiffipv4ipv6") == pair


def test_exhaustion_raises_configuration_error():
    allocator = AddressAllocator("10.0.0.0/29", "fd00::/64")
    with pytest.raises(AddressExhaustedError) as excinfo:
        for i in range(10):
            allocator.allocate(f"svc{i}")
    assert isinstance(excinfo.value, ConfigurationError)
    assert excinfo.value.exit_code == ExitCode.CONFIG_ERROR


def test_invalid_subnet():
    with pytest.raises(ConfigurationError):
        AddressAllocator("not-a-subnet", "2001:3984:3989::/64")


def test_pin_rejects_outside_and_duplicate_addresses():
    allocator = AddressAllocator("172.16.238.0/24", "2001:3984:3989::/64")
    pinned = allocator.pin("resolver", ipv4="172.16.238.200")
    assert pinned == AddressPair(ipv4="172.16.238.200")
    with pytest.raises(ConfigurationError):
        allocator.pin("other", ipv4="10.1.1.1")
    with pytest.raises(ConfigurationError):
        allocator.pin("again", ipv4="172.16.238.200")


def test_environment_rendering():
    allocator = AddressAllocator("172.16.238.0/24", "2001:3984:3989::/64")
    allocator.allocate("sub-master")
    allocator.allocate_divergent("target")
    env = allocator.environment()
    assert env["SUB_MASTER_IP"] == "172.16.238.2"
    assert env["SUB_MASTER_IPV6"] == "2001:3984:3989::2"
    assert "TARGET_IP" in env and "TARGET_IPV6" in env
    assert not any("~" in key for key in env)
