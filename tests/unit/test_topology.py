import dataclasses

import pytest

from miniternet.base.config import TestbedConfig
from miniternet.engine.topology import Role, ServiceSpec, Topology, default_topology
from miniternet.errors import ConfigurationError, ErrorCode
from miniternet.net.allocator import AddressAllocator
from miniternet.tls.profiles import DEFAULT_MATRIX


def _config(pool_size=2):
    base = TestbedConfig()
    return dataclasses.replace(base, runner=dataclasses.replace(base.runner, pool_size=pool_size))


def test_default_topology_shape():
    topology = default_topology(_config(pool_size=3), DEFAULT_MATRIX).validate()

    assert [s.zone for s in topology.zone_primaries()] == [".", "tk", "nlnetlabs.tk"]
    assert topology.zone_of(topology.get("master2")) == "tk"
    assert len(topology.by_role(Role.TARGET)) == len(DEFAULT_MATRIX)
    assert [s.name for s in topology.by_role(Role.BROWSER)] == [
        "selenium-firefox-1", "selenium-firefox-2", "selenium-firefox-3",
    ]
    assert all(not s.critical for s in topology.by_role(Role.TARGET))
    assert "resolver" in topology.get("app").depends_on
    assert "master2" in topology.get("resolver").depends_on


def test_every_dependency_is_declared():
    topology = default_topology(_config(), DEFAULT_MATRIX)
    for spec in topology:
        for dep in spec.depends_on:
            assert dep in topology, f"{spec.name} depends on undeclared {dep}"


def test_allocation_skips_build_nodes_and_targets():
    topology = default_topology(_config(), DEFAULT_MATRIX)
    allocator = AddressAllocator("172.16.238.0/24", "2001:3984:3989::/64")
    topology.allocate(allocator)
    allocated = dict(allocator.items())
    assert "root" in allocated and "app" in allocated
    assert "devbase" not in allocated and "test_net" not in allocated
    assert not any(name.startswith("target") for name in allocated)


@pytest.mark.parametrize("specs,fragment", [
    ([ServiceSpec("tld", Role.DNS, zone="tk", parent_zone=".")], "root zone"),
    ([ServiceSpec("root", Role.DNS, zone="."), ServiceSpec("x", Role.DNS)], "without zone"),
    ([ServiceSpec("root", Role.DNS, zone="."), ServiceSpec("s", Role.DNS, secondary_of="nope")], "secondary_of"),
    ([ServiceSpec("root", Role.DNS, zone="."), ServiceSpec("leaf", Role.DNS, zone="a.tk", parent_zone="tk")],
     "parent zone"),
    ([ServiceSpec("root", Role.DNS, zone="."), ServiceSpec("app", Role.APP, resolver="root")], "resolver"),
    ([ServiceSpec("root", Role.DNS, zone="."), ServiceSpec("t", Role.TARGET)], "fixture"),
])
def test_invalid_references(specs, fragment):
    with pytest.raises(ConfigurationError) as excinfo:
        Topology(specs).validate()
    assert fragment in str(excinfo.value)


def test_duplicates_and_unknown_names():
    with pytest.raises(ConfigurationError):
        Topology([ServiceSpec("a", Role.SUPPORT), ServiceSpec("a", Role.SUPPORT)])
    with pytest.raises(ConfigurationError) as excinfo:
        Topology([]).get("missing")
    assert excinfo.value.code is ErrorCode.GRAPH_UNKNOWN_SERVICE
