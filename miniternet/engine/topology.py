# ============================================================================
# miniternet/engine/topology.py
# Declarative service topology of the closed network
# ============================================================================
#
# PURPOSE:
# Lists every service of the testbed with its role and its references to
# other services. References are explicit fields (depends_on, zone,
# parent_zone, secondary_of, resolver), never derived from service names.
#
# The default topology:
#
#   test_net                     network (build)
#   devbase -> nsdbase           base images (build)
#   appbase, targetbase          base images (build)
#   redis, rabbitmq, postgres    application support services
#   root -> master -> submaster  ".", TLD and leaf zone primaries
#   master2                      secondary of the TLD
#   resolver                     validating resolver; verifies the chain
#   ca_ocsp                      certificate authority and OCSP responder
#   target<profile>              one per fixture profile (non-critical)
#   selenium, selenium-firefox-N browser grid hub and nodes
#   app                          application under test
#
# ============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from miniternet.base.config import TestbedConfig
from miniternet.errors import ConfigurationError, ErrorCode
from miniternet.net.allocator import AddressAllocator
from miniternet.tls.profiles import FixtureProfile

logger = logging.getLogger(__name__)


class Role(str, Enum):
    NETWORK = "network"
    BUILD = "build"
    SUPPORT = "support"
    DNS = "dns"
    RESOLVER = "resolver"
    CA = "ca"
    TARGET = "target"
    GRID = "grid"
    BROWSER = "browser"
    APP = "app"

    @property
    def is_build(self) -> bool:
        return self in (Role.NETWORK, Role.BUILD)


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    role: Role
    depends_on: Tuple[str, ...] = ()
    image: Optional[str] = None
    build_context: Optional[str] = None
    port: Optional[int] = None
    health_path: Optional[str] = None
    critical: bool = True

    # DNS tier
    zone: Optional[str] = None
    parent_zone: Optional[str] = None
    secondary_of: Optional[str] = None

    # Services that resolve through the closed network
    resolver: Optional[str] = None

    # Fixture profile served by a target
    fixture: Optional[str] = None

    env: Dict[str, str] = field(default_factory=dict)


class Topology:
    """Ordered, validated collection of ServiceSpecs."""

    def __init__(self, specs: Sequence[ServiceSpec]):
        self._specs: Dict[str, ServiceSpec] = {}
        for spec in specs:
            if spec.name in self._specs:
                raise ConfigurationError(f"Service {spec.name!r} appears twice in the topology")
            self._specs[spec.name] = spec

    def __iter__(self) -> Iterator[ServiceSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def get(self, name: str) -> ServiceSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown service {name!r}", code=ErrorCode.GRAPH_UNKNOWN_SERVICE
            ) from None

    def by_role(self, role: Role) -> List[ServiceSpec]:
        return [s for s in self._specs.values() if s.role is role]

    def zone_primaries(self) -> List[ServiceSpec]:
        """DNS primaries, parents before children."""
        primaries = [s for s in self.by_role(Role.DNS) if s.zone is not None and s.secondary_of is None]
        return sorted(primaries, key=lambda s: 0 if s.zone == "." else len(s.zone.strip(".").split(".")))

    def zone_of(self, spec: ServiceSpec) -> str:
        if spec.secondary_of is not None:
            return self.get(spec.secondary_of).zone
        return spec.zone

    def validate(self) -> "Topology":
        """Check every cross-reference. Dependency names are checked by the supervisor."""
        problems: List[str] = []
        zones = {s.zone: s for s in self.zone_primaries()}
        for spec in self:
            if spec.role is Role.DNS:
                if spec.secondary_of is not None:
                    primary = self._specs.get(spec.secondary_of)
                    if primary is None or primary.role is not Role.DNS or primary.zone is None:
                        problems.append(f"{spec.name}: secondary_of {spec.secondary_of!r} is not a zone primary")
                elif spec.zone is None:
                    problems.append(f"{spec.name}: DNS service without zone or secondary_of")
                elif spec.zone != "." and spec.parent_zone not in zones:
                    problems.append(f"{spec.name}: parent zone {spec.parent_zone!r} has no primary")
            if spec.resolver is not None:
                target = self._specs.get(spec.resolver)
                if target is None or target.role is not Role.RESOLVER:
                    problems.append(f"{spec.name}: resolver {spec.resolver!r} is not a resolver service")
            if spec.role is Role.TARGET and not spec.fixture:
                problems.append(f"{spec.name}: target without a fixture profile")
        if "." not in zones:
            problems.append("no service serves the root zone")
        if problems:
            raise ConfigurationError(
                "Invalid topology: " + "; ".join(problems),
                details={"problems": problems},
            )
        return self

    def allocate(self, allocator: AddressAllocator) -> None:
        """Addresses for every runtime service. Targets are allocated by the fixture matrix."""
        for spec in self:
            if spec.role.is_build or spec.role is Role.TARGET:
                continue
            allocator.allocate(spec.name)


def default_topology(config: TestbedConfig, profiles: Sequence[FixtureProfile]) -> Topology:
    dns = config.dns
    tld = dns.tld
    leaf = dns.leaf_zone
    specs: List[ServiceSpec] = [
        ServiceSpec("test_net", Role.NETWORK),
        ServiceSpec("devbase", Role.BUILD, image="devbase", build_context="devbase"),
        ServiceSpec("nsdbase", Role.BUILD, ("devbase",), image="nsdbase", build_context="dns/nsdbase"),
        ServiceSpec("appbase", Role.BUILD, image="appbase", build_context="app"),
        ServiceSpec("targetbase", Role.BUILD, image="targetbase", build_context="targetbase"),
        ServiceSpec("redis", Role.SUPPORT, ("test_net",), image="redis:alpine", port=6379),
        ServiceSpec("rabbitmq", Role.SUPPORT, ("test_net",), image="rabbitmq:management-alpine", port=5672),
        ServiceSpec("postgres", Role.SUPPORT, ("test_net",), image="postgres:alpine", port=5432),
        ServiceSpec("root", Role.DNS, ("test_net", "nsdbase"), image="nsdbase", zone="."),
        ServiceSpec("master", Role.DNS, ("test_net", "nsdbase", "root"), image="nsdbase",
                    zone=tld, parent_zone="."),
        ServiceSpec("master2", Role.DNS, ("test_net", "nsdbase", "master"), image="nsdbase",
                    secondary_of="master"),
        ServiceSpec("submaster", Role.DNS, ("test_net", "nsdbase", "master"), image="nsdbase",
                    zone=leaf, parent_zone=tld),
        ServiceSpec("resolver", Role.RESOLVER, ("test_net", "devbase", "root", "master", "master2", "submaster"),
                    image="devbase", port=53),
        ServiceSpec("ca_ocsp", Role.CA, ("test_net", "targetbase"), image="targetbase", port=80,
                    health_path="/ca.pem"),
    ]
    for profile in profiles:
        specs.append(ServiceSpec(
            f"target{profile.name}", Role.TARGET, ("test_net", "targetbase", "ca_ocsp"),
            image="targetbase", port=80, critical=False, fixture=profile.name,
        ))
    specs.append(ServiceSpec("selenium", Role.GRID, ("test_net", "resolver"), image="selenium/hub",
                             port=4444, health_path="/status", resolver="resolver"))
    for i in range(1, config.runner.pool_size + 1):
        specs.append(ServiceSpec(f"selenium-firefox-{i}", Role.BROWSER, ("selenium",),
                                 image="selenium/node-firefox", resolver="resolver",
                                 env={"HUB_HOST": "selenium", "NODE_MAX_SESSION": "1"}))
    specs.append(ServiceSpec(
        "app", Role.APP, ("test_net", "appbase", "redis", "rabbitmq", "postgres", "resolver"),
        image="appbase", port=8080, health_path="/", resolver="resolver",
        env={"REDIS_HOST": "redis", "RABBITMQ_HOST": "rabbitmq", "POSTGRES_HOST": "postgres"},
    ))
    topology = Topology(specs)
    logger.debug(f"[Topology] {len(topology)} services, {len(profiles)} fixture targets")
    return topology
