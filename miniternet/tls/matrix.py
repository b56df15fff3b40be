# ============================================================================
# miniternet/tls/matrix.py
# TLS Target Matrix Generator
# ============================================================================
#
# PURPOSE:
# Turns the declarative fixture profiles into reachable target servers:
#
#   1. allocate  - host name <profile>.<fixture domain> and its addresses
#   2. certify   - key + CSR, certificate from the CA scoped to that host,
#                  OCSP response when the profile staples one
#   3. configure - render the profile into server configuration
#   4. register  - A/AAAA into the fixture zone once it is DELEGATED
#
# Failures are local: a fixture whose CA request or DNS registration fails
# is marked failed and every other fixture carries on.
#
# ============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from miniternet.errors import (
    CertIssuanceError,
    ConfigurationError,
    DNSSECPublicationError,
    ErrorCode,
    TestbedError,
)
from miniternet.net.allocator import AddressAllocator, AddressPair
from miniternet.tls import server_config
from miniternet.tls.ca import build_csr, certificate_matches, private_key_pem
from miniternet.tls.profiles import FixtureProfile
from miniternet.zones.bootstrapper import DNSSECChainBootstrapper
from miniternet.zones.zone import ZoneState

logger = logging.getLogger(__name__)


class CertificateIssuer(Protocol):
    async def issue(self, csr_pem: bytes, hostname: str, state: str = "valid") -> bytes: ...

    async def ocsp(self, cert_pem: bytes, status: str) -> bytes: ...


@dataclass
class TargetFixture:
    profile: FixtureProfile
    hostname: str
    addresses: AddressPair
    key_pem: Optional[bytes] = None
    certificate_pem: Optional[bytes] = None
    ocsp_response: Optional[bytes] = None
    config_path: Optional[Path] = None
    dns_registered: bool = False
    error: Optional[TestbedError] = None

    @property
    def name(self) -> str:
        return self.profile.name

    @property
    def service_name(self) -> str:
        return f"target{self.profile.name}"

    @property
    def certified(self) -> bool:
        return self.certificate_pem is not None or not self.profile.tls

    @property
    def usable(self) -> bool:
        """Only a fixture with both its DNS records and its certificate is usable."""
        return self.error is None and self.dns_registered and self.certified

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "hostname": self.hostname,
            "ipv4": self.addresses.ipv4,
            "ipv6": self.addresses.ipv6,
            "usable": self.usable,
            "error": self.error.to_dict() if self.error else None,
        }


class TLSTargetMatrixGenerator:
    """Plans and provisions one TargetFixture per profile."""

    def __init__(
        self,
        profiles: Sequence[FixtureProfile],
        allocator: AddressAllocator,
        issuer: CertificateIssuer,
        chain: DNSSECChainBootstrapper,
        zone: str,
        domain: str,
        config_dir: Path,
        dns_timeout: Optional[float] = None,
        zone_ready: Optional[Callable[[], Awaitable[object]]] = None,
    ):
        names = [p.name for p in profiles]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate fixture profiles: {', '.join(duplicates)}")
        self.profiles = list(profiles)
        self.allocator = allocator
        self.issuer = issuer
        self.chain = chain
        self.zone = zone
        self.domain = domain.strip(".")
        self.config_dir = Path(config_dir)
        self.dns_timeout = dns_timeout
        self.zone_ready = zone_ready
        self.fixtures: Dict[str, TargetFixture] = {}

    def plan(self) -> List[TargetFixture]:
        """Allocate host names and addresses for every profile (idempotent)."""
        for profile in self.profiles:
            if profile.name in self.fixtures:
                continue
            key = f"target{profile.name}"
            if profile.dual_stack == "divergent":
                addresses = self.allocator.allocate_divergent(key)
            elif profile.dual_stack == "ipv4_only":
                addresses = self.allocator.allocate(key, families=(4,))
            else:
                addresses = self.allocator.allocate(key)
            self.fixtures[profile.name] = TargetFixture(
                profile=profile,
                hostname=f"{profile.name}.{self.domain}",
                addresses=addresses,
            )
        return list(self.fixtures.values())

    def fixture(self, name: str) -> TargetFixture:
        try:
            return self.fixtures[name]
        except KeyError:
            raise ConfigurationError(f"Unknown fixture {name!r}") from None

    async def _certify(self, fixture: TargetFixture) -> None:
        profile = fixture.profile
        key, csr = build_csr(fixture.hostname)
        csr_pem = csr.public_bytes(serialization.Encoding.PEM)
        cert_pem = await self.issuer.issue(csr_pem, fixture.hostname, profile.certificate)
        try:
            cert = x509.load_pem_x509_certificate(cert_pem)
        except ValueError as e:
            raise CertIssuanceError(
                f"CA returned an unreadable certificate for {fixture.hostname}",
                code=ErrorCode.CERT_CSR_REJECTED,
                details={"fixture": fixture.name},
            ) from e

        # wrong_host certificates must not match; every other state must
        if certificate_matches(cert, fixture.hostname) != (profile.certificate != "wrong_host"):
            raise CertIssuanceError(
                f"Certificate subject for {fixture.name} does not agree with {fixture.hostname}",
                code=ErrorCode.CERT_SUBJECT_MISMATCH,
                details={"fixture": fixture.name, "hostname": fixture.hostname},
            )

        fixture.key_pem = private_key_pem(key)
        fixture.certificate_pem = cert_pem
        if profile.ocsp != "none":
            fixture.ocsp_response = await self.issuer.ocsp(cert_pem, profile.ocsp)

    async def _register(self, fixture: TargetFixture) -> None:
        if self.zone_ready is not None:
            await self.zone_ready()
        else:
            await self._wait_for_zone(fixture)
        await self.chain.register_host(
            self.zone, fixture.hostname,
            ipv4=fixture.addresses.ipv4,
            ipv6=fixture.addresses.ipv6,
        )
        fixture.dns_registered = True

    async def _wait_for_zone(self, fixture: TargetFixture) -> None:
        try:
            await self.chain.wait_for_state(self.zone, ZoneState.DELEGATED, timeout=self.dns_timeout)
        except asyncio.TimeoutError:
            raise DNSSECPublicationError(
                f"Zone {self.zone} not delegated within {self.dns_timeout}s; cannot register {fixture.hostname}",
                code=ErrorCode.DNSSEC_ZONE_NOT_READY,
                details={"fixture": fixture.name, "zone": self.zone},
            ) from None

    async def provision(self, name: str) -> TargetFixture:
        """
        Certify, configure and register one fixture.

        Raises the fixture's error (CertIssuanceError, DNSSECPublicationError)
        after recording it on the fixture.
        """
        if not self.fixtures:
            self.plan()
        fixture = self.fixture(name)
        if fixture.usable:
            return fixture
        fixture.error = None
        try:
            if fixture.profile.tls and fixture.certificate_pem is None:
                await self._certify(fixture)
            fixture.config_path = server_config.write(fixture, self.config_dir)
            await self._register(fixture)
        except TestbedError as e:
            fixture.error = e
            logger.error(f"[TLSMatrix] Fixture {name} failed: {e}")
            raise
        logger.info(f"[TLSMatrix] Fixture {name} ready at {fixture.hostname}")
        return fixture

    async def provision_all(self) -> Dict[str, TargetFixture]:
        """Provision every planned fixture concurrently; failures stay local."""
        self.plan()

        async def one(name: str) -> None:
            try:
                await self.provision(name)
            except TestbedError:
                pass  # recorded on the fixture

        await asyncio.gather(*(one(name) for name in self.fixtures))
        failed = self.failed()
        logger.info(f"[TLSMatrix] {len(self.fixtures) - len(failed)}/{len(self.fixtures)} fixtures usable")
        return dict(self.fixtures)

    def usable(self) -> List[TargetFixture]:
        return [f for f in self.fixtures.values() if f.usable]

    def failed(self) -> List[TargetFixture]:
        return [f for f in self.fixtures.values() if f.error is not None]
