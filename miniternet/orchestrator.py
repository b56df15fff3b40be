# ============================================================================
# miniternet/orchestrator.py
# Testbed Orchestrator
# ============================================================================
#
# PURPOSE:
# Owns one complete run:
#
#   prepare    validate config, load fixture profiles, build the topology,
#              allocate addresses, declare zones and service nodes
#   bring_up   supervisor starts every node; the DNS tier bootstraps the
#              chain, targets provision concurrently, the resolver verifies
#   execute    build the case registry and run it on the browser pool
#   report     RunReport (report.json, report.md, coverage.json)
#   teardown   always, in reverse dependency order
#
# Errors in shared infrastructure end the run as environment_failed with an
# exit code in 10-19 (2 and 3 for configuration and dependency cycles).
#
# ============================================================================

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from miniternet.base.config import TestbedConfig
from miniternet.engine.launchers import (
    CallableLauncher,
    ContainerLauncher,
    ExternalLauncher,
    ImageBuildLauncher,
    Launcher,
    NetworkLauncher,
)
from miniternet.engine.probes import (
    Probe,
    all_of,
    event_probe,
    http_probe,
    predicate_probe,
    resolver_probe,
    tcp_probe,
)
from miniternet.engine.supervisor import ServiceKind, ServiceNode, ServiceSupervisor
from miniternet.engine.topology import Role, ServiceSpec, Topology, default_topology
from miniternet.errors import (
    ChainVerificationError,
    ConfigurationError,
    TestbedError,
    handle_error,
)
from miniternet.net.allocator import AddressAllocator
from miniternet.reporting.composer import ReportWriter
from miniternet.reporting.types import RunReport
from miniternet.suite.checks import build_registry
from miniternet.suite.engine import EngineResult, TestExecutionEngine
from miniternet.suite.selector import CaseSelector
from miniternet.suite.webdriver import GridClient
from miniternet.tls.ca import CertificateAuthorityClient, LocalCertificateAuthority
from miniternet.tls.matrix import CertificateIssuer, TLSTargetMatrixGenerator
from miniternet.tls.profiles import DEFAULT_MATRIX, FixtureProfile, load_profiles
from miniternet.zones.bootstrapper import DNSSECChainBootstrapper
from miniternet.zones.server import serve
from miniternet.zones.transport import Transport, UdpTransport
from miniternet.zones.zone import ZoneState

logger = logging.getLogger(__name__)

LOCAL_CA_URL = "http://ca_ocsp"
# where the resolver image reads its DNSSEC root key
RESOLVER_TRUST_ANCHOR = "/etc/unbound/root.key"


class TestbedOrchestrator:
    """
    Runs the testbed end to end.

    Collaborators can be injected for tests and local runs: ``issuer``
    replaces the CA client, ``session_factory`` the browser grid,
    ``dns_transport`` the DNS transport, ``topology`` the default topology.
    """

    __test__ = False

    def __init__(
        self,
        config: TestbedConfig,
        profiles: Optional[Sequence[FixtureProfile]] = None,
        topology: Optional[Topology] = None,
        issuer: Optional[CertificateIssuer] = None,
        session_factory: Optional[Callable[[], Awaitable[Any]]] = None,
        dns_transport: Optional[Transport] = None,
        ca_transport: Optional[httpx.AsyncBaseTransport] = None,
        grid_transport: Optional[httpx.AsyncBaseTransport] = None,
        build_root: Path = Path("docker/it"),
    ):
        self.config = config
        self.profiles = list(profiles) if profiles is not None else None
        self.topology = topology
        self.issuer = issuer
        self.session_factory = session_factory
        self.dns_transport = dns_transport
        self.ca_transport = ca_transport
        self.grid_transport = grid_transport
        self.build_root = Path(build_root)
        self.writer = ReportWriter(config.storage)

        self.allocator: Optional[AddressAllocator] = None
        self.chain: Optional[DNSSECChainBootstrapper] = None
        self.matrix: Optional[TLSTargetMatrixGenerator] = None
        self.supervisor: Optional[ServiceSupervisor] = None
        self.ca: Optional[LocalCertificateAuthority] = None
        self.report: Optional[RunReport] = None
        self._frontends: Dict[str, List[Tuple[Any, Any]]] = {}
        self._secondaries: Dict[str, Any] = {}

    @property
    def mode(self) -> str:
        return self.config.network.launcher

    # ------------------------------------------------------------------
    # Prepare
    # ------------------------------------------------------------------

    def prepare(self) -> None:
        """Everything that can fail before a single service starts."""
        config = self.config.validate()
        config.prepare_directories()

        if self.profiles is None:
            self.profiles = (load_profiles(config.tls.profiles_path, DEFAULT_MATRIX)
                             if config.tls.profiles_path else list(DEFAULT_MATRIX))
        if self.topology is None:
            self.topology = default_topology(config, self.profiles)
        self.topology.validate()

        self.allocator = AddressAllocator(config.network.subnet_v4, config.network.subnet_v6)
        self.topology.allocate(self.allocator)

        self._build_chain()
        self._build_issuer()
        self.matrix = TLSTargetMatrixGenerator(
            self.profiles, self.allocator, self.issuer, self.chain,
            zone=config.dns.leaf_zone,
            domain=config.dns.fixture_domain,
            config_dir=config.tls.config_dir,
            dns_timeout=config.timeouts.bringup,
            zone_ready=self._leaf_ready,
        )
        self.matrix.plan()

        self.supervisor = ServiceSupervisor(
            grace_period=config.timeouts.health_grace,
            probe_interval=config.timeouts.probe_interval,
        )
        for spec in self.topology:
            self.supervisor.declare(self._node(spec))
        logger.info(
            f"[Orchestrator] Prepared {len(self.topology)} services, {len(self.matrix.fixtures)} fixtures "
            f"({self.mode} mode)"
        )

    def _build_chain(self) -> None:
        dns_config = self.config.dns
        transport = self.dns_transport
        if transport is None and dns_config.serve_udp:
            transport = UdpTransport(port=dns_config.udp_port)
        self.chain = DNSSECChainBootstrapper(dns_config, transport=transport)
        self.chain.trust_anchor_path = self.config.storage.trust_anchor_path
        for spec in self.topology.zone_primaries():
            self.chain.add_zone(spec.zone, self.allocator.get(spec.name), parent=spec.parent_zone)
        for spec in self.topology.by_role(Role.DNS):
            if spec.secondary_of is not None:
                server = self.chain.add_secondary(self.topology.zone_of(spec), self.allocator.get(spec.name))
                hostname = next(h for h, entry in self.chain.secondaries.items() if entry[1] is server)
                self._secondaries[spec.name] = (hostname, server)

    def _build_issuer(self) -> None:
        if self.issuer is not None:
            return
        if self.config.tls.ca_url:
            self.issuer = CertificateAuthorityClient(self.config.tls.ca_url, transport=self.ca_transport)
            return
        leaf = self.config.dns.leaf_zone
        self.ca = LocalCertificateAuthority(suffix=leaf, ocsp_url=f"http://ca_ocsp.{leaf}/ocsp")
        self.ca_transport = httpx.MockTransport(self.ca.handle_request)
        self.issuer = CertificateAuthorityClient(LOCAL_CA_URL, transport=self.ca_transport)

    async def _leaf_ready(self) -> None:
        leaf_service = next(s.name for s in self.topology.zone_primaries() if s.zone == self.config.dns.leaf_zone)
        await self.supervisor.await_healthy(leaf_service, timeout=self.config.timeouts.bringup)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _node(self, spec: ServiceSpec) -> ServiceNode:
        if spec.role is Role.TARGET:
            addresses = self.matrix.fixture(spec.fixture).addresses
        elif spec.role.is_build:
            addresses = None
        else:
            addresses = self.allocator.get(spec.name)
        node = ServiceNode(
            name=spec.name,
            depends_on=spec.depends_on,
            launcher=self._launcher(spec),
            probe=self._probe(spec, addresses),
            kind=ServiceKind.BUILD if spec.role is Role.BUILD else ServiceKind.RUNTIME,
            critical=spec.critical,
            labels={"role": spec.role.value},
        )
        if addresses is not None:
            node.addresses = addresses
        return node

    def _launcher(self, spec: ServiceSpec) -> Optional[Launcher]:
        if spec.role is Role.DNS:
            return CallableLauncher(self._dns_start(spec), self._dns_stop)
        if spec.role is Role.RESOLVER:
            return self._resolver_launcher(spec)
        if spec.role is Role.TARGET:
            return self._target_launcher(spec)
        if spec.role is Role.CA and self.ca is not None:
            return CallableLauncher(self._publish_ca)
        return self._service_launcher(spec)

    def _service_launcher(self, spec: ServiceSpec) -> Optional[Launcher]:
        network = self.config.network
        if self.mode == "docker":
            if spec.role is Role.NETWORK:
                return NetworkLauncher(network.project_name, network.subnet_v4, network.subnet_v6)
            if spec.role is Role.BUILD:
                return ImageBuildLauncher(spec.image, str(self.build_root / spec.build_context))
            return ContainerLauncher(spec.image, network.project_name,
                                     container_name=f"{network.project_name}-{spec.name}",
                                     env=self._container_env(spec),
                                     dns=self._resolver_ip(spec))
        if self.mode == "external" and not spec.role.is_build:
            return ExternalLauncher()
        return None

    def _resolver_ip(self, spec: ServiceSpec) -> Optional[str]:
        if spec.resolver is None:
            return None
        return self.allocator.get(spec.resolver).ipv4

    def _container_env(self, spec: ServiceSpec) -> Dict[str, str]:
        env = dict(spec.env)
        if spec.resolver is not None:
            resolver = self.allocator.get(spec.resolver)
            env["RESOLVER_IP"] = resolver.ipv4 or ""
            env["RESOLVER_IPV6"] = resolver.ipv6 or ""
        return env

    def _probe(self, spec: ServiceSpec, addresses) -> Optional[Probe]:
        if spec.role is Role.DNS:
            if spec.secondary_of is not None:
                _, server = self._secondaries[spec.name]
                return event_probe(server.sync_complete)
            zone = spec.zone
            return predicate_probe(lambda: self.chain.state(zone) >= ZoneState.DELEGATED)
        if spec.role is Role.RESOLVER:
            verified = predicate_probe(lambda: all(z.state is ZoneState.VERIFIED for z in self.chain.leaves()))
            if self.mode == "docker" and addresses.ipv4:
                canary = f"{self.config.dns.canary_label}.{self.config.dns.leaf_zone}"
                return all_of(verified, resolver_probe(addresses.ipv4, canary))
            return verified
        if spec.role is Role.TARGET:
            fixture = self.matrix.fixture(spec.fixture)
            usable = predicate_probe(lambda: fixture.usable)
            if self.mode == "docker" and addresses.ipv4:
                return all_of(usable, tcp_probe(addresses.ipv4, spec.port or 80))
            return usable
        if spec.role is Role.CA:
            base = self.config.tls.ca_url or LOCAL_CA_URL
            if self.mode == "inprocess" and self.ca is None:
                return None
            return http_probe(f"{base.rstrip('/')}/ca.pem", transport=self.ca_transport)
        if spec.role.is_build or spec.role is Role.BROWSER or self.mode == "inprocess":
            return None

        runner = self.config.runner
        if self.mode == "external":
            if spec.role is Role.APP:
                return http_probe(runner.app_url)
            if spec.role is Role.GRID:
                return http_probe(f"{runner.grid_url.rstrip('/')}/status")
            return tcp_probe(spec.name, spec.port) if spec.port else None
        # docker
        if spec.health_path and addresses.ipv4:
            return http_probe(f"http://{addresses.ipv4}:{spec.port}{spec.health_path}")
        if spec.port and addresses.ipv4:
            return tcp_probe(addresses.ipv4, spec.port)
        return None

    def _dns_start(self, spec: ServiceSpec):
        async def start(node: ServiceNode) -> None:
            if spec.secondary_of is not None:
                hostname, server = self._secondaries[spec.name]
                await self.chain.attach_secondary(hostname)
            else:
                await self.chain.start_zone(spec.zone)
                server = self.chain.servers[self.chain.zone(spec.zone).name]
            if self.config.dns.serve_udp:
                for address in node.addresses:
                    self._frontends.setdefault(node.name, []).append(
                        await serve(server, address, self.config.dns.udp_port)
                    )

        return start

    async def _dns_stop(self, node: ServiceNode) -> None:
        for udp, tcp in self._frontends.pop(node.name, []):
            udp.close()
            tcp.close()
            await tcp.wait_closed()

    def _resolver_launcher(self, spec: ServiceSpec) -> Launcher:
        anchor = self.config.storage.trust_anchor_path
        inner: Optional[Launcher] = None
        if self.mode == "docker":
            network = self.config.network
            own = self.allocator.get(spec.name)
            root = self.allocator.get(next(s.name for s in self.topology.zone_primaries() if s.zone == "."))
            inner = ContainerLauncher(
                spec.image, network.project_name,
                container_name=f"{network.project_name}-{spec.name}",
                env={
                    "OWN_IP": own.ipv4 or "",
                    "ROOT_IP": root.ipv4 or "",
                    "ROOT_IPV6": root.ipv6 or "",
                    "SUBNETV4": network.subnet_v4,
                },
                volumes=[f"{anchor}:{RESOLVER_TRUST_ANCHOR}:ro"],
                dns=own.ipv4,
            )
        elif self.mode == "external":
            inner = ExternalLauncher()

        async def start(node: ServiceNode) -> None:
            self.chain.export_trust_anchor(anchor)
            if inner is not None:
                await inner.start(node)
            await self.chain.verify_chain()

        async def stop(node: ServiceNode) -> None:
            if inner is not None:
                await inner.stop(node)

        return CallableLauncher(start, stop)

    async def _publish_ca(self, node: ServiceNode) -> None:
        path = self.config.tls.config_dir / "ca.pem"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.ca.ca_pem())
        logger.info(f"[Orchestrator] Local CA certificate written to {path}")

    def _target_launcher(self, spec: ServiceSpec) -> Launcher:
        inner: Optional[Launcher] = None
        if self.mode == "docker":
            inner = ContainerLauncher(
                spec.image, self.config.network.project_name,
                container_name=f"{self.config.network.project_name}-{spec.name}",
                env={"FIXTURE": spec.fixture},
                volumes=[f"{self.config.tls.config_dir}:/etc/apache2/fixtures:ro"],
            )
        elif self.mode == "external":
            inner = ExternalLauncher()

        async def start(node: ServiceNode) -> None:
            await self.matrix.provision(spec.fixture)
            if inner is not None:
                await inner.start(node)

        async def stop(node: ServiceNode) -> None:
            if inner is not None:
                await inner.stop(node)

        return CallableLauncher(start, stop)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def bring_up(self) -> None:
        """Raises the root-cause error when any critical service failed."""
        result = await self.supervisor.bring_up(timeout=self.config.timeouts.bringup)
        if not result.ok:
            error = result.first_critical_error()
            logger.error(f"[Orchestrator] Environment failed: {', '.join(result.critical_failures)}")
            raise error
        failed = [f.name for f in self.matrix.failed()]
        if failed:
            logger.warning(f"[Orchestrator] Fixtures unavailable: {', '.join(failed)}")
        logger.info(f"[Orchestrator] Environment healthy ({len(result.healthy)} services)")

    def _check_chain(self) -> None:
        unverified = [r.label for r in self.chain.zones.values() if r.state is not ZoneState.VERIFIED]
        if unverified:
            raise ChainVerificationError(
                f"Zones not verified before dispatch: {', '.join(unverified)}",
                details={"zones": unverified},
            )

    def _session_factory(self) -> Callable[[], Awaitable[Any]]:
        if self.session_factory is not None:
            return self.session_factory
        runner = self.config.runner
        grid = GridClient(runner.grid_url, runner.browser_name, runner.browser_width, runner.browser_height,
                          transport=self.grid_transport)
        return grid.new_session

    async def execute(self) -> EngineResult:
        self._check_chain()
        runner = self.config.runner
        try:
            selector = CaseSelector.parse(runner.selector)
        except ValueError as e:
            raise ConfigurationError(f"TEST_SELECTOR is invalid: {e}") from e

        registry = build_registry(self.matrix.fixtures.values(), self.config.dns.leaf_zone,
                                  self.config.dns.canary_label)
        unavailable = {
            name: (fixture.error.message if fixture.error else "not provisioned")
            for name, fixture in self.matrix.fixtures.items()
            if not fixture.usable
        }
        engine = TestExecutionEngine(
            self._session_factory(),
            pool_size=runner.pool_size,
            max_fail=runner.max_fail,
            case_timeout=self.config.timeouts.case,
            coverage_enabled=runner.coverage_enabled,
            app_url=runner.app_url,
            fixtures=self.matrix.fixtures,
            chain=self.chain,
        )
        return await engine.run(list(registry), selector=selector, unavailable=unavailable)

    def _context(self) -> Dict[str, Any]:
        context: Dict[str, Any] = {
            "project": self.config.network.project_name,
            "selector": self.config.runner.selector,
            "max_fail": self.config.runner.max_fail,
        }
        if self.supervisor is not None:
            context["services"] = {n.name: n.state.value for n in self.supervisor.nodes()}
        if self.chain is not None:
            context["zones"] = {r.label: r.state.name.lower() for r in self.chain.zones.values()}
        if self.matrix is not None:
            context["fixtures"] = [f.to_dict() for f in self.matrix.fixtures.values()]
        return context

    async def teardown(self) -> None:
        if self.supervisor is not None:
            await self.supervisor.teardown()

    async def run(self) -> RunReport:
        """One complete run; returns the written RunReport. Teardown always happens."""
        report_id = str(uuid.uuid4())
        coverage = None
        try:
            self.prepare()
            await self.bring_up()
            result = await self.execute()
            coverage = result.coverage
            report = RunReport.from_results(
                report_id, result.results,
                stopped_early=result.stopped_early,
                coverage_files=len(coverage or {}),
                **self._context(),
            )
        except TestbedError as e:
            logger.error(f"[Orchestrator] Run aborted: [{e.code.value}] {e.message}")
            report = RunReport.environment_failure(report_id, e, **self._context())
        except Exception as e:
            logger.exception("[Orchestrator] Unexpected failure")
            report = RunReport.environment_failure(report_id, handle_error(e, "testbed run"), **self._context())
        finally:
            await self.teardown()

        self.writer.write(report, coverage)
        self.report = report
        logger.info(f"[Orchestrator] Run {report.status}: {report.counts}")
        return report
