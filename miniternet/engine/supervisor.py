# ============================================================================
# miniternet/engine/supervisor.py
# Service Supervisor
# ============================================================================
#
# PURPOSE:
# Owns every ServiceNode of the closed network. Keeps the dependency graph
# acyclic, starts each node only once all of its dependencies are Healthy,
# propagates failures to dependents without starting them, and tears
# everything down in reverse topological order.
#
# KEY CONCEPTS:
# - **Build nodes**: produce an artifact (image, network) and exit; they are
#   Healthy as soon as the build step returns and have nothing to stop
# - **Critical nodes**: shared infrastructure whose failure aborts the run;
#   non-critical nodes (fixtures) only take their own dependents down
# - **Single writer**: every state change goes through _transition() under
#   one lock; nothing else mutates a node's state
#
# ============================================================================

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

import networkx as nx

from miniternet.errors import (
    BringUpTimeoutError,
    ConfigurationError,
    DependencyCycleError,
    ErrorCode,
    HealthCheckTimeoutError,
    ServiceFailedError,
    TestbedError,
)
from miniternet.engine.probes import Probe
from miniternet.net.allocator import AddressPair

if TYPE_CHECKING:
    from miniternet.engine.launchers import Launcher

logger = logging.getLogger(__name__)


class ServiceState(Enum):
    PENDING = "pending"
    STARTING = "starting"
    HEALTHY = "healthy"
    FAILED = "failed"
    STOPPED = "stopped"


class ServiceKind(Enum):
    RUNTIME = "runtime"
    BUILD = "build"


@dataclass
class ServiceNode:
    """One named service of the topology plus its supervisor-owned state."""
    name: str
    depends_on: Tuple[str, ...] = ()
    launcher: Optional["Launcher"] = None
    probe: Optional[Probe] = None
    addresses: AddressPair = field(default_factory=AddressPair)
    kind: ServiceKind = ServiceKind.RUNTIME
    critical: bool = True
    grace_period: Optional[float] = None
    labels: Dict[str, str] = field(default_factory=dict)

    # Written only by ServiceSupervisor._transition
    state: ServiceState = ServiceState.PENDING
    error: Optional[TestbedError] = None
    started_at: Optional[float] = None
    settled_at: Optional[float] = None

    def __post_init__(self):
        self.depends_on = tuple(self.depends_on)


@dataclass
class BringUpResult:
    healthy: List[str] = field(default_factory=list)
    failed: Dict[str, TestbedError] = field(default_factory=dict)
    critical_failures: Dict[str, TestbedError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.critical_failures

    def first_critical_error(self) -> Optional[TestbedError]:
        """The root cause among critical failures (not a propagated one)."""
        for error in self.critical_failures.values():
            if error.code is not ErrorCode.HEALTH_DEPENDENCY_FAILED:
                return error
        return next(iter(self.critical_failures.values()), None)


class ServiceSupervisor:
    """
    Dependency-ordered lifecycle manager for ServiceNodes.

    All start/wait operations are coroutines on the running event loop; the
    registry itself is guarded by a lock so probes running in worker threads
    can read states safely.
    """

    def __init__(self, grace_period: float = 120.0, probe_interval: float = 1.0):
        self.grace_period = grace_period
        self.probe_interval = probe_interval
        self._graph = nx.DiGraph()
        self._nodes: Dict[str, ServiceNode] = {}
        self._settled: Dict[str, asyncio.Event] = {}
        self._launched: set = set()
        self._lock = threading.RLock()
        self.history: List[Tuple[str, ServiceState]] = []

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def declare(self, node: ServiceNode) -> ServiceNode:
        """
        Register ``node`` and its dependency edges.

        Dependencies may be declared later; a cycle is rejected immediately
        and leaves the graph as it was.
        """
        with self._lock:
            if node.name in self._nodes:
                raise ConfigurationError(
                    f"Service {node.name!r} declared twice",
                    code=ErrorCode.CONFIG_INVALID,
                )
            snapshot = self._graph.copy()
            self._graph.add_node(node.name)
            for dep in node.depends_on:
                self._graph.add_edge(dep, node.name)
            if not nx.is_directed_acyclic_graph(self._graph):
                cycle = [u for u, _ in nx.find_cycle(self._graph, source=node.name)]
                self._graph = snapshot
                raise DependencyCycleError(
                    f"Declaring {node.name!r} creates a dependency cycle: {' -> '.join(cycle + cycle[:1])}",
                    cycle=cycle,
                )
            self._nodes[node.name] = node
            self._settled[node.name] = asyncio.Event()
            logger.debug(f"[Supervisor] Declared {node.name} (deps: {', '.join(node.depends_on) or '-'})")
            return node

    def node(self, name: str) -> ServiceNode:
        with self._lock:
            try:
                return self._nodes[name]
            except KeyError:
                raise ConfigurationError(
                    f"Unknown service {name!r}", code=ErrorCode.GRAPH_UNKNOWN_SERVICE
                ) from None

    def nodes(self) -> List[ServiceNode]:
        with self._lock:
            return [self._nodes[n] for n in self.topological_order()]

    def state(self, name: str) -> ServiceState:
        return self.node(name).state

    def topological_order(self) -> List[str]:
        with self._lock:
            return [n for n in nx.topological_sort(self._graph) if n in self._nodes]

    def dependents(self, name: str) -> List[str]:
        with self._lock:
            return sorted(nx.descendants(self._graph, name))

    def _check_declared(self) -> None:
        with self._lock:
            missing = sorted(n for n in self._graph.nodes if n not in self._nodes)
        if missing:
            raise ConfigurationError(
                f"Services referenced but never declared: {', '.join(missing)}",
                code=ErrorCode.GRAPH_UNKNOWN_SERVICE,
                details={"missing": missing},
            )

    def _transition(self, name: str, state: ServiceState, error: Optional[TestbedError] = None) -> None:
        with self._lock:
            node = self._nodes[name]
            node.state = state
            if error is not None:
                node.error = error
            if state is ServiceState.STARTING:
                node.started_at = time.monotonic()
            self.history.append((name, state))
            if state in (ServiceState.HEALTHY, ServiceState.FAILED, ServiceState.STOPPED):
                node.settled_at = time.monotonic()
                self._settled[name].set()

        if state is ServiceState.FAILED:
            logger.error(f"[Supervisor] {name} -> FAILED: {error}")
        else:
            logger.info(f"[Supervisor] {name} -> {state.value.upper()}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, name: str) -> ServiceNode:
        """
        Start one node. All dependencies must already be Healthy.

        Raises the node's error when it fails to start or to become healthy.
        """
        node = self.node(name)
        if node.state is ServiceState.HEALTHY:
            return node
        if node.state is not ServiceState.PENDING:
            raise ServiceFailedError(
                f"{name} cannot be started from state {node.state.value}",
                details={"service": name, "state": node.state.value},
            )

        failed = [d for d in node.depends_on if self.state(d) is ServiceState.FAILED]
        if failed:
            error = ServiceFailedError(
                f"{name} not started: dependency {', '.join(failed)} failed",
                code=ErrorCode.HEALTH_DEPENDENCY_FAILED,
                details={"service": name, "failed_dependencies": failed},
            )
            self._transition(name, ServiceState.FAILED, error)
            raise error
        waiting = [d for d in node.depends_on if self.state(d) is not ServiceState.HEALTHY]
        if waiting:
            raise ServiceFailedError(
                f"{name} cannot start before {', '.join(waiting)} are healthy",
                code=ErrorCode.HEALTH_DEPENDENCY_FAILED,
                details={"service": name, "waiting_on": waiting},
            )

        self._transition(name, ServiceState.STARTING)
        try:
            if node.launcher is not None:
                self._launched.add(name)
                await node.launcher.start(node)
            if node.kind is ServiceKind.RUNTIME:
                await self._wait_for_probe(node)
        except asyncio.CancelledError:
            raise
        except TestbedError as e:
            self._transition(name, ServiceState.FAILED, e)
            raise
        except Exception as e:
            error = ServiceFailedError(
                f"{name} failed to start: {e}",
                details={"service": name, "original_type": type(e).__name__},
            )
            self._transition(name, ServiceState.FAILED, error)
            raise error from e

        self._transition(name, ServiceState.HEALTHY)
        return node

    async def _wait_for_probe(self, node: ServiceNode) -> None:
        if node.probe is None:
            return
        loop = asyncio.get_running_loop()
        grace = node.grace_period if node.grace_period is not None else self.grace_period
        deadline = loop.time() + grace
        attempts = 0
        while True:
            attempts += 1
            try:
                if await node.probe():
                    return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"[Supervisor] Probe for {node.name} raised {type(e).__name__}: {e}")
            if loop.time() >= deadline:
                raise HealthCheckTimeoutError(
                    f"{node.name} did not become healthy within {grace}s",
                    details={"service": node.name, "probe_attempts": attempts},
                )
            await asyncio.sleep(min(self.probe_interval, max(0.0, deadline - loop.time())))

    async def await_healthy(self, name: str, timeout: Optional[float] = None) -> ServiceNode:
        """
        Block until ``name`` is Healthy.

        Raises HealthCheckTimeoutError when ``timeout`` elapses first and
        ServiceFailedError when the node failed or was stopped.
        """
        node = self.node(name)
        try:
            await asyncio.wait_for(self._settled[name].wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise HealthCheckTimeoutError(
                f"Timed out after {timeout}s waiting for {name} to become healthy",
                details={"service": name, "state": node.state.value},
            ) from None
        if node.state is not ServiceState.HEALTHY:
            raise ServiceFailedError(
                f"{name} is {node.state.value}" + (f": {node.error.message}" if node.error else ""),
                code=(ErrorCode.HEALTH_DEPENDENCY_FAILED
                      if node.error and node.error.code is ErrorCode.HEALTH_DEPENDENCY_FAILED
                      else ErrorCode.HEALTH_SERVICE_FAILED),
                details={"service": name, "cause": node.error.to_dict() if node.error else None},
            )
        return node

    async def bring_up(self, timeout: Optional[float] = None) -> BringUpResult:
        """
        Start every declared node as soon as its dependencies settle.

        Independent branches start concurrently. On ``timeout`` every pending
        start is cancelled, unsettled nodes become Failed and
        BringUpTimeoutError is raised.
        """
        self._check_declared()
        order = self.topological_order()
        logger.info(f"[Supervisor] Bringing up {len(order)} services")
        tasks = [asyncio.create_task(self._bring_up_node(n), name=f"start:{n}") for n in order]
        try:
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=timeout)
        except asyncio.TimeoutError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            pending = [n for n in order if not self._settled[n].is_set()]
            error = BringUpTimeoutError(
                f"Bring-up exceeded {timeout}s; still pending: {', '.join(pending)}",
                details={"pending": pending},
            )
            for name in pending:
                self._transition(name, ServiceState.FAILED, error)
            raise error from None
        return self.result()

    async def _bring_up_node(self, name: str) -> None:
        node = self.node(name)
        for dep in node.depends_on:
            await self._settled[dep].wait()
        try:
            await self.start(name)
        except TestbedError as e:
            # Recorded on the node by start(); surfaced through result()
            logger.debug(f"[Supervisor] {name} settled as failed: {e.code.value}")

    def result(self) -> BringUpResult:
        result = BringUpResult()
        for node in self.nodes():
            if node.state is ServiceState.HEALTHY:
                result.healthy.append(node.name)
            elif node.state is ServiceState.FAILED and node.error is not None:
                result.failed[node.name] = node.error
                if node.critical:
                    result.critical_failures[node.name] = node.error
        return result

    async def teardown(self) -> None:
        """
        Stop every node in reverse topological order.

        Already stopped nodes are skipped; stop errors are logged so the rest
        of the network still goes down.
        """
        for name in reversed(self.topological_order()):
            node = self.node(name)
            if node.state is ServiceState.STOPPED:
                continue
            if name in self._launched and node.kind is ServiceKind.RUNTIME and node.launcher is not None:
                try:
                    await node.launcher.stop(node)
                except Exception as e:
                    logger.warning(f"[Supervisor] Error stopping {name}: {e}")
            self._launched.discard(name)
            self._transition(name, ServiceState.STOPPED)
        logger.info("[Supervisor] Teardown complete")
