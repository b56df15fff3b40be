import asyncio

import pytest

from miniternet.engine.launchers import CallableLauncher, Launcher
from miniternet.engine.probes import predicate_probe
from miniternet.engine.supervisor import ServiceKind, ServiceNode, ServiceState, ServiceSupervisor
from miniternet.errors import (
    BringUpTimeoutError,
    ConfigurationError,
    DependencyCycleError,
    ErrorCode,
    HealthCheckTimeoutError,
    ServiceFailedError,
)


class RecordingLauncher(Launcher):
    def __init__(self, log, fail=None, delay=0.0):
        self.log = log
        self.fail = fail
        self.delay = delay

    async def start(self, node):
        self.log.append(("start", node.name))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail

    async def stop(self, node):
        self.log.append(("stop", node.name))


def _supervisor():
    return ServiceSupervisor(grace_period=1.0, probe_interval=0.01)


def _starts(log):
    return [name for action, name in log if action == "start"]


@pytest.mark.asyncio
async def test_diamond_starts_in_dependency_order():
    log = []
    sup = _supervisor()
    sup.declare(ServiceNode("d", depends_on=("b", "c"), launcher=RecordingLauncher(log)))
    sup.declare(ServiceNode("b", depends_on=("a",), launcher=RecordingLauncher(log)))
    sup.declare(ServiceNode("c", depends_on=("a",), launcher=RecordingLauncher(log)))
    sup.declare(ServiceNode("a", launcher=RecordingLauncher(log)))

    result = await sup.bring_up(timeout=5)

    assert result.ok
    assert sorted(result.healthy) == ["a", "b", "c", "d"]
    starts = _starts(log)
    assert starts[0] == "a"
    assert starts[-1] == "d"
    assert set(starts[1:3]) == {"b", "c"}
    order = sup.topological_order()
    assert order.index("a") < order.index("b") < order.index("d")


def test_cycle_is_rejected_and_graph_unchanged():
    sup = _supervisor()
    sup.declare(ServiceNode("a", depends_on=("b",)))
    with pytest.raises(DependencyCycleError) as excinfo:
        sup.declare(ServiceNode("b", depends_on=("a",)))
    assert set(excinfo.value.cycle) == {"a", "b"}
    assert excinfo.value.code is ErrorCode.GRAPH_CYCLE
    assert [n.name for n in sup.nodes()] == ["a"]

    sup.declare(ServiceNode("b"))
    assert sup.topological_order() == ["b", "a"]


def test_duplicate_and_unknown_names():
    sup = _supervisor()
    sup.declare(ServiceNode("a"))
    with pytest.raises(ConfigurationError):
        sup.declare(ServiceNode("a"))
    with pytest.raises(ConfigurationError) as excinfo:
        sup.node("missing")
    assert excinfo.value.code is ErrorCode.GRAPH_UNKNOWN_SERVICE


@pytest.mark.asyncio
async def test_undeclared_dependency_is_a_configuration_error():
    sup = _supervisor()
    sup.declare(ServiceNode("app", depends_on=("db",)))
    with pytest.raises(ConfigurationError) as excinfo:
        await sup.bring_up(timeout=1)
    assert excinfo.value.details["missing"] == ["db"]


@pytest.mark.asyncio
async def test_failure_propagates_to_dependents_without_starting_them():
    log = []
    sup = _supervisor()
    sup.declare(ServiceNode("db", launcher=RecordingLauncher(log, fail=RuntimeError("port in use"))))
    sup.declare(ServiceNode("app", depends_on=("db",), launcher=RecordingLauncher(log)))
    sup.declare(ServiceNode("cache", launcher=RecordingLauncher(log)))

    result = await sup.bring_up(timeout=5)

    assert not result.ok
    assert sup.state("db") is ServiceState.FAILED
    assert sup.state("app") is ServiceState.FAILED
    assert sup.state("cache") is ServiceState.HEALTHY
    assert "app" not in _starts(log)
    assert sup.node("app").error.code is ErrorCode.HEALTH_DEPENDENCY_FAILED
    root_cause = result.first_critical_error()
    assert isinstance(root_cause, ServiceFailedError)
    assert "port in use" in root_cause.message
    assert root_cause.details["original_type"] == "RuntimeError"


@pytest.mark.asyncio
async def test_non_critical_failure_keeps_run_alive():
    sup = _supervisor()
    sup.declare(ServiceNode("fixture", critical=False,
                            launcher=RecordingLauncher([], fail=RuntimeError("no cert"))))
    sup.declare(ServiceNode("app"))

    result = await sup.bring_up(timeout=5)

    assert result.ok
    assert "fixture" in result.failed
    assert result.healthy == ["app"]


@pytest.mark.asyncio
async def test_probe_timeout_marks_node_failed():
    sup = _supervisor()
    sup.declare(ServiceNode("slow", probe=predicate_probe(lambda: False), grace_period=0.05))

    with pytest.raises(HealthCheckTimeoutError):
        await sup.start("slow")
    assert sup.state("slow") is ServiceState.FAILED
    assert sup.node("slow").error.details["probe_attempts"] >= 1


@pytest.mark.asyncio
async def test_probe_exceptions_are_retried():
    calls = []

    def check():
        calls.append(1)
        if len(calls) < 3:
            raise OSError("connection refused")
        return True

    sup = _supervisor()
    sup.declare(ServiceNode("flaky", probe=predicate_probe(check)))
    await sup.start("flaky")
    assert sup.state("flaky") is ServiceState.HEALTHY
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_start_requires_healthy_dependencies():
    sup = _supervisor()
    sup.declare(ServiceNode("a"))
    sup.declare(ServiceNode("b", depends_on=("a",)))
    with pytest.raises(ServiceFailedError):
        await sup.start("b")
    assert sup.state("b") is ServiceState.PENDING


@pytest.mark.asyncio
async def test_bring_up_timeout_fails_pending_nodes():
    sup = _supervisor()
    sup.declare(ServiceNode("stuck", launcher=RecordingLauncher([], delay=10)))
    sup.declare(ServiceNode("after", depends_on=("stuck",)))

    with pytest.raises(BringUpTimeoutError) as excinfo:
        await sup.bring_up(timeout=0.05)

    assert excinfo.value.details["pending"] == ["stuck", "after"]
    assert sup.state("stuck") is ServiceState.FAILED
    assert sup.state("after") is ServiceState.FAILED


@pytest.mark.asyncio
async def test_await_healthy():
    sup = _supervisor()
    sup.declare(ServiceNode("a"))
    sup.declare(ServiceNode("broken", launcher=RecordingLauncher([], fail=RuntimeError("x"))))

    with pytest.raises(HealthCheckTimeoutError):
        await sup.await_healthy("a", timeout=0.01)

    waiter = asyncio.create_task(sup.await_healthy("a", timeout=1))
    await sup.start("a")
    assert (await waiter).name == "a"

    with pytest.raises(ServiceFailedError):
        await sup.start("broken")
    with pytest.raises(ServiceFailedError) as excinfo:
        await sup.await_healthy("broken", timeout=1)
    assert excinfo.value.code is ErrorCode.HEALTH_SERVICE_FAILED


@pytest.mark.asyncio
async def test_teardown_runs_in_reverse_order_and_skips_build_nodes():
    log = []
    sup = _supervisor()
    sup.declare(ServiceNode("image", kind=ServiceKind.BUILD, launcher=RecordingLauncher(log)))
    sup.declare(ServiceNode("db", depends_on=("image",), launcher=RecordingLauncher(log)))
    sup.declare(ServiceNode("app", depends_on=("db",), launcher=RecordingLauncher(log)))

    await sup.bring_up(timeout=5)
    await sup.teardown()

    stops = [name for action, name in log if action == "stop"]
    assert stops == ["app", "db"]
    assert all(n.state is ServiceState.STOPPED for n in sup.nodes())

    await sup.teardown()
    assert [name for action, name in log if action == "stop"] == ["app", "db"]


@pytest.mark.asyncio
async def test_teardown_continues_past_stop_errors():
    stopped = []

    async def bad_stop(node):
        raise RuntimeError("already gone")

    async def good_stop(node):
        stopped.append(node.name)

    async def noop(node):
        return None

    sup = _supervisor()
    sup.declare(ServiceNode("a", launcher=CallableLauncher(noop, good_stop)))
    sup.declare(ServiceNode("b", depends_on=("a",), launcher=CallableLauncher(noop, bad_stop)))
    await sup.bring_up(timeout=5)
    await sup.teardown()

    assert stopped == ["a"]
    assert sup.state("b") is ServiceState.STOPPED
