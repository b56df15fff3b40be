import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from miniternet.engine.launchers import (
    CallableLauncher,
    ContainerLauncher,
    ImageBuildLauncher,
    NetworkLauncher,
    run_command,
)
from miniternet.engine.supervisor import ServiceNode
from miniternet.errors import ServiceFailedError
from miniternet.net.allocator import AddressPair


def _proc(returncode=0, output=b""):
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(output, None))
    proc.wait = AsyncMock(return_value=returncode)
    return proc


def test_container_command_pins_addresses():
    node = ServiceNode("app", addresses=AddressPair("172.16.238.9", "2001:3984:3989::9"))
    launcher = ContainerLauncher("appbase", "it_test_net", env={"B": "2", "A": "1"},
                                 args=["--debug"], volumes=["/tmp/it-report:/tmp/it-report"])
    assert launcher.run_command(node) == [
        "docker", "run", "-d", "--name", "it_test_net-app", "--hostname", "app", "--network", "it_test_net",
        "--ip", "172.16.238.9", "--ip6", "2001:3984:3989::9",
        "-e", "A=1", "-e", "B=2", "-v", "/tmp/it-report:/tmp/it-report",
        "appbase", "--debug",
    ]


def test_build_and_network_commands():
    build = ImageBuildLauncher("nsdbase", "docker/it/dns/nsdbase", dockerfile="Dockerfile.nsd",
                               build_args={"BASE": "devbase"})
    assert build.build_command() == [
        "docker", "build", "-t", "nsdbase", "-f", "Dockerfile.nsd", "--build-arg", "BASE=devbase",
        "docker/it/dns/nsdbase",
    ]
    network = NetworkLauncher("it_test_net", "172.16.238.0/24", "2001:3984:3989::/64")
    assert network.create_command()[-1] == "it_test_net"
    assert "--ipv6" in network.create_command()


@pytest.mark.asyncio
async def test_run_command_returns_output():
    with patch("miniternet.engine.launchers.asyncio.create_subprocess_exec",
               AsyncMock(return_value=_proc(0, b"3f2a9c\n"))) as create:
        output = await run_command(["docker", "run", "x"], name="x")
    assert output == "3f2a9c\n"
    assert create.call_args.args == ("docker", "run", "x")


@pytest.mark.asyncio
async def test_run_command_failures():
    with patch("miniternet.engine.launchers.asyncio.create_subprocess_exec",
               AsyncMock(return_value=_proc(125, b"network not found"))):
        with pytest.raises(ServiceFailedError) as excinfo:
            await run_command(["docker", "run", "x"])
    assert excinfo.value.details["rc"] == 125
    assert "network not found" in excinfo.value.message

    with patch("miniternet.engine.launchers.asyncio.create_subprocess_exec",
               AsyncMock(side_effect=FileNotFoundError())):
        with pytest.raises(ServiceFailedError) as excinfo:
            await run_command(["docker", "ps"])
    assert "NOT INSTALLED" in excinfo.value.message


@pytest.mark.asyncio
async def test_run_command_timeout_kills_process():
    proc = _proc()

    async def never():
        await asyncio.sleep(10)

    proc.communicate = never
    with patch("miniternet.engine.launchers.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        with pytest.raises(ServiceFailedError):
            await run_command(["docker", "build", "."], timeout=0.05)
    proc.kill.assert_called_once()


@pytest.mark.asyncio
async def test_container_start_and_stop():
    node = ServiceNode("redis", addresses=AddressPair("172.16.238.5"))
    launcher = ContainerLauncher("redis:alpine", "it_test_net")
    with patch("miniternet.engine.launchers.run_command", AsyncMock(return_value="abc\n")) as run:
        await launcher.start(node)
        await launcher.stop(node)
    assert run.call_args_list[1].args[0] == ["docker", "rm", "-f", "it_test_net-redis"]


def test_container_command_uses_the_assigned_resolver():
    node = ServiceNode("app", addresses=AddressPair("172.16.238.9"))
    launcher = ContainerLauncher("appbase", "it_test_net", env={"RESOLVER_IP": "172.16.238.2"},
                                 dns="172.16.238.2")
    assert launcher.run_command(node) == [
        "docker", "run", "-d", "--name", "it_test_net-app", "--hostname", "app", "--network", "it_test_net",
        "--ip", "172.16.238.9", "--dns", "172.16.238.2", "-e", "RESOLVER_IP=172.16.238.2", "appbase",
    ]


@pytest.mark.asyncio
async def test_callable_launcher_stop_is_optional():
    started = []

    async def on_start(node):
        started.append(node.name)

    launcher = CallableLauncher(on_start)
    await launcher.start(ServiceNode("dns"))
    await launcher.stop(ServiceNode("dns"))
    assert started == ["dns"]
