"""
miniternet/engine/launchers.py
How a ServiceNode is actually started and stopped.

The supervisor only knows the Launcher interface; whether a node is a docker
container, an in-process coroutine or something already running elsewhere
is decided when the topology is built.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, Sequence

from miniternet.errors import ServiceFailedError

if TYPE_CHECKING:
    from miniternet.engine.supervisor import ServiceNode

logger = logging.getLogger(__name__)

NodeHook = Callable[["ServiceNode"], Awaitable[None]]


class Launcher:
    """Start/stop hooks for one node. The default does nothing."""

    async def start(self, node: "ServiceNode") -> None:
        return None

    async def stop(self, node: "ServiceNode") -> None:
        return None


class ExternalLauncher(Launcher):
    """The service is managed elsewhere; only its probe is checked."""

    async def start(self, node: "ServiceNode") -> None:
        logger.debug(f"[Launcher] {node.name} is external, probing only")


class CallableLauncher(Launcher):
    """Runs in-process coroutines for start and (optionally) stop."""

    def __init__(self, on_start: NodeHook, on_stop: Optional[NodeHook] = None):
        self.on_start = on_start
        self.on_stop = on_stop

    async def start(self, node: "ServiceNode") -> None:
        await self.on_start(node)

    async def stop(self, node: "ServiceNode") -> None:
        if self.on_stop is not None:
            await self.on_stop(node)


async def run_command(cmd: Sequence[str], timeout: float = 600.0, name: str = "cmd") -> str:
    """
    Run ``cmd`` to completion and return its combined output.

    Raises ServiceFailedError on a missing binary, a non-zero exit code or a
    timeout.
    """
    logger.debug(f"[Launcher:{name}] Executing: {' '.join(cmd)}")
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except FileNotFoundError:
        raise ServiceFailedError(
            f"[{name}] {cmd[0]} NOT INSTALLED or not in PATH",
            details={"command": list(cmd)},
        ) from None

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ServiceFailedError(
            f"[{name}] {cmd[0]} timed out after {timeout}s",
            details={"command": list(cmd)},
        ) from None

    output = stdout.decode("utf-8", errors="ignore")
    if proc.returncode != 0:
        raise ServiceFailedError(
            f"[{name}] {cmd[0]} exited with {proc.returncode}: {output.strip()[-500:]}",
            details={"command": list(cmd), "rc": proc.returncode},
        )
    return output


class ContainerLauncher(Launcher):
    """
    Runs the node as a docker container on the closed network with its
    allocated addresses pinned.
    """

    def __init__(self, image: str, network: str, container_name: Optional[str] = None,
                 env: Optional[Dict[str, str]] = None, args: Sequence[str] = (),
                 volumes: Sequence[str] = (), dns: Optional[str] = None, docker: str = "docker",
                 timeout: float = 600.0):
        self.image = image
        self.network = network
        self.container_name = container_name
        self.env = dict(env or {})
        self.args = list(args)
        self.volumes = list(volumes)
        self.dns = dns
        self.docker = docker
        self.timeout = timeout

    def _name(self, node: "ServiceNode") -> str:
        return self.container_name or f"{self.network}-{node.name}"

    def run_command(self, node: "ServiceNode") -> List[str]:
        cmd = [self.docker, "run", "-d", "--name", self._name(node),
               "--hostname", node.name, "--network", self.network]
        if node.addresses.ipv4:
            cmd += ["--ip", node.addresses.ipv4]
        if node.addresses.ipv6:
            cmd += ["--ip6", node.addresses.ipv6]
        if self.dns:
            cmd += ["--dns", self.dns]
        for key, value in sorted(self.env.items()):
            cmd += ["-e", f"{key}={value}"]
        for volume in self.volumes:
            cmd += ["-v", volume]
        cmd.append(self.image)
        cmd += self.args
        return cmd

    async def start(self, node: "ServiceNode") -> None:
        output = await run_command(self.run_command(node), timeout=self.timeout, name=node.name)
        logger.info(f"[Launcher:{node.name}] Container {output.strip()[:12]} started")

    async def stop(self, node: "ServiceNode") -> None:
        await run_command([self.docker, "rm", "-f", self._name(node)], timeout=60.0, name=node.name)


class ImageBuildLauncher(Launcher):
    """Build-only node: ``docker build`` an image and exit."""

    def __init__(self, tag: str, context: str, dockerfile: Optional[str] = None,
                 build_args: Optional[Dict[str, str]] = None, docker: str = "docker",
                 timeout: float = 1800.0):
        self.tag = tag
        self.context = context
        self.dockerfile = dockerfile
        self.build_args = dict(build_args or {})
        self.docker = docker
        self.timeout = timeout

    def build_command(self) -> List[str]:
        cmd = [self.docker, "build", "-t", self.tag]
        if self.dockerfile:
            cmd += ["-f", self.dockerfile]
        for key, value in sorted(self.build_args.items()):
            cmd += ["--build-arg", f"{key}={value}"]
        cmd.append(self.context)
        return cmd

    async def start(self, node: "ServiceNode") -> None:
        await run_command(self.build_command(), timeout=self.timeout, name=node.name)
        logger.info(f"[Launcher:{node.name}] Built image {self.tag}")


class NetworkLauncher(Launcher):
    """Creates the dual-stack bridge network every container joins."""

    def __init__(self, network: str, subnet_v4: str, subnet_v6: str, docker: str = "docker"):
        self.network = network
        self.subnet_v4 = subnet_v4
        self.subnet_v6 = subnet_v6
        self.docker = docker

    def create_command(self) -> List[str]:
        return [self.docker, "network", "create", "--driver", "bridge", "--ipv6",
                "--subnet", self.subnet_v4, "--subnet", self.subnet_v6, self.network]

    async def start(self, node: "ServiceNode") -> None:
        await run_command(self.create_command(), timeout=60.0, name=node.name)

    async def stop(self, node: "ServiceNode") -> None:
        await run_command([self.docker, "network", "rm", self.network], timeout=60.0, name=node.name)
