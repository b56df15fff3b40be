"""Command line entry point: ``miniternet run`` and ``miniternet plan``."""

import argparse
import asyncio
import dataclasses
import sys
from pathlib import Path
from typing import List, Optional

from miniternet.base.config import TestbedConfig, set_config, setup_logging
from miniternet.engine.topology import default_topology
from miniternet.errors import ExitCode, TestbedError
from miniternet.net.allocator import AddressAllocator
from miniternet.orchestrator import TestbedOrchestrator
from miniternet.tls.profiles import DEFAULT_MATRIX, load_profiles


def _config_from_args(args) -> TestbedConfig:
    config = TestbedConfig.from_env()
    runner = config.runner
    if args.selector is not None:
        runner = dataclasses.replace(runner, selector=args.selector)
    if args.max_fail is not None:
        runner = dataclasses.replace(runner, max_fail=args.max_fail)
    network = config.network
    if args.launcher is not None:
        network = dataclasses.replace(network, launcher=args.launcher)
    storage = config.storage
    tls = config.tls
    if args.report_dir is not None:
        storage = dataclasses.replace(storage, report_dir=Path(args.report_dir))
        tls = dataclasses.replace(tls, config_dir=Path(args.report_dir) / "fixtures")
    return dataclasses.replace(config, runner=runner, network=network, storage=storage, tls=tls)


def run(args) -> int:
    """Bring the testbed up, run the suite, tear down."""
    config = _config_from_args(args)
    set_config(config)
    setup_logging(config)
    report = asyncio.run(TestbedOrchestrator(config).run())
    print(f"{report.status}: {report.counts} -> {config.storage.json_path}")
    return report.exit_code


def plan(args) -> int:
    """Print the service order and allocated addresses without starting anything."""
    config = _config_from_args(args).validate()
    profiles = (load_profiles(config.tls.profiles_path, DEFAULT_MATRIX)
                if config.tls.profiles_path else list(DEFAULT_MATRIX))
    topology = default_topology(config, profiles).validate()
    allocator = AddressAllocator(config.network.subnet_v4, config.network.subnet_v6)
    topology.allocate(allocator)
    for profile in profiles:
        key = f"target{profile.name}"
        if profile.dual_stack == "divergent":
            allocator.allocate_divergent(key)
        elif profile.dual_stack == "ipv4_only":
            allocator.allocate(key, families=(4,))
        else:
            allocator.allocate(key)
    for spec in topology:
        deps = ", ".join(spec.depends_on) or "-"
        print(f"{spec.name:40} {spec.role.value:9} <- {deps}")
    print()
    for key, value in sorted(allocator.environment().items()):
        print(f"{key}={value}")
    return int(ExitCode.PASSED)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="miniternet", description="Closed-network integration testbed")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    for name, func, help_text in (
        ("run", run, "Bring up the testbed and run the suite"),
        ("plan", plan, "Show topology and address plan"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--selector", help="Overrides TEST_SELECTOR")
        sub.add_argument("--max-fail", type=int, help="Overrides TEST_MAX_FAIL")
        sub.add_argument("--launcher", choices=("docker", "external", "inprocess"), help="Overrides IT_LAUNCHER")
        sub.add_argument("--report-dir", help="Overrides IT_REPORT_DIR")
        sub.set_defaults(func=func)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return int(ExitCode.CONFIG_ERROR)
    try:
        return args.func(args)
    except TestbedError as e:
        print(f"[{e.code.value}] {e.message}", file=sys.stderr)
        return int(e.exit_code)


if __name__ == "__main__":
    sys.exit(main())
