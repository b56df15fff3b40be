"""Pytest configuration for Miniternet."""
import dataclasses

import pytest

from miniternet.base.config import TestbedConfig
from miniternet.net.allocator import AddressAllocator
from miniternet.zones.bootstrapper import DNSSECChainBootstrapper


@pytest.fixture
def testbed_config(tmp_path) -> TestbedConfig:
    """In-process configuration with short timeouts, writing under tmp_path."""
    base = TestbedConfig()
    return dataclasses.replace(
        base,
        network=dataclasses.replace(base.network, launcher="inprocess"),
        runner=dataclasses.replace(base.runner, app_url="http://app.test", grid_url="http://grid.test/wd/hub"),
        dns=dataclasses.replace(base.dns, ds_max_attempts=3, ds_backoff=0.0, ds_ack_timeout=1.0),
        tls=dataclasses.replace(base.tls, config_dir=tmp_path / "report" / "fixtures"),
        timeouts=dataclasses.replace(base.timeouts, bringup=30.0, health_grace=5.0, probe_interval=0.01, case=5.0),
        storage=dataclasses.replace(base.storage, report_dir=tmp_path / "report"),
        log=dataclasses.replace(base.log, file_enabled=False),
    )


@pytest.fixture
def allocator() -> AddressAllocator:
    return AddressAllocator("172.16.238.0/24", "2001:3984:3989::/64")


@pytest.fixture
def chain(testbed_config, allocator) -> DNSSECChainBootstrapper:
    """root -> tk -> nlnetlabs.tk, declared but not started."""
    bootstrapper = DNSSECChainBootstrapper(testbed_config.dns)
    bootstrapper.add_zone(".", allocator.allocate("root"))
    bootstrapper.add_zone("tk", allocator.allocate("master"), parent=".")
    bootstrapper.add_zone("nlnetlabs.tk", allocator.allocate("submaster"), parent="tk")
    return bootstrapper
