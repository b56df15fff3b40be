# ============================================================================
# miniternet/base/config.py
# Testbed Configuration Management
# ============================================================================
#
# PURPOSE:
# Defines every setting the orchestrator reads: network ranges, worker pool,
# test selection, DNSSEC publication policy, timeouts, report location and
# logging. Settings come from environment variables (the same names the
# docker-compose deployment used where one existed) and are validated before
# any service starts.
#
# KEY CONCEPTS:
# 1. Frozen dataclasses: one immutable section per concern
# 2. from_env(): the only place environment variables are parsed
# 3. validate(): invalid combinations fail fast with ConfigurationError
# 4. get_config()/set_config(): one shared instance, replaceable in tests
#
# ============================================================================

from __future__ import annotations

import ipaddress
import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

from miniternet.errors import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

LAUNCHER_MODES = ("docker", "external", "inprocess")


# ============================================================================
# Closed Network Configuration
# ============================================================================

@dataclass(frozen=True)
class NetworkConfig:
    # Private ranges every service address is allocated from
    subnet_v4: str = "172.16.238.0/24"
    subnet_v6: str = "2001:3984:3989::/64"

    # Docker network / project name (COMPOSE_PROJECT_NAME)
    project_name: str = "miniternet"

    # How services are launched: docker containers, already running
    # (probe only), or in-process stand-ins
    launcher: str = "external"


# ============================================================================
# Test Runner Configuration
# ============================================================================

@dataclass(frozen=True)
class RunnerConfig:
    # Number of concurrent browser sessions (one per selenium node)
    pool_size: int = 2

    # Selector expression, e.g. "tls13*,-*ocsp*" or "tag:dnssec"
    selector: str = ""

    # Stop dispatching once this many cases have failed or errored
    max_fail: int = 10

    # Collect and merge coverage traces from every session
    coverage_enabled: bool = False

    # Where the application under test and the browser grid are reachable
    app_url: str = "http://app:8080"
    grid_url: str = "http://selenium:4444/wd/hub"
    browser_name: str = "firefox"
    browser_width: int = 1920
    browser_height: int = 1080


# ============================================================================
# DNSSEC Chain Configuration
# ============================================================================

@dataclass(frozen=True)
class DNSConfig:
    tld: str = "tk"
    leaf_zone: str = "nlnetlabs.tk"

    # Fixtures live at <profile>.<fixture_subdomain>.<leaf_zone>
    fixture_subdomain: str = "test"

    # canary.<leaf_zone> is resolved through the whole chain to verify it
    canary_label: str = "canary"

    ttl: int = 300
    signature_lifetime: int = 7 * 24 * 3600

    # DS publication: attempts, base backoff delay and per-attempt ack timeout
    ds_max_attempts: int = 5
    ds_backoff: float = 0.5
    ds_ack_timeout: float = 5.0

    # Serve zones over UDP on their allocated addresses (needs the addresses
    # to be configured on this host); otherwise queries stay in-process
    serve_udp: bool = False
    udp_port: int = 53

    @property
    def fixture_domain(self) -> str:
        return f"{self.fixture_subdomain}.{self.leaf_zone}"


# ============================================================================
# TLS Target Configuration
# ============================================================================

@dataclass(frozen=True)
class TLSConfig:
    # CA/OCSP service endpoint; empty means use the in-process CA
    ca_url: str = ""

    # Optional JSON file with additional or replacement fixture profiles
    profiles_path: Optional[Path] = None

    # Directory where rendered fixture server configuration is written
    config_dir: Path = field(default_factory=lambda: Path("/tmp/it-report/fixtures"))


# ============================================================================
# Timeouts
# ============================================================================

@dataclass(frozen=True)
class TimeoutConfig:
    # Whole bring-up phase (services, DNS chain, fixtures)
    bringup: float = 900.0

    # How long a started service may take to pass its health probe
    health_grace: float = 120.0
    probe_interval: float = 1.0

    # Single test case
    case: float = 300.0


# ============================================================================
# Report Storage
# ============================================================================

@dataclass(frozen=True)
class StorageConfig:
    # Shared with the report volume mounted at /tmp/it-report
    report_dir: Path = field(default_factory=lambda: Path("/tmp/it-report"))
    report_name: str = "report"

    @property
    def json_path(self) -> Path:
        return self.report_dir / f"{self.report_name}.json"

    @property
    def markdown_path(self) -> Path:
        return self.report_dir / f"{self.report_name}.md"

    @property
    def coverage_path(self) -> Path:
        return self.report_dir / "coverage.json"

    @property
    def trust_anchor_path(self) -> Path:
        return self.report_dir / "root.key"


# ============================================================================
# Logging Configuration
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file_enabled: bool = True
    file_name: str = "testbed.log"
    max_file_size_mb: int = 10
    backup_count: int = 5


# ============================================================================
# Master Configuration Container
# ============================================================================

@dataclass(frozen=True)
class TestbedConfig:
    __test__ = False

    network: NetworkConfig = field(default_factory=NetworkConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    dns: DNSConfig = field(default_factory=DNSConfig)
    tls: TLSConfig = field(default_factory=TLSConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log: LogConfig = field(default_factory=LogConfig)
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "TestbedConfig":
        """
        Build a TestbedConfig from environment variables.

        Raises ConfigurationError when a value cannot be parsed; range and
        consistency checks happen in validate().
        """
        env = os.environ if environ is None else environ

        def get(key: str, default: str, convert: Callable[[str], T] = str) -> T:
            raw = env.get(key, default)
            try:
                return convert(raw)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid value for {key}: {raw!r}",
                    details={"key": key, "value": raw, "error": str(e)},
                ) from e

        report_dir = Path(get("IT_REPORT_DIR", "/tmp/it-report"))
        profiles = env.get("IT_FIXTURE_PROFILES")

        network = NetworkConfig(
            subnet_v4=get("SUBNETV4", "172.16.238.0/24"),
            subnet_v6=get("SUBNETV6", "2001:3984:3989::/64"),
            project_name=get("COMPOSE_PROJECT_NAME", "miniternet"),
            launcher=get("IT_LAUNCHER", "external").lower(),
        )

        runner = RunnerConfig(
            pool_size=get("NUM_BROWSER_NODES", "2", int),
            selector=get("TEST_SELECTOR", ""),
            max_fail=get("TEST_MAX_FAIL", "10", int),
            coverage_enabled=get("ENABLE_COVERAGE", "false", _parse_bool),
            app_url=get("IT_APP_URL", "http://app:8080"),
            grid_url=get("IT_GRID_URL", "http://selenium:4444/wd/hub"),
            browser_name=get("IT_BROWSER", "firefox"),
            browser_width=get("IT_BROWSER_WIDTH", "1920", int),
            browser_height=get("IT_BROWSER_HEIGHT", "1080", int),
        )

        dns = DNSConfig(
            tld=get("IT_TLD", "tk").strip("."),
            leaf_zone=get("IT_LEAF_ZONE", "nlnetlabs.tk").strip("."),
            fixture_subdomain=get("IT_FIXTURE_SUBDOMAIN", "test").strip("."),
            ttl=get("IT_DNS_TTL", "300", int),
            ds_max_attempts=get("IT_DS_MAX_ATTEMPTS", "5", int),
            ds_backoff=get("IT_DS_BACKOFF", "0.5", float),
            ds_ack_timeout=get("IT_DS_ACK_TIMEOUT", "5", float),
            serve_udp=get("IT_DNS_SERVE_UDP", "false", _parse_bool),
            udp_port=get("IT_DNS_PORT", "53", int),
        )

        tls = TLSConfig(
            ca_url=get("IT_CA_URL", ""),
            profiles_path=Path(profiles) if profiles else None,
            config_dir=report_dir / "fixtures",
        )

        timeouts = TimeoutConfig(
            bringup=get("IT_BRINGUP_TIMEOUT", "900", float),
            health_grace=get("IT_HEALTH_GRACE", "120", float),
            probe_interval=get("IT_PROBE_INTERVAL", "1", float),
            case=get("IT_CASE_TIMEOUT", "300", float),
        )

        log = LogConfig(
            level=get("IT_LOG_LEVEL", "INFO").upper(),
            file_enabled=get("IT_LOG_FILE", "true", _parse_bool),
        )

        return cls(
            network=network,
            runner=runner,
            dns=dns,
            tls=tls,
            timeouts=timeouts,
            storage=StorageConfig(report_dir=report_dir),
            log=log,
            debug=get("IT_DEBUG", "false", _parse_bool),
        )

    def validate(self) -> "TestbedConfig":
        """
        Check ranges and cross-field consistency.

        Returns self so callers can chain ``TestbedConfig.from_env().validate()``.
        """
        problems: List[str] = []

        if self.runner.pool_size < 1:
            problems.append(f"NUM_BROWSER_NODES must be >= 1 (got {self.runner.pool_size})")
        if self.runner.max_fail < 1:
            problems.append(f"TEST_MAX_FAIL must be >= 1 (got {self.runner.max_fail})")
        if self.runner.browser_width < 1 or self.runner.browser_height < 1:
            problems.append("browser window dimensions must be positive")

        v4 = _parse_network(self.network.subnet_v4, problems, "SUBNETV4")
        v6 = _parse_network(self.network.subnet_v6, problems, "SUBNETV6")
        if v4 is not None and v4.version != 4:
            problems.append(f"SUBNETV4 is not an IPv4 network: {self.network.subnet_v4}")
        if v6 is not None and v6.version != 6:
            problems.append(f"SUBNETV6 is not an IPv6 network: {self.network.subnet_v6}")
        if v4 is not None and v4.version == 4 and v4.num_addresses < 8:
            problems.append(f"SUBNETV4 is too small: {self.network.subnet_v4}")

        if self.network.launcher not in LAUNCHER_MODES:
            problems.append(f"IT_LAUNCHER must be one of {', '.join(LAUNCHER_MODES)}")

        leaf = self.dns.leaf_zone.lower()
        tld = self.dns.tld.lower()
        if not tld or "." in tld:
            problems.append(f"IT_TLD must be a single label (got {self.dns.tld!r})")
        elif leaf == tld or not leaf.endswith("." + tld):
            problems.append(f"IT_LEAF_ZONE {self.dns.leaf_zone!r} is not below TLD {self.dns.tld!r}")
        if self.dns.ttl <= 0 or self.dns.signature_lifetime <= self.dns.ttl:
            problems.append("DNS TTL must be positive and shorter than the signature lifetime")
        if self.dns.ds_max_attempts < 1:
            problems.append("IT_DS_MAX_ATTEMPTS must be >= 1")
        if self.dns.ds_backoff < 0 or self.dns.ds_ack_timeout <= 0:
            problems.append("DS backoff must be >= 0 and ack timeout > 0")

        for name in ("bringup", "health_grace", "probe_interval", "case"):
            if getattr(self.timeouts, name) <= 0:
                problems.append(f"timeout {name} must be > 0")

        if self.tls.profiles_path is not None and not self.tls.profiles_path.is_file():
            problems.append(f"IT_FIXTURE_PROFILES file not found: {self.tls.profiles_path}")

        if self.log.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            problems.append(f"IT_LOG_LEVEL is not a logging level: {self.log.level}")

        # Local import: the selector module has no config dependency
        from miniternet.suite.selector import CaseSelector
        try:
            CaseSelector.parse(self.runner.selector)
        except ValueError as e:
            problems.append(f"TEST_SELECTOR is invalid: {e}")

        if problems:
            raise ConfigurationError(
                "Invalid testbed configuration: " + "; ".join(problems),
                details={"problems": problems},
            )
        return self

    def prepare_directories(self) -> None:
        """Create the report and fixture config directories."""
        self.storage.report_dir.mkdir(parents=True, exist_ok=True)
        self.tls.config_dir.mkdir(parents=True, exist_ok=True)


def _parse_bool(value: str) -> bool:
    lowered = str(value).strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_network(value: str, problems: List[str], key: str):
    try:
        return ipaddress.ip_network(value, strict=True)
    except ValueError as e:
        problems.append(f"{key} is not a valid network: {e}")
        return None


# ============================================================================
# Global Configuration Singleton
# ============================================================================

_config: Optional[TestbedConfig] = None


def get_config() -> TestbedConfig:
    """
    Get the global configuration instance, loading it from the environment
    on first use.
    """
    global _config
    if _config is None:
        _config = TestbedConfig.from_env()
    return _config


def set_config(config: Optional[TestbedConfig]) -> None:
    """Replace the global configuration (mainly used for testing)."""
    global _config
    _config = config


def setup_logging(config: Optional[TestbedConfig] = None) -> None:
    """
    Configure Python's logging system based on our settings.

    Console output always; a rotating log file inside the report directory
    when file logging is enabled.
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_enabled:
        from logging.handlers import RotatingFileHandler
        cfg.storage.report_dir.mkdir(parents=True, exist_ok=True)
        log_path = cfg.storage.report_dir / cfg.log.file_name
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.DEBUG if cfg.debug else getattr(logging, cfg.log.level.upper()),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
