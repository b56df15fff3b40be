"""Module errors: structured error taxonomy for the testbed orchestrator."""
#
# PURPOSE:
# Provides a structured error taxonomy for Miniternet with error codes,
# typed exceptions, and a mapping from every error code to a process exit code.
#
# ERROR CODE FORMAT:
# - CONFIG_XXX: Configuration errors (fatal, before any service starts)
# - GRAPH_XXX: Service dependency graph errors (fatal, before start)
# - HEALTH_XXX: Service lifecycle / health check errors
# - DNSSEC_XXX: Chain of trust publication and verification errors
# - CERT_XXX: Certificate issuance errors (local to one fixture)
# - TEST_XXX: Test execution errors (local to one case)
#
# PROPAGATION:
# Errors local to one fixture or one case are recorded and the run continues.
# Errors in shared infrastructure (DNS chain, critical services) abort the run.
#
# USAGE:
#   from miniternet.errors import DNSSECPublicationError
#
#   raise DNSSECPublicationError(
#       "Parent refused delegation",
#       details={"zone": "nlnetlabs.tk.", "attempts": 5}
#   )
#

from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


class ExitCode(IntEnum):
    """Process exit codes. 10-19 means the environment never became healthy."""
    PASSED = 0
    TESTS_FAILED = 1
    CONFIG_ERROR = 2
    DEPENDENCY_CYCLE = 3
    ENVIRONMENT_FAILED = 10
    HEALTH_CHECK_FAILED = 11
    DNSSEC_FAILED = 12
    BRINGUP_TIMEOUT = 13

    @property
    def is_environment_failure(self) -> bool:
        return 10 <= self.value <= 19


class ErrorCode(Enum):
    # Config Errors
    CONFIG_INVALID = "CONFIG_001"
    CONFIG_MISSING_REQUIRED = "CONFIG_002"
    CONFIG_FILE_NOT_FOUND = "CONFIG_003"
    CONFIG_PARSE_ERROR = "CONFIG_004"
    CONFIG_ADDRESS_EXHAUSTED = "CONFIG_005"

    # Graph Errors
    GRAPH_CYCLE = "GRAPH_001"
    GRAPH_UNKNOWN_SERVICE = "GRAPH_002"

    # Health Errors
    HEALTH_TIMEOUT = "HEALTH_001"
    HEALTH_SERVICE_FAILED = "HEALTH_002"
    HEALTH_DEPENDENCY_FAILED = "HEALTH_003"
    HEALTH_BRINGUP_TIMEOUT = "HEALTH_004"

    # DNSSEC Errors
    DNSSEC_PUBLICATION_FAILED = "DNSSEC_001"
    DNSSEC_VERIFICATION_FAILED = "DNSSEC_002"
    DNSSEC_ZONE_NOT_READY = "DNSSEC_003"
    DNSSEC_SYNC_FAILED = "DNSSEC_004"

    # Certificate Errors
    CERT_CA_UNREACHABLE = "CERT_001"
    CERT_CSR_REJECTED = "CERT_002"
    CERT_SUBJECT_MISMATCH = "CERT_003"

    # Test Errors
    TEST_SESSION_ERROR = "TEST_001"
    TEST_GRID_CAPACITY = "TEST_002"
    TEST_CHECK_FAILED = "TEST_003"
    TEST_FIXTURE_UNAVAILABLE = "TEST_004"

    # System Errors
    SYSTEM_INTERNAL_ERROR = "SYSTEM_001"


class TestbedError(Exception):
    """
    Base exception class for Miniternet with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "DNSSEC_001")
        message: Human-readable error message
        details: Optional dictionary with additional context
        exit_code: Process exit code this error maps to when it aborts a run
    """

    __test__ = False  # not a pytest test class

    default_code: ErrorCode = ErrorCode.SYSTEM_INTERNAL_ERROR

    # Map error codes to process exit codes
    EXIT_CODE_MAP: Dict[ErrorCode, ExitCode] = {
        ErrorCode.CONFIG_INVALID: ExitCode.CONFIG_ERROR,
        ErrorCode.CONFIG_MISSING_REQUIRED: ExitCode.CONFIG_ERROR,
        ErrorCode.CONFIG_FILE_NOT_FOUND: ExitCode.CONFIG_ERROR,
        ErrorCode.CONFIG_PARSE_ERROR: ExitCode.CONFIG_ERROR,
        ErrorCode.CONFIG_ADDRESS_EXHAUSTED: ExitCode.CONFIG_ERROR,

        ErrorCode.GRAPH_CYCLE: ExitCode.DEPENDENCY_CYCLE,
        ErrorCode.GRAPH_UNKNOWN_SERVICE: ExitCode.CONFIG_ERROR,

        ErrorCode.HEALTH_TIMEOUT: ExitCode.HEALTH_CHECK_FAILED,
        ErrorCode.HEALTH_SERVICE_FAILED: ExitCode.HEALTH_CHECK_FAILED,
        ErrorCode.HEALTH_DEPENDENCY_FAILED: ExitCode.HEALTH_CHECK_FAILED,
        ErrorCode.HEALTH_BRINGUP_TIMEOUT: ExitCode.BRINGUP_TIMEOUT,

        ErrorCode.DNSSEC_PUBLICATION_FAILED: ExitCode.DNSSEC_FAILED,
        ErrorCode.DNSSEC_VERIFICATION_FAILED: ExitCode.DNSSEC_FAILED,
        ErrorCode.DNSSEC_ZONE_NOT_READY: ExitCode.DNSSEC_FAILED,
        ErrorCode.DNSSEC_SYNC_FAILED: ExitCode.DNSSEC_FAILED,

        # Certificate and test errors never abort the run on their own
        ErrorCode.CERT_CA_UNREACHABLE: ExitCode.TESTS_FAILED,
        ErrorCode.CERT_CSR_REJECTED: ExitCode.TESTS_FAILED,
        ErrorCode.CERT_SUBJECT_MISMATCH: ExitCode.TESTS_FAILED,
        ErrorCode.TEST_SESSION_ERROR: ExitCode.TESTS_FAILED,
        ErrorCode.TEST_GRID_CAPACITY: ExitCode.TESTS_FAILED,
        ErrorCode.TEST_CHECK_FAILED: ExitCode.TESTS_FAILED,
        ErrorCode.TEST_FIXTURE_UNAVAILABLE: ExitCode.TESTS_FAILED,

        ErrorCode.SYSTEM_INTERNAL_ERROR: ExitCode.ENVIRONMENT_FAILED,
    }

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize a TestbedError.

        Args:
            message: Human-readable error message
            code: ErrorCode enum value (defaults to the class default)
            details: Optional dictionary with additional context
        """
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}

        # Build exception message with code for easy debugging
        super().__init__(f"[{self.code.value}] {message}")

    @property
    def exit_code(self) -> ExitCode:
        return self.EXIT_CODE_MAP.get(self.code, ExitCode.ENVIRONMENT_FAILED)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for JSON serialization.

        Returns:
            Dictionary with type, code, message, details and exit_code
        """
        return {
            "type": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "exit_code": int(self.exit_code),
        }


# ============================================================================
# Pre-start errors
# ============================================================================

class ConfigurationError(TestbedError):
    """Invalid configuration, raised before any service starts."""
    default_code = ErrorCode.CONFIG_INVALID


class AddressExhaustedError(ConfigurationError):
    """The closed subnet has no free host addresses left."""
    default_code = ErrorCode.CONFIG_ADDRESS_EXHAUSTED


class DependencyCycleError(TestbedError):
    """Declaring a service would create a cycle in the dependency graph."""
    default_code = ErrorCode.GRAPH_CYCLE

    def __init__(self, message: str, cycle: Optional[List[str]] = None, **kwargs):
        super().__init__(message, details={"cycle": cycle or []}, **kwargs)
        self.cycle = cycle or []


# ============================================================================
# Lifecycle errors
# ============================================================================

class HealthCheckTimeoutError(TestbedError, TimeoutError):
    """A service did not report healthy within its grace period or a wait timed out."""
    default_code = ErrorCode.HEALTH_TIMEOUT


class ServiceFailedError(TestbedError):
    """A service (or one of its dependencies) is in the Failed state."""
    default_code = ErrorCode.HEALTH_SERVICE_FAILED


class BringUpTimeoutError(TestbedError, TimeoutError):
    """The whole bring-up phase exceeded its deadline."""
    default_code = ErrorCode.HEALTH_BRINGUP_TIMEOUT


# ============================================================================
# DNSSEC errors
# ============================================================================

class DNSSECPublicationError(TestbedError):
    """A child zone could not publish its delegation into its parent."""
    default_code = ErrorCode.DNSSEC_PUBLICATION_FAILED


class ChainVerificationError(TestbedError):
    """Resolving through the chain of trust failed to validate."""
    default_code = ErrorCode.DNSSEC_VERIFICATION_FAILED


# ============================================================================
# Fixture and test errors
# ============================================================================

class CertIssuanceError(TestbedError):
    """The CA was unreachable or rejected a fixture's CSR."""
    default_code = ErrorCode.CERT_CA_UNREACHABLE


class TestExecutionError(TestbedError):
    """A browser automation session failed while running a case."""
    default_code = ErrorCode.TEST_SESSION_ERROR


class WebDriverError(TestExecutionError):
    """The browser grid returned a WebDriver protocol error."""

    def __init__(self, message: str, error: str = "unknown error", status: int = 500, **kwargs):
        super().__init__(message, details={"error": error, "status": status}, **kwargs)
        self.error = error
        self.status = status


class NoSuchElementError(WebDriverError):
    """The requested element was not present on the page."""


class GridCapacityError(WebDriverError):
    """The grid could not create a session because its pool is exhausted."""
    default_code = ErrorCode.TEST_GRID_CAPACITY


class CheckFailed(AssertionError):
    """An expectation on the application under test did not hold."""


# ============================================================================
# Convenience Functions
# ============================================================================

def handle_error(error: Exception, context: Optional[str] = None) -> TestbedError:
    """
    Convert a generic exception to a TestbedError.

    Args:
        error: The original exception
        context: Optional context string (e.g., "while bringing up dns tier")

    Returns:
        TestbedError with appropriate code and message
    """
    if isinstance(error, TestbedError):
        return error

    error_type = type(error).__name__
    message = str(error) or error_type
    if context:
        message = f"{context}: {message}"

    if isinstance(error, TimeoutError):
        return HealthCheckTimeoutError(
            message,
            details={"original_type": error_type, "original_message": str(error)},
        )
    return TestbedError(
        message,
        details={"original_type": error_type, "original_message": str(error)},
    )


__all__ = [
    "ExitCode",
    "ErrorCode",
    "TestbedError",
    "ConfigurationError",
    "AddressExhaustedError",
    "DependencyCycleError",
    "HealthCheckTimeoutError",
    "ServiceFailedError",
    "BringUpTimeoutError",
    "DNSSECPublicationError",
    "ChainVerificationError",
    "CertIssuanceError",
    "TestExecutionError",
    "WebDriverError",
    "NoSuchElementError",
    "GridCapacityError",
    "CheckFailed",
    "handle_error",
]
