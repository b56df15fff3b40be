import pytest

from miniternet.errors import (
    BringUpTimeoutError,
    ChainVerificationError,
    CertIssuanceError,
    ConfigurationError,
    DependencyCycleError,
    ErrorCode,
    ExitCode,
    GridCapacityError,
    HealthCheckTimeoutError,
    NoSuchElementError,
    TestbedError,
    handle_error,
)


@pytest.mark.parametrize("error,exit_code", [
    (ConfigurationError("bad"), ExitCode.CONFIG_ERROR),
    (DependencyCycleError("cycle", cycle=["a", "b"]), ExitCode.DEPENDENCY_CYCLE),
    (HealthCheckTimeoutError("slow"), ExitCode.HEALTH_CHECK_FAILED),
    (BringUpTimeoutError("slower"), ExitCode.BRINGUP_TIMEOUT),
    (ChainVerificationError("bogus"), ExitCode.DNSSEC_FAILED),
    (CertIssuanceError("ca down"), ExitCode.TESTS_FAILED),
    (TestbedError("boom"), ExitCode.ENVIRONMENT_FAILED),
])
def test_exit_code_mapping(error, exit_code):
    assert error.exit_code == exit_code


def test_to_dict_and_message():
    error = DependencyCycleError("a -> b -> a", cycle=["a", "b"])
    data = error.to_dict()
    assert data["type"] == "DependencyCycleError"
    assert data["code"] == ErrorCode.GRAPH_CYCLE.value
    assert data["details"] == {"cycle": ["a", "b"]}
    assert data["exit_code"] == 3
    assert str(error).startswith("[GRAPH_001]")


def test_webdriver_errors_carry_protocol_fields():
    error = NoSuchElementError("gone", error="no such element", status=404)
    assert error.error == "no such element"
    assert error.status == 404
    assert GridCapacityError("full").code is ErrorCode.TEST_GRID_CAPACITY


def test_timeouts_are_timeout_errors():
    assert isinstance(HealthCheckTimeoutError("x"), TimeoutError)
    assert isinstance(BringUpTimeoutError("x"), TimeoutError)


def test_handle_error_wraps_generic_exceptions():
    original = ConfigurationError("kept")
    assert handle_error(original) is original

    wrapped = handle_error(ValueError("nope"), context="while planning")
    assert wrapped.message == "while planning: nope"
    assert wrapped.details["original_type"] == "ValueError"
    assert wrapped.exit_code == ExitCode.ENVIRONMENT_FAILED

    assert isinstance(handle_error(TimeoutError()), HealthCheckTimeoutError)
