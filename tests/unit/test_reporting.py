import json

import pytest
from pydantic import ValidationError

from miniternet.base.config import StorageConfig
from miniternet.errors import ChainVerificationError, ConfigurationError
from miniternet.reporting.composer import ReportWriter
from miniternet.reporting.types import RunReport
from miniternet.suite.cases import CaseOutcome, CaseResult


def _results(*outcomes):
    return [
        CaseResult(case_id=f"case{i}", outcome=o, duration=0.1234, message="" if o is CaseOutcome.PASSED else "why")
        for i, o in enumerate(outcomes)
    ]


def test_passing_run():
    report = RunReport.from_results("r1", _results(CaseOutcome.PASSED, CaseOutcome.PASSED))
    assert report.passed
    assert report.exit_code == 0
    assert report.counts == {"passed": 2, "failed": 0, "skipped": 0, "error": 0, "total": 2}
    assert report.cases[0].duration == 0.123


@pytest.mark.parametrize("outcome", [CaseOutcome.FAILED, CaseOutcome.ERROR])
def test_failure_or_error_fails_the_run(outcome):
    report = RunReport.from_results("r2", _results(CaseOutcome.PASSED, outcome, CaseOutcome.SKIPPED))
    assert report.status == "tests_failed"
    assert report.exit_code == 1


def test_skipped_only_run_passes():
    report = RunReport.from_results("r3", _results(CaseOutcome.SKIPPED))
    assert report.status == "passed"


def test_environment_failure_uses_error_exit_code():
    error = ChainVerificationError("nlnetlabs.tk. is bogus", details={"zone": "nlnetlabs.tk."})
    report = RunReport.environment_failure("r4", error, selector="tag:dnssec")
    assert report.status == "environment_failed"
    assert report.exit_code == 12
    assert report.counts["total"] == 0
    assert report.environment_error["code"] == "DNSSEC_002"
    assert report.selector == "tag:dnssec"

    config_failure = RunReport.environment_failure("r5", ConfigurationError("bad subnet"))
    assert config_failure.exit_code == 2


def test_report_is_frozen():
    report = RunReport.from_results("r6", [])
    with pytest.raises(ValidationError):
        report.status = "passed"


def test_writer_produces_json_markdown_and_coverage(tmp_path):
    storage = StorageConfig(report_dir=tmp_path / "out")
    report = RunReport.from_results(
        "r7",
        _results(CaseOutcome.PASSED, CaseOutcome.FAILED, CaseOutcome.ERROR, CaseOutcome.SKIPPED),
        selector="site-*",
        max_fail=2,
        stopped_early=True,
        services={"root": "healthy"},
        zones={".": "verified"},
        fixtures=[{"name": "tls12only", "hostname": "tls12only.test.nlnetlabs.tk", "ipv4": "172.16.238.9",
                   "usable": False, "error": {"code": "CERT_001", "message": "CA down"}}],
        coverage_files=1,
    )

    paths = ReportWriter(storage).write(report, coverage={"app.js": {"1": 3}})

    assert paths == [storage.json_path, storage.markdown_path, storage.coverage_path]
    data = json.loads(storage.json_path.read_text())
    assert data["status"] == "tests_failed"
    assert data["cases"][1]["outcome"] == "failed"
    assert RunReport.model_validate(data) == report
    assert json.loads(storage.coverage_path.read_text()) == {"app.js": {"1": 3}}

    md = storage.markdown_path.read_text()
    assert "# miniternet integration run" in md
    assert "| 1 | 1 | 1 | 1 | 4 |" in md
    assert "`FAIL` **case1**" in md
    assert "max-fail 2" in md
    assert "tls12only" in md and "CA down" in md
    assert "zone `.`: verified" in md


def test_environment_failure_markdown(tmp_path):
    storage = StorageConfig(report_dir=tmp_path)
    report = RunReport.environment_failure("r8", ConfigurationError("bad", details={"key": "SUBNETV4"}))
    paths = ReportWriter(storage).write(report)
    assert storage.coverage_path not in paths
    md = storage.markdown_path.read_text()
    assert "## Environment failure" in md
    assert "SUBNETV4" in md
    assert "_No cases ran._" in md
