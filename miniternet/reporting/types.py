from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from miniternet.errors import ExitCode, TestbedError
from miniternet.suite.cases import CaseOutcome, CaseResult

RunStatus = Literal["passed", "tests_failed", "environment_failed"]


def iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class CaseEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    case_id: str
    outcome: CaseOutcome
    duration: float = 0.0
    message: str = ""
    error_type: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: CaseResult) -> "CaseEntry":
        return cls(
            case_id=result.case_id,
            outcome=result.outcome,
            duration=round(result.duration, 3),
            message=result.message,
            error_type=result.error_type,
            tags=list(result.tags),
        )


class RunReport(BaseModel):
    """Final, immutable record of one run."""
    model_config = ConfigDict(frozen=True)

    report_id: str
    created_at: str = Field(default_factory=iso_now)
    project: str = "miniternet"
    status: RunStatus
    exit_code: int
    counts: Dict[str, int]
    cases: List[CaseEntry] = Field(default_factory=list)
    environment_error: Optional[Dict[str, Any]] = None
    selector: str = ""
    max_fail: Optional[int] = None
    stopped_early: bool = False
    services: Dict[str, str] = Field(default_factory=dict)
    zones: Dict[str, str] = Field(default_factory=dict)
    fixtures: List[Dict[str, Any]] = Field(default_factory=list)
    coverage_files: int = 0

    @staticmethod
    def tally(entries: List[CaseEntry]) -> Dict[str, int]:
        counts = {o.value: 0 for o in CaseOutcome}
        for entry in entries:
            counts[entry.outcome.value] += 1
        counts["total"] = len(entries)
        return counts

    @classmethod
    def from_results(cls, report_id: str, results: List[CaseResult], **extra: Any) -> "RunReport":
        """Report for a run whose environment came up; status follows the case outcomes."""
        entries = [CaseEntry.from_result(r) for r in results]
        failed = any(e.outcome.counts_as_failure for e in entries)
        return cls(
            report_id=report_id,
            status="tests_failed" if failed else "passed",
            exit_code=int(ExitCode.TESTS_FAILED if failed else ExitCode.PASSED),
            counts=cls.tally(entries),
            cases=entries,
            **extra,
        )

    @classmethod
    def environment_failure(cls, report_id: str, error: TestbedError, **extra: Any) -> "RunReport":
        """Report for a run that never produced valid results."""
        return cls(
            report_id=report_id,
            status="environment_failed",
            exit_code=int(error.exit_code),
            counts=cls.tally([]),
            environment_error=error.to_dict(),
            **extra,
        )

    @property
    def passed(self) -> bool:
        return self.status == "passed"
