"""
miniternet/suite/cases.py
Test cases, their outcome contracts and the ordered case registry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, model_validator

from miniternet.errors import CheckFailed, ConfigurationError
from miniternet.suite.selector import CaseSelector

if TYPE_CHECKING:
    from miniternet.suite.webdriver import BrowserSession
    from miniternet.tls.matrix import TargetFixture
    from miniternet.zones.bootstrapper import DNSSECChainBootstrapper

logger = logging.getLogger(__name__)


class CaseOutcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"

    @property
    def counts_as_failure(self) -> bool:
        return self in (CaseOutcome.FAILED, CaseOutcome.ERROR)


class Expectation(BaseModel):
    """One element on a page and what it must show."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    selector: str
    contains: Optional[str] = None
    attribute: Optional[str] = None
    equals: Optional[str] = None

    @model_validator(mode="after")
    def _has_check(self) -> "Expectation":
        if self.contains is None and self.equals is None:
            raise ValueError("expectation needs 'contains' or 'equals'")
        return self


class OutcomeContract(BaseModel):
    """What a passing case observes: a page and the expectations on it."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = "/"
    expectations: List[Expectation] = Field(default_factory=list)

    async def verify(self, session: "BrowserSession", base_url: str) -> None:
        """Navigate and check every expectation; raises CheckFailed on the first miss."""
        url = base_url.rstrip("/") + "/" + self.path.lstrip("/")
        await session.get(url)
        for expectation in self.expectations:
            element = await session.find(expectation.selector)
            if expectation.attribute:
                value = await session.attribute(element, expectation.attribute) or ""
            else:
                value = await session.text(element)
            if expectation.equals is not None and value.strip() != expectation.equals:
                raise CheckFailed(f"{url} {expectation.selector}: expected {expectation.equals!r}, got {value!r}")
            if expectation.contains is not None and expectation.contains.lower() not in value.lower():
                raise CheckFailed(
                    f"{url} {expectation.selector}: {value!r} does not contain {expectation.contains!r}"
                )


@dataclass
class CaseResult:
    case_id: str
    outcome: CaseOutcome
    duration: float = 0.0
    message: str = ""
    error_type: Optional[str] = None
    worker: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    coverage: Optional[Dict[str, Dict[str, int]]] = None


@dataclass
class CaseContext:
    """Everything a running case may touch."""
    case: "TestCase"
    session: Any
    app_url: str
    fixture: Optional["TargetFixture"] = None
    chain: Optional["DNSSECChainBootstrapper"] = None


CaseFunc = Callable[[CaseContext], Awaitable[None]]


class TestCase:
    """
    One runnable check. ``fixture`` names the TargetFixture the case needs,
    if any. The result is written exactly once.
    """

    __test__ = False

    def __init__(self, case_id: str, run: CaseFunc, tags: Sequence[str] = (),
                 contract: Optional[OutcomeContract] = None, fixture: Optional[str] = None,
                 description: str = ""):
        self.case_id = case_id
        self.run = run
        self.tags = list(tags)
        self.contract = contract
        self.fixture = fixture
        self.description = description
        self._result: Optional[CaseResult] = None

    @property
    def result(self) -> Optional[CaseResult]:
        return self._result

    def record(self, outcome: CaseOutcome, duration: float = 0.0, message: str = "",
               error_type: Optional[str] = None, worker: Optional[int] = None,
               coverage: Optional[Dict[str, Dict[str, int]]] = None) -> CaseResult:
        if self._result is not None:
            raise RuntimeError(f"result of {self.case_id} already recorded as {self._result.outcome.value}")
        self._result = CaseResult(
            case_id=self.case_id,
            outcome=outcome,
            duration=duration,
            message=message,
            error_type=error_type,
            worker=worker,
            tags=list(self.tags),
            coverage=coverage,
        )
        return self._result

    def __repr__(self):
        return f"TestCase({self.case_id!r})"


class CaseRegistry:
    """Cases in declaration order."""

    def __init__(self):
        self._cases: Dict[str, TestCase] = {}

    def register(self, case: TestCase) -> TestCase:
        if case.case_id in self._cases:
            raise ConfigurationError(f"Test case {case.case_id!r} registered twice")
        self._cases[case.case_id] = case
        return case

    def case(self, case_id: str, tags: Sequence[str] = (), fixture: Optional[str] = None,
             contract: Optional[OutcomeContract] = None):
        """Decorator form of register()."""

        def decorator(func: CaseFunc) -> CaseFunc:
            self.register(TestCase(case_id, func, tags=tags, fixture=fixture, contract=contract,
                                   description=(func.__doc__ or "").strip()))
            return func

        return decorator

    def __len__(self) -> int:
        return len(self._cases)

    def __iter__(self):
        return iter(self._cases.values())

    def get(self, case_id: str) -> TestCase:
        return self._cases[case_id]

    def select(self, selector: Optional[CaseSelector] = None) -> List[TestCase]:
        if selector is None:
            return list(self._cases.values())
        return [c for c in self._cases.values() if selector.matches(c.case_id, c.tags)]
