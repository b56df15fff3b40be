# ============================================================================
# miniternet/suite/engine.py
# Test Execution Engine
# ============================================================================
#
# PURPOSE:
# Runs the selected cases against the live environment through a pool of
# browser sessions.
#
#   - dispatch order is declaration order; the pool takes cases as workers
#     free up
#   - each worker holds at most one session, created lazily and replaced
#     after a session-level error
#   - Failed + Error reaching max_fail stops dispatch; cases in flight
#     finish, the rest are Skipped
#   - cases whose fixture is unavailable are Error before dispatch and do
#     not count toward max_fail
#   - per-session coverage traces are merged by summing line hits
#
# ============================================================================

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Sequence

from miniternet.errors import NoSuchElementError, TestbedError, WebDriverError
from miniternet.suite.cases import CaseContext, CaseOutcome, CaseResult, TestCase
from miniternet.suite.selector import CaseSelector
from miniternet.utils.async_helpers import create_safe_task

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Awaitable[Any]]
CoverageMap = Dict[str, Dict[str, int]]


def _istanbul_lines(file_coverage: Mapping[str, Any]) -> Dict[str, int]:
    """Per-line hits from an Istanbul file record (statement counts keyed by start line)."""
    lines: Dict[str, int] = {}
    statements = file_coverage["statementMap"]
    for statement, hits in file_coverage["s"].items():
        line = str(statements[statement]["start"]["line"])
        lines[line] = max(lines.get(line, 0), int(hits))
    return lines


def normalise_coverage(trace: Any) -> Optional[CoverageMap]:
    """
    Turn one browser trace into ``{path: {line: hits}}``.

    Accepts plain line maps and Istanbul ``window.__coverage__`` objects.
    Returns None for an empty trace; raises ValueError for anything else.
    """
    if not trace:
        return None
    if not isinstance(trace, Mapping):
        raise ValueError(f"coverage trace is a {type(trace).__name__}, not a map")
    normalised: CoverageMap = {}
    for path, lines in trace.items():
        if not isinstance(lines, Mapping):
            raise ValueError(f"coverage for {path} is a {type(lines).__name__}, not a map")
        try:
            if "statementMap" in lines:
                normalised[str(path)] = _istanbul_lines(lines)
            else:
                normalised[str(path)] = {str(line): int(hits) for line, hits in lines.items()}
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ValueError(f"coverage for {path} is malformed: {e!r}") from e
    return normalised


def merge_coverage(traces: Iterable[Optional[Mapping[str, Mapping[Any, int]]]]) -> CoverageMap:
    """Sum per-file, per-line hit counts across traces."""
    merged: CoverageMap = {}
    for trace in traces:
        if not trace:
            continue
        for path, lines in trace.items():
            target = merged.setdefault(path, {})
            for line, hits in lines.items():
                key = str(line)
                target[key] = target.get(key, 0) + int(hits)
    return merged


class FailureCounter:
    """Failed + Error count shared by all workers."""

    def __init__(self, threshold: int):
        self.threshold = threshold
        self.count = 0
        self._lock = threading.Lock()

    def increment_and_check(self) -> bool:
        """Count one failure; True once the threshold is reached."""
        with self._lock:
            self.count += 1
            return self.threshold > 0 and self.count >= self.threshold

    @property
    def reached(self) -> bool:
        with self._lock:
            return self.threshold > 0 and self.count >= self.threshold


@dataclass
class EngineResult:
    results: List[CaseResult]
    coverage: Optional[CoverageMap] = None
    dispatched: int = 0
    stopped_early: bool = False
    failures: int = 0

    def count(self, outcome: CaseOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def all_passed(self) -> bool:
        return all(r.outcome == CaseOutcome.PASSED for r in self.results)


@dataclass
class _Worker:
    index: int
    session: Any = None
    traces: List[Optional[CoverageMap]] = field(default_factory=list)


class TestExecutionEngine:
    """
    Worker pool over browser sessions.

    ``session_factory`` returns a new session (see GridClient.new_session);
    sessions must provide ``close()`` and, when coverage is enabled,
    ``coverage()``.
    """

    __test__ = False

    def __init__(
        self,
        session_factory: SessionFactory,
        pool_size: int = 2,
        max_fail: int = 10,
        case_timeout: float = 300.0,
        coverage_enabled: bool = False,
        app_url: str = "",
        fixtures: Optional[Mapping[str, Any]] = None,
        chain: Any = None,
    ):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        self.session_factory = session_factory
        self.pool_size = pool_size
        self.max_fail = max_fail
        self.case_timeout = case_timeout
        self.coverage_enabled = coverage_enabled
        self.app_url = app_url
        self.fixtures = dict(fixtures or {})
        self.chain = chain

        self.counter = FailureCounter(max_fail)
        self._queue: Deque[TestCase] = deque()
        self._stop = False
        self._dispatched = 0

    def _next(self) -> Optional[TestCase]:
        # Single event loop: popping without an await in between is atomic
        if self._stop or not self._queue:
            return None
        self._dispatched += 1
        return self._queue.popleft()

    def _count_failure(self, case: TestCase) -> None:
        if self.counter.increment_and_check() and not self._stop:
            self._stop = True
            logger.warning(
                f"[TestEngine] max-fail {self.max_fail} reached at {case.case_id}; "
                f"{len(self._queue)} case(s) will be skipped"
            )

    async def _discard_session(self, worker: _Worker) -> None:
        session, worker.session = worker.session, None
        if session is None:
            return
        try:
            await session.close()
        except TestbedError as e:
            logger.warning(f"[TestEngine] worker {worker.index}: closing session failed: {e}")

    async def _collect_coverage(self, worker: _Worker, case: TestCase) -> Optional[CoverageMap]:
        if not self.coverage_enabled or worker.session is None:
            return None
        try:
            trace = normalise_coverage(await worker.session.coverage())
        except WebDriverError as e:
            logger.warning(f"[TestEngine] no coverage after {case.case_id}: {e}")
            return None
        except ValueError as e:
            logger.warning(f"[TestEngine] dropping coverage after {case.case_id}: {e}")
            return None
        worker.traces.append(trace)
        return trace

    async def _run_case(self, worker: _Worker, case: TestCase) -> CaseResult:
        started = time.monotonic()
        if worker.session is None:
            try:
                worker.session = await self.session_factory()
            except TestbedError as e:
                logger.error(f"[TestEngine] worker {worker.index}: no session for {case.case_id}: {e}")
                return case.record(CaseOutcome.ERROR, time.monotonic() - started,
                                   message=f"session unavailable: {e.message}",
                                   error_type=type(e).__name__, worker=worker.index)
            except Exception as e:
                logger.exception(f"[TestEngine] worker {worker.index}: session factory raised for {case.case_id}")
                return case.record(CaseOutcome.ERROR, time.monotonic() - started,
                                   message=f"session unavailable: {e}",
                                   error_type=type(e).__name__, worker=worker.index)

        context = CaseContext(
            case=case,
            session=worker.session,
            app_url=self.app_url,
            fixture=self.fixtures.get(case.fixture) if case.fixture else None,
            chain=self.chain,
        )
        outcome = CaseOutcome.PASSED
        message = ""
        error_type = None
        try:
            await asyncio.wait_for(case.run(context), timeout=self.case_timeout)
        except AssertionError as e:
            outcome, message, error_type = CaseOutcome.FAILED, str(e) or "assertion failed", type(e).__name__
        except asyncio.TimeoutError:
            outcome, message, error_type = CaseOutcome.ERROR, f"timed out after {self.case_timeout}s", "TimeoutError"
            await self._discard_session(worker)
        except NoSuchElementError as e:
            outcome, message, error_type = CaseOutcome.ERROR, e.message, type(e).__name__
        except WebDriverError as e:
            outcome, message, error_type = CaseOutcome.ERROR, e.message, type(e).__name__
            await self._discard_session(worker)
        except Exception as e:
            logger.exception(f"[TestEngine] {case.case_id} raised")
            outcome, message, error_type = CaseOutcome.ERROR, str(e), type(e).__name__

        coverage = await self._collect_coverage(worker, case)
        return case.record(outcome, time.monotonic() - started, message=message,
                           error_type=error_type, worker=worker.index, coverage=coverage)

    async def _work(self, worker: _Worker) -> None:
        try:
            while True:
                case = self._next()
                if case is None:
                    return
                result = await self._run_case(worker, case)
                logger.info(f"[TestEngine] {case.case_id}: {result.outcome.value} ({result.duration:.2f}s)")
                if result.outcome.counts_as_failure:
                    self._count_failure(case)
        finally:
            await self._discard_session(worker)

    async def run(
        self,
        cases: Sequence[TestCase],
        selector: Optional[CaseSelector] = None,
        unavailable: Optional[Mapping[str, Any]] = None,
    ) -> EngineResult:
        """
        Run ``cases`` (filtered by ``selector``). ``unavailable`` maps fixture
        names to the reason they cannot be used.
        """
        unavailable = unavailable or {}
        selected = [c for c in cases if selector is None or selector.matches(c.case_id, c.tags)]
        logger.info(f"[TestEngine] {len(selected)}/{len(cases)} case(s) selected, pool of {self.pool_size}")

        for case in selected:
            if case.result is not None:
                continue
            if case.fixture and case.fixture in unavailable:
                case.record(CaseOutcome.ERROR,
                            message=f"fixture {case.fixture} unavailable: {unavailable[case.fixture]}",
                            error_type="FixtureUnavailable")
            else:
                self._queue.append(case)

        workers = [_Worker(index=i) for i in range(min(self.pool_size, max(len(self._queue), 1)))]
        tasks = [create_safe_task(self._work(w), name=f"test-worker-{w.index}") for w in workers]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        while self._queue:
            self._queue.popleft().record(CaseOutcome.SKIPPED, message="max-fail threshold reached")

        coverage = None
        if self.coverage_enabled:
            coverage = merge_coverage(t for w in workers for t in w.traces)

        result = EngineResult(
            results=[c.result for c in selected],
            coverage=coverage,
            dispatched=self._dispatched,
            stopped_early=self._stop,
            failures=self.counter.count,
        )
        logger.info(
            f"[TestEngine] passed={result.count(CaseOutcome.PASSED)} failed={result.count(CaseOutcome.FAILED)} "
            f"error={result.count(CaseOutcome.ERROR)} skipped={result.count(CaseOutcome.SKIPPED)}"
        )
        return result
