from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from miniternet.base.config import StorageConfig
from miniternet.reporting.types import RunReport
from miniternet.suite.cases import CaseOutcome

logger = logging.getLogger(__name__)

_OUTCOME_MARK = {
    CaseOutcome.PASSED: "PASS",
    CaseOutcome.FAILED: "FAIL",
    CaseOutcome.ERROR: "ERROR",
    CaseOutcome.SKIPPED: "SKIP",
}


class ReportWriter:
    """
    Persists a RunReport as report.json plus a Markdown summary, and the merged
    coverage map as coverage.json when there is one.
    """

    def __init__(self, storage: StorageConfig) -> None:
        self._storage = storage

    def write(self, report: RunReport, coverage: Optional[Dict[str, Dict[str, int]]] = None) -> List[Path]:
        directory = self._storage.report_dir
        directory.mkdir(parents=True, exist_ok=True)

        written = []
        json_path = self._storage.json_path
        json_path.write_text(report.model_dump_json(indent=2))
        written.append(json_path)

        md_path = self._storage.markdown_path
        md_path.write_text(self.render_markdown(report))
        written.append(md_path)

        if coverage is not None:
            cov_path = self._storage.coverage_path
            cov_path.write_text(json.dumps(coverage, indent=2, sort_keys=True))
            written.append(cov_path)

        logger.info(f"[Report] {report.status} (exit {report.exit_code}) written to {directory}")
        return written

    # --------- Rendering ---------

    def render_markdown(self, report: RunReport) -> str:
        lines: List[str] = []
        lines.append(f"# {report.project} integration run")
        lines.append("")
        lines.append(f"- **Report ID:** `{report.report_id}`")
        lines.append(f"- **Created:** `{report.created_at}`")
        lines.append(f"- **Status:** **{report.status}** (exit code {report.exit_code})")
        if report.selector:
            lines.append(f"- **Selector:** `{report.selector}`")
        if report.stopped_early:
            lines.append(f"- Dispatch stopped after reaching max-fail {report.max_fail}")
        lines.append("")

        if report.environment_error:
            lines.extend(self._render_environment_error(report.environment_error))

        counts = report.counts
        lines.append("## Summary")
        lines.append("")
        lines.append("| passed | failed | error | skipped | total |")
        lines.append("| --- | --- | --- | --- | --- |")
        lines.append(
            f"| {counts.get('passed', 0)} | {counts.get('failed', 0)} | {counts.get('error', 0)} "
            f"| {counts.get('skipped', 0)} | {counts.get('total', 0)} |"
        )
        lines.append("")

        lines.append("## Cases")
        lines.append("")
        if not report.cases:
            lines.append("_No cases ran._")
        else:
            for entry in report.cases:
                line = f"- `{_OUTCOME_MARK[entry.outcome]}` **{entry.case_id}** ({entry.duration:.2f}s)"
                if entry.message:
                    line += f": {entry.message}"
                lines.append(line)
        lines.append("")

        if report.fixtures:
            lines.append("## Fixtures")
            lines.append("")
            for fixture in report.fixtures:
                state = "usable" if fixture.get("usable") else "unavailable"
                addresses = " ".join(a for a in (fixture.get("ipv4"), fixture.get("ipv6")) if a)
                lines.append(f"- **{fixture.get('name')}** `{fixture.get('hostname')}` {addresses}: {state}")
                error = fixture.get("error")
                if error:
                    lines.append(f"  - `{error.get('code')}` {error.get('message')}")
            lines.append("")

        if report.services or report.zones:
            lines.append("## Environment")
            lines.append("")
            for name, state in report.services.items():
                lines.append(f"- service `{name}`: {state}")
            for name, state in report.zones.items():
                lines.append(f"- zone `{name}`: {state}")
            lines.append("")

        if report.coverage_files:
            lines.append(f"Coverage merged for {report.coverage_files} file(s): `coverage.json`")
            lines.append("")

        return "\n".join(lines)

    def _render_environment_error(self, error: Dict[str, Any]) -> List[str]:
        lines = ["## Environment failure", ""]
        lines.append(f"- **Code:** `{error.get('code')}`")
        lines.append(f"- **Message:** {error.get('message')}")
        details = error.get("details") or {}
        for key, value in details.items():
            lines.append(f"  - {key}: `{value}`")
        lines.append("")
        return lines
