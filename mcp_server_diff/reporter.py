"""Reports for comparison results.

Produces the CI artefacts (JSON report, markdown report, PR summary,
``$GITHUB_OUTPUT`` entries), the per-configuration result files, the
terminal summary, and the server-vs-server output formats.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .diff import coalesce_changes, format_entries
from .runner import ComparisonResult, Outcome

logger = logging.getLogger(__name__)

REPORT_DIRNAME = "mcp-diff-report"
JSON_REPORT_NAME = "mcp-diff-report.json"
MARKDOWN_REPORT_NAME = "MCP_DIFF_REPORT.md"
RESULTS_DIRNAME = ".conformance-results"

OUTPUT_FORMATS = ("summary", "diff", "json", "markdown")

_STATUS_ICONS = {
    Outcome.NO_DIFFERENCES: "✅",
    Outcome.DIFFERENCES: "⚠️",
    Outcome.ERROR: "❌",
}

_UNSAFE_FILENAME_RE = re.compile(r"[^\w.-]+")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_time(ms: int) -> str:
    """Format milliseconds as ``850ms`` or ``1.50s``."""
    if ms < 1000:
        return f"{ms}ms"
    return f"{ms / 1000:.2f}s"


def safe_filename(name: str) -> str:
    return _UNSAFE_FILENAME_RE.sub("_", name).strip("_") or "config"


@dataclass
class ConformanceReport:
    """Aggregate of all configuration results for one run."""

    current_branch: str
    compare_ref: str
    results: list[ComparisonResult] = field(default_factory=list)
    generated_at: str = field(default_factory=_now)

    def _count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def passed_count(self) -> int:
        return self._count(Outcome.NO_DIFFERENCES)

    @property
    def diff_count(self) -> int:
        return self._count(Outcome.DIFFERENCES)

    @property
    def error_count(self) -> int:
        return self._count(Outcome.ERROR)

    @property
    def total_branch_time(self) -> int:
        return sum(r.branch_time_ms for r in self.results)

    @property
    def total_base_time(self) -> int:
        return sum(r.base_time_ms for r in self.results)

    @property
    def status(self) -> str:
        if self.error_count:
            return "error"
        if self.diff_count:
            return "differences"
        return "passed"

    def by_outcome(self, outcome: Outcome) -> list[ComparisonResult]:
        return [r for r in self.results if r.outcome is outcome]

    def to_dict(self) -> dict[str, Any]:
        return {
            "generatedAt": self.generated_at,
            "currentBranch": self.current_branch,
            "compareRef": self.compare_ref,
            "status": self.status,
            "totalBranchTime": self.total_branch_time,
            "totalBaseTime": self.total_base_time,
            "passedCount": self.passed_count,
            "diffCount": self.diff_count,
            "errorCount": self.error_count,
            "results": [r.to_dict() for r in self.results],
        }


def generate_report(
    results: list[ComparisonResult], current_branch: str, compare_ref: str
) -> ConformanceReport:
    return ConformanceReport(current_branch=current_branch, compare_ref=compare_ref, results=list(results))


# --- Markdown ---


def _counts_line(result: ComparisonResult) -> str | None:
    counts = result.branch_counts
    if counts is None:
        return None
    parts = []
    if counts.tools:
        parts.append(f"{counts.tools} tools")
    if counts.prompts:
        parts.append(f"{counts.prompts} prompts")
    if counts.resources:
        parts.append(f"{counts.resources} resources")
    if counts.resource_templates:
        parts.append(f"{counts.resource_templates} resource templates")
    return ", ".join(parts) or None


def _diff_blocks(result: ComparisonResult) -> list[str]:
    lines: list[str] = []
    for section, entries in result.diffs.items():
        lines += [f"**{section}**", "", "```diff", format_entries(section, entries), "```", ""]
    return lines


def _status_lists(report: ConformanceReport, *, detailed_changes: bool) -> list[str]:
    lines: list[str] = []
    passing = report.by_outcome(Outcome.NO_DIFFERENCES)
    changed = report.by_outcome(Outcome.DIFFERENCES)
    errored = report.by_outcome(Outcome.ERROR)

    if passing:
        lines.append("**✅ Passing configurations (no changes detected):**")
        lines += [f"- {r.config_name}" for r in passing]
        lines.append("")
    if changed:
        lines.append("**⚠️ Configurations with changes:**")
        if detailed_changes:
            lines += [f"- **{r.config_name}:** {', '.join(r.diffs)}" for r in changed]
        else:
            lines += [f"- {r.config_name} (see diff below)" for r in changed]
        lines.append("")
    if errored:
        lines.append("**❌ Configurations with errors:**")
        lines += [f"- {r.config_name}: {r.error}" for r in errored]
        lines.append("")
    return lines


def generate_markdown_report(report: ConformanceReport) -> str:
    """Full markdown report for the job summary and the report artefact."""
    lines = [
        "# MCP Conformance Test Report",
        "",
        f"**Generated:** {report.generated_at}",
        f"**Current Branch:** {report.current_branch}",
        f"**Compared Against:** {report.compare_ref}",
        "",
        "## Summary",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Total Configurations | {len(report.results)} |",
        f"| Passed | {report.passed_count} |",
        f"| With Differences | {report.diff_count} |",
        f"| Errors | {report.error_count} |",
        f"| Branch Total Time | {format_time(report.total_branch_time)} |",
        f"| Base Total Time | {format_time(report.total_base_time)} |",
        "",
    ]

    if report.error_count:
        lines += ["## ❌ Comparison Errors", ""]
    elif report.diff_count:
        lines += ["## 📋 API Changes Detected", ""]
    else:
        lines += ["## ✅ No API Changes", "", "All configurations passed with no differences detected.", ""]
    lines += _status_lists(report, detailed_changes=False)

    lines += ["## Configuration Results", ""]
    for result in report.results:
        lines += [f"### {_STATUS_ICONS[result.outcome]} {result.config_name}", ""]
        lines.append(f"- **Transport:** {result.transport}")
        counts = _counts_line(result)
        if counts:
            lines.append(f"- **Primitives:** {counts}")
        lines.append(f"- **Branch Time:** {format_time(result.branch_time_ms)}")
        lines.append(f"- **Base Time:** {format_time(result.base_time_ms)}")
        lines.append("")

        if result.outcome is Outcome.ERROR:
            lines += [f"**Error:** {result.error}", ""]
        elif result.outcome is Outcome.DIFFERENCES:
            lines += ["#### Changes", ""]
            lines += _diff_blocks(result)
        else:
            lines += ["No differences detected.", ""]

    return "\n".join(lines)


def generate_pr_summary(report: ConformanceReport) -> str:
    """Short markdown summary for a pull request comment."""
    total = len(report.results)
    if report.diff_count == 0 and report.error_count == 0:
        lines = [
            "## ✅ MCP Conformance: No Changes",
            "",
            f"Tested {total} configuration(s) - no API changes detected.",
            "",
        ]
        lines += _status_lists(report, detailed_changes=True)
        return "\n".join(lines).rstrip() + "\n"

    lines = ["## 📋 MCP Conformance: API Changes Detected", ""]
    if report.diff_count:
        lines += [f"**{report.diff_count}** of {total} configuration(s) have changes.", ""]
    if report.error_count:
        lines += [f"**{report.error_count}** of {total} configuration(s) could not be compared.", ""]
    lines += _status_lists(report, detailed_changes=True)
    lines.append("See the full report in the job summary for details.")
    return "\n".join(lines) + "\n"


# --- Persistence ---


def save_result(result: ComparisonResult, results_dir: str | Path) -> Path:
    """Write one configuration's result and both sides' section blobs.

    Layout::

        <results_dir>/<name>.json
        <results_dir>/<name>/branch/<section>.json
        <results_dir>/<name>/base/<section>.json

    Instructions are written as raw text to ``instructions.txt``.
    """
    root = Path(results_dir)
    name = safe_filename(result.config_name)
    root.mkdir(parents=True, exist_ok=True)

    result_path = root / f"{name}.json"
    result_path.write_text(json.dumps(result.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")

    for side, files in (("branch", result.branch_files), ("base", result.base_files)):
        if not files:
            continue
        side_dir = root / name / side
        side_dir.mkdir(parents=True, exist_ok=True)
        for section, text in files.items():
            suffix = ".txt" if section == "instructions" else ".json"
            (side_dir / f"{section}{suffix}").write_text(text, encoding="utf-8")

    logger.debug("Saved result for %s to %s", result.config_name, result_path)
    return result_path


def _write_github_output(path: str, values: dict[str, Any]) -> None:
    with open(path, "a", encoding="utf-8") as handle:
        for key, value in values.items():
            if isinstance(value, bool):
                value = str(value).lower()
            handle.write(f"{key}={value}\n")


def save_report(report: ConformanceReport, markdown: str, output_dir: str | Path) -> tuple[Path, Path]:
    """Write the JSON and markdown reports; returns their paths.

    When ``$GITHUB_OUTPUT`` is set, the step outputs are appended to it.
    """
    report_dir = Path(output_dir) / REPORT_DIRNAME
    report_dir.mkdir(parents=True, exist_ok=True)

    json_path = report_dir / JSON_REPORT_NAME
    json_path.write_text(json.dumps(report.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info("JSON report saved to: %s", json_path)

    md_path = report_dir / MARKDOWN_REPORT_NAME
    md_path.write_text(markdown, encoding="utf-8")
    logger.info("Markdown report saved to: %s", md_path)

    github_output = os.environ.get("GITHUB_OUTPUT")
    if github_output:
        _write_github_output(
            github_output,
            {
                "status": report.status,
                "report_path": md_path,
                "json_report_path": json_path,
                "has_differences": report.diff_count > 0,
                "passed_count": report.passed_count,
                "diff_count": report.diff_count,
                "error_count": report.error_count,
                "total_configs": len(report.results),
            },
        )
    return json_path, md_path


def append_step_summary(markdown: str) -> bool:
    """Append to ``$GITHUB_STEP_SUMMARY`` when running in Actions."""
    path = os.environ.get("GITHUB_STEP_SUMMARY")
    if not path:
        return False
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(markdown)
        handle.write("\n")
    return True


# --- Terminal ---


def print_report_summary(report: ConformanceReport, console: Console) -> None:
    """Render the conformance results as a table."""
    table = Table(title=f"{report.current_branch} vs {report.compare_ref}")
    table.add_column("Configuration")
    table.add_column("Transport", style="dim")
    table.add_column("Result")
    table.add_column("Branch", justify="right")
    table.add_column("Base", justify="right")

    for result in report.results:
        if result.outcome is Outcome.ERROR:
            status = f"[red]error[/red]: {escape(result.error)}"
        elif result.outcome is Outcome.DIFFERENCES:
            status = f"[yellow]{result.entry_count} difference(s)[/yellow] in {', '.join(result.diffs)}"
        else:
            status = "[green]no differences[/green]"
        table.add_row(
            result.config_name,
            result.transport,
            status,
            format_time(result.branch_time_ms),
            format_time(result.base_time_ms),
        )
    console.print(table)
    console.print(
        f"[bold]{report.passed_count}[/bold] passed, "
        f"[bold]{report.diff_count}[/bold] with differences, "
        f"[bold]{report.error_count}[/bold] errors"
    )


# --- Server-vs-server output ---


def print_comparison_summary(results: list[ComparisonResult], console: Console) -> None:
    console.print("\n[bold]Comparison Results:[/bold]\n")
    for result in results:
        c = result.branch_counts
        counts = f"({c.tools}T/{c.prompts}P/{c.resources}R)" if c else "(-)"
        if result.outcome is Outcome.ERROR:
            console.print(f"[red]✗[/red] {escape(result.config_name)} {counts} - ERROR: {escape(result.error)}")
        elif result.outcome is Outcome.DIFFERENCES:
            console.print(
                f"[yellow]✗[/yellow] {escape(result.config_name)} {counts} - {result.entry_count} difference(s)"
            )
        else:
            console.print(f"[green]✓[/green] {escape(result.config_name)} {counts} - matches base")
    console.print("")
    if any(r.has_differences for r in results):
        console.print("Run with -o markdown or -o json for detailed diffs.")


def format_comparison_diff(results: list[ComparisonResult]) -> str:
    """Raw diff text of every target that differs.

    Removed+added pairs on the same path are shown as one ``~`` line.
    """
    lines: list[str] = []
    for result in results:
        if result.outcome is Outcome.ERROR:
            lines += [f"# {result.config_name}", f"error: {result.error}", ""]
            continue
        if not result.diffs:
            continue
        if len(results) > 1:
            lines.append(f"# {result.config_name}")
        for section, entries in result.diffs.items():
            lines += [f"## {section}", format_entries(section, coalesce_changes(entries)), ""]
    return "\n".join(lines)


def format_comparison_json(results: list[ComparisonResult], base_name: str) -> str:
    payload = {
        "timestamp": _now(),
        "base": base_name,
        "results": [r.to_dict() for r in results],
        "summary": {
            "total": len(results),
            "matching": sum(1 for r in results if r.outcome is Outcome.NO_DIFFERENCES),
            "different": sum(1 for r in results if r.outcome is Outcome.DIFFERENCES),
            "errors": sum(1 for r in results if r.outcome is Outcome.ERROR),
        },
    }
    return json.dumps(payload, indent=2, ensure_ascii=False)


def format_comparison_markdown(results: list[ComparisonResult]) -> str:
    lines = [
        "# MCP Server Diff Report",
        "",
        f"**Generated:** {_now()}",
        "",
        "## Summary",
        "",
        "| Server | Tools | Prompts | Resources | Status |",
        "|--------|-------|---------|-----------|--------|",
    ]
    for result in results:
        if result.outcome is Outcome.ERROR:
            status = "❌ Error"
        elif result.outcome is Outcome.DIFFERENCES:
            status = f"⚠️ {result.entry_count} diff(s)"
        else:
            status = "✅ Match"
        c = result.branch_counts
        tools, prompts, resources = (c.tools, c.prompts, c.resources) if c else ("-", "-", "-")
        lines.append(f"| {result.config_name} | {tools} | {prompts} | {resources} | {status} |")
    lines.append("")

    differing = [r for r in results if r.outcome is Outcome.DIFFERENCES]
    errored = [r for r in results if r.outcome is Outcome.ERROR]
    if differing:
        lines += ["## Differences", ""]
        for result in differing:
            lines += [f"### {result.config_name}", ""]
            lines += _diff_blocks(result)
    if errored:
        lines += ["## Errors", ""]
        lines += [f"- **{r.config_name}:** {r.error}" for r in errored]
        lines.append("")
    if not differing and not errored:
        lines += ["## ✅ All Servers Match", "", "No differences detected between base and target servers."]

    return "\n".join(lines)
