"""Tests for report generation."""

import json

import pytest
from rich.console import Console

from helpers import make_snapshot
from mcp_server_diff.diff import ChangeKind, DiffEntry
from mcp_server_diff.reporter import (
    JSON_REPORT_NAME,
    MARKDOWN_REPORT_NAME,
    REPORT_DIRNAME,
    format_comparison_diff,
    format_comparison_json,
    format_comparison_markdown,
    format_time,
    generate_markdown_report,
    generate_pr_summary,
    generate_report,
    print_comparison_summary,
    print_report_summary,
    safe_filename,
    save_report,
    save_result,
)
from mcp_server_diff.runner import ComparisonResult, compare_snapshots
from mcp_server_diff.snapshot import PrimitiveCounts


def _passed(name):
    return ComparisonResult(name, "stdio", branch_time_ms=100, base_time_ms=150,
                            branch_counts=PrimitiveCounts(tools=2, prompts=1))


def _changed(name):
    diffs = compare_snapshots(make_snapshot("add"), make_snapshot("add", "subtract"))
    return ComparisonResult(name, "stdio", branch_time_ms=1200, base_time_ms=900, diffs=diffs)


def _errored(name):
    return ComparisonResult(name, "streamable-http", error="Current branch probe failed: refused")


class TestFormatTime:
    def test_milliseconds(self):
        assert format_time(850) == "850ms"

    def test_seconds(self):
        assert format_time(1500) == "1.50s"


class TestGenerateReport:
    def test_counts(self):
        report = generate_report(
            [_passed("a"), _changed("b"), _errored("c"), _passed("d")], "feature", "main"
        )
        assert report.passed_count == 2
        assert report.diff_count == 1
        assert report.error_count == 1
        assert report.total_branch_time == 100 + 1200 + 0 + 100
        assert report.total_base_time == 150 + 900 + 0 + 150

    def test_status(self):
        assert generate_report([_passed("a")], "f", "m").status == "passed"
        assert generate_report([_passed("a"), _changed("b")], "f", "m").status == "differences"
        assert generate_report([_changed("b"), _errored("c")], "f", "m").status == "error"

    def test_to_dict_is_json(self):
        report = generate_report([_changed("b"), _errored("c")], "f", "m")
        data = json.loads(json.dumps(report.to_dict()))
        assert data["currentBranch"] == "f"
        assert data["results"][0]["diffs"]["tools"][0]["path"] == "tools[subtract]"


class TestMarkdownReport:
    def test_all_passing(self):
        markdown = generate_markdown_report(generate_report([_passed("a"), _passed("b")], "f", "main"))
        assert "## ✅ No API Changes" in markdown
        assert "- a\n- b" in markdown
        assert "Configurations with changes" not in markdown
        assert "Configurations with errors" not in markdown
        assert "- **Primitives:** 2 tools, 1 prompts" in markdown

    def test_passing_and_changed_separated(self):
        markdown = generate_markdown_report(generate_report([_passed("a"), _changed("b")], "f", "main"))
        assert "## 📋 API Changes Detected" in markdown
        assert "**✅ Passing configurations (no changes detected):**\n- a" in markdown
        assert "**⚠️ Configurations with changes:**\n- b (see diff below)" in markdown
        assert "```diff\n--- base/tools.json\n+++ branch/tools.json\n\n+ tools[subtract]:" in markdown

    def test_errors_listed_separately(self):
        markdown = generate_markdown_report(generate_report([_passed("a"), _errored("c")], "f", "main"))
        assert "**❌ Configurations with errors:**\n- c: Current branch probe failed: refused" in markdown
        assert "### ❌ c" in markdown
        assert "| Errors | 1 |" in markdown

    def test_header(self):
        markdown = generate_markdown_report(generate_report([_passed("a")], "feature-x", "v1.0.0"))
        assert "**Current Branch:** feature-x" in markdown
        assert "**Compared Against:** v1.0.0" in markdown
        assert "| Branch Total Time | 100ms |" in markdown


class TestPrSummary:
    def test_no_changes(self):
        summary = generate_pr_summary(generate_report([_passed("a"), _passed("b")], "f", "m"))
        assert summary.startswith("## ✅ MCP Conformance: No Changes")
        assert "Tested 2 configuration(s)" in summary

    def test_changes(self):
        summary = generate_pr_summary(generate_report([_passed("a"), _changed("b")], "f", "m"))
        assert "**1** of 2 configuration(s) have changes." in summary
        assert "- **b:** tools" in summary
        assert "- a" in summary

    def test_all_changed_has_no_passing_section(self):
        summary = generate_pr_summary(generate_report([_changed("a"), _changed("b")], "f", "m"))
        assert "Passing configurations" not in summary

    def test_errors(self):
        summary = generate_pr_summary(generate_report([_changed("a"), _errored("c")], "f", "m"))
        assert "**❌ Configurations with errors:**" in summary
        assert "could not be compared" in summary


class TestSaveReport:
    def test_files_written(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GITHUB_OUTPUT", raising=False)
        report = generate_report([_passed("a")], "f", "m")
        json_path, md_path = save_report(report, "# Report", tmp_path)
        assert json_path == tmp_path / REPORT_DIRNAME / JSON_REPORT_NAME
        assert md_path.name == MARKDOWN_REPORT_NAME
        assert md_path.read_text() == "# Report"
        assert json.loads(json_path.read_text())["passedCount"] == 1

    def test_github_output(self, tmp_path, monkeypatch):
        output = tmp_path / "github_output"
        monkeypatch.setenv("GITHUB_OUTPUT", str(output))
        report = generate_report([_passed("a"), _changed("b")], "f", "m")
        save_report(report, "# Report", tmp_path)
        lines = dict(line.split("=", 1) for line in output.read_text().splitlines())
        assert lines["status"] == "differences"
        assert lines["has_differences"] == "true"
        assert lines["passed_count"] == "1"
        assert lines["diff_count"] == "1"
        assert lines["total_configs"] == "2"
        assert lines["report_path"].endswith(MARKDOWN_REPORT_NAME)


class TestSaveResult:
    def test_layout(self, tmp_path):
        result = _changed("read only/v2")
        result.branch_files = make_snapshot("add", "subtract", instructions="hi").to_files()
        result.base_files = make_snapshot("add").to_files()
        path = save_result(result, tmp_path)
        assert path == tmp_path / "read_only_v2.json"
        assert json.loads(path.read_text())["configName"] == "read only/v2"
        assert (tmp_path / "read_only_v2" / "branch" / "instructions.txt").read_text() == "hi"
        assert (tmp_path / "read_only_v2" / "base" / "tools.json").exists()

    @pytest.mark.parametrize("name,expected", [("default", "default"), ("a b", "a_b"), ("../x", ".._x"), ("//", "config")])
    def test_safe_filename(self, name, expected):
        assert safe_filename(name) == expected


class TestServerOutputs:
    def test_diff_output(self):
        text = format_comparison_diff([_changed("v2"), _passed("v3")])
        assert text.startswith("# v2\n## tools\n--- base/tools.json")
        assert "v3" not in text

    def test_diff_output_merges_replaced_values(self):
        diffs = {
            "tools": [
                DiffEntry("tools[add].description", ChangeKind.REMOVED, old='"old"'),
                DiffEntry("tools[add].description", ChangeKind.ADDED, new='"new"'),
            ]
        }
        text = format_comparison_diff([ComparisonResult("v2", "stdio", diffs=diffs)])
        assert '~ tools[add].description: "old" -> "new"' in text
        assert "- tools[add].description" not in text

    def test_json_output(self):
        data = json.loads(format_comparison_json([_changed("v2"), _passed("v3"), _errored("v4")], "v1"))
        assert data["base"] == "v1"
        assert data["summary"] == {"total": 3, "matching": 1, "different": 1, "errors": 1}

    def test_markdown_output(self):
        markdown = format_comparison_markdown([_changed("v2"), _passed("v3")])
        assert "| v3 | 2 | 1 | 0 | ✅ Match |" in markdown
        assert "| v2 | - | - | - | ⚠️ 1 diff(s) |" in markdown
        assert "### v2" in markdown

    def test_markdown_all_match(self):
        assert "All Servers Match" in format_comparison_markdown([_passed("v2")])

    def test_console_summaries(self):
        console = Console(record=True, width=200)
        print_comparison_summary([_changed("v2"), _errored("v4")], console)
        print_report_summary(generate_report([_passed("a"), _changed("b")], "f", "m"), console)
        text = console.export_text()
        assert "v2" in text and "1 difference(s)" in text
        assert "ERROR: Current branch probe failed" in text
        assert "1 passed, 1 with differences, 0 errors" in text
