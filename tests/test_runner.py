"""Tests for the comparison pipeline."""

import json
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from helpers import make_snapshot
from mcp_server_diff.config import ServerConfig, TestConfiguration
from mcp_server_diff.diff import ChangeKind
from mcp_server_diff.environment import WORKTREE_DIRNAME
from mcp_server_diff.process import ServerStartError
from mcp_server_diff.runner import (
    ComparisonResult,
    ConformanceRunner,
    Outcome,
    RunSettings,
    compare_servers,
    compare_snapshots,
)
from mcp_server_diff.snapshot import CapabilitySnapshot


class FakeProbe:
    """Answers ``current`` then ``comparison`` for each configuration.

    The comparison side is only probed after a successful current probe,
    so a failed ``current`` snapshot is answered again on the next call.
    """

    def __init__(self, current, comparison):
        self.current = current
        self.comparison = comparison
        self.calls = []
        self._next_is_current = True

    async def __call__(self, options):
        self.calls.append(options)
        if not self._next_is_current:
            self._next_is_current = True
            return self.comparison
        if self.current.error is None:
            self._next_is_current = False
        return self.current


def _repo(path):
    repo = MagicMock()
    repo.path = str(path)
    repo.create_worktree = AsyncMock(return_value=True)
    repo.remove_worktree = AsyncMock()
    repo.checkout = AsyncMock()
    repo.checkout_previous = AsyncMock()
    return repo


def _runner(tmp_path, probe, **settings):
    values = {"repo_dir": str(tmp_path), "compare_ref": "main"}
    values.update(settings)
    return ConformanceRunner(RunSettings(**values), repo=_repo(tmp_path), probe=probe)


STDIO = TestConfiguration(name="default", start_command="node dist/index.js")
HTTP = TestConfiguration(name="http", transport="streamable-http", server_url="http://localhost:3000/mcp")
HTTP_2 = TestConfiguration(name="http-2", transport="streamable-http", server_url="http://localhost:3001/mcp")


@pytest.fixture(autouse=True)
def no_build():
    with patch("mcp_server_diff.environment.run_build", new=AsyncMock()):
        yield


class TestComparisonResult:
    def test_outcomes(self):
        assert ComparisonResult("a", "stdio").outcome is Outcome.NO_DIFFERENCES
        assert ComparisonResult("a", "stdio", error="x").outcome is Outcome.ERROR
        result = compare_snapshots(make_snapshot("add"), make_snapshot("add", "sub"))
        assert ComparisonResult("a", "stdio", diffs=result).outcome is Outcome.DIFFERENCES

    def test_error_is_not_a_difference(self):
        result = ComparisonResult("a", "stdio", error="boom")
        assert not result.has_differences

    def test_to_dict(self):
        diffs = compare_snapshots(make_snapshot("add"), make_snapshot("add", "sub"))
        data = ComparisonResult("a", "stdio", branch_time_ms=12, diffs=diffs).to_dict()
        assert data["outcome"] == "differences"
        assert data["hasDifferences"] is True
        assert data["branchTime"] == 12
        assert data["diffs"]["tools"][0]["path"] == "tools[sub]"
        json.dumps(data)


@pytest.mark.asyncio
class TestRunConfig:
    async def test_no_differences(self, tmp_path):
        probe = FakeProbe(make_snapshot("add"), make_snapshot("add"))
        result = await _runner(tmp_path, probe).run_config(STDIO)
        assert result.outcome is Outcome.NO_DIFFERENCES
        assert result.branch_counts.tools == 1
        assert result.branch_files == result.base_files
        assert [c.cwd for c in probe.calls] == [str(tmp_path), os.path.join(str(tmp_path), WORKTREE_DIRNAME)]

    async def test_added_tool(self, tmp_path):
        probe = FakeProbe(make_snapshot("add", "subtract"), make_snapshot("add"))
        result = await _runner(tmp_path, probe).run_config(STDIO)
        assert result.outcome is Outcome.DIFFERENCES
        assert list(result.diffs) == ["tools"]
        [entry] = result.diffs["tools"]
        assert entry.path == "tools[subtract]"
        assert entry.kind is ChangeKind.ADDED

    async def test_instructions_changed(self, tmp_path):
        probe = FakeProbe(make_snapshot("a", instructions="new"), make_snapshot("a", instructions="old"))
        result = await _runner(tmp_path, probe).run_config(STDIO)
        assert list(result.diffs) == ["instructions"]

    async def test_current_probe_error(self, tmp_path):
        probe = FakeProbe(CapabilitySnapshot.failed("FileNotFoundError: node"), make_snapshot("add"))
        runner = _runner(tmp_path, probe)
        result = await runner.run_config(STDIO)
        assert result.outcome is Outcome.ERROR
        assert "Current branch probe failed" in result.error
        assert result.diffs == {}
        runner.repo.create_worktree.assert_not_awaited()

    async def test_base_probe_error(self, tmp_path):
        probe = FakeProbe(make_snapshot("add"), CapabilitySnapshot.failed("boom"))
        runner = _runner(tmp_path, probe)
        result = await runner.run_config(STDIO)
        assert result.outcome is Outcome.ERROR
        assert "Base ref probe failed" in result.error
        runner.repo.remove_worktree.assert_awaited_once()

    async def test_http_differences_detected(self, tmp_path):
        probe = FakeProbe(make_snapshot("add", "subtract"), make_snapshot("add"))
        result = await _runner(tmp_path, probe).run_config(HTTP)
        assert result.outcome is Outcome.DIFFERENCES
        assert result.diffs["tools"][0].path == "tools[subtract]"
        assert [c.url for c in probe.calls] == [HTTP.server_url, HTTP.server_url]

    async def test_external_base(self, tmp_path):
        config = TestConfiguration(
            name="published", start_command="node dist/index.js", base_start_command="npx server@1.0"
        )

        async def probe(options):
            if options.command == "npx":
                return make_snapshot("add")
            return make_snapshot("add", "subtract")

        runner = _runner(tmp_path, probe)
        result = await runner.run_config(config)
        assert result.diffs["tools"][0].path == "tools[subtract]"
        runner.repo.create_worktree.assert_not_awaited()


@pytest.mark.asyncio
class TestRunAll:
    async def test_exception_isolated(self, tmp_path):
        failing = TestConfiguration(name="broken", start_command="node x.js", pre_test_command="exit 1")
        probe = FakeProbe(make_snapshot("add"), make_snapshot("add"))
        results = await _runner(tmp_path, probe).run_all([failing, STDIO])
        assert [r.outcome for r in results] == [Outcome.ERROR, Outcome.NO_DIFFERENCES]
        assert "exit code 1" in results[0].error

    async def test_results_saved(self, tmp_path):
        results_dir = tmp_path / "results"
        probe = FakeProbe(make_snapshot("add", "sub"), make_snapshot("add"))
        await _runner(tmp_path, probe, results_dir=str(results_dir)).run_all([STDIO])
        saved = json.loads((results_dir / "default.json").read_text())
        assert saved["outcome"] == "differences"
        assert (results_dir / "default" / "branch" / "tools.json").exists()
        assert (results_dir / "default" / "base" / "tools.json").exists()

    async def test_shared_server_policy(self, tmp_path):
        probe = FakeProbe(make_snapshot("a"), make_snapshot("a"))
        shared, base = MagicMock(name="shared"), MagicMock(name="base")
        with patch("mcp_server_diff.runner.spawn_server", new=AsyncMock(side_effect=[shared, base])) as spawn, \
                patch("mcp_server_diff.runner.stop_server", new=AsyncMock()) as stop:
            runner = _runner(tmp_path, probe, http_start_command="npm run serve", http_startup_wait_ms=10)
            results = await runner.run_all([HTTP, STDIO])

        assert [r.outcome for r in results] == [Outcome.NO_DIFFERENCES, Outcome.NO_DIFFERENCES]
        cwds = [call.args[1] for call in spawn.await_args_list]
        assert cwds == [str(tmp_path), os.path.join(str(tmp_path), WORKTREE_DIRNAME)]
        assert [call.args[0] for call in stop.await_args_list] == [base, shared]

    async def test_shared_server_with_several_http_configs(self, tmp_path):
        probe = FakeProbe(make_snapshot("a", "b"), make_snapshot("a"))
        shared = MagicMock(name="shared")
        first_base, second_base = MagicMock(name="base-1"), MagicMock(name="base-2")
        spawned = [shared, first_base, second_base]
        with patch("mcp_server_diff.runner.spawn_server", new=AsyncMock(side_effect=spawned)) as spawn, \
                patch("mcp_server_diff.runner.stop_server", new=AsyncMock()) as stop:
            runner = _runner(tmp_path, probe, http_start_command="npm run serve", http_startup_wait_ms=10)
            results = await runner.run_all([HTTP, HTTP_2])

        assert [r.outcome for r in results] == [Outcome.DIFFERENCES, Outcome.DIFFERENCES]
        worktree = os.path.join(str(tmp_path), WORKTREE_DIRNAME)
        assert [call.args[1] for call in spawn.await_args_list] == [str(tmp_path), worktree, worktree]
        assert [call.args[0] for call in spawn.await_args_list] == ["npm run serve"] * 3
        assert [call.args[0] for call in stop.await_args_list] == [first_base, second_base, shared]

    async def test_no_shared_server_without_http_configs(self, tmp_path):
        probe = FakeProbe(make_snapshot("a"), make_snapshot("a"))
        with patch("mcp_server_diff.runner.spawn_server", new=AsyncMock()) as spawn:
            await _runner(tmp_path, probe, http_start_command="npm run serve").run_all([STDIO])
        spawn.assert_not_awaited()

    async def test_shared_server_start_failure_aborts(self, tmp_path):
        probe = FakeProbe(make_snapshot("a"), make_snapshot("a"))
        failing = AsyncMock(side_effect=ServerStartError("Server exited prematurely with code 1"))
        with patch("mcp_server_diff.runner.spawn_server", new=failing):
            with pytest.raises(ServerStartError):
                await _runner(tmp_path, probe, http_start_command="npm run serve").run_all([HTTP])


def _server_probe(snapshots):
    async def probe(options):
        return snapshots[options.args[-1] if options.args else options.url]

    return probe


@pytest.mark.asyncio
class TestCompareServers:
    async def test_targets_compared_to_base(self):
        probe = _server_probe({
            "v1": make_snapshot("add"),
            "v2": make_snapshot("add", "subtract"),
            "v3": make_snapshot("add"),
        })
        base = ServerConfig(name="v1", start_command="server v1")
        targets = [ServerConfig(name="v2", start_command="server v2"), ServerConfig(name="v3", start_command="server v3")]
        results = await compare_servers(base, targets, probe=probe)
        assert [r.outcome for r in results] == [Outcome.DIFFERENCES, Outcome.NO_DIFFERENCES]
        assert results[0].diffs["tools"][0].path == "tools[subtract]"
        assert results[0].base_counts.tools == 1

    async def test_base_failure_fails_all(self):
        probe = _server_probe({"v1": CapabilitySnapshot.failed("down"), "v2": make_snapshot("a")})
        base = ServerConfig(name="v1", start_command="server v1")
        results = await compare_servers(base, [ServerConfig(name="v2", start_command="server v2")], probe=probe)
        assert results[0].outcome is Outcome.ERROR
        assert "Base server probe failed" in results[0].error

    async def test_target_failure_isolated(self):
        probe = _server_probe({
            "v1": make_snapshot("a"),
            "v2": CapabilitySnapshot.failed("down"),
            "http://h/mcp": make_snapshot("a"),
        })
        base = ServerConfig(name="v1", start_command="server v1")
        targets = [
            ServerConfig(name="v2", start_command="server v2"),
            ServerConfig(name="remote", transport="streamable-http", server_url="http://h/mcp"),
        ]
        results = await compare_servers(base, targets, probe=probe)
        assert [r.outcome for r in results] == [Outcome.ERROR, Outcome.NO_DIFFERENCES]

    async def test_missing_command(self):
        probe = _server_probe({"v1": make_snapshot("a")})
        base = ServerConfig(name="v1", start_command="server v1")
        results = await compare_servers(base, [ServerConfig(name="empty")], probe=probe)
        assert "No start_command" in results[0].error
