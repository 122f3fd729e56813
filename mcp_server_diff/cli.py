"""Click CLI entry point for mcp-server-diff.

Two commands:

* ``compare`` probes a base server and one or more targets and reports how
  each target's interface differs from the base.
* ``conformance`` is the CI run: it builds the current tree, resolves the
  comparison ref, compares every configuration between the two and writes
  the reports.  Every option can also be supplied through the matching
  ``INPUT_<NAME>`` environment variable.
"""

import asyncio
import logging
import os
import sys
from dataclasses import replace

import click
from rich.console import Console

from . import __version__
from .config import (
    DEFAULT_STARTUP_WAIT_MS,
    ConfigError,
    DiffConfig,
    TestConfiguration,
    Transport,
    command_to_config,
    load_diff_config,
    parse_configurations,
    parse_custom_messages,
    parse_env_vars,
    parse_headers,
)
from .git import GitError, GitRepo
from .process import CommandError, ServerStartError, run_build
from .reporter import (
    OUTPUT_FORMATS,
    RESULTS_DIRNAME,
    ConformanceReport,
    append_step_summary,
    format_comparison_diff,
    format_comparison_json,
    format_comparison_markdown,
    generate_markdown_report,
    generate_report,
    print_comparison_summary,
    print_report_summary,
    save_report,
)
from .runner import ConformanceRunner, Outcome, RunSettings, compare_servers

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)


def _configure_logging(verbose: bool, quiet: bool) -> None:
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        stream=sys.stderr,
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


@click.group()
@click.version_option(version=__version__, prog_name="mcp-server-diff")
def cli() -> None:
    """Detect interface drift between MCP servers.

    Compares the tools, prompts, resources and capabilities two MCP servers
    expose and reports what changed.
    """


# --- compare ---


@cli.command()
@click.option("--base", "-b", default=None, help="Base server command or HTTP(S) URL.")
@click.option("--target", "-t", default=None, help="Target server command or HTTP(S) URL.")
@click.option(
    "--config",
    "-c",
    "config_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file with a 'base' server and a list of 'targets'.",
)
@click.option(
    "--output",
    "-o",
    "output_format",
    type=click.Choice(OUTPUT_FORMATS),
    default="summary",
    show_default=True,
    help="Output format.",
)
@click.option(
    "--timeout",
    type=float,
    default=30.0,
    show_default=True,
    help="Protocol read timeout in seconds.",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Verbose logging.")
@click.option("--quiet", "-q", is_flag=True, default=False, help="Only log warnings and errors.")
def compare(
    base: str | None,
    target: str | None,
    config_path: str | None,
    output_format: str,
    timeout: float,
    verbose: bool,
    quiet: bool,
) -> None:
    """Compare target MCP servers against a base server.

    \b
    Examples:
      mcp-server-diff compare -b "python -m old_server" -t "python -m new_server"
      mcp-server-diff compare -b http://localhost:3000/mcp -t http://localhost:3001/mcp
      mcp-server-diff compare -c servers.json -o markdown
    """
    _configure_logging(verbose, quiet)

    if config_path:
        try:
            diff_config = load_diff_config(config_path)
        except ConfigError as exc:
            raise click.UsageError(str(exc)) from exc
    elif base and target:
        diff_config = DiffConfig(
            base=command_to_config(base, "base"),
            targets=[command_to_config(target, "target")],
        )
    else:
        raise click.UsageError("Must provide --config or both --base and --target")

    results = asyncio.run(compare_servers(diff_config.base, diff_config.targets, timeout=timeout))

    if output_format == "json":
        click.echo(format_comparison_json(results, diff_config.base.name))
    elif output_format == "markdown":
        click.echo(format_comparison_markdown(results))
    elif output_format == "diff":
        click.echo(format_comparison_diff(results))
    else:
        print_comparison_summary(results, console)

    if any(r.outcome is not Outcome.NO_DIFFERENCES for r in results):
        sys.exit(1)


# --- conformance ---


def _input(name: str) -> str:
    return f"INPUT_{name.upper()}"


@cli.command()
@click.option("--repo-dir", default=".", type=click.Path(exists=True, file_okay=False),
              help="Repository root (the current side).")
@click.option("--install-command", envvar=_input("install_command"), default=None,
              help="Dependency install command.")
@click.option("--build-command", envvar=_input("build_command"), default=None,
              help="Build command.")
@click.option("--start-command", envvar=_input("start_command"), default="",
              help="Command that starts the server (stdio) or the HTTP server.")
@click.option("--transport", envvar=_input("transport"),
              type=click.Choice([t.value for t in Transport]), default=Transport.STDIO.value,
              show_default=True, help="Default transport for configurations.")
@click.option("--server-url", envvar=_input("server_url"), default="",
              help="URL of the streamable-http endpoint.")
@click.option("--headers", envvar=_input("headers"), default="",
              help="HTTP headers: JSON object or 'Name: value' lines.")
@click.option("--configurations", envvar=_input("configurations"), default="",
              help="JSON array of test configurations.")
@click.option("--custom-messages", envvar=_input("custom_messages"), default="",
              help="JSON array of custom messages sent to every configuration.")
@click.option("--compare-ref", envvar=_input("compare_ref"), default="",
              help="Git ref to compare against (auto-detected when empty).")
@click.option("--env-vars", envvar=_input("env_vars"), default="",
              help="KEY=value lines added to every server's environment.")
@click.option("--server-timeout", envvar=_input("server_timeout"), type=int, default=30000,
              show_default=True, help="Protocol read timeout in milliseconds.")
@click.option("--http-start-command", envvar=_input("http_start_command"), default=None,
              help="Start one shared HTTP server for all HTTP configurations.")
@click.option("--http-startup-wait-ms", envvar=_input("http_startup_wait_ms"), type=int,
              default=DEFAULT_STARTUP_WAIT_MS, show_default=True,
              help="Wait after starting the shared HTTP server.")
@click.option("--fail-on-error/--no-fail-on-error", envvar=_input("fail_on_error"), default=True,
              show_default=True, help="Exit non-zero when a configuration cannot be compared.")
@click.option("--fail-on-diff", envvar=_input("fail_on_diff"), is_flag=True, default=False,
              help="Exit non-zero when differences are found.")
@click.option("--output-dir", default=None, type=click.Path(file_okay=False),
              help="Where reports are written (defaults to the repository root).")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Verbose logging.")
@click.option("--quiet", "-q", is_flag=True, default=False, help="Only log warnings and errors.")
def conformance(
    repo_dir: str,
    install_command: str | None,
    build_command: str | None,
    start_command: str,
    transport: str,
    server_url: str,
    headers: str,
    configurations: str,
    custom_messages: str,
    compare_ref: str,
    env_vars: str,
    server_timeout: int,
    http_start_command: str | None,
    http_startup_wait_ms: int,
    fail_on_error: bool,
    fail_on_diff: bool,
    output_dir: str | None,
    verbose: bool,
    quiet: bool,
) -> None:
    """Compare the current tree's MCP interface against a git ref."""
    _configure_logging(verbose, quiet)

    repo_dir = os.path.abspath(repo_dir)
    configs = parse_configurations(configurations, Transport(transport), start_command, server_url)

    logger.info("Configuration:")
    logger.info("  Transport: %s", transport)
    logger.info("  Configurations: %d", len(configs))
    for config in configs:
        logger.info("    - %s (%s)", config.name, config.transport.value)

    settings = RunSettings(
        repo_dir=repo_dir,
        compare_ref="",
        install_command=install_command or None,
        build_command=build_command or None,
        env_vars=parse_env_vars(env_vars),
        headers=parse_headers(headers),
        custom_messages=parse_custom_messages(custom_messages),
        http_start_command=http_start_command or None,
        http_startup_wait_ms=http_startup_wait_ms,
        server_timeout=server_timeout / 1000,
        results_dir=os.path.join(repo_dir, RESULTS_DIRNAME),
    )

    try:
        report = asyncio.run(_run_conformance(settings, configs, compare_ref or None))
    except (CommandError, GitError, ServerStartError) as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)

    markdown = generate_markdown_report(report)
    save_report(report, markdown, output_dir or repo_dir)
    append_step_summary(markdown)
    print_report_summary(report, console)

    errored = report.by_outcome(Outcome.ERROR)
    if errored and fail_on_error:
        names = ", ".join(r.config_name for r in errored)
        err_console.print(f"[red]Probe errors occurred in:[/red] {names}")
        sys.exit(1)
    if report.diff_count:
        logger.warning("%d configuration(s) have API differences", report.diff_count)
        if errored:
            logger.warning("Some configurations had probe errors (fail-on-error is disabled)")
        if fail_on_diff:
            sys.exit(1)
    elif not errored:
        logger.info("All conformance tests passed!")


async def _run_conformance(
    settings: RunSettings, configs: list[TestConfiguration], explicit_ref: str | None
) -> ConformanceReport:
    logger.info("Running initial build...")
    await run_build(settings.repo_dir, settings.install_command, settings.build_command)

    repo = GitRepo(settings.repo_dir)
    current_branch = await repo.current_branch()
    compare_ref = await repo.determine_compare_ref(explicit_ref, os.environ.get("GITHUB_REF"))
    display_ref = await repo.ref_display_name(compare_ref)
    logger.info("Comparison: %s vs %s", current_branch, display_ref)

    runner = ConformanceRunner(
        replace(settings, compare_ref=compare_ref),
        repo=repo,
    )
    results = await runner.run_all(configs)
    return generate_report(results, current_branch, display_ref)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
