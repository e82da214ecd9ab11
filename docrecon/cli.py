"""Command line interface."""

from __future__ import annotations

import asyncio
import signal
from contextlib import suppress
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from docrecon import __version__
from docrecon.cache import SnapshotCache
from docrecon.cancellation import CancellationToken
from docrecon.config import TaskFile, load_task_file
from docrecon.core import paths
from docrecon.core.log import configure_logging
from docrecon.core.timestamps import utc_now
from docrecon.credentials import Credentials, FileCredentialStore, ReauthHandler
from docrecon.errors import ConfigError
from docrecon.models import ProgressEvent, RunResult, RunStatus
from docrecon.orchestrator import TaskOrchestrator
from docrecon.resume import Reconciler
from docrecon.session import SessionProvider
from docrecon.store import ResultStore

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


@dataclass
class AppEnv:
    console: Console


def _path_option(name: str, help_text: str):
    return click.option(
        name,
        type=click.Path(file_okay=False, path_type=Path),
        default=None,
        help=help_text,
    )


def _prompt_cookies(console: Console, tenant_name: str, tenant_domain: str) -> Credentials | None:
    console.print(
        f"[yellow]Session for {tenant_domain} ({tenant_name}) is no longer valid.[/yellow] "
        "Paste fresh cookies from a signed-in browser, or leave empty to skip."
    )
    fed_auth = click.prompt("FedAuth", default="", show_default=False, hide_input=True)
    if not fed_auth.strip():
        return None
    rt_fa = click.prompt("rtFa", default="", show_default=False, hide_input=True)
    if not rt_fa.strip():
        return None
    return Credentials(domain=tenant_domain, fed_auth=fed_auth.strip(), rt_fa=rt_fa.strip())


def _interactive_reauth(console: Console) -> ReauthHandler:
    async def handler(tenant_name: str, tenant_domain: str) -> Credentials | None:
        return await asyncio.to_thread(_prompt_cookies, console, tenant_name, tenant_domain)

    return handler


def _progress_printer(console: Console):
    def sink(event: ProgressEvent) -> None:
        style = "bold" if event.completed_pair is not None else "dim"
        console.print(f"[{style}][{event.percent_complete:5.1f}%] {event.message}[/{style}]")

    return sink


def render_result(console: Console, result: RunResult) -> None:
    table = Table(title=f"Task {result.task_id}")
    table.add_column("Source site")
    table.add_column("Target site")
    table.add_column("Libraries", justify="right")
    table.add_column("Found", justify="right")
    table.add_column("Size issues", justify="right")
    table.add_column("Source only", justify="right")
    table.add_column("Target only", justify="right")
    table.add_column("Newer at source", justify="right")
    table.add_column("Status")
    for site_result in result.site_results:
        summary = site_result.summary
        status = "[green]ok[/green]" if site_result.success else f"[red]failed: {site_result.error_message}[/red]"
        table.add_row(
            site_result.source_site_url,
            site_result.target_site_url,
            str(site_result.libraries_processed),
            str(summary.found),
            str(summary.size_issues),
            str(summary.source_only),
            str(summary.target_only),
            str(summary.newer_at_source),
            status,
        )
    console.print(table)

    total = result.summary()
    color = {RunStatus.COMPLETED: "green", RunStatus.CANCELLED: "yellow"}.get(result.status, "red")
    console.print(
        f"[{color}]{result.status.value}[/{color}]: "
        f"{result.successful_pairs} pair(s) succeeded, {result.failed_pairs} failed; "
        f"migration completeness {total.migration_completeness_percent:.1f}%"
    )
    if result.error_message:
        console.print(f"[red]{result.error_message}[/red]")
    if result.throttle_retry_count:
        console.print(f"Throttled requests retried: {result.throttle_retry_count}")


def _exit_code(result: RunResult) -> int:
    if result.status is RunStatus.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_OK if result.success else EXIT_FAILED


async def _execute(reconciler: Reconciler, task: TaskFile, continue_from_previous: bool) -> RunResult:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    installed = False
    with suppress(NotImplementedError, RuntimeError, ValueError):
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
        installed = True
    try:
        return await reconciler.run(task, continue_from_previous=continue_from_previous, cancellation=token)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


@click.group()
@click.version_option(__version__, prog_name="docrecon")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Reconcile SharePoint document libraries between two tenants."""
    ctx.obj = AppEnv(console=Console())


@cli.command("run")
@click.argument("task_file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--continue", "continue_from_previous", is_flag=True, help="Skip pairs completed by the last run")
@click.option("--interactive", is_flag=True, help="Prompt for fresh cookies when a session expires")
@_path_option("--credentials-dir", "Directory holding stored cookies")
@_path_option("--results-dir", "Directory for run result files")
@_path_option("--cache-dir", "Directory for snapshot cache files")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.pass_obj
def run_command(
    env: AppEnv,
    task_file: Path,
    continue_from_previous: bool,
    interactive: bool,
    credentials_dir: Path | None,
    results_dir: Path | None,
    cache_dir: Path | None,
    verbose: bool,
    json_logs: bool,
) -> None:
    """Run (or continue) the comparison described by TASK_FILE.

    \b
    Exit codes:
        0    every site pair compared
        1    a site pair or the run failed
        130  cancelled with Ctrl-C
    """
    configure_logging(verbose=verbose, json_logs=json_logs)
    console = env.console
    try:
        task = load_task_file(task_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(EXIT_FAILED) from exc

    provider = SessionProvider(FileCredentialStore(credentials_dir or paths.credentials_dir()), task.registry())
    store = ResultStore(results_dir or paths.results_dir())
    orchestrator = TaskOrchestrator(
        provider,
        cache=SnapshotCache(cache_dir or paths.snapshot_cache_dir()),
        store=store,
        reauth_handler=_interactive_reauth(console) if interactive else None,
        progress=_progress_printer(console),
    )
    result = asyncio.run(_execute(Reconciler(orchestrator, store), task, continue_from_previous))
    render_result(console, result)
    raise SystemExit(_exit_code(result))


@cli.command("show")
@click.argument("task_id")
@_path_option("--results-dir", "Directory for run result files")
@click.option("--log", "show_log", is_flag=True, help="Print the execution log")
@click.pass_obj
def show_command(env: AppEnv, task_id: str, results_dir: Path | None, show_log: bool) -> None:
    """Show the latest result for TASK_ID."""
    configure_logging()
    store = ResultStore(results_dir or paths.results_dir())
    result = asyncio.run(store.latest(task_id))
    if result is None:
        env.console.print(f"[yellow]No results for task {task_id}[/yellow]")
        raise SystemExit(EXIT_FAILED)
    render_result(env.console, result)
    if show_log:
        for line in result.execution_log:
            env.console.print(line, markup=False, highlight=False)


@cli.group("cache")
def cache_group() -> None:
    """Manage the snapshot cache."""


@cache_group.command("clear")
@_path_option("--cache-dir", "Directory for snapshot cache files")
@click.pass_obj
def cache_clear_command(env: AppEnv, cache_dir: Path | None) -> None:
    configure_logging()
    removed = SnapshotCache(cache_dir or paths.snapshot_cache_dir()).clear()
    env.console.print(f"Removed {removed} cached snapshot(s)")


@cli.group("credentials")
def credentials_group() -> None:
    """Manage stored SharePoint cookies."""


@credentials_group.command("set")
@click.argument("domain")
@click.option("--fed-auth", prompt="FedAuth", hide_input=True, help="FedAuth cookie value")
@click.option("--rt-fa", prompt="rtFa", hide_input=True, help="rtFa cookie value")
@click.option("--email", default=None, help="Account the cookies belong to")
@click.option("--expires-in-hours", type=float, default=None, help="Treat the cookies as expired after this long")
@_path_option("--credentials-dir", "Directory holding stored cookies")
@click.pass_obj
def credentials_set_command(
    env: AppEnv,
    domain: str,
    fed_auth: str,
    rt_fa: str,
    email: str | None,
    expires_in_hours: float | None,
    credentials_dir: Path | None,
) -> None:
    """Store cookies for DOMAIN (e.g. contoso.sharepoint.com)."""
    configure_logging()
    now = utc_now()
    credentials = Credentials(
        domain=domain,
        fed_auth=fed_auth.strip(),
        rt_fa=rt_fa.strip(),
        user_email=email,
        captured_at=now,
        expires_at=now + timedelta(hours=expires_in_hours) if expires_in_hours else None,
    )
    if not credentials.is_valid:
        env.console.print("[red]Both FedAuth and rtFa are required[/red]")
        raise SystemExit(EXIT_FAILED)
    FileCredentialStore(credentials_dir or paths.credentials_dir()).save_credentials(credentials)
    env.console.print(f"[green]Stored credentials for {credentials.domain}[/green]")


@credentials_group.command("list")
@_path_option("--credentials-dir", "Directory holding stored cookies")
@click.pass_obj
def credentials_list_command(env: AppEnv, credentials_dir: Path | None) -> None:
    configure_logging()
    store = FileCredentialStore(credentials_dir or paths.credentials_dir())
    domains = store.get_stored_domains()
    if not domains:
        env.console.print("No stored credentials")
        return
    for domain in domains:
        stored = store.get_stored_credentials(domain)
        state = "[green]valid[/green]" if stored is not None and stored.is_valid else "[red]expired[/red]"
        env.console.print(f"{domain}  {state}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
