"""
Looper CLI — The Interface

  looper run --repo <path> --file src/a.ts      (explicit units)
  looper run --repo <path> --units units.yaml   (JSON/YAML unit list)
  looper run --repo <path> --discover           (whole-repo validation)

Plus utilities:
  - looper discover   (list failing units without fixing)
  - looper history    (per-branch attempt summary, or --clear)
  - looper status     (API keys, system tools, effective limits)
  - looper init       (bootstrap .looper in a repo)
"""

from __future__ import annotations

import json
import shutil
from contextlib import nullcontext
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table

from looper import __codename__, __tagline__, __version__
from looper.audit_logger import AuditLogger
from looper.config_loader import LooperConfig, load_config, validate_api_keys
from looper.diagnostics import discover as discover_units
from looper.diagnostics import get_parser
from looper.event_bus import EventBus
from looper.history import HistoryStore
from looper.parallel import Scheduler, print_run_summary
from looper.state import UnitOfWork

load_dotenv()
load_dotenv(Path.home() / ".looper" / ".env")

app = typer.Typer(
    name="looper",
    help=f"{__codename__} — {__tagline__}\nAutomated fix-attempt orchestration.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

FIX_TYPES = ("lint", "type", "test", "e2e")


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


def _print_banner():
    console.print(f"[bold bright_green]{__codename__}[/] [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    files: Optional[list[str]] = typer.Option(None, "--file", "-f", help="File to fix (repeatable)"),
    units_file: Optional[Path] = typer.Option(None, "--units", "-u", help="JSON/YAML list of units"),
    discover: bool = typer.Option(False, "--discover", "-d", help="Discover failing files first"),
    fix_type: str = typer.Option("lint", "--fix-type", "-t", help="lint | type | test | e2e"),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Base branch for the worktrees"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Max concurrent jobs"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", "-m", help="Iteration cap per unit"),
    skip_preexisting: bool = typer.Option(
        False, "--skip-preexisting/--no-skip-preexisting",
        help="Ignore diagnostics in files unchanged relative to the main branch",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run fix loops over a set of units."""
    _print_banner()
    _configure_logging(verbose)

    config = _load(repo)
    _check_fix_type(fix_type)
    base = branch or config.repo.main_branch

    try:
        units: list[UnitOfWork] = []
        if units_file:
            units.extend(_load_units(units_file, config, fix_type, base))
        if files:
            units.extend(_units_for_files(files, config, fix_type, base))
        if discover:
            units.extend(_discover(config, fix_type, base))
    except (KeyError, ValueError) as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    if not (units_file or files or discover):
        console.print("[red]Specify --file, --units or --discover[/]")
        raise typer.Exit(1)
    if not units:
        console.print("[green]✅ Nothing to fix.[/]")
        return

    if not any(validate_api_keys().values()):
        console.print("[yellow]⚠ No provider API key found; oracle calls will fail.[/]")

    bus = EventBus()
    run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    audit = AuditLogger(str(config.repo_path / config.log_dir / f"{run_id}.jsonl"), bus)
    history = _history(config)

    console.print(
        f"[bold]⚡ {len(units)} unit(s), "
        f"{concurrency or config.limits.concurrency} worker(s)[/]"
    )
    console.print("[dim]Each unit is isolated in its own git worktree.[/]\n")

    scheduler = Scheduler(config, history=history, bus=bus)
    try:
        report = scheduler.run(
            units,
            concurrency=concurrency,
            max_iterations=max_iterations,
            skip_preexisting=skip_preexisting,
        )
    finally:
        audit.close()

    print_run_summary(report)
    if report.cancelled:
        console.print("[yellow]Run cancelled.[/]")
    if not report.success:
        raise typer.Exit(1)


@app.command()
def discover(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    fix_type: str = typer.Option("lint", "--fix-type", "-t", help="lint | type | test | e2e"),
    as_json: bool = typer.Option(False, "--json", help="Print units as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """List failing units without fixing them."""
    _configure_logging(verbose)
    config = _load(repo)
    _check_fix_type(fix_type)

    try:
        units = _discover(config, fix_type, config.repo.main_branch, show_progress=not as_json)
    except (KeyError, ValueError) as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    if as_json:
        payload = [
            {"identifier": u.identifier, "fix_type": u.fix_type, "diagnostics": len(u.baseline)}
            for u in units
        ]
        typer.echo(json.dumps(payload, indent=2))
        return

    if not units:
        console.print("[green]✅ No failing units.[/]")
        return

    table = Table(title=f"Failing units ({fix_type})", border_style="cyan")
    table.add_column("Unit")
    table.add_column("Diagnostics", justify="right")
    table.add_column("First")
    for u in units:
        first = u.baseline[0].message.splitlines()[0][:60] if u.baseline else ""
        table.add_row(u.identifier, str(len(u.baseline)), first)
    console.print(table)


@app.command()
def history(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Branch to show (default: main)"),
    clear: bool = typer.Option(False, "--clear", help="Delete the branch's history"),
):
    """View or clear the attempt history for a branch."""
    config = _load(repo)
    store = _history(config)
    branch = branch or config.repo.main_branch

    if clear:
        store.clear(branch)
        console.print(f"[green]Cleared history for {branch}[/]")
        return

    summary = store.summarize(branch)
    if summary["totalAttempts"] == 0:
        known = store.branches()
        hint = f" Known branches: {', '.join(known)}" if known else ""
        console.print(f"[dim]No history for {branch}.{hint}[/]")
        return

    table = Table(title=f"History — {branch}", border_style="cyan")
    table.add_column("Unit")
    table.add_column("Attempts", justify="right")
    table.add_column("Failures", justify="right")
    for unit, counts in sorted(summary["units"].items()):
        color = "red" if counts["failures"] == counts["attempts"] else "yellow"
        table.add_row(unit, str(counts["attempts"]), f"[{color}]{counts['failures']}[/]")
    console.print(table)
    console.print(
        f"\n[bold]{summary['failedAttempts']}/{summary['totalAttempts']} attempts failed[/]"
    )


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check Looper configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool in ["git", "node", "npx", "yarn"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)
    console.print(tools_table)

    if repo:
        config = _load(repo)
        console.print("\n[bold]Oracle:[/]")
        console.print(f"  Model:   {config.oracle.model}")
        console.print(f"  Timeout: {config.oracle.timeout_seconds}s")

        console.print("\n[bold]Limits:[/]")
        console.print(f"  Concurrency:         {config.limits.concurrency}")
        console.print(f"  Max iterations:      {config.limits.max_iterations}")
        console.print(f"  Tool calls/iter:     {config.limits.max_tool_calls_per_iteration}")
        console.print(f"  Transcript tokens:   {config.budget.max_transcript_tokens:,}")

        console.print("\n[bold]Validation:[/]")
        for name, v in sorted(config.validation.items()):
            console.print(f"  {name:<5} [dim]{v.parser}[/]  {v.command}")


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize .looper directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    lp_dir = repo / ".looper"
    lp_dir.mkdir(exist_ok=True)
    (lp_dir / "logs").mkdir(exist_ok=True)

    config_path = lp_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# Looper repo-level config overrides
# These merge with the built-in defaults.

# repo:
#   main_branch: "master"

# oracle:
#   model: "anthropic/claude-sonnet-4-20250514"

# limits:
#   concurrency: 4
#   max_iterations: 30

# validation:
#   lint:
#     command: "npx eslint \\"{file}\\" --quiet -f json"
#     parser: "eslint-json"

# workspace:
#   setup_command: "yarn install"
#   suppressions_file: "eslint-suppressions.json"

# tools:
#   formatter_command: "npx prettier --write \\"{file}\\""
""")

    gitignore = repo / ".gitignore"
    ignore_entries = [".looper/logs/", ".looper-history.json", ".looper-history.json.lock"]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# Looper\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# Looper\n" + "\n".join(ignore_entries) + "\n")

    console.print(f"[green]✅ Initialized Looper in {lp_dir}[/]")
    console.print(f"  Config:  {config_path}")
    console.print(f"  Logs:    {lp_dir / 'logs'}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load(repo: Path) -> LooperConfig:
    repo = repo.resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)
    try:
        return load_config(repo)
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/]")
        raise typer.Exit(1)


def _check_fix_type(fix_type: str) -> None:
    if fix_type not in FIX_TYPES:
        console.print(f"[red]Unknown fix type: {fix_type}. Choose from {', '.join(FIX_TYPES)}[/]")
        raise typer.Exit(1)


def _history(config: LooperConfig) -> HistoryStore:
    return HistoryStore(
        config.history_path(),
        max_attempts_per_key=config.history.max_attempts_per_key,
        max_age_seconds=config.history.max_age_days * 24 * 3600,
    )


def _units_for_files(
    files: list[str], config: LooperConfig, fix_type: str, branch: str,
) -> list[UnitOfWork]:
    command = config.validation_for(fix_type).command
    return [
        UnitOfWork(identifier=f, validation_command=command, fix_type=fix_type, branch=branch)
        for f in files
    ]


def _load_units(path: Path, config: LooperConfig, fix_type: str, branch: str) -> list[UnitOfWork]:
    """Units from a JSON/YAML list of paths or {identifier, fix_type?, branch?, validation_command?}."""
    if not path.exists():
        raise ValueError(f"Units file not found: {path}")
    with open(path, "r") as f:
        raw: Any = json.load(f) if path.suffix == ".json" else yaml.safe_load(f)
    if not isinstance(raw, list):
        raise ValueError(f"{path} must contain a list of units")

    units = []
    for item in raw:
        if isinstance(item, str):
            item = {"identifier": item}
        ft = item.get("fix_type", fix_type)
        units.append(UnitOfWork(
            identifier=item["identifier"],
            validation_command=item.get("validation_command") or config.validation_for(ft).command,
            fix_type=ft,
            branch=item.get("branch", branch),
        ))
    return units


def _discover(
    config: LooperConfig, fix_type: str, branch: str, show_progress: bool = True,
) -> list[UnitOfWork]:
    vcfg = config.validation_for(fix_type)
    spinner = console.status(f"[cyan]Discovering {fix_type} failures...[/]") if show_progress else nullcontext()
    with spinner:
        units = discover_units(
            config.repo_path,
            vcfg.whole_repo_command(),
            get_parser(vcfg.parser),
            fix_type=fix_type,
            branch=branch,
            unit_command=vcfg.command,
            skip_path_patterns=config.skip_path_patterns,
            timeout=config.limits.setup_timeout_seconds,
        )
    logger.info(f"[VALIDATE] Found {len(units)} failing unit(s)")
    return units


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(str(msg).rstrip(), style="dim", highlight=False, markup=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {thread.name} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(str(msg).rstrip(), style="dim", highlight=False, markup=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
