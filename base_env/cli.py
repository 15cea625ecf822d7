"""CLI entry point for base-env."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

import base_env

app = typer.Typer(
    name="base-env",
    help="Provision and converge a version-pinned development environment.",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug logging"
    ),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=verbose)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _settings(store, env_dir: Optional[Path] = None):
    from base_env.config import resolve_settings

    try:
        return resolve_settings(store, env_dir=env_dir.expanduser() if env_dir else None)
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/]")
        raise typer.Exit(1)


@app.command()
def install(
    adaptive: Optional[bool] = typer.Option(
        None, "--adaptive/--no-adaptive",
        help="Resolve conflicts and re-test compatibility issues automatically",
    ),
    force_reinstall: bool = typer.Option(
        False, "--force-reinstall", help="Rebuild the environment from scratch"
    ),
    update: bool = typer.Option(
        False, "--update", help="Move pins forward within the constraints"
    ),
    env_dir: Optional[Path] = typer.Option(
        None, "--env-dir", "-e", help="Environment directory"
    ),
) -> None:
    """Converge the environment (install, update or force-reinstall)."""
    from base_env.core.models import RunMode
    from base_env.core.orchestrator import Orchestrator
    from base_env.data.store import DataStore

    if force_reinstall and update:
        console.print("[red]--force-reinstall and --update are mutually exclusive[/]")
        raise typer.Exit(1)
    mode = RunMode.INSTALL
    if force_reinstall:
        mode = RunMode.FORCE_REINSTALL
    elif update:
        mode = RunMode.UPDATE

    store = DataStore()
    try:
        settings = _settings(store, env_dir)
        orchestrator = Orchestrator(settings=settings, store=store, console=console)
        result = orchestrator.run(mode=mode, adaptive=adaptive)
    finally:
        store.close()
    raise typer.Exit(result.exit_code)


@app.command()
def verify(
    env_dir: Optional[Path] = typer.Option(
        None, "--env-dir", "-e", help="Environment directory"
    ),
) -> None:
    """Import core packages inside the environment and report versions."""
    from base_env.core.orchestrator import Orchestrator
    from base_env.data.store import DataStore

    store = DataStore()
    try:
        settings = _settings(store, env_dir)
        orchestrator = Orchestrator(settings=settings, store=store, console=console)
        if not orchestrator.venv_python.exists():
            console.print(
                f"[red]No environment at {settings.venv_dir}. Run 'base-env install'.[/]"
            )
            raise typer.Exit(1)

        table = Table(title=f"Environment: {settings.env_dir}")
        table.add_column("Module", style="cyan")
        table.add_column("Status")
        table.add_column("Version", style="green")
        rows = orchestrator.verify_imports()
        for row in rows:
            status = "[green]ok[/]" if row["ok"] else f"[red]{row['error'] or 'failed'}[/]"
            table.add_row(str(row["module"]), status, str(row["version"]))
        console.print(table)

        check = orchestrator.installer().check()
        if check.success:
            console.print("[green]No broken requirements.[/]")
        else:
            console.print("[yellow]Dependency problems:[/]")
            console.print(check.stdout.strip() or check.stderr.strip())
    finally:
        store.close()
    failed = [row for row in rows if not row["ok"]]
    raise typer.Exit(1 if failed or not check.success else 0)


@app.command()
def status(
    env_dir: Optional[Path] = typer.Option(
        None, "--env-dir", "-e", help="Environment directory"
    ),
) -> None:
    """Show lock holder, compatibility issues and the last run."""
    from base_env.core.lock import LockManager, pid_alive
    from base_env.data.store import DataStore

    store = DataStore()
    try:
        settings = _settings(store, env_dir)

        lock = LockManager(settings.lock_dir)
        holder = lock.read_holder()
        if holder is None:
            console.print("[green]Not locked.[/]")
        elif pid_alive(holder.holder_pid):
            console.print(
                f"[yellow]Locked by process {holder.holder_pid} since "
                f"{holder.acquired_at:%Y-%m-%d %H:%M:%S} "
                f"(stage: {lock.current_stage() or 'unknown'})[/]"
            )
        else:
            console.print(
                f"[dim]Stale lock from process {holder.holder_pid}; "
                f"it will be cleared on the next run.[/]"
            )

        states = store.list_compatibility_states()
        if states:
            table = Table(title="Compatibility Issues")
            table.add_column("Issue", style="cyan")
            table.add_column("Status")
            table.add_column("Chosen Python", style="green")
            table.add_column("Last Probe")
            for row in states:
                table.add_row(
                    row["issue_id"],
                    row["status"],
                    row["chosen_version"] or "-",
                    (row["last_upgrade_tested_at"] or "-")[:19],
                )
            console.print(table)

        last = store.last_run()
        if last:
            table = Table(title="Last Run")
            table.add_column("Property", style="cyan")
            table.add_column("Value", style="green")
            table.add_row("Run", last["id"])
            table.add_row("Started", (last["started_at"] or "")[:19])
            table.add_row("Mode", last["mode"])
            table.add_row("Outcome", last["outcome"] or "in progress")
            table.add_row("Python", last["python_version"] or "-")
            table.add_row("Mutations", str(last["mutations"] or 0))
            if last["error_message"]:
                table.add_row("Error", last["error_message"])
            console.print(table)
        else:
            console.print("[dim]No runs recorded yet.[/]")
    finally:
        store.close()


@app.command()
def log(
    run_id: Optional[str] = typer.Argument(
        None, help="Run id (defaults to the most recent run)"
    ),
    all_runs: bool = typer.Option(
        False, "--all", help="Print operations from every run"
    ),
) -> None:
    """Print the operation log as JSON lines."""
    from base_env.data.store import DataStore

    store = DataStore()
    try:
        if not all_runs and run_id is None:
            last = store.last_run()
            if last is None:
                console.print("[yellow]No runs recorded yet.[/]")
                raise typer.Exit(0)
            run_id = last["id"]
        for line in store.iter_operation_log(None if all_runs else run_id):
            typer.echo(line)
    finally:
        store.close()


@app.command()
def config(
    action: str = typer.Argument(
        "get", help="Action: get or set"
    ),
    key: Optional[str] = typer.Argument(
        None, help="Config key (env_dir, python_series, adaptive, ...)"
    ),
    value: Optional[str] = typer.Argument(
        None, help="Value to set"
    ),
) -> None:
    """View or modify configuration."""
    from base_env.config import VALID_KEYS, validate
    from base_env.data.store import DataStore

    store = DataStore()
    try:
        if action == "get":
            if key:
                val = store.get_config(key)
                if val is not None:
                    console.print(f"{key} = {val}")
                else:
                    console.print(f"[yellow]{key} is not set[/]")
            else:
                for k in sorted(VALID_KEYS):
                    val = store.get_config(k)
                    console.print(f"{k} = {val or '(not set)'}")
        elif action == "set":
            if not key or value is None:
                console.print("[red]Usage: base-env config set <key> <value>[/]")
                raise typer.Exit(1)
            try:
                validate(key, value)
            except ValueError as e:
                console.print(f"[red]{e}[/]")
                raise typer.Exit(1)
            store.set_config(key, value)
            console.print(f"[green]Set {key} = {value}[/]")
        else:
            console.print("[red]Unknown action. Use 'get' or 'set'.[/]")
            raise typer.Exit(1)
    finally:
        store.close()


@app.command()
def version() -> None:
    """Print version."""
    console.print(f"base-env {base_env.__version__}")


if __name__ == "__main__":
    app()
