"""Orchestrator — sequences one reconciliation run.

lock → select interpreter → install it → merge constraints → snapshot →
venv + tooling → compile lock (resolving conflicts) → install → check →
freeze → release. Any operation that exhausts its attempts triggers a
rollback from the snapshot taken before the first destructive step.
"""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from datetime import timedelta
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional

from rich.console import Console
from rich.panel import Panel

from base_env.config import Settings
from base_env.core.compatibility import DisposableProbe, VersionSelector
from base_env.core.conflicts import parse_conflicts
from base_env.core.constraints import ConstraintStore
from base_env.core.environment import EnvironmentDetector
from base_env.core.errors import (
    BaseEnvError,
    LockAcquireError,
    LockHeldError,
    OperationFailedError,
    RollbackError,
    StructuralConflictError,
)
from base_env.core.executor import SelfHealingExecutor, run_command
from base_env.core.lock import LockManager
from base_env.core.models import (
    CommandResult,
    EnvironmentSignature,
    RunMode,
    RunResult,
    SelectionKind,
    Snapshot,
    Verification,
    normalize_name,
)
from base_env.core.resolver import ConflictResolver
from base_env.core.snapshot import SnapshotManager
from base_env.core.tools import (
    AuxiliaryToolchains,
    PipCompiler,
    PipInstaller,
    PyenvRuntimeManager,
    SystemPackages,
    read_pins,
)
from base_env.core.verify import (
    command_succeeds,
    interpreter_version,
    manifest_matches,
    reported_version,
)
from base_env.data.fingerprint import fingerprint_inputs
from base_env.data.registry import PyPIRegistry
from base_env.data.store import DataStore

logger = logging.getLogger(__name__)

EXIT_CONVERGED = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130

SMOKE_IMPORTS = (
    "pandas", "numpy", "sklearn", "matplotlib", "jupyter", "plotly", "geopandas",
)


@dataclass
class _RunState:
    """Mutable bookkeeping for one run."""

    run_id: str
    mode: RunMode
    adaptive: bool
    started: float = field(default_factory=time.time)
    signature: Optional[EnvironmentSignature] = None
    python_version: Optional[str] = None
    snapshot: Optional[Snapshot] = None
    destructive_started: bool = False
    environment_mutated: bool = False
    install_in_flight: bool = False
    fingerprint: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def needs_rollback(self) -> bool:
        return self.install_in_flight or self.environment_mutated


class Orchestrator:
    """Runs the reconciliation engine once for one environment directory."""

    def __init__(
        self,
        settings: Settings,
        store: Optional[DataStore] = None,
        console: Optional[Console] = None,
        runtime: Optional[PyenvRuntimeManager] = None,
        runner: Callable[..., CommandResult] = run_command,
        registry: Optional[PyPIRegistry] = None,
        resolver: Optional[ConflictResolver] = None,
        lock: Optional[LockManager] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.store = store or DataStore()
        self.console = console or Console()
        self.runner = runner
        self.runtime = runtime or PyenvRuntimeManager(runner=runner)
        self.registry = registry or PyPIRegistry(timeout=settings.network_timeout)
        self.resolver = resolver or ConflictResolver(self.registry)
        self.lock = lock or LockManager(settings.lock_dir)
        self.sleep = sleep
        self.constraints = ConstraintStore(
            settings.requirements_in,
            settings.resolver_constraints,
            settings.merged_in,
        )
        self.executor = SelfHealingExecutor(sleep=sleep)

    # ── Component wiring ─────────────────────────────────────────────

    @property
    def venv_python(self) -> Path:
        return EnvironmentDetector.venv_python(self.settings.venv_dir)

    def installer(self) -> PipInstaller:
        return PipInstaller(
            self.venv_python,
            runner=self.runner,
            cache_dir=self.settings.state_dir / "pip-cache",
        )

    def compiler(self) -> PipCompiler:
        return PipCompiler(self.venv_python, runner=self.runner)

    def snapshots(self) -> SnapshotManager:
        return SnapshotManager(
            snapshot_dir=self.settings.snapshot_dir,
            venv_dir=self.settings.venv_dir,
            declarative_files=[
                self.settings.lock_file,
                self.settings.freeze_file,
                self.settings.resolver_constraints,
            ],
            installed=lambda: self.installer().installed(),
            retention=self.settings.snapshot_retention,
            threshold_bytes=self.settings.snapshot_threshold_mb * 1024 * 1024,
        )

    def selector(self, adaptive: bool) -> VersionSelector:
        probe = None
        if adaptive:
            probe = DisposableProbe(
                self.runtime, timeout=self.settings.probe_timeout, runner=self.runner
            )
        return VersionSelector(
            runtime=self.runtime,
            store=self.store,
            series=self.settings.python_series,
            probe=probe,
            cooldown=timedelta(days=self.settings.cooldown_days),
        )

    # ── Entry point ──────────────────────────────────────────────────

    def run(
        self, mode: RunMode = RunMode.INSTALL, adaptive: Optional[bool] = None
    ) -> RunResult:
        """Converge the environment. Exit code 0 when converged, 1 otherwise."""
        state = _RunState(
            run_id=str(uuid.uuid4()),
            mode=mode,
            adaptive=self.settings.adaptive if adaptive is None else adaptive,
        )
        self.executor = SelfHealingExecutor(
            record_sink=lambda record: self.store.log_operation(state.run_id, record),
            sleep=self.sleep,
            log_path=self.settings.state_dir / "logs" / f"{state.run_id}.log",
        )
        self.store.create_run(state.run_id, mode.value, state.adaptive)

        try:
            with self.lock.held():
                result = self._guarded(state)
        except LockHeldError as e:
            result = self._failure(
                state, str(e), rollback_outcome="not attempted: nothing was changed"
            )
        except LockAcquireError as e:
            result = self._failure(
                state, str(e), rollback_outcome="not attempted: nothing was changed"
            )

        self.store.complete_run(state.run_id, result, state.fingerprint)
        self._display_final_result(result)
        return result

    def _guarded(self, state: _RunState) -> RunResult:
        try:
            return self._converge(state)
        except OperationFailedError as e:
            logger.error("%s", e)
            rollback = self._rollback(state)
            return self._failure(
                state,
                e.reason or str(e),
                expected_state=e.expected_state,
                actual_state=e.actual_state or "nothing",
                last_operation=e.operation,
                rollback_outcome=rollback,
            )
        except BaseEnvError as e:
            logger.error("%s", e)
            rollback = self._rollback(state) if state.needs_rollback else "not needed"
            return self._failure(state, str(e), rollback_outcome=rollback)
        except (KeyboardInterrupt, SystemExit) as e:
            logger.warning("Run interrupted during %s", self._last_operation() or "setup")
            rollback = self._rollback(state) if state.needs_rollback else "not needed"
            result = self._failure(state, "interrupted", rollback_outcome=rollback)
            result.exit_code = _interrupt_exit_code(e)
            return result

    # ── Stages ───────────────────────────────────────────────────────

    def _stage(self, name: str, message: str) -> None:
        self.lock.record_stage(name)
        self.console.print(f"[bold cyan]→ {message}[/]")

    def _converge(self, state: _RunState) -> RunResult:
        settings = self.settings

        if self.constraints.ensure_requirements():
            self.console.print(
                f"[yellow]Created default package list at {settings.requirements_in}[/]"
            )
        signature = EnvironmentDetector.detect_signature(
            self.constraints.declared_packages()
        )
        state.signature = signature
        self.store.set_run_platform(
            state.run_id,
            signature.platform.value,
            signature.architecture,
            signature.os_version,
        )
        self._display_header(state, signature)

        # 1. Interpreter
        self._stage("select-python", "Selecting Python version")
        selection = self.selector(state.adaptive).select(signature)
        version = selection.version
        state.python_version = version
        if selection.kind is SelectionKind.RECOMMENDED:
            self.console.print(
                f"[yellow]Using Python {version}: {selection.reason}[/]"
            )
        else:
            self.console.print(f"[green]Using Python {version} ({selection.reason})[/]")

        self._stage("install-python", f"Installing Python {version}")
        python = self.runtime.python_path(version)
        self.executor.execute(
            "install-python",
            self.runtime.install_command(version),
            interpreter_version(python, version),
            expected_state=f"Python {version} at {python}",
            max_attempts=settings.max_attempts,
        ).raise_for_failure()
        self.executor.execute(
            "set-global-python",
            self.runtime.set_global_command(version),
            lambda: _global_is(self.runtime, version),
            expected_state=f"pyenv global {version}",
            max_attempts=settings.max_attempts,
        ).raise_for_failure()

        # 2. Constraints
        self._stage("merge-constraints", "Merging constraints")
        entries, options = self.constraints.build()
        self.constraints.write_merged(entries, options)
        state.fingerprint = self._fingerprint(state, signature, entries)

        if state.mode is RunMode.INSTALL and self._already_converged(state):
            self.console.print("[green]Environment already converged; nothing to do.[/]")
            return self._success(state, already_converged=True)

        # 3. Safety net, then destructive steps
        self._stage("snapshot", "Capturing snapshot")
        state.snapshot = self.snapshots().snapshot()
        if state.snapshot is None:
            state.warnings.append("no snapshot captured; rollback unavailable for this run")
        state.destructive_started = True

        if state.mode is RunMode.FORCE_REINSTALL:
            self._stage("clear-environment", "Clearing environment for reinstall")
            self.executor.execute(
                "clear-environment",
                lambda: self._clear_environment(state),
                lambda: _absent(settings.venv_dir, settings.lock_file),
                expected_state="no virtual environment and no lock file",
                max_attempts=settings.max_attempts,
                skip_if_satisfied=False,
            ).raise_for_failure()

        self._stage("create-venv", "Creating virtual environment")
        self.executor.execute(
            "create-venv",
            lambda: self._create_venv(python, state),
            interpreter_version(self.venv_python, version),
            expected_state=f"venv on Python {version}",
            max_attempts=settings.max_attempts,
        ).raise_for_failure()

        installer = self.installer()
        self._stage("bootstrap-tools", "Installing pip and pip-tools")
        self.executor.execute(
            "bootstrap-tools",
            installer.bootstrap_command(),
            self._tooling_ready,
            expected_state="pip<25.2 and a working pip-compile",
            max_attempts=settings.max_attempts,
        ).raise_for_failure()

        # 4. Lock file
        self._stage("compile-lock", "Compiling lock file")
        self._compile(state, upgrade=state.mode is RunMode.UPDATE)
        pins = read_pins(settings.lock_file)

        # 5. Install
        self._stage("install-packages", f"Installing {len(pins)} pinned packages")
        state.install_in_flight = True
        self.executor.execute(
            "install-packages",
            installer.install_lock_command(settings.lock_file),
            manifest_matches(pins, installer.installed),
            expected_state=f"{len(pins)} pinned packages installed",
            recovery_action=lambda: self.runner(installer.bootstrap_command(), timeout=600),
            max_attempts=settings.max_attempts,
        ).raise_for_failure()

        # 6. Conflicts left after install
        self._stage("check-conflicts", "Checking installed dependencies")
        self._post_install_check(state, installer)
        state.install_in_flight = False

        # 7. Opportunistic extras
        self._stage("system-packages", "Checking system packages")
        self._record_optional(state, SystemPackages(self.runner).ensure())
        self._record_optional(state, AuxiliaryToolchains(self.runner).ensure())

        # 8. Freeze
        self._stage("freeze", "Writing frozen manifest")
        self._write_freeze(installer)
        entries, _ = self.constraints.build()
        state.fingerprint = self._fingerprint(state, signature, entries)
        return self._success(state)

    def _already_converged(self, state: _RunState) -> bool:
        settings = self.settings
        if not settings.venv_dir.exists() or not settings.lock_file.exists():
            return False
        if EnvironmentDetector.venv_python_version(settings.venv_dir) != state.python_version:
            return False
        if state.fingerprint != self.store.last_converged_fingerprint():
            return False
        return self.installer().check().success

    def _compile(self, state: _RunState, upgrade: bool) -> None:
        """Compile the merged constraints, resolving conflicts once if adaptive.

        Keeps the previous lock file and records a warning when the conflict
        cannot be resolved; raises StructuralConflictError when there is no
        previous lock to fall back to.
        """
        report = self._compile_once(upgrade)
        if report is None:
            return

        parsed = parse_conflicts(report)
        if state.adaptive and parsed.conclusive:
            outcome = self.resolver.resolve(parsed.records)
            if outcome.resolved and self._apply_resolution(outcome.candidates):
                report = self._compile_once(upgrade)
                if report is None:
                    return

        if self.settings.lock_file.exists():
            message = "dependency conflict could not be resolved; keeping previous lock file"
            logger.warning("%s:\n%s", message, report)
            state.warnings.append(message)
            return
        raise StructuralConflictError(
            "dependency set is unsatisfiable and no previous lock file exists", report
        )

    def _compile_once(self, upgrade: bool) -> Optional[str]:
        """Run the compiler through the executor. Returns the conflict report on failure."""
        outcome: dict[str, object] = {}

        def _command() -> CommandResult:
            compiled = self.compiler().compile(
                self.settings.merged_in, self.settings.lock_file, upgrade=upgrade
            )
            outcome["result"] = compiled
            return CommandResult(
                success=compiled.success,
                stderr=compiled.conflict_report,
                exit_code=0 if compiled.success else 1,
            )

        def _verify() -> Verification:
            compiled = outcome.get("result")
            pins = read_pins(self.settings.lock_file)
            if compiled is not None and compiled.success and pins:
                return Verification(ok=True, actual_state=f"{len(pins)} pins")
            return Verification(ok=False, detail="compile did not produce a lock file")

        executed = self.executor.execute(
            "compile-lock",
            _command,
            _verify,
            expected_state="pinned lock file",
            max_attempts=1,
            skip_if_satisfied=False,
        )
        if executed.success:
            return None
        compiled = outcome.get("result")
        return getattr(compiled, "conflict_report", "") or executed.reason

    def _apply_resolution(self, candidates) -> bool:
        applied = self.constraints.record_resolution(candidates)
        if not applied:
            return False
        entries, options = self.constraints.build()
        self.constraints.write_merged(entries, options)
        for entry in applied:
            self.console.print(f"[green]Resolver pin: {entry.requirement()}[/]")
        return True

    def _post_install_check(self, state: _RunState, installer: PipInstaller) -> None:
        check = installer.check()
        if check.success:
            return
        report = "\n".join(part for part in (check.stdout, check.stderr) if part)
        parsed = parse_conflicts(report)
        if not parsed.conclusive:
            state.warnings.append("pip check reported problems it could not describe")
            return
        if not state.adaptive:
            state.warnings.append(
                f"{len(parsed.records)} dependency conflict(s) remain; "
                "re-run with --adaptive to resolve them"
            )
            return

        outcome = self.resolver.resolve(parsed.records)
        if not outcome.resolved or not self._apply_resolution(outcome.candidates):
            state.warnings.append("dependency conflicts remain after all resolution strategies")
            return
        self._compile(state, upgrade=False)
        pins = read_pins(self.settings.lock_file)
        targets = {
            name: version
            for name, version in pins.items()
            if any(_same_package(name, c.package) for c in outcome.candidates)
        }
        if targets:
            self.executor.execute(
                "install-resolved",
                installer.install_exact_command(targets),
                manifest_matches(targets, installer.installed),
                expected_state=", ".join(f"{k}=={v}" for k, v in sorted(targets.items())),
                max_attempts=self.settings.max_attempts,
            ).raise_for_failure()
        if not installer.check().success:
            state.warnings.append("some dependency conflicts remain after resolution")

    def _record_optional(self, state: _RunState, statuses: Mapping[str, str]) -> None:
        for name, status in statuses.items():
            if status.startswith("skipped"):
                state.skipped.append(f"{name} ({status})")

    def _write_freeze(self, installer: PipInstaller) -> None:
        lines = installer.freeze()
        if not lines:
            return
        content = "\n".join(lines) + "\n"
        freeze = self.settings.freeze_file
        if freeze.exists() and freeze.read_text() == content:
            return
        freeze.write_text(content)

    def _fingerprint(
        self, state: _RunState, signature: EnvironmentSignature, entries
    ) -> str:
        lock = self.settings.lock_file
        return fingerprint_inputs(
            signature,
            entries,
            state.python_version,
            lock.read_text() if lock.exists() else "",
        )

    # ── Commands run through the executor ────────────────────────────

    def _clear_environment(self, state: _RunState) -> CommandResult:
        settings = self.settings
        state.environment_mutated = True
        if settings.venv_dir.exists():
            shutil.rmtree(settings.venv_dir)
        if settings.lock_file.exists():
            settings.lock_file.unlink()
        return CommandResult(success=True)

    def _create_venv(self, python: Path, state: _RunState) -> CommandResult:
        venv = self.settings.venv_dir
        if venv.exists():
            logger.info("Removing venv built on a different interpreter")
            state.environment_mutated = True
            shutil.rmtree(venv)
        return self.runner(
            EnvironmentDetector.create_venv_command(python, venv), timeout=600
        )

    def _tooling_ready(self) -> Verification:
        pip_version = reported_version([str(self.venv_python), "-m", "pip", "--version"])
        if pip_version is None:
            return Verification(ok=False, detail="pip is not available")
        major_minor = tuple(int(p) for p in pip_version.split(".")[:2])
        if major_minor >= (25, 2):
            return Verification(
                ok=False, actual_state=f"pip {pip_version}", detail="pip must be < 25.2"
            )
        pip_compile = self.venv_python.parent / "pip-compile"
        return command_succeeds([str(pip_compile), "--version"])()

    # ── Rollback ─────────────────────────────────────────────────────

    def _rollback(self, state: _RunState) -> str:
        if not state.destructive_started:
            return "not needed: no destructive step ran"
        self.lock.record_stage("rollback")
        self.console.print("[yellow]Rolling back from snapshot...[/]")
        try:
            outcome = self.snapshots().restore(self._reinstall_exact, preferred=state.snapshot)
        except RollbackError as e:
            logger.error("Rollback failed: %s", e)
            return f"failed: {e}"
        state.install_in_flight = False
        state.environment_mutated = False
        return outcome

    def _reinstall_exact(self, versions: Mapping[str, str]) -> bool:
        """Reinstall the recorded versions and remove every package added since."""
        installer = self.installer()
        wanted = {normalize_name(name) for name in versions}

        def _command() -> CommandResult:
            result = self.runner(installer.install_exact_command(dict(versions)), timeout=1800)
            if not result.success:
                return result
            extra = [name for name in installer.installed() if normalize_name(name) not in wanted]
            if not extra:
                return result
            logger.info("Removing %d package(s) not in the snapshot: %s", len(extra), extra)
            return self.runner(installer.uninstall_command(extra), timeout=600)

        return self.executor.execute(
            "rollback-reinstall",
            _command,
            manifest_matches(versions, installer.installed, exact=True),
            expected_state=f"exactly the {len(versions)} recorded packages",
            max_attempts=self.settings.max_attempts,
        ).success

    # ── Verification command ─────────────────────────────────────────

    def verify_imports(self, modules=SMOKE_IMPORTS) -> list[dict[str, object]]:
        """Import each module inside the venv and report its version."""
        rows = []
        for module in modules:
            code = f"import {module}; print(getattr({module}, '__version__', 'unknown'))"
            result = self.runner([str(self.venv_python), "-c", code], timeout=120)
            rows.append({
                "module": module,
                "ok": result.success,
                "version": result.stdout.strip() if result.success else "",
                "error": "" if result.success else _last_line(result.stderr or result.error),
            })
        return rows

    # ── Results & display ────────────────────────────────────────────

    def _last_operation(self) -> Optional[str]:
        return self.executor.current

    def _success(self, state: _RunState, already_converged: bool = False) -> RunResult:
        return RunResult(
            success=True,
            run_id=state.run_id,
            mode=state.mode,
            duration_seconds=time.time() - state.started,
            exit_code=EXIT_CONVERGED,
            python_version=state.python_version,
            mutations=self.executor.mutations,
            already_converged=already_converged,
            warnings=list(state.warnings),
            skipped=list(state.skipped),
            last_operation=self._last_operation(),
        )

    def _failure(
        self,
        state: _RunState,
        message: str,
        expected_state: Optional[str] = None,
        actual_state: Optional[str] = None,
        last_operation: Optional[str] = None,
        rollback_outcome: Optional[str] = None,
    ) -> RunResult:
        return RunResult(
            success=False,
            run_id=state.run_id,
            mode=state.mode,
            duration_seconds=time.time() - state.started,
            exit_code=EXIT_FAILED,
            python_version=state.python_version,
            mutations=self.executor.mutations,
            warnings=list(state.warnings),
            skipped=list(state.skipped),
            error_message=message,
            expected_state=expected_state,
            actual_state=actual_state,
            last_operation=last_operation or self._last_operation(),
            rollback_outcome=rollback_outcome,
        )

    def _display_header(self, state: _RunState, sig: EnvironmentSignature) -> None:
        self.console.print(
            Panel(
                f"[bold]Environment:[/] {self.settings.env_dir}\n"
                f"[bold]Platform:[/] {sig.platform.value} {sig.architecture} "
                f"({sig.os_version})\n"
                f"[bold]Mode:[/] {state.mode.value}\n"
                f"[bold]Adaptive:[/] {'on' if state.adaptive else 'off'}",
                title="base-env",
                border_style="blue",
            )
        )

    def _display_final_result(self, result: RunResult) -> None:
        self.console.print()
        if result.success:
            body = (
                f"[bold green]Environment converged[/]\n"
                f"Python: {result.python_version}\n"
                f"Mutations: {result.mutations}\n"
                f"Duration: {result.duration_seconds:.1f}s"
            )
            if result.already_converged:
                body = body.replace("Environment converged", "Already converged")
            self.console.print(Panel(body, title="Run Complete", border_style="green"))
        else:
            self.console.print(
                Panel(
                    f"[bold red]Run failed[/]\n"
                    f"Error: {result.error_message}\n"
                    f"Expected: {result.expected_state or '-'}\n"
                    f"Actual: {result.actual_state or '-'}\n"
                    f"Last operation: {result.last_operation or '-'}\n"
                    f"Rollback: {result.rollback_outcome or '-'}",
                    title="Run Failed",
                    border_style="red",
                )
            )
        for warning in result.warnings:
            self.console.print(f"[yellow]Warning: {warning}[/]")
        for skipped in result.skipped:
            self.console.print(f"[dim]Skipped: {skipped}[/]")


def _global_is(runtime: PyenvRuntimeManager, version: str) -> Verification:
    current = runtime.global_version()
    return Verification(ok=current == version, actual_state=current or "")


def _interrupt_exit_code(exc: BaseException) -> int:
    """128+signum from the lock's signal handlers, 130 for Ctrl-C."""
    if isinstance(exc, SystemExit) and isinstance(exc.code, int) and exc.code:
        return exc.code
    return EXIT_INTERRUPTED


def _absent(*paths: Path) -> Verification:
    remaining = [str(p) for p in paths if p.exists()]
    if remaining:
        return Verification(ok=False, actual_state=", ".join(remaining))
    return Verification(ok=True, actual_state="cleared")


def _same_package(a: str, b: str) -> bool:
    return normalize_name(a) == normalize_name(b)


def _last_line(text: str) -> str:
    lines = [line for line in text.strip().splitlines() if line.strip()]
    return lines[-1] if lines else ""
