"""Compatibility matrix and interpreter version selection.

Rules map an environment signature to a recommended interpreter series.
A matched rule is remembered in the data store; once its cooldown has
elapsed a disposable probe re-tests the newest default version, and the
rule is retired when the probe no longer crashes or hangs.
"""

from __future__ import annotations

import logging
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Sequence

from base_env.core.environment import version_at_least
from base_env.core.errors import UnsupportedEnvironmentError
from base_env.core.executor import run_command
from base_env.core.models import (
    CommandResult,
    CompatibilityRule,
    CompatibilityState,
    EnvironmentSignature,
    IssueStatus,
    Platform,
    ProbeOutcome,
    SelectionKind,
    VersionSelection,
)
from base_env.core.tools import PyenvRuntimeManager
from base_env.data.store import DataStore

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(days=7)
CRASH_EXIT_CODES = frozenset({134, 139})  # SIGABRT / SIGSEGV via the shell


def _torch_on_apple_silicon_sequoia(sig: EnvironmentSignature) -> bool:
    return (
        sig.platform is Platform.MACOS
        and sig.architecture == "arm64"
        and version_at_least(sig.os_version, (15, 1))
        and sig.declares("torch")
    )


RULES: tuple[CompatibilityRule, ...] = (
    CompatibilityRule(
        id="torch-macos-arm64-15.1",
        predicate=_torch_on_apple_silicon_sequoia,
        recommended_version="3.12",
        reason="PyTorch crashes on newer interpreters on macOS 15.1+ (Apple Silicon)",
        probe_package="torch",
        probe_code=(
            "import torch; x = torch.randn(256, 256); "
            "print(float((x @ x).sum()))"
        ),
    ),
)


def match_rule(
    signature: EnvironmentSignature,
    rules: Sequence[CompatibilityRule] = RULES,
) -> Optional[CompatibilityRule]:
    """First matching rule, or None."""
    for rule in rules:
        if rule.predicate(signature):
            return rule
    return None


def series_of(version: str) -> str:
    return ".".join(version.split(".")[:2])


def newest_in_series(available: Sequence[str], series: str) -> Optional[str]:
    """``available`` is newest-first, as returned by the runtime manager."""
    for version in available:
        if series_of(version) == series:
            return version
    return None


def classify_probe(result: CommandResult) -> ProbeOutcome:
    if result.timed_out:
        return ProbeOutcome.TIMED_OUT
    if result.exit_code < 0 or result.exit_code in CRASH_EXIT_CODES:
        return ProbeOutcome.CRASHED
    if result.success:
        return ProbeOutcome.PASSED
    return ProbeOutcome.FAILED


class DisposableProbe:
    """Exercises a rule's package on a candidate interpreter in a throwaway venv."""

    def __init__(
        self,
        runtime: PyenvRuntimeManager,
        timeout: float = 60.0,
        runner: Callable[..., CommandResult] = run_command,
    ):
        self.runtime = runtime
        self.timeout = timeout
        self.runner = runner

    def run(self, rule: CompatibilityRule, version: str) -> ProbeOutcome:
        logger.info("Probing %s on Python %s (timeout %.0fs)", rule.probe_package, version, self.timeout)
        python = self.runtime.python_path(version)
        preinstalled = python.exists()
        if not self.runner(self.runtime.install_command(version), timeout=1800).success:
            return ProbeOutcome.INCONCLUSIVE
        try:
            outcome = self._exercise(rule, python)
        finally:
            if not preinstalled:
                self._discard(version)
        logger.info("Probe outcome for %s: %s", rule.id, outcome.value)
        return outcome

    def _exercise(self, rule: CompatibilityRule, python: Path) -> ProbeOutcome:
        with tempfile.TemporaryDirectory(prefix="base-env-probe-") as tmp:
            venv = Path(tmp) / "venv"
            if not self.runner([str(python), "-m", "venv", str(venv)], timeout=300).success:
                return ProbeOutcome.INCONCLUSIVE
            probe_python = venv / "bin" / "python"
            install = self.runner(
                [str(probe_python), "-m", "pip", "install", "--quiet", rule.probe_package],
                timeout=1800,
            )
            if not install.success:
                logger.info("Probe package %s did not install", rule.probe_package)
                return ProbeOutcome.INCONCLUSIVE
            result = self.runner(
                [str(probe_python), "-c", rule.probe_code], timeout=self.timeout
            )
        return classify_probe(result)

    def _discard(self, version: str) -> None:
        """Remove an interpreter installed only for this check."""
        result = self.runner(self.runtime.uninstall_command(version), timeout=300)
        if not result.success:
            logger.warning(
                "Could not remove temporary interpreter %s: %s", version, result.error or result.stderr
            )


class VersionSelector:
    """Chooses the interpreter version for this run."""

    def __init__(
        self,
        runtime: PyenvRuntimeManager,
        store: DataStore,
        series: Sequence[str],
        probe: Optional[DisposableProbe] = None,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        rules: Sequence[CompatibilityRule] = RULES,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.runtime = runtime
        self.store = store
        self.series = tuple(series)
        self.probe = probe
        self.cooldown = cooldown
        self.rules = rules
        self.clock = clock

    def select(self, signature: EnvironmentSignature) -> VersionSelection:
        available = self.runtime.list_available(self.series)
        if not available:
            raise UnsupportedEnvironmentError(
                f"No installable Python release in series {', '.join(self.series)}"
            )
        default = VersionSelection(
            kind=SelectionKind.DEFAULT,
            version=available[0],
            reason=f"newest stable release in {', '.join(self.series)}",
        )

        rule = match_rule(signature, self.rules)
        if rule is None:
            return default

        state = self.store.get_compatibility_state(rule.id)
        now = self.clock()
        if state is None:
            # A newly seen issue waits a full cooldown before its first probe.
            state = CompatibilityState(issue_id=rule.id, last_upgrade_tested_at=now)

        if state.status is IssueStatus.RESOLVED:
            logger.info("Compatibility issue %s is resolved; using default", rule.id)
            state.last_checked_at = now
            state.chosen_version = default.version
            self.store.save_compatibility_state(state)
            default.issue_id = rule.id
            return default

        recommended = newest_in_series(available, rule.recommended_version)
        if recommended is None:
            logger.warning(
                "Rule %s recommends Python %s but no release is available; using default",
                rule.id, rule.recommended_version,
            )
            return default

        if self._probe_due(state, now) and series_of(default.version) != rule.recommended_version:
            outcome = self.probe.run(rule, default.version)
            state.last_upgrade_tested_at = now
            if outcome in (ProbeOutcome.PASSED, ProbeOutcome.FAILED):
                logger.info("Issue %s no longer reproduces; promoting %s", rule.id, default.version)
                state.status = IssueStatus.RESOLVED
                state.last_checked_at = now
                state.chosen_version = default.version
                self.store.save_compatibility_state(state)
                default.reason = f"issue {rule.id} resolved upstream (probe {outcome.value})"
                default.issue_id = rule.id
                return default

        state.last_checked_at = now
        state.chosen_version = recommended
        self.store.save_compatibility_state(state)
        return VersionSelection(
            kind=SelectionKind.RECOMMENDED,
            version=recommended,
            reason=rule.reason,
            issue_id=rule.id,
        )

    def _probe_due(self, state: CompatibilityState, now: datetime) -> bool:
        if self.probe is None:
            return False
        if state.last_upgrade_tested_at is None:
            return True
        return now - state.last_upgrade_tested_at >= self.cooldown
