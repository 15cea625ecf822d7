"""Adapters for the external tools a run drives.

Each adapter builds argv lists for the executor and exposes read-only
queries. None of them retries or interprets success on its own; that is the
executor's job.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name
from packaging.version import Version

from base_env.core.executor import run_command
from base_env.core.models import CommandResult
from base_env.core.verify import binary_on_path

logger = logging.getLogger(__name__)

Runner = Callable[..., CommandResult]

PIP_SPEC = "pip<25.2"  # pip-tools 7.5 breaks on newer pip
SYSTEM_PACKAGES = ("libgit2", "libpq", "openssl@3")
INSTALL_NETWORK_FLAGS = ("--timeout", "15", "--retries", "2")


def read_pins(lock_path: Path) -> dict[str, str]:
    """Return {name: version} for every ``name==version`` line of a lock file."""
    pins: dict[str, str] = {}
    if not lock_path.exists():
        return pins
    for raw in lock_path.read_text().splitlines():
        line = raw.split("#", 1)[0].strip().rstrip("\\").strip()
        if not line or line.startswith("-"):
            continue
        try:
            req = Requirement(line)
        except InvalidRequirement:
            continue
        specs = list(req.specifier)
        if len(specs) == 1 and specs[0].operator == "==":
            pins[canonicalize_name(req.name)] = specs[0].version
    return pins


# ── Runtime version manager ──────────────────────────────────────────


class PyenvRuntimeManager:
    """pyenv: list-available, install, set-global."""

    def __init__(self, pyenv_root: Optional[Path] = None, runner: Runner = run_command):
        self.pyenv_root = pyenv_root or Path(
            os.environ.get("PYENV_ROOT", str(Path.home() / ".pyenv"))
        )
        self.runner = runner

    @property
    def executable(self) -> str:
        bundled = self.pyenv_root / "bin" / "pyenv"
        if bundled.exists():
            return str(bundled)
        return shutil.which("pyenv") or "pyenv"

    def list_available(self, series: Sequence[str]) -> list[str]:
        """Stable CPython versions in the given minor series, newest first."""
        result = self.runner([self.executable, "install", "--list"], timeout=60)
        if not result.success:
            logger.warning("pyenv install --list failed: %s", result.error or result.stderr)
            return []
        wanted = set(series)
        versions = []
        for line in result.stdout.splitlines():
            candidate = line.strip()
            if not re.fullmatch(r"\d+\.\d+\.\d+", candidate):
                continue
            major_minor = candidate.rsplit(".", 1)[0]
            if major_minor in wanted:
                versions.append(candidate)
        return sorted(versions, key=Version, reverse=True)

    def install_command(self, version: str) -> list[str]:
        return [self.executable, "install", "-s", version]

    def uninstall_command(self, version: str) -> list[str]:
        return [self.executable, "uninstall", "-f", version]

    def set_global_command(self, version: str) -> list[str]:
        return [self.executable, "global", version]

    def python_path(self, version: str) -> Path:
        return self.pyenv_root / "versions" / version / "bin" / "python"

    def global_version(self) -> Optional[str]:
        result = self.runner([self.executable, "global"], timeout=10)
        if not result.success:
            return None
        lines = result.stdout.strip().splitlines()
        return lines[0].strip() if lines else None


# ── Dependency lock compiler ─────────────────────────────────────────


@dataclass
class CompileResult:
    success: bool
    lock_path: Optional[Path] = None
    conflict_report: str = ""


def find_contradictory_pins(requirements: Path) -> dict[str, list[str]]:
    """Packages pinned with ``==`` to more than one distinct version."""
    pins: dict[str, set[str]] = defaultdict(set)
    names: dict[str, str] = {}
    for raw in requirements.read_text().splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or line.startswith("-"):
            continue
        try:
            req = Requirement(line)
        except InvalidRequirement:
            continue
        for spec in req.specifier:
            if spec.operator == "==":
                key = canonicalize_name(req.name)
                pins[key].add(spec.version)
                names.setdefault(key, req.name)
    return {
        names[key]: sorted(versions)
        for key, versions in pins.items()
        if len(versions) > 1
    }


class PipCompiler:
    """pip-compile wrapper. A lock file is only replaced after a clean compile."""

    def __init__(self, python: Path, runner: Runner = run_command, timeout: float = 1800):
        self.python = python
        self.runner = runner
        self.timeout = timeout

    def compile(
        self,
        requirements: Path,
        output: Path,
        upgrade: bool = False,
    ) -> CompileResult:
        contradictions = find_contradictory_pins(requirements)
        if contradictions:
            report = "\n".join(
                "ERROR: Cannot install "
                + " and ".join(f"{name}=={v}" for v in versions)
                + " because these package versions have conflicting dependencies."
                for name, versions in contradictions.items()
            )
            return CompileResult(success=False, conflict_report=report)

        pending = output.with_name(output.name + ".pending")
        if output.exists() and not upgrade:
            shutil.copyfile(output, pending)  # keep existing pins as preferences
        elif pending.exists():
            pending.unlink()

        argv = [
            str(self.python), "-m", "piptools", "compile",
            "--quiet", "--no-header", "--strip-extras",
            str(requirements), "--output-file", str(pending),
        ]
        if upgrade:
            argv.append("--upgrade")
        result = self.runner(argv, timeout=self.timeout)
        if not result.success:
            if pending.exists():
                pending.unlink()
            report = "\n".join(
                part for part in (result.stdout, result.stderr, result.error) if part
            )
            return CompileResult(success=False, conflict_report=report)

        if not read_pins(pending):
            pending.unlink()
            return CompileResult(
                success=False,
                conflict_report="compiled lock file is missing pinned versions",
            )
        os.replace(pending, output)
        return CompileResult(success=True, lock_path=output)


# ── Package installer ────────────────────────────────────────────────


class PipInstaller:
    """pip inside the managed virtual environment."""

    def __init__(
        self,
        python: Path,
        runner: Runner = run_command,
        cache_dir: Optional[Path] = None,
    ):
        self.python = python
        self.runner = runner
        self.cache_dir = cache_dir

    def _pip(self, *args: str) -> list[str]:
        return [str(self.python), "-m", "pip", *args]

    def _cache_flags(self) -> list[str]:
        return ["--cache-dir", str(self.cache_dir)] if self.cache_dir else []

    def bootstrap_command(self) -> list[str]:
        return self._pip(
            "install", "--upgrade", PIP_SPEC, "setuptools", "wheel", "pip-tools"
        )

    def install_lock_command(self, lock_path: Path) -> list[str]:
        return self._pip(
            "install", "-r", str(lock_path),
            *INSTALL_NETWORK_FLAGS, *self._cache_flags(),
        )

    def install_exact_command(self, pins: dict[str, str]) -> list[str]:
        requirements = [f"{name}=={version}" for name, version in sorted(pins.items())]
        return self._pip(
            "install", "--force-reinstall", "--no-deps",
            *INSTALL_NETWORK_FLAGS, *self._cache_flags(), *requirements,
        )

    def uninstall_command(self, names: Sequence[str]) -> list[str]:
        return self._pip("uninstall", "--yes", *sorted(names))

    def installed(self) -> dict[str, str]:
        """Return {package_name: version} from ``pip list``."""
        result = self.runner(self._pip("list", "--format=json"), timeout=60)
        if not result.success:
            return {}
        try:
            packages = json.loads(result.stdout)
        except json.JSONDecodeError:
            return {}
        return {canonicalize_name(p["name"]): p["version"] for p in packages}

    def check(self) -> CommandResult:
        return self.runner(self._pip("check"), timeout=120)

    def freeze(self) -> list[str]:
        result = self.runner(self._pip("freeze"), timeout=120)
        if not result.success:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]


# ── Opportunistic installs (non-fatal) ───────────────────────────────


class SystemPackages:
    """Homebrew-managed system libraries."""

    def __init__(self, runner: Runner = run_command):
        self.runner = runner

    def ensure(self, packages: Sequence[str] = SYSTEM_PACKAGES) -> dict[str, str]:
        if not binary_on_path("brew")().ok:
            return {pkg: "skipped: Homebrew not installed" for pkg in packages}
        statuses = {}
        for pkg in packages:
            if self.runner(["brew", "list", pkg], timeout=60).success:
                statuses[pkg] = "present"
                continue
            result = self.runner(["brew", "install", pkg], timeout=1800)
            if result.success:
                statuses[pkg] = "installed"
            else:
                logger.warning("brew install %s failed: %s", pkg, result.error or result.stderr)
                statuses[pkg] = "skipped: brew install failed"
        return statuses


class AuxiliaryToolchains:
    """R and Julia toolchains, installed via Homebrew casks when missing."""

    TOOLCHAINS = {"R": "r", "julia": "julia"}

    def __init__(self, runner: Runner = run_command):
        self.runner = runner

    def ensure(self) -> dict[str, str]:
        statuses = {}
        have_brew = binary_on_path("brew")().ok
        for binary, cask in self.TOOLCHAINS.items():
            on_path = binary_on_path(binary)
            if on_path().ok:
                statuses[binary] = "present"
            elif not have_brew:
                statuses[binary] = "skipped: Homebrew not installed"
            else:
                result = self.runner(
                    ["brew", "install", "--cask", cask], timeout=1800
                )
                check = on_path()
                if result.success and check.ok:
                    statuses[binary] = "installed"
                else:
                    logger.warning(
                        "Could not install %s toolchain: %s",
                        binary, check.detail or result.error or result.stderr,
                    )
                    statuses[binary] = "skipped: install did not produce a binary"
        return statuses
