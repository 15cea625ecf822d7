"""Verification probes — check real observable state, never exit codes."""

from __future__ import annotations

import re
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from packaging.utils import canonicalize_name

from base_env.core.models import Verification

_VERSION_RE = re.compile(r"(\d+\.\d+(?:\.\d+)?)")


def reported_version(argv: Sequence[str], timeout: float = 10) -> Optional[str]:
    """Run ``argv`` (e.g. ``python --version``) and extract the version."""
    try:
        result = subprocess.run(
            list(argv), capture_output=True, text=True, timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    match = _VERSION_RE.search(result.stdout or result.stderr)
    return match.group(1) if match else None


def binary_on_path(name: str) -> Callable[[], Verification]:
    def _check() -> Verification:
        found = shutil.which(name)
        if found:
            return Verification(ok=True, actual_state=found)
        return Verification(ok=False, detail=f"{name} not found on PATH")
    return _check


def interpreter_version(python: Path, expected: str) -> Callable[[], Verification]:
    """The interpreter at ``python`` must exist and report exactly ``expected``."""

    def _check() -> Verification:
        if not python.exists():
            return Verification(ok=False, detail=f"{python} does not exist")
        version = reported_version([str(python), "--version"])
        if version is None:
            return Verification(ok=False, detail=f"{python} did not report a version")
        if version != expected:
            return Verification(
                ok=False,
                actual_state=version,
                detail=f"version mismatch: expected {expected}, got {version}",
            )
        return Verification(ok=True, actual_state=version)

    return _check


def command_succeeds(argv: Sequence[str], timeout: float = 30) -> Callable[[], Verification]:
    """A trivial operation (``pip-compile --version``) must run cleanly."""

    def _check() -> Verification:
        try:
            result = subprocess.run(
                list(argv), capture_output=True, text=True, timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            return Verification(ok=False, detail=str(e))
        if result.returncode != 0:
            return Verification(
                ok=False, detail=(result.stderr or result.stdout).strip()[:200]
            )
        return Verification(ok=True, actual_state=result.stdout.strip()[:200])

    return _check


def manifest_matches(
    expected: Mapping[str, str],
    installed: Callable[[], Mapping[str, str]],
    exact: bool = False,
) -> Callable[[], Verification]:
    """Every pinned package must be installed at exactly the pinned version.

    With ``exact``, nothing else may be installed either.
    """

    def _check() -> Verification:
        actual = {canonicalize_name(k): v for k, v in installed().items()}
        if not expected:
            return Verification(ok=False, detail="lock file has no pins")
        missing = []
        mismatched = []
        for name, version in expected.items():
            have = actual.get(canonicalize_name(name))
            if have is None:
                missing.append(name)
            elif have != version:
                mismatched.append(f"{name} {have}!={version}")
        unexpected = []
        if exact:
            wanted = {canonicalize_name(k) for k in expected}
            unexpected = [name for name in actual if name not in wanted]
        if missing or mismatched or unexpected:
            parts = []
            if missing:
                parts.append(f"{len(missing)} missing ({', '.join(sorted(missing)[:5])})")
            if mismatched:
                parts.append(
                    f"{len(mismatched)} mismatched ({', '.join(sorted(mismatched)[:5])})"
                )
            if unexpected:
                parts.append(
                    f"{len(unexpected)} unexpected ({', '.join(sorted(unexpected)[:5])})"
                )
            return Verification(
                ok=False,
                actual_state=f"{len(actual)} packages installed",
                detail="; ".join(parts),
            )
        return Verification(
            ok=True, actual_state=f"{len(expected)} pinned packages installed"
        )

    return _check
