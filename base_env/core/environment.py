"""Environment detection — platform, architecture, OS version, managed venv."""

from __future__ import annotations

import platform
import subprocess
from pathlib import Path
from typing import Iterable, Optional

from base_env.core.models import EnvironmentSignature, Platform, normalize_name

_ARCH_ALIASES = {
    "aarch64": "arm64",
    "arm64": "arm64",
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "x64": "x86_64",
}


class EnvironmentDetector:
    """Builds the environment signature used to key compatibility decisions."""

    @staticmethod
    def detect_signature(declared_packages: Iterable[str] = ()) -> EnvironmentSignature:
        detected_os = _detect_os()
        return EnvironmentSignature(
            platform=detected_os,
            architecture=_detect_architecture(),
            os_version=_detect_os_version(detected_os),
            declared_packages=frozenset(normalize_name(p) for p in declared_packages),
        )

    @staticmethod
    def venv_python(venv_dir: Path) -> Path:
        python = venv_dir / "bin" / "python"
        if not python.exists() and (venv_dir / "Scripts" / "python.exe").exists():
            return venv_dir / "Scripts" / "python.exe"
        return python

    @staticmethod
    def venv_python_version(venv_dir: Path) -> Optional[str]:
        """Interpreter version recorded in ``pyvenv.cfg``, if the venv exists."""
        cfg = venv_dir / "pyvenv.cfg"
        if not cfg.exists():
            return None
        for line in cfg.read_text().splitlines():
            key, sep, value = line.partition("=")
            if sep and key.strip() in ("version", "version_info"):
                return value.strip()
        return None

    @staticmethod
    def create_venv_command(python: Path, venv_dir: Path) -> list[str]:
        return [str(python), "-m", "venv", str(venv_dir)]


def _detect_os() -> Platform:
    system = platform.system().lower()
    if system == "linux":
        return Platform.LINUX
    elif system == "darwin":
        return Platform.MACOS
    elif system == "windows":
        return Platform.WINDOWS
    return Platform.LINUX


def _detect_architecture() -> str:
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def _detect_os_version(detected_os: Platform) -> str:
    if detected_os is Platform.MACOS:
        release = platform.mac_ver()[0]
        if release:
            return release
    try:
        if detected_os is Platform.LINUX:
            result = subprocess.run(
                ["lsb_release", "-ds"],
                capture_output=True, text=True, timeout=5,
            )
            if result.returncode == 0 and result.stdout.strip():
                return result.stdout.strip().strip('"')
    except (OSError, subprocess.TimeoutExpired):
        pass
    return platform.release()


def version_at_least(version: str, minimum: tuple[int, ...]) -> bool:
    """Compare a dotted OS version against ``minimum``; False when unparseable."""
    parts = []
    for piece in version.split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        if not digits:
            break
        parts.append(int(digits))
    if not parts:
        return False
    return tuple(parts) >= minimum
