"""Tests for base_env.core.environment — EnvironmentDetector."""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

from base_env.core.environment import (
    EnvironmentDetector,
    _detect_architecture,
    _detect_os,
    _detect_os_version,
    version_at_least,
)
from base_env.core.models import Platform
from tests.conftest import write


# ---------------------------------------------------------------------------
# _detect_os
# ---------------------------------------------------------------------------

class TestDetectOS:
    @patch("base_env.core.environment.platform")
    def test_linux(self, mock_platform):
        mock_platform.system.return_value = "Linux"
        assert _detect_os() == Platform.LINUX

    @patch("base_env.core.environment.platform")
    def test_macos(self, mock_platform):
        mock_platform.system.return_value = "Darwin"
        assert _detect_os() == Platform.MACOS

    @patch("base_env.core.environment.platform")
    def test_windows(self, mock_platform):
        mock_platform.system.return_value = "Windows"
        assert _detect_os() == Platform.WINDOWS

    @patch("base_env.core.environment.platform")
    def test_unknown_defaults_to_linux(self, mock_platform):
        mock_platform.system.return_value = "FreeBSD"
        assert _detect_os() == Platform.LINUX


# ---------------------------------------------------------------------------
# _detect_architecture
# ---------------------------------------------------------------------------

class TestDetectArchitecture:
    @patch("base_env.core.environment.platform")
    def test_aarch64_is_arm64(self, mock_platform):
        mock_platform.machine.return_value = "aarch64"
        assert _detect_architecture() == "arm64"

    @patch("base_env.core.environment.platform")
    def test_amd64_is_x86_64(self, mock_platform):
        mock_platform.machine.return_value = "AMD64"
        assert _detect_architecture() == "x86_64"

    @patch("base_env.core.environment.platform")
    def test_unknown_passes_through(self, mock_platform):
        mock_platform.machine.return_value = "riscv64"
        assert _detect_architecture() == "riscv64"


# ---------------------------------------------------------------------------
# _detect_os_version
# ---------------------------------------------------------------------------

class TestDetectOSVersion:
    @patch("base_env.core.environment.platform")
    def test_macos_product_version(self, mock_platform):
        mock_platform.mac_ver.return_value = ("15.1", ("", "", ""), "arm64")
        assert _detect_os_version(Platform.MACOS) == "15.1"

    @patch("base_env.core.environment.subprocess.run")
    @patch("base_env.core.environment.platform")
    def test_linux_lsb_release(self, mock_platform, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout='"Ubuntu 24.04 LTS"\n')
        assert _detect_os_version(Platform.LINUX) == "Ubuntu 24.04 LTS"
        mock_run.assert_called_once_with(
            ["lsb_release", "-ds"],
            capture_output=True, text=True, timeout=5,
        )

    @patch("base_env.core.environment.subprocess.run")
    @patch("base_env.core.environment.platform")
    def test_linux_lsb_release_missing_falls_back(self, mock_platform, mock_run):
        mock_run.side_effect = FileNotFoundError("lsb_release")
        mock_platform.release.return_value = "6.8.0-45-generic"
        assert _detect_os_version(Platform.LINUX) == "6.8.0-45-generic"

    @patch("base_env.core.environment.subprocess.run")
    @patch("base_env.core.environment.platform")
    def test_linux_lsb_release_timeout_falls_back(self, mock_platform, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="lsb_release", timeout=5)
        mock_platform.release.return_value = "6.8.0"
        assert _detect_os_version(Platform.LINUX) == "6.8.0"


class TestVersionAtLeast:
    def test_comparisons(self):
        assert version_at_least("15.1", (15, 1)) is True
        assert version_at_least("15.1.1", (15, 1)) is True
        assert version_at_least("15.0.1", (15, 1)) is False
        assert version_at_least("26.0", (15, 1)) is True

    def test_unparseable(self):
        assert version_at_least("Ubuntu 24.04", (15, 1)) is False
        assert version_at_least("", (15, 1)) is False


# ---------------------------------------------------------------------------
# EnvironmentDetector
# ---------------------------------------------------------------------------

class TestDetectSignature:
    @patch("base_env.core.environment._detect_os_version", return_value="15.1")
    @patch("base_env.core.environment._detect_architecture", return_value="arm64")
    @patch("base_env.core.environment._detect_os", return_value=Platform.MACOS)
    def test_full_signature(self, _os, _arch, _version):
        sig = EnvironmentDetector.detect_signature(["Torch", "scikit_learn"])
        assert sig.platform is Platform.MACOS
        assert sig.architecture == "arm64"
        assert sig.os_version == "15.1"
        assert sig.declared_packages == frozenset({"torch", "scikit-learn"})
        assert sig.declares("torch")


class TestVenvHelpers:
    def test_venv_python_posix(self, tmp_path):
        assert EnvironmentDetector.venv_python(tmp_path) == tmp_path / "bin" / "python"

    def test_venv_python_windows(self, tmp_path):
        write(tmp_path / "Scripts" / "python.exe", "")
        assert EnvironmentDetector.venv_python(tmp_path) == tmp_path / "Scripts" / "python.exe"

    def test_venv_python_version(self, tmp_path):
        write(tmp_path / "pyvenv.cfg", "home = /usr/bin\ninclude-system-site-packages = false\nversion = 3.12.8\n")
        assert EnvironmentDetector.venv_python_version(tmp_path) == "3.12.8"

    def test_venv_python_version_info(self, tmp_path):
        write(tmp_path / "pyvenv.cfg", "home = /usr/bin\nversion_info = 3.13.1.final.0\n")
        assert EnvironmentDetector.venv_python_version(tmp_path) == "3.13.1.final.0"

    def test_no_venv(self, tmp_path):
        assert EnvironmentDetector.venv_python_version(tmp_path / "missing") is None

    def test_create_venv_command(self, tmp_path):
        argv = EnvironmentDetector.create_venv_command(tmp_path / "python", tmp_path / ".venv")
        assert argv == [str(tmp_path / "python"), "-m", "venv", str(tmp_path / ".venv")]
