"""Tests for base_env.core.verify — state probes used by the executor."""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

from base_env.core.verify import (
    binary_on_path,
    command_succeeds,
    interpreter_version,
    manifest_matches,
    reported_version,
)
from tests.conftest import write


class TestReportedVersion:
    @patch("base_env.core.verify.subprocess.run")
    def test_parses_stdout(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="Python 3.12.8\n", stderr="")
        assert reported_version(["python", "--version"]) == "3.12.8"

    @patch("base_env.core.verify.subprocess.run")
    def test_falls_back_to_stderr(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="Python 2.7.18\n")
        assert reported_version(["python", "--version"]) == "2.7.18"

    @patch("base_env.core.verify.subprocess.run")
    def test_failure(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="python", timeout=10)
        assert reported_version(["python", "--version"]) is None


class TestInterpreterVersion:
    def test_missing_interpreter(self, tmp_path):
        result = interpreter_version(tmp_path / "python", "3.12.8")()
        assert result.ok is False
        assert "does not exist" in result.detail

    @patch("base_env.core.verify.reported_version", return_value="3.11.9")
    def test_version_mismatch(self, _reported, tmp_path):
        python = write(tmp_path / "python", "")
        result = interpreter_version(python, "3.12.8")()
        assert result.ok is False
        assert result.actual_state == "3.11.9"
        assert "version mismatch" in result.detail

    @patch("base_env.core.verify.reported_version", return_value="3.12.8")
    def test_exact_match(self, _reported, tmp_path):
        python = write(tmp_path / "python", "")
        result = interpreter_version(python, "3.12.8")()
        assert result.ok is True
        assert result.actual_state == "3.12.8"


class TestCommandSucceeds:
    @patch("base_env.core.verify.subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="pip-compile, version 7.4.1\n", stderr="")
        result = command_succeeds(["pip-compile", "--version"])()
        assert result.ok is True
        assert "7.4.1" in result.actual_state

    @patch("base_env.core.verify.subprocess.run")
    def test_broken_tool(self, mock_run):
        mock_run.return_value = MagicMock(
            returncode=1, stdout="", stderr="AttributeError: 'InstallRequirement' object"
        )
        result = command_succeeds(["pip-compile", "--version"])()
        assert result.ok is False
        assert "InstallRequirement" in result.detail

    @patch("base_env.core.verify.subprocess.run", side_effect=FileNotFoundError("pip-compile"))
    def test_missing_tool(self, _run):
        assert command_succeeds(["pip-compile", "--version"])().ok is False


class TestBinaryOnPath:
    @patch("base_env.core.verify.shutil.which", return_value="/usr/local/bin/pyenv")
    def test_found(self, _which):
        result = binary_on_path("pyenv")()
        assert result.ok is True
        assert result.actual_state == "/usr/local/bin/pyenv"

    @patch("base_env.core.verify.shutil.which", return_value=None)
    def test_missing(self, _which):
        assert binary_on_path("pyenv")().ok is False


class TestManifestMatches:
    def test_all_pins_installed(self):
        installed = MagicMock(return_value={"NumPy": "2.1.0", "pandas": "2.2.3", "pip": "25.1"})
        result = manifest_matches({"numpy": "2.1.0", "pandas": "2.2.3"}, installed)()
        assert result.ok is True
        assert result.actual_state == "2 pinned packages installed"

    def test_missing_and_mismatched(self):
        installed = MagicMock(return_value={"numpy": "2.2.0"})
        result = manifest_matches({"numpy": "2.1.0", "pandas": "2.2.3"}, installed)()
        assert result.ok is False
        assert "1 missing (pandas)" in result.detail
        assert "numpy 2.2.0!=2.1.0" in result.detail

    def test_empty_lock_never_verifies(self):
        assert manifest_matches({}, MagicMock(return_value={}))().ok is False

    def test_exact_rejects_unexpected_packages(self):
        installed = MagicMock(return_value={"numpy": "2.1.0", "pandas": "2.2.3", "LibB": "3.2"})
        pins = {"numpy": "2.1.0", "pandas": "2.2.3"}
        assert manifest_matches(pins, installed)().ok is True

        result = manifest_matches(pins, installed, exact=True)()
        assert result.ok is False
        assert result.detail == "1 unexpected (libb)"
        assert result.actual_state == "3 packages installed"
