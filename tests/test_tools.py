"""Tests for base_env.core.tools — tool adapters and lock file handling."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

from base_env.core.conflicts import parse_conflicts
from base_env.core.tools import (
    PIP_SPEC,
    AuxiliaryToolchains,
    PipCompiler,
    PipInstaller,
    PyenvRuntimeManager,
    SystemPackages,
    find_contradictory_pins,
    read_pins,
)
from tests.conftest import failed, ok, write

PYTHON = Path("/env/.venv/bin/python")

PYENV_LIST = """\
Available versions:
  2.7.18
  3.11.11
  3.12.7
  3.12.8
  3.13.0t
  3.13.1
  3.14.0a1
  miniconda3-latest
  pypy3.10-7.3.17
"""


# ---------------------------------------------------------------------------
# Lock file helpers
# ---------------------------------------------------------------------------

class TestReadPins:
    def test_pip_compile_output(self, tmp_path):
        lock = write(tmp_path / "requirements.txt", """\
--index-url https://pypi.org/simple

numpy==2.1.0
    # via
    #   pandas
    #   -r requirements-merged.in
pandas==2.2.3 \\
    --hash=sha256:abc
PyYAML==6.0.2  # via -r requirements-merged.in
tokenizers>=0.20
""")
        assert read_pins(lock) == {"numpy": "2.1.0", "pandas": "2.2.3", "pyyaml": "6.0.2"}

    def test_missing_file(self, tmp_path):
        assert read_pins(tmp_path / "nope.txt") == {}


class TestContradictoryPins:
    def test_scenario_a(self, tmp_path):
        merged = write(tmp_path / "requirements-merged.in", "numpy==1.26.4\npandas\nnumpy==2.1.0\n")
        assert find_contradictory_pins(merged) == {"numpy": ["1.26.4", "2.1.0"]}

    def test_repeated_identical_pin_is_fine(self, tmp_path):
        merged = write(tmp_path / "requirements-merged.in", "numpy==2.1.0\nNumPy==2.1.0\n")
        assert find_contradictory_pins(merged) == {}


# ---------------------------------------------------------------------------
# PipCompiler
# ---------------------------------------------------------------------------

def _compiling_runner(lock_text: str):
    """Runner that writes ``lock_text`` to pip-compile's --output-file."""
    def _run(argv, timeout=None):
        output = Path(argv[argv.index("--output-file") + 1])
        output.write_text(lock_text)
        return ok()
    return MagicMock(side_effect=_run)


class TestPipCompiler:
    def test_scenario_a_never_reaches_pip_compile(self, tmp_path):
        merged = write(tmp_path / "requirements-merged.in", "numpy==1.26.4\nnumpy==2.1.0\n")
        lock = write(tmp_path / "requirements.txt", "numpy==1.26.4\n")
        runner = MagicMock()

        result = PipCompiler(PYTHON, runner=runner).compile(merged, lock)

        assert result.success is False
        assert "numpy==1.26.4 and numpy==2.1.0" in result.conflict_report
        runner.assert_not_called()
        assert lock.read_text() == "numpy==1.26.4\n"
        # the report is a structural conflict, not a parseable version conflict
        assert parse_conflicts(result.conflict_report).conclusive is False

    def test_clean_compile_promotes_pending(self, tmp_path):
        merged = write(tmp_path / "requirements-merged.in", "numpy\n")
        lock = tmp_path / "requirements.txt"
        runner = _compiling_runner("numpy==2.1.0\n")

        result = PipCompiler(PYTHON, runner=runner).compile(merged, lock)

        assert result.success is True
        assert result.lock_path == lock
        assert read_pins(lock) == {"numpy": "2.1.0"}
        assert not (tmp_path / "requirements.txt.pending").exists()
        argv = runner.call_args.args[0]
        assert argv[:4] == [str(PYTHON), "-m", "piptools", "compile"]
        assert "--upgrade" not in argv

    def test_existing_pins_seed_the_compile(self, tmp_path):
        merged = write(tmp_path / "requirements-merged.in", "numpy\n")
        lock = write(tmp_path / "requirements.txt", "numpy==2.0.2\n")
        seen = {}

        def _run(argv, timeout=None):
            pending = Path(argv[argv.index("--output-file") + 1])
            seen["seed"] = pending.read_text()
            pending.write_text("numpy==2.0.2\n")
            return ok()

        PipCompiler(PYTHON, runner=MagicMock(side_effect=_run)).compile(merged, lock)
        assert seen["seed"] == "numpy==2.0.2\n"

    def test_upgrade_discards_existing_pins(self, tmp_path):
        merged = write(tmp_path / "requirements-merged.in", "numpy\n")
        lock = write(tmp_path / "requirements.txt", "numpy==2.0.2\n")
        runner = _compiling_runner("numpy==2.1.0\n")

        PipCompiler(PYTHON, runner=runner).compile(merged, lock, upgrade=True)

        assert "--upgrade" in runner.call_args.args[0]
        assert read_pins(lock) == {"numpy": "2.1.0"}

    def test_failed_compile_keeps_previous_lock(self, tmp_path):
        merged = write(tmp_path / "requirements-merged.in", "libA\nlibB>=3.0\n")
        lock = write(tmp_path / "requirements.txt", "libA==1.9\nlibB==2.9.1\n")
        runner = MagicMock(return_value=failed(
            stderr="libA 2.0 requires libB<3.0, but you have libB 3.2 which is incompatible."
        ))

        result = PipCompiler(PYTHON, runner=runner).compile(merged, lock)

        assert result.success is False
        assert "libB<3.0" in result.conflict_report
        assert lock.read_text() == "libA==1.9\nlibB==2.9.1\n"
        assert not (tmp_path / "requirements.txt.pending").exists()

    def test_empty_output_is_a_failure(self, tmp_path):
        merged = write(tmp_path / "requirements-merged.in", "numpy\n")
        lock = tmp_path / "requirements.txt"
        result = PipCompiler(PYTHON, runner=_compiling_runner("")).compile(merged, lock)
        assert result.success is False
        assert not lock.exists()


# ---------------------------------------------------------------------------
# PyenvRuntimeManager
# ---------------------------------------------------------------------------

class TestPyenv:
    def test_list_available_filters_and_sorts(self, tmp_path):
        runner = MagicMock(return_value=ok(PYENV_LIST))
        manager = PyenvRuntimeManager(pyenv_root=tmp_path, runner=runner)
        assert manager.list_available(("3.12", "3.13")) == ["3.13.1", "3.12.8", "3.12.7"]
        assert runner.call_args.args[0][1:] == ["install", "--list"]

    def test_list_available_failure(self, tmp_path):
        manager = PyenvRuntimeManager(pyenv_root=tmp_path, runner=MagicMock(return_value=failed()))
        assert manager.list_available(("3.12",)) == []

    def test_bundled_executable_preferred(self, tmp_path):
        write(tmp_path / "bin" / "pyenv", "#!/bin/sh\n")
        manager = PyenvRuntimeManager(pyenv_root=tmp_path)
        assert manager.executable == str(tmp_path / "bin" / "pyenv")
        assert manager.install_command("3.12.8")[1:] == ["install", "-s", "3.12.8"]
        assert manager.set_global_command("3.12.8")[1:] == ["global", "3.12.8"]
        assert manager.python_path("3.12.8") == tmp_path / "versions" / "3.12.8" / "bin" / "python"

    def test_global_version(self, tmp_path):
        manager = PyenvRuntimeManager(pyenv_root=tmp_path, runner=MagicMock(return_value=ok("3.12.8\n")))
        assert manager.global_version() == "3.12.8"


# ---------------------------------------------------------------------------
# PipInstaller
# ---------------------------------------------------------------------------

class TestPipInstaller:
    def test_installed_parses_pip_list(self):
        payload = json.dumps([
            {"name": "NumPy", "version": "2.1.0"},
            {"name": "PyYAML", "version": "6.0.2"},
        ])
        installer = PipInstaller(PYTHON, runner=MagicMock(return_value=ok(payload)))
        assert installer.installed() == {"numpy": "2.1.0", "pyyaml": "6.0.2"}

    def test_installed_bad_output(self):
        installer = PipInstaller(PYTHON, runner=MagicMock(return_value=ok("not json")))
        assert installer.installed() == {}

    def test_bootstrap_caps_pip(self):
        argv = PipInstaller(PYTHON).bootstrap_command()
        assert PIP_SPEC in argv
        assert "pip-tools" in argv

    def test_install_lock_uses_network_flags_and_cache(self, tmp_path):
        installer = PipInstaller(PYTHON, cache_dir=tmp_path / "cache")
        argv = installer.install_lock_command(tmp_path / "requirements.txt")
        assert argv[:5] == [str(PYTHON), "-m", "pip", "install", "-r"]
        assert "--timeout" in argv and "--retries" in argv
        assert argv[-2:] == ["--cache-dir", str(tmp_path / "cache")]

    def test_install_exact(self):
        argv = PipInstaller(PYTHON).install_exact_command({"pandas": "2.2.3", "numpy": "2.1.0"})
        assert "--force-reinstall" in argv
        assert "--no-deps" in argv
        assert argv[-2:] == ["numpy==2.1.0", "pandas==2.2.3"]

    def test_freeze(self):
        installer = PipInstaller(PYTHON, runner=MagicMock(return_value=ok("numpy==2.1.0\n\n")))
        assert installer.freeze() == ["numpy==2.1.0"]


# ---------------------------------------------------------------------------
# Opportunistic installs
# ---------------------------------------------------------------------------

class TestSystemPackages:
    @patch("base_env.core.verify.shutil.which", return_value=None)
    def test_without_homebrew_everything_is_skipped(self, _which):
        runner = MagicMock()
        statuses = SystemPackages(runner=runner).ensure(("libpq",))
        assert statuses == {"libpq": "skipped: Homebrew not installed"}
        runner.assert_not_called()

    @patch("base_env.core.verify.shutil.which", return_value="/opt/homebrew/bin/brew")
    def test_present_installed_and_failed(self, _which):
        runner = MagicMock(side_effect=[
            ok(),                    # brew list libgit2
            failed(), ok(),          # libpq: missing, installed
            failed(), failed(),      # openssl@3: missing, install fails
        ])
        statuses = SystemPackages(runner=runner).ensure()
        assert statuses == {
            "libgit2": "present",
            "libpq": "installed",
            "openssl@3": "skipped: brew install failed",
        }


class TestAuxiliaryToolchains:
    def test_present_and_missing_without_brew(self):
        which = {"R": "/usr/bin/R"}
        with patch("base_env.core.verify.shutil.which", side_effect=which.get):
            statuses = AuxiliaryToolchains(runner=MagicMock()).ensure()
        assert statuses == {"R": "present", "julia": "skipped: Homebrew not installed"}

    def test_cask_install(self):
        installed = {"brew": "/opt/homebrew/bin/brew"}

        def _run(argv, timeout=None):
            installed[argv[-1]] = f"/opt/homebrew/bin/{argv[-1]}"
            return ok()

        runner = MagicMock(side_effect=_run)
        with patch("base_env.core.verify.shutil.which", side_effect=installed.get):
            statuses = AuxiliaryToolchains(runner=runner).ensure()
        assert statuses["julia"] == "installed"
        assert statuses["R"] == "skipped: install did not produce a binary"

    def test_present_toolchains_skip_homebrew(self):
        which = {
            "brew": "/opt/homebrew/bin/brew",
            "R": "/usr/bin/R",
            "julia": "/usr/local/bin/julia",
        }
        runner = MagicMock()
        with patch("base_env.core.verify.shutil.which", side_effect=which.get) as lookup:
            statuses = AuxiliaryToolchains(runner=runner).ensure()
        assert statuses == {"R": "present", "julia": "present"}
        runner.assert_not_called()
        assert [c.args[0] for c in lookup.call_args_list] == ["brew", "R", "julia"]
