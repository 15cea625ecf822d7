"""Shared test fixtures for base-env tests."""

from __future__ import annotations

from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock

import pytest

from base_env.config import Settings
from base_env.core.models import (
    CommandResult,
    ConflictRecord,
    EnvironmentSignature,
    Platform,
)
from base_env.data.store import DataStore


@pytest.fixture
def temp_db(tmp_path):
    """DataStore with a temporary SQLite database."""
    db_path = str(tmp_path / "test.db")
    store = DataStore(db_path=db_path)
    yield store
    store.close()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in a temporary environment directory."""
    env_dir = tmp_path / "env"
    env_dir.mkdir()
    return Settings(env_dir=env_dir)


@pytest.fixture
def linux_signature() -> EnvironmentSignature:
    return EnvironmentSignature(
        platform=Platform.LINUX,
        architecture="x86_64",
        os_version="Ubuntu 24.04",
        declared_packages=frozenset({"numpy", "pandas"}),
    )


@pytest.fixture
def mac_torch_signature() -> EnvironmentSignature:
    return EnvironmentSignature(
        platform=Platform.MACOS,
        architecture="arm64",
        os_version="15.1",
        declared_packages=frozenset({"torch", "numpy"}),
    )


@pytest.fixture
def scenario_c_conflict() -> ConflictRecord:
    return ConflictRecord(
        requiring_pkg="libA",
        requiring_ver="2.0",
        required_pkg="libB",
        required_specifier="<3.0",
        installed_ver="3.2",
    )


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(success=True, stdout=stdout, exit_code=0)


def failed(exit_code: int = 1, stderr: str = "") -> CommandResult:
    return CommandResult(success=False, stderr=stderr, exit_code=exit_code)


def make_registry(
    versions: Optional[dict[str, list[str]]] = None,
    dependencies: Optional[dict[tuple[str, str], dict[str, str]]] = None,
) -> MagicMock:
    """A PyPIRegistry stand-in serving canned data (versions newest first)."""
    versions = versions or {}
    dependencies = dependencies or {}
    registry = MagicMock()
    registry.timeout = 5.0
    registry.stable_versions.side_effect = lambda name: list(versions.get(name, []))
    registry.dependencies.side_effect = (
        lambda name, version: dict(dependencies.get((name, version), {}))
    )
    return registry


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path
