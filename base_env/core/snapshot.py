"""Snapshot and rollback of the managed environment.

A snapshot directory holds ``manifest.json``, copies of the declarative
files (``files/``) and, for full snapshots, ``env.tar.gz``. Small
environments are archived whole; large ones only record name/version pairs,
which are reinstalled exactly on restore, removing anything installed since.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tarfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from base_env.core.errors import RollbackError
from base_env.core.models import Snapshot, SnapshotKind, normalize_name

logger = logging.getLogger(__name__)

SNAPSHOT_THRESHOLD_BYTES = 500 * 1024 * 1024
DEFAULT_RETENTION = 2
MANIFEST = "manifest.json"
ARCHIVE = "env.tar.gz"
FILES_DIR = "files"


def select_snapshot_kind(
    byte_count: int, threshold: int = SNAPSHOT_THRESHOLD_BYTES
) -> SnapshotKind:
    """Full archive below the threshold, metadata-only at or above it."""
    if byte_count < threshold:
        return SnapshotKind.FULL_ARCHIVE
    return SnapshotKind.METADATA_ONLY


def directory_size(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                stat = os.lstat(os.path.join(root, name))
            except OSError:
                continue
            total += stat.st_size
    return total


class SnapshotManager:
    """Captures and restores the venv plus its declarative files."""

    def __init__(
        self,
        snapshot_dir: Path,
        venv_dir: Path,
        declarative_files: Sequence[Path],
        installed: Callable[[], Mapping[str, str]],
        retention: int = DEFAULT_RETENTION,
        threshold_bytes: int = SNAPSHOT_THRESHOLD_BYTES,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.snapshot_dir = snapshot_dir
        self.venv_dir = venv_dir
        self.declarative_files = list(declarative_files)
        self.installed = installed
        self.retention = retention
        self.threshold_bytes = threshold_bytes
        self.clock = clock

    # ── Capture ──────────────────────────────────────────────────────

    def snapshot(self) -> Optional[Snapshot]:
        """Best effort: failures are logged and yield None."""
        if not self.venv_dir.exists():
            logger.info("No environment at %s; nothing to snapshot", self.venv_dir)
            return None
        try:
            return self._capture()
        except (OSError, tarfile.TarError, ValueError) as e:
            logger.warning("Snapshot failed, continuing without one: %s", e)
            return None

    def _capture(self) -> Snapshot:
        size = directory_size(self.venv_dir)
        kind = select_snapshot_kind(size, self.threshold_bytes)
        timestamp = self.clock()
        target = self.snapshot_dir / f"{timestamp:%Y%m%d-%H%M%S-%f}-{kind.value}"
        target.mkdir(parents=True)
        logger.info(
            "Capturing %s snapshot (%.1f MB) in %s",
            kind.value, size / (1024 * 1024), target,
        )
        try:
            versions = dict(self.installed())
            saved = self._copy_declarative(target / FILES_DIR)
            if kind is SnapshotKind.FULL_ARCHIVE:
                with tarfile.open(target / ARCHIVE, "w:gz") as tar:
                    tar.add(self.venv_dir, arcname=self.venv_dir.name)
            manifest = {
                "timestamp": timestamp.isoformat(),
                "kind": kind.value,
                "source": str(self.venv_dir),
                "size_bytes": size,
                "versions": versions,
                "files": saved,
            }
            (target / MANIFEST).write_text(json.dumps(manifest, indent=2, sort_keys=True))
        except BaseException:
            shutil.rmtree(target, ignore_errors=True)
            raise
        self.prune(kind)
        return Snapshot(
            timestamp=timestamp,
            kind=kind,
            payload_ref=str(target),
            recorded_versions=versions,
        )

    def _copy_declarative(self, dest: Path) -> list[str]:
        dest.mkdir(parents=True, exist_ok=True)
        saved = []
        for path in self.declarative_files:
            if path.exists():
                shutil.copy2(path, dest / path.name)
                saved.append(path.name)
        return saved

    # ── Inventory ────────────────────────────────────────────────────

    def snapshots(self, kind: Optional[SnapshotKind] = None) -> list[Snapshot]:
        """Snapshots newest first, optionally of one kind."""
        found = []
        if not self.snapshot_dir.exists():
            return found
        for entry in self.snapshot_dir.iterdir():
            manifest_path = entry / MANIFEST
            if not manifest_path.exists():
                continue
            try:
                manifest = json.loads(manifest_path.read_text())
                snap = Snapshot(
                    timestamp=datetime.fromisoformat(manifest["timestamp"]),
                    kind=SnapshotKind(manifest["kind"]),
                    payload_ref=str(entry),
                    recorded_versions=manifest.get("versions", {}),
                )
            except (ValueError, KeyError) as e:
                logger.warning("Ignoring unreadable snapshot %s: %s", entry, e)
                continue
            if kind is None or snap.kind is kind:
                found.append(snap)
        return sorted(found, key=lambda s: s.timestamp, reverse=True)

    def prune(self, kind: SnapshotKind) -> None:
        for stale in self.snapshots(kind)[self.retention:]:
            logger.debug("Evicting snapshot %s", stale.payload_ref)
            shutil.rmtree(stale.payload_ref, ignore_errors=True)

    # ── Restore ──────────────────────────────────────────────────────

    def restore(
        self,
        reinstall: Callable[[Mapping[str, str]], bool],
        preferred: Optional[Snapshot] = None,
    ) -> str:
        """Restore from ``preferred`` or the best available snapshot.

        Metadata snapshots are tried first (``reinstall`` must return True
        only once the recorded versions verify); a full archive is the
        fallback. Returns a description of what was restored and raises
        RollbackError when nothing could be restored.
        """
        order: list[Snapshot] = []
        if preferred is not None:
            order.append(preferred)
        newest = (
            self.snapshots(SnapshotKind.METADATA_ONLY)[:1]
            + self.snapshots(SnapshotKind.FULL_ARCHIVE)[:1]
        )
        for candidate in newest:
            if all(candidate.payload_ref != s.payload_ref for s in order):
                order.append(candidate)
        if not order:
            raise RollbackError("no snapshot available; environment left untouched")

        errors = []
        for snap in order:
            try:
                if snap.kind is SnapshotKind.METADATA_ONLY:
                    self._restore_metadata(snap, reinstall)
                else:
                    self._restore_archive(snap)
            except (RollbackError, OSError, tarfile.TarError) as e:
                logger.warning("Restore from %s failed: %s", snap.payload_ref, e)
                errors.append(f"{snap.kind.value}: {e}")
                continue
            self._restore_declarative(snap)
            return f"restored {snap.kind.value} snapshot from {snap.timestamp:%Y-%m-%d %H:%M:%S}"
        raise RollbackError("; ".join(errors))

    def _restore_metadata(
        self, snap: Snapshot, reinstall: Callable[[Mapping[str, str]], bool]
    ) -> None:
        if not snap.recorded_versions:
            raise RollbackError("metadata snapshot has no recorded versions")
        if not self.venv_dir.exists():
            raise RollbackError(f"{self.venv_dir} is missing; cannot reinstall in place")
        if not reinstall(snap.recorded_versions):
            raise RollbackError("recorded versions did not verify after reinstall")
        expected = {normalize_name(k): v for k, v in snap.recorded_versions.items()}
        actual = {normalize_name(k): v for k, v in self.installed().items()}
        if actual != expected:
            extra = sorted(set(actual) - set(expected))
            detail = f"; extra: {', '.join(extra[:5])}" if extra else ""
            raise RollbackError(f"installed packages differ from the snapshot manifest{detail}")

    def _restore_archive(self, snap: Snapshot) -> None:
        archive = Path(snap.payload_ref) / ARCHIVE
        if not archive.exists():
            raise RollbackError(f"archive missing: {archive}")
        parent = self.venv_dir.parent
        staging = parent / f".{self.venv_dir.name}.restore"
        broken = parent / f".{self.venv_dir.name}.broken"
        for leftover in (staging, broken):
            if leftover.exists():
                shutil.rmtree(leftover)
        staging.mkdir(parents=True)
        try:
            with tarfile.open(archive, "r:gz") as tar:
                tar.extractall(staging, filter="tar")
            extracted = staging / self.venv_dir.name
            if not extracted.is_dir():
                raise RollbackError(f"archive does not contain {self.venv_dir.name}")
            if self.venv_dir.exists():
                os.replace(self.venv_dir, broken)
            try:
                os.replace(extracted, self.venv_dir)
            except OSError:
                if broken.exists():
                    os.replace(broken, self.venv_dir)
                raise
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        shutil.rmtree(broken, ignore_errors=True)

    def _restore_declarative(self, snap: Snapshot) -> None:
        saved = Path(snap.payload_ref) / FILES_DIR
        if not saved.exists():
            return
        for path in self.declarative_files:
            copy = saved / path.name
            if copy.exists():
                shutil.copy2(copy, path)
