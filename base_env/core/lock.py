"""Whole-run mutual exclusion using directory creation as test-and-set."""

from __future__ import annotations

import atexit
import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from base_env.core.errors import LockAcquireError, LockHeldError
from base_env.core.models import LockHandle

logger = logging.getLogger(__name__)

STALE_PURGE_ATTEMPTS = 5
FRESH_MARKER_SECONDS = 10.0  # a marker without a pid file is still being written
PID_FILE = "pid"
STAGE_LOG = "stage.log"
PROGRAM = "base-env"


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def process_command(pid: int) -> Optional[str]:
    """Command line of ``pid`` via ps, or None when it cannot be read."""
    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "command="],
            capture_output=True, text=True, timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


class LockManager:
    """Marker directory with a pid file and a stage log."""

    def __init__(self, lock_dir: Path, program: str = PROGRAM):
        self.lock_dir = lock_dir
        self.program = program
        self.handle: Optional[LockHandle] = None
        self._previous_handlers: dict[int, object] = {}
        self._atexit_registered = False

    @property
    def pid_file(self) -> Path:
        return self.lock_dir / PID_FILE

    @property
    def stage_log(self) -> Path:
        return self.lock_dir / STAGE_LOG

    # ── Acquire / release ────────────────────────────────────────────

    def acquire(self) -> LockHandle:
        self.lock_dir.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(1, STALE_PURGE_ATTEMPTS + 1):
            try:
                self.lock_dir.mkdir()
            except FileExistsError:
                holder = self.read_holder()
                if self._held_by_live_instance(holder):
                    raise LockHeldError(
                        holder.holder_pid if holder else 0, self.current_stage()
                    )
                logger.warning(
                    "Removing stale lock %s (pid %s), attempt %d/%d",
                    self.lock_dir,
                    holder.holder_pid if holder else "unknown",
                    attempt, STALE_PURGE_ATTEMPTS,
                )
                shutil.rmtree(self.lock_dir, ignore_errors=True)
                continue
            return self._claim()
        raise LockAcquireError(
            f"could not acquire {self.lock_dir} after {STALE_PURGE_ATTEMPTS} attempts"
        )

    def _claim(self) -> LockHandle:
        now = datetime.now()
        self.pid_file.write_text(f"{os.getpid()}\n{now.isoformat()}\n{self.program}\n")
        self.stage_log.touch()
        self.handle = LockHandle(
            holder_pid=os.getpid(),
            acquired_at=now,
            stage_log=str(self.stage_log),
            program=self.program,
        )
        self._install_handlers()
        self.record_stage("acquired")
        logger.debug("Acquired lock %s", self.lock_dir)
        return self.handle

    def release(self) -> None:
        """Remove the marker if this process holds it. Safe to call repeatedly."""
        if self.handle is None:
            return
        holder = self.read_holder()
        if holder is not None and holder.holder_pid == self.handle.holder_pid:
            shutil.rmtree(self.lock_dir, ignore_errors=True)
        self.handle = None
        self._restore_handlers()
        logger.debug("Released lock %s", self.lock_dir)

    @contextmanager
    def held(self) -> Iterator[LockHandle]:
        handle = self.acquire()
        try:
            yield handle
        finally:
            self.release()

    # ── Holder inspection ────────────────────────────────────────────

    def read_holder(self) -> Optional[LockHandle]:
        try:
            lines = self.pid_file.read_text().splitlines()
        except OSError:
            return None
        try:
            pid = int(lines[0].strip())
            acquired_at = datetime.fromisoformat(lines[1].strip())
        except (IndexError, ValueError):
            return None
        program = lines[2].strip() if len(lines) > 2 else ""
        return LockHandle(
            holder_pid=pid,
            acquired_at=acquired_at,
            stage_log=str(self.stage_log),
            program=program,
        )

    def _held_by_live_instance(self, holder: Optional[LockHandle]) -> bool:
        if holder is None:
            try:
                age = time.time() - self.lock_dir.stat().st_mtime
            except OSError:
                return False
            return age < FRESH_MARKER_SECONDS
        if not pid_alive(holder.holder_pid):
            return False
        if holder.holder_pid == os.getpid():
            return True
        command = process_command(holder.holder_pid)
        if command is None:
            return True  # alive but unreadable; assume it is ours
        return self._is_same_program(command)

    def _is_same_program(self, command: str) -> bool:
        return self.program in command or "base_env" in command

    def record_stage(self, stage: str) -> None:
        """Append a stage marker for concurrent invocations to report."""
        if self.handle is None:
            return
        try:
            with open(self.stage_log, "a") as log:
                log.write(f"{datetime.now().isoformat()} {stage}\n")
        except OSError as e:
            logger.debug("Could not write stage log: %s", e)

    def current_stage(self) -> Optional[str]:
        try:
            lines = [line for line in self.stage_log.read_text().splitlines() if line.strip()]
        except OSError:
            return None
        if not lines:
            return None
        _, _, stage = lines[-1].partition(" ")
        return stage or None

    # ── Exit paths ───────────────────────────────────────────────────

    def _install_handlers(self) -> None:
        if not self._atexit_registered:
            atexit.register(self.release)
            self._atexit_registered = True
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGTERM, getattr(signal, "SIGHUP", None)):
            if signum is None:
                continue
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._on_signal)

    def _restore_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            self._previous_handlers.clear()
            return
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _on_signal(self, signum, frame) -> None:
        logger.warning("Received signal %d; stopping", signum)
        # Unwinds through the caller's finally blocks, which release the lock.
        raise SystemExit(128 + signum)
