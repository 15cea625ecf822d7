"""Self-healing executor — runs mutating steps under verification-based retry.

Exit codes are never trusted on their own. Every attempt is followed by a
``verify_fn`` call against observable state, and only that verdict decides
whether the step succeeded:

* zero exit + failing verification  -> failed attempt, retried
* non-zero exit + passing verification -> success ("already satisfied")

The retry loop is an explicit state machine::

    ATTEMPTING -> VERIFYING -> SUCCEEDED
                            -> RECOVERING -> ATTEMPTING
                            -> EXHAUSTED
"""

from __future__ import annotations

import logging
import subprocess
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from base_env.core.errors import OperationFailedError
from base_env.core.models import (
    AttemptRecord,
    CommandResult,
    OperationRecord,
    OperationStatus,
    Verification,
)

logger = logging.getLogger(__name__)

BACKOFF_BASE_SECONDS = 2.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_COMMAND_TIMEOUT = 1800

Command = Union[Sequence[str], Callable[[], CommandResult]]
VerifyFn = Callable[[], Verification]
RecoveryFn = Callable[[], object]
RecordSink = Callable[[OperationRecord], None]


def run_command(
    argv: Sequence[str],
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    log_path: Optional[Path] = None,
    env: Optional[dict[str, str]] = None,
    cwd: Optional[Path] = None,
) -> CommandResult:
    """Run a command and capture its result without raising on failure.

    With ``log_path`` the output is streamed to that file instead of being
    held in memory, for long installs.
    """
    try:
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a") as log:
                log.write(f"$ {' '.join(argv)}\n")
                log.flush()
                result = subprocess.run(
                    list(argv),
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    text=True,
                    timeout=timeout,
                    env=env,
                    cwd=cwd,
                )
            return CommandResult(
                success=result.returncode == 0,
                stdout=f"(output streamed to {log_path})",
                exit_code=result.returncode,
            )
        result = subprocess.run(
            list(argv),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            cwd=cwd,
        )
        return CommandResult(
            success=result.returncode == 0,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(
            success=False,
            exit_code=-1,
            error=f"Command timed out after {timeout} seconds",
            timed_out=True,
        )
    except OSError as e:
        return CommandResult(success=False, exit_code=127, error=str(e))


class Phase(Enum):
    ATTEMPTING = "attempting"
    VERIFYING = "verifying"
    RECOVERING = "recovering"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass
class OperationOutcome:
    success: bool
    record: OperationRecord
    actual_state: str = ""
    reason: str = ""
    mutated: bool = False

    def raise_for_failure(self) -> "OperationOutcome":
        if not self.success:
            raise OperationFailedError(
                operation=self.record.name,
                expected_state=self.record.expected_state,
                actual_state=self.actual_state,
                reason=self.reason,
            )
        return self


@dataclass
class _Machine:
    """Inspectable retry state for one operation."""

    max_attempts: int
    phase: Phase = Phase.ATTEMPTING
    attempt: int = 0
    next_delay: float = BACKOFF_BASE_SECONDS

    def move(self, phase: Phase) -> None:
        self.phase = phase


class SelfHealingExecutor:
    """Universal wrapper for every mutating step of a run."""

    def __init__(
        self,
        record_sink: Optional[RecordSink] = None,
        sleep: Callable[[float], None] = time.sleep,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        log_path: Optional[Path] = None,
    ):
        self.record_sink = record_sink
        self.sleep = sleep
        self.command_timeout = command_timeout
        self.log_path = log_path
        self.records: list[OperationRecord] = []
        self.current: Optional[str] = None

    @property
    def mutations(self) -> int:
        """Number of operations in this run that actually ran a command."""
        return sum(
            1
            for r in self.records
            if any(a.exit_status is not None for a in r.attempts)
        )

    def execute(
        self,
        name: str,
        command: Command,
        verify_fn: VerifyFn,
        expected_state: str,
        recovery_action: Optional[RecoveryFn] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        skip_if_satisfied: bool = True,
    ) -> OperationOutcome:
        record = OperationRecord(
            id=str(uuid.uuid4()),
            name=name,
            expected_state=expected_state,
        )
        self.current = name

        if skip_if_satisfied:
            pre = self._verify(verify_fn)
            if pre.ok:
                logger.debug("%s already satisfied: %s", name, pre.actual_state)
                record.attempts.append(AttemptRecord(
                    attempt_no=0,
                    exit_status=None,
                    verification_result=pre.actual_state or "satisfied",
                    verified=True,
                ))
                return self._finish(record, True, pre.actual_state)

        machine = _Machine(max_attempts=max(1, max_attempts))
        last = Verification(ok=False)
        last_result = CommandResult(success=False)

        while True:
            if machine.phase is Phase.ATTEMPTING:
                machine.attempt += 1
                logger.info(
                    "%s: attempt %d/%d", name, machine.attempt, machine.max_attempts
                )
                last_result = self._run(command)
                machine.move(Phase.VERIFYING)

            elif machine.phase is Phase.VERIFYING:
                last = self._verify(verify_fn)
                record.attempts.append(AttemptRecord(
                    attempt_no=machine.attempt,
                    exit_status=last_result.exit_code,
                    verification_result=last.actual_state or last.detail,
                    verified=last.ok,
                ))
                if last.ok:
                    if not last_result.success:
                        logger.info(
                            "%s exited %d but verified; treating as satisfied",
                            name, last_result.exit_code,
                        )
                    machine.move(Phase.SUCCEEDED)
                elif machine.attempt >= machine.max_attempts:
                    machine.move(Phase.EXHAUSTED)
                else:
                    logger.warning(
                        "%s not verified (exit %d): expected %s, got %s",
                        name, last_result.exit_code, expected_state,
                        last.actual_state or last.detail or "nothing",
                    )
                    machine.move(Phase.RECOVERING)

            elif machine.phase is Phase.RECOVERING:
                if recovery_action is not None:
                    try:
                        recovery_action()
                    except Exception as e:
                        logger.warning("%s recovery action failed: %s", name, e)
                delay = machine.next_delay
                machine.next_delay *= 2
                logger.info("%s: retrying in %.0fs", name, delay)
                self.sleep(delay)
                machine.move(Phase.ATTEMPTING)

            elif machine.phase is Phase.SUCCEEDED:
                return self._finish(record, True, last.actual_state)

            else:  # EXHAUSTED
                reason = (
                    last.detail
                    or last_result.error
                    or _tail(last_result.stderr)
                    or f"verification failed after {machine.attempt} attempts"
                )
                logger.error(
                    "%s exhausted %d attempts: expected %s, got %s",
                    name, machine.attempt, expected_state,
                    last.actual_state or "nothing",
                )
                return self._finish(record, False, last.actual_state, reason)

    def _run(self, command: Command) -> CommandResult:
        if callable(command):
            try:
                return command()
            except Exception as e:
                return CommandResult(success=False, exit_code=1, error=str(e))
        return run_command(
            command, timeout=self.command_timeout, log_path=self.log_path
        )

    @staticmethod
    def _verify(verify_fn: VerifyFn) -> Verification:
        try:
            return verify_fn()
        except Exception as e:
            return Verification(ok=False, detail=f"verification error: {e}")

    def _finish(
        self,
        record: OperationRecord,
        success: bool,
        actual_state: str,
        reason: str = "",
    ) -> OperationOutcome:
        record.outcome = (
            OperationStatus.VERIFIED_SUCCESS if success else OperationStatus.FAILED
        )
        self.records.append(record)
        if self.record_sink is not None:
            self.record_sink(record)
        mutated = any(a.exit_status is not None for a in record.attempts)
        return OperationOutcome(
            success=success,
            record=record,
            actual_state=actual_state,
            reason=reason,
            mutated=mutated,
        )


def _tail(text: str, lines: int = 3) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])
