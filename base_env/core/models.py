"""Core data models for base-env."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from packaging.utils import canonicalize_name


class Platform(Enum):
    LINUX = "linux"
    MACOS = "macos"
    WINDOWS = "windows"


class RunMode(Enum):
    INSTALL = "install"
    UPDATE = "update"
    FORCE_REINSTALL = "force-reinstall"


@dataclass(frozen=True)
class EnvironmentSignature:
    platform: Platform
    architecture: str  # "arm64", "x86_64", ...
    os_version: str  # "15.1", "Ubuntu 24.04", ...
    declared_packages: frozenset[str] = frozenset()

    def declares(self, package: str) -> bool:
        return normalize_name(package) in self.declared_packages


# ── Compatibility ────────────────────────────────────────────────────


class IssueStatus(Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class SelectionKind(Enum):
    DEFAULT = "default"
    RECOMMENDED = "recommended"


@dataclass(frozen=True)
class CompatibilityRule:
    id: str
    predicate: Callable[[EnvironmentSignature], bool]
    recommended_version: str  # minor series, e.g. "3.12"
    reason: str
    probe_package: str = ""
    probe_code: str = ""


@dataclass
class CompatibilityState:
    issue_id: str
    status: IssueStatus = IssueStatus.ACTIVE
    last_checked_at: Optional[datetime] = None
    last_upgrade_tested_at: Optional[datetime] = None
    chosen_version: Optional[str] = None


@dataclass
class VersionSelection:
    kind: SelectionKind
    version: str
    reason: str
    issue_id: Optional[str] = None


class ProbeOutcome(Enum):
    PASSED = "passed"
    FAILED = "failed"  # ran to completion with a non-zero exit
    CRASHED = "crashed"
    TIMED_OUT = "timed_out"
    INCONCLUSIVE = "inconclusive"  # probe environment could not be built


# ── Constraints ──────────────────────────────────────────────────────


class Operator(Enum):
    EQ = "=="
    GE = ">="
    NONE = ""
    OTHER = "other"  # any other explicit specifier (<, ~=, ranges)


class Origin(Enum):
    USER = "user"
    SMART_DEFAULT = "smart-default"
    RESOLVER = "resolver"


@dataclass
class ConstraintEntry:
    package: str
    operator: Operator = Operator.NONE
    version: str = ""
    origin: Origin = Origin.USER
    specifier: str = ""  # full specifier text, e.g. ">=0.20.0,<0.21.0"
    extras: tuple[str, ...] = ()
    marker: str = ""
    comment: str = ""

    @property
    def is_explicit(self) -> bool:
        return self.operator is not Operator.NONE

    @property
    def key(self) -> str:
        return normalize_name(self.package)

    def requirement(self) -> str:
        text = self.package
        if self.extras:
            text += "[" + ",".join(self.extras) + "]"
        if self.specifier:
            text += self.specifier
        elif self.operator in (Operator.EQ, Operator.GE) and self.version:
            text += f"{self.operator.value}{self.version}"
        if self.marker:
            text += f"; {self.marker}"
        return text


def normalize_name(name: str) -> str:
    return canonicalize_name(name.strip())


# ── Conflicts & resolution ───────────────────────────────────────────


@dataclass(frozen=True)
class ConflictRecord:
    requiring_pkg: str
    requiring_ver: str
    required_pkg: str
    required_specifier: str
    installed_ver: str


@dataclass
class ParseResult:
    records: list[ConflictRecord] = field(default_factory=list)

    @property
    def conclusive(self) -> bool:
        return bool(self.records)


class Strategy(Enum):
    REGISTRY = "registry"
    SECONDARY_INDEX = "secondary-index"
    PATTERN_SAMPLING = "pattern-sampling"
    FALLBACK = "fallback"


@dataclass
class ResolutionCandidate:
    package: str
    version: str
    rationale: str
    strategy: Strategy


@dataclass
class StrategyAttempt:
    strategy: Strategy
    candidates: int
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.candidates > 0


@dataclass
class ResolutionOutcome:
    candidates: list[ResolutionCandidate] = field(default_factory=list)
    attempts: list[StrategyAttempt] = field(default_factory=list)
    conflicts: list[ConflictRecord] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return bool(self.candidates)

    @property
    def strategy(self) -> Optional[Strategy]:
        for attempt in self.attempts:
            if attempt.succeeded:
                return attempt.strategy
        return None


# ── Execution ────────────────────────────────────────────────────────


@dataclass
class CommandResult:
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    error: str = ""
    timed_out: bool = False


@dataclass
class Verification:
    ok: bool
    actual_state: str = ""
    detail: str = ""


class OperationStatus(Enum):
    VERIFIED_SUCCESS = "verified_success"
    FAILED = "failed"


@dataclass
class AttemptRecord:
    attempt_no: int
    exit_status: Optional[int]  # None when the command was not run
    verification_result: str
    verified: bool
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class OperationRecord:
    id: str
    name: str
    expected_state: str
    attempts: list[AttemptRecord] = field(default_factory=list)
    outcome: Optional[OperationStatus] = None
    started_at: datetime = field(default_factory=datetime.now)


# ── Snapshots & locking ──────────────────────────────────────────────


class SnapshotKind(Enum):
    FULL_ARCHIVE = "full_archive"
    METADATA_ONLY = "metadata_only"


@dataclass
class Snapshot:
    timestamp: datetime
    kind: SnapshotKind
    payload_ref: str  # directory holding manifest.json and payload
    recorded_versions: dict[str, str] = field(default_factory=dict)


@dataclass
class LockHandle:
    holder_pid: int
    acquired_at: datetime
    stage_log: str
    program: str = ""


# ── Run result ───────────────────────────────────────────────────────


@dataclass
class RunResult:
    success: bool
    run_id: str
    mode: RunMode
    duration_seconds: float
    exit_code: int = 0
    python_version: Optional[str] = None
    mutations: int = 0
    already_converged: bool = False
    warnings: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    error_message: Optional[str] = None
    expected_state: Optional[str] = None
    actual_state: Optional[str] = None
    last_operation: Optional[str] = None
    rollback_outcome: Optional[str] = None
