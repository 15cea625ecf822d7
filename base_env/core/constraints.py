"""Constraint store — user requirements plus smart defaults, merged safely.

A smart default is a pin applied only when the user left a package
unconstrained. It exists to stop the lock compiler from backtracking through
hundreds of versions of historically fragile packages. User constraints are
never rewritten; resolver pins live in their own file and are layered on top.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

from packaging.requirements import InvalidRequirement, Requirement

from base_env.core.models import (
    ConstraintEntry,
    Operator,
    Origin,
    ResolutionCandidate,
    normalize_name,
)

logger = logging.getLogger(__name__)


# Packages whose loose constraints send the resolver into long backtracking.
SMART_DEFAULTS: dict[str, str] = {
    "bqplot": "0.12.45",
    "ipywidgets": "8.1.7",
    "jupyterlab": "4.4.9",
    "geemap": "0.36.4",
    "plotly": "5.15.0",  # 6.x has breaking changes
    "panel": "1.8.2",
    "bokeh": "3.8.0",  # paired with panel 1.8.2
    "voila": "0.5.11",
    "selenium": "4.36.0",
}


@dataclass(frozen=True)
class CrossPackageRule:
    """When every trigger package is declared, constrain the targets."""

    triggers: tuple[str, ...]
    specifiers: Mapping[str, str]


CROSS_PACKAGE_RULES: tuple[CrossPackageRule, ...] = (
    CrossPackageRule(
        ("transformers", "tokenizers"),
        {"transformers": "<4.52.0", "tokenizers": ">=0.20.0,<0.21.0"},
    ),
    CrossPackageRule(("tensorflow", "numpy"), {"numpy": "<2.0.0"}),
    CrossPackageRule(("scikit-learn", "numpy"), {"numpy": ">=1.17.0"}),
    CrossPackageRule(("pandas", "numpy"), {"numpy": ">=1.20.0"}),
)


DEFAULT_REQUIREMENTS = """\
# Data Manipulation & Analysis
numpy
pandas>=2.0.0
pyarrow
duckdb>=0.9.0
scipy
pydantic>=2.4.0

# Machine Learning
scikit-learn
xgboost
lightgbm
transformers

# Visualization & Plotting
matplotlib
seaborn
plotly  # v6+ has breaking changes
bokeh
altair

# Geospatial Tools
geopandas
geemap

# Interactive Development
jupyter
jupyterlab
ipython
ipywidgets
voila

# Web Deployment Tools
streamlit>=1.28.0
dash
panel
fastapi

# Development & Testing
pytest>=7.4.0
pytest-cov
black
mypy

# API Clients & Web Requests
requests
httpx

# Configuration & Logging
PyYAML
python-dotenv

# System Monitoring
psutil>=5.9.0

# Web Automation
selenium

# Dependency manager
pip-tools
"""


@dataclass
class ConstraintSet:
    """Parsed requirement entries plus pip option / unparseable lines."""

    entries: list[ConstraintEntry] = field(default_factory=list)
    options: list[str] = field(default_factory=list)

    def packages(self) -> frozenset[str]:
        return frozenset(e.key for e in self.entries)


def parse_entry(line: str, origin: Origin = Origin.USER) -> Optional[ConstraintEntry]:
    """Parse one requirement line; None for comments, options or junk."""
    text, _, comment = line.partition("#")
    text = text.strip()
    if not text or text.startswith("-"):
        return None
    try:
        req = Requirement(text)
    except InvalidRequirement:
        return None

    specs = list(req.specifier)
    operator = Operator.NONE
    version = ""
    if len(specs) == 1 and specs[0].operator in ("==", ">="):
        operator = Operator(specs[0].operator)
        version = specs[0].version
    elif specs:
        operator = Operator.OTHER
    return ConstraintEntry(
        package=req.name,
        operator=operator,
        version=version,
        origin=origin,
        specifier=str(req.specifier),
        extras=tuple(sorted(req.extras)),
        marker=str(req.marker) if req.marker else "",
        comment=comment.strip(),
    )


def parse_requirements(text: str, origin: Origin = Origin.USER) -> ConstraintSet:
    result = ConstraintSet()
    for raw in text.splitlines():
        stripped = raw.strip()
        if not stripped or stripped.startswith("#"):
            continue
        entry = parse_entry(stripped, origin)
        if entry is not None:
            result.entries.append(entry)
        else:
            # -r/-c/--index-url and direct references pass through verbatim
            result.options.append(stripped)
    return result


def _entry_from_specifier(package: str, specifier: str, comment: str) -> ConstraintEntry:
    entry = parse_entry(f"{package}{specifier}", Origin.SMART_DEFAULT)
    if entry is None:
        raise ValueError(f"invalid constraint rule: {package}{specifier}")
    entry.comment = comment
    return entry


def merge(
    existing: Sequence[ConstraintEntry],
    smart_defaults: Mapping[str, str] = SMART_DEFAULTS,
    cross_rules: Iterable[CrossPackageRule] = CROSS_PACKAGE_RULES,
) -> list[ConstraintEntry]:
    """Layer smart defaults under the existing entries without altering them.

    Cross-package rules run first; a package they constrain gets no
    per-package default. Packages the user constrained explicitly are only
    logged as honored.
    """
    present = {e.key for e in existing}
    explicit = {e.key for e in existing if e.is_explicit and e.origin is Origin.USER}
    additions: dict[str, list[ConstraintEntry]] = {}
    constrained: set[str] = set()

    for rule in cross_rules:
        if not all(normalize_name(t) in present for t in rule.triggers):
            continue
        logger.info("Potential conflict: %s", " + ".join(rule.triggers))
        for target, spec in rule.specifiers.items():
            key = normalize_name(target)
            if key not in present:
                continue
            if key in explicit:
                logger.info("Honoring user constraint on %s over %s%s", target, target, spec)
                continue
            bucket = additions.setdefault(key, [])
            if any(e.specifier == spec for e in bucket):
                continue
            bucket.append(_entry_from_specifier(
                target, spec, f"smart constraint: {' + '.join(rule.triggers)}"
            ))
            constrained.add(key)

    for package, version in smart_defaults.items():
        key = normalize_name(package)
        if key not in present or key in constrained:
            continue
        if key in explicit:
            logger.info("Honoring user constraint on %s (smart default %s)", package, version)
            continue
        additions.setdefault(key, []).append(ConstraintEntry(
            package=package,
            operator=Operator.EQ,
            version=version,
            origin=Origin.SMART_DEFAULT,
            specifier=f"=={version}",
            comment="backtracking prevention",
        ))

    merged: list[ConstraintEntry] = []
    emitted: set[str] = set()
    for entry in existing:
        merged.append(entry)
        if entry.key in additions and entry.key not in emitted:
            merged.extend(additions[entry.key])
            emitted.add(entry.key)
    return merged


def overlay_resolver(
    merged: Sequence[ConstraintEntry],
    resolver_entries: Sequence[ConstraintEntry],
) -> list[ConstraintEntry]:
    """Apply resolver pins: they replace smart defaults, never user entries."""
    explicit = {e.key for e in merged if e.is_explicit and e.origin is Origin.USER}
    applicable = []
    for entry in resolver_entries:
        if entry.key in explicit:
            logger.info(
                "Ignoring resolver pin %s: user constraint takes precedence",
                entry.requirement(),
            )
            continue
        applicable.append(entry)
    overridden = {e.key for e in applicable}
    result = [
        e for e in merged
        if not (e.origin is Origin.SMART_DEFAULT and e.key in overridden)
    ]
    result.extend(applicable)
    return result


def render(entries: Sequence[ConstraintEntry], options: Sequence[str] = ()) -> str:
    lines = ["# Generated by base-env from requirements.in. Do not edit."]
    lines.extend(options)
    for entry in entries:
        line = entry.requirement()
        if entry.origin is not Origin.USER:
            line += f"  # {entry.origin.value}"
            if entry.comment:
                line += f": {entry.comment}"
        lines.append(line)
    return "\n".join(lines) + "\n"


class ConstraintStore:
    """File-backed constraint layers for one environment directory."""

    def __init__(self, requirements_in: Path, resolver_path: Path, merged_path: Path):
        self.requirements_in = requirements_in
        self.resolver_path = resolver_path
        self.merged_path = merged_path

    def ensure_requirements(self) -> bool:
        """Write the default package list if none exists. True when created."""
        if self.requirements_in.exists():
            return False
        self.requirements_in.parent.mkdir(parents=True, exist_ok=True)
        self.requirements_in.write_text(DEFAULT_REQUIREMENTS)
        logger.info("Created default %s", self.requirements_in)
        return True

    def load_user(self) -> ConstraintSet:
        if not self.requirements_in.exists():
            return ConstraintSet()
        return parse_requirements(self.requirements_in.read_text(), Origin.USER)

    def load_resolver(self) -> list[ConstraintEntry]:
        if not self.resolver_path.exists():
            return []
        return parse_requirements(
            self.resolver_path.read_text(), Origin.RESOLVER
        ).entries

    def declared_packages(self) -> frozenset[str]:
        return self.load_user().packages()

    def build(
        self,
        smart_defaults: Mapping[str, str] = SMART_DEFAULTS,
        cross_rules: Iterable[CrossPackageRule] = CROSS_PACKAGE_RULES,
    ) -> tuple[list[ConstraintEntry], list[str]]:
        user = self.load_user()
        merged = merge(user.entries, smart_defaults, cross_rules)
        return overlay_resolver(merged, self.load_resolver()), user.options

    def write_merged(
        self,
        entries: Sequence[ConstraintEntry],
        options: Sequence[str] = (),
    ) -> bool:
        """Write the merged file. Returns False when content was unchanged."""
        content = render(entries, options)
        if self.merged_path.exists() and self.merged_path.read_text() == content:
            return False
        self.merged_path.parent.mkdir(parents=True, exist_ok=True)
        self.merged_path.write_text(content)
        return True

    def record_resolution(
        self, candidates: Sequence[ResolutionCandidate]
    ) -> list[ConstraintEntry]:
        """Persist resolver pins, replacing earlier resolver pins per package.

        Candidates for packages the user pinned explicitly are dropped.
        Returns the entries that were written for these candidates.
        """
        explicit = {
            e.key for e in self.load_user().entries if e.is_explicit
        }
        current = {e.key: e for e in self.load_resolver()}
        applied = []
        for candidate in candidates:
            key = normalize_name(candidate.package)
            if key in explicit:
                logger.info(
                    "Not pinning %s==%s: user constraint is honored",
                    candidate.package, candidate.version,
                )
                continue
            entry = ConstraintEntry(
                package=candidate.package,
                operator=Operator.EQ,
                version=candidate.version,
                origin=Origin.RESOLVER,
                specifier=f"=={candidate.version}",
                comment=f"{candidate.strategy.value}: {candidate.rationale}",
            )
            current[key] = entry
            applied.append(entry)

        lines = ["# Resolver constraints written by base-env"]
        for entry in current.values():
            line = entry.requirement()
            if entry.comment:
                line += f"  # {entry.comment}"
            lines.append(line)
        self.resolver_path.parent.mkdir(parents=True, exist_ok=True)
        self.resolver_path.write_text("\n".join(lines) + "\n")
        return applied
