"""Multi-strategy conflict resolver.

Strategies run in a fixed order and the first one that yields at least one
candidate ends the pass:

1. registry lookup: newest stable release of the required package that
   satisfies the specifier, else a recent release of the requiring package
   whose declared dependency accepts the installed version
2. secondary index: newest conda-forge build that satisfies the specifier
3. pattern sampling: a conservative release of a package that public
   manifests reference
4. fallback: a well-established older release

Every strategy tried is recorded in the outcome, including the ones that
produced nothing.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from base_env.core.conflicts import parse_conflicts
from base_env.core.models import (
    ConflictRecord,
    ResolutionCandidate,
    ResolutionOutcome,
    Strategy,
    StrategyAttempt,
    normalize_name,
)
from base_env.data.community import CondaForgeIndex, GitHubPatternSource
from base_env.data.registry import PyPIRegistry

logger = logging.getLogger(__name__)

# Empirical choices, tunable. Indexes count from the newest stable release.
CONSERVATIVE_VERSION_INDEX = 3  # 4th-from-newest
FALLBACK_VERSION_INDEX = 5  # 6th-from-newest

REQUIRING_SCAN_DEPTH = 5
PATTERN_SAMPLE_LIMIT = 3  # conflicts sampled per pass; search is rate-limited
PATTERN_MIN_RELEASES = 5
FALLBACK_MIN_RELEASES = 10


def _satisfies(version: str, specifier: str) -> bool:
    try:
        return Version(version) in SpecifierSet(specifier)
    except (InvalidVersion, InvalidSpecifier):
        return False


def _newest_matching(versions: Sequence[str], specifier: str) -> Optional[str]:
    for candidate in versions:
        if _satisfies(candidate, specifier):
            return candidate
    return None


class ConflictResolver:
    """Turns conflict records into resolver-origin pin candidates."""

    def __init__(
        self,
        registry: PyPIRegistry,
        secondary: Optional[CondaForgeIndex] = None,
        patterns: Optional[GitHubPatternSource] = None,
    ):
        self.registry = registry
        self.secondary = secondary or CondaForgeIndex(timeout=registry.timeout)
        self.patterns = patterns or GitHubPatternSource(timeout=registry.timeout)
        self._strategies: list[
            tuple[Strategy, Callable[[Sequence[ConflictRecord]], tuple[list[ResolutionCandidate], str]]]
        ] = [
            (Strategy.REGISTRY, self._registry_lookup),
            (Strategy.SECONDARY_INDEX, self._secondary_index),
            (Strategy.PATTERN_SAMPLING, self._pattern_sampling),
            (Strategy.FALLBACK, self._fallback),
        ]

    def resolve_report(self, report: str) -> ResolutionOutcome:
        parsed = parse_conflicts(report)
        if not parsed.conclusive:
            logger.info("Conflict report was inconclusive; nothing to resolve")
            return ResolutionOutcome()
        return self.resolve(parsed.records)

    def resolve(self, conflicts: Sequence[ConflictRecord]) -> ResolutionOutcome:
        outcome = ResolutionOutcome(conflicts=list(conflicts))
        if not conflicts:
            return outcome
        self.registry.clear_cache()
        logger.info("Resolving %d conflict(s)", len(conflicts))

        for strategy, run in self._strategies:
            candidates, detail = run(conflicts)
            candidates = _first_per_package(candidates)
            outcome.attempts.append(StrategyAttempt(
                strategy=strategy, candidates=len(candidates), detail=detail,
            ))
            if candidates:
                for c in candidates:
                    logger.info(
                        "%s: %s==%s (%s)", strategy.value, c.package, c.version, c.rationale
                    )
                outcome.candidates = candidates
                return outcome
            logger.info("%s strategy found nothing: %s", strategy.value, detail)

        logger.warning("All resolution strategies exhausted")
        return outcome

    # ── Strategies ───────────────────────────────────────────────────

    def _registry_lookup(
        self, conflicts: Sequence[ConflictRecord]
    ) -> tuple[list[ResolutionCandidate], str]:
        found = []
        for conflict in conflicts:
            versions = self.registry.stable_versions(conflict.required_pkg)
            target = _newest_matching(versions, conflict.required_specifier)
            if target is not None:
                found.append(ResolutionCandidate(
                    package=conflict.required_pkg,
                    version=target,
                    rationale=f"resolves conflict with {conflict.requiring_pkg} {conflict.requiring_ver}",
                    strategy=Strategy.REGISTRY,
                ))
                continue
            alternative = self._looser_requiring_release(conflict)
            if alternative is not None:
                found.append(alternative)
        return found, f"checked {len(conflicts)} conflict(s) against the registry"

    def _looser_requiring_release(
        self, conflict: ConflictRecord
    ) -> Optional[ResolutionCandidate]:
        required = normalize_name(conflict.required_pkg)
        releases = self.registry.stable_versions(conflict.requiring_pkg)
        for release in releases[:REQUIRING_SCAN_DEPTH]:
            spec = self.registry.dependencies(conflict.requiring_pkg, release).get(required)
            if spec and _satisfies(conflict.installed_ver, spec):
                return ResolutionCandidate(
                    package=conflict.requiring_pkg,
                    version=release,
                    rationale=(
                        f"accepts installed {conflict.required_pkg} {conflict.installed_ver}"
                    ),
                    strategy=Strategy.REGISTRY,
                )
        return None

    def _secondary_index(
        self, conflicts: Sequence[ConflictRecord]
    ) -> tuple[list[ResolutionCandidate], str]:
        found = []
        for conflict in conflicts:
            versions = self.secondary.recent_versions(conflict.required_pkg)
            target = _newest_matching(versions, conflict.required_specifier)
            if target is not None:
                found.append(ResolutionCandidate(
                    package=conflict.required_pkg,
                    version=target,
                    rationale="recent conda-forge build",
                    strategy=Strategy.SECONDARY_INDEX,
                ))
        return found, f"queried conda-forge for {len(conflicts)} package(s)"

    def _pattern_sampling(
        self, conflicts: Sequence[ConflictRecord]
    ) -> tuple[list[ResolutionCandidate], str]:
        if not self.patterns.is_configured:
            return [], "GitHub token not configured"
        found = []
        sampled = conflicts[:PATTERN_SAMPLE_LIMIT]
        for conflict in sampled:
            if self.patterns.manifest_count(conflict.required_pkg) == 0:
                continue
            versions = self.registry.stable_versions(conflict.required_pkg)
            if len(versions) <= PATTERN_MIN_RELEASES:
                continue
            found.append(ResolutionCandidate(
                package=conflict.required_pkg,
                version=versions[CONSERVATIVE_VERSION_INDEX],
                rationale="conservative release referenced by public manifests",
                strategy=Strategy.PATTERN_SAMPLING,
            ))
        return found, f"sampled manifests for {len(sampled)} package(s)"

    def _fallback(
        self, conflicts: Sequence[ConflictRecord]
    ) -> tuple[list[ResolutionCandidate], str]:
        found = []
        for conflict in conflicts:
            versions = self.registry.stable_versions(conflict.required_pkg)
            if len(versions) <= FALLBACK_MIN_RELEASES:
                continue
            found.append(ResolutionCandidate(
                package=conflict.required_pkg,
                version=versions[FALLBACK_VERSION_INDEX],
                rationale="well-established release",
                strategy=Strategy.FALLBACK,
            ))
        return found, f"needs more than {FALLBACK_MIN_RELEASES} stable releases"


def _first_per_package(
    candidates: Sequence[ResolutionCandidate],
) -> list[ResolutionCandidate]:
    seen: set[str] = set()
    unique = []
    for candidate in candidates:
        key = normalize_name(candidate.package)
        if key not in seen:
            seen.add(key)
            unique.append(candidate)
    return unique
