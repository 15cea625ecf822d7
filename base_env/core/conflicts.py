"""Conflict report parser.

Two textual shapes are recognized, one conflict per line::

    libA 2.0 has requirement libB<3.0, but you have libB 3.2.
    libA 2.0 requires libB<3.0, but you have libB 3.2 which is incompatible.

The first is ``pip check``; the second is pip's install-time resolver
warning. Anything else yields no records, and an empty ``ParseResult`` is
inconclusive rather than an error.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from packaging.requirements import InvalidRequirement, Requirement

from base_env.core.models import ConflictRecord, ParseResult

logger = logging.getLogger(__name__)

_PKG = r"[A-Za-z0-9][A-Za-z0-9._\-]*"

_HAS_REQUIREMENT = re.compile(
    rf"^(?P<requiring_pkg>{_PKG}) (?P<requiring_ver>\S+) has requirement "
    rf"(?P<requirement>.+?), but you have (?P<installed_pkg>{_PKG}) "
    r"(?P<installed_ver>\S+?)\.?\s*$"
)

_REQUIRES = re.compile(
    rf"^(?P<requiring_pkg>{_PKG}) (?P<requiring_ver>\S+) requires "
    rf"(?P<requirement>.+?), but you have (?P<installed_pkg>{_PKG}) "
    r"(?P<installed_ver>\S+?) which is incompatible\.?\s*$"
)

_PATTERNS = (_HAS_REQUIREMENT, _REQUIRES)


def parse_conflicts(report: str) -> ParseResult:
    """Extract conflict records from free-text tool output."""
    records: list[ConflictRecord] = []
    for raw in report.splitlines():
        line = raw.strip()
        if line.startswith("ERROR: "):
            line = line[len("ERROR: "):]
        for pattern in _PATTERNS:
            match = pattern.match(line)
            if match:
                record = _to_record(match)
                if record is not None and record not in records:
                    records.append(record)
                break
    if not records and report.strip():
        logger.debug("No parseable conflicts in %d lines of output", len(report.splitlines()))
    return ParseResult(records=records)


def _to_record(match: re.Match) -> Optional[ConflictRecord]:
    try:
        requirement = Requirement(match.group("requirement"))
    except InvalidRequirement:
        logger.debug("Unparseable requirement in conflict: %s", match.group(0))
        return None
    return ConflictRecord(
        requiring_pkg=match.group("requiring_pkg"),
        requiring_ver=match.group("requiring_ver"),
        required_pkg=requirement.name,
        required_specifier=str(requirement.specifier),
        installed_ver=match.group("installed_ver"),
    )
