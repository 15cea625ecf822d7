"""Fingerprinting — hashes the inputs that determine a converged environment."""

from __future__ import annotations

import hashlib
import json
from typing import Optional, Sequence

from base_env.core.models import ConstraintEntry, EnvironmentSignature


def fingerprint_inputs(
    signature: EnvironmentSignature,
    constraints: Sequence[ConstraintEntry],
    python_version: Optional[str],
    lock_text: str = "",
) -> str:
    """Create a hash of everything a run converges from.

    Same fingerprint = same inputs = nothing to do if the last run converged.
    """
    state = {
        "platform": signature.platform.value,
        "architecture": signature.architecture,
        "os_version": signature.os_version,
        "python": python_version,
        "constraints": sorted(
            f"{c.requirement()}|{c.origin.value}" for c in constraints
        ),
        "lock": hashlib.sha256(lock_text.encode()).hexdigest(),
    }
    serialized = json.dumps(state, sort_keys=True).encode()
    return hashlib.sha256(serialized).hexdigest()[:16]
