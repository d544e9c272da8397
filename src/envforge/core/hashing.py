"""
Deterministic hashing for deploy tags.

A deploy's image tag embeds a hash of its merged environment, so a change
to any build-time variable yields a new tag while an unchanged source +
env pair hashes to the same tag and lets the orchestrator skip the build.

Examples:
    >>> compute_hash("a", "b") != compute_hash("b", "a")
    True
    >>> compute_env_hash({"B": "2", "A": "1"}) == compute_env_hash({"A": "1", "B": "2"})
    True
"""

import hashlib
import json
from typing import Any


def compute_hash(*values: Any, length: int = 32) -> str:
    """
    Compute deterministic hash from values.

    Concatenates string representations of all values with a '|' delimiter
    and returns the first ``length`` hex chars of the SHA-256 digest.

    Args:
        *values: Values to hash (converted to strings)
        length: Hex digest length (default 32 = 128 bits)
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode()).hexdigest()[:length]


def compute_env_hash(env: dict[str, Any] | None, length: int = 8) -> str:
    """Hash an environment map independent of key order."""
    canonical = json.dumps(env or {}, sort_keys=True, separators=(",", ":"), default=str)
    return compute_hash(canonical, length=length)
