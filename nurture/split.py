"""Deterministic path selection for split steps."""

from __future__ import annotations

import hashlib

from .contracts import SplitConfig, SplitPath
from .errors import StepConfigError


def split_fraction(enrollment_id: str, split_id: str) -> float:
    """Map ``(enrollment_id, split_id)`` to a stable value in ``[0, 1)``."""
    digest = hashlib.sha256(f"{enrollment_id}:{split_id}".encode()).digest()
    return int.from_bytes(digest[:8], "big") / 2**64


def choose_path(enrollment_id: str, split_id: str, config: SplitConfig) -> SplitPath:
    """Pick the split path for an enrollment.

    ``random`` splits give every path the same share; ``weighted`` splits
    share in proportion to ``percentage``. The same enrollment always lands
    on the same path.
    """
    paths = config.paths
    if not paths:
        raise StepConfigError(f"Split {split_id!r} has no paths")
    if config.split_type == "weighted":
        weights = [p.percentage for p in paths]
    else:
        weights = [1.0] * len(paths)
    total = sum(weights)
    if total <= 0:
        raise StepConfigError(f"Split {split_id!r} has no positive weights")

    point = split_fraction(enrollment_id, split_id) * total
    cumulative = 0.0
    for path, weight in zip(paths, weights):
        cumulative += weight
        if point < cumulative:
            return path
    # float rounding at the upper edge
    return next(p for p, w in zip(reversed(paths), reversed(weights)) if w > 0)
