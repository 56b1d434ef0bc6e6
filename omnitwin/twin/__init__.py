"""Conflict resolution between metric sources."""

from omnitwin.twin.conflict import (
    ConflictResolver,
    Discrepancy,
    LatestTimestampWins,
    MergeResult,
    ResolutionStrategy,
    SourcePriority,
    build_strategy,
)

__all__ = [
    "ConflictResolver",
    "Discrepancy",
    "LatestTimestampWins",
    "MergeResult",
    "ResolutionStrategy",
    "SourcePriority",
    "build_strategy",
]
