"""Conflict resolution between stored and incoming node metrics.

The resolver is a pure function of its inputs: no clock, no randomness, no
state beyond its configuration. A merge always picks one metrics object as
a whole; fields are never combined across sources.

Tie-break: with equal timestamps the incoming update wins, so a stream of
same-instant updates still makes progress.

A discrepancy is flagged when the two sides come from different sources and
their timestamps are less than ``conflict_window_seconds`` apart. The flag
is informational; whether it blocks the update is the caller's decision.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from omnitwin.graph.models import NodeMetrics

DEFAULT_CONFLICT_WINDOW_SECONDS = 5.0


@dataclass(frozen=True)
class Discrepancy:
    current_source: str
    incoming_source: str
    current_timestamp: datetime
    incoming_timestamp: datetime
    delta_seconds: float
    winner_source: str | None
    incoming_won: bool
    strategy: str

    def to_dict(self) -> dict:
        return {
            "current_source": self.current_source,
            "incoming_source": self.incoming_source,
            "current_timestamp": self.current_timestamp.isoformat(),
            "incoming_timestamp": self.incoming_timestamp.isoformat(),
            "delta_seconds": self.delta_seconds,
            "winner_source": self.winner_source,
            "winner": "incoming" if self.incoming_won else "current",
            "strategy": self.strategy,
        }


@dataclass(frozen=True)
class MergeResult:
    metrics: NodeMetrics
    incoming_won: bool
    discrepancy: Discrepancy | None = None

    @property
    def conflict(self) -> bool:
        return self.discrepancy is not None


class ResolutionStrategy(ABC):
    """Decides which of two metrics objects becomes the node's metrics."""

    name: str = "abstract"

    @abstractmethod
    def incoming_wins(self, current: NodeMetrics, incoming: NodeMetrics) -> bool:
        """Return True if ``incoming`` should replace ``current``."""


class LatestTimestampWins(ResolutionStrategy):
    """The later timestamp wins; equal timestamps favour the incoming update."""

    name = "latest_timestamp"

    def incoming_wins(self, current: NodeMetrics, incoming: NodeMetrics) -> bool:
        return incoming.last_update_timestamp >= current.last_update_timestamp


class SourcePriority(ResolutionStrategy):
    """Sources earlier in ``order`` outrank later ones.

    Unranked sources rank below every ranked one. Equal ranks fall back to
    latest-timestamp-wins.
    """

    name = "source_priority"

    def __init__(self, order: list[str], fallback: ResolutionStrategy | None = None):
        self.order = list(order)
        self._rank = {source: i for i, source in enumerate(self.order)}
        self.fallback = fallback or LatestTimestampWins()

    def _rank_of(self, source: str | None) -> int:
        if source is None:
            return len(self.order)
        return self._rank.get(source, len(self.order))

    def incoming_wins(self, current: NodeMetrics, incoming: NodeMetrics) -> bool:
        cur = self._rank_of(current.last_update_source)
        inc = self._rank_of(incoming.last_update_source)
        if cur == inc:
            return self.fallback.incoming_wins(current, incoming)
        return inc < cur


def build_strategy(name: str, priority_order: list[str] | None = None) -> ResolutionStrategy:
    """Construct a strategy by its configured name."""
    if name == LatestTimestampWins.name:
        return LatestTimestampWins()
    if name == SourcePriority.name:
        if not priority_order:
            raise ValueError("source_priority strategy requires a priority order")
        return SourcePriority(priority_order)
    raise ValueError(f"Unknown conflict resolution strategy: {name}")


class ConflictResolver:
    def __init__(
        self,
        strategy: ResolutionStrategy | None = None,
        conflict_window_seconds: float = DEFAULT_CONFLICT_WINDOW_SECONDS,
    ):
        if conflict_window_seconds < 0:
            raise ValueError("conflict_window_seconds must be >= 0")
        self.strategy = strategy or LatestTimestampWins()
        self.conflict_window_seconds = conflict_window_seconds

    def merge(self, current: NodeMetrics | None, incoming: NodeMetrics) -> MergeResult:
        """Pick the winning metrics and flag a cross-source discrepancy if any."""
        if current is None:
            return MergeResult(metrics=incoming, incoming_won=True)

        incoming_won = self.strategy.incoming_wins(current, incoming)
        winner = incoming if incoming_won else current
        return MergeResult(
            metrics=winner,
            incoming_won=incoming_won,
            discrepancy=self.detect(current, incoming, incoming_won, winner.last_update_source),
        )

    def detect(
        self,
        current: NodeMetrics,
        incoming: NodeMetrics,
        incoming_won: bool,
        winner_source: str | None,
    ) -> Discrepancy | None:
        if current.last_update_source is None or incoming.last_update_source is None:
            return None
        if current.last_update_source == incoming.last_update_source:
            return None

        delta = abs(
            (incoming.last_update_timestamp - current.last_update_timestamp).total_seconds()
        )
        if delta >= self.conflict_window_seconds:
            return None

        return Discrepancy(
            current_source=current.last_update_source,
            incoming_source=incoming.last_update_source,
            current_timestamp=current.last_update_timestamp,
            incoming_timestamp=incoming.last_update_timestamp,
            delta_seconds=delta,
            winner_source=winner_source,
            incoming_won=incoming_won,
            strategy=self.strategy.name,
        )
