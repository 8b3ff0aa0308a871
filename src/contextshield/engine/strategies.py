"""Resistance strategies.

Four fixed policies trading compression against retention:

| Strategy       | Level    | Keeps                      | Restructures |
|----------------|----------|----------------------------|--------------|
| lowMemory      | heavy    | score >= 0.8               | no           |
| highImportance | light    | score >= 0.5               | no           |
| balanced       | moderate | score >= 0.6               | no           |
| aggressive     | none     | everything                 | yes          |

``systemCritical`` branches survive every filter.
"""

import copy
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from contextshield.engine.scorer import ImportanceScore
from contextshield.engine.tree import Path, checksum

ScoreTable = dict[Path, ImportanceScore]


class ResistanceStrategy(str, Enum):
    """Available strategies."""
    LOW_MEMORY = "lowMemory"
    HIGH_IMPORTANCE = "highImportance"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


@dataclass(frozen=True)
class StrategyProfile:
    """How a strategy treats a context."""
    level: str
    threshold: float | None  # None keeps everything
    reorganize: bool = False


STRATEGY_PROFILES: dict[ResistanceStrategy, StrategyProfile] = {
    ResistanceStrategy.LOW_MEMORY: StrategyProfile(level="heavy", threshold=0.8),
    ResistanceStrategy.HIGH_IMPORTANCE: StrategyProfile(level="light", threshold=0.5),
    ResistanceStrategy.BALANCED: StrategyProfile(level="moderate", threshold=0.6),
    ResistanceStrategy.AGGRESSIVE: StrategyProfile(level="none", threshold=None, reorganize=True),
}

# Bucket floors for the aggressive reorganization
CRITICAL_FLOOR = 0.9
IMPORTANT_FLOOR = 0.7
STANDARD_FLOOR = 0.4


def filter_by_importance(context: Any, threshold: float, scores: ScoreTable) -> dict[str, Any]:
    """Keep the branches that are important enough.

    A branch is kept (with everything under it) when its score meets the
    threshold or it is flagged ``systemCritical``. Unscored containers
    are descended into and dropped if nothing inside survives. Leaves
    outside a kept branch have no score of their own and are dropped.
    """

    def keep(source: Mapping, path: Path) -> dict[str, Any]:
        target: dict[str, Any] = {}
        for key, value in source.items():
            child_path = path + (str(key),)
            score = scores.get(child_path)

            if score is not None:
                if score.score >= threshold or _is_system_critical(value):
                    target[key] = copy.deepcopy(value)
            elif isinstance(value, Mapping):
                if _is_system_critical(value):
                    target[key] = copy.deepcopy(value)
                    continue
                kept = keep(value, child_path)
                if kept:
                    target[key] = kept
        return target

    if not isinstance(context, Mapping):
        return {}
    return keep(context, ())


def reorganize_for_resistance(context: Any, scores: ScoreTable) -> dict[str, dict[str, Any]]:
    """Bucket the top-level entries by importance."""
    buckets: dict[str, dict[str, Any]] = {
        "critical": {},
        "important": {},
        "standard": {},
        "low": {},
    }
    if not isinstance(context, Mapping):
        return buckets

    for key, value in context.items():
        score = scores.get((str(key),))
        importance = score.score if score is not None else 0.0

        if _is_system_critical(value) or importance >= CRITICAL_FLOOR:
            bucket = "critical"
        elif importance >= IMPORTANT_FLOOR:
            bucket = "important"
        elif importance >= STANDARD_FLOOR:
            bucket = "standard"
        else:
            bucket = "low"
        buckets[bucket][key] = copy.deepcopy(value)

    return buckets


def add_redundancy(reorganized: dict[str, Any]) -> dict[str, Any]:
    """Attach a checksummed backup copy of the critical bucket."""
    with_redundancy = dict(reorganized)
    critical = reorganized.get("critical", {})
    with_redundancy["_backup"] = {
        "critical": copy.deepcopy(critical),
        "timestamp": time.time(),
        "checksum": checksum(critical),
    }
    return with_redundancy


def _is_system_critical(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value.get("systemCritical"))
