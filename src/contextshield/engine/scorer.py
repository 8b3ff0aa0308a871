"""Importance scoring for context nodes.

Every branch of a context gets a score in [0, 1] estimating how much
it is worth keeping when the context has to shrink. The score is a
fixed, hand-tuned weighted sum. No model is trained here.

Factors (weights sum to 1.0 by default):
1. Frequency      - how often the node has been accessed
2. Recency        - exponential decay on the node's age (7-day scale)
3. Dependency     - whether other nodes depend on this one
4. Semantic       - tag overlap with a small reference vocabulary
5. User marked    - explicit ``userMarked`` flag
6. System critical - explicit ``systemCritical`` flag

The base score is then adjusted for priority, structural complexity
and staleness.
"""

import math
import time
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from contextshield.engine.tree import all_keys, max_depth, to_json

DAY_SECONDS = 24 * 60 * 60
RECENCY_SCALE_SECONDS = 7 * DAY_SECONDS
STALE_AFTER_SECONDS = 30 * DAY_SECONDS

# Stand-in for embedding similarity until a real vector model exists.
REFERENCE_TAGS = frozenset({"core", "api", "database", "cache", "security"})

DEFAULT_WEIGHTS = {
    "frequency": 0.25,
    "recency": 0.20,
    "dependency": 0.20,
    "semantic": 0.15,
    "userMarked": 0.10,
    "systemCritical": 0.10,
}


def to_epoch_seconds(value: Any) -> float | None:
    """Normalize a timestamp field.

    Accepts epoch seconds, epoch milliseconds (anything above 1e11) and
    ISO-8601 strings. Returns None for anything else.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


@dataclass
class ScoreFeatures:
    """Raw features a score is computed from."""
    age: float = 0.0               # seconds since the node's timestamp
    last_accessed: float = 0.0     # seconds since the node was last read
    access_frequency: int = 0
    size: int = 0
    depth: int = 0
    complexity: float = 0.0
    category: str = "unknown"
    tags: list[str] = field(default_factory=list)
    semantic_similarity: float = 0.0
    dependencies: list[Any] = field(default_factory=list)
    dependency_count: int = 0
    is_depended_upon: bool = False
    user_marked: bool = False
    system_critical: bool = False
    priority: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImportanceScore:
    """Result of scoring one node."""
    score: float
    confidence: float
    breakdown: dict[str, float]
    features: ScoreFeatures

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "confidence": self.confidence,
            "breakdown": dict(self.breakdown),
            "features": self.features.to_dict(),
        }


class ImportanceScorer:
    """Computes importance scores for context nodes.

    ``calculate_score`` is pure: it reads the node and the metadata hints
    and returns a new :class:`ImportanceScore`. Where the score is kept
    is up to the caller.
    """

    def __init__(self, weights: dict[str, float] | None = None):
        self.weights = dict(DEFAULT_WEIGHTS)
        if weights:
            self.weights.update(weights)

    def calculate_score(
        self,
        node: Any,
        metadata: Mapping[str, Any] | None = None,
        now: float | None = None,
    ) -> ImportanceScore:
        """Score a node.

        Args:
            node: The context node (normally a mapping).
            metadata: Optional hints: ``access_count``, ``last_accessed``
                (epoch seconds), ``is_depended_upon``.
            now: Reference time, defaults to the current time.

        Returns:
            ImportanceScore with breakdown and features.
        """
        features = self.extract_features(node, metadata or {}, now)
        breakdown = self.score_breakdown(features)
        base = min(1.0, max(0.0, sum(breakdown.values())))
        score = self.apply_adjustments(base, features)

        return ImportanceScore(
            score=score,
            confidence=self.calculate_confidence(features),
            breakdown=breakdown,
            features=features,
        )

    def extract_features(
        self,
        node: Any,
        metadata: Mapping[str, Any],
        now: float | None = None,
    ) -> ScoreFeatures:
        """Extract the feature vector for a node."""
        now = time.time() if now is None else now
        fields = node if isinstance(node, Mapping) else {}

        created = to_epoch_seconds(fields.get("timestamp"))
        age = max(0.0, now - created) if created is not None else 0.0

        accessed = to_epoch_seconds(metadata.get("last_accessed"))
        last_accessed = max(0.0, now - accessed) if accessed is not None else age

        tags = fields.get("tags") or []
        if not isinstance(tags, (list, tuple, set, frozenset)):
            tags = [tags]
        tags = [str(tag) for tag in tags]

        dependencies = fields.get("dependencies") or []
        if not isinstance(dependencies, list):
            dependencies = [dependencies]

        priority = fields.get("priority") or 0
        if isinstance(priority, bool) or not isinstance(priority, (int, float)):
            priority = 0

        return ScoreFeatures(
            age=age,
            last_accessed=last_accessed,
            access_frequency=int(metadata.get("access_count") or 0),
            size=len(to_json(node)),
            depth=max_depth(node),
            complexity=self.calculate_complexity(node),
            category=str(fields.get("type") or "unknown"),
            tags=tags,
            semantic_similarity=self.calculate_semantic_similarity(tags),
            dependencies=list(dependencies),
            dependency_count=len(dependencies),
            is_depended_upon=bool(metadata.get("is_depended_upon", False)),
            user_marked=bool(fields.get("userMarked", False)),
            system_critical=bool(fields.get("systemCritical", False)),
            priority=float(priority),
        )

    def score_breakdown(self, features: ScoreFeatures) -> dict[str, float]:
        """Weighted contribution of each factor to the base score."""
        if features.is_depended_upon:
            dependency = 1.0
        else:
            dependency = min(1.0, features.dependency_count / 10)

        return {
            "frequency": self.weights["frequency"] * min(1.0, features.access_frequency / 100),
            "recency": self.weights["recency"] * math.exp(-features.age / RECENCY_SCALE_SECONDS),
            "dependency": self.weights["dependency"] * dependency,
            "semantic": self.weights["semantic"] * features.semantic_similarity,
            "userMarked": self.weights["userMarked"] * (1.0 if features.user_marked else 0.0),
            "systemCritical": self.weights["systemCritical"] * (1.0 if features.system_critical else 0.0),
        }

    def apply_adjustments(self, base_score: float, features: ScoreFeatures) -> float:
        """Priority boost, complexity boost and staleness penalty."""
        adjusted = base_score

        if features.priority > 0:
            adjusted *= 1 + features.priority * 0.1

        # Complex nodes usually carry more information
        adjusted *= 1 + features.complexity * 0.05

        # gap between age and time since last access
        if features.age - features.last_accessed > STALE_AFTER_SECONDS:
            adjusted *= 0.5

        return min(1.0, max(0.0, adjusted))

    def calculate_complexity(self, node: Any) -> float:
        size = len(to_json(node)) / 10000
        depth = max_depth(node) / 10
        unique_keys = len(set(all_keys(node))) / 100
        return min(1.0, (size + depth + unique_keys) / 3)

    def calculate_semantic_similarity(self, tags: list[str]) -> float:
        """Share of the reference vocabulary covered by the node's tags."""
        matches = sum(1 for tag in tags if tag in REFERENCE_TAGS)
        return matches / max(1, len(REFERENCE_TAGS))

    def calculate_confidence(self, features: ScoreFeatures) -> float:
        confidence = 0.5

        if features.access_frequency > 10:
            confidence += 0.1
        if features.dependency_count > 0:
            confidence += 0.1
        if features.user_marked or features.system_critical:
            confidence += 0.2
        if features.tags:
            confidence += 0.1

        return min(1.0, confidence)

    def update_weights(self, weights: Mapping[str, float]) -> None:
        """Merge new factor weights.

        The weights are not renormalized, so they may stop summing to 1.
        The final clamp keeps scores inside [0, 1] regardless.
        """
        self.weights.update(weights)


class FeatureLog:
    """Bounded log of scored features, exported for offline tuning."""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self._entries: OrderedDict[str, dict[str, Any]] = OrderedDict()

    def record(self, node_id: str, score: ImportanceScore) -> None:
        self._entries.pop(node_id, None)
        self._entries[node_id] = {
            "features": score.features.to_dict(),
            "score": score.score,
            "timestamp": time.time(),
        }
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def export(self) -> list[dict[str, Any]]:
        return [{"id": node_id, **entry} for node_id, entry in self._entries.items()]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
