"""Resistance coordinator - the public entry point of the engine.

A resist() call runs one pass of the pipeline:

1. Score every branch of the context (side table, caller data untouched)
2. Select a strategy (explicit > memory pressure > importance > default)
3. Apply the strategy
4. Snapshot the result as a recovery point
5. Measure the preservation rate
6. Update running metrics
7. Emit a ``resistance`` event

A failed pass emits ``resistance-error`` and falls back to emergency
protection, which keeps only the ``systemCritical`` branches.
"""

import copy
import logging
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from contextshield.config import ResistanceConfig, ResistOptions
from contextshield.engine.compression import CompressionEngine, CriticalClassifier
from contextshield.engine.reconstruction import ContextReconstructor, ReconstructionResult
from contextshield.engine.scorer import FeatureLog, ImportanceScorer
from contextshield.engine.strategies import (
    STRATEGY_PROFILES,
    ResistanceStrategy,
    ScoreTable,
    add_redundancy,
    filter_by_importance,
    reorganize_for_resistance,
)
from contextshield.engine.tree import (
    count_keys,
    dotted,
    ensure_acyclic,
    iter_branches,
    serialized_size,
)
from contextshield.events import EventBus, EventType
from contextshield.memory_monitor import MemoryMonitor, MemorySample

logger = logging.getLogger(__name__)


@dataclass
class ResistanceMetrics:
    """Running totals across resist() calls."""
    total_resistance_events: int = 0
    successful_resistance: int = 0
    failed_resistance: int = 0
    average_preservation_rate: float = 0.0
    compression_ratio: float = 0.0
    recovery_events: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ResistanceResult:
    """A protected context plus what was done to it."""
    context: Any
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def applied(self) -> bool:
        return bool(self.metadata.get("resistance", {}).get("applied"))

    def to_dict(self) -> dict[str, Any]:
        return {"context": self.context, "metadata": self.metadata}


class ResistanceCoordinator:
    """Scores, compresses and protects contexts.

    Usage:
        engine = ResistanceCoordinator(ResistanceConfig(auto_resist=False))
        engine.bus.subscribe(EventType.RESISTANCE, on_resist)

        result = await engine.resist(context)
        print(result.metadata["resistance"]["preservation_rate"])

        engine.cleanup()

    Or, to run the memory monitor for the engine's lifetime:
        async with ResistanceCoordinator() as engine:
            ...
    """

    def __init__(
        self,
        config: ResistanceConfig | None = None,
        classifier: CriticalClassifier | None = None,
        bus: EventBus | None = None,
        memory_probe: Callable[[], MemorySample] | None = None,
    ):
        self.config = config or ResistanceConfig()
        self.bus = bus or EventBus()

        self.scorer = ImportanceScorer()
        self.compressor = CompressionEngine(classifier=classifier)
        self.reconstructor = ContextReconstructor(
            compressor=self.compressor,
            max_recovery_points=self.config.max_recovery_points,
            cache_size=self.config.cache_size,
        )
        self.feature_log = FeatureLog(max_entries=self.config.feature_log_size)
        self.monitor = MemoryMonitor(
            self.bus,
            interval_s=self.config.memory_check_interval_s,
            threshold=self.config.memory_pressure_threshold,
            budget_mb=self.config.memory_budget_mb,
            probe=memory_probe,
        )
        self.metrics = ResistanceMetrics()

    async def __aenter__(self) -> "ResistanceCoordinator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
        self.cleanup()

    async def start(self) -> None:
        """Start background monitoring if ``auto_resist`` is on."""
        if self.config.auto_resist:
            await self.monitor.start()

    async def stop(self) -> None:
        await self.monitor.stop()

    async def resist(
        self,
        context: Any,
        strategy: ResistanceStrategy | str | None = None,
        options: ResistOptions | Mapping[str, Any] | None = None,
    ) -> ResistanceResult:
        """Apply compaction resistance to a context.

        Args:
            context: The context to protect. Never modified.
            strategy: Force a strategy instead of selecting one.
            options: Call-scoped options (see ResistOptions).

        Returns:
            ResistanceResult. ``metadata["resistance"]["applied"]`` is
            False when the pass failed and emergency protection was used.

        Raises:
            pydantic.ValidationError: The options are invalid.
            ValueError: The strategy is unknown.
            Exception: Whatever failed, when emergency recovery is disabled.
        """
        opts = self._options(options)
        if strategy is None and opts.strategy:
            strategy = opts.strategy
        if strategy is not None:
            strategy = ResistanceStrategy(strategy)

        start = time.perf_counter()
        self.metrics.total_resistance_events += 1

        try:
            scores = self.score_context(context, access_counts=opts.access_counts)
            chosen = self.select_strategy(scores, strategy)
            protected, compressed = self.apply_strategy(chosen, context, scores)

            if self.config.emergency_recovery_enabled:
                self.reconstructor.create_recovery_point(protected)

            preservation_rate = self.calculate_preservation_rate(context, protected)
            self._update_metrics(preservation_rate)

            duration = time.perf_counter() - start
            self.bus.emit(EventType.RESISTANCE, {
                "strategy": chosen.value,
                "preservation_rate": preservation_rate,
                "duration": duration,
                "original_size": serialized_size(context),
                "protected_size": serialized_size(protected),
            })

            resistance: dict[str, Any] = {
                "applied": True,
                "strategy": chosen.value,
                "preservation_rate": preservation_rate,
                "timestamp": time.time(),
                "duration": duration,
            }
            if compressed is not None:
                resistance["compressed"] = compressed

            return ResistanceResult(context=protected, metadata={"resistance": resistance})
        except Exception as e:
            self.metrics.failed_resistance += 1
            logger.error(f"Resistance failed: {e}")
            self.bus.emit(EventType.RESISTANCE_ERROR, {
                "error": str(e),
                "error_type": type(e).__name__,
            })

            if self.config.emergency_recovery_enabled:
                return self.emergency_protection(context, e)
            raise

    def score_context(
        self,
        context: Any,
        access_counts: Mapping[str, int] | None = None,
    ) -> ScoreTable:
        """Score every branch below the root.

        Raises:
            ContextCycleError: The context contains itself.
        """
        ensure_acyclic(context)
        access_counts = access_counts or {}
        now = time.time()

        branches = list(iter_branches(context))
        depended_upon = set()
        for _, branch in branches:
            dependencies = branch.get("dependencies")
            if isinstance(dependencies, list):
                depended_upon.update(d for d in dependencies if isinstance(d, (str, int)))

        scores: ScoreTable = {}
        for path, branch in branches:
            node_id = branch.get("id")
            key = dotted(path)
            score = self.scorer.calculate_score(
                branch,
                {
                    "access_count": access_counts.get(key, 0),
                    "is_depended_upon": isinstance(node_id, (str, int)) and node_id in depended_upon,
                },
                now=now,
            )
            scores[path] = score
            if self.config.ml_enabled:
                self.feature_log.record(str(node_id) if node_id is not None else key, score)

        return scores

    def select_strategy(
        self,
        scores: ScoreTable,
        strategy: ResistanceStrategy | str | None = None,
    ) -> ResistanceStrategy:
        """Pick the strategy for a scored context."""
        if strategy:
            return ResistanceStrategy(strategy)

        pressure = self.monitor.sample().pressure
        if pressure > self.config.low_memory_threshold:
            logger.debug(f"Memory pressure {pressure:.2f}, using lowMemory")
            return ResistanceStrategy.LOW_MEMORY

        if self.average_importance(scores) > self.config.high_importance_threshold:
            return ResistanceStrategy.HIGH_IMPORTANCE

        if self.config.resistance_level == "aggressive":
            return ResistanceStrategy.AGGRESSIVE

        return ResistanceStrategy.BALANCED

    def apply_strategy(
        self,
        strategy: ResistanceStrategy,
        context: Any,
        scores: ScoreTable,
    ) -> tuple[Any, dict[str, Any] | None]:
        """Transform a context.

        Returns:
            (protected_context, compressed_state) tuple. The compressed
            state holds the full original context for the filtering
            strategies and is None for the aggressive one.
        """
        profile = STRATEGY_PROFILES[strategy]

        if profile.reorganize:
            protected = add_redundancy(reorganize_for_resistance(context, scores))
            protected["_strategy"] = strategy.value
            protected["_redundancy"] = True
            return protected, None

        compressed = self.compressor.compress(
            context, level=profile.level, compress_critical=False)
        protected = filter_by_importance(context, profile.threshold, scores)
        return protected, compressed

    def average_importance(self, scores: ScoreTable) -> float:
        if not scores:
            return 0.5
        return sum(s.score for s in scores.values()) / len(scores)

    def calculate_preservation_rate(self, original: Any, protected: Any) -> float:
        return count_keys(protected) / max(1, count_keys(original))

    def emergency_protection(self, context: Any, error: Exception) -> ResistanceResult:
        """Keep only the top-level ``systemCritical`` branches."""
        self.metrics.recovery_events += 1

        try:
            minimal: dict[str, Any] = {
                "emergency": True,
                "timestamp": time.time(),
                "error": str(error),
                "preserved": {},
            }
            for key, value in context.items():
                if isinstance(value, Mapping) and value.get("systemCritical"):
                    minimal["preserved"][key] = copy.deepcopy(value)

            return ResistanceResult(
                context=minimal,
                metadata={
                    "resistance": {
                        "applied": False,
                        "emergency": True,
                        "error": str(error),
                        "timestamp": time.time(),
                    }
                },
            )
        except Exception as emergency_error:
            logger.error(f"Emergency protection failed: {emergency_error}")
            return ResistanceResult(
                context={"failed": True},
                metadata={
                    "resistance": {
                        "applied": False,
                        "failed": True,
                        "errors": [str(error), str(emergency_error)],
                    }
                },
            )

    async def reconstruct(
        self,
        state: Any,
        options: ResistOptions | Mapping[str, Any] | None = None,
    ) -> ReconstructionResult:
        opts = self._options(options)
        result = await self.reconstructor.reconstruct(state, skip_cache=opts.skip_cache)
        if result.recovery_method:
            self.metrics.recovery_events += 1
        return result

    def compress(
        self,
        context: Any,
        options: ResistOptions | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        opts = self._options(options)
        return self.compressor.compress(
            context, level=opts.level, compress_critical=opts.compress_critical)

    def decompress(self, state: Any, strict: bool = False) -> Any:
        return self.compressor.decompress(state, strict=strict)

    def create_recovery_point(self, context: Any) -> str:
        return self.reconstructor.create_recovery_point(context)

    def get_metrics(self) -> dict[str, Any]:
        """Snapshot of the running metrics."""
        return {
            **self.metrics.to_dict(),
            "compression_stats": self.compressor.get_stats(),
            "recovery_points": len(self.reconstructor.recovery_points),
            "cache_size": len(self.reconstructor.reconstruction_cache),
            "preservation_target": self.config.preservation_target,
        }

    def export_ml_features(self) -> list[dict[str, Any]]:
        """Logged ``{id, features, score, timestamp}`` records."""
        return self.feature_log.export()

    def update_weights(self, weights: Mapping[str, float]) -> None:
        self.scorer.update_weights(weights)

    def cleanup(self) -> None:
        """Stop monitoring and drop recovery points and cached results."""
        self.monitor.cancel()
        self.reconstructor.clear()

    def _options(self, options: ResistOptions | Mapping[str, Any] | None) -> ResistOptions:
        if options is None:
            return ResistOptions()
        if isinstance(options, ResistOptions):
            return options
        return ResistOptions(**options)

    def _update_metrics(self, preservation_rate: float) -> None:
        self.metrics.successful_resistance += 1
        count = self.metrics.successful_resistance
        current = self.metrics.average_preservation_rate
        self.metrics.average_preservation_rate = (
            current * (count - 1) + preservation_rate) / count
        self.metrics.compression_ratio = self.compressor.get_stats()["average_ratio"]
