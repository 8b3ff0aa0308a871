"""Scoring, compression and reconstruction of contexts.

1. Scorer: How much is each branch worth keeping?
2. Compressor: Shrink the rest without touching credentials
3. Reconstructor: Get a usable context back, whatever happens
4. Coordinator: Pick a strategy and run the whole pass
"""

from contextshield.engine.scorer import FeatureLog, ImportanceScore, ImportanceScorer
from contextshield.engine.compression import CompressionEngine, PatternClassifier
from contextshield.engine.reconstruction import (
    ContextReconstructor,
    ReconstructionResult,
    RecoveryPoint,
)
from contextshield.engine.strategies import ResistanceStrategy
from contextshield.engine.coordinator import (
    ResistanceCoordinator,
    ResistanceMetrics,
    ResistanceResult,
)

__all__ = [
    "FeatureLog",
    "ImportanceScore",
    "ImportanceScorer",
    "CompressionEngine",
    "PatternClassifier",
    "ContextReconstructor",
    "ReconstructionResult",
    "RecoveryPoint",
    "ResistanceStrategy",
    "ResistanceCoordinator",
    "ResistanceMetrics",
    "ResistanceResult",
]
