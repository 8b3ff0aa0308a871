"""ContextShield - context resilience engine for long-running agents.

Keeps the important parts of a context alive when it has to shrink.

Modules:
    - engine.scorer: Importance scoring of context branches
    - engine.compression: zlib compression with critical-data protection
    - engine.reconstruction: Reconstruction, recovery points, emergency recovery
    - engine.strategies: Filtering and reorganization strategies
    - engine.coordinator: The resist() pipeline tying it all together
    - events: Typed event bus for engine notifications
    - memory_monitor: Background memory-pressure sampling (psutil)
    - config: YAML-backed engine settings
"""

__version__ = "0.1.0"

from contextshield.config import ResistanceConfig, ResistOptions, load_config, save_config
from contextshield.engine import (
    CompressionEngine,
    ContextReconstructor,
    ImportanceScorer,
    ResistanceCoordinator,
    ResistanceResult,
    ResistanceStrategy,
)
from contextshield.errors import (
    CompressionError,
    ContextCycleError,
    ContextShieldError,
    DecompressionError,
    RecoveryPointCorrupted,
)
from contextshield.events import EventBus, EventType

__all__ = [
    "ResistanceConfig",
    "ResistOptions",
    "load_config",
    "save_config",
    "CompressionEngine",
    "ContextReconstructor",
    "ImportanceScorer",
    "ResistanceCoordinator",
    "ResistanceResult",
    "ResistanceStrategy",
    "ContextShieldError",
    "CompressionError",
    "DecompressionError",
    "RecoveryPointCorrupted",
    "ContextCycleError",
    "EventBus",
    "EventType",
]
