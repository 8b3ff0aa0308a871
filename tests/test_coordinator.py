"""Tests for the resistance coordinator.

Tests:
1. resist() on ordinary contexts
2. Strategy selection and the strategies themselves
3. Failure handling and emergency protection
4. Metrics, feature export and lifecycle
"""

import asyncio
import copy
from collections.abc import Mapping

import pytest


# ── Fixtures ──────────────────────────────────────────────────

def low_pressure():
    from contextshield.memory_monitor import MemorySample
    return MemorySample(pressure=0.1, used=100, total=1000)


def high_pressure():
    from contextshield.memory_monitor import MemorySample
    return MemorySample(pressure=0.95, used=950, total=1000)


@pytest.fixture
def make_engine():
    """Factory for coordinators with a fixed memory reading and no monitor loop."""
    from contextshield.config import ResistanceConfig
    from contextshield.engine.coordinator import ResistanceCoordinator

    def make(probe=low_pressure, **overrides):
        config = ResistanceConfig(auto_resist=False, **overrides)
        return ResistanceCoordinator(config, memory_probe=probe)

    return make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def basic_context():
    """One critical branch and one ordinary branch."""
    return {
        "critical": {"systemCritical": True, "data": "keep"},
        "normal": {"data": "drop-candidate"},
    }


@pytest.fixture
def important_context():
    """Two branches that score above the high-importance threshold."""
    tags = ["core", "api", "database", "cache", "security"]
    return {
        "a": {"id": "a", "dependencies": ["b"], "tags": tags,
              "userMarked": True, "systemCritical": True},
        "b": {"id": "b", "dependencies": ["a"], "tags": tags,
              "userMarked": True, "systemCritical": True},
    }


# ═══════════════════════════════════════════════════════════════
# 1. RESIST
# ═══════════════════════════════════════════════════════════════

class TestResist:
    """Test the main resist() pipeline."""

    def test_critical_data_survives(self, engine, basic_context):
        """Default resistance keeps systemCritical branches."""
        result = asyncio.run(engine.resist(basic_context))
        resistance = result.metadata["resistance"]

        assert result.applied is True
        assert result.context["critical"]["data"] == "keep"
        assert resistance["strategy"] == "balanced"
        assert resistance["preservation_rate"] >= 0.5

    def test_low_scores_dropped(self, engine, basic_context):
        """Ordinary branches below the balanced threshold are filtered out."""
        result = asyncio.run(engine.resist(basic_context))

        assert "normal" not in result.context
        assert result.metadata["resistance"]["preservation_rate"] == pytest.approx(3 / 5)

    def test_input_not_modified(self, engine, basic_context):
        """The caller's context is never mutated."""
        before = copy.deepcopy(basic_context)
        asyncio.run(engine.resist(basic_context, strategy="aggressive"))
        asyncio.run(engine.resist(basic_context, strategy="lowMemory"))
        assert basic_context == before

    def test_full_snapshot_recoverable(self, engine, basic_context):
        """The compressed snapshot in the metadata restores the whole context."""
        result = asyncio.run(engine.resist(basic_context))
        compressed = result.metadata["resistance"]["compressed"]

        assert engine.decompress(compressed) == basic_context

        restored = asyncio.run(engine.reconstruct(compressed))
        assert restored.success is True
        assert restored.context["normal"] == {"data": "drop-candidate"}

    def test_recovery_point_created(self, engine, basic_context):
        """Each successful pass snapshots the protected context."""
        result = asyncio.run(engine.resist(basic_context))
        points = engine.reconstructor.recovery_points

        assert len(points) == 1
        assert points[0].context == result.context

    def test_no_recovery_point_when_disabled(self, make_engine, basic_context):
        engine = make_engine(emergency_recovery_enabled=False)
        asyncio.run(engine.resist(basic_context))
        assert engine.reconstructor.recovery_points == []

    def test_event_emitted(self, engine, basic_context):
        """Subscribers receive a resistance event per pass."""
        from contextshield.events import EventType

        received = []
        engine.bus.subscribe(EventType.RESISTANCE, received.append)
        asyncio.run(engine.resist(basic_context))

        assert len(received) == 1
        payload = received[0].payload
        assert payload["strategy"] == "balanced"
        assert payload["original_size"] > payload["protected_size"]
        assert set(payload) == {
            "strategy", "preservation_rate", "duration", "original_size", "protected_size"}


# ═══════════════════════════════════════════════════════════════
# 2. STRATEGIES
# ═══════════════════════════════════════════════════════════════

class TestStrategies:
    """Test strategy selection and application."""

    def test_memory_pressure_selects_low_memory(self, make_engine, basic_context):
        engine = make_engine(probe=high_pressure)
        result = asyncio.run(engine.resist(basic_context))
        assert result.metadata["resistance"]["strategy"] == "lowMemory"

    def test_high_importance_selected(self, engine, important_context):
        """A context that scores high on average gets the light touch."""
        scores = engine.score_context(important_context)
        assert engine.average_importance(scores) > 0.7

        result = asyncio.run(engine.resist(important_context))
        assert result.metadata["resistance"]["strategy"] == "highImportance"
        assert result.context == important_context

    def test_aggressive_level_selected(self, make_engine, basic_context):
        engine = make_engine(resistance_level="aggressive")
        result = asyncio.run(engine.resist(basic_context))
        assert result.metadata["resistance"]["strategy"] == "aggressive"

    def test_explicit_strategy_wins(self, make_engine, basic_context):
        """An explicit strategy overrides memory pressure."""
        engine = make_engine(probe=high_pressure)

        by_arg = asyncio.run(engine.resist(basic_context, strategy="highImportance"))
        by_option = asyncio.run(engine.resist(basic_context, options={"strategy": "aggressive"}))

        assert by_arg.metadata["resistance"]["strategy"] == "highImportance"
        assert by_option.metadata["resistance"]["strategy"] == "aggressive"

    def test_empty_context_uses_neutral_mean(self, engine):
        assert engine.average_importance({}) == 0.5

    def test_unknown_strategy_rejected(self, engine, basic_context):
        """Bad caller input raises instead of triggering emergency protection."""
        from pydantic import ValidationError

        with pytest.raises(ValueError):
            asyncio.run(engine.resist(basic_context, strategy="bogus"))
        with pytest.raises(ValidationError):
            asyncio.run(engine.resist(basic_context, options={"strategy": "bogus"}))
        assert engine.metrics.total_resistance_events == 0

    @pytest.mark.parametrize("strategy", ["lowMemory", "highImportance", "balanced"])
    def test_filtering_adds_no_keys(self, engine, strategy):
        """Filtering strategies only ever remove keys."""
        from contextshield.engine.tree import all_keys

        context = {
            "critical": {"systemCritical": True, "data": {"deep": [1, 2]}},
            "normal": {"data": "x", "child": {"value": 1}},
            "flag": True,
            "group": {"inner": {"v": 1}, "leaf": "kept"},
        }
        result = asyncio.run(engine.resist(context, strategy=strategy))
        rate = result.metadata["resistance"]["preservation_rate"]

        assert set(all_keys(result.context)) <= set(all_keys(context))
        assert 0.0 <= rate <= 1.0
        assert result.context["critical"] == context["critical"]
        assert "flag" not in result.context

    def test_unscored_leaves_dropped(self):
        """Leaves outside a kept branch go; so do containers left empty."""
        from contextshield.engine.strategies import filter_by_importance

        kept = filter_by_importance(
            {"flag": 1, "list": [1, 2], "branch": {"inner": {"x": 1}}, "empty": {}}, 0.6, {})
        assert kept == {}

    def test_scored_branch_keeps_its_leaves(self):
        """A branch above the threshold comes back whole, its leaves included."""
        import dataclasses

        from contextshield.engine.scorer import ImportanceScorer
        from contextshield.engine.strategies import filter_by_importance

        base = ImportanceScorer().calculate_score({"v": 1})
        scores = {
            ("b",): dataclasses.replace(base, score=0.9),
            ("c",): dataclasses.replace(base, score=0.1),
        }
        context = {"note": "x", "b": {"data": "y"}, "c": {"data": "z"},
                   "safe": {"systemCritical": True}}

        kept = filter_by_importance(context, 0.6, scores)
        assert kept == {"b": {"data": "y"}, "safe": {"systemCritical": True}}

    def test_root_leaf_not_kept_by_balanced(self, engine):
        """A bare leaf at the root does not survive balanced filtering."""
        result = asyncio.run(engine.resist({"note": "x", "b": {"data": "y"}}, strategy="balanced"))
        assert "note" not in result.context

    def test_aggressive_reorganizes(self, engine):
        """Aggressive buckets top-level entries and backs up the critical ones."""
        from contextshield.engine.tree import checksum

        context = {
            "core": {"systemCritical": True, "v": 1},
            "misc": {"v": 2},
            "flag": True,
        }
        result = asyncio.run(engine.resist(context, strategy="aggressive"))
        protected = result.context

        assert set(protected) == {
            "critical", "important", "standard", "low", "_backup", "_strategy", "_redundancy"}
        assert protected["critical"] == {"core": {"systemCritical": True, "v": 1}}
        assert protected["low"] == {"misc": {"v": 2}, "flag": True}
        assert protected["_backup"]["critical"] == protected["critical"]
        assert protected["_backup"]["checksum"] == checksum(protected["critical"])
        assert protected["_strategy"] == "aggressive"
        assert protected["_redundancy"] is True
        assert "compressed" not in result.metadata["resistance"]


# ═══════════════════════════════════════════════════════════════
# 3. FAILURES
# ═══════════════════════════════════════════════════════════════

class TestEmergencyProtection:
    """Test failure handling."""

    def test_circular_context_does_not_raise(self, engine):
        """A self-referencing context falls back to emergency protection."""
        context = {"a": 1}
        context["self"] = context

        result = asyncio.run(engine.resist(context))
        resistance = result.metadata["resistance"]

        assert resistance["applied"] is False
        assert resistance["emergency"] is True
        assert "circular" in resistance["error"]
        assert engine.metrics.failed_resistance == 1
        assert engine.metrics.recovery_events == 1

    def test_critical_branches_preserved(self, engine):
        """Emergency protection keeps top-level systemCritical branches."""
        context = {"core": {"systemCritical": True, "v": 1}, "other": {"v": 2}}
        context["loop"] = context

        result = asyncio.run(engine.resist(context))

        assert result.context["emergency"] is True
        assert result.context["preserved"] == {"core": {"systemCritical": True, "v": 1}}

    def test_error_event_emitted(self, engine):
        from contextshield.events import EventType

        errors = []
        engine.bus.subscribe(EventType.RESISTANCE_ERROR, errors.append)
        context = {}
        context["self"] = context
        asyncio.run(engine.resist(context))

        assert len(errors) == 1
        assert errors[0].payload["error_type"] == "ContextCycleError"

    def test_emergency_failure_flagged(self, engine):
        """If even emergency protection fails, the result says so."""

        class Unreadable(Mapping):
            def __getitem__(self, key):
                raise RuntimeError("unreadable")

            def __iter__(self):
                raise RuntimeError("unreadable")

            def __len__(self):
                return 1

        result = asyncio.run(engine.resist(Unreadable()))
        resistance = result.metadata["resistance"]

        assert result.context == {"failed": True}
        assert resistance["applied"] is False
        assert resistance["failed"] is True
        assert len(resistance["errors"]) == 2

    def test_disabled_recovery_reraises(self, make_engine):
        """Without emergency recovery the failure propagates."""
        from contextshield.errors import ContextCycleError

        engine = make_engine(emergency_recovery_enabled=False)
        context = {}
        context["self"] = context

        with pytest.raises(ContextCycleError):
            asyncio.run(engine.resist(context))
        assert engine.metrics.failed_resistance == 1


# ═══════════════════════════════════════════════════════════════
# 4. METRICS, FEATURES & LIFECYCLE
# ═══════════════════════════════════════════════════════════════

class TestMetricsAndLifecycle:
    """Test metrics, ML feature export and start/stop."""

    def test_metrics(self, engine, basic_context):
        """Metrics track counts and the running preservation mean."""
        asyncio.run(engine.resist(basic_context))
        asyncio.run(engine.resist(basic_context, strategy="highImportance"))

        metrics = engine.get_metrics()
        assert metrics["total_resistance_events"] == 2
        assert metrics["successful_resistance"] == 2
        assert metrics["failed_resistance"] == 0
        assert metrics["average_preservation_rate"] == pytest.approx((3 / 5 + 3 / 5) / 2)
        assert metrics["recovery_points"] == 2
        assert metrics["compression_stats"]["total_compressed"] == 2
        assert metrics["compression_ratio"] == metrics["compression_stats"]["average_ratio"]

    def test_access_counts_raise_scores(self, engine, basic_context):
        """Per-path access counts feed the frequency factor."""
        scores = engine.score_context(basic_context, access_counts={"normal": 100})
        assert scores[("normal",)].breakdown["frequency"] == pytest.approx(0.25)
        assert scores[("critical",)].breakdown["frequency"] == 0

    def test_dependency_targets_marked(self, engine):
        """Nodes named in another node's dependencies are depended upon."""
        context = {"a": {"id": "a"}, "b": {"id": "b", "dependencies": ["a"]}}
        scores = engine.score_context(context)

        assert scores[("a",)].features.is_depended_upon is True
        assert scores[("b",)].features.is_depended_upon is False

    def test_nested_branches_scored(self, engine):
        scores = engine.score_context({"outer": {"inner": {"v": 1}}, "leaf": 3})
        assert set(scores) == {("outer",), ("outer", "inner")}

    def test_feature_export(self, make_engine, basic_context):
        """With ml_enabled, every scored branch is logged for export."""
        engine = make_engine(ml_enabled=True)
        asyncio.run(engine.resist(basic_context))

        exported = engine.export_ml_features()
        assert {entry["id"] for entry in exported} == {"critical", "normal"}

    def test_feature_export_off_by_default(self, engine, basic_context):
        asyncio.run(engine.resist(basic_context))
        assert engine.export_ml_features() == []

    def test_update_weights(self, engine):
        engine.update_weights({"semantic": 0.3})
        assert engine.scorer.weights["semantic"] == 0.3

    def test_compress_passthrough(self, engine):
        """compress() takes its level from the options."""
        state = engine.compress({"note": {"v": 1}}, {"level": "heavy"})
        assert state["level"] == 9
        assert engine.decompress(state) == {"note": {"v": 1}}

    def test_cleanup(self, engine, basic_context):
        asyncio.run(engine.resist(basic_context))
        engine.cleanup()
        assert engine.reconstructor.recovery_points == []

    def test_context_manager_runs_monitor(self):
        """auto_resist starts the memory monitor for the engine's lifetime."""
        from contextshield.config import ResistanceConfig
        from contextshield.engine.coordinator import ResistanceCoordinator

        async def run():
            engine = ResistanceCoordinator(
                ResistanceConfig(auto_resist=True, memory_check_interval_s=0.01),
                memory_probe=low_pressure,
            )
            async with engine:
                assert engine.monitor.running is True
            return engine

        engine = asyncio.run(run())
        assert engine.monitor.running is False

    def test_start_without_auto_resist(self, engine):
        asyncio.run(engine.start())
        assert engine.monitor.running is False
