"""Context reconstruction and emergency recovery.

Reconstruction turns a compressed state back into a usable context:

1. Cache lookup (content hash of the input)
2. Decompress
3. Rebuild relationships (``dependencies`` ids and ``parentId`` become
   references to the nodes they name)
4. Restore metadata defaults
5. Validate, recording problems in ``metadata.validation``
6. Cache the result

If anything in that pipeline fails, the state goes through the
emergency cascade instead:

Tier 1: recovery point (exact checksum match, else the newest one)
Tier 2: salvage whatever values can still be read
Tier 3: a minimal stub context

The cascade never raises.
"""

import copy
import logging
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from contextshield.engine.compression import CompressionEngine
from contextshield.engine.tree import checksum, clone, content_key, find_cycle, to_json
from contextshield.errors import RecoveryPointCorrupted

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECOVERY_POINTS = 10
DEFAULT_CACHE_SIZE = 100
METADATA_VERSION = "1.0.0"

# Keys that hold references materialized by rebuild_relationships
LINK_KEYS = frozenset({"parent", "dependencies"})


@dataclass
class RecoveryPoint:
    """A verified snapshot of a context."""
    id: str
    timestamp: float
    context: Any
    checksum: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "context": self.context,
            "checksum": self.checksum,
        }


@dataclass
class ReconstructionResult:
    """Outcome of a reconstruction or recovery attempt."""
    context: Any
    reconstruction_time: float
    success: bool
    recovery_method: str | None = None
    warning: str | None = None
    original_error: str | None = None
    errors: list[str] = field(default_factory=list)
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        result = {
            "context": self.context,
            "reconstruction_time": self.reconstruction_time,
            "success": self.success,
            "cached": self.cached,
        }
        if self.recovery_method:
            result["recovery_method"] = self.recovery_method
        if self.warning:
            result["warning"] = self.warning
        if self.original_error:
            result["original_error"] = self.original_error
        if self.errors:
            result["errors"] = list(self.errors)
        return result


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ContextReconstructor:
    """Rebuilds contexts and owns the recovery points.

    Usage:
        reconstructor = ContextReconstructor()
        reconstructor.create_recovery_point(context)
        result = await reconstructor.reconstruct(compressed_state)
        if not result.success:
            print(result.recovery_method, result.warning)
    """

    def __init__(
        self,
        compressor: CompressionEngine | None = None,
        max_recovery_points: int = DEFAULT_MAX_RECOVERY_POINTS,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ):
        self.compressor = compressor or CompressionEngine()
        self.max_recovery_points = max_recovery_points
        self.cache_size = cache_size

        self._recovery_points: deque[RecoveryPoint] = deque(maxlen=max_recovery_points)
        self.reconstruction_cache: OrderedDict[str, Any] = OrderedDict()
        self.recovery_events = 0

    @property
    def recovery_points(self) -> list[RecoveryPoint]:
        """Recovery points, oldest first."""
        return list(self._recovery_points)

    async def reconstruct(self, state: Any, skip_cache: bool = False) -> ReconstructionResult:
        """Reconstruct a context from a compressed state.

        Args:
            state: Compressed state (or any value to recover from).
            skip_cache: Ignore a cached result for this input.

        Returns:
            ReconstructionResult. Failures resolve through the emergency
            cascade, so this never raises.
        """
        start = time.perf_counter()

        try:
            cache_key = content_key(state)
            if not skip_cache and cache_key in self.reconstruction_cache:
                return ReconstructionResult(
                    context=copy.deepcopy(self.reconstruction_cache[cache_key]),
                    reconstruction_time=time.perf_counter() - start,
                    success=True,
                    cached=True,
                )

            decompressed = self.compressor.decompress(state)
            with_relationships = self.rebuild_relationships(decompressed)
            with_metadata = self.restore_metadata(with_relationships)
            validated = self.validate_reconstruction(with_metadata)

            self.reconstruction_cache[cache_key] = validated
            self.reconstruction_cache.move_to_end(cache_key)
            while len(self.reconstruction_cache) > self.cache_size:
                self.reconstruction_cache.popitem(last=False)

            return ReconstructionResult(
                context=copy.deepcopy(validated),
                reconstruction_time=time.perf_counter() - start,
                success=True,
            )
        except Exception as e:
            return await self.emergency_recovery(state, e)

    async def emergency_recovery(self, state: Any, error: BaseException) -> ReconstructionResult:
        """Recover something usable after a failed reconstruction."""
        logger.error(f"Emergency recovery initiated: {error}")
        self.recovery_events += 1
        start = time.perf_counter()

        try:
            point = self.find_nearest_recovery_point(state)
            if point is not None:
                recovered = self.restore_from_recovery_point(point)
                return ReconstructionResult(
                    context=recovered,
                    reconstruction_time=time.perf_counter() - start,
                    success=True,
                    recovery_method="recovery_point",
                    warning="Restored from recovery point - some data may be outdated",
                )
        except Exception as e:
            logger.warning(f"Recovery point unusable, salvaging instead: {e}")

        try:
            salvaged = self.salvage_data(state)
            return ReconstructionResult(
                context=salvaged,
                reconstruction_time=time.perf_counter() - start,
                success=False,
                recovery_method="salvage",
                warning="Emergency recovery - significant data loss possible",
                original_error=str(error),
            )
        except Exception as recovery_error:
            logger.error(f"Salvage failed, returning minimal context: {recovery_error}")
            return ReconstructionResult(
                context=self.minimal_viable_context(),
                reconstruction_time=time.perf_counter() - start,
                success=False,
                recovery_method="minimal",
                warning="Critical failure - returned minimal context",
                original_error=str(error),
                errors=[str(error), str(recovery_error)],
            )

    def create_recovery_point(self, context: Any) -> str:
        """Snapshot a context; the oldest point is dropped past the bound."""
        snapshot = clone(context)
        point = RecoveryPoint(
            id=str(uuid.uuid4()),
            timestamp=time.time(),
            context=snapshot,
            checksum=checksum(snapshot),
        )
        self._recovery_points.append(point)
        return point.id

    def find_nearest_recovery_point(self, state: Any) -> RecoveryPoint | None:
        """Exact checksum match if there is one, else the newest point."""
        if not self._recovery_points:
            return None

        try:
            state_checksum = checksum(state)
        except (TypeError, ValueError):
            state_checksum = None

        if state_checksum is not None:
            for point in self._recovery_points:
                if point.checksum == state_checksum:
                    return point

        return self._recovery_points[-1]

    def restore_from_recovery_point(self, point: RecoveryPoint) -> Any:
        """Verify a point and return a deep copy of its context.

        Raises:
            RecoveryPointCorrupted: The stored checksum does not match.
        """
        if checksum(point.context) != point.checksum:
            raise RecoveryPointCorrupted(f"Recovery point {point.id} corrupted")
        return clone(point.context)

    def salvage_data(self, state: Any) -> dict[str, Any]:
        """Copy every readable, non-null value into a fresh structure."""
        salvaged: dict[str, Any] = {
            "recovered": True,
            "partial": True,
            "timestamp": time.time(),
            "data": {},
        }
        active: set[int] = set()

        def extract(source: Any) -> Any:
            active.add(id(source))
            try:
                if isinstance(source, Mapping):
                    target: Any = {}
                    entries = list(source.items())
                else:
                    target = []
                    entries = list(enumerate(source))

                for key, value in entries:
                    try:
                        if value is None or id(value) in active:
                            continue
                        if isinstance(value, (Mapping, list)):
                            value = extract(value)
                        if isinstance(target, dict):
                            target[str(key)] = value
                        else:
                            target.append(value)
                    except Exception as e:
                        logger.debug(f"Skipping unreadable value at '{key}': {e}")
                return target
            finally:
                active.discard(id(source))

        if isinstance(state, Mapping):
            salvaged["data"] = extract(state)
        elif isinstance(state, list):
            salvaged["data"] = {"items": extract(state)}
        return salvaged

    def minimal_viable_context(self) -> dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "timestamp": time.time(),
            "emergency": True,
            "minimal": True,
            "data": {},
            "metadata": {
                "created": _now_iso(),
                "reason": "emergency_recovery_failed",
            },
        }

    def rebuild_relationships(self, context: Any) -> Any:
        """Turn id references into direct node references.

        Ids that do not resolve are left as they are.
        """
        if not isinstance(context, dict):
            return context

        rebuilt = copy.deepcopy(context)
        id_map: dict[Any, dict] = {}
        seen: set[int] = set()

        def collect(node: Any) -> None:
            if id(node) in seen:
                return
            seen.add(id(node))
            if isinstance(node, dict):
                node_id = node.get("id")
                if node_id is not None and isinstance(node_id, (str, int)):
                    id_map[node_id] = node
                values = list(node.values())
            elif isinstance(node, list):
                values = node
            else:
                return
            for value in values:
                collect(value)

        collect(rebuilt)
        seen.clear()

        def relink(node: Any) -> None:
            if id(node) in seen:
                return
            seen.add(id(node))
            if isinstance(node, dict):
                dependencies = node.get("dependencies")
                if isinstance(dependencies, list):
                    node["dependencies"] = [
                        id_map.get(dep, dep) if isinstance(dep, (str, int)) else dep
                        for dep in dependencies
                    ]
                parent_id = node.get("parentId")
                if isinstance(parent_id, (str, int)) and parent_id in id_map:
                    node["parent"] = id_map[parent_id]
                values = [v for k, v in node.items() if k not in LINK_KEYS]
            elif isinstance(node, list):
                values = node
            else:
                return
            for value in values:
                relink(value)

        relink(rebuilt)
        return rebuilt

    def restore_metadata(self, context: Any) -> Any:
        if not isinstance(context, dict):
            return context

        restored = dict(context)
        meta = restored.get("metadata")
        meta = dict(meta) if isinstance(meta, Mapping) else {}
        restored["metadata"] = meta

        meta.setdefault("created", _now_iso())
        meta.setdefault("lastModified", _now_iso())
        meta.setdefault("version", METADATA_VERSION)
        if not isinstance(meta.get("system"), Mapping):
            meta["system"] = {"reconstructed": True, "timestamp": time.time()}
        else:
            meta["system"] = {"reconstructed": True, **meta["system"]}

        return restored

    def validate_reconstruction(self, context: Any) -> Any:
        """Check the context and record the outcome in its metadata.

        Links created by ``rebuild_relationships`` are expected
        back-references and are not reported as cycles.
        """
        errors: list[str] = []

        if not isinstance(context, dict):
            errors.append("Context is not an object")
            return context

        cycle = find_cycle(context, skip=lambda key, value: key in LINK_KEYS)
        if cycle is not None:
            errors.append(f"Context contains circular references at {'.'.join(cycle)}")
        else:
            try:
                to_json(self._strip_links(context))
            except (TypeError, ValueError) as e:
                errors.append(f"Context is not serializable: {e}")

        meta = context.setdefault("metadata", {})
        meta["validation"] = {
            "validated": True,
            "timestamp": time.time(),
            "errors": errors or None,
            "valid": not errors,
        }
        return context

    def _strip_links(self, node: Any) -> Any:
        """Copy of the tree with materialized links replaced by ids."""
        if isinstance(node, dict):
            stripped = {}
            for key, value in node.items():
                if key == "parent" and isinstance(value, dict):
                    stripped[key] = value.get("id")
                elif key == "dependencies" and isinstance(value, list):
                    stripped[key] = [
                        dep.get("id") if isinstance(dep, dict) else dep for dep in value
                    ]
                else:
                    stripped[key] = self._strip_links(value)
            return stripped
        if isinstance(node, list):
            return [self._strip_links(item) for item in node]
        return node

    def clear(self) -> None:
        """Drop all recovery points and cached reconstructions."""
        self._recovery_points.clear()
        self.reconstruction_cache.clear()
