"""Compression with critical-data protection.

The context is split into two partitions of the same shape:

- critical: fragments a classifier flags as sensitive (credentials,
  explicitly marked nodes). Left as-is unless the caller asks for
  them to be compressed, and then only lightly.
- non_critical: everything else, deflated and base64 encoded one
  top-level entry at a time.

Decoding is lenient by default: a value that does not decode is
passed through unchanged and counted as a pass-through. Callers that
would rather fail can use ``strict=True``.
"""

import base64
import binascii
import copy
import json
import logging
import re
import time
import zlib
from collections.abc import Callable, Mapping
from typing import Any

from contextshield.engine.tree import Path, dotted, serialized_size, to_json
from contextshield.errors import CompressionError, DecompressionError

logger = logging.getLogger(__name__)

COMPRESSION_LEVELS = {
    "none": 0,
    "light": 3,
    "moderate": 6,
    "heavy": 9,
}

SENSITIVE_PATTERNS = [
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"key", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
    re.compile(r"credential", re.IGNORECASE),
    re.compile(r"auth", re.IGNORECASE),
]

FORMAT_VERSION = "1.0.0"

# (key, value, path) -> True when the field must be protected
CriticalClassifier = Callable[[str, Any, Path], bool]


class PatternClassifier:
    """Default critical-data policy.

    A field is critical when its key, its dotted path or its string
    value matches one of the sensitive patterns, or when it is a branch
    flagged ``systemCritical``, ``userMarked`` or ``priority > 8``.
    """

    def __init__(self, patterns: list[re.Pattern] | None = None):
        self.patterns = patterns if patterns is not None else SENSITIVE_PATTERNS

    def __call__(self, key: str, value: Any, path: Path) -> bool:
        full_path = dotted(path)
        for pattern in self.patterns:
            if pattern.search(key) or pattern.search(full_path):
                return True

        if isinstance(value, str):
            if any(pattern.search(value) for pattern in self.patterns):
                return True

        if isinstance(value, Mapping):
            priority = value.get("priority")
            if value.get("systemCritical") or value.get("userMarked"):
                return True
            if isinstance(priority, (int, float)) and not isinstance(priority, bool) and priority > 8:
                return True

        return False


class CompressionEngine:
    """Compresses contexts while shielding critical fragments."""

    def __init__(self, classifier: CriticalClassifier | None = None):
        self.classifier = classifier or PatternClassifier()
        self._stats = {
            "total_compressed": 0,
            "total_decompressed": 0,
            "average_ratio": 0.0,
            "failures": 0,
            "passthroughs": 0,
        }

    def compress(
        self,
        context: Any,
        level: str | None = None,
        compress_critical: bool = False,
    ) -> dict[str, Any]:
        """Compress a context.

        Args:
            context: Context to compress. A mapping is split into
                partitions; any other value is stored whole as non-critical.
            level: Level name (none/light/moderate/heavy). Picked from
                the serialized size when omitted.
            compress_critical: Also compress the critical partition, at
                the light level whatever ``level`` says.

        Returns:
            The compressed state.

        Raises:
            CompressionError: The context cannot be serialized.
        """
        start = time.perf_counter()

        try:
            original_size = serialized_size(context)
            numeric_level = self.determine_level(original_size, level)
            critical_level = COMPRESSION_LEVELS["light"] if compress_critical else 0

            if isinstance(context, Mapping):
                critical, non_critical = self.separate_critical_data(context)
                encoded_non_critical = self.compress_partition(non_critical, numeric_level)
                root = "mapping"
            else:
                critical = {}
                encoded_non_critical = self.compress_data(context, numeric_level)
                root = "value"
            encoded_critical = self.compress_partition(critical, critical_level)

            compressed_size = (
                serialized_size(encoded_non_critical) + serialized_size(encoded_critical)
            )
        except (TypeError, ValueError, RecursionError) as e:
            self._stats["failures"] += 1
            raise CompressionError(f"Compression failed: {e}") from e

        result = {
            "compressed": True,
            "timestamp": time.time(),
            "original_size": original_size,
            "compressed_size": compressed_size,
            "compression_ratio": 1 - compressed_size / max(1, original_size),
            "level": numeric_level,
            "critical": encoded_critical,
            "non_critical": encoded_non_critical,
            "metadata": {
                "algorithm": "zlib",
                "encoding": "base64",
                "version": FORMAT_VERSION,
                "critical_level": critical_level,
                "root": root,
                "duration": time.perf_counter() - start,
            },
        }
        self._update_stats(result["compression_ratio"])
        return result

    def decompress(self, state: Any, strict: bool = False) -> Any:
        """Restore a context from a compressed state.

        Anything that is not a compressed state is returned unchanged.

        Raises:
            DecompressionError: ``strict`` is set and a blob did not decode.
        """
        if not isinstance(state, Mapping) or not state.get("compressed"):
            return state

        metadata = state.get("metadata") or {}
        if metadata.get("root") == "value":
            value = self.decompress_partition(
                {"value": state.get("non_critical")}, state.get("level", 0), strict)["value"]
            self._stats["total_decompressed"] += 1
            return value

        non_critical = self.decompress_partition(
            state.get("non_critical"), state.get("level", 0), strict)
        critical = self.decompress_partition(
            state.get("critical"), metadata.get("critical_level", 0), strict)

        merged = self.merge_critical_data(critical, non_critical)
        self._stats["total_decompressed"] += 1
        return merged

    def separate_critical_data(self, context: Any) -> tuple[dict, dict]:
        """Split a context into (critical, non_critical) of the same shape."""
        critical: dict[str, Any] = {}
        non_critical: dict[str, Any] = {}

        def separate(source: Mapping, critical_target: dict, other_target: dict, path: Path) -> None:
            for key, value in source.items():
                key = str(key)
                full_path = path + (key,)

                if self.classifier(key, value, full_path):
                    critical_target[key] = value
                elif isinstance(value, Mapping):
                    critical_target[key] = {}
                    other_target[key] = {}
                    separate(value, critical_target[key], other_target[key], full_path)
                else:
                    other_target[key] = value

        if isinstance(context, Mapping):
            separate(context, critical, non_critical, ())
        return critical, non_critical

    def merge_critical_data(self, critical: Any, non_critical: Any) -> Any:
        """Overlay critical values onto the non-critical tree."""
        if not isinstance(non_critical, dict):
            non_critical = {}
        merged = copy.deepcopy(non_critical)

        def merge(target: dict, source: Mapping) -> None:
            for key, value in source.items():
                if isinstance(value, Mapping):
                    if not isinstance(target.get(key), dict):
                        target[key] = {}
                    merge(target[key], value)
                else:
                    target[key] = copy.deepcopy(value)

        if isinstance(critical, Mapping):
            merge(merged, critical)
        return merged

    def determine_level(self, size: int, level: str | None = None) -> int:
        """Numeric zlib level for a named level or a serialized size."""
        if level:
            return COMPRESSION_LEVELS.get(level, COMPRESSION_LEVELS["moderate"])

        if size < 1_000:
            return COMPRESSION_LEVELS["none"]
        if size < 10_000:
            return COMPRESSION_LEVELS["light"]
        if size < 100_000:
            return COMPRESSION_LEVELS["moderate"]
        return COMPRESSION_LEVELS["heavy"]

    def compress_partition(self, partition: dict[str, Any], level: int) -> dict[str, Any]:
        """Encode each top-level entry of a partition."""
        if level == 0:
            return partition
        return {key: self.compress_data(value, level) for key, value in partition.items()}

    def decompress_partition(self, partition: Any, level: int, strict: bool = False) -> Any:
        if level == 0 or not isinstance(partition, Mapping):
            return partition

        restored = {}
        for key, value in partition.items():
            decoded, ok = self.decode(value)
            if not ok:
                self._stats["passthroughs"] += 1
                if strict:
                    raise DecompressionError(f"Could not decode compressed entry '{key}'")
                logger.warning(f"Entry '{key}' did not decode, passing it through unchanged")
            restored[key] = decoded
        return restored

    def compress_data(self, data: Any, level: int) -> Any:
        if level == 0:
            return data
        raw = to_json(data).encode("utf-8")
        return base64.b64encode(zlib.compress(raw, level)).decode("ascii")

    def decode(self, data: Any) -> tuple[Any, bool]:
        """Decode one blob.

        Returns:
            (value, decoded) tuple. ``decoded`` is False when the blob was
            not a valid compressed value and came back unchanged.
        """
        if not isinstance(data, str):
            return data, False

        try:
            raw = zlib.decompress(base64.b64decode(data, validate=True))
            return json.loads(raw.decode("utf-8")), True
        except (binascii.Error, zlib.error, UnicodeDecodeError, ValueError):
            return data, False

    def _update_stats(self, ratio: float) -> None:
        self._stats["total_compressed"] += 1
        count = self._stats["total_compressed"]
        current = self._stats["average_ratio"]
        self._stats["average_ratio"] = (current * (count - 1) + ratio) / count

    def get_stats(self) -> dict[str, Any]:
        return dict(self._stats)
