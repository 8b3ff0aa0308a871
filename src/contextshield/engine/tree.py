"""Helpers for walking context trees.

A context is a JSON-like value. Mappings are *branches*; scalars and
lists are *leaves*. Positions inside a tree are addressed by a
:data:`Path`, the tuple of keys leading from the root.
"""

import hashlib
import json
from collections.abc import Callable, Iterator, Mapping
from typing import Any, Optional, Union

from contextshield.errors import ContextCycleError

Scalar = Union[str, int, float, bool, None]
Node = Union[Scalar, dict[str, Any], list[Any]]
Path = tuple[str, ...]

# (key, value) -> True when the edge should not be followed
EdgeFilter = Callable[[str, Any], bool]


def is_branch(node: Any) -> bool:
    """True for mapping nodes, the only nodes that get scored."""
    return isinstance(node, Mapping)


def dotted(path: Path) -> str:
    return ".".join(path)


def to_json(value: Any, sort_keys: bool = False) -> str:
    """Compact JSON encoding.

    Raises ValueError on circular references and TypeError on values
    that have no JSON form.
    """
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, sort_keys=sort_keys)


def serialized_size(value: Any) -> int:
    """Size of the compact JSON encoding in bytes."""
    return len(to_json(value).encode("utf-8"))


def checksum(value: Any) -> str:
    """Content hash used to verify recovery points."""
    return hashlib.sha256(to_json(value, sort_keys=True).encode("utf-8")).hexdigest()


def content_key(value: Any) -> str:
    """Cheap content hash used as a cache key."""
    if isinstance(value, str):
        data = value
    else:
        data = to_json(value, sort_keys=True)
    return hashlib.md5(data.encode("utf-8")).hexdigest()


def clone(value: Any) -> Node:
    """Deep copy through JSON, which also proves the value serializes."""
    return json.loads(to_json(value))


def _children(node: Any) -> list[tuple[str, Any]]:
    if isinstance(node, Mapping):
        return [(str(key), value) for key, value in node.items()]
    if isinstance(node, list):
        return [(str(index), value) for index, value in enumerate(node)]
    return []


def find_cycle(node: Any, skip: Optional[EdgeFilter] = None) -> Optional[Path]:
    """Return the path at which ``node`` first references an ancestor.

    Shared subtrees that are not ancestors are fine. ``skip`` lets the
    caller ignore edges that are known to be back-references.
    """
    active: set[int] = set()

    def visit(current: Any, path: Path) -> Optional[Path]:
        if not isinstance(current, (Mapping, list)):
            return None
        if id(current) in active:
            return path
        active.add(id(current))
        try:
            for key, value in _children(current):
                if skip is not None and skip(key, value):
                    continue
                found = visit(value, path + (key,))
                if found is not None:
                    return found
        finally:
            active.discard(id(current))
        return None

    return visit(node, ())


def ensure_acyclic(node: Any) -> None:
    """Raise ContextCycleError if ``node`` contains itself."""
    path = find_cycle(node)
    if path is not None:
        raise ContextCycleError(path)


def iter_branches(node: Any, path: Path = ()) -> Iterator[tuple[Path, Mapping]]:
    """Yield ``(path, branch)`` for every branch below ``node``, depth first.

    The root itself is not yielded. Lists are leaves and are not
    descended into. The tree must be acyclic.
    """
    if not is_branch(node):
        return
    for key, value in node.items():
        if is_branch(value):
            child_path = path + (str(key),)
            yield child_path, value
            yield from iter_branches(value, child_path)


def count_keys(node: Any) -> int:
    """Count every key and list entry in a tree, at any depth."""
    active: set[int] = set()

    def count(current: Any) -> int:
        children = _children(current)
        if not children or id(current) in active:
            return 0
        active.add(id(current))
        total = len(children)
        for _, value in children:
            total += count(value)
        active.discard(id(current))
        return total

    return count(node)


def max_depth(node: Any, current: int = 0) -> int:
    """Nesting depth below ``node`` (0 for a flat mapping)."""
    deepest = current
    for _, value in _children(node):
        if isinstance(value, (Mapping, list)):
            deepest = max(deepest, max_depth(value, current + 1))
    return deepest


def all_keys(node: Any) -> list[str]:
    """Every mapping key in the tree, duplicates included."""
    keys: list[str] = []

    def collect(current: Any) -> None:
        for key, value in _children(current):
            if isinstance(current, Mapping):
                keys.append(key)
            collect(value)

    collect(node)
    return keys
