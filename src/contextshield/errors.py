"""Exceptions raised by the context resilience engine.

Most degraded outcomes are reported through result flags
(``success``, ``applied``) rather than exceptions. The classes here
cover the cases a caller has to handle explicitly.
"""


class ContextShieldError(Exception):
    """Base class for all engine errors."""


class CompressionError(ContextShieldError):
    """The context could not be serialized for compression."""


class DecompressionError(ContextShieldError):
    """A compressed blob could not be decoded (strict mode only)."""


class RecoveryPointCorrupted(ContextShieldError):
    """A recovery point's checksum no longer matches its context."""


class ContextCycleError(ContextShieldError):
    """The context references itself and cannot be scored."""

    def __init__(self, path: tuple[str, ...]):
        self.path = path
        where = ".".join(path) or "<root>"
        super().__init__(f"Context contains a circular reference at {where}")
