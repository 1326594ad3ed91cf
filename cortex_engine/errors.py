"""
Error types for the cortex engine.

Configuration and dimension problems are raised as soon as they are detected.
Backends that cannot perform a partial structural change report it through
their return value (see CacheController.remove_range), not through an exception.
"""


class CortexError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(CortexError, ValueError):
    """An invalid parameter was supplied (temperature, divisor, stop sequence, region...)."""


class DimensionMismatch(CortexError, ValueError):
    """A score vector does not have one entry per vocabulary token."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"score vector has {actual} entries, vocabulary has {expected}")
        self.expected = expected
        self.actual = actual


class StateError(CortexError, RuntimeError):
    """The operation needs a loaded context, fresh logits, or an idle session."""


class DecodeError(CortexError, RuntimeError):
    """The inference context failed to decode a batch of tokens."""
