"""
pulse.errors — Error Types
===========================

Only the failures callers are expected to branch on get their own type.
Everything else propagates as the library exception it already is.
"""

from __future__ import annotations


class PersistenceError(RuntimeError):
    """The durable store was unavailable or a transaction failed.

    Raised by the session and counter stores with the original
    ``SQLAlchemyError`` chained as ``__cause__``.
    """


class InvalidStatsError(ValueError):
    """A stats row or increment violated a store invariant
    (negative counter, unknown metric, unknown activity kind)."""
