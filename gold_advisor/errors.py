"""Exception taxonomy for the engine and its collaborators."""

from __future__ import annotations


class GoldAdvisorError(Exception):
    """Base class for all engine errors."""


class ValidationError(GoldAdvisorError):
    """A settings or profile patch was rejected; nothing was applied."""


class TickError(GoldAdvisorError):
    """A tick was aborted; prior engine state is retained."""


class FetchError(TickError):
    """A market data request timed out or returned a non-success status."""


class ParseError(TickError):
    """The primary price could not be parsed into a finite number."""
