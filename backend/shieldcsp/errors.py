# shieldcsp/errors.py
"""
Exception taxonomy for the scan pipeline.

Fetch failures are NOT exceptions: HeaderFetcher returns a FetchResult with
success=False. Analysis never raises either: the analyzers produce a result for
any input, including an empty header map or an empty CSP string.
"""

from __future__ import annotations


class ShieldCSPError(Exception):
    """Base class for errors raised inside the scan pipeline."""


class ScanError(ShieldCSPError):
    """A scan attempt failed (fetch failure, persistence failure, ...)."""


class QueueUnavailableError(ShieldCSPError):
    """
    The queue store is unconfigured or unreachable.

    Raised by enqueue paths so callers can fall back to a synchronous scan.
    """


class InvalidScanTypeError(ShieldCSPError, ValueError):
    """Unknown scan type passed to a caller-facing operation."""
