from __future__ import annotations


class IVTError(Exception):
    """Base class for every error raised by the IVT detection engine."""


class StoreError(IVTError):
    """A backing-store call failed (network, HTTP status, SQL error)."""


class StoreUnavailableError(StoreError):
    """The store is reachable but the requested table or function does not exist."""


class AnalysisInProgressError(IVTError):
    """Another analysis run already holds the run guard."""
