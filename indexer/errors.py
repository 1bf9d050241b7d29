"""Indexer exception hierarchy.

Configuration and protocol failures are raised to the caller; the ingest
queue is the only layer that retries them.
"""

from __future__ import annotations


class IndexerError(Exception):
    """Base exception for all indexer failures."""


class IndexerConfigError(IndexerError):
    """Raised when a required collaborator or setting is missing."""


class RpcError(IndexerError):
    """Raised for transport, HTTP status and JSON-RPC error responses."""

    def __init__(self, message: str, *, code: int | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


class FetchLoopError(IndexerError):
    """Raised when the event fetch loop trips its iteration cap."""


class StoreError(IndexerError):
    """Raised for record store failures."""
