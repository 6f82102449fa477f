"""Durable checkpoint storage."""

from .store import CheckpointLoadError, CheckpointStore

__all__ = ["CheckpointLoadError", "CheckpointStore"]
