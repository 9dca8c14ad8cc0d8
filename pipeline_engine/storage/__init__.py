"""Persistence adapters for resumable run state."""

from pipeline_engine.storage.checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)

__all__ = ["CheckpointStore", "FileCheckpointStore", "InMemoryCheckpointStore"]
