"""Utility modules for common operations."""

from ragindex.utils.jsonl import (
    atomic_write_json,
    atomic_write_jsonl,
    atomic_write_text,
    atomic_writer,
    fsync_directory,
)
from ragindex.utils.paths import directory_size, ensure_dir, validate_index_name

__all__ = [
    "atomic_write_json",
    "atomic_write_jsonl",
    "atomic_write_text",
    "atomic_writer",
    "directory_size",
    "ensure_dir",
    "fsync_directory",
    "validate_index_name",
]
