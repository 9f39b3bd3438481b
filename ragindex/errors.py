"""
Error taxonomy for the index layer.

Usage:
    from ragindex.errors import FormatError

    raise FormatError("Offset table is truncated", {"path": str(idx_path)})
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes surfaced by the CLI and callers."""

    FORMAT_INVALID = "FORMAT_INVALID"
    BUILD_FAILED = "BUILD_FAILED"
    QUERY_INVALID = "QUERY_INVALID"
    BACKEND_IO = "BACKEND_IO"
    INDEX_NOT_FOUND = "INDEX_NOT_FOUND"


class RagIndexError(Exception):
    """Base exception with error code support."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class FormatError(RagIndexError):
    """Bundle artifacts are missing, corrupt, or disagree with each other."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(ErrorCode.FORMAT_INVALID, message, details)


class BuildError(RagIndexError):
    """A build was rejected; any previously published bundle is untouched."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(ErrorCode.BUILD_FAILED, message, details)


class QueryError(RagIndexError):
    """A query was rejected before any backend work started."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(ErrorCode.QUERY_INVALID, message, details)


class BackendError(RagIndexError):
    """A backend failed to read its on-disk state during search."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(ErrorCode.BACKEND_IO, message, details)


class IndexNotFoundError(RagIndexError, LookupError):
    """Raised when an index name does not resolve to a bundle directory."""

    def __init__(self, name: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            ErrorCode.INDEX_NOT_FOUND,
            f"Index '{name}' not found. Run 'ragindex list' to see available indexes.",
            {"name": name, **(details or {})},
        )
