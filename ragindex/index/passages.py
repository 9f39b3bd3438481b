"""Passage blob store: JSONL records plus an offset table and id mapping."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ragindex.errors import BackendError, FormatError
from ragindex.utils.jsonl import atomic_write_json, atomic_write_jsonl, atomic_write_text

logger = logging.getLogger(__name__)


class Passage(BaseModel):
    """One retrievable unit of text with its metadata."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str = Field(..., description="External passage identifier")
    text: str = Field(..., description="Passage text")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Filterable attributes")


def write_ids(path: Path, ids: Sequence[str]) -> None:
    """Write ids one per line, without a trailing newline."""
    atomic_write_text(path, "\n".join(ids))


def read_ids(path: Path) -> list[str]:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise FormatError("Id mapping missing", details={"path": str(path)}) from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise FormatError(f"Id mapping unreadable: {exc}", details={"path": str(path)}) from exc
    if not content:
        return []
    if content.endswith("\n"):
        content = content[:-1]
    return content.split("\n")


def write_passages(
    jsonl_path: Path, offsets_path: Path, passages: Sequence[Passage]
) -> list[int]:
    """Write the passages file and its offset map; returns the dense N+1 offset table."""
    offsets = atomic_write_jsonl(jsonl_path, passages)
    atomic_write_json(
        offsets_path, {passage.id: offset for passage, offset in zip(passages, offsets)}
    )
    return offsets


def _is_offset(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def load_offset_table(path: Path, ids: Sequence[str], file_size: int) -> list[int]:
    """Read an offset table and return the dense ``N+1`` form.

    Accepts an id -> offset object as well as a plain array
    of ``N+1`` offsets. Raises :class:`FormatError` on anything inconsistent.
    """
    details = {"path": str(path)}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise FormatError("Passage offset table missing", details=details) from exc
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FormatError(f"Passage offset table corrupt: {exc}", details=details) from exc

    if isinstance(raw, dict):
        unknown = set(raw) - set(ids)
        if unknown:
            raise FormatError(
                "Passage offset table references unknown ids",
                details={**details, "ids": sorted(unknown)[:5]},
            )
        if len(raw) != len(ids):
            raise FormatError(
                "Passage offset table is missing entries",
                details={**details, "expected": len(ids), "actual": len(raw)},
            )
        starts = [raw[passage_id] for passage_id in ids]
        table = starts + [file_size]
    elif isinstance(raw, list):
        if len(raw) != len(ids) + 1:
            raise FormatError(
                "Passage offset table has the wrong length",
                details={**details, "expected": len(ids) + 1, "actual": len(raw)},
            )
        table = list(raw)
        if table and table[-1] != file_size:
            raise FormatError(
                "Passage offset table does not end at the passages file size",
                details={**details, "expected": file_size, "actual": table[-1]},
            )
    else:
        raise FormatError("Passage offset table must be a JSON object or array", details=details)

    if not all(_is_offset(value) for value in table):
        raise FormatError(
            "Passage offset table holds non-integer or negative offsets", details=details
        )
    if table[0] != 0:
        raise FormatError("First passage does not start at offset 0", details=details)
    for position in range(1, len(table)):
        if table[position] <= table[position - 1]:
            raise FormatError(
                "Passage offsets are not strictly increasing",
                details={**details, "position": position},
            )
    if table[-1] > file_size:
        raise FormatError("Passage offsets point beyond the passages file", details=details)
    return table


class PassageStore:
    """Read-only passage access by dense id through positional reads.

    The descriptor is opened once; ``os.pread`` keeps concurrent readers
    independent, and the data stays readable after the file is replaced.
    """

    def __init__(self, path: Path, ids: Sequence[str], offsets: Sequence[int]) -> None:
        if len(offsets) != len(ids) + 1:
            raise FormatError("Offset table length does not match the id mapping")
        self.path = Path(path)
        self._ids = list(ids)
        self._offsets = list(offsets)
        self._positions = {passage_id: index for index, passage_id in enumerate(self._ids)}
        self._fd: int | None = os.open(self.path, os.O_RDONLY)

    @classmethod
    def open(cls, jsonl_path: Path, offsets_path: Path, ids: Sequence[str]) -> PassageStore:
        try:
            file_size = jsonl_path.stat().st_size
        except FileNotFoundError as exc:
            raise FormatError("Passages file missing", details={"path": str(jsonl_path)}) from exc
        offsets = load_offset_table(offsets_path, ids, file_size)
        if not ids and file_size:
            logger.warning("Passages file %s has data but the id mapping is empty", jsonl_path)
        return cls(jsonl_path, ids, offsets)

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    def internal_id(self, passage_id: str) -> int | None:
        return self._positions.get(passage_id)

    def external_id(self, internal_id: int) -> str:
        return self._ids[internal_id]

    def _read(self, internal_id: int) -> bytes:
        if self._fd is None:
            raise BackendError("Passage store is closed", details={"path": str(self.path)})
        start = self._offsets[internal_id]
        length = self._offsets[internal_id + 1] - start
        try:
            data = os.pread(self._fd, length, start)
        except OSError as exc:
            raise BackendError(
                f"Failed to read passage {internal_id}: {exc}", details={"path": str(self.path)}
            ) from exc
        if len(data) != length:
            raise BackendError(
                f"Short read for passage {internal_id}", details={"path": str(self.path)}
            )
        return data

    def get(self, internal_id: int) -> Passage:
        if not 0 <= internal_id < len(self._ids):
            raise IndexError(f"Passage id {internal_id} out of range")
        try:
            passage = Passage.model_validate_json(self._read(internal_id))
        except ValidationError as exc:
            raise FormatError(
                f"Passage record {internal_id} is corrupt",
                details={"path": str(self.path), "error": str(exc)},
            ) from exc
        if passage.id != self._ids[internal_id]:
            raise FormatError(
                "Passage record does not match the id mapping",
                details={
                    "path": str(self.path),
                    "expected": self._ids[internal_id],
                    "actual": passage.id,
                },
            )
        return passage

    def get_by_id(self, passage_id: str) -> Passage:
        position = self._positions.get(passage_id)
        if position is None:
            raise KeyError(passage_id)
        return self.get(position)

    def __iter__(self) -> Iterator[Passage]:
        for internal_id in range(len(self._ids)):
            yield self.get(internal_id)

    def texts(self) -> Iterator[str]:
        for passage in self:
            yield passage.text

    def close(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None


class MemoryPassages:
    """Passages of a bundle that has been built but not yet persisted."""

    def __init__(self, passages: Sequence[Passage]) -> None:
        self._passages = list(passages)
        self._positions = {passage.id: index for index, passage in enumerate(self._passages)}

    def __len__(self) -> int:
        return len(self._passages)

    @property
    def ids(self) -> list[str]:
        return [passage.id for passage in self._passages]

    def internal_id(self, passage_id: str) -> int | None:
        return self._positions.get(passage_id)

    def external_id(self, internal_id: int) -> str:
        return self._passages[internal_id].id

    def get(self, internal_id: int) -> Passage:
        return self._passages[internal_id]

    def get_by_id(self, passage_id: str) -> Passage:
        return self._passages[self._positions[passage_id]]

    def __iter__(self) -> Iterator[Passage]:
        return iter(self._passages)

    def texts(self) -> Iterator[str]:
        for passage in self._passages:
            yield passage.text

    def close(self) -> None:
        """Nothing to release."""
