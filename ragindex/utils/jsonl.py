"""JSONL and blob writing helpers with durability guarantees."""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import IO, Any, cast


def _normalize_record(record: Any) -> str:
    """Convert supported record types into a JSON string."""
    if isinstance(record, str):
        line = record.rstrip("\n")
        if not line:
            raise ValueError("Blank string provided to JSONL writer.")
        if "\n" in line:
            raise ValueError("Pre-serialized JSONL records must fit on one line.")
        return line

    if hasattr(record, "model_dump"):
        payload = cast(Any, record).model_dump(mode="json")
        if not isinstance(payload, dict):
            raise TypeError("Pydantic model_dump did not return a mapping.")
        typed_payload = dict(payload)
    elif is_dataclass(record) and not isinstance(record, type):
        typed_payload = dict(asdict(record))
    elif isinstance(record, dict):
        typed_payload = dict(record)
    else:
        raise TypeError(
            "Unsupported record type for JSONL serialization: "
            f"{type(record)!r}. Provide dict, dataclass, or Pydantic model."
        )

    return json.dumps(typed_payload, separators=(",", ":"), ensure_ascii=False)


@contextmanager
def atomic_writer(path: Path, *, binary: bool = False) -> Iterator[IO[Any]]:
    """Yield a handle whose contents replace ``path`` only on clean exit.

    Data goes to a temporary file in the destination directory, which is
    flushed and fsynced before ``os.replace`` moves it into place. A crash or
    exception leaves the previous file (if any) untouched.
    """
    destination = Path(path)
    destination.parent.mkdir(parents=True, exist_ok=True)

    fd: int | None = None
    tmp_path: str | None = None

    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(destination.parent),
            prefix=destination.name,
            suffix=".tmp",
            text=not binary,
        )

        mode = "wb" if binary else "w"
        encoding = None if binary else "utf-8"
        with os.fdopen(fd, mode, encoding=encoding, newline=None if binary else "") as handle:
            fd = None  # Ownership transferred to file object
            yield handle
            handle.flush()
            os.fsync(handle.fileno())

        os.replace(tmp_path, destination)
        tmp_path = None
    finally:
        if fd is not None:
            os.close(fd)
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass


def atomic_write_jsonl(path: Path, records: Iterable[Any]) -> list[int]:
    """Write ``records`` to ``path`` atomically as JSONL.

    Returns the byte offset table of the written file: one starting offset
    per record followed by the final file size, so ``len(result) == n + 1``.
    """
    offsets = [0]
    with atomic_writer(path, binary=True) as handle:
        position = 0
        for record in records:
            encoded = _normalize_record(record).encode("utf-8") + b"\n"
            handle.write(encoded)
            position += len(encoded)
            offsets.append(position)
    return offsets


def atomic_write_text(path: Path, content: str) -> None:
    """Atomically replace ``path`` with ``content`` encoded as UTF-8."""
    with atomic_writer(path) as handle:
        handle.write(content)


def atomic_write_json(path: Path, payload: Any, *, indent: int | None = None) -> None:
    """Atomically replace ``path`` with ``payload`` serialized as JSON."""
    atomic_write_text(path, json.dumps(payload, indent=indent, ensure_ascii=False))


def fsync_directory(path: Path) -> None:
    """Flush directory entries (renames) of ``path`` to stable storage."""
    try:
        dir_fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        # Directories cannot be opened on some platforms; rename durability is best effort.
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)
