"""Index metadata document (``documents.leann.meta.json``)."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ragindex.errors import FormatError
from ragindex.index.distance import Metric, parse_metric
from ragindex.utils.jsonl import atomic_write_json

logger = logging.getLogger(__name__)

META_VERSION = "1.0"
DEFAULT_METRIC = Metric.MIPS


class IndexMeta(BaseModel):
    """Metadata stored alongside every index bundle.

    Field names follow the ``.leann.meta.json`` layout so existing bundles stay
    interchangeable. Unknown keys are preserved on rewrite.
    """

    model_config = ConfigDict(extra="allow")

    version: str = Field(META_VERSION, description="Metadata format version")
    backend_name: Literal["hnsw", "diskann"] = Field(..., description="Vector backend kind")
    embedding_model: str = Field("", description="Embedding model that produced the vectors")
    embedding_mode: str = Field("external", description="Embedding provider mode")
    dimensions: int = Field(..., ge=1, description="Vector dimension")
    passage_count: int = Field(..., ge=0, description="Number of passages in the bundle")
    backend_kwargs: dict[str, Any] = Field(
        default_factory=dict, description="Backend build parameters"
    )
    embedding_options: dict[str, Any] = Field(
        default_factory=dict, description="Embedding provider options"
    )
    is_recompute: bool = Field(False, description="Index expects embeddings to be recomputed")
    is_pruned: bool = Field(False, description="Stored embeddings were pruned")

    @field_validator("backend_kwargs")
    @classmethod
    def _check_metric(cls, value: dict[str, Any]) -> dict[str, Any]:
        metric = value.get("distance_metric")
        if metric is not None:
            parse_metric(str(metric))
        return value

    @property
    def distance_metric(self) -> Metric:
        """Metric recorded in ``backend_kwargs``; absent means inner product."""
        value = self.backend_kwargs.get("distance_metric")
        if value is None:
            return DEFAULT_METRIC
        return parse_metric(str(value))


def read_meta(path: Path) -> IndexMeta:
    """Load and validate a metadata file, raising :class:`FormatError` on any problem."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise FormatError("Index metadata missing", details={"path": str(path)}) from exc
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FormatError(
            f"Index metadata unreadable: {exc}", details={"path": str(path)}
        ) from exc
    if not isinstance(raw, dict):
        raise FormatError("Index metadata must be a JSON object", details={"path": str(path)})
    # Older bundles write null for absent optional maps.
    for key in ("backend_kwargs", "embedding_options"):
        if raw.get(key) is None:
            raw.pop(key, None)
    try:
        meta = IndexMeta.model_validate(raw)
    except ValidationError as exc:
        raise FormatError(
            f"Index metadata invalid: {exc}", details={"path": str(path)}
        ) from exc
    if meta.version != META_VERSION:
        logger.warning(
            "Index metadata %s has version %s; reading as %s", path, meta.version, META_VERSION
        )
    return meta


def write_meta(path: Path, meta: IndexMeta) -> None:
    atomic_write_json(path, meta.model_dump(mode="json"), indent=2)
