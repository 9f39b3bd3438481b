"""Configuration management with Pydantic and XDG base directory support."""

import os
import sys
from pathlib import Path
from typing import Literal

from pydantic import Field, PrivateAttr
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_data_home() -> Path:
    """Get XDG_DATA_HOME directory, defaulting to ~/.local/share."""
    xdg_data = os.getenv("XDG_DATA_HOME")
    if xdg_data:
        return Path(xdg_data)
    return Path.home() / ".local" / "share"


BackendName = Literal["hnsw", "diskann"]
MetricName = Literal["cosine", "mips", "l2"]


class Settings(BaseSettings):
    """ragindex configuration settings.

    Precedence: CLI flag > environment variable > .env file > defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="RAGINDEX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Data directories
    data_dir: Path | None = Field(
        default=None,
        description="Override data directory (defaults to XDG_DATA_HOME/ragindex)",
    )

    index_dir: Path | None = Field(
        default=None,
        description="Override the directory holding named indexes (defaults to <data_dir>/indexes)",
    )

    # Build defaults
    default_backend: BackendName = Field(
        default="hnsw",
        description="Vector backend used when a build does not name one: hnsw or diskann",
    )

    default_metric: MetricName = Field(
        default="mips",
        description="Distance metric used when a build does not name one",
    )

    graph_degree: int = Field(
        default=32,
        ge=2,
        description="Maximum neighbours per graph node (HNSW M / DiskANN R)",
    )

    build_complexity: int = Field(
        default=64,
        ge=1,
        description="Beam width used while constructing the graph (efConstruction / L)",
    )

    search_complexity: int = Field(
        default=64,
        ge=1,
        description="Default beam width used at query time (ef)",
    )

    chunk_size: int = Field(
        default=256,
        ge=1,
        description="Chunk size recorded in index metadata for the ingestion layer",
    )

    # Disk backend
    disk_page_size: int = Field(
        default=4096,
        ge=512,
        description="Size in bytes of one on-disk node page",
    )

    disk_cache_pages: int = Field(
        default=1024,
        ge=1,
        description="Number of pages kept in the in-memory LRU page cache",
    )

    disk_alpha: float = Field(
        default=1.2,
        ge=1.0,
        description="RobustPrune distance slack used during disk graph construction",
    )

    disk_rerank_factor: int = Field(
        default=4,
        ge=1,
        description="Candidates per requested result re-ranked with full-precision vectors",
    )

    # Lexical + fusion
    bm25_k1: float = Field(default=1.5, gt=0.0, description="BM25 term-frequency saturation")
    bm25_b: float = Field(default=0.75, ge=0.0, le=1.0, description="BM25 length normalisation")

    hybrid_alpha: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Weight of the vector score in hybrid fusion (1 - alpha for BM25)",
    )

    search_overfetch: int = Field(
        default=5,
        ge=1,
        description="Candidate multiplier applied when filtering or fusing",
    )

    _resolved_data_dir: Path | None = PrivateAttr(default=None)
    _data_dir_warning_emitted: bool = PrivateAttr(default=False)

    def get_data_dir(self) -> Path:
        """Get the data directory, creating if necessary."""
        if self._resolved_data_dir is not None:
            return self._resolved_data_dir

        if self.data_dir:
            data_dir = self.data_dir
            data_dir.mkdir(parents=True, exist_ok=True)
            self._resolved_data_dir = data_dir
            return data_dir

        primary_dir = get_xdg_data_home() / "ragindex"
        try:
            primary_dir.mkdir(parents=True, exist_ok=True)
            self._resolved_data_dir = primary_dir
            return primary_dir
        except PermissionError as exc:
            fallback = Path.cwd() / ".ragindex-data"
            fallback.mkdir(parents=True, exist_ok=True)
            self._resolved_data_dir = fallback
            if not self._data_dir_warning_emitted:
                print(
                    f"Warning: cannot create data directory at {primary_dir} ({exc}). "
                    f"Using local '{fallback}' instead. Pass --data-dir to override.",
                    file=sys.stderr,
                )
                self._data_dir_warning_emitted = True
            return fallback

    def get_index_dir(self) -> Path:
        """Get path to the directory that holds named indexes."""
        index_dir = self.index_dir if self.index_dir else self.get_data_dir() / "indexes"
        index_dir.mkdir(parents=True, exist_ok=True)
        return index_dir


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Set the global settings instance (useful for testing)."""
    global _settings
    _settings = settings
