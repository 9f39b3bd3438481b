"""ragindex - approximate nearest neighbour search with hybrid BM25 retrieval.

Graph (HNSW) and disk-resident (DiskANN-style) vector backends, a BM25 lexical
index, metadata filters and a durable on-disk bundle format for RAG tools.
"""

__version__ = "0.1.0"
__author__ = "ragindex Contributors"

from ragindex.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
