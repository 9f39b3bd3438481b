"""Port interfaces for ragindex vector backends."""

__all__ = [
    "VectorBackendPort",
    "VectorHit",
]

from ragindex.app.ports.vector_store import VectorBackendPort, VectorHit
