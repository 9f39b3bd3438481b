"""JSON output wrapper for CLI commands.

Every ``--json`` payload carries the same stamp (schema_id, schema_version,
producer, produced_at) so downstream tools can tell outputs apart.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from ragindex import __version__


def json_response(
    schema_id: str,
    schema_version: int,
    **data: Any,
) -> str:
    """Create schema-wrapped JSON response for CLI output.

    Example:
        >>> json_response("search_results", 1, index="docs", results=[])
        {
          "schema_id": "search_results",
          "schema_version": 1,
          "producer": "ragindex-0.1.0",
          "produced_at": "2026-01-12T10:30:00+00:00",
          "index": "docs",
          "results": []
        }
    """
    wrapped = {
        "schema_id": schema_id,
        "schema_version": schema_version,
        "producer": f"ragindex-{__version__}",
        "produced_at": datetime.now(UTC).isoformat(),
        **data,
    }
    return json.dumps(wrapped, indent=2, default=str)
