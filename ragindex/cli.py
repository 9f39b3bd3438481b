"""ragindex CLI application with Typer."""

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Annotated, Any

import typer

from ragindex import __version__
from ragindex.config import get_settings, set_settings
from ragindex.errors import IndexNotFoundError, RagIndexError
from ragindex.index.manager import BuildParams, IndexManager, IndexSummary
from ragindex.index.search import HybridQuery, ScoredPassage
from ragindex.utils.cli_output import json_response

BACKENDS = ("hnsw", "diskann")
METRICS = ("cosine", "mips", "l2")

app = typer.Typer(
    name="ragindex",
    help="Approximate nearest neighbour indexes with hybrid BM25 search for RAG pipelines",
    add_completion=True,
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"ragindex version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-V", callback=version_callback, is_eager=True),
    ] = None,
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Override data directory"),
    ] = None,
    index_dir: Annotated[
        Path | None,
        typer.Option("--index-dir", help="Override the directory holding named indexes"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log build and load progress to stderr"),
    ] = False,
) -> None:
    """ragindex - graph and disk vector indexes with metadata filters."""
    # Update settings with CLI flags
    settings = get_settings()
    if data_dir:
        settings.data_dir = data_dir
    if index_dir:
        settings.index_dir = index_dir
    set_settings(settings)
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _fail(message: str) -> typer.Exit:
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    return typer.Exit(code=1)


def _manager() -> IndexManager:
    return IndexManager(settings=get_settings())


def _read_passages(path: Path) -> Iterator[dict[str, Any]]:
    with path.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, 1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"{path}:{line_number}: invalid JSON ({exc.msg})") from exc
            if not isinstance(record, dict):
                raise ValueError(f"{path}:{line_number}: expected a JSON object")
            yield record


def _parse_vector(raw: str, source: str) -> list[float]:
    try:
        values = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{source} is not valid JSON ({exc.msg})") from exc
    if isinstance(values, dict):
        values = values.get("embedding", values.get("vector"))
    if not isinstance(values, list) or not all(
        isinstance(value, (int, float)) and not isinstance(value, bool) for value in values
    ):
        raise ValueError(f"{source} must be a JSON array of numbers")
    return [float(value) for value in values]


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


@app.command("build")
def build(
    name: Annotated[str, typer.Argument(help="Index name")],
    passages: Annotated[
        Path,
        typer.Option(
            "--passages",
            "-p",
            help="JSONL file with one {id, text, metadata, embedding} record per line",
        ),
    ],
    backend: Annotated[
        str | None,
        typer.Option("--backend", help="Vector backend: hnsw or diskann"),
    ] = None,
    metric: Annotated[
        str | None,
        typer.Option("--metric", help="Distance metric: cosine, mips or l2"),
    ] = None,
    graph_degree: Annotated[
        int | None,
        typer.Option("--graph-degree", help="Maximum neighbours per node", min=2),
    ] = None,
    complexity: Annotated[
        int | None,
        typer.Option("--complexity", help="Construction beam width", min=1),
    ] = None,
    quantize: Annotated[
        bool,
        typer.Option("--quantize", help="Store uint8 codes for disk traversal (diskann only)"),
    ] = False,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Replace an existing index with the same name"),
    ] = False,
) -> None:
    """Build a named index from pre-embedded passages."""
    if not passages.is_file():
        raise _fail(f"Passages file not found: {passages}")
    if backend is not None and backend not in BACKENDS:
        raise _fail(f"Unknown backend '{backend}'. Choose from: {', '.join(BACKENDS)}")
    if metric is not None and metric not in METRICS:
        raise _fail(f"Unknown metric '{metric}'. Choose from: {', '.join(METRICS)}")

    manager = _manager()
    try:
        if manager.exists(name) and not force:
            raise _fail(f"Index '{name}' already exists. Use --force to rebuild it.")
        params = BuildParams(
            backend=backend,
            metric=metric,
            graph_degree=graph_degree,
            complexity=complexity,
            quantize=quantize,
        )
        typer.secho(f"Building index '{name}' from {passages}...", fg=typer.colors.BLUE)
        summary = manager.build(name, _read_passages(passages), params)
    except (RagIndexError, ValueError, OSError) as exc:
        raise _fail(str(exc)) from exc

    typer.secho(
        f"Indexed {summary.passage_count} passages into '{name}' "
        f"({summary.backend}, dim={summary.dimensions}, metric={summary.metric})",
        fg=typer.colors.GREEN,
    )
    typer.echo(f"Stored at {summary.path}")


@app.command("update")
def update(
    name: Annotated[str, typer.Argument(help="Index name")],
    passages: Annotated[
        Path,
        typer.Option(
            "--passages",
            "-p",
            help="JSONL file with the new {id, text, metadata, embedding} records",
        ),
    ],
) -> None:
    """Append pre-embedded passages to an existing index."""
    if not passages.is_file():
        raise _fail(f"Passages file not found: {passages}")

    manager = _manager()
    try:
        typer.secho(f"Adding passages from {passages} to '{name}'...", fg=typer.colors.BLUE)
        summary = manager.update(name, _read_passages(passages))
    except IndexNotFoundError as exc:
        raise _fail(exc.message) from exc
    except (RagIndexError, ValueError, OSError) as exc:
        raise _fail(str(exc)) from exc

    typer.secho(
        f"Index '{name}' now holds {summary.passage_count} passages "
        f"({summary.backend}, dim={summary.dimensions}, metric={summary.metric})",
        fg=typer.colors.GREEN,
    )


@app.command("search")
def search(
    name: Annotated[str, typer.Argument(help="Index name")],
    vector: Annotated[
        str | None,
        typer.Option("--vector", help="Query embedding as a JSON array"),
    ] = None,
    vector_file: Annotated[
        Path | None,
        typer.Option("--vector-file", help="File holding the query embedding as a JSON array"),
    ] = None,
    top_k: Annotated[
        int,
        typer.Option("--top-k", "-k", help="Maximum results to return"),
    ] = 10,
    filter_expr: Annotated[
        str | None,
        typer.Option("--filter", help="Metadata filter, e.g. 'year>=2020,lang=en'"),
    ] = None,
    query_text: Annotated[
        str | None,
        typer.Option("--query-text", help="Query text for hybrid BM25 fusion"),
    ] = None,
    alpha: Annotated[
        float | None,
        typer.Option("--alpha", help="Weight of the vector score in hybrid fusion (0-1)"),
    ] = None,
    expand: Annotated[
        bool,
        typer.Option("--expand", help="Widen short query text with terms from its BM25 matches"),
    ] = False,
    ef: Annotated[
        int | None,
        typer.Option("--ef", help="Search beam width override"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results as JSON"),
    ] = False,
) -> None:
    """Search a named index with a query embedding."""
    if (vector is None) == (vector_file is None):
        raise _fail("Provide exactly one of --vector or --vector-file")
    if alpha is not None and query_text is None:
        raise _fail("--alpha requires --query-text")
    if expand and query_text is None:
        raise _fail("--expand requires --query-text")

    try:
        if vector_file is not None:
            query_vector = _parse_vector(vector_file.read_text(encoding="utf-8"), str(vector_file))
        else:
            query_vector = _parse_vector(vector or "", "--vector")
    except (ValueError, OSError) as exc:
        raise _fail(str(exc)) from exc

    settings = get_settings()
    manager = _manager()
    try:
        handle = manager.load(name)
        hybrid = None
        if query_text is not None:
            if expand:
                query_text = manager.expand_query(handle, query_text)
            hybrid = HybridQuery(query_text, settings.hybrid_alpha if alpha is None else alpha)
        results = manager.search(
            handle, query_vector, top_k, filter_expr=filter_expr, hybrid=hybrid, ef=ef
        )
    except IndexNotFoundError as exc:
        raise _fail(exc.message) from exc
    except (RagIndexError, ValueError) as exc:
        raise _fail(str(exc)) from exc
    finally:
        manager.close()

    if json_output:
        typer.echo(
            json_response(
                "search_results",
                1,
                index=name,
                filter=filter_expr,
                query_text=query_text,
                total_hits=len(results),
                results=[result.model_dump(mode="json") for result in results],
            )
        )
        return

    if not results:
        typer.secho("No results found", fg=typer.colors.YELLOW)
        return

    typer.secho(f"Found {len(results)} results in '{name}':", fg=typer.colors.BLUE)
    for position, result in enumerate(results, 1):
        typer.echo(f"\n{position}. {result.id} [{result.strategy}] (score: {_score_repr(result)})")
        typer.echo(f"   {_snippet(result.text)}")
        if result.metadata:
            typer.echo(f"   metadata: {json.dumps(result.metadata, sort_keys=True, default=str)}")


def _score_repr(result: ScoredPassage) -> str:
    score_repr = f"{result.score:.4f}"
    if result.strategy == "hybrid":
        components = []
        if result.vector_score is not None:
            components.append(f"vec={result.vector_score:.4f}")
        if result.lexical_score is not None:
            components.append(f"lex={result.lexical_score:.2f}")
        score_repr += f" ({', '.join(components)})"
    return score_repr


def _snippet(text: str, width: int = 160) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= width else flat[: width - 3] + "..."


@app.command("list")
def list_indexes(
    detailed: Annotated[
        bool,
        typer.Option("--detailed", "-d", help="Show backend, dimensions, counts and sizes"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the listing as JSON"),
    ] = False,
) -> None:
    """List named indexes."""
    manager = _manager()
    summaries = manager.list()

    if json_output:
        typer.echo(
            json_response(
                "index_list",
                1,
                root=str(manager.root),
                indexes=[summary.model_dump(mode="json") for summary in summaries],
            )
        )
        return

    if not summaries:
        typer.secho(f"No indexes found in {manager.root}", fg=typer.colors.YELLOW)
        return

    for summary in summaries:
        typer.echo(_describe(summary, detailed))


def _describe(summary: IndexSummary, detailed: bool) -> str:
    if summary.status != "OK":
        return f"{summary.name}  [INCOMPLETE]"
    if not detailed:
        return summary.name
    return (
        f"{summary.name}  backend={summary.backend} metric={summary.metric} "
        f"dim={summary.dimensions} passages={summary.passage_count} "
        f"size={_format_size(summary.size_bytes)}  {summary.path}"
    )


@app.command("remove")
def remove(
    name: Annotated[str, typer.Argument(help="Index name")],
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip the confirmation prompt"),
    ] = False,
) -> None:
    """Delete a named index and all of its artifacts."""
    manager = _manager()
    try:
        if not manager.exists(name):
            raise IndexNotFoundError(name)
        if not force and not typer.confirm(f"Remove index '{name}'?"):
            typer.secho("Aborted.", fg=typer.colors.YELLOW)
            raise typer.Exit(code=1)
        manager.remove(name)
    except IndexNotFoundError as exc:
        raise _fail(exc.message) from exc
    except (ValueError, OSError) as exc:
        raise _fail(str(exc)) from exc

    typer.secho(f"Removed index '{name}'", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
