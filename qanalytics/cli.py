"""Command-line interface for Q-Analytics."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from qanalytics import __version__
from qanalytics.config import load_settings

if TYPE_CHECKING:
    from qanalytics.analysis.models import AnalysisSnapshot
    from qanalytics.models import StudyPayload

app = typer.Typer(
    name="qanalytics",
    help="Correlation, factor extraction and rotation for Q-sort studies.",
    no_args_is_help=True,
)
console = Console(width=min(100, Console().width))


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"qanalytics {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version", "-V",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = False,
) -> None:
    """Correlation, factor extraction and rotation for Q-sort studies."""


# ---------------------------------------------------------------------------
# Analyze command
# ---------------------------------------------------------------------------


@app.command()
def analyze(
    study_file: Annotated[
        Path,
        typer.Argument(
            help="JSON file with a study definition and its submissions.",
            exists=True,
            dir_okay=False,
        ),
    ],
    factors: Annotated[
        int | None,
        typer.Option("--factors", "-f", help="Factors to extract (default: Kaiser criterion)."),
    ] = None,
    method: Annotated[
        str | None,
        typer.Option("--method", "-m", help="Extraction method: pca or centroid."),
    ] = None,
    rotate: Annotated[
        bool,
        typer.Option("--rotate/--no-rotate", help="Auto-rotate after extraction."),
    ] = True,
    rotation: Annotated[
        str,
        typer.Option("--rotation", "-r", help="Auto-rotation method: varimax or quartimax."),
    ] = "varimax",
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the snapshot as JSON instead of tables."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose logging."),
    ] = False,
) -> None:
    """Extract (and optionally auto-rotate) factors for one study file."""
    from qanalytics.analysis.correlation import correlate
    from qanalytics.analysis.extraction import suggest_factor_count
    from qanalytics.analysis.sort_matrix import build_sort_matrix
    from qanalytics.errors import QAnalyticsError
    from qanalytics.logging import setup_logging
    from qanalytics.models import StudyPayload
    from qanalytics.session import AnalysisSession

    setup_logging(verbose=verbose)
    settings = load_settings(extraction_method=method)

    try:
        payload = StudyPayload.model_validate_json(study_file.read_text(encoding="utf-8"))
    except PydanticValidationError as exc:
        console.print(f"[red]Invalid study file:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc

    try:
        matrix = build_sort_matrix(payload.study, payload.submissions)
        correlation = correlate(matrix)
        factor_count = factors
        if factor_count is None:
            factor_count = suggest_factor_count(
                correlation,
                settings.factor_count_rule,
                n_statements=matrix.n_statements,
                simulations=settings.parallel_simulations,
            )
        session = AnalysisSession.create(
            study_file.stem,
            matrix,
            factor_count,
            settings=settings,
            correlation=correlation,
        )
        warnings = list(session.snapshot().warnings)
        if rotate and factor_count > 1:
            result = session.auto_rotate(rotation)
            warnings = list(result.warnings)
        snapshot = session.snapshot()
    except QAnalyticsError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(1) from exc

    if as_json:
        from qanalytics.server.routes.analysis import serialize_snapshot

        typer.echo(json.dumps(serialize_snapshot(snapshot).model_dump(mode="json"), indent=2))
        return

    _print_report(payload.study.name, snapshot, payload)
    seen: set[tuple[str, str]] = set()
    for warning in warnings:
        if (warning.code, warning.message) in seen:
            continue
        seen.add((warning.code, warning.message))
        console.print(f"[yellow]warning[/yellow] [dim]{warning.code}[/dim] {warning.message}")


def _print_report(name: str, snapshot: AnalysisSnapshot, payload: StudyPayload) -> None:
    k = len(snapshot.eigenvalues)
    texts = {s.id: s.text for s in payload.study.statements}

    console.print(
        f"\n[bold]{name}[/bold]  [dim]{len(snapshot.participant_ids)} participants,"
        f" {len(snapshot.statement_ids)} statements, {k} factor(s) by"
        f" {snapshot.extraction_method}, {snapshot.status.value}[/dim]\n"
    )

    factors = Table(title="Factors")
    factors.add_column("Factor")
    factors.add_column("Eigenvalue", justify="right")
    factors.add_column("Var %", justify="right")
    factors.add_column("Rotated var %", justify="right")
    factors.add_column("Defining", justify="right")
    factors.add_column("Reliability", justify="right")
    factors.add_column("SE", justify="right")
    for c in snapshot.characteristics:
        factors.add_row(
            str(c.factor + 1),
            f"{snapshot.eigenvalues[c.factor]:.3f}",
            f"{snapshot.variance_explained[c.factor]:.1f}",
            f"{c.variance_explained:.1f}",
            str(c.defining_count),
            f"{c.reliability:.3f}",
            f"{c.standard_error:.3f}",
        )
    console.print(factors)

    loadings = Table(title="Loadings (* = defining sort, ? = ambiguous)")
    loadings.add_column("Participant")
    for f in range(k):
        loadings.add_column(f"F{f + 1}", justify="right")
    for pid, row, assignment in zip(
        snapshot.participant_ids, snapshot.loadings, snapshot.assignments
    ):
        cells = []
        for f, value in enumerate(row):
            mark = ""
            if assignment.factor == f:
                mark = "*"
            elif assignment.is_ambiguous and assignment.top_factor == f:
                mark = "?"
            cells.append(f"{value:+.3f}{mark}")
        loadings.add_row(pid, *cells)
    console.print(loadings)

    for fs in snapshot.factor_scores:
        if fs.is_empty:
            continue
        table = Table(title=f"Factor {fs.factor + 1} array")
        table.add_column("Statement")
        table.add_column("Text")
        table.add_column("Z", justify="right")
        table.add_column("Rank", justify="right")
        order = sorted(range(len(fs.z_scores)), key=lambda s: -fs.z_scores[s])
        for s in order:
            sid = snapshot.statement_ids[s]
            flag = " [bold]D[/bold]" if fs.significant is not None and fs.significant[s] else ""
            table.add_row(
                sid + flag,
                texts.get(sid, ""),
                f"{fs.z_scores[s]:+.3f}",
                f"{int(fs.factor_array[s]):+d}",
            )
        console.print(table)

    if snapshot.consensus:
        consensus = Table(title="Consensus statements")
        consensus.add_column("Statement")
        consensus.add_column("Mean Z", justify="right")
        consensus.add_column("Range", justify="right")
        for c in snapshot.consensus:
            consensus.add_row(c.statement_id, f"{c.mean_z_score:+.3f}", f"{c.z_score_range:.3f}")
        console.print(consensus)


# ---------------------------------------------------------------------------
# Serve command
# ---------------------------------------------------------------------------


@app.command()
def serve(
    port: Annotated[
        int | None,
        typer.Option("--port", "-p", help="Port to serve on (default 8160)."),
    ] = None,
    host: Annotated[
        str | None,
        typer.Option("--host", help="Interface to bind (default 127.0.0.1)."),
    ] = None,
    db_url: Annotated[
        str | None,
        typer.Option("--db", help="Database URL (default: qanalytics.db in the data directory)."),
    ] = None,
    dev: Annotated[
        bool,
        typer.Option("--dev", help="Development mode: auto-reload on Python changes."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose logging."),
    ] = False,
) -> None:
    """Launch the Q-Analytics API server."""
    import uvicorn

    from qanalytics.logging import setup_logging

    settings = load_settings(port=port, host=host, db_url=db_url)
    setup_logging(log_dir=settings.log_dir, verbose=verbose, settings=settings)

    console.print(
        f"\n  API: [bold cyan]http://{settings.host}:{settings.port}/api/docs[/bold cyan]\n"
    )

    if dev:
        # uvicorn calls create_app() itself on reload; pass choices via the environment
        import os

        if db_url:
            os.environ["QANALYTICS_DB_URL"] = db_url
        if verbose:
            os.environ["_QANALYTICS_VERBOSE"] = "1"

        uvicorn.run(
            "qanalytics.server.app:create_app",
            host=settings.host,
            port=settings.port,
            reload=True,
            factory=True,
            log_level="info" if verbose else "warning",
        )
    else:
        from qanalytics.server.app import create_app

        app_instance = create_app(db_url=settings.db_url or None, verbose=verbose)

        uvicorn.run(
            app_instance,
            host=settings.host,
            port=settings.port,
            log_level="info" if verbose else "warning",
        )
