"""CLI to inspect what a previous face scan cached for a directory."""

from __future__ import annotations

import json
from pathlib import Path

import typer

from facescan.config import load_settings
from facescan.errors import SourcePathError
from facescan.history import get_scan_history
from utils.logging import get_logger

LOGGER = get_logger(__name__)


def main(
    root: Path = typer.Argument(..., help="Directory that was scanned."),
    limit: int = typer.Option(20, "--limit", "-n", min=0, help="Number of recent files to list."),
    as_json: bool = typer.Option(False, "--json", help="Print the full history as JSON."),
) -> None:
    """Show scan history and cache statistics for ROOT."""

    try:
        history = get_scan_history(root, load_settings())
    except SourcePathError as exc:
        LOGGER.error("history_source_error", extra={"root": str(root), "error": str(exc)})
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    if as_json:
        typer.echo(json.dumps(history.to_dict(), ensure_ascii=False, indent=2))
        return

    stats = history.stats
    typer.echo(f"Last scan: {history.last_scan or 'never'}")
    typer.echo(
        f"{history.total_files} files, {stats['total_faces']} faces in {stats['files_with_faces']} files, "
        f"avg {stats['avg_processing_time_ms']} ms/file"
    )
    for item in history.files[:limit]:
        typer.echo(f"  {item.scanned_at or '-'}  {item.faces_count:3d}  {item.path}")


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()
