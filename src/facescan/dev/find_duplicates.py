"""CLI to list byte-identical images under a directory."""

from __future__ import annotations

import json
from pathlib import Path

import typer

from facescan.duplicates import find_duplicates
from facescan.errors import SourcePathError
from utils.logging import configure_logging, get_logger

LOGGER = get_logger(__name__)


def main(
    root: Path = typer.Argument(..., help="Directory to search for duplicate images."),
    as_json: bool = typer.Option(False, "--json", help="Print groups as JSON."),
    log_level: str | None = typer.Option(None, "--log-level", help="Root log level (DEBUG, INFO, WARNING, ...)."),
) -> None:
    """Group images under ROOT that share size and content hash."""

    if log_level:
        configure_logging(log_level, force=True)
    try:
        groups = find_duplicates(root)
    except SourcePathError as exc:
        LOGGER.error("duplicates_source_error", extra={"root": str(root), "error": str(exc)})
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    if as_json:
        typer.echo(json.dumps([group.to_dict() for group in groups], ensure_ascii=False, indent=2))
        return

    for group in groups:
        typer.echo(f"{group.size} bytes ({group.content_hash}):")
        for path in group.paths:
            typer.echo(f"  {path}")
    typer.echo(f"{len(groups)} duplicate groups")


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()
