"""CLI to invalidate face scan caches."""

from __future__ import annotations

import shutil
from pathlib import Path

import typer

from facescan.config import load_settings
from facescan.face_cache import delete_face_cache
from facescan.scanner import clean_path
from utils.logging import get_logger

LOGGER = get_logger(__name__)


def main(
    root: Path = typer.Argument(..., help="Directory whose face cache should be removed."),
    thumbnails: bool = typer.Option(
        False,
        "--thumbnails",
        help="Also remove the shared thumbnail directory configured in settings.yaml.",
    ),
) -> None:
    """Remove the face cache of ROOT so the next scan starts cold."""

    settings = load_settings()
    root_path = clean_path(root)
    if root_path is None or not root_path.is_dir():
        typer.echo(f"Source path not found: {root}", err=True)
        raise typer.Exit(code=2)

    removed = delete_face_cache(root_path, settings.cache.filename)
    LOGGER.info("face_cache_cleared", extra={"root": str(root_path), "removed": removed})

    if thumbnails:
        thumb_dir = settings.thumbnails.resolved_cache_dir()
        if thumb_dir.exists():
            shutil.rmtree(thumb_dir, ignore_errors=True)
        LOGGER.info("thumbnail_cache_cleared", extra={"thumbnail_dir": str(thumb_dir)})


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()
