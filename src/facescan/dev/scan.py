"""CLI entrypoint for an incremental face scan of one directory.

Press Ctrl+C once to stop scheduling new files; the cache is saved so the
next run resumes where this one stopped.
"""

from __future__ import annotations

import json
import signal
import threading
from pathlib import Path

import typer

from facescan.config import Settings, load_settings
from facescan.errors import FaceScanError, SourcePathError
from facescan.orchestrator import scan_faces
from facescan.progress import ProgressEvent, ScanPhase
from utils.logging import configure_logging, get_logger

LOGGER = get_logger(__name__)


def _apply_cli_overrides(settings: Settings, device: str | None, threshold: float | None, no_thumbnails: bool) -> Settings:
    """Apply CLI overrides for detector device, threshold and thumbnails."""

    if device:
        settings.detector.device = device
    if threshold is not None and threshold > 0:
        settings.clustering.similarity_threshold = threshold
    if no_thumbnails:
        settings.thumbnails.enabled = False
    return settings


def _print_progress(event: ProgressEvent) -> None:
    if event.phase is ScanPhase.SCANNING and event.total:
        typer.echo(f"\r[{event.current}/{event.total}] faces={event.faces_found} active={len(event.active_files)}", nl=False)
    elif event.phase is ScanPhase.DONE:
        typer.echo("")
        typer.echo(event.message)
    elif event.message:
        typer.echo(event.message)


def main(
    root: Path = typer.Argument(..., help="Directory of photos and videos to scan."),
    concurrency: int | None = typer.Option(None, "--concurrency", "-c", min=1, help="Concurrent detector calls."),
    settings_path: Path | None = typer.Option(None, "--settings", help="Path to settings.yaml."),
    device: str | None = typer.Option(None, "--device", help="Override detector device (cpu, cuda, auto)."),
    threshold: float | None = typer.Option(None, "--threshold", help="Override the cluster distance threshold."),
    no_thumbnails: bool = typer.Option(False, "--no-thumbnails", help="Skip thumbnail rendering."),
    json_out: Path | None = typer.Option(None, "--json-out", help="Write the scan summary as JSON to this file."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress progress output."),
    log_level: str | None = typer.Option(None, "--log-level", help="Root log level (DEBUG, INFO, WARNING, ...)."),
) -> None:
    """Scan ROOT for faces and print the identity groups."""

    if log_level:
        configure_logging(log_level, force=True)
    settings = _apply_cli_overrides(load_settings(settings_path), device, threshold, no_thumbnails)
    cancel_event = threading.Event()

    def _on_interrupt(_signum: int, _frame: object) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        LOGGER.info("scan_cancel_requested", extra={"root": str(root)})
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        summary = scan_faces(
            root,
            settings=settings,
            concurrency_limit=concurrency,
            progress_sink=None if quiet else _print_progress,
            cancel_token=cancel_event,
        )
    except SourcePathError as exc:
        LOGGER.error("scan_source_error", extra={"root": str(root), "error": str(exc)})
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc
    except FaceScanError as exc:
        LOGGER.error("scan_failed", extra={"root": str(root), "error": str(exc)})
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    stats = summary.cache_stats
    typer.echo(
        f"{summary.group_count} groups across {summary.total_files} files "
        f"(cached={stats.unchanged} processed={stats.processed} removed={stats.removed})"
        + (" [cancelled]" if summary.cancelled else "")
    )
    for group in summary.faces:
        typer.echo(f"  {group.label}: {group.count} files")

    if json_out is not None:
        json_out.parent.mkdir(parents=True, exist_ok=True)
        json_out.write_text(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        LOGGER.info("scan_summary_written", extra={"path": str(json_out)})


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()
