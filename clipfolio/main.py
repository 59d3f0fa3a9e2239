import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from clipfolio.config.loader import load_config
from clipfolio.config.models import AppConfig
from clipfolio.domain.errors import ClipfolioError
from clipfolio.domain.events import ExportProgressUpdated, ExportRetry, FileAdded, FileRemoved
from clipfolio.domain.models import AudioMode, AudioTrackConfig, ExportStatus, OutputKind, QualityMode
from clipfolio.engine import ClipEngine
from clipfolio.infrastructure.logging import setup_logging

app = typer.Typer(help="clipfolio - clip browser backend: thumbnails, audio tracks, exports, folder watching")
console = Console()


def _format_size(size_bytes: Optional[int]) -> str:
    if size_bytes is None:
        return "-"
    if size_bytes < 1024:
        return f"{size_bytes} B"
    size = size_bytes / 1024
    for unit in ("KB", "MB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def parse_volume_options(volumes: List[str], mutes: List[int]) -> Dict[int, AudioTrackConfig]:
    """Turns ``--volume 1=0.5`` / ``--mute 2`` options into per-track settings."""
    tracks: Dict[int, AudioTrackConfig] = {}
    for item in volumes:
        index, sep, value = item.partition("=")
        if not sep:
            raise typer.BadParameter(f"Expected IDX=VOLUME, got '{item}'", param_hint="--volume")
        try:
            tracks[int(index)] = AudioTrackConfig(volume=float(value))
        except ValueError as exc:
            raise typer.BadParameter(f"Invalid volume '{item}': {exc}", param_hint="--volume")
    for index in mutes:
        current = tracks.get(index, AudioTrackConfig())
        tracks[index] = AudioTrackConfig(volume=current.volume, muted=True)
    return tracks


def _build_engine(ctx: typer.Context) -> ClipEngine:
    config: AppConfig = ctx.obj["config"]
    return ClipEngine(config)


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Override cache root directory"),
    threads: Optional[int] = typer.Option(None, "--threads", "-t", help="Override number of background workers"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Override log file location"),
):
    try:
        config = load_config(config_path)
    except Exception as e:
        typer.secho(f"Error loading config: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    if cache_dir is not None: config.cache.root = cache_dir
    if threads: config.general.threads = max(1, threads)
    if debug: config.general.debug = True
    if log_path is not None: config.general.log_path = str(log_path)

    log_file = Path(config.general.log_path) if config.general.log_path else None
    setup_logging(Path(config.cache.root), debug=config.general.debug, log_path=log_file)
    ctx.obj = {"config": config}


@app.command()
def scan(ctx: typer.Context, folder: Path = typer.Argument(..., help="Folder to scan recursively")):
    """List video files under a folder."""
    with _build_engine(ctx) as engine:
        try:
            entries = engine.scan_videos(folder)
        except (FileNotFoundError, NotADirectoryError) as e:
            typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)

    table = Table(title=f"{folder} ({len(entries)} videos)")
    table.add_column("Path")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    for entry in entries:
        table.add_row(entry.relative_path, _format_size(entry.size), entry.modified.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@app.command()
def probe(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="Media file"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Probe directly, bypassing the metadata cache"),
):
    """Show stream information for a file."""
    with _build_engine(ctx) as engine:
        try:
            data = engine.probe_metadata(file, cached=not no_cache)
        except (ClipfolioError, FileNotFoundError) as e:
            typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        summary = engine.ffprobe_adapter.summarize(data)

    table = Table(title=str(file), show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Codec", str(summary["codec"]))
    table.add_row("Resolution", f"{summary['width']}x{summary['height']}")
    table.add_row("FPS", str(summary["fps"]))
    table.add_row("Duration", f"{summary['duration']:.2f}s")
    table.add_row("Audio streams", str(summary["audio_streams"]))
    console.print(table)


@app.command()
def thumbnail(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="Media file"),
    at: Optional[float] = typer.Option(None, "--at", help="Timestamp in seconds"),
    refresh: bool = typer.Option(False, "--refresh", help="Regenerate even if cached"),
):
    """Generate (or fetch) the cached thumbnail for a file."""
    with _build_engine(ctx) as engine:
        try:
            path = engine.thumbnail(file, timestamp=at, force_refresh=refresh)
        except (ClipfolioError, FileNotFoundError) as e:
            typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
    console.print(str(path))


@app.command()
def audio(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="Media file"),
    refresh: bool = typer.Option(False, "--refresh", help="Re-extract even if cached"),
):
    """Extract every audio stream of a file to cached WAV tracks."""
    with _build_engine(ctx) as engine:
        try:
            tracks = engine.extracted_audio(file, force_refresh=refresh)
        except (ClipfolioError, FileNotFoundError) as e:
            typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
    if not tracks:
        typer.secho("No audio streams", fg=typer.colors.YELLOW)
    for track in tracks:
        console.print(str(track))


@app.command()
def export(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="Source media file"),
    output: Path = typer.Argument(..., help="Output file"),
    start: float = typer.Option(0.0, "--start", help="Trim start in seconds"),
    end: float = typer.Option(..., "--end", help="Trim end in seconds"),
    quality: QualityMode = typer.Option(QualityMode.PASSTHROUGH, "--quality", help="passthrough or size-targeted"),
    target_mb: Optional[float] = typer.Option(None, "--target-mb", help="Target size in MB for size-targeted exports"),
    volume: List[str] = typer.Option([], "--volume", help="Per-track gain as IDX=VOLUME (repeatable)"),
    mute: List[int] = typer.Option([], "--mute", help="Mute audio track IDX (repeatable)"),
    audio_mode: AudioMode = typer.Option(AudioMode.COMBINE, "--audio-mode", help="combine or separate"),
    audio_only: bool = typer.Option(False, "--audio-only", help="Write an mp3 of the mixed audio"),
):
    """Export a trimmed, remixed clip."""
    tracks = parse_volume_options(volume, mute)
    engine = _build_engine(ctx)
    outcome: Dict[str, object] = {}

    with Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task_id = progress.add_task(f"Exporting {file.name}", total=100)

        def _on_retry(event: ExportRetry):
            progress.update(task_id, completed=0, description=f"Re-encoding at {event.video_bitrate_kbps}k")

        def _on_progress(event: ExportProgressUpdated):
            progress.update(task_id, completed=event.percent)

        engine.event_bus.subscribe(ExportRetry, _on_retry)

        def _run():
            try:
                outcome["result"] = engine.export(
                    file,
                    output,
                    trim_start=start,
                    trim_end=end,
                    quality=quality,
                    audio_tracks=tracks,
                    target_size_mb=target_mb,
                    audio_mode=audio_mode,
                    output_kind=OutputKind.AUDIO_ONLY if audio_only else OutputKind.VIDEO,
                    session_id="cli",
                    on_progress=_on_progress,
                )
            except Exception as e:
                outcome["error"] = e

        worker = threading.Thread(target=_run, name="export", daemon=True)
        worker.start()
        try:
            while worker.is_alive():
                worker.join(timeout=0.2)
        except KeyboardInterrupt:
            engine.cancel_export("cli")
            worker.join()

    engine.close()

    error = outcome.get("error")
    if error is not None:
        typer.secho(f"Export failed: {error}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    result = outcome["result"]
    if result.status == ExportStatus.CANCELED:
        typer.secho("Export canceled", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)
    typer.secho(
        f"✓ {result.output_path} ({_format_size(result.output_size_bytes)}, passes={result.attempts})",
        fg=typer.colors.GREEN,
    )


@app.command()
def watch(ctx: typer.Context, folder: Path = typer.Argument(..., help="Folder to watch recursively")):
    """Print videos added to or removed from a folder until interrupted."""
    engine = _build_engine(ctx)
    engine.event_bus.subscribe(FileAdded, lambda e: console.print(f"[green]+ {e.file_path}"))
    engine.event_bus.subscribe(FileRemoved, lambda e: console.print(f"[red]- {e.file_path}"))
    try:
        engine.watch_folder(folder)
    except NotADirectoryError as e:
        engine.close()
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    console.print(f"Watching {folder} (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        typer.secho("\nStopped watching", fg=typer.colors.YELLOW)
    finally:
        engine.close()


@app.command()
def prune(
    ctx: typer.Context,
    max_mb: float = typer.Option(..., "--max-mb", help="Shrink the cache to at most this many MB"),
):
    """Evict least recently used cache entries."""
    with _build_engine(ctx) as engine:
        removed = engine.prune_cache(int(max_mb * 1024 * 1024))
    typer.secho(f"Removed {len(removed)} cache entries", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
