"""
Defines the command-line interface for the application using Typer.
"""

import sys
import asyncio
import logging
from types import TracebackType
from typing import Any, List, Optional, Tuple, Type

import typer
from rich.console import Console
from rich.table import Table

from ._version import __version__
from .config import ConfigManager, Settings
from .constants import CONFIG_FILE, STATUS_CANCELLED, STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING
from .controller import AppController, interrupt_listener
from .exceptions import DownloadCancelledError, YtDlpWrapperError
from .logging_config import setup_logging

console = Console()
log = logging.getLogger(__name__)

app = typer.Typer(
    name="ytdlp-wrapper",
    help="Download videos with yt-dlp and keep a history of downloads and playlists.",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)

STATUS_ICONS = {
    STATUS_COMPLETED: "[green]✓[/green]",
    STATUS_FAILED: "[red]✗[/red]",
    STATUS_PENDING: "[yellow]⏳[/yellow]",
    STATUS_CANCELLED: "[dim]⊘[/dim]",
}


class ConsoleReporter:
    """Prints download events on a single, rewritten status line."""
    def __init__(self):
        self.progress_shown = False

    async def __call__(self, event: Tuple[str, Any]):
        msg_type, value = event
        if msg_type == 'update_job':
            _job_id, column, new_value = value
            if column == 'progress':
                console.print(f"\r{new_value:<60}", end="", highlight=False)
                self.progress_shown = True
            elif column == 'title':
                self._end_line()
                console.print(f"Title: [bold]{new_value}[/bold]", highlight=False)
        elif msg_type == 'done':
            self._end_line()

    def _end_line(self):
        if self.progress_shown:
            console.print()
            self.progress_shown = False


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj


def _run(ctx: typer.Context, operation, reporter: Optional[ConsoleReporter] = None):
    """Runs an async controller operation, translating errors into exit codes."""
    controller: Optional[AppController] = None

    async def main_with_exception_handler():
        asyncio.get_running_loop().set_exception_handler(handle_async_exception)
        return await operation(controller)

    try:
        controller = AppController(_settings(ctx), event_callback=reporter)
        return asyncio.run(main_with_exception_handler())
    except DownloadCancelledError:
        console.print("\n[yellow]⊘ Download cancelled.[/yellow]")
        raise typer.Exit(130)
    except YtDlpWrapperError as e:
        console.print(f"[red]✗ Error:[/red] {e}", highlight=False)
        log.debug("Full traceback:", exc_info=True)
        raise typer.Exit(1)
    finally:
        if controller is not None:
            controller.close()


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Show log messages on the console (-vv for debug)."),
    version: bool = typer.Option(False, "--version", help="Show version and exit.", is_eager=True),
):
    """yt-dlp wrapper with a download history."""
    if version:
        console.print(f"[bold]ytdlp-wrapper[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    settings = ConfigManager(CONFIG_FILE).load()
    console_level = {0: logging.WARNING, 1: logging.INFO}.get(verbose, logging.DEBUG)
    setup_logging(settings.log_level, console_level)
    ctx.obj = settings

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def download(ctx: typer.Context, url: str = typer.Argument(..., help="Video URL to download.")):
    """Download a single video. Extra arguments are passed to yt-dlp unchanged."""
    extra_args: List[str] = list(ctx.args)
    reporter = ConsoleReporter()

    async def operation(controller: AppController):
        with interrupt_listener() as cancel_event:
            return await controller.download_video(url, extra_args, cancel_event)

    console.print(f"Downloading: {url}", highlight=False)
    job = _run(ctx, operation, reporter)
    console.print(f"[green]✓ Download completed:[/green] {job.file_path}", highlight=False)


@app.command()
def extract(ctx: typer.Context, url: str = typer.Argument(..., help="Playlist or channel URL.")):
    """Extract a playlist and save any videos not seen before."""
    async def operation(controller: AppController):
        result = await controller.extract_playlist(url)
        return result, controller.get_playlist(result.playlist_id)

    with console.status("Extracting playlist..."):
        result, playlist = _run(ctx, operation)

    if result.created:
        console.print(f"[green]✓ Saved playlist[/green] [bold]{playlist.title}[/bold] "
                      f"with {result.new_items} video(s).", highlight=False)
    elif result.new_items:
        console.print(f"[green]✓ Updated[/green] [bold]{playlist.title}[/bold]: "
                      f"{result.new_items} new video(s).", highlight=False)
    else:
        console.print(f"[cyan]Playlist[/cyan] [bold]{playlist.title}[/bold] is up to date.", highlight=False)
    console.print(f"Playlist ID: {result.playlist_id}  "
                  f"({playlist.videos_saved}/{playlist.total_videos} saved)", highlight=False)


@app.command(name="download-playlist", context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def download_playlist(ctx: typer.Context, playlist_id: str = typer.Argument(..., help="ID of a saved playlist.")):
    """Download the saved videos of a playlist that are not downloaded yet."""
    extra_args: List[str] = list(ctx.args)
    reporter = ConsoleReporter()

    async def operation(controller: AppController):
        with interrupt_listener() as cancel_event:
            return await controller.download_playlist(playlist_id, extra_args, cancel_event)

    summary = _run(ctx, operation, reporter)
    console.print(f"[green]✓ {summary.completed} downloaded[/green], "
                  f"[red]{summary.failed} failed[/red], {summary.skipped} skipped.")


@app.command()
def downloads(ctx: typer.Context):
    """Show the download history."""
    async def operation(controller: AppController):
        return controller.list_downloads()

    records = _run(ctx, operation)
    if not records:
        console.print("No downloads yet")
        return

    table = Table(title="Download History")
    table.add_column("", no_wrap=True)
    table.add_column("Title")
    table.add_column("URL", overflow="fold")
    table.add_column("Path / Error", overflow="fold")
    table.add_column("Created", no_wrap=True)
    for record in records:
        detail = record.file_path or (f"[red]{record.error}[/red]" if record.error else "")
        created = record.created_at.strftime('%Y-%m-%d %H:%M:%S') if record.created_at else ""
        table.add_row(STATUS_ICONS.get(record.status, "?"), record.title, record.url, detail, created)
    console.print(table)


@app.command()
def playlists(ctx: typer.Context):
    """List saved playlists."""
    async def operation(controller: AppController):
        return controller.list_playlists()

    records = _run(ctx, operation)
    if not records:
        console.print("No playlists yet")
        return

    table = Table(title="Playlists")
    table.add_column("ID", no_wrap=True)
    table.add_column("Title")
    table.add_column("Channel")
    table.add_column("Saved", justify="right")
    table.add_column("Downloaded", justify="right")
    for record in records:
        table.add_row(record.playlist_id, record.title, record.channel,
                      f"{record.videos_saved}/{record.total_videos}", str(record.videos_downloaded))
    console.print(table)


@app.command()
def playlist(ctx: typer.Context, playlist_id: str = typer.Argument(..., help="ID of a saved playlist.")):
    """Show the videos of a saved playlist."""
    async def operation(controller: AppController):
        return controller.get_playlist(playlist_id), controller.playlist_videos(playlist_id)

    record, videos = _run(ctx, operation)
    if record is None:
        console.print(f"[red]✗ Playlist not found:[/red] {playlist_id}", highlight=False)
        raise typer.Exit(1)

    table = Table(title=f"{record.title} ({record.channel})")
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Channel")
    table.add_column("URL", overflow="fold")
    for video in videos:
        table.add_row(str(video.index), video.video_title, video.channel, video.video_url)
    console.print(table)


@app.command()
def version(ctx: typer.Context):
    """Show the application and yt-dlp versions."""
    async def operation(controller: AppController):
        return await controller.get_yt_dlp_version()

    console.print(f"[bold]ytdlp-wrapper[/bold] {__version__}")
    console.print(f"yt-dlp: {_run(ctx, operation)}", highlight=False)


def main():
    """Console script entry point."""
    sys.excepthook = handle_exception
    app()
