"""Runs yt-dlp download jobs and records their lifecycle in the store."""
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Coroutine, List, Optional, Sequence, Tuple

from .constants import (
    CANCELLED_MESSAGE, DEFAULT_OUTPUT_TEMPLATE, PARTIAL_FILE_SUFFIXES,
    STATUS_CANCELLED, STATUS_COMPLETED, STATUS_FAILED,
)
from .exceptions import (
    DownloadCancelledError, DownloadFailedError, ProcessExitError, ProcessStartError,
    StoreError, URLExtractionError,
)
from .jobs import DownloadJob
from .line_parser import DestinationEvent, DownloadOutputState, ProgressEvent, StageEvent
from .process_runner import ProcessRunner
from .store import Store
from .url_extractor import URLInfoExtractor

EventCallback = Callable[[Tuple[str, Any]], Coroutine[Any, Any, None]]


@dataclass
class PlaylistDownloadSummary:
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class DownloadManager:
    """
    Downloads one URL at a time through yt-dlp.

    A job record is created as 'pending' before the process starts and is
    moved to exactly one of completed, failed or cancelled when it ends.
    Title, channel and playlist counter updates along the way are
    best-effort: store errors there are logged and the job carries on.
    """
    def __init__(self, store: Store, yt_dlp_path: Path, output_dir: Path,
                 output_template: str = DEFAULT_OUTPUT_TEMPLATE,
                 restrict_filenames: bool = True,
                 runner: Optional[ProcessRunner] = None,
                 extractor: Optional[URLInfoExtractor] = None,
                 event_callback: Optional[EventCallback] = None):
        """
        Initializes the DownloadManager.

        Args:
            store: The store that records download jobs.
            yt_dlp_path: The path to the yt-dlp executable.
            output_dir: The directory downloads are written to.
            output_template: The yt-dlp output filename template.
            restrict_filenames: Whether to pass --restrict-filenames.
            runner: The process runner; a default one is created if omitted.
            extractor: Used to pre-fetch title and channel; skipped if omitted.
            event_callback: Optional async function receiving job events.
        """
        self.store = store
        self.yt_dlp_path = yt_dlp_path
        self.output_dir = output_dir
        self.output_template = output_template
        self.restrict_filenames = restrict_filenames
        self.runner = runner or ProcessRunner()
        self.extractor = extractor
        self.event_callback = event_callback
        self.logger = logging.getLogger(__name__)

    async def _emit(self, event: Tuple[str, Any]):
        if self.event_callback is not None:
            await self.event_callback(event)

    def build_command(self, url: str, extra_args: Sequence[str] = ()) -> List[str]:
        """Builds the full yt-dlp download command."""
        output_path_template = self.output_dir / self.output_template
        command = [str(self.yt_dlp_path), '--newline']
        if self.restrict_filenames:
            command.append('--restrict-filenames')
        command.extend(['-o', str(output_path_template)])
        command.extend(extra_args)
        command.append(url)
        return command

    def _best_effort(self, description: str, operation: Callable[..., Any], *args):
        """Runs a secondary store write, logging failures instead of raising."""
        try:
            operation(*args)
        except StoreError as e:
            self.logger.warning(f"Failed to {description}: {e}")

    async def _prefetch_metadata(self, job: DownloadJob, cancel_event: Optional[asyncio.Event] = None):
        """
        Fills in title and channel from yt-dlp metadata before downloading.

        Raises:
            DownloadCancelledError: If ``cancel_event`` is set before the metadata arrives.
        """
        if self.extractor is None:
            return
        fetch_task = asyncio.create_task(self.extractor.fetch_video_metadata(job.url))
        if cancel_event is not None:
            cancel_task = asyncio.create_task(cancel_event.wait())
            try:
                await asyncio.wait({fetch_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                fetch_task.cancel()
                raise
            finally:
                cancel_task.cancel()
            if not fetch_task.done():
                fetch_task.cancel()
                await asyncio.gather(fetch_task, return_exceptions=True)
                raise DownloadCancelledError("Download cancelled while fetching metadata.")
        try:
            info = await fetch_task
        except URLExtractionError as e:
            self.logger.warning(f"Could not fetch metadata for {job.url}: {e}")
            return

        if info.title:
            job.title = info.title
            self._best_effort("update download title", self.store.update_download_title, job.job_id, info.title)
            await self._emit(('update_job', (job.job_id, 'title', info.title)))
        if info.channel or info.channel_url:
            job.channel, job.channel_url = info.channel, info.channel_url
            self._best_effort("update download channel", self.store.update_download_channel,
                              job.job_id, info.channel, info.channel_url)

    async def download(self, url: str, extra_args: Sequence[str] = (),
                       cancel_event: Optional[asyncio.Event] = None,
                       playlist_id: Optional[str] = None, title: str = "",
                       channel: str = "", channel_url: str = "") -> DownloadJob:
        """
        Downloads a single URL and records the outcome.

        Args:
            url: The video URL.
            extra_args: Additional yt-dlp arguments passed through unchanged.
            cancel_event: Setting this event cancels the download.
            playlist_id: The playlist this download belongs to, if any.
            title: A known title; when given, metadata is not pre-fetched.
            channel: A known channel name.
            channel_url: A known channel URL.

        Returns:
            The completed DownloadJob.

        Raises:
            DownloadCancelledError: If the download was cancelled.
            DownloadFailedError: If yt-dlp failed or could not be started.
            StoreError: If the job record or its outcome could not be written.
        """
        job_id = self.store.insert_download(url, title, playlist_id, channel, channel_url)
        job = DownloadJob(job_id, url, title=title, channel=channel, channel_url=channel_url,
                          playlist_id=playlist_id)
        self.logger.info(f"[{job_id}] Downloading {url}")
        await self._emit(('add_job', job))

        try:
            if not title and self.extractor is not None:
                await self._prefetch_metadata(job, cancel_event)
            if cancel_event is not None and cancel_event.is_set():
                raise DownloadCancelledError("Download cancelled before start.")
        except (DownloadCancelledError, asyncio.CancelledError):
            await self._record_cancelled(job)
            raise

        state = DownloadOutputState(title=job.title)

        async def on_line(line: str):
            self.logger.debug(f"[{job_id}] {line}")
            for event in state.feed(line):
                if isinstance(event, ProgressEvent):
                    await self._emit(('update_job', (job_id, 'progress', event.display())))
                elif isinstance(event, DestinationEvent) and state.title != job.title:
                    job.title = state.title
                    self._best_effort("update download title", self.store.update_download_title, job_id, job.title)
                    await self._emit(('update_job', (job_id, 'title', job.title)))
                elif isinstance(event, StageEvent):
                    await self._emit(('update_job', (job_id, 'status', event.label)))

        try:
            await self.runner.run(self.build_command(url, extra_args), on_line, cancel_event)
        except (DownloadCancelledError, asyncio.CancelledError):
            await self._record_cancelled(job)
            raise
        except (ProcessExitError, ProcessStartError) as e:
            error_message = str(e)
            self.logger.error(f"[{job_id}] Download failed: {error_message}")
            await self.cleanup_partial_files()
            self._finish(job, STATUS_FAILED, error=error_message)
            await self._emit(('done', (job_id, 'Failed')))
            raise DownloadFailedError(job_id, error_message) from e

        file_path = state.destination or str(self.output_dir / self.output_template)
        self._finish(job, STATUS_COMPLETED, file_path=file_path)
        if playlist_id:
            self._best_effort("update playlist download count", self.store.increment_playlist_downloaded, playlist_id)
        self.logger.info(f"[{job_id}] Download completed: {file_path}")
        await self._emit(('done', (job_id, 'Completed')))
        return job

    async def _record_cancelled(self, job: DownloadJob):
        """Removes partial files and marks the job cancelled."""
        self.logger.info(f"[{job.job_id}] Download cancelled.")
        await self.cleanup_partial_files()
        self._finish(job, STATUS_CANCELLED, error=CANCELLED_MESSAGE)
        await self._emit(('done', (job.job_id, 'Cancelled')))

    def _finish(self, job: DownloadJob, status: str, file_path: str = "", error: str = ""):
        """Writes the terminal status. Failures here propagate to the caller."""
        self.store.update_download_status(job.job_id, status, file_path, error)
        job.status, job.file_path, job.error = status, file_path, error

    async def download_playlist(self, playlist_id: str, extra_args: Sequence[str] = (),
                                cancel_event: Optional[asyncio.Event] = None) -> PlaylistDownloadSummary:
        """
        Downloads the stored videos of a playlist one after another.

        Videos that already have a completed download for this playlist are
        skipped. A failed video is logged and the next one is attempted; a
        cancellation stops the whole run.

        Raises:
            StoreError: If the playlist does not exist.
            DownloadCancelledError: If the run was cancelled.
        """
        playlist = self.store.get_playlist(playlist_id)
        if playlist is None:
            raise StoreError(f"Playlist {playlist_id} not found.")

        summary = PlaylistDownloadSummary()
        already_done = self.store.completed_download_urls(playlist_id)
        for entry in self.store.list_playlist_videos(playlist_id):
            if not entry.video_url or entry.video_url in already_done:
                summary.skipped += 1
                continue
            if cancel_event is not None and cancel_event.is_set():
                raise DownloadCancelledError("Playlist download cancelled by user.")
            self.logger.info(f"Playlist '{playlist.title}': item {entry.index} - {entry.video_title}")
            try:
                await self.download(entry.video_url, extra_args, cancel_event, playlist_id=playlist_id,
                                    title=entry.video_title, channel=entry.channel,
                                    channel_url=entry.channel_url)
                summary.completed += 1
            except DownloadFailedError as e:
                self.logger.warning(f"Skipping '{entry.video_title}': {e}")
                summary.failed += 1
        return summary

    async def cleanup_partial_files(self, directory: Optional[Path] = None) -> int:
        """Deletes partial download files (*.part, *.ytdl, *.temp) from the output directory."""
        target = directory or self.output_dir
        if not await asyncio.to_thread(target.is_dir): return 0
        count = 0

        # Note: iterdir() itself is blocking and must be wrapped
        try:
            items_to_check = await asyncio.to_thread(lambda: list(target.iterdir()))
        except OSError as e:
            self.logger.warning(f"Failed to read download directory {target}: {e}")
            return 0

        for item in items_to_check:
            if item.name.endswith(PARTIAL_FILE_SUFFIXES) and await asyncio.to_thread(item.is_file):
                try:
                    await asyncio.to_thread(item.unlink)
                    count += 1
                except OSError as e:
                    self.logger.warning(f"Error deleting partial file {item.name}: {e}")
        if count > 0: self.logger.info(f"Cleaned up {count} partial file(s).")
        return count
