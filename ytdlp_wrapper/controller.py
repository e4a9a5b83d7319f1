"""
Defines the main AppController class, which orchestrates the application's logic.
"""
import asyncio
import logging
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

from .config import Settings
from .dependencies import DependencyManager
from .downloads import DownloadManager, EventCallback, PlaylistDownloadSummary
from .exceptions import EmptyPlaylistError
from .jobs import DownloadJob, PlaylistJob, PlaylistVideoEntry
from .process_runner import ProcessRunner
from .store import Store
from .sync import PlaylistSynchronizer, SyncResult
from .url_extractor import URLInfoExtractor
from .url_utils import is_playlist_url

_INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@contextmanager
def interrupt_listener() -> Iterator[asyncio.Event]:
    """
    Sets the yielded event when SIGINT or SIGTERM arrives.

    Must be used inside a running event loop. The previous handlers are
    restored on exit.
    """
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()
    event = asyncio.Event()

    def on_signal(*_: Any):
        if not event.is_set():
            logger.info("Interrupt received. Cancelling...")
        loop.call_soon_threadsafe(event.set)

    installed, previous = [], {}
    for sig in _INTERRUPT_SIGNALS:
        try:
            loop.add_signal_handler(sig, on_signal)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler.
            previous[sig] = signal.signal(sig, on_signal)
    try:
        yield event
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        for sig, handler in previous.items():
            signal.signal(sig, handler)


class AppController:
    """The central controller for the application's business logic."""

    def __init__(self, config: Settings, event_callback: Optional[EventCallback] = None,
                 store: Optional[Store] = None):
        """
        Initializes the AppController.

        Args:
            config: The loaded application settings.
            event_callback: Optional async function receiving download events.
            store: An already opened store; one is opened from the settings if omitted.
        """
        self.config = config
        self.event_callback = event_callback
        self.logger = logging.getLogger(__name__)

        self.store = store or Store(config.database_path)
        self.dep_manager = DependencyManager(config.yt_dlp_path)
        self.synchronizer = PlaylistSynchronizer(self.store)
        self._extractor: Optional[URLInfoExtractor] = None
        self._download_manager: Optional[DownloadManager] = None

    def close(self):
        self.store.close()

    def _output_dir(self) -> Path:
        output_dir = self.config.output_dir.resolve()
        output_dir.mkdir(parents=True, exist_ok=True)
        return output_dir

    def extractor(self) -> URLInfoExtractor:
        """Returns the metadata extractor, checking for yt-dlp first."""
        yt_dlp_path = self.dep_manager.require_yt_dlp()
        if self._extractor is None:
            self._extractor = URLInfoExtractor(yt_dlp_path, timeout=self.config.metadata_timeout)
        return self._extractor

    def download_manager(self) -> DownloadManager:
        """Returns the download manager, checking for yt-dlp first."""
        yt_dlp_path = self.dep_manager.require_yt_dlp()
        if self._download_manager is None:
            self._download_manager = DownloadManager(
                self.store,
                yt_dlp_path,
                self._output_dir(),
                output_template=self.config.output_template,
                restrict_filenames=self.config.restrict_filenames,
                runner=ProcessRunner(self.config.termination_grace_period),
                extractor=self.extractor() if self.config.prefetch_metadata else None,
                event_callback=self.event_callback,
            )
        return self._download_manager

    async def download_video(self, url: str, extra_args: Sequence[str] = (),
                             cancel_event: Optional[asyncio.Event] = None) -> DownloadJob:
        """Downloads a single URL. yt-dlp is checked before any record is created."""
        manager = self.download_manager()
        args = [*self.config.extra_args, *extra_args]
        return await manager.download(url, args, cancel_event)

    async def extract_playlist(self, url: str) -> SyncResult:
        """
        Extracts a playlist and stores any videos not seen before.

        Raises:
            YtDlpNotFoundError: If yt-dlp is not installed.
            URLExtractionError: If extraction fails.
            EmptyPlaylistError: If the playlist has no videos.
        """
        extractor = self.extractor()
        if not is_playlist_url(url):
            self.logger.warning(f"URL does not look like a playlist or channel: {url}")
        self.logger.info(f"Extracting playlist: {url}")
        snapshot = await extractor.fetch_playlist(url)
        if not snapshot.videos:
            raise EmptyPlaylistError(f"No videos found in playlist: {url}")
        return self.synchronizer.reconcile(url, snapshot)

    async def download_playlist(self, playlist_id: str, extra_args: Sequence[str] = (),
                                cancel_event: Optional[asyncio.Event] = None) -> PlaylistDownloadSummary:
        manager = self.download_manager()
        args = [*self.config.extra_args, *extra_args]
        return await manager.download_playlist(playlist_id, args, cancel_event)

    def list_downloads(self) -> List[DownloadJob]:
        return self.store.list_downloads()

    def list_playlists(self) -> List[PlaylistJob]:
        return self.store.list_playlists()

    def get_playlist(self, playlist_id: str) -> Optional[PlaylistJob]:
        return self.store.get_playlist(playlist_id)

    def playlist_videos(self, playlist_id: str) -> List[PlaylistVideoEntry]:
        return self.store.list_playlist_videos(playlist_id)

    def delete_playlist(self, playlist_id: str) -> bool:
        return self.store.delete_playlist(playlist_id)

    async def get_yt_dlp_version(self) -> str:
        return await self.dep_manager.get_version(self.dep_manager.find_yt_dlp())
