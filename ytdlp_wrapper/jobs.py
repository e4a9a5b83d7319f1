"""
Defines the data classes for download jobs, playlists, and playlist entries.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .constants import STATUS_PENDING


@dataclass
class DownloadJob:
    """
    Represents a single download task as persisted in the ``downloads`` table.

    Attributes:
        job_id: A unique identifier for the job.
        url: The URL provided by the user.
        title: The video title; may be empty until yt-dlp reports it.
        channel: The channel name, best-effort.
        channel_url: The channel URL, best-effort.
        file_path: The output file path, set only on completion.
        status: One of pending, completed, failed, cancelled.
        error: The last error message.
        playlist_id: The owning playlist, or None for an orphan download.
    """
    job_id: str
    url: str
    title: str = ""
    channel: str = ""
    channel_url: str = ""
    file_path: str = ""
    status: str = STATUS_PENDING
    error: str = ""
    playlist_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_orphan(self) -> bool:
        return not self.playlist_id


@dataclass
class PlaylistJob:
    """
    Represents an extracted playlist as persisted in the ``playlists`` table.

    ``videos_saved`` counts entries stored locally and ``videos_downloaded``
    counts entries whose download completed; ``total_videos`` is the count
    last observed remotely.
    """
    playlist_id: str
    url: str
    title: str = ""
    channel: str = ""
    channel_url: str = ""
    total_videos: int = 0
    videos_saved: int = 0
    videos_downloaded: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class PlaylistVideoEntry:
    """A single video of a stored playlist, at its 1-based position."""
    entry_id: str
    playlist_id: str
    playlist_name: str
    video_url: str
    video_title: str
    video_id: str
    channel: str = ""
    channel_url: str = ""
    index: int = 0
