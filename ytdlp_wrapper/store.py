"""
Manages the SQLite database that records downloads, playlists and playlist videos.
"""

import logging
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Set, Union

from .constants import STATUS_PENDING, TERMINAL_STATUSES
from .exceptions import StatusTransitionError, StoreError
from .jobs import DownloadJob, PlaylistJob, PlaylistVideoEntry
from .url_utils import title_from_url

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS downloads (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    title TEXT NOT NULL,
    channel TEXT,
    channel_url TEXT,
    file_path TEXT,
    status TEXT NOT NULL,
    error TEXT,
    playlist_id TEXT,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_url ON downloads(url);
CREATE INDEX IF NOT EXISTS idx_status ON downloads(status);
CREATE INDEX IF NOT EXISTS idx_downloads_playlist_id ON downloads(playlist_id);

CREATE TABLE IF NOT EXISTS playlists (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    channel TEXT,
    channel_url TEXT,
    total_videos INTEGER NOT NULL DEFAULT 0,
    videos_saved INTEGER NOT NULL DEFAULT 0,
    videos_downloaded INTEGER NOT NULL DEFAULT 0,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS playlist_videos (
    id TEXT PRIMARY KEY,
    playlist_id TEXT NOT NULL,
    playlist_name TEXT NOT NULL,
    video_url TEXT NOT NULL,
    video_title TEXT NOT NULL,
    video_id TEXT NOT NULL,
    channel TEXT,
    channel_url TEXT,
    idx INTEGER NOT NULL,
    FOREIGN KEY (playlist_id) REFERENCES playlists(id) ON DELETE CASCADE,
    UNIQUE (playlist_id, video_id)
);
CREATE INDEX IF NOT EXISTS idx_playlist_videos_playlist_id ON playlist_videos(playlist_id);
"""

_DOWNLOAD_COLUMNS = "id, url, title, channel, channel_url, file_path, status, error, playlist_id, created_at, updated_at"
_PLAYLIST_COLUMNS = ("id, url, title, channel, channel_url, total_videos, videos_saved, "
                     "videos_downloaded, created_at, updated_at")
_PLAYLIST_VIDEO_COLUMNS = "id, playlist_id, playlist_name, video_url, video_title, video_id, channel, channel_url, idx"


def _now() -> str:
    return datetime.now().isoformat(sep=' ', timespec='microseconds')


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Store:
    """
    Durable storage for download jobs and extracted playlists.

    A single connection is opened per process. Every write is one statement
    committed on its own; sqlite errors surface as StoreError.
    """

    def __init__(self, db_path: Union[Path, str]):
        self.db_path = Path(db_path) if str(db_path) != ':memory:' else db_path
        self.conn = self._connect()
        self._initialize_db()

    def _connect(self) -> sqlite3.Connection:
        """Opens the database, creating its parent directory if needed."""
        try:
            if isinstance(self.db_path, Path):
                if not self.db_path.exists():
                    log.info(f"Creating {self.db_path}...")
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False,
                                   isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
            return conn
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Failed to open database at '{self.db_path}': {e}") from e

    def _initialize_db(self) -> None:
        try:
            self.conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize database at '{self.db_path}': {e}") from e

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # --- Downloads ---

    @staticmethod
    def _row_to_download(row: sqlite3.Row) -> DownloadJob:
        return DownloadJob(
            job_id=row["id"],
            url=row["url"],
            title=row["title"],
            channel=row["channel"] or "",
            channel_url=row["channel_url"] or "",
            file_path=row["file_path"] or "",
            status=row["status"],
            error=row["error"] or "",
            playlist_id=row["playlist_id"],
            created_at=_parse_time(row["created_at"]),
            updated_at=_parse_time(row["updated_at"]),
        )

    def insert_download(self, url: str, title: str = "", playlist_id: Optional[str] = None,
                        channel: str = "", channel_url: str = "") -> str:
        """Creates a pending download record and returns its id."""
        download_id = str(uuid.uuid4())
        now = _now()
        self._execute(
            f"INSERT INTO downloads ({_DOWNLOAD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (download_id, url, title or title_from_url(url), channel, channel_url, "",
             STATUS_PENDING, "", playlist_id, now, now),
        )
        return download_id

    def update_download_title(self, download_id: str, title: str) -> None:
        self._execute(
            "UPDATE downloads SET title = ?, updated_at = ? WHERE id = ?",
            (title, _now(), download_id),
        )

    def update_download_channel(self, download_id: str, channel: str, channel_url: str = "") -> None:
        self._execute(
            "UPDATE downloads SET channel = ?, channel_url = ?, updated_at = ? WHERE id = ?",
            (channel, channel_url, _now(), download_id),
        )

    def update_download_status(self, download_id: str, status: str,
                               file_path: str = "", error: str = "") -> None:
        """
        Moves a pending download to a terminal status.

        Raises:
            StatusTransitionError: If the record is already terminal or the
                status is not one of completed, failed, cancelled.
            StoreError: If the record does not exist.
        """
        if status not in TERMINAL_STATUSES:
            raise StatusTransitionError(f"'{status}' is not a terminal status.")
        cursor = self._execute(
            "UPDATE downloads SET status = ?, file_path = ?, error = ?, updated_at = ? "
            "WHERE id = ? AND status = ?",
            (status, file_path, error, _now(), download_id, STATUS_PENDING),
        )
        if cursor.rowcount == 0:
            current = self.get_download(download_id)
            if current is None:
                raise StoreError(f"Download {download_id} not found.")
            raise StatusTransitionError(
                f"Download {download_id} is already '{current.status}'; cannot set '{status}'.")

    def get_download(self, download_id: str) -> Optional[DownloadJob]:
        row = self._execute(f"SELECT {_DOWNLOAD_COLUMNS} FROM downloads WHERE id = ?", (download_id,)).fetchone()
        return self._row_to_download(row) if row else None

    def list_downloads(self) -> List[DownloadJob]:
        """Returns all downloads, newest first."""
        rows = self._execute(f"SELECT {_DOWNLOAD_COLUMNS} FROM downloads ORDER BY created_at DESC, rowid DESC").fetchall()
        return [self._row_to_download(row) for row in rows]

    def list_playlist_downloads(self, playlist_id: str) -> List[DownloadJob]:
        rows = self._execute(
            f"SELECT {_DOWNLOAD_COLUMNS} FROM downloads WHERE playlist_id = ? ORDER BY created_at DESC, rowid DESC",
            (playlist_id,),
        ).fetchall()
        return [self._row_to_download(row) for row in rows]

    def completed_download_urls(self, playlist_id: str) -> Set[str]:
        rows = self._execute(
            "SELECT url FROM downloads WHERE playlist_id = ? AND status = 'completed'",
            (playlist_id,),
        ).fetchall()
        return {row["url"] for row in rows}

    # --- Playlists ---

    @staticmethod
    def _row_to_playlist(row: sqlite3.Row) -> PlaylistJob:
        return PlaylistJob(
            playlist_id=row["id"],
            url=row["url"],
            title=row["title"],
            channel=row["channel"] or "",
            channel_url=row["channel_url"] or "",
            total_videos=row["total_videos"],
            videos_saved=row["videos_saved"],
            videos_downloaded=row["videos_downloaded"],
            created_at=_parse_time(row["created_at"]),
            updated_at=_parse_time(row["updated_at"]),
        )

    def insert_playlist(self, url: str, title: str, channel: str = "", channel_url: str = "",
                        total_videos: int = 0, videos_saved: int = 0) -> str:
        """Creates a playlist record and returns its id."""
        playlist_id = str(uuid.uuid4())
        now = _now()
        self._execute(
            f"INSERT INTO playlists ({_PLAYLIST_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (playlist_id, url, title or title_from_url(url), channel, channel_url,
             total_videos, videos_saved, 0, now, now),
        )
        return playlist_id

    def get_playlist(self, playlist_id: str) -> Optional[PlaylistJob]:
        row = self._execute(f"SELECT {_PLAYLIST_COLUMNS} FROM playlists WHERE id = ?", (playlist_id,)).fetchone()
        return self._row_to_playlist(row) if row else None

    def find_playlist_by_url(self, url: str) -> Optional[PlaylistJob]:
        row = self._execute(f"SELECT {_PLAYLIST_COLUMNS} FROM playlists WHERE url = ?", (url,)).fetchone()
        return self._row_to_playlist(row) if row else None

    def update_playlist_after_sync(self, playlist_id: str, total_videos: int, videos_added: int) -> None:
        """Records the observed total and adds newly saved entries to the saved count."""
        self._execute(
            "UPDATE playlists SET total_videos = ?, videos_saved = videos_saved + ?, updated_at = ? WHERE id = ?",
            (total_videos, videos_added, _now(), playlist_id),
        )

    def increment_playlist_downloaded(self, playlist_id: str) -> None:
        self._execute(
            "UPDATE playlists SET videos_downloaded = videos_downloaded + 1, updated_at = ? WHERE id = ?",
            (_now(), playlist_id),
        )

    def list_playlists(self) -> List[PlaylistJob]:
        """Returns all playlists, most recently updated first."""
        rows = self._execute(f"SELECT {_PLAYLIST_COLUMNS} FROM playlists ORDER BY updated_at DESC, rowid DESC").fetchall()
        return [self._row_to_playlist(row) for row in rows]

    def delete_playlist(self, playlist_id: str) -> bool:
        """Deletes a playlist together with its video entries."""
        cursor = self._execute("DELETE FROM playlists WHERE id = ?", (playlist_id,))
        return cursor.rowcount > 0

    # --- Playlist videos ---

    def playlist_video_exists(self, playlist_id: str, video_id: str) -> bool:
        row = self._execute(
            "SELECT 1 FROM playlist_videos WHERE playlist_id = ? AND video_id = ?",
            (playlist_id, video_id),
        ).fetchone()
        return row is not None

    def insert_playlist_video(self, playlist_id: str, playlist_name: str, video_url: str,
                              video_title: str, video_id: str, channel: str,
                              channel_url: str, index: int) -> str:
        entry_id = str(uuid.uuid4())
        self._execute(
            f"INSERT INTO playlist_videos ({_PLAYLIST_VIDEO_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (entry_id, playlist_id, playlist_name, video_url, video_title, video_id,
             channel, channel_url, index),
        )
        return entry_id

    def list_playlist_videos(self, playlist_id: str) -> List[PlaylistVideoEntry]:
        """Returns a playlist's entries ordered by their stored position."""
        rows = self._execute(
            f"SELECT {_PLAYLIST_VIDEO_COLUMNS} FROM playlist_videos WHERE playlist_id = ? ORDER BY idx",
            (playlist_id,),
        ).fetchall()
        return [
            PlaylistVideoEntry(
                entry_id=row["id"],
                playlist_id=row["playlist_id"],
                playlist_name=row["playlist_name"],
                video_url=row["video_url"],
                video_title=row["video_title"],
                video_id=row["video_id"],
                channel=row["channel"] or "",
                channel_url=row["channel_url"] or "",
                index=row["idx"],
            )
            for row in rows
        ]
