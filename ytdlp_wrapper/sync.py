"""
Reconciles a freshly extracted playlist snapshot with the stored playlist.
"""

import logging
from dataclasses import dataclass

from .exceptions import EmptyPlaylistError, StoreError
from .store import Store
from .url_extractor import PlaylistInfo


@dataclass
class SyncResult:
    playlist_id: str
    new_items: int
    created: bool
    total_videos: int


class PlaylistSynchronizer:
    """
    Adds only the videos of a snapshot that the store does not know yet.

    Safe to run repeatedly against the same remote playlist: an unchanged
    snapshot adds nothing and leaves the saved count as it was. The saved
    count is only ever incremented by the number of rows actually inserted,
    so videos that later vanish remotely stay counted.
    """
    def __init__(self, store: Store):
        self.store = store
        self.logger = logging.getLogger(__name__)

    def reconcile(self, playlist_url: str, snapshot: PlaylistInfo) -> SyncResult:
        """
        Stores a playlist snapshot, inserting a new playlist or updating an existing one.

        Args:
            playlist_url: The URL the playlist is keyed on (exact match).
            snapshot: The freshly extracted playlist.

        Returns:
            A SyncResult with the playlist id and the number of new entries.

        Raises:
            EmptyPlaylistError: If the snapshot contains no videos.
            StoreError: If the playlist record itself cannot be read or written.
        """
        if not snapshot.videos:
            raise EmptyPlaylistError(f"No videos found in playlist: {playlist_url}")

        existing = self.store.find_playlist_by_url(playlist_url)
        if existing is not None:
            playlist_id = existing.playlist_id
            playlist_name = existing.title
            created = False
        else:
            playlist_id = self.store.insert_playlist(
                playlist_url, snapshot.title, snapshot.channel, snapshot.channel_url,
                total_videos=len(snapshot.videos),
            )
            playlist_name = snapshot.title
            created = True

        added = 0
        for video in snapshot.videos:
            try:
                if not created and self.store.playlist_video_exists(playlist_id, video.video_id):
                    continue
                self.store.insert_playlist_video(
                    playlist_id, playlist_name, video.url, video.title, video.video_id,
                    video.channel, video.channel_url, video.index,
                )
                added += 1
            except StoreError as e:
                self.logger.warning(f"Failed to save video {video.video_id} of playlist {playlist_id}: {e}")

        self.store.update_playlist_after_sync(playlist_id, len(snapshot.videos), added)

        if created:
            self.logger.info(f"Saved new playlist '{playlist_name}' with {added} video(s).")
        else:
            self.logger.info(f"Updated playlist '{playlist_name}': {added} new video(s).")
        return SyncResult(playlist_id, added, created, len(snapshot.videos))


def reconcile(playlist_url: str, snapshot: PlaylistInfo, store: Store) -> SyncResult:
    """Convenience wrapper around PlaylistSynchronizer.reconcile."""
    return PlaylistSynchronizer(store).reconcile(playlist_url, snapshot)
