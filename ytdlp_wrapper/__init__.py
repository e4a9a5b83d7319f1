"""yt-dlp wrapper that records downloads and playlists in SQLite."""

from ._version import __version__

__all__ = ["__version__"]
