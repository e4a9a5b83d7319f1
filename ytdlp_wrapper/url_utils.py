"""Helpers for classifying and normalizing YouTube-style URLs."""
import urllib.parse
from pathlib import PurePosixPath

from .constants import CHANNEL_URL_SUFFIXES, MISSING_VALUE, UNKNOWN_CHANNEL

# Ordered by priority when deriving a channel name from its URL.
_CHANNEL_NAME_MARKERS = (('/@', '@'), ('/channel/', ''), ('/c/', ''), ('/user/', ''))


def is_missing(value: str) -> bool:
    """Returns True for values yt-dlp reports as absent (empty or 'NA')."""
    return not value or value == MISSING_VALUE


def clean_channel_url(url: str) -> str:
    """
    Removes a tab suffix, query string and trailing slash from a channel URL.

    Returns an empty string only if the input is empty or 'NA'. If cleaning
    would produce an empty string, the original input is returned.
    """
    if is_missing(url):
        return ""

    original = url
    # The query goes first so that '/videos?view=0' still loses its tab suffix.
    url = url.split('?', 1)[0]
    for suffix in CHANNEL_URL_SUFFIXES:
        if url.endswith(suffix):
            url = url[:-len(suffix)]
            break  # Only one suffix is removed

    if url.endswith('/'):
        url = url[:-1]

    return url or original


def is_channel_url(url: str) -> bool:
    """Checks if a URL points at a channel rather than a video or playlist."""
    return any(marker in url for marker in ('/channel/', '/@', '/c/', '/user/'))


def is_playlist_url(url: str) -> bool:
    """Checks if a URL is a playlist or channel URL."""
    return ('/playlist' in url or 'list=' in url or '/playlists/' in url
            or is_channel_url(url))


def channel_name_from_url(url: str) -> str:
    """Derives a readable channel name from a channel URL."""
    for marker, prefix in _CHANNEL_NAME_MARKERS:
        if marker in url:
            name = url.split(marker, 1)[1].split('/', 1)[0]
            return prefix + name
    return UNKNOWN_CHANNEL


def title_from_url(url: str) -> str:
    """
    Builds a fallback title from a URL.

    Uses the last path segment without extension, then the 'v' or 'id' query
    parameter, then host and path.
    """
    try:
        parsed = urllib.parse.urlsplit(url)
    except ValueError:
        return url

    base = PurePosixPath(parsed.path).name
    if base and base != '.':
        stem, dot, _ext = base.rpartition('.')
        return stem if dot and stem else base

    if parsed.query:
        params = urllib.parse.parse_qs(parsed.query)
        for key in ('v', 'id'):
            if params.get(key) and params[key][0]:
                return params[key][0]

    host_path = parsed.netloc + parsed.path
    return host_path[4:] if host_path.startswith('www.') else host_path

