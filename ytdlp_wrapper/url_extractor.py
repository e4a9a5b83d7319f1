"""
Provides methods to extract video and playlist metadata from URLs using yt-dlp.
"""

import asyncio
import sys
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from .exceptions import URLExtractionError
from .constants import (
    SUBPROCESS_CREATION_FLAGS, UNKNOWN_CHANNEL, CANONICAL_CHANNEL_URL_PREFIX,
    VIDEO_PRINT_TEMPLATE, PLAYLIST_PRINT_TEMPLATE, CHANNEL_ID_PRINT_TEMPLATE,
)
from .url_utils import (
    channel_name_from_url, clean_channel_url, is_channel_url, is_missing, title_from_url,
)


@dataclass
class VideoInfo:
    """Metadata for a single video as reported by yt-dlp."""
    url: str
    video_id: str
    title: str
    channel: str = ""
    channel_url: str = ""
    index: int = 0


@dataclass
class PlaylistInfo:
    """A playlist snapshot: playlist-level fields plus its videos in listing order."""
    url: str
    title: str = ""
    channel: str = ""
    channel_url: str = ""
    videos: List[VideoInfo] = field(default_factory=list)


def _present(value: str) -> str:
    """Maps yt-dlp's 'NA' placeholder to an empty string."""
    return "" if is_missing(value) else value


class URLInfoExtractor:
    """
    Provides methods to extract information from URLs using yt-dlp.

    This class uses fast, non-JSON-based ``--print`` commands with
    pipe-delimited fields.
    """
    def __init__(self, yt_dlp_path: Path, timeout: Optional[float] = None):
        """
        Initializes the URLInfoExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
            timeout: Optional timeout in seconds for each yt-dlp call.
        """
        self.yt_dlp_path = yt_dlp_path
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    async def _run_command(self, command: List[str]) -> Tuple[str, str]:
        """
        A robust wrapper for running a yt-dlp command.

        Args:
            command: The command and its arguments as a list of strings.

        Returns:
            A tuple of (stdout, stderr) on success.

        Raises:
            URLExtractionError: On any failure (e.g., timeout, non-zero exit code).
        """
        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
            stdout = stdout_bytes.decode('utf-8', 'replace')
            stderr = stderr_bytes.decode('utf-8', 'replace')

        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise URLExtractionError("yt-dlp executable not found.")
        except asyncio.TimeoutError:
            if process: process.kill()
            self.logger.error(f"yt-dlp command timed out: {' '.join(command)}")
            raise URLExtractionError("URL processing command timed out.")
        except OSError as e:
            self.logger.error(f"OS error running yt-dlp: {e}")
            raise URLExtractionError(f"OS error: {e}")
        except asyncio.CancelledError:
            if process and process.returncode is None: process.kill()
            raise

        if process.returncode != 0:
            error_msg = self._parse_yt_dlp_error(stderr)
            self.logger.error(f"yt-dlp command failed for '{command[-1]}'. Stderr: {stderr.strip()}")
            raise URLExtractionError(error_msg)

        return stdout, stderr

    async def fetch_video_metadata(self, url: str) -> VideoInfo:
        """
        Retrieves id, title and channel details for a single video.

        Args:
            url: The URL of the single video.

        Returns:
            A VideoInfo with a cleaned channel URL ('' when unknown).

        Raises:
            URLExtractionError: If the yt-dlp command fails or prints an unexpected format.
        """
        command = [str(self.yt_dlp_path), '--print', VIDEO_PRINT_TEMPLATE,
                   '--no-playlist', '--no-warnings', url]
        stdout, _ = await self._run_command(command)
        lines = [line.strip() for line in stdout.splitlines() if line.strip()]
        parts = lines[0].split('|', 3) if lines else []
        if len(parts) != 4:
            raise URLExtractionError("invalid metadata format")

        video_id, title, channel, channel_url = parts
        return VideoInfo(
            url=url,
            video_id=video_id,
            title=title,
            channel=_present(channel),
            channel_url=clean_channel_url(channel_url),
        )

    async def resolve_canonical_channel_url(self, channel_url: str) -> str:
        """
        Resolves any channel URL form (handle, /c/, /user/) to its /channel/<id> form.

        This is best-effort: failures are logged and yield an empty string.
        """
        command = [str(self.yt_dlp_path), '--print', CHANNEL_ID_PRINT_TEMPLATE,
                   '--playlist-items', '1', '--no-warnings', channel_url]
        try:
            stdout, _ = await self._run_command(command)
        except URLExtractionError as e:
            self.logger.warning(f"Could not resolve channel id for {channel_url}: {e}")
            return ""

        lines = [line.strip() for line in stdout.splitlines() if line.strip()]
        channel_id = lines[0] if lines else ""
        if is_missing(channel_id):
            return ""
        return CANONICAL_CHANNEL_URL_PREFIX + channel_id

    async def fetch_playlist(self, url: str) -> PlaylistInfo:
        """
        Lists a playlist (or channel) in flat mode.

        Channel details missing on a video fall back to the playlist's, then to
        the canonical channel URL, then to a name derived from the channel URL,
        and finally to 'Unknown Channel'. A video's channel URL may stay empty.

        Args:
            url: The playlist or channel URL.

        Returns:
            A PlaylistInfo whose videos carry their 1-based listing position.

        Raises:
            URLExtractionError: If the yt-dlp command fails.
        """
        canonical_channel_url = ""
        if is_channel_url(url):
            canonical_channel_url = await self.resolve_canonical_channel_url(url)

        command = [str(self.yt_dlp_path), '--flat-playlist', '--print', PLAYLIST_PRINT_TEMPLATE,
                   '--no-warnings', url]
        stdout, _ = await self._run_command(command)

        info = PlaylistInfo(url=url)
        header_seen = False
        for line in stdout.splitlines():
            line = line.strip()
            if not line:
                continue

            parts = line.split('|', 8)
            if len(parts) != 9:
                self.logger.debug(f"Skipping malformed playlist line: {line}")
                continue
            (playlist_title, playlist_channel, playlist_channel_url, _playlist_index,
             video_id, video_title, video_channel, video_channel_url, video_url) = parts

            if not header_seen:
                header_seen = True
                info.title = _present(playlist_title)
                info.channel = _present(playlist_channel)
                info.channel_url = clean_channel_url(playlist_channel_url)

            if is_missing(video_channel):
                video_channel = playlist_channel
            if is_missing(video_channel_url):
                video_channel_url = canonical_channel_url or playlist_channel_url
            video_channel_url = clean_channel_url(video_channel_url)

            if is_missing(video_channel):
                video_channel = channel_name_from_url(video_channel_url) if video_channel_url else UNKNOWN_CHANNEL

            info.videos.append(VideoInfo(
                url=_present(video_url),
                video_id=video_id,
                title=video_title,
                channel=video_channel,
                channel_url=video_channel_url,
                index=len(info.videos) + 1,
            ))

        if not info.title and info.videos:
            info.title = title_from_url(url)

        if canonical_channel_url:
            info.channel_url = canonical_channel_url
        elif not info.channel_url and is_channel_url(url):
            info.channel_url = clean_channel_url(url)

        if not info.channel and info.channel_url:
            info.channel = channel_name_from_url(info.channel_url)

        if not info.channel_url:
            for video in info.videos:
                if video.channel_url:
                    info.channel_url = video.channel_url
                    if not info.channel:
                        info.channel = video.channel
                    break

        self.logger.info(f"Extracted {len(info.videos)} video(s) from '{info.title or url}'")
        return info
