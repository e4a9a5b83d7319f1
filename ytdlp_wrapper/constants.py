"""
Defines application-wide constants, paths, and yt-dlp related values.

This module centralizes configuration for paths, output templates, and
subprocess behavior, adapting to whether the application is running from
source or as a frozen executable.
"""

import re
import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # If the application is run as a bundle, the PyInstaller bootloader
    # sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of the package).
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for configuration and logs.
USER_DATA_DIR: Path = Path.home() / '.ytdlp-wrapper'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'

# Downloads and the database live relative to the working directory.
DEFAULT_OUTPUT_DIR: Path = Path('downloads')
DEFAULT_DATABASE_PATH: Path = Path('db') / 'downloads.db'
DEFAULT_OUTPUT_TEMPLATE = '%(title)s.%(ext)s'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Download Status Vocabulary ---
STATUS_PENDING = 'pending'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'
STATUS_CANCELLED = 'cancelled'
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED})

CANCELLED_MESSAGE = 'Download cancelled by user'

# Files left behind by an interrupted yt-dlp run.
PARTIAL_FILE_SUFFIXES = ('.part', '.ytdl', '.temp')

# --- Metadata Extraction ---
MISSING_VALUE = 'NA'
UNKNOWN_CHANNEL = 'Unknown Channel'
CHANNEL_URL_SUFFIXES = ('/videos', '/shorts', '/streams', '/playlists', '/community', '/about')
CANONICAL_CHANNEL_URL_PREFIX = 'https://www.youtube.com/channel/'

VIDEO_PRINT_TEMPLATE = '%(id)s|%(title)s|%(channel)s|%(channel_url)s'
PLAYLIST_PRINT_TEMPLATE = (
    '%(playlist_title,playlist)s|%(playlist_channel,channel)s|%(playlist_channel_url,channel_url)s|'
    '%(playlist_index)s|%(id)s|%(title)s|%(channel)s|%(channel_url)s|%(url)s'
)
CHANNEL_ID_PRINT_TEMPLATE = '%(channel_id)s'

# --- Output Line Patterns ---
PROGRESS_PATTERN = re.compile(r'(\d+\.?\d*)%')
ETA_PATTERN = re.compile(r'ETA\s+(\d{2}:\d{2}(?::\d{2})?)')
DESTINATION_PATTERN = re.compile(r'\[download\] Destination: (.+)')
ALREADY_DOWNLOADED_PATTERN = re.compile(r'\[download\] (.+?) has already been downloaded')
MERGE_PATTERN = re.compile(r'\[Merger\] Merging formats into "(.+)"')
STAGE_PATTERN = re.compile(r'^\[(\w+)\]')

# Post-processing stages reported by yt-dlp, keyed by lower-cased tag.
STAGE_LABELS = {
    'merger': 'Merging...',
    'extractaudio': 'Extracting Audio...',
    'embedthumbnail': 'Embedding...',
    'fixupm4a': 'Fixing M4a...',
    'metadata': 'Writing Metadata...',
}
