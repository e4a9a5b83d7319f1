"""Locates the yt-dlp executable and reports its version."""
import sys
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Optional, List

from .constants import APP_PATH, SUBPROCESS_CREATION_FLAGS
from .exceptions import YtDlpNotFoundError


class DependencyManager:
    """Manages the discovery of the yt-dlp executable."""

    def __init__(self, configured_path: Optional[Path] = None):
        """
        Initializes the DependencyManager.

        Args:
            configured_path: An explicit yt-dlp path from the settings, tried first.
        """
        self.configured_path = configured_path
        self.logger = logging.getLogger(__name__)
        self.yt_dlp_path: Optional[Path] = None

    def find_yt_dlp(self) -> Optional[Path]:
        """Finds the yt-dlp executable."""
        self.yt_dlp_path = self._find_executable('yt-dlp')
        return self.yt_dlp_path

    def _find_executable(self, name: str) -> Optional[Path]:
        """Finds an executable: configured path first, then a local copy, then PATH."""
        if self.configured_path is not None:
            if self.configured_path.is_file():
                return self.configured_path
            self.logger.warning(f"Configured {name} path does not exist: {self.configured_path}")

        local_path = APP_PATH / (f'{name}.exe' if sys.platform == 'win32' else name)
        if local_path.is_file():
            return local_path
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    def require_yt_dlp(self) -> Path:
        """
        Returns the yt-dlp path, failing if it cannot be found.

        Raises:
            YtDlpNotFoundError: If yt-dlp is not installed.
        """
        path = self.yt_dlp_path or self.find_yt_dlp()
        if path is None:
            raise YtDlpNotFoundError("yt-dlp is not installed")
        self.logger.debug(f"yt-dlp path: {path}")
        return path

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Asynchronously returns the version of an executable by running it with '--version'."""
        if not executable_path or not executable_path.exists():
            return "Not found"
        try:
            command: List[str] = [str(executable_path), '--version']

            kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
            if sys.platform == 'win32':
                kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

            process = await asyncio.create_subprocess_exec(*command, **kwargs)
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=15)

            if process.returncode != 0:
                return "Cannot execute"

            return stdout_bytes.decode('utf-8', 'replace').strip().split('\n')[0]
        except FileNotFoundError:
            return "Not found or no permission"
        except asyncio.TimeoutError:
            return "Version check timed out"
        except OSError:
            return "Cannot execute"
