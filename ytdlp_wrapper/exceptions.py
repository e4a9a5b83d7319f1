"""
Defines custom exceptions used throughout the application.

These exceptions allow for more specific error handling than built-in exceptions.
"""

from typing import Optional


class YtDlpWrapperError(Exception):
    """Base exception for all application-specific errors."""
    pass

class YtDlpNotFoundError(YtDlpWrapperError):
    """Raised when the yt-dlp executable cannot be located."""
    pass

class URLExtractionError(YtDlpWrapperError):
    """Custom exception for URL processing failures."""
    pass

class EmptyPlaylistError(URLExtractionError):
    """Raised when a playlist extraction succeeds but yields no videos."""
    pass

class DownloadCancelledError(YtDlpWrapperError):
    """Custom exception for cancelled downloads."""
    pass

class ProcessStartError(YtDlpWrapperError):
    """Raised when the external process could not be started."""
    pass

class ProcessExitError(YtDlpWrapperError):
    """Raised when the external process exits with a non-zero code."""
    def __init__(self, returncode: int, last_error: Optional[str] = None):
        self.returncode = returncode
        self.last_error = last_error
        message = f"yt-dlp exited with code {returncode}"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)

class DownloadFailedError(YtDlpWrapperError):
    """Raised when a download job ends in the 'failed' state."""
    def __init__(self, job_id: str, message: str):
        self.job_id = job_id
        super().__init__(message)

class StoreError(YtDlpWrapperError):
    """Raised when a database operation fails."""
    pass

class StatusTransitionError(StoreError):
    """Raised when a download record would leave a terminal status."""
    pass
