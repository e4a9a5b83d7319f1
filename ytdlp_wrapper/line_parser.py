"""
Turns single lines of yt-dlp output into typed events.

yt-dlp has no structured progress channel, so every matcher here is a
heuristic over one line of text. A line that matches nothing produces no
event; it is never an error.
"""

from dataclasses import dataclass
from pathlib import PurePath
from typing import List, Optional, Union

from .constants import (
    ALREADY_DOWNLOADED_PATTERN, DESTINATION_PATTERN, ETA_PATTERN,
    MERGE_PATTERN, PROGRESS_PATTERN, STAGE_LABELS, STAGE_PATTERN,
)


@dataclass(frozen=True)
class ProgressEvent:
    percent: str
    eta: str = ""

    def display(self) -> str:
        """Formats the event as a single status string, e.g. 'Progress: 42.5% | ETA: 00:05'."""
        text = f"Progress: {self.percent}%"
        if self.eta:
            text += f" | ETA: {self.eta}"
        return text


@dataclass(frozen=True)
class DestinationEvent:
    path: str
    title: str
    already_downloaded: bool = False


@dataclass(frozen=True)
class MergeEvent:
    path: str


@dataclass(frozen=True)
class StageEvent:
    stage: str
    label: str


@dataclass(frozen=True)
class ErrorEvent:
    message: str


OutputEvent = Union[ProgressEvent, DestinationEvent, MergeEvent, StageEvent, ErrorEvent]


def title_from_path(path: str) -> str:
    """Strips the directory and the final extension from an output path."""
    return PurePath(path.strip()).stem


def match_progress(line: str) -> Optional[ProgressEvent]:
    """Extracts the percentage and optional ETA from a '[download]' progress line."""
    if '[download]' not in line or '%' not in line:
        return None
    percent_match = PROGRESS_PATTERN.search(line)
    if not percent_match:
        return None
    eta_match = ETA_PATTERN.search(line)
    return ProgressEvent(percent_match.group(1), eta_match.group(1) if eta_match else "")


def match_destination(line: str) -> Optional[DestinationEvent]:
    if dest_match := DESTINATION_PATTERN.search(line):
        path = dest_match.group(1).strip()
        return DestinationEvent(path, title_from_path(path))
    return None


def match_already_downloaded(line: str) -> Optional[DestinationEvent]:
    if done_match := ALREADY_DOWNLOADED_PATTERN.search(line):
        path = done_match.group(1).strip()
        return DestinationEvent(path, title_from_path(path), already_downloaded=True)
    return None


def match_merge(line: str) -> Optional[MergeEvent]:
    if merge_match := MERGE_PATTERN.search(line):
        return MergeEvent(merge_match.group(1).strip())
    return None


def match_stage(line: str) -> Optional[StageEvent]:
    """Recognizes post-processing stages such as '[Merger]' or '[ExtractAudio]'."""
    if status_match := STAGE_PATTERN.search(line):
        stage = status_match.group(1).lower()
        if stage in STAGE_LABELS:
            return StageEvent(stage, STAGE_LABELS[stage])
    return None


def match_error(line: str) -> Optional[ErrorEvent]:
    if line.startswith('ERROR:'):
        return ErrorEvent(line[6:].strip())
    return None


_MATCHERS = (
    match_progress, match_destination, match_already_downloaded,
    match_merge, match_stage, match_error,
)


def parse_line(line: str) -> List[OutputEvent]:
    """Runs every matcher over a line and returns the events found, in matcher order."""
    events = []
    for matcher in _MATCHERS:
        event = matcher(line)
        if event is not None:
            events.append(event)
    return events


class DownloadOutputState:
    """
    Per-run accumulator over parsed output.

    Suppresses progress events whose display string equals the previous one
    and captures the video title only once per run. A title passed in from
    pre-fetched metadata counts as already captured. The output path follows
    the first destination and is replaced by a merge target if one appears.
    Callers must not feed it from two tasks at the same time; ProcessRunner
    serializes its handler.
    """
    def __init__(self, title: str = ""):
        self.title = title
        self.title_captured = bool(title)
        self.destination: Optional[str] = None
        self.last_progress: Optional[str] = None
        self.last_error: Optional[str] = None

    def feed(self, line: str) -> List[OutputEvent]:
        """
        Parses a line and updates the accumulated state.

        Returns:
            The events that should be reported for this line. Duplicate
            progress and any destination after the first are dropped.
        """
        emitted: List[OutputEvent] = []
        for event in parse_line(line):
            if isinstance(event, ProgressEvent):
                display = event.display()
                if display == self.last_progress:
                    continue
                self.last_progress = display
            elif isinstance(event, DestinationEvent):
                if self.destination is not None:
                    continue
                self.destination = event.path
                if event.title and not self.title_captured:
                    self.title = event.title
                    self.title_captured = True
            elif isinstance(event, MergeEvent):
                self.destination = event.path
            elif isinstance(event, ErrorEvent):
                self.last_error = event.message
            emitted.append(event)
        return emitted
