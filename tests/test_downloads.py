import asyncio
import stat
import sys
import textwrap
from unittest.mock import AsyncMock

import pytest

from ytdlp_wrapper.exceptions import (
    DownloadCancelledError, DownloadFailedError, ProcessExitError, StatusTransitionError,
    StoreError, URLExtractionError,
)
from ytdlp_wrapper.downloads import DownloadManager
from ytdlp_wrapper.process_runner import ProcessResult, ProcessRunner
from ytdlp_wrapper.url_extractor import URLInfoExtractor, VideoInfo

VIDEO_URL = "https://www.youtube.com/watch?v=abc"


class FakeRunner:
    """Feeds canned output lines to the handler, then returns or raises."""
    def __init__(self, lines=(), error=None, before_error=None):
        self.lines = list(lines)
        self.error = error
        self.before_error = before_error
        self.commands = []

    async def run(self, command, on_line, cancel_event=None):
        self.commands.append(command)
        for line in self.lines:
            await on_line(line)
        if self.before_error is not None:
            self.before_error()
        if self.error is not None:
            raise self.error
        return ProcessResult(0)


def destination_lines(output_dir, name="My Video.mp4"):
    return [
        "[youtube] abc: Downloading webpage",
        f"[download] Destination: {output_dir / name}",
        "[download]  50.0% of 10.00MiB at 1.00MiB/s ETA 00:05",
        "[download]  50.0% of 10.00MiB at 1.00MiB/s ETA 00:05",
        "[download] 100.0% of 10.00MiB at 1.00MiB/s ETA 00:00",
    ]


class TestDownloadManager:
    """Test the download job lifecycle."""

    def setup_method(self):
        self.events = []

    async def record(self, event):
        self.events.append(event)

    def make_manager(self, store, tmp_path, runner, extractor=None):
        return DownloadManager(store, "yt-dlp", tmp_path, runner=runner,
                               extractor=extractor, event_callback=self.record)

    def event_values(self, column):
        return [e[1][2] for e in self.events if e[0] == 'update_job' and e[1][1] == column]

    def test_build_command(self, store, tmp_path):
        manager = self.make_manager(store, tmp_path, FakeRunner())
        command = manager.build_command(VIDEO_URL, ["-f", "best"])

        assert command == ["yt-dlp", "--newline", "--restrict-filenames", "-o",
                           str(tmp_path / "%(title)s.%(ext)s"), "-f", "best", VIDEO_URL]

    def test_successful_download(self, store, tmp_path):
        manager = self.make_manager(store, tmp_path, FakeRunner(destination_lines(tmp_path)))
        job = asyncio.run(manager.download(VIDEO_URL))

        record = store.get_download(job.job_id)
        assert record.status == "completed"
        assert record.title == "My Video"
        assert record.file_path == str(tmp_path / "My Video.mp4")
        assert self.event_values('progress') == ["Progress: 50.0% | ETA: 00:05", "Progress: 100.0% | ETA: 00:00"]
        assert self.events[0][0] == 'add_job'
        assert self.events[-1] == ('done', (job.job_id, 'Completed'))

    def test_merge_target_becomes_file_path(self, store, tmp_path):
        lines = destination_lines(tmp_path, "My Video.f137.mp4") + [
            f'[Merger] Merging formats into "{tmp_path / "My Video.mkv"}"',
        ]
        manager = self.make_manager(store, tmp_path, FakeRunner(lines))
        job = asyncio.run(manager.download(VIDEO_URL))

        assert store.get_download(job.job_id).file_path == str(tmp_path / "My Video.mkv")
        assert self.event_values("status") == ["Merging..."]

    def test_cancelled_download_cleans_partial_files(self, store, tmp_path):
        for name in ("a.mp4.part", "a.mp4.ytdl", "b.temp", "keep.mp4"):
            (tmp_path / name).write_text("x")
        runner = FakeRunner(destination_lines(tmp_path)[:2], error=DownloadCancelledError("cancelled"))
        manager = self.make_manager(store, tmp_path, runner)

        with pytest.raises(DownloadCancelledError):
            asyncio.run(manager.download(VIDEO_URL))

        record = store.list_downloads()[0]
        assert record.status == "cancelled"
        assert record.error == "Download cancelled by user"
        assert sorted(p.name for p in tmp_path.iterdir() if p.is_file() and p.suffix != ".db") == ["keep.mp4"]
        with pytest.raises(StatusTransitionError):
            store.update_download_status(record.job_id, "completed", "/out/a.mp4")

    def test_failed_download_records_last_error(self, store, tmp_path):
        runner = FakeRunner(["ERROR: boom"], error=ProcessExitError(1, "boom"))
        manager = self.make_manager(store, tmp_path, runner)

        with pytest.raises(DownloadFailedError) as exc_info:
            asyncio.run(manager.download(VIDEO_URL))

        record = store.get_download(exc_info.value.job_id)
        assert record.status == "failed"
        assert record.error == "yt-dlp exited with code 1: boom"
        assert self.events[-1] == ('done', (record.job_id, 'Failed'))

    def test_record_exists_while_running(self, store, tmp_path):
        seen = []
        runner = FakeRunner(before_error=lambda: seen.extend(store.list_downloads()))
        manager = self.make_manager(store, tmp_path, runner)
        asyncio.run(manager.download(VIDEO_URL))

        assert [d.status for d in seen] == ["pending"]

    def test_prefetched_metadata_is_kept(self, store, tmp_path):
        extractor = AsyncMock()
        extractor.fetch_video_metadata.return_value = VideoInfo(
            VIDEO_URL, "abc", "Real Title", "Chan", "https://www.youtube.com/@chan")
        manager = self.make_manager(store, tmp_path, FakeRunner(destination_lines(tmp_path, "Real_Title.mp4")),
                                    extractor=extractor)
        job = asyncio.run(manager.download(VIDEO_URL))

        record = store.get_download(job.job_id)
        assert record.title == "Real Title"
        assert (record.channel, record.channel_url) == ("Chan", "https://www.youtube.com/@chan")
        assert record.file_path == str(tmp_path / "Real_Title.mp4")

    def test_failed_prefetch_does_not_stop_download(self, store, tmp_path):
        extractor = AsyncMock()
        extractor.fetch_video_metadata.side_effect = URLExtractionError("nope")
        manager = self.make_manager(store, tmp_path, FakeRunner(destination_lines(tmp_path)), extractor=extractor)
        job = asyncio.run(manager.download(VIDEO_URL))

        assert store.get_download(job.job_id).title == "My Video"

    def test_secondary_write_failure_is_not_fatal(self, store, tmp_path):
        manager = self.make_manager(store, tmp_path, FakeRunner(destination_lines(tmp_path)))
        store.update_download_title = lambda *args: (_ for _ in ()).throw(StoreError("locked"))
        job = asyncio.run(manager.download(VIDEO_URL))

        assert store.get_download(job.job_id).status == "completed"

    def test_prefetch_without_extractor_is_a_no_op(self, store, tmp_path):
        manager = self.make_manager(store, tmp_path, FakeRunner())
        job_id = store.insert_download(VIDEO_URL, "Known")
        job = store.get_download(job_id)

        asyncio.run(manager._prefetch_metadata(job))

        assert store.get_download(job_id).title == "Known"
        assert self.events == []

    def test_cleanup_missing_directory(self, store, tmp_path):
        manager = self.make_manager(store, tmp_path / "missing", FakeRunner())
        assert asyncio.run(manager.cleanup_partial_files()) == 0


class TestPlaylistDownloads:
    """Test downloading the stored videos of a playlist."""

    def setup_method(self):
        self.events = []

    def add_playlist(self, store, video_ids):
        playlist_id = store.insert_playlist("https://x/list", "List", total_videos=len(video_ids))
        for index, video_id in enumerate(video_ids, start=1):
            store.insert_playlist_video(playlist_id, "List", f"https://x/{video_id}", f"Video {video_id}",
                                        video_id, "Chan", "", index)
        return playlist_id

    def test_downloads_each_video_once(self, store, tmp_path):
        playlist_id = self.add_playlist(store, ["a", "b"])
        runner = FakeRunner()
        manager = DownloadManager(store, "yt-dlp", tmp_path, runner=runner)

        summary = asyncio.run(manager.download_playlist(playlist_id))
        assert (summary.completed, summary.failed, summary.skipped) == (2, 0, 0)
        assert store.get_playlist(playlist_id).videos_downloaded == 2
        assert all(d.playlist_id == playlist_id for d in store.list_downloads())

        rerun = asyncio.run(manager.download_playlist(playlist_id))
        assert (rerun.completed, rerun.skipped) == (0, 2)
        assert len(runner.commands) == 2

    def test_failures_do_not_stop_the_run(self, store, tmp_path):
        playlist_id = self.add_playlist(store, ["a", "b"])
        runner = FakeRunner(error=ProcessExitError(1, "gone"))
        manager = DownloadManager(store, "yt-dlp", tmp_path, runner=runner)

        summary = asyncio.run(manager.download_playlist(playlist_id))
        assert (summary.completed, summary.failed) == (0, 2)
        assert store.get_playlist(playlist_id).videos_downloaded == 0

    def test_set_event_stops_before_next_video(self, store, tmp_path):
        playlist_id = self.add_playlist(store, ["a"])
        manager = DownloadManager(store, "yt-dlp", tmp_path, runner=FakeRunner())

        async def run():
            event = asyncio.Event()
            event.set()
            await manager.download_playlist(playlist_id, cancel_event=event)

        with pytest.raises(DownloadCancelledError):
            asyncio.run(run())
        assert store.list_downloads() == []

    def test_unknown_playlist(self, store, tmp_path):
        manager = DownloadManager(store, "yt-dlp", tmp_path, runner=FakeRunner())
        with pytest.raises(StoreError):
            asyncio.run(manager.download_playlist("missing"))


def write_fake_yt_dlp(directory, body):
    """Writes an executable Python script that stands in for yt-dlp."""
    script = directory / "yt-dlp"
    script.write_text(f"#!{sys.executable}\nimport os, sys, time\n" + textwrap.dedent(body))
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return script


@pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX scripts and process groups")
class TestCancellation:
    """Test cancelling downloads that run real child processes."""

    def setup_method(self):
        self.events = []

    def test_cancel_during_metadata_fetch(self, store, tmp_path):
        marker = tmp_path / "download-started"
        script = write_fake_yt_dlp(tmp_path, f"""
            if '--print' in sys.argv:
                time.sleep(30)
                print('abc|Title|Chan|NA')
            else:
                open({str(marker)!r}, 'w').close()
        """)
        output_dir = tmp_path / "out"
        output_dir.mkdir()
        manager = DownloadManager(store, script, output_dir, runner=ProcessRunner(5),
                                  extractor=URLInfoExtractor(script))

        async def scenario():
            loop = asyncio.get_running_loop()
            cancel_event = asyncio.Event()
            loop.call_later(0.3, cancel_event.set)
            started = loop.time()
            with pytest.raises(DownloadCancelledError):
                await manager.download(VIDEO_URL, cancel_event=cancel_event)
            return loop.time() - started

        elapsed = asyncio.run(scenario())

        assert elapsed < 5
        assert not marker.exists()
        record = store.list_downloads()[0]
        assert record.status == "cancelled"
        assert record.error == "Download cancelled by user"

    def test_cancel_stops_running_download(self, store, tmp_path):
        script = write_fake_yt_dlp(tmp_path, """
            output = sys.argv[sys.argv.index('-o') + 1]
            directory = os.path.dirname(output)
            with open(os.path.join(directory, 'clip.mp4.part'), 'w') as partial:
                partial.write('x')
            print('[download] Destination: ' + os.path.join(directory, 'clip.mp4'), flush=True)
            print('[download]  10.0% of 1.00MiB at 1.00MiB/s ETA 00:09', flush=True)
            time.sleep(30)
        """)
        output_dir = tmp_path / "out"
        output_dir.mkdir()

        async def scenario():
            cancel_event = asyncio.Event()

            async def on_event(event):
                self.events.append(event)
                if event[0] == 'update_job' and event[1][1] == 'progress':
                    cancel_event.set()

            manager = DownloadManager(store, script, output_dir, runner=ProcessRunner(5),
                                      event_callback=on_event)
            loop = asyncio.get_running_loop()
            started = loop.time()
            with pytest.raises(DownloadCancelledError):
                await manager.download(VIDEO_URL, cancel_event=cancel_event)
            return loop.time() - started

        elapsed = asyncio.run(scenario())

        assert elapsed < 10
        assert list(output_dir.iterdir()) == []
        record = store.list_downloads()[0]
        assert record.status == "cancelled"
        assert record.title == "clip"
        assert record.file_path == ""
        assert self.events[-1] == ('done', (record.job_id, 'Cancelled'))

    def test_cancel_before_start_skips_process(self, store, tmp_path):
        extractor = AsyncMock()
        extractor.fetch_video_metadata.return_value = VideoInfo(VIDEO_URL, "abc", "Title")
        runner = FakeRunner()
        manager = DownloadManager(store, "yt-dlp", tmp_path, runner=runner, extractor=extractor)

        async def scenario():
            cancel_event = asyncio.Event()
            cancel_event.set()
            await manager.download(VIDEO_URL, cancel_event=cancel_event)

        with pytest.raises(DownloadCancelledError):
            asyncio.run(scenario())

        assert runner.commands == []
        assert store.list_downloads()[0].status == "cancelled"
