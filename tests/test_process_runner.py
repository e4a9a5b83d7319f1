import asyncio
import sys

import pytest

from ytdlp_wrapper.exceptions import DownloadCancelledError, ProcessExitError, ProcessStartError
from ytdlp_wrapper.process_runner import ProcessRunner


def python_command(code):
    return [sys.executable, "-u", "-c", code]


class TestProcessRunner:
    """Test running real child processes."""

    def setup_method(self):
        self.runner = ProcessRunner(termination_grace_period=5)
        self.lines = []

    def test_collects_both_streams(self):
        code = "import sys; print('out1'); print('err1', file=sys.stderr); print('out2')"
        result = asyncio.run(self.runner.run(python_command(code), self.lines.append))

        assert result.returncode == 0
        assert sorted(self.lines) == ["err1", "out1", "out2"]
        assert self.lines.index("out1") < self.lines.index("out2")

    def test_async_handler(self):
        async def handler(line):
            await asyncio.sleep(0)
            self.lines.append(line.upper())

        asyncio.run(self.runner.run(python_command("print('hello')"), handler))
        assert self.lines == ["HELLO"]

    def test_non_zero_exit_reports_error_line(self):
        code = "import sys; print('ERROR: boom', file=sys.stderr); print('trailing', file=sys.stderr); sys.exit(2)"
        with pytest.raises(ProcessExitError) as exc_info:
            asyncio.run(self.runner.run(python_command(code), self.lines.append))

        assert exc_info.value.returncode == 2
        assert exc_info.value.last_error == "boom"
        assert "boom" in str(exc_info.value)

    def test_non_zero_exit_falls_back_to_last_stderr_line(self):
        code = "import sys; print('bad thing', file=sys.stderr); sys.exit(1)"
        with pytest.raises(ProcessExitError) as exc_info:
            asyncio.run(self.runner.run(python_command(code), self.lines.append))
        assert exc_info.value.last_error == "bad thing"

    def test_missing_executable(self):
        with pytest.raises(ProcessStartError):
            asyncio.run(self.runner.run(["/nonexistent/yt-dlp-binary", "--version"], self.lines.append))

    @pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX process groups")
    def test_cancellation_terminates_process(self):
        code = "import time; print('started'); time.sleep(60)"

        async def scenario():
            cancel_event = asyncio.Event()

            def handler(line):
                self.lines.append(line)
                if line == "started":
                    cancel_event.set()

            started = asyncio.get_running_loop().time()
            with pytest.raises(DownloadCancelledError):
                await self.runner.run(python_command(code), handler, cancel_event)
            return asyncio.get_running_loop().time() - started

        elapsed = asyncio.run(scenario())
        assert self.lines[0] == "started"
        assert elapsed < 30

    def test_unset_cancel_event_does_not_interfere(self):
        async def scenario():
            return await self.runner.run(python_command("print('done')"), self.lines.append, asyncio.Event())

        result = asyncio.run(scenario())
        assert result.returncode == 0
        assert self.lines == ["done"]

    def test_handler_calls_do_not_overlap(self):
        code = ("import sys\n"
                "for i in range(50):\n"
                "    print(f'o{i}')\n"
                "    print(f'e{i}', file=sys.stderr)\n")
        active = []
        overlaps = []

        async def handler(line):
            if active:
                overlaps.append(line)
            active.append(line)
            await asyncio.sleep(0)
            active.pop()
            self.lines.append(line)

        asyncio.run(self.runner.run(python_command(code), handler))
        assert overlaps == []
        assert len(self.lines) == 100
        assert [l for l in self.lines if l.startswith("o")] == [f"o{i}" for i in range(50)]

    @pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX process groups")
    def test_clean_exit_is_not_reported_as_cancelled(self):
        async def scenario():
            cancel_event = asyncio.Event()

            async def handler(line):
                self.lines.append(line)
                await asyncio.sleep(0.5)
                cancel_event.set()

            return await self.runner.run(python_command("print('done')"), handler, cancel_event)

        result = asyncio.run(scenario())
        assert result.returncode == 0
        assert self.lines == ["done"]
