"""
FFmpeg process supervision.

ffmpeg writes status lines to stderr in this format:
    frame=  240 fps= 48 q=28.0 size=    1024kB time=00:00:10.00 bitrate= 838.9kbits/s

Those lines feed a best-effort progress estimate. The exit code alone
decides success.
"""
from __future__ import annotations

import logging
import re
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Sequence

from utils.ffmpeg_builder import format_command

logger = logging.getLogger(__name__)

PROGRESS_PATTERN = re.compile(r"frame=\s*(\d+)\s.*?fps=\s*([\d.]+)")

MAX_TAIL_LINES = 200
WATCHDOG_POLL_SECONDS = 0.25
PROGRESS_FLUSH_SECONDS = 1.0


class ProcessOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class ProcessResult:
    outcome: ProcessOutcome
    exit_code: int | None
    diagnostic_tail: str
    pid: int | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == ProcessOutcome.SUCCEEDED


@dataclass
class ProgressUpdate:
    frame: int
    fps: float
    total_frames: int | None = None
    percent: float | None = None
    eta_seconds: float | None = None


ProgressCallback = Callable[[ProgressUpdate], None]


class ProgressTracker:
    """
    Turns ffmpeg status lines into ``ProgressUpdate`` events.

    The remaining-time estimate uses the frame rate observed across the
    last ``window`` samples rather than the latest delta, which is noisy.
    """

    def __init__(
        self,
        total_frames: int | None = None,
        window: int = 10,
        callback: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total_frames = total_frames
        self.callback = callback
        self._clock = clock
        self._samples: deque[tuple[float, int]] = deque(maxlen=max(2, window))
        self.last_update: ProgressUpdate | None = None

    def parse_line(self, line: str) -> ProgressUpdate | None:
        match = PROGRESS_PATTERN.search(line)
        if not match:
            return None
        try:
            frame = int(match.group(1))
            fps = float(match.group(2))
        except ValueError:
            return None

        self._samples.append((self._clock(), frame))
        update = ProgressUpdate(frame=frame, fps=fps, total_frames=self.total_frames)
        if self.total_frames:
            update.percent = min(100.0, frame * 100.0 / self.total_frames)
            update.eta_seconds = self._estimate_remaining(frame)

        self.last_update = update
        if self.callback is not None:
            try:
                self.callback(update)
            except Exception as exc:
                logger.warning("Progress callback failed: %s", exc)
        return update

    def window_rate(self) -> float | None:
        if len(self._samples) < 2:
            return None
        first_time, first_frame = self._samples[0]
        last_time, last_frame = self._samples[-1]
        elapsed = last_time - first_time
        if elapsed <= 0 or last_frame <= first_frame:
            return None
        return (last_frame - first_frame) / elapsed

    def _estimate_remaining(self, frame: int) -> float | None:
        if not self.total_frames:
            return None
        remaining = self.total_frames - frame
        if remaining <= 0:
            return 0.0
        rate = self.window_rate()
        if not rate:
            return None
        return remaining / rate


class ProgressDispatcher:
    """
    Delivers progress updates to a callback on a separate thread.

    ``submit`` never blocks: only the newest undelivered update is kept, so
    a slow observer sees fewer updates instead of stalling the pipe reader.
    """

    def __init__(self, callback: ProgressCallback):
        self.callback = callback
        self._pending: ProgressUpdate | None = None
        self._closed = False
        self._abandoned = False
        self._condition = threading.Condition()
        self._thread = threading.Thread(
            target=self._deliver_loop, name="ffmpeg-progress", daemon=True
        )
        self._thread.start()

    def submit(self, update: ProgressUpdate) -> None:
        with self._condition:
            self._pending = update
            self._condition.notify()

    def close(self, timeout: float = PROGRESS_FLUSH_SECONDS) -> None:
        """Flush the last pending update, waiting at most ``timeout`` seconds."""
        with self._condition:
            self._closed = True
            self._condition.notify()
        self._thread.join(timeout)
        if self._thread.is_alive():
            with self._condition:
                self._abandoned = True
                self._pending = None
            logger.warning("Progress callback still running after %.1fs; detaching", timeout)

    def _deliver_loop(self) -> None:
        while True:
            with self._condition:
                while self._pending is None and not self._closed:
                    self._condition.wait()
                if self._abandoned or self._pending is None:
                    return
                update, self._pending = self._pending, None
            try:
                self.callback(update)
            except Exception as exc:
                logger.warning("Progress callback failed: %s", exc)


class FFmpegSupervisor:
    def __init__(self, tail_chars: int = 1500, progress_window: int = 10):
        self.tail_chars = tail_chars
        self.progress_window = progress_window

    def run(
        self,
        command: Sequence[str],
        *,
        timeout_seconds: float,
        cancel_event: threading.Event | None = None,
        total_frames: int | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> ProcessResult:
        cmd = list(command)
        logger.info("Executing FFmpeg...")
        logger.debug("Command: %s", format_command(cmd))

        started = time.monotonic()
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            logger.error("Failed to start FFmpeg: %s", exc)
            return ProcessResult(
                outcome=ProcessOutcome.FAILED,
                exit_code=None,
                diagnostic_tail=f"Failed to start {cmd[0]}: {exc}",
            )

        dispatcher = ProgressDispatcher(progress_callback) if progress_callback else None
        tracker = ProgressTracker(
            total_frames=total_frames,
            window=self.progress_window,
            callback=dispatcher.submit if dispatcher else None,
        )
        output_tail: deque[str] = deque(maxlen=MAX_TAIL_LINES)
        finished = threading.Event()
        stop_reason: list[ProcessOutcome] = []

        def _watchdog() -> None:
            deadline = started + timeout_seconds
            while not finished.is_set():
                if cancel_event is not None and cancel_event.is_set():
                    stop_reason.append(ProcessOutcome.CANCELLED)
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    stop_reason.append(ProcessOutcome.TIMED_OUT)
                    break
                finished.wait(min(remaining, WATCHDOG_POLL_SECONDS))
            else:
                return
            logger.warning(
                "Stopping FFmpeg pid=%s reason=%s", process.pid, stop_reason[0].value
            )
            process.kill()

        watchdog = threading.Thread(target=_watchdog, name="ffmpeg-watchdog", daemon=True)
        watchdog.start()

        try:
            if process.stdout is not None:
                for raw_line in process.stdout:
                    line = raw_line.strip()
                    if not line:
                        continue
                    output_tail.append(line[-self.tail_chars :])
                    tracker.parse_line(line)
            process.wait()
        finally:
            finished.set()
            if process.poll() is None:
                process.kill()
                process.wait()
            watchdog.join()
            if process.stdout is not None:
                process.stdout.close()
            duration = time.monotonic() - started
            if dispatcher is not None:
                dispatcher.close()

        tail_text = "\n".join(output_tail)[-self.tail_chars :]

        if process.returncode == 0:
            outcome = ProcessOutcome.SUCCEEDED
        elif stop_reason:
            outcome = stop_reason[0]
        else:
            outcome = ProcessOutcome.FAILED

        logger.info(
            "FFmpeg finished pid=%s outcome=%s code=%s duration=%.2fs",
            process.pid,
            outcome.value,
            process.returncode,
            duration,
        )
        if outcome != ProcessOutcome.SUCCEEDED and output_tail:
            logger.info("FFmpeg output (tail): %s", "\n".join(list(output_tail)[-20:]))

        return ProcessResult(
            outcome=outcome,
            exit_code=process.returncode,
            diagnostic_tail=tail_text,
            pid=process.pid,
            duration_seconds=duration,
        )
