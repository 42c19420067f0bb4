"""Screen/state detector: polls VM frames until a pattern shows up."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from imagepuppet.constants import DEFAULT_DETECT_INTERVAL, DEFAULT_OCR_THRESHOLD
from imagepuppet.exceptions import DetectionTimeout
from imagepuppet.models import DetectionEvent, Frame, VMHandle
from imagepuppet.recognition import RecognitionError, recognizer_for
from imagepuppet.runtime import CancelToken, SystemClock
from imagepuppet.utils import ensure_directory, log


def frame_extension(frame: Frame) -> str:
    if frame.kind == "text":
        return "txt"
    if frame.data.startswith(b"\x89PNG"):
        return "png"
    if frame.data[:2] in (b"P3", b"P6"):
        return "ppm"
    return "bin"


def output_since(frame: Frame, offset: int) -> Frame:
    """Keep only the part of a stream frame written after byte ``offset``."""
    fresh = frame.stream_end - offset
    if fresh >= len(frame.data):
        return frame
    data = frame.data[len(frame.data) - fresh:] if fresh > 0 else b""
    return Frame(kind=frame.kind, data=data, captured_at=frame.captured_at, stream_end=frame.stream_end)


class Detector:
    """Fixed-interval poll loop over ``provider.capture_frame``.

    At least one sample is taken even for a zero timeout. Elapsed time is
    measured from the start of ``wait_for`` and the final sleep is clipped
    to the remaining budget, so a timeout is reported within one interval
    of the bound. Channel errors from the provider propagate; unreadable
    frames only count as a non-matching sample.

    Stream frames (serial console) are matched only against output written
    after the wait began; the first sample fixes that starting offset.
    """

    def __init__(
        self,
        provider,
        clock=None,
        cancel: Optional[CancelToken] = None,
        interval: float = DEFAULT_DETECT_INTERVAL,
        threshold: float = DEFAULT_OCR_THRESHOLD,
        ocr: Optional[Callable[[bytes], str]] = None,
        frames_dir: Optional[Path] = None,
    ) -> None:
        self.provider = provider
        self.clock = clock or SystemClock()
        self.cancel = cancel
        self.interval = interval
        self.threshold = threshold
        self.ocr = ocr
        self.frames_dir = frames_dir
        self._waits = 0

    def _save_frame(self, frame: Frame, label: str) -> None:
        if self.frames_dir is None:
            return
        path = self.frames_dir / f"waitfor-{self._waits:03d}-{label}.{frame_extension(frame)}"
        try:
            ensure_directory(self.frames_dir)
            path.write_bytes(frame.data)
        except OSError:
            return
        log("DEBUG", f"Saved frame {path}")

    def wait_for(self, handle: VMHandle, pattern: str, timeout: float) -> DetectionEvent:
        self._waits += 1
        start = self.clock.monotonic()
        deadline = start + timeout
        recognizer = None
        recognizer_kind = None
        samples = 0
        last_frame: Optional[Frame] = None
        baseline: Optional[int] = None
        log("DEBUG", f"Waiting up to {timeout:g}s for '{pattern}'")

        while True:
            if self.cancel is not None:
                self.cancel.check()
            frame = self.provider.capture_frame(handle)
            samples += 1
            if frame.stream_end is not None:
                if baseline is None:
                    baseline = frame.stream_end
                elif frame.stream_end < baseline:
                    # Log was truncated or recreated; all of it is new.
                    baseline = 0
                frame = output_since(frame, baseline)
            last_frame = frame
            if recognizer is None or recognizer_kind != frame.kind:
                recognizer = recognizer_for(pattern, frame.kind, threshold=self.threshold, ocr=self.ocr)
                recognizer_kind = frame.kind
            try:
                matches = recognizer.recognize(frame)
            except RecognitionError as exc:
                log("WARN", f"Unreadable frame while waiting for '{pattern}': {exc}")
                matches = []

            now = self.clock.monotonic()
            if matches:
                best = max(matches, key=lambda match: match.confidence)
                self._save_frame(frame, "match")
                return DetectionEvent(
                    pattern=pattern,
                    elapsed=now - start,
                    confidence=best.confidence,
                    samples=samples,
                    matched_text=best.text,
                )

            remaining = deadline - now
            if remaining <= 0:
                if last_frame is not None:
                    self._save_frame(last_frame, "timeout")
                raise DetectionTimeout(
                    f"'{pattern}' not seen within {timeout:g}s ({samples} samples)",
                    pattern=pattern,
                    elapsed=now - start,
                    samples=samples,
                )
            self.clock.sleep(min(self.interval, remaining), self.cancel)
