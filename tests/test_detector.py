"""Tests for imagepuppet.detector module."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from imagepuppet.detector import Detector, frame_extension, output_since
from imagepuppet.exceptions import BuildCancelled, ChannelError, DetectionTimeout
from imagepuppet.models import Frame, VMHandle
from imagepuppet.provider import read_serial_frame
from imagepuppet.runtime import CancelToken


@pytest.fixture
def handle(tmp_path):
    return VMHandle(build_id="b1", name="vm", provider_kind="fake", workdir=tmp_path)


class TestWaitFor:
    def test_detects_within_one_interval_of_appearance(self, fake_clock, fake_provider, handle):
        fake_provider.screen = lambda now: "debian login:" if now >= 121 else "Installing"
        detector = Detector(fake_provider, clock=fake_clock, interval=2.0)

        event = detector.wait_for(handle, "login:", 300)

        assert 121 <= event.elapsed <= 121 + 2.0
        assert event.pattern == "login:"
        assert event.confidence == 1.0
        assert event.samples == fake_provider.frames

    def test_immediate_match_takes_one_sample(self, fake_clock, fake_provider, handle):
        fake_provider.screen = lambda now: "login:"
        event = Detector(fake_provider, clock=fake_clock).wait_for(handle, "login", 10)
        assert event.samples == 1
        assert event.elapsed == 0
        assert fake_clock.sleeps == []

    def test_timeout_at_bound(self, fake_clock, fake_provider, handle):
        detector = Detector(fake_provider, clock=fake_clock, interval=2.0)
        with pytest.raises(DetectionTimeout) as exc:
            detector.wait_for(handle, "never", 7)
        assert exc.value.elapsed == pytest.approx(7)
        assert exc.value.pattern == "never"
        # sleeps are clipped to the remaining budget
        assert fake_clock.sleeps == [2.0, 2.0, 2.0, 1.0]

    def test_zero_timeout_still_samples_once(self, fake_clock, fake_provider, handle):
        with pytest.raises(DetectionTimeout):
            Detector(fake_provider, clock=fake_clock).wait_for(handle, "x", 0)
        assert fake_provider.frames == 1

    def test_channel_error_propagates(self, fake_clock, handle):
        provider = MagicMock()
        provider.capture_frame.side_effect = ChannelError("monitor gone")
        with pytest.raises(ChannelError):
            Detector(provider, clock=fake_clock).wait_for(handle, "login", 30)

    def test_unreadable_frames_count_as_no_match(self, fake_clock, handle):
        provider = MagicMock()
        provider.capture_frame.return_value = Frame(kind="image", data=b"garbage")
        detector = Detector(provider, clock=fake_clock, interval=5.0)
        with pytest.raises(DetectionTimeout) as exc:
            detector.wait_for(handle, "login", 10)
        assert exc.value.samples == 3

    def test_cancellation_stops_polling(self, fake_clock, fake_provider, handle):
        cancel = CancelToken()
        fake_clock.on_sleep = lambda now: cancel.cancel() if now >= 10 else None
        detector = Detector(fake_provider, clock=fake_clock, cancel=cancel, interval=2.0)
        with pytest.raises(BuildCancelled):
            detector.wait_for(handle, "login", 300)
        assert fake_provider.frames == 5

    def test_saves_matching_frame(self, fake_clock, fake_provider, handle, tmp_path):
        fake_provider.screen = lambda now: "login:"
        frames = tmp_path / "frames"
        Detector(fake_provider, clock=fake_clock, frames_dir=frames).wait_for(handle, "login", 5)
        saved = list(frames.iterdir())
        assert [p.name for p in saved] == ["waitfor-001-match.txt"]
        assert saved[0].read_text() == "login:"


class TestSerialStream:
    @pytest.fixture
    def serial(self, tmp_path):
        log = tmp_path / "serial.log"
        log.write_bytes(b"live login: \nrebooting...\n")
        provider = MagicMock()
        provider.capture_frame.side_effect = lambda handle: read_serial_frame(log)
        return log, provider

    def test_output_before_wait_is_ignored(self, fake_clock, handle, serial):
        log, provider = serial
        with pytest.raises(DetectionTimeout):
            Detector(provider, clock=fake_clock, interval=2.0).wait_for(handle, "login:", 10)

    def test_prompt_written_during_wait_matches(self, fake_clock, handle, serial):
        log, provider = serial

        def boot(now):
            if now == 6:
                with open(log, "ab") as stream:
                    stream.write(b"debian login: ")

        fake_clock.on_sleep = boot
        event = Detector(provider, clock=fake_clock, interval=2.0).wait_for(handle, "login:", 30)
        assert event.elapsed == 6
        assert event.matched_text == "login:"

    def test_truncated_log_counts_as_new(self, fake_clock, handle, serial):
        log, provider = serial
        fake_clock.on_sleep = lambda now: log.write_bytes(b"login: ")
        event = Detector(provider, clock=fake_clock, interval=2.0).wait_for(handle, "login:", 30)
        assert event.elapsed == 2

    def test_output_since(self):
        frame = Frame(kind="text", data=b"abcdef", stream_end=100)
        assert output_since(frame, 97).data == b"def"
        assert output_since(frame, 100).data == b""
        assert output_since(frame, 10).data == b"abcdef"


class TestFrameExtension:
    def test_kinds(self):
        assert frame_extension(Frame("text", b"x")) == "txt"
        assert frame_extension(Frame("image", b"\x89PNG....")) == "png"
        assert frame_extension(Frame("image", b"P6\n640 480\n255\n")) == "ppm"
