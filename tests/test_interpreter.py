"""Tests for imagepuppet.interpreter module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from imagepuppet.detector import Detector
from imagepuppet.exceptions import (
    BuildCancelled,
    ChannelError,
    DetectionTimeout,
    RemoteChannelExhausted,
    RemoteCommandFailure,
    StageTimeout,
    TransientChannelError,
)
from imagepuppet.interpreter import ActionInterpreter, InterpreterState
from imagepuppet.models import (
    CommandOutput,
    CopyAck,
    Copy,
    Mount,
    Press,
    Run,
    Stage,
    StageKind,
    Type,
    VMHandle,
    Wait,
    WaitFor,
)
from imagepuppet.remote import RemoteExecutor
from imagepuppet.runtime import CancelToken
from imagepuppet.status import ProgressReporter


@pytest.fixture
def handle(tmp_path):
    return VMHandle(build_id="b1", name="vm", provider_kind="fake", workdir=tmp_path)


def _interpreter(handle, provider, clock, settings, credentials, cancel=None, remote=None, reporter=None):
    cancel = cancel or CancelToken()
    return ActionInterpreter(
        handle,
        provider,
        Detector(provider, clock=clock, cancel=cancel, interval=settings.detect_interval),
        remote or RemoteExecutor(provider, credentials),
        settings=settings,
        clock=clock,
        cancel=cancel,
        reporter=reporter,
    )


class TestSequencing:
    def test_install_scenario_timing(self, handle, fake_provider, fake_clock, settings, credentials):
        # The login prompt shows up 120s after the pattern wait begins.
        fake_provider.screen = lambda now: "ubuntu login:" if now >= 150 else "Installing system"
        stage = Stage(StageKind.INSTALL, (Wait(30), Press("enter"), WaitFor("login", 300)))
        interp = _interpreter(handle, fake_provider, fake_clock, settings, credentials)

        result = interp.run_stage(stage)

        assert len(result.detections) == 1
        assert result.detections[0].elapsed == pytest.approx(120, abs=settings.detect_interval)
        assert result.elapsed == pytest.approx(150, abs=settings.detect_interval)
        assert result.actions_run == 3
        assert interp.state == InterpreterState.COMPLETED

    def test_actions_dispatch_in_order(self, handle, fake_provider, fake_clock, settings, credentials):
        stage = Stage(
            StageKind.CONFIGURE,
            (
                Press("down", repeat=3),
                Type("root\n"),
                Mount(Path("/isos/drivers.iso")),
                Run("echo hi"),
                Press("delete", modifiers=("ctrl", "alt")),
            ),
        )
        _interpreter(handle, fake_provider, fake_clock, settings, credentials).run_stage(stage)
        assert fake_provider.calls == [
            ("send_key", "down", (), 3),
            ("send_text", "root\n"),
            ("mount_iso", Path("/isos/drivers.iso")),
            ("exec_remote", "echo hi"),
            ("send_key", "delete", ("ctrl", "alt"), 1),
        ]

    def test_next_action_waits_for_previous(self, handle, fake_clock, settings, credentials):
        order = []
        provider = MagicMock()
        provider.send_key.side_effect = lambda *a, **kw: order.append(("key", fake_clock.now))
        provider.send_text.side_effect = lambda *a, **kw: order.append(("text", fake_clock.now))
        stage = Stage(StageKind.INSTALL, (Press("enter"), Wait(5), Type("x")))
        _interpreter(handle, provider, fake_clock, settings, credentials).run_stage(stage)
        assert order == [("key", 0.0), ("text", 5.0)]

    def test_progress_events(self, handle, fake_provider, fake_clock, settings, credentials):
        events = []
        reporter = ProgressReporter("b1", [events.append])
        stage = Stage(StageKind.INSTALL, (Wait(1),))
        _interpreter(handle, fake_provider, fake_clock, settings, credentials, reporter=reporter).run_stage(stage)
        assert [(e.kind, e.action_index) for e in events] == [("action_started", 0), ("action_finished", 0)]

    def test_detection_events(self, handle, fake_provider, fake_clock, settings, credentials):
        events = []
        reporter = ProgressReporter("b1", [events.append])
        fake_provider.screen = lambda now: "login:" if now >= 6 else "booting"
        stage = Stage(StageKind.INSTALL, (WaitFor("login", 30), WaitFor("never", 4, optional=True)))
        _interpreter(handle, fake_provider, fake_clock, settings, credentials, reporter=reporter).run_stage(stage)
        detections = [e for e in events if e.kind.startswith("detection_")]
        assert [(e.kind, e.action_index) for e in detections] == [
            ("detection_matched", 0),
            ("detection_timed_out", 1),
        ]
        assert "'login' after 6.0s" in detections[0].detail
        assert "confidence" in detections[0].detail
        assert detections[0].stage == "install"
        assert "'never'" in detections[1].detail

    def test_command_events_carry_exit_status(self, handle, fake_provider, fake_clock, settings, credentials):
        events = []
        reporter = ProgressReporter("b1", [events.append])
        fake_provider.exec_results = [CommandOutput(exit_status=0), CommandOutput(exit_status=3)]
        stage = Stage(StageKind.CONFIGURE, (Run("true"), Run("false", best_effort=True)))
        _interpreter(handle, fake_provider, fake_clock, settings, credentials, reporter=reporter).run_stage(stage)
        finished = [(e.action_index, e.detail) for e in events if e.kind == "command_finished"]
        assert finished == [(0, "exit status 0"), (1, "exit status 3")]


class TestFailures:
    def test_detection_timeout_is_fatal_and_annotated(self, handle, fake_provider, fake_clock, settings, credentials):
        stage = Stage(StageKind.INSTALL, (Press("enter"), WaitFor("never", 10), Press("enter")))
        interp = _interpreter(handle, fake_provider, fake_clock, settings, credentials)
        with pytest.raises(DetectionTimeout) as exc:
            interp.run_stage(stage)
        assert (exc.value.stage, exc.value.action_index, exc.value.component) == ("install", 1, "detector")
        assert fake_provider.call_names() == ["send_key"]
        assert interp.state == InterpreterState.FAILED

    def test_optional_wait_for_becomes_warning(self, handle, fake_provider, fake_clock, settings, credentials):
        stage = Stage(StageKind.INSTALL, (WaitFor("never", 4, optional=True), Press("enter")))
        result = _interpreter(handle, fake_provider, fake_clock, settings, credentials).run_stage(stage)
        assert len(result.warnings) == 1
        assert "never" in result.warnings[0]
        assert fake_provider.call_names() == ["send_key"]

    def test_non_zero_exit_is_fatal(self, handle, fake_provider, fake_clock, settings, credentials):
        fake_provider.exec_results = [CommandOutput(exit_status=1, stderr="boom")]
        stage = Stage(StageKind.CONFIGURE, (Run("exit 1"), Run("echo never")))
        with pytest.raises(RemoteCommandFailure) as exc:
            _interpreter(handle, fake_provider, fake_clock, settings, credentials).run_stage(stage)
        assert exc.value.exit_status == 1
        assert exc.value.component == "remote"
        assert fake_provider.call_names() == ["exec_remote"]

    def test_best_effort_failure_is_warning(self, handle, fake_provider, fake_clock, settings, credentials):
        fake_provider.exec_results = [CommandOutput(exit_status=2)]
        stage = Stage(StageKind.CONFIGURE, (Run("false", best_effort=True), Run("true")))
        result = _interpreter(handle, fake_provider, fake_clock, settings, credentials).run_stage(stage)
        assert result.actions_run == 2
        assert "status 2" in result.warnings[0]

    def test_channel_error_on_keys_not_retried(self, handle, fake_clock, settings, credentials):
        provider = MagicMock()
        provider.send_key.side_effect = ChannelError("monitor closed")
        stage = Stage(StageKind.INSTALL, (Press("enter"),))
        with pytest.raises(ChannelError):
            _interpreter(handle, provider, fake_clock, settings, credentials).run_stage(stage)
        assert provider.send_key.call_count == 1

    def test_stage_deadline_checked_between_actions(self, handle, fake_provider, fake_clock, settings, credentials):
        stage = Stage(StageKind.INSTALL, (Wait(10), Press("enter")))
        with pytest.raises(StageTimeout) as exc:
            _interpreter(handle, fake_provider, fake_clock, settings, credentials).run_stage(stage, deadline=5)
        assert exc.value.action_index == 1
        assert fake_provider.calls == []

    def test_stage_deadline_caps_wait_for(self, handle, fake_provider, fake_clock, settings, credentials):
        stage = Stage(StageKind.INSTALL, (WaitFor("never", 300),))
        with pytest.raises(DetectionTimeout):
            _interpreter(handle, fake_provider, fake_clock, settings, credentials).run_stage(stage, deadline=20)
        assert fake_clock.now == pytest.approx(20)


class TestRetry:
    def test_transient_then_success(self, handle, fake_provider, fake_clock, settings, credentials):
        fake_provider.exec_results = [
            TransientChannelError("connection refused"),
            TransientChannelError("connection refused"),
            CommandOutput(exit_status=0, stdout="ok"),
        ]
        stage = Stage(StageKind.CONFIGURE, (Run("uname"),))
        result = _interpreter(handle, fake_provider, fake_clock, settings, credentials).run_stage(stage)
        assert result.actions_run == 1
        assert fake_provider.call_names() == ["exec_remote"] * 3
        assert len(fake_clock.sleeps) == 2

    def test_exhaustion_is_fatal_channel_variant(self, handle, fake_provider, fake_clock, settings, credentials):
        fake_provider.exec_results = [TransientChannelError("refused")] * settings.remote_attempts
        stage = Stage(StageKind.CONFIGURE, (Run("uname", best_effort=True),))
        with pytest.raises(RemoteChannelExhausted) as exc:
            _interpreter(handle, fake_provider, fake_clock, settings, credentials).run_stage(stage)
        assert isinstance(exc.value, RemoteCommandFailure)
        assert exc.value.attempts == settings.remote_attempts
        assert len(fake_provider.calls) == settings.remote_attempts

    def test_backoff_is_bounded(self, handle, fake_provider, fake_clock, settings, credentials):
        fake_provider.exec_results = [TransientChannelError("refused")] * settings.remote_attempts
        stage = Stage(StageKind.CONFIGURE, (Run("uname"),))
        with pytest.raises(RemoteChannelExhausted):
            _interpreter(handle, fake_provider, fake_clock, settings, credentials).run_stage(stage)
        assert all(0 < delay <= settings.remote_backoff_max for delay in fake_clock.sleeps)

    def test_copy_retries_transient(self, handle, fake_clock, settings, credentials, tmp_path):
        remote = MagicMock()
        remote.copy.side_effect = [TransientChannelError("banner"), CopyAck("/root/x", 3)]
        source = tmp_path / "x"
        source.write_text("abc")
        stage = Stage(StageKind.CONFIGURE, (Copy(source, "/root/x"),))
        interp = _interpreter(handle, MagicMock(), fake_clock, settings, credentials, remote=remote)
        interp.run_stage(stage)
        assert remote.copy.call_count == 2

    def test_cancel_during_backoff(self, handle, fake_provider, fake_clock, settings, credentials):
        cancel = CancelToken()
        fake_clock.on_sleep = lambda now: cancel.cancel()
        fake_provider.exec_results = [TransientChannelError("refused")] * settings.remote_attempts
        stage = Stage(StageKind.CONFIGURE, (Run("uname"),))
        with pytest.raises(BuildCancelled):
            _interpreter(handle, fake_provider, fake_clock, settings, credentials, cancel=cancel).run_stage(stage)
        assert fake_provider.call_names() == ["exec_remote"]


class TestCancellation:
    def test_cancel_during_wait_stops_actions(self, handle, fake_provider, fake_clock, settings, credentials):
        cancel = CancelToken()
        fake_clock.on_sleep = lambda now: cancel.cancel()
        stage = Stage(StageKind.INSTALL, (Wait(30), Press("enter")))
        with pytest.raises(BuildCancelled) as exc:
            _interpreter(handle, fake_provider, fake_clock, settings, credentials, cancel=cancel).run_stage(stage)
        assert exc.value.action_index == 0
        assert fake_provider.calls == []
