"""Shared test fixtures: a simulated clock, an in-memory provider and build factories."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from imagepuppet.config import Settings
from imagepuppet.exceptions import ProviderUnavailable
from imagepuppet.models import (
    CommandOutput,
    Credentials,
    Frame,
    ProviderConfig,
    ProviderSession,
    Specification,
    Stage,
    StageKind,
)


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[[float], None]] = None

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds, cancel=None) -> None:
        if cancel is not None:
            cancel.check()
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep(self.now)
        if cancel is not None:
            cancel.check()


class FakeProvider:
    """In-memory provider recording every call made against it."""

    kind = "fake"

    def __init__(self, clock: Optional[FakeClock] = None, screen: Optional[Callable[[float], str]] = None) -> None:
        self.clock = clock or FakeClock()
        self.screen = screen or (lambda now: "")
        self.calls: List[tuple] = []
        self.exec_results: List = []
        self.copy_results: List = []
        self.unavailable: Optional[str] = None
        self.launch_error: Optional[Exception] = None
        self.on_launch: Optional[Callable[[], None]] = None
        self.shutdown_calls = 0
        self.frames = 0
        self._lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def check_available(self) -> None:
        if self.unavailable:
            raise ProviderUnavailable(self.unavailable)

    def launch(self, handle, config: ProviderConfig, cancel=None) -> ProviderSession:
        self._record("launch", handle.name)
        if self.on_launch is not None:
            self.on_launch()
        if cancel is not None:
            cancel.check()
        if self.launch_error is not None:
            raise self.launch_error
        handle.workdir.mkdir(parents=True, exist_ok=True)
        disk = handle.workdir / "disk.qcow2"
        disk.write_bytes(b"disk")
        return ProviderSession(session_id=f"fake-{handle.build_id}", ssh_port=2222, disk_path=disk)

    def send_key(self, handle, key, modifiers=(), repeat=1) -> None:
        self._record("send_key", key, tuple(modifiers), repeat)

    def send_text(self, handle, text) -> None:
        self._record("send_text", text)

    def capture_frame(self, handle) -> Frame:
        self.frames += 1
        return Frame(kind="text", data=self.screen(self.clock.now).encode())

    def mount_iso(self, handle, path) -> None:
        self._record("mount_iso", path)

    def ssh_endpoint(self, handle):
        return "127.0.0.1", 2222

    def exec_remote(self, handle, command, credentials, timeout) -> CommandOutput:
        self._record("exec_remote", command)
        if self.exec_results:
            outcome = self.exec_results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return CommandOutput(exit_status=0)

    def shutdown(self, handle) -> None:
        self._record("shutdown", handle.name)
        with self._lock:
            self.shutdown_calls += 1

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_provider(fake_clock) -> FakeProvider:
    return FakeProvider(clock=fake_clock)


@pytest.fixture
def settings() -> Settings:
    """Engine settings without per-action pauses."""
    return Settings(
        detect_interval=2.0,
        key_delay=0.0,
        action_delay=0.0,
        remote_attempts=3,
        remote_backoff=1.0,
        remote_backoff_max=4.0,
        shutdown_timeout=1.0,
    )


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(username="root", password="secret")


@pytest.fixture
def make_spec(credentials):
    """Build a Specification from per-stage action tuples."""

    def _make(name: str = "test-build", with_login: bool = True, **stages) -> Specification:
        return Specification(
            name=name,
            stages=tuple(Stage(kind=StageKind(kind), actions=tuple(actions)) for kind, actions in stages.items()),
            provider=ProviderConfig(kind="fake", stage_timeout=1800.0),
            credentials=credentials if with_login else None,
        )

    return _make


# All environment variables the config layer reads; cleared for isolation.
_ENV_VARS = [
    "PUPPET_PROVIDER",
    "MEMORY",
    "CPUS",
    "DISK_SIZE",
    "DETECT_INTERVAL",
    "OCR_THRESHOLD",
    "KEY_DELAY",
    "ACTION_DELAY",
    "REMOTE_ATTEMPTS",
    "REMOTE_BACKOFF",
    "REMOTE_BACKOFF_MAX",
    "SHUTDOWN_TIMEOUT",
    "BUILD_WORKERS",
    "SAVE_FRAMES",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in _ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


@pytest.fixture
def workdir(tmp_path) -> Path:
    path = tmp_path / "builds"
    path.mkdir()
    return path
