"""Action interpreter: plays back one stage's actions against a VM."""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional, TypeVar

try:
    from tenacity import (  # type: ignore
        RetryCallState,
        RetryError,
        Retrying,
        retry_if_exception_type,
        stop_after_attempt,
        wait_exponential,
    )
except ImportError as exc:  # pragma: no cover
    raise SystemExit("tenacity is required but not installed") from exc

from imagepuppet.config import Settings
from imagepuppet.exceptions import (
    DetectionTimeout,
    PuppetError,
    RemoteChannelExhausted,
    RemoteCommandFailure,
    StageTimeout,
    TransientChannelError,
)
from imagepuppet.models import (
    Action,
    Copy,
    Mount,
    Press,
    Run,
    Stage,
    StageResult,
    Type,
    VMHandle,
    Wait,
    WaitFor,
    describe_action,
)
from imagepuppet.runtime import CancelToken, SystemClock
from imagepuppet.status import ProgressReporter
from imagepuppet.utils import log

T = TypeVar("T")

_COMPONENTS = {
    Wait: "interpreter",
    Press: "provider",
    Type: "provider",
    Mount: "provider",
    WaitFor: "detector",
    Run: "remote",
    Copy: "remote",
}


class InterpreterState(str, Enum):
    IDLE = "idle"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class ActionInterpreter:
    """Executes actions strictly in order; action N+1 starts only after N returned."""

    def __init__(
        self,
        handle: VMHandle,
        provider,
        detector,
        remote,
        settings: Optional[Settings] = None,
        clock=None,
        cancel: Optional[CancelToken] = None,
        reporter: Optional[ProgressReporter] = None,
    ) -> None:
        self.handle = handle
        self.provider = provider
        self.detector = detector
        self.remote = remote
        self.settings = settings or Settings()
        self.clock = clock or SystemClock()
        self.cancel = cancel or CancelToken()
        self.reporter = reporter or ProgressReporter(handle.build_id)
        self.state = InterpreterState.IDLE
        self.position: Optional[int] = None

    def run_stage(self, stage: Stage, deadline: Optional[float] = None) -> StageResult:
        """Run every action of ``stage``; ``deadline`` is an absolute clock reading."""
        name = stage.kind.value
        result = StageResult(kind=stage.kind)
        started = self.clock.monotonic()
        self.state = InterpreterState.EXECUTING
        for index, action in enumerate(stage.actions):
            self.position = index
            try:
                self.cancel.check()
                if deadline is not None and self.clock.monotonic() >= deadline:
                    raise StageTimeout(f"Stage '{name}' exceeded its time budget before action {index}")
                self.reporter.emit("action_started", name, index, describe_action(action))
                self._execute(action, result, deadline)
                result.actions_run += 1
                self.reporter.emit("action_finished", name, index, describe_action(action))
                if self.settings.action_delay > 0:
                    self.clock.sleep(self.settings.action_delay, self.cancel)
            except PuppetError as exc:
                self.state = InterpreterState.FAILED
                result.elapsed = self.clock.monotonic() - started
                raise exc.annotate(stage=name, action_index=index, component=_COMPONENTS.get(type(action)))
        self.state = InterpreterState.COMPLETED
        result.elapsed = self.clock.monotonic() - started
        return result

    def _emit(self, result: StageResult, kind: str, detail: str) -> None:
        self.reporter.emit(kind, result.kind.value, self.position, detail)

    def _warn(self, result: StageResult, message: str) -> None:
        log("WARN", f"[{self.handle.build_id}] {message}")
        result.warnings.append(message)
        self.reporter.emit("warning", result.kind.value, self.position, message)

    def _execute(self, action: Action, result: StageResult, deadline: Optional[float]) -> None:
        if isinstance(action, Wait):
            self.clock.sleep(action.duration, self.cancel)
        elif isinstance(action, Press):
            self.provider.send_key(self.handle, action.key, action.modifiers, action.repeat)
        elif isinstance(action, Type):
            self.provider.send_text(self.handle, action.text)
        elif isinstance(action, Mount):
            self.provider.mount_iso(self.handle, action.path)
        elif isinstance(action, WaitFor):
            timeout = action.timeout
            if deadline is not None:
                timeout = min(timeout, max(0.0, deadline - self.clock.monotonic()))
            try:
                event = self.detector.wait_for(self.handle, action.pattern, timeout)
            except DetectionTimeout as exc:
                self._emit(result, "detection_timed_out", f"'{action.pattern}' not seen within {timeout:g}s")
                if not action.optional:
                    raise
                self._warn(result, f"Optional wait skipped: {exc}")
                return
            log("SUCCESS", f"[{self.handle.build_id}] Detected '{action.pattern}' after {event.elapsed:.1f}s")
            self._emit(
                result,
                "detection_matched",
                f"'{event.pattern}' after {event.elapsed:.1f}s (confidence {event.confidence:.2f})",
            )
            result.detections.append(event)
        elif isinstance(action, Run):
            try:
                output = self._with_retry(
                    lambda: self.remote.exec(self.handle, action.command, action.timeout),
                    describe_action(action),
                )
            except RemoteChannelExhausted:
                raise
            except RemoteCommandFailure as exc:
                if exc.exit_status is not None:
                    self._emit(result, "command_finished", f"exit status {exc.exit_status}")
                if not action.best_effort:
                    raise
                self._warn(result, f"Best-effort command failed: {exc}")
                return
            self._emit(result, "command_finished", f"exit status {output.exit_status}")
            if output.stdout.strip():
                log("DEBUG", output.stdout.rstrip())
        elif isinstance(action, Copy):
            try:
                self._with_retry(
                    lambda: self.remote.copy(self.handle, action.source, action.destination, action.permissions),
                    describe_action(action),
                )
            except RemoteChannelExhausted:
                raise
            except RemoteCommandFailure as exc:
                if not action.best_effort:
                    raise
                self._warn(result, f"Best-effort copy failed: {exc}")
        else:
            raise PuppetError(f"Unsupported action {action!r}", component="interpreter")

    def _backoff_sleep(self, seconds: float) -> None:
        self.clock.sleep(seconds, self.cancel)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        log(
            "WARN",
            f"[{self.handle.build_id}] Remote channel not ready "
            f"(attempt {retry_state.attempt_number}/{self.settings.remote_attempts}): {exc}; "
            f"retrying in {wait:.1f}s",
        )

    def _with_retry(self, call: Callable[[], T], description: str) -> T:
        """Retry ``call`` on TransientChannelError with bounded exponential backoff."""
        retryer = Retrying(
            stop=stop_after_attempt(self.settings.remote_attempts),
            wait=wait_exponential(multiplier=self.settings.remote_backoff, max=self.settings.remote_backoff_max),
            retry=retry_if_exception_type(TransientChannelError),
            sleep=self._backoff_sleep,
            before_sleep=self._log_retry,
        )
        try:
            return retryer(call)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            attempts = exc.last_attempt.attempt_number
            raise RemoteChannelExhausted(
                f"Remote channel unavailable for {description} after {attempts} attempts: {last}",
                attempts=attempts,
            ) from last
