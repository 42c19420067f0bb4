"""Stage pipeline controller: owns one VM session per build."""

from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from imagepuppet.config import Settings
from imagepuppet.constants import STATE_DIR, WORK_DIR
from imagepuppet.detector import Detector
from imagepuppet.exceptions import BuildCancelled, PuppetError
from imagepuppet.interpreter import ActionInterpreter
from imagepuppet.models import (
    BuildResult,
    Specification,
    Stage,
    StageKind,
    StageResult,
    VMHandle,
    VMState,
)
from imagepuppet.packaging import HandoffPackager
from imagepuppet.provider import create_provider
from imagepuppet.remote import RemoteExecutor
from imagepuppet.runtime import CancelToken, SystemClock
from imagepuppet.status import Listener, ProgressReporter, SessionRecorder, log_listener
from imagepuppet.utils import log, sanitize_name


def new_build_id() -> str:
    return uuid.uuid4().hex[:12]


def _unexpected(exc: Exception, stage: Optional[str] = None, component: str = "controller") -> PuppetError:
    """Wrap an exception from outside the PuppetError hierarchy so one build fails alone."""
    error = PuppetError(f"Unexpected {type(exc).__name__}: {exc}", stage=stage, component=component)
    error.__cause__ = exc
    return error


class BuildController:
    """Runs init, install, configure and pack in that order against a single VM.

    The controller is the only component that changes ``VMHandle.state``.
    Whatever happens after launch, the provider's ``shutdown`` is called
    exactly once.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        provider=None,
        provider_factory: Callable = create_provider,
        packager=None,
        clock=None,
        cancel: Optional[CancelToken] = None,
        workdir: Optional[Path] = None,
        state_dir: Optional[Path] = None,
        listeners: Iterable[Listener] = (log_listener,),
        build_id: Optional[str] = None,
        ocr: Optional[Callable[[bytes], str]] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.provider = provider
        self.provider_factory = provider_factory
        self.packager = packager or HandoffPackager()
        self.clock = clock or SystemClock()
        self.cancel = cancel or CancelToken()
        self.workdir = workdir or WORK_DIR
        self.state_dir = state_dir or STATE_DIR
        self.build_id = build_id or new_build_id()
        self.ocr = ocr
        self.reporter = ProgressReporter(self.build_id, listeners)
        self.handle: Optional[VMHandle] = None
        self._shutdown_lock = threading.Lock()
        self._shutdown_issued = False

    def _tag(self, message: str) -> str:
        return f"[{self.build_id}] {message}"

    def run(self, spec: Specification) -> BuildResult:
        result = BuildResult(build_id=self.build_id, name=spec.name)
        try:
            spec.validate()
            if self.provider is None:
                self.provider = self.provider_factory(spec.provider.kind, self.settings)
            self.provider.check_available()
        except PuppetError as exc:
            log("ERROR", self._tag(f"{exc} ({exc.context()})"))
            result.error = exc
            return result
        except Exception as exc:
            error = _unexpected(exc, component="provider")
            log("ERROR", self._tag(f"{error} ({error.context()})"))
            result.error = error
            return result

        handle = VMHandle(
            build_id=self.build_id,
            name=sanitize_name(spec.name),
            provider_kind=spec.provider.kind,
            workdir=self.workdir / f"{sanitize_name(spec.name)}-{self.build_id}",
        )
        self.handle = handle
        recorder = SessionRecorder(self.build_id, self.state_dir)
        frames_dir = handle.workdir / "frames" if self.settings.save_frames else None
        detector = Detector(
            self.provider,
            clock=self.clock,
            cancel=self.cancel,
            interval=self.settings.detect_interval,
            threshold=self.settings.ocr_threshold,
            ocr=self.ocr,
            frames_dir=frames_dir,
        )
        interpreter = ActionInterpreter(
            handle,
            self.provider,
            detector,
            RemoteExecutor(self.provider, spec.credentials),
            settings=self.settings,
            clock=self.clock,
            cancel=self.cancel,
            reporter=self.reporter,
        )
        log("INFO", self._tag(f"Starting build '{spec.name}' on {spec.provider.kind}"))

        current: Optional[str] = None
        try:
            for stage in spec.ordered_stages():
                current = stage.kind.value
                self.cancel.check()
                self.reporter.emit("stage_started", current)
                started = self.clock.monotonic()
                deadline = started + spec.provider.stage_timeout
                if stage.kind == StageKind.INIT:
                    stage_result = self._run_init(stage, spec, interpreter, deadline)
                elif stage.kind == StageKind.PACK:
                    self._shutdown_once(raise_errors=True)
                    result.artifact = self.packager.package(handle, spec.pack)
                    stage_result = StageResult(kind=stage.kind, elapsed=self.clock.monotonic() - started)
                else:
                    stage_result = interpreter.run_stage(stage, deadline)
                result.stages.append(stage_result)
                recorder.record(handle, current)
                self.reporter.emit("stage_finished", current, detail=f"{stage_result.elapsed:.1f}s")
            result.success = True
            log("SUCCESS", self._tag(f"Build '{spec.name}' finished"))
        except BuildCancelled as exc:
            exc.annotate(stage=current)
            result.cancelled = True
            log("WARN", self._tag(f"Build cancelled during {current or 'setup'}"))
        except PuppetError as exc:
            self._fail(result, exc.annotate(stage=current))
        except Exception as exc:
            self._fail(result, _unexpected(exc, stage=current))
        finally:
            self._shutdown_once(raise_errors=False)
            recorder.record(
                handle,
                current or "init",
                action_index=result.error.action_index if result.error is not None else None,
            )
            self.reporter.emit(
                "build_finished",
                current,
                detail="success" if result.success else ("cancelled" if result.cancelled else "failed"),
            )
        return result

    def _fail(self, result: BuildResult, error: PuppetError) -> None:
        handle = self.handle
        if handle is not None and handle.state == VMState.CREATED:
            handle.transition(VMState.FAILED)
        result.error = error
        log("ERROR", self._tag(f"{error} ({error.context()})"))

    def _run_init(
        self,
        stage: Stage,
        spec: Specification,
        interpreter: ActionInterpreter,
        deadline: float,
    ) -> StageResult:
        handle = self.handle
        assert handle is not None
        started = self.clock.monotonic()
        handle.transition(VMState.BOOTING)
        try:
            session = self.provider.launch(handle, spec.provider, self.cancel)
        except PuppetError as exc:
            # The provider has already torn down whatever it started.
            handle.transition(VMState.FAILED)
            raise exc.annotate(stage=StageKind.INIT.value, component="provider")
        except Exception as exc:
            handle.transition(VMState.FAILED)
            raise _unexpected(exc, stage=StageKind.INIT.value, component="provider") from exc
        handle.session = session
        handle.transition(VMState.RUNNING)
        log("INFO", self._tag(f"VM {handle.name} running (session {session.session_id})"))
        waits = interpreter.run_stage(stage, deadline)
        waits.elapsed = self.clock.monotonic() - started
        return waits

    def _shutdown_once(self, raise_errors: bool) -> None:
        with self._shutdown_lock:
            if self._shutdown_issued:
                return
            self._shutdown_issued = True
        handle = self.handle
        if handle is None or handle.terminal:
            return
        if handle.session is None:
            # Never launched; nothing to stop.
            return
        handle.transition(VMState.SHUTTING_DOWN)
        try:
            self.provider.shutdown(handle)
        except Exception as exc:
            handle.transition(VMState.FAILED)
            error = exc if isinstance(exc, PuppetError) else _unexpected(exc, component="provider")
            if raise_errors:
                raise error.annotate(component="provider")
            log("WARN", self._tag(f"Shutdown failed: {error}"))
            return
        handle.transition(VMState.STOPPED)


class BuildPool:
    """Runs independent builds on a bounded worker pool.

    Each build gets its own controller, provider instance, cancel token and
    working directory; nothing mutable is shared between them.
    """

    def __init__(self, settings: Optional[Settings] = None, workers: Optional[int] = None, **controller_kwargs) -> None:
        self.settings = settings or Settings()
        self.workers = workers or self.settings.build_workers
        self.controller_kwargs = controller_kwargs
        self.controllers: List[BuildController] = []
        self._lock = threading.Lock()
        self._cancel_reason: Optional[str] = None

    def cancel_all(self, reason: str = "cancelled by operator") -> None:
        with self._lock:
            self._cancel_reason = reason
            for controller in self.controllers:
                controller.cancel.cancel(reason)

    def run(self, specs: Sequence[Specification]) -> List[BuildResult]:
        with self._lock:
            self.controllers = [
                BuildController(settings=self.settings, **self.controller_kwargs) for _ in specs
            ]
            if self._cancel_reason is not None:
                for controller in self.controllers:
                    controller.cancel.cancel(self._cancel_reason)
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="build") as pool:
            futures = [pool.submit(controller.run, spec) for controller, spec in zip(self.controllers, specs)]
            return [future.result() for future in futures]


def run_builds(
    specs: Sequence[Specification],
    settings: Optional[Settings] = None,
    workers: Optional[int] = None,
    **controller_kwargs,
) -> List[BuildResult]:
    return BuildPool(settings=settings, workers=workers, **controller_kwargs).run(specs)
