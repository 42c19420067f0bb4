"""Data models for image-puppet."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import ClassVar, Dict, FrozenSet, List, Optional, Tuple, Union

from imagepuppet.constants import (
    DEFAULT_BOOT_TIMEOUT,
    DEFAULT_COPY_PERMISSIONS,
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE,
    DEFAULT_GUEST_SSH_PORT,
    DEFAULT_MEMORY_MB,
    DEFAULT_REMOTE_TIMEOUT,
    DEFAULT_STAGE_TIMEOUT,
)
from imagepuppet.exceptions import ConfigurationError, PuppetError


# ---------------------------------------------------------------------------
# Actions


@dataclass(frozen=True)
class Wait:
    duration: float
    description: Optional[str] = None
    kind: ClassVar[str] = "wait"


@dataclass(frozen=True)
class Press:
    key: str
    repeat: int = 1
    modifiers: Tuple[str, ...] = ()
    description: Optional[str] = None
    kind: ClassVar[str] = "press"


@dataclass(frozen=True)
class Type:
    text: str
    description: Optional[str] = None
    kind: ClassVar[str] = "type"


@dataclass(frozen=True)
class WaitFor:
    pattern: str
    timeout: float
    optional: bool = False
    description: Optional[str] = None
    kind: ClassVar[str] = "wait_for"


@dataclass(frozen=True)
class Run:
    command: str
    timeout: float = DEFAULT_REMOTE_TIMEOUT
    best_effort: bool = False
    description: Optional[str] = None
    kind: ClassVar[str] = "run"


@dataclass(frozen=True)
class Copy:
    source: Path
    destination: str
    permissions: int = DEFAULT_COPY_PERMISSIONS
    best_effort: bool = False
    description: Optional[str] = None
    kind: ClassVar[str] = "copy"


@dataclass(frozen=True)
class Mount:
    """Insert ``path`` into the virtual CD drive, or eject it when None."""

    path: Optional[Path] = None
    description: Optional[str] = None
    kind: ClassVar[str] = "mount"


Action = Union[Wait, Press, Type, WaitFor, Run, Copy, Mount]


def describe_action(action: Action) -> str:
    if action.description:
        return action.description
    if isinstance(action, Wait):
        return f"wait {action.duration:g}s"
    if isinstance(action, Press):
        combo = "+".join(action.modifiers + (action.key,))
        return f"press {combo}" + (f" x{action.repeat}" if action.repeat > 1 else "")
    if isinstance(action, Type):
        return f"type {len(action.text)} characters"
    if isinstance(action, WaitFor):
        return f"wait for '{action.pattern}' (up to {action.timeout:g}s)"
    if isinstance(action, Run):
        return f"run '{action.command}'"
    if isinstance(action, Copy):
        return f"copy {action.source} -> {action.destination}"
    if isinstance(action, Mount):
        return f"mount {action.path}" if action.path else "eject media"
    return action.kind


# ---------------------------------------------------------------------------
# Stages


class StageKind(str, Enum):
    INIT = "init"
    INSTALL = "install"
    CONFIGURE = "configure"
    PACK = "pack"


STAGE_SEQUENCE: Tuple[StageKind, ...] = (
    StageKind.INIT,
    StageKind.INSTALL,
    StageKind.CONFIGURE,
    StageKind.PACK,
)

ALLOWED_ACTIONS: Dict[StageKind, FrozenSet[type]] = {
    StageKind.INIT: frozenset({Wait}),
    StageKind.INSTALL: frozenset({Wait, Press, Type, WaitFor, Mount}),
    StageKind.CONFIGURE: frozenset({Wait, Press, Type, WaitFor, Mount, Run, Copy}),
    StageKind.PACK: frozenset(),
}


@dataclass(frozen=True)
class Stage:
    kind: StageKind
    actions: Tuple[Action, ...] = ()


# ---------------------------------------------------------------------------
# Build description


@dataclass(frozen=True)
class ProviderConfig:
    kind: str = "qemu"
    memory_mb: int = DEFAULT_MEMORY_MB
    cpus: int = DEFAULT_CPUS
    disk_size: str = DEFAULT_DISK_SIZE
    stage_timeout: float = DEFAULT_STAGE_TIMEOUT
    boot_timeout: float = DEFAULT_BOOT_TIMEOUT
    boot_iso: Optional[Path] = None
    capture: str = "screen"  # "screen" or "serial"
    guest_ssh_port: int = DEFAULT_GUEST_SSH_PORT
    host_ssh_port: Optional[int] = None  # None picks a free port at launch
    extra_args: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Credentials:
    username: str
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[Path] = None


@dataclass(frozen=True)
class PackOptions:
    output: Optional[Path] = None
    format: str = "iso"
    bootable: bool = True
    volume_label: Optional[str] = None


@dataclass(frozen=True)
class Specification:
    name: str
    stages: Tuple[Stage, ...]
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    credentials: Optional[Credentials] = None
    pack: PackOptions = field(default_factory=PackOptions)

    def stage(self, kind: StageKind) -> Stage:
        for stage in self.stages:
            if stage.kind == kind:
                return stage
        return Stage(kind=kind)

    def ordered_stages(self) -> Tuple[Stage, ...]:
        """Return all four stages in execution order, whatever the declaration order."""
        return tuple(self.stage(kind) for kind in STAGE_SEQUENCE)

    def validate(self) -> None:
        from imagepuppet.keymap import validate_key, validate_text

        if not self.name:
            raise ConfigurationError("Build name must not be empty")
        seen = set()
        for stage in self.stages:
            if not isinstance(stage.kind, StageKind):
                raise ConfigurationError(f"Unknown stage kind '{stage.kind}'")
            if stage.kind in seen:
                raise ConfigurationError(f"Stage '{stage.kind.value}' declared more than once")
            seen.add(stage.kind)
            allowed = ALLOWED_ACTIONS[stage.kind]
            for index, action in enumerate(stage.actions):
                if type(action) not in allowed:
                    raise ConfigurationError(
                        f"Action '{action.kind}' is not allowed in the {stage.kind.value} stage",
                        stage=stage.kind.value,
                        action_index=index,
                    )
                try:
                    if isinstance(action, Press):
                        if action.repeat < 1:
                            raise ConfigurationError(f"Press repeat must be >= 1 (got {action.repeat})")
                        validate_key(action.key)
                        for modifier in action.modifiers:
                            validate_key(modifier, modifier=True)
                    elif isinstance(action, Type):
                        validate_text(action.text)
                    elif isinstance(action, WaitFor):
                        if not action.pattern:
                            raise ConfigurationError("WaitFor pattern must not be empty")
                        if action.timeout <= 0:
                            raise ConfigurationError(f"WaitFor timeout must be positive (got {action.timeout})")
                    elif isinstance(action, (Run, Copy)) and self.credentials is None:
                        raise ConfigurationError(f"Action '{action.kind}' requires login credentials")
                except ConfigurationError as exc:
                    raise exc.annotate(stage=stage.kind.value, action_index=index)


# ---------------------------------------------------------------------------
# VM lifecycle


class VMState(str, Enum):
    CREATED = "created"
    BOOTING = "booting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAILED = "failed"


_TRANSITIONS: Dict[VMState, FrozenSet[VMState]] = {
    VMState.CREATED: frozenset({VMState.BOOTING, VMState.FAILED}),
    VMState.BOOTING: frozenset({VMState.RUNNING, VMState.FAILED}),
    VMState.RUNNING: frozenset({VMState.SHUTTING_DOWN, VMState.FAILED}),
    VMState.SHUTTING_DOWN: frozenset({VMState.STOPPED, VMState.FAILED}),
    VMState.STOPPED: frozenset(),
    VMState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class ProviderSession:
    """Backend details returned by a provider's launch."""

    session_id: str
    ssh_host: str = "127.0.0.1"
    ssh_port: Optional[int] = None
    disk_path: Optional[Path] = None
    console_log: Optional[Path] = None
    pid: Optional[int] = None


@dataclass
class VMHandle:
    build_id: str
    name: str
    provider_kind: str
    workdir: Path
    state: VMState = VMState.CREATED
    session: Optional[ProviderSession] = None

    @property
    def terminal(self) -> bool:
        return self.state in (VMState.STOPPED, VMState.FAILED)

    def transition(self, new_state: VMState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise PuppetError(
                f"Illegal VM state transition {self.state.value} -> {new_state.value}",
                component="controller",
            )
        self.state = new_state


# ---------------------------------------------------------------------------
# Detection and remote results


@dataclass(frozen=True)
class Frame:
    kind: str  # "text" or "image"
    data: bytes
    captured_at: float = field(default_factory=time.time)
    # Size of the whole stream when the frame was read; None for screen captures.
    stream_end: Optional[int] = None

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class Match:
    text: str
    confidence: float = 1.0


@dataclass(frozen=True)
class DetectionEvent:
    pattern: str
    elapsed: float
    confidence: float
    samples: int
    matched_text: str = ""


@dataclass(frozen=True)
class CommandOutput:
    exit_status: int
    stdout: str = ""
    stderr: str = ""


@dataclass(frozen=True)
class CopyAck:
    destination: str
    size: int


# ---------------------------------------------------------------------------
# Results and progress


@dataclass
class StageResult:
    kind: StageKind
    elapsed: float = 0.0
    actions_run: int = 0
    warnings: List[str] = field(default_factory=list)
    detections: List[DetectionEvent] = field(default_factory=list)


@dataclass
class BuildResult:
    build_id: str
    name: str
    success: bool = False
    cancelled: bool = False
    stages: List[StageResult] = field(default_factory=list)
    error: Optional[PuppetError] = None
    artifact: Optional[Path] = None

    @property
    def warnings(self) -> List[str]:
        return [warning for stage in self.stages for warning in stage.warnings]


@dataclass(frozen=True)
class ProgressEvent:
    build_id: str
    kind: str
    stage: Optional[str] = None
    action_index: Optional[int] = None
    detail: str = ""
