"""Build progress reporting and session records for image-puppet."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from imagepuppet.constants import SESSION_RECORD_SUFFIX, STATE_DIR
from imagepuppet.models import ProgressEvent, VMHandle
from imagepuppet.utils import log

Listener = Callable[[ProgressEvent], None]

_EVENT_LEVELS = {
    "stage_started": "INFO",
    "stage_finished": "SUCCESS",
    "action_started": "DEBUG",
    "action_finished": "DEBUG",
    "detection_matched": "DEBUG",
    "detection_timed_out": "DEBUG",
    "command_finished": "DEBUG",
    "warning": "DEBUG",
    "build_finished": "DEBUG",
}


def log_listener(event: ProgressEvent) -> None:
    """Default listener: one log line per event."""
    where = event.stage or "-"
    if event.action_index is not None:
        where += f"#{event.action_index}"
    text = event.kind.replace("_", " ")
    if event.detail:
        text += f": {event.detail}"
    log(_EVENT_LEVELS.get(event.kind, "INFO"), f"[{event.build_id}] {where} {text}")


class ProgressReporter:
    """Fan progress events out to listeners. A failing listener never affects the build."""

    def __init__(self, build_id: str, listeners: Iterable[Listener] = ()) -> None:
        self.build_id = build_id
        self._listeners: List[Listener] = list(listeners)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def emit(
        self,
        kind: str,
        stage: Optional[str] = None,
        action_index: Optional[int] = None,
        detail: str = "",
    ) -> None:
        event = ProgressEvent(
            build_id=self.build_id,
            kind=kind,
            stage=stage,
            action_index=action_index,
            detail=detail,
        )
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as exc:
                log("WARN", f"Progress listener {listener!r} failed: {exc}")


class SessionRecorder:
    """Write a JSON record of where a build is, for post-mortem inspection."""

    def __init__(self, build_id: str, state_dir: Optional[Path] = None) -> None:
        self.build_id = build_id
        self.path = (state_dir or STATE_DIR) / f"{build_id}{SESSION_RECORD_SUFFIX}"

    def record(self, handle: VMHandle, stage: str, action_index: Optional[int] = None) -> None:
        payload = {
            "build_id": self.build_id,
            "vm_name": handle.name,
            "provider": handle.provider_kind,
            "session_id": handle.session.session_id if handle.session else None,
            "ssh_port": handle.session.ssh_port if handle.session else None,
            "stage": stage,
            "action_index": action_index,
            "vm_state": handle.state.value,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(payload, indent=2))
            tmp.replace(self.path)
        except OSError as exc:
            log("WARN", f"Could not write session record {self.path}: {exc}")
            return
        log("DEBUG", f"Session record: {stage} ({handle.state.value})")
