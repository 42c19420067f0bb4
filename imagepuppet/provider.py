"""Hypervisor-agnostic VM provider contract and registry."""

from __future__ import annotations

import importlib
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from imagepuppet.config import Settings, normalize_provider_kind
from imagepuppet.exceptions import ChannelError, ProviderUnavailable
from imagepuppet.models import (
    CommandOutput,
    Credentials,
    Frame,
    ProviderConfig,
    ProviderSession,
    VMHandle,
)
from imagepuppet.runtime import CancelToken

SERIAL_TAIL_BYTES = 64 * 1024


class VMProvider(Protocol):
    """Operations every hypervisor backend offers over a launched VM.

    Providers never change ``VMHandle.state``; ``launch`` returns the backend
    session and the controller attaches it to the handle.
    """

    kind: str

    def check_available(self) -> None: ...

    def launch(
        self, handle: VMHandle, config: ProviderConfig, cancel: Optional[CancelToken] = None
    ) -> ProviderSession: ...

    def send_key(self, handle: VMHandle, key: str, modifiers: Sequence[str] = (), repeat: int = 1) -> None: ...

    def send_text(self, handle: VMHandle, text: str) -> None: ...

    def capture_frame(self, handle: VMHandle) -> Frame: ...

    def mount_iso(self, handle: VMHandle, path: Optional[Path]) -> None: ...

    def exec_remote(
        self, handle: VMHandle, command: str, credentials: Credentials, timeout: float
    ) -> CommandOutput: ...

    def ssh_endpoint(self, handle: VMHandle) -> Tuple[str, int]: ...

    def shutdown(self, handle: VMHandle) -> None: ...


_REGISTRY: Dict[str, Tuple[str, str]] = {
    "qemu": ("imagepuppet.qemu", "QemuProvider"),
    "virtualbox": ("imagepuppet.vbox", "VirtualBoxProvider"),
    "libvirt": ("imagepuppet.libvirt_domain", "LibvirtProvider"),
}
_FACTORIES: Dict[str, Callable[[Settings], VMProvider]] = {}


def register_provider(kind: str, factory: Callable[[Settings], VMProvider]) -> None:
    _FACTORIES[kind] = factory


def registered_kinds() -> List[str]:
    return sorted(set(_REGISTRY) | set(_FACTORIES))


def create_provider(kind: str, settings: Optional[Settings] = None) -> VMProvider:
    """Instantiate the backend registered under ``kind``."""
    settings = settings or Settings()
    if kind in _FACTORIES:
        return _FACTORIES[kind](settings)
    kind = normalize_provider_kind(kind)
    module_name, class_name = _REGISTRY[kind]
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ProviderUnavailable(f"Provider '{kind}' cannot be loaded: {exc}") from exc
    return getattr(module, class_name)(settings)


def check_providers(settings: Optional[Settings] = None) -> Dict[str, Optional[str]]:
    """Map each known provider to None when usable, else the reason it is not."""
    results: Dict[str, Optional[str]] = {}
    for kind in registered_kinds():
        try:
            create_provider(kind, settings).check_available()
        except ProviderUnavailable as exc:
            results[kind] = str(exc)
        else:
            results[kind] = None
    return results


def read_serial_frame(path: Optional[Path], limit: int = SERIAL_TAIL_BYTES) -> Frame:
    """Return the tail of a serial console log as a text frame.

    ``stream_end`` records the log size so the detector can tell output
    written during a wait from output that was already there.
    """
    if path is None:
        raise ChannelError("No serial console log configured for this VM")
    try:
        with open(path, "rb") as handle:
            handle.seek(0, 2)
            size = handle.tell()
            handle.seek(max(0, size - limit))
            data = handle.read()
    except FileNotFoundError:
        data, size = b"", 0
    except OSError as exc:
        raise ChannelError(f"Cannot read serial log {path}: {exc}") from exc
    return Frame(kind="text", data=data, stream_end=size)


def require_session(handle: VMHandle) -> ProviderSession:
    if handle.session is None:
        raise ChannelError(f"VM {handle.name} has no active session")
    return handle.session
