"""Hand-off of a stopped VM's disk to the external ISO repackager."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from imagepuppet.constants import HANDOFF_MANIFEST_NAME
from imagepuppet.exceptions import PuppetError
from imagepuppet.models import PackOptions, VMHandle, VMState
from imagepuppet.utils import ensure_directory, log

# ISO 9660 limits the volume identifier to 32 characters.
MAX_VOLUME_LABEL = 32


class Packager(Protocol):
    def package(self, handle: VMHandle, options: PackOptions) -> Path: ...


def default_volume_label(name: str) -> str:
    label = "".join(ch if ch.isalnum() else "_" for ch in name.upper())
    return label[:MAX_VOLUME_LABEL] or "IMAGE"


class HandoffPackager:
    """Write a JSON manifest describing the configured disk and the requested output."""

    def package(self, handle: VMHandle, options: PackOptions) -> Path:
        if handle.state != VMState.STOPPED:
            raise PuppetError(
                f"VM {handle.name} must be stopped before packaging (state: {handle.state.value})",
                component="packager",
            )
        disk = handle.session.disk_path if handle.session else None
        if disk is None or not disk.exists():
            raise PuppetError(f"No disk image to hand off for {handle.name}", component="packager")

        output = options.output or handle.workdir / f"{handle.name}.{options.format}"
        label = options.volume_label or default_volume_label(handle.name)
        if len(label) > MAX_VOLUME_LABEL:
            raise PuppetError(f"Volume label '{label}' exceeds {MAX_VOLUME_LABEL} characters", component="packager")
        manifest = {
            "build_id": handle.build_id,
            "vm_name": handle.name,
            "provider": handle.provider_kind,
            "disk_image": str(disk),
            "output": str(output),
            "format": options.format,
            "bootable": options.bootable,
            "volume_label": label,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        ensure_directory(handle.workdir)
        path = handle.workdir / HANDOFF_MANIFEST_NAME
        path.write_text(json.dumps(manifest, indent=2))
        log("SUCCESS", f"[{handle.build_id}] Hand-off manifest written to {path}")
        return path
