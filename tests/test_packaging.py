"""Tests for imagepuppet.packaging module."""

from __future__ import annotations

import json

import pytest

from imagepuppet.exceptions import PuppetError
from imagepuppet.models import PackOptions, ProviderSession, VMHandle, VMState
from imagepuppet.packaging import HandoffPackager, default_volume_label


@pytest.fixture
def stopped_handle(tmp_path):
    disk = tmp_path / "disk.qcow2"
    disk.write_bytes(b"qcow")
    return VMHandle(
        build_id="b1",
        name="ubuntu-24.04",
        provider_kind="qemu",
        workdir=tmp_path,
        state=VMState.STOPPED,
        session=ProviderSession(session_id="qemu-1", disk_path=disk),
    )


class TestHandoffPackager:
    def test_manifest(self, stopped_handle, tmp_path):
        path = HandoffPackager().package(stopped_handle, PackOptions(format="iso"))
        manifest = json.loads(path.read_text())
        assert path == tmp_path / "handoff.json"
        assert manifest["disk_image"] == str(tmp_path / "disk.qcow2")
        assert manifest["output"] == str(tmp_path / "ubuntu-24.04.iso")
        assert manifest["volume_label"] == "UBUNTU_24_04"
        assert manifest["bootable"] is True

    def test_explicit_output_and_label(self, stopped_handle, tmp_path):
        options = PackOptions(output=tmp_path / "out.img", format="raw", volume_label="CUSTOM")
        manifest = json.loads(HandoffPackager().package(stopped_handle, options).read_text())
        assert manifest["output"] == str(tmp_path / "out.img")
        assert manifest["volume_label"] == "CUSTOM"

    def test_running_vm_rejected(self, stopped_handle):
        stopped_handle.state = VMState.RUNNING
        with pytest.raises(PuppetError, match="must be stopped") as excinfo:
            HandoffPackager().package(stopped_handle, PackOptions())
        assert excinfo.value.component == "packager"

    def test_missing_disk(self, stopped_handle):
        stopped_handle.session.disk_path.unlink()
        with pytest.raises(PuppetError, match="No disk image"):
            HandoffPackager().package(stopped_handle, PackOptions())

    def test_label_too_long(self, stopped_handle):
        with pytest.raises(PuppetError, match="exceeds 32"):
            HandoffPackager().package(stopped_handle, PackOptions(volume_label="X" * 33))


def test_default_volume_label_truncates():
    assert default_volume_label("a" * 40) == "A" * 32
    assert default_volume_label("") == "IMAGE"
