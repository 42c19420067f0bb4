"""VirtualBox provider built on the VBoxManage command line."""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from imagepuppet.config import Settings
from imagepuppet.constants import VBOXMANAGE_BINARY
from imagepuppet.exceptions import BootTimeout, BuildCancelled, ChannelError, ProviderUnavailable
from imagepuppet.keymap import scancodes, text_scancodes
from imagepuppet.models import (
    CommandOutput,
    Credentials,
    Frame,
    ProviderConfig,
    ProviderSession,
    VMHandle,
)
from imagepuppet.provider import read_serial_frame, require_session
from imagepuppet.remote import ssh_exec
from imagepuppet.runtime import CancelToken, interruptible_sleep
from imagepuppet.utils import binary_available, ensure_directory, find_free_port, log, run

STORAGE_CONTROLLER = "SATA"
# VBoxManage rejects very long scancode argument lists.
SCANCODE_CHUNK = 64
_SIZE_FACTORS_MB = {"K": 1 / 1024, "M": 1, "G": 1024, "T": 1024 * 1024}


def disk_size_mb(size: str) -> int:
    unit = size[-1].upper()
    if unit.isdigit():
        return max(1, int(size) // (1024 * 1024))
    return max(1, int(int(size[:-1]) * _SIZE_FACTORS_MB[unit]))


def parse_machine_readable(output: str) -> Dict[str, str]:
    info: Dict[str, str] = {}
    for line in output.splitlines():
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        info[key.strip().strip('"')] = value.strip().strip('"')
    return info


@dataclass
class _VBoxVM:
    vm_name: str
    config: ProviderConfig
    serial_log: Path
    screen_path: Path


class VirtualBoxProvider:
    kind = "virtualbox"

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()
        self.binary = VBOXMANAGE_BINARY
        self._vms: Dict[str, _VBoxVM] = {}

    def _manage(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            return run([self.binary, *args], check=check, capture_output=True)
        except FileNotFoundError as exc:
            raise ProviderUnavailable(f"{self.binary} not found in PATH") from exc

    def check_available(self) -> None:
        if not binary_available(self.binary):
            raise ProviderUnavailable(f"{self.binary} not found in PATH")
        result = self._manage("--version", check=False)
        if result.returncode != 0:
            raise ProviderUnavailable(f"{self.binary} is not usable: {(result.stderr or '').strip()}")

    def _vm(self, handle: VMHandle) -> _VBoxVM:
        require_session(handle)
        try:
            return self._vms[handle.build_id]
        except KeyError:
            raise ChannelError(f"No VirtualBox VM for build {handle.build_id}") from None

    def _control(self, vm_name: str, *args: str) -> None:
        try:
            self._manage("controlvm", vm_name, *args)
        except subprocess.CalledProcessError as exc:
            raise ChannelError(f"controlvm {args[0]} failed: {(exc.stderr or '').strip()}") from exc

    def _state(self, vm_name: str) -> str:
        result = self._manage("showvminfo", vm_name, "--machinereadable", check=False)
        return parse_machine_readable(result.stdout or "").get("VMState", "unknown")

    def setup_commands(self, vm_name: str, handle: VMHandle, config: ProviderConfig, ssh_port: int) -> List[List[str]]:
        disk = handle.workdir / "disk.vdi"
        serial_log = handle.workdir / "serial.log"
        return [
            ["createvm", "--name", vm_name, "--ostype", "Linux_64", "--register", "--basefolder", str(handle.workdir)],
            [
                "modifyvm", vm_name,
                "--memory", str(config.memory_mb),
                "--cpus", str(config.cpus),
                "--nic1", "nat",
                "--natpf1", f"ssh,tcp,127.0.0.1,{ssh_port},,{config.guest_ssh_port}",
                "--uart1", "0x3F8", "4",
                "--uartmode1", "file", str(serial_log),
                "--boot1", "dvd",
                "--boot2", "disk",
                "--audio", "none",
            ],
            ["createmedium", "disk", "--filename", str(disk), "--size", str(disk_size_mb(config.disk_size)), "--format", "VDI"],
            ["storagectl", vm_name, "--name", STORAGE_CONTROLLER, "--add", "sata", "--controller", "IntelAhci"],
            [
                "storageattach", vm_name, "--storagectl", STORAGE_CONTROLLER,
                "--port", "0", "--device", "0", "--type", "hdd", "--medium", str(disk),
            ],
            [
                "storageattach", vm_name, "--storagectl", STORAGE_CONTROLLER,
                "--port", "1", "--device", "0", "--type", "dvddrive",
                "--medium", str(config.boot_iso) if config.boot_iso is not None else "emptydrive",
            ],
        ]

    def launch(
        self, handle: VMHandle, config: ProviderConfig, cancel: Optional[CancelToken] = None
    ) -> ProviderSession:
        ensure_directory(handle.workdir)
        vm_name = f"{handle.name}-{handle.build_id[:8]}"
        ssh_port = config.host_ssh_port or find_free_port()
        if config.boot_iso is not None and not config.boot_iso.exists():
            raise BootTimeout(f"Boot ISO not found: {config.boot_iso}", component="provider")
        try:
            for args in self.setup_commands(vm_name, handle, config, ssh_port):
                self._manage(*args)
            for arg in config.extra_args:
                self._manage("modifyvm", vm_name, *arg.split())
            self._manage("startvm", vm_name, "--type", "headless")
        except subprocess.CalledProcessError as exc:
            self._unregister(vm_name, delete=True)
            raise BootTimeout(f"VBoxManage {exc.cmd[1]} failed: {(exc.stderr or '').strip()}") from exc

        deadline = time.time() + config.boot_timeout
        try:
            while self._state(vm_name) != "running":
                if time.time() >= deadline:
                    raise BootTimeout(f"VM {vm_name} did not reach running within {config.boot_timeout:g}s")
                interruptible_sleep(1.0, cancel)
        except (BootTimeout, BuildCancelled):
            self._poweroff(vm_name)
            self._unregister(vm_name, delete=True)
            raise

        self._vms[handle.build_id] = _VBoxVM(
            vm_name=vm_name,
            config=config,
            serial_log=handle.workdir / "serial.log",
            screen_path=handle.workdir / "screen.png",
        )
        log("SUCCESS", f"VirtualBox VM {vm_name} running (ssh port {ssh_port})")
        return ProviderSession(
            session_id=vm_name,
            ssh_port=ssh_port,
            disk_path=handle.workdir / "disk.vdi",
            console_log=handle.workdir / "serial.log",
        )

    def _put_scancodes(self, vm_name: str, codes: List[str]) -> None:
        for start in range(0, len(codes), SCANCODE_CHUNK):
            self._control(vm_name, "keyboardputscancode", *codes[start:start + SCANCODE_CHUNK])

    def send_key(self, handle: VMHandle, key: str, modifiers: Sequence[str] = (), repeat: int = 1) -> None:
        vm = self._vm(handle)
        codes = scancodes(key, modifiers)
        for index in range(repeat):
            if index:
                time.sleep(self.settings.key_delay)
            self._put_scancodes(vm.vm_name, codes)

    def send_text(self, handle: VMHandle, text: str) -> None:
        vm = self._vm(handle)
        self._put_scancodes(vm.vm_name, text_scancodes(text))

    def capture_frame(self, handle: VMHandle) -> Frame:
        vm = self._vm(handle)
        if vm.config.capture == "serial":
            return read_serial_frame(vm.serial_log)
        vm.screen_path.unlink(missing_ok=True)
        self._control(vm.vm_name, "screenshotpng", str(vm.screen_path))
        try:
            return Frame(kind="image", data=vm.screen_path.read_bytes())
        except OSError as exc:
            raise ChannelError(f"VirtualBox screenshot missing: {exc}") from exc

    def mount_iso(self, handle: VMHandle, path: Optional[Path]) -> None:
        vm = self._vm(handle)
        if path is not None and not Path(path).exists():
            raise ChannelError(f"ISO not found: {path}")
        try:
            self._manage(
                "storageattach", vm.vm_name, "--storagectl", STORAGE_CONTROLLER,
                "--port", "1", "--device", "0", "--type", "dvddrive",
                "--medium", str(path) if path is not None else "emptydrive", "--forceunmount",
            )
        except subprocess.CalledProcessError as exc:
            raise ChannelError(f"Media change failed: {(exc.stderr or '').strip()}") from exc

    def ssh_endpoint(self, handle: VMHandle) -> Tuple[str, int]:
        session = require_session(handle)
        if session.ssh_port is None:
            raise ChannelError(f"VM {handle.name} has no SSH forward")
        return session.ssh_host, session.ssh_port

    def exec_remote(
        self, handle: VMHandle, command: str, credentials: Credentials, timeout: float
    ) -> CommandOutput:
        host, port = self.ssh_endpoint(handle)
        return ssh_exec(host, port, credentials, command, timeout)

    def _poweroff(self, vm_name: str) -> None:
        self._manage("controlvm", vm_name, "poweroff", check=False)

    def _unregister(self, vm_name: str, delete: bool = False) -> None:
        args = ["unregistervm", vm_name] + (["--delete"] if delete else [])
        self._manage(*args, check=False)

    def shutdown(self, handle: VMHandle) -> None:
        vm = self._vms.pop(handle.build_id, None)
        if vm is None:
            return
        if self._state(vm.vm_name) == "running":
            log("INFO", f"Powering down VirtualBox VM {vm.vm_name}")
            self._manage("controlvm", vm.vm_name, "acpipowerbutton", check=False)
            deadline = time.time() + self.settings.shutdown_timeout
            while self._state(vm.vm_name) == "running" and time.time() < deadline:
                time.sleep(1.0)
            if self._state(vm.vm_name) == "running":
                log("WARN", f"Guest ignored ACPI power button; powering off {vm.vm_name}")
                self._poweroff(vm.vm_name)
        # Keep the disk for packaging; drop only the VM registration.
        self._unregister(vm.vm_name)
