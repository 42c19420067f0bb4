"""QEMU provider driven through the human monitor (HMP) socket."""

from __future__ import annotations

import socket
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from imagepuppet.config import Settings
from imagepuppet.constants import QEMU_BINARY, QEMU_IMG_BINARY
from imagepuppet.exceptions import BootTimeout, BuildCancelled, ChannelError, ProviderUnavailable
from imagepuppet.keymap import char_to_key, qemu_combo
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
from imagepuppet.utils import (
    binary_available,
    ensure_directory,
    find_free_port,
    kvm_available,
    log,
    run,
)

PROMPT = b"(qemu) "
CDROM_DEVICE = "ide1-cd0"
STDERR_TAIL_BYTES = 2048


def _log_tail(path: Path, limit: int = STDERR_TAIL_BYTES) -> str:
    try:
        with open(path, "rb") as stream:
            stream.seek(0, 2)
            stream.seek(max(0, stream.tell() - limit))
            return stream.read().decode("utf-8", errors="replace").strip()
    except OSError:
        return ""


class HmpMonitor:
    """Minimal client for ``-monitor unix:PATH,server,nowait``."""

    def __init__(self, path: Path, timeout: float = 10.0) -> None:
        self.path = path
        self.timeout = timeout
        self._sock: Optional[socket.socket] = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(str(self.path))
            self._sock = sock
            self._read_until_prompt()
        except OSError as exc:
            sock.close()
            self._sock = None
            raise ChannelError(f"Cannot connect to QEMU monitor {self.path}: {exc}") from exc

    def _read_until_prompt(self) -> bytes:
        assert self._sock is not None
        buf = b""
        while not buf.endswith(PROMPT):
            chunk = self._sock.recv(4096)
            if not chunk:
                raise ChannelError("QEMU monitor closed the connection")
            buf += chunk
        return buf[: -len(PROMPT)]

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def command(self, line: str) -> str:
        with self._lock:
            if self._sock is None:
                raise ChannelError("QEMU monitor is not connected")
            log("DEBUG", f"HMP: {line}")
            try:
                self._sock.sendall(line.encode("utf-8") + b"\n")
                raw = self._read_until_prompt()
            except OSError as exc:
                raise ChannelError(f"QEMU monitor command '{line}' failed: {exc}") from exc
        text = raw.decode("utf-8", errors="replace").replace("\r", "")
        # The monitor echoes the command line, possibly with terminal escapes.
        lines = [entry for entry in text.split("\n") if entry.strip()]
        if lines and line in lines[0]:
            lines = lines[1:]
        return "\n".join(lines)

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                pass
            self._sock = None


@dataclass
class _QemuVM:
    process: subprocess.Popen
    monitor: HmpMonitor
    config: ProviderConfig
    workdir: Path
    serial_log: Path
    screen_path: Path


class QemuProvider:
    kind = "qemu"

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()
        self.binary = QEMU_BINARY
        self.img_binary = QEMU_IMG_BINARY
        self._vms: Dict[str, _QemuVM] = {}

    def check_available(self) -> None:
        for binary in (self.binary, self.img_binary):
            if not binary_available(binary):
                raise ProviderUnavailable(f"{binary} not found in PATH")

    def _vm(self, handle: VMHandle) -> _QemuVM:
        require_session(handle)
        try:
            return self._vms[handle.build_id]
        except KeyError:
            raise ChannelError(f"No QEMU process for build {handle.build_id}") from None

    def build_command(
        self,
        handle: VMHandle,
        config: ProviderConfig,
        disk: Path,
        monitor_path: Path,
        serial_log: Path,
        ssh_port: int,
    ) -> List[str]:
        cdrom = "if=ide,index=2,media=cdrom"
        if config.boot_iso is not None:
            cdrom += f",file={config.boot_iso}"
        cmd = [
            self.binary,
            "-name", handle.name,
            "-m", str(config.memory_mb),
            "-smp", str(config.cpus),
            "-drive", f"file={disk},format=qcow2,if=virtio",
            "-drive", cdrom,
            # Boot the installer once; the reboot after install comes up from disk.
            "-boot", "once=d" if config.boot_iso is not None else "order=c",
            "-netdev", f"user,id=net0,hostfwd=tcp:127.0.0.1:{ssh_port}-:{config.guest_ssh_port}",
            "-device", "e1000,netdev=net0",
            "-monitor", f"unix:{monitor_path},server,nowait",
            "-serial", f"file:{serial_log}",
            "-display", "none",
            "-vga", "std",
        ]
        if kvm_available():
            cmd += ["-enable-kvm", "-cpu", "host"]
        else:
            log("WARN", "KVM not available; QEMU will use TCG emulation")
        cmd += list(config.extra_args)
        return cmd

    def launch(
        self, handle: VMHandle, config: ProviderConfig, cancel: Optional[CancelToken] = None
    ) -> ProviderSession:
        ensure_directory(handle.workdir)
        disk = handle.workdir / "disk.qcow2"
        monitor_path = handle.workdir / "monitor.sock"
        serial_log = handle.workdir / "serial.log"
        stderr_log = handle.workdir / "qemu.log"
        if config.boot_iso is not None and not config.boot_iso.exists():
            raise BootTimeout(f"Boot ISO not found: {config.boot_iso}", component="provider")

        try:
            run(
                [self.img_binary, "create", "-f", "qcow2", str(disk), config.disk_size],
                capture_output=True,
            )
        except subprocess.CalledProcessError as exc:
            raise BootTimeout(f"qemu-img create failed: {(exc.stderr or '').strip()}") from exc

        ssh_port = config.host_ssh_port or find_free_port()
        cmd = self.build_command(handle, config, disk, monitor_path, serial_log, ssh_port)
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            # QEMU keeps its own copy of the descriptor after ours closes.
            with open(stderr_log, "w") as stderr_file:
                process = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=stderr_file, text=True)
        except OSError as exc:
            raise ProviderUnavailable(f"Cannot execute {self.binary}: {exc}") from exc

        monitor = HmpMonitor(monitor_path)
        deadline = time.time() + config.boot_timeout
        try:
            while True:
                if process.poll() is not None:
                    raise BootTimeout(
                        f"QEMU exited with status {process.returncode}: {_log_tail(stderr_log)}"
                    )
                if monitor_path.exists():
                    try:
                        if not monitor.connected:
                            monitor.connect()
                        if "running" in monitor.command("info status"):
                            break
                    except ChannelError:
                        monitor.close()
                if time.time() >= deadline:
                    raise BootTimeout(f"VM {handle.name} did not reach running within {config.boot_timeout:g}s")
                interruptible_sleep(0.5, cancel)
        except (BootTimeout, BuildCancelled):
            monitor.close()
            self._kill(process)
            raise

        self._vms[handle.build_id] = _QemuVM(
            process=process,
            monitor=monitor,
            config=config,
            workdir=handle.workdir,
            serial_log=serial_log,
            screen_path=handle.workdir / "screen.ppm",
        )
        log("SUCCESS", f"QEMU VM {handle.name} running (pid {process.pid}, ssh port {ssh_port})")
        return ProviderSession(
            session_id=f"qemu-{process.pid}",
            ssh_port=ssh_port,
            disk_path=disk,
            console_log=serial_log,
            pid=process.pid,
        )

    def send_key(self, handle: VMHandle, key: str, modifiers: Sequence[str] = (), repeat: int = 1) -> None:
        vm = self._vm(handle)
        combo = qemu_combo(key, modifiers)
        for index in range(repeat):
            if index:
                time.sleep(self.settings.key_delay)
            vm.monitor.command(f"sendkey {combo}")

    def send_text(self, handle: VMHandle, text: str) -> None:
        vm = self._vm(handle)
        for ch in text:
            key, shifted = char_to_key(ch)
            vm.monitor.command(f"sendkey {'shift-' if shifted else ''}{key.qemu}")
            time.sleep(self.settings.key_delay / 2)

    def capture_frame(self, handle: VMHandle) -> Frame:
        vm = self._vm(handle)
        if vm.config.capture == "serial":
            return read_serial_frame(vm.serial_log)
        vm.screen_path.unlink(missing_ok=True)
        vm.monitor.command(f"screendump {vm.screen_path}")
        try:
            data = vm.screen_path.read_bytes()
        except OSError as exc:
            raise ChannelError(f"QEMU screendump produced no image: {exc}") from exc
        return Frame(kind="image", data=data)

    def mount_iso(self, handle: VMHandle, path: Optional[Path]) -> None:
        vm = self._vm(handle)
        if path is None:
            reply = vm.monitor.command(f"eject -f {CDROM_DEVICE}")
        else:
            if not Path(path).exists():
                raise ChannelError(f"ISO not found: {path}")
            reply = vm.monitor.command(f"change {CDROM_DEVICE} {path}")
        if "error" in reply.lower() or "could not" in reply.lower():
            raise ChannelError(f"QEMU refused media change: {reply}")

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

    def shutdown(self, handle: VMHandle) -> None:
        vm = self._vms.pop(handle.build_id, None)
        if vm is None:
            return
        process = vm.process
        if process.poll() is None:
            log("INFO", f"Powering down QEMU VM {handle.name}")
            try:
                vm.monitor.command("system_powerdown")
                process.wait(timeout=self.settings.shutdown_timeout)
            except ChannelError as exc:
                log("WARN", f"ACPI power-down failed: {exc}")
            except subprocess.TimeoutExpired:
                log("WARN", f"Guest ignored power-down after {self.settings.shutdown_timeout:g}s; quitting QEMU")
            if process.poll() is None:
                try:
                    vm.monitor.command("quit")
                except ChannelError:
                    pass
                self._kill(process)
        vm.monitor.close()

    @staticmethod
    def _kill(process: subprocess.Popen) -> None:
        if process.poll() is None:
            process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            try:
                process.kill()
                process.wait(timeout=5)
            except (OSError, subprocess.TimeoutExpired):
                pass
