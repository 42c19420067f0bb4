"""libvirt provider: transient QEMU/KVM domains defined from rendered XML."""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple
from xml.etree.ElementTree import Element, SubElement, fromstring, tostring

try:
    import libvirt  # type: ignore
except ImportError:  # pragma: no cover
    # Optional extra; check_available reports the missing bindings.
    libvirt = None

from imagepuppet.config import Settings
from imagepuppet.constants import LIBVIRT_URI, QEMU_IMG_BINARY
from imagepuppet.exceptions import BootTimeout, BuildCancelled, ChannelError, ProviderUnavailable
from imagepuppet.keymap import char_to_key, linux_codes
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
from imagepuppet.utils import binary_available, ensure_directory, find_free_port, kvm_available, log, run

KEY_HOLD_MS = 50
CDROM_TARGET = "sdb"


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def _error_message(exc: Exception) -> str:
    return exc.get_error_message() if hasattr(exc, "get_error_message") else str(exc)


def render_cdrom_xml(path: Optional[Path], boot_order: Optional[int] = None) -> str:
    disk = Element("disk", type="file", device="cdrom")
    SubElement(disk, "driver", name="qemu", type="raw")
    if path is not None:
        SubElement(disk, "source", file=str(path))
    SubElement(disk, "target", dev=CDROM_TARGET, bus="sata")
    SubElement(disk, "readonly")
    if boot_order is not None:
        SubElement(disk, "boot", order=str(boot_order))
    return _element_to_str(disk)


def render_domain_xml(
    name: str,
    config: ProviderConfig,
    disk: Path,
    serial_log: Path,
    ssh_port: int,
    kvm: bool,
) -> str:
    domain = Element("domain", type="kvm" if kvm else "qemu")
    SubElement(domain, "name").text = name
    SubElement(domain, "memory", unit="MiB").text = str(config.memory_mb)
    SubElement(domain, "vcpu", placement="static").text = str(config.cpus)
    os_el = SubElement(domain, "os")
    SubElement(os_el, "type", arch="x86_64", machine="q35").text = "hvm"
    features = SubElement(domain, "features")
    for feature in ("acpi", "apic"):
        SubElement(features, feature)
    if kvm:
        SubElement(domain, "cpu", mode="host-passthrough")
    SubElement(domain, "on_reboot").text = "restart"

    devices = SubElement(domain, "devices")
    disk_el = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk_el, "driver", name="qemu", type="qcow2")
    SubElement(disk_el, "source", file=str(disk))
    SubElement(disk_el, "target", dev="vda", bus="virtio")
    SubElement(disk_el, "boot", order="2")

    devices.append(fromstring(render_cdrom_xml(config.boot_iso, boot_order=1)))

    iface = SubElement(devices, "interface", type="user")
    SubElement(iface, "backend", type="passt")
    SubElement(iface, "model", type="e1000")
    forward = SubElement(iface, "portForward", proto="tcp", address="127.0.0.1")
    SubElement(forward, "range", start=str(ssh_port), to=str(config.guest_ssh_port))

    serial = SubElement(devices, "serial", type="file")
    SubElement(serial, "source", path=str(serial_log))
    SubElement(serial, "target", port="0")

    SubElement(devices, "graphics", type="vnc", listen="127.0.0.1", autoport="yes")
    video = SubElement(devices, "video")
    SubElement(video, "model", type="vga")
    return _element_to_str(domain)


@dataclass
class _Domain:
    domain: object
    config: ProviderConfig
    serial_log: Path


class LibvirtProvider:
    kind = "libvirt"

    def __init__(self, settings: Optional[Settings] = None, uri: str = LIBVIRT_URI) -> None:
        self.settings = settings or Settings()
        self.uri = uri
        self.conn = None
        self._domains: Dict[str, _Domain] = {}

    def check_available(self) -> None:
        if libvirt is None:
            raise ProviderUnavailable("libvirt python bindings not available (install the 'libvirt' extra)")
        if not binary_available(QEMU_IMG_BINARY):
            raise ProviderUnavailable(f"{QEMU_IMG_BINARY} not found in PATH")
        try:
            conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise ProviderUnavailable(f"Cannot connect to libvirt at {self.uri}: {_error_message(exc)}") from exc
        if conn is None:
            raise ProviderUnavailable(f"Failed to open libvirt connection to {self.uri}")
        self.conn = conn

    def _entry(self, handle: VMHandle) -> _Domain:
        require_session(handle)
        try:
            return self._domains[handle.build_id]
        except KeyError:
            raise ChannelError(f"No libvirt domain for build {handle.build_id}") from None

    def launch(
        self, handle: VMHandle, config: ProviderConfig, cancel: Optional[CancelToken] = None
    ) -> ProviderSession:
        if self.conn is None:
            self.check_available()
        ensure_directory(handle.workdir)
        disk = handle.workdir / "disk.qcow2"
        serial_log = handle.workdir / "serial.log"
        name = f"{handle.name}-{handle.build_id[:8]}"
        try:
            run([QEMU_IMG_BINARY, "create", "-f", "qcow2", str(disk), config.disk_size], capture_output=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            raise BootTimeout(f"qemu-img create failed: {exc}") from exc

        ssh_port = config.host_ssh_port or find_free_port()
        xml = render_domain_xml(name, config, disk, serial_log, ssh_port, kvm_available())
        log("DEBUG", f"Domain XML for {name}:\n{xml}")
        try:
            domain = self.conn.defineXML(xml)
        except libvirt.libvirtError as exc:
            raise BootTimeout(f"Failed to define domain {name}: {_error_message(exc)}") from exc

        try:
            domain.create()
            deadline = time.time() + config.boot_timeout
            while not domain.isActive():
                if time.time() >= deadline:
                    raise BootTimeout(f"Domain {name} did not reach running within {config.boot_timeout:g}s")
                interruptible_sleep(0.5, cancel)
        except libvirt.libvirtError as exc:
            self._destroy(domain)
            raise BootTimeout(f"Failed to start domain {name}: {_error_message(exc)}") from exc
        except (BootTimeout, BuildCancelled):
            self._destroy(domain)
            raise

        self._domains[handle.build_id] = _Domain(domain=domain, config=config, serial_log=serial_log)
        log("SUCCESS", f"libvirt domain {name} running (ssh port {ssh_port})")
        return ProviderSession(
            session_id=domain.UUIDString(),
            ssh_port=ssh_port,
            disk_path=disk,
            console_log=serial_log,
        )

    def _send_codes(self, domain, codes) -> None:
        try:
            domain.sendKey(libvirt.VIR_KEYCODE_SET_LINUX, KEY_HOLD_MS, list(codes), len(codes), 0)
        except libvirt.libvirtError as exc:
            raise ChannelError(f"sendKey failed: {_error_message(exc)}") from exc

    def send_key(self, handle: VMHandle, key: str, modifiers: Sequence[str] = (), repeat: int = 1) -> None:
        entry = self._entry(handle)
        codes = linux_codes(key, modifiers)
        for index in range(repeat):
            if index:
                time.sleep(self.settings.key_delay)
            self._send_codes(entry.domain, codes)

    def send_text(self, handle: VMHandle, text: str) -> None:
        entry = self._entry(handle)
        for ch in text:
            key, shifted = char_to_key(ch)
            self._send_codes(entry.domain, linux_codes(key.name, ("shift",) if shifted else ()))

    def capture_frame(self, handle: VMHandle) -> Frame:
        entry = self._entry(handle)
        if entry.config.capture == "serial":
            return read_serial_frame(entry.serial_log)
        data = bytearray()
        try:
            stream = self.conn.newStream(0)
            entry.domain.screenshot(stream, 0, 0)
            stream.recvAll(lambda _stream, chunk, buf: buf.extend(chunk), data)
            stream.finish()
        except libvirt.libvirtError as exc:
            raise ChannelError(f"Screenshot failed: {_error_message(exc)}") from exc
        return Frame(kind="image", data=bytes(data))

    def mount_iso(self, handle: VMHandle, path: Optional[Path]) -> None:
        entry = self._entry(handle)
        if path is not None and not Path(path).exists():
            raise ChannelError(f"ISO not found: {path}")
        try:
            entry.domain.updateDeviceFlags(render_cdrom_xml(path), libvirt.VIR_DOMAIN_AFFECT_LIVE)
        except libvirt.libvirtError as exc:
            raise ChannelError(f"Media change failed: {_error_message(exc)}") from exc

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

    @staticmethod
    def _destroy(domain) -> None:
        try:
            if domain.isActive():
                domain.destroy()
        except libvirt.libvirtError:
            log("DEBUG", "Could not destroy domain (libvirt connection lost)")
        try:
            domain.undefine()
        except libvirt.libvirtError:
            log("DEBUG", "Could not undefine domain (libvirt connection lost)")

    def shutdown(self, handle: VMHandle) -> None:
        entry = self._domains.pop(handle.build_id, None)
        if entry is None:
            return
        domain = entry.domain
        try:
            if domain.isActive():
                log("INFO", f"Shutting down domain for {handle.name}")
                domain.shutdown()
                deadline = time.time() + self.settings.shutdown_timeout
                while domain.isActive() and time.time() < deadline:
                    time.sleep(1.0)
                if domain.isActive():
                    log("WARN", "Guest ignored ACPI shutdown; destroying domain")
        except libvirt.libvirtError as exc:
            log("WARN", f"Graceful shutdown failed: {_error_message(exc)}")
        self._destroy(domain)
