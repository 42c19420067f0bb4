"""Configuration loading and environment variable parsing for image-puppet."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from imagepuppet.constants import (
    CAPTURE_MODES,
    DEFAULT_ACTION_DELAY,
    DEFAULT_BOOT_TIMEOUT,
    DEFAULT_BUILD_WORKERS,
    DEFAULT_CPUS,
    DEFAULT_DETECT_INTERVAL,
    DEFAULT_DISK_SIZE,
    DEFAULT_GUEST_SSH_PORT,
    DEFAULT_KEY_DELAY,
    DEFAULT_MEMORY_MB,
    DEFAULT_OCR_THRESHOLD,
    DEFAULT_REMOTE_ATTEMPTS,
    DEFAULT_REMOTE_BACKOFF,
    DEFAULT_REMOTE_BACKOFF_MAX,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_STAGE_TIMEOUT,
    PROVIDER_ALIASES,
    SUPPORTED_PROVIDERS,
)
from imagepuppet.exceptions import ConfigurationError
from imagepuppet.models import ProviderConfig
from imagepuppet.utils import (
    get_env,
    get_env_bool,
    parse_duration,
    parse_float_env,
    parse_int_env,
    parse_memory,
    validate_disk_size,
)


@dataclass(frozen=True)
class Settings:
    """Engine tunables shared by every build of a process."""

    detect_interval: float = DEFAULT_DETECT_INTERVAL
    ocr_threshold: float = DEFAULT_OCR_THRESHOLD
    key_delay: float = DEFAULT_KEY_DELAY
    action_delay: float = DEFAULT_ACTION_DELAY
    remote_attempts: int = DEFAULT_REMOTE_ATTEMPTS
    remote_backoff: float = DEFAULT_REMOTE_BACKOFF
    remote_backoff_max: float = DEFAULT_REMOTE_BACKOFF_MAX
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    build_workers: int = DEFAULT_BUILD_WORKERS
    save_frames: bool = False


def parse_settings() -> Settings:
    return Settings(
        detect_interval=parse_float_env("DETECT_INTERVAL", str(DEFAULT_DETECT_INTERVAL), min_val=0.01),
        ocr_threshold=parse_float_env("OCR_THRESHOLD", str(DEFAULT_OCR_THRESHOLD), min_val=0.0, max_val=1.0),
        key_delay=parse_float_env("KEY_DELAY", str(DEFAULT_KEY_DELAY)),
        action_delay=parse_float_env("ACTION_DELAY", str(DEFAULT_ACTION_DELAY)),
        remote_attempts=parse_int_env("REMOTE_ATTEMPTS", str(DEFAULT_REMOTE_ATTEMPTS), min_val=1, max_val=100),
        remote_backoff=parse_float_env("REMOTE_BACKOFF", str(DEFAULT_REMOTE_BACKOFF)),
        remote_backoff_max=parse_float_env("REMOTE_BACKOFF_MAX", str(DEFAULT_REMOTE_BACKOFF_MAX)),
        shutdown_timeout=parse_float_env("SHUTDOWN_TIMEOUT", str(DEFAULT_SHUTDOWN_TIMEOUT)),
        build_workers=parse_int_env("BUILD_WORKERS", str(DEFAULT_BUILD_WORKERS), min_val=1, max_val=64),
        save_frames=get_env_bool("SAVE_FRAMES", False),
    )


def normalize_provider_kind(raw: str) -> str:
    kind = (raw or "").strip().lower()
    kind = PROVIDER_ALIASES.get(kind, kind)
    if kind not in SUPPORTED_PROVIDERS:
        raise ConfigurationError(
            f"Unsupported provider '{raw}'. Supported providers: {', '.join(SUPPORTED_PROVIDERS)}"
        )
    return kind


def _port(raw: Any, field: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{field} must be an integer (got '{raw}')")
    if not 1 <= value <= 65535:
        raise ConfigurationError(f"{field} must be between 1 and 65535 (got {value})")
    return value


def parse_provider_config(raw: Optional[Mapping[str, Any]], base_dir: Optional[Path] = None) -> ProviderConfig:
    """Build a ProviderConfig from the ``provider`` mapping of a build file.

    Environment variables ``PUPPET_PROVIDER``, ``MEMORY``, ``CPUS`` and
    ``DISK_SIZE`` override the file so one description can be reused across
    hosts.
    """
    data: Dict[str, Any] = dict(raw or {})
    unknown = set(data) - {
        "kind",
        "memory",
        "cpus",
        "disk_size",
        "stage_timeout",
        "boot_timeout",
        "boot_iso",
        "capture",
        "ssh_port",
        "host_ssh_port",
        "extra_args",
    }
    if unknown:
        raise ConfigurationError(f"Unknown provider option(s): {', '.join(sorted(unknown))}")

    kind = normalize_provider_kind(get_env("PUPPET_PROVIDER") or str(data.get("kind", "qemu")))

    memory_raw = get_env("MEMORY") or data.get("memory", DEFAULT_MEMORY_MB)
    memory_mb = parse_memory(memory_raw)

    if get_env("CPUS"):
        cpus = parse_int_env("CPUS", str(DEFAULT_CPUS), min_val=1, max_val=256)
    else:
        try:
            cpus = int(data.get("cpus", DEFAULT_CPUS))
        except (TypeError, ValueError):
            raise ConfigurationError(f"cpus must be an integer (got '{data.get('cpus')}')")
        if cpus < 1:
            raise ConfigurationError(f"cpus must be >= 1 (got {cpus})")

    disk_size = validate_disk_size(str(get_env("DISK_SIZE") or data.get("disk_size", DEFAULT_DISK_SIZE)))

    stage_timeout = parse_duration(data.get("stage_timeout", DEFAULT_STAGE_TIMEOUT), "stage_timeout")
    boot_timeout = parse_duration(data.get("boot_timeout", DEFAULT_BOOT_TIMEOUT), "boot_timeout")
    if stage_timeout <= 0 or boot_timeout <= 0:
        raise ConfigurationError("stage_timeout and boot_timeout must be positive")

    boot_iso: Optional[Path] = None
    if data.get("boot_iso"):
        boot_iso = Path(str(data["boot_iso"])).expanduser()
        if not boot_iso.is_absolute() and base_dir is not None:
            boot_iso = base_dir / boot_iso

    capture = str(data.get("capture", "screen")).strip().lower()
    if capture not in CAPTURE_MODES:
        raise ConfigurationError(f"capture must be one of {', '.join(sorted(CAPTURE_MODES))} (got '{capture}')")

    guest_ssh_port = _port(data.get("ssh_port", DEFAULT_GUEST_SSH_PORT), "ssh_port")
    host_ssh_port = None
    if data.get("host_ssh_port") is not None:
        host_ssh_port = _port(data["host_ssh_port"], "host_ssh_port")

    extra = data.get("extra_args") or ()
    if isinstance(extra, str):
        extra = extra.split()
    extra_args = tuple(str(arg) for arg in extra)

    return ProviderConfig(
        kind=kind,
        memory_mb=memory_mb,
        cpus=cpus,
        disk_size=disk_size,
        stage_timeout=stage_timeout,
        boot_timeout=boot_timeout,
        boot_iso=boot_iso,
        capture=capture,
        guest_ssh_port=guest_ssh_port,
        host_ssh_port=host_ssh_port,
        extra_args=extra_args,
    )
