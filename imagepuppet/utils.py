"""Utility functions for image-puppet."""

from __future__ import annotations

import os
import shutil
import socket
import subprocess
from pathlib import Path
from typing import List, Optional

from imagepuppet.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    DURATION_RE,
    MEMORY_RE,
    TRUTHY,
)
from imagepuppet.exceptions import ConfigurationError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigurationError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_float_env(name: str, default: str, min_val: float = 0.0, max_val: Optional[float] = None) -> float:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number (got '{raw}')")
    if value < min_val:
        raise ConfigurationError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ConfigurationError(
            f"Invalid disk size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def parse_duration(raw, field: str = "duration") -> float:
    """Parse ``30``, ``30s``, ``5m``, ``1h`` or ``500ms`` into seconds."""
    if isinstance(raw, bool):
        raise ConfigurationError(f"Invalid {field} {raw!r}")
    if isinstance(raw, (int, float)):
        if raw < 0:
            raise ConfigurationError(f"{field} must not be negative (got {raw})")
        return float(raw)
    match = DURATION_RE.match(str(raw))
    if not match:
        raise ConfigurationError(f"Invalid {field} '{raw}'. Use a number with optional unit: ms, s, m, h")
    value = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    multiplier = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}[unit]
    return value * multiplier


def parse_memory(raw) -> int:
    """Return a memory size in MiB. Bare numbers are already MiB."""
    if isinstance(raw, bool):
        raise ConfigurationError(f"Invalid memory size {raw!r}")
    if isinstance(raw, int):
        value, unit = raw, "M"
    else:
        match = MEMORY_RE.match(str(raw))
        if not match:
            raise ConfigurationError(f"Invalid memory size '{raw}'. Use e.g. 2048, 2048M or 4G")
        value = int(match.group(1))
        unit = (match.group(2) or "M")[0].upper()
    factor = {"K": 1 / 1024, "M": 1, "G": 1024, "T": 1024 * 1024}[unit]
    mib = int(value * factor)
    if mib < 128:
        raise ConfigurationError(f"Memory must be at least 128 MiB (got '{raw}')")
    return mib


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def binary_available(name: str) -> bool:
    return shutil.which(name) is not None


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def find_free_port(host: str = "127.0.0.1") -> int:
    """Ask the kernel for an unused TCP port on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def sanitize_name(name: str) -> str:
    """Return a name usable for VM definitions and file names."""
    safe = "".join(ch if ch.isalnum() or ch in "._-" else "-" for ch in name)
    safe = safe.strip("-.")
    return safe or "build"


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
