"""Global constants and path configuration for image-puppet."""

from __future__ import annotations

import os
import re
from pathlib import Path

# DATA_DIR provides a single mount point for build working directories and
# session records. STATE_DIR overrides only the session record location.
_DATA_DIR = os.environ.get("DATA_DIR")
if _DATA_DIR:
    _data = Path(_DATA_DIR)
    WORK_DIR = _data / "builds"
    STATE_DIR = _data / "state"
else:
    WORK_DIR = Path("/var/tmp/image-puppet")
    STATE_DIR = Path("/var/lib/image-puppet")
if os.environ.get("STATE_DIR"):
    STATE_DIR = Path(os.environ["STATE_DIR"])

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///session")
QEMU_BINARY = os.environ.get("QEMU_BINARY", "qemu-system-x86_64")
QEMU_IMG_BINARY = os.environ.get("QEMU_IMG_BINARY", "qemu-img")
VBOXMANAGE_BINARY = os.environ.get("VBOXMANAGE_BINARY", "VBoxManage")

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
MEMORY_RE = re.compile(r"^\s*(\d+)\s*([KMGT]i?B?|[KMGT])?\s*$", re.IGNORECASE)
TEMPLATE_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

SUPPORTED_PROVIDERS = ("qemu", "virtualbox", "libvirt")
PROVIDER_ALIASES = {
    "vbox": "virtualbox",
    "kvm": "qemu",
}
CAPTURE_MODES = {"screen", "serial"}
PACK_FORMATS = {"iso", "qcow2", "raw"}

# VM defaults
DEFAULT_MEMORY_MB = 2048
DEFAULT_CPUS = 2
DEFAULT_DISK_SIZE = "20G"
DEFAULT_BOOT_TIMEOUT = 120.0
DEFAULT_STAGE_TIMEOUT = 1800.0
DEFAULT_GUEST_SSH_PORT = 22

# Engine tunables
DEFAULT_DETECT_INTERVAL = 2.0
DEFAULT_OCR_THRESHOLD = 0.8
DEFAULT_KEY_DELAY = 0.1
DEFAULT_ACTION_DELAY = 0.05
DEFAULT_REMOTE_ATTEMPTS = 5
DEFAULT_REMOTE_BACKOFF = 2.0
DEFAULT_REMOTE_BACKOFF_MAX = 30.0
DEFAULT_REMOTE_TIMEOUT = 300.0
DEFAULT_WAIT_FOR_TIMEOUT = 300.0
DEFAULT_SHUTDOWN_TIMEOUT = 30.0
DEFAULT_BUILD_WORKERS = 2
DEFAULT_COPY_PERMISSIONS = 0o644

SESSION_RECORD_SUFFIX = ".session.json"
HANDOFF_MANIFEST_NAME = "handoff.json"

_SENSITIVE_FIELDS = {"password", "private_key"}
