"""image-puppet package."""

__version__ = "0.1.0"

__all__ = [
    "cli",
    "config",
    "constants",
    "controller",
    "detector",
    "exceptions",
    "interpreter",
    "keymap",
    "models",
    "packaging",
    "provider",
    "qemu",
    "recognition",
    "remote",
    "specfile",
    "status",
    "utils",
    "vbox",
]
