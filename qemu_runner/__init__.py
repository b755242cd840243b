"""docker-qemu-runner package."""

__all__ = [
    "arch",
    "boot",
    "cli",
    "command",
    "config",
    "constants",
    "exceptions",
    "firmware",
    "models",
    "provision",
    "supervisor",
    "utils",
]
