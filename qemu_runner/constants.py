"""Global constants and path configuration for docker-qemu-runner."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path("/config/vm.yaml")

DEFAULT_IMAGES_DIR = Path("/images")
# Used when the images volume is mounted read-only or owned by another user.
FALLBACK_IMAGES_DIR = Path("/tmp/images")
DEFAULT_DISK_NAME = "disk.qcow2"
DEFAULT_ISO_NAME = "install.iso"
DISK_FORMAT = "qcow2"

DEFAULT_NOVNC_WEB = Path("/usr/share/novnc")
PROXY_BINARY = "websockify"
IMAGE_TOOL = "qemu-img"

TRUTHY = {"1", "true", "yes", "on"}
URL_SCHEMES = ("http://", "https://")

ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
}

FIRMWARE_MODES = ("legacy", "uefi")
ACCEL_MODES = ("auto", "off")
DISPLAY_MODES = ("none", "novnc")

# QEMU -device names for the user-facing NETWORK_MODEL values.
NETWORK_DEVICES = {
    "virtio": "virtio-net-pci",
    "e1000": "e1000",
    "e1000e": "e1000e",
    "rtl8139": "rtl8139",
}

GUEST_SSH_PORT = 22
VNC_BASE_PORT = 5900
VNC_BIND_ADDRESS = "127.0.0.1"
PROXY_BIND_ADDRESS = "0.0.0.0"
PROXY_HEARTBEAT = 30

VARS_STORE_SIZE = 64 * 1024

DOWNLOAD_BACKOFF = 3.0
DOWNLOAD_TIMEOUT = 30
DOWNLOAD_CHUNK_SIZE = 1024 * 256

VNC_READY_TIMEOUT = 30.0
STOP_GRACE_PERIOD = 30.0
POLL_INTERVAL = 1.0

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")
