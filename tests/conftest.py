"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from qemu_runner.boot import BootMode
from qemu_runner.models import VmConfig


@pytest.fixture
def images_dir(tmp_path) -> Path:
    path = tmp_path / "images"
    path.mkdir()
    return path


@pytest.fixture
def default_vm_config(images_dir, tmp_path) -> VmConfig:
    """Return a headless x86_64 install-mode VmConfig rooted in tmp_path."""
    return VmConfig(
        arch="x86_64",
        boot_mode=BootMode.INSTALL,
        firmware="legacy",
        memory_mb=2048,
        cpus=2,
        disk=str(images_dir / "disk.qcow2"),
        disk_size="20G",
        iso=str(images_dir / "install.iso"),
        images_dir=images_dir,
        qemu_binary="qemu-system-x86_64",
        novnc_web=tmp_path / "novnc",
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() reads, so each test starts clean.
_PARSE_ENV_VARS = [
    "ARCH",
    "BOOT_MODE",
    "FIRMWARE",
    "MEMORY",
    "CPUS",
    "DISK",
    "DISK_SIZE",
    "DISK_SHA256",
    "ISO",
    "ISO_URL",
    "ISO_SHA256",
    "ACCEL",
    "REQUIRE_KVM",
    "GRAPHICS",
    "VNC_DISPLAY",
    "NOVNC_PORT",
    "NOVNC_WEB",
    "SSH_PORT",
    "NETWORK_MODEL",
    "EXTRA_ARGS",
    "IMAGES_DIR",
    "QEMU_BIN",
    "DOWNLOAD_RETRIES",
    "CONFIG_FILE",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear every variable parse_env() reads and point CONFIG_FILE at nothing."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CONFIG_FILE", str(tmp_path / "no-such-profile.yaml"))
