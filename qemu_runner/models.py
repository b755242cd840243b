"""Data models for docker-qemu-runner."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from qemu_runner.boot import BootMode
from qemu_runner.constants import VNC_BASE_PORT


@dataclass(frozen=True)
class VmConfig:
    arch: str
    boot_mode: BootMode
    firmware: str  # "legacy", "uefi"
    memory_mb: int
    cpus: int
    disk: str  # local path or http(s) URL
    disk_size: str
    iso: str  # local path or http(s) URL
    images_dir: Path
    qemu_binary: str
    iso_url: Optional[str] = None
    accel: str = "auto"  # "auto", "off"
    require_kvm: bool = False
    display: str = "none"  # "none", "novnc"
    vnc_display: int = 1
    novnc_port: int = 6080
    novnc_web: Optional[Path] = None
    ssh_port: int = 2222
    network_model: str = "virtio"
    extra_args: Tuple[str, ...] = ()
    download_retries: int = 3
    iso_sha256: Optional[str] = None
    disk_sha256: Optional[str] = None

    @property
    def vnc_port(self) -> int:
        return VNC_BASE_PORT + self.vnc_display

    @property
    def novnc_enabled(self) -> bool:
        return self.display == "novnc"


@dataclass(frozen=True)
class FirmwarePair:
    code_path: Path
    vars_path: Path


@dataclass(frozen=True)
class ResolvedArtifacts:
    disk_path: Path
    iso_path: Optional[Path] = None
    firmware: Optional[FirmwarePair] = None
    kvm: bool = False


@dataclass(frozen=True)
class LaunchPlan:
    hypervisor: Tuple[str, ...]
    proxy: Optional[Tuple[str, ...]] = None
    vnc_port: Optional[int] = None

    @property
    def primary(self) -> str:
        """Name of the child whose exit ends the session."""
        return "proxy" if self.proxy else "hypervisor"

    def render(self) -> str:
        return " ".join(self.hypervisor)
