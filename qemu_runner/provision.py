"""Artifact provisioning (disk image, installer ISO, firmware) for docker-qemu-runner."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from qemu_runner.constants import DISK_FORMAT, FALLBACK_IMAGES_DIR, IMAGE_TOOL
from qemu_runner.exceptions import ConfigError, ProvisionError
from qemu_runner.firmware import resolve_firmware
from qemu_runner.models import ResolvedArtifacts, VmConfig
from qemu_runner.utils import (
    directory_writable,
    download_file_with_retry,
    ensure_directory,
    filename_from_url,
    is_url,
    kvm_available,
    log,
    run,
    sha256_file,
)


class Provisioner:
    """Turns a VmConfig into files that exist on disk.

    Every step is skipped when its output already exists, so a second run
    with the same configuration touches neither the network nor ``qemu-img``.
    """

    def __init__(self, config: VmConfig) -> None:
        self.cfg = config
        self.downloads = 0
        self.disks_created = 0
        self.artifacts_dir = self._select_artifacts_dir()

    def provision(self) -> ResolvedArtifacts:
        kvm = self._resolve_accel()
        iso_path: Optional[Path] = None
        if self.cfg.boot_mode.requires_install_media:
            iso_path = self._resolve_iso()
        disk_path = self._resolve_disk()
        firmware = resolve_firmware(self.cfg, self.artifacts_dir)
        log(
            "INFO",
            f"Provisioning complete ({self.downloads} download(s), {self.disks_created} disk(s) created)",
        )
        return ResolvedArtifacts(disk_path=disk_path, iso_path=iso_path, firmware=firmware, kvm=kvm)

    def _select_artifacts_dir(self) -> Path:
        if directory_writable(self.cfg.images_dir):
            return self.cfg.images_dir
        log("WARN", f"{self.cfg.images_dir} is not writable; using {FALLBACK_IMAGES_DIR} for downloads")
        if not directory_writable(FALLBACK_IMAGES_DIR):
            raise ProvisionError(f"Neither {self.cfg.images_dir} nor {FALLBACK_IMAGES_DIR} is writable")
        return FALLBACK_IMAGES_DIR

    def _local_target(self, path: Path) -> Path:
        """Where a missing artifact under the images directory is written after a fallback."""
        if path.parent == self.cfg.images_dir and self.artifacts_dir != self.cfg.images_dir:
            return self.artifacts_dir / path.name
        return path

    def _resolve_accel(self) -> bool:
        if self.cfg.accel == "off":
            log("INFO", "ACCEL=off: running in software emulation (TCG)")
            return False
        if kvm_available():
            log("INFO", "KVM device found: enabling hardware acceleration")
            return True
        if self.cfg.require_kvm:
            raise ConfigError(
                "REQUIRE_KVM=1 is set but /dev/kvm is not available. "
                "Add --device /dev/kvm:/dev/kvm or unset REQUIRE_KVM."
            )
        log("WARN", "/dev/kvm not found: running in software emulation (TCG), expect 10-50x slower guests")
        return False

    def _fetch(self, url: str, label: str, checksum: Optional[str]) -> Path:
        destination = self.artifacts_dir / filename_from_url(url)
        if destination.is_file() and destination.stat().st_size > 0:
            if checksum is None or self._checksum_matches(destination, checksum):
                log("INFO", f"{label} already present at {destination}; skipping download")
                return destination
            log("WARN", f"{destination} does not match the configured SHA-256; downloading again")
            destination.unlink()
        self._download(url, destination, label, checksum)
        return destination

    def _download(self, url: str, destination: Path, label: str, checksum: Optional[str]) -> None:
        ensure_directory(destination.parent)
        download_file_with_retry(
            url,
            destination,
            label=f"Downloading {label}",
            retries=self.cfg.download_retries,
        )
        self.downloads += 1
        if not destination.is_file() or destination.stat().st_size == 0:
            raise ProvisionError(f"Downloaded {label} is missing or empty: {destination}")
        if checksum is not None and not self._checksum_matches(destination, checksum):
            destination.unlink(missing_ok=True)
            raise ProvisionError(f"SHA-256 mismatch for {url}; removed {destination}")

    @staticmethod
    def _checksum_matches(path: Path, expected: str) -> bool:
        return sha256_file(path) == expected.lower()

    def _resolve_iso(self) -> Path:
        if is_url(self.cfg.iso):
            return self._fetch(self.cfg.iso, "installer ISO", self.cfg.iso_sha256)

        iso_path = Path(self.cfg.iso)
        if not iso_path.is_file():
            iso_path = self._local_target(iso_path)
        if not iso_path.is_file() and self.cfg.iso_url:
            log("INFO", f"ISO not found at {iso_path}; fetching ISO_URL")
            self._download(self.cfg.iso_url, iso_path, "installer ISO", self.cfg.iso_sha256)
        if not iso_path.is_file():
            raise ProvisionError(
                f"Missing install media: BOOT_MODE=install but no ISO at {iso_path}. "
                "Place the installer ISO there, or set ISO_URL (or ISO to an http(s) URL) to download it."
            )
        log("INFO", f"Using installer ISO {iso_path}")
        return iso_path

    def _resolve_disk(self) -> Path:
        if is_url(self.cfg.disk):
            return self._fetch(self.cfg.disk, "disk image", self.cfg.disk_sha256)

        disk_path = Path(self.cfg.disk)
        if not disk_path.exists():
            disk_path = self._local_target(disk_path)
        if disk_path.exists():
            log("INFO", f"Using existing disk image {disk_path}")
            return disk_path
        self._create_disk(disk_path)
        return disk_path

    def _create_disk(self, disk_path: Path) -> None:
        log("INFO", f"No disk at {disk_path}; creating a {self.cfg.disk_size} {DISK_FORMAT} image")
        try:
            ensure_directory(disk_path.parent)
            run(
                [IMAGE_TOOL, "create", "-f", DISK_FORMAT, str(disk_path), self.cfg.disk_size],
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise ConfigError(f"Required binary not found: {IMAGE_TOOL}") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip() or f"exit code {exc.returncode}"
            raise ProvisionError(f"Failed to create disk image {disk_path}: {detail}") from exc
        except OSError as exc:
            raise ProvisionError(f"Failed to create disk image {disk_path}: {exc}") from exc
        self.disks_created += 1
        log("SUCCESS", f"Created disk image {disk_path} ({self.cfg.disk_size})")


def provision(config: VmConfig) -> ResolvedArtifacts:
    return Provisioner(config).provision()
