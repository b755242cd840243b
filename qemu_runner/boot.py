"""Boot mode selection for docker-qemu-runner.

A run is either an installation (boot the installer ISO, write to a possibly
fresh disk) or a normal boot of the persistent disk. Switching between the two
is done by re-running with a different ``BOOT_MODE``; nothing is remembered
between runs.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import List, Optional

from qemu_runner.exceptions import ConfigError


class BootMode(str, Enum):
    INSTALL = "install"
    BOOT = "boot"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "BootMode":
        value = (raw or "").strip().lower()
        for mode in cls:
            if mode.value == value:
                return mode
        raise ConfigError(f"Unknown BOOT_MODE '{raw}'. Use 'install' or 'boot'.")

    @property
    def requires_install_media(self) -> bool:
        return self is BootMode.INSTALL

    def boot_args(self, iso_path: Optional[Path]) -> List[str]:
        if self is BootMode.INSTALL:
            assert iso_path is not None, "install mode reached the assembler without an ISO"
            return ["-cdrom", str(iso_path), "-boot", "d"]
        return ["-boot", "c"]

    def describe(self, disk: Path, iso: Optional[Path]) -> str:
        if self is BootMode.INSTALL:
            return f"install mode: booting installer ISO {iso}"
        return f"boot mode: booting disk image {disk}"
