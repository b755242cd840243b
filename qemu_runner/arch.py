"""Per-architecture capabilities for docker-qemu-runner.

Everything that differs between x86_64 and aarch64 guests lives here, so the
provisioning and launch flow stays the same for both.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Tuple

from qemu_runner.constants import ARCH_ALIASES, NETWORK_DEVICES, VARS_STORE_SIZE
from qemu_runner.exceptions import ConfigError


class ArchProfile:
    name = ""
    machine = ""
    tcg_cpu = ""
    # Searched in order, most specific packaging layout first.
    firmware_candidates: Tuple[Path, ...] = ()
    vars_size = VARS_STORE_SIZE

    @property
    def default_binary(self) -> str:
        return f"qemu-system-{self.name}"

    def machine_args(self, kvm: bool) -> List[str]:
        raise NotImplementedError

    def network_device(self, model: str) -> str:
        return NETWORK_DEVICES[model]


class X86Profile(ArchProfile):
    name = "x86_64"
    machine = "q35"
    tcg_cpu = "qemu64"
    firmware_candidates = (
        Path("/usr/share/OVMF/OVMF_CODE_4M.fd"),
        Path("/usr/share/OVMF/OVMF_CODE.fd"),
        Path("/usr/share/edk2/ovmf/OVMF_CODE.fd"),
        Path("/usr/share/edk2/x64/OVMF_CODE.fd"),
        Path("/usr/share/ovmf/x64/OVMF_CODE.fd"),
        Path("/usr/share/qemu/edk2-x86_64-code.fd"),
    )

    def machine_args(self, kvm: bool) -> List[str]:
        if kvm:
            return ["-machine", self.machine, "-enable-kvm", "-cpu", "host"]
        return ["-machine", self.machine, "-cpu", self.tcg_cpu]


class Aarch64Profile(ArchProfile):
    name = "aarch64"
    machine = "virt"
    tcg_cpu = "cortex-a72"
    firmware_candidates = (
        Path("/usr/share/AAVMF/AAVMF_CODE.fd"),
        Path("/usr/share/qemu-efi-aarch64/QEMU_EFI.fd"),
        Path("/usr/share/edk2/aarch64/QEMU_EFI-pflash.raw"),
        Path("/usr/share/qemu/edk2-aarch64-code.fd"),
    )
    # The virt board maps each pflash unit as a full 64 MiB bank.
    vars_size = 64 * 1024 * 1024

    def machine_args(self, kvm: bool) -> List[str]:
        accel = "kvm" if kvm else "tcg"
        cpu = "host" if kvm else self.tcg_cpu
        return ["-machine", f"{self.machine},accel={accel}", "-cpu", cpu]


ARCH_PROFILES: Dict[str, ArchProfile] = {
    profile.name: profile for profile in (X86Profile(), Aarch64Profile())
}


def normalize_arch(raw: str) -> str:
    candidate = (raw or "").strip().lower() or "x86_64"
    arch = ARCH_ALIASES.get(candidate, candidate)
    if arch not in ARCH_PROFILES:
        supported = ", ".join(sorted(ARCH_PROFILES))
        raise ConfigError(f"Unsupported ARCH '{raw}'. Supported: {supported}")
    return arch


def get_profile(arch: str) -> ArchProfile:
    return ARCH_PROFILES[normalize_arch(arch)]
