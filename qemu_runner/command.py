"""QEMU and websockify command line assembly for docker-qemu-runner.

``assemble`` is a pure function of the configuration and the resolved
artifacts: the same inputs always yield the same argument vectors.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

from qemu_runner.arch import get_profile
from qemu_runner.constants import (
    DISK_FORMAT,
    GUEST_SSH_PORT,
    PROXY_BIND_ADDRESS,
    PROXY_BINARY,
    PROXY_HEARTBEAT,
    VNC_BIND_ADDRESS,
)
from qemu_runner.models import FirmwarePair, LaunchPlan, ResolvedArtifacts, VmConfig


def firmware_args(firmware: Optional[FirmwarePair]) -> List[str]:
    if firmware is None:
        return []
    return [
        "-drive",
        f"if=pflash,format=raw,readonly=on,file={firmware.code_path}",
        "-drive",
        f"if=pflash,format=raw,file={firmware.vars_path}",
    ]


def network_args(config: VmConfig) -> List[str]:
    device = get_profile(config.arch).network_device(config.network_model)
    return [
        "-netdev",
        f"user,id=net0,hostfwd=tcp::{config.ssh_port}-:{GUEST_SSH_PORT}",
        "-device",
        f"{device},netdev=net0",
    ]


def display_args(config: VmConfig) -> List[str]:
    if config.novnc_enabled:
        # Raw VNC stays on loopback; only the proxy listens externally.
        return ["-vnc", f"{VNC_BIND_ADDRESS}:{config.vnc_display}"]
    return ["-nographic", "-serial", "mon:stdio"]


def proxy_args(config: VmConfig, include_web: bool) -> Tuple[str, ...]:
    cmd = [PROXY_BINARY]
    if include_web and config.novnc_web is not None:
        cmd.extend(["--web", str(config.novnc_web)])
    cmd.extend(
        [
            f"--heartbeat={PROXY_HEARTBEAT}",
            f"{PROXY_BIND_ADDRESS}:{config.novnc_port}",
            f"{VNC_BIND_ADDRESS}:{config.vnc_port}",
        ]
    )
    return tuple(cmd)


def assemble(config: VmConfig, artifacts: ResolvedArtifacts, serve_web: bool = True) -> LaunchPlan:
    """Build the hypervisor argv (and the proxy argv in noVNC mode).

    ``serve_web`` controls whether websockify also serves the noVNC assets;
    the caller decides it from the filesystem so this function stays pure.
    """
    if config.boot_mode.requires_install_media:
        assert artifacts.iso_path is not None, "install mode requires a provisioned ISO"

    profile = get_profile(config.arch)
    cmd: List[str] = [config.qemu_binary]
    cmd.extend(profile.machine_args(artifacts.kvm))
    cmd.extend(["-m", str(config.memory_mb), "-smp", str(config.cpus)])
    cmd.extend(firmware_args(artifacts.firmware))
    cmd.extend(["-drive", f"file={artifacts.disk_path},if=virtio,cache=writeback,format={DISK_FORMAT}"])
    cmd.extend(network_args(config))
    cmd.extend(display_args(config))
    cmd.extend(config.boot_mode.boot_args(artifacts.iso_path))
    # Appended last so they can override anything above.
    cmd.extend(config.extra_args)

    if not config.novnc_enabled:
        return LaunchPlan(hypervisor=tuple(cmd))
    return LaunchPlan(
        hypervisor=tuple(cmd),
        proxy=proxy_args(config, serve_web),
        vnc_port=config.vnc_port,
    )
