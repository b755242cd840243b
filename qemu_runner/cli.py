"""CLI entry points for docker-qemu-runner."""

from __future__ import annotations

import argparse
import dataclasses
import os
import shlex
import sys
from pathlib import Path
from typing import List, Optional

from qemu_runner.arch import get_profile
from qemu_runner.command import assemble
from qemu_runner.config import parse_env, preflight
from qemu_runner.constants import FALLBACK_IMAGES_DIR
from qemu_runner.exceptions import FirmwareDegraded, ManagerError
from qemu_runner.firmware import locate_code_image, vars_path_for
from qemu_runner.models import FirmwarePair, LaunchPlan, ResolvedArtifacts, VmConfig
from qemu_runner.provision import provision
from qemu_runner.supervisor import Supervisor
from qemu_runner.utils import filename_from_url, is_url, kvm_available, log


def show_config(cfg: VmConfig) -> None:
    """Print the resolved VM configuration and exit."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if isinstance(value, tuple):
            value = " ".join(value) or "-"
        elif value is None:
            value = "-"
        print(f"  {field.name}: {value}")


def predict_artifacts(cfg: VmConfig) -> ResolvedArtifacts:
    """Where provisioning would put things, without touching the filesystem."""
    artifacts_dir = cfg.images_dir
    probe = cfg.images_dir if cfg.images_dir.exists() else cfg.images_dir.parent
    if not os.access(probe, os.W_OK):
        artifacts_dir = FALLBACK_IMAGES_DIR

    def _local(value: str) -> Path:
        if is_url(value):
            return artifacts_dir / filename_from_url(value)
        path = Path(value)
        if not path.exists() and path.parent == cfg.images_dir:
            return artifacts_dir / path.name
        return path

    iso_path = _local(cfg.iso) if cfg.boot_mode.requires_install_media else None
    firmware = None
    if cfg.firmware == "uefi":
        profile = get_profile(cfg.arch)
        try:
            code_path = locate_code_image(profile)
        except FirmwareDegraded as exc:
            log("WARN", f"{exc}; would continue with legacy boot")
        else:
            firmware = FirmwarePair(code_path=code_path, vars_path=vars_path_for(code_path, artifacts_dir))
    kvm = cfg.accel != "off" and kvm_available()
    return ResolvedArtifacts(disk_path=_local(cfg.disk), iso_path=iso_path, firmware=firmware, kvm=kvm)


def build_plan(cfg: VmConfig, artifacts: ResolvedArtifacts) -> LaunchPlan:
    serve_web = False
    if cfg.novnc_enabled:
        serve_web = cfg.novnc_web is not None and cfg.novnc_web.is_dir()
        if not serve_web:
            log("WARN", f"noVNC web assets not found at {cfg.novnc_web}; websockify will proxy without serving them")
    return assemble(cfg, artifacts, serve_web=serve_web)


def print_plan(plan: LaunchPlan) -> None:
    print(shlex.join(plan.hypervisor))
    if plan.proxy:
        print(shlex.join(plan.proxy))


def print_startup_banner(cfg: VmConfig, artifacts: ResolvedArtifacts) -> None:
    """Print an access-info banner before the hypervisor takes over the terminal."""
    lines: List[str] = []
    lines.append(f"  Arch: {cfg.arch} | Memory: {cfg.memory_mb} MiB | CPUs: {cfg.cpus} | Boot: {cfg.boot_mode.value}")
    lines.append(f"  {cfg.boot_mode.describe(artifacts.disk_path, artifacts.iso_path)}")
    lines.append(f"  SSH:  port {cfg.ssh_port} -> guest:22")
    ports = [f"-p {cfg.ssh_port}:{cfg.ssh_port}"]
    if cfg.novnc_enabled:
        lines.append(f"  VNC:  http://localhost:{cfg.novnc_port}/vnc.html")
        ports.append(f"-p {cfg.novnc_port}:{cfg.novnc_port}")
    if not artifacts.kvm:
        lines.append("  Acceleration: none (TCG)")
    lines.append("")
    lines.append("  Ensure docker ports are published:")
    lines.append(f"    {' '.join(ports)}")

    border = "=" * (max(len(line) for line in lines) + 2)
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{border}{reset}", file=sys.stderr, flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", file=sys.stderr, flush=True)
    print(f"{banner_colour}{border}{reset}", file=sys.stderr, flush=True)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a QEMU virtual machine inside a container")
    parser.add_argument("--show-config", action="store_true", help="Show resolved VM configuration and exit")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate config and required binaries, print the command that would run, then exit",
    )
    parser.add_argument(
        "--print-command",
        action="store_true",
        help="Provision artifacts, print the final command line, then exit without launching",
    )
    args = parser.parse_args(argv)

    try:
        cfg = parse_env()
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    try:
        preflight(cfg)
        if args.dry_run:
            plan = build_plan(cfg, predict_artifacts(cfg))
            print_plan(plan)
            log("INFO", "Dry-run complete (nothing provisioned, no VM started)")
            return 0
        log("INFO", f"VM: {cfg.arch} | Memory: {cfg.memory_mb} MiB | CPUs: {cfg.cpus} | Disk: {cfg.disk_size}")
        artifacts = provision(cfg)
        plan = build_plan(cfg, artifacts)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.print_command:
        print_plan(plan)
        return 0

    print_startup_banner(cfg, artifacts)
    try:
        return Supervisor(plan).run()
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
