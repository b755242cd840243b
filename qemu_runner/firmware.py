"""UEFI firmware discovery for docker-qemu-runner."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

from qemu_runner.arch import ArchProfile, get_profile
from qemu_runner.exceptions import FirmwareDegraded, ProvisionError
from qemu_runner.models import FirmwarePair, VmConfig
from qemu_runner.utils import ensure_directory, log


def locate_code_image(profile: ArchProfile) -> Path:
    for candidate in profile.firmware_candidates:
        if candidate.is_file():
            return candidate
    tried = ", ".join(str(p) for p in profile.firmware_candidates)
    raise FirmwareDegraded(f"No UEFI firmware found for {profile.name}. Tried: {tried}")


def vars_path_for(code_path: Path, artifacts_dir: Path) -> Path:
    return artifacts_dir / f"{code_path.stem}-vars.fd"


def vars_template_for(code_path: Path) -> Optional[Path]:
    """Distribution-provided variable store shipped next to the code image, if any."""
    if "CODE" not in code_path.name:
        return None
    template = code_path.with_name(code_path.name.replace("CODE", "VARS"))
    return template if template.is_file() else None


def ensure_vars_store(code_path: Path, artifacts_dir: Path, size: int) -> Path:
    vars_path = vars_path_for(code_path, artifacts_dir)
    if vars_path.exists():
        log("INFO", f"Reusing UEFI variable store {vars_path}")
        return vars_path
    ensure_directory(artifacts_dir)
    template = vars_template_for(code_path)
    try:
        if template is not None:
            log("INFO", f"Creating UEFI variable store {vars_path} from {template}")
            shutil.copyfile(template, vars_path)
        else:
            log("INFO", f"Creating empty UEFI variable store {vars_path} ({size} bytes)")
            with open(vars_path, "wb") as f:
                f.truncate(size)
    except OSError as exc:
        raise ProvisionError(f"Failed to create UEFI variable store {vars_path}: {exc}") from exc
    return vars_path


def resolve_firmware(config: VmConfig, artifacts_dir: Path) -> Optional[FirmwarePair]:
    """Return the pflash pair for a UEFI boot, or None to fall back to legacy boot."""
    if config.firmware != "uefi":
        return None
    profile = get_profile(config.arch)
    try:
        code_path = locate_code_image(profile)
    except FirmwareDegraded as exc:
        log("WARN", f"{exc}; continuing with legacy boot")
        return None
    vars_path = ensure_vars_store(code_path, artifacts_dir, profile.vars_size)
    log("INFO", f"UEFI firmware: code={code_path} vars={vars_path}")
    return FirmwarePair(code_path=code_path, vars_path=vars_path)
