"""Configuration loading and environment variable parsing for docker-qemu-runner."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from qemu_runner.arch import get_profile, normalize_arch
from qemu_runner.boot import BootMode
from qemu_runner.constants import (
    ACCEL_MODES,
    DEFAULT_CONFIG_PATH,
    DEFAULT_DISK_NAME,
    DEFAULT_IMAGES_DIR,
    DEFAULT_ISO_NAME,
    DEFAULT_NOVNC_WEB,
    DISPLAY_MODES,
    FIRMWARE_MODES,
    IMAGE_TOOL,
    NETWORK_DEVICES,
    PROXY_BINARY,
    SHA256_RE,
    TRUTHY,
    VNC_BASE_PORT,
)
from qemu_runner.exceptions import ConfigError
from qemu_runner.models import VmConfig
from qemu_runner.utils import get_env, is_url, log, parse_int, validate_disk_size


def load_profile(config_path: Optional[Path] = None) -> Dict[str, str]:
    """Read optional YAML defaults; keys are the environment variable names."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    if not config_path.exists():
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {config_path} contains invalid YAML: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping, got {type(data).__name__}")
    profile: Dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "1" if value else "0"
        elif isinstance(value, list):
            value = " ".join(str(item) for item in value)
        profile[str(key).upper()] = str(value)
    log("INFO", f"Loaded {len(profile)} setting(s) from {config_path}")
    return profile


def _choice(name: str, raw: Optional[str], choices, default: str) -> str:
    value = (raw or default).strip().lower() or default
    if value not in choices:
        raise ConfigError(f"Unknown {name} '{raw}'. Use one of: {', '.join(choices)}")
    return value


def _sha256(name: str, raw: Optional[str]) -> Optional[str]:
    if not raw or not raw.strip():
        return None
    value = raw.strip().lower()
    if not SHA256_RE.match(value):
        raise ConfigError(f"{name} must be a 64-character hex SHA-256 digest")
    return value


def parse_env(config_path: Optional[Path] = None) -> VmConfig:
    if config_path is None:
        explicit = get_env("CONFIG_FILE")
        config_path = Path(explicit) if explicit else None
    profile = load_profile(config_path)

    def setting(name: str, default: Optional[str] = None) -> Optional[str]:
        value = get_env(name)
        if value is None:
            value = profile.get(name, default)
        return value

    def int_setting(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
        raw = setting(name, default)
        assert raw is not None
        return parse_int(name, raw.strip(), min_val=min_val, max_val=max_val)

    arch = normalize_arch(setting("ARCH", "x86_64") or "x86_64")
    boot_mode = BootMode.parse(setting("BOOT_MODE") or BootMode.INSTALL.value)
    firmware = _choice("FIRMWARE", setting("FIRMWARE"), FIRMWARE_MODES, "legacy")
    accel = _choice("ACCEL", setting("ACCEL"), ACCEL_MODES, "auto")
    display = _choice("GRAPHICS", setting("GRAPHICS"), DISPLAY_MODES, "none")
    network_model = _choice("NETWORK_MODEL", setting("NETWORK_MODEL"), tuple(NETWORK_DEVICES), "virtio")

    memory_mb = int_setting("MEMORY", "2048")
    cpus = int_setting("CPUS", "2")
    disk_size = validate_disk_size((setting("DISK_SIZE", "20G") or "20G").strip())
    vnc_display = int_setting("VNC_DISPLAY", "1", min_val=0, max_val=99)
    novnc_port = int_setting("NOVNC_PORT", "6080", max_val=65535)
    ssh_port = int_setting("SSH_PORT", "2222", max_val=65535)
    download_retries = int_setting("DOWNLOAD_RETRIES", "3", max_val=20)

    images_dir = Path((setting("IMAGES_DIR") or "").strip() or DEFAULT_IMAGES_DIR)
    disk = (setting("DISK") or "").strip() or str(images_dir / DEFAULT_DISK_NAME)
    iso = (setting("ISO") or "").strip() or str(images_dir / DEFAULT_ISO_NAME)
    iso_url = (setting("ISO_URL") or "").strip() or None
    if iso_url and not is_url(iso_url):
        raise ConfigError(f"ISO_URL must start with http:// or https:// (got '{iso_url}')")
    if iso_url and is_url(iso):
        raise ConfigError("Set only one of ISO (as a URL) or ISO_URL, not both.")

    qemu_binary = (setting("QEMU_BIN") or "").strip() or get_profile(arch).default_binary
    require_kvm = (setting("REQUIRE_KVM", "0") or "0").strip().lower() in TRUTHY
    if require_kvm and accel == "off":
        raise ConfigError("REQUIRE_KVM=1 conflicts with ACCEL=off")

    novnc_web_raw = (setting("NOVNC_WEB") or "").strip()
    novnc_web = Path(novnc_web_raw) if novnc_web_raw else DEFAULT_NOVNC_WEB
    extra_args = tuple((setting("EXTRA_ARGS") or "").split())

    active_ports = {"SSH_PORT": ssh_port}
    if display == "novnc":
        active_ports["NOVNC_PORT"] = novnc_port
        active_ports["VNC_DISPLAY"] = VNC_BASE_PORT + vnc_display
    seen: Dict[int, str] = {}
    for label, port in active_ports.items():
        if port in seen:
            raise ConfigError(
                f"Port conflict: {label}={port} collides with {seen[port]}={port}. Each service needs a unique port."
            )
        seen[port] = label

    return VmConfig(
        arch=arch,
        boot_mode=boot_mode,
        firmware=firmware,
        memory_mb=memory_mb,
        cpus=cpus,
        disk=disk,
        disk_size=disk_size,
        iso=iso,
        iso_url=iso_url,
        images_dir=images_dir,
        qemu_binary=qemu_binary,
        accel=accel,
        require_kvm=require_kvm,
        display=display,
        vnc_display=vnc_display,
        novnc_port=novnc_port,
        novnc_web=novnc_web,
        ssh_port=ssh_port,
        network_model=network_model,
        extra_args=extra_args,
        download_retries=download_retries,
        iso_sha256=_sha256("ISO_SHA256", setting("ISO_SHA256")),
        disk_sha256=_sha256("DISK_SHA256", setting("DISK_SHA256")),
    )


def required_binaries(config: VmConfig) -> List[str]:
    binaries = [config.qemu_binary, IMAGE_TOOL]
    if config.novnc_enabled:
        binaries.append(PROXY_BINARY)
    return binaries


def preflight(config: VmConfig) -> None:
    """Fail fast when an executable the session needs is not installed."""
    missing = [name for name in required_binaries(config) if shutil.which(name) is None]
    if missing:
        raise ConfigError(
            f"Required binary not found: {', '.join(missing)}. "
            "Install it in the container image or set QEMU_BIN to the emulator path."
        )
