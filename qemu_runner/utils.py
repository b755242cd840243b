"""Utility functions for docker-qemu-runner."""

from __future__ import annotations

import hashlib
import os
import re
import socket
import subprocess
import sys
import time
from pathlib import Path, PurePosixPath
from typing import List, Optional
from urllib.parse import urlparse

import requests

from qemu_runner.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    DOWNLOAD_BACKOFF,
    DOWNLOAD_CHUNK_SIZE,
    DOWNLOAD_TIMEOUT,
    URL_SCHEMES,
)
from qemu_runner.exceptions import ConfigError, ProvisionError


def log(level: str, message: str) -> None:
    """Structured log line on stderr; stdout belongs to the guest console."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", file=sys.stderr, flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int(name: str, raw: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ConfigError(
            f"Invalid DISK_SIZE '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def is_url(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(URL_SCHEMES)  # type: ignore[union-attr]


def filename_from_url(url: str) -> str:
    """Local file name for a download: URL path basename, query string dropped."""
    name = PurePosixPath(urlparse(url).path).name
    name = re.sub(r"[^A-Za-z0-9._-]", "_", name)
    if not name or name in (".", ".."):
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:12]
        return f"download-{digest}"
    return name


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(DOWNLOAD_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Stream ``url`` into ``destination`` via a ``.part`` file renamed on success."""
    log("INFO", f"{label}: {url} -> {destination}")
    partial = destination.with_name(destination.name + ".part")
    start_time = time.time()
    downloaded = 0
    try:
        with requests.get(
            url,
            stream=True,
            timeout=DOWNLOAD_TIMEOUT,
            headers={"User-Agent": "docker-qemu-runner/1.0"},
        ) as response:
            response.raise_for_status()
            with open(partial, "wb") as out:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        out.write(chunk)
                        downloaded += len(chunk)
    except (requests.RequestException, OSError) as exc:
        partial.unlink(missing_ok=True)
        raise ProvisionError(f"Failed to download {url}: {exc}") from exc

    if downloaded == 0 or partial.stat().st_size == 0:
        partial.unlink(missing_ok=True)
        raise ProvisionError(f"Downloaded file is empty: {url}")
    partial.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def download_file_with_retry(
    url: str,
    destination: Path,
    label: str = "Downloading",
    retries: int = 3,
    backoff: float = DOWNLOAD_BACKOFF,
) -> None:
    """Retry ``download_file`` with a fixed backoff; re-raise the last failure."""
    attempts = max(1, retries)
    for attempt in range(1, attempts + 1):
        try:
            download_file(url, destination, label=label)
            return
        except ProvisionError as exc:
            if attempt == attempts:
                raise ProvisionError(f"{exc} (gave up after {attempts} attempts)") from exc
            log("WARN", f"Download attempt {attempt}/{attempts} failed: {exc}; retrying in {backoff:.0f}s")
            time.sleep(backoff)


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        log("WARN", "/dev/kvm exists but is not accessible (permissions); KVM disabled")
        return False
    else:
        os.close(fd)
        return True


def wait_for_port(
    host: str,
    port: int,
    timeout: float = 30.0,
    interval: float = 0.1,
    max_interval: float = 2.0,
    abort=None,
) -> bool:
    """Poll a TCP port until it accepts connections, doubling the delay each try.

    ``abort`` is an optional callable; when it returns True the wait stops early.
    """
    deadline = time.time() + timeout
    delay = interval
    while time.time() < deadline:
        if abort is not None and abort():
            return False
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except OSError:
            pass
        time.sleep(delay)
        delay = min(delay * 2, max_interval)
    return False


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def directory_writable(path: Path) -> bool:
    try:
        ensure_directory(path)
    except OSError:
        return False
    return os.access(path, os.W_OK)


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
