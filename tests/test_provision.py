"""Tests for qemu_runner.provision module."""

from __future__ import annotations

import hashlib
import subprocess
from dataclasses import replace
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from qemu_runner.arch import X86Profile
from qemu_runner.boot import BootMode
from qemu_runner.command import assemble
from qemu_runner.exceptions import ConfigError, ProvisionError
from qemu_runner.provision import Provisioner, provision


def _fake_download(payload: bytes = b"iso-bytes"):
    def _download(url, destination, label="Downloading", retries=3):
        Path(destination).write_bytes(payload)

    return MagicMock(side_effect=_download)


def _fake_qemu_img():
    def _run(cmd, check=True, **kwargs):
        Path(cmd[4]).write_bytes(b"QFI\xfb")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    return MagicMock(side_effect=_run)


@pytest.fixture
def no_kvm():
    with patch("qemu_runner.provision.kvm_available", return_value=False) as mock_kvm:
        yield mock_kvm


class TestScenarioInstallFromUrl:
    def test_downloads_iso_and_creates_disk(self, default_vm_config, no_kvm):
        cfg = replace(default_vm_config, iso="https://example.com/isos/debian-12.iso?mirror=eu")
        download = _fake_download()
        qemu_img = _fake_qemu_img()
        with (
            patch("qemu_runner.provision.download_file_with_retry", download),
            patch("qemu_runner.provision.run", qemu_img),
        ):
            artifacts = provision(cfg)
        assert artifacts.iso_path == cfg.images_dir / "debian-12.iso"
        assert artifacts.disk_path == cfg.images_dir / "disk.qcow2"
        assert artifacts.firmware is None
        assert artifacts.kvm is False
        download.assert_called_once()
        qemu_img.assert_called_once_with(
            ["qemu-img", "create", "-f", "qcow2", str(cfg.images_dir / "disk.qcow2"), "20G"],
            capture_output=True,
        )

    def test_second_run_is_idempotent(self, default_vm_config, no_kvm):
        cfg = replace(default_vm_config, iso="https://example.com/isos/debian-12.iso")
        download = _fake_download()
        qemu_img = _fake_qemu_img()
        with (
            patch("qemu_runner.provision.download_file_with_retry", download),
            patch("qemu_runner.provision.run", qemu_img),
        ):
            first = provision(cfg)
            provisioner = Provisioner(cfg)
            second = provisioner.provision()
        assert first == second
        assert download.call_count == 1
        assert qemu_img.call_count == 1
        assert provisioner.downloads == 0
        assert provisioner.disks_created == 0


class TestIso:
    def test_missing_install_media(self, default_vm_config, no_kvm):
        qemu_img = _fake_qemu_img()
        with patch("qemu_runner.provision.run", qemu_img):
            with pytest.raises(ProvisionError) as exc:
                provision(default_vm_config)
        message = str(exc.value)
        assert "Missing install media" in message
        assert default_vm_config.iso in message
        assert "ISO_URL" in message
        # No disk is created before the install media is known to exist.
        qemu_img.assert_not_called()

    def test_local_iso_used_as_is(self, default_vm_config, no_kvm):
        Path(default_vm_config.iso).write_bytes(b"iso")
        with (
            patch("qemu_runner.provision.download_file_with_retry") as download,
            patch("qemu_runner.provision.run", _fake_qemu_img()),
        ):
            artifacts = provision(default_vm_config)
        assert artifacts.iso_path == Path(default_vm_config.iso)
        download.assert_not_called()

    def test_iso_url_fills_missing_local_path(self, default_vm_config, no_kvm):
        cfg = replace(default_vm_config, iso_url="https://example.com/netinst.iso")
        download = _fake_download()
        with (
            patch("qemu_runner.provision.download_file_with_retry", download),
            patch("qemu_runner.provision.run", _fake_qemu_img()),
        ):
            artifacts = provision(cfg)
        assert artifacts.iso_path == Path(cfg.iso)
        assert download.call_args[0][:2] == ("https://example.com/netinst.iso", Path(cfg.iso))

    def test_boot_mode_never_touches_iso(self, default_vm_config, no_kvm):
        cfg = replace(
            default_vm_config,
            boot_mode=BootMode.BOOT,
            iso="https://example.com/never.iso",
        )
        Path(cfg.disk).write_bytes(b"disk")
        with patch("qemu_runner.provision.download_file_with_retry") as download:
            artifacts = provision(cfg)
        assert artifacts.iso_path is None
        download.assert_not_called()

    def test_checksum_mismatch_redownloads(self, default_vm_config, no_kvm):
        good = b"good-iso"
        cfg = replace(
            default_vm_config,
            iso="https://example.com/x.iso",
            iso_sha256=hashlib.sha256(good).hexdigest(),
        )
        (cfg.images_dir / "x.iso").write_bytes(b"truncated")
        download = _fake_download(good)
        with (
            patch("qemu_runner.provision.download_file_with_retry", download),
            patch("qemu_runner.provision.run", _fake_qemu_img()),
        ):
            artifacts = provision(cfg)
        download.assert_called_once()
        assert artifacts.iso_path.read_bytes() == good

    def test_checksum_mismatch_after_download(self, default_vm_config, no_kvm):
        cfg = replace(default_vm_config, iso="https://example.com/x.iso", iso_sha256="0" * 64)
        with patch("qemu_runner.provision.download_file_with_retry", _fake_download()):
            with pytest.raises(ProvisionError, match="SHA-256 mismatch"):
                provision(cfg)
        assert not (cfg.images_dir / "x.iso").exists()


class TestDisk:
    def test_existing_disk_reused(self, default_vm_config, no_kvm):
        cfg = replace(default_vm_config, boot_mode=BootMode.BOOT)
        Path(cfg.disk).write_bytes(b"disk")
        with patch("qemu_runner.provision.run") as qemu_img:
            artifacts = provision(cfg)
        qemu_img.assert_not_called()
        assert artifacts.disk_path == Path(cfg.disk)

    def test_remote_disk_downloaded(self, default_vm_config, no_kvm):
        cfg = replace(default_vm_config, boot_mode=BootMode.BOOT, disk="https://example.com/cloud.qcow2")
        download = _fake_download(b"qcow2")
        with (
            patch("qemu_runner.provision.download_file_with_retry", download),
            patch("qemu_runner.provision.run") as qemu_img,
        ):
            artifacts = provision(cfg)
        assert artifacts.disk_path == cfg.images_dir / "cloud.qcow2"
        qemu_img.assert_not_called()

    def test_download_failure_propagates(self, default_vm_config, no_kvm):
        cfg = replace(default_vm_config, boot_mode=BootMode.BOOT, disk="https://example.com/cloud.qcow2")
        failure = ProvisionError("Failed to download https://example.com/cloud.qcow2 (gave up after 3 attempts)")
        with patch("qemu_runner.provision.download_file_with_retry", side_effect=failure):
            with pytest.raises(ProvisionError, match="gave up"):
                provision(cfg)
        assert not (cfg.images_dir / "cloud.qcow2").exists()

    def test_qemu_img_failure(self, default_vm_config, no_kvm):
        cfg = replace(default_vm_config, boot_mode=BootMode.BOOT)
        error = subprocess.CalledProcessError(1, ["qemu-img"], output="", stderr="Could not create file")
        with patch("qemu_runner.provision.run", side_effect=error):
            with pytest.raises(ProvisionError, match="Could not create file"):
                provision(cfg)

    def test_qemu_img_missing(self, default_vm_config, no_kvm):
        cfg = replace(default_vm_config, boot_mode=BootMode.BOOT)
        with patch("qemu_runner.provision.run", side_effect=FileNotFoundError("qemu-img")):
            with pytest.raises(ConfigError, match="qemu-img"):
                provision(cfg)


class TestAcceleration:
    def test_kvm_detected(self, default_vm_config):
        cfg = replace(default_vm_config, boot_mode=BootMode.BOOT)
        Path(cfg.disk).write_bytes(b"disk")
        with patch("qemu_runner.provision.kvm_available", return_value=True):
            assert provision(cfg).kvm is True

    def test_accel_off_skips_probe(self, default_vm_config):
        cfg = replace(default_vm_config, boot_mode=BootMode.BOOT, accel="off")
        Path(cfg.disk).write_bytes(b"disk")
        with patch("qemu_runner.provision.kvm_available") as mock_kvm:
            assert provision(cfg).kvm is False
        mock_kvm.assert_not_called()

    def test_require_kvm_without_device(self, default_vm_config, no_kvm):
        cfg = replace(default_vm_config, require_kvm=True)
        with pytest.raises(ConfigError, match="REQUIRE_KVM=1"):
            provision(cfg)


class TestArtifactsDirectory:
    def test_falls_back_when_not_writable(self, default_vm_config, tmp_path, monkeypatch):
        fallback = tmp_path / "fallback"
        monkeypatch.setattr("qemu_runner.provision.FALLBACK_IMAGES_DIR", fallback)
        with patch(
            "qemu_runner.provision.directory_writable",
            side_effect=lambda path: path == fallback,
        ):
            provisioner = Provisioner(default_vm_config)
        assert provisioner.artifacts_dir == fallback

    def test_nothing_writable(self, default_vm_config):
        with patch("qemu_runner.provision.directory_writable", return_value=False):
            with pytest.raises(ProvisionError, match="writable"):
                Provisioner(default_vm_config)


class TestUefiFallback:
    def test_missing_firmware_boots_legacy(self, default_vm_config, no_kvm, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(X86Profile, "firmware_candidates", (tmp_path / "absent" / "OVMF_CODE.fd",))
        cfg = replace(default_vm_config, boot_mode=BootMode.BOOT, firmware="uefi")
        Path(cfg.disk).write_bytes(b"disk")
        artifacts = provision(cfg)
        argv = assemble(cfg, artifacts).hypervisor
        assert artifacts.firmware is None
        assert not any(arg.startswith("if=pflash") for arg in argv)
        assert argv[-2:] == ("-boot", "c")
        err = capsys.readouterr().err
        assert "[WARN]" in err
        assert "continuing with legacy boot" in err
        assert not list(cfg.images_dir.glob("*-vars.fd"))


class TestFallbackTargets:
    @pytest.fixture
    def fallback(self, tmp_path, monkeypatch):
        path = tmp_path / "fallback"
        path.mkdir()
        monkeypatch.setattr("qemu_runner.provision.FALLBACK_IMAGES_DIR", path)
        return path

    def test_iso_url_downloads_into_fallback(self, default_vm_config, fallback, no_kvm):
        cfg = replace(default_vm_config, iso_url="https://example.com/netinst.iso")
        download = _fake_download()
        with (
            patch("qemu_runner.provision.directory_writable", side_effect=lambda path: path == fallback),
            patch("qemu_runner.provision.download_file_with_retry", download),
            patch("qemu_runner.provision.run", _fake_qemu_img()) as qemu_img,
        ):
            artifacts = provision(cfg)
        assert artifacts.iso_path == fallback / "install.iso"
        assert download.call_args[0][1] == fallback / "install.iso"
        assert artifacts.disk_path == fallback / "disk.qcow2"
        assert qemu_img.call_args[0][0][4] == str(fallback / "disk.qcow2")

    def test_existing_files_in_images_dir_still_win(self, default_vm_config, fallback, no_kvm):
        Path(default_vm_config.iso).write_bytes(b"iso")
        Path(default_vm_config.disk).write_bytes(b"disk")
        with patch("qemu_runner.provision.directory_writable", side_effect=lambda path: path == fallback):
            artifacts = provision(default_vm_config)
        assert artifacts.iso_path == Path(default_vm_config.iso)
        assert artifacts.disk_path == Path(default_vm_config.disk)

    def test_second_run_reuses_fallback_copies(self, default_vm_config, fallback, no_kvm):
        (fallback / "install.iso").write_bytes(b"iso")
        (fallback / "disk.qcow2").write_bytes(b"disk")
        with (
            patch("qemu_runner.provision.directory_writable", side_effect=lambda path: path == fallback),
            patch("qemu_runner.provision.download_file_with_retry") as download,
            patch("qemu_runner.provision.run") as qemu_img,
        ):
            artifacts = provision(replace(default_vm_config, iso_url="https://example.com/netinst.iso"))
        assert artifacts.iso_path == fallback / "install.iso"
        download.assert_not_called()
        qemu_img.assert_not_called()
