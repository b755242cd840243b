"""Custom exceptions for docker-qemu-runner."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(ManagerError):
    """Invalid configuration value or missing required binary."""


class ProvisionError(ManagerError):
    """Artifact download or disk image creation failed."""


class FirmwareDegraded(ManagerError):
    """UEFI firmware was requested but could not be located."""


class LaunchError(ManagerError):
    """A child process could not be started."""


class SupervisionError(ManagerError):
    """A supervised child exited unexpectedly or the session was interrupted."""

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class TerminationRequested(SupervisionError):
    """The orchestrator received a termination signal."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"termination requested by signal {signum}", exit_code=128 + signum)
        self.signum = signum
