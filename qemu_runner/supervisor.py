"""Child process supervision for docker-qemu-runner."""

from __future__ import annotations

import signal
import subprocess
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Sequence

from qemu_runner.constants import (
    POLL_INTERVAL,
    STOP_GRACE_PERIOD,
    VNC_BIND_ADDRESS,
    VNC_READY_TIMEOUT,
)
from qemu_runner.exceptions import LaunchError, SupervisionError, TerminationRequested
from qemu_runner.models import LaunchPlan
from qemu_runner.utils import log, wait_for_port

_HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def _unblock_handled_signals() -> None:
    signal.pthread_sigmask(signal.SIG_UNBLOCK, _HANDLED_SIGNALS)


def exit_status(returncode: int) -> int:
    """Map a Popen return code to a shell-style exit status."""
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class SessionHandle:
    """The live hypervisor/proxy pair and the promise to stop them once."""

    def __init__(self) -> None:
        self.hypervisor: Optional[subprocess.Popen] = None
        self.proxy: Optional[subprocess.Popen] = None
        self._terminated = False

    @property
    def primary(self) -> Optional[subprocess.Popen]:
        return self.proxy if self.proxy is not None else self.hypervisor

    @property
    def pids(self) -> Dict[str, int]:
        pids = {}
        if self.hypervisor is not None:
            pids["hypervisor"] = self.hypervisor.pid
        if self.proxy is not None:
            pids["proxy"] = self.proxy.pid
        return pids

    @property
    def terminated(self) -> bool:
        return self._terminated

    def terminate(self, grace: float = STOP_GRACE_PERIOD) -> None:
        if self._terminated:
            return
        self._terminated = True
        # Hypervisor first: it owns the guest disk.
        self._stop("hypervisor", self.hypervisor, grace)
        self._stop("proxy", self.proxy, grace)

    @staticmethod
    def _stop(name: str, proc: Optional[subprocess.Popen], grace: float) -> None:
        if proc is None or proc.poll() is not None:
            return
        log("INFO", f"Stopping {name} (pid={proc.pid})")
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            log("WARN", f"{name} (pid={proc.pid}) ignored SIGTERM for {grace:.0f}s; killing it")
            proc.kill()
            proc.wait()
        log("INFO", f"{name} exited with status {exit_status(proc.returncode)}")


class Supervisor:
    def __init__(
        self,
        plan: LaunchPlan,
        ready_timeout: float = VNC_READY_TIMEOUT,
        grace: float = STOP_GRACE_PERIOD,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.plan = plan
        self.ready_timeout = ready_timeout
        self.grace = grace
        self.poll_interval = poll_interval
        self.handle = SessionHandle()
        self._signalled: Optional[int] = None
        self._stopping = False

    def _handle_signal(self, signum, frame):
        sig_name = signal.Signals(signum).name
        if self._stopping or self._signalled is not None:
            log("WARN", f"{sig_name} received while stopping; ignoring")
            return
        self._signalled = signum
        log("INFO", f"{sig_name} received, stopping session")
        raise TerminationRequested(signum)

    @contextmanager
    def session(self) -> Iterator[SessionHandle]:
        """Scope that always stops every child on the way out."""
        previous = {signum: signal.signal(signum, self._handle_signal) for signum in _HANDLED_SIGNALS}
        try:
            yield self.handle
        finally:
            self._stopping = True
            try:
                self.handle.terminate(self.grace)
            finally:
                for signum, handler in previous.items():
                    signal.signal(signum, handler)

    def _spawn(self, name: str, argv: Sequence[str], own_session: bool = False) -> subprocess.Popen:
        """Start a child and record it on the handle before anything can interrupt."""
        # Handled signals stay blocked until the child is on the handle; the
        # child unblocks them for itself before exec.
        signal.pthread_sigmask(signal.SIG_BLOCK, _HANDLED_SIGNALS)
        try:
            try:
                proc = subprocess.Popen(
                    list(argv),
                    start_new_session=own_session,
                    preexec_fn=_unblock_handled_signals,
                )
            except OSError as exc:
                raise LaunchError(f"Failed to start {name} ({argv[0]}): {exc}") from exc
            setattr(self.handle, name, proc)
        finally:
            signal.pthread_sigmask(signal.SIG_UNBLOCK, _HANDLED_SIGNALS)
        log("INFO", f"{name} started (pid={proc.pid})")
        return proc

    def _wait_for_display(self) -> None:
        hypervisor = self.handle.hypervisor
        assert hypervisor is not None and self.plan.vnc_port is not None
        port = self.plan.vnc_port
        ready = wait_for_port(
            VNC_BIND_ADDRESS,
            port,
            timeout=self.ready_timeout,
            abort=lambda: hypervisor.poll() is not None,
        )
        if hypervisor.poll() is not None:
            raise LaunchError(
                f"hypervisor exited with status {exit_status(hypervisor.returncode)} before its VNC server came up"
            )
        if not ready:
            raise LaunchError(
                f"VNC server did not accept connections on {VNC_BIND_ADDRESS}:{port} within {self.ready_timeout:.0f}s"
            )
        log("INFO", f"VNC server ready on {VNC_BIND_ADDRESS}:{port}")

    def launch(self) -> SessionHandle:
        log("INFO", f"Command: {self.plan.render()}")
        # In noVNC mode the terminal is not the guest console, so keep Ctrl-C
        # away from the children and let the session stop them.
        detached = self.plan.proxy is not None
        self._spawn("hypervisor", self.plan.hypervisor, own_session=detached)
        if self.plan.proxy:
            self._wait_for_display()
            log("INFO", f"Proxy command: {' '.join(self.plan.proxy)}")
            self._spawn("proxy", self.plan.proxy, own_session=True)
        log("INFO", f"Session running: {self.handle.pids}")
        return self.handle

    def wait(self) -> int:
        """Block until the primary child exits; no timeout."""
        primary = self.handle.primary
        assert primary is not None, "wait() called before launch()"
        secondary = self.handle.hypervisor if self.handle.proxy is not None else None
        log("INFO", f"Waiting for {self.plan.primary} (pid={primary.pid})")
        while True:
            code = primary.poll()
            if code is not None:
                status = exit_status(code)
                log("INFO", f"{self.plan.primary} exited with status {status}")
                return status
            if secondary is not None and secondary.poll() is not None:
                status = exit_status(secondary.returncode)
                raise SupervisionError(
                    f"hypervisor exited unexpectedly with status {status}",
                    exit_code=status or 1,
                )
            time.sleep(self.poll_interval)

    def run(self) -> int:
        """Launch the plan, wait for the primary child, always clean up."""
        try:
            with self.session():
                self.launch()
                return self.wait()
        except TerminationRequested as exc:
            log("INFO", f"Session terminated by signal {exc.signum}")
            return exc.exit_code
        except SupervisionError as exc:
            log("ERROR", str(exc))
            return exc.exit_code
