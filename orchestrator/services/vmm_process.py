import logging
import os
import signal
import subprocess
import time
from pathlib import Path

from orchestrator.config import Settings


logger = logging.getLogger(__name__)


class VMMProcessError(RuntimeError):
    pass


def build_vmm_command(settings: Settings, socket_path: str, log_path: str) -> list[str]:
    cmd = [
        settings.vmm_binary,
        "--api-sock",
        socket_path,
        "--log-path",
        log_path,
        "--level",
        settings.vmm_log_level,
    ]
    if settings.vmm_no_seccomp:
        cmd.append("--no-seccomp")
    return cmd


class VMMProcess:
    """One VMM child process bound to a control socket."""

    def __init__(
        self,
        settings: Settings,
        *,
        socket_path: str,
        log_path: str,
    ):
        self.settings = settings
        self.socket_path = Path(socket_path)
        self.log_path = Path(log_path)
        self.proc: subprocess.Popen | None = None

    @property
    def pid(self) -> int:
        return self.proc.pid if self.proc else 0

    def start(self) -> int:
        if self.proc is not None:
            raise VMMProcessError(f"vmm already started pid={self.proc.pid}")
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        self.socket_path.unlink(missing_ok=True)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path.write_text("", encoding="utf-8")

        cmd = build_vmm_command(self.settings, str(self.socket_path), str(self.log_path))
        if self.settings.dry_run:
            logger.info("dry-run vmm command=%s", " ".join(cmd))
            return 0
        logger.info("launching vmm command=%s", " ".join(cmd))
        try:
            self.proc = subprocess.Popen(cmd)
        except OSError as exc:
            raise VMMProcessError(f"failed to launch {cmd[0]}: {exc}") from exc
        self.wait_ready(self.settings.vmm_ready_timeout_sec)
        return self.proc.pid

    def wait_ready(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.socket_path.exists():
                return
            if self.proc is not None and self.proc.poll() is not None:
                raise VMMProcessError(
                    f"vmm exited with code {self.proc.returncode} before socket appeared"
                )
            time.sleep(0.05)
        raise VMMProcessError(
            f"vmm socket {self.socket_path} not ready within {timeout}s"
        )

    def is_alive(self) -> bool:
        if self.settings.dry_run:
            return True
        return self.proc is not None and self.proc.poll() is None

    def stop(self) -> None:
        proc = self.proc
        if proc is None:
            return
        if proc.poll() is None:
            try:
                os.kill(proc.pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                proc.wait(timeout=self.settings.vmm_stop_grace_sec)
            except subprocess.TimeoutExpired:
                logger.warning("vmm did not exit after SIGTERM pid=%s", proc.pid)
                proc.kill()
                proc.wait()
        self.proc = None
        self.socket_path.unlink(missing_ok=True)
        logger.info("vmm stopped pid=%s", proc.pid)
