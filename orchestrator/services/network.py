"""Host-side tap and NAT bring-up for instance network interfaces."""

import ipaddress
import logging
import subprocess
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field

from orchestrator.config import Settings
from orchestrator.metrics import metrics
from orchestrator.schemas import NetworkInterfaceSpec


logger = logging.getLogger(__name__)

CommandRunner = Callable[[list[str]], None]

# Shared by every coordinator in the process: tap names and NAT rules are
# host-global.
_host_lock = threading.Lock()
_live_taps: set[str] = set()


class NetworkResourceError(RuntimeError):
    def __init__(self, interface: str, detail: str):
        self.interface = interface
        self.detail = detail
        super().__init__(f"network resource failure interface={interface}: {detail}")


def live_taps() -> set[str]:
    with _host_lock:
        return set(_live_taps)


def run_command(cmd: list[str]) -> None:
    try:
        subprocess.run(cmd, check=True, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise RuntimeError(f"{cmd[0]} not found in PATH") from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        stdout = (exc.stdout or "").strip()
        raise RuntimeError(
            f"{' '.join(cmd)} failed: {stderr or stdout or exc}"
        ) from exc
    except OSError as exc:
        raise RuntimeError(f"{' '.join(cmd)} could not run: {exc}") from exc


@dataclass
class TapLease:
    name: str
    cidr: str
    undo: list[list[str]] = field(default_factory=list)
    released: bool = False


class HostNetwork:
    def __init__(
        self,
        *,
        uplink: str | None = None,
        enable_ip_forward: bool = True,
        dry_run: bool = False,
        runner: CommandRunner = run_command,
    ):
        self.uplink = uplink
        self.enable_ip_forward = enable_ip_forward
        self.dry_run = dry_run
        self.runner = runner

    @classmethod
    def from_settings(cls, settings: Settings) -> "HostNetwork":
        return cls(
            uplink=settings.uplink_interface,
            enable_ip_forward=settings.enable_ip_forward,
            dry_run=settings.dry_run,
        )

    def plan(self, name: str, cidr: str) -> list[tuple[list[str], list[str] | None]]:
        """Setup commands for one tap, each paired with its undo command."""
        steps: list[tuple[list[str], list[str] | None]] = [
            (["ip", "tuntap", "add", "dev", name, "mode", "tap"], ["ip", "link", "del", name]),
            (["ip", "addr", "add", cidr, "dev", name], None),
            (["ip", "link", "set", "dev", name, "up"], ["ip", "link", "set", "dev", name, "down"]),
        ]
        if not self.uplink:
            return steps
        subnet = str(ipaddress.IPv4Interface(cidr).network)
        if self.enable_ip_forward:
            steps.append((["sysctl", "-w", "net.ipv4.ip_forward=1"], None))
        nat = ["POSTROUTING", "-s", subnet, "-o", self.uplink, "-j", "MASQUERADE"]
        egress = ["FORWARD", "-i", name, "-o", self.uplink, "-j", "ACCEPT"]
        ingress = [
            "FORWARD",
            "-i",
            self.uplink,
            "-o",
            name,
            "-m",
            "conntrack",
            "--ctstate",
            "RELATED,ESTABLISHED",
            "-j",
            "ACCEPT",
        ]
        steps.extend(
            [
                (["iptables", "-t", "nat", "-A", *nat], ["iptables", "-t", "nat", "-D", *nat]),
                (["iptables", "-A", *egress], ["iptables", "-D", *egress]),
                (["iptables", "-A", *ingress], ["iptables", "-D", *ingress]),
            ]
        )
        return steps

    def run(self, cmd: list[str]) -> None:
        if self.dry_run:
            logger.info("dry-run host command=%s", " ".join(cmd))
            return
        logger.debug("host command=%s", " ".join(cmd))
        self.runner(cmd)


class NetworkCoordinator:
    def __init__(self, host: HostNetwork, default_cidr: str = "172.16.0.1/24"):
        self.host = host
        self.default_cidr = default_cidr

    @classmethod
    def from_settings(cls, settings: Settings) -> "NetworkCoordinator":
        return cls(HostNetwork.from_settings(settings), settings.default_tap_cidr)

    def acquire(self, name: str, host_cidr: str | None = None) -> TapLease:
        cidr = host_cidr or self.default_cidr
        with _host_lock:
            if name in _live_taps:
                raise NetworkResourceError(name, "tap device already acquired")
            undo: list[list[str]] = []
            for setup, teardown in self.host.plan(name, cidr):
                try:
                    self.host.run(setup)
                except RuntimeError as exc:
                    self._rollback(name, undo)
                    raise NetworkResourceError(name, str(exc)) from exc
                except BaseException:
                    # The interrupted command may have taken effect.
                    pending = [teardown] if teardown is not None else []
                    self._rollback(name, undo + pending)
                    raise
                if teardown is not None:
                    undo.append(teardown)
            _live_taps.add(name)
        metrics.inc("network_acquired_total")
        logger.info("tap acquired name=%s cidr=%s uplink=%s", name, cidr, self.host.uplink)
        return TapLease(name=name, cidr=cidr, undo=undo)

    def release(self, lease: TapLease) -> None:
        with _host_lock:
            if lease.released:
                return
            lease.released = True
            _live_taps.discard(lease.name)
            failures = self._undo(lease.undo)
        metrics.inc("network_released_total")
        if failures:
            logger.error("tap release failed name=%s errors=%s", lease.name, failures)
            raise NetworkResourceError(lease.name, "; ".join(failures))
        logger.info("tap released name=%s", lease.name)

    @contextmanager
    def scoped(self, interfaces: Iterable[NetworkInterfaceSpec]) -> Iterator[list[TapLease]]:
        with ExitStack() as stack:
            leases: list[TapLease] = []
            for iface in interfaces:
                lease = self.acquire(iface.host_dev_name, iface.host_cidr)
                stack.callback(self.release, lease)
                leases.append(lease)
            yield leases

    def _rollback(self, name: str, undo: list[list[str]]) -> None:
        leftovers = self._undo(undo)
        if leftovers:
            logger.error("tap rollback incomplete name=%s errors=%s", name, leftovers)
        metrics.inc("network_acquire_failed_total")

    def _undo(self, commands: list[list[str]]) -> list[str]:
        failures: list[str] = []
        for cmd in reversed(commands):
            try:
                self.host.run(cmd)
            except RuntimeError as exc:
                failures.append(str(exc))
        return failures
