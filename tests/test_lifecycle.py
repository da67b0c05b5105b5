import random

import pytest
from fastapi.testclient import TestClient

from fake_vmm.app import create_app, requests_seen
from fake_vmm.config import FakeVMMSettings
from orchestrator.clients.http import ControlRequestFailure, ControlResponse
from orchestrator.clients.vmm import VMMClient
from orchestrator.services import network as network_module
from orchestrator.services.lifecycle import InstanceNotRunning, InstanceOrchestrator
from orchestrator.services.network import HostNetwork, NetworkCoordinator, live_taps
from orchestrator.services.sequencer import OrchestrationCancelled, SequencerError
from orchestrator.state_machine import InstancePhase, InvalidTransition
from orchestrator.validator import ValidationError, ValidationLimits


NO_PATHS = ValidationLimits(check_paths=False)


class RecordingRunner:
    def __init__(self, fail_on: tuple[str, ...] = ()):
        self.commands: list[str] = []
        self.fail_on = fail_on

    def __call__(self, cmd: list[str]) -> None:
        line = " ".join(cmd)
        self.commands.append(line)
        if any(line.startswith(prefix) for prefix in self.fail_on):
            raise RuntimeError(f"{line} failed")


class CountingCoordinator(NetworkCoordinator):
    def __init__(self, runner):
        super().__init__(HostNetwork(runner=runner))
        self.acquired: list[str] = []
        self.released: list[str] = []

    def acquire(self, name, host_cidr=None):
        lease = super().acquire(name, host_cidr)
        self.acquired.append(name)
        return lease

    def release(self, lease):
        self.released.append(lease.name)
        super().release(lease)


class ScriptedControl:
    """Control surface that misbehaves on the Nth request."""

    def __init__(self, fail_at: int | None = None, mode: str = "reject"):
        self.calls: list[tuple[str, str, dict | None]] = []
        self.fail_at = fail_at
        self.mode = mode
        self.on_request = None

    def request(self, resource_path, payload=None, method="PUT"):
        self.calls.append((method, resource_path, payload))
        if self.on_request is not None:
            self.on_request(resource_path)
        if len(self.calls) - 1 == self.fail_at:
            if self.mode == "timeout":
                raise ControlRequestFailure(
                    method=method,
                    path=resource_path,
                    error_type="ReadTimeout",
                    detail="timed out after 5.0s",
                )
            return ControlResponse(400, {"fault_message": "rejected"})
        return ControlResponse(204)


def setup_function() -> None:
    network_module._live_taps.clear()


def _document(**overrides) -> dict:
    document = {
        "kernel": "/boot/vmlinux",
        "rootfs": "/img/root.ext4",
        "vcpus": 4,
        "mem_mib": 8192,
        "balloon": {"target": 0, "deflate": False, "poll": 1},
        "ifaces": [{"id": "eth0", "mac": "AA:FC:00:00:00:01", "dev": "tap0"}],
    }
    document.update(overrides)
    return document


def _fake_vmm(**settings):
    app = create_app(FakeVMMSettings(**settings))
    return app, VMMClient(client=TestClient(app))


def _orchestrator(control, network, document=None, instance_id="vm-1"):
    return InstanceOrchestrator(
        instance_id,
        document or _document(),
        control=control,
        network=network,
        limits=NO_PATHS,
    )


def test_launch_configures_in_order_and_runs():
    app, control = _fake_vmm()
    runner = RecordingRunner()
    orchestrator = _orchestrator(control, NetworkCoordinator(HostNetwork(runner=runner)))

    state = orchestrator.launch()

    assert state.phase == InstancePhase.RUNNING
    assert [s.name for s in state.steps] == [
        "boot-source",
        "drive:rootfs",
        "machine-config",
        "balloon",
        "network-interface:eth0",
        "start",
    ]
    assert all(s.ok for s in state.steps)
    assert requests_seen(app, "PUT") == [
        "boot-source",
        "drives/rootfs",
        "machine-config",
        "balloon",
        "network-interfaces/eth0",
        "actions",
    ]
    assert "tap0" in live_taps()
    assert runner.commands[0] == "ip tuntap add dev tap0 mode tap"


def test_rejected_machine_config_fails_and_releases_tap():
    app, control = _fake_vmm(reject_paths_csv="machine-config")
    runner = RecordingRunner()
    orchestrator = _orchestrator(control, NetworkCoordinator(HostNetwork(runner=runner)))

    with pytest.raises(SequencerError) as exc_info:
        orchestrator.launch()

    assert exc_info.value.step == "machine-config"
    assert exc_info.value.status_code == 400
    assert orchestrator.state.phase == InstancePhase.FAILED
    assert "machine-config" in orchestrator.state.last_error
    assert "network-interfaces/eth0" not in requests_seen(app)
    assert "ip link del tap0" in runner.commands
    assert "tap0" not in live_taps()


def test_duplicate_interfaces_fail_before_side_effects():
    control = ScriptedControl()
    runner = RecordingRunner()
    ifaces = [
        {"id": "eth0", "mac": "AA:FC:00:00:00:01", "dev": "tap0"},
        {"id": "eth0", "mac": "AA:FC:00:00:00:02", "dev": "tap1"},
    ]
    orchestrator = _orchestrator(
        control, NetworkCoordinator(HostNetwork(runner=runner)), _document(ifaces=ifaces)
    )

    with pytest.raises(ValidationError):
        orchestrator.launch()

    assert control.calls == []
    assert runner.commands == []
    assert orchestrator.state.phase == InstancePhase.FAILED


@pytest.mark.parametrize("overrides", [{"vcpus": 0}, {"mem_mib": 0, "balloon": None}])
def test_non_positive_resources_never_reach_vmm(overrides):
    control = ScriptedControl()
    orchestrator = _orchestrator(
        control, NetworkCoordinator(HostNetwork(runner=RecordingRunner())), _document(**overrides)
    )
    with pytest.raises(ValidationError):
        orchestrator.launch()
    assert control.calls == []


def test_network_failure_aborts_before_vmm():
    control = ScriptedControl()
    runner = RecordingRunner(fail_on=("ip addr add",))
    orchestrator = _orchestrator(control, NetworkCoordinator(HostNetwork(runner=runner)))
    with pytest.raises(network_module.NetworkResourceError):
        orchestrator.launch()
    assert control.calls == []
    assert orchestrator.state.phase == InstancePhase.FAILED


def test_stop_requests_shutdown_and_releases():
    app, control = _fake_vmm()
    runner = RecordingRunner()
    orchestrator = _orchestrator(control, NetworkCoordinator(HostNetwork(runner=runner)))
    orchestrator.launch()

    orchestrator.stop()

    assert orchestrator.state.phase == InstancePhase.STOPPED
    assert app.state.vmm.shutdown_requested
    assert "tap0" not in live_taps()
    with pytest.raises(InvalidTransition):
        orchestrator.stop()


def test_stop_records_release_errors_without_raising():
    _, control = _fake_vmm()
    runner = RecordingRunner(fail_on=("ip link del",))
    orchestrator = _orchestrator(control, NetworkCoordinator(HostNetwork(runner=runner)))
    orchestrator.launch()

    orchestrator.stop()

    assert orchestrator.state.phase == InstancePhase.STOPPED
    assert len(orchestrator.state.release_errors) == 1
    assert "tap0" in orchestrator.state.release_errors[0]


def test_launch_twice_is_invalid():
    _, control = _fake_vmm()
    orchestrator = _orchestrator(control, NetworkCoordinator(HostNetwork(runner=RecordingRunner())))
    orchestrator.launch()
    with pytest.raises(InvalidTransition):
        orchestrator.launch()
    assert orchestrator.state.phase == InstancePhase.RUNNING


def test_cancel_mid_configuration():
    control = ScriptedControl()
    network = CountingCoordinator(RecordingRunner())
    orchestrator = _orchestrator(control, network)

    def cancel_after_machine_config(path):
        if path == "machine-config":
            orchestrator.cancel()

    control.on_request = cancel_after_machine_config

    with pytest.raises(OrchestrationCancelled) as exc_info:
        orchestrator.launch()

    assert exc_info.value.step == "balloon"
    assert [path for _, path, _ in control.calls][-1] == "machine-config"
    assert orchestrator.state.phase == InstancePhase.FAILED
    assert network.released == ["tap0"]


def test_crash_detected_when_control_surface_unreachable():
    control = ScriptedControl()
    network = CountingCoordinator(RecordingRunner())
    orchestrator = _orchestrator(control, network)
    orchestrator.launch()

    assert orchestrator.detect_crash() is False

    control.fail_at = len(control.calls)
    control.mode = "timeout"
    assert orchestrator.detect_crash() is True
    assert orchestrator.state.phase == InstancePhase.FAILED
    assert "unreachable" in orchestrator.state.last_error
    assert network.released == ["tap0"]
    assert orchestrator.detect_crash() is False


def test_balloon_updates_after_boot():
    app, control = _fake_vmm(balloon_actual_mib=256)
    orchestrator = _orchestrator(control, NetworkCoordinator(HostNetwork(runner=RecordingRunner())))
    orchestrator.launch()

    orchestrator.update_balloon(512)
    orchestrator.update_balloon_statistics(5)
    stats = orchestrator.balloon_statistics()

    assert requests_seen(app, "PATCH") == ["balloon", "balloon/statistics"]
    assert app.state.vmm.resources["balloon"]["amount_mib"] == 512
    assert stats["target_mib"] == 512
    assert stats["actual_mib"] == 256
    with pytest.raises(ValidationError):
        orchestrator.update_balloon(9000)


def test_balloon_update_requires_running_instance():
    orchestrator = _orchestrator(
        ScriptedControl(), NetworkCoordinator(HostNetwork(runner=RecordingRunner()))
    )
    with pytest.raises(InstanceNotRunning):
        orchestrator.update_balloon(128)


def test_device_extension_configured_and_updated():
    app, control = _fake_vmm()
    document = _document(
        devices=[
            {
                "resource": "faascale_mem",
                "payload": {
                    "stats_polling_interval_s": 1,
                    "pre_alloc_mem": True,
                    "pre_tdp_fault": False,
                },
            }
        ]
    )
    orchestrator = _orchestrator(
        control, NetworkCoordinator(HostNetwork(runner=RecordingRunner())), document
    )
    orchestrator.launch()

    orchestrator.update_device("faascale_mem/statistics", {"stats_polling_interval_s": 5})

    assert "faascale_mem" in requests_seen(app, "PUT")
    assert "faascale_mem/statistics" in requests_seen(app, "PATCH")
    assert app.state.vmm.resources["faascale_mem"]["stats_polling_interval_s"] == 5
    assert orchestrator.state.steps[-1].name == "device:faascale_mem/statistics:update"

    stats = orchestrator.device_statistics("faascale_mem")
    assert stats["total_memory"] == 8192 * 1024
    assert stats["major_faults"] == 0
    with pytest.raises(SequencerError):
        orchestrator.update_device("unknown-device", {})


def test_every_acquired_tap_is_released_exactly_once():
    rng = random.Random(1234)
    for run in range(1000):
        network_module._live_taps.clear()
        iface_count = rng.randint(0, 3)
        ifaces = [
            {"id": f"eth{i}", "mac": f"AA:FC:00:00:00:0{i}", "dev": f"tap{i}"}
            for i in range(iface_count)
        ]
        fail_on: tuple[str, ...] = ()
        if iface_count and rng.random() < 0.2:
            fail_on = (f"ip link set dev tap{rng.randrange(iface_count)} up",)
        step_total = 5 + iface_count
        control = ScriptedControl(
            fail_at=rng.choice([None, *range(step_total)]),
            mode=rng.choice(["reject", "timeout"]),
        )
        network = CountingCoordinator(RecordingRunner(fail_on=fail_on))
        orchestrator = _orchestrator(
            control, network, _document(ifaces=ifaces), instance_id=f"vm-{run}"
        )
        cancel_at = rng.choice([None, None, "machine-config", "balloon"])
        if cancel_at:
            control.on_request = lambda path, o=orchestrator, c=cancel_at: (
                o.cancel() if path == c else None
            )

        try:
            orchestrator.launch()
        except (SequencerError, OrchestrationCancelled, network_module.NetworkResourceError):
            assert orchestrator.state.phase == InstancePhase.FAILED
        else:
            assert orchestrator.state.phase == InstancePhase.RUNNING
            assert network.released == []
            orchestrator.stop()

        assert sorted(network.released) == sorted(network.acquired)
        assert live_taps() == set()
