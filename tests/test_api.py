import os
import tempfile

from fastapi.testclient import TestClient

from orchestrator.config import get_settings


os.environ["ORCHESTRATOR_DATABASE_URL"] = (
    f"sqlite:///{tempfile.gettempdir()}/vm-orchestrator-tests.db"
)
os.environ["ORCHESTRATOR_CHECK_PATHS"] = "false"
os.environ["ORCHESTRATOR_DRY_RUN"] = "true"
get_settings.cache_clear()

from fake_vmm.app import create_app  # noqa: E402
from fake_vmm.config import FakeVMMSettings  # noqa: E402
from orchestrator.api import (  # noqa: E402
    get_control_factory,
    get_network_coordinator,
    reset_registry,
)
from orchestrator.clients.vmm import VMMClient  # noqa: E402
from orchestrator.db import Base, engine  # noqa: E402
from orchestrator.main import app  # noqa: E402
from orchestrator.services import network as network_module  # noqa: E402
from orchestrator.services.network import HostNetwork, NetworkCoordinator  # noqa: E402


class RecordingRunner:
    def __init__(self, fail_on: tuple[str, ...] = ()):
        self.commands: list[str] = []
        self.fail_on = fail_on

    def __call__(self, cmd: list[str]) -> None:
        line = " ".join(cmd)
        self.commands.append(line)
        if any(line.startswith(prefix) for prefix in self.fail_on):
            raise RuntimeError(f"{line} failed")


_fake = {"app": create_app(FakeVMMSettings())}
_runner = {"runner": RecordingRunner()}
_clients: list[VMMClient] = []


def _control_factory():
    def factory(instance_id: str, socket_path: str | None) -> VMMClient:
        control = VMMClient(client=TestClient(_fake["app"]))
        _clients.append(control)
        return control

    return factory


def _network():
    return NetworkCoordinator(HostNetwork(runner=_runner["runner"]))


app.dependency_overrides[get_control_factory] = _control_factory
app.dependency_overrides[get_network_coordinator] = _network


def setup_function() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_registry()
    network_module._live_taps.clear()
    _fake["app"] = create_app(FakeVMMSettings())
    _runner["runner"] = RecordingRunner()
    _clients.clear()


def _launch(client: TestClient, instance_id: str = "vm-1", **overrides):
    spec = {
        "kernel": "/boot/vmlinux",
        "rootfs": "/img/root.ext4",
        "vcpus": 4,
        "mem_mib": 8192,
        "balloon": {"target": 0, "deflate": False, "poll": 1},
        "ifaces": [{"id": "eth0", "mac": "AA:FC:00:00:00:01", "dev": "tap0"}],
    }
    spec.update(overrides)
    return client.post("/v1/instances", json={"instance_id": instance_id, "spec": spec})


def test_healthz():
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_launch_and_inspect_instance():
    client = TestClient(app)
    response = _launch(client)
    assert response.status_code == 200
    body = response.json()
    assert body["phase"] == "Running"
    assert [s["name"] for s in body["steps"]] == [
        "boot-source",
        "drive:rootfs",
        "machine-config",
        "balloon",
        "network-interface:eth0",
        "start",
    ]

    get = client.get("/v1/instances/vm-1")
    assert get.status_code == 200
    assert get.json()["phase"] == "Running"

    listed = client.get("/v1/instances", params={"phase": "Running"})
    assert [x["instance_id"] for x in listed.json()] == ["vm-1"]


def test_duplicate_instance_id_conflicts():
    client = TestClient(app)
    assert _launch(client).status_code == 200
    again = _launch(client)
    assert again.status_code == 409
    assert again.json()["detail"]["reason"] == "instance already exists"


def test_validation_failure_is_422():
    client = TestClient(app)
    response = _launch(client, vcpus=0)
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["field"] == "vcpu_count"
    assert detail["phase"] == "Failed"
    assert _runner["runner"].commands == []

    get = client.get("/v1/instances/vm-1")
    assert get.json()["phase"] == "Failed"


def test_rejected_step_is_502():
    _fake["app"] = create_app(FakeVMMSettings(reject_paths_csv="machine-config"))
    client = TestClient(app)
    response = _launch(client)
    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["step"] == "machine-config"
    assert detail["vmm_status"] == 400
    assert "ip link del tap0" in _runner["runner"].commands


def test_network_failure_is_503():
    _runner["runner"] = RecordingRunner(fail_on=("ip tuntap add",))
    client = TestClient(app)
    response = _launch(client)
    assert response.status_code == 503
    assert response.json()["detail"]["interface"] == "tap0"


def test_stop_and_invalid_second_stop():
    client = TestClient(app)
    _launch(client)
    stop = client.post("/v1/instances/vm-1/stop")
    assert stop.status_code == 200
    assert stop.json()["phase"] == "Stopped"
    assert _fake["app"].state.vmm.shutdown_requested

    again = client.post("/v1/instances/vm-1/stop")
    assert again.status_code == 409
    assert again.json()["detail"]["reason"] == "instance is no longer active"


def test_unknown_instance_is_404():
    client = TestClient(app)
    assert client.get("/v1/instances/missing").status_code == 404
    assert client.post("/v1/instances/missing/stop").status_code == 404
    assert client.post("/v1/instances/missing/cancel").status_code == 404


def test_balloon_update_and_statistics():
    client = TestClient(app)
    _launch(client)
    patch = client.patch("/v1/instances/vm-1/balloon", json={"amount_mib": 1024})
    assert patch.status_code == 200
    assert patch.json()["steps"][-1]["name"] == "balloon:update"

    stats = client.get("/v1/instances/vm-1/balloon/statistics")
    assert stats.status_code == 200
    assert stats.json()["target_mib"] == 1024

    too_big = client.patch("/v1/instances/vm-1/balloon", json={"amount_mib": 9000})
    assert too_big.status_code == 422


def test_health_check_reports_running_instance():
    client = TestClient(app)
    _launch(client)
    response = client.post("/v1/instances/vm-1/health")
    assert response.status_code == 200
    assert response.json() == {"instance_id": "vm-1", "crashed": False, "phase": "Running"}


def test_events_are_listed_per_instance():
    client = TestClient(app)
    _launch(client)
    client.post("/v1/instances/vm-1/stop")
    events = client.get("/v1/events", params={"instance_id": "vm-1"})
    assert events.status_code == 200
    assert [e["event_type"] for e in events.json()] == ["instance.phase", "instance.created"]


def test_stop_closes_control_client_and_retires_instance():
    client = TestClient(app)
    _launch(client)
    assert len(_clients) == 1
    assert not _clients[0].client.is_closed

    client.post("/v1/instances/vm-1/stop")

    assert _clients[0].client.is_closed
    assert client.get("/v1/instances/vm-1").json()["phase"] == "Stopped"
    cancel = client.post("/v1/instances/vm-1/cancel")
    assert cancel.status_code == 409
    assert cancel.json()["detail"]["phase"] == "Stopped"


def test_failed_launch_closes_control_client():
    _fake["app"] = create_app(FakeVMMSettings(reject_paths_csv="machine-config"))
    client = TestClient(app)
    assert _launch(client).status_code == 502
    assert _clients[0].client.is_closed

    health = client.post("/v1/instances/vm-1/health")
    assert health.status_code == 409
    assert health.json()["detail"]["phase"] == "Failed"


def test_duplicate_launch_closes_its_control_client():
    client = TestClient(app)
    _launch(client)
    assert _launch(client).status_code == 409
    assert [c.client.is_closed for c in _clients] == [False, True]


class ExplodingControl:
    endpoint = "memory://exploding"

    def __init__(self):
        self.closed = False

    def request(self, resource_path, payload=None, method="PUT"):
        raise ValueError("unexpected control failure")

    def close(self):
        self.closed = True


def test_unexpected_error_is_500_and_persisted():
    control = ExplodingControl()
    app.dependency_overrides[get_control_factory] = lambda: lambda instance_id, socket_path: control
    try:
        client = TestClient(app)
        response = _launch(client)
    finally:
        app.dependency_overrides[get_control_factory] = _control_factory
    assert response.status_code == 500
    detail = response.json()["detail"]
    assert detail["stage"] == "launch"
    assert detail["phase"] == "Failed"
    assert "unexpected control failure" in detail["reason"]
    assert control.closed
    assert "ip link del tap0" in _runner["runner"].commands
    assert client.get("/v1/instances/vm-1").json()["phase"] == "Failed"


def test_device_statistics():
    client = TestClient(app)
    device = {"resource": "faascale_mem", "payload": {"stats_polling_interval_s": 1}}
    _launch(client, devices=[device])
    response = client.get("/v1/instances/vm-1/devices/faascale_mem/statistics")
    assert response.status_code == 200
    assert response.json()["total_memory"] == 8192 * 1024

    missing = client.get("/v1/instances/vm-1/devices/other/statistics")
    assert missing.status_code == 502
    assert missing.json()["detail"]["step"] == "device:other:statistics"
