"""In-process stand-in for a VMM control socket.

Accepts the pre-boot resources, enforces that they are only written before
InstanceStart, and records every request for assertions.
"""

from threading import Lock
from typing import Any

from fastapi import Body, FastAPI, Response
from fastapi.responses import JSONResponse

from fake_vmm.config import FakeVMMSettings, get_settings


PRE_BOOT_ONLY = ("boot-source", "drives", "machine-config", "balloon", "network-interfaces")
STATISTICS_SUFFIX = "/statistics"


def _fault(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"fault_message": message})


class FakeVMMState:
    def __init__(self) -> None:
        self.lock = Lock()
        self.requests: list[tuple[str, str, Any]] = []
        self.resources: dict[str, Any] = {}
        self.started = False
        self.shutdown_requested = False

    def record(self, method: str, path: str, body: Any) -> None:
        with self.lock:
            self.requests.append((method, path, body))

    def paths(self, method: str | None = None) -> list[str]:
        with self.lock:
            return [p for m, p, _ in self.requests if method is None or m == method]


def create_app(settings: FakeVMMSettings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Fake VMM")
    vmm = FakeVMMState()
    app.state.vmm = vmm

    def rejected(path: str) -> JSONResponse | None:
        if path in settings.reject_paths:
            return _fault(settings.reject_status, f"rejected by configuration: /{path}")
        return None

    @app.get("/")
    def describe_instance() -> dict:
        vmm.record("GET", "", None)
        return {
            "id": settings.instance_id,
            "state": "Running" if vmm.started else "Not started",
            "vmm_version": settings.vmm_version,
            "app_name": "Firecracker",
        }

    @app.put("/actions")
    def actions(payload: dict = Body(...)):
        vmm.record("PUT", "actions", payload)
        failure = rejected("actions")
        if failure is not None:
            return failure
        action = payload.get("action_type")
        with vmm.lock:
            if action == "InstanceStart":
                if vmm.started:
                    return _fault(400, "The microVM is already running.")
                missing = [r for r in ("boot-source", "machine-config") if r not in vmm.resources]
                if missing:
                    return _fault(400, f"Cannot start microvm without {', '.join(missing)}.")
                vmm.started = True
            elif action == "SendCtrlAltDel":
                if not vmm.started:
                    return _fault(400, "The microVM is not running.")
                vmm.shutdown_requested = True
            else:
                return _fault(400, f"Unknown action type: {action}")
        return Response(status_code=204)

    @app.get("/balloon/statistics")
    def balloon_statistics():
        vmm.record("GET", "balloon/statistics", None)
        with vmm.lock:
            balloon = vmm.resources.get("balloon")
        if not balloon:
            return _fault(400, "Balloon device is not configured.")
        if not balloon.get("stats_polling_interval_s"):
            return _fault(400, "Balloon statistics are not enabled.")
        target = balloon.get("amount_mib", 0)
        return {
            "target_pages": target * 256,
            "actual_pages": settings.balloon_actual_mib * 256,
            "target_mib": target,
            "actual_mib": settings.balloon_actual_mib,
        }

    @app.get("/{device}/statistics")
    def device_statistics(device: str):
        vmm.record("GET", f"{device}{STATISTICS_SUFFIX}", None)
        with vmm.lock:
            config = vmm.resources.get(device)
            machine = vmm.resources.get("machine-config") or {}
        if not config:
            return _fault(400, f"Resource /{device} is not configured.")
        if not config.get("stats_polling_interval_s"):
            return _fault(400, "Statistics are not enabled.")
        total_kib = machine.get("mem_size_mib", 0) * 1024
        return {
            "swap_in": 0,
            "swap_out": 0,
            "major_faults": 0,
            "minor_faults": 0,
            "free_memory": total_kib,
            "total_memory": total_kib,
            "available_memory": total_kib,
            "disk_caches": 0,
            "hugetlb_allocations": 0,
            "hugetlb_failures": 0,
        }

    @app.put("/{resource:path}")
    def put_resource(resource: str, payload: dict = Body(...)):
        vmm.record("PUT", resource, payload)
        failure = rejected(resource)
        if failure is not None:
            return failure
        with vmm.lock:
            if vmm.started and resource.split("/", 1)[0] in PRE_BOOT_ONLY:
                return _fault(
                    400,
                    "The requested operation is not supported after starting the microVM.",
                )
            vmm.resources[resource] = payload
        return Response(status_code=204)

    @app.patch("/{resource:path}")
    def patch_resource(resource: str, payload: dict = Body(...)):
        vmm.record("PATCH", resource, payload)
        failure = rejected(resource)
        if failure is not None:
            return failure
        with vmm.lock:
            if not vmm.started:
                return _fault(
                    400,
                    "The requested operation is not supported before starting the microVM.",
                )
            base = resource
            if resource.endswith(STATISTICS_SUFFIX):
                base = resource[: -len(STATISTICS_SUFFIX)]
            current = vmm.resources.get(base)
            if current is None:
                return _fault(400, f"Resource /{base} is not configured.")
            vmm.resources[base] = {**current, **payload}
        return Response(status_code=204)

    return app


app = create_app()


def requests_seen(target: FastAPI, method: str | None = None) -> list[str]:
    state: FakeVMMState = target.state.vmm
    return state.paths(method)


def reset(target: FastAPI) -> None:
    state: FakeVMMState = target.state.vmm
    with state.lock:
        state.requests.clear()
        state.resources.clear()
        state.started = False
        state.shutdown_requested = False
