import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from orchestrator.clients.http import ControlRequestFailure
from orchestrator.clients.vmm import ControlSurface
from orchestrator.metrics import metrics
from orchestrator.schemas import InstanceSpec
from orchestrator.state_machine import InstanceState, StepOutcome
from orchestrator.validator import ROOT_DRIVE_ID


logger = logging.getLogger(__name__)

START_STEP_NAME = "start"


@dataclass(frozen=True)
class ConfigurationStep:
    name: str
    resource_path: str
    payload: dict[str, Any] | None = field(default=None)
    method: str = "PUT"
    mandatory: bool = False
    update: bool = False


class SequencerError(RuntimeError):
    def __init__(self, *, step: str, cause: str, status_code: int | None = None):
        self.step = step
        self.cause = cause
        self.status_code = status_code
        super().__init__(f"configuration step failed step={step}: {cause}")


class OrchestrationCancelled(RuntimeError):
    def __init__(self, step: str | None = None):
        self.step = step
        where = f" before step={step}" if step else ""
        super().__init__(f"orchestration cancelled{where}")


def build_steps(spec: InstanceSpec) -> list[ConfigurationStep]:
    steps = [
        ConfigurationStep(
            name="boot-source",
            resource_path="boot-source",
            payload={
                "kernel_image_path": spec.kernel_image_path,
                "boot_args": spec.boot_args,
            },
            mandatory=True,
        ),
        ConfigurationStep(
            name=f"drive:{ROOT_DRIVE_ID}",
            resource_path=f"drives/{ROOT_DRIVE_ID}",
            payload={
                "drive_id": ROOT_DRIVE_ID,
                "path_on_host": spec.rootfs_path,
                "is_root_device": True,
                "is_read_only": spec.rootfs_read_only,
            },
            mandatory=True,
        ),
    ]
    for drive in spec.extra_drives:
        steps.append(
            ConfigurationStep(
                name=f"drive:{drive.drive_id}",
                resource_path=f"drives/{drive.drive_id}",
                payload={
                    "drive_id": drive.drive_id,
                    "path_on_host": drive.path_on_host,
                    "is_root_device": False,
                    "is_read_only": drive.is_read_only,
                },
                mandatory=True,
            )
        )
    steps.append(
        ConfigurationStep(
            name="machine-config",
            resource_path="machine-config",
            payload={"vcpu_count": spec.vcpu_count, "mem_size_mib": spec.mem_size_mib},
            mandatory=True,
        )
    )
    if spec.balloon is not None:
        steps.append(
            ConfigurationStep(
                name="balloon",
                resource_path="balloon",
                payload={
                    "amount_mib": spec.balloon.amount_mib,
                    "deflate_on_oom": spec.balloon.deflate_on_oom,
                    "stats_polling_interval_s": spec.balloon.stats_polling_interval_s,
                },
            )
        )
    for device in spec.devices:
        resource = device.resource.strip("/")
        steps.append(
            ConfigurationStep(
                name=f"device:{resource}",
                resource_path=resource,
                payload=dict(device.payload),
            )
        )
    for iface in spec.network_interfaces:
        steps.append(
            ConfigurationStep(
                name=f"network-interface:{iface.iface_id}",
                resource_path=f"network-interfaces/{iface.iface_id}",
                payload={
                    "iface_id": iface.iface_id,
                    "guest_mac": iface.guest_mac,
                    "host_dev_name": iface.host_dev_name,
                },
                mandatory=True,
            )
        )
    return steps


def start_step() -> ConfigurationStep:
    return ConfigurationStep(
        name=START_STEP_NAME,
        resource_path="actions",
        payload={"action_type": "InstanceStart"},
        mandatory=True,
    )


def stop_step() -> ConfigurationStep:
    return ConfigurationStep(
        name="stop",
        resource_path="actions",
        payload={"action_type": "SendCtrlAltDel"},
    )


def mandatory_step_names(spec: InstanceSpec) -> list[str]:
    return [step.name for step in build_steps(spec) if step.mandatory]


class Sequencer:
    def __init__(self, control: ControlSurface):
        self.control = control

    def apply(
        self,
        spec: InstanceSpec,
        state: InstanceState,
        cancel_event: threading.Event | None = None,
    ) -> list[StepOutcome]:
        outcomes: list[StepOutcome] = []
        for step in build_steps(spec):
            if cancel_event is not None and cancel_event.is_set():
                raise OrchestrationCancelled(step.name)
            outcome = self.send(step, state)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    def send(self, step: ConfigurationStep, state: InstanceState) -> StepOutcome | None:
        """Send one step; returns None when an identical step was already applied."""
        previous = state.applied_payload(step.name)
        if previous is not None and not step.update:
            if previous == (step.payload or {}):
                logger.debug("step already applied name=%s", step.name)
                return None
            raise SequencerError(
                step=step.name,
                cause="step already applied with a different payload",
            )

        logger.info(
            "applying step name=%s method=%s path=/%s",
            step.name,
            step.method,
            step.resource_path,
        )
        try:
            with metrics.timed("vmm_request"):
                response = self.control.request(
                    step.resource_path, step.payload, method=step.method
                )
        except ControlRequestFailure as exc:
            self._record_failure(state, step, exc.status_code, str(exc))
            raise SequencerError(
                step=step.name, cause=str(exc), status_code=exc.status_code
            ) from exc

        if not response.ok:
            cause = f"HTTP {response.status_code}"
            if response.fault_message:
                cause = f"{cause}: {response.fault_message}"
            self._record_failure(state, step, response.status_code, cause)
            raise SequencerError(
                step=step.name, cause=cause, status_code=response.status_code
            )

        outcome = StepOutcome(
            name=step.name,
            method=step.method,
            resource_path=step.resource_path,
            payload=step.payload,
            status_code=response.status_code,
            ok=True,
        )
        state.record_step(outcome)
        metrics.inc("steps_applied_total")
        return outcome

    def _record_failure(
        self,
        state: InstanceState,
        step: ConfigurationStep,
        status_code: int | None,
        error: str,
    ) -> None:
        logger.error(
            "step failed name=%s path=/%s status=%s error=%s",
            step.name,
            step.resource_path,
            status_code,
            error,
        )
        state.record_step(
            StepOutcome(
                name=step.name,
                method=step.method,
                resource_path=step.resource_path,
                payload=step.payload,
                status_code=status_code,
                ok=False,
                error=error,
            )
        )
        metrics.inc("steps_failed_total")
