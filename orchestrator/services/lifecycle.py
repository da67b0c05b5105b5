import logging
import threading
from contextlib import ExitStack
from typing import Any, Mapping

from orchestrator.clients.http import ControlRequestFailure
from orchestrator.clients.vmm import ControlSurface
from orchestrator.metrics import metrics
from orchestrator.schemas import InstanceSpec
from orchestrator.services.network import NetworkCoordinator, NetworkResourceError, TapLease
from orchestrator.services.sequencer import (
    ConfigurationStep,
    OrchestrationCancelled,
    Sequencer,
    SequencerError,
    mandatory_step_names,
    start_step,
    stop_step,
)
from orchestrator.services.vmm_process import VMMProcess
from orchestrator.state_machine import (
    InstancePhase,
    InstanceState,
    InvalidTransition,
    LifecycleEvent,
)
from orchestrator.validator import (
    ValidationError,
    ValidationLimits,
    Violation,
    parse_spec,
    validate,
)


logger = logging.getLogger(__name__)


class InstanceNotRunning(RuntimeError):
    def __init__(self, instance_id: str, phase: InstancePhase, operation: str):
        self.instance_id = instance_id
        self.phase = phase
        self.operation = operation
        super().__init__(
            f"{operation} requires a running instance instance_id={instance_id} phase={phase.value}"
        )


class InstanceOrchestrator:
    """Drives one VM from spec to running instance and back down.

    Host resources (taps, the VMM process) acquired during launch are held on
    an ExitStack. A failed launch unwinds the stack before re-raising; a
    successful launch keeps it until stop or crash detection.
    """

    def __init__(
        self,
        instance_id: str,
        spec: InstanceSpec | Mapping[str, Any],
        *,
        control: ControlSurface,
        network: NetworkCoordinator,
        limits: ValidationLimits | None = None,
        collect_all_violations: bool = False,
        vmm_process: VMMProcess | None = None,
    ):
        self.instance_id = instance_id
        self._document = spec
        self.spec: InstanceSpec | None = spec if isinstance(spec, InstanceSpec) else None
        self.control = control
        self.network = network
        self.limits = limits or ValidationLimits()
        self.collect_all_violations = collect_all_violations
        self.vmm_process = vmm_process
        self.sequencer = Sequencer(control)
        self.state = InstanceState()
        self._cancel = threading.Event()
        self._resources: ExitStack | None = None

    def launch(self) -> InstanceState:
        self.state.check(LifecycleEvent.BEGIN_CONFIGURE)
        resources = ExitStack()
        try:
            spec = self._validated_spec()
            for iface in spec.network_interfaces:
                lease = self.network.acquire(iface.host_dev_name, iface.host_cidr)
                resources.callback(self._release_lease, lease)
            if self.vmm_process is not None:
                resources.callback(self._stop_vmm)
                self.vmm_process.start()
            self._check_cancel()
            self.state.transition(LifecycleEvent.BEGIN_CONFIGURE)
            self.sequencer.apply(spec, self.state, self._cancel)
            self.state.complete_configuration(mandatory_step_names(spec))
            self._check_cancel()
            self.sequencer.send(start_step(), self.state)
            self.state.transition(LifecycleEvent.START)
        except BaseException as exc:
            self.state.fail(f"{exc.__class__.__name__}: {exc}")
            metrics.inc("instances_failed_total")
            logger.error(
                "launch failed instance_id=%s phase=%s error=%s",
                self.instance_id,
                self.state.phase.value,
                exc,
            )
            resources.close()
            raise
        self._resources = resources.pop_all()
        metrics.inc("instances_started_total")
        logger.info("instance running instance_id=%s", self.instance_id)
        return self.state

    def stop(self) -> InstanceState:
        self.state.check(LifecycleEvent.STOP)
        try:
            self.sequencer.send(stop_step(), self.state)
        except SequencerError as exc:
            logger.warning(
                "graceful shutdown request failed instance_id=%s error=%s",
                self.instance_id,
                exc,
            )
        self.state.transition(LifecycleEvent.STOP)
        self._close_resources()
        metrics.inc("instances_stopped_total")
        logger.info("instance stopped instance_id=%s", self.instance_id)
        return self.state

    def detect_crash(self) -> bool:
        if self.state.phase != InstancePhase.RUNNING:
            return False
        reason = None
        if self.vmm_process is not None and not self.vmm_process.is_alive():
            reason = "vmm process exited"
        else:
            try:
                self.control.request("/", method="GET")
            except ControlRequestFailure as exc:
                reason = f"control surface unreachable: {exc.detail}"
        if reason is None:
            return False
        self.state.transition(LifecycleEvent.CRASH_DETECTED, error=reason)
        metrics.inc("instances_crashed_total")
        logger.error("crash detected instance_id=%s reason=%s", self.instance_id, reason)
        self._close_resources()
        return True

    def cancel(self) -> None:
        logger.warning("cancel requested instance_id=%s", self.instance_id)
        self._cancel.set()

    def update_balloon(self, amount_mib: int) -> None:
        spec = self._require_running("balloon update")
        if spec.balloon is None:
            raise SequencerError(step="balloon:update", cause="no balloon device configured")
        if not 0 <= amount_mib <= spec.mem_size_mib:
            raise ValidationError(
                [
                    Violation(
                        "amount_mib",
                        f"balloon target must be between 0 and {spec.mem_size_mib}",
                    )
                ]
            )
        self.sequencer.send(
            ConfigurationStep(
                name="balloon:update",
                resource_path="balloon",
                payload={"amount_mib": amount_mib},
                method="PATCH",
                update=True,
            ),
            self.state,
        )

    def update_balloon_statistics(self, interval_s: int) -> None:
        spec = self._require_running("balloon statistics update")
        if spec.balloon is None:
            raise SequencerError(
                step="balloon:statistics", cause="no balloon device configured"
            )
        if interval_s < 0:
            raise ValidationError(
                [Violation("stats_polling_interval_s", "polling interval must be >= 0")]
            )
        self.sequencer.send(
            ConfigurationStep(
                name="balloon:statistics",
                resource_path="balloon/statistics",
                payload={"stats_polling_interval_s": interval_s},
                method="PATCH",
                update=True,
            ),
            self.state,
        )

    def balloon_statistics(self) -> dict[str, Any]:
        self._require_running("balloon statistics")
        return self._read_statistics("balloon/statistics", "balloon:statistics")

    def device_statistics(self, resource: str) -> dict[str, Any]:
        spec = self._require_running("device statistics")
        device = self._configured_device(spec, resource, "statistics")
        return self._read_statistics(f"{device}/statistics", f"device:{device}:statistics")

    def update_device(self, resource_path: str, payload: dict[str, Any]) -> None:
        spec = self._require_running("device update")
        resource = resource_path.strip("/")
        self._configured_device(spec, resource, "update")
        self.sequencer.send(
            ConfigurationStep(
                name=f"device:{resource}:update",
                resource_path=resource,
                payload=payload,
                method="PATCH",
                update=True,
            ),
            self.state,
        )

    def _configured_device(self, spec: InstanceSpec, resource: str, action: str) -> str:
        device = resource.strip("/").split("/", 1)[0]
        if device not in {d.resource.strip("/") for d in spec.devices}:
            raise SequencerError(
                step=f"device:{resource.strip('/')}:{action}",
                cause=f"device '{device}' is not configured",
            )
        return device

    def _read_statistics(self, resource_path: str, step: str) -> dict[str, Any]:
        try:
            response = self.control.request(resource_path, method="GET")
        except ControlRequestFailure as exc:
            raise SequencerError(step=step, cause=str(exc), status_code=exc.status_code) from exc
        if not response.ok:
            raise SequencerError(
                step=step,
                cause=response.fault_message or f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.body or {}

    def _validated_spec(self) -> InstanceSpec:
        spec = self.spec or parse_spec(self._document)
        validate(spec, self.limits, collect_all=self.collect_all_violations)
        self.spec = spec
        return spec

    def _require_running(self, operation: str) -> InstanceSpec:
        if self.state.phase != InstancePhase.RUNNING or self.spec is None:
            raise InstanceNotRunning(self.instance_id, self.state.phase, operation)
        return self.spec

    def _check_cancel(self) -> None:
        if self._cancel.is_set():
            raise OrchestrationCancelled()

    def _close_resources(self) -> None:
        resources, self._resources = self._resources, None
        if resources is not None:
            resources.close()

    def _release_lease(self, lease: TapLease) -> None:
        try:
            self.network.release(lease)
        except NetworkResourceError as exc:
            logger.error(
                "network release failed instance_id=%s tap=%s error=%s",
                self.instance_id,
                lease.name,
                exc,
            )
            self.state.record_release_error(str(exc))

    def _stop_vmm(self) -> None:
        if self.vmm_process is None:
            return
        try:
            self.vmm_process.stop()
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "vmm stop failed instance_id=%s pid=%s error=%s",
                self.instance_id,
                self.vmm_process.pid,
                exc,
            )
            self.state.record_release_error(f"vmm stop failed: {exc}")
