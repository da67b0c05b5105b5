import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class InstancePhase(str, Enum):
    UNCONFIGURED = "Unconfigured"
    CONFIGURING = "Configuring"
    READY = "Ready"
    RUNNING = "Running"
    STOPPED = "Stopped"
    FAILED = "Failed"


class LifecycleEvent(str, Enum):
    BEGIN_CONFIGURE = "begin_configure"
    CONFIGURATION_COMPLETE = "configuration_complete"
    START = "start"
    STOP = "stop"
    CRASH_DETECTED = "crash_detected"
    FAIL = "fail"


TERMINAL_PHASES = {InstancePhase.STOPPED, InstancePhase.FAILED}

ALLOWED_TRANSITIONS: dict[tuple[InstancePhase, LifecycleEvent], InstancePhase] = {
    (InstancePhase.UNCONFIGURED, LifecycleEvent.BEGIN_CONFIGURE): InstancePhase.CONFIGURING,
    (InstancePhase.CONFIGURING, LifecycleEvent.CONFIGURATION_COMPLETE): InstancePhase.READY,
    (InstancePhase.READY, LifecycleEvent.START): InstancePhase.RUNNING,
    (InstancePhase.RUNNING, LifecycleEvent.STOP): InstancePhase.STOPPED,
    (InstancePhase.RUNNING, LifecycleEvent.CRASH_DETECTED): InstancePhase.FAILED,
}
for _phase in InstancePhase:
    if _phase not in TERMINAL_PHASES:
        ALLOWED_TRANSITIONS[(_phase, LifecycleEvent.FAIL)] = InstancePhase.FAILED


class InvalidTransition(RuntimeError):
    def __init__(
        self,
        current: InstancePhase,
        attempted: LifecycleEvent,
        reason: str | None = None,
    ):
        self.current = current
        self.attempted = attempted
        self.reason = reason
        message = f"invalid transition from={current.value} attempted={attempted.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


def next_phase(current: InstancePhase, event: LifecycleEvent) -> InstancePhase:
    target = ALLOWED_TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransition(current, event)
    return target


@dataclass
class StepOutcome:
    name: str
    method: str
    resource_path: str
    payload: dict[str, Any] | None
    status_code: int | None
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class InstanceState:
    """Mutable lifecycle record for one instance.

    All mutation goes through methods that take the internal lock, so a
    transition is a single check-and-set against the current phase.
    """

    phase: InstancePhase = InstancePhase.UNCONFIGURED
    steps: list[StepOutcome] = field(default_factory=list)
    last_error: str | None = None
    release_errors: list[str] = field(default_factory=list)
    _lock: threading.RLock = field(
        default_factory=threading.RLock, repr=False, compare=False
    )

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def check(self, event: LifecycleEvent) -> InstancePhase:
        with self._lock:
            return next_phase(self.phase, event)

    def transition(
        self, event: LifecycleEvent, error: str | None = None
    ) -> InstancePhase:
        with self._lock:
            self.phase = next_phase(self.phase, event)
            if error is not None:
                self.last_error = error
            return self.phase

    def complete_configuration(self, mandatory_steps: list[str]) -> InstancePhase:
        with self._lock:
            succeeded = {s.name for s in self.steps if s.ok}
            missing = [name for name in mandatory_steps if name not in succeeded]
            if missing:
                raise InvalidTransition(
                    self.phase,
                    LifecycleEvent.CONFIGURATION_COMPLETE,
                    f"mandatory steps not applied: {', '.join(missing)}",
                )
            return self.transition(LifecycleEvent.CONFIGURATION_COMPLETE)

    def fail(self, error: str) -> bool:
        """Move to Failed unless already terminal; returns whether it moved."""
        with self._lock:
            if self.is_terminal:
                if self.last_error is None:
                    self.last_error = error
                return False
            self.transition(LifecycleEvent.FAIL, error=error)
            return True

    def record_step(self, outcome: StepOutcome) -> None:
        with self._lock:
            self.steps.append(outcome)

    def applied_payload(self, name: str) -> dict[str, Any] | None:
        with self._lock:
            for outcome in reversed(self.steps):
                if outcome.name == name and outcome.ok:
                    return outcome.payload if outcome.payload is not None else {}
            return None

    def record_release_error(self, error: str) -> None:
        with self._lock:
            self.release_errors.append(error)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "phase": self.phase.value,
                "last_error": self.last_error,
                "steps": [s.to_dict() for s in self.steps],
                "release_errors": list(self.release_errors),
            }
