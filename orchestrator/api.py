import logging
from collections.abc import Callable
from functools import lru_cache
from threading import Lock

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from orchestrator.clients.vmm import VMMClient
from orchestrator.config import get_settings
from orchestrator.db import SessionLocal
from orchestrator.metrics import metrics
from orchestrator.models import Event, InstanceRecord
from orchestrator.repositories import (
    get_instance_record,
    list_instance_records,
    list_step_records,
    save_instance,
)
from orchestrator.schemas import (
    BalloonUpdateRequest,
    EventRead,
    InstanceRead,
    LaunchRequest,
    StepRead,
)
from orchestrator.services.lifecycle import InstanceNotRunning, InstanceOrchestrator
from orchestrator.services.network import NetworkCoordinator, NetworkResourceError
from orchestrator.services.sequencer import OrchestrationCancelled, SequencerError
from orchestrator.services.vmm_process import VMMProcess, VMMProcessError
from orchestrator.state_machine import InvalidTransition
from orchestrator.validator import ValidationError, ValidationLimits


router = APIRouter()
logger = logging.getLogger(__name__)

ControlFactory = Callable[[str, str | None], VMMClient]

_lock = Lock()
_instances: dict[str, InstanceOrchestrator] = {}
_endpoints: dict[str, str] = {}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_control_factory() -> ControlFactory:
    settings = get_settings()

    def factory(instance_id: str, socket_path: str | None) -> VMMClient:
        return VMMClient(
            socket_path=socket_path or settings.socket_path_for(instance_id),
            timeout=settings.request_timeout_sec,
        )

    return factory


@lru_cache(maxsize=1)
def get_network_coordinator() -> NetworkCoordinator:
    return NetworkCoordinator.from_settings(get_settings())


def reset_registry() -> None:
    with _lock:
        _instances.clear()
        _endpoints.clear()


def _to_read(orchestrator: InstanceOrchestrator) -> InstanceRead:
    snapshot = orchestrator.state.snapshot()
    return InstanceRead(
        instance_id=orchestrator.instance_id,
        phase=snapshot["phase"],
        last_error=snapshot["last_error"],
        steps=[StepRead(**step) for step in snapshot["steps"]],
        release_errors=snapshot["release_errors"],
    )


def _record_to_read(db: Session, record: InstanceRecord) -> InstanceRead:
    return InstanceRead(
        instance_id=record.instance_id,
        phase=record.phase,
        last_error=record.last_error,
        steps=[
            StepRead(
                name=s.name,
                method=s.method,
                resource_path=s.resource_path,
                status_code=s.status_code,
                ok=s.ok,
                error=s.error,
            )
            for s in list_step_records(db, record.instance_id)
        ],
    )


def _retire(orchestrator: InstanceOrchestrator) -> None:
    """Drop a terminal instance from the registry and close its control client.

    The audit store keeps serving reads for it afterwards.
    """
    instance_id = orchestrator.instance_id
    with _lock:
        if _instances.get(instance_id) is orchestrator:
            del _instances[instance_id]
            _endpoints.pop(instance_id, None)
    close = getattr(orchestrator.control, "close", None)
    if close is not None:
        close()
    logger.info(
        "instance retired instance_id=%s phase=%s",
        instance_id,
        orchestrator.state.phase.value,
    )


def _persist(db: Session, orchestrator: InstanceOrchestrator) -> None:
    save_instance(db, orchestrator, _endpoints.get(orchestrator.instance_id))
    db.commit()
    if orchestrator.state.is_terminal:
        _retire(orchestrator)


def _lookup(db: Session, instance_id: str) -> InstanceOrchestrator:
    with _lock:
        orchestrator = _instances.get(instance_id)
    if orchestrator is not None:
        return orchestrator
    record = get_instance_record(db, instance_id)
    if record is None:
        raise HTTPException(status_code=404, detail="unknown instance")
    raise HTTPException(
        status_code=409,
        detail={
            "instance_id": instance_id,
            "reason": "instance is no longer active",
            "phase": record.phase,
        },
    )


def _failure(
    db: Session,
    orchestrator: InstanceOrchestrator,
    *,
    status_code: int,
    stage: str,
    exc: Exception,
    **extra,
) -> HTTPException:
    _persist(db, orchestrator)
    logger.error(
        "instance operation failed instance_id=%s stage=%s reason=%s",
        orchestrator.instance_id,
        stage,
        exc,
    )
    detail = {
        "instance_id": orchestrator.instance_id,
        "stage": stage,
        "reason": str(exc),
        "phase": orchestrator.state.phase.value,
    }
    detail.update(extra)
    return HTTPException(status_code=status_code, detail=detail)


def _run(db: Session, orchestrator: InstanceOrchestrator, stage: str, operation):
    try:
        result = operation()
    except ValidationError as exc:
        raise _failure(
            db,
            orchestrator,
            status_code=422,
            stage=stage,
            exc=exc,
            field=exc.field,
            violations=[{"field": v.field, "reason": v.reason} for v in exc.violations],
        ) from exc
    except NetworkResourceError as exc:
        raise _failure(
            db, orchestrator, status_code=503, stage=stage, exc=exc, interface=exc.interface
        ) from exc
    except SequencerError as exc:
        raise _failure(
            db,
            orchestrator,
            status_code=502,
            stage=stage,
            exc=exc,
            step=exc.step,
            vmm_status=exc.status_code,
        ) from exc
    except (InvalidTransition, InstanceNotRunning, OrchestrationCancelled) as exc:
        raise _failure(db, orchestrator, status_code=409, stage=stage, exc=exc) from exc
    except VMMProcessError as exc:
        raise _failure(db, orchestrator, status_code=500, stage=stage, exc=exc) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception(
            "unexpected error instance_id=%s stage=%s", orchestrator.instance_id, stage
        )
        raise _failure(db, orchestrator, status_code=500, stage=stage, exc=exc) from exc
    _persist(db, orchestrator)
    return result


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, float]:
    return metrics.snapshot()


@router.post("/v1/instances", response_model=InstanceRead)
def launch_instance(
    req: LaunchRequest,
    db: Session = Depends(get_db),
    control_factory: ControlFactory = Depends(get_control_factory),
    network: NetworkCoordinator = Depends(get_network_coordinator),
) -> InstanceRead:
    settings = get_settings()
    socket_path = req.vmm_socket_path or settings.socket_path_for(req.instance_id)
    vmm_process = None
    if settings.launch_vmm:
        vmm_process = VMMProcess(
            settings,
            socket_path=socket_path,
            log_path=settings.log_path_for(req.instance_id),
        )
    control = control_factory(req.instance_id, req.vmm_socket_path)
    orchestrator = InstanceOrchestrator(
        req.instance_id,
        req.spec,
        control=control,
        network=network,
        limits=ValidationLimits.from_settings(settings),
        collect_all_violations=settings.collect_all_violations,
        vmm_process=vmm_process,
    )
    with _lock:
        known = req.instance_id in _instances
        if not known:
            known = get_instance_record(db, req.instance_id) is not None
        if known:
            control.close()
            raise HTTPException(
                status_code=409,
                detail={"instance_id": req.instance_id, "reason": "instance already exists"},
            )
        _instances[req.instance_id] = orchestrator
        _endpoints[req.instance_id] = control.endpoint

    logger.info("launch requested instance_id=%s endpoint=%s", req.instance_id, control.endpoint)
    _run(db, orchestrator, "launch", orchestrator.launch)
    return _to_read(orchestrator)


@router.get("/v1/instances", response_model=list[InstanceRead])
def list_instances(
    phase: str | None = Query(default=None), db: Session = Depends(get_db)
) -> list[InstanceRead]:
    return [_record_to_read(db, r) for r in list_instance_records(db, phase=phase)]


@router.get("/v1/instances/{instance_id}", response_model=InstanceRead)
def get_instance(instance_id: str, db: Session = Depends(get_db)) -> InstanceRead:
    with _lock:
        orchestrator = _instances.get(instance_id)
    if orchestrator is not None:
        return _to_read(orchestrator)
    record = get_instance_record(db, instance_id)
    if record is None:
        raise HTTPException(status_code=404, detail="unknown instance")
    return _record_to_read(db, record)


@router.post("/v1/instances/{instance_id}/stop", response_model=InstanceRead)
def stop_instance(instance_id: str, db: Session = Depends(get_db)) -> InstanceRead:
    orchestrator = _lookup(db, instance_id)
    _run(db, orchestrator, "stop", orchestrator.stop)
    return _to_read(orchestrator)


@router.post("/v1/instances/{instance_id}/cancel")
def cancel_instance(instance_id: str, db: Session = Depends(get_db)) -> dict[str, bool]:
    _lookup(db, instance_id).cancel()
    return {"ok": True}


@router.post("/v1/instances/{instance_id}/health")
def check_instance_health(instance_id: str, db: Session = Depends(get_db)) -> dict:
    orchestrator = _lookup(db, instance_id)
    crashed = _run(db, orchestrator, "health", orchestrator.detect_crash)
    return {
        "instance_id": instance_id,
        "crashed": crashed,
        "phase": orchestrator.state.phase.value,
    }


@router.patch("/v1/instances/{instance_id}/balloon", response_model=InstanceRead)
def update_balloon(
    instance_id: str, req: BalloonUpdateRequest, db: Session = Depends(get_db)
) -> InstanceRead:
    orchestrator = _lookup(db, instance_id)
    _run(db, orchestrator, "balloon", lambda: orchestrator.update_balloon(req.amount_mib))
    return _to_read(orchestrator)


@router.get("/v1/instances/{instance_id}/balloon/statistics")
def balloon_statistics(instance_id: str, db: Session = Depends(get_db)) -> dict:
    orchestrator = _lookup(db, instance_id)
    return _run(db, orchestrator, "balloon_statistics", orchestrator.balloon_statistics)


@router.get("/v1/instances/{instance_id}/devices/{resource}/statistics")
def device_statistics(instance_id: str, resource: str, db: Session = Depends(get_db)) -> dict:
    orchestrator = _lookup(db, instance_id)
    return _run(
        db,
        orchestrator,
        "device_statistics",
        lambda: orchestrator.device_statistics(resource),
    )


@router.get("/v1/events", response_model=list[EventRead])
def list_events(
    instance_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[EventRead]:
    query = select(Event)
    if instance_id:
        query = query.where(Event.instance_id == instance_id)
    events = db.scalars(query.order_by(Event.id.desc()).limit(limit))
    return [
        EventRead(
            id=e.id,
            timestamp=e.timestamp,
            instance_id=e.instance_id,
            event_type=e.event_type,
            payload_json=e.payload_json,
        )
        for e in events
    ]
