import json
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from orchestrator.models import Event, InstanceRecord, StepRecord
from orchestrator.services.lifecycle import InstanceOrchestrator


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def write_event(
    session: Session, event_type: str, payload: dict, instance_id: str | None = None
) -> None:
    session.add(
        Event(
            instance_id=instance_id,
            event_type=event_type,
            payload_json=json.dumps(payload, sort_keys=True),
        )
    )


def get_instance_record(session: Session, instance_id: str) -> InstanceRecord | None:
    return session.get(InstanceRecord, instance_id)


def list_instance_records(
    session: Session, phase: str | None = None
) -> list[InstanceRecord]:
    query = select(InstanceRecord)
    if phase:
        query = query.where(InstanceRecord.phase == phase)
    return list(session.scalars(query.order_by(InstanceRecord.created_at.desc())))


def list_step_records(session: Session, instance_id: str) -> list[StepRecord]:
    query = (
        select(StepRecord)
        .where(StepRecord.instance_id == instance_id)
        .order_by(StepRecord.seq.asc())
    )
    return list(session.scalars(query))


def _spec_json(orchestrator: InstanceOrchestrator) -> str:
    if orchestrator.spec is not None:
        return orchestrator.spec.model_dump_json()
    return json.dumps(dict(orchestrator._document), sort_keys=True, default=str)


def save_instance(
    session: Session,
    orchestrator: InstanceOrchestrator,
    control_endpoint: str | None = None,
) -> InstanceRecord:
    """Upsert the instance row and append step outcomes not yet persisted."""
    snapshot = orchestrator.state.snapshot()
    instance_id = orchestrator.instance_id
    record = get_instance_record(session, instance_id)
    previous_phase = None
    if record is None:
        record = InstanceRecord(
            instance_id=instance_id,
            phase=snapshot["phase"],
            spec_json=_spec_json(orchestrator),
            control_endpoint=control_endpoint,
            created_at=now_utc(),
        )
        session.add(record)
        session.flush()
        created: dict = {"phase": snapshot["phase"]}
        if snapshot["last_error"]:
            created["error"] = snapshot["last_error"]
        write_event(session, "instance.created", created, instance_id)
    else:
        previous_phase = record.phase

    record.phase = snapshot["phase"]
    record.last_error = snapshot["last_error"]
    record.spec_json = _spec_json(orchestrator)
    record.updated_at = now_utc()

    persisted = session.scalar(
        select(func.count()).select_from(StepRecord).where(StepRecord.instance_id == instance_id)
    ) or 0
    for seq, step in enumerate(snapshot["steps"][persisted:], start=persisted):
        session.add(
            StepRecord(
                instance_id=instance_id,
                seq=seq,
                name=step["name"],
                method=step["method"],
                resource_path=step["resource_path"],
                payload_json=json.dumps(step["payload"], sort_keys=True)
                if step["payload"] is not None
                else None,
                status_code=step["status_code"],
                ok=step["ok"],
                error=step["error"],
                recorded_at=now_utc(),
            )
        )

    if previous_phase is not None and previous_phase != record.phase:
        payload: dict = {"from": previous_phase, "to": record.phase}
        if record.last_error:
            payload["error"] = record.last_error
        if snapshot["release_errors"]:
            payload["release_errors"] = snapshot["release_errors"]
        write_event(session, "instance.phase", payload, instance_id)
    return record
