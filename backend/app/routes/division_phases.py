import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlmodel import Session, select

from app.database import get_session
from app.models.advancement_rule import AdvancementRule
from app.models.encounter import Encounter
from app.models.phase import Phase
from app.models.phase_pool import PhasePool
from app.models.phase_slot import SLOT_ADVANCING, SLOT_INCOMING, PhaseSlot
from app.models.unit import Unit
from app.services.bye_resolver import assign_exit_slot, assign_slot, resolve_phase_byes
from app.services.drawing_broadcast import drawing_rooms
from app.services.errors import SchedulingError
from app.services.schedule_generator import delete_division_schedule, generate_division_schedule
from app.utils.guards import require_division, require_phase, to_http_exception
from app.utils.sql import count_rows

logger = logging.getLogger(__name__)

router = APIRouter()


class GenerateScheduleRequest(BaseModel):
    template_id: Optional[int] = None
    structure: Optional[Union[Dict[str, Any], str]] = None
    unit_count: Optional[int] = None
    clear_existing_phases: bool = False

    @field_validator("unit_count")
    @classmethod
    def validate_unit_count(cls, v):
        if v is not None and v < 1:
            raise ValueError("unit_count must be >= 1")
        return v


class SlotAssignRequest(BaseModel):
    slot_number: int
    unit_id: Optional[int] = None  # None marks the slot as an explicit bye
    notes: Optional[str] = None


def _unit_names(session: Session, unit_ids) -> Dict[int, str]:
    ids = [uid for uid in set(unit_ids) if uid is not None]
    if not ids:
        return {}
    return {u.id: u.name for u in session.exec(select(Unit).where(Unit.id.in_(ids))).all()}


def _slot_payload(slot: PhaseSlot, names: Dict[int, str]) -> Dict[str, Any]:
    payload = slot.model_dump()
    payload["unit_name"] = names.get(slot.unit_id)
    return payload


def _phase_summary(session: Session, phase: Phase) -> Dict[str, Any]:
    payload = phase.model_dump()
    payload["encounter_count"] = count_rows(session, Encounter.id, Encounter.phase_id == phase.id)
    payload["resolved_incoming"] = count_rows(
        session,
        PhaseSlot.id,
        PhaseSlot.phase_id == phase.id,
        PhaseSlot.slot_type == SLOT_INCOMING,
        PhaseSlot.is_resolved == True,  # noqa: E712
    )
    return payload


# ============================================================================
# Generation
# ============================================================================


@router.post("/divisions/{division_id}/schedule/generate", status_code=201)
def generate_schedule(
    division_id: int,
    request: GenerateScheduleRequest,
    session: Session = Depends(get_session),
):
    """Build phases, pools, slots, advancement rules and encounters for a division"""
    require_division(session, division_id)
    try:
        result = generate_division_schedule(
            session,
            division_id,
            template_id=request.template_id,
            structure=request.structure,
            unit_count=request.unit_count,
            clear_existing_phases=request.clear_existing_phases,
            publisher=drawing_rooms.publish,
        )
    except SchedulingError as e:
        raise to_http_exception(e)
    return result.to_dict()


@router.delete("/divisions/{division_id}/schedule")
def delete_schedule(division_id: int, session: Session = Depends(get_session)):
    require_division(session, division_id)
    try:
        removed = delete_division_schedule(session, division_id, publisher=drawing_rooms.publish)
    except SchedulingError as e:
        raise to_http_exception(e)
    return {"division_id": division_id, "phases_deleted": removed}


# ============================================================================
# Read-back
# ============================================================================


@router.get("/divisions/{division_id}/phases")
def get_division_phases(division_id: int, session: Session = Depends(get_session)) -> List[Dict[str, Any]]:
    """Phases of a division in order, with encounter and resolved-slot counts"""
    require_division(session, division_id)
    phases = session.exec(
        select(Phase).where(Phase.division_id == division_id).order_by(Phase.phase_order)
    ).all()
    return [_phase_summary(session, p) for p in phases]


@router.get("/phases/{phase_id}/schedule")
def get_phase_schedule(phase_id: int, session: Session = Depends(get_session)):
    """Full phase: pools, incoming/advancing slots, encounters and the rules that feed or drain it"""
    phase = require_phase(session, phase_id)

    pools = session.exec(select(PhasePool).where(PhasePool.phase_id == phase_id).order_by(PhasePool.pool_order)).all()
    slots = session.exec(
        select(PhaseSlot).where(PhaseSlot.phase_id == phase_id).order_by(PhaseSlot.slot_type, PhaseSlot.slot_number)
    ).all()
    encounters = session.exec(
        select(Encounter).where(Encounter.phase_id == phase_id).order_by(Encounter.encounter_number)
    ).all()
    rules_in = session.exec(
        select(AdvancementRule).where(AdvancementRule.target_phase_id == phase_id).order_by(AdvancementRule.target_slot_number)
    ).all()
    rules_out = session.exec(
        select(AdvancementRule).where(AdvancementRule.source_phase_id == phase_id).order_by(AdvancementRule.source_rank)
    ).all()

    names = _unit_names(
        session,
        [s.unit_id for s in slots] + [e.unit1_id for e in encounters] + [e.unit2_id for e in encounters],
    )
    encounter_payloads = []
    for enc in encounters:
        payload = enc.model_dump()
        payload["unit1_name"] = names.get(enc.unit1_id)
        payload["unit2_name"] = names.get(enc.unit2_id)
        payload["winner_name"] = names.get(enc.winner_unit_id)
        encounter_payloads.append(payload)

    return {
        "phase": phase.model_dump(),
        "pools": [p.model_dump() for p in pools],
        "incoming_slots": [_slot_payload(s, names) for s in slots if s.slot_type == SLOT_INCOMING],
        "advancing_slots": [_slot_payload(s, names) for s in slots if s.slot_type == SLOT_ADVANCING],
        "encounters": encounter_payloads,
        "incoming_rules": [r.model_dump() for r in rules_in],
        "outgoing_rules": [r.model_dump() for r in rules_out],
    }


@router.get("/phases/{phase_id}/exit-slots")
def get_exit_slots(phase_id: int, session: Session = Depends(get_session)):
    """Advancing slots of a phase (final placements for the last phase)"""
    require_phase(session, phase_id)
    slots = session.exec(
        select(PhaseSlot)
        .where(PhaseSlot.phase_id == phase_id, PhaseSlot.slot_type == SLOT_ADVANCING)
        .order_by(PhaseSlot.slot_number)
    ).all()
    names = _unit_names(session, [s.unit_id for s in slots])
    return [_slot_payload(s, names) for s in slots]


# ============================================================================
# Byes and manual overrides
# ============================================================================


@router.post("/phases/{phase_id}/process-byes")
def process_byes(phase_id: int, session: Session = Depends(get_session)):
    """Re-run bye resolution for one phase and push results through its advancement rules"""
    require_phase(session, phase_id)
    try:
        summary = resolve_phase_byes(session, phase_id)
        session.commit()
    except SchedulingError as e:
        session.rollback()
        raise to_http_exception(e)
    except Exception:
        session.rollback()
        logger.exception("Bye processing failed for phase %s", phase_id)
        raise
    return summary.to_dict()


@router.post("/phases/{phase_id}/slots/assign")
def assign_phase_slot(phase_id: int, request: SlotAssignRequest, session: Session = Depends(get_session)):
    """Manually place a unit (or an explicit bye) into an incoming slot"""
    require_phase(session, phase_id)
    try:
        summary = assign_slot(session, phase_id, request.slot_number, request.unit_id, notes=request.notes)
    except SchedulingError as e:
        raise to_http_exception(e)
    return summary.to_dict()


@router.post("/phases/{phase_id}/exit-slots/assign")
def assign_phase_exit_slot(phase_id: int, request: SlotAssignRequest, session: Session = Depends(get_session)):
    """Manually decide an exit slot (e.g. a pool finish) and advance it through the phase's rules"""
    require_phase(session, phase_id)
    try:
        summary = assign_exit_slot(session, phase_id, request.slot_number, request.unit_id, notes=request.notes)
    except SchedulingError as e:
        raise to_http_exception(e)
    return summary.to_dict()
