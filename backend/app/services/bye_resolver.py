"""
Slot/Bye Resolver

compute_byes() is the pure part: given entry pairings and the current slot
assignments it reports which assigned units advance without playing.

resolve_phase_byes() / resolve_division_byes() apply the same rule to stored
encounters: sides are resolved from incoming slots or earlier encounters, an
encounter with exactly one known-empty side becomes a Bye, one with two
known-empty sides is Void, results fill advancing slots, and resolved advancing
slots are pushed through advancement rules into later phases.

Guarantees:
    - Idempotent: a second run over unchanged data changes nothing
    - Never overwrites: a target slot already holding a different unit raises SlotConflict
    - Pending slots (not yet drawn / not yet decided) never produce a bye
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlmodel import Session, select

from app.models.advancement_rule import AdvancementRule
from app.models.encounter import (
    ENCOUNTER_BYE,
    ENCOUNTER_COMPLETED,
    ENCOUNTER_SCHEDULED,
    ENCOUNTER_VOID,
    ROLE_LOSER,
    ROLE_WINNER,
    Encounter,
)
from app.models.phase import PHASE_DRAW, Phase
from app.models.phase_slot import (
    SLOT_ADVANCING,
    SLOT_INCOMING,
    SOURCE_BYE,
    SOURCE_LOSER_OF,
    SOURCE_MANUAL,
    SOURCE_RANK_FROM_PHASE,
    SOURCE_WINNER_OF,
    PhaseSlot,
)
from app.models.unit import Unit
from app.services.errors import NotFound, SchedulingError, SlotConflict
from app.services.phase_wiring import BRACKET_POOL

logger = logging.getLogger(__name__)

# Side states
FILLED = "FILLED"
EMPTY = "EMPTY"
PENDING = "PENDING"


@dataclass(frozen=True)
class ByeAdvance:
    encounter_number: int
    slot_number: int
    unit_id: int


def compute_byes(
    pairings: Sequence[Tuple[int, int, int]],
    assignments: Dict[int, int],
    pending_slots: Iterable[int] = (),
) -> List[ByeAdvance]:
    """Byes implied by the current assignment state.

    Args:
        pairings: (encounter_number, slot_a, slot_b) for encounters fed by two incoming slots
        assignments: slot_number -> unit_id for every filled slot
        pending_slots: slots that may still be filled (e.g. not yet drawn); never treated as empty

    An encounter yields a bye only when one side is assigned and the other is
    known to be empty. Both sides empty yields nothing.
    """
    pending: Set[int] = set(pending_slots)
    byes = []
    for number, slot_a, slot_b in pairings:
        a_unit, b_unit = assignments.get(slot_a), assignments.get(slot_b)
        a_empty = a_unit is None and slot_a not in pending
        b_empty = b_unit is None and slot_b not in pending
        if a_unit is not None and b_empty:
            byes.append(ByeAdvance(number, slot_a, a_unit))
        elif b_unit is not None and a_empty:
            byes.append(ByeAdvance(number, slot_b, b_unit))
    return sorted(byes, key=lambda b: b.slot_number)


@dataclass
class ByeResolutionSummary:
    byes_recorded: int = 0
    encounters_voided: int = 0
    encounter_sides_filled: int = 0
    exit_slots_resolved: int = 0
    units_advanced: int = 0
    phases_processed: List[int] = field(default_factory=list)

    def merge(self, other: "ByeResolutionSummary") -> None:
        self.byes_recorded += other.byes_recorded
        self.encounters_voided += other.encounters_voided
        self.encounter_sides_filled += other.encounter_sides_filled
        self.exit_slots_resolved += other.exit_slots_resolved
        self.units_advanced += other.units_advanced
        self.phases_processed.extend(other.phases_processed)

    @property
    def changed(self) -> bool:
        return any(
            (
                self.byes_recorded,
                self.encounters_voided,
                self.encounter_sides_filled,
                self.exit_slots_resolved,
                self.units_advanced,
            )
        )

    def to_dict(self) -> Dict:
        return {
            "byes_recorded": self.byes_recorded,
            "encounters_voided": self.encounters_voided,
            "encounter_sides_filled": self.encounter_sides_filled,
            "exit_slots_resolved": self.exit_slots_resolved,
            "units_advanced": self.units_advanced,
            "phases_processed": list(self.phases_processed),
        }


def _slot_state(slot: Optional[PhaseSlot]) -> Tuple[str, Optional[int]]:
    if slot is None:
        return EMPTY, None
    if slot.unit_id is not None:
        return FILLED, slot.unit_id
    if slot.is_resolved:
        return EMPTY, None
    return PENDING, None


def _encounter_outcome(encounter: Encounter, role: str) -> Tuple[str, Optional[int]]:
    """State of the WINNER or LOSER side coming out of an encounter."""
    if encounter.status == ENCOUNTER_VOID:
        return EMPTY, None
    if encounter.status == ENCOUNTER_BYE:
        if role == ROLE_WINNER:
            return FILLED, encounter.winner_unit_id
        return EMPTY, None
    if encounter.status == ENCOUNTER_COMPLETED and encounter.winner_unit_id is not None:
        if role == ROLE_WINNER:
            return FILLED, encounter.winner_unit_id
        loser = encounter.unit2_id if encounter.winner_unit_id == encounter.unit1_id else encounter.unit1_id
        return (FILLED, loser) if loser is not None else (EMPTY, None)
    return PENDING, None


def _write_slot(
    slot: PhaseSlot,
    unit_id: Optional[int],
    source_type: str,
    notes: Optional[str] = None,
) -> bool:
    """Resolve a slot to unit_id (None = known empty). Returns True when something changed."""
    if slot.is_resolved:
        if slot.unit_id == unit_id or slot.was_manually_resolved:
            return False
        raise SlotConflict(
            f"Slot {slot.slot_type} #{slot.slot_number} of phase {slot.phase_id} already holds "
            f"unit {slot.unit_id}; refusing to write unit {unit_id}"
        )
    slot.unit_id = unit_id
    slot.is_resolved = True
    slot.resolved_at = datetime.utcnow()
    if unit_id is None:
        slot.source_type = SOURCE_BYE
    elif slot.source_type not in (SOURCE_WINNER_OF, SOURCE_LOSER_OF):
        slot.source_type = source_type
    if notes:
        slot.resolution_notes = notes
    return True


def _load_slots(session: Session, phase_id: int, slot_type: str) -> Dict[int, PhaseSlot]:
    slots = session.exec(
        select(PhaseSlot).where(PhaseSlot.phase_id == phase_id, PhaseSlot.slot_type == slot_type)
    ).all()
    return {s.slot_number: s for s in slots}


def resolve_phase_byes(session: Session, phase_id: int) -> ByeResolutionSummary:
    """Resolve byes/voids inside one phase and push resolved exits to later phases.

    Does not commit; callers own the transaction.
    """
    phase = session.get(Phase, phase_id)
    if not phase:
        raise NotFound(f"Phase {phase_id} not found")

    summary = ByeResolutionSummary(phases_processed=[phase_id])
    incoming = _load_slots(session, phase_id, SLOT_INCOMING)
    advancing = _load_slots(session, phase_id, SLOT_ADVANCING)
    slots_by_id = {s.id: s for s in incoming.values()}

    encounters = session.exec(
        select(Encounter).where(Encounter.phase_id == phase_id).order_by(Encounter.encounter_number)
    ).all()
    by_id = {e.id: e for e in encounters}

    for enc in encounters:
        sides = []
        for slot_id, source_id, role in (
            (enc.slot1_id, enc.source1_encounter_id, enc.source1_role),
            (enc.slot2_id, enc.source2_encounter_id, enc.source2_role),
        ):
            if source_id is not None:
                sides.append(_encounter_outcome(by_id[source_id], role))
            else:
                sides.append(_slot_state(slots_by_id.get(slot_id)))

        (state1, unit1), (state2, unit2) = sides
        if state1 == FILLED and enc.unit1_id != unit1:
            enc.unit1_id = unit1
            summary.encounter_sides_filled += 1
        if state2 == FILLED and enc.unit2_id != unit2:
            enc.unit2_id = unit2
            summary.encounter_sides_filled += 1

        if enc.status != ENCOUNTER_SCHEDULED:
            continue

        if state1 == EMPTY and state2 == EMPTY:
            enc.status = ENCOUNTER_VOID
            summary.encounters_voided += 1
        elif {state1, state2} == {FILLED, EMPTY}:
            if enc.bracket != BRACKET_POOL:
                enc.status = ENCOUNTER_BYE
                enc.winner_unit_id = unit1 if state1 == FILLED else unit2
                enc.completed_at = datetime.utcnow()
                summary.byes_recorded += 1
            else:
                # Group play against an empty slot: nothing to play, nothing advances
                enc.status = ENCOUNTER_VOID
                summary.encounters_voided += 1

    # Exits decided by encounter results
    for enc in encounters:
        for rank, role in ((enc.winner_exit_rank, ROLE_WINNER), (enc.loser_exit_rank, ROLE_LOSER)):
            if rank is None or rank not in advancing:
                continue
            state, unit_id = _encounter_outcome(enc, role)
            if state == PENDING:
                continue
            source = SOURCE_WINNER_OF if role == ROLE_WINNER else SOURCE_LOSER_OF
            if _write_slot(advancing[rank], unit_id, source, notes=f"{role.title()} of {enc.label}"):
                summary.exit_slots_resolved += 1

    # Draw phases pass incoming k straight to exit k
    if phase.phase_type == PHASE_DRAW:
        for number, slot in incoming.items():
            state, unit_id = _slot_state(slot)
            if state != PENDING and number in advancing:
                if _write_slot(advancing[number], unit_id, SOURCE_RANK_FROM_PHASE):
                    summary.exit_slots_resolved += 1

    summary.units_advanced += _apply_advancement_rules(session, phase, advancing)
    session.flush()
    return summary


def _apply_advancement_rules(session: Session, phase: Phase, advancing: Dict[int, PhaseSlot]) -> int:
    rules = session.exec(
        select(AdvancementRule)
        .where(AdvancementRule.source_phase_id == phase.id)
        .order_by(AdvancementRule.process_order, AdvancementRule.id)
    ).all()
    moved = 0
    targets_cache: Dict[int, Dict[int, PhaseSlot]] = {}
    for rule in rules:
        exit_slot = advancing.get(rule.source_rank)
        if exit_slot is None or not exit_slot.is_resolved:
            continue
        if rule.target_phase_id not in targets_cache:
            targets_cache[rule.target_phase_id] = _load_slots(session, rule.target_phase_id, SLOT_INCOMING)
        target = targets_cache[rule.target_phase_id].get(rule.target_slot_number)
        if target is None:
            continue
        if _write_slot(target, exit_slot.unit_id, SOURCE_RANK_FROM_PHASE, notes=rule.description):
            moved += 1
    return moved


def resolve_division_byes(session: Session, division_id: int) -> ByeResolutionSummary:
    """Run resolve_phase_byes over every phase of a division in phase order."""
    phases = session.exec(
        select(Phase).where(Phase.division_id == division_id).order_by(Phase.phase_order)
    ).all()
    summary = ByeResolutionSummary()
    for phase in phases:
        summary.merge(resolve_phase_byes(session, phase.id))
    if summary.changed:
        logger.info(
            "Division %s bye resolution: %d byes, %d voided, %d units advanced",
            division_id,
            summary.byes_recorded,
            summary.encounters_voided,
            summary.units_advanced,
        )
    return summary


def _reset_derived_state(session: Session, division_id: int) -> None:
    """Forget everything bye resolution derived, keeping draws, manual overrides and results."""
    phase_ids = session.exec(select(Phase.id).where(Phase.division_id == division_id)).all()
    if not phase_ids:
        return

    for enc in session.exec(select(Encounter).where(Encounter.division_id == division_id)).all():
        if enc.status == ENCOUNTER_COMPLETED:
            continue
        enc.status = ENCOUNTER_SCHEDULED
        enc.winner_unit_id = None
        enc.unit1_id = None
        enc.unit2_id = None
        enc.completed_at = None

    rule_targets = {
        (r.target_phase_id, r.target_slot_number)
        for r in session.exec(select(AdvancementRule).where(AdvancementRule.division_id == division_id)).all()
    }
    slots = session.exec(select(PhaseSlot).where(PhaseSlot.phase_id.in_(phase_ids))).all()
    for slot in slots:
        if slot.was_manually_resolved:
            continue
        if slot.slot_type == SLOT_ADVANCING or (slot.phase_id, slot.slot_number) in rule_targets:
            slot.unit_id = None
            slot.is_resolved = False
            slot.resolved_at = None
            slot.resolution_notes = None
    session.flush()


def _manual_assign(
    session: Session,
    phase_id: int,
    slot_type: str,
    slot_number: int,
    unit_id: Optional[int],
    notes: Optional[str],
) -> ByeResolutionSummary:
    try:
        phase = session.get(Phase, phase_id)
        if not phase:
            raise NotFound(f"Phase {phase_id} not found")
        slots = _load_slots(session, phase_id, slot_type)
        slot = slots.get(slot_number)
        if slot is None:
            raise NotFound(f"Phase {phase_id} has no {slot_type.lower()} slot {slot_number}")

        if unit_id is not None:
            unit = session.get(Unit, unit_id)
            if not unit or unit.division_id != phase.division_id:
                raise NotFound(f"Unit {unit_id} not found in division {phase.division_id}")
            for other in slots.values():
                if other.slot_number != slot_number and other.unit_id == unit_id:
                    raise SlotConflict(
                        f"Unit {unit_id} already occupies {slot_type.lower()} slot "
                        f"{other.slot_number} of phase {phase_id}"
                    )

        slot.unit_id = unit_id
        slot.is_resolved = True
        slot.was_manually_resolved = True
        slot.source_type = SOURCE_MANUAL if unit_id is not None else SOURCE_BYE
        slot.resolved_at = datetime.utcnow()
        slot.resolution_notes = notes
        session.add(slot)
        session.flush()

        _reset_derived_state(session, phase.division_id)
        summary = resolve_division_byes(session, phase.division_id)
        session.commit()
        logger.info(
            "%s slot %s of phase %s manually set to unit %s", slot_type, slot_number, phase_id, unit_id
        )
        return summary
    except SchedulingError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.exception("Manual %s slot assignment failed for phase %s slot %s", slot_type, phase_id, slot_number)
        raise


def assign_slot(
    session: Session,
    phase_id: int,
    slot_number: int,
    unit_id: Optional[int],
    notes: Optional[str] = None,
) -> ByeResolutionSummary:
    """Manually assign (or clear, with unit_id=None) an incoming slot, then re-resolve byes.

    A manual assignment wins over later automatic advancement into the same slot.
    Commits on success; rolls back and re-raises on failure.
    """
    return _manual_assign(session, phase_id, SLOT_INCOMING, slot_number, unit_id, notes)


def assign_exit_slot(
    session: Session,
    phase_id: int,
    slot_number: int,
    unit_id: Optional[int],
    notes: Optional[str] = None,
) -> ByeResolutionSummary:
    """Manually decide an exit (advancing) slot, e.g. a pool finishing position, and
    push it through the phase's advancement rules.

    Pool standings are not computed here, so this is how pool results reach the
    playoff phases. Same commit/rollback behavior as assign_slot().
    """
    return _manual_assign(session, phase_id, SLOT_ADVANCING, slot_number, unit_id, notes)
