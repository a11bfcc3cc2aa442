"""
Tests for bye computation and persisted bye resolution.
"""

import pytest
from sqlmodel import Session, select

from app.models.encounter import ENCOUNTER_BYE, ENCOUNTER_SCHEDULED, ENCOUNTER_VOID, Encounter
from app.models.phase import Phase
from app.models.phase_slot import SLOT_INCOMING, SOURCE_BYE, SOURCE_MANUAL, PhaseSlot
from app.models.unit import Unit
from app.services.bye_resolver import ByeAdvance, assign_slot, compute_byes, resolve_division_byes
from app.services.errors import NotFound, SlotConflict
from app.services.schedule_generator import generate_division_schedule

QF_PAIRINGS = [(1, 1, 8), (2, 4, 5), (3, 3, 6), (4, 2, 7)]


# ============================================================================
# compute_byes (pure)
# ============================================================================


def test_no_byes_when_every_slot_is_filled():
    assignments = {slot: 100 + slot for slot in range(1, 9)}
    assert compute_byes(QF_PAIRINGS, assignments) == []


def test_byes_for_six_units_in_eight_slots():
    assignments = {slot: 100 + slot for slot in range(1, 7)}
    byes = compute_byes(QF_PAIRINGS, assignments)
    assert byes == [ByeAdvance(1, 1, 101), ByeAdvance(4, 2, 102)]


def test_pending_slots_never_yield_a_bye():
    # Only slot 1 drawn so far; slots 2..6 still to come, 7 and 8 known empty
    byes = compute_byes(QF_PAIRINGS, {1: 101}, pending_slots=range(2, 7))
    assert [b.slot_number for b in byes] == [1]


def test_both_sides_empty_is_not_a_bye():
    assert compute_byes([(1, 1, 2)], {}) == []


def test_bye_on_second_side():
    assert compute_byes([(7, 3, 4)], {4: 55}) == [ByeAdvance(7, 4, 55)]


# ============================================================================
# Persisted resolution
# ============================================================================


def _generate(session: Session, make_division, se_template, units: int = 6):
    division = make_division(units)
    generate_division_schedule(session, division.id, template_id=se_template.id)
    phases = session.exec(
        select(Phase).where(Phase.division_id == division.id).order_by(Phase.phase_order)
    ).all()
    unit_ids = session.exec(select(Unit.id).where(Unit.division_id == division.id).order_by(Unit.id)).all()
    return division, phases, list(unit_ids)


def _incoming(session: Session, phase_id: int):
    slots = session.exec(
        select(PhaseSlot).where(PhaseSlot.phase_id == phase_id, PhaseSlot.slot_type == SLOT_INCOMING)
    ).all()
    return {s.slot_number: s for s in slots}


def _encounter(session: Session, phase_id: int, label: str) -> Encounter:
    return session.exec(select(Encounter).where(Encounter.phase_id == phase_id, Encounter.label == label)).one()


def test_unresolved_schedule_has_no_byes(session: Session, make_division, se_template):
    division, phases, _ = _generate(session, make_division, se_template)

    summary = resolve_division_byes(session, division.id)

    assert not summary.changed
    assert summary.phases_processed == [p.id for p in phases]
    assert _encounter(session, phases[0].id, "QF1").status == ENCOUNTER_SCHEDULED


def test_manual_assignment_waits_for_the_opponent_slot(session: Session, make_division, se_template):
    division, phases, unit_ids = _generate(session, make_division, se_template)
    qf = phases[0]

    summary = assign_slot(session, qf.id, 1, unit_ids[0])
    assert summary.byes_recorded == 0

    slot = _incoming(session, qf.id)[1]
    assert slot.unit_id == unit_ids[0]
    assert slot.source_type == SOURCE_MANUAL
    assert slot.was_manually_resolved

    qf1 = _encounter(session, qf.id, "QF1")
    assert qf1.unit1_id == unit_ids[0]
    assert qf1.status == ENCOUNTER_SCHEDULED


def test_clearing_the_opponent_slot_creates_a_bye_that_advances(session: Session, make_division, se_template):
    division, phases, unit_ids = _generate(session, make_division, se_template)
    qf, sf = phases[0], phases[1]

    assign_slot(session, qf.id, 1, unit_ids[0])
    summary = assign_slot(session, qf.id, 8, None, notes="No opponent")

    assert summary.byes_recorded == 1
    assert summary.units_advanced == 1

    cleared = _incoming(session, qf.id)[8]
    assert cleared.is_resolved and cleared.unit_id is None
    assert cleared.source_type == SOURCE_BYE

    qf1 = _encounter(session, qf.id, "QF1")
    assert qf1.status == ENCOUNTER_BYE
    assert qf1.winner_unit_id == unit_ids[0]

    sf_slot = _incoming(session, sf.id)[1]
    assert sf_slot.unit_id == unit_ids[0]
    assert sf_slot.is_resolved


def test_both_slots_empty_voids_the_encounter(session: Session, make_division, se_template):
    division, phases, _ = _generate(session, make_division, se_template)
    qf, sf = phases[0], phases[1]

    assign_slot(session, qf.id, 2, None)
    assign_slot(session, qf.id, 7, None)

    assert _encounter(session, qf.id, "QF4").status == ENCOUNTER_VOID
    sf_slot = _incoming(session, sf.id)[4]
    assert sf_slot.is_resolved and sf_slot.unit_id is None


def test_resolution_is_idempotent(session: Session, make_division, se_template):
    division, phases, unit_ids = _generate(session, make_division, se_template)
    qf = phases[0]
    assign_slot(session, qf.id, 1, unit_ids[0])
    assign_slot(session, qf.id, 8, None)

    again = resolve_division_byes(session, division.id)

    assert not again.changed
    assert _encounter(session, qf.id, "QF1").status == ENCOUNTER_BYE


def test_same_unit_in_two_slots_is_a_conflict(session: Session, make_division, se_template):
    division, phases, unit_ids = _generate(session, make_division, se_template)
    qf = phases[0]
    assign_slot(session, qf.id, 1, unit_ids[0])

    with pytest.raises(SlotConflict) as exc:
        assign_slot(session, qf.id, 2, unit_ids[0])
    assert exc.value.status_code == 409
    assert _incoming(session, qf.id)[2].unit_id is None


def test_assign_unknown_slot_or_unit(session: Session, make_division, se_template):
    division, phases, _ = _generate(session, make_division, se_template)

    with pytest.raises(NotFound):
        assign_slot(session, phases[0].id, 9, None)
    with pytest.raises(NotFound):
        assign_slot(session, phases[0].id, 1, 9999)
    with pytest.raises(NotFound):
        assign_slot(session, 9999, 1, None)
