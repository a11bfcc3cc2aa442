"""
Tests for schedule generation: persisted phases, slots, rules and encounters.
"""

import pytest
from sqlmodel import Session, select

from app.models.advancement_rule import AdvancementRule
from app.models.division import SCHEDULE_GENERATED, SCHEDULE_NOT_GENERATED, Division
from app.models.drawing_session import DrawingSession
from app.models.encounter import Encounter
from app.models.phase import Phase
from app.models.phase_pool import PhasePool
from app.models.phase_slot import SLOT_ADVANCING, SLOT_INCOMING, SOURCE_BYE, PhaseSlot
from app.services.drawing_orchestrator import start_drawing
from app.services.errors import NotFound, ScheduleAlreadyExists, UnitCountOutOfRange
from app.services.schedule_generator import (
    count_eligible_units,
    delete_division_schedule,
    generate_division_schedule,
)

POOLS_TO_PLAYOFFS = {
    "phases": [
        {"type": "Pools", "name": "Pool Play", "poolCount": 3, "advancePerPool": 2},
        {"type": "Bracket", "name": "Playoffs", "splitRounds": True},
    ]
}


def phases_of(session: Session, division_id: int):
    return session.exec(select(Phase).where(Phase.division_id == division_id).order_by(Phase.phase_order)).all()


def slots_of(session: Session, phase_id: int, slot_type: str):
    return session.exec(
        select(PhaseSlot)
        .where(PhaseSlot.phase_id == phase_id, PhaseSlot.slot_type == slot_type)
        .order_by(PhaseSlot.slot_number)
    ).all()


def encounters_of(session: Session, phase_id: int):
    return session.exec(
        select(Encounter).where(Encounter.phase_id == phase_id).order_by(Encounter.encounter_number)
    ).all()


def test_eligible_units_exclude_cancelled_and_waitlisted(session: Session, make_division):
    division = make_division(6, cancelled=2, waitlisted=1)
    assert count_eligible_units(session, division.id) == 6


def test_generate_single_elimination_from_template(session: Session, make_division, se_template):
    division = make_division(6)

    result = generate_division_schedule(session, division.id, template_id=se_template.id)

    assert result.unit_count == 6
    assert len(result.phase_ids) == 3
    assert result.encounters_created == 7

    phases = phases_of(session, division.id)
    assert [p.name for p in phases] == ["Quarterfinals", "Semifinals", "Finals"]
    assert [p.incoming_slot_count for p in phases] == [8, 4, 2]
    assert all(p.template_id == se_template.id for p in phases)

    qf_slots = slots_of(session, phases[0].id, SLOT_INCOMING)
    assert [s.placeholder_label for s in qf_slots] == [f"Seed {k}" for k in range(1, 9)]
    assert not any(s.is_resolved for s in qf_slots)

    qf = encounters_of(session, phases[0].id)
    slot_number = {s.id: s.slot_number for s in qf_slots}
    assert [(slot_number[e.slot1_id], slot_number[e.slot2_id]) for e in qf] == [(1, 8), (4, 5), (3, 6), (2, 7)]

    sf_slots = slots_of(session, phases[1].id, SLOT_INCOMING)
    assert [s.placeholder_label for s in sf_slots] == [
        "Quarterfinals Winner 1",
        "Quarterfinals Winner 2",
        "Quarterfinals Winner 3",
        "Quarterfinals Winner 4",
    ]

    final_exits = slots_of(session, phases[2].id, SLOT_ADVANCING)
    assert [s.exit_label for s in final_exits] == ["Champion", "Runner-up"]

    rules = session.exec(select(AdvancementRule).where(AdvancementRule.division_id == division.id)).all()
    assert len(rules) == 4 + 2

    session.refresh(division)
    assert division.schedule_status == SCHEDULE_GENERATED
    assert division.applied_template_id == se_template.id


def test_advancing_slots_point_at_their_encounters(session: Session, make_division, se_template):
    division = make_division(8)
    generate_division_schedule(session, division.id, template_id=se_template.id)
    qf_phase = phases_of(session, division.id)[0]

    exits = slots_of(session, qf_phase.id, SLOT_ADVANCING)
    encounters = {e.id: e for e in encounters_of(session, qf_phase.id)}
    assert [encounters[s.source_encounter_id].label for s in exits] == ["QF1", "QF2", "QF3", "QF4"]
    assert exits[0].placeholder_label == "Winner QF1"


def test_generate_pools_then_playoffs(session: Session, make_division):
    division = make_division(12)

    result = generate_division_schedule(session, division.id, structure=POOLS_TO_PLAYOFFS)
    phases = phases_of(session, division.id)
    assert [p.name for p in phases] == ["Pool Play", "Quarterfinals", "Semifinals", "Finals"]
    assert result.encounters_created == 18 + 4 + 2 + 1

    pools = session.exec(select(PhasePool).where(PhasePool.phase_id == phases[0].id).order_by(PhasePool.pool_order)).all()
    assert [(p.pool_name, p.slot_count) for p in pools] == [("A", 4), ("B", 4), ("C", 4)]

    pool_slots = slots_of(session, phases[0].id, SLOT_INCOMING)
    pool_a = [s.slot_number for s in pool_slots if s.pool_id == pools[0].id]
    assert pool_a == [1, 6, 7, 12]
    assert pool_slots[0].placeholder_label == "Pool A Seed 1"

    pool_encounters = encounters_of(session, phases[0].id)
    assert all(e.pool_id is not None for e in pool_encounters)
    assert sum(1 for e in pool_encounters if e.pool_id == pools[1].id) == 6

    # Six playoff entrants in an 8 bracket: slots 7 and 8 are never fed
    playoff_slots = slots_of(session, phases[1].id, SLOT_INCOMING)
    unfed = [s for s in playoff_slots if s.source_type == SOURCE_BYE]
    assert [s.slot_number for s in unfed] == [7, 8]
    assert all(s.is_resolved and s.unit_id is None for s in unfed)
    assert playoff_slots[0].placeholder_label == "Pool A #1"
    assert playoff_slots[1].placeholder_label == "Pool B #1"

    pool_rules = session.exec(select(AdvancementRule).where(AdvancementRule.source_phase_id == phases[0].id)).all()
    assert len(pool_rules) == 6
    assert all(r.source_pool_id is not None for r in pool_rules)


def test_generate_twice_without_clear_is_rejected(session: Session, make_division, se_template):
    division = make_division(8)
    generate_division_schedule(session, division.id, template_id=se_template.id)

    with pytest.raises(ScheduleAlreadyExists):
        generate_division_schedule(session, division.id, template_id=se_template.id)

    # Prior state untouched
    assert len(phases_of(session, division.id)) == 3


def test_regenerate_with_clear_replaces_schedule(session: Session, make_division, se_template):
    division = make_division(8)
    first = generate_division_schedule(session, division.id, template_id=se_template.id)
    assert len(first.phase_ids) == 3

    second = generate_division_schedule(
        session, division.id, structure={"phases": [{"type": "RoundRobin"}]}, clear_existing_phases=True
    )

    assert second.cleared_existing is True
    phases = phases_of(session, division.id)
    assert len(phases) == 1
    assert len(encounters_of(session, phases[0].id)) == 28
    leftovers = session.exec(select(Encounter).where(Encounter.division_id == division.id)).all()
    assert len(leftovers) == 28


def test_generate_out_of_range_leaves_nothing_behind(session: Session, make_division, se_template):
    se_template.min_units = 4
    session.add(se_template)
    session.commit()
    division = make_division(3)

    with pytest.raises(UnitCountOutOfRange):
        generate_division_schedule(session, division.id, template_id=se_template.id)

    assert phases_of(session, division.id) == []
    session.refresh(division)
    assert division.schedule_status == SCHEDULE_NOT_GENERATED


def test_unit_count_falls_back_to_template_default(session: Session, se_template):
    division = Division(event_id=1, name="Empty")
    session.add(division)
    session.commit()

    result = generate_division_schedule(session, division.id, template_id=se_template.id)
    assert result.unit_count == se_template.default_units


def test_missing_division(session: Session, se_template):
    with pytest.raises(NotFound):
        generate_division_schedule(session, 999, template_id=se_template.id)


def test_delete_division_schedule(session: Session, make_division, se_template):
    division = make_division(8)
    generate_division_schedule(session, division.id, template_id=se_template.id)

    assert delete_division_schedule(session, division.id) == 3
    assert phases_of(session, division.id) == []
    session.refresh(division)
    assert division.schedule_status == SCHEDULE_NOT_GENERATED


def test_encounters_are_annotated_with_game_settings(session: Session, make_division, se_template):
    division = make_division(4, default_best_of=3)
    generate_division_schedule(session, division.id, template_id=se_template.id)
    encounters = session.exec(select(Encounter).where(Encounter.division_id == division.id)).all()
    assert encounters
    assert all(e.best_of == 3 for e in encounters)


def test_regenerate_announces_discarded_drawing(session: Session, make_division, se_template):
    division = make_division(4)
    generate_division_schedule(session, division.id, template_id=se_template.id)
    drawing_id = start_drawing(session, division.id).state.session_id
    published = []

    generate_division_schedule(
        session,
        division.id,
        template_id=se_template.id,
        clear_existing_phases=True,
        publisher=lambda division_id, event: published.append((division_id, event)),
    )

    assert session.exec(select(DrawingSession)).all() == []
    assert [(d, e.type, e.session_id, e.reason) for d, e in published] == [
        (division.id, "DrawCancelled", drawing_id, "regenerated")
    ]


def test_delete_announces_discarded_drawing_only_when_there_was_one(session: Session, make_division, se_template):
    division = make_division(4)
    generate_division_schedule(session, division.id, template_id=se_template.id)
    published = []

    def publisher(division_id, event):
        published.append(event)

    generate_division_schedule(
        session, division.id, template_id=se_template.id, clear_existing_phases=True, publisher=publisher
    )
    assert published == []

    drawing_id = start_drawing(session, division.id).state.session_id
    delete_division_schedule(session, division.id, publisher=publisher)
    assert [(e.session_id, e.reason) for e in published] == [(drawing_id, "schedule_deleted")]
