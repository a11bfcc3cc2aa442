"""
Tests for the drawing ceremony: state machine, slot assignment on confirm,
bye handling and compare-and-set protection against concurrent organizers.
"""

import random

import pytest
from sqlalchemy import update
from sqlmodel import Session, select

from app.models.division import SCHEDULE_UNITS_ASSIGNED
from app.models.drawing_session import DRAW_COMPLETED, DRAW_CONFIRMED, DRAW_IN_PROGRESS, DRAW_READY, DrawingSession
from app.models.encounter import ENCOUNTER_BYE, Encounter
from app.models.phase import Phase
from app.models.phase_slot import SLOT_INCOMING, SOURCE_BYE, SOURCE_SEEDED, PhaseSlot
from app.models.unit import Unit
from app.services import drawing_orchestrator
from app.services.drawing_orchestrator import (
    cancel_drawing,
    confirm_drawing,
    draw_next,
    get_drawing_state,
    redraw,
    start_drawing,
)
from app.services.errors import (
    ConcurrentDrawConflict,
    DrawAlreadyConfirmed,
    DrawAlreadyInProgress,
    DrawNotFinished,
    NoEligibleUnits,
    NotFound,
    NoUnitsRemaining,
    ScheduleNotGenerated,
    UnitCountOutOfRange,
)
from app.services.schedule_generator import generate_division_schedule


class Recorder:
    """Publisher stand-in that keeps every (division_id, event) it is handed"""

    def __init__(self):
        self.published = []

    def __call__(self, division_id, event):
        self.published.append((division_id, event))

    @property
    def types(self):
        return [event.type for _, event in self.published]


@pytest.fixture(name="scheduled_division")
def scheduled_division_fixture(session: Session, make_division, se_template):
    division = make_division(6, cancelled=1, waitlisted=1)
    generate_division_schedule(session, division.id, template_id=se_template.id)
    return division


def _draw_all(session: Session, session_id: int, publisher=None):
    while True:
        step = draw_next(session, session_id, publisher=publisher)
        if step.state.status == DRAW_COMPLETED:
            return step


def _incoming(session: Session, phase_id: int):
    slots = session.exec(
        select(PhaseSlot)
        .where(PhaseSlot.phase_id == phase_id, PhaseSlot.slot_type == SLOT_INCOMING)
        .order_by(PhaseSlot.slot_number)
    ).all()
    return {s.slot_number: s for s in slots}


def _phases(session: Session, division_id: int):
    return session.exec(select(Phase).where(Phase.division_id == division_id).order_by(Phase.phase_order)).all()


# ============================================================================
# Ready / start
# ============================================================================


def test_state_without_session_is_ready(session: Session, scheduled_division):
    state = get_drawing_state(session, scheduled_division.id)
    assert state.status == DRAW_READY
    assert state.session_id is None
    assert state.total_units == 6
    assert state.drawn_units == []


def test_state_for_unknown_division(session: Session):
    with pytest.raises(NotFound):
        get_drawing_state(session, 999)


def test_start_shuffles_eligible_units_only(session: Session, scheduled_division):
    recorder = Recorder()

    step = start_drawing(
        session, scheduled_division.id, started_by_name="Desk 1", rng=random.Random(7), publisher=recorder
    )

    state = step.state
    assert state.status == DRAW_IN_PROGRESS
    assert state.total_units == 6
    assert state.drawn_count == 0
    assert state.started_by_name == "Desk 1"
    assert state.remaining_unit_names == [f"Team {i:02d}" for i in range(1, 7)]
    assert recorder.types == ["DrawStarted"]
    assert recorder.published[0][0] == scheduled_division.id

    drawing = session.get(DrawingSession, state.session_id)
    eligible = session.exec(
        select(Unit.id).where(Unit.division_id == scheduled_division.id, Unit.status == "Confirmed")
    ).all()
    assert sorted(drawing.remaining_json) == sorted(eligible)


def test_start_twice_is_rejected(session: Session, scheduled_division):
    start_drawing(session, scheduled_division.id, rng=random.Random(1))
    with pytest.raises(DrawAlreadyInProgress):
        start_drawing(session, scheduled_division.id, rng=random.Random(1))


def test_start_without_units(session: Session, make_division):
    division = make_division(0)
    with pytest.raises(NoEligibleUnits) as exc:
        start_drawing(session, division.id)
    assert exc.value.code == "NO_ELIGIBLE_UNITS"


def test_start_without_schedule(session: Session, make_division):
    division = make_division(4)
    with pytest.raises(ScheduleNotGenerated):
        start_drawing(session, division.id)


def test_start_with_more_units_than_slots(session: Session, scheduled_division):
    for i in range(3):
        session.add(Unit(division_id=scheduled_division.id, name=f"Late {i}", status="Confirmed"))
    session.commit()

    with pytest.raises(UnitCountOutOfRange):
        start_drawing(session, scheduled_division.id)
    assert session.exec(select(DrawingSession)).all() == []


# ============================================================================
# Drawing
# ============================================================================


def test_draw_next_assigns_sequential_slots(session: Session, scheduled_division):
    recorder = Recorder()
    started = start_drawing(session, scheduled_division.id, rng=random.Random(3), publisher=recorder)
    session_id = started.state.session_id
    hidden_order = list(session.get(DrawingSession, session_id).remaining_json)

    first = draw_next(session, session_id, publisher=recorder)
    assert first.state.drawn_count == 1
    assert first.state.drawn_units[0].slot_number == 1
    assert first.state.drawn_units[0].unit_id == hidden_order[0]
    assert len(first.state.remaining_unit_names) == 5

    drawn_event = first.events[0]
    assert drawn_event.type == "UnitDrawn"
    assert drawn_event.slot_number == 1
    assert drawn_event.remaining_count == 5

    final = _draw_all(session, session_id, publisher=recorder)
    assert final.state.status == DRAW_COMPLETED
    assert final.state.completed_at is not None
    assert [d.unit_id for d in final.state.drawn_units] == hidden_order
    assert [d.slot_number for d in final.state.drawn_units] == [1, 2, 3, 4, 5, 6]
    assert final.state.remaining_unit_names == []

    assert recorder.types == ["DrawStarted"] + ["UnitDrawn"] * 6 + ["DrawCompleted"]
    completed = recorder.published[-1][1]
    assert [d.unit_id for d in completed.final_order] == hidden_order


def test_drawn_units_list_only_accepted_members(session: Session, scheduled_division):
    started = start_drawing(session, scheduled_division.id, rng=random.Random(5))
    step = draw_next(session, started.state.session_id)

    drawn = step.state.drawn_units[0]
    number = drawn.unit_name.split()[-1].lstrip("0")
    assert drawn.member_names == [f"Player {number}A", f"Player {number}B"]
    assert step.events[0].member_names == drawn.member_names


def test_bye_preview_grows_as_top_slots_fill(session: Session, scheduled_division):
    started = start_drawing(session, scheduled_division.id, rng=random.Random(11))
    session_id = started.state.session_id

    first = draw_next(session, session_id)
    assert [b.slot_number for b in first.state.byes] == [1]
    assert first.state.byes[0].unit_id == first.state.drawn_units[0].unit_id

    second = draw_next(session, session_id)
    assert [b.slot_number for b in second.state.byes] == [1, 2]
    assert [b.slot_number for b in second.events[0].byes] == [1, 2]


def test_draw_after_completion(session: Session, scheduled_division):
    started = start_drawing(session, scheduled_division.id, rng=random.Random(2))
    _draw_all(session, started.state.session_id)

    with pytest.raises(NoUnitsRemaining):
        draw_next(session, started.state.session_id)


def test_draw_unknown_session(session: Session):
    with pytest.raises(NotFound):
        draw_next(session, 12345)


# ============================================================================
# Confirm
# ============================================================================


def test_confirm_before_finished(session: Session, scheduled_division):
    started = start_drawing(session, scheduled_division.id, rng=random.Random(4))
    draw_next(session, started.state.session_id)

    with pytest.raises(DrawNotFinished):
        confirm_drawing(session, started.state.session_id)
    assert _incoming(session, _phases(session, scheduled_division.id)[0].id)[1].unit_id is None


def test_confirm_writes_slots_and_resolves_byes(session: Session, scheduled_division):
    recorder = Recorder()
    started = start_drawing(session, scheduled_division.id, rng=random.Random(9))
    session_id = started.state.session_id
    completed = _draw_all(session, session_id)
    by_slot = {d.slot_number: d.unit_id for d in completed.state.drawn_units}

    step = confirm_drawing(session, session_id, publisher=recorder)

    assert step.state.status == DRAW_CONFIRMED
    assert step.state.confirmed_at is not None
    assert recorder.types == ["DrawConfirmed"]

    qf, sf, _ = _phases(session, scheduled_division.id)
    qf_slots = _incoming(session, qf.id)
    for number in range(1, 7):
        assert qf_slots[number].unit_id == by_slot[number]
        assert qf_slots[number].source_type == SOURCE_SEEDED
        assert qf_slots[number].is_resolved
    for number in (7, 8):
        assert qf_slots[number].unit_id is None
        assert qf_slots[number].is_resolved
        assert qf_slots[number].source_type == SOURCE_BYE

    # Every drawn unit lands in exactly one slot
    assigned = [s.unit_id for s in qf_slots.values() if s.unit_id is not None]
    assert len(assigned) == len(set(assigned)) == 6

    byes = session.exec(select(Encounter).where(Encounter.phase_id == qf.id, Encounter.status == ENCOUNTER_BYE)).all()
    assert sorted(e.label for e in byes) == ["QF1", "QF4"]

    sf_slots = _incoming(session, sf.id)
    assert sf_slots[1].unit_id == by_slot[1]
    assert sf_slots[4].unit_id == by_slot[2]
    assert sf_slots[2].unit_id is None and not sf_slots[2].is_resolved

    session.refresh(scheduled_division)
    assert scheduled_division.schedule_status == SCHEDULE_UNITS_ASSIGNED


def test_confirm_with_matching_assignments(session: Session, scheduled_division):
    started = start_drawing(session, scheduled_division.id, rng=random.Random(6))
    completed = _draw_all(session, started.state.session_id)
    assignments = [{"unit_id": d.unit_id, "slot_number": d.slot_number} for d in completed.state.drawn_units]

    step = confirm_drawing(session, started.state.session_id, assignments=assignments)
    assert step.state.status == DRAW_CONFIRMED


def test_confirm_with_stale_assignments(session: Session, scheduled_division):
    started = start_drawing(session, scheduled_division.id, rng=random.Random(6))
    completed = _draw_all(session, started.state.session_id)
    drawn = completed.state.drawn_units
    swapped = [{"unit_id": drawn[1].unit_id, "slot_number": 1}, {"unit_id": drawn[0].unit_id, "slot_number": 2}]
    swapped += [{"unit_id": d.unit_id, "slot_number": d.slot_number} for d in drawn[2:]]

    with pytest.raises(ConcurrentDrawConflict):
        confirm_drawing(session, started.state.session_id, assignments=swapped)
    assert get_drawing_state(session, scheduled_division.id).status == DRAW_COMPLETED


def test_confirmed_session_is_terminal(session: Session, scheduled_division):
    started = start_drawing(session, scheduled_division.id, rng=random.Random(8))
    session_id = started.state.session_id
    _draw_all(session, session_id)
    confirm_drawing(session, session_id)

    with pytest.raises(ConcurrentDrawConflict):
        confirm_drawing(session, session_id)
    with pytest.raises(DrawAlreadyConfirmed):
        draw_next(session, session_id)
    with pytest.raises(DrawAlreadyConfirmed):
        cancel_drawing(session, session_id)
    with pytest.raises(DrawAlreadyConfirmed):
        redraw(session, session_id)
    with pytest.raises(DrawAlreadyConfirmed):
        start_drawing(session, scheduled_division.id)


# ============================================================================
# Cancel / redraw
# ============================================================================


def test_cancel_returns_to_ready(session: Session, scheduled_division):
    recorder = Recorder()
    started = start_drawing(session, scheduled_division.id, rng=random.Random(10))
    draw_next(session, started.state.session_id)

    step = cancel_drawing(session, started.state.session_id, publisher=recorder)

    assert step.state.status == DRAW_READY
    assert recorder.types == ["DrawCancelled"]
    assert recorder.published[0][1].reason == "cancelled"
    assert session.exec(select(DrawingSession)).all() == []
    qf = _phases(session, scheduled_division.id)[0]
    assert all(s.unit_id is None for s in _incoming(session, qf.id).values())

    # A fresh draw can start again
    again = start_drawing(session, scheduled_division.id, rng=random.Random(10))
    assert again.state.status == DRAW_IN_PROGRESS


def test_redraw_discards_and_restarts(session: Session, scheduled_division):
    recorder = Recorder()
    started = start_drawing(session, scheduled_division.id, started_by_name="Desk 2", rng=random.Random(12))
    old_id = started.state.session_id
    _draw_all(session, old_id)

    step = redraw(session, old_id, rng=random.Random(13), publisher=recorder)

    assert step.state.status == DRAW_IN_PROGRESS
    assert step.state.drawn_count == 0
    assert step.state.started_by_name == "Desk 2"
    assert recorder.types == ["DrawCancelled", "DrawStarted"]
    assert recorder.published[0][1].reason == "redraw"
    assert [e.type for e in step.events] == ["DrawCancelled", "DrawStarted"]
    assert len(session.exec(select(DrawingSession)).all()) == 1


# ============================================================================
# Concurrent organizers
# ============================================================================


def test_concurrent_draw_next_has_one_winner(session: Session, other_session: Session, scheduled_division):
    started = start_drawing(session, scheduled_division.id, rng=random.Random(14))
    session_id = started.state.session_id
    # Second organizer read the session before the first one drew; the reference keeps it in its identity map
    stale = other_session.get(DrawingSession, session_id)
    assert stale.version == started.state.version

    draw_next(session, session_id)
    with pytest.raises(ConcurrentDrawConflict):
        draw_next(other_session, session_id)

    assert get_drawing_state(session, scheduled_division.id).drawn_count == 1


def test_concurrent_confirm_has_one_winner(session: Session, other_session: Session, scheduled_division):
    started = start_drawing(session, scheduled_division.id, rng=random.Random(15))
    session_id = started.state.session_id
    _draw_all(session, session_id)
    stale = other_session.get(DrawingSession, session_id)
    assert stale.status == DRAW_COMPLETED

    confirm_drawing(session, session_id)
    with pytest.raises(ConcurrentDrawConflict):
        confirm_drawing(other_session, session_id)

    qf = _phases(session, scheduled_division.id)[0]
    assigned = [s.unit_id for s in _incoming(session, qf.id).values() if s.unit_id is not None]
    assert len(assigned) == len(set(assigned)) == 6


def test_cancel_racing_a_draw(session: Session, other_session: Session, scheduled_division):
    started = start_drawing(session, scheduled_division.id, rng=random.Random(16))
    session_id = started.state.session_id
    stale = other_session.get(DrawingSession, session_id)
    assert stale.drawn_json == []

    draw_next(session, session_id)
    with pytest.raises(ConcurrentDrawConflict):
        cancel_drawing(other_session, session_id)

    assert get_drawing_state(session, scheduled_division.id).status == DRAW_IN_PROGRESS


def test_simultaneous_starts_leave_one_session(session: Session, scheduled_division, monkeypatch):
    # Both organizers pass the existence check before either one inserts
    monkeypatch.setattr(drawing_orchestrator, "_active_drawing", lambda s, division_id: None)

    first = start_drawing(session, scheduled_division.id, rng=random.Random(17))
    with pytest.raises(DrawAlreadyInProgress):
        start_drawing(session, scheduled_division.id, rng=random.Random(18))

    rows = session.exec(select(DrawingSession).where(DrawingSession.division_id == scheduled_division.id)).all()
    assert [r.id for r in rows] == [first.state.session_id]
    assert rows[0].status == DRAW_IN_PROGRESS


def test_confirm_loses_to_slot_assigned_mid_confirm(session: Session, scheduled_division, monkeypatch):
    started = start_drawing(session, scheduled_division.id, rng=random.Random(19))
    session_id = started.state.session_id
    completed = _draw_all(session, session_id)
    qf = _phases(session, scheduled_division.id)[0]
    intruder = completed.state.drawn_units[0].unit_id

    real_compare_and_set = drawing_orchestrator._compare_and_set

    def compare_and_set_then_manual_assign(s, drawing, **values):
        real_compare_and_set(s, drawing, **values)
        if values.get("status") == DRAW_CONFIRMED:
            s.execute(
                update(PhaseSlot)
                .where(
                    PhaseSlot.phase_id == qf.id,
                    PhaseSlot.slot_type == SLOT_INCOMING,
                    PhaseSlot.slot_number == 3,
                )
                .values(unit_id=intruder)
            )

    monkeypatch.setattr(drawing_orchestrator, "_compare_and_set", compare_and_set_then_manual_assign)
    with pytest.raises(ConcurrentDrawConflict):
        confirm_drawing(session, session_id)
    monkeypatch.undo()

    session.expire_all()
    assert get_drawing_state(session, scheduled_division.id).status == DRAW_COMPLETED
    assert all(s.unit_id is None for s in _incoming(session, qf.id).values())


def test_redraw_reshuffles_with_default_randomness(session: Session, scheduled_division):
    session_id = start_drawing(session, scheduled_division.id).state.session_id
    orders = set()
    for _ in range(10):
        session_id = redraw(session, session_id).state.session_id
        orders.add(tuple(session.get(DrawingSession, session_id).remaining_json))

    assert len(orders) > 1
