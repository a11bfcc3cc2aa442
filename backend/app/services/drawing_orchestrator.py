"""
Drawing Orchestrator - randomized, resumable slot assignment ceremony.

States: Ready (no session) -> InProgress -> Completed -> Confirmed (terminal).

Eligible units are shuffled once at start; each draw_next() reveals the next
unit and gives it the next sequential slot (unit at permuted index i -> slot
i+1). Nothing touches PhaseSlot rows until confirm_drawing(), which writes every
assignment plus resulting byes in one transaction.

Every session mutation is a compare-and-set on DrawingSession.version, so two
organizers (or two server instances) racing on the same session cannot both
win; the loser gets ConcurrentDrawConflict.
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.models.division import SCHEDULE_UNITS_ASSIGNED, Division
from app.models.drawing_session import (
    DRAW_COMPLETED,
    DRAW_CONFIRMED,
    DRAW_IN_PROGRESS,
    DRAW_READY,
    DrawingSession,
)
from app.models.encounter import Encounter
from app.models.phase import Phase
from app.models.phase_slot import SLOT_INCOMING, SOURCE_BYE, SOURCE_SEEDED, PhaseSlot
from app.models.unit import INELIGIBLE_UNIT_STATUSES, Unit, UnitMember
from app.services.bye_resolver import ByeAdvance, compute_byes, resolve_division_byes
from app.services.drawing_broadcast import (
    ByePreview,
    DrawCancelled,
    DrawCompleted,
    DrawConfirmed,
    DrawingEvent,
    DrawingState,
    DrawnUnit,
    DrawStarted,
    UnitDrawn,
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
    SchedulingError,
    UnitCountOutOfRange,
)

logger = logging.getLogger(__name__)

Publisher = Callable[[int, DrawingEvent], None]

_system_random = random.SystemRandom()


@dataclass
class DrawStep:
    """What a mutating call did: the new state plus the events to fan out."""

    state: DrawingState
    events: List[DrawingEvent] = field(default_factory=list)

    def publish(self, publisher: Optional[Publisher]) -> None:
        if publisher is None:
            return
        for event in self.events:
            publisher(self.state.division_id, event)


# ============================================================================
# Lookups
# ============================================================================


def eligible_units(session: Session, division_id: int) -> List[Unit]:
    return list(
        session.exec(
            select(Unit)
            .where(Unit.division_id == division_id, Unit.status.not_in(INELIGIBLE_UNIT_STATUSES))
            .order_by(Unit.id)
        ).all()
    )


def entry_phase(session: Session, division_id: int) -> Optional[Phase]:
    return session.exec(
        select(Phase).where(Phase.division_id == division_id).order_by(Phase.phase_order)
    ).first()


def _member_names(session: Session, unit_ids: Sequence[int]) -> Dict[int, List[str]]:
    names: Dict[int, List[str]] = {uid: [] for uid in unit_ids}
    if not unit_ids:
        return names
    members = session.exec(
        select(UnitMember)
        .where(UnitMember.unit_id.in_(list(unit_ids)), UnitMember.invite_status == "Accepted")
        .order_by(UnitMember.id)
    ).all()
    for m in members:
        names[m.unit_id].append(m.name)
    return names


def _get_drawing(session: Session, session_id: int) -> DrawingSession:
    drawing = session.get(DrawingSession, session_id)
    if not drawing:
        raise NotFound(f"Drawing session {session_id} not found")
    return drawing


def _active_drawing(session: Session, division_id: int) -> Optional[DrawingSession]:
    return session.exec(
        select(DrawingSession)
        .where(DrawingSession.division_id == division_id)
        .order_by(DrawingSession.id.desc())
    ).first()


def _entry_pairings(session: Session, phase_id: int) -> List[tuple]:
    """(encounter_number, slot_a, slot_b) for entry encounters fed by two incoming slots."""
    slots = session.exec(
        select(PhaseSlot).where(PhaseSlot.phase_id == phase_id, PhaseSlot.slot_type == SLOT_INCOMING)
    ).all()
    number_by_id = {s.id: s.slot_number for s in slots}
    encounters = session.exec(
        select(Encounter)
        .where(Encounter.phase_id == phase_id, Encounter.slot1_id.is_not(None), Encounter.slot2_id.is_not(None))
        .order_by(Encounter.encounter_number)
    ).all()
    return [
        (e.encounter_number, number_by_id[e.slot1_id], number_by_id[e.slot2_id])
        for e in encounters
        if e.bracket != "Pool"
    ]


def _preview_byes(session: Session, drawing: DrawingSession) -> List[ByeAdvance]:
    assignments = {d["slot_number"]: d["unit_id"] for d in drawing.drawn_json}
    pending = range(len(drawing.drawn_json) + 1, drawing.total_units + 1)
    return compute_byes(_entry_pairings(session, drawing.phase_id), assignments, pending)


def _drawn_units(session: Session, drawing: DrawingSession) -> List[DrawnUnit]:
    members = _member_names(session, [d["unit_id"] for d in drawing.drawn_json])
    return [
        DrawnUnit(
            unit_id=d["unit_id"],
            unit_name=d["unit_name"],
            slot_number=d["slot_number"],
            member_names=members.get(d["unit_id"], []),
            drawn_at=d.get("drawn_at"),
        )
        for d in drawing.drawn_json
    ]


def _bye_models(byes: Sequence[ByeAdvance]) -> List[ByePreview]:
    return [ByePreview(slot_number=b.slot_number, unit_id=b.unit_id, encounter_number=b.encounter_number) for b in byes]


def _state_for(session: Session, division: Division, drawing: Optional[DrawingSession]) -> DrawingState:
    if drawing is None:
        return DrawingState(
            division_id=division.id,
            division_name=division.name,
            event_id=division.event_id,
            status=DRAW_READY,
            total_units=len(eligible_units(session, division.id)),
        )

    remaining = []
    if drawing.remaining_json:
        units = session.exec(select(Unit).where(Unit.id.in_(list(drawing.remaining_json)))).all()
        # Alphabetical so the hidden shuffle order never leaks
        remaining = sorted(u.name for u in units)

    return DrawingState(
        division_id=division.id,
        division_name=division.name,
        event_id=division.event_id,
        status=drawing.status,
        session_id=drawing.id,
        total_units=drawing.total_units,
        drawn_count=len(drawing.drawn_json),
        drawn_units=_drawn_units(session, drawing),
        remaining_unit_names=remaining,
        byes=_bye_models(_preview_byes(session, drawing)),
        started_at=drawing.started_at,
        started_by_name=drawing.started_by_name,
        completed_at=drawing.completed_at,
        confirmed_at=drawing.confirmed_at,
        version=drawing.version,
    )


def _compare_and_set(session: Session, drawing: DrawingSession, **values) -> None:
    """Apply values only if nobody else has touched the session since we read it."""
    expected = drawing.version
    result = session.execute(
        update(DrawingSession)
        .where(DrawingSession.id == drawing.id, DrawingSession.version == expected)
        .values(version=expected + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentDrawConflict(
            f"Drawing session {drawing.id} changed concurrently (expected version {expected})"
        )
    session.refresh(drawing)


# ============================================================================
# Operations
# ============================================================================


def get_drawing_state(session: Session, division_id: int) -> DrawingState:
    division = session.get(Division, division_id)
    if not division:
        raise NotFound(f"Division {division_id} not found")
    return _state_for(session, division, _active_drawing(session, division_id))


def start_drawing(
    session: Session,
    division_id: int,
    started_by_user_id: Optional[int] = None,
    started_by_name: Optional[str] = None,
    rng: Optional[random.Random] = None,
    publisher: Optional[Publisher] = None,
) -> DrawStep:
    """Ready -> InProgress: shuffle the eligible units into a new session.

    Raises:
        NoEligibleUnits, ScheduleNotGenerated, UnitCountOutOfRange,
        DrawAlreadyInProgress, DrawAlreadyConfirmed
    """
    try:
        division = session.get(Division, division_id)
        if not division:
            raise NotFound(f"Division {division_id} not found")

        existing = _active_drawing(session, division_id)
        if existing is not None:
            if existing.status == DRAW_CONFIRMED:
                raise DrawAlreadyConfirmed(f"Division {division_id} draw was already confirmed")
            raise DrawAlreadyInProgress(
                f"Division {division_id} already has drawing session {existing.id} ({existing.status})"
            )

        units = eligible_units(session, division_id)
        if not units:
            raise NoEligibleUnits(f"Division {division_id} has no eligible units to draw")

        phase = entry_phase(session, division_id)
        if phase is None:
            raise ScheduleNotGenerated(f"Division {division_id} has no phases; generate a schedule first")
        if len(units) > phase.incoming_slot_count:
            raise UnitCountOutOfRange(
                f"{len(units)} eligible units do not fit the {phase.incoming_slot_count} slots of '{phase.name}'"
            )

        order = [u.id for u in units]
        (rng or _system_random).shuffle(order)

        drawing = DrawingSession(
            division_id=division_id,
            phase_id=phase.id,
            status=DRAW_IN_PROGRESS,
            total_units=len(order),
            drawn_json=[],
            remaining_json=order,
            started_by_user_id=started_by_user_id,
            started_by_name=started_by_name,
        )
        session.add(drawing)
        try:
            session.commit()
        except IntegrityError:
            # Another organizer inserted the division's session after our check
            session.rollback()
            raise DrawAlreadyInProgress(f"Division {division_id} already has a drawing session")
        session.refresh(drawing)
    except SchedulingError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.exception("Failed to start drawing for division %s", division_id)
        raise

    logger.info("Drawing session %s started for division %s (%d units)", drawing.id, division_id, len(order))
    step = DrawStep(
        state=_state_for(session, division, drawing),
        events=[
            DrawStarted(
                division_id=division_id,
                session_id=drawing.id,
                total_units=drawing.total_units,
                started_by_name=started_by_name,
                started_at=drawing.started_at,
            )
        ],
    )
    step.publish(publisher)
    return step


def draw_next(session: Session, session_id: int, publisher: Optional[Publisher] = None) -> DrawStep:
    """Reveal the next unit and give it the next sequential slot."""
    try:
        drawing = _get_drawing(session, session_id)
        if drawing.status == DRAW_CONFIRMED:
            raise DrawAlreadyConfirmed(f"Drawing session {session_id} is already confirmed")
        if drawing.status != DRAW_IN_PROGRESS or not drawing.remaining_json:
            raise NoUnitsRemaining(f"Drawing session {session_id} has no units left to draw")

        unit_id = drawing.remaining_json[0]
        unit = session.get(Unit, unit_id)
        slot_number = len(drawing.drawn_json) + 1
        now = datetime.utcnow()
        entry = {
            "unit_id": unit_id,
            "unit_name": unit.name if unit else f"Unit {unit_id}",
            "slot_number": slot_number,
            "drawn_at": now.isoformat(),
        }
        drawn = list(drawing.drawn_json) + [entry]
        remaining = list(drawing.remaining_json[1:])
        finished = len(drawn) == drawing.total_units

        values = {"drawn_json": drawn, "remaining_json": remaining}
        if finished:
            values.update(status=DRAW_COMPLETED, completed_at=now)
        _compare_and_set(session, drawing, **values)
        session.commit()
    except SchedulingError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.exception("Failed to draw next unit for session %s", session_id)
        raise

    division = session.get(Division, drawing.division_id)
    state = _state_for(session, division, drawing)
    events: List[DrawingEvent] = [
        UnitDrawn(
            division_id=drawing.division_id,
            session_id=drawing.id,
            unit_id=unit_id,
            unit_name=entry["unit_name"],
            member_names=_member_names(session, [unit_id])[unit_id],
            slot_number=slot_number,
            remaining_count=len(remaining),
            byes=state.byes,
            drawn_at=now,
        )
    ]
    if finished:
        events.append(
            DrawCompleted(
                division_id=drawing.division_id,
                session_id=drawing.id,
                final_order=state.drawn_units,
                completed_at=drawing.completed_at,
            )
        )
        logger.info("Drawing session %s completed (%d units)", drawing.id, drawing.total_units)

    step = DrawStep(state=state, events=events)
    step.publish(publisher)
    return step


def confirm_drawing(
    session: Session,
    session_id: int,
    assignments: Optional[Sequence[Dict[str, int]]] = None,
    publisher: Optional[Publisher] = None,
) -> DrawStep:
    """Completed -> Confirmed: persist every (unit, slot) pair and resolve byes atomically.

    assignments, when given, must match the session exactly ([{unit_id, slot_number}, ...]).

    Raises:
        DrawNotFinished: session is not Completed
        ConcurrentDrawConflict: session already confirmed, changed underneath us,
            assignments disagree with the session, or a target slot is occupied
    """
    try:
        drawing = _get_drawing(session, session_id)
        if drawing.status == DRAW_CONFIRMED:
            raise ConcurrentDrawConflict(f"Drawing session {session_id} was already confirmed")
        if drawing.status != DRAW_COMPLETED:
            raise DrawNotFinished(
                f"Drawing session {session_id} is {drawing.status}: "
                f"{len(drawing.drawn_json)}/{drawing.total_units} units drawn"
            )

        pairs = {(d["unit_id"], d["slot_number"]) for d in drawing.drawn_json}
        if assignments is not None:
            submitted = {(int(a["unit_id"]), int(a["slot_number"])) for a in assignments}
            if submitted != pairs:
                raise ConcurrentDrawConflict(
                    f"Submitted assignments do not match drawing session {session_id}; reload and retry"
                )

        phase = session.get(Phase, drawing.phase_id)
        slots = {
            s.slot_number: s
            for s in session.exec(
                select(PhaseSlot).where(PhaseSlot.phase_id == phase.id, PhaseSlot.slot_type == SLOT_INCOMING)
            ).all()
        }
        occupied = sorted(n for n, s in slots.items() if s.unit_id is not None)
        if occupied:
            raise ConcurrentDrawConflict(
                f"Slots {occupied} of '{phase.name}' are already assigned; restart the draw"
            )

        now = datetime.utcnow()
        _compare_and_set(session, drawing, status=DRAW_CONFIRMED, confirmed_at=now)

        by_slot = {slot_number: unit_id for unit_id, slot_number in pairs}
        for number, slot in slots.items():
            unit_id = by_slot.get(number)
            # Conditional on the slot still being empty; a manual assignment may have landed since we read it
            result = session.execute(
                update(PhaseSlot)
                .where(PhaseSlot.id == slot.id, PhaseSlot.unit_id.is_(None))
                .values(
                    unit_id=unit_id,
                    source_type=SOURCE_SEEDED if unit_id is not None else SOURCE_BYE,
                    is_resolved=True,
                    resolved_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrentDrawConflict(
                    f"Slot {number} of '{phase.name}' was assigned while confirming; restart the draw"
                )
            session.expire(slot)

        summary = resolve_division_byes(session, drawing.division_id)

        division = session.get(Division, drawing.division_id)
        division.schedule_status = SCHEDULE_UNITS_ASSIGNED
        session.add(division)
        session.commit()
    except SchedulingError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.exception("Failed to confirm drawing session %s", session_id)
        raise

    logger.info(
        "Drawing session %s confirmed: %d slots assigned, %d byes",
        session_id,
        len(pairs),
        summary.byes_recorded,
    )
    step = DrawStep(
        state=_state_for(session, division, drawing),
        events=[DrawConfirmed(division_id=division.id, session_id=drawing.id, confirmed_at=now)],
    )
    step.publish(publisher)
    return step


def _discard(session: Session, session_id: int, action: str) -> DrawingSession:
    drawing = _get_drawing(session, session_id)
    if drawing.status == DRAW_CONFIRMED:
        raise DrawAlreadyConfirmed(f"Drawing session {session_id} is confirmed and cannot be {action}")
    # Claim the session first so a concurrent confirm cannot slip in between
    _compare_and_set(session, drawing, status=drawing.status)
    session.delete(drawing)
    session.flush()
    return drawing


def cancel_drawing(session: Session, session_id: int, publisher: Optional[Publisher] = None) -> DrawStep:
    """InProgress/Completed -> Ready. Nothing was written to slots, so nothing to undo there."""
    try:
        drawing = _discard(session, session_id, "cancelled")
        division_id = drawing.division_id
        session.commit()
    except SchedulingError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.exception("Failed to cancel drawing session %s", session_id)
        raise

    logger.info("Drawing session %s cancelled", session_id)
    step = DrawStep(
        state=get_drawing_state(session, division_id),
        events=[DrawCancelled(division_id=division_id, session_id=session_id, reason="cancelled")],
    )
    step.publish(publisher)
    return step


def redraw(
    session: Session,
    session_id: int,
    rng: Optional[random.Random] = None,
    publisher: Optional[Publisher] = None,
) -> DrawStep:
    """Discard an unconfirmed session and immediately start a fresh shuffle."""
    try:
        drawing = _discard(session, session_id, "redrawn")
        division_id = drawing.division_id
        started_by_user_id = drawing.started_by_user_id
        started_by_name = drawing.started_by_name
        session.commit()
    except SchedulingError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.exception("Failed to discard drawing session %s for redraw", session_id)
        raise

    logger.info("Drawing session %s discarded for redraw", session_id)
    cancelled: DrawingEvent = DrawCancelled(division_id=division_id, session_id=session_id, reason="redraw")
    if publisher is not None:
        publisher(division_id, cancelled)

    step = start_drawing(
        session,
        division_id,
        started_by_user_id=started_by_user_id,
        started_by_name=started_by_name,
        rng=rng,
        publisher=publisher,
    )
    step.events.insert(0, cancelled)
    return step
