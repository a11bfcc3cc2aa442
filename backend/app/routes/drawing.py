import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
from sqlmodel import Session

from app.database import get_session
from app.services.drawing_broadcast import drawing_rooms
from app.services.drawing_orchestrator import (
    cancel_drawing,
    confirm_drawing,
    draw_next,
    get_drawing_state,
    redraw,
    start_drawing,
)
from app.services.errors import SchedulingError
from app.utils.guards import require_division, require_drawing_session, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter()


class StartDrawingRequest(BaseModel):
    started_by_name: Optional[str] = None


class SlotPair(BaseModel):
    unit_id: int
    slot_number: int


class ConfirmDrawingRequest(BaseModel):
    assignments: Optional[List[SlotPair]] = None


def _state(step) -> dict:
    return step.state.model_dump(mode="json")


@router.get("/divisions/{division_id}/drawing")
def get_division_drawing(division_id: int, session: Session = Depends(get_session)):
    """Current drawing state of a division ('Ready' when no session exists)"""
    require_division(session, division_id)
    try:
        return get_drawing_state(session, division_id).model_dump(mode="json")
    except SchedulingError as e:
        raise to_http_exception(e)


@router.post("/divisions/{division_id}/drawing/start", status_code=201)
def start_division_drawing(
    division_id: int,
    request: Optional[StartDrawingRequest] = None,
    x_user_id: Optional[int] = Header(default=None),
    session: Session = Depends(get_session),
):
    require_division(session, division_id)
    try:
        step = start_drawing(
            session,
            division_id,
            started_by_user_id=x_user_id,
            started_by_name=request.started_by_name if request else None,
            publisher=drawing_rooms.publish,
        )
    except SchedulingError as e:
        raise to_http_exception(e)
    return _state(step)


@router.post("/drawing-sessions/{session_id}/next")
def draw_next_unit(session_id: int, session: Session = Depends(get_session)):
    """Reveal the next unit of the shuffled order"""
    require_drawing_session(session, session_id)
    try:
        step = draw_next(session, session_id, publisher=drawing_rooms.publish)
    except SchedulingError as e:
        raise to_http_exception(e)
    return _state(step)


@router.post("/drawing-sessions/{session_id}/confirm")
def confirm_drawing_session(
    session_id: int,
    request: Optional[ConfirmDrawingRequest] = None,
    session: Session = Depends(get_session),
):
    """Persist the drawn order into the entry phase and resolve byes"""
    require_drawing_session(session, session_id)
    assignments = None
    if request and request.assignments is not None:
        assignments = [a.model_dump() for a in request.assignments]
    try:
        step = confirm_drawing(session, session_id, assignments=assignments, publisher=drawing_rooms.publish)
    except SchedulingError as e:
        raise to_http_exception(e)
    return _state(step)


@router.post("/drawing-sessions/{session_id}/redraw")
def redraw_session(session_id: int, session: Session = Depends(get_session)):
    require_drawing_session(session, session_id)
    try:
        step = redraw(session, session_id, publisher=drawing_rooms.publish)
    except SchedulingError as e:
        raise to_http_exception(e)
    return _state(step)


@router.post("/drawing-sessions/{session_id}/cancel")
def cancel_session(session_id: int, session: Session = Depends(get_session)):
    require_drawing_session(session, session_id)
    try:
        step = cancel_drawing(session, session_id, publisher=drawing_rooms.publish)
    except SchedulingError as e:
        raise to_http_exception(e)
    return _state(step)


# ============================================================================
# Live viewers
# ============================================================================


@router.websocket("/ws/divisions/{division_id}/drawing")
async def drawing_socket(websocket: WebSocket, division_id: int, session: Session = Depends(get_session)):
    """Spectator channel: full snapshot on join, then every drawing event in order.

    Clients may send "refresh" at any time to get a fresh snapshot.
    Database reads run in the threadpool; the event loop only moves messages.
    """

    def snapshot():
        session.expire_all()
        return get_drawing_state(session, division_id)

    try:
        snapshot_check = await run_in_threadpool(get_drawing_state, session, division_id)
    except SchedulingError as e:
        await websocket.close(code=4404, reason=str(e))
        return
    logger.debug("Drawing socket opening for division %s (status %s)", division_id, snapshot_check.status)

    subscriber = await drawing_rooms.connect(division_id, websocket, snapshot)
    sender = asyncio.create_task(drawing_rooms.pump(division_id, subscriber))
    try:
        while True:
            message = await websocket.receive_text()
            if message.strip().lower() == "refresh":
                await drawing_rooms.refresh(division_id, subscriber, snapshot)
    except WebSocketDisconnect:
        pass
    finally:
        drawing_rooms.disconnect(division_id, subscriber)
        sender.cancel()
