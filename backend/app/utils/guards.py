"""
Route guards and error mapping

Reusable lookups that 404 the way every route expects, plus the single place
where domain SchedulingErrors become HTTPExceptions ("CODE: message" detail).
"""

from fastapi import HTTPException
from sqlmodel import Session

from app.models.division import Division
from app.models.drawing_session import DrawingSession
from app.models.phase import Phase
from app.services.errors import SchedulingError


def to_http_exception(error: SchedulingError) -> HTTPException:
    """Map a domain error onto its HTTP status with a 'CODE: message' detail."""
    return HTTPException(status_code=error.status_code, detail=str(error))


def require_division(session: Session, division_id: int) -> Division:
    """
    Load a division or raise 404.

    Raises:
        HTTPException 404: Division not found
    """
    division = session.get(Division, division_id)
    if not division:
        raise HTTPException(status_code=404, detail=f"NOT_FOUND: Division {division_id} not found")
    return division


def require_phase(session: Session, phase_id: int, division_id: int = None) -> Phase:
    """
    Load a phase or raise 404, optionally checking it belongs to a division.

    Raises:
        HTTPException 404: Phase not found or owned by another division
    """
    phase = session.get(Phase, phase_id)
    if not phase:
        raise HTTPException(status_code=404, detail=f"NOT_FOUND: Phase {phase_id} not found")
    if division_id and phase.division_id != division_id:
        raise HTTPException(
            status_code=404, detail=f"NOT_FOUND: Phase {phase_id} does not belong to division {division_id}"
        )
    return phase


def require_drawing_session(session: Session, session_id: int) -> DrawingSession:
    drawing = session.get(DrawingSession, session_id)
    if not drawing:
        raise HTTPException(status_code=404, detail=f"NOT_FOUND: Drawing session {session_id} not found")
    return drawing
