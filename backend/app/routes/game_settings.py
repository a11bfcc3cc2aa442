from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlmodel import Session, select

from app.database import get_session
from app.models.match_format import EncounterMatchFormat, PhaseMatchSettings
from app.services.errors import SchedulingError
from app.services.match_format_resolver import replace_phase_settings, resolve_game_settings
from app.utils.guards import require_division, require_phase, to_http_exception

router = APIRouter()


def _check_best_of(v):
    if v is not None and (v < 1 or v % 2 == 0):
        raise ValueError("best_of must be a positive odd number")
    return v


class GameSettingsEntry(BaseModel):
    match_format_id: Optional[int] = None
    best_of: Optional[int] = None
    score_format_id: Optional[int] = None

    @field_validator("best_of")
    @classmethod
    def validate_best_of(cls, v):
        return _check_best_of(v)


class GameSettingsUpdate(BaseModel):
    settings: List[GameSettingsEntry]


class MatchFormatCreate(BaseModel):
    name: str
    code: Optional[str] = None
    match_order: Optional[int] = None
    male_count: int = 0
    female_count: int = 0
    unisex_count: int = 2
    best_of: Optional[int] = None
    score_format_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("name cannot be empty")
        return v.strip()

    @field_validator("best_of")
    @classmethod
    def validate_best_of(cls, v):
        return _check_best_of(v)


@router.get("/phases/{phase_id}/game-settings", response_model=List[PhaseMatchSettings])
def get_phase_game_settings(phase_id: int, session: Session = Depends(get_session)):
    """Stored overrides for a phase (match_format_id=None is the phase-wide row)"""
    require_phase(session, phase_id)
    return session.exec(
        select(PhaseMatchSettings).where(PhaseMatchSettings.phase_id == phase_id).order_by(PhaseMatchSettings.id)
    ).all()


@router.put("/phases/{phase_id}/game-settings", response_model=List[PhaseMatchSettings])
def put_phase_game_settings(phase_id: int, update: GameSettingsUpdate, session: Session = Depends(get_session)):
    """Replace every override of a phase and re-annotate the division's encounters"""
    require_phase(session, phase_id)
    try:
        return replace_phase_settings(session, phase_id, [e.model_dump() for e in update.settings])
    except SchedulingError as e:
        raise to_http_exception(e)


@router.get("/phases/{phase_id}/game-settings/resolve")
def resolve_phase_game_settings(
    phase_id: int, match_format_id: Optional[int] = None, session: Session = Depends(get_session)
):
    """Effective best_of/score format with the level each value came from"""
    require_phase(session, phase_id)
    return resolve_game_settings(session, phase_id, match_format_id).to_dict()


@router.get("/divisions/{division_id}/match-formats", response_model=List[EncounterMatchFormat])
def list_match_formats(division_id: int, session: Session = Depends(get_session)):
    require_division(session, division_id)
    return session.exec(
        select(EncounterMatchFormat)
        .where(EncounterMatchFormat.division_id == division_id, EncounterMatchFormat.is_active == True)  # noqa: E712
        .order_by(EncounterMatchFormat.match_order)
    ).all()


@router.post("/divisions/{division_id}/match-formats", response_model=EncounterMatchFormat, status_code=201)
def create_match_format(division_id: int, data: MatchFormatCreate, session: Session = Depends(get_session)):
    require_division(session, division_id)
    match_order = data.match_order
    if match_order is None:
        existing = session.exec(
            select(EncounterMatchFormat.match_order).where(EncounterMatchFormat.division_id == division_id)
        ).all()
        match_order = max(existing, default=0) + 1

    match_format = EncounterMatchFormat(
        division_id=division_id, **data.model_dump(exclude={"match_order"}), match_order=match_order
    )
    session.add(match_format)
    session.commit()
    session.refresh(match_format)
    return match_format
