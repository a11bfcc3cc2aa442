"""
Match-Format / Game-Settings Resolver

best_of and score_format_id are resolved independently, first hit wins:
1. PhaseMatchSettings for (phase, match_format)
2. PhaseMatchSettings for (phase, None)   - phase-wide override
3. Phase.best_of / Phase.score_format_id
4. EncounterMatchFormat.best_of / score_format_id (when a format is given)
5. Division.default_best_of / default_score_format_id
6. Global fallback: best_of=1, DEFAULT_SCORE_FORMAT_ID

Resolution never raises: an unknown phase or format simply falls through to the defaults.
"""

import logging
import os
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from dotenv import load_dotenv
from sqlmodel import Session, select

from app.models.division import Division
from app.models.encounter import Encounter
from app.models.match_format import EncounterMatchFormat, PhaseMatchSettings
from app.models.phase import Phase
from app.services.errors import NotFound, SchedulingError, SlotConflict

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_BEST_OF = 1
_default_score_format = os.getenv("DEFAULT_SCORE_FORMAT_ID", "")
DEFAULT_SCORE_FORMAT_ID: Optional[int] = int(_default_score_format) if _default_score_format.strip() else None


@dataclass
class GameSettings:
    phase_id: int
    match_format_id: Optional[int]
    best_of: int
    score_format_id: Optional[int]
    best_of_source: str
    score_format_source: str

    def to_dict(self) -> Dict:
        return asdict(self)


def _first(candidates) -> tuple:
    for value, source in candidates:
        if value is not None:
            return value, source
    return None, None


def resolve_game_settings(
    session: Session,
    phase_id: int,
    match_format_id: Optional[int] = None,
) -> GameSettings:
    """Effective (best_of, score_format_id) for a phase and optional match format."""
    phase = session.get(Phase, phase_id)
    division = session.get(Division, phase.division_id) if phase else None
    match_format = session.get(EncounterMatchFormat, match_format_id) if match_format_id is not None else None

    overrides = session.exec(select(PhaseMatchSettings).where(PhaseMatchSettings.phase_id == phase_id)).all()
    specific = next((o for o in overrides if match_format_id is not None and o.match_format_id == match_format_id), None)
    phase_wide = next((o for o in overrides if o.match_format_id is None), None)

    def chain(attr_override: str, attr_phase: str, attr_format: str, attr_division: str):
        return [
            (getattr(specific, attr_override, None), "phase_format_override"),
            (getattr(phase_wide, attr_override, None), "phase_override"),
            (getattr(phase, attr_phase, None), "phase"),
            (getattr(match_format, attr_format, None), "match_format"),
            (getattr(division, attr_division, None), "division"),
        ]

    best_of, best_of_source = _first(chain("best_of", "best_of", "best_of", "default_best_of"))
    score_format_id, score_source = _first(
        chain("score_format_id", "score_format_id", "score_format_id", "default_score_format_id")
    )

    return GameSettings(
        phase_id=phase_id,
        match_format_id=match_format_id,
        best_of=best_of if best_of is not None else DEFAULT_BEST_OF,
        score_format_id=score_format_id if score_format_id is not None else DEFAULT_SCORE_FORMAT_ID,
        best_of_source=best_of_source or "global",
        score_format_source=score_source or "global",
    )


def annotate_division_encounters(session: Session, division_id: int) -> int:
    """Stamp each encounter with its phase's resolved settings. Returns encounters changed. Does not commit."""
    phases = session.exec(select(Phase).where(Phase.division_id == division_id)).all()
    changed = 0
    for phase in phases:
        settings = resolve_game_settings(session, phase.id)
        encounters = session.exec(select(Encounter).where(Encounter.phase_id == phase.id)).all()
        for enc in encounters:
            if enc.best_of != settings.best_of or enc.score_format_id != settings.score_format_id:
                enc.best_of = settings.best_of
                enc.score_format_id = settings.score_format_id
                session.add(enc)
                changed += 1
    session.flush()
    return changed


def replace_phase_settings(
    session: Session,
    phase_id: int,
    entries: List[Dict],
) -> List[PhaseMatchSettings]:
    """Replace all PhaseMatchSettings rows of a phase and re-annotate its division's encounters. Commits."""
    try:
        phase = session.get(Phase, phase_id)
        if not phase:
            raise NotFound(f"Phase {phase_id} not found")

        seen = set()
        for entry in entries:
            format_id = entry.get("match_format_id")
            if format_id in seen:
                raise SlotConflict(f"Duplicate game settings for match format {format_id} in phase {phase_id}")
            seen.add(format_id)
            if format_id is not None:
                match_format = session.get(EncounterMatchFormat, format_id)
                if not match_format or match_format.division_id != phase.division_id:
                    raise NotFound(f"Match format {format_id} not found in division {phase.division_id}")

        for existing in session.exec(select(PhaseMatchSettings).where(PhaseMatchSettings.phase_id == phase_id)).all():
            session.delete(existing)
        session.flush()

        rows = []
        for entry in entries:
            row = PhaseMatchSettings(
                phase_id=phase_id,
                match_format_id=entry.get("match_format_id"),
                best_of=entry.get("best_of"),
                score_format_id=entry.get("score_format_id"),
            )
            session.add(row)
            rows.append(row)
        session.flush()

        annotate_division_encounters(session, phase.division_id)
        session.commit()
        for row in rows:
            session.refresh(row)
        logger.info("Phase %s game settings replaced (%d entries)", phase_id, len(rows))
        return rows
    except SchedulingError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.exception("Failed to replace game settings for phase %s", phase_id)
        raise
