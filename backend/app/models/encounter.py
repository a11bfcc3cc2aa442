from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from app.models.phase import Phase

ENCOUNTER_SCHEDULED = "Scheduled"
ENCOUNTER_BYE = "Bye"
ENCOUNTER_VOID = "Void"
ENCOUNTER_COMPLETED = "Completed"

ROLE_WINNER = "WINNER"
ROLE_LOSER = "LOSER"


class Encounter(SQLModel, table=True):
    """A scheduled pairing of two sides inside a phase.

    Each side is fed either by an incoming slot (slotN_id) or by the result of an
    earlier encounter in the same phase (sourceN_encounter_id + sourceN_role).
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    division_id: int = Field(foreign_key="division.id", index=True)
    phase_id: int = Field(foreign_key="phase.id", index=True)
    pool_id: Optional[int] = Field(default=None, foreign_key="phasepool.id")

    encounter_number: int  # 1..M within the phase, dependencies always come first
    label: str  # e.g. "QF1", "Pool A M3", "L2-1", "GF"
    round_number: int
    round_name: Optional[str] = Field(default=None)
    bracket: str = Field(default="Winners")  # "Pool" | "Winners" | "Losers" | "GrandFinal" | "Consolation"
    bracket_position: int = Field(default=1)

    slot1_id: Optional[int] = Field(default=None, foreign_key="phaseslot.id")
    slot2_id: Optional[int] = Field(default=None, foreign_key="phaseslot.id")
    source1_encounter_id: Optional[int] = Field(default=None, foreign_key="encounter.id")
    source1_role: Optional[str] = Field(default=None)  # "WINNER" | "LOSER"
    source2_encounter_id: Optional[int] = Field(default=None, foreign_key="encounter.id")
    source2_role: Optional[str] = Field(default=None)
    side1_label: Optional[str] = Field(default=None)
    side2_label: Optional[str] = Field(default=None)

    # Advancing slot numbers filled by the result (None = eliminated / not tracked)
    winner_exit_rank: Optional[int] = Field(default=None)
    loser_exit_rank: Optional[int] = Field(default=None)

    unit1_id: Optional[int] = Field(default=None, foreign_key="unit.id")
    unit2_id: Optional[int] = Field(default=None, foreign_key="unit.id")
    winner_unit_id: Optional[int] = Field(default=None, foreign_key="unit.id")
    status: str = Field(default=ENCOUNTER_SCHEDULED)  # "Scheduled" | "Bye" | "Void" | "Completed"

    # Resolved game settings (annotated by match_format_resolver)
    best_of: Optional[int] = Field(default=None)
    score_format_id: Optional[int] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = Field(default=None)

    phase: "Phase" = Relationship(back_populates="encounters")
