from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import ForeignKey, Integer
from sqlalchemy import UniqueConstraint as SAUniqueConstraint
from sqlmodel import Column, Field, Relationship, SQLModel

if TYPE_CHECKING:
    from app.models.phase import Phase

SLOT_INCOMING = "Incoming"
SLOT_ADVANCING = "Advancing"

SOURCE_SEEDED = "Seeded"
SOURCE_WINNER_OF = "WinnerOf"
SOURCE_LOSER_OF = "LoserOf"
SOURCE_RANK_FROM_PHASE = "RankFromPhase"
SOURCE_MANUAL = "Manual"
SOURCE_BYE = "Bye"


class PhaseSlot(SQLModel, table=True):
    """Numbered position in a phase.

    Incoming slots are where units enter the phase, advancing slots are its exit
    positions. A slot with is_resolved=True and unit_id=None is known to be empty.
    """

    __table_args__ = (
        SAUniqueConstraint("phase_id", "slot_type", "slot_number", name="uq_phase_slot_number"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    phase_id: int = Field(foreign_key="phase.id", index=True)
    slot_type: str  # "Incoming" | "Advancing"
    slot_number: int  # 1..N, contiguous per (phase, slot_type)

    pool_id: Optional[int] = Field(default=None, foreign_key="phasepool.id")
    pool_position: Optional[int] = Field(default=None)  # 1-based position inside the pool

    unit_id: Optional[int] = Field(default=None, foreign_key="unit.id")
    source_type: str = Field(default=SOURCE_SEEDED)  # "Seeded" | "WinnerOf" | "LoserOf" | "RankFromPhase" | "Manual" | "Bye"
    # encounter also points back at phaseslot; use_alter breaks the create/drop cycle
    source_encounter_id: Optional[int] = Field(
        default=None, sa_column=Column(Integer, ForeignKey("encounter.id", use_alter=True), nullable=True)
    )

    placeholder_label: Optional[str] = Field(default=None)
    exit_label: Optional[str] = Field(default=None)

    is_resolved: bool = Field(default=False)
    was_manually_resolved: bool = Field(default=False)
    resolved_at: Optional[datetime] = Field(default=None)
    resolution_notes: Optional[str] = Field(default=None)

    phase: "Phase" = Relationship(back_populates="slots")
