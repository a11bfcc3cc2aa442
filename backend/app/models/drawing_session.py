from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON
from sqlalchemy import UniqueConstraint as SAUniqueConstraint
from sqlmodel import Column, Field, SQLModel

DRAW_IN_PROGRESS = "InProgress"
DRAW_COMPLETED = "Completed"
DRAW_CONFIRMED = "Confirmed"

# Reported when a division has no session at all
DRAW_READY = "Ready"


class DrawingSession(SQLModel, table=True):
    """Server-side state of one drawing ceremony for a division.

    drawn_json holds the ordered {unit_id, unit_name, slot_number, drawn_at}
    entries revealed so far; remaining_json holds the still-hidden shuffled unit ids.
    Every mutation bumps version and is applied with a compare-and-set on it.
    At most one row per division: cancel and redraw delete the row, a confirmed
    row stays and blocks further draws.
    """

    __table_args__ = (SAUniqueConstraint("division_id", name="uq_drawing_session_division"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    division_id: int = Field(foreign_key="division.id", index=True)
    phase_id: int = Field(foreign_key="phase.id")
    status: str = Field(default=DRAW_IN_PROGRESS)  # "InProgress" | "Completed" | "Confirmed"
    total_units: int

    drawn_json: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    remaining_json: List[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    started_by_user_id: Optional[int] = Field(default=None)
    started_by_name: Optional[str] = Field(default=None)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = Field(default=None)
    confirmed_at: Optional[datetime] = Field(default=None)

    version: int = Field(default=1)
