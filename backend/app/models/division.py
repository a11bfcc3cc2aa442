from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from app.models.phase import Phase
    from app.models.unit import Unit

SCHEDULE_NOT_GENERATED = "NotGenerated"
SCHEDULE_GENERATED = "Generated"
SCHEDULE_UNITS_ASSIGNED = "UnitsAssigned"


class Division(SQLModel, table=True):
    """Division as exposed by the registration subsystem. Read-mostly from this service's point of view."""

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: int = Field(index=True)  # External event reference (no FK; events live elsewhere)
    name: str

    # Division-level game settings (fallback for match-format resolution)
    default_best_of: Optional[int] = Field(default=None)
    default_score_format_id: Optional[int] = Field(default=None)

    applied_template_id: Optional[int] = Field(default=None, foreign_key="phasetemplate.id")
    schedule_status: str = Field(default=SCHEDULE_NOT_GENERATED)  # "NotGenerated" | "Generated" | "UnitsAssigned"
    created_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    units: List["Unit"] = Relationship(back_populates="division")
    phases: List["Phase"] = Relationship(back_populates="division")
