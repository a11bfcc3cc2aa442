from datetime import datetime
from typing import Optional

from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel

TEMPLATE_CATEGORIES = (
    "SingleElimination",
    "DoubleElimination",
    "RoundRobin",
    "Pools",
    "Award",
    "Draw",
    "Combined",
    "Custom",
)


class PhaseTemplate(SQLModel, table=True):
    """Reusable tournament structure. structure_json is parsed by app.services.template_structure."""

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: Optional[str] = Field(default=None)
    category: str = Field(default="Custom", index=True)

    min_units: int = Field(default=2)
    max_units: int = Field(default=64)
    default_units: int = Field(default=8)

    is_system_template: bool = Field(default=False)
    is_active: bool = Field(default=True)
    sort_order: int = Field(default=0)

    structure_json: str = Field(sa_column=Column(Text, nullable=False))
    diagram_text: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    tags: Optional[str] = Field(default=None)  # Comma-separated

    created_by_user_id: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
