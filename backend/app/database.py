import os
from pathlib import Path
from typing import Generator

from dotenv import load_dotenv
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./draw_engine.db")

_is_sqlite = DATABASE_URL.startswith("sqlite")
_connect_args = {"check_same_thread": False} if _is_sqlite else {}
_echo = os.getenv("SQL_ECHO", "false").lower() in ("true", "1", "yes")

if _is_sqlite:
    db_path = DATABASE_URL.replace("sqlite:///", "", 1)
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

engine: Engine = create_engine(
    DATABASE_URL,
    echo=_echo,
    connect_args=_connect_args,
)


def get_session() -> Generator[Session, None, None]:
    """Get database session"""
    with Session(engine) as session:
        yield session


def init_db() -> None:
    """Initialize database - create all tables"""
    # Import all models to ensure they're registered with SQLModel metadata
    from app.models.advancement_rule import AdvancementRule  # noqa: F401
    from app.models.division import Division  # noqa: F401
    from app.models.drawing_session import DrawingSession  # noqa: F401
    from app.models.encounter import Encounter  # noqa: F401
    from app.models.match_format import EncounterMatchFormat, PhaseMatchSettings  # noqa: F401
    from app.models.phase import Phase  # noqa: F401
    from app.models.phase_pool import PhasePool  # noqa: F401
    from app.models.phase_slot import PhaseSlot  # noqa: F401
    from app.models.phase_template import PhaseTemplate  # noqa: F401
    from app.models.unit import Unit, UnitMember  # noqa: F401

    SQLModel.metadata.create_all(engine)
