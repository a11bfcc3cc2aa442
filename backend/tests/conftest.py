import os

# The app's own engine is only touched by startup (init_db + template seeding); keep it off disk
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine  # noqa: E402

from app.database import get_session  # noqa: E402
from app.main import app  # noqa: E402

TEST_DATABASE_URL = "sqlite:///:memory:"

# ============================================================================
# CRITICAL: Test Database Setup with StaticPool
# ============================================================================
# 1. Use sqlite:///:memory: with StaticPool so ALL sessions share same DB
# 2. check_same_thread=False required for TestClient/threaded access
# 3. All models MUST be imported before create_all() (see session_fixture)
# 4. App dependency overridden to use test_engine (see client_fixture)
# 5. Tables are dropped after every test so each test starts empty
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


def override_get_session():
    """Override session to use test engine"""
    with Session(test_engine) as session:
        yield session


@pytest.fixture(name="session", scope="function")
def session_fixture():
    """Provide a test database session on a freshly created schema"""
    # Import all models to ensure they're registered BEFORE create_all
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

    SQLModel.metadata.create_all(test_engine)

    with Session(test_engine) as session:
        yield session

    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture(name="client")
def client_fixture(session: Session):
    """Provide a test client with overridden database session

    CRITICAL: Override MUST be set BEFORE TestClient() and stay in place
    for the entire duration. This ensures the app never uses its own engine.
    """
    app.dependency_overrides[get_session] = override_get_session

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Shared builders
# ============================================================================


@pytest.fixture(name="make_division")
def make_division_fixture(session: Session):
    """Factory: division with N eligible units (plus optional ineligible ones)"""
    from app.models.division import Division
    from app.models.unit import Unit, UnitMember

    def _make(unit_count: int, name: str = "Mixed 3.5", cancelled: int = 0, waitlisted: int = 0, **fields):
        division = Division(event_id=1, name=name, **fields)
        session.add(division)
        session.commit()
        session.refresh(division)

        for i in range(1, unit_count + 1):
            unit = Unit(division_id=division.id, name=f"Team {i:02d}", status="Confirmed")
            session.add(unit)
            session.flush()
            session.add(UnitMember(unit_id=unit.id, name=f"Player {i}A"))
            session.add(UnitMember(unit_id=unit.id, name=f"Player {i}B"))
            session.add(UnitMember(unit_id=unit.id, name=f"Invitee {i}", invite_status="Pending"))
        for i in range(cancelled):
            session.add(Unit(division_id=division.id, name=f"Cancelled {i}", status="Cancelled"))
        for i in range(waitlisted):
            session.add(Unit(division_id=division.id, name=f"Waitlisted {i}", status="Waitlisted"))
        session.commit()
        return division

    return _make


SE_STRUCTURE = {"phases": [{"type": "Bracket", "name": "Bracket", "elimination": "Single", "splitRounds": True}]}


@pytest.fixture(name="se_template")
def se_template_fixture(session: Session):
    """Stored single-elimination template, one phase per round"""
    import json

    from app.models.phase_template import PhaseTemplate

    template = PhaseTemplate(
        name="SE Split",
        category="SingleElimination",
        min_units=2,
        max_units=64,
        default_units=8,
        structure_json=json.dumps(SE_STRUCTURE),
    )
    session.add(template)
    session.commit()
    session.refresh(template)
    return template


@pytest.fixture(name="other_session")
def other_session_fixture(session: Session):
    """A second session on the same database (a second organizer or server instance)"""
    with Session(test_engine) as other:
        yield other
