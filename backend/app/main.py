import logging
import os
import subprocess
from datetime import datetime

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session

from app.database import engine, init_db
from app.routes import division_phases, drawing, game_settings, phase_templates
from app.services.template_store import seed_system_templates

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

APP_NAME = "Pickleball Draw Engine API"

app = FastAPI(title=APP_NAME)


# Get build info
def get_build_info():
    """Get git commit hash or build timestamp"""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=os.path.dirname(os.path.dirname(__file__)),
            capture_output=True,
            text=True,
            timeout=2,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (OSError, subprocess.SubprocessError):
        pass

    # Fallback to build timestamp
    return datetime.now().strftime("%Y%m%d-%H%M%S")


BUILD_HASH = get_build_info()

_cors_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
_extra = os.getenv("CORS_ORIGINS", "")
if _extra:
    _cors_origins.extend(o.strip() for o in _extra.split(",") if o.strip())

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(phase_templates.router, prefix="/api", tags=["phase-templates"])
app.include_router(division_phases.router, prefix="/api", tags=["phases"])
app.include_router(game_settings.router, prefix="/api", tags=["game-settings"])

# Drawing REST endpoints and the spectator websocket
app.include_router(drawing.router, prefix="/api", tags=["drawing"])


@app.on_event("startup")
def on_startup():
    init_db()  # Use centralized init_db() which imports models and creates tables

    if os.getenv("SEED_SYSTEM_TEMPLATES", "true").lower() in ("true", "1", "yes"):
        with Session(engine) as session:
            seed_system_templates(session)

    route_count = sum(1 for r in app.routes if getattr(r, "path", None))
    logger.info("%s started: %d routes, build %s", APP_NAME, route_count, BUILD_HASH)


@app.get("/api/health")
def health_check():
    """Diagnostic endpoint to verify which code is running"""
    return {"app_name": APP_NAME, "build_hash": BUILD_HASH, "status": "healthy"}
