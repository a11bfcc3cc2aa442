from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, field_validator
from sqlmodel import Session

from app.database import get_session
from app.services import template_store
from app.services.drawing_broadcast import drawing_rooms
from app.services.errors import SchedulingError
from app.services.schedule_generator import generate_division_schedule
from app.utils.guards import require_division, to_http_exception

router = APIRouter()


class TemplateCreate(BaseModel):
    name: str
    description: Optional[str] = None
    category: str = "Custom"
    min_units: int = 2
    max_units: int = 64
    default_units: Optional[int] = None
    is_active: bool = True
    sort_order: int = 100
    structure: Union[Dict[str, Any], str]
    diagram_text: Optional[str] = None
    tags: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("name cannot be empty")
        return v.strip()


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    min_units: Optional[int] = None
    max_units: Optional[int] = None
    default_units: Optional[int] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None
    structure: Optional[Union[Dict[str, Any], str]] = None
    diagram_text: Optional[str] = None
    tags: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if v is not None and (not v or not v.strip()):
            raise ValueError("name cannot be empty")
        return v.strip() if v else v


class TemplateResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    category: str
    min_units: int
    max_units: int
    default_units: int
    is_system_template: bool
    is_active: bool
    sort_order: int
    structure_json: str
    diagram_text: Optional[str] = None
    tags: Optional[str] = None
    created_by_user_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PreviewRequest(BaseModel):
    unit_count: int
    template_id: Optional[int] = None
    structure: Optional[Union[Dict[str, Any], str]] = None

    @field_validator("unit_count")
    @classmethod
    def validate_unit_count(cls, v):
        if v < 1:
            raise ValueError("unit_count must be >= 1")
        return v


class ApplyRequest(BaseModel):
    unit_count: Optional[int] = None
    clear_existing_phases: bool = False


@router.get("/phase-templates", response_model=List[TemplateResponse])
def list_phase_templates(
    category: Optional[str] = None,
    unit_count: Optional[int] = Query(default=None, ge=1),
    include_inactive: bool = False,
    mine: bool = False,
    search: Optional[str] = None,
    x_user_id: Optional[int] = Header(default=None),
    session: Session = Depends(get_session),
):
    """List templates; mine=true narrows to templates created by the caller"""
    if search:
        return template_store.search_templates(session, search)
    if mine and x_user_id is None:
        raise HTTPException(status_code=400, detail="X-User-Id header is required for mine=true")
    return template_store.list_templates(
        session,
        category=category,
        unit_count=unit_count,
        include_inactive=include_inactive,
        created_by_user_id=x_user_id if mine else None,
    )


@router.get("/phase-templates/for-units/{unit_count}", response_model=List[TemplateResponse])
def list_templates_for_units(unit_count: int, session: Session = Depends(get_session)):
    """Active templates whose unit range contains unit_count"""
    return template_store.list_templates(session, unit_count=unit_count)


@router.post("/phase-templates", response_model=TemplateResponse, status_code=201)
def create_phase_template(
    data: TemplateCreate,
    x_user_id: Optional[int] = Header(default=None),
    session: Session = Depends(get_session),
):
    try:
        return template_store.create_template(session, data.model_dump(), created_by_user_id=x_user_id)
    except SchedulingError as e:
        raise to_http_exception(e)


@router.post("/phase-templates/preview")
def preview_phase_template(request: PreviewRequest, session: Session = Depends(get_session)):
    """Resolve a template or ad-hoc structure for a unit count without persisting anything"""
    try:
        resolved = template_store.preview_template(
            session, request.unit_count, template_id=request.template_id, structure=request.structure
        )
    except SchedulingError as e:
        raise to_http_exception(e)
    return resolved.to_dict()


@router.get("/phase-templates/{template_id}", response_model=TemplateResponse)
def get_phase_template(template_id: int, session: Session = Depends(get_session)):
    try:
        return template_store.get_template(session, template_id)
    except SchedulingError as e:
        raise to_http_exception(e)


@router.put("/phase-templates/{template_id}", response_model=TemplateResponse)
def update_phase_template(
    template_id: int,
    data: TemplateUpdate,
    x_user_id: Optional[int] = Header(default=None),
    session: Session = Depends(get_session),
):
    try:
        return template_store.update_template(
            session, template_id, data.model_dump(exclude_unset=True), user_id=x_user_id
        )
    except SchedulingError as e:
        raise to_http_exception(e)


@router.delete("/phase-templates/{template_id}", status_code=204)
def delete_phase_template(
    template_id: int,
    x_user_id: Optional[int] = Header(default=None),
    session: Session = Depends(get_session),
):
    try:
        template_store.delete_template(session, template_id, user_id=x_user_id)
    except SchedulingError as e:
        raise to_http_exception(e)
    return None


@router.post("/phase-templates/{template_id}/apply/{division_id}", status_code=201)
def apply_phase_template(
    template_id: int,
    division_id: int,
    request: Optional[ApplyRequest] = None,
    session: Session = Depends(get_session),
):
    """Generate the division's phases, slots and encounters from a stored template"""
    require_division(session, division_id)
    request = request or ApplyRequest()
    try:
        result = generate_division_schedule(
            session,
            division_id,
            template_id=template_id,
            unit_count=request.unit_count,
            clear_existing_phases=request.clear_existing_phases,
            publisher=drawing_rooms.publish,
        )
    except SchedulingError as e:
        raise to_http_exception(e)
    return result.to_dict()
