import uuid
from datetime import date, datetime
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..auth.security import IdentityContext, get_current_identity, require_admin
from ..config import settings
from ..db import get_db
from ..models.models import AttendanceSession, DailyAttendance
from ..services.attendance import AttendanceEvent, AttendanceOutcome, process_time_in, process_time_out
from ..services.geocoding import resolve_local_context
from ..services.reconciliation import reconcile_date
from ..storage.provider import get_storage_provider

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/attendance", tags=["attendance"])

MAX_RECORDS = 100
SIMULATED_TIMEZONE = "Simulated Timezone"


def _to_float(value: Optional[str]) -> Optional[float]:
    if value is None or str(value).strip() == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _event_source(request: Request) -> str:
    custom = request.headers.get("X-Client-Source")
    if custom:
        return custom.upper()
    user_agent = request.headers.get("User-Agent", "")
    if "Postman" in user_agent:
        return "API_CLIENT"
    if "Dart" in user_agent or "Flutter" in user_agent:
        return "MOBILE_APP"
    if any(agent in user_agent for agent in ("Mozilla", "Chrome", "Safari")):
        return "WEB"
    return "UNKNOWN"


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _respond(outcome: AttendanceOutcome, simulated: bool = False) -> JSONResponse:
    body = outcome.to_dict()
    if simulated and outcome.ok:
        body["_simulation"] = True
    return JSONResponse(status_code=outcome.status_code, content=body)


def _read_image(image: Optional[UploadFile]) -> Optional[bytes]:
    if image is None:
        return None
    data = image.file.read()
    return data or None


def _live_event(
    request: Request,
    identity: IdentityContext,
    latitude: Optional[str],
    longitude: Optional[str],
    accuracy: Optional[str],
    late_reason: Optional[str],
    image: Optional[UploadFile],
) -> AttendanceEvent:
    lat = _to_float(latitude)
    lng = _to_float(longitude)
    local = resolve_local_context(lat, lng)
    return AttendanceEvent(
        user_id=identity.user_id,
        org_id=identity.org_id,
        latitude=lat,
        longitude=lng,
        accuracy=_to_float(accuracy),
        local_time=local.local_time,
        timezone=local.timezone,
        address=local.address,
        late_reason=late_reason,
        image=_read_image(image),
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        event_source=_event_source(request),
    )


@router.post("/timein")
def time_in(
    request: Request,
    latitude: Optional[str] = Form(None),
    longitude: Optional[str] = Form(None),
    accuracy: Optional[str] = Form(None),
    late_reason: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    identity: IdentityContext = Depends(get_current_identity),
):
    event = _live_event(request, identity, latitude, longitude, accuracy, late_reason, image)
    return _respond(process_time_in(db, event))


@router.post("/timeout")
def time_out(
    request: Request,
    latitude: Optional[str] = Form(None),
    longitude: Optional[str] = Form(None),
    accuracy: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    identity: IdentityContext = Depends(get_current_identity),
):
    event = _live_event(request, identity, latitude, longitude, accuracy, None, image)
    return _respond(process_time_out(db, event))


# --- Simulation (non-production only) ---

def _simulated_event(
    request: Request,
    identity: IdentityContext,
    user_id: Optional[str],
    latitude: str,
    longitude: str,
    accuracy: str,
    simulated_time: Optional[str],
    simulated_address: str,
    timezone: Optional[str],
    late_reason: Optional[str],
    image: Optional[UploadFile],
) -> AttendanceEvent:
    if settings.environment == "production":
        raise HTTPException(status_code=404, detail="Not Found")
    if not simulated_time:
        raise HTTPException(status_code=400, detail="simulated_time (ISO format) is required")
    try:
        local_time = datetime.fromisoformat(simulated_time.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail="simulated_time must be an ISO 8601 datetime")

    target_user_id = identity.user_id
    if user_id and identity.is_admin:
        try:
            target_user_id = uuid.UUID(user_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid user_id")

    return AttendanceEvent(
        user_id=target_user_id,
        org_id=identity.org_id,
        latitude=_to_float(latitude),
        longitude=_to_float(longitude),
        accuracy=_to_float(accuracy),
        local_time=local_time.replace(tzinfo=None),
        timezone=timezone or SIMULATED_TIMEZONE,
        address=simulated_address,
        late_reason=late_reason,
        image=_read_image(image),
        ip_address=_client_ip(request),
        user_agent=f"Simulation/{request.headers.get('User-Agent', '')}",
        event_source="SIMULATION",
    )


@router.post("/simulate/timein")
def simulate_time_in(
    request: Request,
    simulated_time: Optional[str] = Form(None),
    user_id: Optional[str] = Form(None),
    latitude: str = Form("0"),
    longitude: str = Form("0"),
    accuracy: str = Form("10"),
    simulated_address: str = Form("Simulated Location"),
    timezone: Optional[str] = Form(None),
    late_reason: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    identity: IdentityContext = Depends(get_current_identity),
):
    event = _simulated_event(
        request, identity, user_id, latitude, longitude, accuracy,
        simulated_time, simulated_address, timezone, late_reason, image,
    )
    return _respond(process_time_in(db, event), simulated=True)


@router.post("/simulate/timeout")
def simulate_time_out(
    request: Request,
    simulated_time: Optional[str] = Form(None),
    user_id: Optional[str] = Form(None),
    latitude: str = Form("0"),
    longitude: str = Form("0"),
    accuracy: str = Form("10"),
    simulated_address: str = Form("Simulated Location"),
    timezone: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    identity: IdentityContext = Depends(get_current_identity),
):
    event = _simulated_event(
        request, identity, user_id, latitude, longitude, accuracy,
        simulated_time, simulated_address, timezone, None, image,
    )
    return _respond(process_time_out(db, event), simulated=True)


# --- Reads ---

def _image_url(key: Optional[str]) -> Optional[str]:
    if not key:
        return None
    try:
        return get_storage_provider().get_download_url(key, settings.download_url_ttl_seconds)
    except Exception as e:
        logger.warning("attendance_image_url_failed", key=key, error=str(e))
        return None


def _session_out(row: AttendanceSession) -> dict:
    return {
        "attendance_id": str(row.id),
        "work_date": row.work_date.isoformat(),
        "timezone": row.timezone,
        "time_in": row.time_in.isoformat() if row.time_in else None,
        "time_out": row.time_out.isoformat() if row.time_out else None,
        "time_in_address": row.time_in_address,
        "time_out_address": row.time_out_address,
        "time_in_image": _image_url(row.time_in_image_key),
        "time_out_image": _image_url(row.time_out_image_key),
        "late_minutes": row.late_minutes,
        "late_reason": row.late_reason,
        "state": row.state,
        "status": row.day_status,
        "session_hours": row.session_hours,
        "overtime_hours": row.overtime_hours,
        "auto_closed": row.auto_closed,
    }


def _daily_out(row: DailyAttendance) -> dict:
    return {
        "id": str(row.id),
        "date": row.date.isoformat(),
        "first_in": row.first_in.isoformat() if row.first_in else None,
        "last_out": row.last_out.isoformat() if row.last_out else None,
        "total_hours": row.total_hours,
        "overtime_hours": row.overtime_hours,
        "late_minutes": row.late_minutes,
        "status": row.status,
        "remarks": row.remarks,
        "auto_closed": row.auto_closed,
    }


@router.get("/records")
def list_records(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    identity: IdentityContext = Depends(get_current_identity),
):
    query = db.query(AttendanceSession).filter(AttendanceSession.user_id == identity.user_id)
    if date_from:
        query = query.filter(AttendanceSession.work_date >= date_from)
    if date_to:
        query = query.filter(AttendanceSession.work_date <= date_to)
    rows = query.order_by(AttendanceSession.time_in.desc()).limit(max(1, min(limit, MAX_RECORDS))).all()
    return {"ok": True, "data": [_session_out(r) for r in rows]}


@router.get("/daily")
def list_daily(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: Session = Depends(get_db),
    identity: IdentityContext = Depends(get_current_identity),
):
    query = db.query(DailyAttendance).filter(DailyAttendance.user_id == identity.user_id)
    if date_from:
        query = query.filter(DailyAttendance.date >= date_from)
    if date_to:
        query = query.filter(DailyAttendance.date <= date_to)
    rows = query.order_by(DailyAttendance.date.desc()).all()
    return {"ok": True, "data": [_daily_out(r) for r in rows]}


@router.post("/admin/reconcile")
def admin_reconcile(
    target_date: date = Form(..., alias="date"),
    user_id: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    identity: IdentityContext = Depends(require_admin),
):
    target_user_id = None
    if user_id:
        try:
            target_user_id = uuid.UUID(user_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid user_id")
    results = reconcile_date(db, target_date, user_id=target_user_id, org_id=identity.org_id)
    logger.info(
        "attendance_reconcile_requested",
        actor_id=str(identity.user_id),
        date=target_date.isoformat(),
        processed=len(results),
    )
    return {"ok": True, "date": target_date.isoformat(), "results": [r.to_dict() for r in results]}
