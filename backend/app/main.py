from __future__ import annotations

import io
import logging
from dataclasses import asdict
from typing import Optional
from uuid import uuid4

from fastapi import BackgroundTasks, Depends, FastAPI, Form, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from dispatch_engine import analytics
from dispatch_engine.errors import DispatchError
from dispatch_engine.geo import format_eta
from dispatch_engine.lifecycle import TransitionPolicy
from dispatch_engine.models import Coordinates, Incident, IncidentCategory, Severity
from dispatch_engine.system import DispatchSystem

from .auth import (
    ANALYTICS_ROLES,
    DISPATCH_ROLES,
    Caller,
    current_caller,
    hash_password,
    issue_token,
    require_responder,
    require_role,
    verify_password,
)
from .config import COUNTER_TTL_SECONDS, DELIVERY_MAX_ATTEMPTS, TRANSITION_POLICY
from .db import SqliteDispatchStore, get_conn, init_db, now_iso, write_audit
from .hooks import RecentEventsBroadcaster, SqliteNotifier
from .logger import setup_logger
from .reports import build_leaderboard_pdf, daily_incident_counts, daily_response_times, load_incident_frame

setup_logger("app")
setup_logger("dispatch_engine")
logger = logging.getLogger(__name__)

app = FastAPI(title="Emergency Dispatch API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

store = SqliteDispatchStore()
broadcaster = RecentEventsBroadcaster()
system = DispatchSystem(
    store,
    broadcaster,
    SqliteNotifier(),
    policy=TransitionPolicy.named(TRANSITION_POLICY),
    counter_ttl_seconds=COUNTER_TTL_SECONDS,
    max_delivery_attempts=DELIVERY_MAX_ATTEMPTS,
)

SEED_AGENCIES = [
    ("agency-fire-accra", "Accra Central Fire Station", "fire_service", 5.5560, -0.1969, "user-fire-admin"),
    ("agency-ambulance-kb", "Korle Bu Ambulance Station", "ambulance", 5.5365, -0.2266, None),
    ("agency-police-osu", "Osu Police Station", "police", 5.5572, -0.1818, None),
    ("agency-nadmo-gar", "Greater Accra Disaster Management", "disaster_management", 5.6037, -0.1870, None),
]

SEED_USERS = [
    ("user-admin", "admin@dispatch.local", "Admin", "admin", None),
    ("user-dispatcher", "dispatcher@dispatch.local", "Dispatcher", "dispatcher", None),
    ("user-fire-admin", "firechief@dispatch.local", "Fire Chief", "agency_admin", "agency-fire-accra"),
    ("user-responder-1", "responder@dispatch.local", "Kofi Mensah", "responder", "agency-fire-accra"),
    ("user-responder-2", "responder2@dispatch.local", "Ama Owusu", "responder", "agency-fire-accra"),
    ("user-responder-3", "medic@dispatch.local", "Yaw Boateng", "responder", "agency-ambulance-kb"),
]


@app.on_event("startup")
def startup() -> None:
    init_db()
    seed_records()


def seed_records() -> None:
    with get_conn() as conn:
        for agency_id, name, agency_type, lat, lon, admin_id in SEED_AGENCIES:
            conn.execute(
                "INSERT OR IGNORE INTO agencies (id,name,type,latitude,longitude,admin_user_id) VALUES (?,?,?,?,?,?)",
                (agency_id, name, agency_type, lat, lon, admin_id),
            )
        for user_id, email, name, role, agency_id in SEED_USERS:
            exists = conn.execute("SELECT id FROM users WHERE email=?", (email,)).fetchone()
            if not exists:
                conn.execute(
                    "INSERT INTO users (id,email,password_hash,name,role,agency_id,created_at) VALUES (?,?,?,?,?,?,?)",
                    (user_id, email, hash_password("password123"), name, role, agency_id, now_iso()),
                )


@app.exception_handler(DispatchError)
def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


def _jsonable(record) -> dict:
    data = asdict(record)
    for key, value in data.items():
        if hasattr(value, "isoformat"):
            data[key] = value.isoformat()
        elif hasattr(value, "value"):
            data[key] = value.value
    return data


def _location(latitude: Optional[float], longitude: Optional[float]) -> Optional[Coordinates]:
    if latitude is None or longitude is None:
        return None
    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        raise HTTPException(status_code=400, detail="Coordinates out of range")
    return Coordinates(latitude, longitude)


@app.post("/auth/login")
def login(email: str = Form(...), password: str = Form(...)):
    with get_conn() as conn:
        user = conn.execute(
            "SELECT id,email,name,role,agency_id,password_hash FROM users WHERE email=?",
            (email.lower(),),
        ).fetchone()
    if not user or not verify_password(password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    token = issue_token(Caller(user["id"], user["email"], user["role"], user["agency_id"]))
    return {
        "token": token,
        "user": {
            "id": user["id"],
            "email": user["email"],
            "name": user["name"],
            "role": user["role"],
            "agency_id": user["agency_id"],
        },
    }


@app.post("/incidents")
def report_incident(
    category: str = Form(...),
    severity: str = Form(...),
    latitude: float = Form(...),
    longitude: float = Form(...),
    title: str = Form(""),
    caller: Caller = Depends(current_caller),
):
    try:
        incident = Incident(
            incident_id=f"incident-{uuid4().hex}",
            title=title,
            category=IncidentCategory(category.lower()),
            severity=Severity(severity.lower()),
            location=_location(latitude, longitude),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid input: {exc}") from exc

    store.add_incident(incident, reported_by=caller.user_id)
    write_audit(caller.user_id, "incident_reported", incident.incident_id)
    return _jsonable(incident)


@app.get("/incidents/{incident_id}")
def get_incident(incident_id: str, caller: Caller = Depends(current_caller)):
    incident = store.get_incident(incident_id)
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    return _jsonable(incident)


@app.post("/incidents/{incident_id}/status")
def update_incident_status(
    incident_id: str,
    background_tasks: BackgroundTasks,
    status: str = Form(...),
    caller: Caller = Depends(current_caller),
):
    require_role(caller, DISPATCH_ROLES)
    incident = system.set_incident_status(incident_id, caller.user_id, status.lower())
    write_audit(caller.user_id, "incident_status_changed", incident_id, f"status={incident.status.value}")
    background_tasks.add_task(system.deliver_pending)
    return _jsonable(incident)


@app.get("/incidents/{incident_id}/dispatches")
def incident_dispatches(incident_id: str, caller: Caller = Depends(current_caller)):
    return [_jsonable(a) for a in system.assignments_for_incident(incident_id)]


@app.get("/agencies/{agency_id}/responders")
def agency_responders(agency_id: str, caller: Caller = Depends(current_caller)):
    require_role(caller, ANALYTICS_ROLES)
    picker = []
    for entry in system.responders_for_agency(agency_id):
        picker.append(
            {
                "id": entry.responder.responder_id,
                "name": entry.responder.name,
                "status": "dispatched" if entry.current_assignment_id else entry.responder.status.value,
                "available": entry.available,
                "latitude": entry.location.latitude if entry.location else None,
                "longitude": entry.location.longitude if entry.location else None,
                "current_assignment_id": entry.current_assignment_id,
            }
        )
    return picker


@app.get("/incidents/{incident_id}/recommendations")
def recommendations(incident_id: str, limit: Optional[int] = None, caller: Caller = Depends(current_caller)):
    require_role(caller, DISPATCH_ROLES)
    ranked = system.recommend(incident_id, limit=limit)
    return [
        {
            "agency_id": rec.agency.agency_id,
            "name": rec.agency.name,
            "type": rec.agency.agency_type.value,
            "score": rec.score,
            "distance_km": rec.distance_km,
            "reasons": rec.reasons,
            "factors": rec.factors,
        }
        for rec in ranked
    ]


@app.get("/dispatch/eta")
def dispatch_eta(
    incident_id: str,
    responder_id: str,
    traffic_band: Optional[str] = None,
    caller: Caller = Depends(current_caller),
):
    minutes = system.eta(incident_id, responder_id, traffic_band)
    return {"minutes": minutes, "label": format_eta(minutes)}


@app.post("/dispatch")
def create_dispatch(
    background_tasks: BackgroundTasks,
    incident_id: str = Form(...),
    agency_id: str = Form(...),
    responder_id: Optional[str] = Form(None),
    priority: int = Form(3),
    notes: str = Form(""),
    caller: Caller = Depends(current_caller),
):
    require_role(caller, DISPATCH_ROLES)
    outcome = system.dispatch(caller.user_id, incident_id, agency_id, responder_id or None, priority, notes or None)
    if not outcome.validation.valid:
        return JSONResponse(status_code=422, content={"valid": False, "errors": outcome.validation.errors})

    assignment = outcome.assignment
    write_audit(caller.user_id, "dispatch_created", assignment.assignment_id, f"incident_id={incident_id};agency_id={agency_id}")
    background_tasks.add_task(system.deliver_pending)
    return _jsonable(assignment)


@app.post("/dispatch/{assignment_id}/status")
def update_dispatch_status(
    assignment_id: str,
    background_tasks: BackgroundTasks,
    status: Optional[str] = Form(None),
    latitude: Optional[float] = Form(None),
    longitude: Optional[float] = Form(None),
    notes: Optional[str] = Form(None),
    caller: Caller = Depends(current_caller),
):
    location = _location(latitude, longitude)
    updated = system.advance(assignment_id, caller.user_id, status or None, location, notes)
    write_audit(caller.user_id, f"dispatch_{updated.status.value}", assignment_id)
    background_tasks.add_task(system.deliver_pending)
    return _jsonable(updated)


@app.get("/dispatch/active")
def active_dispatches(caller: Caller = Depends(current_caller)):
    require_role(caller, ANALYTICS_ROLES)
    return [_jsonable(a) for a in store.list_active_assignments()]


@app.get("/dispatch/mine")
def my_dispatches(caller: Caller = Depends(current_caller)):
    require_responder(caller)
    workload = system.responder_workload(caller.user_id)
    return {
        "assignments": [_jsonable(a) for a in workload.assignments],
        "active": _jsonable(workload.active) if workload.active else None,
        "completed_today": workload.completed_today,
        "completed_this_week": workload.completed_this_week,
    }


@app.get("/dispatch/mine/active")
def my_active_dispatch(caller: Caller = Depends(current_caller)):
    require_responder(caller)
    active = system.active_assignment(caller.user_id)
    return _jsonable(active) if active else None


@app.get("/analytics/response-times")
def response_time_metrics(caller: Caller = Depends(current_caller)):
    require_role(caller, ANALYTICS_ROLES)
    incidents = store.list_incidents()
    return {
        "distribution": asdict(analytics.distribution_for(incidents)),
        "resolution_rate": analytics.resolution_rate(incidents),
        "incidents_per_day": analytics.group_by_period(incidents, "day"),
    }


@app.get("/analytics/anomalies")
def response_time_anomalies(threshold: float = 2, caller: Caller = Depends(current_caller)):
    require_role(caller, ANALYTICS_ROLES)
    series = daily_response_times(load_incident_frame())
    flagged = analytics.anomalies([point.value for point in series], threshold=threshold)
    return [
        {"date": series[a.index].date.isoformat(), "value": a.value, "z_score": a.z_score}
        for a in flagged
    ]


@app.get("/analytics/trends")
def response_time_trends(window: int = 7, metric: str = "response_time", caller: Caller = Depends(current_caller)):
    require_role(caller, ANALYTICS_ROLES)
    df = load_incident_frame()
    series = daily_incident_counts(df) if metric == "volume" else daily_response_times(df)
    result = analytics.trend(series, window=window)
    return {
        "trend": result.trend,
        "strength": result.strength,
        "moving_average": [{"date": p.date.isoformat(), "value": p.value} for p in result.moving_average],
    }


@app.get("/analytics/leaderboard")
def agency_leaderboard(limit: int = 10, caller: Caller = Depends(current_caller)):
    require_role(caller, ANALYTICS_ROLES)
    return [asdict(entry) for entry in system.agency_leaderboard(limit=limit)]


@app.get("/analytics/leaderboard/pdf")
def agency_leaderboard_pdf(limit: int = 10, caller: Caller = Depends(current_caller)):
    require_role(caller, ANALYTICS_ROLES)
    content = build_leaderboard_pdf(system.agency_leaderboard(limit=limit))
    return StreamingResponse(
        io.BytesIO(content),
        media_type="application/pdf",
        headers={"Content-Disposition": "attachment; filename=agency_leaderboard.pdf"},
    )


@app.get("/notifications/me")
def my_notifications(caller: Caller = Depends(current_caller)):
    with get_conn() as conn:
        rows = conn.execute(
            "SELECT * FROM notifications WHERE user_id=? ORDER BY id DESC LIMIT 100",
            (caller.user_id,),
        ).fetchall()
    return [dict(r) for r in rows]


@app.get("/events")
def recent_events(since: int = 0, caller: Caller = Depends(current_caller)):
    return broadcaster.since(since)


@app.get("/health")
def health():
    return {"status": "ok"}
