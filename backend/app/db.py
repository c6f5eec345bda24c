from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional

from dispatch_engine.errors import ConflictError, NotFoundError
from dispatch_engine.models import (
    Agency,
    AgencyType,
    Assignment,
    AssignmentStatus,
    Coordinates,
    Incident,
    IncidentCategory,
    IncidentStatus,
    Responder,
    ResponderStatus,
    Severity,
)

from .config import DB_PATH


def init_db() -> None:
    with sqlite3.connect(DB_PATH) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agencies (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                latitude REAL,
                longitude REAL,
                is_active INTEGER NOT NULL DEFAULT 1,
                admin_user_id TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                role TEXT NOT NULL DEFAULT 'citizen',
                agency_id TEXT,
                status TEXT NOT NULL DEFAULT 'available',
                last_latitude REAL,
                last_longitude REAL,
                last_location_at TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(agency_id) REFERENCES agencies(id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS incidents (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL DEFAULT '',
                category TEXT NOT NULL,
                severity TEXT NOT NULL,
                latitude REAL,
                longitude REAL,
                status TEXT NOT NULL DEFAULT 'reported',
                reported_by TEXT,
                assigned_agency_id TEXT,
                response_time INTEGER,
                created_at TEXT NOT NULL,
                dispatched_at TEXT,
                resolved_at TEXT,
                closed_at TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY(assigned_agency_id) REFERENCES agencies(id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS assignments (
                id TEXT PRIMARY KEY,
                incident_id TEXT NOT NULL,
                agency_id TEXT NOT NULL,
                responder_id TEXT,
                priority INTEGER NOT NULL DEFAULT 3,
                status TEXT NOT NULL DEFAULT 'dispatched',
                dispatched_at TEXT NOT NULL,
                accepted_at TEXT,
                en_route_at TEXT,
                arrived_at TEXT,
                completed_at TEXT,
                current_latitude REAL,
                current_longitude REAL,
                notes TEXT,
                FOREIGN KEY(incident_id) REFERENCES incidents(id),
                FOREIGN KEY(agency_id) REFERENCES agencies(id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                related_entity_id TEXT,
                priority TEXT NOT NULL DEFAULT 'normal',
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                action TEXT NOT NULL,
                entity_id TEXT,
                details TEXT,
                created_at TEXT NOT NULL
            )
            """
        )


@contextmanager
def get_conn():
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _coords(latitude, longitude) -> Optional[Coordinates]:
    if latitude is None or longitude is None:
        return None
    return Coordinates(latitude, longitude)


def row_to_incident(row: sqlite3.Row) -> Incident:
    return Incident(
        incident_id=row["id"],
        title=row["title"],
        category=IncidentCategory(row["category"]),
        severity=Severity(row["severity"]),
        location=_coords(row["latitude"], row["longitude"]),
        status=IncidentStatus(row["status"]),
        created_at=_dt(row["created_at"]),
        dispatched_at=_dt(row["dispatched_at"]),
        resolved_at=_dt(row["resolved_at"]),
        closed_at=_dt(row["closed_at"]),
        assigned_agency_id=row["assigned_agency_id"],
        response_time=row["response_time"],
        version=row["version"],
    )


def row_to_agency(row: sqlite3.Row) -> Agency:
    return Agency(
        agency_id=row["id"],
        name=row["name"],
        agency_type=AgencyType(row["type"]),
        location=_coords(row["latitude"], row["longitude"]),
        active=bool(row["is_active"]),
        admin_user_id=row["admin_user_id"],
    )


def row_to_responder(row: sqlite3.Row) -> Responder:
    return Responder(
        responder_id=row["id"],
        agency_id=row["agency_id"],
        status=ResponderStatus(row["status"]),
        name=row["name"],
        last_location=_coords(row["last_latitude"], row["last_longitude"]),
        last_location_at=_dt(row["last_location_at"]),
    )


def row_to_assignment(row: sqlite3.Row) -> Assignment:
    return Assignment(
        assignment_id=row["id"],
        incident_id=row["incident_id"],
        agency_id=row["agency_id"],
        responder_id=row["responder_id"],
        priority=row["priority"],
        status=AssignmentStatus(row["status"]),
        dispatched_at=_dt(row["dispatched_at"]),
        accepted_at=_dt(row["accepted_at"]),
        en_route_at=_dt(row["en_route_at"]),
        arrived_at=_dt(row["arrived_at"]),
        completed_at=_dt(row["completed_at"]),
        current_location=_coords(row["current_latitude"], row["current_longitude"]),
        notes=row["notes"],
    )


def _update_incident(conn: sqlite3.Connection, incident: Incident, expected_version: Optional[int] = None) -> int:
    sql = """
        UPDATE incidents SET status=?, assigned_agency_id=?, response_time=?, dispatched_at=?,
            resolved_at=?, closed_at=?, version=version+1
        WHERE id=?
    """
    params = [
        incident.status.value,
        incident.assigned_agency_id,
        incident.response_time,
        _iso(incident.dispatched_at),
        _iso(incident.resolved_at),
        _iso(incident.closed_at),
        incident.incident_id,
    ]
    if expected_version is not None:
        sql += " AND version=?"
        params.append(expected_version)
    return conn.execute(sql, params).rowcount


def _update_responder(
    conn: sqlite3.Connection,
    responder: Responder,
    expected_status: Optional[ResponderStatus] = None,
) -> int:
    location = responder.last_location
    sql = "UPDATE users SET status=?, last_latitude=?, last_longitude=?, last_location_at=? WHERE id=?"
    params = [
        responder.status.value,
        location.latitude if location else None,
        location.longitude if location else None,
        _iso(responder.last_location_at),
        responder.responder_id,
    ]
    if expected_status is not None:
        sql += " AND status=?"
        params.append(expected_status.value)
    return conn.execute(sql, params).rowcount


class SqliteDispatchStore:
    """sqlite-backed store; every write method runs in one IMMEDIATE transaction."""

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        with get_conn() as conn:
            row = conn.execute("SELECT * FROM incidents WHERE id=?", (incident_id,)).fetchone()
        return row_to_incident(row) if row else None

    def get_agency(self, agency_id: str) -> Optional[Agency]:
        with get_conn() as conn:
            row = conn.execute("SELECT * FROM agencies WHERE id=?", (agency_id,)).fetchone()
        return row_to_agency(row) if row else None

    def get_responder(self, responder_id: str) -> Optional[Responder]:
        with get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id=? AND role='responder'", (responder_id,)
            ).fetchone()
        return row_to_responder(row) if row else None

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        with get_conn() as conn:
            row = conn.execute("SELECT * FROM assignments WHERE id=?", (assignment_id,)).fetchone()
        return row_to_assignment(row) if row else None

    def list_agencies(self) -> List[Agency]:
        with get_conn() as conn:
            rows = conn.execute("SELECT * FROM agencies ORDER BY name").fetchall()
        return [row_to_agency(r) for r in rows]

    def list_incidents(self) -> List[Incident]:
        with get_conn() as conn:
            rows = conn.execute("SELECT * FROM incidents ORDER BY created_at").fetchall()
        return [row_to_incident(r) for r in rows]

    def list_responders(self) -> List[Responder]:
        with get_conn() as conn:
            rows = conn.execute("SELECT * FROM users WHERE role='responder'").fetchall()
        return [row_to_responder(r) for r in rows]

    def list_assignments(
        self,
        incident_id: Optional[str] = None,
        responder_id: Optional[str] = None,
    ) -> List[Assignment]:
        clauses, params = [], []
        if incident_id is not None:
            clauses.append("incident_id=?")
            params.append(incident_id)
        if responder_id is not None:
            clauses.append("responder_id=?")
            params.append(responder_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with get_conn() as conn:
            rows = conn.execute(f"SELECT * FROM assignments {where} ORDER BY dispatched_at DESC", params).fetchall()
        return [row_to_assignment(r) for r in rows]

    def list_active_assignments(self) -> List[Assignment]:
        with get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM assignments WHERE status != ? ORDER BY dispatched_at DESC",
                (AssignmentStatus.COMPLETED.value,),
            ).fetchall()
        return [row_to_assignment(r) for r in rows]

    def add_incident(self, incident: Incident, reported_by: Optional[str] = None) -> None:
        location = incident.location
        with get_conn() as conn:
            conn.execute(
                """
                INSERT INTO incidents (id,title,category,severity,latitude,longitude,status,reported_by,created_at,version)
                VALUES (?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    incident.incident_id,
                    incident.title,
                    incident.category.value,
                    incident.severity.value,
                    location.latitude if location else None,
                    location.longitude if location else None,
                    incident.status.value,
                    reported_by,
                    _iso(incident.created_at),
                    incident.version,
                ),
            )

    def _compare_and_set_incident(self, conn: sqlite3.Connection, incident: Incident, expected_version: int) -> None:
        if not _update_incident(conn, incident, expected_version=expected_version):
            exists = conn.execute("SELECT 1 FROM incidents WHERE id=?", (incident.incident_id,)).fetchone()
            if not exists:
                raise NotFoundError("Incident not found")
            raise ConflictError("Incident was modified concurrently")

    def create_assignment(
        self,
        assignment: Assignment,
        incident: Incident,
        responder: Optional[Responder],
        expected_version: int,
    ) -> Incident:
        # any raise below leaves the transaction uncommitted, so nothing is written
        with get_conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            self._compare_and_set_incident(conn, incident, expected_version)
            if responder is not None and not _update_responder(
                conn, responder, expected_status=ResponderStatus.AVAILABLE
            ):
                raise ConflictError("Responder was dispatched concurrently")
            conn.execute(
                """
                INSERT INTO assignments (id,incident_id,agency_id,responder_id,priority,status,dispatched_at,notes)
                VALUES (?,?,?,?,?,?,?,?)
                """,
                (
                    assignment.assignment_id,
                    assignment.incident_id,
                    assignment.agency_id,
                    assignment.responder_id,
                    assignment.priority,
                    assignment.status.value,
                    _iso(assignment.dispatched_at),
                    assignment.notes,
                ),
            )
            row = conn.execute("SELECT * FROM incidents WHERE id=?", (incident.incident_id,)).fetchone()
        return row_to_incident(row)

    def apply_transition(
        self,
        assignment: Assignment,
        incident: Optional[Incident] = None,
        responder: Optional[Responder] = None,
        expected_status: Optional[AssignmentStatus] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[Incident]:
        location = assignment.current_location
        sql = """
            UPDATE assignments SET status=?, accepted_at=?, en_route_at=?, arrived_at=?, completed_at=?,
                current_latitude=?, current_longitude=?, notes=?
            WHERE id=?
        """
        params = [
            assignment.status.value,
            _iso(assignment.accepted_at),
            _iso(assignment.en_route_at),
            _iso(assignment.arrived_at),
            _iso(assignment.completed_at),
            location.latitude if location else None,
            location.longitude if location else None,
            assignment.notes,
            assignment.assignment_id,
        ]
        if expected_status is not None:
            sql += " AND status=?"
            params.append(expected_status.value)

        with get_conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            if not conn.execute(sql, params).rowcount:
                exists = conn.execute("SELECT 1 FROM assignments WHERE id=?", (assignment.assignment_id,)).fetchone()
                if not exists:
                    raise NotFoundError("Assignment not found")
                raise ConflictError("Assignment was updated concurrently")
            stored = None
            if incident is not None:
                if expected_version is not None:
                    self._compare_and_set_incident(conn, incident, expected_version)
                else:
                    _update_incident(conn, incident)
                row = conn.execute("SELECT * FROM incidents WHERE id=?", (incident.incident_id,)).fetchone()
                stored = row_to_incident(row)
            if responder is not None:
                _update_responder(conn, responder)
        return stored

    def update_incident(self, incident: Incident, expected_version: int) -> Incident:
        with get_conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            self._compare_and_set_incident(conn, incident, expected_version)
            row = conn.execute("SELECT * FROM incidents WHERE id=?", (incident.incident_id,)).fetchone()
        return row_to_incident(row)


def write_audit(user_id: Optional[str], action: str, entity_id: Optional[str] = None, details: str = "") -> None:
    with get_conn() as conn:
        conn.execute(
            "INSERT INTO audit_logs (user_id,action,entity_id,details,created_at) VALUES (?,?,?,?,?)",
            (user_id, action, entity_id, details, now_iso()),
        )
