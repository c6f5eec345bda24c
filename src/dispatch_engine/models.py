from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IncidentCategory(str, Enum):
    FIRE = "fire"
    MEDICAL = "medical"
    ACCIDENT = "accident"
    NATURAL_DISASTER = "natural_disaster"
    CRIME = "crime"
    INFRASTRUCTURE = "infrastructure"
    OTHER = "other"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class IncidentStatus(str, Enum):
    REPORTED = "reported"
    DISPATCHED = "dispatched"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class AgencyType(str, Enum):
    FIRE_SERVICE = "fire_service"
    POLICE = "police"
    AMBULANCE = "ambulance"
    DISASTER_MANAGEMENT = "disaster_management"
    PRIVATE = "private"


class ResponderStatus(str, Enum):
    AVAILABLE = "available"
    DISPATCHED = "dispatched"
    OFF_DUTY = "off_duty"


class AssignmentStatus(str, Enum):
    DISPATCHED = "dispatched"
    ACCEPTED = "accepted"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    COMPLETED = "completed"


class TrafficBand(str, Enum):
    RUSH_HOUR = "rush_hour"
    NORMAL = "normal"
    NIGHT = "night"


CLOSED_INCIDENT_STATUSES = frozenset({IncidentStatus.RESOLVED, IncidentStatus.CLOSED})
DISPATCHABLE_INCIDENT_STATUSES = frozenset({IncidentStatus.REPORTED, IncidentStatus.DISPATCHED})
LIVE_ASSIGNMENT_STATUSES = frozenset(
    {AssignmentStatus.DISPATCHED, AssignmentStatus.ACCEPTED, AssignmentStatus.EN_ROUTE, AssignmentStatus.ARRIVED}
)


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Incident:
    incident_id: str
    category: IncidentCategory
    severity: Severity
    location: Optional[Coordinates]
    status: IncidentStatus = IncidentStatus.REPORTED
    created_at: datetime = field(default_factory=utcnow)
    dispatched_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    assigned_agency_id: Optional[str] = None
    response_time: Optional[int] = None
    title: str = ""
    version: int = 0


@dataclass(frozen=True)
class Agency:
    agency_id: str
    name: str
    agency_type: AgencyType
    location: Optional[Coordinates]
    active: bool = True
    active_incidents: int = 0
    available_responders: int = 0
    avg_response_time: Optional[float] = None
    admin_user_id: Optional[str] = None


@dataclass(frozen=True)
class Responder:
    responder_id: str
    agency_id: str
    status: ResponderStatus = ResponderStatus.AVAILABLE
    name: str = ""
    last_location: Optional[Coordinates] = None
    last_location_at: Optional[datetime] = None


@dataclass(frozen=True)
class Assignment:
    assignment_id: str
    incident_id: str
    agency_id: str
    responder_id: Optional[str] = None
    priority: int = 3
    status: AssignmentStatus = AssignmentStatus.DISPATCHED
    dispatched_at: datetime = field(default_factory=utcnow)
    accepted_at: Optional[datetime] = None
    en_route_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    current_location: Optional[Coordinates] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class AgencyCounters:
    active_incidents: int = 0
    available_responders: int = 0
    avg_response_time: Optional[float] = None


@dataclass(frozen=True)
class CounterSnapshot:
    """Versioned capture of agency workload counters, valid for ``ttl_seconds``."""

    version: int
    captured_at: datetime
    ttl_seconds: float
    counters: Dict[str, AgencyCounters] = field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (now - self.captured_at).total_seconds() > self.ttl_seconds

    def for_agency(self, agency_id: str) -> Optional[AgencyCounters]:
        return self.counters.get(agency_id)


@dataclass(frozen=True)
class Recommendation:
    agency: Agency
    score: float
    distance_km: float
    reasons: List[str]
    factors: Dict[str, float]


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: List[str]


@dataclass(frozen=True)
class DispatchOutcome:
    validation: ValidationResult
    assignment: Optional[Assignment] = None


@dataclass(frozen=True)
class ResponseTimeMetrics:
    count: int = 0
    average: float = 0
    median: float = 0
    min: float = 0
    max: float = 0
    p95: float = 0


@dataclass(frozen=True)
class Anomaly:
    index: int
    value: float
    z_score: float


@dataclass(frozen=True)
class TrendPoint:
    date: datetime
    value: float


@dataclass(frozen=True)
class TrendResult:
    moving_average: List[TrendPoint]
    trend: str
    strength: float


@dataclass(frozen=True)
class AgencyScore:
    agency_id: str
    agency_name: str
    score: float
    incidents_handled: int
    avg_response_time: float
    resolution_rate: float
    factors: Dict[str, float]


@dataclass(frozen=True)
class ResponderAvailability:
    """A responder as shown in the dispatcher's picker.

    ``location`` prefers the live position reported on the current assignment
    over the responder's last known location.
    """

    responder: Responder
    location: Optional[Coordinates]
    current_assignment_id: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.current_assignment_id is None and self.responder.status == ResponderStatus.AVAILABLE


@dataclass(frozen=True)
class ResponderWorkload:
    assignments: List[Assignment]
    active: Optional[Assignment]
    completed_today: int
    completed_this_week: int
