import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

# Job States
PENDING = "PENDING"
PROCESSING = "PROCESSING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"

JOB_STATES = (PENDING, PROCESSING, COMPLETED, FAILED)

# Booking States
BOOKING_PENDING = "PENDING"
AWAITING_SCHEDULE = "AWAITING_SCHEDULE"
SCHEDULED = "SCHEDULED"
CONFIRMED = "CONFIRMED"
ROUTABLE_BOOKING_STATES = (SCHEDULED, CONFIRMED)

TIMES_OF_DAY = ("MORNING", "AFTERNOON", "EVENING")


class TaskName(str, Enum):
    GEOCODE_ADDRESS = "geocode-address"
    ASSIGN_ROUTE_GROUP = "assign-route-group"
    OPTIMIZE_ROUTES = "optimize-routes"
    SEND_EMAIL = "send-email"
    SEND_REMINDERS = "send-reminders"


@dataclass
class Job:
    id: str
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: str = PENDING
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    run_at: str = ""
    last_error: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    picked_by: Optional[str] = None
    recurring: bool = False

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            name=row["name"],
            payload=json.loads(row["payload"]),
            status=row["status"],
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            run_at=row["run_at"],
            last_error=row["last_error"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            picked_by=row["picked_by"],
            recurring=bool(row["recurring"]),
        )


@dataclass(frozen=True)
class GeoPoint:
    id: str
    lat: float
    lng: float


@dataclass
class Route:
    order: List[str]
    total_distance: float

    def to_dict(self) -> Dict[str, Any]:
        return {"order": list(self.order), "totalDistance": self.total_distance}


@dataclass
class Zone:
    id: str
    name: str
    center_lat: float
    center_lng: float
    radius_mi: float
    is_active: bool = True

    @classmethod
    def from_row(cls, row) -> "Zone":
        return cls(
            id=row["id"],
            name=row["name"],
            center_lat=row["center_lat"],
            center_lng=row["center_lng"],
            radius_mi=row["radius_mi"],
            is_active=bool(row["is_active"]),
        )
