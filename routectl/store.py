"""Persistence for the pipeline's collaborators: zones, bookings, route groups, email logs."""

import json
import secrets
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .models import Zone, BOOKING_PENDING, SCHEDULED, TIMES_OF_DAY
from .utils import now_iso

JOB_NUMBER_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_job_number(prefix: str = "SB") -> str:
    code = "".join(secrets.choice(JOB_NUMBER_CHARS) for _ in range(4))
    return f"{prefix}-{datetime.now().year}-{code}"


# ---------- Zones ----------
def add_zone(conn, *, name: str, center_lat: float, center_lng: float, radius_mi: float,
             is_active: bool = True) -> Zone:
    if not name or not name.strip():
        raise ValueError("Zone name cannot be empty.")
    if radius_mi <= 0:
        raise ValueError("radius must be > 0 miles")
    zone_id = uuid.uuid4().hex
    with conn:
        conn.execute(
            """INSERT INTO zones (id, name, center_lat, center_lng, radius_mi, is_active, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (zone_id, name, float(center_lat), float(center_lng), float(radius_mi),
             int(is_active), now_iso()),
        )
    return Zone(zone_id, name, float(center_lat), float(center_lng), float(radius_mi), is_active)


def list_zones(conn, active_only: bool = False) -> List[Zone]:
    sql = "SELECT * FROM zones"
    if active_only:
        sql += " WHERE is_active = 1"
    return [Zone.from_row(r) for r in conn.execute(sql + " ORDER BY created_at").fetchall()]


# ---------- Bookings ----------
def add_booking(
    conn,
    *,
    customer_name: str,
    customer_email: str,
    address: str,
    city: str,
    state: str,
    zip: str,
    service_date: Optional[str] = None,
    time_of_day: Optional[str] = None,
    job_number: Optional[str] = None,
) -> sqlite3.Row:
    for label, value in (("customer name", customer_name), ("email", customer_email),
                         ("address", address)):
        if not value or not value.strip():
            raise ValueError(f"Booking {label} cannot be empty.")
    if time_of_day is not None and time_of_day not in TIMES_OF_DAY:
        raise ValueError(f"time_of_day must be one of {', '.join(TIMES_OF_DAY)}")

    booking_id = uuid.uuid4().hex
    ts = now_iso()
    with conn:
        conn.execute(
            """INSERT INTO bookings
               (id, job_number, customer_name, customer_email, address, city, state, zip,
                status, service_date, time_of_day, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (booking_id, job_number or generate_job_number(), customer_name, customer_email,
             address, city, state, zip, BOOKING_PENDING, service_date, time_of_day, ts, ts),
        )
    return get_booking(conn, booking_id)


def get_booking(conn, booking_id: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM bookings WHERE id=?", (booking_id,)).fetchone()


def update_booking_location(conn, booking_id: str, *, lat: float, lng: float,
                            zone_id: Optional[str], status: str):
    with conn:
        conn.execute(
            "UPDATE bookings SET lat=?, lng=?, zone_id=?, status=?, updated_at=? WHERE id=?",
            (lat, lng, zone_id, status, now_iso(), booking_id),
        )


def bookings_on(conn, service_date: str, statuses: Iterable[str]) -> List[sqlite3.Row]:
    statuses = list(statuses)
    marks = ",".join("?" for _ in statuses)
    return conn.execute(
        f"SELECT * FROM bookings WHERE service_date=? AND status IN ({marks}) ORDER BY created_at",
        [service_date, *statuses],
    ).fetchall()


def set_route_order(conn, booking_id: str, route_order: Optional[int]):
    with conn:
        conn.execute(
            "UPDATE bookings SET route_order=?, updated_at=? WHERE id=?",
            (route_order, now_iso(), booking_id),
        )


# ---------- Route groups ----------
def find_or_create_route_group(conn, zone_id: str, date: str, time_of_day: str) -> sqlite3.Row:
    """One group per (zone, date, time of day); concurrent callers get the same row."""
    ts = now_iso()
    with conn:
        conn.execute(
            """INSERT OR IGNORE INTO route_groups
               (id, zone_id, date, time_of_day, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (uuid.uuid4().hex, zone_id, date, time_of_day, ts, ts),
        )
    return conn.execute(
        "SELECT * FROM route_groups WHERE zone_id=? AND date=? AND time_of_day=?",
        (zone_id, date, time_of_day),
    ).fetchone()


def assign_to_route_group(conn, booking_id: str, group_id: str) -> int:
    """Attach a booking to a group, mark it SCHEDULED and return the group's house count."""
    ts = now_iso()
    with conn:
        conn.execute(
            "UPDATE bookings SET route_group_id=?, status=?, updated_at=? WHERE id=?",
            (group_id, SCHEDULED, ts, booking_id),
        )
        count = conn.execute(
            "SELECT COUNT(1) AS c FROM bookings WHERE route_group_id=?", (group_id,)
        ).fetchone()["c"]
        conn.execute(
            "UPDATE route_groups SET house_count=?, updated_at=? WHERE id=?",
            (count, ts, group_id),
        )
    return count


def get_route_group(conn, group_id: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM route_groups WHERE id=?", (group_id,)).fetchone()


def list_route_groups(conn, zone_id: Optional[str] = None, date: Optional[str] = None) -> List[sqlite3.Row]:
    sql = "SELECT * FROM route_groups"
    clauses, params = [], []
    if zone_id:
        clauses.append("zone_id=?")
        params.append(zone_id)
    if date:
        clauses.append("date=?")
        params.append(date)
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    return conn.execute(sql + " ORDER BY date, time_of_day", params).fetchall()


def group_bookings(conn, group_id: str, statuses: Optional[Iterable[str]] = None) -> List[sqlite3.Row]:
    sql = "SELECT * FROM bookings WHERE route_group_id=?"
    params: List[Any] = [group_id]
    if statuses is not None:
        statuses = list(statuses)
        sql += f" AND status IN ({','.join('?' for _ in statuses)})"
        params.extend(statuses)
    return conn.execute(sql + " ORDER BY created_at", params).fetchall()


def save_optimized_route(conn, group_id: str, *, route: Dict[str, Any], distance: float, duration: int):
    with conn:
        conn.execute(
            """UPDATE route_groups
               SET optimized_route=?, estimated_distance=?, estimated_duration=?, updated_at=?
               WHERE id=?""",
            (json.dumps(route), distance, duration, now_iso(), group_id),
        )


# ---------- Email logs ----------
def log_email(conn, *, booking_id: str, email_type: str, to: str, subject: str,
              success: bool, error: Optional[str] = None):
    with conn:
        conn.execute(
            """INSERT INTO email_logs (booking_id, email_type, to_addr, subject, success, error, sent_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (booking_id, email_type, to, subject, int(success), error, now_iso()),
        )


def email_sent_since(conn, booking_id: str, email_type: str, since: str) -> bool:
    row = conn.execute(
        """SELECT 1 FROM email_logs
           WHERE booking_id=? AND email_type=? AND success=1 AND sent_at >= ?
           LIMIT 1""",
        (booking_id, email_type, since),
    ).fetchone()
    return row is not None
