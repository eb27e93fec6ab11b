"""
Pipeline handlers: booking -> geocode -> route group -> optimized route, plus emails.

Each handler is a callable taking the job payload. They share a Pipeline
that holds the worker's queue (and so its connection) and the external
collaborators.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from . import store
from .clustering import dbscan
from .config import RECURRING_JOBS
from .cron import get_zone
from .geo import InvalidCoordinates, find_nearest_zone, validate_coordinates
from .jobqueue import JobQueue
from .models import (
    AWAITING_SCHEDULE, BOOKING_PENDING, ROUTABLE_BOOKING_STATES, GeoPoint, TaskName,
)
from .notify import LogEmailSender, render_email
from .optimizer import optimize_route
from .repository import get_config
from .utils import to_iso

logger = logging.getLogger(__name__)


class Pipeline:
    def __init__(self, queue: JobQueue, geocoder=None, sender=None):
        self.queue = queue
        self.geocoder = geocoder
        self.sender = sender or LogEmailSender()

    @property
    def conn(self):
        return self.queue.conn

    def config(self) -> Dict[str, str]:
        return get_config(self.conn)


class Handler:
    task: TaskName

    def __init__(self, pipeline: Pipeline):
        self.pipeline = pipeline

    @property
    def conn(self):
        return self.pipeline.conn

    def __call__(self, payload: Dict[str, Any]):
        raise NotImplementedError


class GeocodeAddress(Handler):
    task = TaskName.GEOCODE_ADDRESS

    def __call__(self, payload):
        booking_id = payload["bookingId"]
        booking = store.get_booking(self.conn, booking_id)
        if not booking:
            logger.error(f"Booking {booking_id} not found")
            return
        if self.pipeline.geocoder is None:
            raise RuntimeError("No geocoder configured")

        result = self.pipeline.geocoder.geocode(
            booking["address"], booking["city"], booking["state"], booking["zip"]
        )
        if not result:
            # stays PENDING for manual handling
            logger.error(f"Failed to geocode booking {booking_id}: {booking['address']}")
            return

        lat, lng = validate_coordinates(result.lat, result.lng)
        match = find_nearest_zone(store.list_zones(self.conn, active_only=True), lat, lng)
        zone = match[0] if match else None

        store.update_booking_location(
            self.conn, booking_id,
            lat=lat, lng=lng,
            zone_id=zone.id if zone else None,
            status=AWAITING_SCHEDULE if zone else BOOKING_PENDING,
        )
        logger.info(
            f"Geocoded booking {booking['job_number']}: ({lat}, {lng})"
            + (f" -> zone {zone.name}" if zone else " (no matching zone)")
        )

        if zone and booking["service_date"]:
            self.pipeline.queue.schedule(TaskName.ASSIGN_ROUTE_GROUP, {"bookingId": booking_id})


class AssignRouteGroup(Handler):
    task = TaskName.ASSIGN_ROUTE_GROUP

    def __call__(self, payload):
        booking_id = payload["bookingId"]
        booking = store.get_booking(self.conn, booking_id)
        if (
            not booking
            or not booking["service_date"]
            or not booking["zone_id"]
            or booking["lat"] is None
            or booking["lng"] is None
        ):
            logger.error(f"Cannot assign route group for booking {booking_id}: missing data")
            return

        group = store.find_or_create_route_group(
            self.conn, booking["zone_id"], booking["service_date"], booking["time_of_day"] or "MORNING"
        )
        count = store.assign_to_route_group(self.conn, booking_id, group["id"])
        logger.info(
            f"Assigned booking {booking['job_number']} to route group {group['id']} ({count} houses)"
        )


class OptimizeRoutes(Handler):
    task = TaskName.OPTIMIZE_ROUTES

    def __call__(self, payload):
        cfg = self.pipeline.config()
        epsilon = float(cfg["cluster_epsilon_mi"])
        min_points = int(cfg["cluster_min_points"])
        max_radius = float(cfg["cluster_max_radius_mi"]) if cfg["cluster_max_radius_mi"] else None
        minutes_per_stop = int(cfg["minutes_per_stop"])
        speed_mph = float(cfg["average_speed_mph"])
        depot = _depot(cfg)

        groups = store.list_route_groups(self.conn, payload.get("zoneId"), payload.get("date"))
        for group in groups:
            points = self._points(group["id"])
            if len(points) < 2:
                continue

            by_id = {p.id: p for p in points}
            clusters = dbscan(points, epsilon, min_points, max_radius)
            clusters.sort(key=len, reverse=True)

            routes = [optimize_route([by_id[i] for i in ids], depot) for ids in clusters]
            order = [pid for r in routes for pid in r.order]
            for position, booking_id in enumerate(order):
                store.set_route_order(self.conn, booking_id, position)

            # clusters are driven one after another, but the legs between
            # them are not counted; order is a visiting sequence, not one tour
            distance = round(sum(r.total_distance for r in routes), 2)
            duration = len(order) * minutes_per_stop + round(distance / speed_mph * 60)
            store.save_optimized_route(
                self.conn, group["id"],
                route={
                    "order": order,
                    "totalDistance": distance,
                    "distanceScope": "within-clusters",
                    "clusters": [r.to_dict() for r in routes],
                },
                distance=distance,
                duration=duration,
            )
            logger.info(
                f"Optimized route group {group['id']}: {len(order)} stops in "
                f"{len(routes)} cluster(s), {distance} miles"
            )

    def _points(self, group_id: str) -> List[GeoPoint]:
        points = []
        for b in store.group_bookings(self.conn, group_id, ROUTABLE_BOOKING_STATES):
            if b["lat"] is None or b["lng"] is None:
                continue
            try:
                lat, lng = validate_coordinates(b["lat"], b["lng"])
            except InvalidCoordinates as e:
                logger.warning(f"Skipping booking {b['id']} in route group {group_id}: {e}")
                continue
            points.append(GeoPoint(b["id"], lat, lng))
        return points


class SendEmail(Handler):
    task = TaskName.SEND_EMAIL

    def __call__(self, payload):
        booking_id = payload["bookingId"]
        email_type = payload["emailType"]
        booking = store.get_booking(self.conn, booking_id)
        if not booking:
            logger.error(f"Booking {booking_id} not found for email")
            return

        email = render_email(email_type, booking, payload.get("updateDescription"))
        to = booking["customer_email"]
        try:
            ok = self.pipeline.sender.send(to, email["subject"], email["html"])
            error = None if ok else "Sender reported failure"
        except Exception as e:
            ok, error = False, str(e) or type(e).__name__

        store.log_email(
            self.conn, booking_id=booking_id, email_type=email_type, to=to,
            subject=email["subject"], success=ok, error=error,
        )
        if not ok:
            raise RuntimeError(f"Failed to send {email_type} email to {to}: {error}")


class SendReminders(Handler):
    task = TaskName.SEND_REMINDERS

    def __call__(self, payload):
        tz = get_zone(payload.get("timezone") or self.pipeline.config()["timezone"])
        local_now = datetime.now(timezone.utc).astimezone(tz)
        start_of_today = datetime(local_now.year, local_now.month, local_now.day, tzinfo=tz)
        tomorrow = (local_now.date() + timedelta(days=1)).isoformat()

        bookings = store.bookings_on(self.conn, tomorrow, ROUTABLE_BOOKING_STATES)
        queued = 0
        for booking in bookings:
            if store.email_sent_since(self.conn, booking["id"], "REMINDER", to_iso(start_of_today)):
                continue
            self.pipeline.queue.schedule(
                TaskName.SEND_EMAIL, {"bookingId": booking["id"], "emailType": "REMINDER"}
            )
            queued += 1

        logger.info(f"Queued reminders for {queued} of {len(bookings)} bookings")


HANDLERS = (GeocodeAddress, AssignRouteGroup, OptimizeRoutes, SendEmail, SendReminders)


def _depot(cfg: Dict[str, str]) -> Optional[Tuple[float, float]]:
    if not cfg.get("depot_lat") or not cfg.get("depot_lng"):
        return None
    return validate_coordinates(cfg["depot_lat"], cfg["depot_lng"])


def register_pipeline(queue: JobQueue, geocoder=None, sender=None) -> Pipeline:
    """Register one handler per task name on the queue's registry."""
    missing = set(TaskName) - {cls.task for cls in HANDLERS}
    if missing:
        raise RuntimeError(f"No handler class for: {sorted(t.value for t in missing)}")
    pipeline = Pipeline(queue, geocoder=geocoder, sender=sender)
    for cls in HANDLERS:
        queue.register_handler(cls.task, cls(pipeline))
    return pipeline


def ensure_recurring_jobs(queue: JobQueue, tz_name: Optional[str] = None):
    tz_name = tz_name or get_config(queue.conn)["timezone"]
    return [queue.schedule_recurring(name, expr, timezone=tz_name) for name, expr in RECURRING_JOBS]
