import json
from datetime import datetime, timedelta, timezone

import pytest

from routectl import repository, store
from routectl.geo import haversine_distance
from routectl.geocode import GeocodeResult
from routectl.handlers import ensure_recurring_jobs, register_pipeline
from routectl.models import AWAITING_SCHEDULE, COMPLETED, FAILED, PENDING, SCHEDULED, TaskName

MILES_PER_DEGREE_LAT = 69.097


class FakeGeocoder:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def geocode(self, address, city, state, zip):
        self.calls.append((address, city, state, zip))
        return self.result


class FakeSender:
    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    def send(self, to, subject, html):
        self.sent.append((to, subject, html))
        return self.ok


def add_booking(conn, **kw):
    fields = dict(
        customer_name="Pat Doe", customer_email="pat@example.com", address="1 Main St",
        city="Kennewick", state="WA", zip="99336",
    )
    fields.update(kw)
    return store.add_booking(conn, **fields)


def place(conn, booking_id, lat, lng, zone_id, status=SCHEDULED):
    store.update_booking_location(conn, booking_id, lat=lat, lng=lng, zone_id=zone_id, status=status)


def test_every_task_name_gets_a_handler(queue):
    register_pipeline(queue)
    assert sorted(queue.registry) == sorted(t.value for t in TaskName)


def test_geocode_assigns_zone_and_queues_route_group(queue, conn):
    zone = store.add_zone(
        conn, name="Tri-Cities", center_lat=46.0 + 5 / MILES_PER_DEGREE_LAT,
        center_lng=-119.0, radius_mi=15,
    )
    booking = add_booking(conn, service_date="2026-11-02", time_of_day="MORNING")
    geocoder = FakeGeocoder(GeocodeResult(46.0, -119.0))
    register_pipeline(queue, geocoder=geocoder)

    job = queue.schedule(TaskName.GEOCODE_ADDRESS, {"bookingId": booking["id"]})
    queue.process_one()

    assert repository.get_job(conn, job.id).status == COMPLETED
    updated = store.get_booking(conn, booking["id"])
    assert (updated["lat"], updated["lng"]) == (46.0, -119.0)
    assert updated["zone_id"] == zone.id
    assert updated["status"] == AWAITING_SCHEDULE
    assert geocoder.calls == [("1 Main St", "Kennewick", "WA", "99336")]

    follow = repository.list_jobs(conn, name="assign-route-group")
    assert len(follow) == 1
    assert follow[0].payload == {"bookingId": booking["id"]}


def test_geocode_outside_every_zone_stays_pending(queue, conn):
    store.add_zone(conn, name="Far", center_lat=40.0, center_lng=-100.0, radius_mi=10)
    booking = add_booking(conn, service_date="2026-11-02")
    register_pipeline(queue, geocoder=FakeGeocoder(GeocodeResult(46.0, -119.0)))

    queue.schedule(TaskName.GEOCODE_ADDRESS, {"bookingId": booking["id"]})
    queue.process_one()

    updated = store.get_booking(conn, booking["id"])
    assert updated["status"] == PENDING
    assert updated["zone_id"] is None
    assert updated["lat"] == 46.0
    assert repository.list_jobs(conn, name="assign-route-group") == []


def test_geocode_without_match_completes_quietly(queue, conn):
    booking = add_booking(conn)
    register_pipeline(queue, geocoder=FakeGeocoder(None))
    job = queue.schedule(TaskName.GEOCODE_ADDRESS, {"bookingId": booking["id"]})
    queue.process_one()
    assert repository.get_job(conn, job.id).status == COMPLETED
    assert store.get_booking(conn, booking["id"])["lat"] is None


def test_geocode_rejects_invalid_coordinates(queue, conn):
    booking = add_booking(conn)
    register_pipeline(queue, geocoder=FakeGeocoder(GeocodeResult(float("nan"), -119.0)))
    job = queue.schedule(TaskName.GEOCODE_ADDRESS, {"bookingId": booking["id"]}, max_attempts=1)
    queue.process_one()
    stored = repository.get_job(conn, job.id)
    assert stored.status == FAILED
    assert "not finite" in stored.last_error


def test_geocoder_errors_are_retried(queue, conn):
    class Down:
        def geocode(self, *args):
            raise ConnectionError("census unreachable")

    booking = add_booking(conn)
    register_pipeline(queue, geocoder=Down())
    job = queue.schedule(TaskName.GEOCODE_ADDRESS, {"bookingId": booking["id"]})
    queue.process_one()
    stored = repository.get_job(conn, job.id)
    assert stored.status == PENDING
    assert stored.last_error == "census unreachable"


def test_assign_route_group_creates_then_reuses_group(queue, conn):
    zone = store.add_zone(conn, name="Z", center_lat=46.0, center_lng=-119.0, radius_mi=15)
    first = add_booking(conn, service_date="2026-11-02", time_of_day="AFTERNOON")
    second = add_booking(conn, service_date="2026-11-02", time_of_day="AFTERNOON")
    for b in (first, second):
        place(conn, b["id"], 46.0, -119.0, zone.id, status=AWAITING_SCHEDULE)

    register_pipeline(queue)
    queue.schedule(TaskName.ASSIGN_ROUTE_GROUP, {"bookingId": first["id"]})
    queue.schedule(TaskName.ASSIGN_ROUTE_GROUP, {"bookingId": second["id"]})
    queue.drain()

    groups = store.list_route_groups(conn)
    assert len(groups) == 1
    assert groups[0]["house_count"] == 2
    assert groups[0]["time_of_day"] == "AFTERNOON"
    for b in (first, second):
        row = store.get_booking(conn, b["id"])
        assert row["route_group_id"] == groups[0]["id"]
        assert row["status"] == SCHEDULED


def test_assign_route_group_missing_data_is_a_no_op(queue, conn):
    booking = add_booking(conn)
    register_pipeline(queue)
    job = queue.schedule(TaskName.ASSIGN_ROUTE_GROUP, {"bookingId": booking["id"]})
    queue.process_one()
    assert repository.get_job(conn, job.id).status == COMPLETED
    assert store.list_route_groups(conn) == []


def test_optimize_routes_orders_bookings_and_estimates(queue, conn):
    repository.set_config(conn, "cluster_epsilon_mi", "5")
    zone = store.add_zone(conn, name="Z", center_lat=46.5, center_lng=-119.5, radius_mi=200)
    group = store.find_or_create_route_group(conn, zone.id, "2026-11-02", "MORNING")

    coords = {
        "a": (46.000, -119.000), "b": (46.010, -119.010), "c": (46.005, -119.020),
        "d": (47.500, -120.500), "e": (47.510, -120.490), "f": (47.490, -120.510),
    }
    ids = {}
    for key, (lat, lng) in coords.items():
        b = add_booking(conn, customer_name=key, service_date="2026-11-02", time_of_day="MORNING")
        place(conn, b["id"], lat, lng, zone.id)
        store.assign_to_route_group(conn, b["id"], group["id"])
        ids[b["id"]] = key

    register_pipeline(queue)
    job = queue.schedule(TaskName.OPTIMIZE_ROUTES, {"zoneId": zone.id, "date": "2026-11-02"})
    queue.process_one()
    assert repository.get_job(conn, job.id).status == COMPLETED

    saved = store.get_route_group(conn, group["id"])
    route = json.loads(saved["optimized_route"])
    assert len(route["clusters"]) == 2
    assert sorted(len(c["order"]) for c in route["clusters"]) == [3, 3]
    assert sorted(route["order"]) == sorted(ids)
    assert saved["estimated_distance"] == route["totalDistance"]
    assert route["distanceScope"] == "within-clusters"
    within = sum(c["totalDistance"] for c in route["clusters"])
    assert abs(route["totalDistance"] - within) < 0.011
    assert route["totalDistance"] < 50
    assert saved["estimated_duration"] == 6 * 15 + round(saved["estimated_distance"] / 25 * 60)

    orders = sorted(store.get_booking(conn, bid)["route_order"] for bid in ids)
    assert orders == list(range(6))
    for cluster in route["clusters"]:
        assert len({ids[i] in "abc" for i in cluster["order"]}) == 1


def test_optimize_routes_uses_configured_depot(queue, conn):
    repository.set_config(conn, "depot_lat", "46.0")
    repository.set_config(conn, "depot_lng", "-119.0")
    zone = store.add_zone(conn, name="Z", center_lat=46.0, center_lng=-119.0, radius_mi=50)
    group = store.find_or_create_route_group(conn, zone.id, "2026-11-03", "MORNING")
    for key, lng in (("far", -119.05), ("near", -119.01), ("mid", -119.03)):
        b = add_booking(conn, customer_name=key, service_date="2026-11-03", time_of_day="MORNING")
        place(conn, b["id"], 46.0, lng, zone.id)
        store.assign_to_route_group(conn, b["id"], group["id"])

    register_pipeline(queue)
    queue.schedule(TaskName.OPTIMIZE_ROUTES, {})
    queue.process_one()

    stops = sorted(store.group_bookings(conn, group["id"]), key=lambda b: b["route_order"])
    assert [s["customer_name"] for s in stops] == ["near", "mid", "far"]
    expected = round(haversine_distance(46.0, -119.0, 46.0, -119.05), 2)
    assert store.get_route_group(conn, group["id"])["estimated_distance"] == pytest.approx(expected, abs=0.011)


def test_optimize_routes_skips_small_groups(queue, conn):
    zone = store.add_zone(conn, name="Z", center_lat=46.0, center_lng=-119.0, radius_mi=50)
    group = store.find_or_create_route_group(conn, zone.id, "2026-11-02", "MORNING")
    b = add_booking(conn, service_date="2026-11-02")
    place(conn, b["id"], 46.0, -119.0, zone.id)
    store.assign_to_route_group(conn, b["id"], group["id"])

    register_pipeline(queue)
    queue.schedule(TaskName.OPTIMIZE_ROUTES, {})
    queue.process_one()
    assert store.get_route_group(conn, group["id"])["optimized_route"] is None


def test_send_email_logs_delivery(queue, conn):
    booking = add_booking(conn, service_date="2026-11-02", time_of_day="MORNING")
    sender = FakeSender()
    register_pipeline(queue, sender=sender)
    queue.schedule(TaskName.SEND_EMAIL, {"bookingId": booking["id"], "emailType": "CONFIRMATION"})
    queue.process_one()

    (to, subject, html), = sender.sent
    assert to == "pat@example.com"
    assert booking["job_number"] in subject
    assert "1 Main St" in html
    logs = conn.execute("SELECT * FROM email_logs").fetchall()
    assert [(r["email_type"], r["success"]) for r in logs] == [("CONFIRMATION", 1)]


def test_send_email_failure_is_retried(queue, conn):
    booking = add_booking(conn)
    register_pipeline(queue, sender=FakeSender(ok=False))
    job = queue.schedule(TaskName.SEND_EMAIL, {"bookingId": booking["id"], "emailType": "REMINDER"})
    queue.process_one()

    stored = repository.get_job(conn, job.id)
    assert stored.status == PENDING
    assert "Failed to send REMINDER" in stored.last_error
    assert conn.execute("SELECT success FROM email_logs").fetchone()["success"] == 0


def test_send_email_unknown_type_fails(queue, conn):
    booking = add_booking(conn)
    register_pipeline(queue, sender=FakeSender())
    job = queue.schedule(TaskName.SEND_EMAIL, {"bookingId": booking["id"], "emailType": "SPAM"},
                         max_attempts=1)
    queue.process_one()
    stored = repository.get_job(conn, job.id)
    assert stored.status == FAILED
    assert "Unknown email type" in stored.last_error


def test_send_reminders_queues_tomorrows_bookings_once(queue, conn):
    repository.set_config(conn, "timezone", "UTC")
    today = datetime.now(timezone.utc).date()
    tomorrow = (today + timedelta(days=1)).isoformat()
    zone = store.add_zone(conn, name="Z", center_lat=46.0, center_lng=-119.0, radius_mi=50)

    due = add_booking(conn, service_date=tomorrow)
    place(conn, due["id"], 46.0, -119.0, zone.id)
    reminded = add_booking(conn, service_date=tomorrow)
    place(conn, reminded["id"], 46.0, -119.0, zone.id)
    store.log_email(conn, booking_id=reminded["id"], email_type="REMINDER", to="x@example.com",
                    subject="s", success=True)
    unscheduled = add_booking(conn, service_date=tomorrow)
    later = add_booking(conn, service_date=(today + timedelta(days=5)).isoformat())
    place(conn, later["id"], 46.0, -119.0, zone.id)

    register_pipeline(queue, sender=FakeSender())
    queue.schedule(TaskName.SEND_REMINDERS, {})
    queue.process_one()

    queued = repository.list_jobs(conn, name="send-email")
    assert [j.payload for j in queued] == [{"bookingId": due["id"], "emailType": "REMINDER"}]
    assert unscheduled["id"] not in {j.payload["bookingId"] for j in queued}


def test_ensure_recurring_jobs(queue, conn):
    jobs = ensure_recurring_jobs(queue, "America/Denver")
    assert {j.name for j in jobs} == {"optimize-routes", "send-reminders"}
    assert all(j.priority < 0 for j in jobs)
    ensure_recurring_jobs(queue, "America/Denver")
    assert len(repository.list_jobs(conn, status=PENDING)) == 2
