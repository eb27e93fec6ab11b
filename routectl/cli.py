import json
import logging
from datetime import datetime, timedelta, timezone

import click

from .config import ADMIN_PRIORITY
from .db import init_db, connect_db
from .jobqueue import JobQueue
from .models import JOB_STATES, TIMES_OF_DAY, TaskName
from .repository import counts, failed_list, get_config, list_jobs, retry_failed, set_config
from . import store
from .utils import parse_delay_to_seconds, parse_iso


@click.group(help="routectl — booking pipeline job queue and route planner")
def cli():
    # Ensure DB/schema exist before any command runs
    init_db()


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a new job to the queue")
@click.argument("name")
@click.option("--payload", default="{}", show_default=True, help="JSON object passed to the handler")
@click.option("--priority", default=0, type=int, show_default=True,
              help="Higher number = runs first")
@click.option("--max-attempts", default=None, type=int, help="Override max attempt count")
@click.option("--run-at", default=None,
              help="ISO datetime; without an offset it is taken as UTC")
@click.option("--delay", "delay_str", default=None,
              help="Run after a delay, e.g. 20s, 5m, 1h30m, 2d3h (mutually exclusive with --run-at)")
def enqueue_cmd(name, payload, priority, max_attempts, run_at, delay_str):
    conn = connect_db()
    try:
        if run_at and delay_str:
            raise click.ClickException("Use either --run-at or --delay, not both.")

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid --payload JSON: {e}")
        if not isinstance(data, dict):
            raise ValueError("--payload must be a JSON object")

        when = None
        if delay_str:
            when = datetime.now(timezone.utc) + timedelta(seconds=parse_delay_to_seconds(delay_str))
        elif run_at:
            try:
                when = parse_iso(run_at)
            except ValueError as e:
                raise ValueError(f"Invalid --run-at format: {run_at} ({e})")

        job = JobQueue(conn, worker_name="cli").schedule(
            name, data, run_at=when, priority=priority, max_attempts=max_attempts
        )
        click.secho(
            f"Enqueued {job.id} -> {job.name} (priority={job.priority}, run_at={job.run_at})",
            fg="green"
        )
    except (ValueError, RuntimeError, click.ClickException) as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.option("--poll-interval", "poll_interval_ms", type=int, default=None,
              help="Milliseconds between polls (default: config poll_interval_ms)")
def worker_start(count, poll_interval_ms):
    from .geocode import CensusGeocoder
    from .handlers import ensure_recurring_jobs, register_pipeline
    from .worker import start_workers

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    conn = connect_db()
    try:
        ensure_recurring_jobs(JobQueue(conn, worker_name="main"))
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()

    geocoder = CensusGeocoder()

    def setup(queue):
        register_pipeline(queue, geocoder=geocoder)

    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    start_workers(count, setup=setup, poll_interval_ms=poll_interval_ms)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--status", type=click.Choice([s.lower() for s in JOB_STATES]), default=None)
@click.option("--name", default=None, help="Only jobs with this task name")
def list_cmd(status, name):
    conn = connect_db()
    try:
        rows = list_jobs(conn, status=status.upper() if status else None, name=name)
    finally:
        conn.close()

    if not rows:
        click.echo("No jobs.")
        return

    for j in rows:
        click.echo(
            f"{j.id} | {j.name:<18} | {j.status:<10} | prio={j.priority} "
            f"| attempts={j.attempts}/{j.max_attempts} | run_at={j.run_at} | last_error={j.last_error}"
        )


@cli.command("status")
def status_cmd():
    conn = connect_db()
    try:
        click.echo(json.dumps(counts(conn), indent=2))
    finally:
        conn.close()


@cli.command("optimize", help="Queue an optimize-routes job ahead of scheduled work")
@click.option("--zone", "zone_id", default=None, help="Only this zone")
@click.option("--date", default=None, help="Only this service date (YYYY-MM-DD)")
def optimize_cmd(zone_id, date):
    conn = connect_db()
    try:
        payload = {k: v for k, v in (("zoneId", zone_id), ("date", date)) if v}
        job = JobQueue(conn, worker_name="cli").schedule(
            TaskName.OPTIMIZE_ROUTES, payload, priority=ADMIN_PRIORITY
        )
        click.secho(f"Queued route optimization {job.id}", fg="green")
    except (ValueError, RuntimeError) as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Failed jobs ----------
@cli.group("failed", help="Jobs that exhausted their attempts")
def failed_group():
    pass


@failed_group.command("list")
def failed_list_cmd():
    conn = connect_db()
    try:
        rows = failed_list(conn)
    finally:
        conn.close()

    if not rows:
        click.echo("No failed jobs.")
        return

    for j in rows:
        click.echo(f"{j.id} | {j.name} | attempts={j.attempts} | last_error={j.last_error}")


@failed_group.command("retry")
@click.argument("job_id")
def failed_retry_cmd(job_id):
    conn = connect_db()
    try:
        if retry_failed(conn, job_id):
            click.secho(f"Re-queued failed job {job_id}.", fg="green")
        else:
            raise click.ClickException(f"Job {job_id} is not in FAILED state.")
    except (ValueError, RuntimeError, click.ClickException) as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Zones ----------
@cli.group("zone", help="Service zones")
def zone_group():
    pass


@zone_group.command("add")
@click.option("--name", required=True)
@click.option("--lat", type=float, required=True)
@click.option("--lng", type=float, required=True)
@click.option("--radius", type=float, required=True, help="Radius in miles")
def zone_add_cmd(name, lat, lng, radius):
    conn = connect_db()
    try:
        zone = store.add_zone(conn, name=name, center_lat=lat, center_lng=lng, radius_mi=radius)
        click.secho(f"Zone {zone.name} added ({zone.id})", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


@zone_group.command("list")
def zone_list_cmd():
    conn = connect_db()
    try:
        zones = store.list_zones(conn)
    finally:
        conn.close()

    if not zones:
        click.echo("No zones.")
        return
    for z in zones:
        click.echo(
            f"{z.id} | {z.name} | ({z.center_lat}, {z.center_lng}) r={z.radius_mi}mi "
            f"| {'active' if z.is_active else 'inactive'}"
        )


# ---------- Bookings ----------
@cli.group("booking", help="Bookings")
def booking_group():
    pass


@booking_group.command("add", help="Store a booking and queue it for geocoding")
@click.option("--name", "customer_name", required=True)
@click.option("--email", "customer_email", required=True)
@click.option("--address", required=True)
@click.option("--city", required=True)
@click.option("--state", required=True)
@click.option("--zip", "zip_code", required=True)
@click.option("--date", "service_date", default=None, help="Service date (YYYY-MM-DD)")
@click.option("--time-of-day", type=click.Choice(TIMES_OF_DAY), default=None)
def booking_add_cmd(customer_name, customer_email, address, city, state, zip_code,
                    service_date, time_of_day):
    conn = connect_db()
    try:
        booking = store.add_booking(
            conn,
            customer_name=customer_name,
            customer_email=customer_email,
            address=address,
            city=city,
            state=state,
            zip=zip_code,
            service_date=service_date,
            time_of_day=time_of_day,
        )
        JobQueue(conn, worker_name="cli").schedule(
            TaskName.GEOCODE_ADDRESS, {"bookingId": booking["id"]}
        )
        click.secho(f"Booking {booking['job_number']} added ({booking['id']})", fg="green")
    except (ValueError, RuntimeError) as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Routes ----------
@cli.group("route", help="Route groups")
def route_group():
    pass


@route_group.command("list")
@click.option("--zone", "zone_id", default=None)
@click.option("--date", default=None)
def route_list_cmd(zone_id, date):
    conn = connect_db()
    try:
        groups = store.list_route_groups(conn, zone_id, date)
    finally:
        conn.close()

    if not groups:
        click.echo("No route groups.")
        return
    for g in groups:
        click.echo(
            f"{g['id']} | {g['date']} {g['time_of_day']} | houses={g['house_count']} "
            f"| distance={g['estimated_distance']} | duration={g['estimated_duration']}"
        )


@route_group.command("export")
@click.argument("group_id")
@click.option("--format", "fmt", type=click.Choice(["gmaps", "gpx"]), default="gmaps", show_default=True)
def route_export_cmd(group_id, fmt):
    from .export import google_maps_url, gpx

    conn = connect_db()
    try:
        group = store.get_route_group(conn, group_id)
        if not group:
            raise click.ClickException(f"Route group {group_id} not found.")
        stops = [b for b in store.group_bookings(conn, group_id) if b["lat"] is not None]
    except click.ClickException as e:
        _fail(e)
    finally:
        conn.close()

    if fmt == "gpx":
        click.echo(gpx(f"{group['date']} {group['time_of_day']}", stops), nl=False)
    else:
        click.echo(google_maps_url(stops))


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
def config_get():
    conn = connect_db()
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set_cmd(key, value):
    conn = connect_db()
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli()
