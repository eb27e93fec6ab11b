from typing import Iterable, List
from xml.sax.saxutils import escape

GPX_CREATOR = "routectl"
UNORDERED = 999
QUOTE = {"\"": "&quot;"}


def _in_route_order(stops: Iterable) -> List:
    return sorted(stops, key=lambda s: UNORDERED if s["route_order"] is None else s["route_order"])


def google_maps_url(stops: Iterable) -> str:
    """Directions URL through every stop in route order (Google caps URLs at ~25 waypoints)."""
    waypoints = "/".join(f"{s['lat']},{s['lng']}" for s in _in_route_order(stops))
    return f"https://www.google.com/maps/dir/{waypoints}"


def gpx(route_name: str, stops: Iterable) -> str:
    """GPX 1.1 document with a waypoint per stop and one route through them."""
    ordered = _in_route_order(stops)
    wpts, rtepts = [], []
    for i, s in enumerate(ordered):
        name = escape(f"{i + 1}. {s['customer_name']}", QUOTE)
        address = ", ".join(x for x in (s["address"], s["city"], s["state"], s["zip"]) if x)
        wpts.append(
            f'  <wpt lat="{s["lat"]}" lon="{s["lng"]}">\n'
            f"    <name>{name}</name>\n"
            f"    <desc>{escape(address, QUOTE)}</desc>\n"
            f"  </wpt>"
        )
        rtepts.append(
            f'    <rtept lat="{s["lat"]}" lon="{s["lng"]}">\n'
            f"      <name>{name}</name>\n"
            f"    </rtept>"
        )

    return "\n".join([
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<gpx version="1.1" creator="{GPX_CREATOR}" xmlns="http://www.topografix.com/GPX/1/1">',
        f"  <metadata>\n    <name>{escape(route_name)}</name>\n  </metadata>",
        *wpts,
        f"  <rte>\n    <name>{escape(route_name)}</name>",
        *rtepts,
        "  </rte>",
        "</gpx>",
    ]) + "\n"
