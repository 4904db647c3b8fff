"""
OpenTripPlanner trip plan requests for both API dialects.

The ``/api/otp/plan`` endpoint collects REST-style query parameters
(``fromPlace``, ``toPlace``, ``date``, ``time``, ``mode`` ...). For OTP 1.x they
are forwarded as-is to ``/routers/default/plan``. For OTP 2.x they are turned
into a ``planConnection`` GraphQL query and the answer is mapped back to the
REST ``{"plan": {"itineraries": [...]}}`` shape so the frontend handles either
server the same way.
"""
from __future__ import annotations

import re
from datetime import datetime, tzinfo
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

# ~3 miles in meters
DEFAULT_MAX_WALK_DISTANCE = "4828"
DEFAULT_MODE = "TRANSIT,WALK"

REST_PLAN_PATH = "/routers/default/plan"
GRAPHQL_PATH = "/otp/gtfs/v1"

TRANSIT_UMBRELLA_MODES = ["BUS", "RAIL", "FERRY", "TRAM"]
# SUBWAY is not part of TRANSIT but may be requested on its own.
INDIVIDUAL_TRANSIT_MODES = {"BUS", "RAIL", "FERRY", "TRAM", "SUBWAY"}

OTP_DATE_RE = re.compile(r"^\s*(\d{1,2})-(\d{1,2})-(\d{4})\s*$")
OTP_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*(AM|PM)\s*$", re.IGNORECASE)

GRAPHQL_QUERY = """
query planTrip(
  $origin: PlanLabeledLocationInput!,
  $destination: PlanLabeledLocationInput!,
  $dateTime: PlanDateTimeInput!,
  $modes: PlanModesInput,
  $wheelchair: Boolean
) {
  planConnection(
    origin: $origin,
    destination: $destination,
    dateTime: $dateTime,
    modes: $modes,
    preferences: { accessibility: { wheelchair: { enabled: $wheelchair } } }
  ) {
    edges {
      node {
        start
        end
        legs {
          mode
          duration
          distance
          headsign
          from {
            name
            lat
            lon
            departure { scheduledTime estimated { time } }
          }
          to {
            name
            lat
            lon
            arrival { scheduledTime estimated { time } }
          }
          route { shortName longName }
          legGeometry { points }
          steps { relativeDirection streetName distance absoluteDirection }
        }
      }
    }
  }
}"""


class PlanRequestError(ValueError):
    """Raised when trip plan parameters cannot be converted for OTP."""


def format_otp_time(now: datetime) -> str:
    """Format as ``h:mm AM/PM`` (e.g. ``9:10 PM``)."""
    hour = now.hour % 12 or 12
    return f"{hour}:{now.minute:02d} {'PM' if now.hour >= 12 else 'AM'}"


def format_otp_date(now: datetime) -> str:
    """Format as ``MM-DD-YYYY``."""
    return f"{now.month:02d}-{now.day:02d}-{now.year}"


def collect_plan_params(query: Mapping[str, str], now: datetime) -> Dict[str, str]:
    """Fill in defaults for the optional trip plan parameters."""
    return {
        "fromPlace": query["fromPlace"],
        "toPlace": query["toPlace"],
        "time": query.get("time") or format_otp_time(now),
        "date": query.get("date") or format_otp_date(now),
        "mode": query.get("mode") or DEFAULT_MODE,
        "arriveBy": query.get("arriveBy") or "false",
        "maxWalkDistance": query.get("maxWalkDistance") or DEFAULT_MAX_WALK_DISTANCE,
        "wheelchair": query.get("wheelchair") or "false",
        "showIntermediateStops": query.get("showIntermediateStops") or "true",
    }


def build_rest_plan_url(base_url: str, params: Mapping[str, str]) -> str:
    return f"{base_url.rstrip('/')}{REST_PLAN_PATH}?{urlencode(params)}"


def build_graphql_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}{GRAPHQL_PATH}"


def to_offset_datetime(date_text: str, time_text: str, tz: Optional[tzinfo] = None) -> Optional[str]:
    """
    Convert ``MM-DD-YYYY`` + ``h:mm AM/PM`` into an ISO 8601 offset datetime.

    The offset is resolved for the target date itself so DST transitions are
    honored. Without ``tz`` the server's local timezone is used.

    Returns:
        e.g. ``2026-02-19T17:08:00-08:00``, or None if either input is malformed
    """
    date_match = OTP_DATE_RE.match(date_text or "")
    time_match = OTP_TIME_RE.match(time_text or "")
    if not date_match or not time_match:
        return None

    month, day, year = (int(part) for part in date_match.groups())
    hours = int(time_match.group(1))
    minutes = int(time_match.group(2))
    period = time_match.group(3).upper()
    if hours > 12 or minutes > 59:
        return None
    if period == "AM" and hours == 12:
        hours = 0
    elif period == "PM" and hours != 12:
        hours += 12

    try:
        local = datetime(year, month, day, hours, minutes)
    except ValueError:
        return None
    aware = local.replace(tzinfo=tz) if tz is not None else local.astimezone()
    return aware.isoformat()


def convert_modes(mode_text: str) -> Dict[str, Any]:
    """Convert ``TRANSIT,WALK`` style modes into a GraphQL ``PlanModesInput``."""
    modes = [m.strip().upper() for m in mode_text.split(",") if m.strip()]

    direct: List[str] = []
    if "WALK" in modes:
        direct.append("WALK")
    if "BICYCLE" in modes:
        direct.append("BICYCLE")

    result: Dict[str, Any] = {"direct": direct}
    if "TRANSIT" in modes:
        result["transit"] = {"transit": [{"mode": m} for m in TRANSIT_UMBRELLA_MODES]}
    else:
        transit_modes = [{"mode": m} for m in modes if m in INDIVIDUAL_TRANSIT_MODES]
        if transit_modes:
            result["transit"] = {"transit": transit_modes}
    return result


def _parse_place(name: str, value: str) -> List[float]:
    parts = value.split(",")
    try:
        coords = [float(p) for p in parts]
    except ValueError:
        coords = []
    if len(coords) != 2:
        raise PlanRequestError(f'Invalid {name} coordinate format: "{value}". Expected "lat,lon".')
    return coords


def build_graphql_body(params: Mapping[str, str], tz: Optional[tzinfo] = None) -> Dict[str, Any]:
    from_lat, from_lon = _parse_place("fromPlace", params["fromPlace"])
    to_lat, to_lon = _parse_place("toPlace", params["toPlace"])

    iso = to_offset_datetime(params["date"], params["time"], tz)
    if iso is None:
        raise PlanRequestError(
            f'Invalid date/time format: date="{params["date"]}", time="{params["time"]}". '
            "Expected date as MM-DD-YYYY and time as h:mm AM/PM."
        )

    if params.get("arriveBy") == "true":
        date_time = {"latestArrival": iso}
    else:
        date_time = {"earliestDeparture": iso}

    variables = {
        "origin": {"location": {"coordinate": {"latitude": from_lat, "longitude": from_lon}}},
        "destination": {"location": {"coordinate": {"latitude": to_lat, "longitude": to_lon}}},
        "dateTime": date_time,
        "modes": convert_modes(params.get("mode") or DEFAULT_MODE),
        "wheelchair": params.get("wheelchair") == "true",
    }
    return {"query": GRAPHQL_QUERY, "variables": variables}


def _iso_to_ms(value: str) -> int:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return int(datetime.fromisoformat(value).timestamp() * 1000)


def _map_leg(leg: Dict[str, Any]) -> Dict[str, Any]:
    duration = leg.get("duration")
    if not isinstance(duration, (int, float)):
        duration = (duration or {}).get("total") or 0

    origin = leg.get("from") or {}
    destination = leg.get("to") or {}
    departure = origin.get("departure") or {}
    arrival = destination.get("arrival") or {}
    from_time = (departure.get("estimated") or {}).get("time") or departure.get("scheduledTime")
    to_time = (arrival.get("estimated") or {}).get("time") or arrival.get("scheduledTime")

    mapped: Dict[str, Any] = {
        "mode": leg.get("mode"),
        "duration": duration,
        "distance": leg.get("distance"),
        "headsign": leg.get("headsign") or None,
        "from": {"name": origin.get("name"), "lat": origin.get("lat"), "lon": origin.get("lon")},
        "to": {"name": destination.get("name"), "lat": destination.get("lat"), "lon": destination.get("lon")},
        "legGeometry": leg.get("legGeometry") or {"points": ""},
        "steps": leg.get("steps") or [],
    }
    if from_time:
        mapped["startTime"] = _iso_to_ms(from_time)
    if to_time:
        mapped["endTime"] = _iso_to_ms(to_time)
    route = leg.get("route")
    if route:
        mapped["routeShortName"] = route.get("shortName")
        mapped["routeLongName"] = route.get("longName")
    return mapped


def map_graphql_response(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Map a ``planConnection`` answer to ``{"plan": {"itineraries": [...]}}``."""
    errors = payload.get("errors")
    data = payload.get("data")
    # Partial results carry both data and errors; only fail without data.
    if errors and not data:
        message = (errors[0] or {}).get("message") or "Unknown GraphQL error"
        return {"error": {"id": "GRAPHQL_ERROR", "msg": message}}
    if errors:
        print(
            "[otp_plan] GraphQL returned partial errors: "
            + "; ".join(str((e or {}).get("message")) for e in errors)
        )

    connection = (data or {}).get("planConnection")
    if not connection:
        return {
            "error": {
                "id": "GRAPHQL_ERROR",
                "msg": "Unexpected response structure from trip planning server",
            }
        }

    itineraries = []
    try:
        for edge in connection.get("edges") or []:
            node = edge.get("node") or {}
            start_time = _iso_to_ms(node["start"])
            end_time = _iso_to_ms(node["end"])
            itineraries.append({
                "startTime": start_time,
                "endTime": end_time,
                "duration": (end_time - start_time) / 1000,
                "legs": [_map_leg(leg) for leg in node.get("legs") or []],
            })
    except (KeyError, ValueError, TypeError, AttributeError) as exc:
        print(f"[otp_plan] malformed planConnection itinerary: {exc!r}")
        return {
            "error": {
                "id": "GRAPHQL_ERROR",
                "msg": "Unexpected response structure from trip planning server",
            }
        }
    return {"plan": {"itineraries": itineraries}}
