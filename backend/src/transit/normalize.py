"""
Normalize MTA Bus Time responses (SIRI stop-monitoring and OneBusAway "where" API) into our records.
Required structure missing or of the wrong shape -> InternalError. Missing optional fields are tolerated by omission.
"""
import re
from datetime import datetime, timezone
from typing import Any

from src.transit.models import GroupStop, NearbyStops, RouteStops, RouteSummary, StopArrival, StopGroup
from src.upstream.errors import InternalError, ResourceNotFoundError

# RFC3339 allows any number of fractional-second digits; fromisoformat on 3.10 takes only 3 or 6
_FRACTION = re.compile(r"(T\d{2}:\d{2}:\d{2})\.(\d+)")
NO_SUCH_STOP = "no such stop"


def _require(obj: Any, key: str, where: str) -> Any:
    if not isinstance(obj, dict) or key not in obj or obj[key] is None:
        raise InternalError(f"Malformed {where} response: missing {key}")
    return obj[key]


def _object(value: Any, key: str, where: str) -> dict[str, Any]:
    """Optional nested object: None -> {}, anything other than a JSON object -> InternalError."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InternalError(f"Malformed {where} response: {key} is not an object")
    return value


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _text(value: Any) -> str:
    # SIRI v2 sends some names as single-element lists
    if isinstance(value, list):
        value = value[0] if value else ""
    if isinstance(value, dict):
        value = value.get("name") or value.get("value") or ""
    return value if isinstance(value, str) else ("" if value is None else str(value))


def check_response_code(raw: dict[str, Any], where: str, *, distinguish_not_found: bool = False) -> None:
    """OneBusAway may report failures in the body ("code"/"text") with a 200 status."""
    code = raw.get("code")
    if not isinstance(code, int) or isinstance(code, bool) or code == 200:
        return
    if code == 404 and distinguish_not_found:
        raise ResourceNotFoundError(f"{where}: {raw.get('text') or 'resource not found'}")
    raise InternalError(f"{where} returned code {code}")


def _error_text(condition: Any) -> str:
    if not isinstance(condition, dict):
        return _text(condition)
    for key in ("OtherError", "NoInfoForTopicError", "CapabilityNotSupportedError", "ServiceNotAvailableError"):
        detail = condition.get(key)
        if isinstance(detail, dict) and detail.get("ErrorText"):
            return _text(detail.get("ErrorText"))
    return _text(condition.get("Description"))


def check_error_condition(delivery: dict[str, Any]) -> None:
    """SIRI reports an unknown MonitoringRef as an ErrorCondition with a 200 status."""
    condition = delivery.get("ErrorCondition")
    if condition is None:
        return
    text = _error_text(condition)
    if NO_SUCH_STOP in text.lower():
        raise ResourceNotFoundError(f"stop-monitoring: {text}")
    raise InternalError(f"stop-monitoring returned an error condition: {text or 'unknown'}")


def parse_expected_time(value: Any) -> datetime | None:
    """RFC3339 timestamp -> aware datetime; None when absent or unparseable."""
    if not isinstance(value, str) or not value:
        return None
    value = _FRACTION.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", value, count=1)
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def minutes_until(expected: datetime, now: datetime) -> int:
    """Whole minutes from now to expected, truncated toward zero (negative once passed)."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return int((expected - now).total_seconds() / 60)


def normalize_monitored_visit(stop_id: str, visit: dict[str, Any], now: datetime) -> StopArrival:
    journey = _object(visit.get("MonitoredVehicleJourney"), "MonitoredVehicleJourney", "stop-monitoring")
    call = _object(journey.get("MonitoredCall"), "MonitoredCall", "stop-monitoring")
    expected = parse_expected_time(call.get("ExpectedArrivalTime"))
    return StopArrival(
        stop_id=stop_id,
        route_id=_text(journey.get("LineRef")),
        route_label=_text(journey.get("PublishedLineName")),
        direction_ref=_text(journey.get("DirectionRef")),
        expected_arrival_time=expected,
        minutes_until_arrival=minutes_until(expected, now) if expected is not None else None,
    )


def normalize_stop_monitoring(stop_id: str, raw: dict[str, Any], now: datetime) -> list[StopArrival]:
    """
    Map a stop-monitoring response to one StopArrival per monitored visit, in upstream order.
    Only the first StopMonitoringDelivery is read; no delivery -> empty list.
    An ErrorCondition naming an unknown stop -> ResourceNotFoundError, any other -> InternalError.
    """
    siri = _require(raw, "Siri", "stop-monitoring")
    delivery_root = _require(siri, "ServiceDelivery", "stop-monitoring")
    deliveries = _require(delivery_root, "StopMonitoringDelivery", "stop-monitoring")
    if isinstance(deliveries, dict):
        deliveries = [deliveries]
    if not isinstance(deliveries, list):
        raise InternalError("Malformed stop-monitoring response: StopMonitoringDelivery is not a list")
    if not deliveries:
        return []
    delivery = _object(deliveries[0], "StopMonitoringDelivery[0]", "stop-monitoring")
    check_error_condition(delivery)
    visits = _as_list(delivery.get("MonitoredStopVisit"))
    return [normalize_monitored_visit(stop_id, v, now) for v in visits if isinstance(v, dict)]


def normalize_stops_for_route(route_id: str, raw: dict[str, Any]) -> RouteStops:
    """One StopGroup per upstream stop group; unknown stop ids are skipped, missing route name -> ""."""
    check_response_code(raw, "stops-for-route", distinguish_not_found=True)
    data = _require(raw, "data", "stops-for-route")
    entry = _object(_require(data, "entry", "stops-for-route"), "entry", "stops-for-route")
    references = _object(data.get("references"), "references", "stops-for-route")

    stop_names: dict[str, str] = {}
    for s in _as_list(references.get("stops")):
        if isinstance(s, dict) and s.get("id") is not None:
            stop_names[str(s["id"])] = _text(s.get("name"))

    route_name = ""
    for r in _as_list(references.get("routes")):
        if isinstance(r, dict) and str(r.get("id")) == route_id:
            route_name = _text(r.get("shortName"))
            break

    groups: list[StopGroup] = []
    for grouping in _as_list(entry.get("stopGroupings")):
        if not isinstance(grouping, dict):
            continue
        for group in _as_list(grouping.get("stopGroups")):
            if not isinstance(group, dict):
                continue
            stops = tuple(
                GroupStop(id=str(sid), name=stop_names[str(sid)])
                for sid in _as_list(group.get("stopIds"))
                if str(sid) in stop_names
            )
            groups.append(
                StopGroup(
                    id=_text(group.get("id")),
                    name=_text(group.get("name")),
                    route_id=route_id,
                    route_name=route_name,
                    stops=stops,
                )
            )
    return RouteStops(route_id=route_id, route_name=route_name, groups=tuple(groups))


def normalize_stops_for_location(raw: dict[str, Any]) -> NearbyStops:
    """Nearby stop ids and the route ids serving them, both deduplicated in first-seen order."""
    check_response_code(raw, "stops-for-location")
    data = _require(raw, "data", "stops-for-location")
    if not isinstance(data, dict):
        raise InternalError("Malformed stops-for-location response: data is not an object")
    # version=2 responses use "list" and "routeIds"; v1 uses "stops" and "routes"
    stops = data.get("stops") if "stops" in data else data.get("list")
    if not isinstance(stops, list):
        raise InternalError("Malformed stops-for-location response: missing stops")
    stop_ids: dict[str, None] = {}
    route_ids: dict[str, None] = {}
    for stop in stops:
        if not isinstance(stop, dict) or stop.get("id") is None:
            continue
        stop_ids[str(stop["id"])] = None
        for r in _as_list(stop.get("routes")):
            if isinstance(r, dict) and r.get("id") is not None:
                route_ids[str(r["id"])] = None
        for rid in _as_list(stop.get("routeIds")):
            route_ids[str(rid)] = None
    return NearbyStops(stop_ids=tuple(stop_ids), route_ids=tuple(route_ids))


def normalize_routes_for_agency(raw: dict[str, Any]) -> list[RouteSummary]:
    check_response_code(raw, "routes-for-agency")
    data = _require(raw, "data", "routes-for-agency")
    routes = _require(data, "list", "routes-for-agency")
    if not isinstance(routes, list):
        raise InternalError("Malformed routes-for-agency response: list is not a list")
    return [
        RouteSummary(id=str(r["id"]), name=_text(r.get("shortName")))
        for r in routes
        if isinstance(r, dict) and r.get("id") is not None
    ]
