"""Tests for TransitService: fan-out, dedup, merge order, grouping, location discovery, failures."""
import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from fakes import (
    PLACES_BASE,
    make_client,
    routes_for_agency,
    siri,
    siri_error,
    stops_for_location,
    stops_for_route,
    visit,
)
from src.places.service import PlacesService
from src.transit.models import Coordinates, PlaceId, StopArrival
from src.transit.service import TransitService, dedupe_arrivals, gather_all, sort_arrivals
from src.upstream.errors import InternalError, ResourceNotFoundError

NOW = datetime(2025, 2, 20, 14, 0, 0, tzinfo=timezone.utc)


def _service(handler, places: PlacesService | None = None, **kwargs) -> TransitService:
    return TransitService(make_client(handler), places, clock=lambda: NOW, **kwargs)


def _monitoring_handler(by_stop: dict[str, dict]):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/siri/stop-monitoring.json"
        stop_id = request.url.params["MonitoringRef"]
        if stop_id not in by_stop:
            return httpx.Response(500, text="boom")
        return httpx.Response(200, json=by_stop[stop_id])

    return handler


def _arrival(label: str, minutes: int | None, stop_id: str = "1") -> StopArrival:
    return StopArrival(stop_id=stop_id, route_id=label, route_label=label, minutes_until_arrival=minutes)


# --- Pure helpers ---


def test_sort_arrivals_absent_minutes_last_and_stable():
    arrivals = [_arrival("X", None), _arrival("B", 5), _arrival("A", 2), _arrival("C", 5), _arrival("Y", None)]
    assert [a.route_label for a in sort_arrivals(arrivals)] == ["A", "B", "C", "X", "Y"]


def test_dedupe_arrivals_by_label_and_direction():
    arrivals = [
        StopArrival(stop_id="1", route_id="r", route_label="A", direction_ref="0", minutes_until_arrival=3),
        StopArrival(stop_id="1", route_id="r", route_label="A", direction_ref="0", minutes_until_arrival=9),
        StopArrival(stop_id="1", route_id="r", route_label="A", direction_ref="1", minutes_until_arrival=4),
    ]
    out = dedupe_arrivals(arrivals)
    assert [(a.direction_ref, a.minutes_until_arrival) for a in out] == [("0", 3), ("1", 4)]


# --- Arrivals ---


@pytest.mark.asyncio
async def test_get_arrivals_two_stops_merged_in_time_order():
    service = _service(
        _monitoring_handler(
            {
                "abc": siri(visit("B", "2025-02-20T14:10:00Z")),
                "123": siri(visit("A", "2025-02-20T14:02:00Z")),
            }
        )
    )
    arrivals = await service.get_arrivals(["abc", "123"])
    assert [(a.stop_id, a.route_label, a.minutes_until_arrival) for a in arrivals] == [
        ("123", "A", 2),
        ("abc", "B", 10),
    ]


@pytest.mark.asyncio
async def test_get_arrivals_dedupes_per_stop_only():
    """Same label+direction at one stop collapses; at two different stops both are kept."""
    service = _service(
        _monitoring_handler(
            {
                "s1": siri(visit("A", "2025-02-20T14:03:00Z"), visit("A", "2025-02-20T14:13:00Z")),
                "s2": siri(visit("A", "2025-02-20T14:05:00Z")),
            }
        )
    )
    arrivals = await service.get_arrivals(["s1", "s2"])
    assert [(a.stop_id, a.minutes_until_arrival) for a in arrivals] == [("s1", 3), ("s2", 5)]


@pytest.mark.asyncio
async def test_get_arrivals_unknown_time_sorted_last():
    service = _service(
        _monitoring_handler(
            {
                "s1": siri(visit("Q", None, direction="0"), visit("A", "2025-02-20T14:20:00Z")),
                "s2": siri(visit("B", "2025-02-20T14:01:00Z")),
            }
        )
    )
    arrivals = await service.get_arrivals(["s1", "s2"])
    assert [a.route_label for a in arrivals] == ["B", "A", "Q"]
    assert arrivals[-1].minutes_until_arrival is None
    assert arrivals[-1].expected_arrival_time is None


@pytest.mark.asyncio
async def test_get_arrivals_route_filter():
    service = _service(
        _monitoring_handler(
            {"s1": siri(visit("A", "2025-02-20T14:03:00Z"), visit("B", "2025-02-20T14:01:00Z"), visit("C"))}
        )
    )
    arrivals = await service.get_arrivals(["s1"], routes=["A", "C"])
    assert [a.route_label for a in arrivals] == ["A", "C"]
    assert len(await service.get_arrivals(["s1"], routes=[])) == 3


@pytest.mark.asyncio
async def test_get_arrivals_concurrent_equals_sequential():
    by_stop = {
        "s1": siri(visit("A", "2025-02-20T14:03:00Z"), visit("B", "2025-02-20T14:08:00Z", direction="1")),
        "s2": siri(visit("C", "2025-02-20T14:01:00Z"), visit("D")),
        "s3": siri(),
    }
    service = _service(_monitoring_handler(by_stop))
    merged = await service.get_arrivals(["s1", "s2", "s3"])
    sequential = []
    for stop_id in ["s1", "s2", "s3"]:
        sequential.extend(await service.get_stop_arrivals(stop_id))
    key = lambda a: (a.stop_id, a.route_label, a.direction_ref)  # noqa: E731
    assert sorted(merged, key=key) == sorted(sequential, key=key)


@pytest.mark.asyncio
async def test_get_arrivals_duplicate_and_empty_stop_ids_fetched_once():
    calls: list[str] = []
    base = _monitoring_handler({"s1": siri(visit("A", "2025-02-20T14:03:00Z"))})

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.params["MonitoringRef"])
        return base(request)

    arrivals = await _service(handler).get_arrivals(["s1", "", "s1"])
    assert calls == ["s1"]
    assert len(arrivals) == 1


@pytest.mark.asyncio
async def test_get_arrivals_one_failure_fails_all():
    service = _service(_monitoring_handler({"good": siri(visit("A", "2025-02-20T14:03:00Z"))}))
    with pytest.raises(InternalError):
        await service.get_arrivals(["good", "bad"])


@pytest.mark.asyncio
async def test_get_stop_arrivals_unknown_stop_is_not_found():
    service = _service(_monitoring_handler({"999999": siri_error("No such stop: MTA_999999.")}))
    with pytest.raises(ResourceNotFoundError):
        await service.get_stop_arrivals("999999")


@pytest.mark.asyncio
async def test_get_arrivals_error_condition_is_internal():
    service = _service(
        _monitoring_handler(
            {
                "good": siri(visit("A", "2025-02-20T14:03:00Z")),
                "down": siri_error("Service temporarily unavailable"),
            }
        )
    )
    with pytest.raises(InternalError) as exc_info:
        await service.get_arrivals(["good", "down"])
    assert not isinstance(exc_info.value, ResourceNotFoundError)


@pytest.mark.asyncio
async def test_gather_all_cancels_siblings_on_failure():
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def slow():
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    async def fail():
        await started.wait()
        raise InternalError("stop failed")

    with pytest.raises(InternalError):
        await gather_all([slow(), fail()])
    assert cancelled.is_set()


# --- Routes ---


@pytest.mark.asyncio
async def test_search_routes_case_insensitive_substring():
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.raw_path.decode())
        return httpx.Response(200, json=routes_for_agency({"MTA NYCT_A": "A", "MTA NYCT_B1": "B1"}))

    routes = await _service(handler).search_routes("a")
    assert [(r.id, r.name) for r in routes] == [("MTA NYCT_A", "A")]
    assert seen[0].startswith("/api/where/routes-for-agency/MTA%20NYCT.json")


@pytest.mark.asyncio
async def test_get_stops_for_route_not_found():
    service = _service(lambda r: httpx.Response(404, json={"code": 404, "text": "resource not found"}))
    with pytest.raises(ResourceNotFoundError):
        await service.get_stops_for_route("MTA NYCT_NOPE")


@pytest.mark.asyncio
async def test_get_stops_for_route_other_failure_is_internal():
    service = _service(lambda r: httpx.Response(500, text="oops"))
    with pytest.raises(InternalError) as exc_info:
        await service.get_stops_for_route("MTA NYCT_B63")
    assert not isinstance(exc_info.value, ResourceNotFoundError)


@pytest.mark.asyncio
async def test_get_stops_for_route_skips_unreferenced_stop():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["version"] == "2"
        assert request.url.params["includePolylines"] == "false"
        return httpx.Response(
            200, json=stops_for_route("r1", "1", [("0", "NORTH", ["s1", "s3", "s2"])], {"s1": "One", "s2": "Two"})
        )

    groups = await _service(handler).get_stops_for_route("r1")
    assert len(groups) == 1
    assert [s.id for s in groups[0].stops] == ["s1", "s2"]


# --- Location ---


def _location_handler(nearby: dict[str, list[str]], route_payloads: dict[str, dict], seen: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        path = request.url.path
        if path == "/api/where/stops-for-location.json":
            return httpx.Response(200, json=stops_for_location(nearby))
        for route_id, payload in route_payloads.items():
            if path == f"/api/where/stops-for-route/{route_id}.json":
                return httpx.Response(200, json=payload)
        return httpx.Response(404, json={"code": 404})

    return handler


@pytest.mark.asyncio
async def test_get_stops_at_location_filters_to_nearby_stops():
    seen: list[httpx.Request] = []
    handler = _location_handler(
        {"s1": ["1"], "s2": ["1"]},
        {"1": stops_for_route("1", "M1", [("0", "NORTH", ["s1", "s2", "s9"])], {"s1": "A", "s2": "B", "s9": "Z"})},
        seen,
    )
    routes = await _service(handler).get_stops_at_location(Coordinates(lat=40.75, lon=-73.99))
    assert len(routes) == 1
    assert routes[0].id == "1"
    assert routes[0].name == "M1"
    assert [s.id for s in routes[0].groups[0].stops] == ["s1", "s2"]
    location_call = seen[0]
    assert location_call.url.params["lat"] == "40.75"
    assert location_call.url.params["latSpan"] == "0.005"
    # Route "1" served both nearby stops but is fetched once
    assert sum(1 for r in seen if r.url.path.startswith("/api/where/stops-for-route/")) == 1


@pytest.mark.asyncio
async def test_get_stops_at_location_routes_ordered_by_name():
    handler = _location_handler(
        {"s1": ["r2", "r1"]},
        {
            "r1": stops_for_route("r1", "B9", [("0", "E", ["s1"])], {"s1": "One"}),
            "r2": stops_for_route("r2", "B1", [("0", "W", ["s1"])], {"s1": "One"}),
        },
    )
    routes = await _service(handler).get_stops_at_location(Coordinates(lat=1.0, lon=2.0))
    assert [r.name for r in routes] == ["B1", "B9"]


@pytest.mark.asyncio
async def test_get_stops_at_location_route_without_groupings_keeps_name():
    empty = stops_for_route("r2", "X27", [], {})
    handler = _location_handler(
        {"s1": ["r1", "r2"]},
        {"r1": stops_for_route("r1", "B1", [("0", "W", ["s1"])], {"s1": "One"}), "r2": empty},
    )
    routes = await _service(handler).get_stops_at_location(Coordinates(lat=1.0, lon=2.0))
    assert [(r.id, r.name) for r in routes] == [("r1", "B1"), ("r2", "X27")]
    assert routes[1].groups == ()


@pytest.mark.asyncio
async def test_get_stops_at_location_no_stops():
    handler = _location_handler({}, {})
    assert await _service(handler).get_stops_at_location(Coordinates(lat=1.0, lon=2.0)) == []


@pytest.mark.asyncio
async def test_get_stops_at_location_route_failure_fails_all():
    handler = _location_handler(
        {"s1": ["1", "missing"]},
        {"1": stops_for_route("1", "M1", [("0", "NORTH", ["s1"])], {"s1": "A"})},
    )
    with pytest.raises(InternalError):
        await _service(handler).get_stops_at_location(Coordinates(lat=1.0, lon=2.0))


@pytest.mark.asyncio
async def test_get_stops_at_location_resolves_place_id_first():
    place_requests: list[httpx.Request] = []

    def places_handler(request: httpx.Request) -> httpx.Response:
        place_requests.append(request)
        return httpx.Response(
            200, json={"status": "OK", "result": {"geometry": {"location": {"lat": 40.7, "lng": -74.0}}}}
        )

    transit_requests: list[httpx.Request] = []
    places = PlacesService(make_client(places_handler, base_url=PLACES_BASE, name="places"))
    handler = _location_handler({}, {}, transit_requests)
    await _service(handler, places).get_stops_at_location(PlaceId(place_id="ChIJ123"))

    assert len(place_requests) == 1
    assert place_requests[0].url.params["place_id"] == "ChIJ123"
    assert transit_requests[0].url.params["lat"] == "40.7"
    assert transit_requests[0].url.params["lon"] == "-74.0"


@pytest.mark.asyncio
async def test_get_stops_at_location_place_id_without_places_service():
    with pytest.raises(InternalError):
        await _service(_location_handler({}, {})).get_stops_at_location(PlaceId(place_id="ChIJ123"))


@pytest.mark.asyncio
async def test_concurrency_cap_still_completes_fan_out():
    by_stop = {f"s{i}": siri(visit(f"L{i}", f"2025-02-20T14:{i:02d}:00Z")) for i in range(1, 6)}
    service = _service(_monitoring_handler(by_stop), max_concurrent_calls=2)
    arrivals = await service.get_arrivals(list(by_stop))
    assert [a.minutes_until_arrival for a in arrivals] == [1, 2, 3, 4, 5]
