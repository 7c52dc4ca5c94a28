"""
Transit query service: fans out MTA Bus Time calls per request and merges the results.
Fan-outs are all-or-nothing: the first failing call cancels its siblings and the error propagates.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from typing import Any, TypeVar
from urllib.parse import quote

from src.places.service import PlacesService
from src.transit.models import (
    Coordinates,
    LocationQuery,
    LocationRoute,
    RouteStops,
    RouteSummary,
    StopArrival,
    StopGroup,
)
from src.transit.normalize import (
    normalize_routes_for_agency,
    normalize_stop_monitoring,
    normalize_stops_for_location,
    normalize_stops_for_route,
)
from src.upstream.client import UpstreamClient
from src.upstream.errors import InternalError, ResourceNotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_AGENCY = "MTA NYCT"
LOCATION_SPAN_DEG = 0.005


def dedupe_arrivals(arrivals: Iterable[StopArrival]) -> list[StopArrival]:
    """Keep the first arrival per (route label, direction ref), in upstream order."""
    seen: set[tuple[str, str]] = set()
    out: list[StopArrival] = []
    for a in arrivals:
        key = (a.route_label, a.direction_ref)
        if key in seen:
            continue
        seen.add(key)
        out.append(a)
    return out


def sort_arrivals(arrivals: Iterable[StopArrival]) -> list[StopArrival]:
    """Stable sort by minutes until arrival; unknown times go last."""
    return sorted(
        arrivals,
        key=lambda a: (a.minutes_until_arrival is None, a.minutes_until_arrival or 0),
    )


def filter_group_stops(group: StopGroup, stop_ids: set[str]) -> StopGroup:
    return group.model_copy(update={"stops": tuple(s for s in group.stops if s.id in stop_ids)})


async def gather_all(aws: Iterable[Awaitable[T]]) -> list[T]:
    """Run all awaitables concurrently; on the first failure cancel the rest and re-raise."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        return []
    try:
        return list(await asyncio.gather(*tasks))
    except Exception:
        for t in tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransitService:
    """Arrivals, route search, route stop groupings and nearby routes over MTA Bus Time."""

    def __init__(
        self,
        client: UpstreamClient,
        places: PlacesService | None = None,
        *,
        agency: str = DEFAULT_AGENCY,
        location_span_deg: float = LOCATION_SPAN_DEG,
        max_concurrent_calls: int = 0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._client = client
        self._places = places
        self._agency = agency
        self._span = location_span_deg
        # 0 = uncapped
        self._limit = asyncio.Semaphore(max_concurrent_calls) if max_concurrent_calls > 0 else None
        self._clock = clock

    async def _get(self, path: str, params: dict[str, Any] | None = None, **kwargs: Any) -> dict[str, Any]:
        if self._limit is None:
            return await self._client.get_json(path, params, **kwargs)
        async with self._limit:
            return await self._client.get_json(path, params, **kwargs)

    # --- Arrivals ---

    async def get_stop_arrivals(self, stop_id: str) -> list[StopArrival]:
        """Arrivals at one stop, deduplicated by (route label, direction), in upstream order."""
        raw = await self._get("/api/siri/stop-monitoring.json", {"MonitoringRef": stop_id})
        arrivals = dedupe_arrivals(normalize_stop_monitoring(stop_id, raw, self._clock()))
        logger.info(
            "telemetry stop_arrivals_fetched stop_id=%s count=%s",
            stop_id,
            len(arrivals),
            extra={"stop_id": stop_id, "count": len(arrivals)},
        )
        return arrivals

    async def get_arrivals(
        self,
        stop_ids: Iterable[str],
        routes: Iterable[str] | None = None,
    ) -> list[StopArrival]:
        """
        Arrivals for all stops, fetched concurrently and merged.
        When routes is non-empty only those route labels are kept. Sorted soonest first, unknown times last.
        """
        unique_ids = list(dict.fromkeys(s for s in stop_ids if s))
        per_stop = await gather_all(self.get_stop_arrivals(s) for s in unique_ids)
        merged = [a for arrivals in per_stop for a in arrivals]
        wanted = {r for r in (routes or ()) if r}
        if wanted:
            merged = [a for a in merged if a.route_label in wanted]
        return sort_arrivals(merged)

    # --- Routes ---

    async def search_routes(self, search: str) -> list[RouteSummary]:
        """Agency routes whose short name contains search (case-insensitive), in upstream order."""
        raw = await self._get(f"/api/where/routes-for-agency/{quote(self._agency, safe='')}.json")
        needle = search.lower()
        routes = [r for r in normalize_routes_for_agency(raw) if needle in r.name.lower()]
        logger.info("telemetry routes_searched count=%s", len(routes))
        return routes

    async def _get_route_stops(self, route_id: str) -> RouteStops:
        raw = await self._get(
            f"/api/where/stops-for-route/{quote(route_id, safe='')}.json",
            {"includePolylines": "false", "version": 2},
            distinguish_not_found=True,
        )
        return normalize_stops_for_route(route_id, raw)

    async def get_stops_for_route(self, route_id: str) -> list[StopGroup]:
        """Stop groups (one per direction) for a route. Unknown route -> ResourceNotFoundError."""
        return list((await self._get_route_stops(route_id)).groups)

    # --- Location ---

    async def resolve_location(self, query: LocationQuery) -> tuple[float, float]:
        if isinstance(query, Coordinates):
            return query.lat, query.lon
        if self._places is None:
            raise InternalError("Place lookup requested but places service is not configured")
        return await self._places.resolve_coordinates(query.place_id)

    async def get_stops_at_location(self, query: LocationQuery) -> list[LocationRoute]:
        """
        Routes serving stops near the location, one entry per route id, ordered by name.
        Each route's groups keep only the stops found near the location.
        """
        lat, lon = await self.resolve_location(query)
        raw = await self._get(
            "/api/where/stops-for-location.json",
            {"lat": lat, "lon": lon, "latSpan": self._span, "lonSpan": self._span},
        )
        nearby = normalize_stops_for_location(raw)
        try:
            per_route = await gather_all(self._get_route_stops(r) for r in nearby.route_ids)
        except ResourceNotFoundError as e:
            # Route ids come from upstream itself; a 404 here is an upstream inconsistency
            raise InternalError(f"Route listed near location could not be loaded: {e}") from e

        nearby_stop_ids = set(nearby.stop_ids)
        # route_ids is already deduplicated by the normalizer
        routes = [
            LocationRoute(
                id=rs.route_id,
                name=rs.route_name,
                groups=tuple(filter_group_stops(g, nearby_stop_ids) for g in rs.groups),
            )
            for rs in per_route
        ]
        logger.info(
            "telemetry stops_at_location stops=%s routes=%s",
            len(nearby_stop_ids),
            len(routes),
            extra={"stops": len(nearby_stop_ids), "routes": len(routes)},
        )
        return sorted(routes, key=lambda r: (r.name, r.id))
