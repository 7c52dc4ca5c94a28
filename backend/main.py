import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

from settings import get_settings
from src.middleware import OptionalAPIKeyMiddleware, RequestLoggingMiddleware, get_valid_api_keys
from src.monitoring import get_metrics
from src.places.models import PredictionsData, PredictionsResponse
from src.places.service import PlacesService
from src.transit.models import (
    ArrivalsData,
    ArrivalsResponse,
    Coordinates,
    GroupsData,
    GroupsResponse,
    LocationQuery,
    LocationRoutesData,
    LocationRoutesResponse,
    PlaceId,
    RoutesData,
    RoutesResponse,
)
from src.transit.service import TransitService
from src.upstream import ResourceNotFoundError, UpstreamClient, UpstreamConfig, UpstreamError, create_http_client

settings = get_settings()

# Structured logging: include module and level; handlers can add JSON later
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)

INTERNAL_ERROR_MESSAGE = "Internal Server Error"


def build_places_service(http) -> PlacesService | None:
    if not settings.places_api_key:
        return None
    client = UpstreamClient(
        UpstreamConfig(
            base_url=settings.places_host,
            api_key=settings.places_api_key,
            name="places",
            timeout_seconds=settings.upstream_timeout_seconds,
        ),
        http,
    )
    return PlacesService(client, autocomplete_radius_m=settings.autocomplete_radius_m)


def build_transit_service(http, places: PlacesService | None) -> TransitService | None:
    if not settings.transit_api_key:
        return None
    client = UpstreamClient(
        UpstreamConfig(
            base_url=settings.transit_host,
            api_key=settings.transit_api_key,
            name="transit",
            timeout_seconds=settings.upstream_timeout_seconds,
        ),
        http,
    )
    return TransitService(
        client,
        places,
        agency=settings.transit_agency,
        location_span_deg=settings.location_span_deg,
        max_concurrent_calls=settings.max_concurrent_upstream_calls,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    http = create_http_client()
    app.state.places_service = build_places_service(http)
    app.state.transit_service = build_transit_service(http, app.state.places_service)
    yield
    app.state.transit_service = None
    app.state.places_service = None
    await http.aclose()


app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    logger.warning("telemetry rate_limited path=%s", request.url.path)
    return JSONResponse(status_code=429, content={"message": f"Rate limit exceeded: {exc.detail}"})


@app.exception_handler(StarletteHTTPException)
def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ())[1:])}: {err.get('msg', '')}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"message": f"Invalid query: {problems}"})


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception):
    """Return consistent JSON error for unhandled exceptions (500)."""
    logger.exception("telemetry unhandled_exception path=%s", request.url.path)
    return JSONResponse(status_code=500, content={"message": INTERNAL_ERROR_MESSAGE})


# Order: last added = innermost. So RequestLogging runs first (outermost), then Auth, then CORS.
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    OptionalAPIKeyMiddleware,
    api_key_required=settings.api_key_required,
    api_keys=get_valid_api_keys(settings.api_keys),
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _transit(request: Request) -> TransitService:
    service: TransitService | None = getattr(request.app.state, "transit_service", None)
    if not service:
        raise HTTPException(
            status_code=503,
            detail="Transit API key not configured. Set TRANSIT_API_KEY in the environment.",
        )
    return service


def _places(request: Request) -> PlacesService:
    service: PlacesService | None = getattr(request.app.state, "places_service", None)
    if not service:
        raise HTTPException(
            status_code=503,
            detail="Places API key not configured. Set PLACES_API_KEY in the environment.",
        )
    return service


def _upstream_failure(e: UpstreamError, event: str, not_found_message: str | None = None) -> HTTPException:
    """Map a service error to an HTTP error; upstream detail is logged, never returned."""
    if isinstance(e, ResourceNotFoundError) and not_found_message:
        logger.info("telemetry %s not_found error=%s", event, str(e))
        return HTTPException(status_code=404, detail=not_found_message)
    logger.warning("telemetry %s error=%s", event, str(e))
    return HTTPException(status_code=500, detail=INTERNAL_ERROR_MESSAGE)


def _split_csv(value: str | None) -> list[str]:
    return [p.strip() for p in (value or "").split(",") if p.strip()]


@app.get("/favicon.ico", include_in_schema=False)
@limiter.exempt
def favicon(request: Request):
    """Return 204 so browser favicon requests don't log 404."""
    return Response(status_code=204)


@app.get("/health")
@limiter.exempt
def health(request: Request):
    return {"status": "ok"}


@app.get("/metrics")
@limiter.exempt
def metrics(request: Request):
    """Request counts, upstream call outcomes, uptime."""
    return get_metrics()


# --- Arrivals ---


@app.get("/transit-arrival-times", response_model=ArrivalsResponse)
@limiter.limit(settings.rate_limit)
async def transit_arrival_times(
    request: Request,
    stop_ids: str = Query(..., min_length=1),
    routes: str | None = None,
):
    """Arrivals for comma-separated stop_ids, soonest first. Optional routes= keeps only those route labels."""
    ids = _split_csv(stop_ids)
    if not ids:
        raise HTTPException(status_code=400, detail="Invalid query: stop_ids must list at least one stop id")
    service = _transit(request)
    logger.info("telemetry route=transit_arrival_times stops=%s", len(ids))
    try:
        arrivals = await service.get_arrivals(ids, routes=_split_csv(routes))
    except UpstreamError as e:
        raise _upstream_failure(e, "arrival_times_error", not_found_message="Stop does not exist") from e
    return ArrivalsResponse(data=ArrivalsData(arrivals=arrivals))


@app.get("/transit-stops/{stop_id}/arrivals", response_model=ArrivalsResponse)
@limiter.limit(settings.rate_limit)
async def transit_stop_arrivals(request: Request, stop_id: str):
    service = _transit(request)
    try:
        arrivals = await service.get_arrivals([stop_id])
    except UpstreamError as e:
        raise _upstream_failure(e, "stop_arrivals_error", not_found_message="Stop does not exist") from e
    return ArrivalsResponse(data=ArrivalsData(arrivals=arrivals))


# --- Routes & stops ---


@app.get("/transit-routes", response_model=RoutesResponse)
@limiter.limit(settings.rate_limit)
async def transit_routes(request: Request, search: str = Query(..., min_length=1)):
    service = _transit(request)
    try:
        routes = await service.search_routes(search)
    except UpstreamError as e:
        raise _upstream_failure(e, "routes_error") from e
    return RoutesResponse(data=RoutesData(routes=routes))


@app.get("/transit-stops-for-route", response_model=GroupsResponse)
@limiter.limit(settings.rate_limit)
async def transit_stops_for_route(request: Request, route_id: str = Query(..., min_length=1)):
    service = _transit(request)
    try:
        groups = await service.get_stops_for_route(route_id)
    except UpstreamError as e:
        raise _upstream_failure(e, "stops_for_route_error", not_found_message="Route does not exist") from e
    return GroupsResponse(data=GroupsData(groups=groups))


@app.get("/transit-stops-at-location", response_model=LocationRoutesResponse)
@limiter.limit(settings.rate_limit)
async def transit_stops_at_location(
    request: Request,
    lat: float | None = Query(None, ge=-90, le=90),
    lon: float | None = Query(None, ge=-180, le=180),
    place_id: str | None = None,
):
    """Routes near lat/lon (or a place_id resolved through Places), groups trimmed to nearby stops."""
    query: LocationQuery
    if place_id:
        query = PlaceId(place_id=place_id)
    elif lat is not None and lon is not None:
        query = Coordinates(lat=lat, lon=lon)
    else:
        raise HTTPException(status_code=400, detail="Invalid query: provide lat and lon, or place_id")
    service = _transit(request)
    try:
        routes = await service.get_stops_at_location(query)
    except UpstreamError as e:
        raise _upstream_failure(e, "stops_at_location_error") from e
    return LocationRoutesResponse(data=LocationRoutesData(routes=routes))


# --- Places ---


@app.get("/location-search-autocomplete", response_model=PredictionsResponse)
@limiter.limit(settings.rate_limit)
async def location_search_autocomplete(
    request: Request,
    search: str = Query(..., min_length=1),
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
):
    service = _places(request)
    try:
        predictions = await service.autocomplete(search, lat, lon)
    except UpstreamError as e:
        raise _upstream_failure(e, "autocomplete_error") from e
    return PredictionsResponse(data=PredictionsData(predictions=predictions))
