"""Pydantic models for normalized transit records and API responses."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)


class StopArrival(_Record):
    stop_id: str
    route_id: str
    route_label: str
    direction_ref: str = ""
    expected_arrival_time: datetime | None = None
    minutes_until_arrival: int | None = None  # derived from expected_arrival_time, never upstream


class RouteSummary(_Record):
    id: str
    name: str


class GroupStop(_Record):
    id: str
    name: str


class StopGroup(_Record):
    id: str
    name: str
    route_id: str
    route_name: str
    stops: tuple[GroupStop, ...] = ()


class RouteStops(_Record):
    route_id: str
    route_name: str
    groups: tuple[StopGroup, ...] = ()


class LocationRoute(_Record):
    """One route near a location, with its groups filtered to the nearby stops."""

    id: str
    name: str
    groups: tuple[StopGroup, ...] = ()


class NearbyStops(_Record):
    stop_ids: tuple[str, ...] = ()
    route_ids: tuple[str, ...] = ()


# Location query: explicit coordinates or a place id resolved via the places service
class Coordinates(_Record):
    lat: float
    lon: float


class PlaceId(_Record):
    place_id: str


LocationQuery = Coordinates | PlaceId


# --- API envelopes: { "data": { ... } } ---


class ArrivalsData(BaseModel):
    arrivals: list[StopArrival]


class ArrivalsResponse(BaseModel):
    data: ArrivalsData


class RoutesData(BaseModel):
    routes: list[RouteSummary]


class RoutesResponse(BaseModel):
    data: RoutesData


class GroupsData(BaseModel):
    groups: list[StopGroup]


class GroupsResponse(BaseModel):
    data: GroupsData


class LocationRoutesData(BaseModel):
    routes: list[LocationRoute]


class LocationRoutesResponse(BaseModel):
    data: LocationRoutesData


class ErrorResponse(BaseModel):
    message: str
