"""Normalize Google Places autocomplete and place-details responses."""
from typing import Any

from src.places.models import PlacePrediction
from src.upstream.errors import InternalError

# Any other status (REQUEST_DENIED, INVALID_REQUEST, OVER_QUERY_LIMIT, ...) is a failure
PLACES_OK_STATUSES = frozenset(["OK", "ZERO_RESULTS"])


def check_status(raw: dict[str, Any], where: str) -> None:
    status = raw.get("status")
    if status is not None and status not in PLACES_OK_STATUSES:
        raise InternalError(f"Places {where} returned status {status}")


def normalize_prediction(raw: dict[str, Any]) -> PlacePrediction:
    fmt = raw.get("structured_formatting") or {}
    return PlacePrediction(
        main_text=str(fmt.get("main_text") or ""),
        secondary_text=str(fmt.get("secondary_text") or ""),
        place_id=str(raw.get("place_id") or ""),
    )


def normalize_autocomplete(raw: dict[str, Any]) -> list[PlacePrediction]:
    """Predictions in upstream order, untouched."""
    check_status(raw, "autocomplete")
    predictions = raw.get("predictions") or []
    if not isinstance(predictions, list):
        raise InternalError("Malformed autocomplete response: predictions is not a list")
    return [normalize_prediction(p) for p in predictions if isinstance(p, dict)]


def _coordinate(location: dict[str, Any], key: str) -> float:
    value = location.get(key)
    # bool is an int subclass; not a coordinate
    if isinstance(value, bool):
        raise InternalError(f"Failed to extract {key} from place details")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as e:
            raise InternalError(f"Failed to extract {key} from place details") from e
    raise InternalError(f"Failed to extract {key} from place details")


def normalize_place_coordinates(raw: dict[str, Any]) -> tuple[float, float]:
    """result.geometry.location.{lat,lng} -> (lat, lon)."""
    check_status(raw, "details")
    result = raw.get("result") or {}
    geometry = result.get("geometry") if isinstance(result, dict) else None
    location = geometry.get("location") if isinstance(geometry, dict) else None
    if not isinstance(location, dict):
        raise InternalError("Failed to extract location from place details")
    return _coordinate(location, "lat"), _coordinate(location, "lng")
