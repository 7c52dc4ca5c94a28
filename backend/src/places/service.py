"""Place resolution: free-text autocomplete and place id -> coordinates (Google Places)."""
import logging

from src.places.models import PlacePrediction
from src.places.normalize import normalize_autocomplete, normalize_place_coordinates
from src.upstream.client import UpstreamClient

logger = logging.getLogger(__name__)

AUTOCOMPLETE_PATH = "/maps/api/place/autocomplete/json"
DETAILS_PATH = "/maps/api/place/details/json"
AUTOCOMPLETE_RADIUS_M = 500


class PlacesService:
    def __init__(self, client: UpstreamClient, autocomplete_radius_m: int = AUTOCOMPLETE_RADIUS_M):
        self._client = client
        self._radius_m = autocomplete_radius_m

    async def autocomplete(self, text: str, lat: float, lon: float) -> list[PlacePrediction]:
        """Predictions for text biased toward (lat, lon), in upstream order."""
        raw = await self._client.get_json(
            AUTOCOMPLETE_PATH,
            {"input": text, "location": f"{lat},{lon}", "radius": self._radius_m},
        )
        predictions = normalize_autocomplete(raw)
        logger.info("telemetry places_autocomplete count=%s", len(predictions))
        return predictions

    async def resolve_coordinates(self, place_id: str) -> tuple[float, float]:
        raw = await self._client.get_json(DETAILS_PATH, {"place_id": place_id, "fields": "geometry"})
        lat, lon = normalize_place_coordinates(raw)
        logger.info(
            "telemetry place_resolved place_id=%s",
            place_id,
            extra={"place_id": place_id},
        )
        return lat, lon
