"""Pydantic models for Google Places results."""
from pydantic import BaseModel, ConfigDict


class PlacePrediction(BaseModel):
    model_config = ConfigDict(frozen=True)

    main_text: str
    secondary_text: str
    place_id: str


class PredictionsData(BaseModel):
    predictions: list[PlacePrediction]


class PredictionsResponse(BaseModel):
    data: PredictionsData
