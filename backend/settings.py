from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Transit Arrivals API"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    # CORS: "*" for dev; in production set to comma-separated origins, e.g. "https://app.example.com,https://admin.example.com"
    cors_origins: str = "*"

    # Optional API key auth. When enabled, requests must include X-API-Key or Authorization: [Bearer ]<key>.
    api_key_required: bool = False
    api_keys: str = ""  # Comma-separated list of valid keys (no spaces). Example: API_KEYS=key1,key2

    # MTA Bus Time (SIRI + OneBusAway) - get a key at bustime.mta.info
    transit_host: str = "https://bustime.mta.info"
    transit_api_key: str = ""
    transit_agency: str = "MTA NYCT"
    location_span_deg: float = 0.005  # latSpan/lonSpan for stops-for-location

    # Google Places (autocomplete + place details)
    places_host: str = "https://maps.googleapis.com"
    places_api_key: str = ""
    autocomplete_radius_m: int = 500

    upstream_timeout_seconds: float = 10.0
    max_concurrent_upstream_calls: int = 0  # 0 = no cap on in-flight upstream calls per service
    rate_limit: str = "120/minute"  # Inbound requests per client IP


def get_settings() -> Settings:
    return Settings()
