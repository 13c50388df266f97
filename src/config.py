from pathlib import Path
from typing import List, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StationConfig(BaseModel):
    id: str
    name: str
    kind: Literal["ambient", "weathercloud"] = "ambient"
    url: str
    lat: float | None = None
    lon: float | None = None
    elevation: float | None = None
    primary: bool = False


def _default_stations() -> List[StationConfig]:
    return [
        StationConfig(
            id="pak_nam_pran",
            name="Pak Nam Pran Beach",
            kind="ambient",
            url="https://lightning.ambientweather.net/devices?public.slug=e63ff0d2119b8c024b5aad24cc59a504",
            lat=12.3466,
            lon=99.9982,
            elevation=5,
            primary=True,
        ),
        StationConfig(
            id="pvf2_thap_tai",
            name="PVF2 Thap Tai",
            kind="ambient",
            url="https://lightning.ambientweather.net/devices?public.slug=b3b6f7cf28a0062332615508b42e3b1f",
            lat=12.4698,
            lon=99.944,
            elevation=63,
        ),
        StationConfig(
            id="hua_hin",
            name="WS-2902D Hua Hin",
            kind="ambient",
            url="https://lightning.ambientweather.net/devices?public.slug=4ee225c9a4702440b0f1066444b72b09",
            lat=12.556,
            lon=99.948,
            elevation=18,
        ),
        StationConfig(
            id="surfspot_wc",
            name="Surfspot (Weathercloud)",
            kind="weathercloud",
            url="https://app.weathercloud.net/device/values/9393576058",
            lat=12.5536,
            lon=99.9639,
            elevation=0,
        ),
    ]


class Settings(BaseSettings):
    # Load .env from the repository root and accept env keys in any case
    _env_file = Path(__file__).resolve().parent.parent / ".env"
    model_config = SettingsConfigDict(env_file=str(_env_file), extra="ignore", case_sensitive=False)

    app_name: str = "JollyKite Hub"
    app_version: str = "0.1.0"
    debug: bool = False
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    port: int = 8000

    # Persistence
    database_path: str = Field(
        default="data/jollykite.sqlite",
        description="SQLite database holding measurements, archive, snapshots, subscriptions and calibration.",
    )

    # Spot and operating window
    timezone: str = Field(default="Asia/Bangkok", description="IANA timezone of the spot.")
    spot_latitude: float = 12.346596280786017
    spot_longitude: float = 99.99817902532192
    operating_start_hour: int = Field(default=6, ge=0, le=23, description="First local hour of the daily window.")
    operating_end_hour: int = Field(default=19, ge=1, le=24, description="Local hour at which the window closes.")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, description="Start the background job loop on startup.")
    scheduler_tick_seconds: float = Field(default=15.0, gt=0.0, description="How often the job loop checks for due jobs.")
    collection_interval_seconds: int = Field(default=300, ge=10, description="Spacing between collection cycles.")
    archive_interval_seconds: int = Field(default=3600, ge=60, description="Spacing between hourly rollups.")
    raw_retention_days: int = Field(default=7, ge=1, description="Age after which raw measurements are deleted.")
    archive_retention_days: int | None = Field(
        default=None,
        ge=1,
        description="Optional age after which hourly aggregates are deleted. Unset keeps them forever.",
    )

    # Stations
    stations: List[StationConfig] = Field(default_factory=_default_stations)
    station_request_timeout: float = Field(default=10.0, ge=1.0, description="Timeout in seconds for station HTTP calls")
    station_user_agent: str = Field(
        default="JollyKiteHub/0.1.0 (+https://jollykite.com)",
        description="User-Agent sent to station providers.",
    )

    # Forecast
    forecast_base_url: str = Field(default="https://api.open-meteo.com/v1/forecast")
    marine_base_url: str = Field(default="https://marine-api.open-meteo.com/v1/marine")
    forecast_days: int = Field(default=3, ge=1, le=16)
    forecast_hour_step: int = Field(default=2, ge=1, le=6, description="Keep every Nth local hour of the window.")
    forecast_request_timeout: float = Field(default=30.0, ge=1.0, description="Timeout in seconds for forecast calls")
    forecast_cache_ttl: int = Field(default=600, ge=0, description="Cache duration (seconds) for forecast responses")

    # Forecast accuracy / correction
    snapshot_interval_hours: int = Field(default=3, ge=1)
    snapshot_window_start_hour: int = Field(default=5, ge=0, le=23)
    snapshot_window_end_hour: int = Field(
        default=20, ge=0, le=23, description="Last local hour (inclusive) in which snapshots are captured."
    )
    snapshot_retention_days: int = Field(default=14, ge=1)
    accuracy_eval_hour: int = Field(default=20, ge=0, le=23, description="Local hour of the daily accuracy evaluation.")
    accuracy_match_minutes: float = Field(
        default=15.0,
        gt=0.0,
        description="Measurements within this many minutes of a snapshot target are compared against it.",
    )
    accuracy_ratio_min: float = Field(default=0.5, gt=0.0)
    accuracy_ratio_max: float = Field(default=2.0, gt=0.0)
    accuracy_min_samples: int = Field(
        default=3,
        ge=1,
        description="Usable comparisons required before the correction factor is replaced.",
    )

    # Trend classification
    trend_stable_pct: float = Field(default=10.0, ge=0.0, description="Changes below this percentage are stable.")
    trend_strong_pct: float = Field(default=25.0, ge=0.0, description="Changes at or above this are strong.")
    trend_long_window_minutes: int = Field(default=30, ge=1)
    trend_short_window_minutes: int = Field(default=15, ge=1)
    trend_max_gap_minutes: int = Field(
        default=20,
        ge=1,
        description="A pause longer than this between readings starts a new series for the trend.",
    )
    trend_min_window_samples: int = Field(default=3, ge=1, description="Readings each trend window must hold.")

    # Push notifications
    notify_min_speed: float = Field(default=10.0, ge=0.0, description="Minimum rideable wind speed in knots.")
    notify_sample_count: int = Field(default=3, ge=1, description="Consecutive readings that must be rideable.")
    notify_window_minutes: float = Field(
        default=20.0,
        gt=0.0,
        description="Maximum time span covered by the readings used for the stability check.",
    )
    push_request_timeout: float = Field(default=10.0, ge=1.0)
    push_ttl_seconds: int = Field(default=3600, ge=0)

    # Live stream
    stream_queue_size: int = Field(default=64, ge=1, description="Per-subscriber outbound queue size.")
    stream_keepalive_seconds: float = Field(default=20.0, gt=0.0)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def normalize_cors(cls, v):
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                import json
                return json.loads(s)
            if s in ("", "*"):
                return ["*"]
            return [p.strip() for p in s.split(",")]
        return v

    @property
    def primary_station_id(self) -> str:
        for station in self.stations:
            if station.primary:
                return station.id
        return self.stations[0].id if self.stations else "spot"

settings = Settings()
