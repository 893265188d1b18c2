from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_OBSTACLE_COUNTRIES = (
    "at,be,bg,ch,cy,cz,de,dk,ee,es,"
    "fi,fr,gb,gr,hr,hu,ie,is,it,lt,"
    "lu,lv,me,mk,mt,nl,no,pl,pt,ro,"
    "rs,se,si,sk,tr,ua,ba,al"
)


def _default_cache_dir() -> str:
    # Relative to the working directory, like data/ and out/.
    return str(Path.cwd() / ".ama-cache")


class Settings(BaseSettings):
    """Build configuration, read from the environment and `.env`."""

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    cache_dir: str = Field(default_factory=_default_cache_dir, alias="AMA_CACHE_DIR")
    data_dir: str = Field(default="data", alias="AMA_DATA_DIR")
    out_dir: str = Field(default="out", alias="AMA_OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    terrain_tile_url: str = Field(
        default="https://elevation-tiles-prod.s3.amazonaws.com/terrarium",
        alias="AMA_TERRAIN_TILE_URL",
    )
    obstacle_base_url: str = Field(
        default="https://storage.googleapis.com/29f98e10-a489-4c82-ae5e-489dbcd4912f",
        alias="AMA_OBSTACLE_BASE_URL",
    )
    obstacle_countries: str = Field(default=DEFAULT_OBSTACLE_COUNTRIES, alias="AMA_OBSTACLE_COUNTRIES")
    user_agent: str = Field(default="airports-ama-build/1.0", alias="AMA_USER_AGENT")

    # European box: Crete (~35N) to northern Norway (~71N), Azores/Iceland to Turkey.
    lat_min: int = Field(default=35, ge=-85, le=85, alias="AMA_LAT_MIN")
    lat_max: int = Field(default=71, ge=-85, le=85, alias="AMA_LAT_MAX")
    lon_min: int = Field(default=-25, ge=-180, le=180, alias="AMA_LON_MIN")
    lon_max: int = Field(default=45, ge=-180, le=180, alias="AMA_LON_MAX")
    zoom: int = Field(default=7, ge=0, le=14, alias="AMA_ZOOM")

    # Fetch control
    fetch_concurrency: int = Field(default=15, ge=1, le=64, alias="AMA_FETCH_CONCURRENCY")
    fetch_timeout_s: float = Field(default=30.0, ge=1.0, le=300.0, alias="AMA_FETCH_TIMEOUT_S")
    aggregation_workers: int = Field(default=1, ge=1, le=64, alias="AMA_AGGREGATION_WORKERS")

    top_obstacles_per_cell: int = Field(default=5, ge=1, le=50, alias="AMA_TOP_OBSTACLES_PER_CELL")
    min_display_height_m: float = Field(default=50.0, ge=0.0, alias="AMA_MIN_DISPLAY_HEIGHT_M")

    # Fallback heights when an obstacle reports none. Modern turbines run
    # 150-230 m; published medians are ~117 m (comms), 90 m (mast), 112 m (chimney).
    default_height_wind_turbine_m: float = Field(default=200.0, ge=0.0, alias="AMA_DEFAULT_HEIGHT_WIND_TURBINE_M")
    default_height_communications_tower_m: float = Field(
        default=100.0,
        ge=0.0,
        alias="AMA_DEFAULT_HEIGHT_COMMUNICATIONS_TOWER_M",
    )
    default_height_mast_m: float = Field(default=90.0, ge=0.0, alias="AMA_DEFAULT_HEIGHT_MAST_M")
    default_height_chimney_m: float = Field(default=100.0, ge=0.0, alias="AMA_DEFAULT_HEIGHT_CHIMNEY_M")

    @property
    def country_codes(self) -> list[str]:
        codes: list[str] = []
        for token in self.obstacle_countries.split(","):
            code = token.strip().lower()
            if code and code not in codes:
                codes.append(code)
        return codes

    @property
    def default_heights_m(self) -> dict[str, float]:
        return {
            "wind_turbine": self.default_height_wind_turbine_m,
            "communications_tower": self.default_height_communications_tower_m,
            "mast": self.default_height_mast_m,
            "chimney": self.default_height_chimney_m,
        }

    @model_validator(mode="after")
    def _normalise_bbox(self) -> "Settings":
        if self.lat_max < self.lat_min:
            self.lat_min, self.lat_max = self.lat_max, self.lat_min
        if self.lon_max < self.lon_min:
            self.lon_min, self.lon_max = self.lon_max, self.lon_min
        self.terrain_tile_url = self.terrain_tile_url.rstrip("/")
        self.obstacle_base_url = self.obstacle_base_url.rstrip("/")
        return self


settings = Settings()
