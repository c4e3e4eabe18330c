from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # "firestore" in production, "memory" for local play and tests
    channel_backend: str = "firestore"
    google_cloud_project: str = ""
    google_application_credentials: str = ""
    firestore_emulator_host: Optional[str] = None

    # CORS origins: set ALLOWED_ORIGINS env var for production (comma-separated)
    allowed_origins: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "capacitor://localhost",
    ]
    # Extra production origin (e.g. Cloud Run URL); appended to allowed_origins
    extra_origin: str = ""
    debug: bool = False

    # ── Game defaults (used when the game document leaves a tunable unset) ──
    capture_radius_m: float = 50.0
    rescue_radius_m: float = 50.0
    runner_see_killer_radius_m: float = 500.0
    killer_detect_runner_radius_m: float = 500.0
    runner_see_generator_radius_m: float = 3000.0
    killer_see_generator_radius_m: float = 3000.0
    max_downs: int = 3
    reveal_duration_sec: int = 120   # mutual visibility after a capture
    rescue_cooldown_sec: int = 30    # capture protection after capture/rescue
    countdown_duration_sec: int = 20
    game_duration_sec: int = 1800
    pin_count: int = 5
    countdown_sync_tolerance_sec: float = 1.0

    # ── Location publishing throttle ──
    min_distance_m: float = 10.0
    min_interval_ms: int = 3000
    max_interval_ms: int = 15000

    # ── Server sessions ──
    session_retention_sec: int = 300  # ended or missing games keep their sessions this long

    # ── Play area (simplified rectangle around the Yamanote Line, north to Kawaguchi) ──
    bounds_min_lat: float = 35.65
    bounds_max_lat: float = 35.85
    bounds_min_lng: float = 139.65
    bounds_max_lng: float = 139.8

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
