"""
Configuration management for the parking navigation core
Uses environment variables with sensible defaults
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional, Tuple
from functools import lru_cache


class NavigationConfig(BaseSettings):
    """Navigation settings with validation"""

    # Routing provider
    routing_base_url: Optional[str] = None
    routing_path: str = "/navigation/calculate-route"
    routing_status_path: str = "/navigation/status"
    routing_timeout: float = 10.0
    routing_retry_attempts: int = 3
    routing_retry_wait_min: float = 0.5
    routing_retry_wait_max: float = 4.0
    routing_circuit_failure_threshold: int = 5
    routing_circuit_recovery_timeout: int = 60

    # Fallback route generator
    fallback_speed_kmh: float = 30.0
    fallback_min_distance_m: float = 500.0
    fallback_max_distance_m: float = 10000.0
    fallback_min_duration_s: float = 60.0
    fallback_max_duration_s: float = 1800.0

    # Session policy
    off_route_threshold_m: float = 50.0
    off_route_strategy: Literal["vertex", "segment"] = "vertex"
    arrival_tolerance_m: float = 20.0
    arrival_confirm_distance_m: float = 50.0
    last_mile_walking_m: float = 100.0
    recalculation_timeout: float = 15.0

    # Location tracking
    location_timeout: float = 10.0
    location_maximum_age: float = 1.0
    signal_lost_timeout: float = 15.0
    weak_accuracy_threshold_m: float = 30.0
    startup_location: Tuple[float, float] = (37.7749, -122.4194)  # lat, lon

    # Settings persistence
    settings_path: str = "~/.parking_navigation/settings.json"
    settings_key: str = "navigation_settings"
    redis_url: Optional[str] = None

    # Voice guidance
    voice_cooldown: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    model_config = SettingsConfigDict(
        env_prefix="PARKING_NAV_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> NavigationConfig:
    """Get cached config instance"""
    return NavigationConfig()
