"""
Sightline Configuration
=======================

This module handles configuration loading for the perception core.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    SIGHTLINE_SHARPNESS_FLOOR      -> quality.sharpness_floor
    SIGHTLINE_BRIGHTNESS_FLOOR     -> quality.brightness_floor
    SIGHTLINE_BUFFER_CAPACITY      -> admission.buffer_capacity
    SIGHTLINE_TICK_INTERVAL        -> admission.tick_interval_seconds
    SIGHTLINE_SCENE_THRESHOLD      -> scene.change_threshold
    SIGHTLINE_RESET_THRESHOLD      -> session.reset_threshold
    SIGHTLINE_RESET_COOLDOWN       -> session.reset_cooldown_seconds
    SIGHTLINE_INFERENCE_TIMEOUT    -> watchdog.inference_timeout_seconds
    SIGHTLINE_STUCK_TIMEOUT        -> watchdog.stuck_timeout_seconds
    SIGHTLINE_RUNTIME_BACKEND      -> runtime.backend
    SIGHTLINE_LOG_LEVEL            -> logging.level

Example:
    from sightline.config import load_config, setup_logging

    settings = load_config()
    setup_logging(settings)
    print(settings.session.reset_threshold)
"""

import os
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class QualityConfig(BaseModel):
    """Frame quality floors."""

    sharpness_floor: float = Field(
        default=15.0,
        ge=0,
        description="Frames at or below this Laplacian variance are unusable",
    )
    brightness_floor: float = Field(
        default=0.15,
        ge=0,
        le=1.0,
        description="Frames at or below this mean brightness are underexposed",
    )
    motion_blur_threshold: float = Field(
        default=25.0,
        ge=0,
        description="Sharpness below this is reported as motion blur",
    )


class AdmissionConfig(BaseModel):
    """Frame admission buffer configuration."""

    buffer_capacity: int = Field(
        default=4,
        ge=1,
        description="Rolling window size (oldest evicted first)",
    )
    tick_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Selection / queue drain / watchdog tick period",
    )
    min_frame_interval_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Minimum spacing between accepted camera frames",
    )


class SceneConfig(BaseModel):
    """Scene-change detection configuration."""

    change_threshold: int = Field(
        default=10,
        ge=1,
        le=64,
        description="Hamming distance (of 64 bits) that counts as a new scene",
    )


class SessionConfig(BaseModel):
    """Inference session lifecycle and token budget."""

    reset_threshold: int = Field(
        default=4,
        ge=1,
        description="Completed inferences before a proactive reset",
    )
    reset_cooldown_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Minimum spacing between ordinary resets",
    )
    max_errors: int = Field(
        default=3,
        ge=1,
        description="Terminal errors tolerated before the session is rebuilt",
    )
    max_retries: int = Field(
        default=1,
        ge=0,
        description="Retries after a context-overflow failure",
    )
    max_tokens: int = Field(default=2048, gt=0, description="Context window size")
    image_tokens: int = Field(default=256, ge=0, description="Tokens reserved per image")
    text_tokens: int = Field(default=100, ge=0, description="Tokens reserved for text")
    tokens_per_inference: int = Field(
        default=400,
        gt=0,
        description="Total budget charged per inference call",
    )

    @model_validator(mode="after")
    def _check_budget(self) -> "SessionConfig":
        if self.image_tokens + self.text_tokens > self.tokens_per_inference:
            raise ValueError(
                "image_tokens + text_tokens must fit in tokens_per_inference"
            )
        # The call after the threshold still runs on the old context when a
        # reset is refused, so threshold + 1 calls must fit.
        if (self.reset_threshold + 1) * self.tokens_per_inference > self.max_tokens:
            raise ValueError(
                f"reset_threshold={self.reset_threshold} overflows max_tokens="
                f"{self.max_tokens} at {self.tokens_per_inference} tokens per call"
            )
        return self


class GenerationConfig(BaseModel):
    """Fixed sampling parameters applied on every session rebuild."""

    top_k: int = Field(default=30, ge=1)
    top_p: float = Field(default=0.8, gt=0, le=1.0)
    temperature: float = Field(default=0.6, ge=0)
    random_seed: int = Field(default=101)


class ControlConfig(BaseModel):
    """Request validation and queueing."""

    max_prompt_length: int = Field(default=512, ge=1)
    min_image_size: int = Field(
        default=100,
        ge=1,
        description="Minimum width and height in pixels",
    )
    passive_queue_size: int = Field(
        default=4,
        ge=1,
        description="Queued passive requests kept (oldest dropped)",
    )


class WatchdogConfig(BaseModel):
    """Stuck-state and per-inference timeouts."""

    stuck_timeout_seconds: float = Field(default=30.0, gt=0)
    inference_timeout_seconds: float = Field(default=15.0, gt=0)


class MockRuntimeConfig(BaseModel):
    """Mock model runtime configuration."""

    chunk_delay_seconds: float = Field(default=0.05, ge=0)


class RuntimeConfig(BaseModel):
    """Model runtime selection."""

    backend: str = Field(default="mock", description="Model runtime backend: 'mock'")
    mock: MockRuntimeConfig = Field(default_factory=MockRuntimeConfig)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for Sightline.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    quality: QualityConfig = Field(default_factory=QualityConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    scene: SceneConfig = Field(default_factory=SceneConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    control: ControlConfig = Field(default_factory=ControlConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to config.yaml. If None, searches common locations.

    Returns:
        Settings: Loaded configuration
    """
    if config_path is None:
        search_paths = [
            Path("config.yaml"),
            Path("config.yml"),
            Path(__file__).parent.parent.parent / "config.yaml",
        ]
        for path in search_paths:
            if path.exists():
                config_path = str(path)
                break

    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        logger.warning("No config file found, using defaults and environment variables")

    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    # Quality floors
    if env_sharp := os.environ.get("SIGHTLINE_SHARPNESS_FLOOR"):
        config_data.setdefault("quality", {})["sharpness_floor"] = float(env_sharp)
    if env_bright := os.environ.get("SIGHTLINE_BRIGHTNESS_FLOOR"):
        config_data.setdefault("quality", {})["brightness_floor"] = float(env_bright)

    # Admission
    if env_cap := os.environ.get("SIGHTLINE_BUFFER_CAPACITY"):
        config_data.setdefault("admission", {})["buffer_capacity"] = int(env_cap)
    if env_tick := os.environ.get("SIGHTLINE_TICK_INTERVAL"):
        config_data.setdefault("admission", {})["tick_interval_seconds"] = float(env_tick)
    if env_scene := os.environ.get("SIGHTLINE_SCENE_THRESHOLD"):
        config_data.setdefault("scene", {})["change_threshold"] = int(env_scene)

    # Session lifecycle
    if env_reset := os.environ.get("SIGHTLINE_RESET_THRESHOLD"):
        config_data.setdefault("session", {})["reset_threshold"] = int(env_reset)
    if env_cool := os.environ.get("SIGHTLINE_RESET_COOLDOWN"):
        config_data.setdefault("session", {})["reset_cooldown_seconds"] = float(env_cool)

    # Timeouts
    if env_inf := os.environ.get("SIGHTLINE_INFERENCE_TIMEOUT"):
        config_data.setdefault("watchdog", {})["inference_timeout_seconds"] = float(env_inf)
    if env_stuck := os.environ.get("SIGHTLINE_STUCK_TIMEOUT"):
        config_data.setdefault("watchdog", {})["stuck_timeout_seconds"] = float(env_stuck)

    if env_backend := os.environ.get("SIGHTLINE_RUNTIME_BACKEND"):
        config_data.setdefault("runtime", {})["backend"] = env_backend

    if env_log := os.environ.get("SIGHTLINE_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings."""
    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        log_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
