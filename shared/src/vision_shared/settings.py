from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Model contract
    max_raw_detections: int = Field(
        default=10,
        ge=1,
        description="Maximum number of detections the model emits per frame",
    )

    # Confidence filter
    confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    large_box_ratio: float = Field(default=0.5, gt=0.0, le=1.0)
    large_box_min_confidence: float = Field(default=0.8, ge=0.0, le=1.0)

    # Non-maximum suppression
    nms_iou_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    max_per_label: int = Field(default=5, ge=1)
    max_detections: int = Field(default=5, ge=1)

    # Tracking
    match_iou: float = Field(default=0.4, ge=0.0, le=1.0)
    add_threshold: float = Field(default=0.55, ge=0.0, le=1.0)
    keep_threshold: float = Field(default=0.45, ge=0.0, le=1.0)
    max_misses: int = Field(default=8, ge=0)
    empty_streak_limit: int = Field(default=5, ge=0)
    geometry_alpha: float = Field(default=0.6, ge=0.0, le=1.0)
    confidence_alpha: float = Field(default=0.7, ge=0.0, le=1.0)
    confidence_decay: float = Field(default=0.9, ge=0.0, le=1.0)

    # Frame admission
    target_fps: float = Field(default=10.0, gt=0.0)

    # Label table (empty → packaged COCO table)
    labels_yaml: str = Field(default="")

    # Logging
    log_format: str = Field(default="console")
    log_level: str = Field(default="INFO")
    log_interval: int = Field(default=100, ge=1, description="Throughput log interval (frames)")

    # Environment
    environment: str = Field(default="development")


# Module-level singleton — import and use directly
settings = Settings()
