"""Detection engine entry point for a camera preview session."""
from __future__ import annotations

from vision_shared.logging import bind_session, configure_logging, get_logger
from vision_shared.settings import Settings, settings as default_settings

from detection.config import build_config
from detection.engine import DetectionEngine, InferenceModel
from detection.labels import LabelTable
from detection.overlay import OverlayChannel

log = get_logger(__name__)


def build_engine(
    model: InferenceModel | None = None,
    settings: Settings | None = None,
    channel: OverlayChannel | None = None,
) -> DetectionEngine:
    """Wire logging, configuration, label table and overlay channel into an engine.

    The model may be None while it is still loading; attach it later with
    ``DetectionEngine.attach_model``.
    """
    settings = settings or default_settings
    configure_logging(settings.log_format, settings.log_level)
    config = build_config(settings)
    bind_session(environment=settings.environment, target_fps=config.target_fps)

    log.info("detection_session_starting")

    labels = LabelTable.from_yaml(config.labels_yaml or None)
    return DetectionEngine(
        config=config,
        labels=labels,
        channel=channel or OverlayChannel(),
        model=model,
    )
