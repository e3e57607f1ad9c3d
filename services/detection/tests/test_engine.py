"""Tests for frame admission, error isolation and the overlay handoff."""
from __future__ import annotations

import io
import json
import math
import threading
from unittest.mock import MagicMock

import pytest
import structlog

import detection.engine as engine_module
from vision_shared.events.schemas import FrameDimensions, OverlayUpdate
from vision_shared.logging import bind_session, configure_logging, get_logger
from vision_shared.settings import Settings

from detection.config import DetectionConfig
from detection.decoder import RawModelOutput
from detection.engine import CameraFrame, DetectionEngine
from detection.labels import LabelTable
from detection.main import build_engine
from detection.overlay import LatestValue, OverlayChannel
from detection.throttle import FrameThrottle


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _person_output(score: float = 0.9) -> RawModelOutput:
    return RawModelOutput(
        boxes=[[[0.1, 0.1, 0.3, 0.3]]],
        class_ids=[[1]],
        scores=[[score]],
        count=[1],
    )


class FakeModel:
    def __init__(self, output: RawModelOutput | None = None) -> None:
        self.output = output or _person_output()
        self.calls = 0
        self.error: Exception | None = None

    def run(self, frame: CameraFrame) -> RawModelOutput:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.output


_FRAME = CameraFrame(width=400, height=800)


@pytest.fixture(scope="module")
def labels() -> LabelTable:
    return LabelTable.from_yaml()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def channel() -> OverlayChannel:
    return OverlayChannel()


@pytest.fixture()
def model() -> FakeModel:
    return FakeModel()


@pytest.fixture()
def engine(labels, channel, model, clock) -> DetectionEngine:
    return DetectionEngine(DetectionConfig(), labels, channel, model=model, clock=clock)


# ── Throttle ──────────────────────────────────────────────────────────────────

def test_throttle_admits_at_target_rate(clock):
    throttle = FrameThrottle(10, clock=clock)
    assert throttle.admit()
    clock.advance(0.05)
    assert not throttle.admit()
    clock.advance(0.05)
    assert throttle.admit()


def test_throttle_does_not_burst_after_stall(clock):
    throttle = FrameThrottle(10, clock=clock)
    assert throttle.admit()
    clock.advance(5.0)
    assert throttle.admit()
    assert not throttle.admit()


# ── Engine ────────────────────────────────────────────────────────────────────

def test_engine_processes_frame_and_publishes(engine, channel):
    out = engine.on_frame(_FRAME)
    assert out is not None
    (det,) = out
    assert det.label == "person"
    assert det.x == pytest.approx(40.0)
    assert det.y == pytest.approx(80.0)
    assert det.width == pytest.approx(80.0)
    assert det.height == pytest.approx(160.0)

    update = channel.latest()
    assert update.frame_seq == 1
    assert list(update.detections) == out
    assert channel.dimensions == FrameDimensions(width=400, height=800)


def test_engine_keeps_first_frame_dimensions(engine, channel, clock):
    engine.on_frame(_FRAME)
    clock.advance(0.1)
    engine.on_frame(CameraFrame(width=1920, height=1080))
    assert engine.dimensions == FrameDimensions(width=400, height=800)
    assert channel.dimensions == FrameDimensions(width=400, height=800)


def test_engine_drops_frames_above_target_rate(engine, model, clock):
    assert engine.on_frame(_FRAME) is not None
    clock.advance(0.02)
    assert engine.on_frame(_FRAME) is None
    assert model.calls == 1
    assert engine.stats.throttled == 1
    clock.advance(0.1)
    assert engine.on_frame(_FRAME) is not None
    assert model.calls == 2


def test_engine_capture_pauses_without_resetting_tracks(engine, model, clock):
    engine.on_frame(_FRAME)
    tracks_before = engine.state.tracks

    snapshot = engine.capture_snapshot()
    assert len(snapshot) == 1
    assert engine.capturing

    clock.advance(1.0)
    assert engine.on_frame(_FRAME) is None
    assert model.calls == 1
    assert engine.state.tracks == tracks_before

    engine.resume()
    clock.advance(0.1)
    out = engine.on_frame(_FRAME)
    assert out is not None and len(out) == 1
    assert len(engine.state.tracks) == 1
    assert engine.state.tracks[0].misses == 0


def test_engine_without_model_warns_once(labels, channel, clock, monkeypatch):
    mock_log = MagicMock()
    monkeypatch.setattr(engine_module, "log", mock_log)
    engine = DetectionEngine(DetectionConfig(), labels, channel, clock=clock)

    for _ in range(3):
        assert engine.on_frame(_FRAME) is None
        clock.advance(0.1)
    assert engine.stats.no_model == 3
    warnings = [c for c in mock_log.warning.call_args_list if c.args[0] == "model_unavailable"]
    assert len(warnings) == 1

    engine.attach_model(FakeModel())
    assert engine.on_frame(_FRAME) is not None


def test_engine_error_skips_frame_and_keeps_state(engine, model, clock, monkeypatch):
    mock_log = MagicMock()
    monkeypatch.setattr(engine_module, "log", mock_log)

    engine.on_frame(_FRAME)
    state_before = engine.state

    model.error = RuntimeError("inference failed")
    for _ in range(3):
        clock.advance(0.1)
        assert engine.on_frame(_FRAME) is None
    assert engine.state is state_before
    assert engine.stats.failed == 3
    assert mock_log.error.call_count == 1

    model.error = None
    clock.advance(0.1)
    assert engine.on_frame(_FRAME) is not None
    assert engine.state.tracks[0].misses == 0


def test_engine_logs_each_distinct_error(labels, channel, clock, monkeypatch):
    mock_log = MagicMock()
    monkeypatch.setattr(engine_module, "log", mock_log)

    class FailingModel:
        def __init__(self) -> None:
            self.messages = iter(["first", "second", "first"])

        def run(self, frame):
            raise RuntimeError(next(self.messages))

    engine = DetectionEngine(DetectionConfig(), labels, channel, model=FailingModel(), clock=clock)
    for _ in range(3):
        engine.on_frame(_FRAME)
        clock.advance(0.1)
    logged = [c.kwargs["error"] for c in mock_log.error.call_args_list]
    assert logged == ["first", "second"]


def test_engine_forgets_least_recent_error_message(labels, channel, clock, monkeypatch):
    mock_log = MagicMock()
    monkeypatch.setattr(engine_module, "log", mock_log)
    monkeypatch.setattr(engine_module, "_MAX_SEEN_ERRORS", 2)

    class FailingModel:
        def __init__(self) -> None:
            self.messages = iter(["a", "b", "c", "c", "a"])

        def run(self, frame):
            raise RuntimeError(next(self.messages))

    engine = DetectionEngine(DetectionConfig(), labels, channel, model=FailingModel(), clock=clock)
    for _ in range(5):
        engine.on_frame(_FRAME)
        clock.advance(0.1)
    logged = [c.kwargs["error"] for c in mock_log.error.call_args_list]
    assert logged == ["a", "b", "c", "a"]
    assert engine.stats.failed == 5


def test_engine_drops_malformed_candidate_only(engine, model):
    model.output = RawModelOutput(
        boxes=[[0.1, 0.1, 0.3, 0.3], [math.nan, 0.5, 0.7, 0.7]],
        class_ids=[1, 3],
        scores=[0.9, 0.9],
        count=2,
    )
    out = engine.on_frame(_FRAME)
    assert [d.label for d in out] == ["person"]


def test_process_output_survives_ragged_box_rows(labels, channel):
    engine = DetectionEngine(DetectionConfig(), labels, channel)
    raw = RawModelOutput(
        boxes=[[0.1, 0.1, 0.3, 0.3], [0.2, 0.2, 0.4]],
        class_ids=[1, 1],
        scores=[0.9, 0.8],
        count=2,
    )
    out = engine.process_output(raw, frame_width=400, frame_height=800)
    assert [d.label for d in out] == ["person"]
    assert engine.stats.failed == 0
    assert engine.stats.processed == 1


def test_engine_drops_frame_while_busy(labels, channel, clock):
    entered = threading.Event()
    release = threading.Event()

    class SlowModel:
        def run(self, frame):
            entered.set()
            release.wait(timeout=5)
            return _person_output()

    engine = DetectionEngine(DetectionConfig(), labels, channel, model=SlowModel(), clock=clock)
    results = []
    worker = threading.Thread(target=lambda: results.append(engine.on_frame(_FRAME)))
    worker.start()
    assert entered.wait(timeout=5)

    clock.advance(0.1)
    assert engine.on_frame(_FRAME) is None
    assert engine.stats.busy == 1

    release.set()
    worker.join(timeout=5)
    assert results and results[0] is not None
    assert engine.stats.processed == 1


def test_engine_admits_one_of_simultaneous_frames(engine, model):
    callers = 8
    barrier = threading.Barrier(callers)
    results = []

    def deliver():
        barrier.wait(timeout=5)
        results.append(engine.on_frame(_FRAME))

    workers = [threading.Thread(target=deliver) for _ in range(callers)]
    for w in workers:
        w.start()
    for w in workers:
        w.join(timeout=5)

    assert len(results) == callers
    assert sum(r is not None for r in results) == 1
    assert model.calls == 1
    assert engine.stats.processed == 1
    assert engine.stats.throttled + engine.stats.busy == callers - 1


def test_engine_counts_every_paused_frame_across_threads(engine):
    engine.capture_snapshot()
    frames_per_thread = 500

    def deliver():
        for _ in range(frames_per_thread):
            engine.on_frame(_FRAME)

    workers = [threading.Thread(target=deliver) for _ in range(4)]
    for w in workers:
        w.start()
    for w in workers:
        w.join(timeout=10)
    assert engine.stats.paused == 4 * frames_per_thread


def test_engine_counts_over_budget_frames(labels, channel, clock):
    class LaggingModel:
        def run(self, frame):
            clock.advance(0.25)
            return _person_output()

    engine = DetectionEngine(DetectionConfig(), labels, channel, model=LaggingModel(), clock=clock)
    assert engine.on_frame(_FRAME) is not None
    assert engine.stats.over_budget == 1


def test_process_output_without_model(labels, channel):
    engine = DetectionEngine(DetectionConfig(), labels, channel)
    out = engine.process_output(_person_output(), frame_width=400, frame_height=800)
    assert [d.label for d in out] == ["person"]


def test_process_output_without_dimensions_is_skipped(labels, channel):
    engine = DetectionEngine(DetectionConfig(), labels, channel)
    assert engine.process_output(_person_output()) is None
    assert engine.stats.failed == 1


def test_engine_reset_clears_tracks(engine, channel):
    engine.on_frame(_FRAME)
    engine.reset()
    assert engine.state.tracks == ()
    assert channel.latest().detections == ()
    assert channel.snapshot() == []


# ── Overlay channel ───────────────────────────────────────────────────────────

def test_latest_value_overwrites():
    cell: LatestValue[int] = LatestValue(0)
    cell.set(1)
    cell.set(2)
    assert cell.get() == (2, 2)


def test_latest_value_wait_times_out_without_update():
    cell: LatestValue[int] = LatestValue(0)
    assert cell.wait_for_update(0, timeout=0.01) == (0, 0)


def test_latest_value_wait_wakes_on_set():
    cell: LatestValue[str] = LatestValue("")
    timer = threading.Timer(0.05, cell.set, args=("frame",))
    timer.start()
    value, version = cell.wait_for_update(0, timeout=5)
    timer.join()
    assert (value, version) == ("frame", 1)


def test_channel_snapshot_falls_back_to_last_non_empty(engine, channel):
    out = engine.on_frame(_FRAME)
    channel.publish(OverlayUpdate(frame_seq=99))
    assert channel.latest().detections == ()
    assert channel.snapshot() == out


# ── Wiring ────────────────────────────────────────────────────────────────────

def test_build_engine_from_settings():
    settings = Settings(target_fps=5, confidence_threshold=0.7, log_format="json")
    engine = build_engine(model=FakeModel(), settings=settings)
    out = engine.process_output(_person_output(0.65), frame_width=400, frame_height=800)
    assert out == []
    out = engine.process_output(_person_output(0.9), frame_width=400, frame_height=800)
    assert len(out) == 1


def test_build_engine_binds_session_context():
    build_engine(settings=Settings(target_fps=5, environment="staging"))
    context = structlog.contextvars.get_contextvars()
    assert context["environment"] == "staging"
    assert context["target_fps"] == 5
    first_session = context["session_id"]

    build_engine(settings=Settings())
    assert structlog.contextvars.get_contextvars()["session_id"] != first_session


def test_json_logging_carries_session_context():
    stream = io.StringIO()
    configure_logging("json", "INFO", stream=stream)
    bind_session("preview-1", environment="test")

    get_logger("detection.test_logging").info("frame_batch_done", frames=3)
    get_logger("detection.test_logging").debug("filtered_out")

    (line,) = stream.getvalue().splitlines()
    record = json.loads(line)
    assert record["event"] == "frame_batch_done"
    assert record["frames"] == 3
    assert record["level"] == "info"
    assert record["session_id"] == "preview-1"
    assert record["environment"] == "test"
    assert "target_fps" not in record
