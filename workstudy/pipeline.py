"""Processing pipeline wiring configuration, engine and event sink."""

import time
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
import itertools
import logging

from .config import Config
from .core.data_types import Frame, Pose
from .io.sink import EventLogger
from .logic.compliance import ActionMatcher, SequenceComplianceEngine, SequenceElement
from .logic.fsm import FrameResult, StateMachineEngine, create_state_machine_engine
from .logic.model import Model
from .motion.dtw import create_dtw_engine
from .motion.normalizer import PoseNormalizer
from .motion.smoother import PoseSmoother

logger = logging.getLogger(__name__)


class Pipeline:
    """Feeds frames through the state machine engine and persists its events."""

    def __init__(self, config: Config, model: Optional[Model] = None):
        """
        Initialize processing pipeline.

        Args:
            config: Main configuration
            model: Motion model to load (can be loaded later)
        """
        self.config = config

        self.normalizer: Optional[PoseNormalizer] = None
        self.engine: Optional[StateMachineEngine] = None
        self.event_logger: Optional[EventLogger] = None
        self.compliance: Optional[SequenceComplianceEngine] = None
        self.smoothers: Dict[Any, PoseSmoother] = {}

        self.frame_count = 0
        self.start_time = time.time()
        self._logged_events = 0
        self._logged_anomalies = 0
        self._lock = Lock()

        self._initialize_components()

        if model is not None:
            self.load_model(model)

        logger.info("Pipeline initialized successfully")

    def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        self.normalizer = PoseNormalizer(min_score=self.config.normalizer.min_score)

        self.dtw_engine = create_dtw_engine(
            window_fraction=self.config.dtw.window_fraction,
            threshold=self.config.dtw.threshold,
            normalizer=self.normalizer
        )

        engine_config = self.config.engine
        self.engine = create_state_machine_engine(
            stale_timeout=engine_config.stale_timeout,
            pose_buffer_size=engine_config.pose_buffer_size,
            log_capacity=engine_config.log_capacity,
            default_min_duration=engine_config.default_min_duration,
            reference_similarity=engine_config.reference_similarity,
            cycle_boundary_states=engine_config.cycle_boundary_states,
            terminal_states=engine_config.terminal_states,
            cycle_policy=engine_config.cycle_policy,
            normalizer=self.normalizer,
            dtw_engine=self.dtw_engine
        )

        self.event_logger = EventLogger(
            output_dir=self.config.logging.out_dir,
            write_jsonl=self.config.logging.write_jsonl,
            write_csv=self.config.logging.write_csv,
            max_files=self.config.logging.max_log_files
        )

    def load_model(self, model: Union[Model, Dict[str, Any]]) -> bool:
        """Load a motion model into the engine, resetting all tracks."""
        with self._lock:
            loaded = self.engine.load_model(model)
            if loaded:
                self.smoothers.clear()
                self._logged_events = 0
            return loaded

    def set_elements(self, elements: Sequence[Union[SequenceElement, Mapping[str, Any]]]) -> None:
        """
        Configure linear sequence compliance checking.

        Args:
            elements: Ordered work elements (instances or dictionaries)
        """
        items = [e if isinstance(e, SequenceElement) else SequenceElement.from_dict(e) for e in elements]
        cfg = self.config.compliance

        matcher = ActionMatcher(
            items,
            dtw_engine=self.dtw_engine,
            min_frames=cfg.min_frames,
            score_threshold=cfg.score_threshold,
            context_bias=cfg.context_bias,
            smoothing_window=cfg.smoothing_window,
            match_threshold=cfg.match_threshold
        )

        with self._lock:
            self.compliance = SequenceComplianceEngine(
                items,
                matcher=matcher,
                overrun_factor=cfg.overrun_factor,
                overrun_debounce=cfg.overrun_debounce
            )
            self._logged_anomalies = 0

        logger.info(f"Sequence compliance configured with {len(items)} elements")

    def process_frame(self, frame: Union[Frame, Mapping[str, Any]]) -> FrameResult:
        """
        Process a single frame.

        Args:
            frame: Frame or wire-format dictionary

        Returns:
            Engine result for the frame
        """
        with self._lock:
            self.frame_count += 1

            if self.config.smoother.enabled:
                frame = self._smooth_frame(frame)

            result = self.engine.process_frame(frame)

            self._log_events()
            self._prune_smoothers(result)

            return result

    def check_compliance(
        self,
        track_id: Any,
        window: int = 30,
        timestamp: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Match a track's recent poses against the configured work elements.

        Args:
            track_id: Track whose pose buffer is used
            window: Number of most recent poses to match
            timestamp: Current time (latest buffered pose time if None)

        Returns:
            Compliance status, None if compliance is not configured or the track is unknown
        """
        with self._lock:
            if self.compliance is None:
                return None

            track = self.engine.get_track(track_id)
            if track is None:
                return None

            buffer = track.pose_buffer
            start = max(0, len(buffer) - window)
            recent = list(itertools.islice(buffer, start, None))
            if timestamp is None and recent:
                timestamp = recent[-1].timestamp

            status = self.compliance.process([entry.pose for entry in recent], timestamp)
            self._log_anomalies()
            return status

    def _smooth_frame(self, frame: Union[Frame, Mapping[str, Any]]) -> Union[Frame, Mapping[str, Any]]:
        if not isinstance(frame, Frame):
            try:
                frame = Frame.from_dict(frame)
            except (ValueError, TypeError, KeyError, AttributeError):
                # Engine logs and skips it
                return frame

        poses = []
        for index, pose in enumerate(frame.poses):
            track_id = pose.id if pose.id is not None else index + 1
            smoother = self.smoothers.get(track_id)
            if smoother is None:
                cfg = self.config.smoother
                smoother = PoseSmoother(
                    alpha=cfg.alpha,
                    visibility_threshold=cfg.visibility_threshold,
                    max_persistence=cfg.max_persistence,
                    decay_factor=cfg.decay_factor,
                    friction=cfg.friction
                )
                self.smoothers[track_id] = smoother
            poses.append(Pose(keypoints=smoother.smooth(pose.keypoints), id=track_id))

        return frame._replace(poses=poses)

    def _prune_smoothers(self, result: FrameResult) -> None:
        active = {t.id for t in result.tracks}
        for track_id in [k for k in self.smoothers if k not in active]:
            del self.smoothers[track_id]

    def _log_events(self) -> None:
        """Persist timeline events emitted since the last call."""
        events = self.engine.timeline_events
        for event in events[self._logged_events:]:
            self.event_logger.log_event(event)
        self._logged_events = len(events)

    def _log_anomalies(self) -> None:
        anomalies = self.compliance.anomalies
        for anomaly in anomalies[self._logged_anomalies:]:
            self.event_logger.log_anomaly(anomaly)
        self._logged_anomalies = len(anomalies)

    def reset(self) -> None:
        """Reset all tracking state."""
        with self._lock:
            self.engine.reset()
            self.smoothers.clear()
            self._logged_events = 0
            if self.compliance is not None:
                self.compliance.reset()
                self._logged_anomalies = 0

        logger.info("Tracking state reset")

    def get_tracks(self) -> List[Dict[str, Any]]:
        """Current state of every active track."""
        with self._lock:
            if self.engine.model is None:
                return []
            return [
                {
                    'id': track.id,
                    'state': self.engine.model.state_name(track.current_state),
                    'stateId': track.current_state,
                    'stateEnterTime': track.state_enter_time,
                    'lastUpdate': track.last_update,
                    'isVA': self.engine.model.is_va(track.current_state),
                }
                for track in self.engine.tracks.values()
            ]

    def get_statistics(self) -> Dict[str, Any]:
        """Get pipeline statistics."""
        with self._lock:
            stats = {
                'frame_count': self.frame_count,
                'runtime': time.time() - self.start_time,
            }
            stats.update(self.engine.get_statistics())
            stats['events'] = self.event_logger.get_statistics()
            return stats

    def stop(self) -> None:
        """Flush the event sink and log final statistics."""
        if self.event_logger:
            self.event_logger.close()

        if self.engine:
            logger.info(f"Final statistics: {self.engine.get_statistics()}")

        logger.info("Pipeline stopped")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()


def create_pipeline(
    config_path: Union[str, Path],
    model_path: Optional[Union[str, Path]] = None
) -> Pipeline:
    """
    Factory function to create pipeline from configuration files.

    Args:
        config_path: Path to main configuration file
        model_path: Path to motion model file

    Returns:
        Pipeline instance
    """
    from .config import load_config

    config, model = load_config(config_path, model_path)

    return Pipeline(config, model)
