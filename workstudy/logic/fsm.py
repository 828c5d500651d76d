"""Multi-track finite state machine driven by a declarative motion model."""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Union
import math
import logging

from pydantic import ValidationError

from ..core.data_types import Frame, Pose
from ..io.sink import LogBuffer, LogEntry, TimelineEvent
from ..motion.dtw import DTWEngine
from ..motion.normalizer import PoseNormalizer
from .model import Model, State
from .proximity import wrist_in_roi
from .rules import RuleContext, RuleEvaluator

logger = logging.getLogger(__name__)

DEFAULT_BOUNDARY_STATES = ('s_start', 'complete', 's_complete')
DEFAULT_TERMINAL_STATES = ('complete', 's_complete')
CYCLE_POLICIES = ('terminal_or_restart', 'terminal_only', 'restart_only')


class BufferedPose(NamedTuple):
    """Pose kept in a track's rolling buffer."""
    pose: Pose
    timestamp: float


@dataclass
class Track:
    """State machine instance for one tracked operator."""
    id: Any
    current_state: str
    state_enter_time: float
    last_update: float
    prev_pose: Optional[Pose] = None
    velocities: Dict[str, float] = field(default_factory=dict)
    pose_buffer: Deque[BufferedPose] = field(default_factory=deque)
    match_start_time: Optional[float] = None
    cycle_logged: bool = False
    transition_candidates: Dict[str, float] = field(default_factory=dict)


class TrackStatus(NamedTuple):
    """Per-frame summary of a track."""
    id: Any
    state: str
    state_id: str
    duration: float
    is_va: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'state': self.state,
            'stateId': self.state_id,
            'duration': round(self.duration, 3),
            'isVA': self.is_va,
        }


class FrameResult(NamedTuple):
    """Engine output for one frame."""
    tracks: List[TrackStatus]
    logs: List[LogEntry]
    timeline_events: List[TimelineEvent]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tracks': [t.to_dict() for t in self.tracks],
            'logs': [entry.to_dict() for entry in self.logs],
            'timelineEvents': [e.to_dict() for e in self.timeline_events],
        }


class Cycle(NamedTuple):
    """One contiguous run of timeline events."""
    duration: float
    va_duration: float
    events: List[TimelineEvent]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'duration': self.duration,
            'vaDuration': self.va_duration,
            'events': [e.to_dict() for e in self.events],
        }


class CycleStatistics(NamedTuple):
    """Aggregate over all cycles seen so far."""
    total_cycles: int
    avg_cycle_time: float
    avg_va_time: float
    va_ratio: float
    latest_cycle: Cycle
    history: List[Cycle]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'totalCycles': self.total_cycles,
            'avgCycleTime': round(self.avg_cycle_time, 2),
            'avgVaTime': round(self.avg_va_time, 2),
            'vaRatio': round(self.va_ratio, 1),
            'latestCycle': self.latest_cycle.to_dict(),
            'history': [c.to_dict() for c in self.history],
        }


def split_cycles(
    events: Sequence[TimelineEvent],
    state_index: Callable[[str], int],
    terminal_states: Iterable[str] = DEFAULT_TERMINAL_STATES,
    policy: str = 'terminal_or_restart'
) -> List[List[TimelineEvent]]:
    """
    Partition a timeline into cycles.

    Args:
        events: Timeline events in emission order
        state_index: Maps a state id to its list position
        terminal_states: State ids that close a cycle when exited
        policy: ``terminal_or_restart``, ``terminal_only`` or ``restart_only``

    Returns:
        Event runs; the last run is always closed
    """
    terminal = set(terminal_states)
    use_terminal = policy in ('terminal_or_restart', 'terminal_only')
    use_restart = policy in ('terminal_or_restart', 'restart_only')

    cycles: List[List[TimelineEvent]] = []
    current: List[TimelineEvent] = []

    for i, event in enumerate(events):
        current.append(event)
        next_event = events[i + 1] if i + 1 < len(events) else None

        is_end = use_terminal and event.state_id in terminal
        is_restart = (
            use_restart and next_event is not None
            and state_index(next_event.state_id) < state_index(event.state_id)
        )

        if is_end or is_restart or next_event is None:
            cycles.append(current)
            current = []

    return cycles


def compute_cycle_statistics(cycles: Sequence[Sequence[TimelineEvent]]) -> Optional[CycleStatistics]:
    """Aggregate cycle durations and value-added ratio, None without cycles."""
    if not cycles:
        return None

    history = [
        Cycle(
            duration=sum(e.duration for e in events),
            va_duration=sum(e.duration for e in events if e.is_va),
            events=list(events)
        )
        for events in cycles
    ]

    total_time = sum(c.duration for c in history)
    total_va_time = sum(c.va_duration for c in history)

    return CycleStatistics(
        total_cycles=len(history),
        avg_cycle_time=total_time / len(history),
        avg_va_time=total_va_time / len(history),
        va_ratio=(total_va_time / total_time * 100.0) if total_time > 0 else 0.0,
        latest_cycle=history[-1],
        history=history
    )


class StateMachineEngine:
    """Runs one state machine per tracked operator against a loaded model."""

    def __init__(
        self,
        stale_timeout: float = 2.0,
        pose_buffer_size: int = 1800,
        log_capacity: int = 50,
        default_min_duration: float = 0.5,
        reference_similarity: float = 0.75,
        cycle_boundary_states: Iterable[str] = DEFAULT_BOUNDARY_STATES,
        terminal_states: Iterable[str] = DEFAULT_TERMINAL_STATES,
        cycle_policy: str = 'terminal_or_restart',
        normalizer: Optional[PoseNormalizer] = None,
        dtw_engine: Optional[DTWEngine] = None,
        on_state_change: Optional[Callable[[Any, str, str], None]] = None,
        on_cycle_complete: Optional[Callable[[CycleStatistics], None]] = None
    ):
        """
        Initialize state machine engine.

        Args:
            stale_timeout: Idle time after which a track is dropped
            pose_buffer_size: Poses kept per track for sequence matching
            log_capacity: Size of the newest-first log ring buffer
            default_min_duration: Compliance time needed to auto-advance when a state sets none
            reference_similarity: Minimum similarity to a state's reference pose
            cycle_boundary_states: Entering one of these states reports cycle statistics
            terminal_states: Exiting one of these states closes a cycle
            cycle_policy: How the timeline is split into cycles
            normalizer: Pose normalizer shared with the rules
            dtw_engine: DTW engine for sequence-match rules
            on_state_change: Called as ``(track_id, to_state_id, from_state_id)``
            on_cycle_complete: Called with CycleStatistics when a boundary state is entered
        """
        if cycle_policy not in CYCLE_POLICIES:
            raise ValueError(f"Unknown cycle policy: {cycle_policy}")

        self.stale_timeout = stale_timeout
        self.pose_buffer_size = pose_buffer_size
        self.default_min_duration = default_min_duration
        self.reference_similarity = reference_similarity
        self.cycle_boundary_states = set(cycle_boundary_states)
        self.terminal_states = set(terminal_states)
        self.cycle_policy = cycle_policy

        self.normalizer = normalizer or PoseNormalizer()
        self.rules = RuleEvaluator(
            normalizer=self.normalizer,
            dtw_engine=dtw_engine or DTWEngine(normalizer=self.normalizer)
        )

        self.on_state_change = on_state_change
        self.on_cycle_complete = on_cycle_complete

        self.model: Optional[Model] = None
        self.tracks: Dict[Any, Track] = {}
        self.logs = LogBuffer(log_capacity)
        self.timeline_events: List[TimelineEvent] = []
        self.frame_count = 0

        logger.info(f"State machine engine initialized: stale_timeout={stale_timeout}, policy={cycle_policy}")

    # --- Model ---------------------------------------------------------------

    def load_model(self, model: Union[Model, Dict[str, Any], None]) -> bool:
        """
        Load a motion model and reset all tracks.

        Args:
            model: Model instance or definition dictionary

        Returns:
            True if the model was accepted
        """
        if model is None:
            return False

        if not isinstance(model, Model):
            try:
                model = Model.from_dict(model)
            except ValidationError as e:
                logger.warning(f"Invalid model rejected: {e}")
                return False

        if not model.states_list:
            logger.warning("Invalid model rejected: no states found")
            return False

        for error in self.rules.validate_scripts(model):
            logger.warning(f"Model '{model.name}': {error}")

        self.model = model
        self.rules.set_model(model)
        self.reset()

        logger.info(f"Loaded model '{model.name}' with {len(model.states_list)} states")
        return True

    def reset(self) -> None:
        """Drop all tracks, logs and timeline events."""
        self.tracks.clear()
        self.logs.clear()
        self.timeline_events = []
        self.frame_count = 0

    # --- Frame processing ----------------------------------------------------

    def process_frame(self, frame: Union[Frame, Mapping[str, Any]]) -> FrameResult:
        """
        Advance every visible track by one frame.

        Args:
            frame: Frame or wire-format dictionary

        Returns:
            Track summaries, newest-first logs and the timeline so far
        """
        if self.model is None:
            return FrameResult([], [], [])

        if not isinstance(frame, Frame):
            try:
                frame = Frame.from_dict(frame)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.warning(f"Skipping invalid frame: {e}")
                return FrameResult([], self.logs.entries(), list(self.timeline_events))

        timestamp = frame.timestamp
        self.frame_count += 1

        for index, pose in enumerate(frame.poses):
            track_id = pose.id if pose.id is not None else index + 1
            track = self._update_track(track_id, pose, timestamp)
            self.update_fsm(track, pose, frame)

        self._evict_stale(timestamp)

        return FrameResult(
            tracks=[self._track_status(t, timestamp) for t in self.tracks.values()],
            logs=self.logs.entries(),
            timeline_events=list(self.timeline_events)
        )

    def _update_track(self, track_id: Any, pose: Pose, timestamp: float) -> Track:
        track = self.tracks.get(track_id)

        if track is None:
            first = self.model.states_list[0]
            track = Track(
                id=track_id,
                current_state=first.id,
                state_enter_time=timestamp,
                last_update=timestamp,
                pose_buffer=deque(maxlen=self.pose_buffer_size)
            )
            self.tracks[track_id] = track
            self.logs.add(track_id, timestamp, "System", f"Operator {track_id} detected. Starting in {first.name}")
            logger.info(f"Track {track_id}: detected in state {first.id}")

        dt = timestamp - track.last_update
        if track.prev_pose is not None:
            track.velocities = self.calculate_velocities(track.prev_pose, pose, dt)
        else:
            track.velocities = {}

        track.last_update = timestamp
        track.prev_pose = pose
        track.pose_buffer.append(BufferedPose(pose, timestamp))

        return track

    @staticmethod
    def calculate_velocities(prev_pose: Pose, pose: Pose, dt: float) -> Dict[str, float]:
        """Per-joint speed between two poses, empty if dt <= 0."""
        if dt <= 0:
            return {}

        previous = {}
        for kp in prev_pose.keypoints:
            previous.setdefault(kp.name, kp)

        velocities = {}
        for kp in pose.keypoints:
            prev = previous.get(kp.name)
            if prev is not None:
                velocities[kp.name] = math.hypot(kp.x - prev.x, kp.y - prev.y) / dt
        return velocities

    def update_fsm(self, track: Track, pose: Pose, frame: Frame) -> None:
        """
        Apply compliance auto-advance and explicit transitions for one track.

        Args:
            track: Track to update
            pose: Current pose of the track
            frame: Frame the pose belongs to
        """
        timestamp = frame.timestamp
        state = self.model.get_state(track.current_state)

        compliant = self._check_compliance(state, pose)
        if compliant:
            if track.match_start_time is None:
                track.match_start_time = timestamp
            required = state.min_duration if state.min_duration else self.default_min_duration

            if timestamp - track.match_start_time >= required:
                index = self.model.state_index(state.id)
                if index + 1 < len(self.model.states_list):
                    next_state = self.model.states_list[index + 1]
                    self.transition_to(track, next_state.id, timestamp, "Sequence Step Complete")
                    return

                if not track.cycle_logged and track.current_state not in self.terminal_states:
                    self.logs.add(
                        track.id, timestamp, "Cycle Complete",
                        f"Cycle finished in {timestamp - track.state_enter_time:.1f}s"
                    )
                    track.cycle_logged = True
        else:
            track.match_start_time = None
            track.cycle_logged = False

        transitions = self.model.transitions_from(track.current_state)
        if not transitions:
            return

        ctx = RuleContext(track=track, pose=pose, frame=frame, tracks=self.tracks)

        for transition in transitions:
            if not self.rules.evaluate_condition(transition.condition, ctx):
                track.transition_candidates.pop(transition.id, None)
                continue

            hold_time = transition.effective_hold_time
            if hold_time > 0:
                started = track.transition_candidates.get(transition.id)
                if started is None:
                    track.transition_candidates[transition.id] = timestamp
                    continue
                elapsed = timestamp - started
                if elapsed < hold_time:
                    continue
                reason = f"Rule Triggered (Held {elapsed:.1f}s)"
            else:
                reason = "Rule Triggered"

            self.transition_to(track, transition.to_state, timestamp, reason)
            track.transition_candidates.clear()
            break

    def _check_compliance(self, state: Optional[State], pose: Pose) -> bool:
        """ROI/reference-pose compliance; False for states declaring neither."""
        if state is None or (state.roi is None and not state.reference_pose):
            return False

        if state.roi is not None and not wrist_in_roi(pose.keypoints, state.roi):
            return False

        if state.reference_pose:
            similarity = self.normalizer.calculate_similarity(pose.keypoints, state.reference_pose)
            if similarity < self.reference_similarity:
                return False

        return True

    def transition_to(self, track: Track, new_state_id: str, timestamp: float, reason: str) -> TimelineEvent:
        """
        Move a track to another state and record the exited state.

        Args:
            track: Track to move
            new_state_id: Target state id
            timestamp: Transition time
            reason: Human-readable trigger

        Returns:
            Timeline event for the exited state
        """
        from_state_id = track.current_state
        from_name = self.model.state_name(from_state_id)
        to_name = self.model.state_name(new_state_id)

        current_index = self.model.state_index(from_state_id)
        new_index = self.model.state_index(new_state_id)

        anomaly = None
        if new_index > current_index + 1:
            anomaly = 'skip'
            self.logs.add(track.id, timestamp, "Anomaly", f"Sequence Skip: Jumped from {from_name} to {to_name}")
        elif new_index < current_index and new_index != 0:
            anomaly = 'regression'
            self.logs.add(track.id, timestamp, "Anomaly", f"Regression: Reverted from {from_name} to {to_name}")

        event = TimelineEvent(
            track_id=track.id,
            state=from_name,
            state_id=from_state_id,
            start_time=track.state_enter_time,
            end_time=timestamp,
            duration=timestamp - track.state_enter_time,
            is_va=self.model.is_va(from_state_id),
            type='Anomaly' if anomaly else 'Normal',
            anomaly=anomaly
        )
        self.timeline_events.append(event)

        self.logs.add(track.id, timestamp, "Transition", f"{from_name} -> {to_name} ({reason})")
        logger.info(f"Track {track.id}: {from_state_id} -> {new_state_id} ({reason})")

        track.current_state = new_state_id
        track.state_enter_time = timestamp
        track.match_start_time = None
        track.cycle_logged = False

        if new_state_id in self.cycle_boundary_states and self.on_cycle_complete is not None:
            stats = self.get_cycle_statistics()
            if stats is not None:
                self._call_hook(self.on_cycle_complete, stats)

        if self.on_state_change is not None:
            self._call_hook(self.on_state_change, track.id, new_state_id, from_state_id)

        return event

    def _call_hook(self, hook: Callable[..., Any], *args: Any) -> None:
        try:
            hook(*args)
        except Exception as e:
            logger.error(f"Hook {getattr(hook, '__name__', hook)} failed: {e}")

    def _evict_stale(self, timestamp: float) -> None:
        stale = [
            track_id for track_id, track in self.tracks.items()
            if timestamp - track.last_update > self.stale_timeout
        ]
        for track_id in stale:
            del self.tracks[track_id]
            self.logs.add(track_id, timestamp, "System", f"Operator {track_id} lost")
            logger.info(f"Track {track_id}: lost")

    def _track_status(self, track: Track, timestamp: float) -> TrackStatus:
        return TrackStatus(
            id=track.id,
            state=self.model.state_name(track.current_state),
            state_id=track.current_state,
            duration=timestamp - track.state_enter_time,
            is_va=self.model.is_va(track.current_state)
        )

    # --- Queries -------------------------------------------------------------

    def get_cycle_statistics(self) -> Optional[CycleStatistics]:
        """Cycle statistics over the whole timeline, None without events."""
        if not self.timeline_events or self.model is None:
            return None

        cycles = split_cycles(
            self.timeline_events,
            self.model.state_index,
            terminal_states=self.terminal_states,
            policy=self.cycle_policy
        )
        return compute_cycle_statistics(cycles)

    def get_track(self, track_id: Any) -> Optional[Track]:
        return self.tracks.get(track_id)

    def get_logs(self) -> List[LogEntry]:
        return self.logs.entries()

    def get_statistics(self) -> Dict[str, Any]:
        """Get engine statistics."""
        cycle_stats = self.get_cycle_statistics()
        return {
            'model': self.model.name if self.model else None,
            'active_tracks': len(self.tracks),
            'frames_processed': self.frame_count,
            'timeline_events': len(self.timeline_events),
            'anomalies': sum(1 for e in self.timeline_events if e.is_anomaly),
            'cycles': cycle_stats.to_dict() if cycle_stats else None,
        }


def create_state_machine_engine(**kwargs) -> StateMachineEngine:
    """
    Factory function to create state machine engine.

    Args:
        **kwargs: Arguments for StateMachineEngine

    Returns:
        StateMachineEngine instance
    """
    return StateMachineEngine(**kwargs)
