"""Test suite for the multi-track state machine engine."""

from unittest.mock import Mock

import pytest

from conftest import build_frame, build_keypoints, pose_dict
from workstudy.core.data_types import Pose
from workstudy.io.sink import TimelineEvent
from workstudy.logic.fsm import (
    CycleStatistics, FrameResult, StateMachineEngine, compute_cycle_statistics,
    create_state_machine_engine, split_cycles
)

RAISED = {'right_elbow': (0.38, 0.25), 'right_wrist': (0.36, 0.12)}
ARM_UP = "right_wrist.y < right_shoulder.y"

ORDER = {'s_start': 0, 's_work': 1, 's_complete': 2}


def standing_frame(timestamp, pose_id=1, **overrides):
    return build_frame(timestamp, [pose_dict(build_keypoints(**overrides), pose_id)])


def raised_frame(timestamp, pose_id=1):
    return build_frame(timestamp, [pose_dict(build_keypoints(RAISED), pose_id)])


def script_model(hold_time=None):
    transition = {'id': 't_up', 'from': 'a', 'to': 'b',
                  'condition': {'rules': [{'type': 'ADVANCED_SCRIPT', 'params': {'script': ARM_UP}}]}}
    if hold_time is not None:
        transition['holdTime'] = hold_time
    return {
        'name': 'Arm raise',
        'statesList': [{'id': 'a', 'name': 'A'}, {'id': 'b', 'name': 'B', 'isVA': True}],
        'transitions': [transition],
    }


def event(state_id, start, end, is_va=False):
    return TimelineEvent(track_id=1, state=state_id, state_id=state_id, start_time=start,
                         end_time=end, duration=end - start, is_va=is_va)


class TestStateMachineEngine:
    """Test cases for StateMachineEngine class."""

    def setup_method(self):
        """Setup test fixtures."""
        self.engine = create_state_machine_engine(stale_timeout=2.0)

    def test_initialization(self):
        assert self.engine.model is None
        assert self.engine.stale_timeout == 2.0
        assert self.engine.cycle_policy == 'terminal_or_restart'
        assert len(self.engine.tracks) == 0

    def test_invalid_cycle_policy(self):
        with pytest.raises(ValueError):
            StateMachineEngine(cycle_policy='whenever')

    def test_no_model(self):
        result = self.engine.process_frame(standing_frame(0.0))
        assert result == FrameResult([], [], [])

    def test_empty_model_rejected(self):
        assert not self.engine.load_model({'name': 'Empty', 'states': []})
        assert not self.engine.load_model({'statesList': 'not a list'})
        assert not self.engine.load_model(None)
        assert self.engine.model is None

    def test_load_model_resets_tracks(self, three_state_model):
        assert self.engine.load_model(three_state_model)
        self.engine.process_frame(standing_frame(0.0))
        assert len(self.engine.tracks) == 1

        assert self.engine.load_model(three_state_model)
        assert len(self.engine.tracks) == 0
        assert self.engine.get_logs() == []

    def test_roi_sequence_advances_once(self, three_state_model):
        """Compliance in A for its minimum duration yields one Normal event for A."""
        self.engine.load_model(three_state_model)

        for t in (0.0, 0.25, 0.5, 0.75, 1.0):
            result = self.engine.process_frame(standing_frame(t))

        assert len(result.timeline_events) == 1
        recorded = result.timeline_events[0]
        assert recorded.state_id == 'a'
        assert recorded.state == 'A'
        assert recorded.type == 'Normal'
        assert recorded.anomaly is None
        assert recorded.is_va
        assert recorded.start_time == 0.0
        assert recorded.end_time == 0.5
        assert recorded.duration == pytest.approx(0.5)

        status = result.tracks[0]
        assert status.state_id == 'b'
        assert status.state == 'B'
        assert status.duration == pytest.approx(0.5)
        assert not status.is_va

        messages = [entry.message for entry in result.logs]
        assert messages[0] == "A -> B (Sequence Step Complete)"
        assert messages[-1] == "Operator 1 detected. Starting in A"

    def test_upper_case_wire_names(self, three_state_model):
        """Joint names in frames are matched case-insensitively."""
        self.engine.load_model(three_state_model)

        keypoints = [dict(kp.to_dict(), name=kp.name.upper()) for kp in build_keypoints()]
        for t in (0.0, 0.2, 0.4, 0.6):
            result = self.engine.process_frame(build_frame(t, [{'id': 1, 'keypoints': keypoints}]))

        assert result.tracks[0].state_id == 'b'
        assert [e.state_id for e in result.timeline_events] == ['a']

    def test_compliance_interrupted(self, three_state_model):
        self.engine.load_model(three_state_model)

        self.engine.process_frame(standing_frame(0.0))
        # Wrists dropped in confidence: out of compliance
        self.engine.process_frame(build_frame(0.3, [pose_dict(build_keypoints(score=0.1), 1)]))
        self.engine.process_frame(standing_frame(0.6))
        result = self.engine.process_frame(standing_frame(0.9))

        assert result.timeline_events == []
        assert result.tracks[0].state_id == 'a'

    def test_cycle_complete_logged_once(self):
        self.engine.load_model({'statesList': [
            {'id': 'only', 'roi': {'x': 0, 'y': 0, 'width': 1, 'height': 1}, 'minDuration': 0.5},
        ]})

        for t in (0.0, 0.5, 1.0, 1.5):
            result = self.engine.process_frame(standing_frame(t))

        cycle_logs = [entry for entry in result.logs if entry.type == "Cycle Complete"]
        assert len(cycle_logs) == 1
        assert cycle_logs[0].timestamp == 0.5

    def test_rule_transition(self):
        self.engine.load_model(script_model())

        result = self.engine.process_frame(standing_frame(0.0))
        assert result.tracks[0].state_id == 'a'

        result = self.engine.process_frame(raised_frame(1.0))
        assert result.tracks[0].state_id == 'b'
        assert result.logs[0].message == "A -> B (Rule Triggered)"
        assert result.timeline_events[0].duration == 1.0

    def test_hold_time(self):
        self.engine.load_model(script_model(hold_time=1.0))

        assert self.engine.process_frame(raised_frame(0.0)).tracks[0].state_id == 'a'
        assert self.engine.process_frame(raised_frame(0.5)).tracks[0].state_id == 'a'

        result = self.engine.process_frame(raised_frame(1.0))
        assert result.tracks[0].state_id == 'b'
        assert result.logs[0].message == "A -> B (Rule Triggered (Held 1.0s))"

    def test_hold_time_restarts_when_interrupted(self):
        self.engine.load_model(script_model(hold_time=1.0))

        self.engine.process_frame(raised_frame(0.0))
        self.engine.process_frame(standing_frame(0.5))
        self.engine.process_frame(raised_frame(1.0))
        assert self.engine.process_frame(raised_frame(1.5)).tracks[0].state_id == 'a'
        assert self.engine.process_frame(raised_frame(2.0)).tracks[0].state_id == 'b'

    def test_skip_regression_and_restart(self):
        self.engine.load_model({'statesList': [{'id': 's0'}, {'id': 's1'}, {'id': 's2'}, {'id': 's3'}]})
        self.engine.process_frame(standing_frame(0.0))
        track = self.engine.get_track(1)

        skip = self.engine.transition_to(track, 's2', 1.0, "manual")
        assert skip.type == 'Anomaly'
        assert skip.anomaly == 'skip'

        regression = self.engine.transition_to(track, 's1', 2.0, "manual")
        assert regression.anomaly == 'regression'
        assert regression.state_id == 's2'

        restart = self.engine.transition_to(track, 's0', 3.0, "manual")
        assert restart.type == 'Normal'
        assert restart.anomaly is None

        forward = self.engine.transition_to(track, 's1', 4.0, "manual")
        assert forward.type == 'Normal'

        anomaly_logs = [entry.message for entry in self.engine.get_logs() if entry.type == "Anomaly"]
        assert anomaly_logs == [
            "Regression: Reverted from s2 to s1",
            "Sequence Skip: Jumped from s0 to s2",
        ]
        assert self.engine.get_statistics()['anomalies'] == 2

    def test_stale_track_eviction(self, three_state_model):
        self.engine.load_model(three_state_model)

        self.engine.process_frame(standing_frame(0.0, pose_id=1))
        self.engine.process_frame(standing_frame(1.0, pose_id=2))
        result = self.engine.process_frame(standing_frame(2.0, pose_id=2))
        assert {t.id for t in result.tracks} == {1, 2}

        result = self.engine.process_frame(standing_frame(2.5, pose_id=2))
        assert {t.id for t in result.tracks} == {2}
        assert result.logs[0].message == "Operator 1 lost"

    def test_pose_ids_default_to_position(self, three_state_model):
        self.engine.load_model(three_state_model)
        frame = build_frame(0.0, [pose_dict(build_keypoints()), pose_dict(build_keypoints(dx=0.1))])

        result = self.engine.process_frame(frame)

        assert [t.id for t in result.tracks] == [1, 2]

    def test_invalid_frame_skipped(self, three_state_model):
        self.engine.load_model(three_state_model)
        self.engine.process_frame(standing_frame(0.0))

        result = self.engine.process_frame({'poses': []})

        assert result.tracks == []
        assert len(result.logs) == 1
        assert self.engine.frame_count == 1

    def test_log_ring_newest_first(self, three_state_model):
        self.engine.load_model(three_state_model)
        frame = build_frame(0.0, [pose_dict(build_keypoints(), i) for i in range(1, 61)])

        logs = self.engine.process_frame(frame).logs

        assert len(logs) == 50
        assert logs[0].track_id == 60
        assert logs[-1].track_id == 11

    def test_velocities(self, three_state_model):
        self.engine.load_model(three_state_model)
        self.engine.process_frame(standing_frame(0.0))
        self.engine.process_frame(build_frame(0.5, [pose_dict(build_keypoints({'right_wrist': (0.43, 0.62)}), 1)]))

        velocities = self.engine.get_track(1).velocities
        assert velocities['right_wrist'] == pytest.approx(0.2)
        assert velocities['nose'] == pytest.approx(0.0)

    def test_velocities_need_positive_dt(self):
        pose = Pose(build_keypoints(), id=1)
        assert StateMachineEngine.calculate_velocities(pose, pose, 0.0) == {}

    def test_pose_buffer_bounded(self, three_state_model):
        engine = create_state_machine_engine(pose_buffer_size=10)
        engine.load_model(three_state_model)
        for i in range(15):
            engine.process_frame(build_frame(i * 0.1, [pose_dict(build_keypoints(score=0.1), 1)]))

        buffer = engine.get_track(1).pose_buffer
        assert len(buffer) == 10
        assert buffer[-1].timestamp == pytest.approx(1.4)

    def test_state_change_hook(self):
        hook = Mock()
        engine = create_state_machine_engine(on_state_change=hook)
        engine.load_model(script_model())

        engine.process_frame(raised_frame(0.0))

        hook.assert_called_once_with(1, 'b', 'a')

    def test_failing_hook_does_not_stop_engine(self):
        engine = create_state_machine_engine(on_state_change=Mock(side_effect=RuntimeError("boom")))
        engine.load_model(script_model())

        result = engine.process_frame(raised_frame(0.0))

        assert result.tracks[0].state_id == 'b'

    def test_cycle_complete_hook(self):
        hook = Mock()
        engine = create_state_machine_engine(on_cycle_complete=hook)
        engine.load_model({'statesList': [{'id': 's_start'}, {'id': 's_work', 'isVA': True}, {'id': 's_complete'}]})
        engine.process_frame(standing_frame(0.0))
        track = engine.get_track(1)

        engine.transition_to(track, 's_work', 1.0, "manual")
        hook.assert_not_called()

        engine.transition_to(track, 's_complete', 3.0, "manual")
        hook.assert_called_once()
        stats = hook.call_args[0][0]
        assert isinstance(stats, CycleStatistics)
        assert stats.total_cycles == 1
        assert stats.latest_cycle.duration == pytest.approx(3.0)
        assert stats.latest_cycle.va_duration == pytest.approx(2.0)

    def test_statistics(self, three_state_model):
        self.engine.load_model(three_state_model)
        for t in (0.0, 0.5):
            self.engine.process_frame(standing_frame(t))

        stats = self.engine.get_statistics()
        assert stats['model'] == 'ROI sequence'
        assert stats['active_tracks'] == 1
        assert stats['frames_processed'] == 2
        assert stats['timeline_events'] == 1
        assert stats['anomalies'] == 0
        assert stats['cycles']['totalCycles'] == 1

    def test_frame_result_to_dict(self, three_state_model):
        self.engine.load_model(three_state_model)
        self.engine.process_frame(standing_frame(0.0))
        output = self.engine.process_frame(standing_frame(0.5)).to_dict()

        assert set(output) == {'tracks', 'logs', 'timelineEvents'}
        assert output['tracks'][0]['stateId'] == 'b'
        assert output['timelineEvents'][0]['stateId'] == 'a'
        assert output['logs'][0]['trackId'] == 1

    def test_reset(self, three_state_model):
        self.engine.load_model(three_state_model)
        self.engine.process_frame(standing_frame(0.0))
        self.engine.process_frame(standing_frame(0.5))

        self.engine.reset()

        assert self.engine.tracks == {}
        assert self.engine.timeline_events == []
        assert self.engine.get_cycle_statistics() is None
        assert self.engine.model is not None


class TestCycles:
    """Test cases for cycle splitting and statistics."""

    def setup_method(self):
        """Setup test fixtures."""
        self.with_terminal = [
            event('s_start', 0, 1), event('s_work', 1, 3, True), event('s_complete', 3, 4),
            event('s_start', 4, 5), event('s_work', 5, 8, True),
        ]
        self.restarting = [
            event('s_start', 0, 1), event('s_work', 1, 3, True),
            event('s_start', 3, 4), event('s_work', 4, 6, True),
        ]

    def test_terminal_or_restart(self):
        cycles = split_cycles(self.with_terminal, ORDER.get)
        assert [len(c) for c in cycles] == [3, 2]

        cycles = split_cycles(self.restarting, ORDER.get)
        assert [len(c) for c in cycles] == [2, 2]

    def test_terminal_only(self):
        cycles = split_cycles(self.restarting, ORDER.get, policy='terminal_only')
        assert [len(c) for c in cycles] == [4]

    def test_restart_only(self):
        events = [event('s_start', 0, 1), event('s_complete', 1, 2), event('s_complete', 2, 3)]
        assert [len(c) for c in split_cycles(events, ORDER.get, policy='restart_only')] == [3]
        assert [len(c) for c in split_cycles(events, ORDER.get, policy='terminal_only')] == [2, 1]

    def test_statistics(self):
        stats = compute_cycle_statistics(split_cycles(self.with_terminal, ORDER.get))

        assert stats.total_cycles == 2
        assert stats.avg_cycle_time == pytest.approx(4.0)
        assert stats.avg_va_time == pytest.approx(2.5)
        assert stats.va_ratio == pytest.approx(62.5)
        assert stats.latest_cycle.duration == pytest.approx(4.0)
        assert stats.to_dict()['vaRatio'] == 62.5

    def test_no_cycles(self):
        assert compute_cycle_statistics([]) is None
