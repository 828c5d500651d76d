"""Test suite for the processing pipeline."""

import json
from pathlib import Path

import pytest
import yaml

from conftest import build_frame, build_keypoints, pose_dict
from workstudy.config import Config
from workstudy.pipeline import Pipeline, create_pipeline

PICK_PLACE = Path(__file__).resolve().parent.parent / 'configs' / 'models' / 'pick_place.yaml'


def standing_frame(timestamp, pose_id=1):
    return build_frame(timestamp, [pose_dict(build_keypoints(), pose_id)])


@pytest.fixture
def config(tmp_path):
    config = Config()
    config.logging.out_dir = str(tmp_path)
    return config


class TestPipeline:
    """Test cases for Pipeline class."""

    def test_initialization(self, config):
        pipeline = Pipeline(config)

        assert pipeline.engine is not None
        assert pipeline.event_logger is not None
        assert pipeline.engine.model is None
        assert pipeline.compliance is None

    def test_events_persisted(self, config, three_state_model, tmp_path):
        pipeline = Pipeline(config, three_state_model)

        for t in (0.0, 0.25, 0.5, 0.75):
            pipeline.process_frame(standing_frame(t))

        events = pipeline.event_logger.get_events()
        assert len(events) == 1
        assert events[0].state_id == 'a'
        assert len(list(tmp_path.glob('*_events.jsonl'))) == 1

    def test_events_logged_once(self, config, three_state_model):
        pipeline = Pipeline(config, three_state_model)

        for t in (0.0, 0.5, 1.0, 1.5, 2.0):
            pipeline.process_frame(standing_frame(t))

        assert len(pipeline.event_logger.get_events()) == len(pipeline.engine.timeline_events)

    def test_load_model(self, config, three_state_model):
        pipeline = Pipeline(config)

        assert not pipeline.load_model({'states': []})
        assert pipeline.load_model(three_state_model)
        assert pipeline.engine.model.name == 'ROI sequence'

    def test_smoothing(self, config, three_state_model):
        config.smoother.enabled = True
        pipeline = Pipeline(config, three_state_model)

        result = pipeline.process_frame(standing_frame(0.0))
        assert result.tracks[0].id == 1
        assert set(pipeline.smoothers) == {1}

        pipeline.process_frame(standing_frame(1.0, pose_id=2))
        pipeline.process_frame(standing_frame(3.0, pose_id=2))
        assert set(pipeline.smoothers) == {2}

    def test_smoothing_skips_invalid_frame(self, config, three_state_model):
        config.smoother.enabled = True
        pipeline = Pipeline(config, three_state_model)

        result = pipeline.process_frame({'poses': []})
        assert result.tracks == []

    def test_get_tracks(self, config, three_state_model):
        pipeline = Pipeline(config, three_state_model)
        assert pipeline.get_tracks() == []

        pipeline.process_frame(standing_frame(0.0))
        tracks = pipeline.get_tracks()

        assert tracks == [{
            'id': 1, 'state': 'A', 'stateId': 'a', 'stateEnterTime': 0.0, 'lastUpdate': 0.0, 'isVA': True,
        }]

    def test_statistics(self, config, three_state_model):
        pipeline = Pipeline(config, three_state_model)
        pipeline.process_frame(standing_frame(0.0))

        stats = pipeline.get_statistics()

        assert stats['frame_count'] == 1
        assert stats['frames_processed'] == 1
        assert stats['active_tracks'] == 1
        assert stats['events']['total_events'] == 0
        assert stats['runtime'] >= 0

    def test_reset(self, config, three_state_model):
        pipeline = Pipeline(config, three_state_model)
        for t in (0.0, 0.5):
            pipeline.process_frame(standing_frame(t))

        pipeline.reset()

        assert pipeline.get_tracks() == []
        for t in (1.0, 1.5):
            pipeline.process_frame(standing_frame(t))
        assert len(pipeline.event_logger.get_events()) == 2

    def test_check_compliance(self, config, three_state_model):
        pipeline = Pipeline(config, three_state_model)
        assert pipeline.check_compliance(1) is None

        golden = [pose_dict(build_keypoints())['keypoints'] for _ in range(5)]
        pipeline.set_elements([
            {'id': 0, 'name': 'Reach', 'standardDuration': 0.1, 'referenceSequence': golden},
            {'id': 1, 'name': 'Place', 'standardDuration': 1.0, 'referenceSequence': golden},
        ])
        assert pipeline.check_compliance(99) is None

        for i in range(6):
            pipeline.process_frame(build_frame(i * 0.1, [pose_dict(build_keypoints(), 1)]))

        status = pipeline.check_compliance(1, window=5)
        assert status['stepIndex'] == 0
        assert status['match']['elementIndex'] == 0
        assert not status['isSequenceMismatch']

        # Same step checked later than its standard duration allows
        status = pipeline.check_compliance(1, window=5, timestamp=1.0)
        assert status['anomalies'][-1]['type'] == 'CT_OVERRUN'
        assert pipeline.event_logger.get_anomalies()[-1]['type'] == 'CT_OVERRUN'

    def test_context_manager_writes_summary(self, config, three_state_model, tmp_path):
        with Pipeline(config, three_state_model) as pipeline:
            pipeline.process_frame(standing_frame(0.0))

        summaries = list(tmp_path.glob('*_summary.json'))
        assert len(summaries) == 1
        assert json.loads(summaries[0].read_text())['total_events'] == 0


def test_create_pipeline(tmp_path):
    config_path = tmp_path / 'engine.yaml'
    config_path.write_text(yaml.safe_dump({'logging': {'out_dir': str(tmp_path / 'events')}}))

    pipeline = create_pipeline(config_path, PICK_PLACE)

    assert pipeline.engine.model.id == 'assembly_station_1'
    assert pipeline.event_logger.output_dir == tmp_path / 'events'
