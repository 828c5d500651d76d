"""Test suite for event logging and persistence."""

import csv
import json

import jsonlines
import pytest

from workstudy.io.sink import EVENT_FIELDS, EventLogger, LogBuffer, TimelineEvent


def make_event(track_id=1, state_id='s_reach', start=0.0, end=1.0, is_va=True, anomaly=None):
    return TimelineEvent(
        track_id=track_id,
        state=state_id.upper(),
        state_id=state_id,
        start_time=start,
        end_time=end,
        duration=end - start,
        is_va=is_va,
        type='Anomaly' if anomaly else 'Normal',
        anomaly=anomaly
    )


class TestTimelineEvent:
    """Test cases for TimelineEvent class."""

    def test_to_dict(self):
        event = make_event()
        data = event.to_dict()

        assert list(data) == EVENT_FIELDS
        assert data['trackId'] == 1
        assert data['stateId'] == 's_reach'
        assert data['isVA'] is True
        assert data['anomaly'] is None

    def test_unique_ids(self):
        assert make_event().event_id != make_event().event_id

    def test_from_dict(self):
        event = make_event(anomaly='skip')
        restored = TimelineEvent.from_dict(json.loads(event.to_json()))

        assert restored == event
        assert restored.is_anomaly

    def test_from_dict_derives_duration(self):
        restored = TimelineEvent.from_dict({'trackId': 2, 'stateId': 'a', 'startTime': 1.0, 'endTime': 3.5})
        assert restored.duration == 2.5
        assert restored.state == 'a'
        assert restored.type == 'Normal'

    def test_frozen(self):
        event = make_event()
        with pytest.raises(AttributeError):
            event.duration = 5.0


class TestLogBuffer:
    """Test cases for LogBuffer class."""

    def test_newest_first(self):
        buffer = LogBuffer(capacity=3)
        for i in range(5):
            buffer.add(1, float(i), "System", f"message {i}")

        entries = buffer.entries()
        assert len(buffer) == 3
        assert [e.message for e in entries] == ["message 4", "message 3", "message 2"]
        assert entries[0].id == "log_5"

    def test_clear(self):
        buffer = LogBuffer()
        buffer.add(1, 0.0, "System", "hello")
        buffer.clear()
        assert buffer.entries() == []

    def test_entry_to_dict(self):
        entry = LogBuffer().add(7, 1.5, "Transition", "A -> B (Rule Triggered)")
        assert entry.to_dict() == {
            'id': 'log_1', 'timestamp': 1.5, 'trackId': 7, 'type': 'Transition',
            'message': 'A -> B (Rule Triggered)',
        }


class TestEventLogger:
    """Test cases for EventLogger class."""

    @pytest.fixture
    def event_logger(self, tmp_path):
        return EventLogger(tmp_path, session_id="test")

    def test_files_written(self, event_logger, tmp_path):
        event_logger.log_event(make_event())
        event_logger.log_event(make_event(track_id=2, state_id='s_place', start=1.0, end=2.5))

        with jsonlines.open(tmp_path / "test_events.jsonl") as reader:
            records = list(reader)
        assert [r['stateId'] for r in records] == ['s_reach', 's_place']

        with open(tmp_path / "test_events.csv", newline='', encoding='utf-8') as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 2
        assert rows[1]['trackId'] == '2'
        assert rows[1]['duration'] == '1.5'

    def test_outputs_disabled(self, tmp_path):
        event_logger = EventLogger(tmp_path, write_jsonl=False, write_csv=False, session_id="quiet")
        event_logger.log_event(make_event())

        assert not (tmp_path / "quiet_events.jsonl").exists()
        assert not (tmp_path / "quiet_events.csv").exists()
        assert len(event_logger.get_events()) == 1

    def test_anomalies_written(self, event_logger, tmp_path):
        event_logger.log_anomaly({'type': 'CT_OVERRUN', 'stepIndex': 0, 'timestamp': 4.0})

        with jsonlines.open(tmp_path / "test_anomalies.jsonl") as reader:
            assert list(reader) == [{'type': 'CT_OVERRUN', 'stepIndex': 0, 'timestamp': 4.0}]
        assert event_logger.get_anomalies()[0]['type'] == 'CT_OVERRUN'

    def test_get_events_filters(self, event_logger):
        for i in range(4):
            event_logger.log_event(make_event(track_id=i % 2 + 1, start=float(i), end=float(i) + 0.5))

        assert len(event_logger.get_events()) == 4
        assert [e.start_time for e in event_logger.get_events(since=2.0)] == [2.0, 3.0]
        assert [e.start_time for e in event_logger.get_events(track_id="2")] == [1.0, 3.0]
        assert [e.start_time for e in event_logger.get_events(limit=1)] == [3.0]
        assert event_logger.get_events(limit=0) == []

    def test_statistics(self, event_logger):
        event_logger.log_event(make_event(track_id=1, start=0.0, end=1.0, is_va=True))
        event_logger.log_event(make_event(track_id=1, start=1.0, end=4.0, is_va=False, anomaly='skip'))

        stats = event_logger.get_statistics()

        assert stats['total_events'] == 2
        assert stats['unique_tracks'] == 1
        assert stats['total_duration'] == 4.0
        assert stats['avg_duration'] == 2.0
        assert stats['min_duration'] == 1.0
        assert stats['max_duration'] == 3.0
        assert stats['va_ratio'] == 25.0
        assert stats['anomalies'] == 1
        assert stats['session_id'] == 'test'

    def test_empty_statistics(self, event_logger):
        stats = event_logger.get_statistics()
        assert stats['total_events'] == 0
        assert stats['va_ratio'] == 0.0

    def test_dataframe(self, event_logger):
        assert list(event_logger.to_dataframe().columns) == EVENT_FIELDS

        event_logger.log_event(make_event())
        df = event_logger.to_dataframe()
        assert len(df) == 1
        assert df.iloc[0]['stateId'] == 's_reach'

    def test_export(self, event_logger):
        event_logger.log_event(make_event())

        records = json.loads(event_logger.export('json'))
        assert records[0]['stateId'] == 's_reach'
        assert event_logger.export('csv').splitlines()[0] == ','.join(EVENT_FIELDS)

        with pytest.raises(ValueError):
            event_logger.export('xml')

    def test_close_writes_summary(self, event_logger, tmp_path):
        event_logger.log_event(make_event())
        event_logger.close()

        summary = json.loads((tmp_path / "test_summary.json").read_text())
        assert summary['total_events'] == 1

    def test_old_sessions_removed(self, tmp_path):
        for i in range(4):
            EventLogger(tmp_path, session_id=f"session_{i}", max_files=2)

        remaining = sorted(p.name for p in tmp_path.glob("*_events.csv"))
        assert remaining == ["session_2_events.csv", "session_3_events.csv"]

    def test_clear(self, event_logger):
        event_logger.log_event(make_event())
        event_logger.clear()
        assert event_logger.get_events() == []
