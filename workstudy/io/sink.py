"""Timeline event logging and data persistence."""

import csv
import json
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, List, NamedTuple, Optional, Union
import pandas as pd
import jsonlines
from threading import Lock
import logging

logger = logging.getLogger(__name__)

EVENT_FIELDS = [
    'eventId', 'trackId', 'state', 'stateId', 'startTime', 'endTime',
    'duration', 'isVA', 'type', 'anomaly'
]


@dataclass(frozen=True)
class TimelineEvent:
    """Record of one completed stay in a state."""
    track_id: Any
    state: str
    state_id: str
    start_time: float
    end_time: float
    duration: float
    is_va: bool = False
    type: str = "Normal"
    anomaly: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_anomaly(self) -> bool:
        return self.type == "Anomaly"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase output format."""
        return {
            'eventId': self.event_id,
            'trackId': self.track_id,
            'state': self.state,
            'stateId': self.state_id,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'duration': self.duration,
            'isVA': self.is_va,
            'type': self.type,
            'anomaly': self.anomaly,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimelineEvent":
        """Create from dictionary."""
        start = float(data['startTime'])
        end = float(data['endTime'])
        kwargs = dict(
            track_id=data['trackId'],
            state=data.get('state', data.get('stateId', '')),
            state_id=data.get('stateId', ''),
            start_time=start,
            end_time=end,
            duration=float(data.get('duration', end - start)),
            is_va=bool(data.get('isVA', False)),
            type=data.get('type', 'Normal'),
            anomaly=data.get('anomaly'),
        )
        if data.get('eventId'):
            kwargs['event_id'] = data['eventId']
        return cls(**kwargs)


class LogEntry(NamedTuple):
    """Human-readable engine log line."""
    id: str
    timestamp: float
    track_id: Any
    type: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'trackId': self.track_id,
            'type': self.type,
            'message': self.message,
        }


class LogBuffer:
    """Thread-safe bounded log, newest entry first."""

    def __init__(self, capacity: int = 50):
        """
        Initialize log buffer.

        Args:
            capacity: Maximum number of entries kept
        """
        self.capacity = capacity
        self._entries: Deque[LogEntry] = deque(maxlen=capacity)
        self._counter = 0
        self._lock = Lock()

    def add(self, track_id: Any, timestamp: float, log_type: str, message: str) -> LogEntry:
        """Prepend an entry, dropping the oldest beyond capacity."""
        with self._lock:
            self._counter += 1
            entry = LogEntry(
                id=f"log_{self._counter}",
                timestamp=timestamp,
                track_id=track_id,
                type=log_type,
                message=message
            )
            self._entries.appendleft(entry)
            return entry

    def entries(self) -> List[LogEntry]:
        """All entries, newest first."""
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class EventLogger:
    """Logger for timeline events and compliance anomalies with file outputs."""

    def __init__(
        self,
        output_dir: Union[str, Path],
        write_jsonl: bool = True,
        write_csv: bool = True,
        session_id: Optional[str] = None,
        max_files: int = 10
    ):
        """
        Initialize event logger.

        Args:
            output_dir: Directory to save event files
            write_jsonl: Enable JSONL output
            write_csv: Enable CSV output
            session_id: Session identifier (auto-generated if None)
            max_files: Maximum number of sessions kept per file type
        """
        self.output_dir = Path(output_dir)
        self.write_jsonl = write_jsonl
        self.write_csv = write_csv
        self.max_files = max_files

        self.session_id = session_id or f"session_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.jsonl_path = self.output_dir / f"{self.session_id}_events.jsonl"
        self.csv_path = self.output_dir / f"{self.session_id}_events.csv"
        self.anomalies_path = self.output_dir / f"{self.session_id}_anomalies.jsonl"

        self._lock = Lock()

        self.events: List[TimelineEvent] = []
        self.anomalies: List[Dict[str, Any]] = []

        self._initialize_files()

        logger.info(f"Event logger initialized: {self.output_dir}")
        if self.write_jsonl:
            logger.info(f"JSONL output: {self.jsonl_path}")
        if self.write_csv:
            logger.info(f"CSV output: {self.csv_path}")

    def _initialize_files(self) -> None:
        if self.write_csv and not self.csv_path.exists():
            with open(self.csv_path, 'w', newline='', encoding='utf-8') as f:
                writer = csv.DictWriter(f, fieldnames=EVENT_FIELDS)
                writer.writeheader()

        self._cleanup_old_files()

    def _cleanup_old_files(self) -> None:
        """Remove old session files if limit exceeded."""
        for pattern in ['*_events.jsonl', '*_events.csv', '*_anomalies.jsonl']:
            files = sorted(self.output_dir.glob(pattern))
            if len(files) > self.max_files:
                for old_file in files[:-self.max_files]:
                    try:
                        old_file.unlink()
                        logger.info(f"Removed old file: {old_file}")
                    except OSError as e:
                        logger.warning(f"Failed to remove old file {old_file}: {e}")

    def log_event(self, event: TimelineEvent) -> None:
        """
        Log a timeline event to configured outputs.

        Args:
            event: Timeline event to log
        """
        with self._lock:
            self.events.append(event)
            record = event.to_dict()

            if self.write_jsonl:
                try:
                    with jsonlines.open(self.jsonl_path, mode='a') as writer:
                        writer.write(record)
                except OSError as e:
                    logger.error(f"Failed to write JSONL: {e}")

            if self.write_csv:
                try:
                    with open(self.csv_path, 'a', newline='', encoding='utf-8') as f:
                        writer = csv.DictWriter(f, fieldnames=EVENT_FIELDS)
                        writer.writerow(record)
                except OSError as e:
                    logger.error(f"Failed to write CSV: {e}")

            logger.debug(f"Logged event: {event.event_id}")

    def log_anomaly(self, anomaly: Dict[str, Any]) -> None:
        """Log a compliance anomaly record."""
        with self._lock:
            self.anomalies.append(dict(anomaly))

            if self.write_jsonl:
                try:
                    with jsonlines.open(self.anomalies_path, mode='a') as writer:
                        writer.write(anomaly)
                except OSError as e:
                    logger.error(f"Failed to write anomaly JSONL: {e}")

    def get_events(
        self,
        since: Optional[float] = None,
        track_id: Optional[Any] = None,
        limit: Optional[int] = None
    ) -> List[TimelineEvent]:
        """
        Retrieve events with optional filtering.

        Args:
            since: Return events that started at or after this timestamp
            track_id: Filter by track ID (compared as text)
            limit: Maximum number of events to return (most recent)

        Returns:
            List of timeline events
        """
        with self._lock:
            filtered_events = self.events.copy()

            if since is not None:
                filtered_events = [e for e in filtered_events if e.start_time >= since]

            if track_id is not None:
                filtered_events = [e for e in filtered_events if str(e.track_id) == str(track_id)]

            if limit is not None:
                filtered_events = filtered_events[-limit:] if limit > 0 else []

            return filtered_events

    def get_anomalies(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self.anomalies)

    def get_statistics(self) -> Dict[str, Any]:
        """Get statistics about logged events."""
        with self._lock:
            if not self.events:
                return {
                    'total_events': 0,
                    'unique_tracks': 0,
                    'total_duration': 0.0,
                    'avg_duration': 0.0,
                    'va_ratio': 0.0,
                    'anomalies': 0,
                    'compliance_anomalies': len(self.anomalies),
                    'session_id': self.session_id
                }

            durations = [e.duration for e in self.events]
            total = sum(durations)
            va_total = sum(e.duration for e in self.events if e.is_va)

            return {
                'total_events': len(self.events),
                'unique_tracks': len(set(str(e.track_id) for e in self.events)),
                'total_duration': total,
                'avg_duration': total / len(durations),
                'min_duration': min(durations),
                'max_duration': max(durations),
                'va_ratio': (va_total / total * 100.0) if total > 0 else 0.0,
                'anomalies': sum(1 for e in self.events if e.is_anomaly),
                'compliance_anomalies': len(self.anomalies),
                'session_id': self.session_id
            }

    def to_dataframe(self) -> pd.DataFrame:
        """Convert events to pandas DataFrame."""
        with self._lock:
            if not self.events:
                return pd.DataFrame(columns=EVENT_FIELDS)

            return pd.DataFrame([event.to_dict() for event in self.events], columns=EVENT_FIELDS)

    def export(self, fmt: str = 'json') -> str:
        """
        Serialize all events.

        Args:
            fmt: ``json`` or ``csv``

        Returns:
            Serialized events

        Raises:
            ValueError: On an unsupported format
        """
        df = self.to_dataframe()
        if fmt == 'csv':
            return df.to_csv(index=False)
        if fmt == 'json':
            return df.to_json(orient='records')
        raise ValueError(f"Unsupported export format: {fmt}")

    def export_summary(self, output_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
        """
        Export summary statistics.

        Args:
            output_path: Optional path to save summary JSON

        Returns:
            Summary dictionary
        """
        stats = self.get_statistics()

        if output_path:
            summary_path = Path(output_path)
            summary_path.parent.mkdir(parents=True, exist_ok=True)

            with open(summary_path, 'w', encoding='utf-8') as f:
                json.dump(stats, f, indent=2, ensure_ascii=False)

            logger.info(f"Summary exported to: {summary_path}")

        return stats

    def clear(self) -> None:
        """Forget in-memory events (files are kept)."""
        with self._lock:
            self.events.clear()
            self.anomalies.clear()

    def close(self) -> None:
        """Close the logger and export final summary."""
        summary = self.export_summary(self.output_dir / f"{self.session_id}_summary.json")
        logger.info(f"Event logger closed. Total events: {summary['total_events']}")
