"""Linear standard-work compliance: best-match element detection and step tracking."""

from collections import deque
from typing import Any, Deque, Dict, List, NamedTuple, Optional, Sequence
import time
import logging

from ..motion.dtw import DTWEngine, similarity_score

logger = logging.getLogger(__name__)

SEQUENCE_MISMATCH = 'SEQUENCE_MISMATCH'
CT_OVERRUN = 'CT_OVERRUN'


class SequenceElement(NamedTuple):
    """Expected work element with an optional golden motion sequence."""
    id: Any
    name: str
    therblig: Optional[str] = None
    standard_duration: float = 0.0
    reference_sequence: Optional[List[Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SequenceElement":
        """Create from an element dictionary (``elementName``/``duration``/``motionSequence`` accepted)."""
        return cls(
            id=data.get('id'),
            name=data.get('name', data.get('elementName', '')),
            therblig=data.get('therblig'),
            standard_duration=float(data.get('standardDuration', data.get('duration', 0.0)) or 0.0),
            reference_sequence=data.get('referenceSequence', data.get('motionSequence')) or None
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'therblig': self.therblig,
            'standardDuration': self.standard_duration,
        }


class MatchResult(NamedTuple):
    """Best matching element for a live window."""
    element_index: int
    element: SequenceElement
    score: float
    raw_score: float
    is_context_match: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'elementIndex': self.element_index,
            'element': self.element.to_dict(),
            'score': self.score,
            'rawScore': self.raw_score,
            'isContextMatch': self.is_context_match,
        }


class ActionMatcher:
    """Matches a live pose window against every element's golden sequence."""

    def __init__(
        self,
        elements: Sequence[SequenceElement],
        dtw_engine: Optional[DTWEngine] = None,
        min_frames: int = 5,
        score_threshold: float = 50.0,
        context_bias: float = 10.0,
        smoothing_window: int = 5,
        match_threshold: float = 70.0
    ):
        """
        Initialize action matcher.

        Args:
            elements: Ordered work elements
            dtw_engine: DTW engine (default settings if None)
            min_frames: Minimum live window length
            score_threshold: Normalized DTW distance mapped to a score of 0
            context_bias: Score bonus for the expected element
            smoothing_window: Number of scores averaged per element
            match_threshold: Smoothed score a match must exceed
        """
        self.elements = list(elements)
        self.dtw_engine = dtw_engine or DTWEngine()
        self.min_frames = min_frames
        self.score_threshold = score_threshold
        self.context_bias = context_bias
        self.smoothing_window = smoothing_window
        self.match_threshold = match_threshold

        self.score_history: Dict[int, Deque[float]] = {}

    def compare(self, live_window: Sequence[Any], reference: Sequence[Any]) -> float:
        """
        Score a live window against a golden sequence.

        The trailing ``min(len(live), len(reference))`` live frames are aligned
        with the leading frames of the reference.

        Returns:
            Similarity score in [0, 100]
        """
        length = min(len(live_window), len(reference))
        if length == 0:
            return 0.0

        live = list(live_window)[-length:]
        golden = list(reference)[:length]

        result = self.dtw_engine.compute(live, golden)
        return similarity_score(result, self.score_threshold)

    def match(self, live_window: Optional[Sequence[Any]], expected_index: int = 0) -> Optional[MatchResult]:
        """
        Find the element the live window most resembles.

        Args:
            live_window: Recent poses, oldest first
            expected_index: Index of the element expected next

        Returns:
            Best match if its smoothed score exceeds the match threshold, else None
        """
        if not live_window or len(live_window) < self.min_frames:
            return None

        results = []
        for index, element in enumerate(self.elements):
            if not element.reference_sequence:
                continue

            score = self.compare(live_window, element.reference_sequence)

            is_context = index == expected_index
            if is_context:
                score += self.context_bias

            history = self.score_history.setdefault(index, deque(maxlen=self.smoothing_window))
            history.append(score)
            smoothed = sum(history) / len(history)

            results.append(MatchResult(
                element_index=index,
                element=element,
                score=smoothed,
                raw_score=score,
                is_context_match=is_context
            ))

        if not results:
            return None

        best = max(results, key=lambda r: r.score)
        if best.score > self.match_threshold:
            return best
        return None

    def reset(self) -> None:
        """Forget score history."""
        self.score_history.clear()


class SequenceComplianceEngine:
    """Tracks execution of an ordered list of work elements."""

    def __init__(
        self,
        elements: Sequence[SequenceElement],
        matcher: Optional[ActionMatcher] = None,
        overrun_factor: float = 1.5,
        overrun_debounce: float = 5.0
    ):
        """
        Initialize compliance engine.

        Args:
            elements: Ordered work elements
            matcher: Action matcher (built over ``elements`` if None)
            overrun_factor: Multiple of the standard duration that counts as an overrun
            overrun_debounce: Minimum time between overrun records of one step
        """
        self.elements = list(elements)
        self.matcher = matcher or ActionMatcher(self.elements)
        self.overrun_factor = overrun_factor
        self.overrun_debounce = overrun_debounce

        self.step_index = 0
        self.actual_start_time: Optional[float] = None
        self.step_start_time: Optional[float] = None
        self.history: List[Dict[str, Any]] = []
        self.anomalies: List[Dict[str, Any]] = []
        self.is_sequence_mismatch = False
        self.mismatch_count = 0
        self._last_overrun: Dict[int, float] = {}

    @property
    def current_element(self) -> Optional[SequenceElement]:
        if 0 <= self.step_index < len(self.elements):
            return self.elements[self.step_index]
        return None

    def reset(self, timestamp: Optional[float] = None) -> None:
        """Restart from the first step."""
        if timestamp is None:
            timestamp = time.time()

        self.step_index = 0
        self.actual_start_time = timestamp
        self.step_start_time = timestamp
        self.history = []
        self.anomalies = []
        self.is_sequence_mismatch = False
        self.mismatch_count = 0
        self._last_overrun = {}
        self.matcher.reset()

    def update(self, match: Optional[MatchResult], timestamp: Optional[float] = None) -> Dict[str, Any]:
        """
        Apply a match result for the current moment.

        Args:
            match: Result of ``ActionMatcher.match`` (None when nothing matched)
            timestamp: Current time (uses current time if None)

        Returns:
            Compliance status
        """
        if timestamp is None:
            timestamp = time.time()

        if self.actual_start_time is None:
            self.actual_start_time = timestamp
        if self.step_start_time is None:
            self.step_start_time = timestamp

        expected = self.current_element
        elapsed = timestamp - self.step_start_time

        if match is None:
            return self.get_status(elapsed)

        if match.element_index == self.step_index:
            self.is_sequence_mismatch = False
        else:
            if not self.is_sequence_mismatch:
                self.anomalies.append({
                    'timestamp': timestamp,
                    'type': SEQUENCE_MISMATCH,
                    'stepIndex': self.step_index,
                    'expectedStep': expected.name if expected else None,
                    'detectedStep': match.element.name,
                    'score': match.score,
                })
                logger.info(f"Sequence mismatch at step {self.step_index}: detected {match.element.name}")
            self.is_sequence_mismatch = True
            self.mismatch_count += 1

        if expected is not None and elapsed > expected.standard_duration * self.overrun_factor:
            last = self._last_overrun.get(self.step_index)
            if last is None or timestamp - last > self.overrun_debounce:
                self._last_overrun[self.step_index] = timestamp
                self.anomalies.append({
                    'timestamp': timestamp,
                    'type': CT_OVERRUN,
                    'stepIndex': self.step_index,
                    'step': expected.name,
                    'actual': round(elapsed, 1),
                    'standard': expected.standard_duration,
                })
                logger.info(f"Cycle time overrun at step {self.step_index}: {elapsed:.1f} > {expected.standard_duration}")

        return self.get_status(elapsed, match)

    def process(self, live_window: Sequence[Any], timestamp: Optional[float] = None) -> Dict[str, Any]:
        """Match a live window against the current step and apply the result."""
        return self.update(self.matcher.match(live_window, self.step_index), timestamp)

    def advance(self, timestamp: Optional[float] = None) -> bool:
        """
        Close the current step and move to the next one.

        Returns:
            False if already at the last step
        """
        if self.step_index >= len(self.elements) - 1:
            return False

        if timestamp is None:
            timestamp = time.time()
        started = self.step_start_time if self.step_start_time is not None else timestamp

        completed = self.elements[self.step_index].to_dict()
        completed['actualDuration'] = timestamp - started
        self.history.append(completed)

        self.step_index += 1
        self.step_start_time = timestamp
        self.is_sequence_mismatch = False
        return True

    def get_status(self, elapsed: float = 0.0, match: Optional[MatchResult] = None) -> Dict[str, Any]:
        """Compliance status for the current step."""
        expected = self.current_element
        actual_ct = round(elapsed, 1)
        variance = (actual_ct - expected.standard_duration) if expected else 0.0

        return {
            'currentStep': expected.to_dict() if expected else None,
            'stepIndex': self.step_index,
            'totalSteps': len(self.elements),
            'actualCT': actual_ct,
            'ctVariance': round(variance, 1),
            'isSequenceMismatch': self.is_sequence_mismatch,
            'match': match.to_dict() if match else None,
            'history': list(self.history),
            'anomalies': list(self.anomalies),
        }
