"""Dynamic time warping for matching motion sequences."""

from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple
import math
import numpy as np
import logging

from ..core.data_types import Keypoint, Pose
from .normalizer import PoseNormalizer

logger = logging.getLogger(__name__)

# Joint -> (x, y, score) after normalization
PreparedPose = Dict[str, Tuple[float, float, float]]


class DTWResult(NamedTuple):
    """DTW comparison result."""
    distance: float
    normalized_distance: float
    is_match: bool


class DTWEngine:
    """Banded DTW distance between pose sequences."""

    def __init__(
        self,
        window_fraction: float = 0.2,
        threshold: float = 0.4,
        normalizer: Optional[PoseNormalizer] = None
    ):
        """
        Initialize DTW engine.

        Args:
            window_fraction: Sakoe-Chiba band half-width as a fraction of the longer sequence
            threshold: Normalized distance below which two sequences match
            normalizer: Pose normalizer (default settings if None)
        """
        self.window_fraction = window_fraction
        self.threshold = threshold
        self.normalizer = normalizer or PoseNormalizer()

    def compute(self, sequence_a: Sequence[Any], sequence_b: Sequence[Any]) -> DTWResult:
        """
        Compute the DTW distance between two pose sequences.

        Args:
            sequence_a: Poses (Pose objects, keypoint lists or pose dictionaries)
            sequence_b: Poses in the same formats

        Returns:
            DTW result; empty input gives infinite distance and normalized distance 1.0
        """
        if not sequence_a or not sequence_b:
            return DTWResult(distance=math.inf, normalized_distance=1.0, is_match=False)

        prepared_a = self.prepare_sequence(sequence_a)
        prepared_b = self.prepare_sequence(sequence_b)

        n = len(prepared_a)
        m = len(prepared_b)

        dtw = np.full((n + 1, m + 1), np.inf)
        dtw[0, 0] = 0.0

        window = max(abs(n - m), int(math.floor(self.window_fraction * max(n, m))))

        for i in range(1, n + 1):
            for j in range(max(1, i - window), min(m, i + window) + 1):
                cost = self._prepared_distance(prepared_a[i - 1], prepared_b[j - 1])
                dtw[i, j] = cost + min(
                    dtw[i - 1, j],      # insertion
                    dtw[i, j - 1],      # deletion
                    dtw[i - 1, j - 1]   # match
                )

        distance = float(dtw[n, m])
        normalized_distance = distance / (n + m)

        return DTWResult(
            distance=distance,
            normalized_distance=normalized_distance,
            is_match=normalized_distance < self.threshold
        )

    def pose_distance(self, pose_a: Any, pose_b: Any) -> float:
        """
        Mean joint distance between two poses after normalization.

        Args:
            pose_a: First pose
            pose_b: Second pose

        Returns:
            Mean Euclidean distance over confident shared joints, 1.0 if none
        """
        if pose_a is None or pose_b is None:
            return 1.0
        return self._prepared_distance(self._prepare_pose(pose_a), self._prepare_pose(pose_b))

    def prepare_sequence(self, poses: Sequence[Any]) -> List[PreparedPose]:
        """Normalize every pose of a sequence once."""
        return [self._prepare_pose(pose) for pose in poses]

    def _prepare_pose(self, pose: Any) -> PreparedPose:
        keypoints = _extract_keypoints(pose)
        prepared: PreparedPose = {}
        for kp in self.normalizer.normalize(keypoints):
            if kp.name not in prepared:
                prepared[kp.name] = (kp.x, kp.y, kp.score)
        return prepared

    def _prepared_distance(self, pose_a: PreparedPose, pose_b: PreparedPose) -> float:
        min_score = self.normalizer.min_score
        total = 0.0
        count = 0
        for name, (ax, ay, a_score) in pose_a.items():
            other = pose_b.get(name)
            if other is None:
                continue
            bx, by, b_score = other
            if a_score > min_score and b_score > min_score:
                total += math.hypot(ax - bx, ay - by)
                count += 1

        if count == 0:
            return 1.0
        return total / count


def similarity_score(result: DTWResult, threshold: float = 50.0) -> float:
    """
    Convert a DTW result to a 0-100 similarity score.

    Args:
        result: DTW result
        threshold: Normalized distance mapped to a score of 0

    Returns:
        ``max(0, 100 - normalized_distance / threshold * 100)``
    """
    if threshold <= 0:
        return 0.0
    return max(0.0, 100.0 - (result.normalized_distance / threshold) * 100.0)


def _extract_keypoints(pose: Any) -> List[Keypoint]:
    if isinstance(pose, Pose):
        return pose.keypoints
    if isinstance(pose, dict):
        return Pose.from_dict(pose).keypoints
    if pose and not isinstance(pose[0], Keypoint):
        return Pose.from_dict(list(pose)).keypoints
    return list(pose or [])


def create_dtw_engine(**kwargs) -> DTWEngine:
    """
    Factory function to create DTW engine.

    Args:
        **kwargs: Arguments for DTWEngine

    Returns:
        DTWEngine instance
    """
    return DTWEngine(**kwargs)
