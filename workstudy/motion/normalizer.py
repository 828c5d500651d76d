"""Translation and scale invariant pose normalization."""

from typing import Any, List, Mapping, Optional, Sequence
import numpy as np
import logging

from ..core.data_types import Keypoint, keypoint_map

logger = logging.getLogger(__name__)

MIN_ROOT_SCORE = 0.3


def get_keypoint(keypoints: Any, name: Optional[str]) -> Optional[Keypoint]:
    """
    Look up a keypoint by name.

    Args:
        keypoints: Keypoint list or name -> keypoint mapping
        name: Joint name (case-insensitive)

    Returns:
        Keypoint or None if absent
    """
    if not keypoints or not name:
        return None

    name = name.strip().lower()
    if isinstance(keypoints, Mapping):
        return keypoints.get(name)

    for kp in keypoints:
        if kp.name == name:
            return kp
    return None


class PoseNormalizer:
    """Normalizes keypoints so camera distance and position do not affect matching."""

    def __init__(self, min_score: float = MIN_ROOT_SCORE):
        """
        Initialize pose normalizer.

        Args:
            min_score: Minimum joint score used for the hip root and for comparisons
        """
        self.min_score = min_score

    def normalize(self, keypoints: Sequence[Keypoint]) -> List[Keypoint]:
        """
        Center a pose on its root joint and scale it by torso size.

        The root is the hip midpoint when both hips are confident, otherwise
        the nose. Scale is the mean root-to-shoulder distance.

        Args:
            keypoints: Keypoints of one pose

        Returns:
            Normalized keypoints, or the input unchanged if no root is available
        """
        if not keypoints:
            return []

        joints = keypoint_map(keypoints)
        left_hip = joints.get('left_hip')
        right_hip = joints.get('right_hip')

        if (left_hip and right_hip
                and left_hip.score > self.min_score and right_hip.score > self.min_score):
            root_x = (left_hip.x + right_hip.x) / 2
            root_y = (left_hip.y + right_hip.y) / 2
        else:
            nose = joints.get('nose')
            if nose is None:
                return list(keypoints)
            root_x, root_y = nose.x, nose.y

        scale = 1.0
        left_shoulder = joints.get('left_shoulder')
        right_shoulder = joints.get('right_shoulder')
        if left_shoulder and right_shoulder:
            dist_l = np.hypot(left_shoulder.x - root_x, left_shoulder.y - root_y)
            dist_r = np.hypot(right_shoulder.x - root_x, right_shoulder.y - root_y)
            scale = float((dist_l + dist_r) / 2)

        if scale == 0:
            scale = 1.0

        return [
            kp._replace(x=(kp.x - root_x) / scale, y=(kp.y - root_y) / scale)
            for kp in keypoints
        ]

    def calculate_similarity(self, pose_a: Sequence[Keypoint], pose_b: Sequence[Keypoint]) -> float:
        """
        Compare two poses after normalization.

        Args:
            pose_a: First pose keypoints
            pose_b: Second pose keypoints

        Returns:
            Similarity in [0, 1], 1 for identical poses, 0 if no joints overlap
        """
        avg_distance = self.mean_joint_distance(self.normalize(pose_a), self.normalize(pose_b))
        if avg_distance is None:
            return 0.0
        return max(0.0, 1.0 - avg_distance * 2)

    def mean_joint_distance(
        self,
        norm_a: Sequence[Keypoint],
        norm_b: Sequence[Keypoint]
    ) -> Optional[float]:
        """Average Euclidean distance over confident joints present in both poses."""
        joints_b = keypoint_map(norm_b)

        total = 0.0
        count = 0
        for kp_a in norm_a:
            kp_b = joints_b.get(kp_a.name)
            if kp_b is not None and kp_a.score > self.min_score and kp_b.score > self.min_score:
                total += float(np.hypot(kp_a.x - kp_b.x, kp_a.y - kp_b.y))
                count += 1

        if count == 0:
            return None
        return total / count


_default_normalizer = PoseNormalizer()


def normalize(keypoints: Sequence[Keypoint]) -> List[Keypoint]:
    """Normalize keypoints with default settings."""
    return _default_normalizer.normalize(keypoints)


def calculate_similarity(pose_a: Sequence[Keypoint], pose_b: Sequence[Keypoint]) -> float:
    """Pose similarity with default settings."""
    return _default_normalizer.calculate_similarity(pose_a, pose_b)
