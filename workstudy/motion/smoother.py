"""Temporal keypoint smoothing with occlusion prediction."""

from typing import Dict, List, Optional, Sequence, Tuple
import numpy as np
import logging

from ..core.data_types import Keypoint

logger = logging.getLogger(__name__)

# Child joint -> parent joint used to clamp extrapolated positions
BONE_TOPOLOGY = {
    'left_elbow': 'left_shoulder',
    'left_wrist': 'left_elbow',
    'right_elbow': 'right_shoulder',
    'right_wrist': 'right_elbow',
    'left_knee': 'left_hip',
    'left_ankle': 'left_knee',
    'right_knee': 'right_hip',
    'right_ankle': 'right_knee',
}


class PoseSmoother:
    """Exponential moving average smoother for one tracked pose."""

    def __init__(
        self,
        alpha: float = 0.5,
        visibility_threshold: float = 0.25,
        max_persistence: int = 20,
        decay_factor: float = 0.92,
        friction: float = 0.8,
        bone_confidence: float = 0.6,
        bone_slack: float = 1.2
    ):
        """
        Initialize pose smoother.

        Args:
            alpha: EMA weight of the newest observation
            visibility_threshold: Joints scoring below this are treated as occluded
            max_persistence: Frames an occluded joint is extrapolated before being released
            decay_factor: Score multiplier per extrapolated frame
            friction: Velocity multiplier per extrapolated frame
            bone_confidence: Minimum score of both joints to learn a bone length
            bone_slack: Allowed stretch of a learned bone when clamping predictions
        """
        self.alpha = alpha
        self.visibility_threshold = visibility_threshold
        self.max_persistence = max_persistence
        self.decay_factor = decay_factor
        self.friction = friction
        self.bone_confidence = bone_confidence
        self.bone_slack = bone_slack

        self.prev_keypoints: Optional[List[Keypoint]] = None
        self.velocities: Dict[str, Tuple[float, float]] = {}
        self.persistence: Dict[str, int] = {}
        self.bone_lengths: Dict[str, float] = {}

    def smooth(self, keypoints: Sequence[Keypoint]) -> List[Keypoint]:
        """
        Smooth the keypoints of the next frame.

        Args:
            keypoints: Raw keypoints, in the same order every frame

        Returns:
            Smoothed keypoints; occluded joints are extrapolated and flagged ``is_predicted``
        """
        if not keypoints:
            return list(keypoints or [])

        if self.prev_keypoints is None:
            self.prev_keypoints = list(keypoints)
            return list(keypoints)

        self._update_bone_lengths(keypoints)

        smoothed = []
        for index, current in enumerate(keypoints):
            prev = self.prev_keypoints[index] if index < len(self.prev_keypoints) else None
            smoothed.append(self._smooth_joint(current, prev))

        self.prev_keypoints = smoothed
        return smoothed

    def _smooth_joint(self, current: Keypoint, prev: Optional[Keypoint]) -> Keypoint:
        name = current.name
        self.persistence.setdefault(name, 0)
        vel_x, vel_y = self.velocities.setdefault(name, (0.0, 0.0))

        if prev is None:
            return current

        if current.score < self.visibility_threshold:
            self.persistence[name] += 1
            if self.persistence[name] > self.max_persistence:
                return current

            next_x = prev.x + vel_x * self.friction
            next_y = prev.y + vel_y * self.friction
            next_x, next_y = self._clamp_to_bone(name, next_x, next_y)

            self.velocities[name] = (vel_x * self.friction, vel_y * self.friction)

            return prev._replace(
                x=next_x,
                y=next_y,
                score=prev.score * self.decay_factor,
                is_predicted=True
            )

        self.persistence[name] = 0

        dx = current.x - prev.x
        dy = current.y - prev.y
        self.velocities[name] = (
            self.alpha * dx + (1 - self.alpha) * vel_x,
            self.alpha * dy + (1 - self.alpha) * vel_y
        )

        return current._replace(
            x=self.alpha * current.x + (1 - self.alpha) * prev.x,
            y=self.alpha * current.y + (1 - self.alpha) * prev.y,
            is_predicted=False
        )

    def _clamp_to_bone(self, name: str, x: float, y: float) -> Tuple[float, float]:
        parent_name = BONE_TOPOLOGY.get(name)
        max_len = self.bone_lengths.get(name)
        if not parent_name or not max_len:
            return x, y

        parent = next((k for k in self.prev_keypoints if k.name == parent_name), None)
        if parent is None:
            return x, y

        dx = x - parent.x
        dy = y - parent.y
        dist = float(np.hypot(dx, dy))
        limit = max_len * self.bone_slack
        if dist > limit:
            scale = limit / dist
            return parent.x + dx * scale, parent.y + dy * scale
        return x, y

    def _update_bone_lengths(self, keypoints: Sequence[Keypoint]) -> None:
        """Learn bone lengths from confident frames (EMA handles perspective changes)."""
        joints = {k.name: k for k in keypoints}
        for child_name, parent_name in BONE_TOPOLOGY.items():
            child = joints.get(child_name)
            parent = joints.get(parent_name)
            if not child or not parent:
                continue
            if child.score > self.bone_confidence and parent.score > self.bone_confidence:
                dist = float(np.hypot(child.x - parent.x, child.y - parent.y))
                previous = self.bone_lengths.get(child_name)
                self.bone_lengths[child_name] = dist if previous is None else 0.1 * dist + 0.9 * previous

    def reset(self) -> None:
        """Forget all history."""
        self.prev_keypoints = None
        self.velocities = {}
        self.persistence = {}
        self.bone_lengths = {}

    def set_alpha(self, alpha: float) -> None:
        """Adjust smoothing factor, clamped to [0.1, 1.0]."""
        self.alpha = max(0.1, min(1.0, alpha))
