"""Geometry helpers shared by proximity and region rules."""

from typing import Any, Iterable, List, Optional, Sequence, Tuple
import math
import logging

from ..core.data_types import Keypoint, ObjectDetection
from ..motion.normalizer import get_keypoint

logger = logging.getLogger(__name__)

# Fuzzy tolerance for '=' and '!=' comparisons
EQUALITY_TOLERANCE = 0.05

# Minimum wrist score for region compliance
ROI_MIN_SCORE = 0.3


def evaluate_comparison(value: Optional[float], operator: str, target: float, target2: Optional[float] = None) -> bool:
    """
    Compare a measured value against a rule target.

    Args:
        value: Measured value (None evaluates false)
        operator: One of ``> < >= <= = != BETWEEN``
        target: Target value (lower bound for BETWEEN)
        target2: Upper bound for BETWEEN (defaults to ``target``)

    Returns:
        Comparison result; unknown operators evaluate false
    """
    if value is None or target is None:
        return False

    if operator == '>':
        return value > target
    if operator == '<':
        return value < target
    if operator == '>=':
        return value >= target
    if operator == '<=':
        return value <= target
    if operator in ('=', '=='):
        return abs(value - target) < EQUALITY_TOLERANCE
    if operator == '!=':
        return abs(value - target) >= EQUALITY_TOLERANCE
    if operator == 'BETWEEN':
        upper = target2 if target2 is not None else target
        return target <= value <= upper
    return False


def point_distance(a: Any, b: Any) -> float:
    """Euclidean distance between two points with x/y attributes."""
    return math.hypot(a.x - b.x, a.y - b.y)


def bbox_center(bbox: Sequence[float]) -> Tuple[float, float]:
    """Center of an (x, y, w, h) box."""
    x, y, w, h = bbox
    return (x + w / 2.0, y + h / 2.0)


def is_inside(x: float, y: float, roi: Any) -> bool:
    """Check if a point lies inside a region (edges inclusive)."""
    if roi is None:
        return False
    return roi.x <= x <= roi.x + roi.width and roi.y <= y <= roi.y + roi.height


def is_center_inside(bbox: Sequence[float], roi: Any) -> bool:
    """Check if the center of a box lies inside a region."""
    cx, cy = bbox_center(bbox)
    return is_inside(cx, cy, roi)


def wrist_in_roi(keypoints: Any, roi: Any, min_score: float = ROI_MIN_SCORE) -> bool:
    """
    Check if either wrist is inside a region.

    Args:
        keypoints: Keypoint list or name mapping
        roi: Region with x, y, width, height
        min_score: Minimum wrist score to count

    Returns:
        True if a sufficiently confident wrist is inside the region
    """
    for name in ('right_wrist', 'left_wrist'):
        wrist = get_keypoint(keypoints, name)
        if wrist is not None and wrist.score >= min_score and is_inside(wrist.x, wrist.y, roi):
            return True
    return False


def objects_of_class(objects: Iterable[ObjectDetection], class_name: Optional[str]) -> List[ObjectDetection]:
    """Objects whose class matches exactly."""
    return [obj for obj in objects or [] if obj.class_name == class_name]


def object_near_joint(
    objects: Iterable[ObjectDetection],
    class_name: Optional[str],
    joint: Optional[Keypoint],
    distance: float,
    operator: str = '<'
) -> bool:
    """
    Check if any object of a class is within (or beyond) a distance of a joint.

    Args:
        objects: Detected objects
        class_name: Object class to consider
        joint: Body joint, None evaluates false
        distance: Distance threshold
        operator: ``<`` for nearer than, ``>`` for farther than

    Returns:
        True if any matching object satisfies the comparison
    """
    if joint is None:
        return False

    for obj in objects_of_class(objects, class_name):
        cx, cy = obj.center
        dist = math.hypot(cx - joint.x, cy - joint.y)
        if operator == '>':
            if dist > distance:
                return True
        elif dist < distance:
            return True
    return False
