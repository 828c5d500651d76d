"""Test configuration for pytest."""

import sys
import os

# Add repository root to Python path for imports
root_path = os.path.join(os.path.dirname(__file__), '..')
sys.path.insert(0, os.path.abspath(root_path))

import pytest

from workstudy.core.data_types import Keypoint, Pose

# Standing figure in normalized image coordinates
STANDING = {
    'nose': (0.50, 0.20),
    'left_shoulder': (0.60, 0.35),
    'right_shoulder': (0.40, 0.35),
    'left_elbow': (0.65, 0.50),
    'right_elbow': (0.35, 0.50),
    'left_wrist': (0.67, 0.62),
    'right_wrist': (0.33, 0.62),
    'left_hip': (0.57, 0.65),
    'right_hip': (0.43, 0.65),
    'left_knee': (0.57, 0.80),
    'right_knee': (0.43, 0.80),
    'left_ankle': (0.57, 0.95),
    'right_ankle': (0.43, 0.95),
}


def build_keypoints(overrides=None, score=0.9, dx=0.0, dy=0.0, scale=1.0):
    """Keypoints of the standing figure, optionally moved, scaled or edited."""
    joints = dict(STANDING)
    joints.update(overrides or {})
    return [
        Keypoint(name=name, x=x * scale + dx, y=y * scale + dy, score=score)
        for name, (x, y) in joints.items()
    ]


def build_frame(timestamp, poses=None, **extra):
    """Wire-format frame dictionary."""
    frame = {'timestamp': timestamp, 'poses': poses or [], 'hands': [], 'objects': []}
    frame.update(extra)
    return frame


def pose_dict(keypoints, pose_id=None):
    data = {'keypoints': [k.to_dict() for k in keypoints]}
    if pose_id is not None:
        data['id'] = pose_id
    return data


@pytest.fixture
def keypoints_factory():
    """Provide the keypoint builder."""
    return build_keypoints


@pytest.fixture
def standing_keypoints():
    """Provide keypoints of a standing figure."""
    return build_keypoints()


@pytest.fixture
def standing_pose():
    """Provide a pose of a standing figure."""
    return Pose(keypoints=build_keypoints(), id=1)


@pytest.fixture
def three_state_model():
    """Provide a 3-state model advancing on wrist ROI compliance only."""
    return {
        'name': 'ROI sequence',
        'statesList': [
            {'id': 'a', 'name': 'A', 'isVA': True, 'roi': {'x': 0.0, 'y': 0.0, 'width': 1.0, 'height': 1.0},
             'minDuration': 0.5},
            {'id': 'b', 'name': 'B', 'isVA': False},
            {'id': 'c', 'name': 'C', 'isVA': True},
        ],
        'transitions': [],
    }


# Configure test discovery
collect_ignore = [
    "setup.py",
    "build",
    "dist",
    ".git",
    "__pycache__",
]
