"""Test suite for joint angle calculation."""

import math
import pytest

from conftest import build_keypoints
from workstudy.core.data_types import Keypoint
from workstudy.motion.angles import AngleCalculator


def point(x, y, name='p'):
    return Keypoint(name, x, y)


class TestAngleCalculator:
    """Test cases for AngleCalculator class."""

    def setup_method(self):
        """Setup test fixtures."""
        self.calc = AngleCalculator()

    def test_right_angle(self):
        assert self.calc.calculate_angle(point(1, 0), point(0, 0), point(0, 1)) == pytest.approx(90.0)

    def test_straight_angle(self):
        assert self.calc.calculate_angle(point(-1, 0), point(0, 0), point(1, 0)) == pytest.approx(180.0)

    def test_degenerate_vector(self):
        """Zero-length rays give 0 rather than NaN."""
        angle = self.calc.calculate_angle(point(0, 0), point(0, 0), point(1, 1))
        assert angle == 0.0
        assert not math.isnan(angle)

    def test_missing_point(self):
        assert self.calc.calculate_angle(None, point(0, 0), point(1, 1)) == 0.0

    def test_upper_arm_angle(self):
        """Arm along the trunk gives 180, arm straight overhead gives 0."""
        down = build_keypoints({'right_elbow': (0.40, 0.50), 'right_hip': (0.40, 0.65)})
        up = build_keypoints({'right_elbow': (0.40, 0.20), 'right_hip': (0.40, 0.65)})
        assert self.calc.calculate_upper_arm_angle(down, 'right') == pytest.approx(180.0)
        assert self.calc.calculate_upper_arm_angle(up, 'right') == pytest.approx(0.0, abs=1e-6)

    def test_upright_trunk_and_neck(self):
        """Symmetric standing figure has no trunk or neck flexion."""
        keypoints = build_keypoints()
        assert self.calc.calculate_trunk_angle(keypoints) == pytest.approx(0.0)
        assert self.calc.calculate_neck_angle(keypoints) == pytest.approx(0.0)

    def test_straight_leg(self):
        assert self.calc.calculate_leg_angle(build_keypoints(), 'left') == pytest.approx(180.0)

    def test_absent_joints(self):
        """Missing joints give 0 for every accessor."""
        keypoints = [Keypoint('nose', 0.5, 0.2)]
        assert self.calc.calculate_upper_arm_angle(keypoints) == 0.0
        assert self.calc.calculate_lower_arm_angle(keypoints) == 0.0
        assert self.calc.calculate_wrist_angle(keypoints) == 0.0
        assert self.calc.calculate_neck_angle(keypoints) == 0.0
        assert self.calc.calculate_trunk_angle(keypoints) == 0.0
        assert self.calc.calculate_leg_angle(keypoints) == 0.0

    def test_twist_is_zero(self, standing_keypoints):
        assert self.calc.calculate_trunk_twist(standing_keypoints) == 0.0
        assert self.calc.calculate_neck_twist(standing_keypoints) == 0.0

    def test_all_angles_generic_keys(self, standing_keypoints):
        """Generic keys follow the requested side."""
        angles = self.calc.calculate_all_angles(standing_keypoints, side='left')
        assert angles['lowerArm'] == angles['lowerArmFlexionLeft']
        assert angles['leg'] == angles['legFlexionLeft']
        assert angles['trunk'] == angles['trunkFlexion']

    def test_smooth_angle(self):
        history = []
        for value in [10, 20, 30, 40, 50, 60]:
            smoothed = self.calc.smooth_angle(history, value, window_size=5)
        assert len(history) == 5
        assert smoothed == pytest.approx(40.0)
