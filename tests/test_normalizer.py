"""Test suite for pose normalization."""

import pytest

from conftest import build_keypoints
from workstudy.core.data_types import Keypoint
from workstudy.motion.normalizer import PoseNormalizer, calculate_similarity, get_keypoint, normalize


class TestPoseNormalizer:
    """Test cases for PoseNormalizer class."""

    def setup_method(self):
        """Setup test fixtures."""
        self.normalizer = PoseNormalizer()

    def test_empty_input(self):
        """Empty input yields an empty list."""
        assert self.normalizer.normalize([]) == []

    def test_hip_root_is_origin(self):
        """The hip midpoint maps to the origin."""
        result = {k.name: k for k in self.normalizer.normalize(build_keypoints())}
        mid_x = (result['left_hip'].x + result['right_hip'].x) / 2
        mid_y = (result['left_hip'].y + result['right_hip'].y) / 2
        assert mid_x == pytest.approx(0.0)
        assert mid_y == pytest.approx(0.0)

    def test_translation_and_scale_invariance(self):
        """Moving or uniformly scaling a pose does not change its normalized form."""
        base = self.normalizer.normalize(build_keypoints())
        moved = self.normalizer.normalize(build_keypoints(dx=0.2, dy=-0.1, scale=1.7))

        for a, b in zip(base, moved):
            assert a.name == b.name
            assert a.x == pytest.approx(b.x)
            assert a.y == pytest.approx(b.y)

    def test_nose_root_when_hips_weak(self):
        """Low-confidence hips fall back to the nose as root."""
        keypoints = [
            kp._replace(score=0.1) if kp.name.endswith('_hip') else kp
            for kp in build_keypoints()
        ]
        result = get_keypoint(self.normalizer.normalize(keypoints), 'nose')
        assert result.x == pytest.approx(0.0)
        assert result.y == pytest.approx(0.0)

    def test_no_root_returns_input(self):
        """Without hips or nose the input is returned unchanged."""
        keypoints = [Keypoint('left_wrist', 0.3, 0.4, 0.9)]
        assert self.normalizer.normalize(keypoints) == keypoints

    def test_scores_preserved(self):
        """Scores and flags pass through normalization."""
        keypoints = build_keypoints(score=0.42)
        keypoints[0] = keypoints[0]._replace(is_predicted=True)
        result = self.normalizer.normalize(keypoints)
        assert all(k.score == 0.42 for k in result)
        assert result[0].is_predicted

    def test_similarity_identical(self):
        """Identical poses have similarity 1."""
        assert calculate_similarity(build_keypoints(), build_keypoints()) == pytest.approx(1.0)

    def test_similarity_invariant_to_position(self):
        """Similarity ignores translation and scale."""
        similarity = self.normalizer.calculate_similarity(
            build_keypoints(), build_keypoints(dx=0.3, scale=0.5)
        )
        assert similarity == pytest.approx(1.0)

    def test_similarity_drops_for_different_pose(self):
        """Raising both arms lowers similarity."""
        raised = build_keypoints({
            'left_wrist': (0.70, 0.05), 'right_wrist': (0.30, 0.05),
            'left_elbow': (0.68, 0.20), 'right_elbow': (0.32, 0.20),
        })
        similarity = self.normalizer.calculate_similarity(build_keypoints(), raised)
        assert 0.0 <= similarity < 1.0

    def test_similarity_without_overlap(self):
        """No confident shared joints gives similarity 0."""
        assert self.normalizer.calculate_similarity(build_keypoints(score=0.1), build_keypoints()) == 0.0

    def test_get_keypoint(self, standing_keypoints):
        """Lookup works on lists and mappings, case-insensitively."""
        assert get_keypoint(standing_keypoints, 'Right_Wrist').name == 'right_wrist'
        assert get_keypoint({k.name: k for k in standing_keypoints}, 'nose').name == 'nose'
        assert get_keypoint(standing_keypoints, 'tail') is None
        assert get_keypoint(standing_keypoints, None) is None

    def test_module_level_normalize(self, standing_keypoints):
        """Module helper uses default settings."""
        assert normalize(standing_keypoints) == PoseNormalizer().normalize(standing_keypoints)
