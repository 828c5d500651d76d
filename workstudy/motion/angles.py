"""Joint angle geometry for ergonomic analysis."""

from typing import Any, Dict, List
import math
import numpy as np

from ..core.data_types import keypoint_map


class AngleCalculator:
    """Calculate joint angles from pose keypoints."""

    def calculate_angle(self, point1: Any, vertex: Any, point3: Any) -> float:
        """
        Calculate the angle at ``vertex`` between rays to ``point1`` and ``point3``.

        Args:
            point1: First point with x, y
            vertex: Vertex point with x, y
            point3: Third point with x, y

        Returns:
            Angle in degrees (0-180), 0 for missing points or zero-length rays
        """
        if point1 is None or vertex is None or point3 is None:
            return 0.0

        v1 = np.array([point1.x - vertex.x, point1.y - vertex.y], dtype=float)
        v2 = np.array([point3.x - vertex.x, point3.y - vertex.y], dtype=float)

        norm = np.linalg.norm(v1) * np.linalg.norm(v2)
        if norm == 0 or not np.isfinite(norm):
            return 0.0

        cosine = float(np.clip(np.dot(v1, v2) / norm, -1.0, 1.0))
        angle = math.degrees(math.acos(cosine))
        return 0.0 if math.isnan(angle) else angle

    def calculate_upper_arm_angle(self, keypoints: Any, side: str = 'right') -> float:
        """Shoulder angle as 180 minus the hip-shoulder-elbow angle (arm raised overhead gives 0)."""
        joints = keypoint_map(keypoints)
        shoulder = joints.get(f'{side}_shoulder')
        elbow = joints.get(f'{side}_elbow')
        hip = joints.get(f'{side}_hip')

        if not shoulder or not elbow or not hip:
            return 0.0

        return 180.0 - self.calculate_angle(hip, shoulder, elbow)

    def calculate_lower_arm_angle(self, keypoints: Any, side: str = 'right') -> float:
        """Elbow angle."""
        joints = keypoint_map(keypoints)
        shoulder = joints.get(f'{side}_shoulder')
        elbow = joints.get(f'{side}_elbow')
        wrist = joints.get(f'{side}_wrist')

        if not shoulder or not elbow or not wrist:
            return 0.0

        return self.calculate_angle(shoulder, elbow, wrist)

    def calculate_wrist_angle(self, keypoints: Any, side: str = 'right') -> float:
        """Wrist deviation from the horizontal forearm line."""
        joints = keypoint_map(keypoints)
        elbow = joints.get(f'{side}_elbow')
        wrist = joints.get(f'{side}_wrist')

        if not elbow or not wrist:
            return 0.0

        delta_y = abs(wrist.y - elbow.y)
        delta_x = abs(wrist.x - elbow.x)
        return math.degrees(math.atan2(delta_y, delta_x))

    def calculate_neck_angle(self, keypoints: Any) -> float:
        """Neck flexion from vertical, nose relative to the shoulder midpoint."""
        joints = keypoint_map(keypoints)
        nose = joints.get('nose')
        left_shoulder = joints.get('left_shoulder')
        right_shoulder = joints.get('right_shoulder')

        if not nose or not left_shoulder or not right_shoulder:
            return 0.0

        mid_x = (left_shoulder.x + right_shoulder.x) / 2
        mid_y = (left_shoulder.y + right_shoulder.y) / 2

        return math.degrees(math.atan2(abs(nose.x - mid_x), abs(nose.y - mid_y)))

    def calculate_trunk_angle(self, keypoints: Any) -> float:
        """Trunk flexion from vertical."""
        joints = keypoint_map(keypoints)
        names = ('left_shoulder', 'right_shoulder', 'left_hip', 'right_hip')
        if any(joints.get(name) is None for name in names):
            return 0.0

        ls, rs, lh, rh = (joints[name] for name in names)
        shoulder_mid = ((ls.x + rs.x) / 2, (ls.y + rs.y) / 2)
        hip_mid = ((lh.x + rh.x) / 2, (lh.y + rh.y) / 2)

        delta_y = abs(shoulder_mid[1] - hip_mid[1])
        delta_x = abs(shoulder_mid[0] - hip_mid[0])
        return math.degrees(math.atan2(delta_x, delta_y))

    def calculate_leg_angle(self, keypoints: Any, side: str = 'right') -> float:
        """Knee angle."""
        joints = keypoint_map(keypoints)
        hip = joints.get(f'{side}_hip')
        knee = joints.get(f'{side}_knee')
        ankle = joints.get(f'{side}_ankle')

        if not hip or not knee or not ankle:
            return 0.0

        return self.calculate_angle(hip, knee, ankle)

    def calculate_trunk_twist(self, keypoints: Any) -> float:
        # Rotation is not observable from a single 2D view.
        return 0.0

    def calculate_neck_twist(self, keypoints: Any) -> float:
        return 0.0

    def calculate_all_angles(self, keypoints: Any, side: str = 'right') -> Dict[str, float]:
        """
        Calculate every ergonomic angle for both sides.

        Args:
            keypoints: Keypoint list or name -> keypoint mapping
            side: Side used for the generic keys (upperArm, lowerArm, wrist, leg)

        Returns:
            Dictionary of angles in degrees
        """
        joints = keypoint_map(keypoints)
        angles = {
            'trunkFlexion': self.calculate_trunk_angle(joints),
            'neckFlexion': self.calculate_neck_angle(joints),
            'trunkTwist': self.calculate_trunk_twist(joints),
            'neckTwist': self.calculate_neck_twist(joints),
            'upperArmFlexionRight': self.calculate_upper_arm_angle(joints, 'right'),
            'lowerArmFlexionRight': self.calculate_lower_arm_angle(joints, 'right'),
            'wristFlexionRight': self.calculate_wrist_angle(joints, 'right'),
            'upperArmFlexionLeft': self.calculate_upper_arm_angle(joints, 'left'),
            'lowerArmFlexionLeft': self.calculate_lower_arm_angle(joints, 'left'),
            'wristFlexionLeft': self.calculate_wrist_angle(joints, 'left'),
            'legFlexionRight': self.calculate_leg_angle(joints, 'right'),
            'legFlexionLeft': self.calculate_leg_angle(joints, 'left'),
            'legSupport': 1.0,
        }

        suffix = 'Left' if side == 'left' else 'Right'
        angles['upperArm'] = angles[f'upperArmFlexion{suffix}']
        angles['lowerArm'] = angles[f'lowerArmFlexion{suffix}']
        angles['wrist'] = angles[f'wristFlexion{suffix}']
        angles['leg'] = angles[f'legFlexion{suffix}']
        angles['neck'] = angles['neckFlexion']
        angles['trunk'] = angles['trunkFlexion']

        return angles

    def smooth_angle(self, angle_history: List[float], new_angle: float, window_size: int = 5) -> float:
        """
        Append an angle to its history and return the moving average.

        Args:
            angle_history: Previous values, updated in place
            new_angle: New angle value
            window_size: Moving average window

        Returns:
            Smoothed angle
        """
        angle_history.append(new_angle)
        while len(angle_history) > window_size:
            angle_history.pop(0)
        return sum(angle_history) / len(angle_history)

