"""Per-frame detection data structures."""

from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple


class Keypoint(NamedTuple):
    """Single named body joint."""
    name: str
    x: float
    y: float
    score: float = 1.0
    z: Optional[float] = None
    is_predicted: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Keypoint":
        """Create from a wire-format dictionary."""
        score = data.get('score', data.get('confidence', 1.0))
        return cls(
            name=str(data.get('name', '')).strip().lower(),
            x=float(data.get('x', 0.0)),
            y=float(data.get('y', 0.0)),
            score=float(score) if score is not None else 0.0,
            z=float(data['z']) if data.get('z') is not None else None,
            is_predicted=bool(data.get('isPredicted', data.get('is_predicted', False)))
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {'name': self.name, 'x': self.x, 'y': self.y, 'score': self.score}
        if self.z is not None:
            data['z'] = self.z
        if self.is_predicted:
            data['isPredicted'] = True
        return data


class Pose(NamedTuple):
    """Pose detection for one person."""
    keypoints: List[Keypoint]
    id: Optional[Any] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Pose":
        """Create from a dictionary or a bare keypoint list."""
        if isinstance(data, Pose):
            return data
        if isinstance(data, (list, tuple)):
            return cls(keypoints=[_to_keypoint(k) for k in data])

        pose_id = data.get('id', data.get('trackId'))
        return cls(
            keypoints=[_to_keypoint(k) for k in data.get('keypoints') or []],
            id=pose_id
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {'keypoints': [k.to_dict() for k in self.keypoints]}
        if self.id is not None:
            data['id'] = self.id
        return data


class Landmark(NamedTuple):
    """Hand landmark point."""
    x: float
    y: float
    z: float = 0.0

    @classmethod
    def from_value(cls, value: Any) -> "Landmark":
        if isinstance(value, Mapping):
            return cls(float(value.get('x', 0.0)), float(value.get('y', 0.0)), float(value.get('z', 0.0) or 0.0))
        values = list(value) + [0.0] * (3 - len(value))
        return cls(float(values[0]), float(values[1]), float(values[2]))


class ObjectDetection(NamedTuple):
    """Object detection with (x, y, w, h) bounding box."""
    class_name: str
    bbox: Tuple[float, float, float, float]
    confidence: float = 1.0

    @property
    def center(self) -> Tuple[float, float]:
        x, y, w, h = self.bbox
        return (x + w / 2.0, y + h / 2.0)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ObjectDetection":
        bbox = list(data.get('bbox') or [0.0, 0.0, 0.0, 0.0])
        bbox = (bbox + [0.0] * 4)[:4]
        confidence = data.get('confidence', data.get('score', 1.0))
        return cls(
            class_name=str(data.get('class', data.get('class_name', ''))),
            bbox=tuple(float(v) for v in bbox),
            confidence=float(confidence) if confidence is not None else 0.0
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'class': self.class_name, 'bbox': list(self.bbox), 'confidence': self.confidence}


class ClassifierPrediction(NamedTuple):
    """Top prediction of an external image/pose classifier."""
    class_name: str
    probability: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClassifierPrediction":
        probability = data.get('probability', data.get('confidence', 0.0))
        return cls(
            class_name=str(data.get('className', data.get('class', ''))),
            probability=float(probability) if probability is not None else 0.0
        )


class Frame(NamedTuple):
    """All detections visible at one timestamp."""
    timestamp: float
    poses: List[Pose] = []
    hands: List[List[Landmark]] = []
    objects: List[ObjectDetection] = []
    classifiers: Dict[str, ClassifierPrediction] = {}
    detections: Dict[str, List[ObjectDetection]] = {}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Frame":
        """
        Create frame from the wire format.

        Args:
            data: Dictionary with poses, hands, objects, timestamp and optional
                classifier outputs (``classifiers``/``teachableMachine`` and
                ``detections``/``roboflow``)

        Returns:
            Frame instance

        Raises:
            ValueError: If the timestamp is missing or not numeric
        """
        if data.get('timestamp') is None:
            raise ValueError("Frame timestamp is required")

        classifiers = data.get('classifiers', data.get('teachableMachine')) or {}
        detections = data.get('detections', data.get('roboflow')) or {}

        return cls(
            timestamp=float(data['timestamp']),
            poses=[Pose.from_dict(p) for p in data.get('poses') or []],
            hands=[[Landmark.from_value(lm) for lm in hand] for hand in data.get('hands') or []],
            objects=[ObjectDetection.from_dict(o) for o in data.get('objects') or []],
            classifiers={
                str(model_id): ClassifierPrediction.from_dict(pred)
                for model_id, pred in classifiers.items() if pred
            },
            detections={
                str(model_id): [ObjectDetection.from_dict(d) for d in dets or []]
                for model_id, dets in detections.items()
            }
        )


def _to_keypoint(value: Any) -> Keypoint:
    if isinstance(value, Keypoint):
        return value
    return Keypoint.from_dict(value)


def keypoint_map(keypoints: Any) -> Dict[str, Keypoint]:
    """Index keypoints by name (first occurrence wins)."""
    if isinstance(keypoints, Mapping):
        return dict(keypoints)
    result: Dict[str, Keypoint] = {}
    for kp in keypoints or []:
        if kp.name not in result:
            result[kp.name] = kp
    return result


# BlazePose landmark names; COCO-17 names are a subset
JOINT_NAMES = (
    "nose", "left_eye_inner", "left_eye", "left_eye_outer", "right_eye_inner", "right_eye",
    "right_eye_outer", "left_ear", "right_ear", "mouth_left", "mouth_right", "left_shoulder",
    "right_shoulder", "left_elbow", "right_elbow", "left_wrist", "right_wrist", "left_pinky",
    "right_pinky", "left_index", "right_index", "left_thumb", "right_thumb", "left_hip",
    "right_hip", "left_knee", "right_knee", "left_ankle", "right_ankle", "left_heel",
    "right_heel", "left_foot_index", "right_foot_index",
)
