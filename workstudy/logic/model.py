"""Declarative motion model: states, transitions and rule conditions."""

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union
import json
import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_serializer, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..core.data_types import Keypoint, Pose


class ModelBase(BaseModel):
    """Base for model definition records (camelCase on the wire)."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
        extra='ignore'
    )


class Roi(ModelBase):
    """Rectangular region in frame coordinates."""
    x: float = 0.0
    y: float = 0.0
    width: float = Field(0.0, ge=0.0)
    height: float = Field(0.0, ge=0.0)

    def contains(self, x: float, y: float) -> bool:
        return self.x <= x <= self.x + self.width and self.y <= y <= self.y + self.height


# --- Rule parameters ---------------------------------------------------------

class RuleParams(ModelBase):
    """Parameters shared by every rule."""
    trust_persistent: bool = Field(True, description="Accept extrapolated (predicted) joints")


class PoseAngleParams(RuleParams):
    joint_a: Optional[str] = None
    joint_b: Optional[str] = Field(None, description="Vertex joint")
    joint_c: Optional[str] = None
    operator: str = '>'
    value: float = 0.0
    value2: Optional[float] = None


class PoseRelationParams(RuleParams):
    joint_a: Optional[str] = None
    joint_b: Optional[str] = None
    component: str = 'y'
    operator: str = '<'
    target_type: str = Field('VALUE', description="VALUE or POINT")
    target_track_id: Optional[Any] = None
    value: float = 0.0
    value2: Optional[float] = None


class PoseVelocityParams(RuleParams):
    joint: Optional[str] = None
    operator: str = '>'
    value: float = 0.0
    value2: Optional[float] = None


class PoseMatchingParams(RuleParams):
    target_state_id: Optional[str] = None
    threshold: float = Field(0.8, ge=0.0, le=1.0)


class HandGestureParams(RuleParams):
    gesture: str = 'pointing'


class HandProximityParams(RuleParams):
    landmark: int = Field(0, ge=0, le=20)
    body_part: Optional[str] = None
    distance: float = 0.1
    operator: str = '<'


class ObjectProximityParams(RuleParams):
    object_class: Optional[str] = None
    joint: Optional[str] = None
    distance: float = 0.1
    operator: str = '<'


class ObjectInRoiParams(RuleParams):
    object_class: Optional[str] = None
    roi: Optional[Roi] = None
    roi_id: Optional[str] = Field(None, description="Name of a region declared on the model")


class OperatorProximityParams(RuleParams):
    joint: Optional[str] = None
    target_track_id: Any = 'nearest'
    distance: float = 0.1
    operator: str = '<'


class ClassifierParams(RuleParams):
    model_id: Optional[str] = None
    target_class: Optional[str] = None
    threshold: float = Field(0.8, ge=0.0, le=1.0)


class DetectionParams(ClassifierParams):
    threshold: float = Field(0.5, ge=0.0, le=1.0)


class SequenceMatchParams(RuleParams):
    target_sequence: List[Any] = Field(default_factory=list, description="Reference poses")
    threshold: float = Field(0.4, ge=0.0)
    buffer_size: int = Field(60, ge=1)


class AdvancedScriptParams(RuleParams):
    script: str = ''


# --- Rules -------------------------------------------------------------------

class RuleBase(ModelBase):
    """Leaf predicate of a condition tree."""
    id: Optional[str] = None
    type: str
    invert: bool = False


class PoseAngleRule(RuleBase):
    type: Literal['POSE_ANGLE'] = 'POSE_ANGLE'
    params: PoseAngleParams = Field(default_factory=PoseAngleParams)


class PoseRelationRule(RuleBase):
    type: Literal['POSE_RELATION'] = 'POSE_RELATION'
    params: PoseRelationParams = Field(default_factory=PoseRelationParams)


class PoseVelocityRule(RuleBase):
    type: Literal['POSE_VELOCITY'] = 'POSE_VELOCITY'
    params: PoseVelocityParams = Field(default_factory=PoseVelocityParams)


class PoseMatchingRule(RuleBase):
    type: Literal['POSE_MATCHING'] = 'POSE_MATCHING'
    params: PoseMatchingParams = Field(default_factory=PoseMatchingParams)


class HandGestureRule(RuleBase):
    type: Literal['HAND_GESTURE'] = 'HAND_GESTURE'
    params: HandGestureParams = Field(default_factory=HandGestureParams)


class HandProximityRule(RuleBase):
    type: Literal['HAND_PROXIMITY'] = 'HAND_PROXIMITY'
    params: HandProximityParams = Field(default_factory=HandProximityParams)


class ObjectProximityRule(RuleBase):
    type: Literal['OBJECT_PROXIMITY'] = 'OBJECT_PROXIMITY'
    params: ObjectProximityParams = Field(default_factory=ObjectProximityParams)


class ObjectInRoiRule(RuleBase):
    type: Literal['OBJECT_IN_ROI'] = 'OBJECT_IN_ROI'
    params: ObjectInRoiParams = Field(default_factory=ObjectInRoiParams)


class OperatorProximityRule(RuleBase):
    type: Literal['OPERATOR_PROXIMITY'] = 'OPERATOR_PROXIMITY'
    params: OperatorProximityParams = Field(default_factory=OperatorProximityParams)


class TeachableMachineRule(RuleBase):
    type: Literal['TEACHABLE_MACHINE'] = 'TEACHABLE_MACHINE'
    params: ClassifierParams = Field(default_factory=ClassifierParams)


class RoboflowDetectionRule(RuleBase):
    type: Literal['ROBOFLOW_DETECTION'] = 'ROBOFLOW_DETECTION'
    params: DetectionParams = Field(default_factory=DetectionParams)


class SequenceMatchRule(RuleBase):
    type: Literal['SEQUENCE_MATCH'] = 'SEQUENCE_MATCH'
    params: SequenceMatchParams = Field(default_factory=SequenceMatchParams)


class AdvancedScriptRule(RuleBase):
    type: Literal['ADVANCED_SCRIPT'] = 'ADVANCED_SCRIPT'
    params: AdvancedScriptParams = Field(default_factory=AdvancedScriptParams)


class UnknownRule(RuleBase):
    """Rule of a type this engine does not implement; always evaluates false."""
    params: Dict[str, Any] = Field(default_factory=dict)


RULE_TYPES = {
    'POSE_ANGLE': PoseAngleRule,
    'POSE_RELATION': PoseRelationRule,
    'POSE_VELOCITY': PoseVelocityRule,
    'POSE_MATCHING': PoseMatchingRule,
    'HAND_GESTURE': HandGestureRule,
    'HAND_PROXIMITY': HandProximityRule,
    'OBJECT_PROXIMITY': ObjectProximityRule,
    'OBJECT_IN_ROI': ObjectInRoiRule,
    'OPERATOR_PROXIMITY': OperatorProximityRule,
    'TEACHABLE_MACHINE': TeachableMachineRule,
    'ROBOFLOW_DETECTION': RoboflowDetectionRule,
    'SEQUENCE_MATCH': SequenceMatchRule,
    'ADVANCED_SCRIPT': AdvancedScriptRule,
}

Rule = Union[
    PoseAngleRule, PoseRelationRule, PoseVelocityRule, PoseMatchingRule,
    HandGestureRule, HandProximityRule, ObjectProximityRule, ObjectInRoiRule,
    OperatorProximityRule, TeachableMachineRule, RoboflowDetectionRule,
    SequenceMatchRule, AdvancedScriptRule, UnknownRule
]


def parse_rule(data: Dict[str, Any]) -> RuleBase:
    """
    Build the rule variant named by ``data['type']``.

    Args:
        data: Rule dictionary with type, params and optional id/invert

    Returns:
        Typed rule, or UnknownRule for unrecognized types
    """
    rule_type = str(data.get('type', '')).upper()
    rule_cls = RULE_TYPES.get(rule_type)
    if rule_cls is None:
        return UnknownRule.model_validate({**data, 'type': rule_type or 'UNKNOWN'})
    return rule_cls.model_validate({**data, 'type': rule_type, 'params': data.get('params') or {}})


class Condition(ModelBase):
    """AND/OR combination of rules and nested conditions."""
    id: Optional[str] = None
    operator: Literal['AND', 'OR'] = 'AND'
    rules: List[Any] = Field(default_factory=list, description="Rules or nested Conditions")
    invert: bool = False
    hold_time: float = Field(0.0, ge=0.0)

    @field_validator('operator', mode='before')
    @classmethod
    def validate_operator(cls, v):
        return str(v or 'AND').upper()

    @field_validator('rules', mode='before')
    @classmethod
    def validate_rules(cls, v):
        items = []
        for item in v or []:
            if isinstance(item, (Condition, RuleBase)):
                items.append(item)
            elif isinstance(item, dict) and 'rules' in item:
                items.append(Condition.model_validate(item))
            elif isinstance(item, dict):
                items.append(parse_rule(item))
            else:
                raise ValueError(f"Invalid condition item: {item!r}")
        return items

    @field_serializer('rules')
    def serialize_rules(self, rules: List[Any]) -> List[Dict[str, Any]]:
        return [item.model_dump(by_alias=True, exclude_none=True) for item in rules]

    def iter_rules(self):
        """Yield every leaf rule of the tree."""
        for item in self.rules:
            if isinstance(item, Condition):
                yield from item.iter_rules()
            else:
                yield item


class State(ModelBase):
    """One observable work element."""
    id: str
    name: Optional[str] = None
    is_va: bool = Field(False, alias='isVA')
    roi: Optional[Roi] = None
    reference_pose: Optional[List[Any]] = None
    min_duration: Optional[float] = Field(None, ge=0.0)

    @field_validator('reference_pose', mode='before')
    @classmethod
    def validate_reference_pose(cls, v):
        if v is None:
            return None
        if isinstance(v, dict):
            return Pose.from_dict(v).keypoints
        return [k if isinstance(k, Keypoint) else Keypoint.from_dict(k) for k in v]

    @field_serializer('reference_pose')
    def serialize_reference_pose(self, pose: Optional[List[Any]]):
        if pose is None:
            return None
        return [k.to_dict() for k in pose]

    @model_validator(mode='after')
    def default_name(self):
        if not self.name:
            self.name = self.id
        return self


class Transition(ModelBase):
    """Directed edge between two states guarded by a condition."""
    id: Optional[str] = None
    from_state: str = Field(..., alias='from')
    to_state: str = Field(..., alias='to')
    condition: Condition = Field(default_factory=Condition)
    hold_time: Optional[float] = Field(None, ge=0.0)

    @property
    def effective_hold_time(self) -> float:
        """Hold time declared on the transition, else on its condition."""
        if self.hold_time is not None:
            return self.hold_time
        return self.condition.hold_time


class Model(ModelBase):
    """Motion model: ordered states plus rule-guarded transitions."""
    id: Optional[str] = None
    name: str = 'Untitled Model'
    description: Optional[str] = None
    states_list: List[State] = Field(default_factory=list)
    transitions: List[Transition] = Field(default_factory=list)
    coordinate_system: str = Field('normalized', description="normalized or screen")
    regions: Dict[str, Roi] = Field(default_factory=dict)

    _index: Dict[str, int] = PrivateAttr(default_factory=dict)

    @model_validator(mode='before')
    @classmethod
    def default_states_list(cls, data):
        if isinstance(data, dict) and not data.get('statesList') and not data.get('states_list'):
            states = data.get('states')
            if states:
                data = {**data, 'statesList': states}
        return data

    @field_validator('transitions', mode='before')
    @classmethod
    def default_transition_ids(cls, v):
        items = []
        for index, item in enumerate(v or []):
            if isinstance(item, dict) and not item.get('id'):
                item = {**item, 'id': f"t_{index}"}
            items.append(item)
        return items

    def model_post_init(self, __context: Any) -> None:
        self._index = {}
        for index, state in enumerate(self.states_list):
            self._index.setdefault(state.id, index)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Model":
        """Create model from a definition dictionary."""
        return cls.model_validate(data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "Model":
        """Load model definition from a YAML or JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Model file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            if path.suffix.lower() == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f)

        return cls.from_dict(data or {})

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def state_index(self, state_id: Optional[str]) -> int:
        """List position of a state, -1 if unknown."""
        return self._index.get(state_id, -1)

    def get_state(self, state_id: Optional[str]) -> Optional[State]:
        index = self.state_index(state_id)
        return self.states_list[index] if index >= 0 else None

    def state_name(self, state_id: Optional[str]) -> str:
        state = self.get_state(state_id)
        return state.name if state else str(state_id)

    def is_va(self, state_id: Optional[str]) -> bool:
        state = self.get_state(state_id)
        return bool(state and state.is_va)

    def transitions_from(self, state_id: str) -> List[Transition]:
        return [t for t in self.transitions if t.from_state == state_id]

    def iter_rules(self):
        """Yield every leaf rule of every transition."""
        for transition in self.transitions:
            yield from transition.condition.iter_rules()


# Standard industrial motion templates
MODEL_TEMPLATES: List[Dict[str, Any]] = [
    {
        'id': 'tpl_pick_place',
        'name': 'Pick & Place (Simple)',
        'description': 'Standard 3-step cycle: Reach -> Grasp -> Retract.',
        'states': [
            {'id': 's_reach', 'name': 'Reach Target', 'minDuration': 0.5, 'isVA': True},
            {'id': 's_grasp', 'name': 'Grasp Object', 'minDuration': 0.2, 'isVA': False},
            {'id': 's_retract', 'name': 'Retract/Move', 'minDuration': 0.5, 'isVA': True},
        ],
        'transitions': [
            {
                'id': 't_reach_grasp', 'from': 's_reach', 'to': 's_grasp',
                'condition': {'rules': [
                    {'id': 'r_near', 'type': 'OBJECT_PROXIMITY',
                     'params': {'joint': 'right_wrist', 'distance': 0.1, 'objectClass': 'target'}},
                ]},
            },
            {
                'id': 't_grasp_retract', 'from': 's_grasp', 'to': 's_retract',
                'condition': {'rules': [
                    {'id': 'r_closed', 'type': 'POSE_ANGLE',
                     'params': {'jointA': 'right_thumb', 'jointB': 'right_wrist', 'jointC': 'right_index',
                                'value': 30, 'operator': '<'}},
                ]},
            },
            {
                'id': 't_retract_reach', 'from': 's_retract', 'to': 's_reach',
                'condition': {'rules': [
                    {'id': 'r_home', 'type': 'POSE_RELATION',
                     'params': {'jointA': 'right_wrist', 'component': 'y', 'operator': '>',
                                'targetType': 'VALUE', 'value': 0.5}},
                ]},
            },
        ],
    },
    {
        'id': 'tpl_safety_zone',
        'name': 'Safety Zone Monitor',
        'description': 'Continuous monitoring. Enters the alert state while a person is inside the danger zone.',
        'regions': {'danger_zone': {'x': 0.6, 'y': 0.0, 'width': 0.4, 'height': 1.0}},
        'states': [
            {'id': 's_monitor', 'name': 'Monitoring Safe', 'minDuration': 0, 'isVA': False},
            {'id': 's_alert', 'name': 'VIOLATION DETECTED', 'minDuration': 1, 'isVA': False},
        ],
        'transitions': [
            {
                'id': 't_violation', 'from': 's_monitor', 'to': 's_alert',
                'condition': {'rules': [
                    {'id': 'r_roi', 'type': 'OBJECT_IN_ROI',
                     'params': {'objectClass': 'person', 'roiId': 'danger_zone'}},
                ]},
            },
            {
                'id': 't_reset', 'from': 's_alert', 'to': 's_monitor',
                'condition': {
                    'rules': [
                        {'id': 'r_safe', 'type': 'OBJECT_IN_ROI',
                         'params': {'objectClass': 'person', 'roiId': 'danger_zone'}, 'invert': True},
                    ],
                    'holdTime': 2.0,
                },
            },
        ],
    },
    {
        'id': 'tpl_empty',
        'name': 'Empty Project',
        'description': 'Start from scratch with a clean slate.',
        'states': [{'id': 's_start', 'name': 'Start'}],
        'transitions': [],
    },
]


def get_template(template_id: str) -> Optional[Model]:
    """Build a model from one of the bundled templates."""
    for template in MODEL_TEMPLATES:
        if template['id'] == template_id:
            return Model.from_dict(template)
    return None
