"""Rule and condition evaluation against one tracked pose."""

from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional
import itertools
import logging

from ..core.data_types import Frame, Pose
from ..motion.angles import AngleCalculator
from ..motion.dtw import DTWEngine
from ..motion.normalizer import PoseNormalizer, get_keypoint
from .expression import RuleExpressionEvaluator
from .model import Condition, Model, RuleBase
from .proximity import evaluate_comparison, is_center_inside, object_near_joint, objects_of_class, point_distance

logger = logging.getLogger(__name__)

# Pose buffer frames required before sequence matching
MIN_SEQUENCE_FRAMES = 10

# Params naming joints of the evaluated pose
JOINT_PARAMS = ('joint', 'joint_a', 'joint_b', 'joint_c', 'body_part')


class RuleContext(NamedTuple):
    """Everything a rule may look at for one track in one frame."""
    track: Any
    pose: Pose
    frame: Frame
    tracks: Mapping[Any, Any] = {}


class RuleEvaluator:
    """Evaluates model conditions by dispatching on rule type."""

    def __init__(
        self,
        model: Optional[Model] = None,
        normalizer: Optional[PoseNormalizer] = None,
        dtw_engine: Optional[DTWEngine] = None,
        expression_evaluator: Optional[RuleExpressionEvaluator] = None
    ):
        """
        Initialize rule evaluator.

        Args:
            model: Model whose states and regions rules refer to
            normalizer: Pose normalizer (default settings if None)
            dtw_engine: DTW engine for sequence matching (default settings if None)
            expression_evaluator: Script evaluator for advanced rules
        """
        self.model = model
        self.normalizer = normalizer or PoseNormalizer()
        self.dtw_engine = dtw_engine or DTWEngine(normalizer=self.normalizer)
        self.expression_evaluator = expression_evaluator or RuleExpressionEvaluator()
        self.angle_calculator = AngleCalculator()

        self._handlers: Dict[str, Callable[[Any, RuleContext], bool]] = {
            'POSE_ANGLE': self._check_pose_angle,
            'POSE_RELATION': self._check_pose_relation,
            'POSE_VELOCITY': self._check_pose_velocity,
            'POSE_MATCHING': self._check_pose_matching,
            'HAND_GESTURE': self._check_hand_gesture,
            'HAND_PROXIMITY': self._check_hand_proximity,
            'OBJECT_PROXIMITY': self._check_object_proximity,
            'OBJECT_IN_ROI': self._check_object_in_roi,
            'OPERATOR_PROXIMITY': self._check_operator_proximity,
            'TEACHABLE_MACHINE': self._check_teachable_machine,
            'ROBOFLOW_DETECTION': self._check_roboflow,
            'SEQUENCE_MATCH': self._check_sequence_match,
            'ADVANCED_SCRIPT': self._check_advanced_script,
        }

    def set_model(self, model: Optional[Model]) -> None:
        self.model = model

    def validate_scripts(self, model: Model) -> List[str]:
        """
        Validate every advanced script of a model.

        Returns:
            Error messages, one per invalid script
        """
        errors = []
        for rule in model.iter_rules():
            if rule.type != 'ADVANCED_SCRIPT':
                continue
            result = self.expression_evaluator.validate(rule.params.script)
            if not result.valid:
                errors.append(f"Rule {rule.id or '?'}: {result.error}")
        return errors

    def evaluate_condition(self, condition: Optional[Condition], ctx: RuleContext) -> bool:
        """
        Evaluate an AND/OR condition tree.

        Args:
            condition: Condition to evaluate; empty conditions are false
            ctx: Rule context

        Returns:
            Condition result with per-item inversion applied
        """
        if condition is None or not condition.rules:
            return False

        results = (self._evaluate_item(item, ctx) for item in condition.rules)
        if condition.operator == 'OR':
            return any(results)
        return all(results)

    def _evaluate_item(self, item: Any, ctx: RuleContext) -> bool:
        if isinstance(item, Condition):
            result = self.evaluate_condition(item, ctx)
        else:
            result = self.evaluate_rule(item, ctx)
        return not result if item.invert else result

    def evaluate_rule(self, rule: RuleBase, ctx: RuleContext) -> bool:
        """
        Evaluate a single rule (before inversion).

        Args:
            rule: Rule to evaluate
            ctx: Rule context

        Returns:
            Rule result; unknown types, missing data and errors evaluate false
        """
        handler = self._handlers.get(rule.type)
        if handler is None:
            return False

        params = rule.params
        if not params.trust_persistent and self._any_joint_predicted(params, ctx.pose):
            return False

        try:
            return bool(handler(rule, ctx))
        except Exception as e:
            logger.error(f"Error evaluating rule {rule.id or rule.type}: {e}")
            return False

    def _any_joint_predicted(self, params: Any, pose: Pose) -> bool:
        for attr in JOINT_PARAMS:
            kp = get_keypoint(pose.keypoints, getattr(params, attr, None))
            if kp is not None and kp.is_predicted:
                return True
        return False

    # --- Pose rules ----------------------------------------------------------

    def _check_pose_angle(self, rule: Any, ctx: RuleContext) -> bool:
        params = rule.params
        keypoints = ctx.pose.keypoints
        p_a = get_keypoint(keypoints, params.joint_a)
        p_b = get_keypoint(keypoints, params.joint_b)
        p_c = get_keypoint(keypoints, params.joint_c)

        if p_a is None or p_b is None or p_c is None:
            return False

        angle = self.angle_calculator.calculate_angle(p_a, p_b, p_c)
        return evaluate_comparison(angle, params.operator, params.value, params.value2)

    def _check_pose_relation(self, rule: Any, ctx: RuleContext) -> bool:
        params = rule.params
        component = params.component or 'y'

        if self.model is not None and self.model.coordinate_system == 'screen':
            keypoints = ctx.pose.keypoints
        else:
            keypoints = self.normalizer.normalize(ctx.pose.keypoints)

        p_a = get_keypoint(keypoints, params.joint_a)
        if p_a is None:
            return False

        value_a = getattr(p_a, component, None)
        value_b = params.value

        if params.target_type == 'POINT' and params.joint_b:
            p_b = None
            if params.target_track_id not in (None, '', 'self'):
                other = ctx.tracks.get(params.target_track_id)
                if other is not None and other.prev_pose is not None:
                    p_b = get_keypoint(other.prev_pose.keypoints, params.joint_b)
            else:
                p_b = get_keypoint(keypoints, params.joint_b)
            if p_b is None:
                return False
            value_b = getattr(p_b, component, None)

        upper = params.value2 if params.value2 is not None else value_b
        return evaluate_comparison(value_a, params.operator, value_b, upper)

    def _check_pose_velocity(self, rule: Any, ctx: RuleContext) -> bool:
        params = rule.params
        speed = (ctx.track.velocities or {}).get(params.joint)
        return evaluate_comparison(speed, params.operator, params.value, params.value2)

    def _check_pose_matching(self, rule: Any, ctx: RuleContext) -> bool:
        params = rule.params
        if self.model is None:
            return False

        target = self.model.get_state(params.target_state_id)
        if target is None or not target.reference_pose:
            return False

        similarity = self.normalizer.calculate_similarity(ctx.pose.keypoints, target.reference_pose)
        return similarity >= params.threshold

    def _check_sequence_match(self, rule: Any, ctx: RuleContext) -> bool:
        params = rule.params
        buffer = ctx.track.pose_buffer
        if len(buffer) < MIN_SEQUENCE_FRAMES or not params.target_sequence:
            return False

        size = min(len(buffer), params.buffer_size)
        window = [entry.pose for entry in itertools.islice(buffer, len(buffer) - size, None)]

        result = self.dtw_engine.compute(window, params.target_sequence)
        return result.normalized_distance < (params.threshold or 0.4)

    def _check_advanced_script(self, rule: Any, ctx: RuleContext) -> bool:
        return self.expression_evaluator.evaluate(
            rule.params.script, ctx.pose.keypoints, ctx.frame.classifiers
        )

    # --- Hand rules ----------------------------------------------------------

    def _check_hand_gesture(self, rule: Any, ctx: RuleContext) -> bool:
        for hand in ctx.frame.hands:
            if len(hand) < 9:
                continue
            detected = 'pointing' if hand[8].y < hand[5].y else 'fist'
            if detected == rule.params.gesture:
                return True
        return False

    def _check_hand_proximity(self, rule: Any, ctx: RuleContext) -> bool:
        params = rule.params
        body = get_keypoint(ctx.pose.keypoints, params.body_part)
        if body is None:
            return False

        for hand in ctx.frame.hands:
            if not hand:
                continue
            landmark = hand[params.landmark] if params.landmark < len(hand) else hand[0]
            if evaluate_comparison(point_distance(landmark, body), params.operator, params.distance):
                return True
        return False

    # --- Object rules --------------------------------------------------------

    def _check_object_proximity(self, rule: Any, ctx: RuleContext) -> bool:
        params = rule.params
        joint = get_keypoint(ctx.pose.keypoints, params.joint)
        return object_near_joint(ctx.frame.objects, params.object_class, joint, params.distance, params.operator)

    def _check_object_in_roi(self, rule: Any, ctx: RuleContext) -> bool:
        params = rule.params
        roi = params.roi
        if roi is None and params.roi_id and self.model is not None:
            roi = self.model.regions.get(params.roi_id)
        if roi is None:
            return False

        return any(is_center_inside(obj.bbox, roi) for obj in objects_of_class(ctx.frame.objects, params.object_class))

    def _check_operator_proximity(self, rule: Any, ctx: RuleContext) -> bool:
        params = rule.params
        own = get_keypoint(ctx.pose.keypoints, params.joint)
        if own is None:
            return False

        if params.target_track_id in ('nearest', 'any', None):
            others = [t for track_id, t in ctx.tracks.items() if track_id != ctx.track.id]
        else:
            other = ctx.tracks.get(params.target_track_id)
            others = [other] if other is not None else []

        for other in others:
            if other.prev_pose is None:
                continue
            other_joint = get_keypoint(other.prev_pose.keypoints, params.joint)
            if other_joint is None:
                continue
            if evaluate_comparison(point_distance(own, other_joint), params.operator, params.distance):
                return True
        return False

    # --- External classifiers ------------------------------------------------

    def _check_teachable_machine(self, rule: Any, ctx: RuleContext) -> bool:
        params = rule.params
        predictions = ctx.frame.classifiers
        if not predictions or not params.target_class:
            return False

        if params.model_id:
            prediction = predictions.get(params.model_id)
            candidates = [prediction] if prediction is not None else []
        else:
            candidates = list(predictions.values())

        target = params.target_class.lower()
        return any(
            p.class_name.lower() == target and p.probability >= params.threshold
            for p in candidates
        )

    def _check_roboflow(self, rule: Any, ctx: RuleContext) -> bool:
        params = rule.params
        detections = ctx.frame.detections
        if not detections or not params.target_class:
            return False

        if params.model_id:
            groups = [detections.get(params.model_id) or []]
        else:
            groups = list(detections.values())

        target = params.target_class.lower()
        return any(
            det.class_name.lower() == target and det.confidence >= params.threshold
            for group in groups for det in group
        )


def create_rule_evaluator(**kwargs) -> RuleEvaluator:
    """
    Factory function to create rule evaluator.

    Args:
        **kwargs: Arguments for RuleEvaluator

    Returns:
        RuleEvaluator instance
    """
    return RuleEvaluator(**kwargs)
