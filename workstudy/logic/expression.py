"""
Rule expression language.

Scripts such as ``right_wrist.y < right_shoulder.y and angle(right_shoulder,
right_elbow, right_wrist) > 90`` are tokenized, parsed into an AST and
evaluated against one frame. Only the constructs below exist; nothing is
ever handed to the Python interpreter.

    expr        := or_expr
    or_expr     := and_expr ('or' and_expr)*
    and_expr    := not_expr ('and' not_expr)*
    not_expr    := 'not' not_expr | comparison
    comparison  := additive (CMP additive)?
    additive    := term (('+' | '-') term)*
    term        := unary (('*' | '/') unary)*
    unary       := '-' unary | primary
    primary     := NUMBER | STRING | 'true' | 'false' | '(' expr ')'
                 | FUNC '(' args ')' | joint '.' PROP | classifier
    classifier  := 'tm' ('[' STRING ']' | '.' IDENT)? '.' ('class' | 'confidence' | 'probability')
"""

from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence
import math
import logging

from ..core.data_types import JOINT_NAMES, ClassifierPrediction, Keypoint, keypoint_map
from ..motion.angles import AngleCalculator
from .proximity import EQUALITY_TOLERANCE

logger = logging.getLogger(__name__)

JOINT_PROPERTIES = ('x', 'y', 'z', 'score', 'confidence')
CLASSIFIER_PROPERTIES = ('class', 'confidence', 'probability')
COMPARISON_OPERATORS = ('<', '>', '<=', '>=', '=', '==', '!=')


def _js_round(value: float) -> float:
    return float(math.floor(value + 0.5))


MATH_FUNCTIONS: Dict[str, Callable[..., float]] = {
    'abs': abs,
    'min': min,
    'max': max,
    'round': _js_round,
    'floor': math.floor,
    'ceil': math.ceil,
    'sqrt': math.sqrt,
    'sin': math.sin,
    'cos': math.cos,
    'tan': math.tan,
    'atan2': math.atan2,
}

MATH_ARITY = {
    'abs': (1, 1), 'round': (1, 1), 'floor': (1, 1), 'ceil': (1, 1), 'sqrt': (1, 1),
    'sin': (1, 1), 'cos': (1, 1), 'tan': (1, 1), 'atan2': (2, 2),
    'min': (1, None), 'max': (1, None),
}

# Functions whose arguments are joint names
JOINT_FUNCTIONS = {'dist': 2, 'distance': 2, 'angle': 3}


class ScriptError(Exception):
    """Raised when a script cannot be tokenized, parsed or evaluated."""


class ValidationResult(NamedTuple):
    """Script validation outcome."""
    valid: bool
    error: Optional[str] = None


class Token(NamedTuple):
    kind: str  # NUMBER, STRING, IDENT, OP, EOF
    value: Any
    position: int


class EvaluationContext(NamedTuple):
    """Frame data visible to a script."""
    keypoints: Mapping[str, Keypoint]
    classifiers: Mapping[str, ClassifierPrediction] = {}

    @classmethod
    def create(
        cls,
        keypoints: Any,
        classifiers: Optional[Mapping[str, ClassifierPrediction]] = None
    ) -> "EvaluationContext":
        return cls(keypoints=keypoint_map(keypoints), classifiers=dict(classifiers or {}))


# --- Tokenizer ---------------------------------------------------------------

_TWO_CHAR_OPS = ('<=', '>=', '==', '!=', '&&', '||')
_ONE_CHAR_OPS = '<>=!+-*/(),.[]'


def tokenize(script: str) -> List[Token]:
    """
    Split a script into tokens.

    Args:
        script: Script text (identifiers are case-insensitive)

    Returns:
        Token list terminated by an EOF token

    Raises:
        ScriptError: On an unexpected character or unterminated string
    """
    tokens: List[Token] = []
    i = 0
    length = len(script)

    while i < length:
        char = script[i]

        if char.isspace():
            i += 1
            continue

        if char.isdigit() or (char == '.' and i + 1 < length and script[i + 1].isdigit()):
            start = i
            while i < length and (script[i].isdigit() or script[i] == '.'):
                i += 1
            text = script[start:i]
            try:
                tokens.append(Token('NUMBER', float(text), start))
            except ValueError:
                raise ScriptError(f"Invalid number '{text}' at {start}")
            continue

        if char.isalpha() or char == '_':
            start = i
            while i < length and (script[i].isalnum() or script[i] == '_'):
                i += 1
            tokens.append(Token('IDENT', script[start:i].lower(), start))
            continue

        if char in ('"', "'"):
            start = i
            end = script.find(char, i + 1)
            if end == -1:
                raise ScriptError(f"Unterminated string at {start}")
            tokens.append(Token('STRING', script[i + 1:end], start))
            i = end + 1
            continue

        pair = script[i:i + 2]
        if pair in _TWO_CHAR_OPS:
            tokens.append(Token('OP', {'&&': 'and', '||': 'or'}.get(pair, pair), i))
            i += 2
            continue

        if char in _ONE_CHAR_OPS:
            tokens.append(Token('OP', 'not' if char == '!' else char, i))
            i += 1
            continue

        raise ScriptError(f"Unexpected character '{char}' at {i}")

    tokens.append(Token('EOF', None, length))
    return tokens


# --- AST ---------------------------------------------------------------------

class Node:
    """AST node."""

    def evaluate(self, ctx: EvaluationContext) -> Any:
        raise NotImplementedError


class Literal(Node):
    def __init__(self, value: Any):
        self.value = value

    def evaluate(self, ctx: EvaluationContext) -> Any:
        return self.value


class JointProperty(Node):
    def __init__(self, joint: str, prop: str):
        self.joint = joint
        self.prop = 'score' if prop == 'confidence' else prop

    def evaluate(self, ctx: EvaluationContext) -> float:
        kp = ctx.keypoints.get(self.joint)
        if kp is None:
            raise ScriptError(f"Joint '{self.joint}' not in pose")
        value = getattr(kp, self.prop)
        if value is None:
            raise ScriptError(f"Joint '{self.joint}' has no {self.prop}")
        return float(value)


class ClassifierProperty(Node):
    def __init__(self, model_id: Optional[str], prop: str):
        self.model_id = model_id
        self.prop = prop

    def evaluate(self, ctx: EvaluationContext) -> Any:
        if self.model_id is None:
            prediction = next(iter(ctx.classifiers.values()), None)
        else:
            prediction = ctx.classifiers.get(self.model_id)
            if prediction is None:
                prediction = next(
                    (p for key, p in ctx.classifiers.items() if key.lower() == self.model_id.lower()),
                    None
                )

        if prediction is None:
            return '' if self.prop == 'class' else 0.0
        if self.prop == 'class':
            return prediction.class_name
        return float(prediction.probability)


class JointFunction(Node):
    def __init__(self, name: str, joints: Sequence[str], angle_calculator: AngleCalculator):
        self.name = name
        self.joints = list(joints)
        self.angle_calculator = angle_calculator

    def evaluate(self, ctx: EvaluationContext) -> float:
        points = []
        for joint in self.joints:
            kp = ctx.keypoints.get(joint)
            if kp is None:
                raise ScriptError(f"Joint '{joint}' not in pose")
            points.append(kp)

        if self.name == 'angle':
            return self.angle_calculator.calculate_angle(points[0], points[1], points[2])
        return math.hypot(points[0].x - points[1].x, points[0].y - points[1].y)


class MathCall(Node):
    def __init__(self, name: str, args: Sequence[Node]):
        self.name = name
        self.args = list(args)

    def evaluate(self, ctx: EvaluationContext) -> float:
        values = [_number(arg.evaluate(ctx)) for arg in self.args]
        try:
            return float(MATH_FUNCTIONS[self.name](*values))
        except (ValueError, OverflowError) as e:
            raise ScriptError(f"{self.name}() failed: {e}")


class UnaryOp(Node):
    def __init__(self, op: str, operand: Node):
        self.op = op
        self.operand = operand

    def evaluate(self, ctx: EvaluationContext) -> Any:
        value = self.operand.evaluate(ctx)
        if self.op == 'not':
            return not _boolean(value)
        return -_number(value)


class BinaryOp(Node):
    def __init__(self, op: str, left: Node, right: Node):
        self.op = op
        self.left = left
        self.right = right

    def evaluate(self, ctx: EvaluationContext) -> Any:
        if self.op == 'and':
            return _boolean(self.left.evaluate(ctx)) and _boolean(self.right.evaluate(ctx))
        if self.op == 'or':
            return _boolean(self.left.evaluate(ctx)) or _boolean(self.right.evaluate(ctx))

        left = self.left.evaluate(ctx)
        right = self.right.evaluate(ctx)

        if self.op in COMPARISON_OPERATORS:
            return _compare(self.op, left, right)

        a, b = _number(left), _number(right)
        if self.op == '+':
            return a + b
        if self.op == '-':
            return a - b
        if self.op == '*':
            return a * b
        if b == 0:
            raise ScriptError("Division by zero")
        return a / b


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ScriptError(f"Expected a number, got {value!r}")
    if math.isnan(value):
        raise ScriptError("Not a number")
    return float(value)


def _boolean(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ScriptError(f"Expected a boolean, got {value!r}")
    return value


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) or isinstance(right, str):
        if not (isinstance(left, str) and isinstance(right, str)):
            raise ScriptError("Cannot compare text with a number")
        if op in ('=', '=='):
            return left.lower() == right.lower()
        if op == '!=':
            return left.lower() != right.lower()
        raise ScriptError(f"Operator {op} not supported for text")

    if isinstance(left, bool) or isinstance(right, bool):
        if not (isinstance(left, bool) and isinstance(right, bool)) or op not in ('=', '==', '!='):
            raise ScriptError("Booleans only support equality")
        return (left == right) if op != '!=' else (left != right)

    a, b = _number(left), _number(right)
    if op == '<':
        return a < b
    if op == '>':
        return a > b
    if op == '<=':
        return a <= b
    if op == '>=':
        return a >= b
    if op in ('=', '=='):
        return abs(a - b) < EQUALITY_TOLERANCE
    return abs(a - b) >= EQUALITY_TOLERANCE


# --- Parser ------------------------------------------------------------------

class Parser:
    """Recursive-descent parser producing an AST."""

    def __init__(
        self,
        tokens: Sequence[Token],
        known_joints: Iterable[str],
        angle_calculator: AngleCalculator
    ):
        self.tokens = list(tokens)
        self.pos = 0
        self.known_joints = set(known_joints)
        self.angle_calculator = angle_calculator

    def parse(self) -> Node:
        node = self._or_expr()
        if self._peek().kind != 'EOF':
            token = self._peek()
            raise ScriptError(f"Unexpected '{token.value}' at {token.position}")
        return node

    def _peek(self) -> Token:
        return self.tokens[self.pos]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        if token.kind != 'EOF':
            self.pos += 1
        return token

    def _match(self, kind: str, *values: Any) -> Optional[Token]:
        token = self._peek()
        if token.kind == kind and (not values or token.value in values):
            return self._advance()
        return None

    def _is_word(self, *words: str) -> bool:
        token = self._peek()
        return token.kind in ('IDENT', 'OP') and token.value in words

    def _expect(self, kind: str, value: Any = None) -> Token:
        token = self._peek()
        if token.kind != kind or (value is not None and token.value != value):
            expected = value if value is not None else kind
            found = token.value if token.kind != 'EOF' else 'end of script'
            raise ScriptError(f"Expected '{expected}' but found '{found}' at {token.position}")
        return self._advance()

    def _or_expr(self) -> Node:
        node = self._and_expr()
        while self._is_word('or'):
            self._advance()
            node = BinaryOp('or', node, self._and_expr())
        return node

    def _and_expr(self) -> Node:
        node = self._not_expr()
        while self._is_word('and'):
            self._advance()
            node = BinaryOp('and', node, self._not_expr())
        return node

    def _not_expr(self) -> Node:
        if self._is_word('not'):
            self._advance()
            return UnaryOp('not', self._not_expr())
        return self._comparison()

    def _comparison(self) -> Node:
        node = self._additive()
        token = self._match('OP', *COMPARISON_OPERATORS)
        if token:
            node = BinaryOp(token.value, node, self._additive())
        return node

    def _additive(self) -> Node:
        node = self._term()
        while True:
            token = self._match('OP', '+', '-')
            if not token:
                return node
            node = BinaryOp(token.value, node, self._term())

    def _term(self) -> Node:
        node = self._unary()
        while True:
            token = self._match('OP', '*', '/')
            if not token:
                return node
            node = BinaryOp(token.value, node, self._unary())

    def _unary(self) -> Node:
        if self._match('OP', '-'):
            return UnaryOp('-', self._unary())
        return self._primary()

    def _primary(self) -> Node:
        token = self._peek()

        if token.kind == 'NUMBER':
            self._advance()
            return Literal(token.value)

        if token.kind == 'STRING':
            self._advance()
            return Literal(token.value)

        if self._match('OP', '('):
            node = self._or_expr()
            self._expect('OP', ')')
            return node

        if token.kind == 'IDENT':
            return self._identifier()

        found = token.value if token.kind != 'EOF' else 'end of script'
        raise ScriptError(f"Unexpected '{found}' at {token.position}")

    def _identifier(self) -> Node:
        token = self._advance()
        name = token.value

        if name in ('true', 'false'):
            return Literal(name == 'true')

        if name == 'tm':
            return self._classifier()

        if name in JOINT_FUNCTIONS or name in MATH_FUNCTIONS:
            if self._peek().kind == 'OP' and self._peek().value == '(':
                return self._call(name)
            raise ScriptError(f"Function '{name}' must be called at {token.position}")

        if name in self.known_joints:
            self._expect('OP', '.')
            prop = self._expect('IDENT')
            if prop.value not in JOINT_PROPERTIES:
                raise ScriptError(f"Unknown joint property '{prop.value}' at {prop.position}")
            return JointProperty(name, prop.value)

        raise ScriptError(f"Unknown identifier '{name}' at {token.position}")

    def _call(self, name: str) -> Node:
        self._expect('OP', '(')

        if name in JOINT_FUNCTIONS:
            joints = []
            if not self._match('OP', ')'):
                while True:
                    joint = self._expect('IDENT')
                    if joint.value not in self.known_joints:
                        raise ScriptError(f"Unknown joint '{joint.value}' at {joint.position}")
                    joints.append(joint.value)
                    if self._match('OP', ')'):
                        break
                    self._expect('OP', ',')
            if len(joints) != JOINT_FUNCTIONS[name]:
                raise ScriptError(f"{name}() takes {JOINT_FUNCTIONS[name]} joints, got {len(joints)}")
            return JointFunction(name, joints, self.angle_calculator)

        args: List[Node] = []
        if not self._match('OP', ')'):
            while True:
                args.append(self._or_expr())
                if self._match('OP', ')'):
                    break
                self._expect('OP', ',')

        low, high = MATH_ARITY[name]
        if len(args) < low or (high is not None and len(args) > high):
            raise ScriptError(f"{name}() called with {len(args)} arguments")
        return MathCall(name, args)

    def _classifier(self) -> Node:
        model_id = None

        if self._match('OP', '['):
            model_id = self._expect('STRING').value
            self._expect('OP', ']')
            self._expect('OP', '.')
            prop = self._expect('IDENT').value
        else:
            self._expect('OP', '.')
            first = self._expect('IDENT').value
            if self._match('OP', '.'):
                model_id = first
                prop = self._expect('IDENT').value
            else:
                prop = first

        if prop not in CLASSIFIER_PROPERTIES:
            raise ScriptError(f"Unknown classifier property '{prop}'")
        return ClassifierProperty(model_id, prop)


# --- Public API --------------------------------------------------------------

class RuleExpressionEvaluator:
    """Validates, compiles and evaluates rule scripts."""

    def __init__(self, known_joints: Optional[Iterable[str]] = None, cache_size: int = 256):
        """
        Initialize evaluator.

        Args:
            known_joints: Joint names a script may reference (BlazePose names if None)
            cache_size: Maximum number of compiled scripts kept
        """
        self.known_joints = frozenset(j.lower() for j in (known_joints or JOINT_NAMES))
        self.cache_size = cache_size
        self.angle_calculator = AngleCalculator()
        self._cache: Dict[str, Node] = {}

    def compile(self, script: str) -> Node:
        """
        Parse a script into an AST.

        Raises:
            ScriptError: If the script is malformed or references unknown identifiers
        """
        node = self._cache.get(script)
        if node is not None:
            return node

        if script is None or not script.strip():
            raise ScriptError("Empty script")

        node = Parser(tokenize(script), self.known_joints, self.angle_calculator).parse()

        if len(self._cache) >= self.cache_size:
            self._cache.pop(next(iter(self._cache)))
        self._cache[script] = node
        return node

    def validate(self, script: Optional[str]) -> ValidationResult:
        """
        Check a script before accepting it into a model.

        Args:
            script: Script text

        Returns:
            Validation result with an error message when invalid
        """
        if not script or not script.strip():
            return ValidationResult(False, "Empty script")

        try:
            parens = [t.value for t in tokenize(script) if t.kind == 'OP' and t.value in ('(', ')')]
            if parens.count('(') != parens.count(')'):
                return ValidationResult(False, "Unbalanced parentheses")

            self.compile(script)
        except (ScriptError, RecursionError) as e:
            return ValidationResult(False, str(e))

        return ValidationResult(True)

    def evaluate(
        self,
        script: Optional[str],
        keypoints: Any,
        classifiers: Optional[Mapping[str, ClassifierPrediction]] = None
    ) -> bool:
        """
        Evaluate a script against one pose.

        Args:
            script: Script text
            keypoints: Keypoints of the pose under test
            classifiers: External classifier predictions by model id

        Returns:
            Script result; False for malformed scripts, missing joints or non-boolean results
        """
        if not script or not keypoints:
            return False

        try:
            node = self.compile(script)
            result = node.evaluate(EvaluationContext.create(keypoints, classifiers))
        except (ScriptError, RecursionError) as e:
            logger.debug(f"Script evaluated to false: {e}")
            return False

        return result if isinstance(result, bool) else False
