"""
Defect criteria evaluator.

Evaluates one observation against a procedure's rule set. All logic is
driven by the rules: there are no built-in thresholds.

    observation + rules -> ValidationResult

The evaluator does no I/O. The caller supplies a consistent snapshot of
the active rules (see rule_store.get_active_rules).

Rule conditions, all of which must hold when present:
  - applicability: structure group, jobpack type, elevation range
  - numeric threshold: measurement_value <op> threshold_value
  - enumerated match: text_value in threshold_text (comma separated)
  - custom parameters: {"name": literal} or {"name": {"operator": op, "value": n}}
  - condition_expression: restricted boolean expression over parameters

A parameter missing from the observation makes the rule non-matching.
A rule whose own definition is broken is skipped and logged.

Conflicts: highest evaluation_priority wins, then the most recently
created rule, then the highest id.
"""
import ast
import json
import logging
import operator as op
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

OPERATORS = ('>', '<', '>=', '<=', '==', '!=')
VERDICTS = ('flagged', 'pass', 'unvalidated')

NO_CRITERIA = 'no_criteria_configured'
NO_VALID_CRITERIA = 'no_valid_criteria'
PROCEDURE_NOT_FOUND = 'procedure_not_found'

MAX_EXPRESSION_LENGTH = 500
MAX_LITERAL_DIGITS = 15

# Raised while applying one rule; the rule is skipped, the others still run.
RULE_FAILURES = (ValueError, ArithmeticError, MemoryError, RecursionError)

_COMPARE = {
    '>': op.gt,
    '<': op.lt,
    '>=': op.ge,
    '<=': op.le,
    '==': op.eq,
    '!=': op.ne,
}


class MalformedRuleError(ValueError):
    """The rule definition itself cannot be evaluated."""


class MissingParameter(Exception):
    """The observation lacks a value the rule needs."""

    def __init__(self, name):
        super().__init__(name)
        self.name = name


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Observation:
    structure_group: Optional[str] = None
    jobpack_type: Optional[str] = None
    elevation: Optional[float] = None
    measurement_value: Optional[float] = None
    text_value: Optional[str] = None
    custom_parameters: Dict[str, Any] = field(default_factory=dict)
    inspection_date: Optional[str] = None

    @classmethod
    def from_json(cls, body):
        """Build from a camelCase request body. Raises ValueError on bad types."""
        if not isinstance(body, dict):
            raise ValueError('observation must be an object')
        custom = body.get('customParameters') or {}
        if not isinstance(custom, dict):
            raise ValueError('customParameters must be an object')
        return cls(
            structure_group=_optional_text(body.get('structureGroup'), 'structureGroup'),
            jobpack_type=_optional_text(body.get('jobpackType'), 'jobpackType'),
            elevation=_optional_number(body.get('elevation'), 'elevation'),
            measurement_value=_optional_number(body.get('measurementValue'), 'measurementValue'),
            text_value=_optional_text(body.get('textValue'), 'textValue'),
            custom_parameters=dict(custom),
            inspection_date=_optional_text(body.get('inspectionDate'), 'inspectionDate'),
        )

    def to_json(self):
        return {
            'structureGroup': self.structure_group,
            'jobpackType': self.jobpack_type,
            'elevation': self.elevation,
            'measurementValue': self.measurement_value,
            'textValue': self.text_value,
            'customParameters': self.custom_parameters,
            'inspectionDate': self.inspection_date,
        }

    def parameters(self):
        """Names visible to condition expressions. Custom parameters win."""
        names = {
            'structure_group': self.structure_group,
            'jobpack_type': self.jobpack_type,
            'elevation': self.elevation,
            'measurement_value': self.measurement_value,
            'text_value': self.text_value,
        }
        names.update(self.custom_parameters)
        return {k: v for k, v in names.items() if v is not None}


@dataclass
class ValidationResult:
    status: str
    procedure_id: Optional[str] = None
    reason: Optional[str] = None
    winning_rule: Optional[dict] = None
    matched_rules: List[dict] = field(default_factory=list)
    skipped_rules: List[dict] = field(default_factory=list)

    @property
    def is_valid(self):
        return not self.matched_rules

    @property
    def severity_id(self):
        return self.winning_rule.get('priority_id') if self.winning_rule else None

    @property
    def should_auto_flag(self):
        return bool(self.winning_rule and self.winning_rule.get('auto_flag'))

    @property
    def alert_message(self):
        return self.winning_rule.get('alert_message') if self.winning_rule else None

    def to_dict(self):
        winner = rule_summary(self.winning_rule) if self.winning_rule else None
        return {
            'status': self.status,
            'reason': self.reason,
            'procedureId': self.procedure_id,
            'isValid': self.is_valid,
            'winningRule': winner,
            'highestPriorityRule': winner,
            'matchedRules': [rule_summary(r) for r in self.matched_rules],
            'skippedRules': list(self.skipped_rules),
            'severityId': self.severity_id,
            'shouldAutoFlag': self.should_auto_flag,
            'alertMessage': self.alert_message,
        }


def rule_summary(rule):
    return {
        'id': str(rule['id']),
        'procedureId': str(rule['procedure_id']) if rule.get('procedure_id') is not None else None,
        'structureGroup': rule.get('structure_group'),
        'priorityId': rule.get('priority_id'),
        'defectCodeId': rule.get('defect_code_id'),
        'defectTypeId': rule.get('defect_type_id'),
        'evaluationPriority': rule.get('evaluation_priority') or 0,
        'autoFlag': bool(rule.get('auto_flag')),
        'alertMessage': rule.get('alert_message'),
        'createdAt': rule.get('created_at'),
    }


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def unvalidated(procedure_id, reason):
    return ValidationResult(status='unvalidated', reason=reason,
                            procedure_id=_str_or_none(procedure_id))


def evaluate(observation, procedure_id, rules):
    """
    Evaluate an observation against a rule set.

    Returns a ValidationResult with at most one winning rule.
    """
    rules = [r for r in rules if r.get('is_active', 1)]
    if not rules:
        return unvalidated(procedure_id, NO_CRITERIA)

    matched = []
    skipped = []
    for rule in rules:
        try:
            if rule_matches(rule, observation):
                matched.append(rule)
        except RULE_FAILURES as exc:
            logger.warning("Skipping rule %s of procedure %s: %s", rule.get('id'), procedure_id, exc)
            skipped.append({'ruleId': str(rule.get('id')), 'error': str(exc)})

    if len(skipped) == len(rules):
        result = unvalidated(procedure_id, NO_VALID_CRITERIA)
        result.skipped_rules = skipped
        return result

    matched = resolve_conflicts(matched)
    return ValidationResult(
        status='flagged' if matched else 'pass',
        procedure_id=_str_or_none(procedure_id),
        winning_rule=matched[0] if matched else None,
        matched_rules=matched,
        skipped_rules=skipped,
    )


def resolve_conflicts(rules):
    """
    Order matched rules by resolution order; the first one wins.
    Independent of the input order.
    """
    return sorted(rules, key=_resolution_key, reverse=True)


def _resolution_key(rule):
    return (
        _priority(rule),
        rule.get('created_at') or '',
        _numeric_id(rule.get('id')),
    )


def _priority(rule):
    value = rule.get('evaluation_priority')
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedRuleError(f'evaluation_priority {value!r} is not an integer')


def _numeric_id(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def rule_matches(rule, observation):
    """
    True when the observation satisfies every condition of the rule.
    Raises MalformedRuleError when the rule cannot be evaluated.
    """
    conditions = _parse_rule(rule)
    try:
        return (
            _applies(conditions, observation)
            and _threshold_holds(conditions, observation)
            and _text_matches(conditions, observation)
            and _custom_parameters_hold(conditions['custom_parameters'], observation)
            and _expression_holds(conditions['expression'], observation)
        )
    except MissingParameter as missing:
        logger.debug("Rule %s needs %s, treated as non-matching", rule.get('id'), missing.name)
        return False


def check_rule(rule):
    """Raise MalformedRuleError if the rule could never be evaluated."""
    _parse_rule(rule)


def _parse_rule(rule):
    """Check the rule definition and return its normalised conditions."""
    _priority(rule)
    operator = rule.get('threshold_operator') or None
    if operator is not None and operator not in OPERATORS:
        raise MalformedRuleError(f'unknown operator {operator!r}')

    threshold = _rule_number(rule, 'threshold_value')
    low = _rule_number(rule, 'elevation_min')
    high = _rule_number(rule, 'elevation_max')
    if low is not None and high is not None and low > high:
        raise MalformedRuleError(f'elevation range {low}..{high} is inverted')

    text = rule.get('threshold_text')
    accepted = None
    if text not in (None, ''):
        accepted = [v.strip().casefold() for v in str(text).split(',') if v.strip()]
        if not accepted:
            raise MalformedRuleError('threshold_text has no values')

    if threshold is not None and operator is None:
        raise MalformedRuleError('threshold_value without threshold_operator')
    if operator is not None and threshold is None:
        if accepted is None:
            raise MalformedRuleError('threshold_operator without a threshold')
        if operator not in ('==', '!='):
            raise MalformedRuleError(f'operator {operator} cannot compare text')

    text_operator = '==' if threshold is not None else (operator or '==')

    expression = rule.get('condition_expression')
    return {
        'structure_group': rule.get('structure_group') or None,
        'jobpack_type': rule.get('jobpack_type') or None,
        'elevation_min': low,
        'elevation_max': high,
        'operator': operator,
        'threshold': threshold,
        'accepted_text': accepted,
        'text_operator': text_operator,
        'custom_parameters': _parse_custom_parameters(rule.get('custom_parameters')),
        'expression': compile_expression(expression) if expression else None,
    }


def _rule_number(rule, key):
    value = rule.get(key)
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise MalformedRuleError(f'{key} {value!r} is not a number')
    try:
        return float(value)
    except (TypeError, ValueError):
        raise MalformedRuleError(f'{key} {value!r} is not a number')


def _parse_custom_parameters(raw):
    if raw in (None, '', {}):
        return {}
    params = raw
    if isinstance(raw, str):
        try:
            params = json.loads(raw)
        except ValueError:
            raise MalformedRuleError('custom_parameters is not valid JSON')
    if not isinstance(params, dict):
        raise MalformedRuleError('custom_parameters must be an object')

    parsed = {}
    for name, expected in params.items():
        if isinstance(expected, dict):
            operator = expected.get('operator')
            if operator not in OPERATORS:
                raise MalformedRuleError(f'custom parameter {name} has unknown operator {operator!r}')
            value = expected.get('value')
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise MalformedRuleError(f'custom parameter {name} needs a numeric value')
            parsed[name] = (operator, float(value))
        else:
            parsed[name] = ('literal', expected)
    return parsed


def _same_text(a, b):
    return str(a).strip().casefold() == str(b).strip().casefold()


def _applies(conditions, observation):
    if conditions['structure_group'] is not None:
        if observation.structure_group is None:
            raise MissingParameter('structure_group')
        if not _same_text(conditions['structure_group'], observation.structure_group):
            return False

    if conditions['jobpack_type'] is not None:
        if observation.jobpack_type is None:
            raise MissingParameter('jobpack_type')
        if not _same_text(conditions['jobpack_type'], observation.jobpack_type):
            return False

    low, high = conditions['elevation_min'], conditions['elevation_max']
    if low is not None or high is not None:
        if observation.elevation is None:
            raise MissingParameter('elevation')
        if low is not None and observation.elevation < low:
            return False
        if high is not None and observation.elevation > high:
            return False
    return True


def _threshold_holds(conditions, observation):
    if conditions['threshold'] is None:
        return True
    if observation.measurement_value is None:
        raise MissingParameter('measurement_value')
    return _COMPARE[conditions['operator']](observation.measurement_value, conditions['threshold'])


def _text_matches(conditions, observation):
    accepted = conditions['accepted_text']
    if accepted is None:
        return True
    if observation.text_value is None:
        raise MissingParameter('text_value')
    found = str(observation.text_value).strip().casefold() in accepted
    return found if conditions['text_operator'] == '==' else not found


def _custom_parameters_hold(params, observation):
    actual = observation.custom_parameters
    for name, (kind, expected) in params.items():
        if actual.get(name) is None:
            raise MissingParameter(name)
        value = actual[name]
        if kind == 'literal':
            if isinstance(expected, str) and isinstance(value, str):
                if not _same_text(expected, value):
                    return False
            elif value != expected:
                return False
        else:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                # Wrong type in the observation is an input problem, not a match.
                return False
            if not _COMPARE[kind](value, expected):
                return False
    return True


def _expression_holds(tree, observation):
    if tree is None:
        return True
    try:
        return bool(_eval_node(tree.body, observation.parameters()))
    except (TypeError, ZeroDivisionError) as exc:
        logger.debug("Expression could not be applied to observation: %s", exc)
        return False
    except OverflowError:
        raise MalformedRuleError('condition_expression overflows')


# ---------------------------------------------------------------------------
# Condition expressions
# ---------------------------------------------------------------------------

_BIN_OPS = {
    ast.Add: op.add,
    ast.Sub: op.sub,
    ast.Mult: op.mul,
    ast.Div: op.truediv,
    ast.Mod: op.mod,
}

_CMP_OPS = {
    ast.Eq: op.eq,
    ast.NotEq: op.ne,
    ast.Lt: op.lt,
    ast.LtE: op.le,
    ast.Gt: op.gt,
    ast.GtE: op.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_ALLOWED_NODES = (
    ast.Expression, ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.Not,
    ast.USub, ast.UAdd, ast.BinOp, ast.Compare, ast.Name, ast.Load,
    ast.Constant, ast.List, ast.Tuple,
) + tuple(_BIN_OPS) + tuple(_CMP_OPS)


@lru_cache(maxsize=256)
def compile_expression(text):
    """
    Parse a condition expression such as
        "wall_loss > 10 and coating in ['poor', 'failed']"
    Only boolean logic, comparisons, arithmetic, names and literals are
    accepted. Raises MalformedRuleError otherwise.
    """
    if not isinstance(text, str) or not text.strip():
        raise MalformedRuleError('condition_expression is empty')
    if len(text) > MAX_EXPRESSION_LENGTH:
        raise MalformedRuleError('condition_expression is too long')
    try:
        tree = ast.parse(text.strip(), mode='eval')
    except SyntaxError as exc:
        raise MalformedRuleError(f'condition_expression does not parse: {exc.msg}')

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise MalformedRuleError(f'{type(node).__name__} is not allowed in condition_expression')
        if isinstance(node, ast.Constant) and not isinstance(node.value, (int, float, str, bool, type(None))):
            raise MalformedRuleError('unsupported literal in condition_expression')
        if (isinstance(node, ast.Constant) and isinstance(node.value, (int, float))
                and not isinstance(node.value, bool) and abs(node.value) >= 10 ** MAX_LITERAL_DIGITS):
            raise MalformedRuleError('numeric literal too large in condition_expression')
    return tree


def _eval_node(node, names):
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id not in names:
            raise MissingParameter(node.id)
        return names[node.id]
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_eval_node(e, names) for e in node.elts]
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            for value in node.values:
                if not _eval_node(value, names):
                    return False
            return True
        for value in node.values:
            if _eval_node(value, names):
                return True
        return False
    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, names)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        return +operand
    if isinstance(node, ast.BinOp):
        left, right = _eval_node(node.left, names), _eval_node(node.right, names)
        if isinstance(node.op, ast.Mult) and (isinstance(left, (str, list)) or isinstance(right, (str, list))):
            raise MalformedRuleError('repetition of text or lists is not allowed in condition_expression')
        return _BIN_OPS[type(node.op)](left, right)
    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, names)
        for cmp_op, comparator in zip(node.ops, node.comparators):
            right = _eval_node(comparator, names)
            if not _CMP_OPS[type(cmp_op)](left, right):
                return False
            left = right
        return True
    raise MalformedRuleError(f'{type(node).__name__} is not allowed in condition_expression')


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _optional_number(value, name):
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValueError(f'{name} must be a number')
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f'{name} must be a number')


def _optional_text(value, name):
    if value is None or value == '':
        return None
    if isinstance(value, (dict, list)):
        raise ValueError(f'{name} must be text')
    return str(value)


def _str_or_none(value):
    return None if value is None else str(value)
