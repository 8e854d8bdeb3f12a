"""
Rule evaluation service.

Status rules are stored as JSON trees of ``{operator: args}`` nodes, e.g.::

    {"if": [{"<": [{"var": "total_hours"}, 4]}, "ABSENT"]}

They are compiled once into a closed set of node classes and evaluated
against a flat variable mapping. Malformed nodes never raise: they are kept
as ``Opaque`` and evaluate to themselves, so they simply fail to match.
"""
import math
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import structlog

logger = structlog.get_logger(__name__)


class Operator(str, Enum):
    VAR = "var"
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "=="
    NEQ = "!="
    AND = "and"
    OR = "or"
    NOT = "not"
    IF = "if"


COMPARISON_OPERATORS = (
    Operator.GT, Operator.LT, Operator.GTE, Operator.LTE, Operator.EQ, Operator.NEQ,
)


class Node:
    """Base class of the compiled rule tree."""

    __slots__ = ()

    def __eq__(self, other):
        return type(self) is type(other) and self._key() == other._key()

    def __hash__(self):
        return hash((type(self).__name__, repr(self._key())))

    def __repr__(self):
        return f"{type(self).__name__}{self._key()!r}"

    def _key(self) -> tuple:
        return tuple(getattr(self, name) for name in self.__slots__)


class Literal(Node):
    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value


class Var(Node):
    __slots__ = ("name",)

    def __init__(self, name: Any):
        self.name = name


class Compare(Node):
    __slots__ = ("operator", "left", "right")

    def __init__(self, operator: Operator, left: Node, right: Node):
        self.operator = operator
        self.left = left
        self.right = right


class And(Node):
    __slots__ = ("items",)

    def __init__(self, items: Tuple[Node, ...]):
        self.items = items


class Or(Node):
    __slots__ = ("items",)

    def __init__(self, items: Tuple[Node, ...]):
        self.items = items


class Not(Node):
    __slots__ = ("item",)

    def __init__(self, item: Node):
        self.item = item


class If(Node):
    __slots__ = ("condition", "then", "otherwise")

    def __init__(self, condition: Node, then: Node, otherwise: Optional[Node] = None):
        self.condition = condition
        self.then = then
        self.otherwise = otherwise


class Opaque(Node):
    """A shape the rule language does not understand. Evaluates to the raw value."""

    __slots__ = ("raw",)

    def __init__(self, raw: Any):
        self.raw = raw


def compile_rule(raw: Any) -> Node:
    """Compile a JSON rule tree into nodes. Never raises."""
    if not isinstance(raw, dict):
        return Literal(raw)
    if len(raw) != 1:
        return Opaque(raw)

    key, args = next(iter(raw.items()))
    try:
        op = Operator(key)
    except ValueError:
        return Opaque(raw)

    if op is Operator.VAR:
        name = args[0] if isinstance(args, list) and args else args
        return Var(name)

    if op in COMPARISON_OPERATORS:
        if not isinstance(args, list) or len(args) != 2:
            return Opaque(raw)
        return Compare(op, compile_rule(args[0]), compile_rule(args[1]))

    if op in (Operator.AND, Operator.OR):
        items = args if isinstance(args, list) else [args]
        compiled = tuple(compile_rule(item) for item in items)
        return And(compiled) if op is Operator.AND else Or(compiled)

    if op is Operator.NOT:
        if isinstance(args, list):
            if len(args) != 1:
                return Opaque(raw)
            args = args[0]
        return Not(compile_rule(args))

    # Operator.IF
    if not isinstance(args, list) or len(args) < 2:
        return Opaque(raw)
    otherwise = compile_rule(args[2]) if len(args) > 2 else None
    return If(compile_rule(args[0]), compile_rule(args[1]), otherwise)


def dump_rule(node: Node) -> Any:
    """Inverse of compile_rule: back to the stored JSON shape."""
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Opaque):
        return node.raw
    if isinstance(node, Var):
        return {Operator.VAR.value: node.name}
    if isinstance(node, Compare):
        return {node.operator.value: [dump_rule(node.left), dump_rule(node.right)]}
    if isinstance(node, And):
        return {Operator.AND.value: [dump_rule(item) for item in node.items]}
    if isinstance(node, Or):
        return {Operator.OR.value: [dump_rule(item) for item in node.items]}
    if isinstance(node, Not):
        return {Operator.NOT.value: [dump_rule(node.item)]}
    args = [dump_rule(node.condition), dump_rule(node.then)]
    if node.otherwise is not None:
        args.append(dump_rule(node.otherwise))
    return {Operator.IF.value: args}


# Evaluation

def _as_number(value: Any) -> Union[int, float, None]:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _coerce_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    """Numeric strings compare numerically against numbers."""
    left_is_str = isinstance(left, str)
    right_is_str = isinstance(right, str)
    if left_is_str != right_is_str:
        left_num = _as_number(left)
        right_num = _as_number(right)
        if left_num is not None and right_num is not None:
            return left_num, right_num
    return left, right


def loose_equals(left: Any, right: Any) -> bool:
    left, right = _coerce_pair(left, right)
    return left == right


_ORDERINGS: Dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.GT: lambda a, b: a > b,
    Operator.LT: lambda a, b: a < b,
    Operator.GTE: lambda a, b: a >= b,
    Operator.LTE: lambda a, b: a <= b,
}


def _eval_literal(node: Literal, data: Mapping[str, Any]) -> Any:
    return node.value


def _eval_opaque(node: Opaque, data: Mapping[str, Any]) -> Any:
    return node.raw


def _eval_var(node: Var, data: Mapping[str, Any]) -> Any:
    try:
        return data.get(node.name)
    except TypeError:
        # Unhashable variable name
        return None


def _eval_compare(node: Compare, data: Mapping[str, Any]) -> bool:
    left = evaluate(node.left, data)
    right = evaluate(node.right, data)
    if node.operator is Operator.EQ:
        return loose_equals(left, right)
    if node.operator is Operator.NEQ:
        return not loose_equals(left, right)
    left, right = _coerce_pair(left, right)
    try:
        return bool(_ORDERINGS[node.operator](left, right))
    except TypeError:
        # None or mixed types
        return False


def _eval_and(node: And, data: Mapping[str, Any]) -> bool:
    return all(evaluate(item, data) is True for item in node.items)


def _eval_or(node: Or, data: Mapping[str, Any]) -> bool:
    return any(evaluate(item, data) is True for item in node.items)


def truthy(value: Any) -> bool:
    """
    Rule-language truthiness: only None, False, zero, NaN and the empty
    string are false. Empty lists and dicts count as true.
    """
    if value is None or value is False or value == "":
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not math.isnan(value)
    return True


def _eval_not(node: Not, data: Mapping[str, Any]) -> bool:
    return not truthy(evaluate(node.item, data))


def _eval_if(node: If, data: Mapping[str, Any]) -> Any:
    if truthy(evaluate(node.condition, data)):
        return evaluate(node.then, data)
    if node.otherwise is not None:
        return evaluate(node.otherwise, data)
    return None


_EVALUATORS: Dict[type, Callable[[Any, Mapping[str, Any]], Any]] = {
    Literal: _eval_literal,
    Opaque: _eval_opaque,
    Var: _eval_var,
    Compare: _eval_compare,
    And: _eval_and,
    Or: _eval_or,
    Not: _eval_not,
    If: _eval_if,
}


def evaluate(node: Node, data: Mapping[str, Any]) -> Any:
    return _EVALUATORS[type(node)](node, data)


def evaluate_rule(raw: Any, data: Mapping[str, Any]) -> Any:
    """Compile and evaluate a raw JSON rule in one go."""
    return evaluate(compile_rule(raw), data)


def first_matching_status(rules: List[Node], data: Mapping[str, Any], default: str = "PRESENT") -> str:
    """
    Evaluate status rules in order and return the first truthy label.

    Earlier rules take precedence. Results that are not non-empty strings
    (e.g. an Opaque rule evaluating to its raw dict) are skipped.
    """
    for index, rule in enumerate(rules):
        result = evaluate(rule, data)
        if not result:
            continue
        if isinstance(result, str):
            return result
        logger.debug("status_rule_non_label_result", rule_index=index, result=repr(result))
    return default
