"""Predicate engine shared by triggers, edges, FILTER and CONDITION nodes."""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .logging import get_logger

logger = get_logger(__name__)


class _Missing:
    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False


MISSING = _Missing()

OPERATORS = (
    "equals", "not_equals", "gt", "gte", "lt", "lte",
    "contains", "not_contains", "starts_with", "ends_with",
    "in", "not_in", "between", "is_empty", "is_not_empty",
)

OPERATOR_ALIASES = {
    "eq": "equals",
    "==": "equals",
    "ne": "not_equals",
    "neq": "not_equals",
    "!=": "not_equals",
    "greater_than": "gt",
    ">": "gt",
    "greater_than_or_equal": "gte",
    ">=": "gte",
    "less_than": "lt",
    "<": "lt",
    "less_than_or_equal": "lte",
    "<=": "lte",
}

# Operators that take no comparison value
UNARY_OPERATORS = {"is_empty", "is_not_empty"}

Lookup = Union[Mapping[str, Any], Callable[[str], Any]]


def normalize_operator(operator: Optional[str]) -> str:
    """Map an operator or alias to its canonical name.

    Raises:
        ValueError: If the operator is unknown
    """
    if not operator:
        return "equals"
    key = str(operator).strip().lower()
    key = OPERATOR_ALIASES.get(key, key)
    if key not in OPERATORS:
        raise ValueError(f"Unknown operator: {operator}")
    return key


def resolve_path(data: Any, path: Optional[str]) -> Any:
    """Walk a dot path through dicts, lists and attributes.

    Returns MISSING when any segment is absent.
    """
    if path is None or path == "":
        return data
    current = data
    for segment in str(path).split("."):
        if current is None or current is MISSING:
            return MISSING
        if isinstance(current, Mapping):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            try:
                index = int(segment)
            except ValueError:
                return MISSING
            if index >= len(current) or index < -len(current):
                return MISSING
            current = current[index]
        elif hasattr(current, segment):
            current = getattr(current, segment)
        else:
            return MISSING
    return current


def _lookup(source: Lookup, path: str) -> Any:
    if callable(source):
        return source(path)
    return resolve_path(source, path)


def _as_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None or value is MISSING:
        return None
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except (InvalidOperation, ValueError):
            return None
    return None


def _compare(actual: Any, expected: Any) -> int:
    """Three-way comparison, numeric when both sides are numeric."""
    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None:
        return (left > right) - (left < right)
    if actual is None or actual is MISSING or expected is None:
        raise TypeError("Cannot order a missing value")
    return (actual > expected) - (actual < expected)


def _equals(actual: Any, expected: Any) -> bool:
    if actual is MISSING:
        actual = None
    if isinstance(actual, bool) or isinstance(expected, bool):
        return actual == expected
    if isinstance(actual, str) and isinstance(expected, str):
        return actual == expected
    # "5" == 5 compares numerically
    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None:
        return left == right
    return actual == expected


def _is_empty(value: Any) -> bool:
    if value is None or value is MISSING:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None or actual is MISSING:
        return False
    if isinstance(actual, str):
        return str(expected).lower() in actual.lower()
    if isinstance(actual, Mapping):
        return expected in actual
    if isinstance(actual, (list, tuple, set)):
        return any(_equals(item, expected) for item in actual)
    return False


def apply_operator(operator: str, actual: Any, value: Any = None, value_to: Any = None) -> bool:
    """Apply a canonical operator to an actual value.

    Raises:
        ValueError: On malformed operands (non-list for in, missing range for between)
        TypeError: When values cannot be ordered
    """
    if operator == "equals":
        return _equals(actual, value)
    if operator == "not_equals":
        return not _equals(actual, value)
    if operator == "gt":
        return _compare(actual, value) > 0
    if operator == "gte":
        return _compare(actual, value) >= 0
    if operator == "lt":
        return _compare(actual, value) < 0
    if operator == "lte":
        return _compare(actual, value) <= 0
    if operator == "contains":
        return _contains(actual, value)
    if operator == "not_contains":
        return not _contains(actual, value)
    if operator == "starts_with":
        return isinstance(actual, str) and actual.lower().startswith(str(value).lower())
    if operator == "ends_with":
        return isinstance(actual, str) and actual.lower().endswith(str(value).lower())
    if operator in ("in", "not_in"):
        if not isinstance(value, (list, tuple, set)):
            raise ValueError(f"Operator '{operator}' requires a list value")
        found = any(_equals(actual, candidate) for candidate in value)
        return found if operator == "in" else not found
    if operator == "between":
        if value is None or value_to is None:
            raise ValueError("Operator 'between' requires value and valueTo")
        return _compare(actual, value) >= 0 and _compare(actual, value_to) <= 0
    if operator == "is_empty":
        return _is_empty(actual)
    if operator == "is_not_empty":
        return not _is_empty(actual)
    raise ValueError(f"Unknown operator: {operator}")


def condition_field(condition: Mapping[str, Any]) -> Optional[str]:
    return condition.get("field") or condition.get("path")


def evaluate_leaf(
    condition: Mapping[str, Any],
    source: Lookup,
    value_resolver: Optional[Callable[[Any], Any]] = None
) -> Tuple[bool, Any]:
    """Evaluate one `{field, operator, value, valueTo?, negate?}` leaf.

    Returns:
        Tuple of (result, actual value)
    """
    field = condition_field(condition)
    if not field:
        raise ValueError("Condition is missing a field")
    operator = normalize_operator(condition.get("operator"))
    value = condition.get("value")
    value_to = condition.get("valueTo", condition.get("value_to"))
    if value_resolver is not None:
        value = value_resolver(value)
        value_to = value_resolver(value_to)

    actual = _lookup(source, field)
    result = apply_operator(operator, actual, value, value_to)
    if condition.get("negate"):
        result = not result
    return result, (None if actual is MISSING else actual)


def _is_leaf(node: Mapping[str, Any]) -> bool:
    return "field" in node or "path" in node


def evaluate_tree(
    tree: Any,
    source: Lookup,
    value_resolver: Optional[Callable[[Any], Any]] = None
) -> bool:
    """Evaluate a condition tree strictly; errors propagate.

    A list is an AND of its members. Dicts may be `{"and": [...]}`,
    `{"or": [...]}`, `{"not": node}` or a leaf. An empty tree matches.
    """
    if tree is None:
        return True
    if isinstance(tree, (list, tuple)):
        return all(evaluate_tree(child, source, value_resolver) for child in tree)
    if not isinstance(tree, Mapping):
        raise ValueError(f"Unsupported condition node: {tree!r}")
    if not tree:
        return True

    if "and" in tree or "AND" in tree:
        children = tree.get("and", tree.get("AND")) or []
        return all(evaluate_tree(child, source, value_resolver) for child in children)
    if "or" in tree or "OR" in tree:
        children = tree.get("or", tree.get("OR")) or []
        if not children:
            return True
        return any(evaluate_tree(child, source, value_resolver) for child in children)
    if "not" in tree or "NOT" in tree:
        return not evaluate_tree(tree.get("not", tree.get("NOT")), source, value_resolver)
    if "conditions" in tree:
        children = tree.get("conditions") or []
        logical = str(tree.get("logicalOperator", "AND")).upper()
        if logical == "OR":
            return not children or any(evaluate_tree(c, source, value_resolver) for c in children)
        return all(evaluate_tree(c, source, value_resolver) for c in children)
    if _is_leaf(tree):
        result, _ = evaluate_leaf(tree, source, value_resolver)
        return result
    raise ValueError(f"Unsupported condition node: {dict(tree)!r}")


def matches(
    tree: Any,
    source: Lookup,
    value_resolver: Optional[Callable[[Any], Any]] = None
) -> bool:
    """Evaluate a condition tree, treating any evaluation error as no match."""
    try:
        return evaluate_tree(tree, source, value_resolver)
    except Exception as e:
        logger.warning(f"Condition evaluation failed, treating as no match: {str(e)}")
        return False


def evaluate_condition_list(
    conditions: List[Mapping[str, Any]],
    source: Lookup,
    logical_operator: str = "AND",
    value_resolver: Optional[Callable[[Any], Any]] = None
) -> Tuple[bool, List[Dict[str, Any]]]:
    """Evaluate a flat list of leaves, keeping per-leaf detail.

    An empty list evaluates to False. A leaf that cannot be evaluated
    counts as False and carries its error in the detail entry.
    """
    details: List[Dict[str, Any]] = []
    for condition in conditions or []:
        entry: Dict[str, Any] = {
            "field": condition_field(condition),
            "operator": condition.get("operator"),
            "value": condition.get("value"),
        }
        try:
            result, actual = evaluate_leaf(condition, source, value_resolver)
            entry["actualValue"] = actual
            entry["result"] = result
        except Exception as e:
            entry["actualValue"] = None
            entry["result"] = False
            entry["error"] = str(e)
        details.append(entry)

    if not details:
        return False, details
    if str(logical_operator or "AND").upper() == "OR":
        return any(d["result"] for d in details), details
    return all(d["result"] for d in details), details


_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def validate_leaf(condition: Any, index: Optional[int] = None) -> List[str]:
    """Return structural errors for one condition leaf."""
    label = f"Condition {index}" if index is not None else "Condition"
    if not isinstance(condition, Mapping):
        return [f"{label} must be an object"]
    errors = []
    if not condition_field(condition):
        errors.append(f"{label}: field is required")
    try:
        operator = normalize_operator(condition.get("operator"))
    except ValueError as e:
        errors.append(f"{label}: {str(e)}")
        return errors
    value = condition.get("value")
    if operator == "between":
        value_to = condition.get("valueTo", condition.get("value_to"))
        if value is None or value_to is None:
            errors.append(f"{label}: operator 'between' requires value and valueTo")
    elif operator in ("in", "not_in"):
        if not isinstance(value, (list, tuple)) and not _is_template(value):
            errors.append(f"{label}: operator '{operator}' requires a list value")
    return errors


def _is_template(value: Any) -> bool:
    return isinstance(value, str) and bool(_PLACEHOLDER_PATTERN.fullmatch(value.strip()))
