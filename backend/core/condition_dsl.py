"""
Condition DSL - JSON condition language shared by the question bank,
classifier and relevance engine.

A condition is a single-key dict. Logical operators nest conditions;
comparison operators take a [field, argument] pair and read `field` from
a flat facts dict.

Operators:
    all, any          list of sub-conditions
    not               one sub-condition
    eq, ne            [field, value]
    in                [field, [values]]         field value is one of values
    includes          [field, item]             list field contains item
    contains_any      [field, [keywords]]       lowercase text contains a keyword,
                                                or list shares an item
    exists            field                     present and not None
    is_true, is_false field                     identity with True / False
    gte, gt, lte, lt  [field, number]
    min_length        [field, n]                len(str or list) >= n

Design principles:
- Pure functions: no state, no I/O
- Missing fields evaluate to False (never raise)
- Conditions are validated once at load time with validate_condition()
"""

import logging
from typing import Any, List, Mapping

logger = logging.getLogger(__name__)


LOGICAL_OPERATORS = {"all", "any", "not"}
FIELD_OPERATORS = {"exists", "is_true", "is_false"}
PAIR_OPERATORS = {
    "eq", "ne", "in", "includes", "contains_any",
    "gte", "gt", "lte", "lt", "min_length",
}
OPERATORS = LOGICAL_OPERATORS | FIELD_OPERATORS | PAIR_OPERATORS


def evaluate(dsl: Mapping[str, Any] | None, facts: Mapping[str, Any]) -> bool:
    """
    Evaluate a DSL condition against a facts dict.

    Args:
        dsl: Condition dict (None or {} is vacuously true)
        facts: Flat mapping of field name to value

    Returns:
        bool: Evaluation result
    """
    if not dsl:
        return True

    if "all" in dsl:
        return all(evaluate(sub, facts) for sub in dsl["all"])

    if "any" in dsl:
        conditions = dsl["any"]
        if not conditions:
            return False
        return any(evaluate(sub, facts) for sub in conditions)

    if "not" in dsl:
        return not evaluate(dsl["not"], facts)

    if "exists" in dsl:
        return facts.get(dsl["exists"]) is not None

    if "is_true" in dsl:
        return facts.get(dsl["is_true"]) is True

    if "is_false" in dsl:
        return facts.get(dsl["is_false"]) is False

    if "eq" in dsl:
        field, expected = dsl["eq"]
        return facts.get(field) == expected

    if "ne" in dsl:
        field, expected = dsl["ne"]
        return facts.get(field) != expected

    if "in" in dsl:
        field, allowed = dsl["in"]
        value = facts.get(field)
        if isinstance(value, (list, tuple)):
            return any(item in allowed for item in value)
        return value in allowed

    if "includes" in dsl:
        field, item = dsl["includes"]
        value = facts.get(field)
        if isinstance(value, (list, tuple)):
            return item in value
        if isinstance(value, str):
            return str(item).lower() in value.lower()
        return False

    if "contains_any" in dsl:
        field, keywords = dsl["contains_any"]
        value = facts.get(field)
        if isinstance(value, str):
            text = value.lower()
            return any(keyword.lower() in text for keyword in keywords)
        if isinstance(value, (list, tuple)):
            return any(keyword in value for keyword in keywords)
        return False

    if "min_length" in dsl:
        field, length = dsl["min_length"]
        value = facts.get(field)
        if isinstance(value, str):
            return len(value.strip()) >= length
        if isinstance(value, (list, tuple)):
            return len(value) >= length
        return False

    for operator in ("gte", "gt", "lte", "lt"):
        if operator in dsl:
            field, threshold = dsl[operator]
            return _compare(operator, facts.get(field), threshold)

    logger.warning(f"Unknown DSL operator: {list(dsl.keys())}")
    return False


def _compare(operator: str, value: Any, threshold: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    try:
        number = float(value)
        limit = float(threshold)
    except (TypeError, ValueError):
        return False

    if operator == "gte":
        return number >= limit
    if operator == "gt":
        return number > limit
    if operator == "lte":
        return number <= limit
    return number < limit


def validate_condition(dsl: Any, where: str) -> List[str]:
    """
    Check a condition's structure without evaluating it.

    Args:
        dsl: Condition to check
        where: Location prefix used in error messages (e.g. question id)

    Returns:
        list: Error strings (empty when valid)
    """
    if dsl is None:
        return []
    if not isinstance(dsl, Mapping):
        return [f"{where}: condition must be an object, got {type(dsl).__name__}"]
    if not dsl:
        return []
    if len(dsl) != 1:
        return [f"{where}: condition must have exactly one operator, got {sorted(dsl.keys())}"]

    operator, argument = next(iter(dsl.items()))

    if operator not in OPERATORS:
        return [f"{where}: unknown operator '{operator}'"]

    if operator in ("all", "any"):
        if not isinstance(argument, list):
            return [f"{where}: '{operator}' expects a list"]
        errors = []
        for index, sub in enumerate(argument):
            errors.extend(validate_condition(sub, f"{where}.{operator}[{index}]"))
        return errors

    if operator == "not":
        if not isinstance(argument, Mapping) or not argument:
            return [f"{where}: 'not' expects a condition object"]
        return validate_condition(argument, f"{where}.not")

    if operator in FIELD_OPERATORS:
        if not isinstance(argument, str):
            return [f"{where}: '{operator}' expects a field name"]
        return []

    if not isinstance(argument, list) or len(argument) != 2 or not isinstance(argument[0], str):
        return [f"{where}: '{operator}' expects [field, argument]"]
    if operator in ("in", "contains_any") and not isinstance(argument[1], list):
        return [f"{where}: '{operator}' expects a list argument"]
    return []
