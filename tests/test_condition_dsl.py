"""
Test Condition DSL - evaluation and load-time validation

Run with: pytest tests/test_condition_dsl.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend.core.condition_dsl import evaluate, validate_condition


def test_empty_condition_is_true():
    """None and {} are vacuously true"""
    assert evaluate(None, {}) is True
    assert evaluate({}, {'value': 'x'}) is True

    print("✓ Empty condition test passed")


def test_comparison_operators():
    """eq/ne/in/gte/gt/lte/lt over a flat facts dict"""
    facts = {'value': 'cto', 'number': 42}

    assert evaluate({"eq": ["value", "cto"]}, facts)
    assert not evaluate({"eq": ["value", "ceo"]}, facts)
    assert evaluate({"ne": ["value", "ceo"]}, facts)
    assert evaluate({"in": ["value", ["ceo", "cto"]]}, facts)
    assert evaluate({"gte": ["number", 42]}, facts)
    assert not evaluate({"gt": ["number", 42]}, facts)
    assert evaluate({"lte": ["number", 42]}, facts)
    assert evaluate({"lt": ["number", 50]}, facts)

    print("✓ Comparison operators test passed")


def test_missing_fields_are_false():
    """Comparisons on absent fields never raise"""
    assert not evaluate({"eq": ["missing", "x"]}, {})
    assert not evaluate({"gte": ["missing", 1]}, {})
    assert not evaluate({"exists": "missing"}, {})
    assert not evaluate({"includes": ["missing", "x"]}, {})
    assert not evaluate({"min_length": ["missing", 1]}, {})
    # Booleans are not numbers
    assert not evaluate({"gte": ["flag", 0]}, {'flag': True})

    print("✓ Missing fields test passed")


def test_text_and_list_operators():
    """contains_any, includes and min_length on text and lists"""
    text_facts = {'text': 'our releases are always late'}
    list_facts = {'choices': ['cycle_time', 'mttr']}

    assert evaluate({"contains_any": ["text", ["slow", "LATE"]]}, text_facts)
    assert not evaluate({"contains_any": ["text", ["bug"]]}, text_facts)
    assert evaluate({"contains_any": ["choices", ["mttr", "none"]]}, list_facts)

    assert evaluate({"includes": ["choices", "mttr"]}, list_facts)
    assert not evaluate({"includes": ["choices", "none"]}, list_facts)

    assert evaluate({"min_length": ["choices", 2]}, list_facts)
    assert not evaluate({"min_length": ["choices", 3]}, list_facts)
    assert evaluate({"min_length": ["text", 10]}, text_facts)

    print("✓ Text and list operators test passed")


def test_logical_operators():
    """all/any/not nest arbitrarily"""
    facts = {'persona': 'cto', 'persona_confidence': 0.8, 'budget_authority': 'no'}

    assert evaluate({"all": [{"eq": ["persona", "cto"]}, {"gte": ["persona_confidence", 0.5]}]}, facts)
    assert not evaluate({"all": [{"eq": ["persona", "cto"]}, {"ne": ["budget_authority", "no"]}]}, facts)
    assert evaluate({"any": [{"eq": ["persona", "ceo"]}, {"exists": "budget_authority"}]}, facts)
    assert not evaluate({"any": []}, facts)
    assert evaluate({"not": {"eq": ["persona", "ceo"]}}, facts)

    print("✓ Logical operators test passed")


def test_boolean_field_operators():
    facts = {'enabled': True, 'disabled': False}

    assert evaluate({"is_true": "enabled"}, facts)
    assert not evaluate({"is_true": "disabled"}, facts)
    assert evaluate({"is_false": "disabled"}, facts)
    assert not evaluate({"is_false": "missing"}, facts)

    print("✓ Boolean field operators test passed")


def test_unknown_operator_evaluates_false():
    assert evaluate({"regex": ["value", ".*"]}, {'value': 'x'}) is False

    print("✓ Unknown operator test passed")


def test_validate_condition():
    """Structural problems are reported with their location"""
    assert validate_condition(None, "q") == []
    assert validate_condition({"eq": ["value", "x"]}, "q") == []
    assert validate_condition({"all": [{"exists": "a"}, {"not": {"eq": ["b", 1]}}]}, "q") == []

    errors = validate_condition({"regex": ["value", ".*"]}, "q1")
    assert errors and "unknown operator 'regex'" in errors[0]

    errors = validate_condition({"eq": ["value", "x"], "ne": ["value", "y"]}, "q2")
    assert errors and "exactly one operator" in errors[0]

    errors = validate_condition({"in": ["value", "not-a-list"]}, "q3")
    assert errors and "list argument" in errors[0]

    errors = validate_condition({"all": [{"eq": "broken"}]}, "q4")
    assert errors and errors[0].startswith("q4.all[0]")

    errors = validate_condition("value == x", "q5")
    assert errors and "must be an object" in errors[0]

    print("✓ Condition validation test passed")


if __name__ == '__main__':
    print("\n" + "="*60)
    print("TESTING CONDITION DSL")
    print("="*60 + "\n")

    test_empty_condition_is_true()
    test_comparison_operators()
    test_missing_fields_are_false()
    test_text_and_list_operators()
    test_logical_operators()
    test_boolean_field_operators()
    test_unknown_operator_evaluates_false()
    test_validate_condition()

    print("\n" + "="*60)
    print("ALL CONDITION DSL TESTS PASSED ✓")
    print("="*60 + "\n")
