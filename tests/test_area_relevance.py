"""
Test Area Relevance Engine - area scoring, deep-dive/risk-scan selection
and fact inference

Run with: pytest tests/test_area_relevance.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timezone

from backend.config import DATA_DIR, RouterConfig
from backend.contracts import Answer, Classification, parse_answer_value
from backend.core.area_relevance import AreaRelevanceEngine
from backend.core.expertise_classifier import ExpertiseClassifier
from backend.core.question_bank import QuestionBank
from backend.core.scoring_rules import ScoringRules

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)

BANK = QuestionBank.from_file(DATA_DIR / "question_bank.json")
RULES = ScoringRules.from_file(DATA_DIR / "scoring_rules.json", BANK)
CLASSIFIER = ExpertiseClassifier(RULES)


def make_engine(**overrides):
    return AreaRelevanceEngine(BANK, RULES, RouterConfig(**overrides))


def answer(question_id, raw):
    question = BANK.get_question_by_id(question_id)
    return Answer(question_id, parse_answer_value(question, raw), NOW, question.block)


def test_zero_signal_ranks_by_priority():
    """No answers: every area scores 0, nothing selected, risk areas by priority"""
    relevance = make_engine().evaluate([], Classification())

    assert [s.area for s in relevance.scores] == list(BANK.area_ids())
    assert all(s.score == 0 for s in relevance.scores)
    assert relevance.selected_areas == ()
    assert relevance.risk_scan_areas == ("velocity", "quality", "data")

    print("✓ Zero-signal ranking test passed")


def test_cto_bias_selects_velocity_and_quality():
    history = [answer("disc-001-role", "cto")]
    relevance = make_engine().evaluate(history, CLASSIFIER.classify(history))

    assert relevance.score_of("velocity") == 30
    assert relevance.score_of("quality") == 30
    assert relevance.score_of("operations") == 10
    assert relevance.selected_areas == ("velocity", "quality")

    print("✓ Persona bias test passed")


def test_risk_scan_uses_relationship_matrix():
    """
    With velocity+quality in deep-dive:
    operations 10 + 100 (critical to quality), people 0 + 70 (upstream),
    financial 0 + 60 beats growth 0 + 60 on priority
    """
    history = [answer("disc-001-role", "cto")]
    relevance = make_engine().evaluate(history, CLASSIFIER.classify(history))

    assert relevance.risk_scan_areas == ("operations", "people", "financial")
    assert not set(relevance.risk_scan_areas) & set(relevance.selected_areas)

    print("✓ Relationship matrix test passed")


def test_locked_deep_dive_areas_are_kept():
    """A locked selection is reused even when scores change"""
    history = [answer("disc-001-role", "ceo"), answer("disc-006-primary-goal", "grow_revenue")]
    relevance = make_engine().evaluate(history, CLASSIFIER.classify(history), ("data",))

    assert relevance.selected_areas == ("data",)
    assert "data" not in relevance.risk_scan_areas

    print("✓ Locked selection test passed")


def test_scores_clamped_to_100():
    history = [
        answer("disc-001-role", "engineering_lead"),
        answer("disc-006-primary-goal", "ship_faster"),
        answer("disc-003-main-challenge", "slow releases, every deadline is late because of one bottleneck and delay"),
    ]
    relevance = make_engine().evaluate(history, CLASSIFIER.classify(history))

    assert relevance.score_of("velocity") == 100
    assert relevance.scores[0].area == "velocity"

    print("✓ Score clamp test passed")


def test_deep_dive_threshold_and_top_k():
    history = [answer("disc-001-role", "cto")]
    classification = CLASSIFIER.classify(history)

    strict = make_engine(deep_dive_min_score=31).evaluate(history, classification)
    assert strict.selected_areas == ()

    single = make_engine(deep_dive_top_k=1).evaluate(history, classification)
    assert single.selected_areas == ("velocity",)

    print("✓ Deep-dive threshold test passed")


def test_infer_facts():
    """Answered facts win; inferred facts need the confidence threshold"""
    history = [answer("disc-001-role", "cto"), answer("disc-002-company-size", "1-10")]
    engine = make_engine()
    facts = engine.infer_facts(history, CLASSIFIER.classify(history))

    assert facts['role'].source == "answer"
    assert facts['role'].value == "cto"
    assert facts['budget_authority'].value == "yes"
    assert facts['budget_authority'].source == "inferred"
    assert facts['team_size'].value == 5

    strict = make_engine(inference_confidence_threshold=0.95)
    facts = strict.infer_facts(history, CLASSIFIER.classify(history))
    assert 'budget_authority' not in facts
    assert 'team_size' not in facts

    print("✓ Fact inference test passed")


def test_answered_fact_overrides_inference():
    history = [answer("disc-001-role", "cto"), answer("exp-003-budget-authority", "no")]
    facts = make_engine().infer_facts(history, CLASSIFIER.classify(history))

    assert facts['budget_authority'].value == "no"
    assert facts['budget_authority'].confidence == 1.0

    print("✓ Answered fact test passed")


def test_evaluate_is_idempotent():
    history = [answer("disc-001-role", "it_ops"), answer("disc-004-ai-usage", "experimenting")]
    engine = make_engine()
    classification = CLASSIFIER.classify(history)

    assert engine.evaluate(history, classification) == engine.evaluate(history, classification)

    print("✓ Idempotent evaluation test passed")


def test_tag_answer():
    engine = make_engine()
    challenge = BANK.get_question_by_id("disc-003-main-challenge")
    value = parse_answer_value(challenge, "Releases are slow and full of bugs")

    assert engine.tag_answer(challenge, value) == ("area:velocity", "area:quality")

    debt = BANK.get_question_by_id("deep-qual-002-technical-debt")
    assert engine.tag_answer(debt, parse_answer_value(debt, "high")) == ("area:quality",)

    print("✓ Answer tagging test passed")


if __name__ == '__main__':
    print("\n" + "="*60)
    print("TESTING AREA RELEVANCE ENGINE")
    print("="*60 + "\n")

    test_zero_signal_ranks_by_priority()
    test_cto_bias_selects_velocity_and_quality()
    test_risk_scan_uses_relationship_matrix()
    test_locked_deep_dive_areas_are_kept()
    test_scores_clamped_to_100()
    test_deep_dive_threshold_and_top_k()
    test_infer_facts()
    test_answered_fact_overrides_inference()
    test_evaluate_is_idempotent()
    test_tag_answer()

    print("\n" + "="*60)
    print("ALL AREA RELEVANCE TESTS PASSED ✓")
    print("="*60 + "\n")
