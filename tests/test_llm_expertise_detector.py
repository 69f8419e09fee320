"""
Test LLM Expertise Detector - model classification with rule fallback

The text-generation client is a Mock; no model is loaded.

Run with: pytest tests/test_llm_expertise_detector.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import threading
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from backend.config import DATA_DIR
from backend.contracts import Answer, Expertise, Persona, parse_answer_value
from backend.core.expertise_classifier import ExpertiseClassifier
from backend.core.llm_expertise_detector import (
    FALLBACK_CONFIDENCE_CAP,
    SYSTEM_PROMPT,
    LLMExpertiseDetector,
)
from backend.core.question_bank import QuestionBank
from backend.core.scoring_rules import ScoringRules

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)

BANK = QuestionBank.from_file(DATA_DIR / "question_bank.json")
RULES = ScoringRules.from_file(DATA_DIR / "scoring_rules.json", BANK)
CLASSIFIER = ExpertiseClassifier(RULES)


def answer(question_id, raw):
    question = BANK.get_question_by_id(question_id)
    return Answer(question_id, parse_answer_value(question, raw), NOW, question.block)


def make_detector(client, timeout_seconds=2.0):
    return LLMExpertiseDetector(client, CLASSIFIER, BANK, timeout_seconds=timeout_seconds)


CTO_HISTORY = [
    answer("disc-001-role", "cto"),
    answer("disc-003-main-challenge", "We evaluate RAG pipelines and embeddings for support"),
]


def test_model_classification():
    client = Mock()
    client.generate_json.return_value = (
        '{"persona": "cto", "expertise": "advanced", "confidence": 0.92, '
        '"reasoning": "Mentions RAG and embeddings"}'
    )

    result = make_detector(client).detect(CTO_HISTORY)

    assert result.source == "llm"
    assert result.persona is Persona.CTO
    assert result.expertise is Expertise.ADVANCED
    assert result.confidence == pytest.approx(0.92)
    assert result.answer_count == 2
    assert result.reasoning == "Mentions RAG and embeddings"

    client.generate_json.assert_called_once()
    prompt = client.generate_json.call_args.args[0]
    assert "What is your primary role in the organization?" in prompt
    assert "A: cto" in prompt
    assert client.generate_json.call_args.kwargs['system_prompt'] == SYSTEM_PROMPT

    print("✓ Model classification test passed")


def test_fenced_json_is_accepted():
    client = Mock()
    client.generate_json.return_value = (
        'Sure!\n```json\n{"persona": "CEO", "expertise": "novice", "confidence": 1.7}\n```'
    )

    result = make_detector(client).detect(CTO_HISTORY)

    assert result.persona is Persona.CEO
    assert result.expertise is Expertise.NOVICE
    assert result.confidence == 1.0

    print("✓ Fenced JSON test passed")


def test_unknown_category_zeroes_confidence():
    client = Mock()
    client.generate_json.return_value = '{"persona": "unknown", "expertise": "advanced", "confidence": 0.9}'

    result = make_detector(client).detect(CTO_HISTORY)

    assert result.source == "llm"
    assert result.persona is Persona.UNKNOWN
    assert result.confidence == 0.0

    print("✓ Unknown category test passed")


def test_service_error_falls_back_with_capped_confidence():
    client = Mock()
    client.generate_json.side_effect = RuntimeError("CUDA error")

    result = make_detector(client).detect(CTO_HISTORY)
    rules = CLASSIFIER.classify(CTO_HISTORY)

    assert result.source == "fallback"
    assert result.persona is rules.persona
    assert result.expertise is rules.expertise
    assert result.confidence <= FALLBACK_CONFIDENCE_CAP
    assert result.persona_confidence == min(rules.persona_confidence, FALLBACK_CONFIDENCE_CAP)
    assert result.reasoning.startswith("Model unavailable")

    print("✓ Service error fallback test passed")


def test_timeout_falls_back():
    release = threading.Event()

    def slow_generate(*args, **kwargs):
        release.wait(timeout=5)
        return '{"persona": "cto", "expertise": "advanced", "confidence": 0.9}'

    client = Mock()
    client.generate_json.side_effect = slow_generate

    try:
        result = make_detector(client, timeout_seconds=0.05).detect(CTO_HISTORY)
    finally:
        release.set()

    assert result.source == "fallback"
    assert result.confidence <= FALLBACK_CONFIDENCE_CAP
    assert "timed out" in result.reasoning

    print("✓ Timeout fallback test passed")


@pytest.mark.parametrize("reply", [
    "I think this is a CTO.",
    '{"persona": "astronaut", "expertise": "advanced", "confidence": 0.9}',
    '{"persona": "cto", "expertise": "advanced", "confidence": "high"}',
    '["cto", "advanced"]',
    None,
])
def test_invalid_output_falls_back(reply):
    client = Mock()
    client.generate_json.return_value = reply

    result = make_detector(client).detect(CTO_HISTORY)

    assert result.source == "fallback"
    assert "invalid model output" in result.reasoning

    print("✓ Invalid output fallback test passed")


def test_no_answers_skips_model():
    client = Mock()

    result = make_detector(client).detect([])

    assert result.source == "rules"
    assert result.persona is Persona.UNKNOWN
    client.generate_json.assert_not_called()

    print("✓ No-answer test passed")


if __name__ == '__main__':
    print("\n" + "="*60)
    print("TESTING LLM EXPERTISE DETECTOR")
    print("="*60 + "\n")

    test_model_classification()
    test_fenced_json_is_accepted()
    test_unknown_category_zeroes_confidence()
    test_service_error_falls_back_with_capped_confidence()
    test_timeout_falls_back()
    for reply in ("I think this is a CTO.", None):
        test_invalid_output_falls_back(reply)
    test_no_answers_skips_model()

    print("\n" + "="*60)
    print("ALL LLM EXPERTISE DETECTOR TESTS PASSED ✓")
    print("="*60 + "\n")
