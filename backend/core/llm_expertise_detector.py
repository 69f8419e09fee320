"""
LLM Expertise Detector - persona/expertise classification through a
text-generation model, with rule-based fallback

Responsibilities:
- Build a classification prompt from the answered questions
- Call the model with a deadline and parse its JSON reply
- Fall back to ExpertiseClassifier on timeout, service error or bad JSON

Design principles:
- The model call is the only blocking operation in a routing turn, so it
  always runs through call_with_timeout
- Fallback results are marked source='fallback' and their confidence is
  capped, so a degraded classification never fast-paths on its own
"""

import json
import logging
from dataclasses import replace
from typing import Any, Dict, Sequence

from backend.contracts import (
    Answer,
    Classification,
    Expertise,
    Persona,
    effective_answers,
    value_to_json,
)
from backend.core.expertise_classifier import ExpertiseClassifier
from backend.core.question_bank import QuestionBank
from backend.errors import ExternalServiceError
from backend.utils.helpers import call_with_timeout, extract_json_object

logger = logging.getLogger(__name__)


FALLBACK_CONFIDENCE_CAP = 0.7

SYSTEM_PROMPT = """You classify respondents of a technology and AI-readiness assessment.

From their answers, decide:
- persona: one of ceo, cto, engineering_lead, product_manager, finance_ops, it_ops, unknown
- expertise: one of novice, intermediate, advanced, unknown
- confidence: 0.0 to 1.0 (above 0.8 only with very strong signals)
- reasoning: one or two sentences

Judge expertise from vocabulary, specificity and familiarity with metrics
and tools, not from how many problems are mentioned.

Reply with a single JSON object with exactly these keys and nothing else."""


class LLMExpertiseDetector:
    """Classifies with a text-generation client, falling back to rules."""

    def __init__(
        self,
        client,
        fallback: ExpertiseClassifier,
        bank: QuestionBank,
        timeout_seconds: float = 10.0,
    ):
        """
        Args:
            client: Object with generate_json(prompt, max_tokens=..., system_prompt=...) -> str
            fallback: Rule-based classifier used when the model is unavailable
            bank: Question bank (for prompt text)
            timeout_seconds: Deadline for one model call
        """
        self.client = client
        self.fallback = fallback
        self.bank = bank
        self.timeout_seconds = timeout_seconds

    def detect(self, answers: Sequence[Answer]) -> Classification:
        """
        Classify the respondent.

        Never raises for model problems: those produce a capped fallback.

        Returns:
            Classification with source 'llm' or 'fallback'
            ('rules' when there are no answers yet)
        """
        effective = effective_answers(tuple(answers))
        if not effective:
            return self.fallback.classify(effective)

        prompt = self._build_prompt(effective)
        try:
            raw = call_with_timeout(
                self.client.generate_json,
                prompt,
                timeout=self.timeout_seconds,
                max_tokens=200,
                system_prompt=SYSTEM_PROMPT,
            )
            parsed = self._parse(raw)
        except ExternalServiceError as e:
            logger.warning(f"LLM expertise detection unavailable, using rules: {e.message}")
            return self._fallback(answers, e.message)
        except ValueError as e:
            logger.warning(f"LLM expertise detection returned invalid output, using rules: {e}")
            return self._fallback(answers, f"invalid model output: {e}")

        confidence = parsed['confidence']
        return Classification(
            persona=parsed['persona'],
            expertise=parsed['expertise'],
            confidence=confidence,
            persona_confidence=confidence,
            expertise_confidence=confidence,
            source="llm",
            answer_count=len(effective),
            reasoning=parsed['reasoning'],
        )

    def _fallback(self, answers: Sequence[Answer], reason: str) -> Classification:
        result = self.fallback.classify(answers)
        return replace(
            result,
            source="fallback",
            confidence=min(result.confidence, FALLBACK_CONFIDENCE_CAP),
            persona_confidence=min(result.persona_confidence, FALLBACK_CONFIDENCE_CAP),
            expertise_confidence=min(result.expertise_confidence, FALLBACK_CONFIDENCE_CAP),
            reasoning=f"Model unavailable ({reason}); {result.reasoning}",
        )

    def _build_prompt(self, answers: Sequence[Answer]) -> str:
        lines = ["Respondent answers:", ""]
        for answer in answers:
            question = self.bank.find_question(answer.question_id)
            prompt_text = question.prompt if question else answer.question_id
            value = value_to_json(answer.value)
            if isinstance(value, list):
                value = ", ".join(value)
            lines.append(f"Q: {prompt_text}")
            lines.append(f"A: {value}")
            lines.append("")
        lines.append('Return JSON: {"persona": ..., "expertise": ..., "confidence": ..., "reasoning": ...}')
        return "\n".join(lines)

    @staticmethod
    def _parse(raw: Any) -> Dict[str, Any]:
        """
        Validate the model reply.

        Raises:
            ValueError: Not JSON, or a field is missing or out of range
        """
        if not isinstance(raw, str):
            raise ValueError(f"expected text, got {type(raw).__name__}")
        try:
            data = json.loads(extract_json_object(raw))
        except json.JSONDecodeError as e:
            raise ValueError(f"not JSON ({e.msg})") from None
        if not isinstance(data, dict):
            raise ValueError("reply is not a JSON object")

        try:
            persona = Persona(str(data.get('persona', '')).lower())
            expertise = Expertise(str(data.get('expertise', '')).lower())
        except ValueError as e:
            raise ValueError(f"unknown category: {e}") from None

        try:
            confidence = float(data.get('confidence'))
        except (TypeError, ValueError):
            raise ValueError("confidence is not a number") from None

        if persona is Persona.UNKNOWN or expertise is Expertise.UNKNOWN:
            confidence = 0.0

        return {
            'persona': persona,
            'expertise': expertise,
            'confidence': max(0.0, min(1.0, confidence)),
            'reasoning': str(data.get('reasoning', '')),
        }
