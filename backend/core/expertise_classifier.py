"""
Expertise Classifier - rule-based persona/expertise classification

Responsibilities:
- Score personas and expertise levels from the full answer history
- Report confidence as the normalized margin of the winner over the runner-up

Design principles:
- Stateless: recomputed from scratch every call (no incremental state)
- Deterministic: ties resolve by enum declaration order
- Auditable: every rule hit is listed in Classification.reasoning

Confidence:
    (top - runner_up) / (total_votes + prior_weight), clamped to 0..1
    The prior keeps a single weak vote from producing certainty.
"""

import logging
from typing import Dict, Iterable, List, Sequence, Tuple

from backend.contracts import (
    Answer,
    Classification,
    Expertise,
    Persona,
    TextValue,
    answer_facts,
    effective_answers,
)
from backend.core.condition_dsl import evaluate
from backend.core.scoring_rules import ScoringRules, SignalRule

logger = logging.getLogger(__name__)


class ExpertiseClassifier:
    """Weighted-vote classifier over scoring_rules.json signal tables."""

    def __init__(self, rules: ScoringRules):
        self.rules = rules

    def classify(self, answers: Sequence[Answer]) -> Classification:
        """
        Classify the respondent from every effective answer.

        Args:
            answers: Full answer history (corrections included)

        Returns:
            Classification with source 'rules'
        """
        effective = effective_answers(tuple(answers))

        persona_scores = {p.value: 0.0 for p in Persona if p is not Persona.UNKNOWN}
        expertise_scores = {e.value: 0.0 for e in Expertise if e is not Expertise.UNKNOWN}
        hits: List[str] = []

        for answer in effective:
            facts = answer_facts(answer.value)
            hits.extend(self._apply_rules(
                self.rules.persona_signals, answer.question_id, facts, persona_scores))
            hits.extend(self._apply_rules(
                self.rules.expertise_signals, answer.question_id, facts, expertise_scores))

            if isinstance(answer.value, TextValue):
                text = answer.value.text.lower()
                hits.extend(self._apply_keywords(
                    self.rules.persona_keywords, text, persona_scores))
                hits.extend(self._apply_keywords(
                    self.rules.expertise_keywords, text, expertise_scores))

        persona_value, persona_confidence = self._pick(
            persona_scores, [p.value for p in Persona if p is not Persona.UNKNOWN])
        expertise_value, expertise_confidence = self._pick(
            expertise_scores, [e.value for e in Expertise if e is not Expertise.UNKNOWN])

        persona = Persona(persona_value) if persona_value else Persona.UNKNOWN
        expertise = Expertise(expertise_value) if expertise_value else Expertise.UNKNOWN

        classification = Classification(
            persona=persona,
            expertise=expertise,
            confidence=min(persona_confidence, expertise_confidence),
            persona_confidence=persona_confidence,
            expertise_confidence=expertise_confidence,
            source="rules",
            answer_count=len(effective),
            reasoning="; ".join(hits) if hits else "no classification signal",
            persona_scores=tuple(sorted(persona_scores.items())),
            expertise_scores=tuple(sorted(expertise_scores.items())),
        )

        logger.debug(
            f"Classified {persona.value}/{expertise.value} "
            f"confidence={classification.confidence:.2f} from {len(effective)} answers"
        )
        return classification

    # =========================================================================
    # Scoring helpers
    # =========================================================================

    @staticmethod
    def _apply_rules(
        rules: Iterable[SignalRule],
        question_id: str,
        facts: dict,
        scores: Dict[str, float],
    ) -> List[str]:
        hits = []
        for rule in rules:
            if rule.question != question_id or not evaluate(rule.when, facts):
                continue
            for category, weight in rule.votes.items():
                scores[category] += weight
            hits.append(f"{question_id} -> {', '.join(sorted(rule.votes))}")
        return hits

    def _apply_keywords(
        self,
        keywords: Dict[str, Tuple[str, ...]],
        text: str,
        scores: Dict[str, float],
    ) -> List[str]:
        hits = []
        for category, words in keywords.items():
            matched = [word for word in words if word in text]
            if matched:
                scores[category] += self.rules.keyword_weight * len(matched)
                hits.append(f"keywords {matched} -> {category}")
        return hits

    def _pick(self, scores: Dict[str, float], order: List[str]) -> Tuple[str | None, float]:
        """
        Highest-scoring category and its normalized margin.

        Returns (None, 0.0) when no category received a vote.
        """
        total = sum(scores.values())
        if total <= 0:
            return None, 0.0

        # sorted() is stable, so equal scores keep declaration order
        ranked = sorted(order, key=lambda category: -scores[category])
        top = scores[ranked[0]]
        runner_up = scores[ranked[1]] if len(ranked) > 1 else 0.0

        confidence = (top - runner_up) / (total + self.rules.prior_weight)
        return ranked[0], max(0.0, min(1.0, confidence))
