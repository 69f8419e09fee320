"""
Area Relevance Engine - ranks areas and infers known facts

Responsibilities:
- Score every declared area 0..100 from answers and classification
- Select deep-dive areas (score threshold + top-K)
- Select risk-scan areas through the area relationship matrix
- Infer facts (team size, budget authority) so their questions can be skipped

Design principles:
- Pure: output depends only on arguments, recomputed every routing call
- Deterministic: equal scores break ties by declared area priority
- Never persisted; the session only stores the locked selections

Risk-scan ranking:
    own score + 100 * strongest relationship weight to any deep-dive area
    weights: critical 1.0, upstream 0.7, downstream 0.6, unrelated 0.3
"""

import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from backend.config import RouterConfig
from backend.contracts import (
    Answer,
    AnswerValue,
    AreaRelevance,
    AreaScore,
    Classification,
    InferredFact,
    Persona,
    Question,
    TextValue,
    answer_facts,
    effective_answers,
    value_to_json,
)
from backend.core.condition_dsl import evaluate
from backend.core.question_bank import QuestionBank
from backend.core.scoring_rules import ScoringRules

logger = logging.getLogger(__name__)


RELATIONSHIP_WEIGHTS = {
    "critical": 1.0,
    "upstream": 0.7,
    "downstream": 0.6,
    "unrelated": 0.3,
}


def fact_context(
    bank: QuestionBank,
    answers: Iterable[Answer],
    classification: Classification,
) -> Dict[str, Any]:
    """
    Flat facts dict for question conditions and fact rules.

    Keys:
        <question id>       raw effective answer value
        <fact name>         raw value of the question asking that fact
        persona, expertise  classification values ('unknown' without signal)
        persona_confidence, expertise_confidence, confidence
    """
    context: Dict[str, Any] = {
        'persona': classification.persona.value,
        'expertise': classification.expertise.value,
        'persona_confidence': classification.persona_confidence,
        'expertise_confidence': classification.expertise_confidence,
        'confidence': classification.confidence,
    }
    for answer in answers:
        raw = value_to_json(answer.value)
        context[answer.question_id] = raw
        question = bank.find_question(answer.question_id)
        if question is not None and question.fact:
            context[question.fact] = raw
    return context


class AreaRelevanceEngine:
    """Scores areas and selects deep-dive/risk-scan areas."""

    def __init__(self, bank: QuestionBank, rules: ScoringRules, config: RouterConfig):
        self.bank = bank
        self.rules = rules
        self.config = config

    # ==================== PUBLIC API ====================

    def evaluate(
        self,
        answers: Sequence[Answer],
        classification: Classification,
        deep_dive_areas: Optional[Tuple[str, ...]] = None,
    ) -> AreaRelevance:
        """
        Rank areas and derive selections for one routing call.

        Args:
            answers: Full answer history
            classification: Current persona/expertise classification
            deep_dive_areas: Areas already locked for deep-dive (None = select now)

        Returns:
            AreaRelevance with ranked scores, risk-scan areas and inferred facts
        """
        effective = effective_answers(tuple(answers))
        scores = self.score_areas(effective, classification)
        ranked = self.rank(scores)

        if deep_dive_areas is None:
            selected = tuple(
                area for area in ranked
                if scores[area] >= self.config.deep_dive_min_score
            )[:self.config.deep_dive_top_k]
        else:
            selected = tuple(deep_dive_areas)

        area_scores = tuple(
            AreaScore(area=area, score=scores[area], selected=area in selected)
            for area in ranked
        )

        return AreaRelevance(
            scores=area_scores,
            risk_scan_areas=self.select_risk_scan_areas(scores, selected),
            inferred_facts=self.infer_facts(effective, classification),
        )

    def score_areas(
        self,
        answers: Sequence[Answer],
        classification: Classification,
    ) -> Dict[str, int]:
        """Area -> score 0..100 from persona bias, signal rules and keywords."""
        raw = {area: 0.0 for area in self.bank.area_ids()}

        if classification.persona is not Persona.UNKNOWN:
            for area, points in self.rules.persona_area_bias.get(
                    classification.persona.value, {}).items():
                raw[area] += points

        for answer in answers:
            facts = answer_facts(answer.value)
            for rule in self.rules.area_signals:
                if rule.question == answer.question_id and evaluate(rule.when, facts):
                    for area, points in rule.votes.items():
                        raw[area] += points
            for area in self._keyword_areas(answer.value):
                raw[area] += self.rules.area_keyword_points * self._keyword_hits(area, answer.value)

        return {area: int(min(100, max(0, round(points)))) for area, points in raw.items()}

    def rank(self, scores: Mapping[str, int]) -> Tuple[str, ...]:
        """Areas by descending score, declared priority on ties."""
        return tuple(
            area.id for area in sorted(
                self.bank.list_areas(),
                key=lambda area: (-scores.get(area.id, 0), area.priority),
            )
        )

    def relationship_weight(self, source: str, target: str) -> float:
        """How strongly `target` relates to deep-dive area `source`."""
        area = self.bank.get_area(source)
        if target in area.critical:
            return RELATIONSHIP_WEIGHTS["critical"]
        if target in area.upstream:
            return RELATIONSHIP_WEIGHTS["upstream"]
        if target in area.downstream:
            return RELATIONSHIP_WEIGHTS["downstream"]
        return RELATIONSHIP_WEIGHTS["unrelated"]

    def select_risk_scan_areas(
        self,
        scores: Mapping[str, int],
        deep_dive_areas: Sequence[str],
    ) -> Tuple[str, ...]:
        """
        Top risk_scan_area_count areas outside the deep-dive selection.

        Without deep-dive areas the ranking is score then priority.
        """
        candidates = []
        for area in self.bank.list_areas():
            if area.id in deep_dive_areas:
                continue
            weight = max(
                (self.relationship_weight(source, area.id) for source in deep_dive_areas),
                default=0.0,
            )
            combined = scores.get(area.id, 0) + 100 * weight
            candidates.append((-combined, area.priority, area.id))

        candidates.sort()
        return tuple(area_id for _, _, area_id in candidates[:self.config.risk_scan_area_count])

    def infer_facts(
        self,
        answers: Sequence[Answer],
        classification: Classification,
    ) -> Dict[str, InferredFact]:
        """
        Facts known well enough to skip asking them.

        Directly answered facts have confidence 1.0. Inferred facts use the
        most confident matching rule and count only at or above
        inference_confidence_threshold.
        """
        known: Dict[str, InferredFact] = {}

        for answer in answers:
            question = self.bank.find_question(answer.question_id)
            if question is not None and question.fact:
                known[question.fact] = InferredFact(
                    value=value_to_json(answer.value),
                    confidence=1.0,
                    source="answer",
                )

        context = fact_context(self.bank, answers, classification)
        for fact, rules in self.rules.fact_rules.items():
            if fact in known:
                continue
            matches = [rule for rule in rules if evaluate(rule.when, context)]
            if not matches:
                continue
            best = max(matches, key=lambda rule: rule.confidence)
            if best.confidence >= self.config.inference_confidence_threshold:
                known[fact] = InferredFact(
                    value=best.value,
                    confidence=best.confidence,
                    source="inferred",
                )
                logger.debug(f"Inferred fact '{fact}'={best.value!r} ({best.confidence:.2f})")

        return known

    def tag_answer(self, question: Question, value: AnswerValue) -> Tuple[str, ...]:
        """Derived tags recorded with an answer: its areas plus keyword-detected areas."""
        areas = list(question.areas)
        for area in self._keyword_areas(value):
            if area not in areas:
                areas.append(area)
        return tuple(f"area:{area}" for area in areas)

    # =========================================================================
    # Keyword helpers
    # =========================================================================

    def _keyword_areas(self, value: AnswerValue) -> Tuple[str, ...]:
        if not isinstance(value, TextValue):
            return ()
        return tuple(
            area for area in self.bank.area_ids()
            if self._keyword_hits(area, value) > 0
        )

    def _keyword_hits(self, area: str, value: AnswerValue) -> int:
        if not isinstance(value, TextValue):
            return 0
        text = value.text.lower()
        return sum(1 for keyword in self.rules.area_keywords.get(area, ()) if keyword in text)
