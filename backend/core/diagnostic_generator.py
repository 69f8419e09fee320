"""
Diagnostic Generator - turns a completed session into a diagnostic report

Responsibilities:
- Per-area health scores and status bands
- Risk flags from risk options the respondent picked
- Recommendations for the weakest and flagged areas
- Executive summary from the text-generation client, with a
  deterministic fallback

Design principles:
- Deterministic assembly: every number in the report comes from rules,
  the model only writes the summary paragraph
- The model call has a deadline; failure never fails the report

Health bands (health = 100 - relevance score):
    critical < 40 <= attention < 60 <= good < 80 <= excellent
"""

import logging
from typing import Any, Dict, List

from backend.contracts import (
    Classification,
    MultiChoiceValue,
    SessionState,
    SingleChoiceValue,
    effective_answers,
)
from backend.core.area_relevance import AreaRelevanceEngine
from backend.core.question_bank import QuestionBank
from backend.core.scoring_rules import ScoringRules
from backend.errors import ExternalServiceError
from backend.utils.helpers import call_with_timeout

logger = logging.getLogger(__name__)


MAX_RECOMMENDED_AREAS = 3

SUMMARY_SYSTEM_PROMPT = (
    "You are a technology consultant. Write a concise executive summary "
    "(3-4 sentences, plain prose, no lists) of an AI-readiness diagnostic. "
    "Use only the facts provided."
)


def health_status(health: int) -> str:
    if health < 40:
        return "critical"
    if health < 60:
        return "attention"
    if health < 80:
        return "good"
    return "excellent"


class DiagnosticGenerator:
    """Builds the diagnostic dict for a completed session."""

    def __init__(
        self,
        bank: QuestionBank,
        rules: ScoringRules,
        relevance_engine: AreaRelevanceEngine,
        client=None,
        timeout_seconds: float = 10.0,
    ):
        """
        Args:
            bank: Question bank
            rules: Scoring rules (recommendation texts)
            relevance_engine: Area scoring
            client: Optional text-generation client with generate(prompt, ...)
            timeout_seconds: Deadline for the summary call
        """
        self.bank = bank
        self.rules = rules
        self.relevance_engine = relevance_engine
        self.client = client
        self.timeout_seconds = timeout_seconds

        logger.info(f"Diagnostic generator initialized (narrative: {'model' if client else 'deterministic'})")

    # ==================== PUBLIC API ====================

    def generate(self, state: SessionState) -> Dict[str, Any]:
        """
        Generate the diagnostic for a session.

        Args:
            state: Session snapshot (normally complete)

        Returns:
            dict: JSON-safe diagnostic
        """
        answers = effective_answers(state.answers)
        classification = state.detected or Classification()
        relevance = self.relevance_engine.evaluate(
            state.answers, classification, state.deep_dive_areas
        )

        deep_dive_areas = list(state.deep_dive_areas or ())
        areas = []
        for score in relevance.scores:
            definition = self.bank.get_area(score.area)
            health = 100 - score.score
            areas.append({
                'area': score.area,
                'name': definition.name,
                'relevanceScore': score.score,
                'healthScore': health,
                'status': health_status(health),
                'deepDive': score.area in deep_dive_areas,
            })

        risk_flags = self._risk_flags(state)
        recommendations = self._recommendations(areas, risk_flags)
        insufficient = not answers or all(score.score == 0 for score in relevance.scores)

        diagnostic = {
            'sessionId': state.session_id,
            'persona': classification.persona.value,
            'expertise': classification.expertise.value,
            'confidence': round(classification.confidence, 3),
            'classificationSource': classification.source,
            'answeredCount': len(answers),
            'deepDiveAreas': deep_dive_areas,
            'riskScanAreas': list(state.risk_scan_areas or ()),
            'areas': areas,
            'riskFlags': risk_flags,
            'recommendations': recommendations,
            'insufficientData': insufficient,
        }

        summary, source = self._executive_summary(diagnostic)
        diagnostic['executiveSummary'] = summary
        diagnostic['summarySource'] = source

        logger.info(
            f"Diagnostic generated for {state.session_id}: "
            f"{len(risk_flags)} risk flags, summary from {source}"
        )
        return diagnostic

    # ==================== REPORT SECTIONS ====================

    def _risk_flags(self, state: SessionState) -> List[Dict[str, Any]]:
        """Every answered option marked risk=true, in answer order."""
        flags = []
        for answer in effective_answers(state.answers):
            question = self.bank.find_question(answer.question_id)
            if question is None or not question.options:
                continue

            if isinstance(answer.value, SingleChoiceValue):
                selected = [answer.value.choice]
            elif isinstance(answer.value, MultiChoiceValue):
                selected = list(answer.value.choices)
            else:
                continue

            for option in question.options:
                if option.risk and option.value in selected:
                    flags.append({
                        'area': question.areas[0] if question.areas else None,
                        'questionId': question.id,
                        'prompt': question.prompt,
                        'answer': option.value,
                        'label': option.label,
                    })
        return flags

    def _recommendations(self, areas: List[dict], risk_flags: List[dict]) -> List[Dict[str, Any]]:
        """
        Recommendations for flagged areas first, then the weakest areas
        (critical/attention), up to MAX_RECOMMENDED_AREAS areas.
        """
        by_id = {area['area']: area for area in areas}
        chosen: List[str] = []

        for flag in risk_flags:
            if flag['area'] and flag['area'] not in chosen:
                chosen.append(flag['area'])

        weakest = sorted(
            (area for area in areas if area['status'] in ("critical", "attention")),
            key=lambda area: area['healthScore'],
        )
        for area in weakest:
            if area['area'] not in chosen:
                chosen.append(area['area'])

        recommendations = []
        for area_id in chosen[:MAX_RECOMMENDED_AREAS]:
            actions = list(self.rules.recommendations.get(area_id, ()))
            if not actions:
                continue
            recommendations.append({
                'area': area_id,
                'name': by_id[area_id]['name'],
                'status': by_id[area_id]['status'],
                'actions': actions,
            })
        return recommendations

    # ==================== NARRATIVE ====================

    def _executive_summary(self, diagnostic: Dict[str, Any]) -> tuple:
        """(summary text, 'model' | 'deterministic')"""
        fallback = self._deterministic_summary(diagnostic)
        if self.client is None or diagnostic['insufficientData']:
            return fallback, "deterministic"

        try:
            text = call_with_timeout(
                self.client.generate,
                self._build_summary_prompt(diagnostic),
                timeout=self.timeout_seconds,
                max_tokens=300,
                temperature=0.3,
                system_prompt=SUMMARY_SYSTEM_PROMPT,
            )
        except ExternalServiceError as e:
            logger.warning(f"Executive summary falling back to deterministic text: {e.message}")
            return fallback, "deterministic"

        text = text.strip() if isinstance(text, str) else ""
        if not text:
            logger.warning("Executive summary empty, using deterministic text")
            return fallback, "deterministic"
        return text, "model"

    def _deterministic_summary(self, diagnostic: Dict[str, Any]) -> str:
        if diagnostic['insufficientData']:
            return (
                f"The assessment collected {diagnostic['answeredCount']} answers, "
                f"which is not enough to produce a reliable diagnostic."
            )

        persona = diagnostic['persona'].replace("_", " ")
        parts = [
            f"Assessment of a {persona} respondent ({diagnostic['expertise']} expertise) "
            f"based on {diagnostic['answeredCount']} answers."
        ]

        weak = [area for area in diagnostic['areas'] if area['status'] in ("critical", "attention")]
        if weak:
            listed = ", ".join(f"{area['name']} ({area['healthScore']}/100)" for area in weak[:3])
            parts.append(f"Areas needing attention: {listed}.")
        else:
            parts.append("No area scored below the attention threshold.")

        if diagnostic['riskFlags']:
            parts.append(f"{len(diagnostic['riskFlags'])} risk flags were raised in the risk scan.")

        return " ".join(parts)

    def _build_summary_prompt(self, diagnostic: Dict[str, Any]) -> str:
        lines = [
            f"Persona: {diagnostic['persona']}",
            f"Expertise: {diagnostic['expertise']}",
            f"Answers collected: {diagnostic['answeredCount']}",
            "",
            "Area health (0-100, higher is healthier):",
        ]
        for area in diagnostic['areas']:
            lines.append(f"- {area['name']}: {area['healthScore']} ({area['status']})")
        if diagnostic['riskFlags']:
            lines.append("")
            lines.append("Risk flags:")
            for flag in diagnostic['riskFlags']:
                lines.append(f"- {flag['prompt']} -> {flag['label']}")
        if diagnostic['recommendations']:
            lines.append("")
            lines.append("Recommended focus:")
            for rec in diagnostic['recommendations']:
                lines.append(f"- {rec['name']}: {rec['actions'][0]}")
        return "\n".join(lines)
