"""
LLM Risk Selector - picks risk-scan areas through a text-generation model,
with the relationship-matrix selection as fallback

Responsibilities:
- Build a selection prompt from the deep-dive answers, the area ranking
  and the matrix suggestion
- Call the model with a deadline and validate the areas it returns
- Fall back to the matrix suggestion on timeout, service error or bad output

Design principles:
- Runs once per session, right before risk-scan areas are locked
- The model may only reorder the choice: it must return as many distinct
  known areas as the matrix suggested, none of them a deep-dive area
"""

import json
import logging
from typing import Any, Sequence, Tuple

from backend.contracts import AreaScore, Answer, Block, effective_answers, value_to_json
from backend.core.question_bank import QuestionBank
from backend.errors import ExternalServiceError
from backend.utils.helpers import call_with_timeout, extract_json_object

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are a business consultant identifying hidden risks.

A respondent has finished a deep-dive on some business areas. Choose the
areas that most need a quick risk scan next.

Rules:
- Never choose a deep-dive area (those were already explored)
- Prefer areas with risk signals in the answers (problems, dependencies, blockers)
- Use the relationship suggestion as a guide, adjusted to the actual answers

Reply with a single JSON object: {"selectedAreas": [area ids], "reasoning": "..."}"""


class LLMRiskSelector:
    """Selects risk-scan areas with a text-generation client."""

    def __init__(self, client, bank: QuestionBank, timeout_seconds: float = 10.0):
        """
        Args:
            client: Object with generate_json(prompt, max_tokens=..., system_prompt=...) -> str
            bank: Question bank (area names, question text)
            timeout_seconds: Deadline for one model call
        """
        self.client = client
        self.bank = bank
        self.timeout_seconds = timeout_seconds

    def select(
        self,
        answers: Sequence[Answer],
        deep_dive_areas: Sequence[str],
        area_scores: Sequence[AreaScore],
        suggested: Sequence[str],
    ) -> Tuple[str, ...]:
        """
        Choose risk-scan areas.

        Args:
            answers: Full answer history
            deep_dive_areas: Areas already explored (excluded)
            area_scores: Current area ranking
            suggested: Relationship-matrix selection (fallback and size)

        Returns:
            Tuple of area ids, the same length as `suggested`
        """
        suggested = tuple(suggested)
        if not suggested:
            return suggested

        prompt = self._build_prompt(answers, deep_dive_areas, area_scores, suggested)
        try:
            raw = call_with_timeout(
                self.client.generate_json,
                prompt,
                timeout=self.timeout_seconds,
                max_tokens=200,
                system_prompt=SYSTEM_PROMPT,
            )
            selected = self._parse(raw, deep_dive_areas, len(suggested))
        except ExternalServiceError as e:
            logger.warning(f"LLM risk selection unavailable, using relationship matrix: {e.message}")
            return suggested
        except ValueError as e:
            logger.warning(f"LLM risk selection returned invalid output, using relationship matrix: {e}")
            return suggested

        logger.info(f"Risk-scan areas chosen by model: {', '.join(selected)}")
        return selected

    def _build_prompt(self, answers, deep_dive_areas, area_scores, suggested) -> str:
        lines = ["Deep-dive areas (exclude these):"]
        for area_id in deep_dive_areas:
            lines.append(f"- {area_id}: {self.bank.get_area(area_id).name}")
        if not deep_dive_areas:
            lines.append("- none")

        lines += ["", "Deep-dive answers:"]
        deep_dive_answers = [
            answer for answer in effective_answers(tuple(answers))
            if answer.block is Block.DEEP_DIVE
        ]
        for answer in deep_dive_answers:
            question = self.bank.find_question(answer.question_id)
            value = value_to_json(answer.value)
            if isinstance(value, list):
                value = ", ".join(value)
            lines.append(f"Q: {question.prompt if question else answer.question_id}")
            lines.append(f"A: {value}")
        if not deep_dive_answers:
            lines.append("(none)")

        lines += ["", "Area relevance scores (0-100, higher means more problems):"]
        for score in area_scores:
            if score.area not in deep_dive_areas:
                lines.append(f"- {score.area}: {score.score}")

        lines += [
            "",
            f"Relationship suggestion: {', '.join(suggested)}",
            "",
            f"Choose exactly {len(suggested)} area ids.",
        ]
        return "\n".join(lines)

    def _parse(self, raw: Any, deep_dive_areas: Sequence[str], count: int) -> Tuple[str, ...]:
        """
        Validate the model reply.

        Raises:
            ValueError: Not JSON, wrong size, unknown, repeated or deep-dive areas
        """
        if not isinstance(raw, str):
            raise ValueError(f"expected text, got {type(raw).__name__}")
        try:
            data = json.loads(extract_json_object(raw))
        except json.JSONDecodeError as e:
            raise ValueError(f"not JSON ({e.msg})") from None
        if not isinstance(data, dict) or not isinstance(data.get('selectedAreas'), list):
            raise ValueError("reply has no selectedAreas list")

        selected = tuple(str(area).strip().lower() for area in data['selectedAreas'])
        known = set(self.bank.area_ids())

        if len(selected) != count:
            raise ValueError(f"expected {count} areas, got {len(selected)}")
        if len(set(selected)) != len(selected):
            raise ValueError("repeated area")
        for area in selected:
            if area not in known:
                raise ValueError(f"unknown area '{area}'")
            if area in deep_dive_areas:
                raise ValueError(f"deep-dive area '{area}' selected")
        return selected
