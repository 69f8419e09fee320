"""
Scoring Rules - weighted signal tables shared by the classifier,
relevance engine and diagnostic generator.

Loaded once from scoring_rules.json and validated against the question
bank so a rule can never point at a question or area that doesn't exist.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

from backend.contracts import Expertise, Persona
from backend.core.condition_dsl import validate_condition
from backend.core.question_bank import QuestionBank

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignalRule:
    """
    One weighted rule: if the answer to `question` satisfies `when`,
    add `votes` to the named categories (personas, expertise levels or areas).
    """
    question: str
    when: Mapping[str, Any]
    votes: Mapping[str, float]


@dataclass(frozen=True)
class FactRule:
    """Infer `value` for a fact with `confidence` when `when` holds."""
    when: Mapping[str, Any]
    value: Any
    confidence: float


class ScoringRules:
    """Parsed and validated scoring tables (read-only after construction)."""

    def __init__(self, data: Mapping[str, Any], bank: QuestionBank):
        """
        Args:
            data: Parsed scoring_rules.json
            bank: Question bank the rules refer to

        Raises:
            ValueError: If any rule references unknown questions, categories or areas
        """
        errors: List[str] = []
        persona_names = {p.value for p in Persona if p is not Persona.UNKNOWN}
        expertise_names = {e.value for e in Expertise if e is not Expertise.UNKNOWN}
        area_names = set(bank.area_ids())

        self.prior_weight = float(data.get("prior_weight", 1.0))
        self.keyword_weight = float(data.get("keyword_weight", 0.5))
        self.area_keyword_points = float(data.get("area_keyword_points", 10))

        self.persona_signals = self._parse_signals(
            data.get("persona_signals", []), "persona_signals", persona_names, bank, errors)
        self.expertise_signals = self._parse_signals(
            data.get("expertise_signals", []), "expertise_signals", expertise_names, bank, errors)
        self.area_signals = self._parse_signals(
            data.get("area_signals", []), "area_signals", area_names, bank, errors, votes_key="points")

        self.persona_keywords = self._parse_keywords(
            data.get("persona_keywords", {}), "persona_keywords", persona_names, errors)
        self.expertise_keywords = self._parse_keywords(
            data.get("expertise_keywords", {}), "expertise_keywords", expertise_names, errors)
        self.area_keywords = self._parse_keywords(
            data.get("area_keywords", {}), "area_keywords", area_names, errors)

        self.persona_area_bias: Dict[str, Dict[str, float]] = {}
        for persona, bias in data.get("persona_area_bias", {}).items():
            if persona not in persona_names:
                errors.append(f"persona_area_bias: unknown persona '{persona}'")
                continue
            for area in bias:
                if area not in area_names:
                    errors.append(f"persona_area_bias.{persona}: unknown area '{area}'")
            self.persona_area_bias[persona] = dict(bias)

        self.fact_rules: Dict[str, Tuple[FactRule, ...]] = {}
        for fact, rules in data.get("facts", {}).items():
            parsed = []
            for index, rule in enumerate(rules):
                where = f"facts.{fact}[{index}]"
                errors.extend(validate_condition(rule.get("when"), where))
                confidence = rule.get("confidence", 0.0)
                if not 0.0 <= confidence <= 1.0:
                    errors.append(f"{where}: confidence must be within 0..1")
                parsed.append(FactRule(
                    when=rule.get("when") or {},
                    value=rule.get("value"),
                    confidence=float(confidence),
                ))
            self.fact_rules[fact] = tuple(parsed)

        self.recommendations: Dict[str, Tuple[str, ...]] = {}
        for area, texts in data.get("recommendations", {}).items():
            if area not in area_names:
                errors.append(f"recommendations: unknown area '{area}'")
            self.recommendations[area] = tuple(texts)

        if errors:
            raise ValueError("Scoring rules validation failed:\n  - " + "\n  - ".join(errors))

        logger.info(
            f"Scoring rules loaded: {len(self.persona_signals)} persona, "
            f"{len(self.expertise_signals)} expertise, {len(self.area_signals)} area signals"
        )

    @classmethod
    def from_file(cls, rules_path: str | Path, bank: QuestionBank) -> "ScoringRules":
        rules_path = Path(rules_path)
        if not rules_path.exists():
            raise FileNotFoundError(f"Scoring rules not found: {rules_path}")
        with open(rules_path, 'r') as f:
            data = json.load(f)
        return cls(data, bank)

    @staticmethod
    def _parse_signals(raw_rules, section, categories, bank, errors, votes_key="votes"):
        parsed = []
        for index, rule in enumerate(raw_rules):
            where = f"{section}[{index}]"
            question = rule.get("question")
            if not bank.has_question(question):
                errors.append(f"{where}: unknown question '{question}'")
            errors.extend(validate_condition(rule.get("when"), where))
            votes = rule.get(votes_key, {})
            for category in votes:
                if category not in categories:
                    errors.append(f"{where}: unknown category '{category}'")
            parsed.append(SignalRule(
                question=question,
                when=rule.get("when") or {},
                votes={k: float(v) for k, v in votes.items()},
            ))
        return tuple(parsed)

    @staticmethod
    def _parse_keywords(raw, section, categories, errors):
        parsed = {}
        for category, keywords in raw.items():
            if category not in categories:
                errors.append(f"{section}: unknown category '{category}'")
                continue
            parsed[category] = tuple(keyword.lower() for keyword in keywords)
        return parsed
