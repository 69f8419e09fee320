"""
Question Bank - Immutable catalog of assessment questions

Responsibilities:
- Load questions and area metadata from question_bank.json
- Validate the catalog on load (fail fast, every problem reported)
- Answer lookups by block, id and area

Design principles:
- Built once at process start, shared read-only across sessions
- Lookups by id raise NotFoundError (no silent None)
- Declaration order is meaningful: it is the order questions are asked
  within a block and the tie-break order for areas
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from backend.contracts import (
    ALL_PERSONAS,
    QUESTION_BLOCKS,
    Block,
    ChoiceOption,
    FollowUpTrigger,
    InputType,
    Persona,
    Question,
)
from backend.core.condition_dsl import validate_condition
from backend.errors import NotFoundError

logger = logging.getLogger(__name__)


CHOICE_TYPES = (InputType.SINGLE_CHOICE, InputType.MULTI_CHOICE)


@dataclass(frozen=True)
class AreaDefinition:
    """
    A business/technical area that can be selected for deep-dive.

    Attributes:
        id: Area identifier (e.g. 'velocity')
        name: Display name
        priority: Declaration index, lower wins ties
        min_questions / max_questions: Deep-dive question count bounds
        critical / upstream / downstream: Related areas used for risk-scan selection
    """
    id: str
    name: str
    priority: int
    min_questions: int = 1
    max_questions: int = 2
    critical: Tuple[str, ...] = ()
    upstream: Tuple[str, ...] = ()
    downstream: Tuple[str, ...] = ()


class QuestionBank:
    """
    Read-only catalog of questions grouped by block.

    Usage:
        bank = QuestionBank.from_file("data/question_bank.json")
        first = bank.get_questions_by_block(Block.DISCOVERY)[0]
    """

    def __init__(self, data: Mapping[str, Any]):
        """
        Build the catalog from parsed JSON.

        Args:
            data: Dict with 'areas' and 'blocks' keys

        Raises:
            ValueError: If the catalog is invalid (all problems listed)
        """
        errors: List[str] = []

        self._areas = self._parse_areas(data.get("areas"), errors)
        self._questions_by_block: Dict[Block, Tuple[Question, ...]] = {}
        self._questions_by_id: Dict[str, Question] = {}

        blocks = data.get("blocks")
        if not isinstance(blocks, Mapping):
            errors.append("Missing 'blocks' in question bank")
            blocks = {}

        valid_blocks = {block.value for block in QUESTION_BLOCKS}
        for block_name in blocks:
            if block_name not in valid_blocks:
                errors.append(f"Unknown block '{block_name}'")

        for block in QUESTION_BLOCKS:
            parsed = []
            for index, raw in enumerate(blocks.get(block.value, [])):
                question = self._parse_question(raw, block, index, errors)
                if question is None:
                    continue
                if question.id in self._questions_by_id:
                    errors.append(f"Duplicate question id '{question.id}'")
                    continue
                self._questions_by_id[question.id] = question
                parsed.append(question)
            self._questions_by_block[block] = tuple(parsed)

        self._validate_references(errors)

        if errors:
            raise ValueError("Question bank validation failed:\n  - " + "\n  - ".join(errors))

        self._all_questions = tuple(
            question
            for block in QUESTION_BLOCKS
            for question in self._questions_by_block[block]
        )
        self._questions_by_id = MappingProxyType(self._questions_by_id)

        logger.info(
            f"Question bank loaded: {len(self._all_questions)} questions, "
            f"{len(self._areas)} areas"
        )

    @classmethod
    def from_file(cls, bank_path: str | Path) -> "QuestionBank":
        """
        Load and validate a question bank JSON file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the catalog is invalid
        """
        bank_path = Path(bank_path)
        if not bank_path.exists():
            raise FileNotFoundError(f"Question bank not found: {bank_path}")

        with open(bank_path, 'r') as f:
            data = json.load(f)

        return cls(data)

    # ==================== PUBLIC API ====================

    def get_all_questions(self) -> Tuple[Question, ...]:
        return self._all_questions

    def get_questions_by_block(self, block: Block) -> Tuple[Question, ...]:
        return self._questions_by_block.get(block, ())

    def get_question_by_id(self, question_id: str) -> Question:
        """
        Look up a question by id.

        Raises:
            NotFoundError: If no question has this id
        """
        question = self._questions_by_id.get(question_id)
        if question is None:
            raise NotFoundError(
                f"Unknown question id: {question_id}",
                details={'questionId': question_id},
            )
        return question

    def find_question(self, question_id: str) -> Optional[Question]:
        """Optional lookup for callers that tolerate stale ids."""
        return self._questions_by_id.get(question_id)

    def has_question(self, question_id: str) -> bool:
        return question_id in self._questions_by_id

    def get_deep_dive_questions(self, area: str) -> Tuple[Question, ...]:
        """Deep-dive questions tagged with `area`, in declaration order."""
        return tuple(
            question for question in self._questions_by_block[Block.DEEP_DIVE]
            if area in question.areas
        )

    def get_risk_scan_questions(self, area: str) -> Tuple[Question, ...]:
        return tuple(
            question for question in self._questions_by_block[Block.RISK_SCAN]
            if area in question.areas
        )

    def list_areas(self) -> Tuple[AreaDefinition, ...]:
        """Areas in declared priority order."""
        return self._areas

    def area_ids(self) -> Tuple[str, ...]:
        return tuple(area.id for area in self._areas)

    def get_area(self, area_id: str) -> AreaDefinition:
        for area in self._areas:
            if area.id == area_id:
                return area
        raise NotFoundError(f"Unknown area: {area_id}", details={'area': area_id})

    def get_area_limits(self, area_id: str) -> Tuple[int, int]:
        """(min_questions, max_questions) for a deep-dive area."""
        area = self.get_area(area_id)
        return area.min_questions, area.max_questions

    # =========================================================================
    # Parsing
    # =========================================================================

    def _parse_areas(self, raw_areas: Any, errors: List[str]) -> Tuple[AreaDefinition, ...]:
        if not isinstance(raw_areas, list) or not raw_areas:
            errors.append("Missing 'areas' in question bank")
            return ()

        areas = []
        seen = set()
        for index, raw in enumerate(raw_areas):
            area_id = raw.get("id") if isinstance(raw, Mapping) else None
            if not area_id:
                errors.append(f"Area at index {index} missing 'id'")
                continue
            if area_id in seen:
                errors.append(f"Duplicate area id '{area_id}'")
                continue
            seen.add(area_id)

            relationships = raw.get("relationships", {})
            min_questions = raw.get("min_questions", 1)
            max_questions = raw.get("max_questions", 2)
            if min_questions > max_questions:
                errors.append(f"Area '{area_id}' has min_questions > max_questions")

            areas.append(AreaDefinition(
                id=area_id,
                name=raw.get("name", area_id),
                priority=index,
                min_questions=min_questions,
                max_questions=max_questions,
                critical=tuple(relationships.get("critical", [])),
                upstream=tuple(relationships.get("upstream", [])),
                downstream=tuple(relationships.get("downstream", [])),
            ))

        declared = {area.id for area in areas}
        for area in areas:
            for related in area.critical + area.upstream + area.downstream:
                if related not in declared:
                    errors.append(f"Area '{area.id}' relates to undeclared area '{related}'")

        return tuple(areas)

    def _parse_question(
        self,
        raw: Any,
        block: Block,
        index: int,
        errors: List[str],
    ) -> Optional[Question]:
        if not isinstance(raw, Mapping) or "id" not in raw:
            errors.append(f"Question at index {index} in block '{block.value}' missing 'id'")
            return None

        q_id = raw["id"]

        if not raw.get("prompt"):
            errors.append(f"Question '{q_id}' missing 'prompt'")

        try:
            input_type = InputType(raw.get("input_type", "text"))
        except ValueError:
            errors.append(f"Question '{q_id}' has unknown input type '{raw.get('input_type')}'")
            return None

        options = []
        for option in raw.get("options", []):
            if isinstance(option, str):
                options.append(ChoiceOption(value=option, label=option))
            elif not isinstance(option, Mapping) or "value" not in option:
                errors.append(f"Question '{q_id}' has an option without 'value'")
            else:
                options.append(ChoiceOption(
                    value=option["value"],
                    label=option.get("label", option["value"]),
                    risk=bool(option.get("risk", False)),
                ))
        if input_type in CHOICE_TYPES and not options:
            errors.append(f"Choice question '{q_id}' has no options")
        values = [option.value for option in options]
        if len(values) != len(set(values)):
            errors.append(f"Question '{q_id}' has duplicate option values")

        personas = raw.get("personas", ALL_PERSONAS)
        if personas != ALL_PERSONAS:
            parsed_personas = set()
            for persona in personas:
                try:
                    parsed_personas.add(Persona(persona))
                except ValueError:
                    errors.append(f"Question '{q_id}' references unknown persona '{persona}'")
            personas = frozenset(parsed_personas)

        triggers = []
        for t_index, trigger in enumerate(raw.get("follow_up_triggers", [])):
            errors.extend(validate_condition(
                trigger.get("condition"), f"Question '{q_id}' trigger {t_index}"
            ))
            inserts = trigger.get("inserts", [])
            if not inserts:
                errors.append(f"Question '{q_id}' trigger {t_index} inserts nothing")
            triggers.append(FollowUpTrigger(
                condition=trigger.get("condition") or {},
                inserts=tuple(inserts),
                reason=trigger.get("reason", ""),
            ))

        errors.extend(validate_condition(raw.get("condition"), f"Question '{q_id}' condition"))

        areas = tuple(raw.get("areas", []))
        if block in (Block.DEEP_DIVE, Block.RISK_SCAN) and not areas:
            errors.append(f"Question '{q_id}' in block '{block.value}' has no area")

        return Question(
            id=q_id,
            block=block,
            prompt=raw.get("prompt", ""),
            input_type=input_type,
            options=tuple(options),
            personas=personas,
            areas=areas,
            follow_up_triggers=tuple(triggers),
            requires=tuple(raw.get("requires", [])),
            condition=raw.get("condition"),
            fact=raw.get("fact"),
            follow_up_only=bool(raw.get("follow_up_only", False)),
            min_value=raw.get("min_value"),
            max_value=raw.get("max_value"),
            placeholder=raw.get("placeholder"),
            help_text=raw.get("help_text"),
        )

    def _validate_references(self, errors: List[str]):
        """Cross-question checks once every id is known."""
        declared_areas = {area.id for area in self._areas}

        for question in self._questions_by_id.values():
            for area in question.areas:
                if area not in declared_areas:
                    errors.append(f"Question '{question.id}' tagged with undeclared area '{area}'")

            for required in question.requires:
                if required not in self._questions_by_id:
                    errors.append(f"Question '{question.id}' requires unknown question '{required}'")

            for trigger in question.follow_up_triggers:
                for inserted in trigger.inserts:
                    if inserted not in self._questions_by_id:
                        errors.append(
                            f"Question '{question.id}' follow-up inserts unknown question '{inserted}'"
                        )
                    elif inserted == question.id:
                        errors.append(f"Question '{question.id}' follow-up inserts itself")
