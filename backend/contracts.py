"""
Semantic contracts for the adaptive assessment system.

This module defines the immutable data structures passed between the
question bank, classifier, relevance engine, router and session store.
They describe shape and meaning; validation lives in the modules that
build them (QuestionBank at load time, parse_answer_value at ingress).

Design principles:
- Frozen dataclasses (immutable after creation)
- Tuples and frozensets instead of lists and sets
- Tagged variants for answer values (discriminated by input type)
- No dependencies on other modules except errors

Contents:
- Block, InputType, Persona, Expertise: enums shared across modules
- Question, ChoiceOption, FollowUpTrigger: static catalog entries
- TextValue, SingleChoiceValue, MultiChoiceValue, NumericValue: answer variants
- Answer: one recorded response
- Classification, InferredFact, AreaScore, AreaRelevance: derived structures
- SessionState: one snapshot of an assessment attempt
- NextQuestion, RoutingComplete: routing decisions
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union

from backend.errors import ValidationError


class Block(Enum):
    """
    Assessment phases in the order the router walks them.

    COMPLETE is terminal and never holds questions.
    """
    DISCOVERY = "discovery"
    EXPERTISE = "expertise"
    DEEP_DIVE = "deep-dive"
    RISK_SCAN = "risk-scan"
    COMPLETE = "complete"


BLOCK_ORDER: Tuple[Block, ...] = (
    Block.DISCOVERY,
    Block.EXPERTISE,
    Block.DEEP_DIVE,
    Block.RISK_SCAN,
    Block.COMPLETE,
)

QUESTION_BLOCKS: Tuple[Block, ...] = BLOCK_ORDER[:-1]


def block_index(block: Block) -> int:
    """Position of a block in the progression (0 = discovery)."""
    return BLOCK_ORDER.index(block)


def next_block(block: Block) -> Block:
    """Block that follows `block`; COMPLETE follows itself."""
    index = block_index(block)
    if index >= len(BLOCK_ORDER) - 1:
        return Block.COMPLETE
    return BLOCK_ORDER[index + 1]


class InputType(Enum):
    TEXT = "text"
    SINGLE_CHOICE = "single-choice"
    MULTI_CHOICE = "multi-choice"
    NUMERIC = "numeric"


class Persona(Enum):
    """
    Respondent role inferred by the classifier.

    Declaration order is the tie-break order for equal scores.
    """
    CTO = "cto"
    CEO = "ceo"
    ENGINEERING_LEAD = "engineering_lead"
    PRODUCT_MANAGER = "product_manager"
    FINANCE_OPS = "finance_ops"
    IT_OPS = "it_ops"
    UNKNOWN = "unknown"


class Expertise(Enum):
    ADVANCED = "advanced"
    INTERMEDIATE = "intermediate"
    NOVICE = "novice"
    UNKNOWN = "unknown"


ALL_PERSONAS = "all"


# =============================================================================
# Question catalog
# =============================================================================

@dataclass(frozen=True)
class ChoiceOption:
    """
    One selectable option of a choice question.

    Attributes:
        value: Machine value stored in the answer (e.g. 'cto')
        label: Text shown to the respondent
        risk: True when picking this option in risk-scan signals a risk
    """
    value: str
    label: str
    risk: bool = False


@dataclass(frozen=True)
class FollowUpTrigger:
    """
    Rule that inserts follow-up questions after an answer.

    Attributes:
        condition: DSL dict evaluated against the answer facts
            ('value', 'text', 'choices', 'number')
        inserts: Question ids inserted, in order, when the condition holds
        reason: Human-readable explanation, surfaced as routing rationale
    """
    condition: Mapping[str, Any]
    inserts: Tuple[str, ...]
    reason: str = ""


@dataclass(frozen=True)
class Question:
    """
    Immutable question representation loaded from the question bank.

    Attributes:
        id: Unique identifier (e.g. 'disc-001-role')
        block: Block the question is scheduled in
        prompt: Question text shown to the respondent
        input_type: How the answer is captured (drives value parsing)
        options: Choice options (empty for text and numeric)
        personas: Applicable personas, or ALL_PERSONAS
        areas: Area ids the question informs (deep-dive/risk-scan grouping)
        follow_up_triggers: Rules inserting follow-ups after this answer
        requires: Question ids that must be answered before this one
        condition: Optional DSL over known answers and facts
        fact: Fact this question asks directly (skipped once inferred)
        follow_up_only: Only served when inserted by a trigger
        min_value / max_value: Bounds for numeric answers
        placeholder / help_text: Presentation hints passed through untouched
    """
    id: str
    block: Block
    prompt: str
    input_type: InputType = InputType.TEXT
    options: Tuple[ChoiceOption, ...] = ()
    personas: Union[str, FrozenSet[Persona]] = ALL_PERSONAS
    areas: Tuple[str, ...] = ()
    follow_up_triggers: Tuple[FollowUpTrigger, ...] = ()
    requires: Tuple[str, ...] = ()
    condition: Optional[Mapping[str, Any]] = None
    fact: Optional[str] = None
    follow_up_only: bool = False
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    placeholder: Optional[str] = None
    help_text: Optional[str] = None

    def applies_to(self, persona: Persona) -> bool:
        """True if the question may be shown to `persona`."""
        if self.personas == ALL_PERSONAS:
            return True
        return persona in self.personas

    def option_values(self) -> Tuple[str, ...]:
        return tuple(option.value for option in self.options)

    def to_dict(self) -> Dict[str, Any]:
        """Presentation view of the question (JSON-safe)."""
        result = {
            'id': self.id,
            'block': self.block.value,
            'prompt': self.prompt,
            'inputType': self.input_type.value,
            'areas': list(self.areas),
        }
        if self.options:
            result['options'] = [
                {'value': option.value, 'label': option.label}
                for option in self.options
            ]
        if self.placeholder:
            result['placeholder'] = self.placeholder
        if self.help_text:
            result['helpText'] = self.help_text
        if self.min_value is not None:
            result['minValue'] = self.min_value
        if self.max_value is not None:
            result['maxValue'] = self.max_value
        return result


# =============================================================================
# Answer values (tagged by input type)
# =============================================================================

@dataclass(frozen=True)
class TextValue:
    text: str
    input_type: InputType = field(default=InputType.TEXT, init=False)


@dataclass(frozen=True)
class SingleChoiceValue:
    choice: str
    input_type: InputType = field(default=InputType.SINGLE_CHOICE, init=False)


@dataclass(frozen=True)
class MultiChoiceValue:
    choices: Tuple[str, ...]
    input_type: InputType = field(default=InputType.MULTI_CHOICE, init=False)


@dataclass(frozen=True)
class NumericValue:
    number: float
    input_type: InputType = field(default=InputType.NUMERIC, init=False)


AnswerValue = Union[TextValue, SingleChoiceValue, MultiChoiceValue, NumericValue]


def parse_answer_value(question: Question, raw: Any) -> AnswerValue:
    """
    Validate raw client input against a question and wrap it.

    Args:
        question: Question being answered
        raw: Value as received from the client (str, list, number)

    Returns:
        AnswerValue variant matching question.input_type

    Raises:
        ValidationError: If the value is missing or does not fit the question
    """
    if raw is None:
        raise ValidationError(f"Answer for '{question.id}' is missing")

    if question.input_type is InputType.TEXT:
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError(f"Answer for '{question.id}' must be non-empty text")
        return TextValue(text=raw.strip())

    if question.input_type is InputType.SINGLE_CHOICE:
        if not isinstance(raw, str) or raw not in question.option_values():
            raise ValidationError(
                f"Answer for '{question.id}' must be one of {list(question.option_values())}",
                details={'received': raw},
            )
        return SingleChoiceValue(choice=raw)

    if question.input_type is InputType.MULTI_CHOICE:
        items = [raw] if isinstance(raw, str) else raw
        if not isinstance(items, (list, tuple)) or not items:
            raise ValidationError(f"Answer for '{question.id}' must select at least one option")
        unknown = [item for item in items if item not in question.option_values()]
        if unknown:
            raise ValidationError(
                f"Answer for '{question.id}' has unknown options",
                details={'unknown': unknown},
            )
        # Preserve option declaration order, drop duplicates
        selected = tuple(value for value in question.option_values() if value in items)
        return MultiChoiceValue(choices=selected)

    if question.input_type is InputType.NUMERIC:
        if isinstance(raw, bool):
            raise ValidationError(f"Answer for '{question.id}' must be a number")
        try:
            number = float(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"Answer for '{question.id}' must be a number") from None
        if not math.isfinite(number):
            raise ValidationError(f"Answer for '{question.id}' must be a finite number")
        if question.min_value is not None and number < question.min_value:
            raise ValidationError(f"Answer for '{question.id}' is below {question.min_value}")
        if question.max_value is not None and number > question.max_value:
            raise ValidationError(f"Answer for '{question.id}' is above {question.max_value}")
        return NumericValue(number=number)

    raise ValidationError(f"Unsupported input type for '{question.id}'")


def answer_facts(value: AnswerValue) -> Dict[str, Any]:
    """
    Flatten an answer value into the fact dict seen by DSL conditions.

    Keys:
        value: str, list, or float (raw answer)
        text: lowercase text form (for keyword matching)
        choices: list of selected options (choice types only)
        number: float (numeric only)
    """
    if isinstance(value, TextValue):
        return {'value': value.text, 'text': value.text.lower()}
    if isinstance(value, SingleChoiceValue):
        return {'value': value.choice, 'text': value.choice.lower(), 'choices': [value.choice]}
    if isinstance(value, MultiChoiceValue):
        return {
            'value': list(value.choices),
            'text': " ".join(value.choices).lower(),
            'choices': list(value.choices),
        }
    if isinstance(value, NumericValue):
        return {'value': value.number, 'text': str(value.number), 'number': value.number}
    raise TypeError(f"Unknown answer value type: {type(value).__name__}")


def value_to_json(value: AnswerValue) -> Any:
    """JSON-safe raw form of an answer value."""
    return answer_facts(value)['value']


@dataclass(frozen=True)
class Answer:
    """
    One response to one question within one session.

    Attributes:
        question_id: Question answered
        value: Tagged answer value
        timestamp: When the answer was recorded (UTC)
        block: Block the session was in when the answer was recorded
        revision: 0 for the first answer, incremented by corrections
        derived_tags: Tags attached at record time (e.g. detected areas)
    """
    question_id: str
    value: AnswerValue
    timestamp: datetime
    block: Block
    revision: int = 0
    derived_tags: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'questionId': self.question_id,
            'value': value_to_json(self.value),
            'inputType': self.value.input_type.value,
            'timestamp': self.timestamp.isoformat(),
            'block': self.block.value,
            'revision': self.revision,
            'derivedTags': list(self.derived_tags),
        }


def effective_answers(answers: Tuple[Answer, ...]) -> Tuple[Answer, ...]:
    """
    Latest revision of every answered question, in first-answer order.

    Corrections append new records; consumers that reason about content
    (classifier, relevance engine) only look at the effective answer.
    """
    latest: Dict[str, Answer] = {}
    order = []
    for answer in answers:
        if answer.question_id not in latest:
            order.append(answer.question_id)
        latest[answer.question_id] = answer
    return tuple(latest[qid] for qid in order)


# =============================================================================
# Derived structures
# =============================================================================

@dataclass(frozen=True)
class Classification:
    """
    Persona/expertise classification of a respondent.

    Attributes:
        persona: Highest-scoring persona (UNKNOWN without signal)
        expertise: Highest-scoring expertise level (UNKNOWN without signal)
        confidence: min(persona_confidence, expertise_confidence), 0..1
        persona_confidence: Normalized margin of the top persona
        expertise_confidence: Normalized margin of the top expertise level
        source: 'rules', 'llm' or 'fallback'
        answer_count: Number of answers the classification was computed from
        reasoning: Short explanation (rule hits or LLM reasoning)
        persona_scores / expertise_scores: Raw vote totals per category
    """
    persona: Persona = Persona.UNKNOWN
    expertise: Expertise = Expertise.UNKNOWN
    confidence: float = 0.0
    persona_confidence: float = 0.0
    expertise_confidence: float = 0.0
    source: str = "rules"
    answer_count: int = 0
    reasoning: str = ""
    persona_scores: Tuple[Tuple[str, float], ...] = ()
    expertise_scores: Tuple[Tuple[str, float], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'persona': self.persona.value,
            'expertise': self.expertise.value,
            'confidence': round(self.confidence, 3),
            'personaConfidence': round(self.persona_confidence, 3),
            'expertiseConfidence': round(self.expertise_confidence, 3),
            'source': self.source,
            'answerCount': self.answer_count,
            'reasoning': self.reasoning,
        }


@dataclass(frozen=True)
class InferredFact:
    """A fact derived from answers or persona instead of asked directly."""
    value: Any
    confidence: float
    source: str


@dataclass(frozen=True)
class AreaScore:
    area: str
    score: int
    selected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {'area': self.area, 'score': self.score, 'selected': self.selected}


@dataclass(frozen=True)
class AreaRelevance:
    """
    Per-turn output of the Area Relevance Engine.

    Attributes:
        scores: All areas, ranked by score then declared priority
        risk_scan_areas: Areas chosen for the risk scan, in scan order
        inferred_facts: Facts known with confidence >= inference threshold
    """
    scores: Tuple[AreaScore, ...] = ()
    risk_scan_areas: Tuple[str, ...] = ()
    inferred_facts: Mapping[str, InferredFact] = field(default_factory=dict)

    @property
    def selected_areas(self) -> Tuple[str, ...]:
        return tuple(score.area for score in self.scores if score.selected)

    def score_of(self, area: str) -> int:
        for score in self.scores:
            if score.area == area:
                return score.score
        return 0


# =============================================================================
# Session state
# =============================================================================

@dataclass(frozen=True)
class SessionState:
    """
    Snapshot of one assessment attempt.

    The session store replaces the snapshot on every mutation; readers
    hold a consistent view for the whole routing call.
    """
    session_id: str
    created_at: datetime
    last_activity: datetime
    answers: Tuple[Answer, ...] = ()
    current_block: Block = Block.DISCOVERY
    asked_question_ids: FrozenSet[str] = frozenset()
    detected: Optional[Classification] = None
    area_scores: Tuple[AreaScore, ...] = ()
    deep_dive_areas: Optional[Tuple[str, ...]] = None
    risk_scan_areas: Optional[Tuple[str, ...]] = None
    blocks_visited: Tuple[Block, ...] = (Block.DISCOVERY,)
    pending_question_id: Optional[str] = None
    pending_rationale: Optional[str] = None
    complete: bool = False
    version: int = 0
    initial_context: Mapping[str, Any] = field(default_factory=dict)

    @property
    def answered_count(self) -> int:
        return len(self.asked_question_ids)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe export (sets as sorted lists)."""
        return {
            'sessionId': self.session_id,
            'createdAt': self.created_at.isoformat(),
            'lastActivity': self.last_activity.isoformat(),
            'answers': [answer.to_dict() for answer in self.answers],
            'currentBlock': self.current_block.value,
            'askedQuestionIds': sorted(self.asked_question_ids),
            'detected': self.detected.to_dict() if self.detected else None,
            'areaScores': [score.to_dict() for score in self.area_scores],
            'deepDiveAreas': list(self.deep_dive_areas) if self.deep_dive_areas is not None else None,
            'riskScanAreas': list(self.risk_scan_areas) if self.risk_scan_areas is not None else None,
            'blocksVisited': [block.value for block in self.blocks_visited],
            'pendingQuestionId': self.pending_question_id,
            'pendingRationale': self.pending_rationale,
            'complete': self.complete,
            'version': self.version,
            'initialContext': dict(self.initial_context),
        }


# =============================================================================
# Routing decisions
# =============================================================================

@dataclass(frozen=True)
class NextQuestion:
    """
    Routing decision: ask `question` next.

    Attributes:
        question: Question to present
        block: Block the session is in once this question is asked
        rationale: Why this question was chosen
        deep_dive_area: Area being explored (deep-dive only)
        follow_up_depth: 0 for scheduled questions, >=1 for inserted follow-ups
        classification: Classification the decision was based on
        area_scores: Area ranking the decision was based on
        deep_dive_areas: Deep-dive areas in effect (None before deep-dive)
        risk_scan_areas: Risk-scan areas in effect (None before risk-scan)
    """
    question: Question
    block: Block
    rationale: str
    deep_dive_area: Optional[str] = None
    follow_up_depth: int = 0
    classification: Classification = field(default_factory=Classification)
    area_scores: Tuple[AreaScore, ...] = ()
    deep_dive_areas: Optional[Tuple[str, ...]] = None
    risk_scan_areas: Optional[Tuple[str, ...]] = None

    complete = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'complete': False,
            'nextQuestion': self.question.to_dict(),
            'block': self.block.value,
            'rationale': self.rationale,
            'deepDiveArea': self.deep_dive_area,
            'followUpDepth': self.follow_up_depth,
        }


@dataclass(frozen=True)
class RoutingComplete:
    """
    Routing decision: no further questions.

    summary always carries 'reason' ('assessment_complete',
    'question_cap_reached' or 'insufficient_data').
    """
    summary: Mapping[str, Any]
    rationale: str
    classification: Classification = field(default_factory=Classification)
    area_scores: Tuple[AreaScore, ...] = ()
    deep_dive_areas: Optional[Tuple[str, ...]] = None
    risk_scan_areas: Optional[Tuple[str, ...]] = None

    complete = True
    block = Block.COMPLETE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'complete': True,
            'nextQuestion': None,
            'block': Block.COMPLETE.value,
            'rationale': self.rationale,
            'summary': dict(self.summary),
        }


RoutingDecision = Union[NextQuestion, RoutingComplete]
