"""
Adaptive Router - decides the next question for a session

Responsibilities:
- Walk the block state machine discovery -> expertise -> deep-dive -> risk-scan -> complete
- Serve pending follow-up questions before scheduled ones
- Enforce eligibility (persona, dependencies, conditions, known facts)
- Decide when the assessment is complete

Design principles:
- Pure: route(state) depends only on the snapshot, the question bank and
  config; calling it twice on the same snapshot gives the same decision
- No I/O and no mutation; the caller applies the decision to the store
- Monotonic: a decision never names a block earlier than the session's

Selection order per call:
    1. Session complete or global cap reached -> RoutingComplete
    2. Pending follow-up (latest answer first, depth-first, depth capped)
    3. Scheduled question of the current block, transitioning forward
       while the block's exit condition holds or it has no eligible question
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from backend.config import RouterConfig
from backend.contracts import (
    Answer,
    AreaRelevance,
    Block,
    Classification,
    NextQuestion,
    Persona,
    Question,
    RoutingComplete,
    RoutingDecision,
    SessionState,
    answer_facts,
    effective_answers,
    next_block,
)
from backend.core.area_relevance import AreaRelevanceEngine, fact_context
from backend.core.condition_dsl import evaluate
from backend.core.expertise_classifier import ExpertiseClassifier
from backend.core.question_bank import QuestionBank

logger = logging.getLogger(__name__)


COMPLETE_REASON = "assessment_complete"
CAP_REASON = "question_cap_reached"
INSUFFICIENT_REASON = "insufficient_data"


@dataclass(frozen=True)
class _RouteContext:
    """Everything derived once per route() call."""
    state: SessionState
    answers: Tuple[Answer, ...]
    answered: frozenset
    classification: Classification
    relevance: AreaRelevance
    facts: Mapping[str, Any]


class AdaptiveRouter:
    """
    Stateless block state machine over a session snapshot.

    Usage:
        router = AdaptiveRouter(bank, classifier, relevance_engine, config)
        decision = router.route(state)
    """

    def __init__(
        self,
        bank: QuestionBank,
        classifier: ExpertiseClassifier,
        relevance_engine: AreaRelevanceEngine,
        config: RouterConfig,
    ):
        self.bank = bank
        self.classifier = classifier
        self.relevance_engine = relevance_engine
        self.config = config

    # ==================== PUBLIC API ====================

    def route(self, state: SessionState) -> RoutingDecision:
        """
        Decide the next question, or completion.

        Args:
            state: Session snapshot (read once, never mutated)

        Returns:
            NextQuestion or RoutingComplete
        """
        ctx = self._build_context(state)
        total = len(ctx.answered)

        if state.complete or state.current_block is Block.COMPLETE:
            reason = INSUFFICIENT_REASON if total == 0 else COMPLETE_REASON
            return self._complete(ctx, reason, "Session already complete")

        if total >= self.config.max_total_questions:
            return self._complete(
                ctx, CAP_REASON,
                f"Global question cap reached ({total}/{self.config.max_total_questions})",
            )

        follow_up = self._next_follow_up(ctx)
        if follow_up is not None:
            question, depth, reason = follow_up
            return self._next(
                ctx, question, state.current_block,
                f"Follow-up (depth {depth}): {reason}" if reason else f"Follow-up (depth {depth})",
                follow_up_depth=depth,
            )

        notes: List[str] = []
        block = state.current_block

        while block is not Block.COMPLETE:
            if block is Block.DISCOVERY:
                decision, exit_reason = self._route_discovery(ctx, notes)
            elif block is Block.EXPERTISE:
                decision, exit_reason = self._route_expertise(ctx, notes)
            elif block is Block.DEEP_DIVE:
                decision, exit_reason = self._route_deep_dive(ctx, notes)
            else:
                decision, exit_reason = self._route_risk_scan(ctx, notes)

            if decision is not None:
                return decision

            following = next_block(block)
            notes.append(f"{block.value} -> {following.value}: {exit_reason}")
            block = following

        if total == 0:
            return self._complete(ctx, INSUFFICIENT_REASON, "; ".join(notes + ["no answers recorded"]))
        return self._complete(ctx, COMPLETE_REASON, "; ".join(notes))

    def follow_up_depths(self, answers: Tuple[Answer, ...]) -> Dict[str, int]:
        """
        Follow-up depth of every answered question, derived from history.

        A question answered after an earlier answer whose trigger inserts it
        has depth parent + 1; everything else has depth 0.
        """
        effective = effective_answers(answers)
        depths: Dict[str, int] = {}
        for index, answer in enumerate(effective):
            depths[answer.question_id] = 0
            for parent in effective[:index]:
                question = self.bank.find_question(parent.question_id)
                if question is None:
                    continue
                if answer.question_id in self._fired_inserts(question, parent):
                    depths[answer.question_id] = depths[parent.question_id] + 1
                    break
        return depths

    # =========================================================================
    # Block handlers
    # Each returns (decision, None) or (None, exit_reason)
    # =========================================================================

    def _route_discovery(self, ctx: _RouteContext, notes: List[str]):
        answered = self._answered_in_block(ctx, Block.DISCOVERY)
        classification = ctx.classification

        if answered >= self.config.min_discovery_questions:
            return None, f"{answered} discovery answers"

        if (classification.persona is not Persona.UNKNOWN
                and classification.confidence >= self.config.fast_path_confidence
                and answered >= self.config.fast_path_min_answers):
            return None, (
                f"fast path, confidence {classification.confidence:.2f} after {answered} answers"
            )

        question = self._next_scheduled(ctx, self.bank.get_questions_by_block(Block.DISCOVERY))
        if question is None:
            return None, "no eligible discovery question"

        rationale = f"Discovery question {answered + 1} of {self.config.min_discovery_questions}"
        return self._next(ctx, question, Block.DISCOVERY, "; ".join(notes + [rationale])), None

    def _route_expertise(self, ctx: _RouteContext, notes: List[str]):
        answered = self._answered_in_block(ctx, Block.EXPERTISE)
        classification = ctx.classification

        if (classification.persona is not Persona.UNKNOWN
                and classification.confidence >= self.config.expertise_confidence_threshold):
            verb = "skipped" if answered == 0 else "resolved"
            return None, (
                f"expertise {verb}, {classification.persona.value}/"
                f"{classification.expertise.value} at confidence {classification.confidence:.2f}"
            )

        if answered >= self.config.max_expertise_questions:
            return None, f"expertise cap of {self.config.max_expertise_questions} reached"

        question = self._next_scheduled(ctx, self.bank.get_questions_by_block(Block.EXPERTISE))
        if question is None:
            return None, "no eligible expertise question"

        rationale = (
            f"Expertise detection, confidence {classification.confidence:.2f} "
            f"below {self.config.expertise_confidence_threshold:.2f}"
        )
        return self._next(ctx, question, Block.EXPERTISE, "; ".join(notes + [rationale])), None

    def _route_deep_dive(self, ctx: _RouteContext, notes: List[str]):
        deep_dive_areas = self._deep_dive_areas(ctx)

        if not deep_dive_areas:
            return None, "no area reached the deep-dive threshold"

        total = len(ctx.answered)
        if total >= self.config.question_budget:
            return None, f"question budget of {self.config.question_budget} reached"

        for area in deep_dive_areas:
            area_questions = self.bank.get_deep_dive_questions(area)
            asked = sum(1 for q in area_questions if q.id in ctx.answered)
            minimum, maximum = self.bank.get_area_limits(area)
            score = ctx.relevance.score_of(area)
            limit = maximum if score >= self.config.deep_dive_extend_score else minimum

            if asked >= limit:
                continue

            question = self._next_scheduled(ctx, area_questions)
            if question is None:
                logger.debug(f"Deep-dive area '{area}' has no eligible question left")
                continue

            rationale = f"Deep-dive '{area}' (score {score}), question {asked + 1} of {limit}"
            return self._next(
                ctx, question, Block.DEEP_DIVE, "; ".join(notes + [rationale]),
                deep_dive_area=area,
            ), None

        return None, "deep-dive areas exhausted"

    def _route_risk_scan(self, ctx: _RouteContext, notes: List[str]):
        risk_areas = self._risk_scan_areas(ctx)

        for area in risk_areas:
            question = self._next_scheduled(ctx, self.bank.get_risk_scan_questions(area))
            if question is not None:
                rationale = f"Risk scan for '{area}'"
                return self._next(ctx, question, Block.RISK_SCAN, "; ".join(notes + [rationale])), None

        return None, "risk scan finished"

    # =========================================================================
    # Question selection helpers
    # =========================================================================

    def _next_follow_up(self, ctx: _RouteContext) -> Optional[Tuple[Question, int, str]]:
        """
        First eligible follow-up, latest answer first.

        Because the latest answer is checked first, answering a follow-up
        surfaces its own follow-ups before its siblings (depth-first).
        """
        depths = self.follow_up_depths(ctx.state.answers)
        latest_index = {answer.question_id: index for index, answer in enumerate(ctx.state.answers)}
        by_recency = sorted(ctx.answers, key=lambda answer: -latest_index[answer.question_id])

        for answer in by_recency:
            parent = self.bank.find_question(answer.question_id)
            if parent is None or not parent.follow_up_triggers:
                continue
            depth = depths.get(answer.question_id, 0)
            if depth >= self.config.max_follow_up_depth:
                logger.debug(f"Follow-ups of '{parent.id}' suppressed at depth {depth}")
                continue

            for trigger in parent.follow_up_triggers:
                if not evaluate(trigger.condition, answer_facts(answer.value)):
                    continue
                for inserted_id in trigger.inserts:
                    question = self.bank.find_question(inserted_id)
                    if question is None:
                        logger.warning(f"Follow-up '{inserted_id}' of '{parent.id}' not in question bank")
                        continue
                    if self._is_eligible(ctx, question, allow_follow_up_only=True):
                        return question, depth + 1, trigger.reason
        return None

    def _next_scheduled(self, ctx: _RouteContext, questions) -> Optional[Question]:
        for question in questions:
            if self._is_eligible(ctx, question):
                return question
        return None

    def _is_eligible(
        self,
        ctx: _RouteContext,
        question: Question,
        allow_follow_up_only: bool = False,
    ) -> bool:
        """
        Determine if a question may be asked now.

        Checks:
        - not answered or asked before
        - follow_up_only questions only when inserted by a trigger
        - persona applicability (restricted questions need a known persona)
        - every required question answered
        - condition holds over known answers and facts
        - the question's fact is not already known
        """
        if question.id in ctx.answered or question.id in ctx.state.asked_question_ids:
            return False

        if question.follow_up_only and not allow_follow_up_only:
            return False

        if not question.applies_to(ctx.classification.persona):
            logger.debug(f"Skip '{question.id}': not for persona {ctx.classification.persona.value}")
            return False

        missing = [required for required in question.requires if required not in ctx.answered]
        if missing:
            logger.debug(f"Skip '{question.id}': requires {missing}")
            return False

        if question.condition and not evaluate(question.condition, ctx.facts):
            logger.debug(f"Skip '{question.id}': condition not met")
            return False

        if question.fact and question.fact in ctx.relevance.inferred_facts:
            fact = ctx.relevance.inferred_facts[question.fact]
            logger.debug(
                f"Skip '{question.id}': fact '{question.fact}' known "
                f"({fact.source}, {fact.confidence:.2f})"
            )
            return False

        return True

    # =========================================================================
    # Context and decision builders
    # =========================================================================

    def _build_context(self, state: SessionState) -> _RouteContext:
        answers = effective_answers(state.answers)

        stale = [a.question_id for a in answers if not self.bank.has_question(a.question_id)]
        if stale:
            logger.warning(f"Session {state.session_id} has answers for unknown questions: {stale}")

        classification = state.detected or self.classifier.classify(state.answers)
        relevance = self.relevance_engine.evaluate(
            state.answers, classification, state.deep_dive_areas
        )

        facts: Dict[str, Any] = {
            fact: inferred.value for fact, inferred in relevance.inferred_facts.items()
        }
        facts.update(fact_context(self.bank, answers, classification))

        return _RouteContext(
            state=state,
            answers=answers,
            answered=frozenset(a.question_id for a in answers),
            classification=classification,
            relevance=relevance,
            facts=facts,
        )

    def _answered_in_block(self, ctx: _RouteContext, block: Block) -> int:
        count = 0
        for question_id in ctx.answered:
            question = self.bank.find_question(question_id)
            if question is not None and question.block is block:
                count += 1
        return count

    def _deep_dive_areas(self, ctx: _RouteContext) -> Tuple[str, ...]:
        if ctx.state.deep_dive_areas is not None:
            return ctx.state.deep_dive_areas
        return ctx.relevance.selected_areas

    def _risk_scan_areas(self, ctx: _RouteContext) -> Tuple[str, ...]:
        if ctx.state.risk_scan_areas is not None:
            return ctx.state.risk_scan_areas
        return ctx.relevance.risk_scan_areas

    def _fired_inserts(self, question: Question, answer: Answer) -> Set[str]:
        facts = answer_facts(answer.value)
        inserted: Set[str] = set()
        for trigger in question.follow_up_triggers:
            if evaluate(trigger.condition, facts):
                inserted.update(trigger.inserts)
        return inserted

    def _next(
        self,
        ctx: _RouteContext,
        question: Question,
        block: Block,
        rationale: str,
        deep_dive_area: Optional[str] = None,
        follow_up_depth: int = 0,
    ) -> NextQuestion:
        past_expertise = block in (Block.DEEP_DIVE, Block.RISK_SCAN)
        return NextQuestion(
            question=question,
            block=block,
            rationale=rationale,
            deep_dive_area=deep_dive_area,
            follow_up_depth=follow_up_depth,
            classification=ctx.classification,
            area_scores=ctx.relevance.scores,
            deep_dive_areas=self._deep_dive_areas(ctx) if past_expertise else ctx.state.deep_dive_areas,
            risk_scan_areas=self._risk_scan_areas(ctx) if block is Block.RISK_SCAN else ctx.state.risk_scan_areas,
        )

    def _complete(self, ctx: _RouteContext, reason: str, rationale: str) -> RoutingComplete:
        deep_dive_areas = self._deep_dive_areas(ctx)
        risk_scan_areas = self._risk_scan_areas(ctx)
        summary = {
            'reason': reason,
            'answeredCount': len(ctx.answered),
            'persona': ctx.classification.persona.value,
            'expertise': ctx.classification.expertise.value,
            'confidence': round(ctx.classification.confidence, 3),
            'deepDiveAreas': list(deep_dive_areas),
            'riskScanAreas': list(risk_scan_areas),
            'areaScores': [score.to_dict() for score in ctx.relevance.scores],
        }
        logger.debug(f"Session {ctx.state.session_id} routing complete: {reason}")
        return RoutingComplete(
            summary=summary,
            rationale=rationale,
            classification=ctx.classification,
            area_scores=ctx.relevance.scores,
            deep_dive_areas=deep_dive_areas,
            risk_scan_areas=risk_scan_areas,
        )
