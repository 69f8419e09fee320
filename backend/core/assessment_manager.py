"""
Assessment Manager - command handler for assessment sessions

Responsibilities:
- Execute commands (start, submit answer, route, status, finalize)
- Hold one store transaction per command (record + classify + route + apply)
- Apply routing decisions to the store (block advance, area locks, pending question)
- Convert errors into ErrorResult (never raises to the caller)

Design principles:
- Thin orchestration: routing lives in AdaptiveRouter, storage in
  SessionStateManager, scoring in the classifier and relevance engine
- Recoverable conflicts: STATE_CONFLICT carries the canonical session and
  current decision so a client can resynchronize
- Unexpected exceptions roll the session back and become INTERNAL_ERROR
"""

import logging
from dataclasses import replace
from typing import Any, Optional

from backend.commands import (
    Command,
    FinalizeSession,
    GetSessionStatus,
    RouteNext,
    StartSession,
    SubmitAnswer,
)
from backend.config import AppConfig, RouterConfig
from backend.contracts import (
    Answer,
    Block,
    RoutingDecision,
    SessionState,
    block_index,
    parse_answer_value,
)
from backend.core.adaptive_router import AdaptiveRouter
from backend.core.area_relevance import AreaRelevanceEngine
from backend.core.diagnostic_generator import DiagnosticGenerator
from backend.core.expertise_classifier import ExpertiseClassifier
from backend.core.llm_expertise_detector import LLMExpertiseDetector
from backend.core.llm_risk_selector import LLMRiskSelector
from backend.core.question_bank import QuestionBank
from backend.core.scoring_rules import ScoringRules
from backend.core.session_store import SessionStateManager
from backend.errors import AssessmentError, InternalError, StateConflictError, ValidationError
from backend.results import ErrorResult, FinalReport, Result, StatusResult, TurnResult

logger = logging.getLogger(__name__)


class AssessmentManager:
    """
    Orchestrates adaptive assessment sessions.

    Usage:
        manager = AssessmentManager.from_config(AppConfig.from_env())
        result = manager.handle(StartSession())
    """

    def __init__(
        self,
        store: SessionStateManager,
        bank: QuestionBank,
        classifier: ExpertiseClassifier,
        relevance_engine: AreaRelevanceEngine,
        router: AdaptiveRouter,
        diagnostic_generator: DiagnosticGenerator,
        expertise_detector: Optional[LLMExpertiseDetector] = None,
        risk_selector: Optional[LLMRiskSelector] = None,
    ):
        self._validate_modules(
            store, router, classifier, diagnostic_generator, expertise_detector, risk_selector
        )

        self.store = store
        self.bank = bank
        self.classifier = classifier
        self.relevance_engine = relevance_engine
        self.router = router
        self.diagnostic_generator = diagnostic_generator
        self.expertise_detector = expertise_detector
        self.risk_selector = risk_selector

        logger.info(
            f"Assessment Manager initialized "
            f"(expertise detection: {'model' if expertise_detector else 'rules'})"
        )

    @classmethod
    def from_config(cls, app_config: AppConfig, client=None, clock=None) -> "AssessmentManager":
        """
        Build the full component graph from configuration files.

        Args:
            app_config: File locations and service settings
            client: Optional text-generation client (enables model-based
                expertise detection, risk-area selection and executive summaries)
            clock: Optional time source for the session store

        Raises:
            FileNotFoundError: If a data file is missing
            ValueError: If a data file fails validation
        """
        bank = QuestionBank.from_file(app_config.question_bank_path)
        rules = ScoringRules.from_file(app_config.scoring_rules_path, bank)
        router_config = RouterConfig.load(app_config.router_config_path)

        classifier = ExpertiseClassifier(rules)
        relevance_engine = AreaRelevanceEngine(bank, rules, router_config)
        router = AdaptiveRouter(bank, classifier, relevance_engine, router_config)

        store_kwargs = {'ttl_seconds': app_config.session_ttl_seconds}
        if clock is not None:
            store_kwargs['clock'] = clock
        store = SessionStateManager(**store_kwargs)

        detector = None
        risk_selector = None
        if client is not None:
            detector = LLMExpertiseDetector(
                client, classifier, bank, timeout_seconds=app_config.llm_timeout_seconds
            )
            risk_selector = LLMRiskSelector(
                client, bank, timeout_seconds=app_config.llm_timeout_seconds
            )

        generator = DiagnosticGenerator(
            bank, rules, relevance_engine,
            client=client, timeout_seconds=app_config.llm_timeout_seconds,
        )

        return cls(store, bank, classifier, relevance_engine, router, generator, detector, risk_selector)

    def _validate_modules(
        self, store, router, classifier, diagnostic_generator, expertise_detector, risk_selector
    ):
        """Validate module interfaces"""
        for method in ('transaction', 'get_session', 'record_answer', 'advance_block'):
            if not callable(getattr(store, method, None)):
                raise TypeError(f"store must have callable {method}() method")

        if not callable(getattr(router, 'route', None)):
            raise TypeError("router must have callable route() method")

        if not callable(getattr(classifier, 'classify', None)):
            raise TypeError("classifier must have callable classify() method")

        if not callable(getattr(diagnostic_generator, 'generate', None)):
            raise TypeError("diagnostic_generator must have callable generate() method")

        if expertise_detector is not None and not callable(getattr(expertise_detector, 'detect', None)):
            raise TypeError("expertise_detector must have callable detect() method")

        if risk_selector is not None and not callable(getattr(risk_selector, 'select', None)):
            raise TypeError("risk_selector must have callable select() method")

    # ==================== PUBLIC API ====================

    def handle(self, command: Command) -> Result:
        """
        Execute one command.

        Returns:
            TurnResult, StatusResult, FinalReport or ErrorResult (never raises)
        """
        try:
            if isinstance(command, StartSession):
                return self._start(command)
            if isinstance(command, SubmitAnswer):
                return self._submit(
                    command.session_id, command.question_id, command.value, command.correction
                )
            if isinstance(command, RouteNext):
                return self._route_next(command)
            if isinstance(command, GetSessionStatus):
                return self._status(command.session_id)
            if isinstance(command, FinalizeSession):
                return self._finalize(command.session_id)
            raise ValidationError(f"Unknown command type: {type(command).__name__}")

        except AssessmentError as e:
            if e.http_status >= 500:
                logger.error(f"{type(command).__name__} failed: {e.message}")
            else:
                logger.info(f"{type(command).__name__} rejected ({e.code}): {e.message}")
            return ErrorResult(
                code=e.code,
                message=e.message,
                http_status=e.http_status,
                details=e.details,
            )
        except Exception:
            logger.exception(f"Unexpected error handling {type(command).__name__}")
            error = InternalError("Internal error while processing the request")
            return ErrorResult(code=error.code, message=error.message, http_status=error.http_status)

    # ==================== COMMAND HANDLERS ====================

    def _start(self, command: StartSession) -> TurnResult:
        state = self.store.create_session(command.initial_context)
        session_id = state.session_id

        with self.store.transaction(session_id):
            decision = self._route_and_apply(session_id)
            session = self.store.export_session(session_id)

        return TurnResult(session_id=session_id, decision=decision, session=session)

    def _submit(self, session_id: str, question_id: Any, value: Any, correction: bool) -> TurnResult:
        self._require_id(session_id, "sessionId")
        self._require_id(question_id, "questionId")

        with self.store.transaction(session_id) as state:
            if state.complete:
                raise self._conflict(state, "Assessment already complete")

            question = self.bank.get_question_by_id(question_id)
            revisions = sum(1 for answer in state.answers if answer.question_id == question_id)

            if correction:
                if revisions == 0:
                    raise self._conflict(state, f"Cannot correct unanswered question '{question_id}'")
            elif revisions > 0:
                raise self._conflict(state, f"Question '{question_id}' already answered")
            elif state.pending_question_id not in (None, question_id):
                raise self._conflict(
                    state,
                    f"Expected answer to '{state.pending_question_id}', got '{question_id}'",
                )

            parsed = parse_answer_value(question, value)
            answer = Answer(
                question_id=question_id,
                value=parsed,
                timestamp=self.store.clock(),
                block=state.current_block,
                revision=revisions,
                derived_tags=self.relevance_engine.tag_answer(question, parsed),
            )
            self.store.record_answer(session_id, answer)
            logger.info(
                f"Session {session_id}: answer to '{question_id}' recorded"
                + (f" (revision {revisions})" if revisions else "")
            )

            self._refresh_classification(session_id, correction)
            decision = self._route_and_apply(session_id)
            session = self.store.export_session(session_id)

        return TurnResult(session_id=session_id, decision=decision, session=session, accepted=True)

    def _route_next(self, command: RouteNext) -> TurnResult:
        if command.last_answer is not None:
            last = command.last_answer
            if not isinstance(last, dict):
                raise ValidationError("lastAnswer must be an object with questionId and value")
            return self._submit(
                command.session_id,
                last.get('questionId'),
                last.get('value'),
                bool(last.get('correction', False)),
            )

        self._require_id(command.session_id, "sessionId")
        with self.store.transaction(command.session_id) as state:
            if state.complete:
                decision = self.router.route(state)
            else:
                decision = self._route_and_apply(command.session_id)
            session = self.store.export_session(command.session_id)

        return TurnResult(session_id=command.session_id, decision=decision, session=session)

    def _status(self, session_id: str) -> StatusResult:
        self._require_id(session_id, "sessionId")
        state = self.store.get_session(session_id)
        stats = self.store.get_session_stats(session_id)

        if state.deep_dive_areas is not None:
            detected_areas = list(state.deep_dive_areas)
        else:
            detected_areas = [score.area for score in state.area_scores if score.selected]

        metadata = {
            'sessionId': state.session_id,
            'createdAt': state.created_at.isoformat(),
            'lastActivity': state.last_activity.isoformat(),
            'version': state.version,
            'blocksVisited': stats['blocksVisited'],
            'progress': stats['progress'],
            'pendingQuestionId': state.pending_question_id,
            'initialContext': dict(state.initial_context),
        }

        return StatusResult(
            session_metadata=metadata,
            current_block=state.current_block.value,
            answered_count=state.answered_count,
            detected_areas=detected_areas,
            complete=state.complete,
            classification=state.detected.to_dict() if state.detected else None,
        )

    def _finalize(self, session_id: str) -> FinalReport:
        self._require_id(session_id, "sessionId")

        with self.store.transaction(session_id) as state:
            if not state.complete:
                raise self._conflict(state, "Assessment is not complete yet")
            diagnostic = self.diagnostic_generator.generate(state)

        self.store.delete_session(session_id)
        return FinalReport(session_id=session_id, diagnostic=diagnostic)

    # ==================== HELPERS ====================

    def _refresh_classification(self, session_id: str, correction: bool = False):
        """
        Reclassify after an answer.

        The model detector runs during discovery and expertise, and again
        whenever an earlier answer is corrected. Otherwise a model result
        is kept after expertise and rule results are recomputed.
        """
        state = self.store.get_session(session_id)
        early = state.current_block in (Block.DISCOVERY, Block.EXPERTISE)

        if self.expertise_detector is not None and (early or correction):
            classification = self.expertise_detector.detect(state.answers)
        elif state.detected is not None and state.detected.source == "llm" and not correction:
            return
        else:
            classification = self.classifier.classify(state.answers)

        if correction:
            logger.info(
                f"Session {session_id} reclassified after correction: "
                f"{classification.persona.value} ({classification.source})"
            )
        self.store.set_detected_expertise(session_id, classification)

    def _route_and_apply(self, session_id: str) -> RoutingDecision:
        """Route from the current snapshot and store the decision's effects."""
        state = self.store.get_session(session_id)
        decision = self._current_decision(state)
        target = decision.block

        self.store.set_area_scores(session_id, decision.area_scores)

        if (decision.deep_dive_areas is not None and state.deep_dive_areas is None
                and block_index(target) >= block_index(Block.DEEP_DIVE)):
            self.store.set_deep_dive_areas(session_id, decision.deep_dive_areas)

        if (decision.risk_scan_areas is not None and state.risk_scan_areas is None
                and block_index(target) >= block_index(Block.RISK_SCAN)):
            areas = self._select_risk_areas(session_id, decision)
            self.store.set_risk_scan_areas(session_id, areas)
            if areas != tuple(decision.risk_scan_areas):
                # Reroute so the served question belongs to the locked areas
                decision = self.router.route(self.store.get_session(session_id))
                target = decision.block

        if decision.complete:
            self.store.mark_complete(session_id)
        else:
            self.store.advance_block(session_id, target)
            self.store.set_pending_question(session_id, decision.question.id, decision.rationale)

        return decision

    def _current_decision(self, state: SessionState) -> RoutingDecision:
        """
        Route, keeping the rationale the pending question was first served with.

        The first decision after a block change explains the transition;
        once the block has advanced the router no longer sees it.
        """
        decision = self.router.route(state)
        if (not decision.complete and state.pending_rationale
                and decision.question.id == state.pending_question_id):
            decision = replace(decision, rationale=state.pending_rationale)
        return decision

    def _select_risk_areas(self, session_id: str, decision: RoutingDecision) -> tuple:
        """Risk-scan areas to lock: the model's choice when configured, else the matrix choice."""
        suggested = tuple(decision.risk_scan_areas)
        if self.risk_selector is None:
            return suggested

        state = self.store.get_session(session_id)
        return tuple(self.risk_selector.select(
            state.answers,
            state.deep_dive_areas or (),
            decision.area_scores,
            suggested,
        ))

    def _conflict(self, state: SessionState, message: str) -> StateConflictError:
        """STATE_CONFLICT carrying the canonical snapshot and current decision."""
        return StateConflictError(
            message,
            details={
                'session': state.to_dict(),
                'decision': self._current_decision(state).to_dict(),
            },
        )

    @staticmethod
    def _require_id(value: Any, name: str):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} is required")
