"""
Session State Manager - in-memory keyed store for assessment sessions

Responsibilities:
- Create, read, update and delete SessionState snapshots by session id
- Expire sessions after an idle TTL (default 2 hours)
- Serialize access per session (re-entrant per-key lock)
- All-or-nothing transactions: restore the original snapshot on error

Design principles:
- Snapshots are frozen; every mutation stores a new snapshot with a
  bumped version, so readers keep a consistent view for a whole call
- Dumb container: no routing logic, only lifecycle rules
  (no block regression, no answers after completion)
- Time source injectable for tests

API Philosophy:
- Store = keyed snapshots + locking
- Assessment Manager = coordinator (holds the transaction)
- Router = pure decision over one snapshot
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from backend.config import DEFAULT_SESSION_TTL_SECONDS
from backend.contracts import (
    BLOCK_ORDER,
    Answer,
    AreaScore,
    Block,
    Classification,
    SessionState,
    block_index,
)
from backend.errors import NotFoundError, StateConflictError, ValidationError
from backend.utils.helpers import generate_session_id

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStateManager:
    """Thread-safe in-memory session store with idle expiry."""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            ttl_seconds: Idle lifetime of a session
            clock: Returns the current time (timezone-aware)
        """
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._sessions: Dict[str, SessionState] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

        logger.info(f"Session store initialized (ttl={ttl_seconds}s)")

    # ========================
    # Private Helpers
    # ========================

    def _lock_for(self, session_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[session_id] = lock
            return lock

    def _is_expired(self, state: SessionState, now: datetime) -> bool:
        return now - state.last_activity > self.ttl

    def _get_live(self, session_id: str) -> SessionState:
        """
        Current snapshot, evicting it if expired.

        Raises:
            NotFoundError: Unknown or expired session
        """
        state = self._sessions.get(session_id)
        if state is None:
            raise NotFoundError(f"Session not found: {session_id}", details={'sessionId': session_id})

        if self._is_expired(state, self.clock()):
            logger.warning(f"Session expired: {session_id}")
            self._drop(session_id)
            raise NotFoundError(f"Session expired: {session_id}", details={'sessionId': session_id})

        return state

    def _drop(self, session_id: str):
        self._sessions.pop(session_id, None)
        with self._registry_lock:
            self._locks.pop(session_id, None)

    def _update(self, session_id: str, **changes: Any) -> SessionState:
        """Replace the snapshot with `changes` applied, bumping version and activity."""
        with self._lock_for(session_id):
            state = self._get_live(session_id)
            updated = replace(
                state,
                version=state.version + 1,
                last_activity=self.clock(),
                **changes,
            )
            self._sessions[session_id] = updated
            return updated

    def _require_open(self, state: SessionState):
        if state.complete:
            raise StateConflictError(
                f"Session {state.session_id} is already complete",
                details={'sessionId': state.session_id},
            )

    # ========================
    # Lifecycle
    # ========================

    def create_session(self, initial_context: Optional[Mapping[str, Any]] = None) -> SessionState:
        """
        Start a new session in the discovery block.

        Args:
            initial_context: Optional client-supplied context (company name, source, ...)

        Raises:
            ValidationError: If initial_context is not a mapping
        """
        if initial_context is not None and not isinstance(initial_context, Mapping):
            raise ValidationError("initialContext must be an object")

        now = self.clock()
        session_id = generate_session_id()
        while session_id in self._sessions:
            session_id = generate_session_id()

        state = SessionState(
            session_id=session_id,
            created_at=now,
            last_activity=now,
            initial_context=dict(initial_context or {}),
        )
        with self._lock_for(session_id):
            self._sessions[session_id] = state

        logger.info(f"Session created: {session_id}")
        return state

    def get_session(self, session_id: str) -> SessionState:
        """
        Current snapshot of a session.

        Raises:
            NotFoundError: Unknown or expired session
        """
        with self._lock_for(session_id):
            return self._get_live(session_id)

    def has_session(self, session_id: str) -> bool:
        try:
            self.get_session(session_id)
        except NotFoundError:
            return False
        return True

    def delete_session(self, session_id: str) -> bool:
        """Remove a session. Returns False if it did not exist."""
        with self._lock_for(session_id):
            existed = session_id in self._sessions
            self._drop(session_id)
        if existed:
            logger.info(f"Session deleted: {session_id}")
        return existed

    @contextmanager
    def transaction(self, session_id: str) -> Iterator[SessionState]:
        """
        Hold the session lock for a read-modify-write sequence.

        Yields the snapshot at entry. If the block raises, the stored
        snapshot is restored to that value and the exception propagates.

        Raises:
            NotFoundError: Unknown or expired session (before entering)
        """
        lock = self._lock_for(session_id)
        with lock:
            original = self._get_live(session_id)
            try:
                yield original
            except BaseException:
                self._sessions[session_id] = original
                logger.debug(f"Session {session_id} rolled back to version {original.version}")
                raise

    # ========================
    # Mutations
    # ========================

    def record_answer(self, session_id: str, answer: Answer) -> SessionState:
        """
        Append an answer to the history.

        Raises:
            NotFoundError: Unknown or expired session (store unchanged)
            StateConflictError: Session already complete
        """
        with self._lock_for(session_id):
            state = self._get_live(session_id)
            self._require_open(state)

            pending = state.pending_question_id
            rationale = state.pending_rationale
            if pending == answer.question_id:
                pending = None
                rationale = None

            return self._update(
                session_id,
                answers=state.answers + (answer,),
                asked_question_ids=state.asked_question_ids | {answer.question_id},
                pending_question_id=pending,
                pending_rationale=rationale,
            )

    def advance_block(self, session_id: str, block: Block) -> SessionState:
        """
        Move the session forward to `block`.

        Advancing to the current block is a no-op.

        Raises:
            StateConflictError: If `block` is earlier than the current block
        """
        with self._lock_for(session_id):
            state = self._get_live(session_id)

            if block_index(block) < block_index(state.current_block):
                raise StateConflictError(
                    f"Cannot move session {session_id} back from "
                    f"{state.current_block.value} to {block.value}",
                    details={'currentBlock': state.current_block.value, 'requested': block.value},
                )
            if block is state.current_block:
                return state

            logger.info(f"Session {session_id}: {state.current_block.value} -> {block.value}")
            return self._update(
                session_id,
                current_block=block,
                blocks_visited=state.blocks_visited + (block,),
                complete=block is Block.COMPLETE,
            )

    def set_detected_expertise(self, session_id: str, classification: Classification) -> SessionState:
        with self._lock_for(session_id):
            state = self._get_live(session_id)
            previous = state.detected
            if (previous is None or previous.persona is not classification.persona
                    or previous.expertise is not classification.expertise):
                logger.info(
                    f"Session {session_id} detected {classification.persona.value}/"
                    f"{classification.expertise.value} "
                    f"(confidence {classification.confidence:.2f}, {classification.source})"
                )
            return self._update(session_id, detected=classification)

    def set_deep_dive_areas(self, session_id: str, areas: Sequence[str]) -> SessionState:
        """
        Lock the deep-dive areas (once).

        Raises:
            StateConflictError: If different areas are already locked
        """
        return self._lock_selection(session_id, 'deep_dive_areas', tuple(areas))

    def set_risk_scan_areas(self, session_id: str, areas: Sequence[str]) -> SessionState:
        return self._lock_selection(session_id, 'risk_scan_areas', tuple(areas))

    def _lock_selection(self, session_id: str, field_name: str, areas: Tuple[str, ...]) -> SessionState:
        with self._lock_for(session_id):
            state = self._get_live(session_id)
            current = getattr(state, field_name)
            if current == areas:
                return state
            if current is not None:
                raise StateConflictError(
                    f"{field_name} already locked for session {session_id}",
                    details={'locked': list(current), 'requested': list(areas)},
                )
            logger.info(f"Session {session_id} {field_name} locked: {list(areas)}")
            return self._update(session_id, **{field_name: areas})

    def set_area_scores(self, session_id: str, scores: Sequence[AreaScore]) -> SessionState:
        return self._update(session_id, area_scores=tuple(scores))

    def set_pending_question(
        self,
        session_id: str,
        question_id: Optional[str],
        rationale: Optional[str] = None,
    ) -> SessionState:
        """Record the question the client is expected to answer next, with the rationale it was served under."""
        return self._update(session_id, pending_question_id=question_id, pending_rationale=rationale)

    def mark_complete(self, session_id: str) -> SessionState:
        with self._lock_for(session_id):
            state = self._get_live(session_id)
            if state.complete:
                return state
            logger.info(f"Session {session_id} complete after {state.answered_count} answers")
            visited = state.blocks_visited
            if visited[-1] is not Block.COMPLETE:
                visited = visited + (Block.COMPLETE,)
            return self._update(
                session_id,
                current_block=Block.COMPLETE,
                blocks_visited=visited,
                pending_question_id=None,
                pending_rationale=None,
                complete=True,
            )

    # ========================
    # Maintenance and export
    # ========================

    def cleanup_expired(self) -> int:
        """
        Evict every expired session.

        Sessions whose lock is held by an in-flight call are skipped and
        picked up by the next cleanup.

        Returns:
            int: Number of sessions removed
        """
        now = self.clock()
        removed = 0
        for session_id in list(self._sessions):
            lock = self._lock_for(session_id)
            if not lock.acquire(blocking=False):
                continue
            try:
                state = self._sessions.get(session_id)
                if state is not None and self._is_expired(state, now):
                    self._drop(session_id)
                    removed += 1
            finally:
                lock.release()

        if removed:
            logger.info(f"Cleaned up {removed} expired sessions")
        return removed

    def list_active_sessions(self) -> List[Dict[str, Any]]:
        now = self.clock()
        active = []
        for state in list(self._sessions.values()):
            if self._is_expired(state, now):
                continue
            active.append({
                'sessionId': state.session_id,
                'createdAt': state.created_at.isoformat(),
                'lastActivity': state.last_activity.isoformat(),
                'currentBlock': state.current_block.value,
            })
        return active

    def get_session_stats(self, session_id: str) -> Dict[str, Any]:
        """
        Progress statistics for a session.

        progress is the share of blocks passed (0..100).
        """
        state = self.get_session(session_id)
        now = self.clock()
        progress = 100 * block_index(state.current_block) / (len(BLOCK_ORDER) - 1)
        return {
            'sessionId': state.session_id,
            'answeredCount': state.answered_count,
            'totalAnswerRecords': len(state.answers),
            'currentBlock': state.current_block.value,
            'blocksVisited': [block.value for block in state.blocks_visited],
            'progress': round(progress),
            'elapsedSeconds': round((now - state.created_at).total_seconds()),
            'idleSeconds': round((now - state.last_activity).total_seconds()),
            'complete': state.complete,
        }

    def export_session(self, session_id: str) -> Dict[str, Any]:
        """JSON-safe export of the session (sets as sorted lists)."""
        return self.get_session(session_id).to_dict()

    def session_count(self) -> int:
        return len(self._sessions)
