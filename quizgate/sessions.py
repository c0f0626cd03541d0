# quizgate/sessions.py
import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import SessionConfig
from .errors import CapacityError
from .models import NormalizedAnswer, Question

logger = logging.getLogger(__name__)


@dataclass
class Session:
    id: str
    user_id: str
    questions: List[Question]
    answers: List[NormalizedAnswer]
    created_at: float
    last_access_at: float
    expires_at: float
    current_index: int = 0
    expired: bool = False
    questions_processed: int = 0
    progress: Optional[Dict[str, Any]] = None

    @property
    def questions_total(self) -> int:
        return len(self.questions)

    def summary(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userId': self.user_id,
            'createdAt': self.created_at,
            'lastAccessAt': self.last_access_at,
            'expiresAt': self.expires_at,
            'expired': self.expired,
            'questionsTotal': self.questions_total,
            'questionsProcessed': self.questions_processed,
            'progress': f'{self.current_index}/{len(self.answers)}',
        }


@dataclass
class UserMetrics:
    user_id: str
    first_seen: float
    last_seen: float
    sessions_created: int = 0
    sessions_expired: int = 0
    sessions_deleted: int = 0
    questions_processed: int = 0
    model_usage: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'sessionsCreated': self.sessions_created,
            'sessionsExpired': self.sessions_expired,
            'sessionsDeleted': self.sessions_deleted,
            'questionsProcessed': self.questions_processed,
            'firstSeen': self.first_seen,
            'lastSeen': self.last_seen,
            'modelUsage': dict(self.model_usage),
        }


_METRIC_FIELDS = {
    'session_created': 'sessions_created',
    'session_expired': 'sessions_expired',
    'session_deleted': 'sessions_deleted',
    'question_processed': 'questions_processed',
}


class SessionManager:
    """In-memory quiz sessions polled by the browser extension."""

    def __init__(self, config: Optional[SessionConfig] = None, clock: Callable[[], float] = time.time):
        self.config = config or SessionConfig()
        self.clock = clock
        self.sessions: Dict[str, Session] = {}
        self.user_metrics: Dict[str, UserMetrics] = {}

    @property
    def max_concurrent(self) -> int:
        return self.config.max_concurrent

    def active_count(self) -> int:
        return sum(1 for s in self.sessions.values() if not s.expired)

    def has_capacity(self) -> bool:
        return self.active_count() < self.config.max_concurrent

    def create_session(
        self,
        questions: Sequence[Question],
        answers: Sequence[NormalizedAnswer],
        user_id: Optional[str] = None,
        progress: Optional[Dict[str, Any]] = None,
    ) -> str:
        active = self.active_count()
        if active >= self.config.max_concurrent:
            raise CapacityError(self.config.max_concurrent)

        session_id = secrets.token_hex(16)
        now = self.clock()
        session = Session(
            id=session_id,
            user_id=user_id or session_id[:8],
            questions=list(questions),
            answers=list(answers),
            created_at=now,
            last_access_at=now,
            expires_at=now + self.config.timeout_s,
            progress=progress,
        )
        self.sessions[session_id] = session
        self.record_event(session.user_id, 'session_created')
        logger.info('[SESSION-MANAGER] created %s | user %s | active %d/%d',
                    session_id, session.user_id, active + 1, self.config.max_concurrent)
        if progress:
            logger.info('[SESSION-MANAGER] progress %s/%s (%s)',
                        progress.get('current', '?'), progress.get('total', '?'), progress.get('source'))

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            loop.call_later(self.config.timeout_s, self.expire_session, session_id)
        return session_id

    def get_session(self, session_id: str) -> Optional[Session]:
        session = self.sessions.get(session_id)
        if session is None:
            return None
        now = self.clock()
        if session.expired or now > session.expires_at:
            self.expire_session(session_id)
            return None
        session.last_access_at = now
        return session

    def expire_session(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is not None and not session.expired:
            session.expired = True
            self.record_event(session.user_id, 'session_expired')
            logger.info('[SESSION-MANAGER] expired %s | user %s', session_id, session.user_id)

    def delete_session(self, session_id: str) -> bool:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        self.record_event(session.user_id, 'session_deleted')
        logger.info('[SESSION-MANAGER] deleted %s', session_id)
        return True

    def sweep_expired(self) -> int:
        now = self.clock()
        stale = [sid for sid, s in self.sessions.items() if s.expired or now > s.expires_at]
        for sid in stale:
            del self.sessions[sid]
        if stale:
            logger.info('[SESSION-MANAGER] sweep removed %d sessions', len(stale))
        return len(stale)

    async def run_sweeper(self, interval: Optional[float] = None) -> None:
        interval = interval or self.config.sweep_interval_s
        while True:
            await asyncio.sleep(interval)
            self.sweep_expired()

    def get_next_command(self, session_id: str) -> Dict[str, Any]:
        """Hand out the next answer of a session, one per call."""
        session = self.get_session(session_id)
        if session is None:
            return {'status': 'error', 'message': 'Session not found or expired'}

        if session.current_index >= len(session.answers):
            return {
                'status': 'completed',
                'stats': {'total': session.questions_total, 'processed': session.questions_processed},
            }

        answer = session.answers[session.current_index]
        question = next((q for q in session.questions if q.number == answer.question_number), None)
        if question is None:
            return {'status': 'error', 'message': f'Question not found for number {answer.question_number}'}

        command: Dict[str, Any] = {
            'number': question.number,
            'type': question.type,
            'selectedAnswer': answer.answer,
        }
        if answer.error:
            command['error'] = answer.error

        session.current_index += 1
        session.questions_processed += 1
        self.record_event(session.user_id, 'question_processed')
        return {'status': 'command', 'command': command}

    # -- per-user metrics ---------------------------------------------

    def _metrics_for(self, user_id: str) -> UserMetrics:
        metrics = self.user_metrics.get(user_id)
        if metrics is None:
            now = self.clock()
            metrics = self.user_metrics[user_id] = UserMetrics(user_id=user_id, first_seen=now, last_seen=now)
        return metrics

    def record_event(self, user_id: str, event: str) -> None:
        metrics = self._metrics_for(user_id)
        metrics.last_seen = self.clock()
        attr = _METRIC_FIELDS.get(event)
        if attr:
            setattr(metrics, attr, getattr(metrics, attr) + 1)

    def track_model_usage(self, user_id: str, model: str) -> None:
        metrics = self._metrics_for(user_id)
        metrics.model_usage[model] = metrics.model_usage.get(model, 0) + 1
        logger.info('[MODEL-TRACKING] user %s: %s used %d times', user_id, model, metrics.model_usage[model])

    def favorite_model(self, user_id: str) -> Optional[str]:
        metrics = self.user_metrics.get(user_id)
        if metrics is None or not metrics.model_usage:
            return None
        # ties go to the model used first
        return max(metrics.model_usage, key=metrics.model_usage.get)

    def metrics(self) -> Dict[str, Any]:
        return {
            'active': self.active_count(),
            'total': len(self.sessions),
            'max_concurrent': self.config.max_concurrent,
            'timeout_minutes': self.config.timeout_s / 60,
            'users': [m.as_dict() for m in self.user_metrics.values()],
        }
