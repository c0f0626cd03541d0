# tests/test_sessions.py
import asyncio

import pytest

from quizgate.config import SessionConfig
from quizgate.errors import CapacityError
from quizgate.models import NormalizedAnswer
from quizgate.sessions import SessionManager

from .helpers import make_questions


def make_manager(clock, **config):
    return SessionManager(SessionConfig(**config), clock=clock)


def answers_for(questions):
    return [NormalizedAnswer(question_number=q.number, answer=f'Answer {q.number}') for q in questions]


def test_capacity_is_enforced(clock):
    manager = make_manager(clock, max_concurrent=2)
    questions = make_questions(1)
    manager.create_session(questions, answers_for(questions))
    manager.create_session(questions, answers_for(questions))
    with pytest.raises(CapacityError) as excinfo:
        manager.create_session(questions, answers_for(questions))
    assert excinfo.value.limit == 2
    assert not manager.has_capacity()


def test_expired_sessions_free_capacity(clock):
    manager = make_manager(clock, max_concurrent=1)
    questions = make_questions(1)
    first = manager.create_session(questions, answers_for(questions))
    manager.expire_session(first)
    assert manager.active_count() == 0
    manager.create_session(questions, answers_for(questions))


def test_commands_then_completed(clock):
    manager = make_manager(clock)
    questions = make_questions(2)
    answers = answers_for(questions)
    answers[1] = NormalizedAnswer(question_number=2, answer=None, error='no valid response')
    session_id = manager.create_session(questions, answers, user_id='alice')

    first = manager.get_next_command(session_id)
    assert first == {
        'status': 'command',
        'command': {'number': 1, 'type': 'shortanswer', 'selectedAnswer': 'Answer 1'},
    }
    second = manager.get_next_command(session_id)
    assert second['command']['selectedAnswer'] is None
    assert second['command']['error'] == 'no valid response'

    for _ in range(2):
        done = manager.get_next_command(session_id)
        assert done == {'status': 'completed', 'stats': {'total': 2, 'processed': 2}}
    assert manager.user_metrics['alice'].questions_processed == 2


def test_unknown_session_returns_error(clock):
    manager = make_manager(clock)
    assert manager.get_next_command('missing')['status'] == 'error'


def test_sessions_expire_lazily_and_are_swept(clock):
    manager = make_manager(clock, timeout_s=60)
    questions = make_questions(1)
    session_id = manager.create_session(questions, answers_for(questions))
    clock.advance(30)
    assert manager.get_session(session_id).last_access_at == clock.now
    clock.advance(31)
    assert manager.get_session(session_id) is None
    assert manager.sessions[session_id].expired
    assert manager.sweep_expired() == 1
    assert session_id not in manager.sessions


def test_anonymous_user_id_derived_from_session(clock):
    manager = make_manager(clock)
    questions = make_questions(1)
    session_id = manager.create_session(questions, answers_for(questions))
    assert len(session_id) == 32
    assert manager.sessions[session_id].user_id == session_id[:8]


def test_delete_session_records_metric(clock):
    manager = make_manager(clock)
    questions = make_questions(1)
    session_id = manager.create_session(questions, answers_for(questions), user_id='bob')
    assert manager.delete_session(session_id)
    assert not manager.delete_session(session_id)
    assert manager.user_metrics['bob'].sessions_deleted == 1


def test_favorite_model(clock):
    manager = make_manager(clock)
    assert manager.favorite_model('carol') is None
    manager.track_model_usage('carol', 'gpt-4o')
    manager.track_model_usage('carol', 'gemini-2.5-flash')
    manager.track_model_usage('carol', 'gemini-2.5-flash')
    assert manager.favorite_model('carol') == 'gemini-2.5-flash'
    assert manager.metrics()['users'][0]['modelUsage'] == {'gpt-4o': 1, 'gemini-2.5-flash': 2}


@pytest.mark.asyncio
async def test_auto_expiry_scheduled_on_running_loop(clock):
    manager = make_manager(clock, timeout_s=0.01)
    questions = make_questions(1)
    session_id = manager.create_session(questions, answers_for(questions))
    await asyncio.sleep(0.05)
    assert manager.sessions[session_id].expired
