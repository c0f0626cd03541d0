# tests/test_api.py
import httpx
import pytest
from fastapi.testclient import TestClient

import quizgate.tokens
from quizgate.config import SessionConfig, Settings
from quizgate.main import create_app
from quizgate.rate_governor import RateGovernor

from .helpers import FakeClock, answer_all, openai_completion, quiz_numbers

QUIZ = {
    'questions': [
        {'number': 1, 'type': 'multichoice', 'text': 'Pick the primes', 'options': ['2', '4']},
        {'number': 2, 'type': 'shortanswer', 'text': '2 + 2?'},
    ],
    'screenshotData': None,
    'config': {'apiKey': 'sk-test', 'model': 'gpt-4o'},
}


def provider_handler(request):
    return httpx.Response(200, json=openai_completion(answer_all(quiz_numbers(request))))


def build_client(admin_key='admin-secret', max_concurrent=15):
    clock = FakeClock()
    settings = Settings(
        admin_key=admin_key,
        user_tokens='tok-alice:alice,tok-bob:!bob',
        sessions=SessionConfig(max_concurrent=max_concurrent),
    )
    app = create_app(
        settings,
        governor=RateGovernor(clock=clock, sleep=clock.sleep),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(provider_handler)),
    )
    return TestClient(app)


@pytest.fixture
def client():
    with build_client() as test_client:
        yield test_client


def test_startup_loads_tokenizer_before_serving(monkeypatch):
    loaded = []
    monkeypatch.setattr(quizgate.tokens, '_load_encoding', lambda model: loaded.append(model))
    with build_client() as test_client:
        assert loaded == ['gpt-4o']
        assert test_client.get('/health').status_code == 200
    assert loaded == ['gpt-4o']


def test_root_and_health(client):
    assert client.get('/').json()['endpoints']['start'] == 'POST /start-quiz'
    assert client.get('/health').json() == {'status': 'healthy'}


def test_full_quiz_flow(client):
    started = client.post('/start-quiz', json=QUIZ)
    assert started.status_code == 200
    body = started.json()
    assert body['status'] == 'success'
    assert body['activeUsers'] == 1
    assert body['maxUsers'] == 15

    session_id = body['sessionId']
    first = client.get('/get-command', params={'sessionId': session_id}).json()
    assert first['command'] == {'number': 1, 'type': 'multichoice', 'selectedAnswer': ['Answer 1']}
    second = client.get('/get-command', params={'sessionId': session_id}).json()
    assert second['command']['selectedAnswer'] == 'Answer 2'
    done = client.get('/get-command', params={'sessionId': session_id}).json()
    assert done == {'status': 'completed', 'stats': {'total': 2, 'processed': 2}}


def test_start_quiz_validation(client):
    assert client.post('/start-quiz', json={**QUIZ, 'questions': []}).status_code == 400
    no_key = client.post('/start-quiz', json={**QUIZ, 'config': {'model': 'gpt-4o'}})
    assert no_key.status_code == 400
    assert no_key.json()['message'] == 'API key not configured'


def test_start_quiz_token_checks(client):
    assert client.post('/start-quiz', json=QUIZ, headers={'x-user-token': 'nope'}).status_code == 401
    assert client.post('/start-quiz', json=QUIZ, headers={'x-user-token': 'tok-bob'}).status_code == 403


def test_authenticated_start_tracks_favorite_model(client):
    response = client.post('/start-quiz', json=QUIZ, headers={'x-user-token': 'tok-alice'})
    assert response.status_code == 200
    favorite = client.get('/user/1/favorite-model').json()
    assert favorite['favoriteModel'] == 'gpt-4o'
    assert favorite['totalSessions'] == 1
    assert client.get('/user/nobody/favorite-model').status_code == 404


def test_capacity_rejection():
    with build_client(max_concurrent=1) as client:
        assert client.post('/start-quiz', json=QUIZ).status_code == 200
        rejected = client.post('/start-quiz', json=QUIZ)
        assert rejected.status_code == 429
        assert rejected.json()['activeUsers'] == 1
        assert rejected.json()['maxUsers'] == 1


def test_get_command_errors(client):
    assert client.get('/get-command').status_code == 400
    assert client.get('/get-command', params={'sessionId': 'missing'}).status_code == 404


def test_metrics(client):
    client.post('/start-quiz', json=QUIZ)
    metrics = client.get('/metrics').json()
    assert metrics['sessions']['active'] == 1
    assert metrics['tokens']['used_last_minute'] > 0
    assert metrics['rate_limit']['degrade_active'] is False
    assert 'peak_rss_mb' in metrics['memory']


def test_admin_endpoints_require_key(client):
    session_id = client.post('/start-quiz', json=QUIZ).json()['sessionId']
    assert client.get('/admin/sessions').status_code == 403
    assert client.get('/admin/sessions', headers={'x-admin-key': 'wrong'}).status_code == 403

    headers = {'x-admin-key': 'admin-secret'}
    listed = client.get('/admin/sessions', headers=headers).json()['sessions']
    assert [s['id'] for s in listed] == [session_id]
    assert client.delete(f'/admin/sessions/{session_id}', headers=headers).status_code == 200
    assert client.delete(f'/admin/sessions/{session_id}', headers=headers).status_code == 404


def test_admin_denied_without_configured_key():
    with build_client(admin_key=None) as client:
        assert client.get('/admin/sessions').status_code == 403
        assert client.get('/admin/sessions', headers={'x-admin-key': ''}).status_code == 403


def test_auth_endpoint(client):
    assert client.post('/api/auth', json={}).status_code == 400
    assert client.post('/api/auth', json={'token': 'nope'}).status_code == 401
    assert client.post('/api/auth', json={'token': 'tok-bob'}).status_code == 403
    user = client.post('/api/auth', json={'token': 'tok-alice'}).json()
    assert user == {'userId': '1', 'identifier': 'user-1', 'username': 'alice', 'enabled': True}


def test_reports_lifecycle(client):
    headers = {'x-user-token': 'tok-alice'}
    assert client.post('/api/reports/save', json={'questions': []}).status_code == 401
    assert client.post('/api/reports/save', json={'title': 'x'}, headers=headers).status_code == 400

    saved = client.post('/api/reports/save', json={'questions': [1], 'model_used': 'gpt-4o'}, headers=headers).json()
    report_id = saved['reportId']
    listing = client.get('/api/reports/list', headers=headers).json()
    assert listing['totalCount'] == 1
    assert listing['reports'][0]['model_used'] == 'gpt-4o'

    assert client.get(f'/api/reports/{report_id}', headers=headers).json()['questions'] == [1]
    assert client.get(f'/api/reports/{report_id}', headers={'x-user-token': 'tok-bob'}).status_code == 403
    assert client.delete(f'/api/reports/{report_id}', headers=headers).status_code == 200
    assert client.get(f'/api/reports/{report_id}', headers=headers).status_code == 404
