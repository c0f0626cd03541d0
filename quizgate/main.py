# quizgate/main.py
import asyncio
import contextlib
import logging
import resource
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from fastapi import Body, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import Settings, configure_logging, load_settings
from .dispatcher import ProviderDispatcher
from .errors import CapacityError
from .models import AuthRequest, StartQuizRequest
from .rate_governor import RateGovernor
from .runner import solve_questions
from .sessions import SessionManager
from .stores import InMemoryReportStore, InMemoryUserDirectory, ReportStore, UserDirectory, UserRecord
from .tokens import warm_encoding

logger = logging.getLogger(__name__)

ORIGIN_REGEX = r'^(chrome-extension://.*|https?://localhost(:\d+)?|https?://127\.0\.0\.1(:\d+)?)$'


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={'status': 'error', 'message': message, **extra})


def _peak_memory_mb() -> float:
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # peak resident set size; ru_maxrss is bytes on macOS, kilobytes elsewhere
    divisor = 1024 * 1024 if sys.platform == 'darwin' else 1024
    return round(usage / divisor, 1)


def create_app(
    settings: Optional[Settings] = None,
    *,
    governor: Optional[RateGovernor] = None,
    sessions: Optional[SessionManager] = None,
    users: Optional[UserDirectory] = None,
    reports: Optional[ReportStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Wire the orchestration components into a FastAPI application."""
    settings = settings or load_settings()
    governor = governor or RateGovernor(settings.rate_limit, settings.token_budget)
    sessions = sessions or SessionManager(settings.sessions)
    users = users or InMemoryUserDirectory.from_string(settings.user_tokens)
    reports = reports or InMemoryReportStore()
    client = http_client or httpx.AsyncClient()
    dispatcher = ProviderDispatcher(client, governor, settings.dispatch)
    started_at = time.monotonic()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        # tiktoken may fetch its encoding over the network on first use
        await asyncio.to_thread(warm_encoding)
        sweeper = asyncio.create_task(sessions.run_sweeper(settings.sessions.sweep_interval_s))
        logger.info('[SERVER] ready | max sessions %d | token limit %d/min',
                    settings.sessions.max_concurrent, settings.token_budget.limit_per_minute)
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            if http_client is None:
                await client.aclose()

    app = FastAPI(title='Quiz Gate', version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.allowed_origin] if settings.allowed_origin else [],
        allow_origin_regex=ORIGIN_REGEX,
        allow_methods=['*'],
        allow_headers=['*'],
        allow_credentials=True,
    )
    app.state.settings = settings
    app.state.governor = governor
    app.state.sessions = sessions
    app.state.users = users
    app.state.reports = reports
    app.state.dispatcher = dispatcher

    def require_admin(admin_key: Optional[str]) -> None:
        if not settings.admin_key or admin_key != settings.admin_key:
            raise HTTPException(status_code=403, detail='Forbidden')

    def require_user(token: Optional[str]) -> UserRecord:
        if not token:
            raise HTTPException(status_code=401, detail='Token required')
        user = users.get_user_by_token(token)
        if user is None or not user.enabled:
            raise HTTPException(status_code=403, detail='User not authorized')
        return user

    @app.get('/')
    async def root():
        """Root endpoint - API information"""
        return {
            'service': 'Quiz Gate',
            'status': 'running',
            'version': __version__,
            'endpoints': {
                'health': '/health',
                'start': 'POST /start-quiz',
                'poll': 'GET /get-command?sessionId=',
                'metrics': '/metrics',
                'docs': '/docs',
            },
        }

    @app.get('/health')
    async def health_check():
        """Health check endpoint."""
        return {'status': 'healthy'}

    @app.post('/start-quiz')
    async def start_quiz(req: StartQuizRequest, x_user_token: Optional[str] = Header(default=None)):
        """
        Solve a scraped quiz and open a polling session for its answers.
        """
        user = None
        if x_user_token:
            user = users.get_user_by_token(x_user_token)
            if user is None:
                logger.error('[START-QUIZ] invalid token')
                return _error(401, 'Invalid token')
            if not user.enabled:
                logger.error('[START-QUIZ] disabled user %s', user.username)
                return _error(403, 'User disabled')
            logger.info('[START-QUIZ] authenticated %s (%s)', user.username, user.identifier)
        else:
            logger.info('[START-QUIZ] unauthenticated session')

        if not req.questions:
            return _error(400, 'No valid questions provided')
        config = req.provider_config
        if config is None or not config.api_key:
            return _error(400, 'API key not configured')

        if not sessions.has_capacity():
            return _error(429, f'Concurrent session limit reached ({sessions.max_concurrent})',
                          activeUsers=sessions.active_count(), maxUsers=sessions.max_concurrent)

        if req.progress:
            logger.info('[START-QUIZ] progress %s', req.progress)

        try:
            answers = await solve_questions(
                req.questions,
                req.screenshot,
                config.model,
                config.api_key,
                dispatcher,
                personalization=req.personalization,
                provider=config.provider,
                batch_config=settings.batch,
            )
        except Exception as e:
            logger.exception('[START-QUIZ] solving failed')
            return _error(500, f'Error in /start-quiz: {e}')

        user_id = user.id if user else None
        try:
            session_id = sessions.create_session(req.questions, answers, user_id, req.progress)
        except CapacityError as e:
            logger.error('[START-QUIZ] %s', e)
            return _error(429, str(e), activeUsers=sessions.active_count(), maxUsers=sessions.max_concurrent)

        if user_id:
            sessions.track_model_usage(user_id, config.model)
        return {
            'status': 'success',
            'sessionId': session_id,
            'activeUsers': sessions.active_count(),
            'maxUsers': sessions.max_concurrent,
        }

    @app.get('/get-command')
    async def get_command(session_id: Optional[str] = Query(default=None, alias='sessionId')):
        if not session_id:
            return _error(400, 'sessionId required')
        if sessions.get_session(session_id) is None:
            logger.error('[GET-COMMAND] session not found or expired: %s', session_id)
            return _error(404, 'Session not found or expired')
        command = sessions.get_next_command(session_id)
        logger.info('[GET-COMMAND] %s -> %s', session_id, command['status'])
        return command

    @app.get('/metrics')
    async def metrics():
        snapshot = governor.snapshot()
        session_metrics = sessions.metrics()
        users_seen = session_metrics.pop('users')
        body: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'server': {
                'version': __version__,
                'uptime_s': round(time.monotonic() - started_at, 3),
                'python_version': sys.version.split()[0],
            },
            'sessions': session_metrics,
            'tokens': snapshot['tokens'],
            'rate_limit': snapshot['rate_limit'],
            'memory': {'peak_rss_mb': _peak_memory_mb()},
        }
        if users_seen:
            body['users'] = users_seen
        return body

    @app.get('/admin/sessions')
    async def list_sessions(x_admin_key: Optional[str] = Header(default=None)):
        require_admin(x_admin_key)
        return {'sessions': [s.summary() for s in sessions.sessions.values()]}

    @app.delete('/admin/sessions/{session_id}')
    async def delete_session(session_id: str, x_admin_key: Optional[str] = Header(default=None)):
        require_admin(x_admin_key)
        if not sessions.delete_session(session_id):
            raise HTTPException(status_code=404, detail='Session not found')
        return {'status': 'success', 'message': 'Session deleted'}

    @app.get('/user/{user_id}/favorite-model')
    async def favorite_model(user_id: str):
        metrics = sessions.user_metrics.get(user_id)
        if metrics is None:
            return _error(404, 'User not found')
        return {
            'status': 'success',
            'userId': user_id,
            'favoriteModel': sessions.favorite_model(user_id) or 'none',
            'modelUsage': dict(metrics.model_usage),
            'totalSessions': metrics.sessions_created,
        }

    @app.post('/api/auth')
    async def auth(req: AuthRequest):
        if not req.token:
            raise HTTPException(status_code=400, detail='Token required')
        user = users.get_user_by_token(req.token)
        if user is None:
            raise HTTPException(status_code=401, detail='Invalid token')
        if not user.enabled:
            raise HTTPException(status_code=403, detail='User disabled')
        return {'userId': user.id, 'identifier': user.identifier, 'username': user.username, 'enabled': user.enabled}

    @app.post('/api/reports/save')
    async def save_report(
        report: Optional[Dict[str, Any]] = Body(default=None),
        x_user_token: Optional[str] = Header(default=None),
    ):
        user = require_user(x_user_token)
        if not report or 'questions' not in report:
            raise HTTPException(status_code=400, detail='Invalid report data')
        report_id = reports.save_report(user.id, report)
        logger.info('[API] report saved: user=%s id=%s', user.username, report_id)
        return {'success': True, 'reportId': report_id, 'message': 'Report saved'}

    @app.get('/api/reports/list')
    async def list_reports(limit: int = 50, x_user_token: Optional[str] = Header(default=None)):
        user = require_user(x_user_token)
        return {
            'reports': reports.list_reports(user.id, limit),
            'totalCount': reports.count_reports(user.id),
            'username': user.username,
            'identifier': user.identifier,
        }

    @app.get('/api/reports/{report_id}')
    async def get_report(report_id: int, x_user_token: Optional[str] = Header(default=None)):
        user = require_user(x_user_token)
        report = reports.get_report(report_id, user.id)
        if report is None:
            raise HTTPException(status_code=404, detail='Report not found')
        return report

    @app.delete('/api/reports/{report_id}')
    async def delete_report(report_id: int, x_user_token: Optional[str] = Header(default=None)):
        user = require_user(x_user_token)
        if not reports.delete_report(report_id, user.id):
            raise HTTPException(status_code=404, detail='Report not found')
        return {'success': True, 'message': 'Report deleted'}

    return app


_settings = load_settings()
configure_logging(_settings)
app = create_app(_settings)

if __name__ == '__main__':
    import uvicorn
    uvicorn.run('quizgate.main:app', host=_settings.host, port=_settings.port)
