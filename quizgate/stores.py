# quizgate/stores.py
"""
Users and quiz reports.

The HTTP layer only depends on the two protocols below; the in-memory
implementations are what the service runs with out of the box.
"""
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

REPORT_SUMMARY_FIELDS = (
    'id', 'report_title', 'platform', 'questions_total', 'questions_correct',
    'questions_failed', 'tokens_used', 'model_used', 'duration_seconds',
    'completed_at', 'session_id',
)


@dataclass
class UserRecord:
    id: str
    identifier: str
    username: str
    enabled: bool = True


class UserDirectory(Protocol):
    def get_user_by_token(self, token: str) -> Optional[UserRecord]:
        ...


class ReportStore(Protocol):
    def save_report(self, user_id: str, report: Dict[str, Any]) -> int:
        ...

    def get_report(self, report_id: int, user_id: str) -> Optional[Dict[str, Any]]:
        ...

    def list_reports(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        ...

    def count_reports(self, user_id: str) -> int:
        ...

    def delete_report(self, report_id: int, user_id: str) -> bool:
        ...


class InMemoryUserDirectory:
    def __init__(self, users: Optional[Dict[str, UserRecord]] = None):
        self._by_token: Dict[str, UserRecord] = dict(users or {})

    @classmethod
    def from_string(cls, value: Optional[str]) -> 'InMemoryUserDirectory':
        """
        Parse ``token:username[,token:username...]``.

        A leading ``!`` on the username marks the user as disabled.
        Malformed entries are skipped with a warning.
        """
        users: Dict[str, UserRecord] = {}
        for index, entry in enumerate((value or '').split(','), start=1):
            entry = entry.strip()
            if not entry:
                continue
            token, sep, username = entry.partition(':')
            token, username = token.strip(), username.strip()
            if not sep or not token or not username:
                logger.warning('[AUTH] ignoring malformed USER_TOKENS entry #%d', index)
                continue
            enabled = not username.startswith('!')
            username = username.lstrip('!')
            users[token] = UserRecord(id=str(index), identifier=f'user-{index}', username=username, enabled=enabled)
        logger.info('[AUTH] %d users loaded', len(users))
        return cls(users)

    def get_user_by_token(self, token: str) -> Optional[UserRecord]:
        if not token:
            return None
        return self._by_token.get(token)


class InMemoryReportStore:
    def __init__(self, clock=time.time):
        self.clock = clock
        self._reports: Dict[int, Dict[str, Any]] = {}
        self._ids = itertools.count(1)

    def save_report(self, user_id: str, report: Dict[str, Any]) -> int:
        report_id = next(self._ids)
        self._reports[report_id] = {
            **report,
            'id': report_id,
            'user_id': user_id,
            'completed_at': report.get('completed_at') or self.clock(),
        }
        return report_id

    def get_report(self, report_id: int, user_id: str) -> Optional[Dict[str, Any]]:
        report = self._reports.get(report_id)
        if report is None or report['user_id'] != user_id:
            return None
        return dict(report)

    def list_reports(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        mine = [r for r in self._reports.values() if r['user_id'] == user_id]
        mine.sort(key=lambda r: (r['completed_at'], r['id']), reverse=True)
        return [{k: r.get(k) for k in REPORT_SUMMARY_FIELDS} for r in mine[:max(0, limit)]]

    def count_reports(self, user_id: str) -> int:
        return sum(1 for r in self._reports.values() if r['user_id'] == user_id)

    def delete_report(self, report_id: int, user_id: str) -> bool:
        if self.get_report(report_id, user_id) is None:
            return False
        del self._reports[report_id]
        return True
