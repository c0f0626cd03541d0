# quizgate/batching.py
import logging
from collections import deque
from typing import Callable, Deque, List, Optional, Sequence

from .models import Question
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

Batch = List[Question]

DEFAULT_MAX_BATCH_SIZE = 3
DEFAULT_MAX_BATCH_TOKENS = 3500


def chunk(questions: Sequence[Question], size: int) -> List[Batch]:
    size = max(1, size)
    return [list(questions[i:i + size]) for i in range(0, len(questions), size)]


def plan_batches(
    questions: Sequence[Question],
    model: str,
    prompt: str,
    image: Optional[str] = None,
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    max_tokens: int = DEFAULT_MAX_BATCH_TOKENS,
    estimator: Callable[..., int] = estimate_tokens,
) -> List[Batch]:
    """
    Greedily split questions into batches bounded by count and tokens.

    The shared part of every request (prompt, screenshot, overhead) is
    counted once per batch; each question then adds its own cost. An empty
    batch always takes the next question, so an oversized question still
    travels alone instead of being dropped.
    """
    questions = list(questions)
    if not questions:
        return []
    if len(questions) == 1:
        return [questions]

    try:
        base = estimator(prompt, [], image, model)
        batches: List[Batch] = []
        current: Batch = []
        running = base
        for question in questions:
            cost = estimator('', [question], None, model, overhead=0)
            if current and (len(current) >= max_batch_size or running + cost > max_tokens):
                logger.debug('[BATCH-PLANNER] closed batch of %d (~%d tokens)', len(current), running)
                batches.append(current)
                current = []
                running = base
            current.append(question)
            running += cost
        if current:
            batches.append(current)
        logger.info('[BATCH-PLANNER] %d questions -> batches %s', len(questions), [len(b) for b in batches])
        return batches
    except Exception as e:
        logger.warning('[BATCH-PLANNER] estimation failed (%s); using fixed chunks of %d', e, max_batch_size)
        return chunk(questions, max_batch_size)


class BatchQueue:
    """Pending batches, consumed front to back.

    Degraded batches are split and pushed back to the front so they are
    retried before larger batches that have not been attempted yet.
    """

    def __init__(self, batches: Sequence[Batch] = ()):
        self._pending: Deque[Batch] = deque(list(b) for b in batches if b)

    def __len__(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending)

    def requeue_front(self, questions: Sequence[Question], size: int = 1) -> None:
        for piece in reversed(chunk(list(questions), size)):
            self._pending.appendleft(piece)

    def next_batch(self, degraded: bool = False, degraded_size: int = 1) -> Optional[Batch]:
        """Pop the next batch, fragmenting it first if degrade mode is on."""
        while self._pending:
            batch = self._pending.popleft()
            if degraded and len(batch) > degraded_size:
                logger.info('[RATE-LIMIT] splitting batch of %d while degraded', len(batch))
                self.requeue_front(batch, degraded_size)
                continue
            return batch
        return None

    def snapshot(self) -> List[List[int]]:
        return [[q.number for q in batch] for batch in self._pending]
