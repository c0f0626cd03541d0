# quizgate/rate_governor.py
"""
Process-wide pacing for provider calls.

The governor owns three pieces of shared state:

* a sliding one-minute window of estimated token spend,
* a global "next allowed request" timestamp (cooldown after 429s),
* the partition-degrade state that forces singleton batches after an
  early 429 on a multi-question batch.

Every read-modify-write of that state happens either in a synchronous method
(which cannot be interleaved on the event loop) or inside ``gate()``, which
holds an ``asyncio.Lock`` across the cooldown wait, the budget preflight and
the caller's network call.
"""
import asyncio
import logging
import re
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, Optional

from .config import RateLimitConfig, TokenBudgetConfig

logger = logging.getLogger(__name__)

_RETRY_HINTS = (
    re.compile(r'try again in\s+([0-9]+(?:\.[0-9]+)?)\s*s', re.IGNORECASE),
    re.compile(r'after\s+([0-9]+(?:\.[0-9]+)?)\s*seconds?', re.IGNORECASE),
    re.compile(r'"retryDelay"\s*:\s*"([0-9]+(?:\.[0-9]+)?)s"'),
)


def parse_retry_after(message: str) -> Optional[float]:
    """Return the provider-suggested retry delay in seconds, if any."""
    if not message:
        return None
    for pattern in _RETRY_HINTS:
        match = pattern.search(message)
        if match:
            try:
                value = float(match.group(1))
            except ValueError:
                continue
            if value > 0:
                return value
    return None


@dataclass
class WindowEntry:
    timestamp: float
    tokens: int


@dataclass
class DegradeState:
    active: bool = False
    until: float = 0.0
    consecutive_failures: int = 0
    successes_since_degrade: int = 0


@dataclass(frozen=True)
class GateDecision:
    wait_s: float = 0.0
    post_delay_s: float = 0.0
    reason: str = 'clear'


class RateGovernor:
    def __init__(
        self,
        rate_config: Optional[RateLimitConfig] = None,
        budget_config: Optional[TokenBudgetConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.rate_config = rate_config or RateLimitConfig()
        self.budget_config = budget_config or TokenBudgetConfig()
        self.clock = clock
        self.sleep = sleep
        self.state = DegradeState()
        self.next_allowed_at = 0.0
        self._window: Deque[WindowEntry] = deque()
        # created on first use so it binds to the serving loop
        self._lock: Optional[asyncio.Lock] = None

    # -- token window -------------------------------------------------

    def _prune(self) -> None:
        cutoff = self.clock() - self.budget_config.window_s
        while self._window and self._window[0].timestamp < cutoff:
            self._window.popleft()

    def tokens_used(self) -> int:
        self._prune()
        total = sum(entry.tokens for entry in self._window)
        ceiling = self.budget_config.limit_per_minute * self.budget_config.corrupt_factor
        if total > ceiling:
            logger.warning('[TOKENS] window total %d exceeds %d; resetting window', total, ceiling)
            self._window.clear()
            return 0
        return total

    def seconds_until_window_reset(self) -> float:
        self._prune()
        if not self._window:
            return 0.0
        reset_at = self._window[0].timestamp + self.budget_config.window_s
        return max(0.0, reset_at - self.clock())

    def register_tokens(self, count: int) -> None:
        if not self.budget_config.enabled or count <= 0:
            return
        self._window.append(WindowEntry(self.clock(), int(count)))
        self._prune()

    def evaluate_gate(self, estimated_tokens: int) -> GateDecision:
        """Decide how the next request must be paced against the budget."""
        budget = self.budget_config
        if not budget.enabled:
            return GateDecision()
        used = self.tokens_used()
        limit = budget.limit_per_minute
        logger.debug('[TOKENS] window_used=%d entries=%d est=%d', used, len(self._window), estimated_tokens)
        if used < limit - budget.near_threshold:
            return GateDecision()
        if used + estimated_tokens > limit:
            remaining = self.seconds_until_window_reset()
            if used >= limit and remaining > budget.pre_wait_s:
                return GateDecision(wait_s=remaining, reason='window_reset')
            return GateDecision(wait_s=budget.pre_wait_s, reason='pre_wait')
        return GateDecision(post_delay_s=budget.post_wait_s, reason='near_limit')

    async def preflight(self, estimated_tokens: int) -> GateDecision:
        decision = self.evaluate_gate(estimated_tokens)
        if decision.wait_s > 0:
            logger.info(
                '[TOKENS] %s: waiting %.2fs (used=%d est=%d limit=%d)',
                decision.reason, decision.wait_s, self.tokens_used(),
                estimated_tokens, self.budget_config.limit_per_minute,
            )
            await self.sleep(decision.wait_s)
        elif decision.post_delay_s > 0:
            logger.info('[TOKENS] near limit; post-delay of %.2fs scheduled', decision.post_delay_s)
        return decision

    # -- cooldown -----------------------------------------------------

    def cooldown_remaining(self) -> float:
        return max(0.0, self.next_allowed_at - self.clock())

    async def respect_cooldown(self) -> None:
        if not self.rate_config.enable_cooldown:
            return
        wait = self.cooldown_remaining()
        if wait > 0:
            logger.info('[RATE-LIMIT] waiting %.2fs for active cooldown', wait)
            await self.sleep(wait)

    def schedule_cooldown(self, message: str = '', aggressive: bool = False) -> float:
        cfg = self.rate_config
        if not cfg.enable_cooldown:
            return 0.0
        suggested = parse_retry_after(message) or cfg.default_retry_after_s
        self.state.consecutive_failures += 1
        factor = self.state.consecutive_failures + 1
        if aggressive:
            factor *= cfg.cooldown_growth_factor
        delay = min(cfg.max_cooldown_s, max(cfg.min_cooldown_s, suggested * factor))
        self.next_allowed_at = self.clock() + delay
        logger.warning(
            '[RATE-LIMIT] cooldown %.2fs scheduled (suggested=%.2fs factor=%.2f consecutive=%d)',
            delay, suggested, factor, self.state.consecutive_failures,
        )
        return delay

    # -- degrade ------------------------------------------------------

    @property
    def consecutive_failures(self) -> int:
        return self.state.consecutive_failures

    def activate_degrade(self) -> bool:
        if not self.rate_config.enable_partition_degrade:
            return False
        self.state.active = True
        self.state.until = self.clock() + self.rate_config.degrade_window_s
        self.state.successes_since_degrade = 0
        logger.warning('[RATE-LIMIT] degrade mode ON for %.0fs', self.rate_config.degrade_window_s)
        return True

    def maybe_recover(self) -> None:
        state = self.state
        if not state.active:
            return
        elapsed = self.clock() >= state.until
        if elapsed or state.successes_since_degrade >= self.rate_config.successes_to_recover:
            logger.info(
                '[RATE-LIMIT] degrade mode OFF (successes=%d, remaining=%.2fs)',
                state.successes_since_degrade, max(0.0, state.until - self.clock()),
            )
            state.active = False
            state.successes_since_degrade = 0
            state.consecutive_failures = 0

    def is_degraded(self) -> bool:
        self.maybe_recover()
        return self.state.active

    def register_success(self) -> None:
        if self.state.active:
            self.state.successes_since_degrade += 1
            self.maybe_recover()
        else:
            self.state.consecutive_failures = 0

    def on_rate_limited(self, message: str, first_attempt: bool, multi_question: bool) -> bool:
        """
        Record a provider 429.

        Returns True when the batch should be abandoned and its questions
        re-queued as singleton batches (early 429 on a multi-question batch).
        """
        if first_attempt and multi_question and self.rate_config.enable_partition_degrade:
            self.activate_degrade()
            self.schedule_cooldown(message, aggressive=True)
            return True
        self.schedule_cooldown(message, aggressive=first_attempt)
        return False

    # -- critical section ---------------------------------------------

    @asynccontextmanager
    async def gate(self, estimated_tokens: int) -> AsyncIterator[GateDecision]:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            await self.respect_cooldown()
            decision = await self.preflight(estimated_tokens)
            yield decision

    def snapshot(self) -> Dict[str, Any]:
        used = self.tokens_used()
        limit = self.budget_config.limit_per_minute
        return {
            'tokens': {
                'used_last_minute': used,
                'remaining': max(0, limit - used),
                'limit': limit,
                'window_resets_in_s': round(self.seconds_until_window_reset(), 3),
            },
            'rate_limit': {
                'consecutive_failures': self.state.consecutive_failures,
                'degrade_active': self.is_degraded(),
                'degrade_remaining_s': round(max(0.0, self.state.until - self.clock()), 3) if self.state.active else 0.0,
                'successes_since_degrade': self.state.successes_since_degrade,
                'cooldown_remaining_s': round(self.cooldown_remaining(), 3),
            },
        }
