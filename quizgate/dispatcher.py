# quizgate/dispatcher.py
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from .config import DispatchConfig
from .errors import MalformedResponseError, ProviderError, is_rate_limit_message, is_unavailable_message
from .models import Question
from .normalizer import missing_numbers, normalize
from .providers import ProviderRequest, resolve_provider
from .rate_governor import RateGovernor
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    answers: List[Dict[str, Any]] = field(default_factory=list)
    # set when the batch hit an early 429 and must be re-queued as singletons
    degraded_questions: Optional[List[Question]] = None

    @property
    def degraded(self) -> bool:
        return self.degraded_questions is not None


def _is_rate_limit(error: Exception) -> bool:
    if isinstance(error, ProviderError):
        return error.is_rate_limit
    if isinstance(error, MalformedResponseError):
        return False
    return is_rate_limit_message(str(error))


def _is_unavailable(error: Exception) -> bool:
    if isinstance(error, ProviderError):
        return error.is_unavailable
    if isinstance(error, MalformedResponseError):
        return False
    return is_unavailable_message(str(error))


class ProviderDispatcher:
    """Issues one provider call per batch, paced by a RateGovernor."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        governor: RateGovernor,
        config: Optional[DispatchConfig] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        estimator: Callable[..., int] = estimate_tokens,
    ):
        self.client = client
        self.governor = governor
        self.config = config or DispatchConfig()
        self.sleep = sleep or governor.sleep
        self.estimator = estimator

    async def dispatch(
        self,
        batch: Sequence[Question],
        image: Optional[str],
        system_prompt: str,
        model: str,
        api_key: str,
        batch_index: int,
        personalization_images: Optional[List[Dict[str, Any]]] = None,
        provider: Optional[str] = None,
    ) -> BatchResult:
        """
        Send one batch to the provider and return normalized answers.

        Never raises: once retries are exhausted every question in the batch
        gets a null answer carrying the last error message.
        """
        batch = list(batch)
        tag = f'[BATCH {batch_index}]'
        spec = resolve_provider(model, provider)
        request = ProviderRequest(
            model=model,
            system_prompt=system_prompt,
            questions=[q.model_dump() for q in batch],
            image=image,
            personalization_images=list(personalization_images or []),
            max_output_tokens=spec.max_output_tokens,
        )
        estimated = self.estimator(system_prompt, batch, image, model)
        logger.info('%s %d questions via %s (%s), ~%d tokens, degraded=%s',
                    tag, len(batch), spec.label, model, estimated, self.governor.is_degraded())

        max_retries = self.config.max_retries
        for attempt in range(1, max_retries + 1):
            try:
                payload = spec.build_payload(request)
                async with self.governor.gate(estimated) as decision:
                    response = await self.client.post(
                        spec.url(model),
                        params=spec.params(api_key),
                        headers=spec.headers(api_key),
                        json=payload,
                        timeout=self.config.request_timeout_s,
                    )

                if response.status_code >= 400:
                    body = response.text
                    error = ProviderError(
                        f'{spec.label} API error in batch {batch_index} ({response.status_code}): {body}',
                        status=response.status_code,
                        body=body,
                    )
                    if error.is_rate_limit:
                        # failed calls never register tokens
                        if self.governor.on_rate_limited(body, first_attempt=attempt == 1, multi_question=len(batch) > 1):
                            logger.warning('%s early 429; re-queuing %d questions as singletons', tag, len(batch))
                            return BatchResult(degraded_questions=batch)
                    raise error

                try:
                    data = response.json()
                except ValueError as e:
                    raise MalformedResponseError(f'{spec.label} returned non-JSON body in batch {batch_index}: {e}')

                text = spec.extract_text(data)
                normalized = normalize(text, batch)
                missing = missing_numbers(normalized, batch)
                if missing:
                    if attempt < max_retries:
                        raise MalformedResponseError(f'response for batch {batch_index} is missing questions {missing}')
                    logger.warning('%s accepting partial response; missing %s', tag, missing)

                self.governor.register_success()
                self.governor.register_tokens(estimated)
                logger.info('%s processed with %d answers', tag, len(normalized['answers']))
                if decision.post_delay_s > 0:
                    await self.sleep(decision.post_delay_s)
                return BatchResult(answers=normalized['answers'])

            except Exception as e:
                message = str(e) or type(e).__name__
                logger.error('%s attempt %d/%d failed: %s', tag, attempt, max_retries, message)
                unavailable = _is_unavailable(e)
                if unavailable and attempt == 1:
                    logger.warning('%s provider overloaded; pausing %.0fs', tag, self.config.unavailable_pause_s)
                    await self.sleep(self.config.unavailable_pause_s)

                if _is_rate_limit(e) and len(batch) == 1 and self.governor.consecutive_failures >= 2:
                    wait = self.governor.seconds_until_window_reset()
                    if wait > 0:
                        logger.warning('[RATE-LIMIT] persistent 429 on single batch; waiting %.2fs for window reset', wait)
                        await self.sleep(wait)

                if attempt < max_retries:
                    if unavailable:
                        delay = self.config.unavailable_backoff_s * attempt
                    else:
                        delay = self.config.backoff_base_s * 2 ** (attempt - 1)
                    await self.sleep(delay)
                    continue

                return BatchResult(answers=[
                    {'question_number': q.number, 'answer': None, 'error': f'Batch processing error: {message}'}
                    for q in batch
                ])

        # max_retries < 1
        return BatchResult(answers=[
            {'question_number': q.number, 'answer': None, 'error': 'Batch was not attempted'}
            for q in batch
        ])
