# quizgate/tokens.py
"""
Token estimation for outgoing provider requests.

Estimates are coarse: text goes through a tiktoken encoding, images are
bucketed by their decoded byte size. The numbers only feed batching and the
per-minute budget gate, so the estimator never raises.
"""
import functools
import json
import logging
import math
import re
from typing import Any, Iterable, Optional

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = 'o200k_base'
DEFAULT_OVERHEAD = 50
FALLBACK_TOKENS = 1000

# (upper bound in bytes, tokens)
IMAGE_TOKEN_BUCKETS = (
    (100 * 1024, 500),
    (200 * 1024, 1000),
    (400 * 1024, 1500),
)
IMAGE_TOKEN_CEILING = 2000

_DATA_URL_PREFIX = re.compile(r'^data:[a-zA-Z0-9.+/-]*;base64,')


@functools.lru_cache(maxsize=32)
def _load_encoding(model: str):
    """Return a tiktoken encoding for ``model`` or None when unavailable."""
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        pass
    except Exception as e:
        logger.warning('[TOKENS] tokenizer unavailable for %s: %s', model, e)
        return None
    try:
        return tiktoken.get_encoding(DEFAULT_ENCODING)
    except Exception as e:
        logger.warning('[TOKENS] default tokenizer unavailable: %s', e)
        return None


def warm_encoding(model: str = 'gpt-4o') -> bool:
    """Load (and possibly download) the encoding ahead of the first request."""
    encoding = _load_encoding(model)
    logger.info('[TOKENS] tokenizer for %s %s', model, 'ready' if encoding is not None else 'unavailable; using len/4')
    return encoding is not None


def strip_data_url(data: str) -> str:
    return _DATA_URL_PREFIX.sub('', data or '', count=1)


def count_text_tokens(text: str, model: str = 'gpt-4o') -> int:
    if not text or not isinstance(text, str):
        return 0
    encoding = _load_encoding(model or 'gpt-4o')
    if encoding is not None:
        try:
            return len(encoding.encode(text, disallowed_special=()))
        except Exception as e:
            logger.warning('[TOKENS] encode failed, using approximation: %s', e)
    return math.ceil(len(text) / 4)


def estimate_image_bytes(image: Optional[str]) -> int:
    if not isinstance(image, str) or not image:
        return 0
    return math.ceil(len(strip_data_url(image)) * 3 / 4)


def estimate_image_tokens(image: Optional[str]) -> int:
    size = estimate_image_bytes(image)
    if size == 0:
        return 0
    for upper, tokens in IMAGE_TOKEN_BUCKETS:
        if size < upper:
            return tokens
    return IMAGE_TOKEN_CEILING


def serialize_questions(questions: Iterable[Any]) -> str:
    payload = [q.model_dump() if hasattr(q, 'model_dump') else q for q in questions]
    return json.dumps(payload, ensure_ascii=False, default=str)


def estimate_tokens(
    prompt: str,
    questions: Iterable[Any],
    image: Optional[str] = None,
    model: str = 'gpt-4o',
    overhead: int = DEFAULT_OVERHEAD,
) -> int:
    """
    Estimate the token cost of a prompt + questions (+ image) request.

    Returns FALLBACK_TOKENS when anything goes wrong so that callers can
    keep gating instead of failing.
    """
    try:
        questions = list(questions or [])
        total = count_text_tokens(prompt, model)
        if questions:
            total += count_text_tokens(serialize_questions(questions), model)
        total += estimate_image_tokens(image)
        total += overhead
        return total
    except Exception as e:
        logger.error('[TOKENS] estimation failed: %s', e)
        return FALLBACK_TOKENS
