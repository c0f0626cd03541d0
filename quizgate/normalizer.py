# quizgate/normalizer.py
"""
Turn whatever a model returned into ``{"answers": [...]}``.

Models are asked for the canonical shape but routinely return a bare list,
an object keyed by question number, a flat object keyed by ``q1`` /
``question_1``, or JSON wrapped in prose or code fences.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from .models import Question

logger = logging.getLogger(__name__)

NO_VALID_RESPONSE = 'no valid response'
_MAX_DEPTH = 3

_FENCE_RE = re.compile(r'```(?:json)?\s*([\s\S]*?)```', re.IGNORECASE)


def extract_json_from_text(text: str) -> Optional[Any]:
    """
    Extract the first valid JSON value from text.

    Handles plain JSON, fenced ```json blocks and JSON embedded in prose.
    """
    if not isinstance(text, str):
        return None
    stripped = text.strip()
    if not stripped:
        return None
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass

    for block in _FENCE_RE.findall(stripped):
        try:
            return json.loads(block.strip())
        except json.JSONDecodeError:
            continue

    # widest {...} or [...] span
    for opener, closer in (('{', '}'), ('[', ']')):
        start = stripped.find(opener)
        end = stripped.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(stripped[start:end + 1])
            except json.JSONDecodeError:
                continue
    return None


def _fallback(questions: Sequence[Question]) -> Dict[str, List[Dict[str, Any]]]:
    return {
        'answers': [
            {'question_number': q.number, 'answer': None, 'error': NO_VALID_RESPONSE}
            for q in questions
        ]
    }


def _is_numeric_key(key: Any) -> bool:
    return isinstance(key, str) and key.strip().isdigit()


def _from_list(items: List[Any], questions: Sequence[Question]) -> List[Dict[str, Any]]:
    if items and all(isinstance(item, dict) and 'question_number' in item for item in items):
        logger.debug('[NORMALIZE] list of canonical entries')
        return list(items)
    logger.debug('[NORMALIZE] direct list format')
    answers = []
    for index, item in enumerate(items):
        # positional answers belong to the batch's own questions
        number = questions[index].number if index < len(questions) else index + 1
        answers.append({'question_number': number, 'answer': item})
    return answers


def _from_flat_object(data: Dict[str, Any], questions: Sequence[Question]) -> List[Dict[str, Any]]:
    answers = []
    for question in questions:
        number = question.number
        for key in (f'question_{number}', f'q{number}', f'pregunta_{number}', str(number)):
            if data.get(key) is not None:
                answers.append({'question_number': number, 'answer': data[key]})
                break
    return answers


def _normalize(raw: Any, questions: Sequence[Question], depth: int) -> List[Dict[str, Any]]:
    if isinstance(raw, dict):
        if isinstance(raw.get('answers'), list):
            logger.debug('[NORMALIZE] already canonical')
            return list(raw['answers'])
        if raw and all(_is_numeric_key(k) for k in raw):
            logger.debug('[NORMALIZE] object with numeric keys')
            return [{'question_number': int(k), 'answer': v} for k, v in raw.items()]
        logger.debug('[NORMALIZE] mapping flat object')
        return _from_flat_object(raw, questions)

    if isinstance(raw, list):
        return _from_list(raw, questions)

    if isinstance(raw, (str, bytes)) and depth < _MAX_DEPTH:
        text = raw.decode('utf-8', errors='replace') if isinstance(raw, bytes) else raw
        parsed = extract_json_from_text(text)
        if parsed is None:
            logger.warning('[NORMALIZE] could not parse string as JSON: %r', text[:200])
            return []
        return _normalize(parsed, questions, depth + 1)

    return []


def normalize(raw: Any, questions: Sequence[Question]) -> Dict[str, List[Dict[str, Any]]]:
    """
    Normalize a raw provider response for ``questions``.

    Never raises; when no shape matches, every question gets a null answer
    with an error.
    """
    questions = list(questions)
    try:
        answers = _normalize(raw, questions, 0)
    except Exception as e:
        logger.error('[NORMALIZE] unexpected failure: %s', e)
        answers = []
    if not answers:
        logger.warning('[NORMALIZE] no usable answers; emitting null answers for %d questions', len(questions))
        return _fallback(questions)
    return {'answers': answers}


def coerce_question_number(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def missing_numbers(normalized: Dict[str, List[Dict[str, Any]]], questions: Sequence[Question]) -> List[int]:
    present = set()
    for entry in normalized.get('answers', []):
        if isinstance(entry, dict):
            number = coerce_question_number(entry.get('question_number'))
            if number is not None:
                present.add(number)
    return [q.number for q in questions if q.number not in present]
