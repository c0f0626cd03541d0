# quizgate/handlers.py
import re
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .models import Question

logger = logging.getLogger(__name__)

TYPE_ALIASES: Dict[str, str] = {
    'checkbox': 'multichoice',
    'moodle_multichoice': 'multichoice',
    'short_text': 'shortanswer',
    'short-answer': 'shortanswer',
    'fill_in_the_blanks_from_list': 'ddwtos',
    'moodle_dragdrop_text': 'ddwtos',
    'dragdrop_text': 'ddwtos',
    'moodle_match': 'matching',
    'moodle_gapselect': 'gapselect',
    'moodle_truefalse': 'truefalse',
    'moodle_dragdrop_marker': 'ddmarker',
}

COERCED_STRING_TO_ARRAY = 'coerced_string_to_array'
TOOK_FIRST_ARRAY_ITEM = 'took_first_array_item'
LENGTH_MISMATCH = 'length_mismatch'
INVALID_SHAPE = 'invalid_shape'

_ORDERING_SEPARATORS = re.compile(r'\r?\n|->|→|,|;|\|')


@dataclass
class ShapeResult:
    answer: Any
    valid: bool = True
    note: Optional[str] = None


def resolve_type(raw_type: Optional[str]) -> str:
    lowered = (raw_type or 'unknown').strip().lower()
    return TYPE_ALIASES.get(lowered, lowered)


def sanitize_string(value: Any, max_len: int = 500) -> Any:
    if not isinstance(value, str):
        return value
    trimmed = value.strip()
    return trimmed[:max_len] + '…' if len(trimmed) > max_len else trimmed


def coerce_array_strings(items: Any, max_len_each: int = 300) -> Any:
    if not isinstance(items, list):
        return items
    cleaned = (sanitize_string(str(item), max_len_each) for item in items if item is not None)
    return [item for item in cleaned if item]


def expected_placeholders(question: Question) -> Optional[int]:
    """Number of gaps the answer must fill, or None when unknown."""
    if question.placeholders:
        return len(question.placeholders)
    gaps = getattr(question, 'gaps', None)
    if isinstance(gaps, list) and gaps:
        return len(gaps)
    return None


# -- repairs applied before validation ----------------------------------

def repair_answer(question: Question, answer: Any) -> Any:
    """Unwrap common near-miss formats the model returns for some types."""
    qtype = resolve_type(question.type)
    if qtype == 'ordering':
        if isinstance(answer, dict) and isinstance(answer.get('order'), list):
            return answer['order']
        if isinstance(answer, str):
            parts = [p.strip() for p in _ORDERING_SEPARATORS.split(answer.strip()) if p.strip()]
            if len(parts) > 1:
                return parts
    elif qtype == 'cloze':
        if isinstance(answer, dict) and isinstance(answer.get('answers'), list):
            return answer['answers']
    return answer


# -- per-type validators ------------------------------------------------

def _multichoice(question: Question, answer: Any) -> ShapeResult:
    note = None
    if isinstance(answer, str):
        answer = [sanitize_string(answer)]
        note = COERCED_STRING_TO_ARRAY
    if not isinstance(answer, list):
        return ShapeResult(answer, False, note)
    return ShapeResult(coerce_array_strings(answer), True, note)


def _single_value(question: Question, answer: Any) -> ShapeResult:
    note = None
    if isinstance(answer, list):
        answer = answer[0] if answer else None
        note = TOOK_FIRST_ARRAY_ITEM
    if isinstance(answer, (int, float)) and not isinstance(answer, bool):
        answer = str(answer)
    if not isinstance(answer, str):
        return ShapeResult(answer, False, note)
    return ShapeResult(sanitize_string(answer, 400), True, note)


def _ordering(question: Question, answer: Any) -> ShapeResult:
    if not isinstance(answer, list):
        return ShapeResult(answer, False)
    return ShapeResult(coerce_array_strings(answer))


def _any_list(question: Question, answer: Any) -> ShapeResult:
    return ShapeResult(answer, isinstance(answer, list))


def _matching(question: Question, answer: Any) -> ShapeResult:
    if not isinstance(answer, list):
        return ShapeResult(answer, False)
    pairs = []
    for pair in answer:
        if isinstance(pair, dict):
            pair = {key: sanitize_string(value, 300) for key, value in pair.items()}
        pairs.append(pair)
    return ShapeResult(pairs)


def _placeholder_list(question: Question, answer: Any) -> ShapeResult:
    if not isinstance(answer, list):
        return ShapeResult(answer, False)
    expected = expected_placeholders(question)
    if expected and len(answer) != expected:
        return ShapeResult(answer, False, LENGTH_MISMATCH)
    return ShapeResult(answer)


def _cloze_record(item: Any, index: int) -> Dict[str, Any]:
    if isinstance(item, str):
        return {'placeholder_number': index + 1, 'answer_text': sanitize_string(item, 200)}
    if isinstance(item, dict):
        number = item.get('placeholder_number') or item.get('number') or index + 1
        text = item.get('answer_text') or item.get('answer') or ''
        return {'placeholder_number': number, 'answer_text': sanitize_string(str(text), 200)}
    return {'placeholder_number': index + 1, 'answer_text': ''}


def _cloze(question: Question, answer: Any) -> ShapeResult:
    if not isinstance(answer, list):
        return ShapeResult(answer, False)
    records: List[Dict[str, Any]] = [_cloze_record(item, i) for i, item in enumerate(answer)]
    expected = expected_placeholders(question)
    if expected and len(records) != expected:
        return ShapeResult(records, False, LENGTH_MISMATCH)
    return ShapeResult(records)


SHAPE_HANDLERS: Dict[str, Callable[[Question, Any], ShapeResult]] = {
    'multichoice': _multichoice,
    'radio': _single_value,
    'truefalse': _single_value,
    'shortanswer': _single_value,
    'ordering': _ordering,
    'matching': _matching,
    'gapselect': _placeholder_list,
    'ddwtos': _placeholder_list,
    'ddmarker': _any_list,
    'cloze': _cloze,
}


def validate_and_coerce(question: Question, answer: Any) -> ShapeResult:
    """
    Enforce the container shape expected for the question's type.

    Returns:
        ShapeResult whose ``answer`` is either well-typed or None; invalid
        answers always carry a note explaining why.
    """
    handler = SHAPE_HANDLERS.get(resolve_type(question.type))
    if handler is None:
        # unknown type: the extension decides what to do with it
        return ShapeResult(answer)
    result = handler(question, answer)
    if not result.valid:
        logger.warning('[SHAPE] invalid answer for question #%s (type=%s)', question.number, question.type)
        return ShapeResult(None, False, result.note or INVALID_SHAPE)
    return result
