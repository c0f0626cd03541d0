# tests/test_normalizer.py
from quizgate.normalizer import (
    NO_VALID_RESPONSE,
    coerce_question_number,
    extract_json_from_text,
    missing_numbers,
    normalize,
)

from .helpers import make_questions


def test_extract_json_variants():
    assert extract_json_from_text('{"a": 1}') == {'a': 1}
    assert extract_json_from_text('Sure!\n```json\n{"a": 2}\n```\nDone') == {'a': 2}
    assert extract_json_from_text('Here you go: {"a": 3} hope it helps') == {'a': 3}
    assert extract_json_from_text('answers: ["x", "y"]') == ['x', 'y']
    assert extract_json_from_text('no json here') is None
    assert extract_json_from_text('') is None


def test_canonical_shape_passes_through():
    raw = {'answers': [{'question_number': 1, 'answer': 'A'}]}
    assert normalize(raw, make_questions(1)) == raw


def test_bare_list_maps_to_batch_numbers():
    questions = make_questions(2, start=4)
    result = normalize(['first', 'second', 'extra'], questions)
    assert result['answers'] == [
        {'question_number': 4, 'answer': 'first'},
        {'question_number': 5, 'answer': 'second'},
        {'question_number': 3, 'answer': 'extra'},
    ]


def test_list_of_canonical_entries():
    raw = [{'question_number': 2, 'answer': 'B'}, {'question_number': 1, 'answer': 'A'}]
    assert normalize(raw, make_questions(2))['answers'] == raw


def test_numeric_keys():
    result = normalize({'1': 'A', '2': ['B', 'C']}, make_questions(2))
    assert result['answers'] == [
        {'question_number': 1, 'answer': 'A'},
        {'question_number': 2, 'answer': ['B', 'C']},
    ]


def test_flat_object_keys():
    raw = {'q1': 'A', 'question_2': 'B', 'pregunta_3': 'C', 'notes': 'ignored'}
    result = normalize(raw, make_questions(3))
    assert [a['answer'] for a in result['answers']] == ['A', 'B', 'C']


def test_json_string_is_parsed_recursively():
    raw = '```json\n{"answers": [{"question_number": 1, "answer": "A"}]}\n```'
    assert normalize(raw, make_questions(1))['answers'][0]['answer'] == 'A'
    # doubly encoded
    assert normalize('"{\\"1\\": \\"A\\"}"', make_questions(1))['answers'][0]['answer'] == 'A'


def test_unusable_response_yields_null_per_question():
    for raw in ('I cannot help with that', None, 42, {}):
        result = normalize(raw, make_questions(2))
        assert result['answers'] == [
            {'question_number': 1, 'answer': None, 'error': NO_VALID_RESPONSE},
            {'question_number': 2, 'answer': None, 'error': NO_VALID_RESPONSE},
        ]


def test_missing_numbers():
    normalized = {'answers': [{'question_number': '1', 'answer': 'A'}, 'junk']}
    assert missing_numbers(normalized, make_questions(3)) == [2, 3]


def test_coerce_question_number():
    assert coerce_question_number(3) == 3
    assert coerce_question_number(' 4 ') == 4
    assert coerce_question_number(True) is None
    assert coerce_question_number('x') is None
    assert coerce_question_number(None) is None
