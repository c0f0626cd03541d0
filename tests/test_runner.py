# tests/test_runner.py
import json

import httpx
import pytest

from quizgate.dispatcher import ProviderDispatcher
from quizgate.models import Personalization, Question
from quizgate.rate_governor import RateGovernor
from quizgate.runner import NO_ANSWER_RECEIVED, assemble_answers, solve_questions

from .helpers import answer_all, make_questions, openai_completion, quiz_numbers


def make_dispatcher(clock, handler):
    governor = RateGovernor(clock=clock, sleep=clock.sleep)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ProviderDispatcher(client, governor)


async def solve(dispatcher, questions, **kwargs):
    try:
        return await solve_questions(questions, None, 'gpt-4o', 'sk-test', dispatcher, **kwargs)
    finally:
        await dispatcher.client.aclose()


@pytest.mark.asyncio
async def test_seven_questions_in_three_batches_come_back_in_order(clock):
    sizes = []

    def handler(request):
        numbers = quiz_numbers(request)
        sizes.append(len(numbers))
        # answer in reverse to prove the runner restores order
        return httpx.Response(200, json=openai_completion(answer_all(reversed(numbers))))

    questions = make_questions(7)
    answers = await solve(make_dispatcher(clock, handler), list(reversed(questions)))

    assert sizes == [3, 3, 1]
    assert [a.question_number for a in answers] == list(range(1, 8))
    assert [a.answer for a in answers] == [f'Answer {n}' for n in range(1, 8)]


@pytest.mark.asyncio
async def test_degrade_cycle_splits_then_recovers(clock):
    sizes = []

    def handler(request):
        numbers = quiz_numbers(request)
        sizes.append(len(numbers))
        if len(sizes) == 1:
            return httpx.Response(429, text='Rate limit reached for requests')
        return httpx.Response(200, json=openai_completion(answer_all(numbers)))

    dispatcher = make_dispatcher(clock, handler)
    started = clock.now
    answers = await solve(dispatcher, make_questions(7))

    # failed [1,2,3], then singletons until five successes end degrade mode
    assert sizes == [3, 1, 1, 1, 1, 1, 1, 1]
    assert [a.question_number for a in answers] == list(range(1, 8))
    assert all(a.error is None for a in answers)
    assert not dispatcher.governor.is_degraded()
    assert clock.now - started < 60


@pytest.mark.asyncio
async def test_missing_answer_becomes_null_with_error(clock):
    def handler(request):
        numbers = [n for n in quiz_numbers(request) if n != 2]
        return httpx.Response(200, json=openai_completion(answer_all(numbers)))

    answers = await solve(make_dispatcher(clock, handler), make_questions(3))
    assert [a.question_number for a in answers] == [1, 2, 3]
    assert answers[1].answer is None
    assert answers[1].error == NO_ANSWER_RECEIVED


@pytest.mark.asyncio
async def test_answers_are_shape_validated(clock):
    questions = [
        Question(number=1, type='checkbox', text='Pick'),
        Question(number=2, type='gapselect', text='Fill', placeholders=[1, 2]),
    ]

    def handler(request):
        return httpx.Response(200, json=openai_completion({'answers': [
            {'question_number': 1, 'answer': 'Only one'},
            {'question_number': 2, 'answer': [{'placeholder_number': 1, 'answer_text': 'x'}]},
        ]}))

    answers = await solve(make_dispatcher(clock, handler), questions)
    assert answers[0].answer == ['Only one']
    assert answers[0].shape_note == 'coerced_string_to_array'
    assert answers[1].answer is None
    assert answers[1].shape_note == 'length_mismatch'


@pytest.mark.asyncio
async def test_personalization_reaches_the_prompt(clock):
    prompts = []

    def handler(request):
        prompts.append(json.loads(request.content)['messages'][0]['content'])
        return httpx.Response(200, json=openai_completion(answer_all(quiz_numbers(request))))

    personalization = Personalization(active=True, customRules=['Always answer in Spanish'])
    await solve(make_dispatcher(clock, handler), make_questions(1), personalization=personalization)
    assert 'CRITICAL RULE 1: Always answer in Spanish' in prompts[0]


def test_assemble_keeps_first_answer_per_number():
    questions = make_questions(2)
    results = [
        {'question_number': '2', 'answer': 'first'},
        {'question_number': 2, 'answer': 'second'},
        {'question_number': 1, 'answer': None, 'error': 'Batch processing error: boom'},
        'garbage',
    ]
    answers = assemble_answers(questions, results)
    assert answers[0].error == 'Batch processing error: boom'
    assert answers[1].answer == 'first'
