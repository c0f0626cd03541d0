# tests/helpers.py
import json

import httpx

from quizgate.models import Question
from quizgate.providers import QUIZ_PREFIX


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_questions(count, qtype='shortanswer', start=1):
    return [Question(number=n, type=qtype, text=f'Question {n}?') for n in range(start, start + count)]


def openai_completion(content):
    if not isinstance(content, str):
        content = json.dumps(content)
    return {'choices': [{'message': {'role': 'assistant', 'content': content}}]}


def quiz_numbers(request: httpx.Request):
    """Question numbers carried by an OpenAI-style request body."""
    body = json.loads(request.content)
    text = body['messages'][1]['content'][0]['text']
    return [q['number'] for q in json.loads(text[len(QUIZ_PREFIX):])]


def answer_all(numbers):
    return {'answers': [{'question_number': n, 'answer': f'Answer {n}'} for n in numbers]}
