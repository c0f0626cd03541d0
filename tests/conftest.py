# tests/conftest.py
import pytest

import quizgate.tokens

from .helpers import FakeClock


@pytest.fixture(autouse=True)
def approximate_tokenizer(monkeypatch):
    # keep the suite offline: tiktoken downloads its encodings on first use
    monkeypatch.setattr(quizgate.tokens, '_load_encoding', lambda model: None)


@pytest.fixture
def clock():
    return FakeClock()
