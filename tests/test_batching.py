# tests/test_batching.py
from quizgate.batching import BatchQueue, chunk, plan_batches

from .helpers import make_questions


def fixed_estimator(base=1000, per_question=100, overrides=None):
    overrides = overrides or {}

    def estimate(prompt, questions, image=None, model='gpt-4o', overhead=50):
        if not questions:
            return base
        return sum(overrides.get(q.number, per_question) for q in questions)

    return estimate


def numbers(batches):
    return [[q.number for q in batch] for batch in batches]


def test_seven_questions_pack_three_three_one():
    batches = plan_batches(make_questions(7), 'gpt-4o', 'prompt', estimator=fixed_estimator())
    assert numbers(batches) == [[1, 2, 3], [4, 5, 6], [7]]


def test_token_ceiling_closes_batches_early():
    estimator = fixed_estimator(base=1000, per_question=1000)
    batches = plan_batches(make_questions(5), 'gpt-4o', 'prompt', max_tokens=3500, estimator=estimator)
    assert numbers(batches) == [[1, 2], [3, 4], [5]]


def test_oversized_question_travels_alone():
    estimator = fixed_estimator(overrides={2: 10_000})
    batches = plan_batches(make_questions(3), 'gpt-4o', 'prompt', estimator=estimator)
    assert numbers(batches) == [[1], [2], [3]]


def test_single_question_skips_estimation():
    def explode(*args, **kwargs):
        raise AssertionError('estimator should not run')

    assert numbers(plan_batches(make_questions(1), 'gpt-4o', 'p', estimator=explode)) == [[1]]
    assert plan_batches([], 'gpt-4o', 'p') == []


def test_estimator_failure_falls_back_to_fixed_chunks():
    def explode(*args, **kwargs):
        raise ValueError('no tokenizer')

    batches = plan_batches(make_questions(5), 'gpt-4o', 'p', max_batch_size=2, estimator=explode)
    assert numbers(batches) == [[1, 2], [3, 4], [5]]


def test_default_estimator_plans_small_quiz():
    batches = plan_batches(make_questions(7), 'gpt-4o', 'You are a quiz solver.')
    assert [len(b) for b in batches] == [3, 3, 1]


def test_chunk_handles_bad_size():
    assert numbers(chunk(make_questions(3), 0)) == [[1], [2], [3]]


def test_requeue_front_keeps_order():
    queue = BatchQueue(chunk(make_questions(6), 3))
    first = queue.next_batch()
    queue.requeue_front(first, 1)
    assert queue.snapshot() == [[1], [2], [3], [4, 5, 6]]


def test_degraded_queue_splits_pending_batches():
    queue = BatchQueue(chunk(make_questions(6), 3))
    assert [q.number for q in queue.next_batch(degraded=True)] == [1]
    assert [q.number for q in queue.next_batch(degraded=True)] == [2]
    assert [q.number for q in queue.next_batch(degraded=False)] == [3]
    assert [q.number for q in queue.next_batch(degraded=False)] == [4, 5, 6]
    assert queue.next_batch() is None
    assert not queue
