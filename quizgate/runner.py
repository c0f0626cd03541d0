# quizgate/runner.py
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from .batching import BatchQueue, plan_batches
from .config import BatchConfig
from .dispatcher import ProviderDispatcher
from .handlers import repair_answer, validate_and_coerce
from .images import shrink_if_needed
from .models import NormalizedAnswer, Personalization, Question
from .normalizer import coerce_question_number
from .prompts import build_system_prompt

logger = logging.getLogger(__name__)

NO_ANSWER_RECEIVED = 'No answer received from the AI for this question'


def _shrink_question_images(question: Question) -> Question:
    """Return a copy of the question with oversized embedded images shrunk."""
    images = []
    for img in question.images:
        if isinstance(img, dict) and isinstance(img.get('base64'), str):
            img = {**img, 'base64': shrink_if_needed(img['base64'])}
        images.append(img)
    options = []
    for option in question.options:
        if isinstance(option, dict) and isinstance(option.get('image'), str):
            option = {**option, 'image': shrink_if_needed(option['image'])}
        options.append(option)
    if images == question.images and options == question.options:
        return question
    logger.info('[API] shrunk images in question #%s', question.number)
    return question.model_copy(update={'images': images, 'options': options})


async def prepare_questions(questions: Sequence[Question]) -> List[Question]:
    return await asyncio.to_thread(lambda: [_shrink_question_images(q) for q in questions])


async def prepare_screenshot(screenshot: Optional[str]) -> Optional[str]:
    if not screenshot:
        return screenshot
    return await asyncio.to_thread(shrink_if_needed, screenshot, max_width=600, quality=60)


def assemble_answers(questions: Sequence[Question], results: Sequence[Dict[str, Any]]) -> List[NormalizedAnswer]:
    """
    Build exactly one validated answer per question, in question-number order.

    The first result carrying a question's number wins; questions without
    any result get a null answer with an error.
    """
    by_number: Dict[int, Dict[str, Any]] = {}
    for entry in results:
        if not isinstance(entry, dict):
            continue
        number = coerce_question_number(entry.get('question_number'))
        if number is not None and number not in by_number:
            by_number[number] = entry

    answers = []
    for question in sorted(questions, key=lambda q: q.number):
        entry = by_number.get(question.number)
        if entry is None:
            logger.warning('[API] no answer found for question %s', question.number)
            answers.append(NormalizedAnswer(question_number=question.number, error=NO_ANSWER_RECEIVED))
            continue
        error = entry.get('error')
        shaped = validate_and_coerce(question, repair_answer(question, entry.get('answer')))
        answers.append(NormalizedAnswer(
            question_number=question.number,
            answer=shaped.answer,
            error=str(error) if error else None,
            shape_note=shaped.note,
        ))
    return answers


async def solve_questions(
    questions: Sequence[Question],
    screenshot: Optional[str],
    model: str,
    api_key: str,
    dispatcher: ProviderDispatcher,
    personalization: Optional[Personalization] = None,
    provider: Optional[str] = None,
    batch_config: Optional[BatchConfig] = None,
) -> List[NormalizedAnswer]:
    """
    Run the whole pipeline for one quiz.

    Args:
        questions: Questions as submitted by the extension
        screenshot: Optional base64 screenshot of the quiz page
        model: Provider model name
        api_key: The caller's provider API key
        dispatcher: Dispatcher bound to the process-wide RateGovernor
        personalization: Optional user rules, documents and reference images
        provider: Explicit provider id; inferred from ``model`` when None
        batch_config: Batch size and token ceiling

    Returns:
        One NormalizedAnswer per question, ordered by question number
    """
    batch_config = batch_config or BatchConfig()
    governor = dispatcher.governor
    system_prompt = await build_system_prompt(personalization)
    prepared = await prepare_questions(questions)
    image = await prepare_screenshot(screenshot)
    reference_images = [img.model_dump() for img in personalization.images] if personalization and personalization.active else []

    queue = BatchQueue(plan_batches(
        prepared, model, system_prompt, image,
        max_batch_size=batch_config.max_batch_size,
        max_tokens=batch_config.max_batch_tokens,
    ))
    degraded_size = governor.rate_config.degraded_batch_size

    results: List[Dict[str, Any]] = []
    batch_index = 0
    while True:
        batch = queue.next_batch(governor.is_degraded(), degraded_size)
        if batch is None:
            break
        batch_index += 1
        result = await dispatcher.dispatch(
            batch, image, system_prompt, model, api_key, batch_index,
            personalization_images=reference_images,
            provider=provider,
        )
        if result.degraded:
            logger.info('[RATE-LIMIT] batch #%d degraded; re-queuing %d singletons', batch_index, len(result.degraded_questions))
            queue.requeue_front(result.degraded_questions, degraded_size)
            continue
        results.extend(result.answers)

    return assemble_answers(prepared, results)
