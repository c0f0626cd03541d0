# quizgate/prompts.py
import asyncio
import logging
from typing import Optional

from .documents import extract_documents, truncate_document_text
from .models import Personalization

logger = logging.getLogger(__name__)

BASE_SYSTEM_PROMPT = """You are an expert at solving Moodle quizzes. Return ONLY valid JSON shaped as {
  "answers": [ { "question_number": <num>, "answer": <per type> } ]
}. Do not add explanations outside the JSON.

GENERAL APPROACH:
1. Read each statement carefully. If a multichoice/checkbox question says "select all", "mark all" or similar, return EVERY clearly correct option.
2. If a multi-select question has only one correct option, answer only that one.
3. For questions with images, analyse each image in detail and use only what is observable. Do not invent parts that are not visible.
4. If letters (A, B, C, D) label visible elements, include only the letters of elements that are present.
5. If you cannot determine the correct options with confidence, answer null and add an "error" field explaining the ambiguity.
6. Stick strictly to the available options. If the theoretically correct answer is missing, choose the closest or least incorrect option.

MATHEMATICAL AND SCIENTIFIC NOTATION:
7. Recognise scientific notation (7.405e-8, 1.23×10^-5), units (W/m², kg/m³, Pa, Hz), Greek letters and mathematical, logical and set operators.
8. When answering with numbers, use EXACTLY the format shown in the options, including superscripts, subscripts and special symbols.
9. For maths and physics questions, compute internally, check every step, and pick the option that matches or is closest to your result.

TYPES AND FORMATS (use EXACTLY these formats):
- multichoice / checkbox: ["correct option 1", "correct option 2"] (array, even for a single option). Never a bare string.
- radio / truefalse: "text of the option".
- shortanswer / short_text: "short textual answer". If the question lists possible answers or says how the answer must look, use one of them literally.
- ordering: ["item1", "item2", ...] in final order.
- matching / moodle_match: [ { "sub_question_text": "text", "sub_answer_text": "answer" }, ... ].
- gapselect / moodle_gapselect: [ { "placeholder_number": n, "answer_text": "text" }, ... ].
- ddwtos and aliases (fill_in_the_blanks_from_list, dragdrop_text): [ { "placeholder_number": n, "answer_text": "option" }, ... ] with length EXACTLY equal to the number of gaps.
- ddmarker / moodle_dragdrop_marker: an array of objects if positions can be deduced, otherwise null with an explanatory error.
- cloze: [ { "placeholder_number": n, "answer_text": "text" }, ... ].

ALIASES: checkbox->multichoice, short_text->shortanswer, short-answer->shortanswer, fill_in_the_blanks_from_list->ddwtos, moodle_dragdrop_text->ddwtos, dragdrop_text->ddwtos.

CRITICAL RULES for ddwtos / gapselect / cloze: array length == number of gaps; placeholder_number starts at 1; never repeat numbers; if a gap cannot be solved, answer null with an error.

The client selects every option you return for multichoice, so the list must be complete and without extras.

FAILURES: if you cannot answer with certainty, return { "question_number": n, "answer": null, "error": "reason" }.

SHORT EXAMPLE:
{
  "answers": [
    { "question_number": 1, "answer": [ { "placeholder_number": 1, "answer_text": "fuel" } ] },
    { "question_number": 2, "answer": ["Oil control ring", "Fire ring", "Compression ring"] }
  ]
}"""

_RULE = '=' * 80


async def build_system_prompt(personalization: Optional[Personalization] = None) -> str:
    """Base prompt plus the user's personalization section, if active."""
    prompt = BASE_SYSTEM_PROMPT
    if not personalization or not personalization.active:
        return prompt

    sections = ['', _RULE, 'PERSONALIZATION ENABLED - SPECIAL USER INSTRUCTIONS', _RULE, '']

    if personalization.custom_rules:
        sections.append('USER RULES - MANDATORY:')
        sections.append('These rules take priority over any other instruction:')
        sections.append('')
        for index, rule in enumerate(personalization.custom_rules, start=1):
            sections.append(f'CRITICAL RULE {index}: {rule}')
        sections.append('')
        sections.append('If a rule contradicts the general instructions, THE USER RULE WINS.')
        sections.append('')

    if personalization.documents:
        sections.append('REFERENCE DOCUMENTS:')
        sections.append('Use this information to improve the accuracy of your answers:')
        sections.append('')
        # PDF parsing is CPU bound
        documents = await asyncio.to_thread(extract_documents, personalization.documents)
        for index, doc in enumerate(documents, start=1):
            sections.append(f'--- DOCUMENT {index}: {doc.name} ---')
            sections.append(f'Size: {round(doc.size / 1024)} KB | Tokens: {doc.tokens}')
            sections.append('')
            if doc.text:
                sections.append('CONTENT:')
                sections.append(truncate_document_text(doc.text))
            else:
                sections.append(f'[Document provided: {doc.name}]')
            sections.append(f'--- END DOCUMENT {index} ---')
            sections.append('')

    if personalization.images:
        sections.append('REFERENCE IMAGES:')
        sections.append('The user attached the following reference images; they are included with each request:')
        for index, img in enumerate(personalization.images, start=1):
            sections.append(f'{index}. {img.name} ({round(img.size / 1024)} KB)')
        sections.append('Use them to complement your knowledge, not to replace it.')
        sections.append('')

    sections.extend([_RULE, 'End of personalization - continue with the quiz', _RULE, ''])
    prompt = prompt + '\n' + '\n'.join(sections)
    logger.info(
        '[SYSTEM-PROMPT] personalization applied: rules=%d documents=%d images=%d length=%d',
        len(personalization.custom_rules), len(personalization.documents),
        len(personalization.images), len(prompt),
    )
    return prompt
