# quizgate/documents.py
import base64
import logging
import math
from dataclasses import dataclass
from typing import List, Optional

import fitz  # PyMuPDF

from .models import PersonalizationDocument
from .tokens import strip_data_url

logger = logging.getLogger(__name__)

MAX_DOCUMENT_CHARS = 15000
TEXT_SUFFIXES = ('.txt', '.md')


@dataclass
class ExtractedDocument:
    name: str
    size: int
    text: Optional[str]
    tokens: int


def approximate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def extract_text_from_pdf(data: str) -> str:
    raw = base64.b64decode(strip_data_url(data))
    logger.info('[PDF] extracting text (%d bytes)', len(raw))
    with fitz.open(stream=raw, filetype='pdf') as doc:
        text = '\n'.join(page.get_text() for page in doc)
    logger.info('[PDF] %d chars extracted', len(text))
    return text


def decode_text_document(data: str) -> str:
    return base64.b64decode(strip_data_url(data)).decode('utf-8', errors='replace')


def extract_document(document: PersonalizationDocument) -> ExtractedDocument:
    """Pull readable text out of an uploaded reference document."""
    name = document.name.lower()
    text = None
    if document.data:
        if name.endswith('.pdf'):
            try:
                text = extract_text_from_pdf(document.data)
            except Exception as e:
                logger.error('[PDF] could not read %s: %s', document.name, e)
                text = f'[Could not extract text from PDF: {e}]'
        elif name.endswith(TEXT_SUFFIXES):
            try:
                text = decode_text_document(document.data)
            except ValueError as e:
                logger.error('[PERSONALIZATION] could not decode %s: %s', document.name, e)
    tokens = approximate_tokens(text) if text else document.tokens
    return ExtractedDocument(name=document.name, size=document.size, text=text, tokens=tokens)


def extract_documents(documents: List[PersonalizationDocument]) -> List[ExtractedDocument]:
    return [extract_document(doc) for doc in documents or []]


def truncate_document_text(text: str, max_chars: int = MAX_DOCUMENT_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + '\n\n[... content truncated ...]'
