# quizgate/providers.py
"""
Provider capability descriptors.

Each provider family is described once: endpoint, auth style, output-token
ceiling, how to build the request body and where the answer text lives in
the response. The dispatcher only talks to ``ProviderSpec`` objects.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import MalformedResponseError

logger = logging.getLogger(__name__)

QUIZ_PREFIX = 'Solve this quiz: '

_DATA_URL = re.compile(r'^data:([^;]+);base64,(.+)$', re.DOTALL)


class ProviderFamily(str, Enum):
    OPENAI = 'openai'
    GEMINI = 'gemini'
    CLAUDE = 'claude'
    GROK = 'grok'
    DEEPSEEK = 'deepseek'


class AuthStyle(str, Enum):
    BEARER = 'bearer'
    X_API_KEY = 'x-api-key'
    QUERY_KEY = 'query-key'


@dataclass
class ProviderRequest:
    model: str
    system_prompt: str
    questions: List[Dict[str, Any]]
    image: Optional[str] = None
    personalization_images: List[Dict[str, Any]] = field(default_factory=list)
    max_output_tokens: int = 4096

    @property
    def quiz_text(self) -> str:
        return QUIZ_PREFIX + json.dumps(self.questions, ensure_ascii=False, default=str)


def split_data_url(data: str, default_mime: str = 'image/jpeg') -> Tuple[str, str]:
    """Return (mime_type, raw_base64) for a data URL or bare base64 string."""
    match = _DATA_URL.match(data or '')
    if match:
        return match.group(1), match.group(2)
    if data and data.startswith('data:') and ',' in data:
        return default_mime, data.split(',', 1)[1]
    return default_mime, data or ''


def as_data_url(data: str, default_mime: str = 'image/jpeg') -> str:
    if data.startswith('data:'):
        return data
    return f'data:{default_mime};base64,{data}'


# -- request builders ---------------------------------------------------

def build_openai_payload(request: ProviderRequest) -> Dict[str, Any]:
    user_content: List[Dict[str, Any]] = [{'type': 'text', 'text': request.quiz_text}]
    for img in request.personalization_images:
        if img.get('data'):
            user_content.append({'type': 'image_url', 'image_url': {'url': as_data_url(img['data'], img.get('type') or 'image/jpeg')}})
    if request.image:
        user_content.append({'type': 'image_url', 'image_url': {'url': as_data_url(request.image), 'detail': 'high'}})

    payload: Dict[str, Any] = {
        'model': request.model,
        'messages': [
            {'role': 'system', 'content': request.system_prompt},
            {'role': 'user', 'content': user_content},
        ],
        'response_format': {'type': 'json_object'},
    }
    if 'gpt-5-mini' in request.model.lower():
        payload['max_completion_tokens'] = 128000
        payload['reasoning_effort'] = 'high'
    else:
        payload['max_tokens'] = request.max_output_tokens
    return payload


def build_gemini_payload(request: ProviderRequest) -> Dict[str, Any]:
    parts: List[Dict[str, Any]] = [{'text': request.system_prompt}]
    # reference images go before the quiz itself
    for img in request.personalization_images:
        if not img.get('data'):
            continue
        mime, data = split_data_url(img['data'], img.get('type') or 'image/jpeg')
        parts.append({'inline_data': {'mime_type': mime, 'data': data}})
    parts.append({'text': request.quiz_text})
    if request.image:
        mime, data = split_data_url(request.image)
        parts.append({'inline_data': {'mime_type': mime, 'data': data}})
    return {
        'contents': [{'parts': parts}],
        'generationConfig': {
            'temperature': 0.1,
            'maxOutputTokens': request.max_output_tokens,
            'responseMimeType': 'application/json',
        },
    }


def build_claude_payload(request: ProviderRequest) -> Dict[str, Any]:
    content: List[Dict[str, Any]] = []
    if request.image:
        mime, data = split_data_url(request.image)
        content.append({'type': 'image', 'source': {'type': 'base64', 'media_type': mime, 'data': data}})
    content.append({'type': 'text', 'text': request.quiz_text})
    return {
        'model': request.model,
        'max_tokens': request.max_output_tokens,
        'system': request.system_prompt,
        'messages': [{'role': 'user', 'content': content}],
    }


# -- response extractors ------------------------------------------------

def _dig(data: Any, path: Tuple[Any, ...], label: str) -> Any:
    current = data
    walked = ''
    for step in path:
        walked += f'[{step}]' if isinstance(step, int) else f'.{step}'
        try:
            current = current[step]
        except (KeyError, IndexError, TypeError):
            raise MalformedResponseError(f'{label} response missing {walked.lstrip(".")}')
    if current is None or current == '':
        raise MalformedResponseError(f'{label} response has empty {walked.lstrip(".")}')
    return current


def extract_openai_text(data: Dict[str, Any]) -> str:
    return _dig(data, ('choices', 0, 'message', 'content'), 'OpenAI-compatible')


def extract_gemini_text(data: Dict[str, Any]) -> str:
    return _dig(data, ('candidates', 0, 'content', 'parts', 0, 'text'), 'Gemini')


def extract_claude_text(data: Dict[str, Any]) -> str:
    return _dig(data, ('content', 0, 'text'), 'Claude')


@dataclass(frozen=True)
class ProviderSpec:
    family: ProviderFamily
    label: str
    endpoint: str
    auth: AuthStyle
    max_output_tokens: int
    build_payload: Callable[[ProviderRequest], Dict[str, Any]]
    extract_text: Callable[[Dict[str, Any]], str]
    extra_headers: Tuple[Tuple[str, str], ...] = ()

    def url(self, model: str) -> str:
        return self.endpoint.format(model=model)

    def headers(self, api_key: str) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.auth is AuthStyle.BEARER:
            headers['Authorization'] = f'Bearer {api_key}'
        elif self.auth is AuthStyle.X_API_KEY:
            headers['x-api-key'] = api_key
        headers.update(dict(self.extra_headers))
        return headers

    def params(self, api_key: str) -> Dict[str, str]:
        return {'key': api_key} if self.auth is AuthStyle.QUERY_KEY else {}


PROVIDERS: Dict[ProviderFamily, ProviderSpec] = {
    ProviderFamily.OPENAI: ProviderSpec(
        family=ProviderFamily.OPENAI,
        label='OpenAI',
        endpoint='https://api.openai.com/v1/chat/completions',
        auth=AuthStyle.BEARER,
        max_output_tokens=4096,
        build_payload=build_openai_payload,
        extract_text=extract_openai_text,
    ),
    ProviderFamily.GROK: ProviderSpec(
        family=ProviderFamily.GROK,
        label='Grok',
        endpoint='https://api.x.ai/v1/chat/completions',
        auth=AuthStyle.BEARER,
        max_output_tokens=5000,
        build_payload=build_openai_payload,
        extract_text=extract_openai_text,
    ),
    ProviderFamily.DEEPSEEK: ProviderSpec(
        family=ProviderFamily.DEEPSEEK,
        label='DeepSeek',
        endpoint='https://api.deepseek.com/chat/completions',
        auth=AuthStyle.BEARER,
        max_output_tokens=8000,
        build_payload=build_openai_payload,
        extract_text=extract_openai_text,
    ),
    ProviderFamily.CLAUDE: ProviderSpec(
        family=ProviderFamily.CLAUDE,
        label='Claude',
        endpoint='https://api.anthropic.com/v1/messages',
        auth=AuthStyle.X_API_KEY,
        max_output_tokens=8192,
        build_payload=build_claude_payload,
        extract_text=extract_claude_text,
        extra_headers=(('anthropic-version', '2023-06-01'),),
    ),
    ProviderFamily.GEMINI: ProviderSpec(
        family=ProviderFamily.GEMINI,
        label='Gemini',
        endpoint='https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent',
        auth=AuthStyle.QUERY_KEY,
        max_output_tokens=4096,
        build_payload=build_gemini_payload,
        extract_text=extract_gemini_text,
    ),
}

# checked in order; first substring hit wins
_MODEL_HINTS = (
    ('gemini', ProviderFamily.GEMINI),
    ('claude', ProviderFamily.CLAUDE),
    ('grok', ProviderFamily.GROK),
    ('deepseek', ProviderFamily.DEEPSEEK),
    ('gpt', ProviderFamily.OPENAI),
    ('o1', ProviderFamily.OPENAI),
    ('o3', ProviderFamily.OPENAI),
    ('o4', ProviderFamily.OPENAI),
)


def infer_family(model: str) -> Optional[ProviderFamily]:
    lowered = (model or '').lower()
    for hint, family in _MODEL_HINTS:
        if hint in lowered:
            return family
    return None


def resolve_provider(model: str, provider: Optional[str] = None) -> ProviderSpec:
    """
    Pick the provider descriptor for a request.

    An explicit provider id always wins. Without one the family is inferred
    from the model name, falling back to OpenAI with a warning when nothing
    matches.
    """
    if provider:
        try:
            return PROVIDERS[ProviderFamily(provider.lower())]
        except ValueError:
            logger.warning('[PROVIDER] unknown provider id %r; inferring from model %r', provider, model)
    family = infer_family(model)
    if family is None:
        logger.warning('[PROVIDER] model %r matches no known provider; assuming OpenAI-compatible', model)
        family = ProviderFamily.OPENAI
    return PROVIDERS[family]
