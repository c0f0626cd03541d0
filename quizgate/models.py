# quizgate/models.py
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Question(BaseModel):
    """A single quiz question as scraped by the extension.

    ``number`` is the stable ordering key. Extra fields sent by the
    extension (``gaps``, ``subquestions``...) are preserved untouched.
    """
    model_config = ConfigDict(frozen=True, extra='allow')

    number: int
    type: str = 'unknown'
    text: str = ''
    options: List[Any] = Field(default_factory=list)
    images: List[Any] = Field(default_factory=list)
    placeholders: List[Any] = Field(default_factory=list)


class NormalizedAnswer(BaseModel):
    question_number: int
    answer: Any = None
    error: Optional[str] = None
    shape_note: Optional[str] = None


class ProviderConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: Optional[str] = Field(default=None, alias='apiKey')
    model: str = 'gpt-4o'
    # explicit provider id; inferred from the model name when missing
    provider: Optional[str] = None


class PersonalizationDocument(BaseModel):
    model_config = ConfigDict(extra='allow')

    name: str
    data: Optional[str] = None
    size: int = 0
    tokens: int = 0


class PersonalizationImage(BaseModel):
    model_config = ConfigDict(extra='allow')

    name: str = 'image'
    data: str
    type: Optional[str] = None
    size: int = 0


class Personalization(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    active: bool = False
    custom_rules: List[str] = Field(default_factory=list, alias='customRules')
    documents: List[PersonalizationDocument] = Field(default_factory=list)
    images: List[PersonalizationImage] = Field(default_factory=list)


class StartQuizRequest(BaseModel):
    questions: List[Question] = Field(default_factory=list)
    screenshot: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('screenshotData', 'screenshotImage', 'screenshot'),
    )
    provider_config: Optional[ProviderConfig] = Field(
        default=None,
        validation_alias=AliasChoices('config', 'providerConfig'),
    )
    personalization: Optional[Personalization] = None
    progress: Optional[Dict[str, Any]] = None


class AuthRequest(BaseModel):
    token: Optional[str] = None
