"""
Content generation for scheduled jobs.

The scheduler treats the generator as a black box: generate(topic, category)
returns a GeneratedContent draft or raises ContentGenerationError. The quality
gate that decides between completed and rejected lives here as well.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from trendwire.generation.constants import DEFAULT_MIN_ARTICLE_WORDS, DEFAULT_MIN_QUALITY_SCORE
from trendwire.generation.errors import ContentGenerationError

logger = logging.getLogger(__name__)


@dataclass
class GeneratedContent:
    title: str
    body: str
    quality_score: Optional[float] = None

    @property
    def word_count(self) -> int:
        return len((self.body or '').split())


class ContentGenerator:
    """Interface every content generator implements."""

    def generate(self, topic: str, category: str) -> GeneratedContent:
        raise NotImplementedError


def assess_quality(
    content: GeneratedContent,
    min_quality_score: float = DEFAULT_MIN_QUALITY_SCORE,
    min_words: int = DEFAULT_MIN_ARTICLE_WORDS,
) -> Tuple[bool, Optional[str]]:
    """
    Decide whether a draft may be published.

    Returns:
        (passed, reason) where reason explains a rejection
    """
    if not content.title or not content.title.strip():
        return False, 'empty title'
    if not content.body or not content.body.strip():
        return False, 'empty body'
    if content.word_count < min_words:
        return False, f'too short ({content.word_count} words, minimum {min_words})'
    if content.quality_score is not None and content.quality_score < min_quality_score:
        return False, f'quality score {content.quality_score:g} below {min_quality_score:g}'
    return True, None


def _build_prompt(topic: str, category: str, min_words: int) -> str:
    return f"""Write a news article about this trending topic.

Topic: {topic}
Category: {category}

Requirements:
- Factual, neutral tone; no speculation presented as fact
- At least {min_words} words, structured in short paragraphs
- A clear, specific headline (under 100 characters)
- Rate your own draft from 0 to 100 for accuracy, depth and readability

Return as JSON object:
{{"title": "headline", "body": "article text", "quality_score": 75}}

Return ONLY valid JSON."""


def _strip_code_fence(text: str) -> str:
    content = text.strip()
    if content.startswith('```json'):
        content = content[7:]
    elif content.startswith('```'):
        content = content[3:]
    if content.endswith('```'):
        content = content[:-3]
    return content.strip()


def parse_generated_content(response_text: str) -> GeneratedContent:
    """
    Raises:
        ContentGenerationError: the response is not the expected JSON object
    """
    try:
        data = json.loads(_strip_code_fence(response_text or ''))
    except json.JSONDecodeError as e:
        raise ContentGenerationError(f"Generator returned invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ContentGenerationError("Generator returned JSON that is not an object")

    score = data.get('quality_score')
    if score is not None:
        try:
            score = float(score)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric quality score {score!r}")
            score = None

    return GeneratedContent(
        title=str(data.get('title') or '').strip(),
        body=str(data.get('body') or '').strip(),
        quality_score=score,
    )


class OpenAIContentGenerator(ContentGenerator):
    """
    Args:
        api_key: OpenAI API key
        model: Chat completion model name
        min_words: Length asked for in the prompt
    """

    def __init__(self, api_key: str, model: str = 'gpt-4o-mini',
                 min_words: int = DEFAULT_MIN_ARTICLE_WORDS, timeout: float = 120):
        self.api_key = api_key
        self.model = model
        self.min_words = min_words
        self.timeout = timeout

    def generate(self, topic: str, category: str) -> GeneratedContent:
        if not self.api_key:
            raise ContentGenerationError("OPENAI_API_KEY is not configured")

        try:
            import openai
            client = openai.OpenAI(api_key=self.api_key, timeout=self.timeout)

            response = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You are a careful news writer. You return only JSON."},
                    {"role": "user", "content": _build_prompt(topic, category, self.min_words)}
                ],
                max_tokens=2000,
                temperature=0.7
            )
            text = response.choices[0].message.content
        except Exception as e:
            logger.error(f"Article generation for '{topic}' failed: {e}")
            raise ContentGenerationError(f"OpenAI request failed: {e}") from e

        return parse_generated_content(text)
