"""
Keyword Extractor Service
Extracts categorized key phrases from document text with an OpenAI chat completion.
"""
import json
import re
from typing import Any, List, Optional
import structlog
from openai import APIError, AsyncOpenAI
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.exceptions import ChatProviderError
from app.models.schemas import Keyword, KeywordOptions
from app.services.embedding_service import TRANSIENT_ERRORS
from app.services.ports import KeywordExtractor

logger = structlog.get_logger()

# Document text sent to the model is cut here (~30k tokens)
MAX_INPUT_CHARS = 120_000

# First JSON array in the reply, tolerating prose or code fences around it
JSON_ARRAY_PATTERN = re.compile(r"\[[\s\S]*?\]")

MODE_INSTRUCTIONS = {
    "generic": "Extract the general keywords of the document",
    "legal": "Extract legal terms, involved parties, important dates and legal concepts",
    "academic": "Extract academic concepts, authors, methodologies and technical terms",
    "finance": "Extract financial terms, amounts, due dates and financial entities",
}

LOCALE_INSTRUCTIONS = {
    "en": "Respond in English",
    "es": "Respond in Spanish",
}


def build_keyword_system_prompt(options: KeywordOptions) -> str:
    return f"""You are an expert in document analysis. {MODE_INSTRUCTIONS[options.mode]}.

{LOCALE_INSTRUCTIONS[options.locale]}.

Available categories: {", ".join(options.categories)}

Instructions:
1. Extract between {options.min_items} and {options.max_items} keywords from the provided text
2. Classify each keyword into one of the available categories
3. Return ONLY a valid JSON array of objects shaped like: {{"phrase": "keyword", "kind": "category"}}
4. Do NOT include additional text, explanations or comments
5. Do NOT use markdown or any other formatting
6. Only the raw JSON array

{options.extra_guidance}""".rstrip()


def build_keyword_user_prompt(text: str) -> str:
    return f"Analyze the following text and extract keywords according to the system instructions:\n\n{text}"


class OpenAIKeywordExtractor(KeywordExtractor):
    """Keyword extraction with a deterministic (temperature 0) chat completion."""

    def __init__(self, client: AsyncOpenAI, model: str = "gpt-4o-mini", max_tokens: int = 1000):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    async def extract(self, text: str, options: Optional[KeywordOptions] = None) -> List[Keyword]:
        """
        Extract keywords from document text.

        An unparseable reply yields an empty list; provider failures raise.

        Raises:
            ChatProviderError: if the completion request fails
        """
        opts = options or KeywordOptions()
        if not text or not text.strip():
            return []

        if len(text) > MAX_INPUT_CHARS:
            logger.warning("Truncating text for keyword extraction", original_length=len(text))
            text = text[:MAX_INPUT_CHARS]

        logger.info("Extracting keywords", mode=opts.mode, text_length=len(text), model=self.model)

        try:
            completion = await self._create(
                model=self.model,
                messages=[
                    {"role": "system", "content": build_keyword_system_prompt(opts)},
                    {"role": "user", "content": build_keyword_user_prompt(text)},
                ],
                temperature=0,
                max_tokens=self.max_tokens,
            )
        except APIError as e:
            logger.error("Keyword extraction failed", error=str(e), model=self.model)
            raise ChatProviderError(f"Failed to extract keywords: {e}") from e

        content = completion.choices[0].message.content if completion.choices else None
        keywords = self.parse_keywords(content or "", opts.categories)

        logger.info("Keywords extracted", count=len(keywords), mode=opts.mode)
        return keywords

    @staticmethod
    def parse_keywords(content: str, categories: List[str]) -> List[Keyword]:
        """Parse the first JSON array in a model reply; malformed items are skipped."""
        match = JSON_ARRAY_PATTERN.search(content)
        if not match:
            logger.warning("No JSON array found in keyword response")
            return []

        try:
            items: Any = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse keyword response", error=str(e))
            return []

        keywords = []
        for item in items if isinstance(items, list) else []:
            try:
                keyword = Keyword.model_validate(item)
            except ValidationError:
                continue
            if not keyword.phrase.strip():
                continue
            if keyword.kind not in categories:
                keyword = keyword.model_copy(update={"kind": "other"})
            keywords.append(keyword)
        return keywords

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _create(self, **kwargs):
        return await self.client.chat.completions.create(**kwargs)
