"""
Gemini Classifier
=================
Sends matched page text to Gemini (``google-genai``) and reads back a
positive/negative verdict.

A positive response starts with ``AI_Crawler: Content Found``; anything
else is negative. HTTP 429 from the API becomes ``RateLimitError``, every
other failure ``ClassifierError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from google import genai
from google.genai import errors as genai_errors

from .errors import ClassifierError, RateLimitError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash-lite"

POSITIVE_PREFIX = "AI_Crawler: Content Found"
NEGATIVE_RESPONSE = "AI_Crawler: Not the Content you are looking for."

MAX_PROMPT_CHARS = 3000

PROMPT_PREAMBLE = """
Analyze this webpage content to determine if it is about Diversity, Equity, and Inclusion (DEI) topics.

Content to analyze:
"""

PROMPT_INSTRUCTIONS = f"""
Focus your analysis on identifying:
1. Is this content primarily about DEI topics?
2. What specific DEI themes or initiatives are discussed?
3. Is this content meant to be a resource or information about DEI?

Format your response EXACTLY as follows:
- If the content is primarily about DEI topics, start your response with EXACTLY:
  "{POSITIVE_PREFIX}:" followed by your description
- If the content is not primarily about DEI topics, respond with EXACTLY:
  "{NEGATIVE_RESPONSE}"
"""


@dataclass
class Verdict:
    positive: bool
    analysis: str

    @classmethod
    def from_response(cls, text: str) -> "Verdict":
        text = (text or "").strip()
        return cls(positive=text.startswith(POSITIVE_PREFIX), analysis=text)


def build_prompt(text: str, preamble: str = PROMPT_PREAMBLE, instructions: str = PROMPT_INSTRUCTIONS) -> str:
    return f"{preamble}\n{(text or '')[:MAX_PROMPT_CHARS]}\n{instructions}"


class GeminiClassifier:
    """
    Usage::

        classifier = GeminiClassifier(api_key=os.environ["GOOGLE_API_KEY"])
        verdict = await classifier.classify(text, url)
        await classifier.close()
    """

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL):
        self.model = model
        self._client = genai.Client(api_key=api_key)

    async def classify(self, text: str, url: str) -> Verdict:
        prompt = build_prompt(text)
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
            )
        except genai_errors.APIError as e:
            if e.code == 429:
                raise RateLimitError(f"Quota exceeded for {url}: {e.message or e}") from e
            raise ClassifierError(f"Gemini API error {e.code} for {url}: {e.message or e}") from e
        except Exception as e:
            raise ClassifierError(f"Gemini request failed for {url}: {e}") from e

        verdict = Verdict.from_response(response.text or "")
        logger.debug(f"[AI] {url} -> {'positive' if verdict.positive else 'negative'}")
        return verdict

    async def close(self) -> None:
        """Release the underlying HTTP clients."""
        aio = getattr(self._client, "aio", None)
        if aio is not None and hasattr(aio, "aclose"):
            await aio.aclose()
        if hasattr(self._client, "close"):
            self._client.close()
