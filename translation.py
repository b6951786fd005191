"""Gemini translation provider and the shared retry policy."""
import asyncio
import json
import logging
import re
from typing import Callable, Optional, Protocol

from google import genai
from google.genai import types
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from config import settings
from errors import TranslationFailed

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

RETRYABLE_MARKERS = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "quota",
    "resource_exhausted",
    "resource exhausted",
    "unavailable",
    "overloaded",
    "high demand",
    "try again",
)

# Only a status at the start of the message counts, e.g. "503 UNAVAILABLE"
_STATUS_CODE_RE = re.compile(r"\s*(?:429|500|502|503|504)\b")

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)


class MalformedResponse(ValueError):
    """The provider answered, but not with a JSON object."""


class TranslationProvider(Protocol):
    """Anything that turns a prompt into JSON-shaped completion text."""

    async def generate(self, prompt: str) -> str:
        ...


class GeminiProvider:
    """Gemini client configured to answer in JSON."""

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        self.api_key = api_key or settings.gemini_api_key
        self.model_name = model_name or settings.gemini_model
        self.client = None  # genai.Client

    def _ensure_initialized(self):
        """Create the client on first use."""
        if self.client is not None:
            return
        if not self.api_key:
            raise RuntimeError("GEMINI_API_KEY is not configured")
        self.client = genai.Client(api_key=self.api_key)
        logger.info(f"Gemini client initialized: model={self.model_name}")

    async def generate(self, prompt: str) -> str:
        self._ensure_initialized()
        response = await self.client.aio.models.generate_content(
            model=self.model_name,
            contents=prompt,
            config=types.GenerateContentConfig(
                temperature=0.3,
                response_mime_type="application/json",
            ),
        )
        return response.text or ""

    def list_models(self) -> list[str]:
        """Names of models that support generateContent."""
        self._ensure_initialized()
        names = []
        for model in self.client.models.list():
            actions = model.supported_actions or []
            if "generateContent" in actions:
                names.append(model.name.replace("models/", ""))
        return names


def is_retryable(exc: BaseException) -> bool:
    """
    Classify a provider error.

    Rate limits, quota exhaustion, transient unavailability and timeouts are
    retryable; everything else is fatal. A numeric status code on the error
    decides on its own; the message is only read when there is none.
    """
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return True

    code = getattr(exc, "code", None) or getattr(exc, "status_code", None)
    if isinstance(code, int) and not isinstance(code, bool):
        return code in RETRYABLE_STATUS_CODES

    message = str(exc).lower()
    if _STATUS_CODE_RE.match(message):
        return True
    return any(marker in message for marker in RETRYABLE_MARKERS)


def parse_json_response(text: str) -> dict:
    """
    Parse a JSON object out of completion text.

    Tolerates markdown code fences around the object.

    Raises:
        MalformedResponse: no JSON object could be parsed
    """
    text = (text or "").strip()
    candidates = [text]

    match = _JSON_FENCE_RE.search(text)
    if match:
        candidates.append(match.group(1).strip())

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            result = json.loads(candidate, strict=False)
        except json.JSONDecodeError:
            continue
        if isinstance(result, dict):
            return result

    raise MalformedResponse(f"Failed to parse JSON from provider response: {text[:200]}")


async def generate_with_retry(
    provider: TranslationProvider,
    prompt: str,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    timeout: Optional[float] = None,
    retryable: Callable[[BaseException], bool] = is_retryable,
) -> dict:
    """
    Call the provider with bounded retries and a fixed delay.

    Args:
        provider: Translation provider
        prompt: Prompt text
        max_attempts: Total attempts including the first
        base_delay: Seconds to sleep between attempts
        timeout: Seconds allowed for a single provider call
        retryable: Predicate deciding whether an error is worth retrying

    Returns:
        Parsed JSON object

    Raises:
        The last provider error once attempts are exhausted, the first
        non-retryable error, or MalformedResponse.
    """
    max_attempts = max_attempts or settings.translation_max_attempts
    base_delay = settings.translation_retry_delay if base_delay is None else base_delay
    timeout = timeout or settings.translation_timeout

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(base_delay),
        retry=retry_if_exception(retryable),
        reraise=True,
    )

    text = None
    async for attempt in retrying:
        with attempt:
            try:
                text = await asyncio.wait_for(provider.generate(prompt), timeout=timeout)
            except Exception as e:
                logger.warning(
                    f"AI error (attempt {attempt.retry_state.attempt_number}/{max_attempts}): "
                    f"{type(e).__name__}: {e}"
                )
                raise

    return parse_json_response(text)


class Translator:
    """Builds prompts for a novel and maps provider failures to TranslationFailed."""

    def __init__(self, provider: TranslationProvider):
        self.provider = provider

    async def request_json(self, prompt: str) -> dict:
        try:
            return await generate_with_retry(self.provider, prompt)
        except MalformedResponse as e:
            logger.error(f"Malformed provider response: {e}")
            raise TranslationFailed("The translation service returned an invalid response") from e
        except Exception as e:
            if is_retryable(e):
                raise TranslationFailed(
                    "The translation service is busy (rate limit or quota reached). "
                    "Please try again later."
                ) from e
            raise TranslationFailed(f"Translation failed: {e}") from e

    @staticmethod
    def build_chapter_prompt(custom_prompt: str, glossary: str, source_text: str) -> str:
        excerpt = source_text[:settings.translation_source_limit]
        return f"""
Analyze this web novel chapter.
Style: {custom_prompt}
Glossary: {glossary or "None"}
Task: Translate to {settings.target_language}. Format translatedContent as HTML paragraphs (<p>...</p>).
Return JSON: {{ "chapterNumber": number or null, "title": "translated title or null", "originalTitle": "untranslated title or null", "translatedContent": "..." }}
Text: {excerpt}
"""

    @staticmethod
    def build_snippet_prompt(custom_prompt: str, glossary: str, text: str) -> str:
        excerpt = text[:settings.translation_source_limit]
        return f"""
Style: {custom_prompt}
Glossary: {glossary or "None"}
Task: Translate the text to {settings.target_language}. Return JSON: {{ "translatedText": "..." }}
Text: {excerpt}
"""

    async def translate_chapter(self, custom_prompt: str, glossary: str, source_text: str) -> dict:
        prompt = self.build_chapter_prompt(custom_prompt, glossary, source_text)
        data = await self.request_json(prompt)
        if not data.get("translatedContent"):
            raise TranslationFailed("The translation service returned no chapter content")
        return data

    async def translate_snippet(self, custom_prompt: str, glossary: str, text: str) -> str:
        prompt = self.build_snippet_prompt(custom_prompt, glossary, text)
        data = await self.request_json(prompt)
        translated = data.get("translatedText")
        if not translated:
            raise TranslationFailed("The translation service returned no text")
        return translated


_provider: Optional[TranslationProvider] = None


def get_provider() -> TranslationProvider:
    """FastAPI dependency returning the process-wide Gemini provider."""
    global _provider
    if _provider is None:
        _provider = GeminiProvider()
    return _provider
